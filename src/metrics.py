"""Prometheus metrics for the signaling server.

This module provides the metric definitions, a :class:`RelayMetrics`
adapter the relay protocol reports to, and a helper that starts the
exporter.
"""

import logging
from typing import Any, Tuple
from prometheus_client import start_http_server, Counter, Gauge

# Metrics definitions
connections = Gauge("livecall_connections", "Open signaling connections")
rooms = Gauge("livecall_rooms", "Rooms with at least one member")
room_members = Gauge("livecall_room_members", "Handles joined to any room")
messages_relayed = Counter("livecall_messages_relayed_total", "Offers, answers and ICE candidates relayed", ["event"])
messages_dropped = Counter("livecall_messages_dropped_total", "Relay messages dropped by reason", ["reason"])
chat_messages = Counter("livecall_chat_messages_total", "Chat messages broadcast")


class RelayMetrics:
    """Forward relay activity to the module level metrics."""

    def connection_opened(self) -> None:
        connections.inc()

    def connection_closed(self) -> None:
        connections.dec()

    def relayed(self, event: str) -> None:
        messages_relayed.labels(event=event).inc()

    def dropped(self, event: str, reason: str) -> None:
        messages_dropped.labels(reason=reason).inc()

    def chat(self) -> None:
        chat_messages.inc()

    def rooms_changed(self, registry: Any) -> None:
        rooms.set(registry.room_count)
        room_members.set(len(registry))


def start_metrics_server(port: int, logger: logging.Logger) -> Tuple[Any, Any]:
    """Start Prometheus metrics server.

    :param port: Port number to bind the metrics server to
    :param logger: Logger instance for recording server startup status
    :return: Tuple of (server, thread) for clean shutdown
    """
    try:
        ret = start_http_server(port)
        if isinstance(ret, tuple) and len(ret) == 2:
            server, thread = ret
        else:
            server, thread = ret, None
        logger.info("Metrics server started on port %d", port)
        return server, thread
    except OSError as e:
        logger.error("Failed to start metrics server on port %d: %s", port, e)
        return None, None
