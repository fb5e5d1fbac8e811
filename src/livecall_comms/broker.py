"""Message broker for routing signaling events to topic queues.

Presence, negotiation and ICE events share the ``signal`` topic so the
call client sees them in exactly the order the server sent them; an ICE
candidate can never overtake the offer it belongs to inside the client.
Chat has its own topic so a slow chat consumer cannot stall negotiation.
"""

import asyncio
import logging
from typing import Any, Dict

from .types import CHAT_MESSAGE, PRESENCE_EVENTS, RELAYED_EVENTS, TRANSPORT_CLOSED

logger = logging.getLogger(__name__)

SIGNAL_EVENTS = PRESENCE_EVENTS | RELAYED_EVENTS | {TRANSPORT_CLOSED}


class Broker:
    """Topic based fan-out for incoming signaling messages."""

    def __init__(self, maxsize: int = 512):
        """Initialize the broker with empty topic collections.

        :param maxsize: Capacity of each topic queue.
        :type maxsize: int
        """
        self.maxsize = maxsize
        self.queues: Dict[str, asyncio.Queue] = {}

    def topic_queue(self, topic: str) -> asyncio.Queue:
        """Get or create the queue for ``topic``.

        :param topic: The topic name for the queue.
        :type topic: str
        :return: The asyncio Queue for the topic.
        :rtype: asyncio.Queue
        """
        if topic not in self.queues:
            self.queues[topic] = asyncio.Queue(maxsize=self.maxsize)
        return self.queues[topic]

    @staticmethod
    def topic_for(event: str) -> str:
        if event in SIGNAL_EVENTS:
            return "signal"
        if event == CHAT_MESSAGE:
            return "chat"
        return "misc"

    def publish(self, msg: Dict[str, Any]) -> None:
        """Route an incoming message by its ``event`` field.

        :param msg: The message dictionary to route.
        :type msg: Dict[str, Any]
        """
        topic = self.topic_for(msg.get("event", ""))
        try:
            self.topic_queue(topic).put_nowait(msg)
        except asyncio.QueueFull:
            logger.warning("Topic %s full, dropping %s", topic, msg.get("event"))
