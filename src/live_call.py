#!/usr/bin/env python3
"""live_call.py - join a live tutoring room from the command line.

Connects to the signaling server, joins the room for a booking (or an
explicit room id), negotiates a call with whoever else is in the room
and keeps it up until interrupted.

- ``--booking-id`` looks the meeting link up in the booking service.
- ``--record`` starts recording once the call connects; recordings are
  written to ``LIVECALL_RECORDING_DIR`` when the call ends.
- ``--duration`` hangs up after the given number of seconds.
- Incoming chat is printed to stdout; ``--say`` sends chat once joined.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from livecall.config import Settings
from livecall.logging import setup_logging
from livecall.utils import format_duration
from livecall_comms.booking import BookingClient
from livecall_comms.client import LiveCallClient
from livecall_comms.errors import BookingError, RecordingUnavailable, RecordingUnsupported, TransportError
from livecall_comms.negotiation import CallState
from livecall_comms.types import ChatMessage, RecordingArtifact


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("livecall", description="Headless live call participant")
    p.add_argument("--url", default=settings.signaling_url, help="ws://…/ws signaling URL")
    p.add_argument("--room", default=None, help="Room id to join")
    p.add_argument("--meeting-link", default=None, help="Meeting link the room id is derived from")
    p.add_argument("--booking-id", default=None, help="Look the meeting link up in the booking service")
    p.add_argument("--api-url", default=settings.api_url, help="Booking service base URL")
    p.add_argument("--name", default=None, help="Display name")
    p.add_argument("--record", action="store_true", help="Record the session once connected")
    p.add_argument("--duration", type=float, default=None, help="Hang up after this many seconds")
    p.add_argument("--no-video", dest="video", action="store_false", help="Do not open the camera")
    p.add_argument("--no-audio", dest="audio", action="store_false", help="Do not open the microphone")
    p.add_argument("--say", action="append", default=[], help="Chat message to send once joined (repeatable)")
    p.add_argument("--loglevel", default=None, help="Logging level")
    p.add_argument("--healthcheck", action="store_true", help="Validate configuration and exit")
    return p


async def resolve_meeting_link(api_url: str, booking_id: str) -> Optional[str]:
    """Return the booking's meeting link; the HTTP call runs in a thread."""
    booking_client = BookingClient(api_url)
    try:
        booking = await asyncio.get_running_loop().run_in_executor(None, booking_client.get_booking, booking_id)
    finally:
        booking_client.close()
    return booking.get("meetingLink")


async def record_when_connected(client: LiveCallClient, logger: logging.Logger) -> None:
    await client.wait_for_state(CallState.CONNECTED, timeout=None)
    try:
        await client.start_recording()
    except (RecordingUnavailable, RecordingUnsupported) as e:
        logger.error("Recording not started: %s", e)


async def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the call client."""
    settings = Settings.from_env()
    args = build_parser(settings).parse_args(argv)

    if args.healthcheck:
        errors = settings.validate()
        if errors:
            print("Configuration validation failed:", file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            sys.exit(1)
        print("ok")
        sys.exit(0)

    logger = setup_logging(
        args.loglevel or settings.log_level, settings.log_format, settings.log_file, name="livecall.client")

    meeting_link = args.meeting_link
    if args.booking_id and not args.room:
        try:
            meeting_link = await resolve_meeting_link(args.api_url, args.booking_id)
        except BookingError as e:
            print(f"Booking lookup failed: {e}", file=sys.stderr)
            sys.exit(1)

    def on_chat(message: ChatMessage) -> None:
        print(f"[{message.sent_at:%H:%M:%S}] {message.sender}: {message.message}", flush=True)

    def on_recording(artifact: RecordingArtifact) -> None:
        path = artifact.save(settings.recording_dir)
        logger.info("Recording written to %s (%s)", path, format_duration(artifact.duration))

    settings.signaling_url = args.url
    client = LiveCallClient.from_settings(
        settings,
        room_id=args.room,
        meeting_link=meeting_link,
        user_name=args.name,
        video=args.video,
        audio=args.audio,
        on_chat=on_chat,
        on_recording=on_recording,
    )
    logger.info("Joining room %s as %s", client.room_id, client.user_name)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        await client.start()
    except TransportError as e:
        logger.error("Could not reach signaling server: %s", e)
        await client.end_call()
        sys.exit(1)

    for line in args.say:
        await client.send_chat(line)

    helpers = []
    if args.record:
        helpers.append(asyncio.create_task(record_when_connected(client, logger)))

    waiters = [asyncio.create_task(stop.wait()), asyncio.create_task(client.wait_ended())]
    try:
        await asyncio.wait(waiters, timeout=args.duration, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters + helpers:
            task.cancel()
        await client.end_call()
        logger.info("Call lasted %s", format_duration(client.call_duration.value))


def cli() -> None:
    """Synchronous console entrypoint wrapper for packaging."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
