"""Client for the booking service that owns live sessions.

The call itself never talks to the booking service; this client is used
around it to find the meeting room for a booking and to record the
outcome once the call is over.
"""

import logging
from typing import Any, Dict, Optional

import requests

from livecall.utils import derive_room_id

from .errors import BookingError

logger = logging.getLogger(__name__)


class BookingClient:
    """Thin wrapper over the ``/api/booking`` endpoints.

    :param base_url: Base HTTP URL of the booking service
    :type base_url: str
    :param session_cookie: Value of the ``connect.sid`` session cookie
    :type session_cookie: Optional[str]
    :param timeout: Per-request timeout in seconds
    :type timeout: float
    """

    def __init__(self, base_url: str, session_cookie: Optional[str] = None, timeout: float = 10.0):
        if not base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        if session_cookie:
            self.session.cookies.set("connect.sid", session_cookie)

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise BookingError(f"{method} {path} failed: {e}") from e
        if not response.ok:
            message = response.reason or "request failed"
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("message"):
                    message = body["message"]
            except ValueError:
                pass
            raise BookingError(f"{method} {path}: {message}", status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as e:
            raise BookingError(f"{method} {path}: response is not JSON", status_code=response.status_code) from e
        return data if isinstance(data, dict) else {}

    def get_booking(self, booking_id: str) -> Dict[str, Any]:
        """Fetch one booking.

        :return: The ``booking`` object with ``meetingLink``, ``status`` and
            the populated ``studentId``/``teacherId`` participants.
        :raises BookingError: If the booking cannot be fetched.
        """
        data = self._request("GET", f"/api/booking/{booking_id}")
        booking = data.get("booking")
        if not isinstance(booking, dict):
            raise BookingError(f"booking {booking_id} missing from response")
        return booking

    def meeting_room_for(self, booking_id: str) -> str:
        """Room id every participant of ``booking_id`` joins."""
        booking = self.get_booking(booking_id)
        return derive_room_id(None, booking.get("meetingLink"))

    def complete_session(self, booking_id: str, notes: str = "") -> Dict[str, Any]:
        logger.info("Completing booking %s", booking_id)
        return self._request("PUT", f"/api/booking/{booking_id}/complete", json={"sessionNotes": notes})

    def rate_session(self, booking_id: str, rating: int, feedback: str = "") -> Dict[str, Any]:
        """Rate a completed session.

        :raises ValueError: If ``rating`` is not between 1 and 5.
        """
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValueError("rating must be an integer between 1 and 5")
        return self._request("POST", f"/api/booking/{booking_id}/rate",
                             json={"rating": rating, "feedback": feedback})

    def close(self) -> None:
        self.session.close()


__all__ = ["BookingClient"]
