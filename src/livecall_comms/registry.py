"""In-memory room membership.

A room exists exactly while it has members: it is created by the first
join and discarded when the last member leaves.  Nothing is persisted;
a restart forgets every room, which is fine for live calls.
"""

import logging
from typing import Dict, List

from .errors import RoomFull

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Mapping of room identifier to the handles joined to it.

    Members are kept in join order so ``members_of`` can be used to pick
    "the first existing participant" deterministically.  A handle belongs
    to at most one room; joining another room leaves the previous one.

    :param capacity: Maximum members per room, ``0`` for unlimited.
    """

    def __init__(self, capacity: int = 0):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = capacity
        # dict keys preserve insertion order and give O(1) membership tests
        self._rooms: Dict[str, Dict[str, None]] = {}
        self._room_of: Dict[str, str] = {}

    def join(self, room: str, handle: str) -> bool:
        """Add ``handle`` to ``room``, creating the room when absent.

        :return: ``True`` if the handle was added, ``False`` if it was
            already a member.
        :raises RoomFull: If the room is at capacity.
        """
        members = self._rooms.get(room)
        if members is not None and handle in members:
            return False
        if self.capacity and members is not None and len(members) >= self.capacity:
            raise RoomFull(room, self.capacity)

        previous = self._room_of.get(handle)
        if previous is not None and previous != room:
            self.leave(previous, handle)

        self._rooms.setdefault(room, {})[handle] = None
        self._room_of[handle] = room
        return True

    def leave(self, room: str, handle: str) -> bool:
        """Remove ``handle`` from ``room``; empty rooms are discarded.

        :return: ``True`` if the handle was a member.
        """
        members = self._rooms.get(room)
        if members is None or handle not in members:
            return False
        del members[handle]
        if self._room_of.get(handle) == room:
            del self._room_of[handle]
        if not members:
            del self._rooms[room]
            logger.debug("Room %s is empty, discarded", room)
        return True

    def leave_all(self, handle: str) -> List[str]:
        """Remove ``handle`` from every room it belongs to."""
        rooms = self.rooms_of(handle)
        for room in rooms:
            self.leave(room, handle)
        return rooms

    def members_of(self, room: str) -> List[str]:
        """Snapshot of the room's members in join order."""
        return list(self._rooms.get(room, ()))

    def rooms_of(self, handle: str) -> List[str]:
        room = self._room_of.get(handle)
        return [room] if room is not None else []

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def __contains__(self, room: object) -> bool:
        return room in self._rooms

    def __len__(self) -> int:
        """Total number of joined handles across all rooms."""
        return len(self._room_of)
