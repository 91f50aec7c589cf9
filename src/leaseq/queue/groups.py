"""Per-group FIFO ordering and in-flight exclusivity."""

from __future__ import annotations

import contextlib
from collections import deque
from dataclasses import dataclass, field

from .exceptions import GroupLockedError

__all__ = ("DeliveryGroupCoordinator",)


@dataclass
class _Group:
    key: str
    sequence: deque[str] = field(default_factory=deque)
    locked: bool = False
    holder: str | None = None


class DeliveryGroupCoordinator:
    """Tracks ordering groups for an ordering-enabled queue.

    Each group keeps its non-terminal message ids in enqueue order. Only the
    head of a group may be delivered, and only while the group is unlocked.
    Leasing the head locks the group; deleting, releasing, expiring or
    redriving it unlocks the group again.

    The coordinator has no lock of its own: every call happens under the lock
    of the owning `MessageStore`, which keeps head selection and the lease
    itself atomic.
    """

    def __init__(self) -> None:
        self._groups: dict[str, _Group] = {}

    def __len__(self) -> int:
        return len(self._groups)

    @property
    def locked_count(self) -> int:
        return sum(1 for group in self._groups.values() if group.locked)

    def add(self, group_key: str, message_id: str) -> None:
        """Append a newly enqueued message to the tail of its group."""

        group = self._groups.get(group_key)
        if group is None:
            group = self._groups[group_key] = _Group(group_key)
        group.sequence.append(message_id)

    def check(self, group_key: str) -> str | None:
        """Return the deliverable head of a group.

        Raises:
            GroupLockedError: If the group head is in flight.
        """

        head = self.head(group_key)
        if head is not None and self.is_locked(group_key):
            raise GroupLockedError(group_key)
        return head

    def heads(self) -> list[tuple[str, str]]:
        """Deliverable `(group_key, head_id)` pairs in the order groups were created."""

        return [(key, group.sequence[0]) for key, group in self._groups.items() if group.sequence and not group.locked]

    def head(self, group_key: str) -> str | None:
        group = self._groups.get(group_key)
        if group is None or not group.sequence:
            return None
        return group.sequence[0]

    def lock(self, group_key: str, message_id: str) -> None:
        """Lock a group for its head message.

        Raises:
            GroupLockedError: If the group is already locked.
            ValueError: If `message_id` is not the head of the group.
        """

        if self.is_locked(group_key):
            raise GroupLockedError(group_key)
        group = self._groups[group_key]
        if not group.sequence or group.sequence[0] != message_id:
            raise ValueError(f"Message {message_id} is not the head of group {group_key!r}")
        group.locked = True
        group.holder = message_id

    def unlock(self, group_key: str, message_id: str) -> None:
        """Unlock a group; the head stays in place and is redelivered first."""

        group = self._groups.get(group_key)
        if group is not None and group.holder == message_id:
            group.locked = False
            group.holder = None

    def remove(self, group_key: str, message_id: str) -> None:
        """Drop a message that reached a terminal state and unlock its group."""

        group = self._groups.get(group_key)
        if group is None:
            return

        self.unlock(group_key, message_id)
        with contextlib.suppress(ValueError):
            group.sequence.remove(message_id)

        if not group.sequence and not group.locked:
            del self._groups[group_key]

    def is_locked(self, group_key: str) -> bool:
        group = self._groups.get(group_key)
        return group is not None and group.locked
