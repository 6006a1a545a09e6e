"""
FocusMochi — Latest-Value Channel
=================================
Single-slot broadcast used between pipeline threads.

A sender overwrites the slot; every receiver sees only the newest value.
Slow readers never build a backlog: intermediate values are simply
overwritten. Each write bumps a version counter so receivers can tell
whether they have already seen the current value.
"""

from __future__ import annotations

import threading
import time
import weakref
from typing import Generic, Optional, Tuple, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised by a receiver waiting on a closed channel with nothing new."""


class _Shared(Generic[T]):
    def __init__(self, value: T):
        self.value = value
        self.version = 0
        self.closed = False
        self.cond = threading.Condition()
        self.receivers: "weakref.WeakSet[WatchReceiver[T]]" = weakref.WeakSet()


class WatchSender(Generic[T]):
    """Write side of a watch channel."""

    def __init__(self, shared: _Shared[T]):
        self._shared = shared

    def send(self, value: T) -> bool:
        """Publish a new value.

        Returns:
            False (and stores nothing) if the channel is closed or no
            receiver is alive.
        """
        s = self._shared
        with s.cond:
            if s.closed or len(s.receivers) == 0:
                return False
            s.value = value
            s.version += 1
            s.cond.notify_all()
            return True

    def borrow(self) -> T:
        with self._shared.cond:
            return self._shared.value

    def subscribe(self) -> "WatchReceiver[T]":
        """New receiver that treats the current value as already seen."""
        return WatchReceiver(self._shared)

    def receiver_count(self) -> int:
        with self._shared.cond:
            return len(self._shared.receivers)

    def is_closed(self) -> bool:
        with self._shared.cond:
            return self._shared.closed

    def close(self) -> None:
        s = self._shared
        with s.cond:
            s.closed = True
            s.cond.notify_all()


class WatchReceiver(Generic[T]):
    """Read side of a watch channel. Not shared between threads."""

    def __init__(self, shared: _Shared[T]):
        self._shared = shared
        with shared.cond:
            self._seen_version = shared.version
            shared.receivers.add(self)

    def has_changed(self) -> bool:
        """Non-blocking: is there a value this receiver has not borrowed?"""
        s = self._shared
        with s.cond:
            if s.version != self._seen_version:
                return True
            if s.closed:
                raise ChannelClosed()
            return False

    def changed(self, timeout: Optional[float] = None) -> bool:
        """Wait until a newer value is available.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely.

        Returns:
            True when a newer value exists, False on timeout.

        Raises:
            ChannelClosed: the sender closed and nothing new is pending.
        """
        s = self._shared
        deadline = None if timeout is None else time.monotonic() + timeout
        with s.cond:
            while s.version == self._seen_version:
                if s.closed:
                    raise ChannelClosed()
                if deadline is None:
                    s.cond.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    s.cond.wait(remaining)
            return True

    def borrow(self) -> T:
        """Return the latest value and mark it as seen."""
        s = self._shared
        with s.cond:
            self._seen_version = s.version
            return s.value

    def peek(self) -> T:
        """Return the latest value without marking it as seen."""
        with self._shared.cond:
            return self._shared.value


def watch_channel(initial: T) -> Tuple[WatchSender[T], WatchReceiver[T]]:
    """Create a channel holding ``initial`` and return (sender, receiver)."""
    shared = _Shared(initial)
    return WatchSender(shared), WatchReceiver(shared)
