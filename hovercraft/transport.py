"""In-process message passing between ranked components."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass


@dataclass(frozen=True)
class Message:
    """A delivered message: who sent it, its tag, and its text body."""

    source: int
    tag: int
    data: str


def _matches(message: Message, tag: int | None, source: int | None) -> bool:
    return (tag is None or message.tag == tag) and (source is None or message.source == source)


class Network:
    """A fixed set of ranks, each with its own mailbox.

    Messages from one sender to one receiver with the same tag are taken out
    in the order they were sent. All operations are thread-safe.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("a network needs at least one rank")
        self.size = size
        self._lock = threading.Lock()
        self._mailboxes: list[deque[Message]] = [deque() for _ in range(size)]

    def _check_rank(self, rank: int) -> None:
        if not 0 <= rank < self.size:
            raise ValueError(f"rank {rank} outside 0..{self.size - 1}")

    def endpoint(self, rank: int) -> Endpoint:
        """Return the endpoint through which the given rank sends and receives."""
        self._check_rank(rank)
        return Endpoint(self, rank)

    def _deliver(self, dest: int, message: Message) -> None:
        self._check_rank(dest)
        with self._lock:
            self._mailboxes[dest].append(message)

    def _take(self, rank: int, tag: int | None, source: int | None) -> Message | None:
        with self._lock:
            mailbox = self._mailboxes[rank]
            for message in mailbox:
                if _matches(message, tag, source):
                    mailbox.remove(message)
                    return message
        return None

    def _count(self, rank: int, tag: int | None, source: int | None) -> int:
        with self._lock:
            return sum(1 for message in self._mailboxes[rank] if _matches(message, tag, source))


class Endpoint:
    """One rank's view of the network."""

    def __init__(self, network: Network, rank: int) -> None:
        self.network = network
        self.rank = rank

    def send(self, dest: int, tag: int, data: str) -> None:
        """Queue a text message for another rank."""
        if not isinstance(data, str):
            raise TypeError("message data must be str")
        self.network._deliver(dest, Message(self.rank, int(tag), data))

    def poll(self, tag: int | None = None, source: int | None = None) -> Message | None:
        """Remove and return the oldest matching message, or None when there is none.

        A tag or source of None matches any.
        """
        return self.network._take(self.rank, None if tag is None else int(tag), source)

    def pending(self, tag: int | None = None, source: int | None = None) -> int:
        """Number of matching messages waiting, without removing them."""
        return self.network._count(self.rank, None if tag is None else int(tag), source)