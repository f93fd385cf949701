"""Message tags, component ranks, log records and wire helpers shared by all components."""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable

BATCH_SIZE = 1
LOG_MAX_SIZE = 1000
BATCH_TIMEOUT_MS = 5
STATS_INTERVAL = 50000
MAX_OUTSTANDING_SENDS = 100

_FIRST_CLIENT_RANK = 5
_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")
_INT_MIN = -(2**31)
_INT_MAX = 2**31 - 1


class MessageType(IntEnum):
    """Tags carried by every message exchanged between components."""

    CLIENT_REQUEST = 1
    SWITCH_REPLICATE = 2
    APPEND_ENTRIES_NETAGG_REQUEST = 3
    APPEND_ENTRIES_REQUEST = 4
    APPEND_ENTRIES_RESPONSE = 5
    AGG_COMMIT = 6
    CLIENT_RESPONSE = 7
    SHUTDOWN_SIGNAL = 99


class Rank(IntEnum):
    """Fixed ranks of the server components; clients take ranks from 5 upwards."""

    SWITCH = 0
    LEADER = 1
    FOLLOWER1 = 2
    FOLLOWER2 = 3
    NETAGG = 4


@functools.total_ordering
@dataclass(frozen=True)
class RequestID:
    """Identifies a request; ordered by client rank, then term, then value."""

    value: int
    term: int
    client_rank: int

    def _key(self) -> tuple[int, int, int]:
        return (self.client_rank, self.term, self.value)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RequestID):
            return NotImplemented
        return self._key() < other._key()


@dataclass
class LogEntry:
    """One replicated log record."""

    term: int = 0
    value: int = 0
    payload: str = ""
    client_rank: int = -1
    respond_to: int = -1


def _stoi(text: str) -> int:
    """Parse a leading 32-bit integer, ignoring leading whitespace and trailing text."""
    match = _INT_PREFIX.match(text)
    if match is None:
        raise ValueError(f"no integer in {text!r}")
    number = int(match.group(1))
    if not _INT_MIN <= number <= _INT_MAX:
        raise ValueError(f"integer out of range in {text!r}")
    return number


def split_fields(text: str, delimiter: str) -> list[str]:
    """Split on a delimiter; a trailing empty field is dropped, an empty string gives no fields."""
    if not text:
        return []
    fields = text.split(delimiter)
    if fields[-1] == "":
        fields.pop()
    return fields


def serialize_batched_ids(ids: Iterable[RequestID]) -> str:
    """Encode ids as "value,term,clientRank" records joined by ';'."""
    return ";".join(f"{rid.value},{rid.term},{rid.client_rank}" for rid in ids)


def deserialize_batched_ids(text: str) -> list[RequestID]:
    """Decode the output of serialize_batched_ids, skipping malformed records."""
    ids: list[RequestID] = []
    for token in split_fields(text, ";"):
        if not token:
            continue
        parts = split_fields(token, ",")
        if len(parts) != 3:
            continue
        try:
            value, term, client_rank = (_stoi(part) for part in parts)
        except ValueError:
            continue
        ids.append(RequestID(value, term, client_rank))
    return ids


def is_client_rank(rank: int) -> bool:
    """Whether the rank belongs to a client."""
    return rank >= _FIRST_CLIENT_RANK


def num_server_components() -> int:
    """Number of non-client components: switch, leader, two followers and the aggregator."""
    return len(Rank)