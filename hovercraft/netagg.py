"""The network aggregator: relays the leader's appends to followers and aggregates their acks into commits."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from .protocol import (
    BATCH_SIZE,
    BATCH_TIMEOUT_MS,
    MessageType,
    Rank,
    _stoi,
    deserialize_batched_ids,
    split_fields,
)
from .transport import Endpoint, Message

logger = logging.getLogger(__name__)

FOLLOWERS = (Rank.FOLLOWER1, Rank.FOLLOWER2)
COMMIT_TARGETS = (Rank.LEADER, Rank.FOLLOWER1, Rank.FOLLOWER2)
MAJORITY_ACKS_NEEDED = 1

PENDING_OVERFLOW_THRESHOLD = 1000
PENDING_CRITICAL_THRESHOLD = 1500
EMERGENCY_DROP = 200
SYNC_CHECK_INTERVAL = 1000
SYNC_DIFF_THRESHOLD = 100

_IDLE_SLEEP = 0.0005


@dataclass(frozen=True)
class AggCommit:
    """A commit notice for one 1-based log index."""

    index: int
    term: int


@dataclass
class PendingEntry:
    """A log entry waiting for follower acknowledgements."""

    index: int
    term: int
    leader: int
    acks: set[int] = field(default_factory=set)


class NetAgg:
    """Forwards appends to the followers and decides commits from their responses."""

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self.rank = endpoint.rank
        self.leader = int(Rank.LEADER)
        self.leader_term = 1
        self.follower_match: dict[int, int] = {int(rank): 0 for rank in FOLLOWERS}
        self.pending: dict[int, PendingEntry] = {}
        self.commit_index = 0
        self.commit_buffer: list[AggCommit] = []
        self._batch_started: float | None = None
        self.no_progress_count = 0
        self.step_count = 0
        self.sync_warning_count = 0

    def _forward_to_followers(self, term: int, prev_index: int, prev_term: int,
                              first_index: int, ids: str, commit: int, source: int) -> None:
        data = f"{term}|{prev_index}|{prev_term}|{first_index}|{ids}|{commit}|{source}|{self.rank}"
        for follower in FOLLOWERS:
            self.endpoint.send(int(follower), MessageType.APPEND_ENTRIES_REQUEST, data)

    def handle_append_entries_from_leader(self, message: Message) -> bool:
        """Record a leader batch as pending and relay it; return whether it was relayed.

        The body is "term|prevLogIndex|prevLogTerm|firstEntryIndex|ids|commitIndex|source".
        """
        parts = split_fields(message.data, "|")
        if len(parts) < 7:
            return False
        term = _stoi(parts[0])
        prev_index = _stoi(parts[1])
        prev_term = _stoi(parts[2])
        first_index = _stoi(parts[3])
        ids_text = parts[4]
        batch = deserialize_batched_ids(ids_text)
        commit = _stoi(parts[5])
        source = _stoi(parts[6])

        if term < self.leader_term:
            return False
        if term > self.leader_term:
            self.leader_term = term
            self.leader = source
            self.pending.clear()

        for offset, rid in enumerate(batch):
            index = first_index + offset
            if index <= self.commit_index:
                continue
            self.pending.setdefault(index, PendingEntry(index, rid.term, source))

        if not batch:
            return False
        self._forward_to_followers(term, prev_index, prev_term, first_index, ids_text, commit, source)
        return True

    def handle_append_entries_response(self, message: Message) -> bool:
        """Apply a follower's "term|success|matchIndex|source" reply; return whether commits advanced."""
        parts = split_fields(message.data, "|")
        if len(parts) < 4:
            return False
        if parts[1] != "1":
            return False
        match_index = _stoi(parts[2])
        source = _stoi(parts[3])
        self.follower_match[source] = match_index

        for entry in self.pending.values():
            if match_index >= entry.index:
                entry.acks.add(source)

        newly_committed: list[AggCommit] = []
        candidate = self.commit_index
        while True:
            entry = self.pending.get(candidate + 1)
            if entry is None or len(entry.acks) < MAJORITY_ACKS_NEEDED:
                break
            newly_committed.append(AggCommit(entry.index, entry.term))
            candidate += 1

        if not newly_committed:
            return False
        self.commit_buffer.extend(newly_committed)
        self.commit_index = candidate
        self.pending = {index: entry for index, entry in self.pending.items() if index > self.commit_index}
        return True

    def send_batched_agg_commits(self) -> bool:
        """Send buffered commits as "index,term;..." to the leader and both followers."""
        if not self.commit_buffer:
            return False

        now = time.monotonic()
        if self._batch_started is None:
            self._batch_started = now
        elapsed_ms = int((now - self._batch_started) * 1000)
        if len(self.commit_buffer) < BATCH_SIZE and elapsed_ms < BATCH_TIMEOUT_MS:
            return False

        payload = ";".join(f"{commit.index},{commit.term}" for commit in self.commit_buffer)
        for server in COMMIT_TARGETS:
            self.endpoint.send(int(server), MessageType.AGG_COMMIT, payload)

        self.commit_buffer.clear()
        self._batch_started = None
        return True

    def _slow_follower(self) -> int:
        first, second = (int(rank) for rank in FOLLOWERS)
        return first if self.follower_match[first] < self.follower_match[second] else second

    def _check_follower_sync(self) -> None:
        matches = [self.follower_match[int(rank)] for rank in FOLLOWERS]
        lowest, highest = min(matches), max(matches)
        diff = highest - lowest

        if diff <= SYNC_DIFF_THRESHOLD:
            self.sync_warning_count = 0
            return

        self.sync_warning_count += 1
        if self.sync_warning_count % 100 == 1:
            logger.debug("followers out of sync: %s, diff %d", self.follower_match, diff)

        if diff >= 1000 and self.sync_warning_count > 2000:
            self.follower_match[self._slow_follower()] = highest - 50
            self.sync_warning_count = 0

        count = self.sync_warning_count
        should_force = (
            (diff > 25000 and count > 1000)
            or (diff > 1000 and count > 5000)
            or (diff > 500 and count > 20000)
            or (diff > 100 and count > 50000)
        )
        if should_force:
            self.follower_match[self._slow_follower()] = highest - 100
            self.sync_warning_count = 0

        if self.sync_warning_count > 10000:
            target = highest - 50
            for rank in FOLLOWERS:
                self.follower_match[int(rank)] = target
            if target > self.commit_index:
                self.commit_buffer.extend(
                    AggCommit(index, self.leader_term) for index in range(self.commit_index + 1, target + 1)
                )
                self.commit_index = target
                logger.warning("aggregator force-committed up to %d", target)
            self.sync_warning_count = 0

        if diff > 500000:
            slow = self._slow_follower()
            self.follower_match[slow] = highest - 1000
            logger.warning("aggregator reset match index of follower %d", slow)
            self.sync_warning_count = 0

    def _drop_oldest_pending(self) -> int:
        victims = sorted(self.pending)[:EMERGENCY_DROP]
        for index in victims:
            del self.pending[index]
        return len(victims)

    def step(self) -> bool:
        """Run one pass of the event loop; return whether anything was done."""
        progress = False

        message = self.endpoint.poll(MessageType.APPEND_ENTRIES_NETAGG_REQUEST, Rank.LEADER)
        if message is not None:
            self.handle_append_entries_from_leader(message)
            progress = True

        message = self.endpoint.poll(MessageType.APPEND_ENTRIES_RESPONSE)
        if message is not None:
            if message.source in (int(rank) for rank in FOLLOWERS):
                self.handle_append_entries_response(message)
                progress = True
            else:
                logger.debug("ignoring append response from rank %d", message.source)

        if self.send_batched_agg_commits():
            progress = True

        self.step_count += 1

        if progress:
            self.no_progress_count = 0
        else:
            self.no_progress_count += 1

        if len(self.pending) > PENDING_CRITICAL_THRESHOLD:
            dropped = self._drop_oldest_pending()
            logger.warning("aggregator dropped %d oldest pending entries", dropped)

        if self.step_count % SYNC_CHECK_INTERVAL == 0:
            self._check_follower_sync()

        return progress

    def run(self, stop_event: threading.Event) -> None:
        """Loop until the event is set."""
        logger.debug("aggregator started with rank %d", self.rank)
        while not stop_event.is_set():
            if not self.step():
                time.sleep(_IDLE_SLEEP)