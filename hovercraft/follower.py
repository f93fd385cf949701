"""A follower: stores replicated requests and appends them in the order the aggregator relays."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque

from .protocol import (
    BATCH_SIZE,
    BATCH_TIMEOUT_MS,
    LOG_MAX_SIZE,
    LogEntry,
    MessageType,
    Rank,
    _stoi,
    deserialize_batched_ids,
    split_fields,
)
from .transport import Endpoint, Message

logger = logging.getLogger(__name__)

OVERFLOW_THRESHOLD = 1000
CRITICAL_OVERFLOW_THRESHOLD = 1500
EMERGENCY_DROP = 200
STUCK_BUFFER_THRESHOLD = 15
STUCK_STEP_LIMIT = 1000
RESPONSE_BACKLOG_THRESHOLD = 50
FORCE_IMMEDIATE_RESPONSES = 5
ULTRA_FAST_MS = 1

_IDLE_SLEEP = 0.0005


class Follower:
    """Keeps a copy of the log and answers the clients assigned to it on commit."""

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self.rank = endpoint.rank
        self.term = 1
        self.log: deque[LogEntry] = deque()
        self.log_start = 0
        self.commit_index = -1
        self.request_buffer: dict[int, LogEntry] = {}
        self.unordered_values: set[int] = set()
        self.response_buffer: list[LogEntry] = []
        self._batch_started: float | None = None
        self.append_count = 0
        self.no_progress_count = 0
        self.stuck_count = 0

    @property
    def last_log_index(self) -> int:
        """Absolute 0-based index of the newest log entry, or -1 when the log is empty."""
        return self.log_start + len(self.log) - 1 if self.log else -1

    def _append(self, entry: LogEntry) -> None:
        self.log.append(entry)
        if len(self.log) > LOG_MAX_SIZE:
            self.log.popleft()
            self.log_start += 1

    def _queue_committed(self, old_commit: int) -> None:
        for index in range(old_commit + 1, self.commit_index + 1):
            if index >= self.log_start:
                entry = self.log[index - self.log_start]
                if entry.respond_to == self.rank:
                    self.response_buffer.append(entry)

    def _send_append_response(self, success: bool, match_index: int) -> None:
        data = f"{self.term}|{'1' if success else '0'}|{match_index}|{self.rank}"
        self.endpoint.send(Rank.NETAGG, MessageType.APPEND_ENTRIES_RESPONSE, data)

    def handle_switch_replicate(self, message: Message) -> bool:
        """Buffer a "value|term|payload|clientRank|respondTo" record by value; return whether it was new."""
        parts = split_fields(message.data, "|")
        if len(parts) < 5:
            return False
        value = _stoi(parts[0])
        term = _stoi(parts[1])
        payload = parts[2]
        client_rank = _stoi(parts[3])
        respond_to = _stoi(parts[4])

        if value in self.request_buffer:
            return False
        self.request_buffer[value] = LogEntry(term, value, payload, client_rank, respond_to)
        self.unordered_values.add(value)
        return True

    def handle_append_entries(self, message: Message) -> bool:
        """Apply a relayed append request, answer the aggregator, and return whether it succeeded.

        The body is "term|prevLogIndex|prevLogTerm|firstEntryIndex|ids|commitIndex|leader|source".
        """
        parts = split_fields(message.data, "|")
        if len(parts) < 8:
            return False
        term = _stoi(parts[0])
        prev_log_index = _stoi(parts[1])
        prev_log_term = _stoi(parts[2])
        first_entry_index = _stoi(parts[3])
        batch = deserialize_batched_ids(parts[4])
        leader_commit = _stoi(parts[5])

        last_index = self.last_log_index
        if term < self.term:
            self._send_append_response(False, last_index + 1)
            return False
        self.term = term

        prev_ok = prev_log_index == 0
        prev_index = prev_log_index - 1
        if not prev_ok and self.log_start <= prev_index <= last_index:
            prev_ok = self.log[prev_index - self.log_start].term == prev_log_term
        if not prev_ok:
            self._send_append_response(False, last_index + 1)
            return False

        start = 0
        for start, rid in enumerate(batch):
            absolute = first_entry_index - 1 + start
            if absolute > last_index or absolute < self.log_start:
                break
            position = absolute - self.log_start
            if self.log[position].term != rid.term:
                while len(self.log) > position:
                    self.log.pop()
                break
        else:
            start = len(batch)

        appended = 0
        for rid in batch[start:]:
            buffered = self.request_buffer.pop(rid.value, None)
            if buffered is None:
                break
            self._append(
                LogEntry(rid.term, buffered.value, buffered.payload, buffered.client_rank, buffered.respond_to)
            )
            self.unordered_values.discard(rid.value)
            appended += 1
        self.append_count += appended

        new_last = self.last_log_index
        self._send_append_response(True, new_last + 1)

        if leader_commit > self.commit_index:
            old_commit = self.commit_index
            self.commit_index = min(leader_commit, new_last)
            self._queue_committed(old_commit)
        return True

    def handle_agg_commit(self, message: Message) -> bool:
        """Advance the commit index from "index,term;..." records; return whether it moved."""
        commits = split_fields(message.data, ";")
        if not commits:
            return False

        highest = -1
        for record in commits:
            if not record:
                continue
            parts = split_fields(record, ",")
            if len(parts) < 2:
                continue
            highest = max(highest, _stoi(parts[0]) - 1)

        if highest <= self.commit_index:
            return False
        old_commit = self.commit_index
        self.commit_index = min(highest, self.last_log_index)
        self._queue_committed(old_commit)
        return self.commit_index > old_commit

    def send_batched_client_responses(self) -> bool:
        """Send buffered responses, one "SUCCESS|value|payload..." message per client."""
        if not self.response_buffer:
            return False

        now = time.monotonic()
        if self._batch_started is None:
            self._batch_started = now
        elapsed_ms = int((now - self._batch_started) * 1000)

        count = len(self.response_buffer)
        ready = (
            count >= BATCH_SIZE
            or elapsed_ms >= BATCH_TIMEOUT_MS
            or count >= FORCE_IMMEDIATE_RESPONSES
            or (count > 2 and elapsed_ms >= BATCH_TIMEOUT_MS // 3)
            or elapsed_ms >= ULTRA_FAST_MS
        )
        if not ready:
            return False

        by_client: dict[int, list[LogEntry]] = {}
        for entry in self.response_buffer:
            by_client.setdefault(entry.client_rank, []).append(entry)

        for client_rank in sorted(by_client):
            body = "".join(f"|{entry.value}|{entry.payload}" for entry in by_client[client_rank])
            self.endpoint.send(client_rank, MessageType.CLIENT_RESPONSE, "SUCCESS" + body)

        self.response_buffer.clear()
        self._batch_started = None
        return True

    def _drop_oldest(self) -> int:
        victims = sorted(self.request_buffer)[:EMERGENCY_DROP]
        for value in victims:
            del self.request_buffer[value]
            self.unordered_values.discard(value)
        return len(victims)

    def _force_process_buffer(self) -> int:
        processed = 0
        for value in sorted(self.request_buffer):
            buffered = self.request_buffer[value]
            entry = LogEntry(self.term, buffered.value, buffered.payload, buffered.client_rank, buffered.respond_to)
            self._append(entry)
            if entry.respond_to == self.rank:
                self.response_buffer.append(entry)
            processed += 1
        self.request_buffer.clear()
        self.unordered_values.clear()
        self.commit_index = self.last_log_index
        return processed

    def step(self) -> bool:
        """Run one pass of the event loop; return whether anything was done."""
        progress = False

        message = self.endpoint.poll(MessageType.SWITCH_REPLICATE, Rank.SWITCH)
        if message is not None:
            self.handle_switch_replicate(message)
            progress = True

        message = self.endpoint.poll(MessageType.APPEND_ENTRIES_REQUEST, Rank.NETAGG)
        if message is not None:
            self.handle_append_entries(message)
            progress = True

        message = self.endpoint.poll(MessageType.AGG_COMMIT, Rank.NETAGG)
        if message is not None:
            self.handle_agg_commit(message)
            progress = True

        if self.send_batched_client_responses():
            progress = True

        if progress:
            self.no_progress_count = 0
        else:
            self.no_progress_count += 1

        if len(self.request_buffer) > CRITICAL_OVERFLOW_THRESHOLD:
            dropped = self._drop_oldest()
            logger.warning("follower %d dropped %d oldest requests", self.rank, dropped)

        if len(self.request_buffer) > STUCK_BUFFER_THRESHOLD:
            self.stuck_count += 1
            if self.stuck_count > STUCK_STEP_LIMIT:
                forced = self._force_process_buffer()
                logger.warning("follower %d force-processed %d stuck requests", self.rank, forced)
                progress = True
                self.stuck_count = 0
        else:
            self.stuck_count = 0

        if len(self.response_buffer) > RESPONSE_BACKLOG_THRESHOLD:
            self.send_batched_client_responses()

        return progress

    def run(self, stop_event: threading.Event) -> None:
        """Loop until the event is set."""
        logger.debug("follower started with rank %d", self.rank)
        while not stop_event.is_set():
            if not self.step():
                time.sleep(_IDLE_SLEEP)