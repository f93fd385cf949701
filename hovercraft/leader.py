"""The leader: orders replicated requests into its log and ships them to the aggregator."""

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
    RequestID,
    _stoi,
    serialize_batched_ids,
    split_fields,
)
from .transport import Endpoint, Message

logger = logging.getLogger(__name__)

EMERGENCY_BUFFER_THRESHOLD = 10
FORCE_PROCESS_THRESHOLD = 5
FORCE_IMMEDIATE_RESPONSES = 5
ULTRA_FAST_MS = 1

_IDLE_SLEEP = 0.0005


class Leader:
    """Appends requests from the switch to its log and answers clients on commit."""

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self.rank = endpoint.rank
        self.term = 1
        self.log: deque[LogEntry] = deque()
        self.log_start = 0
        self.commit_index = -1
        self.last_sent_index = -1
        self.next_index: dict[int, int] = {int(Rank.FOLLOWER1): 1, int(Rank.FOLLOWER2): 1}
        self.match_index: dict[int, int] = {int(Rank.FOLLOWER1): -1, int(Rank.FOLLOWER2): -1}
        self.unordered: set[RequestID] = set()
        self.request_buffer: dict[RequestID, LogEntry] = {}
        self.response_buffer: list[LogEntry] = []
        self._batch_started: float | None = None
        self.no_progress_count = 0

    @property
    def last_log_index(self) -> int:
        """Absolute 0-based index of the newest log entry, or -1 when the log is empty."""
        return self.log_start + len(self.log) - 1 if self.log else -1

    def _append(self, entry: LogEntry) -> None:
        self.log.append(entry)
        if len(self.log) > LOG_MAX_SIZE:
            self.log.popleft()
            self.log_start += 1

    def handle_switch_replicate(self, message: Message) -> bool:
        """Buffer a "value|term|payload|clientRank|respondTo" record; return whether it was new."""
        parts = split_fields(message.data, "|")
        if len(parts) < 5:
            return False
        value = _stoi(parts[0])
        term = _stoi(parts[1])
        payload = parts[2]
        client_rank = _stoi(parts[3])
        respond_to = _stoi(parts[4])

        rid = RequestID(value, term, client_rank)
        if rid in self.request_buffer:
            return False
        self.request_buffer[rid] = LogEntry(term, value, payload, client_rank, respond_to)
        self.unordered.add(rid)
        return True

    def process_unordered(self) -> bool:
        """Move every buffered unordered request into the log under the current term."""
        if not self.unordered:
            return False
        processed = 0
        for rid in sorted(self.unordered):
            entry = self.request_buffer.pop(rid, None)
            if entry is None:
                continue
            self._append(
                LogEntry(self.term, entry.value, entry.payload, entry.client_rank, entry.respond_to)
            )
            processed += 1
        self.unordered.clear()
        return processed > 0

    def send_to_netagg(self) -> bool:
        """Send the next batch of unsent log entries to the aggregator."""
        # Entries that fell off the front of the bounded log can no longer be sent.
        if self.last_sent_index + 1 < self.log_start:
            self.last_sent_index = self.log_start - 1
        next_index = self.last_sent_index + 1
        last_index = self.log_start + len(self.log) - 1
        if next_index > last_index:
            return False

        batch = [
            self.log[absolute - self.log_start]
            for absolute in range(next_index, min(next_index + BATCH_SIZE, last_index + 1))
        ]
        if not batch:
            return False
        batch_ids = [RequestID(entry.value, entry.term, entry.client_rank) for entry in batch]

        prev_log_index = next_index
        prev_log_term = 0
        if prev_log_index > 0:
            prev_pos = prev_log_index - 1 - self.log_start
            if 0 <= prev_pos < len(self.log):
                prev_log_term = self.log[prev_pos].term

        data = "|".join(
            (
                str(self.term),
                str(prev_log_index),
                str(prev_log_term),
                str(next_index + 1),
                serialize_batched_ids(batch_ids),
                str(self.commit_index),
                str(self.rank),
            )
        )
        self.endpoint.send(Rank.NETAGG, MessageType.APPEND_ENTRIES_NETAGG_REQUEST, data)
        self.last_sent_index += len(batch_ids)
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
        for index in range(old_commit + 1, self.commit_index + 1):
            if index >= self.log_start:
                entry = self.log[index - self.log_start]
                if entry.respond_to == self.rank:
                    self.response_buffer.append(entry)
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

    def _force_process_buffer(self) -> int:
        processed = 0
        for rid in sorted(self.request_buffer):
            entry = self.request_buffer[rid]
            self._append(
                LogEntry(self.term, entry.value, entry.payload, entry.client_rank, entry.respond_to)
            )
            processed += 1
        self.request_buffer.clear()
        self.unordered.clear()
        return processed

    def step(self) -> bool:
        """Run one pass of the event loop; return whether anything was done."""
        progress = False

        message = self.endpoint.poll(MessageType.SWITCH_REPLICATE, Rank.SWITCH)
        if message is not None:
            self.handle_switch_replicate(message)
            progress = True

        message = self.endpoint.poll(MessageType.AGG_COMMIT, Rank.NETAGG)
        if message is not None:
            self.handle_agg_commit(message)
            progress = True

        if self.process_unordered():
            progress = True
        if self.send_to_netagg():
            progress = True
        if self.send_batched_client_responses():
            progress = True

        if progress:
            self.no_progress_count = 0
        else:
            self.no_progress_count += 1

        if len(self.request_buffer) > EMERGENCY_BUFFER_THRESHOLD:
            self.process_unordered()
            if len(self.request_buffer) > FORCE_PROCESS_THRESHOLD:
                forced = self._force_process_buffer()
                logger.warning("leader force-processed %d buffered requests", forced)

        return progress

    def run(self, stop_event: threading.Event) -> None:
        """Loop until the event is set."""
        logger.debug("leader started with rank %d, term %d", self.rank, self.term)
        while not stop_event.is_set():
            if not self.step():
                time.sleep(_IDLE_SLEEP)