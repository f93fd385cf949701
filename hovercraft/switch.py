"""The switch: accepts client requests and replicates them to every server."""

from __future__ import annotations

import logging
import threading
import time

from .protocol import LogEntry, MessageType, Rank, RequestID, _stoi, split_fields
from .transport import Endpoint, Message

logger = logging.getLogger(__name__)

MAX_BUFFER_SIZE = 200
MAX_PROCESS_PER_CYCLE = 10
PRUNE_INTERVAL = 5000
RETAIN_WINDOW = 20000
EMERGENCY_DROP = 50
NEAR_FULL_RATIO = 0.9
REPLICA_TARGETS = (Rank.LEADER, Rank.FOLLOWER1, Rank.FOLLOWER2)

_IDLE_SLEEP = 0.0005


class Switch:
    """Orders incoming client requests and fans each one out to the replicas once."""

    def __init__(self, endpoint: Endpoint) -> None:
        self.endpoint = endpoint
        self.rank = endpoint.rank
        self.term = 1
        self.buffer: dict[RequestID, LogEntry] = {}
        self.sent_record: dict[int, set[RequestID]] = {int(server): set() for server in REPLICA_TARGETS}
        self.replicated_count = 0
        self.no_progress_count = 0

    def handle_client_request(self, message: Message) -> bool:
        """Buffer a "value|respondTo|payload" request; return whether it was new.

        Malformed requests with fewer than three fields are ignored; fields
        that are not integers raise ValueError.
        """
        parts = split_fields(message.data, "|")
        if len(parts) < 3:
            logger.debug("malformed client request: %r", message.data)
            return False
        value = _stoi(parts[0])
        respond_to = _stoi(parts[1])
        payload = parts[2]

        rid = RequestID(value, self.term, message.source)
        if rid in self.buffer:
            logger.debug("duplicate request %d from client %d ignored", value, message.source)
            return False
        self.buffer[rid] = LogEntry(self.term, value, payload, message.source, respond_to)
        return True

    def _send_replicate(self, dest: int, rid: RequestID, entry: LogEntry) -> None:
        data = f"{rid.value}|{rid.term}|{entry.payload}|{entry.client_rank}|{entry.respond_to}"
        self.endpoint.send(dest, MessageType.SWITCH_REPLICATE, data)

    def _prune_sent_records(self, latest_value: int) -> None:
        threshold = latest_value - RETAIN_WINDOW
        if threshold <= 0:
            return
        for server, sent in self.sent_record.items():
            self.sent_record[server] = {rid for rid in sent if rid.value >= threshold}

    def replicate_buffered(self) -> bool:
        """Send up to a cycle's worth of buffered requests to every replica.

        A request is removed from the buffer once it has gone to at least one
        replica; one already sent to all of them stays buffered.
        """
        if not self.buffer:
            return False

        progress = False
        processed = 0
        for rid in sorted(self.buffer):
            if processed >= MAX_PROCESS_PER_CYCLE:
                break
            entry = self.buffer[rid]
            sent_any = False
            for server in REPLICA_TARGETS:
                sent = self.sent_record[int(server)]
                if rid not in sent:
                    self._send_replicate(int(server), rid, entry)
                    sent.add(rid)
                    sent_any = True

            if sent_any:
                del self.buffer[rid]
                self.replicated_count += 1
                progress = True
                processed += 1

            if self.replicated_count > 0 and self.replicated_count % PRUNE_INTERVAL == 0:
                self._prune_sent_records(rid.value)
        return progress

    def _drop_oldest(self) -> int:
        victims = sorted(self.buffer)[:EMERGENCY_DROP]
        for rid in victims:
            del self.buffer[rid]
        return len(victims)

    def step(self) -> bool:
        """Run one pass of the event loop; return whether anything was done."""
        progress = False

        if len(self.buffer) < MAX_BUFFER_SIZE:
            message = self.endpoint.poll(MessageType.CLIENT_REQUEST)
            if message is not None:
                self.handle_client_request(message)
                progress = True

        if self.replicate_buffered():
            progress = True

        if progress:
            self.no_progress_count = 0
        else:
            self.no_progress_count += 1

        if len(self.buffer) >= MAX_BUFFER_SIZE * NEAR_FULL_RATIO and len(self.buffer) >= MAX_BUFFER_SIZE:
            dropped = self._drop_oldest()
            logger.warning("switch buffer full, dropped %d oldest requests", dropped)

        return progress

    def run(self, stop_event: threading.Event) -> None:
        """Loop until the event is set."""
        logger.debug("switch started with rank %d", self.rank)
        while not stop_event.is_set():
            if not self.step():
                time.sleep(_IDLE_SLEEP)