"""A load-generating client that issues numbered requests and measures response latency."""

from __future__ import annotations

import random
import sys
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable, TextIO

from .latency import format_report
from .protocol import BATCH_SIZE, STATS_INTERVAL, MessageType, Rank, _stoi, split_fields
from .transport import Endpoint, Message

MAX_PENDING_REQUESTS = 15 * BATCH_SIZE
STALL_FORCE_SECONDS = 2.0
MAX_REQUEST_DELAY_US = 1000.0
FEW_PENDING = 50
SEND_SWEEP_INTERVAL = 10.0
SEND_TIMEOUT = 30
RECEIVER_SWEEP_INTERVAL = 10.0
RECEIVER_TIMEOUT = 20
WAIT_SWEEP_INTERVAL = 5.0
WAIT_TIMEOUT_FEW = 8
WAIT_TIMEOUT_MANY = 15
WAIT_GIVE_UP_SECONDS = 60.0
MAX_PROBE_DELAY_US = 100
EMPTY_PROBES_PER_BACKOFF = 1000
DEFAULT_SERVERS = (Rank.LEADER, Rank.FOLLOWER1, Rank.FOLLOWER2)

_CAPACITY_SLEEP = 0.0001
_WAIT_SLEEP = 0.0005


@dataclass(frozen=True)
class _Pending:
    respond_to: int
    started: float


class Client:
    """Sends requests through the switch and records how long each takes to be answered.

    Every request names one server, chosen at random, that must answer it.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        servers: Iterable[int] | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        out: TextIO | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.rank = endpoint.rank
        self.servers = tuple(int(server) for server in (DEFAULT_SERVERS if servers is None else servers))
        if not self.servers:
            raise ValueError("a client needs at least one server to answer it")
        self._rng = rng if rng is not None else random.Random()
        self._clock = clock
        self._out = out
        self._lock = threading.RLock()
        self.pending: dict[int, _Pending] = {}
        self.latencies: list[float] = []
        self.processed_count = 0
        self._request_delay_us = 0.0

    def _write(self, text: str) -> None:
        (self._out if self._out is not None else sys.stdout).write(text)

    def send_request(self, value: int) -> int:
        """Send request "value|respondTo|pv_value" to the switch; return the chosen responder."""
        respond_to = self._rng.choice(self.servers)
        data = f"{value}|{respond_to}|pv_{value}"
        with self._lock:
            self.pending[value] = _Pending(respond_to, self._clock())
        self.endpoint.send(Rank.SWITCH, MessageType.CLIENT_REQUEST, data)
        return respond_to

    def handle_response(self, message: Message) -> int:
        """Settle requests named in a "SUCCESS|value|payload|..." reply; return how many matched.

        Replies that are not well-formed are ignored; a value that is not an
        integer raises ValueError.
        """
        parts = split_fields(message.data, "|")
        if not parts or parts[0] != "SUCCESS" or len(parts) < 3 or (len(parts) - 1) % 2 != 0:
            return 0

        matched = 0
        with self._lock:
            for value_text in parts[1::2]:
                value = _stoi(value_text)
                request = self.pending.pop(value, None)
                if request is None:
                    continue
                elapsed_us = int((self._clock() - request.started) * 1_000_000)
                self.latencies.append(elapsed_us / 1000.0)
                matched += 1
                self.processed_count += 1
                if self.processed_count % STATS_INTERVAL == 0:
                    self._write(
                        f"\n--- Client {self.rank} Statistics for interval ending at "
                        f"{self.processed_count} total requests ---\n"
                    )
                    self._write(format_report(self.rank, self.latencies))
                    self.latencies.clear()
        return matched

    def expire_pending(self, max_age: float) -> Counter[int]:
        """Drop requests waiting more than max_age whole seconds; count the drops by responder."""
        dropped: Counter[int] = Counter()
        with self._lock:
            now = self._clock()
            for value, request in list(self.pending.items()):
                if int(now - request.started) > max_age:
                    del self.pending[value]
                    dropped[request.respond_to] += 1
        return dropped

    def _pending_count(self) -> int:
        with self._lock:
            return len(self.pending)

    def _receive_loop(self, stop: threading.Event) -> None:
        probe_delay_us = 0
        empty_probes = 0
        last_sweep = self._clock()
        while not stop.is_set():
            message = self.endpoint.poll(MessageType.CLIENT_RESPONSE)
            if message is not None:
                self.handle_response(message)
                empty_probes = 0
                probe_delay_us = 0
            else:
                empty_probes += 1
                if empty_probes > EMPTY_PROBES_PER_BACKOFF:
                    probe_delay_us = min(probe_delay_us + 1, MAX_PROBE_DELAY_US)
                    empty_probes = 0

            now = self._clock()
            if now - last_sweep >= RECEIVER_SWEEP_INTERVAL:
                self.expire_pending(RECEIVER_TIMEOUT)
                last_sweep = now

            if probe_delay_us:
                time.sleep(probe_delay_us / 1_000_000)

    def _wait_for_capacity(self) -> None:
        started = self._clock()
        while True:
            pending = self._pending_count()
            if pending <= MAX_PENDING_REQUESTS:
                return
            if self._clock() - started > STALL_FORCE_SECONDS:
                step = 50.0 if pending < FEW_PENDING else 25.0
                self._request_delay_us = min(self._request_delay_us + step, MAX_REQUEST_DELAY_US)
                return
            time.sleep(_CAPACITY_SLEEP)

    def _wait_for_responses(self) -> None:
        started = self._clock()
        last_sweep = started
        while True:
            pending = self._pending_count()
            if pending == 0:
                return
            now = self._clock()
            if now - last_sweep >= WAIT_SWEEP_INTERVAL:
                self.expire_pending(WAIT_TIMEOUT_FEW if pending < FEW_PENDING else WAIT_TIMEOUT_MANY)
                last_sweep = now
            if now - started > WAIT_GIVE_UP_SECONDS:
                with self._lock:
                    self.pending.clear()
                return
            time.sleep(_WAIT_SLEEP)

    def run(self, num_requests: int) -> int:
        """Issue requests 1..num_requests, wait for the answers, print the report.

        Returns the number of requests that were answered.
        """
        stop = threading.Event()
        receiver = threading.Thread(
            target=self._receive_loop, args=(stop,), name=f"client-{self.rank}-receiver", daemon=True
        )
        receiver.start()
        try:
            last_sweep = self._clock()
            for value in range(1, num_requests + 1):
                self._wait_for_capacity()
                self.send_request(value)

                if self._request_delay_us > 0.0:
                    time.sleep(self._request_delay_us / 1_000_000)
                    self._request_delay_us = max(0.0, self._request_delay_us - 1.0)

                now = self._clock()
                if now - last_sweep >= SEND_SWEEP_INTERVAL:
                    self.expire_pending(SEND_TIMEOUT)
                    last_sweep = now

            self._wait_for_responses()
        finally:
            stop.set()
            receiver.join()

        with self._lock:
            self._write(format_report(self.rank, self.latencies))
            return self.processed_count