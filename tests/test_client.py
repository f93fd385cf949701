import contextlib
import io
import random
import threading

import pytest

from hovercraft.client import Client
from hovercraft.protocol import MessageType, Rank, split_fields
from hovercraft.transport import Network

CLIENT_RANK = 5


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_client(clock=None, out=None):
    network = Network(6)
    client = Client(
        network.endpoint(CLIENT_RANK),
        rng=random.Random(1),
        clock=clock if clock is not None else FakeClock(),
        out=out if out is not None else io.StringIO(),
    )
    return network, client


@contextlib.contextmanager
def echo_servers(network):
    stop = threading.Event()
    switch = network.endpoint(Rank.SWITCH)

    def serve():
        while not stop.is_set():
            message = switch.poll(MessageType.CLIENT_REQUEST)
            if message is None:
                stop.wait(0.0005)
                continue
            value, respond_to, payload = split_fields(message.data, "|")
            network.endpoint(int(respond_to)).send(
                message.source, MessageType.CLIENT_RESPONSE, f"SUCCESS|{value}|{payload}"
            )

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield
    finally:
        stop.set()
        thread.join()


def test_send_request_wire_format():
    network, client = make_client()
    respond_to = client.send_request(7)
    assert respond_to in (Rank.LEADER, Rank.FOLLOWER1, Rank.FOLLOWER2)
    message = network.endpoint(Rank.SWITCH).poll(MessageType.CLIENT_REQUEST)
    assert message.source == CLIENT_RANK
    assert message.data == f"7|{respond_to}|pv_7"
    assert set(client.pending) == {7}


def test_handle_response_records_latency():
    clock = FakeClock(1.0)
    _, client = make_client(clock=clock)
    responder = client.send_request(3)
    clock.now = 1.25
    matched = client.handle_response(
        network_message(responder, "SUCCESS|3|pv_3")
    )
    assert matched == 1
    assert client.pending == {}
    assert client.processed_count == 1
    assert client.latencies == [pytest.approx(250.0)]


def network_message(source, data):
    from hovercraft.transport import Message

    return Message(source, int(MessageType.CLIENT_RESPONSE), data)


def test_handle_response_batch_settles_all_named():
    _, client = make_client()
    for value in (1, 2, 3):
        client.send_request(value)
    matched = client.handle_response(network_message(Rank.LEADER, "SUCCESS|1|pv_1|3|pv_3"))
    assert matched == 2
    assert set(client.pending) == {2}
    assert len(client.latencies) == 2


@pytest.mark.parametrize(
    "data",
    ["FAIL|1|pv_1", "SUCCESS|1", "SUCCESS|1|pv_1|2", "", "SUCCESS"],
)
def test_malformed_responses_are_ignored(data):
    _, client = make_client()
    client.send_request(1)
    assert client.handle_response(network_message(Rank.LEADER, data)) == 0
    assert set(client.pending) == {1}
    assert client.processed_count == 0


def test_unknown_value_is_ignored():
    _, client = make_client()
    client.send_request(1)
    assert client.handle_response(network_message(Rank.LEADER, "SUCCESS|99|pv_99")) == 0
    assert set(client.pending) == {1}


def test_non_integer_value_raises():
    _, client = make_client()
    client.send_request(1)
    with pytest.raises(ValueError):
        client.handle_response(network_message(Rank.LEADER, "SUCCESS|abc|pv_1"))


def test_expire_pending_counts_by_responder():
    clock = FakeClock(0.0)
    _, client = make_client(clock=clock)
    responders = [client.send_request(1), client.send_request(2)]
    clock.now = 10.5
    client.send_request(3)
    clock.now = 21.0
    dropped = client.expire_pending(20)
    assert sum(dropped.values()) == 2
    expected = {}
    for responder in responders:
        expected[responder] = expected.get(responder, 0) + 1
    assert dict(dropped) == expected
    assert set(client.pending) == {3}


def test_expire_pending_uses_whole_seconds():
    clock = FakeClock(0.0)
    _, client = make_client(clock=clock)
    client.send_request(1)
    clock.now = 20.9
    assert sum(client.expire_pending(20).values()) == 0
    assert set(client.pending) == {1}


def test_empty_servers_rejected():
    network = Network(6)
    with pytest.raises(ValueError):
        Client(network.endpoint(CLIENT_RANK), servers=[])


def test_run_with_echo_servers_answers_everything():
    out = io.StringIO()
    network = Network(6)
    client = Client(network.endpoint(CLIENT_RANK), rng=random.Random(2), out=out)
    with echo_servers(network):
        answered = client.run(5)
    assert answered == 5
    assert client.pending == {}
    report = out.getvalue()
    assert "=== Client 5 Latency Statistics (ms) ===" in report
    assert "Requests processed: 5" in report


def test_run_without_requests_reports_nothing():
    out = io.StringIO()
    network = Network(6)
    client = Client(network.endpoint(CLIENT_RANK), out=out)
    assert client.run(0) == 0
    assert "No responses received." in out.getvalue()
    assert network.endpoint(Rank.SWITCH).pending() == 0