import pytest

from hovercraft.protocol import (
    LogEntry,
    MessageType,
    Rank,
    RequestID,
    deserialize_batched_ids,
    is_client_rank,
    num_server_components,
    serialize_batched_ids,
    split_fields,
)


def test_request_id_orders_by_client_rank_first():
    low = RequestID(value=9, term=3, client_rank=5)
    high = RequestID(value=1, term=1, client_rank=6)
    assert low < high
    assert sorted([high, low]) == [low, high]


def test_request_id_orders_by_term_then_value():
    a = RequestID(value=9, term=1, client_rank=5)
    b = RequestID(value=1, term=2, client_rank=5)
    c = RequestID(value=2, term=2, client_rank=5)
    assert sorted([c, b, a]) == [a, b, c]


def test_request_id_equality_and_hash():
    a = RequestID(4, 1, 7)
    b = RequestID(4, 1, 7)
    assert a == b
    assert len({a, b}) == 1
    assert a != RequestID(4, 1, 8)


def test_log_entry_defaults():
    entry = LogEntry()
    assert (entry.term, entry.value, entry.payload, entry.client_rank, entry.respond_to) == (
        0,
        0,
        "",
        -1,
        -1,
    )


def test_serialize_single_id_wire_form():
    assert serialize_batched_ids([RequestID(1, 2, 5)]) == "1,2,5"


def test_serialize_joins_with_semicolons():
    text = serialize_batched_ids([RequestID(1, 1, 5), RequestID(2, 1, 6)])
    assert text.count(";") == 1
    assert text.split(";")[0] == serialize_batched_ids([RequestID(1, 1, 5)])


def test_serialize_empty():
    assert serialize_batched_ids([]) == ""


def test_round_trip():
    ids = [RequestID(v, v % 3 + 1, 5 + v % 2) for v in range(1, 20)]
    assert deserialize_batched_ids(serialize_batched_ids(ids)) == ids


def test_deserialize_empty_string():
    assert deserialize_batched_ids("") == []


def test_deserialize_skips_malformed_records():
    good = RequestID(3, 1, 5)
    text = "1,2;" + serialize_batched_ids([good]) + ";x,1,5;;4,5,6,7"
    assert deserialize_batched_ids(text) == [good]


def test_deserialize_skips_out_of_range_numbers():
    text = "99999999999,1,5;" + serialize_batched_ids([RequestID(1, 1, 5)])
    assert deserialize_batched_ids(text) == [RequestID(1, 1, 5)]


def test_split_fields_drops_trailing_empty_field():
    assert split_fields("a|b|", "|") == ["a", "b"]


def test_split_fields_keeps_inner_and_leading_empty_fields():
    assert split_fields("|a||b", "|") == ["", "a", "", "b"]


def test_split_fields_empty_text():
    assert split_fields("", "|") == []


def test_split_fields_round_trip_without_trailing_empty():
    fields = ["SUCCESS", "12", "pv_12"]
    assert split_fields("|".join(fields), "|") == fields


@pytest.mark.parametrize("rank", [0, 1, 2, 3, 4])
def test_server_ranks_are_not_clients(rank):
    assert is_client_rank(rank) is False


@pytest.mark.parametrize("rank", [5, 6, 100])
def test_client_ranks(rank):
    assert is_client_rank(rank) is True


def test_num_server_components_matches_first_client_rank():
    assert num_server_components() == 5
    assert is_client_rank(num_server_components())
    assert not is_client_rank(num_server_components() - 1)


def test_enums_are_usable_as_ints():
    assert Rank.NETAGG + 1 == num_server_components()
    assert MessageType(7) is MessageType.CLIENT_RESPONSE