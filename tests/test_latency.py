import random

import pytest

from hovercraft.latency import format_report, summarize


def test_summarize_three_values():
    stats = summarize([3.0, 1.0, 2.0])
    assert stats.count == 3
    assert stats.minimum == 1.0
    assert stats.maximum == 3.0
    assert stats.p50 == 2.0
    assert stats.average == pytest.approx(2.0)
    assert stats.p90 == 3.0
    assert stats.p99 == 3.0


def test_summarize_single_value():
    stats = summarize([4.5])
    assert (stats.minimum, stats.maximum, stats.p50, stats.p90, stats.p99) == (4.5,) * 5
    assert stats.average == 4.5


def test_summarize_empty_raises():
    with pytest.raises(ValueError):
        summarize([])


def test_percentiles_are_ordered_and_from_input():
    rng = random.Random(7)
    values = [rng.uniform(0.1, 50.0) for _ in range(257)]
    stats = summarize(values)
    assert stats.minimum <= stats.p50 <= stats.p90 <= stats.p99 <= stats.maximum
    assert {stats.p50, stats.p90, stats.p99} <= set(values)
    assert stats.minimum == min(values)
    assert stats.maximum == max(values)
    assert stats.count == len(values)


def test_summarize_does_not_modify_input():
    values = [3.0, 1.0, 2.0]
    summarize(values)
    assert values == [3.0, 1.0, 2.0]


def test_report_without_responses():
    report = format_report(5, [])
    assert "No responses received." in report
    assert report.startswith("\n=== Client 5 Latency Statistics (ms) ===\n")
    assert report.endswith("==============================\n\n")


def test_report_lines():
    report = format_report(6, [1.0, 2.0, 3.0])
    lines = report.split("\n")
    assert lines[1] == "=== Client 6 Latency Statistics (ms) ==="
    assert lines[2] == "Requests processed: 3"
    assert lines[3] == "Average: 2.000"
    assert lines[4].startswith("Min:")
    assert lines[6].startswith("P50 (Median):")
    assert report.endswith("==============================\n\n")


def test_report_values_match_summary():
    values = [0.25, 10.5, 3.125, 7.0]
    stats = summarize(values)
    report = format_report(9, values)
    assert f"Max:     {stats.maximum:.3f}" in report
    assert f"P99:     {stats.p99:.3f}" in report
    assert f"Requests processed: {len(values)}" in report