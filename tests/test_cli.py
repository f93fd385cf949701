import pytest

from hovercraft.cli import main, run_cluster


def test_run_cluster_single_request_round_trip(capsys):
    results = run_cluster(1, 1)
    assert results == {5: 1}
    output = capsys.readouterr().out
    assert "Starting HoverCraft++ with 1 concurrent client(s)" in output
    assert "Client 5 total runtime:" in output
    assert "Last client completed. System will shutdown..." in output
    assert "Requests processed: 1" in output


def test_run_cluster_without_requests(capsys):
    results = run_cluster(1, 0)
    assert results == {5: 0}
    assert "No responses received." in capsys.readouterr().out


def test_run_cluster_needs_a_client():
    with pytest.raises(ValueError):
        run_cluster(0, 5)


def test_main_runs_and_returns_zero(capsys):
    assert main(["1"]) == 0
    assert "Requests processed: 1" in capsys.readouterr().out


def test_main_rejects_zero_clients():
    with pytest.raises(SystemExit) as info:
        main(["--clients", "0", "1"])
    assert info.value.code == 2


def test_main_rejects_non_integer_request_count():
    with pytest.raises(SystemExit) as info:
        main(["many"])
    assert info.value.code == 2