"""Command-line entry point that runs a whole cluster in one process."""

from __future__ import annotations

import argparse
import threading
import time

from .client import Client
from .follower import Follower
from .leader import Leader
from .netagg import NetAgg
from .protocol import Rank, num_server_components
from .switch import Switch
from .transport import Network

DEFAULT_REQUESTS = 10000
_RULE = "=" * 30


def run_cluster(num_clients: int, num_requests: int) -> dict[int, int]:
    """Run the switch, leader, two followers, aggregator and clients until every client is done.

    Returns the number of answered requests for each client rank.
    """
    if num_clients < 1:
        raise ValueError("at least one client is required")

    size = num_server_components() + num_clients
    network = Network(size)
    stop = threading.Event()
    print_lock = threading.Lock()

    components = [
        Switch(network.endpoint(Rank.SWITCH)),
        Leader(network.endpoint(Rank.LEADER)),
        Follower(network.endpoint(Rank.FOLLOWER1)),
        Follower(network.endpoint(Rank.FOLLOWER2)),
        NetAgg(network.endpoint(Rank.NETAGG)),
    ]
    server_threads = [
        threading.Thread(target=component.run, args=(stop,), name=f"rank-{component.rank}", daemon=True)
        for component in components
    ]

    print(f"Starting HoverCraft++ with {num_clients} concurrent client(s)")

    results: dict[int, int] = {}
    errors: list[BaseException] = []

    def run_client(rank: int) -> None:
        try:
            started = time.monotonic()
            answered = Client(network.endpoint(rank)).run(num_requests)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            with print_lock:
                print(f"\n{_RULE}")
                print(f"Client {rank} total runtime: {elapsed_ms / 1000.0:.3f} seconds.")
                print(f"{_RULE}\n")
                if rank == size - 1:
                    print("Last client completed. System will shutdown...")
                results[rank] = answered
        except BaseException as error:  # surfaced to the caller after shutdown
            errors.append(error)

    client_threads = [
        threading.Thread(target=run_client, args=(rank,), name=f"rank-{rank}", daemon=True)
        for rank in range(num_server_components(), size)
    ]

    for thread in server_threads:
        thread.start()
    try:
        for thread in client_threads:
            thread.start()
        for thread in client_threads:
            thread.join()
    finally:
        stop.set()
        for thread in server_threads:
            thread.join()

    if errors:
        raise errors[0]
    return results


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run a cluster."""
    parser = argparse.ArgumentParser(
        prog="hovercraft",
        description="Run a switch, a leader, two followers, an aggregator and clients in one process.",
    )
    parser.add_argument(
        "num_requests", nargs="?", type=int, default=DEFAULT_REQUESTS,
        help=f"requests each client sends (default {DEFAULT_REQUESTS})",
    )
    parser.add_argument("-c", "--clients", type=int, default=1, help="number of concurrent clients (default 1)")
    args = parser.parse_args(argv)
    if args.clients < 1:
        parser.error("at least one client is required")
    run_cluster(args.clients, args.num_requests)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())