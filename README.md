# hovercraft

A self-contained simulation of a switch-assisted replication pipeline.
A switch fans client requests out to a leader and two followers; the
leader orders them into its log and sends each new entry to a network
aggregator; the aggregator relays the append to both followers, turns
their acknowledgements into commit notices and sends those to the leader
and the followers; and the server that each request named as its
responder answers the client once the entry is committed.

Every component runs in its own thread and talks to the others over an
in-memory network of ranked endpoints and tagged text messages:

| Rank | Component | Class                          |
|------|-----------|--------------------------------|
| 0    | Switch    | `hovercraft.switch.Switch`     |
| 1    | Leader    | `hovercraft.leader.Leader`     |
| 2, 3 | Followers | `hovercraft.follower.Follower` |
| 4    | NetAgg    | `hovercraft.netagg.NetAgg`     |
| 5+   | Clients   | `hovercraft.client.Client`     |

## Installing

```
pip install .
```

The package has no dependencies outside the standard library.

## Running a cluster

```
hovercraft 100
```

starts the five server components and one client that issues requests
1 to 100, then shuts everything down. Without a number each client sends
10000 requests. Set the number of concurrent clients with `-c` /
`--clients` (default 1):

```
hovercraft --clients 3 1000
```

When a client finishes it prints its latency statistics (requests
processed, average, minimum, maximum, P50, P90 and P99, in milliseconds)
followed by its total runtime in seconds. A client that answers 50000
requests also prints an interim report and starts a fresh set of
latencies.

## Using it from Python

```python
from hovercraft.cli import run_cluster

answered = run_cluster(num_clients=2, num_requests=500)
# {5: 500, 6: 500} – answered requests per client rank
```

`run_cluster` raises `ValueError` for fewer than one client, and re-raises
the first error any client thread hit once the cluster has stopped.

### Building blocks

- `hovercraft.transport.Network(size)` holds one mailbox per rank;
  `Network.endpoint(rank)` returns an `Endpoint` with `send(dest, tag, data)`,
  `poll(tag=None, source=None)` (removes and returns the oldest matching
  `Message`, or `None`) and `pending(tag=None, source=None)` (counts matches
  without removing them). Messages are text; a tag or source of `None`
  matches any.
- `hovercraft.protocol` defines the `MessageType` tags, the `Rank` of each
  server component, `RequestID` and `LogEntry`, and the wire helpers
  `split_fields`, `serialize_batched_ids`, `deserialize_batched_ids`,
  `is_client_rank` and `num_server_components`.
- `Switch`, `Leader`, `Follower` and `NetAgg` each take an `Endpoint` and
  expose `step()`, which does one round of work and returns whether
  anything happened, and `run(stop_event)`, which keeps stepping until the
  `threading.Event` is set. Their message handlers
  (`handle_client_request`, `handle_switch_replicate`,
  `handle_append_entries`, `handle_agg_commit`,
  `handle_append_entries_from_leader`, `handle_append_entries_response`,
  …) can be called directly with a `Message`, which makes each component
  easy to drive by hand.
- `Client(endpoint, servers=None, rng=None, clock=time.monotonic, out=None)`
  offers `send_request(value)`, `handle_response(message)`,
  `expire_pending(max_age)` and `run(num_requests)`, which returns the
  number of requests answered. The responder for each request is picked at
  random from `servers` (leader and both followers by default).
- `hovercraft.latency.summarize(latencies)` returns a `LatencyStats`
  (raising `ValueError` on an empty list), and
  `format_report(rank, latencies)` renders the report the clients print.

## Behaviour worth knowing

- One follower acknowledgement is enough for the aggregator to commit an
  entry.
- The components protect themselves under load by discarding work: the
  switch drops its 50 oldest requests when its buffer of 200 fills, the
  leader and followers force buffered requests into their logs when they
  pile up, the aggregator drops old pending entries and can force its
  view of a lagging follower forward, and logs keep only the newest 1000
  entries.
- Clients give up on requests that wait too long (20 s in the receiver,
  30 s while sending, 8–15 s while waiting at the end) and stop waiting
  altogether after 60 s; such requests simply do not count as answered.

## What it does not do

- Everything runs inside one Python process over the in-memory
  `Network`; there is no socket or multi-process transport.
- There is no leader election or failover: the leader is always rank 1
  and every component starts in term 1. The `SHUTDOWN_SIGNAL` tag is
  defined but no component sends or handles it; a cluster stops when
  `run_cluster` sets the shared stop event.
- Nothing is persisted; logs and buffers live in memory only.

## Tests

```
pip install .[test]
pytest
```