# xrayr

Python clients for the web APIs of proxy management panels. A node uses
them to pull its own configuration and user list from the panel, and to
push back traffic counters, online users, node status and audit-rule hits.

Supported panels:

| Module             | Panel      | Node types             |
|--------------------|------------|------------------------|
| `xrayr.pmpanel`    | PMPanel    | V2ray, Trojan, Shadowsocks |
| `xrayr.proxypanel` | ProxyPanel | V2ray, Trojan          |

Each module provides an `APIClient` that implements the abstract
`xrayr.models.API` interface: `get_node_info()`, `get_user_list()`,
`report_node_status()`, `report_node_online_users()`,
`report_user_traffic()`, `get_node_rule()`, `report_illegal()`,
`describe()` and `debug()`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Usage

```python
from xrayr.models import Config, UserTraffic
from xrayr.pmpanel import APIClient

config = Config.from_mapping({
    "ApiHost": "http://localhost:8888",
    "ApiKey": "placeholder",
    "NodeID": 4,
    "NodeType": "V2ray",
    "Timeout": 10,
})
client = APIClient(config)

node = client.get_node_info()
print(node.port, node.transport_protocol, node.enable_tls)

users = client.get_user_list()
client.report_user_traffic(
    [UserTraffic(uid=u.uid, upload=1024, download=2048) for u in users]
)
```

Every client method raises `xrayr.models.APIError` when the request fails,
when the panel answers with an error status, or when the answer cannot be
understood. Requests are retried up to three times on connection errors.
`debug()` makes the client log each request and response through the
standard `logging` module.

### Panel differences

- `xrayr.pmpanel.APIClient` sends the key as a `key` header.
  `report_node_status()` and `report_illegal()` send nothing, since the
  panel takes no such reports.
- `xrayr.proxypanel.APIClient` sends `key` and `timestamp` headers with
  every request. It serves V2ray and Trojan nodes; any other node type
  raises `APIError`. `get_node_rule()` adds the panel's `reg` rules only
  when the panel's rule mode is `reject`, and `report_illegal()` posts one
  request per detection. The Shadowsocks parsers
  (`parse_ss_node_response`, `parse_ss_user_list_response`) are available
  for direct use.

### Configuration

`Config.from_mapping` accepts the keys used in configuration files, matched
without regard to case: `ApiHost`, `NodeID`, `ApiKey`, `NodeType`,
`EnableVless`, `EnableXTLS`, `Timeout` (seconds; the clients use 5 when it
is not positive), `SpeedLimit` (Mbps, overrides the panel's value when
positive), `DeviceLimit` (overrides the panel's value when positive) and
`RuleListPath`. Unknown keys are ignored; values that cannot be converted
raise `APIError`.

When `RuleListPath` names a file, each line becomes a local detection rule
with id `-1`, returned by `get_node_rule()` ahead of the rules the panel
supplies. `read_local_rule_list(path)` performs this step on its own; a
file that cannot be opened is logged and gives no rules.

### Speed limits

Panels express limits in Mbps; the node works in bytes per second.
`speed_limit_to_bps(mbps)` converts one to the other, giving 0 for values
that are not positive.

### Traffic counting

`xrayr.stats.SizeStatWriter(counter, writer)` wraps a writer with a
`write_multi_buffer(buffers)` method and adds the total size of every batch
of buffers written through it to `counter.add()`. `close()` and
`interrupt()` are passed on to the wrapped writer.

## What this package does not do

It contains only the panel clients and the byte-counting writer. It does
not run a proxy node, has no command-line program, and includes clients
for no panels other than the two listed above.