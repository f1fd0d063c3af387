# brubeck

A statsd-compatible metrics aggregator. It listens for metrics over UDP,
aggregates them in memory and, on a fixed schedule per backend, forwards the
aggregated values to Carbon (plaintext or pickle protocol), a timestamp-aware
Carbon variant, or a Datadog agent.

## Installing

```
pip install .
```

Python 3.10 or later is required. The package has no third-party dependencies.

## Running the server

```
brubeck --config config.default.json --log /var/log/brubeck.log
```

Options:

- `--config FILE` (`-c`): the JSON configuration file; `config.default.json` by default.
- `--log FILE` (`-l`): append log lines to `FILE`; the value `syslog` sends them to syslog.
  Without it, logs go to standard error.
- `--version` (`-v`): print `brubeck <installed version>` and exit.

An unknown option prints the usage line and exits with status 1. A
configuration that cannot be loaded prints a `[FATAL]: ...` line on standard
error and exits with status 1.

While running (and when started from the main thread), the server reacts to
signals:

- `SIGHUP` reopens the log file (for log rotation).
- `SIGUSR2` writes every known metric as a `key|type` line to the configured `dumpfile`.
- `SIGINT` / `SIGTERM` stop the server; backends and samplers are shut down.

Once a second every sampler's packet count is published as its current flow,
and a status line (bytes sent per Carbon backend, packets per second per
sampler) is recomputed. It is available from `Server.proctitle()` and, as
`brubeck -- <status>`, from `brubeck.server.get_proctitle()`.

## Configuration

```json
{
  "server_name": "brubeck_debug",
  "dumpfile": "./brubeck.dump",
  "capacity": 15,
  "log_all_metrics": 0,
  "log_all_regex": "^app\\.",
  "backends": [
    {"type": "carbon", "address": "localhost", "port": 2003, "frequency": 10, "pickle": false, "expire": 1},
    {"type": "rwi_carbon", "address": "localhost", "port": 2003, "frequency": 10},
    {"type": "datadog", "address": "127.0.0.1", "port": 8125, "frequency": 10,
     "filter": "^app\\.", "tags": "env:dev", "tagify": 0}
  ],
  "samplers": [
    {"type": "statsd", "address": "0.0.0.0", "port": 8126, "workers": 4, "multimsg": 1, "multisock": false},
    {"type": "rwid", "address": "0.0.0.0", "port": 8127}
  ]
}
```

Top-level keys: `dumpfile`, `capacity` (the metric table is sized
`2 ** capacity`), `backends` and `samplers` are required. `server_name`
(default `brubeck`, also used as the log `instance=`), `log_all_metrics` and
`log_all_regex` are optional. With `log_all_metrics` above zero, every
accepted and rejected metric is logged; `log_all_regex` limits the accepted
ones logged to keys it matches. At least one backend is needed, and at most
eight backends and eight samplers. Entries with an unknown `type` are logged
and skipped.

Backends:

- `carbon`: `address`, `port`, `frequency` required; `pickle` selects the
  pickle protocol instead of plaintext; `expire` turns idle metrics inactive
  and clears their values after each round.
- `rwi_carbon`: `address`, `port`, `frequency` required; `expire` optional.
  Sends each metric with its own timestamp when one was given.
- `datadog`: `filter` (a Python regular expression, searched in each key) is
  required; only matching keys are sent, as gauges. `address` (default
  `127.0.0.1`), `port` (default `8125`), `frequency` (default `10`), `tags`,
  `tagify` (adds `m_0:…`, `m_1:…` tags from the dot-separated key parts) and
  `expire` are optional.

Samplers (`statsd` and `rwid`): `address` and `port` required; `workers`
(default 4), `multimsg` (default 1; above 1 a worker reads several queued
packets at once) and `multisock` (one socket per worker with `SO_REUSEPORT`)
optional.

## Wire format

Each line of a UDP packet is one metric:

```
key:value|type[|@sample_rate]
```

Types: `g` gauge, `c` meter, `C` counter, `h` histogram, `ms` timer, `m`
telemetry. A leading `+` or `-` on a gauge value makes it relative. The
sample rate must lie in `(0, 1]`. The `rwid` sampler also accepts a trailing
`|T<seconds since epoch>`; metrics with different timestamps are aggregated
separately under the key `key|timestamp|`.

Histograms, timers and telemetry report `.count`, `.min`, `.max`, `.sum`,
`.mean`, `.median` and `.percentile.{5,10,25,75,90,95,99}`; when no value
arrived in a round only `.count` is sent.

## Using the library

```python
from brubeck.statsd import parse_message, ParseError
from brubeck.histogram import Histogram
from brubeck.utils import ftoa

msg = parse_message("this.is.sparta:23.23|g|@0.25")
print(msg.key, msg.value, msg.sample_freq)   # this.is.sparta 23.23 4.0

try:
    parse_message("bad key:1|g")
except ParseError:
    pass

h = Histogram()
for v in (1.0, 2.0, 3.0):
    h.push(v, 1.0)
print(h.sample().median)                     # 2.0

print(ftoa(15.5))                            # 15.5
```

Other building blocks: `brubeck.rwid.parse_rwid_message`,
`brubeck.carbon.PicklePayload` and `format_plaintext`,
`brubeck.datadog.format_datadog`, `brubeck.cityhash.city_hash32`,
`brubeck.bloom.MultiBloom` and `brubeck.statsd_secure.SecureStatsdSampler`
(HMAC-SHA256 signed packets with timestamp and replay checks).

## Test tools

- `brubeck-balancer [--listen HOST:PORT] HOST:PORT...` copies each received UDP
  packet to up to four targets.
- `brubeck-udp-stress IP PORT` floods a server with random metrics from four
  threads and prints the send rate.
- `brubeck-secure-send IP PORT METRIC` sends one metric signed with the key
  `secret`, dated two seconds in the past.

## What it does not do

- The status line is kept inside the process; the name shown by `ps` is not changed.
- The signed-packet sampler cannot be chosen in the configuration file; only
  `statsd` and `rwid` samplers are loaded from it. `SecureStatsdSampler` has to
  be created from code.

## Running the tests

```
pip install .[test]
pytest
```