# telemetrynet

A small TCP relay for telemetry. Clients connect to a server and send
telemetry packets. The server stamps each packet with the sender's slot
index and passes it on to every other connected client. It also tells
clients when peers join and leave.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Running

Start a server. Give it an address to listen on, or `+` to listen on every
address the system offers, followed by a port or service name:

```
telemetrynet-server + 5000
```

The server holds up to four clients at once. A connection that arrives when
every slot is taken is closed straight away.

Start one or more clients against it:

```
telemetrynet-client localhost 5000
```

Every half second each client sends a telemetry packet and logs how many
peers it currently knows about. The client runs until its connection ends.
Press Ctrl-C to stop either program.

## Wire format

Every packet begins with a 16-byte header. All header fields are big-endian.

| offset | size | field  |
|--------|------|--------|
| 0      | 2    | type (`PacketType.STATUS` or `PacketType.DATA`) |
| 2      | 2    | code (`StatusCode` or `DataCode`) |
| 4      | 4    | total packet length, header included |
| 8      | 4    | CRC-32C of the first 8 header bytes |
| 12     | 4    | reserved |

The payload, if there is one, follows the header. The payloads are
little-endian:

- `DataCode.NEW_CONN` and `DataCode.DEL_CONN`: a 4-byte source index.
- `DataCode.TELEMETRY`: a 4-byte source index, three 4-byte floats of
  position and four 4-byte floats of orientation.

A receiver drops the connection when a header fails its CRC check.

## Connection upkeep

If an endpoint has sent nothing for five seconds it sends a
`StatusCode.CONFIRM` status packet. If it has received nothing for ten
seconds it closes the connection. Both intervals can be changed through the
`confirm_timeout` and `watchdog_timeout` arguments of `EndpointContext` and
`Server`.

## Library use

The packet helpers live in `telemetrynet.protocol`:

```python
from telemetrynet.protocol import (
    DataCode, Telemetry, telemetry_packet, packet_ok, packet_code,
    set_telemetry_src, src_index_of,
)

packet = telemetry_packet(Telemetry(src_index=0))
assert packet_ok(packet)
assert packet_code(packet) == DataCode.TELEMETRY
packet = set_telemetry_src(packet, 2)
assert src_index_of(packet) == 2
```

Packets are plain `bytes`. Functions that change a packet, such as `seal` and
`set_telemetry_src`, return a new one.

The connection machinery is in `telemetrynet.endpoint`. `EndpointContext`
owns a fixed number of `EndpointContainer` slots. One I/O thread waits on the
sockets and drives sending and receiving. A second thread passes each
complete packet to the receive callback. Optional `new_cb` and `delete_cb`
callbacks are told when an endpoint is created or closed. `EndpointContext`
can be used as a context manager and closes every endpoint on exit.

`telemetrynet.client` provides `ClientRegistry`, which records which peers
are connected and their latest telemetry, and `run`, which connects and keeps
reporting. `telemetrynet.server` provides `Server`, with `serve`, `stop`,
`close` and `clients`. Either side can be embedded in another program.

Supporting pieces:

- `telemetrynet.fifo.BoundedFifo`: a thread-safe bounded queue that can be
  closed. After closing, the items still in it can be read.
- `telemetrynet.fifo.CountingSemaphore`: a semaphore whose count can be read.
- `telemetrynet.timer.Timer`: a one-shot timer that restarts each time it is
  set.

## What it does not do

The client has no source of real telemetry. It always sends a `Telemetry`
with source index 0 and all-zero position and orientation. It does not show
the telemetry it receives from peers either: the command logs only the count
of connected peers. Use `ClientRegistry.telemetry` from your own code to read
what peers have sent.