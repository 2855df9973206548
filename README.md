# vpnproxy

`vpnproxy` forwards ports between a host and a virtual machine. It has four parts:

- a binary multiplexer protocol that carries many sub-connections over one stream
- userspace proxies for TCP, UDP and Unix domain sockets
- the length-prefixed JSON messages used to open tunnels
- a wrapper around `iptables` that exposes swarm ingress ports

It needs only the Python standard library, version 3.10 or later.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

| Module | Purpose |
| --- | --- |
| `vpnproxy.frame` | Wire format of multiplexer frames: `Frame`, `Command`, `Destination`, `Proto`, `Connection`, the payloads `OpenFrame`, `CloseFrame`, `ShutdownFrame`, `DataFrame`, `WindowFrame`, and the constructors `new_open`, `new_data`, `new_window`, `new_shutdown`, `new_close`. Frames are parsed with `read_frame`. |
| `vpnproxy.handshake` | The magic string and payload that each side sends first: `Handshake` and `read_handshake`. A wrong magic string raises `ValueError`. |
| `vpnproxy.loopback` | An in-memory, buffered, two-way connection (`Loopback`, `BufferedPipe`). Writes never block; a read past its deadline raises `IOTimeoutError`. |
| `vpnproxy.multiplexer` | `Multiplexer` runs many `Channel` sub-connections over one transport, with per-channel flow-control windows (`WindowState`). `accept` raises `NotRunningError` once the multiplexer has stopped. |
| `vpnproxy.udp_encapsulation` | Carries UDP datagrams with their addresses inside a stream (`UDPDatagram`, `read_datagram`, `UDPEncapsulator`). Dialling or accepting a UDP destination on a multiplexer returns a `UDPEncapsulator`. |
| `vpnproxy.stream_proxy` | `proxy_stream` copies data both ways between two connections until both reach end of stream or a `quit` event is set, then closes the backend and returns the bytes copied. |
| `vpnproxy.addresses` | `TCPAddress`, `UDPAddress` and `UnixAddress`. |
| `vpnproxy.tcp_proxy`, `vpnproxy.unix_proxy`, `vpnproxy.udp_proxy` | Userspace proxies: `TCPProxy`, `UnixProxy` (which retries a refusing backend every 5 s for up to 120 s), and `UDPProxy` with per-client connection tracking (`conn_track_key`, `DefaultUDPDialer`). |
| `vpnproxy.proxy` | `new_ip_proxy` listens on a frontend address and returns the proxy that matches it. `new_best_effort_ip_proxy` returns `None` when the address does not exist locally. `StubProxy` forwards nothing. |
| `vpnproxy.forward` | `forward` connects an accepted sub-connection to the TCP, UDP or Unix service its `Destination` names, then closes it. |
| `vpnproxy.expose_port` | `expose_port` asks the host to expose a port through a control file tree (by default under `/port`) and returns the open control file, which must stay open while the port is exposed. |
| `vpnproxy.tunnel` | `Request` / `read_request` and `Response` / `read_response` are the tunnel-open messages. |
| `vpnproxy.forwards` | `Forward`, `unmarshal_forwards` and `marshal_forwards` read and write the JSON list of forwarding rules. |
| `vpnproxy.iptables_wrapper` | Exposes ingress ports and then runs the real `iptables`. |

Deadlines, wherever they are set, are absolute values of `time.monotonic()`; `None` clears them.

## Frames

Each frame starts with a little-endian `uint16` total length, then a command byte and a `uint32` channel id. The payload depends on the command. This example writes a data-header frame and reads it back:

```python
import io

from vpnproxy.frame import Command, new_data, read_frame

buffer = io.BytesIO()
new_data(8, 128).write(buffer)
buffer.seek(0)

frame = read_frame(buffer)
assert frame.command is Command.DATA
assert frame.data().payload_len == 128
assert frame.size() == len(buffer.getvalue())
```

## Multiplexing

Each side's constructor performs the handshake, so the two ends must be built concurrently. `run` starts the receiving thread.

```python
import threading

from vpnproxy.frame import Destination, Proto
from vpnproxy.loopback import Loopback
from vpnproxy.multiplexer import Multiplexer

conn = Loopback()
built = {}
peer = threading.Thread(
    target=lambda: built.update(
        remote=Multiplexer("remote", conn.other_end(), allocate_backwards=True)
    )
)
peer.start()
local = Multiplexer("local", conn)
peer.join()
remote = built["remote"]
local.run()
remote.run()

client = local.dial(Destination(Proto.TCP, ip="127.0.0.1", port=8080))
server, destination = remote.accept()
client.write(b"hello")
assert server.read(5) == b"hello"
client.close()
server.close()
```

## Tunnel requests

```python
import io

from vpnproxy.tunnel import Response, read_response

buffer = io.BytesIO()
Response(accepted=True).write(buffer)
buffer.seek(0)
assert read_response(buffer).accepted
```

## Forwarding rules

```python
from vpnproxy.forwards import marshal_forwards, unmarshal_forwards

rules = unmarshal_forwards(
    b'[{"protocol": "tcp", "dst_prefix": "10.0.0.0/8", "dst_port": 0, "path": "/run/tunnel.sock"}]'
)
print(marshal_forwards(rules))
```

A `dst_port` of `0` (`EVERY_PORT`) sends every port of the matching prefix through the tunnel.

## The iptables wrapper

Install the wrapper where the container engine expects `iptables`, and call it with ordinary `iptables` arguments:

```
vpnproxy-iptables-wrapper --wait -t nat -I DOCKER-INGRESS -p tcp --dport 80 -j DNAT --to-destination 172.18.0.2:80
```

Unless native port forwarding is enabled (the first line of `/var/config/vpnkit/native-port-forwarding` is `1` or `true`), it looks for rules that match the ingress pattern above:

- for `-I` it starts `vpnkit-expose-port` and records its pid in `/var/run/service-port-opener`
- for `-D` it sends that process `SIGTERM` and deletes the pid file

In every case it then runs `/sbin/iptables` with the same arguments and exits with that command's exit status.

## What this package does not do

- It does not include a `vpnkit-expose-port` command. The iptables wrapper starts one that must already be on `PATH`, and fails if none is found.
- It has no control-plane client or server for listing or exposing ports, and no long-running forwarder daemon. The multiplexer, `forward` and the proxies are the pieces from which such a service would be built.