# tunnelkit

tunnelkit is a set of proxy building blocks that stack on top of each other.
A server layer accepts streams from the layer beneath it and hands them up
with the target they asked for; a client layer dials a target through the
layer beneath it. Stacking them gives a local SOCKS5/HTTP proxy front end, a
routing decision and an outbound connection. Everything runs on plain
sockets and threads.

## Layers

| Module | What it provides |
| --- | --- |
| `tunnelkit.metadata` | `Address`, `AddressType`, `Metadata` and `AddressError`: the SOCKS5-style address header (ATYP, address, big-endian port) used by every layer |
| `tunnelkit.adapter` | `AdapterServer`: one TCP/UDP port whose SOCKS5 streams go to a SOCKS layer and all other streams to an HTTP layer |
| `tunnelkit.socks` | `SocksServer`: SOCKS5 (no authentication) with CONNECT and UDP ASSOCIATE |
| `tunnelkit.http` | `HTTPServer`: an HTTP proxy handling CONNECT and plain forwarded requests |
| `tunnelkit.dokodemo` | `DokodemoServer`: listens on TCP and UDP and gives every stream and UDP flow one fixed target |
| `tunnelkit.freedom` | `FreedomClient`: dials targets directly, or through an upstream SOCKS5 proxy |
| `tunnelkit.router` | `RouterClient`: sends each target to the proxy, a direct dial, or a block, by domain, keyword, regex, full-name and CIDR rules |
| `tunnelkit.statistic` | the `User` and `Authenticator` interfaces, `StatisticError`, and the authenticator registry |
| `tunnelkit.memory` | `MemoryAuthenticator` and `MemoryUser`: users in memory with traffic counters, speed figures, speed limits and IP limits |
| `tunnelkit.mysql` | `MySQLAuthenticator`: in-memory users kept in step with a MySQL `users` table |

Each layer module also has a tunnel factory (`SocksTunnel`, `HTTPTunnel`,
`AdapterTunnel`, `DokodemoTunnel`, `FreedomTunnel`, `RouterTunnel`) with
`new_server(config, underlay)` and `new_client(config, underlay)`; asking for
a side a layer does not have raises `RuntimeError`.

## Installing

```
pip install tunnelkit
```

To run the test suite:

```
pip install "tunnelkit[test]"
pytest
```

## Addresses

```python
import io

from tunnelkit.metadata import Address

addr = Address.from_host_port("tcp", "example.com", 443)
wire = addr.to_bytes()          # ATYP 3, length-prefixed name, port

decoded = Address.read_from(io.BytesIO(wire))
assert decoded.port == 443
assert str(decoded) == "example.com:443"
```

`Address.from_addr("udp", "127.0.0.1:53")` parses a `host:port` string
(`[host]:port` for IPv6). IP literals become IPv4 or IPv6 addresses, anything
else a domain name; a domain name that is really an IP literal is turned into
an IP address when read off the wire. `resolve_ip()` looks a domain name up
once and keeps the result. A malformed header or string raises `AddressError`.

## A local proxy front end

```python
from tunnelkit.adapter import AdapterConfig, AdapterServer
from tunnelkit.http import HTTPServer
from tunnelkit.socks import SocksConfig, SocksServer

adapter = AdapterServer(AdapterConfig(local_host="127.0.0.1", local_port=1080))
socks = SocksServer(SocksConfig(local_host="127.0.0.1", local_port=1080), adapter)
http = HTTPServer(None, adapter)

conn = socks.accept_conn()       # a SocksConn after a CONNECT request
print(conn.metadata.address)     # where the client wants to go
packets = socks.accept_packet()  # a SocksPacketConn for a UDP client
payload, metadata = packets.read_with_metadata()
```

`SocksServer` answers UDP ASSOCIATE with its configured local address and
reads the SOCKS5 UDP header off each datagram; replies written with
`write_with_metadata` are sent back with the header added. A UDP session
with no replies for five seconds is dropped. `HTTPServer.accept_conn()`
returns a `ConnectConn` for CONNECT requests (after answering
`200 Connection established`), or an `OtherConn` for each plain request: read
the forwarded request from it and write the target's response to it.
Accepting on a closed server raises `ConnectionError`.

## Port forwarding

```python
from tunnelkit.dokodemo import DokodemoConfig, DokodemoServer

server = DokodemoServer(DokodemoConfig(
    local_host="127.0.0.1", local_port=5353,
    target_host="192.0.2.1", target_port=53,
    udp_timeout=60,
))
conn = server.accept_conn()            # conn.metadata.address is the target
flow = server.accept_packet()          # one flow per UDP source
payload, metadata = flow.read_with_metadata()
flow.write_with_metadata(b"reply", metadata)  # sent back to that source
```

A UDP flow that sends nothing back for `udp_timeout` seconds is closed.

## Dialing out and routing

```python
from tunnelkit.freedom import FreedomClient, FreedomConfig
from tunnelkit.metadata import Address
from tunnelkit.router import Policy, RouterClient, RouterConfig

direct = FreedomClient(FreedomConfig())
conn = direct.dial_conn(Address.from_addr("tcp", "example.com:80"))

router = RouterClient(
    RouterConfig(bypass=["full:localhost", "cidr:192.168.0.0/16"],
                 block=["domain:ads.example.com"]),
    underlay=some_proxy_client,
)
assert router.route(Address.from_host_port("tcp", "localhost", 80)) == Policy.BYPASS
```

`FreedomConfig.tcp` sets `prefer_ipv4`, `keep_alive` and `no_delay`;
`FreedomConfig.forward_proxy` sends TCP and UDP through a SOCKS5 proxy, with
username/password authentication when a username is set.

`RouterConfig` takes lists of rules for `proxy`, `bypass` and `block`:

- `domain:example.com` – the domain and its subdomains
- `full:example.com` – exactly this name
- `keyword:example` – any name containing the text
- `regex:...` or `regexp:...` – a regular expression searched in the name
- `cidr:192.168.0.0/16` – an IP range

Rules are checked block first, then bypass, then proxy. `domain_strategy`
(`as_is`, `ip_if_non_match`, `ip_on_demand`) decides whether domain names
are also resolved and matched against CIDR rules, and `default_policy`
(`proxy`, `bypass`, `block`) covers targets that match nothing. Proxied
targets go to the underlay's `dial_conn`/`dial_packet`, bypassed ones to a
direct `FreedomClient`, and blocked ones raise `RouterError`. An unknown
strategy or policy, a bad regular expression or a malformed CIDR rule raises
`RouterError` when the client is built. `dial_packet()` returns a
`RouterPacketConn` that routes each datagram and merges replies from both
paths.

## Users and traffic

```python
from tunnelkit.memory import MemoryConfig, create_memory_authenticator

auth = create_memory_authenticator(MemoryConfig(passwords=["password"]))
auth.add_user("user-hash")
user = auth.auth_user("user-hash")      # None for an unknown hash

user.add_traffic(100, 200)
print(user.traffic)            # (100, 200)
print(user.reset_traffic())    # (100, 200), counters back to zero
print(user.speed)              # bytes in the last second, sampled each second

user.set_speed_limit(30, 20)   # bytes per second; 0 removes a limit
print(user.speed_limit)        # (30, 20)
user.ip_limit = 2              # add_ip returns False beyond two IPs
auth.close()
```

`create_memory_authenticator` adds a user for the SHA-224 hex digest of each
configured password. Adding a user that already exists, or removing one that
does not, raises `StatisticError`. Authenticators are made available by name
with `register_authenticator_creator`; `new_authenticator(context, name)`
builds one per context and returns the same one on later calls. `MEMORY`
and `MYSQL` are registered when their modules are imported.

## MySQL

```python
from tunnelkit.mysql import MySQLAuthenticator, MySQLConfig, connect_database

password = "password"
config = MySQLConfig(server_host="localhost", database="proxy",
                     username="user", password=password, check_rate=30)
auth = MySQLAuthenticator(config, connect_database(config))
```

Every `check_rate` seconds (or on `sync()`) each user's traffic is added to
the `upload` and `download` columns of the `users` row whose `password`
column holds the hash — the user's received bytes count as upload — and
users are then added or removed according to whether `download + upload` is
below `quota` (a negative quota means unlimited).

## What it does not do

- There is no command-line program and no configuration-file loading;
  layers are built in Python from their config dataclasses.
- There is no TLS transport or encrypted proxy protocol layer; the stack
  ends at plain TCP and UDP sockets.
- `geoip:` and `geosite:` router rules are recognised but not loaded: the
  package does not read geodata files, and logs an error for each such rule.