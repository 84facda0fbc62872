# mdnsresponder

Building blocks for a multicast DNS (mDNS) responder with DNS-SD service
discovery: the DNS wire format, interface sockets, a cache of records seen on
the link, a registry of services to announce, a responder that answers
questions and feeds answers into the cache, and a control API over all of it.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `mdnsresponder.protocol` – `RecordType`, `Header`, `Question`, `Answer`,
  `SrvData`, `MessageReader` for parsing received messages, `PacketBuilder`
  for building packets with name compression, and the helpers `encode_name`,
  `expand_name`, `scan_name` and `type_string`. Malformed data raises
  `DnsError`.
- `mdnsresponder.util` – `monotonic_time`, `rand_time_delta`,
  `get_hostname` (returns a `HostIdentity` with the host's `label` and its
  `local` name, `<label>.local`) and `Scheduler`, one-shot timers driven by
  an outside loop through `run_due` and `next_delay`.
- `mdnsresponder.interface` – `InterfaceManager` opens the unicast and
  multicast sockets (`SocketType`) for IPv4 and link-local IPv6, joins the
  mDNS groups, sends packets and reads datagrams with `handle_readable`.
  `collect_addresses` and `interface_addresses` list an interface's usable
  addresses.
- `mdnsresponder.cache` – `Cache` stores PTR, SRV, TXT, A and AAAA records
  and the services found through PTR records, refreshes and expires them in
  `gc`, and reports them with `dump_records` and `dump_recursive`.
- `mdnsresponder.service` – `ServiceRegistry` holds the services and extra
  host names this host announces and answers for them; `Service`,
  `parse_service_blob` and `encode_txt` describe a single service.
- `mdnsresponder.dns` – `Responder` handles received packets
  (`handle_packet`), answers questions for the host name, services and
  reverse lookups, sends questions, and batches queued queries in sixteens.
- `mdnsresponder.api` – `ControlApi` with the control operations described
  below; failures raise `ApiError` with a `status`.

## Building and reading packets

```python
from mdnsresponder.protocol import MessageReader, PacketBuilder, RecordType

builder = PacketBuilder()
builder.add_question("_services._dns-sd._udp.local", RecordType.PTR)
data = builder.to_bytes()

reader = MessageReader(data)
header = reader.read_header()
question = reader.read_question()
```

## Describing services

`ServiceRegistry.load_file` reads a JSON object keyed by service id, and
`load_directory` does the same for every file matching a glob pattern:

```json
{
  "web": {
    "service": "_http._tcp.local",
    "port": 80,
    "instance": "My Router",
    "txt": ["path=/"],
    "hostname": "router.local"
  }
}
```

`service` and `port` are required. `instance` defaults to the host's label
and `hostname` to the host's `.local` name. Any `hostname` given is also
added to the registry's extra host names, which the responder answers with
the interface's addresses. An empty TXT item makes the service invalid.

## Control operations

`ControlApi` offers these methods, also reachable by name through
`ControlApi.call(method, params)`:

- `query` – send a question (default `_services._dns-sd._udp.local`, type
  ANY) on one interface or on all of them
- `fetch` – return the cached records for a question on an interface,
  following PTR to SRV/TXT and SRV to A/AAAA
- `browse` – list discovered services grouped by service type
- `hosts` – list the addresses of known hosts
- `announcements` – list the services this host announces
- `set_config` – replace (or, with `keep`, extend) the set of interfaces
- `update` – query the network again for all known services
- `reload` – call the reload function given to `ControlApi`

## Wiring the pieces together

```python
import select

from mdnsresponder.cache import Cache
from mdnsresponder.dns import Responder
from mdnsresponder.interface import InterfaceManager
from mdnsresponder.service import ServiceRegistry
from mdnsresponder.util import Scheduler, get_hostname

identity = get_hostname()
scheduler = Scheduler()
manager = InterfaceManager(on_packet=lambda *args: responder.handle_packet(*args))
responder = Responder(manager, identity=identity, scheduler=scheduler)
responder.cache = Cache(responder, scheduler)
responder.services = ServiceRegistry(
    identity,
    lambda iface, to, builder: responder.send_packet(iface, to, builder),
    responder.reply_a,
    manager,
)
responder.cache.start()
manager.add("eth0")

while True:
    readable, _, _ = select.select(manager.sockets(), [], [], scheduler.next_delay())
    for sock in readable:
        manager.handle_readable(sock)
    scheduler.run_due()
```

## What the package does not do

The package has no command to start a daemon and no event loop of its own;
the loop above is left to the caller. It does not probe for or periodically
announce the host name on each interface, does not send goodbye packets on
shutdown by itself, and has no transport for control requests: `ControlApi`
is called directly from Python.