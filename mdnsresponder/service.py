"""Locally announced services and extra host names."""

from __future__ import annotations

import glob
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from .protocol import C_DNS_SD, DnsError, PacketBuilder, RecordType, SrvData, encode_name
from .util import HostIdentity, monotonic_time

log = logging.getLogger(__name__)

TOUT_LOOKUP = 60
MAX_TXT_ITEM = 0xFF
INSTANCE_NAME_LEN = 255
DEFAULT_TTL = 75 * 60


def encode_txt(items: Iterable[str]) -> bytes:
    """Encode TXT strings as length-prefixed items; empty items are rejected."""
    out = bytearray()
    for item in items:
        data = str(item).encode("utf-8")
        if not data:
            raise ValueError("empty TXT item")
        data = data[:MAX_TXT_ITEM]
        out.append(len(data))
        out += data
    return bytes(out)


@dataclass(eq=False)
class Service:
    """A service this host announces."""

    id: str
    instance: str
    service: str
    hostname: str
    port: int
    txt: bytes = b""
    active: bool = True
    t: int = 0

    def instance_name(self) -> str:
        """Return ``<instance>.<service>`` as a Service Instance Name."""
        return f"{self.instance}.{self.service}"[:INSTANCE_NAME_LEN]


def parse_service_blob(
    service_id: str, data: Mapping[str, Any], identity: HostIdentity
) -> Service | None:
    """Build a Service from a JSON description, or None if it is incomplete."""
    if not isinstance(data, Mapping):
        return None
    port = data.get("port")
    service = data.get("service")
    if isinstance(port, bool) or not isinstance(port, int) or not isinstance(service, str):
        return None
    hostname = data.get("hostname")
    instance = data.get("instance")
    txt_items = data.get("txt")
    txt = b""
    if isinstance(txt_items, list):
        try:
            txt = encode_txt(str(item) for item in txt_items)
        except ValueError:
            return None
    return Service(
        id=service_id,
        instance=instance if isinstance(instance, str) else identity.label,
        service=service,
        hostname=hostname if isinstance(hostname, str) else identity.local,
        port=port & 0xFFFFFFFF,
        txt=txt,
    )


SendPacket = Callable[[Any, Any, PacketBuilder], object]
ReplyA = Callable[[Any, Any, int, str], object]


class ServiceRegistry:
    """Keeps the announced services and host names and answers for them."""

    def __init__(
        self,
        identity: HostIdentity,
        send_packet: SendPacket,
        reply_a: ReplyA,
        interfaces: Iterable[Any] = (),
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.identity = identity
        self._send = send_packet
        self._reply_a = reply_a
        self._interfaces = interfaces
        self._clock = clock or monotonic_time
        self.announce = False
        self.announce_ttl = DEFAULT_TTL
        self._services: dict[str, Service] = {}
        self._service_versions: dict[str, int] = {}
        self._hostnames: dict[str, int] = {}
        self._version = 0

    def _timeout(self, service: Service) -> int:
        now = int(self._clock())
        if now - service.t <= TOUT_LOOKUP:
            return 0
        return now

    def _reply_single(self, iface: Any, to: Any, service: Service, ttl: int, force: bool) -> None:
        host = service.instance_name()
        marker = host.find("._")
        t = self._timeout(service)
        if not force and (not service.active or marker < 0 or not t):
            return
        if marker < 0:
            return
        service.t = t
        builder = PacketBuilder()
        try:
            ptr = encode_name(host)
        except DnsError:
            ptr = None
        if ptr is not None:
            builder.add_answer(host[marker + 1 :], RecordType.PTR, ptr, ttl)
        try:
            srv = SrvData(0, 0, service.port & 0xFFFF, service.hostname).pack()
        except DnsError:
            srv = None
        if srv is not None:
            builder.add_answer(host, RecordType.SRV, srv, ttl)
        if service.txt:
            builder.add_answer(host, RecordType.TXT, service.txt, ttl)
        self._send(iface, to, builder)

    def reply(
        self,
        iface: Any,
        to: Any,
        instance: str | None,
        service_domain: str | None,
        ttl: int,
        force: bool,
    ) -> None:
        """Answer for every service matching ``instance`` and ``service_domain``."""
        for service in self.services():
            if instance is not None and service.instance != instance:
                continue
            if service_domain is not None and service.service != service_domain:
                continue
            self._reply_single(iface, to, service, ttl, force)

    def announce_services(self, iface: Any, to: Any, ttl: int) -> None:
        """Send the list of service types; a zero TTL only resets timers."""
        builder = PacketBuilder()
        count = 0
        for service in self.services():
            service.t = 0
            if ttl:
                try:
                    builder.add_answer(C_DNS_SD, RecordType.PTR, encode_name(service.service), ttl)
                except DnsError:
                    continue
                count += 1
        if count:
            self._send(iface, to, builder)

    def begin_update(self) -> None:
        """Start a reload; entries not added again go away at flush."""
        self._version += 1

    def flush(self) -> None:
        """Drop services and host names not refreshed since begin_update."""
        for key in sorted(k for k, v in self._service_versions.items() if v != self._version):
            del self._service_versions[key]
            service = self._services.pop(key)
            if self.announce:
                for iface in self._interfaces:
                    self._reply_single(iface, None, service, 0, True)
        for name in sorted(k for k, v in self._hostnames.items() if v != self._version):
            del self._hostnames[name]
            for iface in self._interfaces:
                self._reply_a(iface, None, 0, name)

    def add_service(self, service: Service) -> None:
        """Add or replace a service, announcing new ones when enabled."""
        is_new = service.id not in self._services
        self._services[service.id] = service
        self._service_versions[service.id] = self._version
        if is_new and self.announce:
            for iface in self._interfaces:
                service.t = 0
                self._reply_single(iface, None, service, self.announce_ttl, True)

    def add_hostname(self, hostname: str) -> None:
        """Add an extra host name, announcing it when new."""
        is_new = hostname not in self._hostnames
        self._hostnames[hostname] = self._version
        if is_new:
            for iface in self._interfaces:
                self._reply_a(iface, None, self.announce_ttl, hostname)

    def load_blob(self, service_id: str, data: Any) -> Service | None:
        """Load one service description; return the service if one was added."""
        if not isinstance(data, Mapping):
            return None
        hostname = data.get("hostname")
        if isinstance(hostname, str):
            self.add_hostname(hostname)
        service = parse_service_blob(service_id, data, self.identity)
        if service is not None:
            self.add_service(service)
        return service

    def load_file(self, path: str | os.PathLike) -> int:
        """Load every service in a JSON file; return how many were added."""
        try:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            log.warning("error reading %s JSON: %s", path, exc)
            return 0
        if not isinstance(data, dict):
            return 0
        return sum(self.load_blob(key, value) is not None for key, value in data.items())

    def load_directory(self, pattern: str) -> int:
        """Load every file matching a glob pattern; return services added."""
        return sum(self.load_file(path) for path in sorted(glob.glob(pattern)) if os.path.isfile(path))

    def load_service_list(self, message: Mapping[str, Any]) -> int:
        """Load ``mdns`` data of running instances from a service list."""
        added = 0
        for entry in message.values():
            if not isinstance(entry, Mapping):
                continue
            for name, instances in entry.items():
                if name != "instances" or not isinstance(instances, Mapping):
                    continue
                for instance in instances.values():
                    if not isinstance(instance, Mapping):
                        continue
                    running = False
                    for key, value in instance.items():
                        if key == "running":
                            running = bool(value)
                        elif running and key == "data":
                            if isinstance(value, Mapping):
                                mdns = value.get("mdns")
                                if isinstance(mdns, Mapping):
                                    for sid, blob in mdns.items():
                                        added += self.load_blob(sid, blob) is not None
                            break
        return added

    def services(self) -> list[Service]:
        return [self._services[key] for key in sorted(self._services)]

    def hostnames(self) -> list[str]:
        return sorted(self._hostnames)

    def cleanup(self) -> None:
        """Forget all services and host names."""
        self._services.clear()
        self._service_versions.clear()
        self._hostnames.clear()