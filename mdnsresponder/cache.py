"""Cache of records and services learned from mDNS responses."""

from __future__ import annotations

import bisect
import ipaddress
import logging
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Protocol

from .protocol import C_DNS_SD, Answer, DnsError, RecordType, SrvData, expand_name, type_string
from .util import Scheduler, monotonic_time

log = logging.getLogger(__name__)

GC_INTERVAL = 10
SRV_HEADER_LEN = 6
LOCAL_SUFFIX = ".local"
_SRV_HEADER = struct.Struct("!HHH")


class Querier(Protocol):
    def query(self, name: str, rtype: int) -> object: ...

    def send_question(self, iface: Any, to: Any, name: str, rtype: int, multicast: int) -> object: ...


def _fold(name: str) -> bytes:
    """Case-folding key that, like strcasecmp, only folds ASCII letters."""
    return name.encode("utf-8", "surrogateescape").lower()


@dataclass(eq=False)
class CacheRecord:
    """One resource record seen on the network."""

    record: str
    rtype: int
    ttl: int
    time: int
    iface: Any = None
    sender: Any = None
    port: int = 0
    txt: tuple[str, ...] | None = None
    rdata: bytes | None = None
    target: str | None = None
    priority: int = 0
    weight: int = 0
    refresh: int = 50
    _seq: int = field(default=0, repr=False)

    @property
    def rdlength(self) -> int:
        return len(self.rdata) if self.rdata else 0


@dataclass(eq=False)
class CacheService:
    """A service instance learned from a PTR record."""

    entry: str
    key: str
    host: str | None
    ttl: int
    time: int
    iface: Any = None
    refresh: int = 50
    _seq: int = field(default=0, repr=False)


def _record_order(record: CacheRecord) -> tuple[bytes, int]:
    return _fold(record.record), record._seq


def _service_order(service: CacheService) -> tuple[bytes, int]:
    return _fold(service.key), service._seq


def _expand_target(message: bytes, offset: int) -> str:
    name, _ = expand_name(message, offset)
    return "" if name == "." else name


def _parse_txt(rdata: bytes) -> tuple[str, ...]:
    strings: list[str] = []
    pos = 0
    while pos < len(rdata):
        length = rdata[pos]
        if not length:
            break
        chunk = rdata[pos + 1 : pos + 1 + length].split(b"\0", 1)[0]
        if not chunk:
            break
        strings.append(chunk.decode("utf-8", "replace"))
        pos += length + 1
    return tuple(strings)


def _format_address(rdata: bytes | None) -> str | None:
    if rdata is not None and len(rdata) in (4, 16):
        return str(ipaddress.ip_address(rdata))
    return None


class Cache:
    """Records and services indexed case-insensitively by name."""

    def __init__(
        self,
        querier: Querier,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._querier = querier
        self._scheduler = scheduler
        self._clock = clock or monotonic_time
        self._records: list[CacheRecord] = []
        self._services: list[CacheService] = []
        self._seq = 0
        self._gc_handle = None

    def _now(self) -> int:
        return int(self._clock())

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _expired(self, t: int, ttl: int, frac: int) -> bool:
        return self._now() - t >= ttl * frac // 100

    # -- timers ------------------------------------------------------------

    def start(self) -> None:
        """Begin periodic garbage collection."""
        if self._scheduler is not None:
            self._gc_handle = self._scheduler.call_later(GC_INTERVAL, self._gc_tick)

    def _gc_tick(self) -> None:
        self.gc()
        if self._scheduler is not None:
            self._gc_handle = self._scheduler.call_later(GC_INTERVAL, self._gc_tick)

    def gc(self) -> None:
        """Refresh records nearing expiry and drop the expired ones."""
        for r in list(self._records):
            if not self._expired(r.time, r.ttl, r.refresh):
                continue
            # Records other than A/AAAA are refreshed through their services.
            if r.rtype not in (RecordType.A, RecordType.AAAA):
                if self._expired(r.time, r.ttl, 100):
                    self._records.remove(r)
                continue
            if r.refresh >= 100:
                self._records.remove(r)
                continue
            r.refresh += 50
            self._querier.send_question(r.iface, r.sender, r.record, r.rtype, 0)

        for s in list(self._services):
            if not s.host:
                continue
            if not self._expired(s.time, s.ttl, s.refresh):
                continue
            if s.refresh >= 100:
                self._services.remove(s)
                continue
            s.refresh += 50
            self._refresh_service(s)

    # -- maintenance -------------------------------------------------------

    def cleanup(self, iface: Any = None) -> None:
        """Forget everything learned on ``iface``, or everything if None."""
        self._services = [s for s in self._services if iface is not None and s.iface is not iface]
        self._records = [r for r in self._records if iface is not None and r.iface is not iface]

    def _refresh_service(self, service: CacheService) -> None:
        self._querier.query(service.entry, RecordType.PTR)
        if not service.host:
            return
        self._querier.query(service.host, RecordType.A)
        self._querier.query(service.host, RecordType.AAAA)

    def update(self) -> None:
        """Ask the network again for every service type and known service."""
        self._querier.query(C_DNS_SD, RecordType.ANY)
        self._querier.query(C_DNS_SD, RecordType.PTR)
        for service in list(self._services):
            self._refresh_service(service)

    # -- lookups -----------------------------------------------------------

    def records(self) -> list[CacheRecord]:
        return list(self._records)

    def services(self) -> list[CacheService]:
        return list(self._services)

    def _lower_bound(self, name: str) -> int:
        return bisect.bisect_left(self._records, _fold(name), key=lambda r: _fold(r.record))

    def _run(self, name: str) -> Iterator[CacheRecord]:
        """Records found under ``name`` sharing the first match's exact spelling."""
        index = self._lower_bound(name)
        if index >= len(self._records) or _fold(self._records[index].record) != _fold(name):
            return
        first = self._records[index].record
        for r in self._records[index:]:
            if r.record != first:
                break
            yield r

    def _exact(self, name: str) -> Iterator[CacheRecord]:
        for r in self._records[self._lower_bound(name) :]:
            if r.record != name:
                break
            yield r

    def _find_record(
        self, name: str, rtype: int, port: int, rdata: bytes | None
    ) -> CacheRecord | None:
        for r in self._exact(name):
            if r.rtype != rtype:
                continue
            if r.rtype in (RecordType.TXT, RecordType.SRV):
                return r
            if r.port != port:
                continue
            if not r.rdata or not rdata or r.rdata != rdata:
                continue
            return r
        return None

    def host_is_known(self, name: str) -> bool:
        """Tell whether an address record exists for ``name``."""
        return any(r.rtype in (RecordType.A, RecordType.AAAA) for r in self._exact(name))

    # -- learning ----------------------------------------------------------

    def _service(self, iface: Any, entry: str, host_len: int, ttl: int) -> CacheService:
        now = self._now()
        for s in self._services:
            if s.entry == entry:
                s.refresh = 50
                s.time = now
                s.ttl = ttl
                return s

        host = entry[:host_len] + LOCAL_SUFFIX if host_len else None
        marker = entry.find("._")
        key = entry[marker + 1 :] if marker >= 0 else entry
        service = CacheService(entry, key, host, ttl, now, iface, 50, self._next_seq())
        bisect.insort(self._services, service, key=_service_order)
        self._refresh_service(service)
        return service

    def answer(self, iface: Any, sender: Any, message: bytes, answer: Answer) -> CacheRecord | None:
        """Store or refresh what ``answer`` (read from ``message``) says; return the record."""
        name = answer.name
        now = self._now()
        port = 0
        rdata: bytes | None = None
        txt: tuple[str, ...] | None = None
        target: str | None = None
        priority = weight = 0
        rtype = answer.rtype
        length = len(answer.rdata)

        if rtype == RecordType.PTR:
            if length < 2:
                return None
            try:
                target = _expand_target(message, answer.rdata_offset)
            except DnsError as exc:
                log.warning("cannot expand PTR target: %s", exc)
                return None
            if (
                name != C_DNS_SD
                and len(name) + 1 < len(target)
                and target.endswith(name)
            ):
                host_len = len(target) - len(name) - 1
            else:
                host_len = 0
            if name.startswith("_"):
                self._service(iface, target, host_len, answer.ttl)
            rdata = target.encode("utf-8", "surrogateescape") + b"\0"
        elif rtype == RecordType.SRV:
            if length < 8:
                return None
            try:
                srv = SrvData.unpack(message, answer.rdata_offset, length)
            except DnsError as exc:
                log.warning("cannot expand SRV target: %s", exc)
                return None
            port, priority, weight = srv.port, srv.priority, srv.weight
            target = "" if srv.target == "." else srv.target
            rdata = (
                _SRV_HEADER.pack(priority, weight, port)
                + target.encode("utf-8", "surrogateescape")
                + b"\0"
            )
        elif rtype == RecordType.TXT:
            if length <= 2:
                return None
            txt = _parse_txt(answer.rdata)
        elif rtype == RecordType.A:
            if length != 4:
                return None
            rdata = bytes(answer.rdata)
        elif rtype == RecordType.AAAA:
            if length != 16:
                return None
            rdata = bytes(answer.rdata)
        else:
            return None

        existing = self._find_record(name, rtype, port, rdata)
        if existing is not None:
            if not answer.ttl:
                existing.time = now + 1 - existing.ttl
                existing.refresh = 100
            else:
                existing.ttl = answer.ttl
                existing.time = now
                existing.refresh = 50
            return existing

        if not answer.ttl:
            return None

        record = CacheRecord(
            record=name,
            rtype=rtype,
            ttl=answer.ttl,
            time=now,
            iface=iface,
            sender=sender,
            port=port,
            txt=txt,
            rdata=rdata,
            target=target,
            priority=priority,
            weight=weight,
            _seq=self._next_seq(),
        )
        bisect.insort(self._records, record, key=_record_order)
        return record

    # -- reporting ---------------------------------------------------------

    def _dump_addresses(self, name: str, rtype: int, key: str, array: bool) -> list[tuple[str, Any]]:
        pairs: list[tuple[str, Any]] = []
        collected: list[str] | None = None
        for r in self._run(name):
            if r.rtype != rtype:
                continue
            if collected is None and array:
                collected = []
            text = _format_address(r.rdata)
            if text is None:
                continue
            if array:
                collected.append(text)
            else:
                pairs.append((key, text))
        if collected is not None:
            pairs.append((key, collected))
        return pairs

    def dump_records(self, name: str, array: bool) -> tuple[list[tuple[str, Any]], str | None]:
        """Describe what is known about ``name``.

        Returns the ``(key, value)`` pairs in order, keys repeating when
        ``array`` is false, and the SRV target host if one was seen.
        """
        pairs = self._dump_addresses(name, RecordType.A, "ipv4", array)
        pairs += self._dump_addresses(name, RecordType.AAAA, "ipv6", array)
        hostname: str | None = None

        for r in self._run(name):
            if r.rtype == RecordType.TXT:
                if r.txt:
                    if array:
                        pairs.append(("txt", list(r.txt)))
                    else:
                        pairs.extend(("txt", item) for item in r.txt)
            elif r.rtype == RecordType.SRV:
                if r.rdata:
                    pairs.append(("host", r.target))
                    hostname = r.target
                marker = "._udp." if "._udp." in r.record else "._tcp."
                at = r.record.find(marker)
                if at < 0:
                    continue
                pairs.append(("domain", r.record[at + len(marker) :]))
                if r.port:
                    pairs.append(("port", r.port))
                if r.ttl:
                    pairs.append(("ttl", r.ttl))
                if r.time:
                    last_update = time.time() - (self._now() - r.time)
                    pairs.append(
                        ("last_update", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.localtime(last_update)))
                    )
                if r.rdlength > SRV_HEADER_LEN:
                    pairs.append(("priority", r.priority))
                    pairs.append(("weight", r.weight))
        return pairs, hostname

    def dump_recursive(self, name: str, rtype: int, iface: Any = None) -> list[dict[str, Any]]:
        """List live records for ``name``, following PTR and SRV targets."""
        now = self._now()
        result: list[dict[str, Any]] = []
        for r in list(self._exact(name)):
            ttl = r.ttl - (now - r.time)
            if ttl <= 0:
                continue
            if iface is not None and iface.ifindex != getattr(r.iface, "ifindex", None):
                continue
            if rtype != RecordType.ANY and rtype != r.rtype:
                continue

            entry: dict[str, Any] = {"name": r.record, "type": type_string(r.rtype), "ttl": ttl}
            if r.rtype == RecordType.TXT:
                if r.txt:
                    entry["data"] = list(r.txt)
            elif r.rtype == RecordType.SRV:
                if r.rdlength > SRV_HEADER_LEN:
                    entry["priority"] = r.priority
                    entry["weight"] = r.weight
                    entry["port"] = r.port
                    entry["target"] = r.target
            elif r.rtype == RecordType.PTR:
                if r.rdlength > 0:
                    entry["target"] = r.target
            elif r.rtype in (RecordType.A, RecordType.AAAA):
                text = _format_address(r.rdata)
                if text is not None:
                    entry["target"] = text
            result.append(entry)

            if r.rtype == RecordType.PTR and r.target is not None:
                result += self.dump_recursive(r.target, RecordType.SRV, iface)
                result += self.dump_recursive(r.target, RecordType.TXT, iface)
            if r.rtype == RecordType.SRV and r.target is not None:
                result += self.dump_recursive(r.target, RecordType.A, iface)
                result += self.dump_recursive(r.target, RecordType.AAAA, iface)
        return result