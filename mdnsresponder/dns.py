"""Answering mDNS questions and feeding answers into the cache."""

from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Any, Callable

from .interface import SOCKTYPE_BIT_UNICAST, interface_addresses
from .protocol import (
    C_DNS_SD,
    CLASS_FLUSH,
    CLASS_IN,
    FLAG_RESPONSE,
    MCAST_PORT,
    DnsError,
    MessageReader,
    PacketBuilder,
    Question,
    RecordType,
    encode_name,
)
from .util import HostIdentity, Scheduler

log = logging.getLogger(__name__)

QUERY_BATCH_SIZE = 16
QUERY_DELAY = 0.1
DEFAULT_TTL = 75 * 60


def is_reverse_query(name: str | None, suffix: str | None) -> bool:
    """Tell whether ``name`` ends with ``suffix``."""
    if name is None or suffix is None:
        return False
    return name.endswith(suffix)


def _ip(address: Any) -> Any:
    return ipaddress.ip_address(str(address).split("%", 1)[0])


def match_ipv4_reverse(reverse_ip: str, address: Any) -> bool:
    """Tell whether reversed dotted quad ``reverse_ip`` names ``address``."""
    parts = re.match(r"\s*(-?\d+)\.(-?\d+)\.(-?\d+)\.(-?\d+)", reverse_ip)
    if not parts:
        return False
    try:
        packed = _ip(address).packed
    except ValueError:
        return False
    if len(packed) != 4:
        return False
    return [int(p) for p in reversed(parts.groups())] == list(packed)


def match_ipv6_reverse(reverse_ip: str, address: Any) -> bool:
    """Tell whether reversed nibble name ``reverse_ip`` names ``address``."""
    nibbles = "".join(reversed(reverse_ip.replace(".", "")))
    text = ":".join(nibbles[i : i + 4] for i in range(0, len(nibbles), 4))
    try:
        parsed = ipaddress.IPv6Address(text)
        return parsed == _ip(address)
    except ValueError:
        return False


AddressSource = Callable[[str], list]


class Responder:
    """Builds and sends mDNS packets and handles received ones."""

    def __init__(
        self,
        interfaces: Any,
        cache: Any = None,
        services: Any = None,
        identity: HostIdentity | None = None,
        scheduler: Scheduler | None = None,
        announce_ttl: int = DEFAULT_TTL,
        address_source: AddressSource | None = None,
    ) -> None:
        self.interfaces = interfaces
        self.cache = cache
        self.services = services
        self.identity = identity or HostIdentity("", "")
        self.scheduler = scheduler
        self.announce_ttl = announce_ttl
        self._addresses = address_source or interface_addresses
        self._queries: list[tuple[str, int]] = []
        self._timer = None

    def send_packet(self, iface: Any, to: Any, builder: PacketBuilder, query: bool = False, multicast: int = 0) -> None:
        """Send a built packet, fixing the unicast bit of questions when querying."""
        if query:
            if multicast < 0:
                multicast = iface.need_multicast
            builder.set_multicast(bool(multicast))
        try:
            self.interfaces.send(iface, builder.to_bytes(), to)
        except OSError as exc:
            log.warning("failed to send answer: %s", exc)

    def send_question(self, iface: Any, to: Any, name: str, rtype: int, multicast: int = 1) -> None:
        builder = PacketBuilder()
        try:
            builder.add_question(name, rtype)
        except DnsError as exc:
            log.debug("cannot ask for %s: %s", name, exc)
        self.send_packet(iface, to, builder, True, multicast)

    def query(self, name: str, rtype: int) -> None:
        """Queue a question to be sent on every interface shortly."""
        if (name, rtype) in self._queries:
            return
        self._queries.append((name, int(rtype)))
        if len(self._queries) > QUERY_BATCH_SIZE:
            self.flush_queries()
        if self.scheduler is not None and not self.scheduler.pending(self._timer):
            self._timer = self.scheduler.call_later(QUERY_DELAY, self.flush_queries)

    def _broadcast(self, builder: PacketBuilder) -> None:
        for iface in self.interfaces:
            self.send_packet(iface, None, builder, True, -1)

    def flush_queries(self) -> None:
        """Send queued questions in batches of sixteen."""
        pending = sorted(self._queries, key=lambda q: q[0])
        self._queries = []
        for start in range(0, len(pending), QUERY_BATCH_SIZE):
            builder = PacketBuilder()
            for name, rtype in pending[start : start + QUERY_BATCH_SIZE]:
                try:
                    builder.add_question(name, rtype)
                except DnsError as exc:
                    log.debug("cannot ask for %s: %s", name, exc)
            self._broadcast(builder)

    def reply_a(self, iface: Any, to: Any, ttl: int, hostname: str | None = None) -> None:
        """Send the interface's addresses under ``hostname``."""
        hostname = hostname or self.identity.local
        builder = PacketBuilder()
        for family, address, _mask in self._addresses(iface.name):
            try:
                if family == socket.AF_INET:
                    builder.add_answer(hostname, RecordType.A, _ip(address).packed, ttl)
                elif family == socket.AF_INET6:
                    builder.add_answer(hostname, RecordType.AAAA, _ip(address).packed, ttl)
            except (ValueError, DnsError) as exc:
                log.debug("skipping address %s: %s", address, exc)
        self.send_packet(iface, to, builder)

    def reply_a_additional(self, iface: Any, to: Any, ttl: int) -> None:
        if self.services is None:
            return
        for hostname in self.services.hostnames():
            self.reply_a(iface, to, ttl, hostname)

    def _reply_reverse(self, iface: Any, to: Any, name: str, reverse_ip: str, v6: bool) -> None:
        family = socket.AF_INET6 if v6 else socket.AF_INET
        match = match_ipv6_reverse if v6 else match_ipv4_reverse
        builder = PacketBuilder()
        for fam, address, _mask in self._addresses(iface.name):
            if fam != family or not match(reverse_ip, address):
                continue
            try:
                builder.add_answer(name, RecordType.PTR, encode_name(self.identity.local), self.announce_ttl)
            except DnsError:
                continue
        self.send_packet(iface, to, builder)

    def _parse_question(self, iface: Any, sender: Any, question: Question) -> None:
        name = question.name
        is_unicast = question.unicast
        to = None
        if is_unicast:
            to = sender
            if iface.multicast:
                iface = self.interfaces.get(iface.name, iface.socket_type | SOCKTYPE_BIT_UNICAST)
                if iface is None:
                    return
        ttl = self.announce_ttl
        rtype = question.rtype
        if rtype == RecordType.ANY:
            if name.lower() == self.identity.local.lower():
                self.reply_a(iface, to, ttl)
                self.reply_a_additional(iface, to, ttl)
                if self.services is not None:
                    self.services.reply(iface, to, None, None, ttl, is_unicast)
        elif rtype == RecordType.PTR:
            for suffix, v6 in ((".in-addr.arpa", False), (".ip6.arpa", True)):
                if is_reverse_query(name, suffix):
                    self._reply_reverse(iface, to, name, name[: name.find(suffix)], v6)
                    return
            if self.services is None:
                return
            if name.lower() == C_DNS_SD.lower():
                self.services.announce_services(iface, to, ttl)
            elif name.startswith("_"):
                self.services.reply(iface, to, None, name, ttl, is_unicast)
            elif "." in name:
                instance, domain = name.split(".", 1)
                self.services.reply(iface, to, instance, domain, ttl, is_unicast)
        elif rtype in (RecordType.A, RecordType.AAAA):
            pos = name.lower().find(".local")
            bare = name[:pos] if pos >= 0 else name
            if bare.lower() == self.identity.label.lower():
                self.reply_a(iface, to, ttl)
            elif self.services is not None:
                for hostname in self.services.hostnames():
                    if hostname.lower() == name.lower():
                        self.reply_a(iface, to, ttl, hostname)

    def handle_packet(self, iface: Any, sender: Any, port: int, data: bytes) -> None:
        """Process one received packet; malformed packets are dropped."""
        reader = MessageReader(data)
        try:
            header = reader.read_header()
        except DnsError:
            return
        if header.questions and not iface.multicast and port != MCAST_PORT:
            return
        response = bool(header.flags & FLAG_RESPONSE)
        for _ in range(header.questions):
            try:
                question = reader.read_question()
            except DnsError:
                return
            if not response:
                self._parse_question(iface, sender, question)
        if not response:
            return
        for _ in range(header.answers + header.authority + header.additional):
            try:
                answer = reader.read_answer()
            except DnsError:
                return
            if (answer.rclass & ~CLASS_FLUSH) != CLASS_IN:
                return
            if self.cache is not None:
                self.cache.answer(iface, sender, reader.data, answer)