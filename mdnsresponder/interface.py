"""Network interfaces, their sockets and packet I/O."""

from __future__ import annotations

import errno
import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence, Union

import psutil

from .protocol import MCAST_ADDR, MCAST_ADDR6, MCAST_PORT

log = logging.getLogger(__name__)

SOCKTYPE_BIT_UNICAST = 1 << 0
SOCKTYPE_BIT_IPV6 = 1 << 1

RECV_BUFFER = 8 * 1024
_ANC_BUFFER = 256

_IPPROTO_IPV6 = getattr(socket, "IPPROTO_IPV6", 41)
_IP_PKTINFO = getattr(socket, "IP_PKTINFO", 8)
_IP_TTL = getattr(socket, "IP_TTL", 2)
_IP_RECVTTL = getattr(socket, "IP_RECVTTL", 12)
_IPV6_PKTINFO = getattr(socket, "IPV6_PKTINFO", 50)
_IPV6_RECVPKTINFO = getattr(socket, "IPV6_RECVPKTINFO", 49)
_IPV6_HOPLIMIT = getattr(socket, "IPV6_HOPLIMIT", 52)
_IPV6_RECVHOPLIMIT = getattr(socket, "IPV6_RECVHOPLIMIT", 51)

_LINK_LOCAL_PREFIX = b"\xfe\x80"

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
PacketHandler = Callable[["Interface", Any, int, bytes], object]
InterfaceHandler = Callable[["Interface"], object]


class SocketType(IntEnum):
    """The four sockets an interface may be bound to."""

    MC_IPV4 = 0
    UC_IPV4 = SOCKTYPE_BIT_UNICAST
    MC_IPV6 = SOCKTYPE_BIT_IPV6
    UC_IPV6 = SOCKTYPE_BIT_IPV6 | SOCKTYPE_BIT_UNICAST

    @property
    def multicast(self) -> bool:
        return not self & SOCKTYPE_BIT_UNICAST

    @property
    def ipv6(self) -> bool:
        return bool(self & SOCKTYPE_BIT_IPV6)

    @property
    def family(self) -> int:
        return socket.AF_INET6 if self.ipv6 else socket.AF_INET


def _strip_scope(address: Any) -> str:
    return str(address).split("%", 1)[0]


def _full_mask(address: IPAddress) -> IPAddress:
    return type(address)((1 << address.max_prefixlen) - 1)


@dataclass(frozen=True)
class AddressEntry:
    """One address of an interface together with its netmask."""

    address: IPAddress
    mask: IPAddress

    def __post_init__(self) -> None:
        address = ipaddress.ip_address(_strip_scope(self.address))
        mask = ipaddress.ip_address(_strip_scope(self.mask))
        if address.version != mask.version:
            raise ValueError("address and mask differ in family")
        object.__setattr__(self, "address", address)
        object.__setattr__(self, "mask", mask)

    def contains(self, other: IPAddress) -> bool:
        """Tell whether ``other`` lies in this address's subnet."""
        if other.version != self.address.version:
            return False
        mask = int(self.mask)
        return int(self.address) & mask == int(other) & mask


def interface_key(name: str, socket_type: int) -> str:
    """Return the registry key of an interface bound to a socket type."""
    return f"{int(socket_type)}_{name}"


def interface_addresses(name: str) -> list[tuple[int, str, str | None]]:
    """List ``(family, address, netmask)`` for every address of ``name``."""
    return [
        (entry.family, entry.address, entry.netmask)
        for entry in psutil.net_if_addrs().get(name, [])
    ]


def _make_entry(address: str, netmask: str | None) -> AddressEntry:
    ip = ipaddress.ip_address(_strip_scope(address))
    mask = _strip_scope(netmask) if netmask else _full_mask(ip)
    return AddressEntry(ip, mask)


def collect_addresses(
    name: str, proto: int, addresses: Mapping[str, Iterable[Sequence[Any]]]
) -> tuple[tuple[AddressEntry, ...], tuple[AddressEntry, ...]]:
    """Pick the usable IPv4 and link-local IPv6 addresses of ``name``.

    ``addresses`` maps interface names to ``(family, address, netmask)``
    entries; ``proto`` of 4 or 6 keeps only that family, 0 keeps both.
    """
    v4: list[AddressEntry] = []
    v6: list[AddressEntry] = []
    for entry in addresses.get(name, ()):
        family, address, netmask = entry[0], entry[1], entry[2]
        if family == socket.AF_INET:
            if proto and proto != 4:
                continue
            v4.append(_make_entry(address, netmask))
        elif family == socket.AF_INET6:
            if proto and proto != 6:
                continue
            ip = ipaddress.IPv6Address(_strip_scope(address))
            if ip.packed[:2] != _LINK_LOCAL_PREFIX:
                continue
            v6.append(_make_entry(address, netmask))
    return tuple(v4), tuple(v6)


@dataclass(eq=False)
class Interface:
    """A named network interface bound to one of the four socket types."""

    name: str
    socket_type: SocketType
    ifindex: int
    addresses: tuple[AddressEntry, ...] = ()
    need_multicast: bool = False

    def __post_init__(self) -> None:
        self.socket_type = SocketType(self.socket_type)
        self.addresses = tuple(self.addresses)

    @property
    def multicast(self) -> bool:
        return self.socket_type.multicast

    @property
    def ipv6(self) -> bool:
        return self.socket_type.ipv6

    @property
    def key(self) -> str:
        return interface_key(self.name, self.socket_type)

    def valid_source(self, address: Any, no_subnet: bool = False) -> bool:
        """Tell whether a packet from ``address`` may be accepted here."""
        try:
            ip = ipaddress.ip_address(_strip_scope(address))
        except ValueError:
            return False
        return any(no_subnet or entry.contains(ip) for entry in self.addresses)

    def same_config(self, other: "Interface") -> bool:
        """Tell whether ``other`` has the same index and addresses."""
        return self.ifindex == other.ifindex and self.addresses == other.addresses


def _set_option(sock: socket.socket, level: int, option: int, value: Any) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError as exc:
        log.debug("setsockopt(%d, %d) failed: %s", level, option, exc)


class InterfaceManager:
    """Keeps the configured interfaces and the sockets they share."""

    def __init__(
        self,
        on_packet: PacketHandler | None = None,
        on_start: InterfaceHandler | None = None,
        on_stop: InterfaceHandler | None = None,
        proto: int = 0,
        no_subnet: bool = False,
    ) -> None:
        self._on_packet = on_packet
        self._on_start = on_start
        self._on_stop = on_stop
        self.proto = proto
        self.no_subnet = no_subnet
        self._interfaces: dict[str, Interface] = {}
        self._versions: dict[str, int] = {}
        self._version = 0
        self._sockets: dict[SocketType, socket.socket] = {}

    @staticmethod
    def _notify(callback: Callable[..., object] | None, *args: Any) -> None:
        if callback is not None:
            callback(*args)

    def add(self, name: str) -> bool:
        """Bind ``name`` on every usable socket type; False if it has no addresses."""
        v4, v6 = collect_addresses(name, self.proto, {name: interface_addresses(name)})
        groups = (
            (v4, (SocketType.UC_IPV4, SocketType.MC_IPV4)),
            (v6, (SocketType.UC_IPV6, SocketType.MC_IPV6)),
        )
        for entries, types in groups:
            if not entries:
                continue
            for socket_type in types:
                self._add_one(name, socket_type, entries)
        return bool(v4 or v6)

    def _add_one(
        self, name: str, socket_type: SocketType, entries: tuple[AddressEntry, ...]
    ) -> Interface | None:
        try:
            need_multicast = self._init_socket(socket_type)
        except OSError as exc:
            log.warning("cannot open %s socket: %s", socket_type.name, exc)
            return None
        try:
            ifindex = socket.if_nametoindex(name)
        except OSError:
            return None
        return self.register(Interface(name, socket_type, ifindex, entries, need_multicast))

    def register(self, iface: Interface) -> Interface:
        """Insert an interface or refresh the one with the same key; return the kept one."""
        key = iface.key
        self._versions[key] = self._version
        old = self._interfaces.get(key)
        if old is None:
            self._interfaces[key] = iface
            self._start(iface)
            return iface
        equal = old.same_config(iface)
        if not equal:
            self._notify(self._on_stop, old)
        old.addresses = iface.addresses
        old.ifindex = iface.ifindex
        if not equal:
            self._start(old)
        return old

    def get(self, name: str, socket_type: int) -> Interface | None:
        return self._interfaces.get(interface_key(name, socket_type))

    def __iter__(self) -> Iterator[Interface]:
        return iter([self._interfaces[key] for key in sorted(self._interfaces)])

    def __len__(self) -> int:
        return len(self._interfaces)

    def begin_update(self) -> None:
        """Start a new configuration round; unrefreshed interfaces go at flush."""
        self._version += 1

    def flush(self) -> list[Interface]:
        """Drop interfaces not registered since the last begin_update."""
        stale = [key for key, version in self._versions.items() if version != self._version]
        removed = []
        for key in sorted(stale):
            del self._versions[key]
            iface = self._interfaces.pop(key)
            self._notify(self._on_stop, iface)
            removed.append(iface)
        return removed

    def _start(self, iface: Interface) -> None:
        if not iface.multicast:
            return
        self._join_group(iface)
        self._notify(self._on_start, iface)

    def _join_group(self, iface: Interface) -> None:
        sock = self._sockets.get(iface.socket_type)
        if sock is None:
            return
        if iface.ipv6:
            mreq = socket.inet_pton(socket.AF_INET6, MCAST_ADDR6) + struct.pack("@I", iface.ifindex)
            leave = getattr(socket, "IPV6_LEAVE_GROUP", 21)
            join = getattr(socket, "IPV6_JOIN_GROUP", 20)
            level = _IPPROTO_IPV6
        else:
            local = iface.addresses[0].address.packed if iface.addresses else bytes(4)
            mreq = socket.inet_aton(MCAST_ADDR) + local + struct.pack("@i", iface.ifindex)
            leave = socket.IP_DROP_MEMBERSHIP
            join = socket.IP_ADD_MEMBERSHIP
            level = socket.IPPROTO_IP
        # Some drivers lose membership while down and refuse a plain rejoin.
        _set_option(sock, level, leave, mreq)
        _set_option(sock, level, join, mreq)

    def _configure(self, sock: socket.socket, socket_type: SocketType) -> None:
        if socket_type == SocketType.MC_IPV4:
            _set_option(sock, socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, bytes([255]))
            _set_option(sock, socket.IPPROTO_IP, _IP_TTL, 255)
            _set_option(sock, socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 0)
        elif socket_type == SocketType.MC_IPV6:
            _set_option(sock, _IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, 255)
            _set_option(sock, _IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, 255)
            _set_option(sock, _IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            _set_option(sock, _IPPROTO_IPV6, socket.IPV6_MULTICAST_LOOP, 0)

    def _init_socket(self, socket_type: SocketType) -> bool:
        """Open the shared socket of a type; return whether replies must be multicast."""
        if socket_type in self._sockets:
            return False
        sock = socket.socket(socket_type.family, socket.SOCK_DGRAM)
        try:
            _set_option(sock, socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._configure(sock, socket_type)
            port = MCAST_PORT if socket_type.multicast else 0
            local = ("::", port) if socket_type.ipv6 else ("0.0.0.0", port)
            need_multicast = False
            try:
                sock.bind(local)
            except OSError:
                reuseport = getattr(socket, "SO_REUSEPORT", None)
                if reuseport is not None:
                    _set_option(sock, socket.SOL_SOCKET, reuseport, 1)
                need_multicast = True
                sock.bind(local)
            if socket_type.ipv6:
                _set_option(sock, _IPPROTO_IPV6, _IPV6_RECVPKTINFO, 1)
                _set_option(sock, _IPPROTO_IPV6, _IPV6_RECVHOPLIMIT, 1)
            else:
                _set_option(sock, socket.IPPROTO_IP, _IP_PKTINFO, 1)
                _set_option(sock, socket.IPPROTO_IP, _IP_RECVTTL, 1)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self._sockets[socket_type] = sock
        return need_multicast

    def send(self, iface: Interface, data: bytes, to: Any = None) -> int:
        """Send ``data`` out of ``iface``; unicast interfaces need a destination."""
        if not iface.multicast and to is None:
            raise OSError(errno.EINVAL, "no destination for unicast interface")
        sock = self._sockets.get(iface.socket_type)
        if sock is None:
            raise OSError(errno.EBADF, "socket not open")
        if iface.ipv6:
            host = MCAST_ADDR6 if iface.multicast else _strip_scope(to[0])
            dest: tuple = (host, MCAST_PORT, 0, iface.ifindex)
            info = bytes(16) + struct.pack("@I", iface.ifindex)
            ancillary = [(_IPPROTO_IPV6, _IPV6_PKTINFO, info)]
        else:
            dest = (MCAST_ADDR, MCAST_PORT) if iface.multicast else (to[0], to[1])
            info = struct.pack("@i4s4s", iface.ifindex, bytes(4), bytes(4))
            ancillary = [(socket.IPPROTO_IP, _IP_PKTINFO, info)]
        return sock.sendmsg([bytes(data)], ancillary, 0, dest)

    def sockets(self) -> list[socket.socket]:
        return list(self._sockets.values())

    def _lookup(self, ifindex: int, socket_type: SocketType) -> Interface | None:
        for iface in self:
            if iface.ifindex == ifindex and iface.socket_type == socket_type:
                return iface
        return None

    def handle_readable(self, sock: Any) -> bool:
        """Read one datagram from ``sock`` and hand it on; True if it was accepted."""
        socket_type = next((t for t, s in self._sockets.items() if s is sock), None)
        if socket_type is None:
            return False
        try:
            data, ancillary, _flags, sender = sock.recvmsg(RECV_BUFFER, _ANC_BUFFER)
        except OSError as exc:
            log.warning("read failed: %s", exc)
            return False
        ifindex = None
        for _level, ctype, cdata in ancillary:
            if socket_type.ipv6:
                if ctype == _IPV6_PKTINFO:
                    ifindex = struct.unpack_from("@16sI", cdata)[1]
                elif ctype != _IPV6_HOPLIMIT:
                    return False
            else:
                if ctype == _IP_PKTINFO:
                    ifindex = struct.unpack_from("@i", cdata)[0]
                elif ctype != _IP_TTL:
                    return False
        if ifindex is None:
            return False
        iface = self._lookup(ifindex, socket_type)
        if iface is None:
            return False
        if not iface.valid_source(sender[0], self.no_subnet):
            return False
        self._notify(self._on_packet, iface, sender, sender[1], bytes(data))
        return True

    def shutdown(self) -> None:
        """Close every socket."""
        for sock in self._sockets.values():
            sock.close()
        self._sockets.clear()