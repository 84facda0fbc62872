"""DNS wire format: names, headers, records and packet building."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

FLAG_RESPONSE = 0x8000
FLAG_AUTHORITATIVE = 0x0400
RESPONSE_FLAGS = FLAG_RESPONSE | FLAG_AUTHORITATIVE

CLASS_FLUSH = 0x8000
CLASS_UNICAST = 0x8000
CLASS_IN = 0x0001

MCAST_ADDR = "224.0.0.251"
MCAST_ADDR6 = "ff02::fb"
MCAST_PORT = 5353

MAX_NAME_LEN = 8096
MAX_DATA_LEN = 8096
MAX_WIRE_NAME = 255
MAX_LABEL = 63

C_DNS_SD = "_services._dns-sd._udp.local"

PACKET_SIZE = 9000
HEADER_SIZE = 12
BODY_SIZE = PACKET_SIZE - HEADER_SIZE

_HEADER = struct.Struct("!6H")
_QUESTION = struct.Struct("!HH")
_ANSWER = struct.Struct("!HHIH")
_SRV = struct.Struct("!HHH")

_SPECIAL = frozenset(b'".;\\()@$')


class DnsError(ValueError):
    """Raised for malformed or oversized DNS data."""


class RecordType(IntEnum):
    A = 0x0001
    PTR = 0x000C
    TXT = 0x0010
    AAAA = 0x001C
    SRV = 0x0021
    ANY = 0x00FF


def type_string(rtype: int) -> str:
    """Return the mnemonic of a known record type, else ``"N/A"``."""
    try:
        return RecordType(rtype).name
    except ValueError:
        return "N/A"


def _is_compressed(length: int) -> bool:
    return (length & 0xC0) == 0xC0


def scan_name(data: bytes, offset: int = 0) -> int:
    """Return how many bytes the name at ``offset`` occupies in place."""
    remaining = len(data) - offset
    pos = offset
    consumed = 0
    while remaining > 0 and data[pos] != 0:
        length = data[pos]
        if _is_compressed(length):
            return consumed + 2
        if length + 1 > remaining:
            raise DnsError("label runs past end of message")
        remaining -= length + 1
        consumed += length + 1
        pos += length + 1
    if remaining <= 0 or consumed == 0 or data[pos] != 0:
        raise DnsError("malformed name")
    return consumed + 1


def _label_text(label: bytes) -> str:
    parts = []
    for byte in label:
        if byte in _SPECIAL:
            parts.append("\\" + chr(byte))
        elif byte <= 0x20 or byte >= 0x7F:
            parts.append(f"\\{byte:03d}")
        else:
            parts.append(chr(byte))
    return "".join(parts)


def expand_name(message: bytes, offset: int) -> tuple[str, int]:
    """Decode a possibly compressed name; return it and its in-place length."""
    end = len(message)
    labels: list[bytes] = []
    pos = offset
    consumed: int | None = None
    wire_len = 0
    checked = 0
    while True:
        if pos >= end:
            raise DnsError("name runs past end of message")
        length = message[pos]
        if _is_compressed(length):
            if pos + 1 >= end:
                raise DnsError("truncated compression pointer")
            if consumed is None:
                consumed = pos + 2 - offset
            pos = ((length & 0x3F) << 8) | message[pos + 1]
            checked += 2
            if checked >= end:
                raise DnsError("compression loop")
            continue
        if length & 0xC0:
            raise DnsError("unsupported label type")
        if length == 0:
            if consumed is None:
                consumed = pos + 1 - offset
            break
        if pos + 1 + length > end:
            raise DnsError("label runs past end of message")
        wire_len += length + 1
        if wire_len + 1 > MAX_WIRE_NAME:
            raise DnsError("name too long")
        labels.append(bytes(message[pos + 1 : pos + 1 + length]))
        pos += length + 1
        checked += length + 1
        if checked >= end:
            raise DnsError("compression loop")
    text = ".".join(_label_text(label) for label in labels) if labels else "."
    return text, consumed


def _split_labels(name: str) -> list[bytes]:
    if name in ("", "."):
        return []
    data = name.encode("utf-8")
    labels: list[bytes] = []
    current = bytearray()
    i = 0
    while i < len(data):
        byte = data[i]
        if byte == 0x5C:
            digits = data[i + 1 : i + 4]
            if len(digits) == 3 and digits.isdigit():
                value = int(digits)
                if value > 255:
                    raise DnsError("escape out of range")
                current.append(value)
                i += 4
                continue
            if i + 1 >= len(data):
                raise DnsError("dangling escape")
            current.append(data[i + 1])
            i += 2
            continue
        if byte == 0x2E:
            if not current:
                raise DnsError("empty label")
            labels.append(bytes(current))
            current = bytearray()
            i += 1
            continue
        current.append(byte)
        i += 1
    if current:
        labels.append(bytes(current))
    if any(len(label) > MAX_LABEL for label in labels):
        raise DnsError("label too long")
    if sum(len(label) + 1 for label in labels) + 1 > MAX_WIRE_NAME:
        raise DnsError("name too long")
    return labels


def encode_name(name: str) -> bytes:
    """Encode a dotted name in uncompressed wire form."""
    return b"".join(bytes([len(label)]) + label for label in _split_labels(name)) + b"\x00"


@dataclass
class Header:
    id: int = 0
    flags: int = 0
    questions: int = 0
    answers: int = 0
    authority: int = 0
    additional: int = 0

    @classmethod
    def unpack(cls, data: bytes) -> "Header":
        if len(data) < HEADER_SIZE:
            raise DnsError("short header")
        return cls(*_HEADER.unpack_from(data, 0))

    def pack(self) -> bytes:
        return _HEADER.pack(
            self.id, self.flags, self.questions, self.answers, self.authority, self.additional
        )


@dataclass
class Question:
    name: str
    rtype: int
    rclass: int

    @property
    def unicast(self) -> bool:
        """True when the querier asked for a unicast reply."""
        return bool(self.rclass & CLASS_UNICAST)


@dataclass
class Answer:
    name: str
    rtype: int
    rclass: int
    ttl: int
    rdata: bytes
    rdata_offset: int

    @property
    def flush(self) -> bool:
        """True when the cache-flush bit is set."""
        return bool(self.rclass & CLASS_FLUSH)


@dataclass
class SrvData:
    priority: int
    weight: int
    port: int
    target: str

    def pack(self) -> bytes:
        return _SRV.pack(self.priority, self.weight, self.port) + encode_name(self.target)

    @classmethod
    def unpack(cls, message: bytes, offset: int, length: int) -> "SrvData":
        if length < _SRV.size or offset + _SRV.size > len(message):
            raise DnsError("short SRV record")
        priority, weight, port = _SRV.unpack_from(message, offset)
        target, _ = expand_name(message, offset + _SRV.size)
        return cls(priority, weight, port, target)


class MessageReader:
    """Sequential reader over a received DNS message."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def read_header(self) -> Header:
        header = Header.unpack(self.data[self.offset :])
        self.offset += HEADER_SIZE
        return header

    def _read_name(self) -> str:
        length = scan_name(self.data, self.offset)
        name, _ = expand_name(self.data, self.offset)
        self.offset += length
        return name

    def read_question(self) -> Question:
        name = self._read_name()
        if self.remaining < _QUESTION.size:
            raise DnsError("short question")
        rtype, rclass = _QUESTION.unpack_from(self.data, self.offset)
        self.offset += _QUESTION.size
        return Question(name, rtype, rclass)

    def read_answer(self) -> Answer:
        name = self._read_name()
        if self.remaining < _ANSWER.size:
            raise DnsError("short answer")
        rtype, rclass, ttl, rdlength = _ANSWER.unpack_from(self.data, self.offset)
        self.offset += _ANSWER.size
        if rdlength > self.remaining:
            raise DnsError("record data runs past end of message")
        start = self.offset
        self.offset += rdlength
        return Answer(name, rtype, rclass, ttl, self.data[start : self.offset], start)


class PacketBuilder:
    """Assembles an outgoing packet with name compression."""

    def __init__(self) -> None:
        self.header = Header()
        self._body = bytearray()
        self._names: dict[tuple[bytes, ...], int] = {}
        self._class_offsets: list[int] = []

    def _compress(self, name: str) -> tuple[bytes, list[tuple[tuple[bytes, ...], int]]]:
        labels = _split_labels(name)
        base = HEADER_SIZE + len(self._body)
        out = bytearray()
        fresh = []
        for i, label in enumerate(labels):
            key = tuple(part.lower() for part in labels[i:])
            pointer = self._names.get(key)
            if pointer is not None:
                out += struct.pack("!H", 0xC000 | pointer)
                return bytes(out), fresh
            fresh.append((key, base + len(out)))
            out.append(len(label))
            out += label
        out.append(0)
        return bytes(out), fresh

    def _add_record(self, name: str, fixed: bytes) -> int | None:
        if len(self._body) + MAX_NAME_LEN > BODY_SIZE:
            return None
        encoded, fresh = self._compress(name)
        if len(self._body) + len(encoded) + len(fixed) > BODY_SIZE:
            return None
        for key, pos in fresh:
            if pos < 0x4000:
                self._names.setdefault(key, pos)
        self._body += encoded
        start = len(self._body)
        self._body += fixed
        return start

    def add_question(self, name: str, rtype: int) -> bool:
        """Append a question; return False when the packet has no room."""
        start = self._add_record(name, _QUESTION.pack(int(rtype), CLASS_IN))
        if start is None:
            return False
        self._class_offsets.append(start + 2)
        self.header.questions += 1
        return True

    def add_answer(self, name: str, rtype: int, rdata: bytes, ttl: int) -> None:
        """Append a resource record and mark the packet as a response."""
        self.header.flags |= RESPONSE_FLAGS
        fixed = _ANSWER.pack(int(rtype), CLASS_IN, ttl & 0xFFFFFFFF, len(rdata)) + bytes(rdata)
        if self._add_record(name, fixed) is None:
            raise DnsError("packet full")
        self.header.answers += 1

    def set_multicast(self, multicast: bool) -> None:
        """Clear or set the unicast-response bit on every question."""
        for offset in self._class_offsets:
            (rclass,) = struct.unpack_from("!H", self._body, offset)
            rclass = rclass & ~CLASS_UNICAST if multicast else rclass | CLASS_UNICAST
            struct.pack_into("!H", self._body, offset, rclass)

    def question_count(self) -> int:
        return self.header.questions

    def answer_count(self) -> int:
        return self.header.answers

    def to_bytes(self) -> bytes:
        return self.header.pack() + bytes(self._body)