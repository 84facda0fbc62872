import random
import socket

from mdnsresponder.cache import Cache
from mdnsresponder.dns import Responder, is_reverse_query, match_ipv4_reverse, match_ipv6_reverse
from mdnsresponder.interface import Interface, SocketType, interface_key
from mdnsresponder.protocol import MessageReader, PacketBuilder, RecordType, encode_name
from mdnsresponder.service import ServiceRegistry
from mdnsresponder.util import HostIdentity

IDENT = HostIdentity("box", "box.local")


class FakeInterfaces:
    def __init__(self, ifaces):
        self.ifaces = ifaces
        self.sent = []

    def __iter__(self):
        return iter(self.ifaces)

    def get(self, name, socket_type):
        return next((i for i in self.ifaces if i.key == interface_key(name, socket_type)), None)

    def send(self, iface, data, to=None):
        self.sent.append((iface, data, to))
        return len(data)


def setup(types=(SocketType.MC_IPV4,)):
    ifaces = FakeInterfaces([Interface("fuzz0", t, 1) for t in types])
    resp = Responder(
        ifaces, None, None, IDENT, None, 120,
        lambda name: [(socket.AF_INET, "192.168.1.100", "255.255.255.0")],
    )
    resp.cache = Cache(resp, clock=lambda: 100)
    resp.services = ServiceRegistry(IDENT, lambda i, t, b: resp.send_packet(i, t, b), resp.reply_a, ifaces, lambda: 100)
    return resp, ifaces


def answers_of(data):
    reader = MessageReader(data)
    header = reader.read_header()
    return [reader.read_answer() for _ in range(header.answers)]


def test_reverse_helpers():
    assert is_reverse_query("4.3.2.1.in-addr.arpa", ".in-addr.arpa")
    assert not is_reverse_query("arpa", ".in-addr.arpa")
    assert match_ipv4_reverse("4.3.2.1", "1.2.3.4")
    assert not match_ipv4_reverse("4.3.2.1", "1.2.3.5")
    rev = ".".join(reversed("fe80" + "0" * 27 + "1"))
    assert match_ipv6_reverse(rev, "fe80::1")
    assert not match_ipv6_reverse(rev, "fe80::2")


def test_fuzz_inputs_are_dropped():
    resp, ifaces = setup()
    rng = random.Random(1922)
    inputs = [b"", b"\x00" * 5, b"\x00\x00\x00\x00\x00\x01" + b"\x00" * 6]
    inputs += [bytes(rng.randrange(256) for _ in range(rng.randrange(64))) for _ in range(200)]
    for data in inputs:
        resp.handle_packet(Interface("", SocketType.MC_IPV4, 0), ("0.0.0.0", 0), 1922, data)
    assert resp.cache.records() == [] or all(r.ttl > 0 for r in resp.cache.records())
    assert ifaces.sent == [] or all(isinstance(d, bytes) for _, d, _ in ifaces.sent)


def test_response_fills_cache():
    resp, _ = setup()
    b = PacketBuilder()
    b.add_answer("peer.local", RecordType.A, bytes([10, 0, 0, 7]), 60)
    resp.handle_packet(resp.interfaces.ifaces[0], ("10.0.0.7", 5353), 5353, b.to_bytes())
    assert resp.cache.host_is_known("peer.local")


def test_a_question_answered():
    resp, ifaces = setup()
    b = PacketBuilder()
    b.add_question("box.local", RecordType.A)
    resp.handle_packet(ifaces.ifaces[0], ("192.168.1.50", 5353), 5353, b.to_bytes())
    answers = answers_of(ifaces.sent[0][1])
    assert answers[0].rdata == bytes([192, 168, 1, 100])


def test_unicast_iface_drops_wrong_port():
    resp, ifaces = setup((SocketType.UC_IPV4,))
    b = PacketBuilder()
    b.add_question("box.local", RecordType.A)
    resp.handle_packet(ifaces.ifaces[0], ("192.168.1.50", 1922), 1922, b.to_bytes())
    assert ifaces.sent == []


def test_reverse_ipv4_question():
    resp, ifaces = setup()
    b = PacketBuilder()
    b.add_question("100.1.168.192.in-addr.arpa", RecordType.PTR)
    resp.handle_packet(ifaces.ifaces[0], ("192.168.1.50", 5353), 5353, b.to_bytes())
    answers = answers_of(ifaces.sent[0][1])
    assert answers[0].rdata == encode_name("box.local")


def test_query_dedupe_and_flush():
    resp, ifaces = setup()
    resp.query("x.local", RecordType.A)
    resp.query("x.local", RecordType.A)
    resp.flush_queries()
    reader = MessageReader(ifaces.sent[0][1])
    assert reader.read_header().questions == 1
    assert reader.read_question().name == "x.local"