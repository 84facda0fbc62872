import pytest

from mdnsresponder.api import (
    STATUS_INVALID_ARGUMENT,
    STATUS_METHOD_NOT_FOUND,
    STATUS_NOT_FOUND,
    ApiError,
    ControlApi,
)
from mdnsresponder.cache import Cache
from mdnsresponder.interface import Interface, SocketType
from mdnsresponder.protocol import (
    C_DNS_SD,
    MessageReader,
    PacketBuilder,
    RecordType,
    SrvData,
    encode_name,
)
from mdnsresponder.service import Service, ServiceRegistry, encode_txt
from mdnsresponder.util import HostIdentity

ETH0 = Interface("eth0", SocketType.MC_IPV4, 3)
ETH0_V6 = Interface("eth0", SocketType.MC_IPV6, 3)
ETH1 = Interface("eth1", SocketType.MC_IPV4, 4)
IDENTITY = HostIdentity("box", "box.local")


class Querier:
    def __init__(self):
        self.queries = []
        self.questions = []

    def query(self, name, rtype):
        self.queries.append((name, rtype))

    def send_question(self, iface, to, name, rtype, multicast):
        self.questions.append((name, rtype))


class FakeManager:
    def __init__(self, ifaces=()):
        self.ifaces = list(ifaces)
        self.log = []

    def get(self, name, socket_type):
        return next(
            (i for i in self.ifaces if i.name == name and i.socket_type == socket_type), None
        )

    def __iter__(self):
        return iter(self.ifaces)

    def begin_update(self):
        self.log.append("begin")

    def add(self, name):
        self.log.append(("add", name))
        return True

    def flush(self):
        self.log.append("flush")
        return []


class FakeResponder:
    def __init__(self):
        self.sent = []

    def send_question(self, iface, to, name, rtype, multicast):
        self.sent.append((iface.key, name, rtype, multicast))


def feed(cache, iface, *answers):
    builder = PacketBuilder()
    for name, rtype, rdata, ttl in answers:
        builder.add_answer(name, rtype, rdata, ttl)
    reader = MessageReader(builder.to_bytes())
    header = reader.read_header()
    for _ in range(header.answers):
        cache.answer(iface, ("192.0.2.9", 5353), reader.data, reader.read_answer())


def populated_cache():
    querier = Querier()
    cache = Cache(querier, clock=lambda: 1000)
    feed(
        cache,
        ETH0,
        ("_http._tcp.local", RecordType.PTR, encode_name("web._http._tcp.local"), 120),
        ("web._http._tcp.local", RecordType.SRV, SrvData(0, 0, 8080, "myhost.local").pack(), 120),
        ("web._http._tcp.local", RecordType.TXT, encode_txt(["path=/"]), 120),
        ("myhost.local", RecordType.A, bytes([192, 0, 2, 10]), 120),
    )
    return cache, querier


def make_api(ifaces=(ETH0,), cache=None, services=None, reload=None):
    if cache is None:
        cache, _ = populated_cache()
    responder = FakeResponder()
    manager = FakeManager(ifaces)
    api = ControlApi(manager, cache, services, responder, reload)
    return api, manager, responder


def test_browse_describes_service():
    api, _, _ = make_api()
    result = api.browse()
    assert list(result) == ["_http._tcp"]
    web = result["_http._tcp"]["web"]
    assert web["iface"] == "eth0"
    assert web["host"] == "myhost.local"
    assert web["port"] == 8080
    assert web["txt"] == "path=/"
    assert web["ipv4"] == "192.0.2.10"
    assert web["domain"] == "local"


def test_browse_array_mode_uses_lists():
    api, _, _ = make_api()
    web = api.browse(array=True)["_http._tcp"]["web"]
    assert web["ipv4"] == ["192.0.2.10"]
    assert web["txt"] == ["path=/"]


def test_browse_filters_and_address_flag():
    api, _, _ = make_api()
    assert api.browse(service="_ipp._tcp") == {}
    assert list(api.browse(service="_http._tcp")) == ["_http._tcp"]
    web = api.browse(address=False)["_http._tcp"]["web"]
    assert "ipv4" not in web
    assert web["port"] == 8080


def test_browse_skips_bare_protocol_types():
    cache, _ = populated_cache()
    feed(cache, ETH0, (C_DNS_SD, RecordType.PTR, encode_name("_http._tcp.local"), 120))
    api, _, _ = make_api(cache=cache)
    assert list(api.browse()) == ["_http._tcp"]


def test_hosts():
    api, _, _ = make_api()
    assert api.hosts() == {"myhost.local": {"ipv4": "192.0.2.10"}}
    assert api.hosts(True) == {"myhost.local": {"ipv4": ["192.0.2.10"]}}


def test_fetch_follows_targets():
    api, _, _ = make_api()
    records = api.fetch("_http._tcp.local", "eth0", RecordType.ANY)["records"]
    assert [r["type"] for r in records] == ["PTR", "SRV", "A", "TXT"]
    assert records[0]["target"] == "web._http._tcp.local"
    assert records[1]["port"] == 8080
    assert records[2]["target"] == "192.0.2.10"
    assert all(r["ttl"] == 120 for r in records)


def test_fetch_filters_by_interface_index():
    other = Interface("eth0", SocketType.MC_IPV4, 9)
    api, _, _ = make_api(ifaces=(other,))
    assert api.fetch("_http._tcp.local", "eth0", RecordType.ANY) == {"records": []}


def test_fetch_needs_interface():
    api, _, _ = make_api()
    with pytest.raises(ApiError) as info:
        api.fetch("_http._tcp.local", None, RecordType.ANY)
    assert info.value.status == STATUS_INVALID_ARGUMENT


def test_query_unknown_interface():
    api, _, responder = make_api()
    with pytest.raises(ApiError) as info:
        api.query(C_DNS_SD, "wlan9", RecordType.ANY)
    assert info.value.status == STATUS_NOT_FOUND
    assert responder.sent == []


def test_query_all_and_one_interface():
    api, _, responder = make_api(ifaces=(ETH0, ETH0_V6, ETH1))
    api.query()
    assert responder.sent == [
        (ETH0.key, C_DNS_SD, RecordType.ANY, 1),
        (ETH0_V6.key, C_DNS_SD, RecordType.ANY, 1),
        (ETH1.key, C_DNS_SD, RecordType.ANY, 1),
    ]
    responder.sent.clear()
    api.query("box.local", "eth1", RecordType.A)
    assert responder.sent == [(ETH1.key, "box.local", RecordType.A, 1)]


def test_announcements_lists_services():
    registry = ServiceRegistry(IDENTITY, lambda *a: None, lambda *a: None)
    registry.add_service(
        Service("web", "box", "_http._tcp.local", "box.local", 80, encode_txt(["a=1", "b=2"]))
    )
    registry.add_service(Service("off", "box", "_ssh._tcp.local", "box.local", 0))
    api, _, _ = make_api(services=registry)
    assert api.announcements() == {"_http._tcp.local": {"web": {"port": 80, "txt": ["a=1", "b=2"]}}}


def test_set_config_replaces_or_keeps():
    api, manager, _ = make_api()
    api.set_config(["eth0", "eth1"])
    assert manager.log == ["begin", ("add", "eth0"), ("add", "eth1"), "flush"]
    manager.log.clear()
    api.set_config(["eth2"], keep=True)
    assert manager.log == [("add", "eth2")]


def test_set_config_rejects_bad_list():
    api, manager, _ = make_api()
    with pytest.raises(ApiError) as info:
        api.call("set_config", {"interfaces": ["eth0", 1]})
    assert info.value.status == STATUS_INVALID_ARGUMENT
    with pytest.raises(ApiError):
        api.call("set_config", {})
    assert manager.log == []


def test_call_dispatch():
    api, _, _ = make_api()
    assert api.call("hosts", {"array": True}) == api.hosts(True)
    assert api.call("browse", {"service": 5}) == api.browse()
    with pytest.raises(ApiError) as info:
        api.call("missing", {})
    assert info.value.status == STATUS_METHOD_NOT_FOUND


def test_call_query_ignores_wrong_type():
    api, _, responder = make_api()
    assert api.call("query", {"type": "x"}) is None
    assert responder.sent == [(ETH0.key, C_DNS_SD, RecordType.ANY, 1)]


def test_update_and_reload():
    cache, querier = populated_cache()
    reloads = []
    api, _, _ = make_api(cache=cache, reload=lambda: reloads.append(1))
    assert (C_DNS_SD, RecordType.ANY) not in querier.queries
    api.call("update")
    assert (C_DNS_SD, RecordType.ANY) in querier.queries
    api.call("reload")
    assert reloads == [1]