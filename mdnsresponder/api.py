"""Control operations: browsing the cache, querying and configuration."""

from __future__ import annotations

from typing import Any, Callable, Mapping

from .interface import SocketType
from .protocol import C_DNS_SD, RecordType

STATUS_INVALID_ARGUMENT = "INVALID_ARGUMENT"
STATUS_NOT_FOUND = "NOT_FOUND"
STATUS_METHOD_NOT_FOUND = "METHOD_NOT_FOUND"


class ApiError(Exception):
    """A control request that cannot be served; ``status`` says why."""

    def __init__(self, status: str, message: str = "") -> None:
        super().__init__(message or status)
        self.status = status


def _pairs_to_dict(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    """Turn ordered pairs into a dict; a repeated key collects its values in a list."""
    grouped: dict[str, list[Any]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}


def _decode_txt(txt: bytes) -> list[str]:
    items: list[str] = []
    pos = 0
    while pos < len(txt):
        length = txt[pos]
        pos += 1
        if not length:
            break
        items.append(txt[pos : pos + length].split(b"\0", 1)[0].decode("utf-8", "replace"))
        pos += length
    return items


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ControlApi:
    """The methods a control client may call."""

    def __init__(
        self,
        interfaces: Any,
        cache: Any,
        services: Any,
        responder: Any,
        reload_services: Callable[[], object] | None = None,
    ) -> None:
        self.interfaces = interfaces
        self.cache = cache
        self.services = services
        self.responder = responder
        self._reload = reload_services

    def reload(self) -> None:
        """Reload the announced services."""
        if self._reload is not None:
            self._reload()

    def update(self) -> None:
        """Ask the network again for everything in the cache."""
        self.cache.update()

    def announcements(self) -> dict[str, dict[str, Any]]:
        """Describe the services this host announces."""
        result: dict[str, dict[str, Any]] = {}
        for s in self.services.services():
            if not s.id or not s.service or not s.port:
                continue
            entry: dict[str, Any] = {"port": s.port}
            if s.txt:
                entry["txt"] = _decode_txt(s.txt)
            result.setdefault(s.service, {})[s.id] = entry
        return result

    def browse(
        self, service: str | None = None, array: bool = False, address: bool = True
    ) -> dict[str, dict[str, Any]]:
        """Describe the services seen on the network, grouped by type."""
        result: dict[str, dict[str, Any]] = {}
        for s in self.cache.services():
            type_name = s.key
            local = type_name.find(".local")
            if local >= 0:
                type_name = type_name[:local]
            if type_name in ("_tcp", "_udp"):
                continue
            if service is not None and type_name != service:
                continue
            instance = s.entry
            marker = instance.find("._")
            if marker >= 0:
                instance = instance[:marker]
            pairs: list[tuple[str, Any]] = []
            if s.iface is not None:
                pairs.append(("iface", s.iface.name))
            record_pairs, hostname = self.cache.dump_records(s.entry, array)
            pairs += record_pairs
            if address:
                host = hostname if hostname is not None else instance + ".local"
                pairs += self.cache.dump_records(host, array)[0]
            result.setdefault(type_name, {})[instance] = _pairs_to_dict(pairs)
        return result

    def hosts(self, array: bool = False) -> dict[str, dict[str, Any]]:
        """Describe every host with an address record."""
        result: dict[str, dict[str, Any]] = {}
        previous: str | None = None
        for r in self.cache.records():
            if r.rtype not in (RecordType.A, RecordType.AAAA):
                continue
            if previous is None or r.record != previous:
                result[r.record] = _pairs_to_dict(self.cache.dump_records(r.record, array)[0])
            previous = r.record
        return result

    def set_config(self, interfaces: Any, keep: bool = False) -> None:
        """Listen on the named interfaces; drop the others unless ``keep``."""
        if not isinstance(interfaces, (list, tuple)) or not all(
            isinstance(name, str) for name in interfaces
        ):
            raise ApiError(STATUS_INVALID_ARGUMENT, "interfaces must be a list of names")
        keep = bool(keep)
        if not keep:
            self.interfaces.begin_update()
        for name in interfaces:
            self.interfaces.add(name)
        if not keep:
            self.interfaces.flush()

    def _resolve(self, interface: str | None) -> tuple[Any, Any]:
        if interface is None:
            return None, None
        v4 = self.interfaces.get(interface, SocketType.MC_IPV4)
        v6 = self.interfaces.get(interface, SocketType.MC_IPV6)
        if v4 is None and v6 is None:
            raise ApiError(STATUS_NOT_FOUND, f"unknown interface {interface}")
        return v4, v6

    def query(
        self, question: str = C_DNS_SD, interface: str | None = None, rtype: int = RecordType.ANY
    ) -> None:
        """Send a question on one interface or on all of them."""
        v4, v6 = self._resolve(interface)
        targets = [i for i in (v4, v6) if i is not None] or list(self.interfaces)
        for iface in targets:
            self.responder.send_question(iface, None, question, rtype, 1)

    def fetch(
        self, question: str = C_DNS_SD, interface: str | None = None, rtype: int = RecordType.ANY
    ) -> dict[str, list[dict[str, Any]]]:
        """List cached records answering ``question`` on an interface."""
        v4, v6 = self._resolve(interface)
        if v4 is None and v6 is None:
            raise ApiError(STATUS_INVALID_ARGUMENT, "an interface is required")
        iface = v4 if v4 is not None else v6
        return {"records": self.cache.dump_recursive(question, rtype, iface)}

    def call(self, method: str, params: Mapping[str, Any] | None = None) -> Any:
        """Dispatch a named method; arguments of the wrong type are ignored."""
        params = {} if params is None else params
        if not isinstance(params, Mapping):
            raise ApiError(STATUS_INVALID_ARGUMENT, "parameters must be an object")

        def pick(name: str, check: Callable[[Any], bool]) -> Any:
            value = params.get(name)
            return value if value is not None and check(value) else None

        def is_str(v: Any) -> bool:
            return isinstance(v, str)

        def is_bool(v: Any) -> bool:
            return isinstance(v, bool)

        def is_list(v: Any) -> bool:
            return isinstance(v, list)

        if method == "set_config":
            return self.set_config(pick("interfaces", is_list), bool(pick("keep", is_bool)))
        if method in ("query", "fetch"):
            question = pick("question", is_str)
            rtype = pick("type", _is_int)
            args = (
                C_DNS_SD if question is None else question,
                pick("interface", is_str),
                RecordType.ANY if rtype is None else rtype & 0xFFFFFFFF,
            )
            return self.query(*args) if method == "query" else self.fetch(*args)
        if method == "browse":
            address = pick("address", is_bool)
            return self.browse(
                pick("service", is_str),
                bool(pick("array", is_bool)),
                True if address is None else address,
            )
        if method == "announcements":
            return self.announcements()
        if method == "update":
            return self.update()
        if method == "hosts":
            return self.hosts(bool(pick("array", is_bool)))
        if method == "reload":
            return self.reload()
        raise ApiError(STATUS_METHOD_NOT_FOUND, f"unknown method {method}")