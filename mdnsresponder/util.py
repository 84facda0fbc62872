"""Clock, host identity and timer helpers shared by the responder."""

from __future__ import annotations

import heapq
import itertools
import os
import secrets
import socket
import time
from dataclasses import dataclass, field
from typing import Callable

HOSTNAME_LEN = 256
MDNS_BUF_LEN = 8 * 1024
LOCAL_SUFFIX = ".local"


@dataclass(frozen=True)
class HostIdentity:
    """The host's bare label and its fully qualified ``.local`` name."""

    label: str
    local: str


def monotonic_time() -> int:
    """Return whole seconds from a monotonic clock."""
    return int(time.monotonic())


def rand_time_delta(t: int) -> int:
    """Return ``t`` jittered by up to one thirtieth of its value."""
    spread = t // 30
    if spread <= 0:
        return t
    return t + secrets.randbelow(spread) - spread // 2


def _nodename() -> str:
    try:
        return os.uname().nodename
    except AttributeError:
        return socket.gethostname()


def get_hostname() -> HostIdentity:
    """Read the system node name and derive the mDNS host names."""
    try:
        nodename = _nodename()
    except OSError:
        return HostIdentity("", "")
    label = nodename[: HOSTNAME_LEN - 1]
    local = f"{nodename}{LOCAL_SUFFIX}"[: HOSTNAME_LEN + len(LOCAL_SUFFIX) - 1]
    return HostIdentity(label, local)


@dataclass(eq=False)
class _Timer:
    when: float
    callback: Callable[[], object]
    cancelled: bool = False
    fired: bool = False


@dataclass(order=True)
class _Entry:
    when: float
    seq: int
    timer: _Timer = field(compare=False)


class Scheduler:
    """One-shot timers driven by an external loop; delays are in seconds."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.monotonic
        self._heap: list[_Entry] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], object]) -> _Timer:
        """Arrange for ``callback`` to run ``delay`` seconds from now."""
        timer = _Timer(self._clock() + delay, callback)
        heapq.heappush(self._heap, _Entry(timer.when, next(self._seq), timer))
        return timer

    def cancel(self, handle: _Timer | None) -> None:
        """Cancel a timer; cancelling a finished or missing timer is harmless."""
        if handle is not None:
            handle.cancelled = True

    def pending(self, handle: _Timer | None) -> bool:
        """Tell whether a timer is still waiting to run."""
        return handle is not None and not handle.cancelled and not handle.fired

    def _drop_cancelled(self) -> None:
        while self._heap and self._heap[0].timer.cancelled:
            heapq.heappop(self._heap)

    def run_due(self) -> int:
        """Run every timer due now; return how many ran."""
        now = self._clock()
        due = []
        while self._heap and self._heap[0].when <= now:
            entry = heapq.heappop(self._heap)
            if not entry.timer.cancelled:
                due.append(entry.timer)
        ran = 0
        for timer in due:
            if timer.cancelled:
                continue
            timer.fired = True
            timer.callback()
            ran += 1
        return ran

    def next_delay(self) -> float | None:
        """Seconds until the next timer is due, or None when idle."""
        self._drop_cancelled()
        if not self._heap:
            return None
        return max(0.0, self._heap[0].when - self._clock())