"""Readiness probing of the gateway pods that serve an ingress."""

from __future__ import annotations

import copy
import heapq
import http.client
import itertools
import logging
import socket
import ssl
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import SplitResult

from knetgw.types import HASH_KEY, HASH_VALUE_OVERRIDE, NamespacedName, Visibility

logger = logging.getLogger(__name__)

PROBE_CONCURRENCY = 15
PROBE_TIMEOUT = 1.0
INITIAL_DELAY = 0.2

HEALTH_CHECK_PATH = "/healthz"
USER_AGENT_KEY = "User-Agent"
INGRESS_READINESS_USER_AGENT = "Knative-Ingress-Probe"
PROBE_KEY = "K-Network-Probe"
PROBE_VALUE = "probe"

_OK = 200
_NOT_FOUND = 404
_SERVICE_UNAVAILABLE = 503


class ProbeError(Exception):
    """A probe response showing that the gateway is not ready yet."""


@dataclass
class ProbeTarget:
    """URLs to probe on a set of pod IPs serving out of the same port."""

    pod_ips: set[str]
    pod_port: str
    port: str = ""
    urls: list[SplitResult] = field(default_factory=list)


@dataclass(frozen=True)
class ProbeState:
    """The version being probed and whether all probes succeeded."""

    version: str = ""
    ready: bool = False


@dataclass
class Backends:
    """What to probe for one route, and the key to report readiness under."""

    callback_key: NamespacedName = field(default_factory=NamespacedName)
    key: NamespacedName = field(default_factory=NamespacedName)
    version: str = ""
    urls: dict[Visibility | str, set[SplitResult]] = field(default_factory=dict)
    http_option: str = ""

    def add_url(self, visibility: Visibility | str, url: SplitResult) -> None:
        """Add ``url`` to the set probed for ``visibility``."""
        self.urls.setdefault(visibility, set()).add(url)


class ProbeTargetLister(Protocol):
    """Lists the targets that require probing."""

    def backends_to_probe_targets(self, backends: Backends) -> list[ProbeTarget]:
        """Produce the probe targets for the given backends."""


def verify_response(version: str, status: int, headers: Mapping[str, str]) -> bool:
    """Judge a probe response; raise ProbeError when the probe must be retried."""
    if status == _OK:
        lowered = {k.lower(): v for k, v in headers.items()}
        hash_value = lowered.get(HASH_KEY.lower(), "")
        if not hash_value:
            logger.error("Probing abandoned: the response doesn't contain the %r header", HASH_KEY)
            return True
        if hash_value == version:
            return True
        raise ProbeError(f"unexpected version: want {version!r}, got {hash_value!r}")
    if status in (_NOT_FOUND, _SERVICE_UNAVAILABLE):
        raise ProbeError(f"unexpected status code: want {_OK}, got {status}")
    logger.error(
        "Probing abandoned: the response status is %s, expected one of: %s",
        status,
        [_OK, _NOT_FOUND, _SERVICE_UNAVAILABLE],
    )
    return True


class _Counter:
    """A thread-safe integer."""

    def __init__(self, value: int = 0) -> None:
        self._lock = threading.Lock()
        self._value = value

    def load(self) -> int:
        with self._lock:
            return self._value

    def add(self, delta: int) -> int:
        with self._lock:
            self._value += delta
            return self._value

    def drain(self) -> bool:
        """Set the value to 0; report whether it was positive before."""
        with self._lock:
            if self._value <= 0:
                return False
            self._value = 0
            return True


class _Context:
    """A cancellation signal, cancelled too when any of its parents is."""

    def __init__(self, *parents: _Context) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._parents = parents
        for parent in parents:
            parent.add_done_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def add_done_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def _discard(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for parent in self._parents:
            parent._discard(self.cancel)
        for callback in callbacks:
            callback()


@dataclass(eq=False)
class _RouteState:
    version: str
    key: NamespacedName
    callback_key: NamespacedName
    cancel: Callable[[], None]
    pending: _Counter = field(default_factory=_Counter)
    last_accessed: float = field(default_factory=time.monotonic)


@dataclass(eq=False)
class _PodState:
    cancel: Callable[[], None]
    pending: _Counter = field(default_factory=_Counter)


@dataclass(eq=False)
class _WorkItem:
    route_state: _RouteState
    url: SplitResult
    pod_ip: str
    pod_port: str
    pod_state: _PodState | None = None
    context: _Context | None = None


class _WorkQueue:
    """A delaying queue with per-item exponential backoff and a global token bucket."""

    def __init__(
        self,
        base_delay: float = 0.05,
        max_delay: float = 30.0,
        rate: float = 50.0,
        burst: int = 100,
    ) -> None:
        self._cond = threading.Condition()
        self._heap: list[tuple[float, int, _WorkItem]] = []
        self._seq = itertools.count()
        self._shutdown = False
        self._failures: dict[_WorkItem, int] = {}
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._rate = rate
        self._burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def add_after(self, item: _WorkItem, delay: float) -> None:
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._heap, (time.monotonic() + delay, next(self._seq), item))
            self._cond.notify_all()

    def add_rate_limited(self, item: _WorkItem) -> None:
        self.add_after(item, self._when(item))

    def _when(self, item: _WorkItem) -> float:
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
            backoff = min(self._base_delay * 2 ** min(failures, 30), self._max_delay)

            now = time.monotonic()
            self._tokens = min(self._burst, self._tokens + (now - self._last) * self._rate)
            self._last = now
            self._tokens -= 1
            bucket = 0.0 if self._tokens >= 0 else -self._tokens / self._rate
            return max(backoff, bucket)

    def forget(self, item: _WorkItem) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def get(self) -> _WorkItem | None:
        """Wait for the next due item; None once the queue is shut down."""
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                now = time.monotonic()
                if self._heap and self._heap[0][0] <= now:
                    return heapq.heappop(self._heap)[2]
                timeout = self._heap[0][0] - now if self._heap else None
                self._cond.wait(timeout)

    def shut_down(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class Prober:
    """Checks that routes are ready by probing the gateway pods serving them."""

    def __init__(
        self,
        target_lister: ProbeTargetLister,
        ready_callback: Callable[[NamespacedName], None],
        *,
        probe_concurrency: int = PROBE_CONCURRENCY,
    ) -> None:
        self._lock = threading.RLock()
        self._route_states: dict[NamespacedName, _RouteState] = {}
        self._pod_contexts: dict[str, _Context] = {}
        self._queue = _WorkQueue()
        self._target_lister = target_lister
        self._ready_callback = ready_callback
        self._probe_concurrency = probe_concurrency

    def is_probe_active(self, key: NamespacedName) -> tuple[ProbeState, bool]:
        """The probing state for ``key`` and whether probing is known for it."""
        with self._lock:
            state = self._route_states.get(key)
            if state is None:
                return ProbeState(), False
            return ProbeState(version=state.version, ready=state.pending.load() == 0), True

    def do_probes(self, backends: Backends) -> ProbeState:
        """Start probing the backends, or report progress if their version is already probed."""
        stale: _RouteState | None = None
        with self._lock:
            state = self._route_states.get(backends.key)
            if state is not None:
                if state.version == backends.version:
                    state.last_accessed = time.monotonic()
                    return ProbeState(version=state.version, ready=state.pending.load() == 0)
                stale = self._route_states.pop(backends.key)
        if stale is not None:
            stale.cancel()

        targets = self._target_lister.backends_to_probe_targets(backends)
        ready = self._probe_request(backends.version, backends.key, backends.callback_key, targets)
        return ProbeState(version=backends.version, ready=ready)

    def _probe_request(
        self,
        version: str,
        key: NamespacedName,
        callback_key: NamespacedName,
        targets: list[ProbeTarget],
    ) -> bool:
        route_ctx = _Context()
        route_state = _RouteState(
            version=version, key=key, callback_key=callback_key, cancel=route_ctx.cancel
        )

        work_items: dict[str, list[_WorkItem]] = {}
        for target in targets:
            for ip in target.pod_ips:
                for url in target.urls:
                    work_items.setdefault(ip, []).append(
                        _WorkItem(
                            route_state=route_state,
                            url=url,
                            pod_ip=ip,
                            pod_port=target.pod_port,
                        )
                    )

        route_state.pending.add(len(work_items))

        for ip, items in work_items.items():
            with self._lock:
                ip_ctx = self._pod_contexts.setdefault(ip, _Context())

            pod_ctx = _Context(route_ctx, ip_ctx)
            pod_state = _PodState(cancel=pod_ctx.cancel, pending=_Counter(len(items)))
            pod_ctx.add_done_callback(
                lambda ps=pod_state: self._on_probing_cancellation(route_state, ps)
            )

            for item in items:
                item.pod_state = pod_state
                item.context = pod_ctx
                self._queue.add_after(item, INITIAL_DELAY)
                logger.info(
                    "Queuing probe for %s, IP: %s:%s (version: %s)(depth: %d)",
                    item.url.geturl(), item.pod_ip, item.pod_port, version, len(self._queue),
                )

        with self._lock:
            self._route_states[key] = route_state
        return not work_items

    def start(self, done: threading.Event) -> threading.Event:
        """Run the probing workers until ``done`` is set; the returned event is set once they stop."""
        workers = [
            threading.Thread(target=self._work, name=f"prober-{n}", daemon=True)
            for n in range(self._probe_concurrency)
        ]
        for worker in workers:
            worker.start()

        finished = threading.Event()

        def _supervise() -> None:
            done.wait()
            self._queue.shut_down()
            for worker in workers:
                worker.join()
            finished.set()

        threading.Thread(target=_supervise, name="prober-supervisor", daemon=True).start()
        return finished

    def _work(self) -> None:
        while self._process_work_item():
            pass

    def cancel_ingress_probing(self, obj: object) -> None:
        """Cancel probing of the given ingress, identified by its namespace and name."""
        namespace = getattr(obj, "namespace", None)
        name = getattr(obj, "name", None)
        if not isinstance(namespace, str) or not isinstance(name, str):
            return
        self.cancel_ingress_probing_by_key(NamespacedName(namespace=namespace, name=name))

    def cancel_ingress_probing_by_key(self, key: NamespacedName) -> None:
        """Cancel probing of the routes that report readiness under ``key``."""
        to_cancel = []
        with self._lock:
            for state in list(self._route_states.values()):
                if state.callback_key == key:
                    to_cancel.append(state)
                    self._route_states.pop(key, None)
        for state in to_cancel:
            state.cancel()

    def cancel_pod_probing(self, pod_ip: str) -> None:
        """Cancel all probing of the pod with the given IP."""
        with self._lock:
            ctx = self._pod_contexts.pop(pod_ip, None)
        if ctx is not None:
            ctx.cancel()

    def _process_work_item(self) -> bool:
        item = self._queue.get()
        if item is None:
            return False

        if item.context.cancelled:
            self._queue.forget(item)
            return True

        logger.info(
            "Processing probe for %s, IP: %s:%s (depth: %d)",
            item.url.geturl(), item.pod_ip, item.pod_port, len(self._queue),
        )
        error: Exception | None = None
        try:
            ok = self._probe(item)
        except (OSError, http.client.HTTPException, ProbeError, ValueError) as exc:
            ok, error = False, exc

        if item.context.cancelled:
            self._queue.forget(item)
            return True

        if not ok:
            self._queue.add_rate_limited(item)
            logger.error(
                "Probing of %s failed, IP: %s:%s, error: %s (depth: %d)",
                item.url.geturl(), item.pod_ip, item.pod_port, error, len(self._queue),
            )
        else:
            self._queue.forget(item)
            self._on_probing_success(item.route_state, item.pod_state)
        return True

    @staticmethod
    def _probe(item: _WorkItem) -> bool:
        url = copy.copy(item.url)
        scheme = url.scheme or "http"
        target = url.path or HEALTH_CHECK_PATH
        if url.query:
            target = f"{target}?{url.query}"

        conn = http.client.HTTPConnection(url.netloc or item.pod_ip, timeout=PROBE_TIMEOUT)
        raw = socket.create_connection((item.pod_ip, int(item.pod_port)), timeout=PROBE_TIMEOUT)
        try:
            if scheme == "https":
                # Only the gateway's configuration matters here, not its certificate.
                tls = ssl.create_default_context()
                tls.check_hostname = False
                tls.verify_mode = ssl.CERT_NONE
                conn.sock = tls.wrap_socket(raw, server_hostname=url.hostname or None)
            else:
                conn.sock = raw
            conn.request(
                "GET",
                target,
                headers={
                    USER_AGENT_KEY: INGRESS_READINESS_USER_AGENT,
                    PROBE_KEY: PROBE_VALUE,
                    HASH_KEY: HASH_VALUE_OVERRIDE,
                },
            )
            response = conn.getresponse()
            response.read()
            return verify_response(item.route_state.version, response.status, response.headers)
        finally:
            conn.close()
            raw.close()

    def _on_probing_success(self, route_state: _RouteState, pod_state: _PodState) -> None:
        if pod_state.pending.add(-1) == 0:
            pod_state.cancel()
            if route_state.pending.add(-1) == 0:
                self._ready_callback(route_state.callback_key)

    def _on_probing_cancellation(self, route_state: _RouteState, pod_state: _PodState) -> None:
        if pod_state.pending.drain() and route_state.pending.add(-1) == 0:
            self._ready_callback(route_state.callback_key)