import queue
import threading
import time
from contextlib import contextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import NamedTuple
from urllib.parse import SplitResult

import pytest

from knetgw.status import (
    Backends,
    ProbeError,
    Prober,
    ProbeState,
    ProbeTarget,
    verify_response,
)
from knetgw.types import HASH_KEY, Ingress, NamespacedName, Visibility

INGRESS_NN = NamespacedName(namespace="default", name="whatever")
LOCALHOST = "127.0.0.1"


def _url(host, scheme="http"):
    return SplitResult(scheme=scheme, netloc=host, path="", query="", fragment="")


class _Seen(NamedTuple):
    host: str
    path: str
    headers: dict
    time: float


@contextmanager
def _server(respond):
    requests = queue.Queue()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            requests.put(
                _Seen(self.headers.get("Host", ""), self.path, dict(self.headers), time.monotonic())
            )
            status, headers = respond(self.headers.get("Host", ""))
            self.send_response(status)
            for key, value in headers.items():
                self.send_header(key, value)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer((LOCALHOST, 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield str(server.server_address[1]), requests
    finally:
        server.shutdown()
        server.server_close()


@contextmanager
def _running(prober):
    done = threading.Event()
    finished = prober.start(done)
    try:
        yield
    finally:
        done.set()
        finished.wait(5)


class FakeLister:
    def __init__(self, pod_ips, pod_port):
        self.pod_ips = set(pod_ips)
        self.pod_port = pod_port

    def backends_to_probe_targets(self, backends):
        return [
            ProbeTarget(pod_ips=self.pod_ips, pod_port=self.pod_port, urls=list(urls))
            for urls in backends.urls.values()
        ]


class NotFoundLister:
    def backends_to_probe_targets(self, backends):
        raise LookupError("not found")


def _drain(requests, grace=0.5):
    time.sleep(grace)
    seen = []
    while True:
        try:
            seen.append(requests.get_nowait())
        except queue.Empty:
            return seen


def test_backends():
    backends = Backends()
    backends.add_url("external", _url("www.example.com", scheme=""))
    backends.add_url("cluster", _url("www.example.com", scheme=""))
    backends.add_url("cluster", _url("www.blah.com", scheme=""))

    assert backends.urls == {
        "external": {_url("www.example.com", scheme="")},
        "cluster": {_url("www.example.com", scheme=""), _url("www.blah.com", scheme="")},
    }


@pytest.mark.parametrize(
    "status, headers, want",
    [
        (200, {HASH_KEY: "Hi! I am hash!"}, True),
        (200, {HASH_KEY: "nope"}, False),
        (200, {}, True),
        (404, {}, False),
        (503, {}, False),
        (403, {}, True),
        (301, {}, True),
        (302, {}, True),
    ],
)
def test_verify_response(status, headers, want):
    version = "Hi! I am hash!"
    if want:
        assert verify_response(version, status, headers) is True
    else:
        with pytest.raises(ProbeError):
            verify_response(version, status, headers)


def test_verify_response_header_lookup_is_case_insensitive():
    assert verify_response("abc", 200, {HASH_KEY.lower(): "abc"}) is True


def test_probe_all_hosts():
    host_a, host_b = "foo.bar.com", "ksvc.test.dev"
    hash_value = "some-hash"
    host_b_enabled = threading.Event()

    def respond(host):
        if host.startswith(host_a) or (host_b_enabled.is_set() and host.startswith(host_b)):
            return 200, {HASH_KEY: hash_value}
        return 404, {}

    with _server(respond) as (port, requests):
        ready = queue.Queue()
        prober = Prober(FakeLister([LOCALHOST], port), ready.put)
        with _running(prober):
            backends = Backends(
                key=INGRESS_NN,
                version=hash_value,
                urls={Visibility.EXTERNAL_IP: {_url(host_a), _url(host_b)}},
            )
            assert prober.is_probe_active(INGRESS_NN) == (ProbeState(), False)

            assert prober.do_probes(backends).ready is False
            assert prober.is_probe_active(INGRESS_NN) == (ProbeState(hash_value, False), True)

            seen = set()
            deadline = time.monotonic() + 5
            while seen != {host_a, host_b}:
                req = requests.get(timeout=max(deadline - time.monotonic(), 0.01))
                assert req.host in (host_a, host_b)
                seen.add(req.host)

            with pytest.raises(queue.Empty):
                ready.get(timeout=1)

            host_b_enabled.set()
            assert ready.get(timeout=5) == NamespacedName()
            assert prober.is_probe_active(INGRESS_NN) == (ProbeState(hash_value, True), True)


def test_probe_sends_probe_headers_and_health_path():
    def respond(host):
        return 200, {HASH_KEY: "h"}

    with _server(respond) as (port, requests):
        ready = queue.Queue()
        prober = Prober(FakeLister([LOCALHOST], port), ready.put)
        with _running(prober):
            prober.do_probes(
                Backends(key=INGRESS_NN, version="h", urls={"ext": {_url("foo.bar.com")}})
            )
            req = requests.get(timeout=5)
            assert req.path == "/healthz"
            assert req.headers["User-Agent"] == "Knative-Ingress-Probe"
            assert req.headers["K-Network-Probe"] == "probe"
            assert req.headers[HASH_KEY] == "override"
            assert ready.get(timeout=5) == NamespacedName()


def test_probe_lifecycle():
    hash_value = "some-hash"
    host_a = "foo.bar.com"
    hashes = iter(["not-the-hash-you-are-looking-for"])
    lock = threading.Lock()

    def respond(host):
        if not host.startswith(host_a):
            return 404, {}
        with lock:
            value = next(hashes, hash_value)
        return 200, {HASH_KEY: value}

    with _server(respond) as (port, requests):
        ready = queue.Queue()
        prober = Prober(FakeLister([LOCALHOST], port), ready.put)
        with _running(prober):
            backends = Backends(
                callback_key=INGRESS_NN,
                key=INGRESS_NN,
                version=hash_value,
                urls={Visibility.EXTERNAL_IP: {_url(host_a)}},
            )
            assert prober.do_probes(backends).ready is False

            for _ in range(2):
                assert requests.get(timeout=5).host == host_a

            assert ready.get(timeout=5) == INGRESS_NN

            for _ in range(5):
                assert prober.do_probes(backends).ready is True

            prober.cancel_ingress_probing(Ingress(name="whatever", namespace="default"))
            assert requests.empty()
            assert prober.is_probe_active(INGRESS_NN) == (ProbeState(), False)

            assert prober.do_probes(backends).ready is False
            assert requests.get(timeout=5).host == host_a
            assert ready.get(timeout=5) == INGRESS_NN


def test_probe_lister_fail():
    prober = Prober(NotFoundLister(), lambda key: None)
    backends = Backends(
        key=INGRESS_NN,
        version="some-hash",
        urls={Visibility.EXTERNAL_IP: {_url("foo.bar.com")}},
    )
    with pytest.raises(LookupError):
        prober.do_probes(backends)
    assert prober.is_probe_active(INGRESS_NN) == (ProbeState(), False)


def test_no_targets_is_ready_and_cached():
    prober = Prober(FakeLister([], "80"), lambda key: None)
    backends = Backends(callback_key=INGRESS_NN, key=INGRESS_NN, version="v1")
    assert prober.do_probes(backends) == ProbeState("v1", True)
    assert prober.is_probe_active(INGRESS_NN) == (ProbeState("v1", True), True)

    newer = Backends(callback_key=INGRESS_NN, key=INGRESS_NN, version="v2")
    assert prober.do_probes(newer) == ProbeState("v2", True)
    assert prober.is_probe_active(INGRESS_NN) == (ProbeState("v2", True), True)

    prober.cancel_ingress_probing_by_key(INGRESS_NN)
    assert prober.is_probe_active(INGRESS_NN) == (ProbeState(), False)


def test_cancel_ingress_probing_ignores_objects_without_identity():
    prober = Prober(FakeLister([], "80"), lambda key: None)
    prober.do_probes(Backends(callback_key=INGRESS_NN, key=INGRESS_NN, version="v1"))
    prober.cancel_ingress_probing(object())
    assert prober.is_probe_active(INGRESS_NN) == (ProbeState("v1", True), True)


def test_cancel_pod_probing():
    other_domain = "blabla.net"
    parallel_domain = "parallel.net"

    with _server(lambda host: (404, {})) as (port, requests):
        ready = queue.Queue()
        prober = Prober(FakeLister([LOCALHOST], port), ready.put)
        with _running(prober):
            backends = Backends(
                key=INGRESS_NN,
                version="some-hash",
                urls={Visibility.EXTERNAL_IP: {_url("foo.bar.com")}},
            )
            assert prober.do_probes(backends).ready is False
            requests.get(timeout=5)

            backends = Backends(
                key=INGRESS_NN,
                version="a-new-hash",
                urls={Visibility.EXTERNAL_IP: {_url(other_domain)}},
            )
            parallel = Backends(
                key=NamespacedName(namespace="default", name="something"),
                version="another-hash",
                urls={Visibility.EXTERNAL_IP: {_url(parallel_domain)}},
            )
            assert prober.do_probes(parallel).ready is False
            assert ready.empty()

            assert prober.do_probes(backends).ready is False

            deadline = time.monotonic() + 5
            while True:
                req = requests.get(timeout=max(deadline - time.monotonic(), 0.01))
                if req.host.startswith(other_domain):
                    break

            prober.cancel_pod_probing(LOCALHOST)

            for req in _drain(requests):
                assert req.host.startswith((other_domain, parallel_domain))

            assert _drain(requests, grace=1.5) == []


def test_partial_pod_cancellation():
    hash_value = "some-hash"
    unreachable = "198.51.100.1"

    with _server(lambda host: (200, {HASH_KEY: hash_value})) as (port, requests):
        ready = queue.Queue()
        prober = Prober(FakeLister([LOCALHOST, unreachable], port), ready.put)
        with _running(prober):
            backends = Backends(
                key=INGRESS_NN,
                version=hash_value,
                urls={Visibility.EXTERNAL_IP: {_url("foo.bar.com")}},
            )
            assert prober.do_probes(backends).ready is False

            requests.get(timeout=5)
            assert ready.empty()

            prober.cancel_pod_probing(unreachable)
            assert ready.get(timeout=5) == NamespacedName()
            assert prober.is_probe_active(INGRESS_NN) == (ProbeState(hash_value, True), True)


def test_cancel_ingress_probing():
    domain = "blabla.net"

    with _server(lambda host: (404, {})) as (port, requests):
        ready = queue.Queue()
        prober = Prober(FakeLister([LOCALHOST], port), ready.put)
        with _running(prober):
            backends = Backends(
                key=INGRESS_NN,
                version="some-hash",
                urls={Visibility.EXTERNAL_IP: {_url("foo.bar.com")}},
            )
            assert prober.do_probes(backends).ready is False
            requests.get(timeout=5)

            new_backends = Backends(
                key=INGRESS_NN,
                version="second-hash",
                urls={Visibility.EXTERNAL_IP: {_url(domain)}},
            )
            assert ready.empty()
            assert prober.do_probes(new_backends).ready is False

            deadline = time.monotonic() + 5
            while True:
                req = requests.get(timeout=max(deadline - time.monotonic(), 0.01))
                if req.host.startswith(domain):
                    break

            prober.cancel_ingress_probing(Ingress(name="whatever", namespace="default"))

            for req in _drain(requests):
                assert req.host.startswith(domain)
            assert prober.is_probe_active(INGRESS_NN) == (ProbeState("second-hash", False), True)