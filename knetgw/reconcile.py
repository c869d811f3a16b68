"""Reconciliation helpers: probe targets, backend diffs and gateway listeners."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import NamedTuple
from urllib.parse import SplitResult

from knetgw.httproute import http_route_key, longest_host
from knetgw.types import (
    HASH_KEY,
    HTTPBackendRef,
    HTTPRoute,
    Ingress,
    IngressBackendSplit,
    IngressRule,
    IngressTLS,
    NamespacedName,
    Visibility,
)

_LISTENER_PREFIX = "kni-"
_LABEL_METADATA_NAME = "kubernetes.io/metadata.name"


@dataclass
class TLSCertificateRef:
    """A reference to the secret holding a listener's certificate."""

    name: str
    namespace: str
    group: str = ""
    kind: str = "Secret"


@dataclass
class Listener:
    """An HTTPS listener of a gateway terminating TLS for one host."""

    name: str
    hostname: str
    port: int = 443
    protocol: str = "HTTPS"
    tls_mode: str = "Terminate"
    certificate_refs: list[TLSCertificateRef] = field(default_factory=list)
    allowed_namespaces_from: str = "Selector"
    namespace_selector: dict[str, str] = field(default_factory=dict)
    allowed_kinds: list[str] = field(default_factory=list)


class _RouteProbes(NamedTuple):
    key: NamespacedName
    callback_key: NamespacedName
    version: str
    urls: dict[Visibility, set[SplitResult]]


def _url(host: str, path: str) -> SplitResult:
    return SplitResult(scheme="", netloc=host, path=path, query="", fragment="")


def _is_probe_match(match) -> bool:
    return any(h.name == HASH_KEY for h in match.headers)


def probe_targets(hash_value: str, ing: Ingress, rule: IngressRule, route: HTTPRoute) -> _RouteProbes:
    """The URLs to probe for the probe rules of ``route``, grouped by visibility."""
    visibility = rule.visibility or Visibility.EXTERNAL_IP
    urls: dict[Visibility, set[SplitResult]] = {}

    for route_rule in route.rules:
        for match in route_rule.matches:
            for header in match.headers:
                if header.name != HASH_KEY:
                    continue
                path = match.path.value
                if visibility == Visibility.CLUSTER_LOCAL:
                    host = longest_host(route.hostnames)
                    urls.setdefault(visibility, set()).add(_url(host, path))
                    break
                for hostname in route.hostnames:
                    urls.setdefault(visibility, set()).add(_url(hostname, path))

    return _RouteProbes(
        key=http_route_key(ing, rule),
        callback_key=NamespacedName(namespace=ing.namespace, name=ing.name),
        version=hash_value,
        urls=urls,
    )


def compute_backends(
    route: HTTPRoute, rule: IngressRule
) -> tuple[list[IngressBackendSplit], list[HTTPBackendRef]]:
    """Split the rule's backends into ones new to ``route`` and the route's current ones."""
    old_backends: list[HTTPBackendRef] = []
    old_names: set[NamespacedName] = set()

    for route_rule in route.rules:
        if any(_is_probe_match(m) for m in route_rule.matches):
            continue
        for backend in route_rule.backend_refs:
            namespace = backend.namespace if backend.namespace is not None else route.namespace
            old_names.add(NamespacedName(namespace=namespace, name=backend.name))
            old_backends.append(backend)

    new_backends = [
        split
        for path in rule.paths
        if HASH_KEY not in path.headers
        for split in path.splits
        if NamespacedName(namespace=split.service_namespace, name=split.service_name)
        not in old_names
    ]
    new_backends.sort(key=lambda s: s.service_name)
    return new_backends, old_backends


def make_tls_listeners(tls: IngressTLS, ing: Ingress) -> list[Listener]:
    """One HTTPS listener per TLS host of the ingress."""
    return [
        Listener(
            name=_LISTENER_PREFIX + ing.uid,
            hostname=host,
            certificate_refs=[
                TLSCertificateRef(name=tls.secret_name, namespace=tls.secret_namespace)
            ],
            namespace_selector={_LABEL_METADATA_NAME: ing.namespace},
        )
        for host in tls.hosts
    ]


def merge_gateway_listeners(
    existing: list[Listener], desired: list[Listener]
) -> tuple[list[Listener], bool]:
    """Replace or append the desired listeners; report whether anything changed."""
    wanted = {listener.name: listener for listener in desired}
    merged: list[Listener] = []
    updated = False

    for listener in existing:
        replacement = wanted.pop(listener.name, None)
        if replacement is None or replacement == listener:
            merged.append(listener)
            continue
        merged.append(replacement)
        updated = True

    if wanted:
        merged.extend(wanted.values())
        updated = True
    return merged, updated


def remove_gateway_listeners(existing: list[Listener], ing: Ingress) -> tuple[list[Listener], bool]:
    """Remove the ingress's listeners, each replaced by the last one; report any removal."""
    name = _LISTENER_PREFIX + ing.uid
    result = list(existing)
    for i in reversed(range(len(result))):
        if result[i].name == name:
            result[i] = result[-1]
            result.pop()
    return result, len(result) != len(existing)