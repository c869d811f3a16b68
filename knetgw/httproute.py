"""Building and editing HTTPRoutes for ingress rules."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from operator import attrgetter

from knetgw.types import (
    FEATURE_HTTP_ROUTE_REQUEST_TIMEOUT,
    FILTER_REQUEST_HEADER_MODIFIER,
    FILTER_URL_REWRITE,
    HASH_KEY,
    HASH_VALUE_OVERRIDE,
    LAST_APPLIED_CONFIG_ANNOTATION,
    VISIBILITY_LABEL_KEY,
    GatewayConfig,
    HTTPBackendRef,
    HTTPHeader,
    HTTPHeaderFilter,
    HTTPHeaderMatch,
    HTTPPathMatch,
    HTTPRoute,
    HTTPRouteFilter,
    HTTPRouteMatch,
    HTTPRouteRule,
    HTTPRouteTimeouts,
    HTTPURLRewriteFilter,
    Ingress,
    IngressBackendSplit,
    IngressRule,
    NamespacedName,
    ParentReference,
    Visibility,
)

_PROBE_PATH_PREFIX = "/.well-known/knative"


def longest_host(hosts: list[str]) -> str:
    """Return the most specific host; sorts ``hosts`` in place."""
    if not hosts:
        raise ValueError("no hosts to choose from")
    hosts.sort()
    return hosts[-1]


def _sorted_headers(headers: Mapping[str, str]) -> list[HTTPHeader]:
    return [HTTPHeader(name=k, value=v) for k, v in sorted(headers.items())]


def _header_modifier(headers: list[HTTPHeader]) -> HTTPRouteFilter:
    return HTTPRouteFilter(
        type=FILTER_REQUEST_HEADER_MODIFIER,
        request_header_modifier=HTTPHeaderFilter(headers=headers),
    )


def _probe_rule(path: str, hash_value: str, backend: HTTPBackendRef) -> HTTPRouteRule:
    return HTTPRouteRule(
        matches=[
            HTTPRouteMatch(
                path=HTTPPathMatch(value=path),
                headers=[HTTPHeaderMatch(name=HASH_KEY, value=HASH_VALUE_OVERRIDE)],
            )
        ],
        filters=[_header_modifier([HTTPHeader(name=HASH_KEY, value=hash_value)])],
        backend_refs=[backend],
    )


def update_probe_hash(route: HTTPRoute, hash_value: str) -> None:
    """Set the hash header written by every rule-level header filter."""
    for rule in route.rules:
        for flt in rule.filters:
            if flt.type != FILTER_REQUEST_HEADER_MODIFIER or flt.request_header_modifier is None:
                continue
            for header in flt.request_header_modifier.headers:
                if header.name == HASH_KEY:
                    header.value = hash_value


def remove_endpoint_probes(route: HTTPRoute) -> None:
    """Drop the rules that serve endpoint probes."""
    kept: list[HTTPRouteRule] = []
    for rule in route.rules:
        for match in rule.matches:
            if (
                match.path is not None
                and match.path.value is not None
                and match.path.value.startswith(_PROBE_PATH_PREFIX)
            ):
                break
            kept.append(rule)
    route.rules = kept


def add_endpoint_probe(route: HTTPRoute, hash_value: str, backend: IngressBackendSplit) -> None:
    """Append a rule probing the given backend split."""
    backend_ref = HTTPBackendRef(
        name=backend.service_name,
        port=backend.port_number,
        weight=100,
    )
    if backend.append_headers:
        backend_ref.filters.append(_header_modifier(_sorted_headers(backend.append_headers)))
    path = f"/.well-known/knative/revision/{backend.service_namespace}/{backend.service_name}"
    route.rules.append(_probe_rule(path, hash_value, backend_ref))


def add_old_backend(route: HTTPRoute, hash_value: str, old: HTTPBackendRef) -> None:
    """Append a rule probing a backend the route already sends traffic to."""
    backend = copy.deepcopy(old)
    backend.weight = 100
    for flt in backend.filters:
        if flt.request_header_modifier is not None:
            flt.request_header_modifier.headers.sort(key=attrgetter("name"))
    path = f"/.well-known/knative/revision/{route.namespace}/{backend.name}"
    route.rules.append(_probe_rule(path, hash_value, backend))


def http_route_key(ing: Ingress, rule: IngressRule) -> NamespacedName:
    """The name of the HTTPRoute built for a rule of an ingress."""
    return NamespacedName(namespace=ing.namespace, name=longest_host(rule.hosts))


def make_http_route(ing: Ingress, rule: IngressRule, gateway: GatewayConfig) -> HTTPRoute:
    """Build the HTTPRoute for one rule, attached to ``gateway``."""
    name = longest_host(rule.hosts)
    visibility = "cluster-local" if rule.visibility == Visibility.CLUSTER_LOCAL else ""
    return HTTPRoute(
        name=name,
        namespace=ing.namespace,
        labels={**ing.labels, VISIBILITY_LABEL_KEY: visibility},
        annotations={
            k: v for k, v in ing.annotations.items() if k != LAST_APPLIED_CONFIG_ANNOTATION
        },
        owner_references=[ing.controller_ref()],
        hostnames=list(rule.hosts),
        rules=_make_rules(gateway, rule),
        parent_refs=[ParentReference(name=gateway.name, namespace=gateway.namespace)],
    )


def _make_rules(gateway: GatewayConfig, rule: IngressRule) -> list[HTTPRouteRule]:
    rules = []
    for path in rule.paths:
        filters: list[HTTPRouteFilter] = []
        if path.append_headers is not None:
            filters.append(_header_modifier(_sorted_headers(path.append_headers)))
        if path.rewrite_host:
            filters.append(
                HTTPRouteFilter(
                    type=FILTER_URL_REWRITE,
                    url_rewrite=HTTPURLRewriteFilter(hostname=path.rewrite_host),
                )
            )

        backend_refs = [
            HTTPBackendRef(
                name=split.service_name,
                port=split.port_number,
                weight=split.percent,
                filters=[_header_modifier(_sorted_headers(split.append_headers))],
            )
            for split in path.splits
        ]

        header_matches = sorted(
            (HTTPHeaderMatch(name=k, value=v.exact) for k, v in path.headers.items()),
            key=attrgetter("name"),
            reverse=True,
        )

        route_rule = HTTPRouteRule(
            matches=[
                HTTPRouteMatch(path=HTTPPathMatch(value=path.path or "/"), headers=header_matches)
            ],
            filters=filters,
            backend_refs=backend_refs,
        )
        if FEATURE_HTTP_ROUTE_REQUEST_TIMEOUT in gateway.supported_features:
            route_rule.timeouts = HTTPRouteTimeouts(request="0s")
        rules.append(route_rule)
    return rules