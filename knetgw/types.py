"""Data model for ingresses and the Gateway API objects derived from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

HASH_KEY = "K-Network-Hash"
HASH_VALUE_OVERRIDE = "override"
VISIBILITY_LABEL_KEY = "networking.knative.dev/visibility"
LAST_APPLIED_CONFIG_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"
GATEWAY_API_GROUP = "gateway.networking.k8s.io"
INGRESS_API_VERSION = "networking.internal.knative.dev/v1alpha1"
INGRESS_KIND = "Ingress"
FEATURE_HTTP_ROUTE_REQUEST_TIMEOUT = "HTTPRouteRequestTimeout"

FILTER_REQUEST_HEADER_MODIFIER = "RequestHeaderModifier"
FILTER_URL_REWRITE = "URLRewrite"
PATH_MATCH_PATH_PREFIX = "PathPrefix"
HEADER_MATCH_EXACT = "Exact"


class Visibility(str, Enum):
    """Where an ingress rule is reachable from."""

    EXTERNAL_IP = "ExternalIP"
    CLUSTER_LOCAL = "ClusterLocal"


@dataclass(frozen=True)
class NamespacedName:
    """A namespace and name pair identifying an object."""

    namespace: str = ""
    name: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class OwnerReference:
    """A reference from a child object to the object controlling it."""

    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool = True
    block_owner_deletion: bool = True


@dataclass
class IngressBackendSplit:
    """A weighted backend service of an ingress path."""

    service_name: str
    service_namespace: str = ""
    service_port: int | str = 0
    percent: int = 0
    append_headers: dict[str, str] = field(default_factory=dict)

    @property
    def port_number(self) -> int:
        """The port as an integer; a non-numeric named port gives 0."""
        if isinstance(self.service_port, int):
            return self.service_port
        try:
            return int(self.service_port)
        except ValueError:
            return 0


@dataclass
class HeaderMatch:
    """An exact header value to match."""

    exact: str = ""


@dataclass
class HTTPIngressPath:
    """One path of an ingress rule and the backends serving it."""

    path: str = ""
    headers: dict[str, HeaderMatch] = field(default_factory=dict)
    splits: list[IngressBackendSplit] = field(default_factory=list)
    append_headers: dict[str, str] | None = None
    rewrite_host: str = ""


@dataclass
class IngressRule:
    """A set of hosts and the paths routed for them."""

    hosts: list[str] = field(default_factory=list)
    visibility: Visibility | None = None
    paths: list[HTTPIngressPath] = field(default_factory=list)


@dataclass
class IngressTLS:
    """TLS settings for a set of hosts."""

    hosts: list[str] = field(default_factory=list)
    secret_name: str = ""
    secret_namespace: str = ""


@dataclass
class Ingress:
    """An ingress resource."""

    name: str
    namespace: str
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    rules: list[IngressRule] = field(default_factory=list)
    tls: list[IngressTLS] = field(default_factory=list)

    def controller_ref(self) -> OwnerReference:
        """The owner reference that marks this ingress as the controller."""
        return OwnerReference(
            api_version=INGRESS_API_VERSION,
            kind=INGRESS_KIND,
            name=self.name,
            uid=self.uid,
        )


@dataclass
class GatewayConfig:
    """A configured gateway and the features it supports."""

    namespace: str
    name: str
    class_name: str = ""
    supported_features: set[str] = field(default_factory=set)


@dataclass
class HTTPHeader:
    """A header name and value."""

    name: str
    value: str


@dataclass
class HTTPHeaderFilter:
    """Headers to set on a request."""

    headers: list[HTTPHeader] = field(default_factory=list)


@dataclass
class HTTPURLRewriteFilter:
    """A host rewrite applied to a request."""

    hostname: str | None = None


@dataclass
class HTTPRouteFilter:
    """A filter applied to requests of a route rule or backend."""

    type: str
    request_header_modifier: HTTPHeaderFilter | None = None
    url_rewrite: HTTPURLRewriteFilter | None = None


@dataclass
class HTTPPathMatch:
    """A path match of a route."""

    value: str
    type: str = PATH_MATCH_PATH_PREFIX


@dataclass
class HTTPHeaderMatch:
    """A header match of a route."""

    name: str
    value: str
    type: str = HEADER_MATCH_EXACT


@dataclass
class HTTPRouteMatch:
    """Conditions a request must meet for a rule to apply."""

    path: HTTPPathMatch | None = None
    headers: list[HTTPHeaderMatch] = field(default_factory=list)


@dataclass
class HTTPBackendRef:
    """A backend service receiving a share of the traffic."""

    name: str
    group: str = ""
    kind: str = "Service"
    namespace: str | None = None
    port: int | None = None
    weight: int | None = None
    filters: list[HTTPRouteFilter] = field(default_factory=list)


@dataclass
class HTTPRouteTimeouts:
    """Timeouts of a route rule."""

    request: str | None = None


@dataclass
class HTTPRouteRule:
    """Matches, filters and backends of one route rule."""

    matches: list[HTTPRouteMatch] = field(default_factory=list)
    filters: list[HTTPRouteFilter] = field(default_factory=list)
    backend_refs: list[HTTPBackendRef] = field(default_factory=list)
    timeouts: HTTPRouteTimeouts | None = None


@dataclass
class ParentReference:
    """The gateway a route attaches to."""

    name: str
    namespace: str | None = None
    group: str = GATEWAY_API_GROUP
    kind: str = "Gateway"


@dataclass
class HTTPRoute:
    """An HTTPRoute resource."""

    name: str
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    hostnames: list[str] = field(default_factory=list)
    rules: list[HTTPRouteRule] = field(default_factory=list)
    parent_refs: list[ParentReference] = field(default_factory=list)