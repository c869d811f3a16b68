# knetgw

Turn ingress rules into Gateway API objects and find out, by probing the
gateway pods, when a new configuration has actually taken effect.

## Install

```
pip install knetgw
```

For running the tests:

```
pip install "knetgw[test]"
pytest
```

## Modules

- `knetgw.types` holds the data model as dataclasses: the ingress side
  (`Ingress`, `IngressRule`, `HTTPIngressPath`, `IngressBackendSplit`,
  `HeaderMatch`, `IngressTLS`, `Visibility`) and the route side (`HTTPRoute`,
  `HTTPRouteRule`, `HTTPRouteMatch`, `HTTPBackendRef`, `HTTPRouteFilter`,
  `ParentReference` and friends), plus `NamespacedName`, `OwnerReference` and
  `GatewayConfig`. `Ingress.controller_ref()` gives the owner reference that
  marks an ingress as the controller of the objects built from it.
- `knetgw.httproute`:
  - `make_http_route(ing, rule, gateway)` builds the `HTTPRoute` for one rule,
    attached to the given `GatewayConfig`. Headers are sorted so the output is
    stable; a gateway whose `supported_features` contains
    `"HTTPRouteRequestTimeout"` gets a `"0s"` request timeout on every rule.
  - `longest_host(hosts)` returns the last host in sorted order (it sorts the
    list in place) and raises `ValueError` for an empty list.
  - `http_route_key(ing, rule)` is the namespace and name of that route.
  - `add_endpoint_probe`, `add_old_backend`, `remove_endpoint_probes` and
    `update_probe_hash` add, drop and re-hash the
    `/.well-known/knative/revision/...` probe rules used while traffic moves
    between backends.
- `knetgw.reference_grant`:
  - `make_reference_grant(ing, to, from_)` builds a `ReferenceGrant` letting
    `from_` refer to `to`; both are `ObjectRef`s.
  - `child_name(parent, suffix)` makes a child name of at most 63 characters,
    shortening with an MD5 digest when needed.
- `knetgw.reconcile`:
  - `compute_backends(route, rule)` returns the rule's backend splits that the
    route does not yet send traffic to (sorted by service name) and the
    route's current backends, skipping probe rules.
  - `probe_targets(hash_value, ing, rule, route)` returns the route key,
    callback key, version and the URLs to probe, grouped by visibility.
  - `make_tls_listeners(tls, ing)` makes one HTTPS `Listener` per TLS host.
  - `merge_gateway_listeners(existing, desired)` and
    `remove_gateway_listeners(existing, ing)` return the new listener list and
    whether it changed.
- `knetgw.status`:
  - `Prober` queues an HTTP probe per URL and pod IP, retries failures with
    exponential back-off under a global rate limit, and calls the ready
    callback with the backends' `callback_key` once every pod answered with
    the expected hash. `cancel_ingress_probing`,
    `cancel_ingress_probing_by_key` and `cancel_pod_probing(pod_ip)` stop
    probing early.
  - `verify_response(version, status, headers)` judges one response: 200 with
    the expected `K-Network-Hash` (or without that header) and any status
    other than 404/503 count as ready; a wrong hash, 404 or 503 raise
    `ProbeError`.

## Example

```python
from knetgw.types import (
    GatewayConfig, HTTPIngressPath, Ingress, IngressBackendSplit,
    IngressRule, Visibility,
)
from knetgw.httproute import make_http_route

ing = Ingress(name="hello", namespace="default")
rule = IngressRule(
    hosts=["hello.default.example.com"],
    visibility=Visibility.EXTERNAL_IP,
    paths=[HTTPIngressPath(splits=[
        IngressBackendSplit(service_name="hello-00001",
                            service_namespace="default",
                            service_port=80, percent=100),
    ])],
)
gateway = GatewayConfig(namespace="gateways", name="external")
route = make_http_route(ing, rule, gateway)
```

Probing:

```python
import threading
from urllib.parse import urlsplit

from knetgw.status import Backends, Prober, ProbeTarget
from knetgw.types import NamespacedName, Visibility


class Lister:
    def backends_to_probe_targets(self, backends):
        return [
            ProbeTarget(pod_ips={"10.0.0.5"}, pod_port="8080", urls=list(urls))
            for urls in backends.urls.values()
        ]


key = NamespacedName("default", "hello")
backends = Backends(key=key, callback_key=key, version="some-hash")
backends.add_url(Visibility.EXTERNAL_IP, urlsplit("http://hello.default.example.com"))

done = threading.Event()
prober = Prober(Lister(), lambda k: print("ready", k))
stopped = prober.start(done)
state = prober.do_probes(backends)
print(state.version, state.ready)

done.set()
stopped.wait()
```

## What it does not do

The package builds objects and computes changes; it does not talk to a
cluster. There is no API client: creating or updating HTTPRoutes,
ReferenceGrants and Gateways, watching resources, recording events and
loading gateway configuration are left to the caller. It has no command-line
entry point, and the `ProbeTargetLister` that maps backends to pod IPs must be
supplied by the caller.