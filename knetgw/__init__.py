"""Gateway API route building and readiness probing for ingress rules."""

__version__ = "0.1.0"

__all__ = ["types", "httproute", "reference_grant", "reconcile", "status"]