"""
Admission webhooks for the mesh operator.

This package provides validating admission webhooks for workloads, which
are checked against the active constraint set, and for the operator's own
custom resources, which are checked against their pydantic models before
Kubernetes stores them.

Webhooks are served by Kopf's built-in HTTPS server; certificates and the
webhook configurations are managed outside the operator.
"""
