"""
Mesh Operator - A GitOps-compatible Kubernetes operator for service mesh policy.

This operator provides a policy-driven mesh control plane with:
- Continuous reconciliation of declared workloads from a Git checkout
- Admission-time constraint enforcement over workload specifications
- mTLS identity based authorization between services
- External secret synchronization with rotation
- A single ingress entry point with enforced TLS
"""

__version__ = "0.1.0"
