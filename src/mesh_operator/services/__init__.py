"""
Service layer for the mesh operator.

This module provides the control plane components, separated from the kopf
handler layer:

- ReconciliationLoop: converges a desired-state source into the cluster
- AdmissionController: gates workload specifications against constraints
- PolicyDecisionEngine: authorizes calls between workload identities
- SecretSynchronizer: keeps local secrets in sync with external stores
- TrafficRouter: maps ingress requests to internal services
"""

from .admission import AdmissionController
from .policy_engine import PolicyDecisionEngine, StaticIdentityProvider
from .reconciler import (
    InMemoryWorkloadStore,
    ManifestDirectorySource,
    ReconciliationLoop,
)
from .router import TrafficRouter
from .secret_sync import CertificateRegistry, SecretSynchronizer
from .snapshots import Snapshot, SnapshotStore

__all__ = [
    "AdmissionController",
    "CertificateRegistry",
    "InMemoryWorkloadStore",
    "ManifestDirectorySource",
    "PolicyDecisionEngine",
    "ReconciliationLoop",
    "SecretSynchronizer",
    "Snapshot",
    "SnapshotStore",
    "StaticIdentityProvider",
    "TrafficRouter",
]
