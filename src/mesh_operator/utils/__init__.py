"""
Utilities package - Helpers shared by the operator services.

Contains:
- kubernetes.py: Kubernetes client setup and the cluster workload store
- secret_manager.py: Materialization of synced values as Kubernetes secrets
- secret_store.py: External secret store client
- circuit_breaker.py: Circuit breaker around external calls
- certificates.py: X.509 parsing for identities and TLS material
- locks.py: Per-key asyncio locks
- hashing.py: Canonical content hashes
- ownership.py: Ownership labels and annotations on managed objects
"""
