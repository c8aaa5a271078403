"""
Handlers package - Contains all Kopf event handlers for mesh resources.

This package organizes handlers by resource type:
- source.py: MeshSource reconciliation daemons
- policy.py: MeshAuthorizationPolicy snapshot updates
- constraints.py: MeshConstraintTemplate and MeshConstraint snapshot updates
- external_secret.py: ExternalSecret sync daemons
- routes.py: MeshRoute snapshot updates
- identity.py: workload identity Secrets
"""
