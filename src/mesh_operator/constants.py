"""
Constants used throughout the mesh operator.

This module defines all constant values used by the operator including:
- API group and custom resource plurals
- Resource labels and annotations
- Default configuration values
- Error messages and status constants
"""

# Custom resource coordinates
API_GROUP = "mesh.mdvr.nl"
API_VERSION = "v1"
SOURCE_PLURAL = "meshsources"
POLICY_PLURAL = "meshauthorizationpolicies"
TEMPLATE_PLURAL = "meshconstrainttemplates"
CONSTRAINT_PLURAL = "meshconstraints"
EXTERNAL_SECRET_PLURAL = "externalsecrets"
ROUTE_PLURAL = "meshroutes"

# Label constants for resource identification and management
OPERATOR_LABEL_KEY = "mesh.mdvr.nl/managed-by"
OPERATOR_LABEL_VALUE = "mesh-operator"
SOURCE_LABEL_KEY = "mesh.mdvr.nl/source"
BINDING_LABEL_KEY = "mesh.mdvr.nl/external-secret"

# Annotation constants for configuration and metadata
REVISION_HASH_ANNOTATION = "mesh.mdvr.nl/revision-hash"
SOURCE_REVISION_ANNOTATION = "mesh.mdvr.nl/source-revision"
LAST_APPLIED_ANNOTATION = "mesh.mdvr.nl/last-applied"
SELF_HEAL_ANNOTATION = "mesh.mdvr.nl/self-heal"
VALUE_HASH_ANNOTATION = "mesh.mdvr.nl/value-hash"
SYNCED_AT_ANNOTATION = "mesh.mdvr.nl/synced-at"
EXTERNAL_VERSION_ANNOTATION = "mesh.mdvr.nl/external-version"
INVENTORY_SOURCE_ANNOTATION = "mesh.mdvr.nl/inventory-of"

# Per-source inventory of applied kinds, one ConfigMap in the source namespace
INVENTORY_CONFIGMAP_PREFIX = "mesh-inventory-"

# Status phase constants
PHASE_PENDING = "Pending"
PHASE_READY = "Ready"
PHASE_FAILED = "Failed"
PHASE_RECONCILING = "Reconciling"
PHASE_DEGRADED = "Degraded"

# Condition type constants (following Kubernetes conventions)
CONDITION_READY = "Ready"
CONDITION_SYNCED = "Synced"
CONDITION_DRIFTED = "Drifted"
CONDITION_DEGRADED = "Degraded"

# Condition status constants
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

# Component names used in events and metrics
COMPONENT_RECONCILER = "reconciler"
COMPONENT_ADMISSION = "admission"
COMPONENT_POLICY = "policy"
COMPONENT_SECRET_SYNC = "secret-sync"
COMPONENT_ROUTER = "router"

# Default configuration values
DEFAULT_SECRET_REFRESH_SECONDS = 60
DEFAULT_RECONCILE_INTERVAL_SECONDS = 180
DEFAULT_ADMISSION_TIMEOUT = 0.5
DEFAULT_AUTHORIZATION_TIMEOUT = 0.25
DEFAULT_HTTPS_PORT = 443
MANIFEST_SUFFIXES = (".yaml", ".yml")
REVISION_FILE = "REVISION"

# Retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_INITIAL_DELAY = 1.0

# Error message templates
ERROR_TEMPLATE_IN_USE = (
    "Constraint template '{}' is still referenced by constraints: {}"
)
ERROR_UNKNOWN_TEMPLATE = "Constraint '{}' references unknown template '{}'"
ERROR_NO_MATCHING_RULE = "no authorization rule grants '{}' access to '{}'"
ERROR_SOURCE_UNAVAILABLE = "Desired-state source '{}' is unavailable: {}"

# Success message templates
SUCCESS_RECONCILIATION = "Resource reconciliation completed successfully"
SUCCESS_SYNC = "External secret synchronized successfully"

# Secrets holding workload certificates issued by the identity provider
IDENTITY_LABEL_KEY = "mesh.mdvr.nl/workload-identity"
