"""
Type aliases for structural typing in mesh operator models.

This module defines type aliases that provide semantic clarity about the
expected structure of dynamic fields, without being overly restrictive.
"""

from typing import Any

type ManifestBody = dict[str, Any]
"""
A Kubernetes manifest as parsed from YAML or returned by the API.

Expected structure:
- apiVersion: str
- kind: str
- metadata: {name, namespace, labels, annotations}
- any kind-specific top-level fields (spec, data, ...)
"""

type SecretData = dict[str, str]
"""
Decoded secret key/value pairs (plain text, not base64).
"""

type ConstraintParameters = dict[str, Any]
"""
Free-form parameters bound to a constraint template.

Recognised keys depend on the template predicate:
- field: overrides the template field path
- values: list of allowed or disallowed values
- max: numeric upper bound
- pattern: regular expression
- labels: list of required label keys
"""
