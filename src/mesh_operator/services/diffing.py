"""
Three-way diffing between last-applied, desired and live manifests.

The last-applied body records what the operator wrote. Comparing it with the
live object reveals out-of-band changes (drift); comparing it with the
desired body reveals declared changes. The merge keeps fields the operator
never managed.
"""

import copy
from typing import Any

from ..models.types import ManifestBody

# Top-level fields owned by the API server rather than the declaration
SERVER_OWNED_FIELDS = frozenset({"status"})


def calculate_drift(
    desired: dict[str, Any], actual: dict[str, Any], path: str = ""
) -> list[str]:
    """
    Recursively compare desired (managed) fields with actual values.

    Fields absent from desired, or set to None, are not managed and are
    ignored. Lists of equal length are compared item by item.

    Returns:
        Human readable differences with dotted paths
    """
    differences: list[str] = []
    for key, desired_value in desired.items():
        current_path = f"{path}.{key}" if path else key
        if desired_value is None:
            continue
        if key not in actual:
            differences.append(f"Missing field: {current_path}")
            continue
        actual_value = actual[key]
        if isinstance(desired_value, dict) and isinstance(actual_value, dict):
            differences.extend(calculate_drift(desired_value, actual_value, current_path))
        elif isinstance(desired_value, list):
            differences.extend(_list_drift(desired_value, actual_value, current_path))
        elif desired_value != actual_value:
            differences.append(
                f"Value mismatch at {current_path}: "
                f"expected {desired_value!r}, got {actual_value!r}"
            )
    return differences


def _list_drift(desired: list[Any], actual: Any, path: str) -> list[str]:
    # Items are compared positionally so server defaults inside list items
    # (container ports, probes, ...) do not count as drift
    if not isinstance(actual, list) or len(actual) != len(desired):
        return [f"List mismatch at {path}"]
    differences: list[str] = []
    for index, (want, have) in enumerate(zip(desired, actual, strict=True)):
        item_path = f"{path}[{index}]"
        if isinstance(want, dict) and isinstance(have, dict):
            differences.extend(calculate_drift(want, have, item_path))
        elif want != have:
            differences.append(f"List mismatch at {item_path}")
    return differences


def _merge(
    last_applied: dict[str, Any] | None,
    desired: dict[str, Any],
    live: dict[str, Any],
    overwrite_drift: bool,
) -> dict[str, Any]:
    last_applied = last_applied or {}
    merged = copy.deepcopy(live)

    # Fields we managed before but no longer declare are removed
    for key in last_applied:
        if key not in desired and key in merged:
            del merged[key]

    for key, desired_value in desired.items():
        previous = last_applied.get(key)
        live_value = live.get(key)
        if isinstance(desired_value, dict) and isinstance(live_value, dict):
            merged[key] = _merge(
                previous if isinstance(previous, dict) else {},
                desired_value,
                live_value,
                overwrite_drift,
            )
        elif overwrite_drift or key not in last_applied or previous != desired_value:
            merged[key] = copy.deepcopy(desired_value)
        # else: unchanged declaration, live value (possibly drifted) is kept
    return merged


def three_way_merge(
    last_applied: ManifestBody | None,
    desired: ManifestBody,
    live: ManifestBody,
    overwrite_drift: bool,
) -> ManifestBody:
    """
    Compute the body to write for an update.

    Args:
        last_applied: Body the operator wrote previously (None for adoption)
        desired: Body declared at the current revision
        live: Body currently observed in the cluster
        overwrite_drift: Self-heal mode; when False, out-of-band changes to
            fields whose declaration did not change are preserved

    Returns:
        The merged body
    """
    live = {k: v for k, v in live.items() if k not in SERVER_OWNED_FIELDS}
    return _merge(last_applied, desired, live, overwrite_drift)
