"""
Workload identity handlers - Feeds the identity provider.

The identity provider issues workload certificates into Secrets labelled
``mesh.mdvr.nl/workload-identity``. Each such Secret holds the current
certificate of one workload; rotating it replaces the identity the policy
engine accepts for that subject, deleting it revokes the subject.
"""

import base64
import binascii
import logging
from typing import Any

import kopf

from mesh_operator.constants import IDENTITY_LABEL_KEY
from mesh_operator.errors import ValidationError
from mesh_operator.runtime import get_control_plane
from mesh_operator.utils.certificates import TLS_CERT_KEY, identity_from_certificate

logger = logging.getLogger(__name__)

# Subject last registered from each identity Secret, to revoke on deletion
_subjects: dict[str, str] = {}


@kopf.on.event("v1", "secrets", labels={IDENTITY_LABEL_KEY: kopf.PRESENT})
async def track_workload_identity(
    event: dict[str, Any], name: str, namespace: str, **kwargs: Any
) -> None:
    secret_id = f"{namespace}/{name}"
    provider = get_control_plane().identity_provider
    body = event.get("object") or {}

    if event.get("type") == "DELETED":
        subject = _subjects.pop(secret_id, None)
        if subject is not None:
            provider.revoke(subject)
            logger.info(f"Revoked identity of {subject} (secret {secret_id} deleted)")
        return

    encoded = (body.get("data") or {}).get(TLS_CERT_KEY)
    if not encoded:
        logger.warning(f"Identity secret {secret_id} has no {TLS_CERT_KEY}")
        return
    try:
        identity = identity_from_certificate(base64.b64decode(encoded))
    except (binascii.Error, ValidationError) as e:
        logger.warning(f"Ignoring identity secret {secret_id}: {e}")
        return

    previous = _subjects.get(secret_id)
    if previous is not None and previous != identity.subject:
        provider.revoke(previous)
    provider.register(identity)
    _subjects[secret_id] = identity.subject
    logger.info(
        f"Current identity of {identity.subject} is {identity.public_key_fingerprint[:16]} "
        f"(valid until {identity.not_after.isoformat()})"
    )
