"""
Test fixtures for mesh resources.

Builders for workload manifests, custom resource specs and X.509 material
used across the unit tests.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def make_certificate(
    common_name: str = "workload",
    dns_names: list[str] | None = None,
    spiffe_subject: str | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
    trust_domain: str = "cluster.local",
) -> tuple[str, str]:
    """Create a self-signed certificate; returns (cert_pem, key_pem)."""
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(UTC)
    not_before = not_before or now - timedelta(hours=1)
    not_after = not_after or now + timedelta(days=30)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    sans: list[x509.GeneralName] = [x509.DNSName(n) for n in dns_names or []]
    if spiffe_subject:
        namespace, service = spiffe_subject.split("/", 1)
        sans.append(
            x509.UniformResourceIdentifier(
                f"spiffe://{trust_domain}/ns/{namespace}/sa/{service}"
            )
        )

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    cert = builder.sign(key, hashes.SHA256())

    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return cert_pem, key_pem


def deployment(
    name: str = "web",
    namespace: str = "shop",
    image: str = "nginx:1.27",
    privileged: bool | None = None,
    replicas: int = 2,
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    """A minimal Deployment manifest."""
    container: dict[str, Any] = {"name": name, "image": image}
    if privileged is not None:
        container["securityContext"] = {"privileged": privileged}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": labels if labels is not None else {"app": name},
        },
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [container]},
            },
        },
    }


# Template and constraint forbidding privileged containers
NO_PRIVILEGED_TEMPLATE = {
    "predicate": "boolean-field-true",
    "field": "podSpec.containers[*].securityContext.privileged",
    "message": "{field} must not be true",
}

NO_PRIVILEGED_CONSTRAINT = {
    "template": "no-privileged",
    "match": {"kinds": ["Deployment", "StatefulSet", "DaemonSet", "Pod"]},
}

CHECKOUT_ROUTE = {
    "hosts": ["shop.example.com"],
    "rules": [
        {"path": "/checkout", "service": "checkout", "port": 8080},
        {"path": "/", "service": "storefront", "port": 80},
    ],
}

STRIPE_EXTERNAL_SECRET = {
    "storeRef": "vault",
    "remoteKey": "payments/stripe",
    "property": "api-key",
    "target": {"name": "stripe-key"},
    "refreshInterval": 60,
}
