"""
X.509 helpers for workload identities and ingress TLS material.

Workload certificates carry a SPIFFE URI SAN of the form
``spiffe://<trust-domain>/ns/<namespace>/sa/<service>``; the subject of the
resulting Identity is ``<namespace>/<service>``. Ingress certificates are
read from synced ``kubernetes.io/tls`` secrets.
"""

import logging

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from ..errors import ValidationError
from ..models.policy import Identity
from ..models.secret import TlsCertificate
from ..models.types import SecretData

logger = logging.getLogger(__name__)

TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY = "tls.key"


def load_certificate(cert_pem: str | bytes) -> x509.Certificate:
    """
    Parse the first certificate of a PEM bundle.

    Raises:
        ValidationError: If the PEM data is not a certificate
    """
    data = cert_pem.encode() if isinstance(cert_pem, str) else cert_pem
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise ValidationError(f"invalid PEM certificate: {e}", field=TLS_CERT_KEY) from e


def public_key_fingerprint(cert: x509.Certificate) -> str:
    """SHA-256 over the DER-encoded SubjectPublicKeyInfo, hex encoded."""
    der = cert.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(der)
    return digest.finalize().hex()


def certificate_fingerprint(cert: x509.Certificate) -> str:
    return cert.fingerprint(hashes.SHA256()).hex()


def _subject_alternative_names(cert: x509.Certificate) -> x509.SubjectAlternativeName | None:
    try:
        return cert.extensions.get_extension_for_class(
            x509.SubjectAlternativeName
        ).value
    except x509.ExtensionNotFound:
        return None


def dns_names(cert: x509.Certificate) -> list[str]:
    san = _subject_alternative_names(cert)
    if san is None:
        return []
    return [name.lower() for name in san.get_values_for_type(x509.DNSName)]


def spiffe_subject(cert: x509.Certificate) -> str | None:
    """
    Extract 'namespace/service' from a SPIFFE URI SAN.

    Returns:
        The subject, or None if the certificate has no SPIFFE workload URI
    """
    san = _subject_alternative_names(cert)
    if san is None:
        return None
    for uri in san.get_values_for_type(x509.UniformResourceIdentifier):
        if not uri.startswith("spiffe://"):
            continue
        parts = uri[len("spiffe://") :].split("/")
        # trust-domain, "ns", <namespace>, "sa", <service>
        if len(parts) == 5 and parts[1] == "ns" and parts[3] == "sa":
            return f"{parts[2]}/{parts[4]}"
    return None


def identity_from_certificate(cert_pem: str | bytes) -> Identity:
    """
    Build the Identity presented by a peer certificate.

    Raises:
        ValidationError: If the certificate carries no workload subject
    """
    cert = load_certificate(cert_pem)
    subject = spiffe_subject(cert)
    if subject is None:
        raise ValidationError(
            "certificate has no SPIFFE workload URI", field="subjectAltName"
        )
    return Identity(
        subject=subject,
        public_key_fingerprint=public_key_fingerprint(cert),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
    )


def tls_certificate_from_secret(
    data: SecretData,
    hosts: list[str],
    value_hash: str,
    source: str = "",
) -> TlsCertificate:
    """
    Build ingress TLS material from synced secret data.

    Hosts default to the certificate's DNS SANs when none are declared.

    Raises:
        ValidationError: If the certificate or key is missing or malformed
    """
    cert_pem = data.get(TLS_CERT_KEY)
    key_pem = data.get(TLS_PRIVATE_KEY)
    if not cert_pem or not key_pem:
        raise ValidationError(
            f"TLS secrets need both '{TLS_CERT_KEY}' and '{TLS_PRIVATE_KEY}'",
            field="data",
        )
    cert = load_certificate(cert_pem)
    covered = hosts or dns_names(cert)
    if not covered:
        raise ValidationError(
            "no tlsHosts declared and certificate has no DNS names", field="tlsHosts"
        )
    return TlsCertificate(
        hosts=tuple(covered),
        cert_pem=cert_pem,
        key_pem=key_pem,
        not_after=cert.not_valid_after_utc,
        value_hash=value_hash,
        source=source,
    )
