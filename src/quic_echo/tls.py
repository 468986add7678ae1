"""
Server identity bootstrap and client trust policies.

QUIC always runs TLS 1.3, so the server needs a certificate even on a
private demo network. Rather than depending on a certificate authority, the
server generates an ephemeral self-signed identity at startup:

    1. A fresh P-256 key pair
    2. A certificate for the configured host names, signed by that key
    3. A short validity window with allowance for clock skew

Clients choose how much of that identity to trust:

    - VERIFY: validate against the system CA store (or a configured CA file)
    - PINNED: trust only the PEM certificates supplied in the configuration
    - INSECURE: skip verification; encryption without authentication
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from aioquic.quic.configuration import QuicConfiguration
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from .exceptions import CertificateError
from .protocol import ALPN_PROTOCOL

if TYPE_CHECKING:
    from .config import ClientConfig, ServerConfig

CERTIFICATE_VALIDITY = timedelta(days=30)
"""Lifetime of a generated certificate."""

CLOCK_SKEW_ALLOWANCE = timedelta(days=1)
"""How far into the past the validity window starts."""


class TrustPolicy(Enum):
    """How a client decides whether to trust the server certificate."""

    VERIFY = "verify"
    PINNED = "pinned"
    INSECURE = "insecure"


@dataclass(frozen=True, slots=True)
class SelfSignedIdentity:
    """
    A certificate and the private key it was signed with.

    The certificate is its own issuer. Encryption works as usual, but a client
    only authenticates the server if it pins `certificate_pem`.
    """

    certificate: x509.Certificate
    private_key: ec.EllipticCurvePrivateKey

    @property
    def certificate_pem(self) -> bytes:
        """Certificate in PEM form, suitable as pinned CA data."""
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def private_key_pem(self) -> bytes:
        """Unencrypted private key in PEM form."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


def generate_self_signed_identity(
    hostnames: list[str],
    validity: timedelta = CERTIFICATE_VALIDITY,
) -> SelfSignedIdentity:
    """
    Generate an ephemeral self-signed identity for the given host names.

    Args:
        hostnames: DNS names the certificate is issued for. The first one is
            also used as the subject common name.
        validity: How long the certificate remains valid from now.

    Returns:
        The generated certificate and key.

    Raises:
        CertificateError: If no host name is given or generation fails.
    """
    if not hostnames:
        raise CertificateError("At least one host name is required")

    try:
        private_key = ec.generate_private_key(ec.SECP256R1())
        public_key = private_key.public_key()

        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0])])
        now = datetime.now(timezone.utc)

        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - CLOCK_SKEW_ALLOWANCE)
            .not_valid_after(now + validity)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(host) for host in hostnames]),
                critical=False,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key),
                critical=False,
            )
            .sign(private_key, hashes.SHA256())
        )
    except (ValueError, TypeError) as e:
        raise CertificateError(f"Failed to generate self-signed certificate: {e}") from e

    return SelfSignedIdentity(certificate=certificate, private_key=private_key)


def trust_policy_for(config: ClientConfig) -> TrustPolicy:
    """Derive the trust policy a client configuration asks for."""
    if config.insecure:
        return TrustPolicy.INSECURE
    if config.cadata is not None:
        return TrustPolicy.PINNED
    return TrustPolicy.VERIFY


def server_quic_configuration(
    config: ServerConfig,
    identity: SelfSignedIdentity | None,
) -> QuicConfiguration:
    """
    Build the aioquic configuration for a listening endpoint.

    An identity loaded from `certificate_file` takes precedence over the
    generated one.

    Raises:
        CertificateError: If the configured certificate files cannot be loaded.
    """
    quic_config = QuicConfiguration(
        alpn_protocols=[ALPN_PROTOCOL],
        is_client=False,
        idle_timeout=config.idle_timeout_secs,
    )

    if config.certificate_file is not None:
        try:
            quic_config.load_cert_chain(config.certificate_file, config.private_key_file)
        except (OSError, ValueError) as e:
            raise CertificateError(
                f"Failed to load certificate from {config.certificate_file}: {e}"
            ) from e
    elif identity is not None:
        # aioquic accepts cryptography objects directly.
        quic_config.certificate = identity.certificate
        quic_config.private_key = identity.private_key
    else:
        raise CertificateError("Server requires a certificate")

    return quic_config


def client_quic_configuration(config: ClientConfig, server_name: str) -> QuicConfiguration:
    """
    Build the aioquic configuration for one outbound connection.

    Each connection gets its own configuration because aioquic stores the
    expected server name on it.
    """
    policy = trust_policy_for(config)

    quic_config = QuicConfiguration(
        alpn_protocols=[ALPN_PROTOCOL],
        is_client=True,
        idle_timeout=config.idle_timeout_secs,
        server_name=server_name,
        verify_mode=ssl.CERT_NONE if policy is TrustPolicy.INSECURE else ssl.CERT_REQUIRED,
    )

    if policy is TrustPolicy.PINNED or config.cafile is not None:
        quic_config.load_verify_locations(cafile=config.cafile, cadata=config.cadata)

    return quic_config
