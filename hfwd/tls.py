"""Upstream TLS trust and client identity loading.

Builds the ``ssl.SSLContext`` used for https destinations:
- the system default trust pool, plus an optional extra CA bundle (PEM)
- an optional client identity from a password-protected PKCS#12 archive

Everything is parsed with ``cryptography`` first so a broken file fails at
startup with a readable ConfigurationError instead of at the first handshake.
"""

from __future__ import annotations

import secrets
import ssl
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from hfwd.errors import ConfigurationError
from hfwd.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TLSClientMaterial:
    """Read-only TLS configuration shared by every upstream connection."""

    ssl_context: ssl.SSLContext
    extra_ca_certificates: tuple[x509.Certificate, ...] = ()
    client_certificate: x509.Certificate | None = None
    client_chain: tuple[x509.Certificate, ...] = field(default=())

    @property
    def has_client_identity(self) -> bool:
        return self.client_certificate is not None


def get_certificate_fingerprint(cert: x509.Certificate) -> str:
    """Get SHA256 fingerprint of certificate."""
    return cert.fingerprint(hashes.SHA256()).hex()


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def _public_key_der(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _read_file(path: Path, what: str) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"failed to read {what} {str(path)!r}: {e}") from e


def load_ca_certificates(path: Path) -> tuple[x509.Certificate, ...]:
    """Load one or more PEM certificates from ``path``."""
    data = _read_file(path, "CA certificate")
    try:
        certs = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise ConfigurationError(f"failed to parse CA certificate {str(path)!r}: {e}") from e
    return tuple(certs)


def load_client_identity(
    path: Path,
    password: str | None,
) -> tuple[x509.Certificate, pkcs12.PKCS12PrivateKeyTypes, tuple[x509.Certificate, ...]]:
    """Decrypt a PKCS#12 archive into ``(certificate, private_key, chain)``.

    The archive must hold exactly one key and the certificate matching it.
    """
    data = _read_file(path, "PKCS#12 archive")
    try:
        key, cert, chain = pkcs12.load_key_and_certificates(
            data, password.encode() if password else None
        )
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            f"failed to decrypt PKCS#12 archive {str(path)!r} "
            f"(wrong password or malformed file): {e}"
        ) from e

    if key is None:
        raise ConfigurationError(f"PKCS#12 archive {str(path)!r} contains no private key")
    if cert is None:
        raise ConfigurationError(f"PKCS#12 archive {str(path)!r} contains no certificate")
    if _public_key_der(cert.public_key()) != _public_key_der(key.public_key()):
        raise ConfigurationError(
            f"PKCS#12 archive {str(path)!r}: certificate does not match the private key"
        )

    return cert, key, tuple(chain)


def _load_cert_chain(
    context: ssl.SSLContext,
    cert: x509.Certificate,
    key: pkcs12.PKCS12PrivateKeyTypes,
    chain: tuple[x509.Certificate, ...],
) -> None:
    """Install a client identity into ``context``.

    ``ssl`` only reads identities from files, so the chain and a key
    encrypted with a one-time passphrase go into a temporary directory that
    is removed before returning.
    """
    passphrase = secrets.token_urlsafe(32).encode()
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase),
    )
    chain_pem = b"".join(serialize_certificate(c) for c in (cert, *chain))

    with tempfile.TemporaryDirectory(prefix="hfwd-") as tmp:
        cert_path = Path(tmp) / "client.crt"
        key_path = Path(tmp) / "client.key"
        cert_path.write_bytes(chain_pem)
        key_path.write_bytes(key_pem)
        key_path.chmod(0o600)
        try:
            context.load_cert_chain(cert_path, key_path, password=passphrase)
        except ssl.SSLError as e:
            raise ConfigurationError(f"failed to load client identity: {e}") from e


def load_tls_material(
    ca_cert_path: Path | str | None = None,
    pkcs12_path: Path | str | None = None,
    pkcs12_password: str | None = None,
) -> TLSClientMaterial:
    """Build the upstream TLS material from optional file paths."""
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)

    extra_cas: tuple[x509.Certificate, ...] = ()
    if ca_cert_path:
        ca_cert_path = Path(ca_cert_path)
        extra_cas = load_ca_certificates(ca_cert_path)
        cadata = "".join(serialize_certificate(c).decode("ascii") for c in extra_cas)
        try:
            context.load_verify_locations(cadata=cadata)
        except ssl.SSLError as e:
            raise ConfigurationError(
                f"failed to add CA certificate {str(ca_cert_path)!r} to the trust pool: {e}"
            ) from e
        for cert in extra_cas:
            logger.info(
                "Loaded extra CA certificate",
                path=str(ca_cert_path),
                subject=cert.subject.rfc4514_string(),
                fingerprint=get_certificate_fingerprint(cert)[:16],
            )

    client_cert: x509.Certificate | None = None
    client_chain: tuple[x509.Certificate, ...] = ()
    if pkcs12_path:
        pkcs12_path = Path(pkcs12_path)
        client_cert, key, client_chain = load_client_identity(pkcs12_path, pkcs12_password)
        _load_cert_chain(context, client_cert, key, client_chain)
        logger.info(
            "Loaded client certificate",
            path=str(pkcs12_path),
            subject=client_cert.subject.rfc4514_string(),
            fingerprint=get_certificate_fingerprint(client_cert)[:16],
            expires=client_cert.not_valid_after_utc.isoformat(),
        )

    return TLSClientMaterial(
        ssl_context=context,
        extra_ca_certificates=extra_cas,
        client_certificate=client_cert,
        client_chain=client_chain,
    )
