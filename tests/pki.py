"""Certificate helpers for TLS tests."""

import datetime
import ipaddress
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

PKCS12_PASSWORD = "s3cret"


@dataclass
class Issued:
    """A certificate with its private key."""

    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey


@dataclass
class PKI:
    """Test certificates written to disk."""

    ca: Issued
    other_ca: Issued
    server: Issued
    client: Issued
    ca_path: Path
    other_ca_path: Path
    server_cert_path: Path
    server_key_path: Path
    client_p12_path: Path


def _key_usage(*, ca: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=True,
        key_encipherment=False,
        content_commitment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=ca,
        crl_sign=ca,
        encipher_only=False,
        decipher_only=False,
    )


def issue_ca(common_name: str) -> Issued:
    """Generate a self-signed CA certificate."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(_key_usage(ca=True), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return Issued(cert=cert, key=key)


def issue_leaf(ca: Issued, common_name: str, *, server: bool) -> Issued:
    """Issue a server or client certificate signed by ``ca``."""
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.datetime.now(datetime.UTC)
    usage = ExtendedKeyUsageOID.SERVER_AUTH if server else ExtendedKeyUsageOID.CLIENT_AUTH
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .issuer_name(ca.cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_key_usage(ca=False), critical=True)
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca.key.public_key()),
            critical=False,
        )
    )
    if server:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("localhost"),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]
            ),
            critical=False,
        )
    return Issued(cert=builder.sign(ca.key, hashes.SHA256()), key=key)


def cert_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def key_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def write_pkcs12(path: Path, issued: Issued | None, cert: x509.Certificate, password: str) -> Path:
    """Write a PKCS#12 archive holding ``cert`` and, if given, its key."""
    path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"hfwd-client",
            issued.key if issued else None,
            cert,
            None,
            serialization.BestAvailableEncryption(password.encode()),
        )
    )
    return path




def build_pki(tmp: Path) -> PKI:
    """Generate a CA, an unrelated CA, a server certificate and a client archive."""
    ca = issue_ca("hfwd test CA")
    other_ca = issue_ca("unrelated CA")
    server = issue_leaf(ca, "localhost", server=True)
    client = issue_leaf(ca, "hfwd-client", server=False)

    ca_path = tmp / "ca.pem"
    ca_path.write_bytes(cert_pem(ca.cert))
    other_ca_path = tmp / "other-ca.pem"
    other_ca_path.write_bytes(cert_pem(other_ca.cert))
    server_cert_path = tmp / "server.crt"
    server_cert_path.write_bytes(cert_pem(server.cert))
    server_key_path = tmp / "server.key"
    server_key_path.write_bytes(key_pem(server.key))
    client_p12_path = write_pkcs12(tmp / "client.p12", client, client.cert, PKCS12_PASSWORD)

    return PKI(
        ca=ca,
        other_ca=other_ca,
        server=server,
        client=client,
        ca_path=ca_path,
        other_ca_path=other_ca_path,
        server_cert_path=server_cert_path,
        server_key_path=server_key_path,
        client_p12_path=client_p12_path,
    )
