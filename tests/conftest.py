"""Shared test fixtures: throw-away PKI built with cryptography."""

import ipaddress
import socket
import threading
from collections import namedtuple
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID

Issued = namedtuple("Issued", ["cert", "key"])

NOW = datetime.now(timezone.utc).replace(microsecond=0)


def _make_cert(
    cn,
    issuer=None,
    ca=False,
    not_before=None,
    not_after=None,
    dns_names=(),
    ip_addresses=(),
    ocsp_url="",
    key_ids=True,
    crl_url="",
):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    if issuer is None:
        issuer_name, signing_key = name, key
    else:
        issuer_name, signing_key = issuer.cert.subject, issuer.key

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or NOW - timedelta(days=1))
        .not_valid_after(not_after or NOW + timedelta(days=90))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if key_ids:
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signing_key.public_key()), critical=False
        )
    sans = [x509.DNSName(n) for n in dns_names] + [x509.IPAddress(ipaddress.ip_address(a)) for a in ip_addresses]
    if sans:
        builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)
    if ocsp_url:
        builder = builder.add_extension(
            x509.AuthorityInformationAccess(
                [x509.AccessDescription(AuthorityInformationAccessOID.OCSP, x509.UniformResourceIdentifier(ocsp_url))]
            ),
            critical=False,
        )
    if crl_url:
        builder = builder.add_extension(
            x509.CRLDistributionPoints(
                [x509.DistributionPoint([x509.UniformResourceIdentifier(crl_url)], None, None, None)]
            ),
            critical=False,
        )
    return Issued(builder.sign(signing_key, hashes.SHA256()), key)


@pytest.fixture
def cert_factory():
    return _make_cert


@pytest.fixture
def pki():
    root = _make_cert("Test Root CA", ca=True)
    intermediate = _make_cert("Test Intermediate CA", issuer=root, ca=True)
    leaf = _make_cert(
        "api.example.com",
        issuer=intermediate,
        dns_names=("*.example.com", "example.com"),
        ocsp_url="http://ocsp.example.test",
    )
    return {"root": root, "intermediate": intermediate, "leaf": leaf}


@pytest.fixture
def now():
    return NOW


def pem(*certs):
    return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs)


@pytest.fixture
def to_pem():
    return pem


@pytest.fixture
def key_pem():
    def _key_pem(key):
        return key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    return _key_pem


@pytest.fixture
def garbage_http_url():
    """URL of a local listener that answers any request with a non-HTTP line."""
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.bind(("127.0.0.1", 0))
    srv.listen(4)
    srv.settimeout(0.2)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = srv.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            with conn:
                try:
                    conn.recv(65536)
                    conn.sendall(b"NOT-HTTP garbage\r\n")
                except OSError:
                    pass

    t = threading.Thread(target=serve, daemon=True)
    t.start()
    yield "http://127.0.0.1:%d/" % srv.getsockname()[1]
    stop.set()
    t.join(timeout=5)
    srv.close()
