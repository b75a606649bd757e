# backend/discovery.py
from __future__ import annotations

import logging
import urllib.parse
from datetime import datetime
from typing import Callable, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa

from chain import is_self_signed, parse_pem_bundle, san_dns_names, validate_chain
from config import Config, ExternalTarget, FileBundle
from models import SEVERITY_INFO, SOURCE_EXTERNAL, SOURCE_FILE, CertFinding
from orchestrator import Discoverer
from scanner import ProbeResult, evaluate_posture, probe, split_host_port

logger = logging.getLogger(__name__)

ProbeFn = Callable[[str], ProbeResult]

# Certificate extensions are decoded lazily, so a malformed peer certificate
# only fails once its fields are read.
CERT_PARSE_ERRORS = (ValueError, x509.DuplicateExtension, x509.UnsupportedGeneralNameType)


def _unreadable(e: Exception) -> str:
    return f"certificate could not be decoded: {e}"


# -------------------------
# Finding population
# -------------------------

def _key_info(cert: x509.Certificate):
    pk = cert.public_key()
    if isinstance(pk, rsa.RSAPublicKey):
        return "RSA", pk.key_size
    if isinstance(pk, ec.EllipticCurvePublicKey):
        return "ECDSA", pk.curve.key_size
    if isinstance(pk, ed25519.Ed25519PublicKey):
        return "Ed25519", 256
    if isinstance(pk, ed448.Ed448PublicKey):
        return "Ed448", 456
    return pk.__class__.__name__, 0


def _signature_algorithm(cert: x509.Certificate) -> str:
    oid = cert.signature_algorithm_oid
    return getattr(oid, "_name", "") or oid.dotted_string


def apply_cert_metadata(finding: CertFinding, leaf: x509.Certificate, certs: List[x509.Certificate]) -> None:
    """Copy identity, key and chain facts from the leaf onto the finding."""
    finding.not_after = leaf.not_valid_after_utc
    finding.subject = leaf.subject.rfc4514_string()
    finding.issuer = leaf.issuer.rfc4514_string()
    finding.serial = str(leaf.serial_number)
    finding.dns_names = san_dns_names(leaf)
    finding.issuer_chain = [c.issuer.rfc4514_string() for c in certs]
    finding.signature_algorithm = _signature_algorithm(leaf)
    finding.key_algorithm, finding.key_size = _key_info(leaf)
    # Only a lone certificate can be judged self-signed from the bundle alone.
    if len(certs) == 1:
        finding.self_signed = is_self_signed(leaf)


def apply_probe_chain_validation(
    finding: CertFinding,
    pr: ProbeResult,
    hostname: str,
    now: Optional[datetime] = None,
) -> None:
    """Run chain and posture validation on a probe result and populate the finding."""
    finding.chain_len = len(pr.chain)
    try:
        if pr.chain:
            apply_cert_metadata(finding, pr.chain[0], pr.chain)
        result = validate_chain(pr.chain, hostname, now)
    except CERT_PARSE_ERRORS as e:
        finding.chain_errors = [_unreadable(e)]
    else:
        if pr.chain:
            finding.raw_cert = pr.chain[0]
            finding.raw_issuer = pr.chain[1] if len(pr.chain) > 1 else None
            finding.ocsp_staple = pr.ocsp_response or b""
        if result.errors:
            finding.chain_errors = result.errors

    finding.tls_version = pr.tls_version
    finding.cipher_suite = pr.cipher_suite
    issues = evaluate_posture(pr.tls_version, pr.cipher_suite)
    if issues:
        finding.posture_issues = issues


def apply_pem_chain_validation(
    finding: CertFinding,
    pem_data: bytes,
    hostname: str,
    now: Optional[datetime] = None,
) -> Optional[x509.Certificate]:
    """
    Parse a PEM bundle, validate it and populate the finding.
    Returns the leaf, or None when the bundle could not be parsed.
    """
    try:
        certs = parse_pem_bundle(pem_data)
    except ValueError as e:
        finding.probe_ok = False
        finding.probe_err = str(e)
        return None

    finding.probe_ok = True
    finding.chain_len = len(certs)
    try:
        apply_cert_metadata(finding, certs[0], certs)
        result = validate_chain(certs, hostname, now)
    except CERT_PARSE_ERRORS as e:
        finding.chain_errors = [_unreadable(e)]
        return certs[0]
    if result.errors:
        finding.chain_errors = result.errors
    return certs[0]


def extract_host_from_target(target: str) -> str:
    """Hostname to verify for a probe URL or bare host:port; an sni parameter wins."""
    t = (target or "").strip()
    if "://" in t:
        u = urllib.parse.urlsplit(t)
        sni = (urllib.parse.parse_qs(u.query).get("sni") or [""])[0]
        if sni:
            return sni
        try:
            return split_host_port(u.netloc)[0]
        except ValueError:
            return u.netloc
    try:
        return split_host_port(t)[0]
    except ValueError:
        return t


# -------------------------
# Built-in discoverers
# -------------------------

class ExternalDiscoverer(object):
    """Probes explicit external TLS endpoints from config."""

    def __init__(self, targets: List[ExternalTarget], probe_fn: Optional[ProbeFn] = None):
        self.targets = list(targets)
        self.probe_fn = probe_fn or probe

    def name(self) -> str:
        return "externals"

    def discover(self) -> List[CertFinding]:
        findings: List[CertFinding] = []
        for t in self.targets:
            finding = CertFinding(source=SOURCE_EXTERNAL, severity=SEVERITY_INFO, target=t.url)
            hostname = extract_host_from_target(t.url)
            finding.sni = hostname

            result = self.probe_fn(t.url)
            finding.probe_ok = result.probe_ok
            finding.probe_err = result.probe_err
            finding.retry_count = result.retry_count

            if result.probe_ok and result.cert is not None:
                apply_probe_chain_validation(finding, result, hostname)
            else:
                logger.debug("probe %s failed: %s", t.url, result.probe_err)

            findings.append(finding)
        return findings


class FileBundleDiscoverer(object):
    """Reads PEM bundles from disk, as they would be mounted into a TLS terminator."""

    def __init__(self, bundles: List[FileBundle]):
        self.bundles = list(bundles)

    def name(self) -> str:
        return "files"

    def discover(self) -> List[CertFinding]:
        findings: List[CertFinding] = []
        for b in self.bundles:
            finding = CertFinding(
                source=SOURCE_FILE,
                severity=SEVERITY_INFO,
                name=b.name or b.path,
                target=b.path,
                sni=b.hostname,
            )
            try:
                with open(b.path, "rb") as fh:
                    data = fh.read()
            except OSError as e:
                finding.probe_ok = False
                finding.probe_err = f"reading {b.path}: {e.strerror or e}"
                findings.append(finding)
                continue

            apply_pem_chain_validation(finding, data, b.hostname)
            findings.append(finding)
        return findings


def build_discoverers(cfg: Config, probe_fn: Optional[ProbeFn] = None) -> List[Discoverer]:
    """Explicit registry of the sources handed to the orchestrator."""
    discoverers: List[Discoverer] = [
        ExternalDiscoverer(cfg.external, probe_fn=probe_fn),
        FileBundleDiscoverer(cfg.files),
    ]
    return discoverers
