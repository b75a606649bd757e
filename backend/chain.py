# backend/chain.py
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.x509.oid import NameOID

# Guards path building against loops in hostile bundles.
MAX_PATH_DEPTH = 10

_PEM_CERT_RE = re.compile(rb"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----", re.DOTALL)


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    chain: List[x509.Certificate] = field(default_factory=list)


def validate_chain(
    chain: List[x509.Certificate],
    hostname: str = "",
    now: Optional[datetime] = None,
) -> ValidationResult:
    """
    Check a leaf-first certificate chain for common trust defects.

    Every check runs against the same chain and all violations are reported:
    self-signed leaf, expired or not-yet-valid intermediates, misordered
    bundle (first break only), broken trust path, and, when a hostname is
    given, SAN coverage.
    """
    result = ValidationResult(chain=list(chain or []))
    if not result.chain:
        return result

    now = _as_utc(now or datetime.now(timezone.utc))
    leaf = result.chain[0]

    # 1. Self-signed leaf (a self-signed CA is expected)
    if is_self_signed(leaf) and not is_ca(leaf):
        result.errors.append("leaf certificate is self-signed")

    # 2. Expired / not-yet-valid intermediates
    for c in result.chain[1:]:
        if c.not_valid_after_utc < now:
            result.errors.append(f"intermediate expired: {subject_name(c)}")
        elif c.not_valid_before_utc > now:
            result.errors.append(f"intermediate not yet valid: {subject_name(c)}")

    # 3. Misordered bundle
    for i in range(len(result.chain) - 1):
        if result.chain[i].issuer != result.chain[i + 1].subject:
            result.errors.append(f"chain misordered at position {i}")
            break

    # 4. Broken trust path
    reason = verify_chain_trust(leaf, result.chain[1:], now)
    if reason:
        result.errors.append(f"chain verification failed: {reason}")

    # 5. Hostname coverage
    if hostname and not covers_hostname(leaf, hostname):
        result.errors.append(f'certificate does not cover hostname "{hostname}"')

    return result


def verify_chain_trust(leaf: x509.Certificate, rest: List[x509.Certificate], now: datetime) -> str:
    """
    Build a path from the leaf to a self-signed CA found in `rest`.
    Returns "" when a path verifies (or when there is nothing to verify against),
    otherwise the reason it does not.
    """
    if not rest:
        return ""

    roots = [c for c in rest if is_ca(c) and c.issuer == c.subject]
    intermediates = [c for c in rest if not (is_ca(c) and c.issuer == c.subject)]

    reason = _check_validity(leaf, now)
    if reason:
        return reason

    current = leaf
    used = set()
    for _ in range(MAX_PATH_DEPTH):
        for root in roots:
            if _issued_by(current, root):
                return _check_validity(root, now)

        nxt = None
        for idx, cand in enumerate(intermediates):
            if idx in used or not is_ca(cand):
                continue
            if _issued_by(current, cand):
                nxt = idx
                break

        if nxt is None:
            return f"certificate signed by unknown authority (issuer {current.issuer.rfc4514_string()!r} not found)"

        used.add(nxt)
        current = intermediates[nxt]
        reason = _check_validity(current, now)
        if reason:
            return reason

    return "certificate chain too long"


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    if cert.issuer != issuer.subject:
        return False
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _check_validity(cert: x509.Certificate, now: datetime) -> str:
    if now > cert.not_valid_after_utc:
        return (
            "certificate has expired or is not yet valid: current time %s is after %s"
            % (_fmt(now), _fmt(cert.not_valid_after_utc))
        )
    if now < cert.not_valid_before_utc:
        return (
            "certificate has expired or is not yet valid: current time %s is before %s"
            % (_fmt(now), _fmt(cert.not_valid_before_utc))
        )
    return ""


def parse_pem_bundle(data: bytes) -> List[x509.Certificate]:
    """
    Decode every CERTIFICATE block in a PEM bundle, in order.
    Other block types (keys accidentally concatenated into the file) are skipped.
    Raises ValueError when no certificate is found or one fails to parse.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")

    certs: List[x509.Certificate] = []
    for block in _PEM_CERT_RE.findall(data or b""):
        try:
            certs.append(x509.load_pem_x509_certificate(block))
        except ValueError as e:
            raise ValueError(f"parsing certificate at position {len(certs)}: {e}") from e

    if not certs:
        raise ValueError("no PEM certificate blocks found")
    return certs


# -------------------------
# Certificate helpers
# -------------------------

def is_ca(cert: x509.Certificate) -> bool:
    try:
        bc = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return False
    return bool(bc.ca)


def _key_ids(cert: x509.Certificate):
    aki = ski = None
    try:
        aki = cert.extensions.get_extension_for_class(x509.AuthorityKeyIdentifier).value.key_identifier
    except x509.ExtensionNotFound:
        pass
    try:
        ski = cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value.digest
    except x509.ExtensionNotFound:
        pass
    return aki, ski


def is_self_signed(cert: x509.Certificate) -> bool:
    if cert.issuer != cert.subject:
        return False
    aki, ski = _key_ids(cert)
    if aki and ski:
        return aki == ski
    # No key identifiers: issuer == subject is taken at face value.
    return True


def subject_name(cert: x509.Certificate) -> str:
    cn = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn and cn[0].value:
        return str(cn[0].value)
    return cert.subject.rfc4514_string()


def san_dns_names(cert: x509.Certificate) -> List[str]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    return [str(n) for n in san.get_values_for_type(x509.DNSName)]


def _san_ips(cert: x509.Certificate):
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    return san.get_values_for_type(x509.IPAddress)


def covers_hostname(cert: x509.Certificate, hostname: str) -> bool:
    """SAN match for a DNS name or IP literal; `*` may stand for the whole leftmost label."""
    host = (hostname or "").strip().rstrip(".").lower()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not host:
        return False

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None:
        return any(ip == candidate for candidate in _san_ips(cert))

    return any(_match_hostname(pattern, host) for pattern in san_dns_names(cert))


def _match_hostname(pattern: str, host: str) -> bool:
    p = (pattern or "").strip().rstrip(".").lower()
    if not p:
        return False
    p_labels = p.split(".")
    h_labels = host.split(".")
    if len(p_labels) != len(h_labels):
        return False
    for i, (pl, hl) in enumerate(zip(p_labels, h_labels)):
        if i == 0 and pl == "*" and len(p_labels) > 1:
            continue
        if pl != hl:
            return False
    return True


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _fmt(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
