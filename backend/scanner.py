# backend/scanner.py
from __future__ import annotations

import logging
import socket
import ssl
import time
import urllib.parse
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from cryptography import x509

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0

# Only connection (dial) errors are retried.
RETRY_MAX = 2
RETRY_DELAY = 1.0

SUPPORTED_SCHEMES = ("https", "tcp")

# dial_fn(timeout, network, address) -> connected socket; raises on failure.
DialFn = Callable[[float, str, str], socket.socket]

# ssl.SSLSocket.version() -> display name
TLS_VERSION_NAMES = {
    "SSLv2": "SSL 2.0",
    "SSLv3": "SSL 3.0",
    "TLSv1": "TLS 1.0",
    "TLSv1.1": "TLS 1.1",
    "TLSv1.2": "TLS 1.2",
    "TLSv1.3": "TLS 1.3",
}

WEAK_TLS_VERSIONS = ("SSL 2.0", "SSL 3.0", "TLS 1.0", "TLS 1.1")


@dataclass
class ProbeResult:
    cert: Optional[x509.Certificate] = None
    chain: List[x509.Certificate] = field(default_factory=list)
    probe_ok: bool = False
    probe_err: str = ""
    retry_count: int = 0
    tls_version: str = ""
    cipher_suite: str = ""
    ocsp_response: bytes = b""


def split_host_port(address: str) -> Tuple[str, int]:
    """
    Split "host:port" or "[v6]:port".
    Raises ValueError when the port is missing or not numeric.
    """
    a = (address or "").strip()
    if a.startswith("["):
        end = a.find("]")
        if end < 0 or not a[end + 1:].startswith(":"):
            raise ValueError(f"missing port in address {address!r}")
        host, port_s = a[1:end], a[end + 2:]
    else:
        if ":" not in a:
            raise ValueError(f"missing port in address {address!r}")
        host, port_s = a.rsplit(":", 1)
    try:
        port = int(port_s)
    except ValueError:
        raise ValueError(f"invalid port in address {address!r}") from None
    if not host or not (0 < port < 65536):
        raise ValueError(f"invalid address {address!r}")
    return host, port


def direct_dial(timeout: float, network: str, address: str) -> socket.socket:
    if network != "tcp":
        raise ValueError(f"unsupported network: {network}")
    host, port = split_host_port(address)
    return socket.create_connection((host, port), timeout=timeout)


def format_target(hostport: str, sni: str = "") -> str:
    """Build a probe URL from host:port and an optional SNI override."""
    if not sni:
        return "tcp://" + hostport
    return "tcp://%s?sni=%s" % (hostport, urllib.parse.quote_plus(sni))


def tls_version_name(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return TLS_VERSION_NAMES.get(raw, raw)


def _make_probe_context() -> ssl.SSLContext:
    # Expiry and trust are evaluated separately; the handshake only collects facts.
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    try:
        ctx.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED
        ctx.set_ciphers("ALL:@SECLEVEL=0")
    except (ValueError, ssl.SSLError):
        pass
    return ctx


def _peer_chain_der(ssock: ssl.SSLSocket) -> List[bytes]:
    # get_unverified_chain is only available on newer interpreters.
    fn = getattr(ssock, "get_unverified_chain", None)
    if callable(fn):
        out = [bytes(item) for item in (fn() or []) if isinstance(item, (bytes, bytearray))]
        if out:
            return out

    leaf = ssock.getpeercert(binary_form=True)
    return [leaf] if leaf else []


def _ocsp_staple(ssock: ssl.SSLSocket) -> bytes:
    attr = getattr(ssock, "ocsp_response", None)
    resp = attr() if callable(attr) else attr
    if isinstance(resp, (bytes, bytearray)):
        return bytes(resp)
    return b""


def _handshake(conn: socket.socket, sni: str, attempt: int) -> ProbeResult:
    ctx = _make_probe_context()
    conn.settimeout(DEFAULT_TIMEOUT)
    try:
        with ctx.wrap_socket(conn, server_hostname=sni or None) as ssock:
            version = tls_version_name(ssock.version())
            c = ssock.cipher()
            cipher = (c[0] or "") if c else ""
            staple = _ocsp_staple(ssock)
            chain_der = _peer_chain_der(ssock)
    except (ssl.SSLError, OSError, ValueError) as e:
        return ProbeResult(probe_ok=False, probe_err=str(e) or e.__class__.__name__, retry_count=attempt)

    if not chain_der:
        return ProbeResult(probe_ok=False, probe_err="no peer certificates presented", retry_count=attempt)

    try:
        chain = [x509.load_der_x509_certificate(der) for der in chain_der]
    except ValueError as e:
        return ProbeResult(probe_ok=False, probe_err=f"parsing peer certificate: {e}", retry_count=attempt)

    return ProbeResult(
        cert=chain[0],
        chain=chain,
        probe_ok=True,
        retry_count=attempt,
        tls_version=version,
        cipher_suite=cipher,
        ocsp_response=staple,
    )


def probe(target: str, dial_fn: Optional[DialFn] = None) -> ProbeResult:
    """
    Connect to a TLS endpoint and return the presented certificate chain.
    Accepts tcp://host:port, https://host:port and tcp://host:port?sni=name.

    Dial failures are retried with exponential backoff; a failed handshake
    means the peer answered and is returned immediately.
    """
    dial = dial_fn or direct_dial

    try:
        u = urllib.parse.urlsplit(target or "")
    except ValueError as e:
        return ProbeResult(probe_ok=False, probe_err=str(e))

    if u.scheme not in SUPPORTED_SCHEMES:
        return ProbeResult(probe_ok=False, probe_err=f"unsupported scheme: {u.scheme} (use https or tcp)")

    hostport = u.netloc
    try:
        host, _ = split_host_port(hostport)
    except ValueError as e:
        return ProbeResult(probe_ok=False, probe_err=f"malformed target {target!r}: {e}")

    sni = (urllib.parse.parse_qs(u.query).get("sni") or [""])[0] or host

    last_dial_err: Optional[BaseException] = None
    for attempt in range(RETRY_MAX + 1):
        if attempt > 0:
            time.sleep(RETRY_DELAY * (2 ** (attempt - 1)))

        try:
            conn = dial(DEFAULT_TIMEOUT, "tcp", hostport)
        except Exception as e:
            last_dial_err = e
            logger.debug("dial %s failed (attempt %d/%d): %s", hostport, attempt + 1, RETRY_MAX + 1, e)
            continue

        try:
            return _handshake(conn, sni, attempt)
        finally:
            conn.close()

    msg = str(last_dial_err) or last_dial_err.__class__.__name__
    return ProbeResult(probe_ok=False, probe_err=msg, retry_count=RETRY_MAX)


# -------------------------
# Posture
# -------------------------

def _classify_insecure_cipher(name: str) -> str:
    n = (name or "").upper()
    if "RC4" in n:
        return "RC4"
    if "3DES" in n or "DES-CBC3" in n or "DES_EDE3" in n:
        return "3DES"
    if "NULL" in n:
        return "NULL"
    if "EXPORT" in n or n.startswith("EXP-") or "MD5" in n:
        return "insecure"
    if n.startswith(("ADH-", "AECDH-")) or "_ANON_" in n:
        return "insecure"
    if n.startswith("DES-") or "_DES_" in n or "-DES-" in n:
        return "insecure"
    return ""


def _is_cbc_cipher(name: str) -> bool:
    n = (name or "").upper()
    if "CBC" in n:
        return True
    # IANA names without CBC and every TLS 1.3 suite are AEAD.
    if n.startswith("TLS_"):
        return False
    if "GCM" in n or "CHACHA20" in n or "CCM" in n:
        return False
    # OpenSSL names such as ECDHE-RSA-AES128-SHA.
    return n.endswith(("-SHA", "-SHA256", "-SHA384"))


def evaluate_posture(tls_version: str, cipher_suite: str) -> List[str]:
    """Inspect negotiated handshake parameters for weak configurations."""
    issues: List[str] = []

    version = tls_version_name(tls_version)
    if version in WEAK_TLS_VERSIONS:
        issues.append(f"weak TLS version: {version}")

    if cipher_suite:
        reason = _classify_insecure_cipher(cipher_suite)
        if reason:
            issues.append(f"weak cipher: {cipher_suite} ({reason})")
        elif _is_cbc_cipher(cipher_suite):
            # Not insecure outright, but open to padding-oracle attacks.
            issues.append(f"CBC-mode cipher: {cipher_suite}")

    return issues
