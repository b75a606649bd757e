# backend/revocation.py
from __future__ import annotations

import http.client
import logging
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID

logger = logging.getLogger(__name__)

OCSP_TIMEOUT = 5.0
OCSP_MAX_RESPONSE = 1 << 20

CRL_TIMEOUT = 10.0
CRL_MAX_RESPONSE = 10 << 20
CRL_DEFAULT_TTL = timedelta(hours=1)

STATUS_REVOKED = "revoked"
STATUS_UNREACHABLE = "unreachable"
STATUS_STAPLE_INVALID = "staple_invalid"
STATUS_CRL_STALE = "crl_stale"

_TAGS = {
    STATUS_REVOKED: "CERT_REVOKED",
    STATUS_UNREACHABLE: "OCSP_UNREACHABLE",
    STATUS_STAPLE_INVALID: "OCSP_STAPLE_INVALID",
    STATUS_CRL_STALE: "CRL_STALE",
}

# Transport failures from urllib, including malformed HTTP responses.
_TRANSPORT_ERRORS = (urllib.error.URLError, http.client.HTTPException, OSError, ValueError)

# post(url, body, timeout) -> response bytes; raises on transport failure.
PostFn = Callable[[str, bytes, float], bytes]

# fetch(url, timeout) -> response bytes; raises on transport failure.
FetchFn = Callable[[str, float], bytes]


@dataclass
class RevocationResult:
    status: str
    detail: str

    def format(self) -> str:
        return "%s: %s" % (_TAGS.get(self.status, "REVOCATION_UNKNOWN"), self.detail)


def ocsp_urls(cert: x509.Certificate) -> List[str]:
    try:
        aia = cert.extensions.get_extension_for_class(x509.AuthorityInformationAccess).value
    except x509.ExtensionNotFound:
        return []
    return [
        str(ad.access_location.value)
        for ad in aia
        if ad.access_method == AuthorityInformationAccessOID.OCSP
    ]


def _post_ocsp(url: str, body: bytes, timeout: float) -> bytes:
    req = urllib.request.Request(url, data=body, method="POST")
    req.add_header("Content-Type", "application/ocsp-request")
    req.add_header("Accept", "application/ocsp-response")
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return resp.read(OCSP_MAX_RESPONSE)


def _status_name(status) -> str:
    return str(status).split(".")[-1]


def check_staple(
    staple: bytes,
    cert: x509.Certificate,
    now: Optional[datetime] = None,
) -> Optional[RevocationResult]:
    """Inspect a stapled OCSP response. None means the staple vouches for the certificate."""
    now = now or datetime.now(timezone.utc)
    try:
        resp = ocsp.load_der_ocsp_response(staple)
    except ValueError as e:
        return RevocationResult(STATUS_STAPLE_INVALID, f"OCSP staple parse error: {e}")

    if resp.response_status != ocsp.OCSPResponseStatus.SUCCESSFUL:
        return RevocationResult(
            STATUS_STAPLE_INVALID,
            f"OCSP staple response status: {_status_name(resp.response_status)}",
        )

    if resp.serial_number != cert.serial_number:
        return RevocationResult(STATUS_STAPLE_INVALID, "OCSP staple is for a different certificate")

    next_update = resp.next_update_utc
    if next_update is not None and next_update < now:
        return RevocationResult(
            STATUS_STAPLE_INVALID,
            "OCSP staple expired at %s" % next_update.strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

    if resp.certificate_status == ocsp.OCSPCertStatus.REVOKED:
        return RevocationResult(STATUS_REVOKED, "OCSP staple: certificate revoked")
    if resp.certificate_status == ocsp.OCSPCertStatus.GOOD:
        return None

    return RevocationResult(
        STATUS_UNREACHABLE,
        f"OCSP staple status: {_status_name(resp.certificate_status)}",
    )


def query_responder(
    cert: x509.Certificate,
    issuer: x509.Certificate,
    post: Optional[PostFn] = None,
) -> Optional[RevocationResult]:
    """Ask the first AIA OCSP responder about the certificate."""
    urls = ocsp_urls(cert)
    if not urls:
        return None
    url = urls[0]
    post = post or _post_ocsp

    try:
        req = ocsp.OCSPRequestBuilder().add_certificate(cert, issuer, hashes.SHA1()).build()
        body = req.public_bytes(serialization.Encoding.DER)
    except (ValueError, TypeError) as e:
        return RevocationResult(STATUS_UNREACHABLE, f"OCSP request creation failed: {e}")

    try:
        raw = post(url, body, OCSP_TIMEOUT)
    except _TRANSPORT_ERRORS as e:
        logger.warning("OCSP responder %s unreachable: %s", url, e)
        return RevocationResult(STATUS_UNREACHABLE, f"OCSP responder at {url}: {e}")

    try:
        resp = ocsp.load_der_ocsp_response(raw)
    except ValueError as e:
        return RevocationResult(STATUS_UNREACHABLE, f"OCSP response parse error: {e}")

    if resp.response_status != ocsp.OCSPResponseStatus.SUCCESSFUL:
        return RevocationResult(
            STATUS_UNREACHABLE,
            f"OCSP responder at {url} answered {_status_name(resp.response_status)}",
        )

    if resp.certificate_status == ocsp.OCSPCertStatus.REVOKED:
        return RevocationResult(STATUS_REVOKED, f"OCSP confirms revocation (responder: {url})")
    return None


# -------------------------
# CRL
# -------------------------

class CRLCache(object):
    """In-memory CRLs keyed by distribution point URL, kept until their nextUpdate."""

    def __init__(self, now_fn: Optional[Callable[[], datetime]] = None):
        self._entries: Dict[str, Tuple[x509.CertificateRevocationList, datetime]] = {}
        self._lock = threading.Lock()
        self._now = now_fn or (lambda: datetime.now(timezone.utc))

    def get(self, url: str) -> Optional[x509.CertificateRevocationList]:
        with self._lock:
            entry = self._entries.get(url)
        if entry is None or self._now() > entry[1]:
            return None
        return entry[0]

    def set(self, url: str, crl: x509.CertificateRevocationList) -> None:
        expires = crl.next_update_utc or self._now() + CRL_DEFAULT_TTL
        with self._lock:
            self._entries[url] = (crl, expires)


def crl_urls(cert: x509.Certificate) -> List[str]:
    try:
        cdp = cert.extensions.get_extension_for_class(x509.CRLDistributionPoints).value
    except x509.ExtensionNotFound:
        return []
    urls: List[str] = []
    for dp in cdp:
        for gn in dp.full_name or []:
            if isinstance(gn, x509.UniformResourceIdentifier):
                urls.append(str(gn.value))
    return urls


def _fetch_crl(url: str, timeout: float) -> bytes:
    with urllib.request.urlopen(url, timeout=timeout) as resp:
        return resp.read(CRL_MAX_RESPONSE)


def check_crl(
    cert: x509.Certificate,
    cache: CRLCache,
    fetch: Optional[FetchFn] = None,
    now: Optional[datetime] = None,
) -> Optional[RevocationResult]:
    """Look the certificate's serial up in every CRL distribution point it names."""
    now = now or datetime.now(timezone.utc)
    fetch = fetch or _fetch_crl

    for url in crl_urls(cert):
        crl = cache.get(url)
        if crl is None:
            try:
                crl = x509.load_der_x509_crl(fetch(url, CRL_TIMEOUT))
            except _TRANSPORT_ERRORS as e:
                logger.warning("CRL fetch from %s failed: %s", url, e)
                return RevocationResult(STATUS_UNREACHABLE, f"CRL fetch from {url}: {e}")
            cache.set(url, crl)

        next_update = crl.next_update_utc
        if next_update is not None and next_update < now:
            return RevocationResult(
                STATUS_CRL_STALE,
                "CRL from %s expired %s" % (url, next_update.strftime("%Y-%m-%dT%H:%M:%SZ")),
            )

        if crl.get_revoked_certificate_by_serial_number(cert.serial_number) is not None:
            return RevocationResult(
                STATUS_REVOKED,
                f"CRL from {url}: certificate serial {cert.serial_number:x} revoked",
            )

    return None


def check_revocation(
    cert: Optional[x509.Certificate],
    issuer: Optional[x509.Certificate],
    staple: bytes = b"",
    post: Optional[PostFn] = None,
    now: Optional[datetime] = None,
    crl_cache: Optional[CRLCache] = None,
    fetch: Optional[FetchFn] = None,
) -> List[str]:
    """
    Observe-only revocation check. OCSP needs the issuer: the staple is
    preferred, and without one the responder is queried. CRLs are consulted
    when a cache is supplied. Returns human-readable issue strings.
    """
    if cert is None:
        return []

    issues: List[str] = []
    if issuer is not None:
        if staple:
            r = check_staple(staple, cert, now=now)
        else:
            r = query_responder(cert, issuer, post=post)
        if r:
            issues.append(r.format())

    if crl_cache is not None:
        r = check_crl(cert, crl_cache, fetch=fetch, now=now)
        if r:
            issues.append(r.format())

    return issues
