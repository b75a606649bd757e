import urllib.error
from datetime import timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp

from revocation import CRLCache, check_crl, check_revocation, check_staple, crl_urls, ocsp_urls, query_responder


def _naive(dt):
    return dt.replace(tzinfo=None)


def _ocsp_response(pki, now, status=ocsp.OCSPCertStatus.GOOD, cert=None, next_update=None):
    cert = cert or pki["leaf"].cert
    issuer = pki["intermediate"]
    revoked = status == ocsp.OCSPCertStatus.REVOKED
    builder = ocsp.OCSPResponseBuilder().add_response(
        cert=cert,
        issuer=issuer.cert,
        algorithm=hashes.SHA1(),
        cert_status=status,
        this_update=_naive(now - timedelta(hours=1)),
        next_update=_naive(next_update or now + timedelta(days=1)),
        revocation_time=_naive(now - timedelta(hours=2)) if revoked else None,
        revocation_reason=None,
    ).responder_id(ocsp.OCSPResponderEncoding.HASH, issuer.cert)
    resp = builder.sign(issuer.key, hashes.SHA256())
    return resp.public_bytes(serialization.Encoding.DER)


def test_ocsp_urls(pki):
    assert ocsp_urls(pki["leaf"].cert) == ["http://ocsp.example.test"]
    assert ocsp_urls(pki["root"].cert) == []


# --- staples ---

def test_good_staple(pki, now):
    staple = _ocsp_response(pki, now)
    assert check_staple(staple, pki["leaf"].cert, now) is None
    assert check_revocation(pki["leaf"].cert, pki["intermediate"].cert, staple, now=now) == []


def test_revoked_staple(pki, now):
    staple = _ocsp_response(pki, now, status=ocsp.OCSPCertStatus.REVOKED)
    issues = check_revocation(pki["leaf"].cert, pki["intermediate"].cert, staple, now=now)
    assert issues == ["CERT_REVOKED: OCSP staple: certificate revoked"]


def test_stale_staple(pki, now):
    staple = _ocsp_response(pki, now - timedelta(days=3), next_update=now - timedelta(days=2))
    issues = check_revocation(pki["leaf"].cert, pki["intermediate"].cert, staple, now=now)
    assert len(issues) == 1
    assert issues[0].startswith("OCSP_STAPLE_INVALID: OCSP staple expired at")


def test_staple_for_another_certificate(pki, cert_factory, now):
    other = cert_factory("other.example.com", issuer=pki["intermediate"])
    staple = _ocsp_response(pki, now, cert=other.cert)
    issues = check_revocation(pki["leaf"].cert, pki["intermediate"].cert, staple, now=now)
    assert issues == ["OCSP_STAPLE_INVALID: OCSP staple is for a different certificate"]


def test_garbage_staple(pki, now):
    issues = check_revocation(pki["leaf"].cert, pki["intermediate"].cert, b"not ocsp", now=now)
    assert len(issues) == 1
    assert issues[0].startswith("OCSP_STAPLE_INVALID: OCSP staple parse error")


def test_unsuccessful_staple(pki, now):
    staple = ocsp.OCSPResponseBuilder.build_unsuccessful(
        ocsp.OCSPResponseStatus.TRY_LATER
    ).public_bytes(serialization.Encoding.DER)
    r = check_staple(staple, pki["leaf"].cert, now)
    assert r.format() == "OCSP_STAPLE_INVALID: OCSP staple response status: TRY_LATER"


# --- responder ---

def test_responder_confirms_revocation(pki, now):
    posted = []

    def post(url, body, timeout):
        posted.append(url)
        ocsp.load_der_ocsp_request(body)
        return _ocsp_response(pki, now, status=ocsp.OCSPCertStatus.REVOKED)

    issues = check_revocation(pki["leaf"].cert, pki["intermediate"].cert, post=post)

    assert posted == ["http://ocsp.example.test"]
    assert issues == ["CERT_REVOKED: OCSP confirms revocation (responder: http://ocsp.example.test)"]


def test_responder_good(pki, now):
    def post(url, body, timeout):
        return _ocsp_response(pki, now)

    assert check_revocation(pki["leaf"].cert, pki["intermediate"].cert, post=post) == []


def test_responder_unreachable(pki):
    def post(url, body, timeout):
        raise urllib.error.URLError("connection refused")

    r = query_responder(pki["leaf"].cert, pki["intermediate"].cert, post=post)
    assert r.format().startswith("OCSP_UNREACHABLE: OCSP responder at http://ocsp.example.test:")


def test_no_responder_url_means_no_issue(pki):
    def post(url, body, timeout):
        pytest.fail("responder should not be queried")

    assert check_revocation(pki["intermediate"].cert, pki["root"].cert, post=post) == []


def test_missing_issuer_is_skipped(pki):
    assert check_revocation(pki["leaf"].cert, None) == []
    assert check_revocation(None, pki["intermediate"].cert) == []


def test_responder_answering_non_http_is_unreachable(pki, cert_factory, garbage_http_url):
    leaf = cert_factory("api.example.com", issuer=pki["intermediate"], ocsp_url=garbage_http_url)

    issues = check_revocation(leaf.cert, pki["intermediate"].cert)

    assert len(issues) == 1
    assert issues[0].startswith(f"OCSP_UNREACHABLE: OCSP responder at {garbage_http_url}:")


# --- CRL ---

CRL_URL = "http://crl.example.test/intermediate.crl"


def _crl(pki, now, revoked=(), next_update=None):
    issuer = pki["intermediate"]
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(issuer.cert.subject)
        .last_update(_naive(now - timedelta(hours=1)))
        .next_update(_naive(next_update or now + timedelta(days=1)))
    )
    for serial in revoked:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder()
            .serial_number(serial)
            .revocation_date(_naive(now - timedelta(hours=2)))
            .build()
        )
    return builder.sign(issuer.key, hashes.SHA256()).public_bytes(serialization.Encoding.DER)


@pytest.fixture
def crl_leaf(pki, cert_factory):
    return cert_factory("crl.example.com", issuer=pki["intermediate"], crl_url=CRL_URL).cert


class FakeFetch(object):
    def __init__(self, body=b"", err=None):
        self.body = body
        self.err = err
        self.urls = []

    def __call__(self, url, timeout):
        self.urls.append(url)
        if self.err is not None:
            raise self.err
        return self.body


def test_crl_urls(crl_leaf, pki):
    assert crl_urls(crl_leaf) == [CRL_URL]
    assert crl_urls(pki["leaf"].cert) == []


def test_crl_revoked(pki, crl_leaf, now):
    fetch = FakeFetch(_crl(pki, now, revoked=[12345, crl_leaf.serial_number]))

    r = check_crl(crl_leaf, CRLCache(), fetch=fetch, now=now)

    assert r.format() == "CERT_REVOKED: CRL from %s: certificate serial %x revoked" % (CRL_URL, crl_leaf.serial_number)


def test_crl_clean(pki, crl_leaf, now):
    fetch = FakeFetch(_crl(pki, now, revoked=[12345]))
    assert check_crl(crl_leaf, CRLCache(), fetch=fetch, now=now) is None


def test_crl_stale(pki, crl_leaf, now):
    fetch = FakeFetch(_crl(pki, now - timedelta(days=3), next_update=now - timedelta(days=1)))

    r = check_crl(crl_leaf, CRLCache(), fetch=fetch, now=now)

    assert r.format().startswith(f"CRL_STALE: CRL from {CRL_URL} expired ")


def test_crl_fetch_failure(crl_leaf, now):
    fetch = FakeFetch(err=urllib.error.URLError("no route to host"))
    r = check_crl(crl_leaf, CRLCache(), fetch=fetch, now=now)
    assert r.format().startswith(f"OCSP_UNREACHABLE: CRL fetch from {CRL_URL}:")


def test_crl_garbage_body(crl_leaf, now):
    r = check_crl(crl_leaf, CRLCache(), fetch=FakeFetch(b"not a crl"), now=now)
    assert r.format().startswith(f"OCSP_UNREACHABLE: CRL fetch from {CRL_URL}:")


def test_crl_is_cached_until_next_update(pki, crl_leaf, now):
    fetch = FakeFetch(_crl(pki, now))
    cache = CRLCache(now_fn=lambda: now)

    check_crl(crl_leaf, cache, fetch=fetch, now=now)
    check_crl(crl_leaf, cache, fetch=fetch, now=now)

    assert fetch.urls == [CRL_URL]

    later = CRLCache(now_fn=lambda: now + timedelta(days=2))
    later.set(CRL_URL, cache.get(CRL_URL))
    assert later.get(CRL_URL) is None


def test_check_revocation_combines_ocsp_and_crl(pki, crl_leaf, now):
    def post(url, body, timeout):
        pytest.fail("leaf has no OCSP responder")

    fetch = FakeFetch(_crl(pki, now, revoked=[crl_leaf.serial_number]))

    issues = check_revocation(crl_leaf, None, post=post, now=now, crl_cache=CRLCache(), fetch=fetch)

    assert len(issues) == 1
    assert issues[0].startswith("CERT_REVOKED: CRL from")
