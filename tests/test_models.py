from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from models import CertFinding, Snapshot, severity_rank

T = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_finding_json_omits_empty_fields_but_keeps_probe_ok():
    f = CertFinding(source="external", target="https://example.com:443")
    doc = f.to_json_dict()
    assert doc == {
        "source": "external",
        "target": "https://example.com:443",
        "probeOk": False,
        "severity": "info",
    }


def test_finding_json_uses_camel_case():
    f = CertFinding(
        source="file",
        not_after=T,
        dns_names=["a.example.com"],
        probe_ok=True,
        probe_err="",
        chain_errors=["leaf certificate is self-signed"],
        tls_version="TLS 1.3",
        severity="warn",
    )
    doc = f.to_json_dict()
    assert doc["notAfter"] == "2026-03-01T12:00:00Z"
    assert doc["dnsNames"] == ["a.example.com"]
    assert doc["chainErrors"] == ["leaf certificate is self-signed"]
    assert doc["tlsVersion"] == "TLS 1.3"
    assert doc["probeOk"] is True
    assert "probeError" not in doc


def test_probe_error_alias():
    f = CertFinding(source="external", probe_err="connection refused")
    assert f.to_json_dict()["probeError"] == "connection refused"
    assert CertFinding.model_validate({"source": "external", "probeError": "x"}).probe_err == "x"


def test_transient_fields_never_serialise():
    f = CertFinding(source="external", raw_cert=object(), raw_issuer=object(), ocsp_staple=b"\x01")
    doc = f.to_json_dict()
    assert not {"rawCert", "rawIssuer", "ocspStaple", "raw_cert"} & set(doc)

    f.clear_transient()
    assert f.raw_cert is None
    assert f.raw_issuer is None
    assert f.ocsp_staple == b""


def test_not_after_is_normalised_to_utc():
    local = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert CertFinding(source="x", not_after=local).not_after == T
    assert CertFinding(source="x", not_after=datetime(2026, 3, 1, 12, 0)).not_after == T


def test_snapshot_json():
    snap = Snapshot(at=T, findings=[CertFinding(source="external")])
    doc = snap.to_json_dict()
    assert doc["at"] == "2026-03-01T12:00:00Z"
    assert "errors" not in doc
    assert doc["findings"] == [{"source": "external", "probeOk": False, "severity": "info"}]

    with_errors = Snapshot(at=T, errors={"files": "boom"}).to_json_dict()
    assert with_errors["errors"] == {"files": "boom"}
    assert with_errors["findings"] == []


def test_snapshot_from_json_dict():
    doc = Snapshot(
        at=T,
        findings=[CertFinding(source="file", not_after=T, probe_ok=True, severity="critical")],
        errors={"externals": "timeout"},
    ).to_json_dict()

    snap = Snapshot.from_json_dict(doc)

    assert snap.at == T
    assert snap.errors == {"externals": "timeout"}
    assert snap.findings[0].not_after == T
    assert snap.findings[0].severity == "critical"
    assert snap.findings[0].probe_ok is True


def test_severity_rank():
    assert severity_rank("critical") > severity_rank("warn") > severity_rank("info")
    assert severity_rank("CRITICAL") == severity_rank("critical")
    assert severity_rank("bogus") == 0


def test_severity_must_be_known():
    with pytest.raises(ValidationError):
        CertFinding(source="external", severity="urgent")

    f = CertFinding(source="external")
    with pytest.raises(ValidationError):
        f.severity = "high"
    assert f.severity == "info"
