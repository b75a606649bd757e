# backend/models.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# -----------------------------
# Severities
# -----------------------------

SEVERITY_INFO = "info"
SEVERITY_WARN = "warn"
SEVERITY_CRITICAL = "critical"

SEVERITY_ORDER = {SEVERITY_CRITICAL: 2, SEVERITY_WARN: 1, SEVERITY_INFO: 0}

Severity = Literal["info", "warn", "critical"]

# -----------------------------
# Source kinds
# -----------------------------

SOURCE_TLS_SECRET = "k8s.tlsSecret"
SOURCE_INGRESS_TLS = "k8s.ingressTLS"
SOURCE_WEBHOOK = "k8s.webhook"
SOURCE_API_SERVICE = "k8s.apiservice"
SOURCE_API_SERVER = "k8s.apiserver"
SOURCE_GATEWAY = "k8s.gateway"
SOURCE_LINKERD = "mesh.linkerd"
SOURCE_ISTIO = "mesh.istio"
SOURCE_EXTERNAL = "external"
SOURCE_FILE = "file"
SOURCE_ANNOTATION = "annotation"
SOURCE_CERT_MANAGER = "certmanager"
SOURCE_CERT_MANAGER_RENEWAL = "certmanager.renewal"
SOURCE_SPIFFE = "spiffe"

# Webhook notes written by the admission-webhook discoverer.
NOTES_FAIL_POLICY_FAIL = "failurePolicy=Fail"
NOTES_FAIL_POLICY_IGNORE = "failurePolicy=Ignore"

# Finding types that carry their own remediation.
FINDING_MANAGED_EXPIRY = "MANAGED_EXPIRY"
FINDING_RENEWAL_STALLED = "RENEWAL_STALLED"
FINDING_CHALLENGE_FAILED = "CHALLENGE_FAILED"
FINDING_REQUEST_PENDING = "REQUEST_PENDING"

# Always serialised, even when empty.
_ALWAYS_PRESENT = ("probeOk", "source", "severity")


class CertFinding(BaseModel):
    """One observation of a trust surface."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    # identity
    source: str
    namespace: str = ""
    name: str = ""
    target: str = ""
    sni: str = ""

    # certificate facts
    not_after: Optional[datetime] = None
    subject: str = ""
    issuer: str = ""
    serial: str = ""
    dns_names: List[str] = Field(default_factory=list)
    issuer_chain: List[str] = Field(default_factory=list)
    key_algorithm: str = ""
    key_size: int = 0
    signature_algorithm: str = ""
    self_signed: bool = False
    chain_len: int = 0

    # probe facts
    probe_ok: bool = False
    probe_err: str = Field(default="", alias="probeError")
    tls_version: str = ""
    cipher_suite: str = ""
    retry_count: int = 0

    # validation facts
    chain_errors: List[str] = Field(default_factory=list)
    posture_issues: List[str] = Field(default_factory=list)
    revocation_issues: List[str] = Field(default_factory=list)

    # classification
    severity: Severity = SEVERITY_INFO
    finding_type: str = ""
    notes: str = ""
    remediation: str = ""

    # federation
    cluster: str = ""

    # Transient inputs for revocation checks; cleared before a snapshot is emitted.
    raw_cert: Optional[Any] = Field(default=None, exclude=True, repr=False)
    raw_issuer: Optional[Any] = Field(default=None, exclude=True, repr=False)
    ocsp_staple: bytes = Field(default=b"", exclude=True, repr=False)

    @field_validator("not_after")
    @classmethod
    def _not_after_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _utc(v) if v is not None else None

    def clear_transient(self) -> None:
        self.raw_cert = None
        self.raw_issuer = None
        self.ocsp_staple = b""

    def to_json_dict(self) -> Dict[str, Any]:
        out = self.model_dump(mode="json", by_alias=True, exclude_defaults=True)
        full = self.model_dump(mode="json", by_alias=True, include={"probe_ok", "source", "severity"})
        for key in _ALWAYS_PRESENT:
            out[key] = full[key]
        return out


class Snapshot(BaseModel):
    """Point-in-time result of one orchestration run."""

    model_config = ConfigDict(frozen=True)

    at: datetime
    findings: List[CertFinding] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)

    @field_validator("at")
    @classmethod
    def _at_utc(cls, v: datetime) -> datetime:
        return _utc(v)

    def to_json_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"at": _rfc3339(self.at)}
        if self.errors:
            out["errors"] = dict(self.errors)
        out["findings"] = [f.to_json_dict() for f in self.findings]
        return out

    @classmethod
    def from_json_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            at=data["at"],
            findings=[CertFinding.model_validate(f) for f in (data.get("findings") or [])],
            errors=data.get("errors") or {},
        )


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _rfc3339(dt: datetime) -> str:
    s = dt.isoformat()
    if s.endswith("+00:00"):
        s = s[: -len("+00:00")] + "Z"
    return s


def severity_rank(sev: str) -> int:
    return SEVERITY_ORDER.get((sev or "").lower(), 0)
