# backend/policy.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List

from models import (
    FINDING_CHALLENGE_FAILED,
    FINDING_MANAGED_EXPIRY,
    FINDING_RENEWAL_STALLED,
    FINDING_REQUEST_PENDING,
    NOTES_FAIL_POLICY_FAIL,
    NOTES_FAIL_POLICY_IGNORE,
    SEVERITY_CRITICAL,
    SEVERITY_INFO,
    SEVERITY_WARN,
    SOURCE_CERT_MANAGER,
    SOURCE_CERT_MANAGER_RENEWAL,
    SOURCE_WEBHOOK,
    CertFinding,
    Snapshot,
    severity_rank,
)

REVOKED_TAG = "CERT_REVOKED"

# -------------------------
# Classification
# -------------------------

def classify_findings(
    findings: Iterable[CertFinding],
    now: datetime,
    warn_before: timedelta,
    crit_before: timedelta,
) -> None:
    """
    Apply expiry-based severity in place, judged against a single `now`.

    Findings that failed to probe or carry no notAfter keep whatever severity
    their source assigned. Healthy certificates keep the source severity too,
    so structural "always critical" sources survive.
    """
    warn_cutoff = now + warn_before
    crit_cutoff = now + crit_before

    for f in findings:
        if not f.probe_ok or f.not_after is None:
            continue

        if f.not_after < now:
            f.severity = SEVERITY_CRITICAL
        elif f.not_after < crit_cutoff:
            f.severity = SEVERITY_CRITICAL
        elif f.not_after < warn_cutoff:
            # A Fail-policy webhook blocks the API server when its cert breaks.
            if f.source == SOURCE_WEBHOOK and f.notes == NOTES_FAIL_POLICY_FAIL:
                f.severity = SEVERITY_CRITICAL
            else:
                f.severity = SEVERITY_WARN

        # The API server skips an Ignore-policy webhook on failure.
        if f.source == SOURCE_WEBHOOK and f.notes == NOTES_FAIL_POLICY_IGNORE and f.severity == SEVERITY_CRITICAL:
            f.severity = SEVERITY_WARN

        if f.chain_errors and f.severity == SEVERITY_INFO:
            f.severity = SEVERITY_WARN

        if f.posture_issues and f.severity == SEVERITY_INFO:
            f.severity = SEVERITY_WARN


def _managed_key(f: CertFinding) -> str:
    return f"{f.namespace}/{f.name}"


def apply_managed_expiry(findings: List[CertFinding]) -> None:
    """
    Downgrade expiry findings for certificates that cert-manager renews.

    A warn/critical finding is matched to a probed cert-manager Certificate by
    namespace/name (for cert-manager findings) or by serial (for everything
    else). With healthy renewal it becomes MANAGED_EXPIRY at info; when the
    Certificate is not Ready the severity stays and the notes say so.
    """
    managed_by_name = set()
    managed_by_serial: Dict[str, str] = {}
    for f in findings:
        if f.source != SOURCE_CERT_MANAGER or not f.probe_ok:
            continue
        key = _managed_key(f)
        managed_by_name.add(key)
        if f.serial:
            managed_by_serial[f.serial] = key

    if not managed_by_name:
        return

    unhealthy = {
        _managed_key(f)
        for f in findings
        if f.source == SOURCE_CERT_MANAGER_RENEWAL and f.finding_type == FINDING_REQUEST_PENDING
    }

    for f in findings:
        if f.severity not in (SEVERITY_WARN, SEVERITY_CRITICAL):
            continue

        if f.source == SOURCE_CERT_MANAGER:
            key = _managed_key(f) if _managed_key(f) in managed_by_name else ""
        else:
            key = managed_by_serial.get(f.serial, "") if f.serial else ""
        if not key:
            continue

        if key in unhealthy:
            note = f"managed by cert-manager Certificate {key}, renewal UNHEALTHY"
            f.notes = f"{f.notes}; {note}" if f.notes else note
        else:
            f.finding_type = FINDING_MANAGED_EXPIRY
            f.severity = SEVERITY_INFO
            f.notes = f"managed by cert-manager Certificate {key}, renewal healthy"


def apply_revocation_severity(f: CertFinding) -> None:
    if any(REVOKED_TAG in issue for issue in f.revocation_issues):
        f.severity = SEVERITY_CRITICAL


# -------------------------
# Remediation playbook
# -------------------------

FINDING_TYPE_PLAYBOOK = {
    FINDING_MANAGED_EXPIRY: "Certificate is managed by cert-manager with healthy renewal. No action required.",
    FINDING_RENEWAL_STALLED: (
        "cert-manager CertificateRequest is stuck. Check cert-manager logs, issuer configuration, and RBAC. "
        "Run: kubectl describe certificaterequest -n <namespace>"
    ),
    FINDING_CHALLENGE_FAILED: (
        "ACME challenge failed. Check DNS records, HTTP reachability, and issuer account credentials. "
        "Run: kubectl describe challenge -n <namespace>"
    ),
    FINDING_REQUEST_PENDING: (
        "cert-manager Certificate is not ready. Check the Certificate status and issuer health. "
        "Run: kubectl describe certificate <name> -n <namespace>"
    ),
}

REMEDIATION_REVOCATION = "Check certificate revocation status. If revoked, reissue immediately and rotate all dependents."
REMEDIATION_CHAIN = (
    "Fix the certificate chain: ensure intermediates are present and correctly ordered "
    "in the TLS secret or server config."
)
REMEDIATION_POSTURE = (
    "Upgrade TLS configuration: disable TLS <1.2, remove weak ciphers (RC4, 3DES, NULL), "
    "and enable TLS 1.3 where possible."
)
REMEDIATION_PROBE = (
    "Investigate probe failure: check that the service is running, the port is correct, and TLS is configured."
)
REMEDIATION_CRITICAL = "Certificate is expired or expiring imminently. Renew or rotate the certificate now."
REMEDIATION_WARN = "Certificate is approaching expiry. Schedule renewal before the warning threshold."


def remediation_for(f: CertFinding) -> str:
    if f.finding_type and f.finding_type in FINDING_TYPE_PLAYBOOK:
        return FINDING_TYPE_PLAYBOOK[f.finding_type]
    if f.revocation_issues:
        return REMEDIATION_REVOCATION
    if f.chain_errors:
        return REMEDIATION_CHAIN
    if f.posture_issues:
        return REMEDIATION_POSTURE
    if not f.probe_ok and f.probe_err:
        return REMEDIATION_PROBE
    if f.severity == SEVERITY_CRITICAL:
        return REMEDIATION_CRITICAL
    if f.severity == SEVERITY_WARN:
        return REMEDIATION_WARN
    return ""


def apply_remediation(findings: Iterable[CertFinding]) -> None:
    for f in findings:
        if not f.remediation:
            f.remediation = remediation_for(f)


# -------------------------
# Summaries
# -------------------------

def worst_severity(findings: Iterable[CertFinding]) -> str:
    worst = SEVERITY_INFO
    for f in findings:
        if severity_rank(f.severity) > severity_rank(worst):
            worst = f.severity
    return worst


def summarize_snapshot(snapshot: Snapshot) -> Dict[str, Any]:
    counts = {SEVERITY_CRITICAL: 0, SEVERITY_WARN: 0, SEVERITY_INFO: 0}
    probe_failures = 0
    chain_issues = 0
    posture_issues = 0
    for f in snapshot.findings:
        if f.severity in counts:
            counts[f.severity] += 1
        if not f.probe_ok:
            probe_failures += 1
        if f.chain_errors:
            chain_issues += 1
        if f.posture_issues:
            posture_issues += 1

    return {
        "total": len(snapshot.findings),
        "critical": counts[SEVERITY_CRITICAL],
        "warn": counts[SEVERITY_WARN],
        "info": counts[SEVERITY_INFO],
        "probe_failures": probe_failures,
        "chain_issues": chain_issues,
        "posture_issues": posture_issues,
        "source_errors": len(snapshot.errors),
        "worst": worst_severity(snapshot.findings),
    }
