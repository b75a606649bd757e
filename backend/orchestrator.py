# backend/orchestrator.py
from __future__ import annotations

import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol

from models import CertFinding, Snapshot
from policy import apply_managed_expiry, apply_remediation, apply_revocation_severity, classify_findings
from revocation import CRLCache, check_revocation

logger = logging.getLogger(__name__)


class Discoverer(Protocol):
    """
    A source of findings. `discover` returns [] when the feature it looks for
    is not present, and raises when enumeration itself fails.
    """

    def name(self) -> str:
        ...

    def discover(self) -> List[CertFinding]:
        ...


RevocationFn = Callable[..., List[str]]


@dataclass
class _SourceResult:
    name: str
    findings: List[CertFinding] = field(default_factory=list)
    error: str = ""


def _err_text(e: BaseException) -> str:
    return str(e) or e.__class__.__name__


def _source_name(d: Discoverer) -> str:
    try:
        return d.name()
    except Exception as e:
        fallback = d.__class__.__name__
        logger.warning("discoverer name() failed, using %s: %s", fallback, e)
        return fallback


class Orchestrator(object):
    def __init__(
        self,
        discoverers: List[Discoverer],
        warn_before: timedelta,
        crit_before: timedelta,
        now_fn: Optional[Callable[[], datetime]] = None,
        discover_timer: Optional[Callable[[str, float], None]] = None,
        check_revocation_fn: Optional[RevocationFn] = None,
        cluster_name: str = "",
    ):
        self.discoverers = list(discoverers)
        self.warn_before = warn_before
        self.crit_before = crit_before
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.discover_timer = discover_timer
        self.check_revocation_fn = check_revocation_fn
        self.cluster_name = cluster_name

    def _discover_one(self, d: Discoverer, name: str) -> _SourceResult:
        start = time.monotonic()
        try:
            findings = d.discover() or []
            res = _SourceResult(name=name, findings=list(findings))
        except Exception as e:
            res = _SourceResult(name=name, error=_err_text(e))
        if self.discover_timer is not None:
            try:
                self.discover_timer(name, time.monotonic() - start)
            except Exception as e:
                logger.warning("discover timer failed: source=%s err=%s", name, e)
        return res

    def _fan_out(self) -> List[_SourceResult]:
        if not self.discoverers:
            return []

        results: List[_SourceResult] = []
        with ThreadPoolExecutor(max_workers=len(self.discoverers)) as ex:
            futures = {}
            for d in self.discoverers:
                name = _source_name(d)
                futures[ex.submit(self._discover_one, d, name)] = name

            for fut in as_completed(futures):
                results.append(fut.result())
        return results

    def _check_revocation(self, f: CertFinding) -> None:
        try:
            issues = self.check_revocation_fn(f.raw_cert, f.raw_issuer, f.ocsp_staple)
        except Exception as e:
            logger.warning("revocation check failed: target=%s err=%s", f.target, e)
            issues = [f"OCSP_UNREACHABLE: revocation check failed: {_err_text(e)}"]
        if issues:
            f.revocation_issues = list(issues)
            apply_revocation_severity(f)

    def run(self) -> Snapshot:
        """
        Run every discoverer concurrently, merge their output and classify it.
        A failing discoverer is recorded in Snapshot.errors and never aborts the run.
        """
        logger.info("discovery run starting: %d sources", len(self.discoverers))
        results = self._fan_out()

        # One instant for the whole classification pass.
        now = self.now_fn()
        all_findings: List[CertFinding] = []
        errors: Dict[str, str] = {}

        for r in results:
            if r.error:
                logger.warning("discoverer failed: source=%s err=%s", r.name, r.error)
                errors[r.name] = r.error
                continue
            logger.debug("discoverer complete: source=%s findings=%d", r.name, len(r.findings))
            all_findings.extend(r.findings)

        classify_findings(all_findings, now, self.warn_before, self.crit_before)
        apply_managed_expiry(all_findings)

        if self.check_revocation_fn is not None:
            for f in all_findings:
                if f.probe_ok and f.raw_cert is not None:
                    self._check_revocation(f)

        for f in all_findings:
            f.clear_transient()
            if self.cluster_name and not f.cluster:
                f.cluster = self.cluster_name

        apply_remediation(all_findings)

        logger.info("discovery run finished: findings=%d errors=%d", len(all_findings), len(errors))
        return Snapshot(at=now, findings=all_findings, errors=errors)


def new_orchestrator(discoverers: List[Discoverer], cfg, crl_cache: Optional[CRLCache] = None) -> Orchestrator:
    """
    Build an orchestrator from a loaded Config. Pass a long-lived `crl_cache`
    to reuse downloaded CRLs across runs.
    """
    revocation_fn = None
    if cfg.check_revocation:
        revocation_fn = functools.partial(check_revocation, crl_cache=crl_cache or CRLCache())
    return Orchestrator(
        discoverers,
        warn_before=cfg.warn_before,
        crit_before=cfg.crit_before,
        check_revocation_fn=revocation_fn,
        cluster_name=cfg.cluster_name,
    )
