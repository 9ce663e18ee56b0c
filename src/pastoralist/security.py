from __future__ import annotations

import os
import re
from typing import Iterable, Mapping, Protocol

import requests

from .runtime import emit, load_dotenv_once
from .types import SecurityFinding

DEFAULT_OSV_API = "https://api.osv.dev/v1"
SEVERITY_ORDER = ("low", "medium", "high", "critical")
_CONCRETE_VERSION_RE = re.compile(r"^[\^~=v]*\s*(\d+\.\d+\.\d+(?:[-+][\w.\-+]+)?)$")


def _log(message: str, *, level: str = "debug") -> None:
    emit("security", message, level=level)


class SecurityProvider(Protocol):
    name: str

    def check(self, packages: Mapping[str, str]) -> list[SecurityFinding]: ...


class StaticSecurityProvider:
    """Serve findings computed elsewhere (CI artifacts, another scanner)."""

    def __init__(self, findings: Iterable[SecurityFinding], name: str = "static"):
        self.name = name
        self._findings = list(findings)

    def check(self, packages: Mapping[str, str]) -> list[SecurityFinding]:
        return [f for f in self._findings if f.package_name in packages]


def concrete_version(version_range: str) -> str | None:
    match = _CONCRETE_VERSION_RE.match(version_range.strip())
    if not match:
        return None
    return match.group(1)


def _osv_api() -> str:
    load_dotenv_once()
    return (os.environ.get("PASTORALIST_OSV_API") or DEFAULT_OSV_API).rstrip("/")


def _osv_timeout() -> float:
    raw = (os.environ.get("PASTORALIST_OSV_TIMEOUT") or "").strip()
    if not raw:
        return 30.0
    try:
        return max(1.0, float(raw))
    except ValueError:
        return 30.0


def _osv_severity(vuln: dict) -> str | None:
    database = vuln.get("database_specific")
    if isinstance(database, dict):
        severity = database.get("severity")
        if isinstance(severity, str) and severity:
            normalized = severity.lower()
            return "medium" if normalized == "moderate" else normalized
    return None


def _osv_cve(vuln: dict) -> str | None:
    for alias in vuln.get("aliases") or []:
        if isinstance(alias, str) and alias.startswith("CVE-"):
            return alias
    vuln_id = vuln.get("id")
    return vuln_id if isinstance(vuln_id, str) else None


def _osv_url(vuln: dict) -> str | None:
    for reference in vuln.get("references") or []:
        if isinstance(reference, dict) and reference.get("type") == "ADVISORY":
            return reference.get("url")
    vuln_id = vuln.get("id")
    if isinstance(vuln_id, str):
        return f"https://osv.dev/vulnerability/{vuln_id}"
    return None


def _osv_fix_version(vuln: dict, package: str) -> str | None:
    for affected in vuln.get("affected") or []:
        if not isinstance(affected, dict):
            continue
        if (affected.get("package") or {}).get("name") != package:
            continue
        for version_range in affected.get("ranges") or []:
            for event in version_range.get("events") or []:
                if isinstance(event, dict) and event.get("fixed"):
                    return str(event["fixed"])
    return None


class OsvSecurityProvider:
    name = "osv"

    def __init__(self, api: str | None = None, timeout: float | None = None):
        self.api = (api or _osv_api()).rstrip("/")
        self.timeout = timeout if timeout is not None else _osv_timeout()

    def _query_batch(self, queries: list[dict]) -> list[dict]:
        response = requests.post(
            f"{self.api}/querybatch",
            json={"queries": queries},
            timeout=self.timeout,
        )
        response.raise_for_status()
        results = response.json().get("results") or []
        return [r if isinstance(r, dict) else {} for r in results]

    def _vulnerability(self, vuln_id: str) -> dict:
        response = requests.get(f"{self.api}/vulns/{vuln_id}", timeout=self.timeout)
        response.raise_for_status()
        payload = response.json()
        return payload if isinstance(payload, dict) else {}

    def check(self, packages: Mapping[str, str]) -> list[SecurityFinding]:
        names: list[str] = []
        queries: list[dict] = []
        for name in sorted(packages):
            version = concrete_version(packages[name])
            if version is None:
                _log(f"Skipping {name}: no concrete version in {packages[name]!r}")
                continue
            names.append(name)
            queries.append(
                {"package": {"name": name, "ecosystem": "npm"}, "version": version}
            )
        if not queries:
            return []

        try:
            results = self._query_batch(queries)
        except (requests.RequestException, ValueError) as exc:
            _log(f"OSV query failed: {exc}", level="warning")
            return []

        findings: list[SecurityFinding] = []
        for name, result in zip(names, results):
            vulns = result.get("vulns") or []
            if not vulns:
                continue
            vuln_id = vulns[0].get("id") if isinstance(vulns[0], dict) else None
            if not vuln_id:
                continue
            try:
                vuln = self._vulnerability(vuln_id)
            except (requests.RequestException, ValueError) as exc:
                _log(f"OSV lookup for {vuln_id} failed: {exc}", level="warning")
                vuln = {"id": vuln_id}
            summary = vuln.get("summary") or vuln_id
            findings.append(
                SecurityFinding(
                    package_name=name,
                    reason=f"Security fix: {summary}",
                    cve=_osv_cve(vuln),
                    severity=_osv_severity(vuln),
                    url=_osv_url(vuln),
                    fix_version=_osv_fix_version(vuln, name),
                )
            )
        _log(f"{len(findings)} of {len(queries)} packages have advisories")
        return findings


PROVIDERS = {"osv": OsvSecurityProvider}


def create_provider(name: str | None) -> SecurityProvider | None:
    factory = PROVIDERS.get((name or "osv").lower())
    if factory is None:
        _log(f"Unsupported security provider {name!r}", level="warning")
        return None
    return factory()


def _version_key(version: str) -> tuple[tuple[int, ...], int]:
    core, _, prerelease = version.strip().lstrip("^~=v").partition("-")
    numbers = []
    for piece in core.split("+")[0].split("."):
        digits = re.match(r"\d*", piece).group()
        numbers.append(int(digits) if digits else 0)
    numbers += [0] * (3 - len(numbers))
    return tuple(numbers), 0 if prerelease else 1


def is_newer_version(candidate: str, current: str) -> bool:
    return _version_key(candidate) > _version_key(current)


def security_overrides(
    findings: Iterable[SecurityFinding],
    overrides: Mapping[str, object],
) -> dict[str, str]:
    """
    Pin each vulnerable package to its fixed version.

    An existing pin at or above the fixed version is left alone, and nested
    overrides are never replaced.
    """
    pins: dict[str, str] = {}
    for finding in findings:
        if not finding.fix_version:
            continue
        name = finding.package_name
        current = pins.get(name, overrides.get(name))
        if isinstance(current, dict):
            _log(f"{name}: nested override present, not pinning a fix")
            continue
        if isinstance(current, str) and not is_newer_version(
            finding.fix_version, current
        ):
            continue
        pins[name] = finding.fix_version
    return pins


def filter_findings(
    findings: Iterable[SecurityFinding],
    *,
    exclude: Iterable[str] = (),
    threshold: str | None = None,
) -> list[SecurityFinding]:
    excluded = set(exclude)
    minimum = SEVERITY_ORDER.index(threshold) if threshold in SEVERITY_ORDER else 0
    kept: list[SecurityFinding] = []
    for finding in findings:
        if finding.package_name in excluded:
            continue
        severity = (finding.severity or "medium").lower()
        rank = SEVERITY_ORDER.index(severity) if severity in SEVERITY_ORDER else 1
        if rank < minimum:
            continue
        kept.append(finding)
    return kept
