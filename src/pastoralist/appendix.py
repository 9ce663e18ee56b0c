from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Mapping

from .cache import RunCache
from .nested import is_nested, nested_applies
from .runtime import emit
from .types import (
    NESTED_SUFFIX,
    TRANSITIVE_SUFFIX,
    Appendix,
    AppendixEntry,
    Ledger,
    OverrideValue,
    SecurityFinding,
    appendix_key,
)


def _log(message: str, *, level: str = "debug") -> None:
    emit("appendix", message, level=level)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


@dataclass
class LedgerSources:
    """Inputs used to describe why an override exists when first recorded."""

    reason: str | None = None
    findings: dict[str, SecurityFinding] = field(default_factory=dict)
    provider: str | None = None
    manual_reasons: dict[str, str] = field(default_factory=dict)
    now: Callable[[], datetime] = _utcnow

    @classmethod
    def from_findings(
        cls,
        findings: list[SecurityFinding] | None = None,
        **kwargs,
    ) -> "LedgerSources":
        by_name = {finding.package_name: finding for finding in findings or []}
        return cls(findings=by_name, **kwargs)

    def reason_for(self, package: str) -> str | None:
        if self.reason:
            return self.reason
        finding = self.findings.get(package)
        if finding is not None and finding.reason:
            return finding.reason
        return self.manual_reasons.get(package)

    def build_ledger(self, package: str) -> Ledger:
        timestamp = format_timestamp(self.now())
        ledger = Ledger(added_date=timestamp, reason=self.reason_for(package))
        finding = self.findings.get(package)
        if finding is None:
            return ledger
        ledger.security_checked = True
        ledger.security_check_date = timestamp
        ledger.security_provider = self.provider
        ledger.cve = finding.cve
        ledger.severity = finding.severity
        ledger.url = finding.url
        return ledger


def describe_direct(name: str, version_range: str) -> str:
    return f"{name}@{version_range}"


def describe_transitive(name: str) -> str:
    return f"{name}{TRANSITIVE_SUFFIX}"


def describe_nested(parent: str, version_range: str) -> str:
    return f"{parent}@{version_range}{NESTED_SUFFIX}"


def is_transitive_descriptor(descriptor: str) -> bool:
    return descriptor.endswith(TRANSITIVE_SUFFIX)


def _descriptor_rank(descriptor: str) -> int:
    if is_transitive_descriptor(descriptor):
        return 2
    if descriptor.endswith(NESTED_SUFFIX):
        return 1
    return 0


def prefer_descriptor(current: str | None, candidate: str) -> str:
    # same consumer reached twice: keep the most specific, then the smallest
    if current is None:
        return candidate
    return min(current, candidate, key=lambda d: (_descriptor_rank(d), d))


def merge_dependents(
    current: Mapping[str, str], incoming: Mapping[str, str]
) -> dict[str, str]:
    merged = dict(current)
    for consumer, descriptor in incoming.items():
        merged[consumer] = prefer_descriptor(merged.get(consumer), descriptor)
    return {consumer: merged[consumer] for consumer in sorted(merged)}


def prune_empty_entries(appendix: Appendix) -> Appendix:
    return {
        key: appendix[key] for key in sorted(appendix) if appendix[key].dependents
    }


class AppendixBuilder:
    """
    Fold manifests into an appendix.

    Dependents are rebuilt from the manifests handed to `add_manifest`; ledgers
    come from `previous` when the key was recorded before, otherwise they are
    created once per key and memoized in the run cache.
    """

    def __init__(
        self,
        previous: Appendix | None = None,
        sources: LedgerSources | None = None,
        cache: RunCache | None = None,
    ) -> None:
        self.previous = previous or {}
        self.sources = sources or LedgerSources()
        self.cache = cache if cache is not None else RunCache()
        self.entries: Appendix = {}

    def _ledger_for(self, key: str, package: str) -> Ledger:
        memo = self.cache.ledgers.get(key)
        if memo is not None:
            return memo
        prior = self.previous.get(key)
        if prior is not None and prior.ledger is not None:
            ledger = prior.ledger
            if not ledger.added_date:
                ledger = replace(
                    ledger, added_date=format_timestamp(self.sources.now())
                )
        else:
            ledger = self.sources.build_ledger(package)
            _log(f"New ledger for {key}")
        self.cache.ledgers[key] = ledger
        return ledger

    def _record(self, key: str, package: str, consumer: str, descriptor: str) -> None:
        entry = self.entries.get(key)
        if entry is None:
            prior = self.previous.get(key)
            entry = AppendixEntry(
                ledger=self._ledger_for(key, package),
                extra=dict(prior.extra) if prior is not None else {},
            )
            self.entries[key] = entry
        entry.dependents[consumer] = prefer_descriptor(
            entry.dependents.get(consumer), descriptor
        )

    def add_nested(
        self,
        consumer: str,
        dependencies: Mapping[str, str],
        parent: str,
        children: Mapping[str, str],
    ) -> None:
        if not nested_applies(parent, children, dependencies):
            _log(f"{consumer}: skipping nested override for {parent}, not a dependency")
            return
        descriptor = describe_nested(parent, dependencies[parent])
        for child, child_version in children.items():
            key = appendix_key(child, str(child_version))
            self._record(key, child, consumer, descriptor)

    def add_simple(
        self,
        consumer: str,
        dependencies: Mapping[str, str],
        name: str,
        version: str,
        *,
        only_used: bool = False,
    ) -> None:
        used = name in dependencies
        if only_used and not used:
            return
        key = appendix_key(name, version)
        if used:
            descriptor = describe_direct(name, dependencies[name])
        else:
            descriptor = describe_transitive(name)
        self._record(key, name, consumer, descriptor)

    def add_manifest(
        self,
        consumer: str,
        dependencies: Mapping[str, str],
        overrides: Mapping[str, OverrideValue],
        *,
        only_used: bool = False,
    ) -> "AppendixBuilder":
        for name, value in overrides.items():
            if is_nested(value):
                self.add_nested(
                    consumer, dependencies, name, value  # type: ignore[arg-type]
                )
            else:
                self.add_simple(
                    consumer, dependencies, name, str(value), only_used=only_used
                )
        return self

    def merge(self, appendix: Appendix) -> "AppendixBuilder":
        self.entries = merge_appendix(self.entries, appendix)
        return self

    def build(self) -> Appendix:
        return prune_empty_entries(self.entries)


def merge_appendix(target: Appendix, source: Appendix) -> Appendix:
    """Union two appendices; the target keeps its ledger when both have one."""
    merged: Appendix = dict(target)
    for key, incoming in source.items():
        existing = merged.get(key)
        if existing is None:
            merged[key] = AppendixEntry(
                dependents=dict(incoming.dependents),
                ledger=incoming.ledger,
                patches=list(incoming.patches),
                extra=dict(incoming.extra),
            )
            continue
        merged[key] = AppendixEntry(
            dependents=merge_dependents(existing.dependents, incoming.dependents),
            ledger=existing.ledger if existing.ledger is not None else incoming.ledger,
            patches=sorted(set(existing.patches) | set(incoming.patches)),
            extra={**incoming.extra, **existing.extra},
        )
    return {key: merged[key] for key in sorted(merged)}


def update_appendix(
    overrides: Mapping[str, OverrideValue],
    dependencies: Mapping[str, str],
    consumer: str,
    *,
    previous: Appendix | None = None,
    sources: LedgerSources | None = None,
    cache: RunCache | None = None,
    only_used: bool = False,
) -> Appendix:
    builder = AppendixBuilder(previous=previous, sources=sources, cache=cache)
    builder.add_manifest(consumer, dependencies, overrides, only_used=only_used)
    return builder.build()
