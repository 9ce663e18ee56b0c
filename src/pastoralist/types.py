from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

OverrideValue = Union[str, dict[str, str]]

NPM = "npm"
YARN = "yarn"
PNPM = "pnpm"
DIALECT_LABELS = {
    YARN: "resolutions",
    NPM: "overrides",
    PNPM: "pnpm.overrides",
}

TRANSITIVE_SUFFIX = " (transitive dependency)"
NESTED_SUFFIX = " (nested override)"

SECURITY_LEDGER_KEYS = (
    "securityChecked",
    "securityCheckDate",
    "securityProvider",
    "cve",
    "severity",
    "url",
)
_LEDGER_KEYS = ("addedDate", "reason", *SECURITY_LEDGER_KEYS)
_ENTRY_KEYS = {"dependents", "ledger", "patches"}


def appendix_key(name: str, version: str) -> str:
    return f"{name}@{version}"


def split_appendix_key(key: str) -> tuple[str, str]:
    """Split ``name@version``; the name may itself start with ``@``."""
    at = key.rfind("@")
    if at <= 0:
        return key, ""
    return key[:at], key[at + 1 :]


@dataclass(frozen=True)
class OverrideSet:
    kind: str
    overrides: dict[str, OverrideValue] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return DIALECT_LABELS[self.kind]


@dataclass(frozen=True)
class SecurityFinding:
    package_name: str
    reason: str | None = None
    cve: str | None = None
    severity: str | None = None
    url: str | None = None
    fix_version: str | None = None


@dataclass
class Ledger:
    added_date: str
    reason: str | None = None
    security_checked: bool | None = None
    security_check_date: str | None = None
    security_provider: str | None = None
    cve: str | None = None
    severity: str | None = None
    url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "Ledger | None":
        if not isinstance(data, dict):
            return None
        return cls(
            added_date=str(data.get("addedDate") or ""),
            reason=data.get("reason"),
            security_checked=data.get("securityChecked"),
            security_check_date=data.get("securityCheckDate"),
            security_provider=data.get("securityProvider"),
            cve=data.get("cve"),
            severity=data.get("severity"),
            url=data.get("url"),
            extra={k: v for k, v in data.items() if k not in _LEDGER_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        values = {
            "addedDate": self.added_date or None,
            "reason": self.reason,
            "securityChecked": self.security_checked,
            "securityCheckDate": self.security_check_date,
            "securityProvider": self.security_provider,
            "cve": self.cve,
            "severity": self.severity,
            "url": self.url,
        }
        data = {k: v for k, v in values.items() if v is not None}
        data.update(self.extra)
        return data

    def has_security_info(self) -> bool:
        return bool(
            self.security_checked
            or self.security_provider
            or self.cve
            or self.severity
        )


@dataclass
class AppendixEntry:
    dependents: dict[str, str] = field(default_factory=dict)
    ledger: Ledger | None = None
    patches: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "AppendixEntry":
        if not isinstance(data, dict):
            return cls()
        dependents = data.get("dependents")
        if not isinstance(dependents, dict):
            dependents = {}
        ledger = Ledger.from_dict(data.get("ledger"))
        # compact entries only carry the date the override was first recorded
        if ledger is None and isinstance(data.get("addedDate"), str):
            ledger = Ledger(added_date=data["addedDate"])
        patches = data.get("patches")
        return cls(
            dependents={str(k): str(v) for k, v in dependents.items()},
            ledger=ledger,
            patches=[str(p) for p in patches] if isinstance(patches, list) else [],
            extra={
                k: v
                for k, v in data.items()
                if k not in _ENTRY_KEYS and k != "addedDate"
            },
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "dependents": {k: self.dependents[k] for k in sorted(self.dependents)}
        }
        if self.patches:
            data["patches"] = list(self.patches)
        if self.ledger is not None:
            data["ledger"] = self.ledger.to_dict()
        data.update(self.extra)
        return data

    def has_patches(self) -> bool:
        return bool(self.patches)


Appendix = dict[str, AppendixEntry]


def appendix_from_dict(data: Any) -> Appendix:
    if not isinstance(data, dict):
        return {}
    return {str(key): AppendixEntry.from_dict(value) for key, value in data.items()}


def appendix_to_dict(appendix: Appendix) -> dict[str, Any]:
    return {key: appendix[key].to_dict() for key in sorted(appendix)}
