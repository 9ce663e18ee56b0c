from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .appendix import merge_appendix
from .runtime import emit
from .types import appendix_from_dict, appendix_to_dict

CONFIG_FILES = (
    ".pastoralistrc",
    ".pastoralistrc.json",
    "pastoralist.json",
    ".pastoralistrc.yaml",
    ".pastoralistrc.yml",
    "pastoralist.yaml",
)
SECURITY_PROVIDERS = {"osv"}
SEVERITY_THRESHOLDS = {"low", "medium", "high", "critical"}

_KNOWN_KEYS = {
    "appendix",
    "depPaths",
    "checkSecurity",
    "overridePaths",
    "resolutionPaths",
    "security",
    "compactAppendix",
}


def _log(message: str, *, level: str = "debug") -> None:
    emit("config", message, level=level)


@dataclass
class SecuritySettings:
    enabled: bool = False
    provider: str | list[str] | None = None
    exclude_packages: list[str] = field(default_factory=list)
    severity_threshold: str | None = None
    auto_fix: bool = False

    @classmethod
    def from_dict(
        cls, data: Any, *, check_security: bool = False
    ) -> "SecuritySettings":
        if not isinstance(data, dict):
            return cls(enabled=check_security)
        exclude = data.get("excludePackages")
        return cls(
            enabled=bool(data.get("enabled", check_security)),
            provider=data.get("provider"),
            exclude_packages=(
                [str(p) for p in exclude] if isinstance(exclude, list) else []
            ),
            severity_threshold=data.get("severityThreshold"),
            auto_fix=data.get("autoFix") is True,
        )

    def provider_names(self) -> list[str]:
        if isinstance(self.provider, list):
            return [str(p) for p in self.provider]
        if self.provider:
            return [str(self.provider)]
        return ["osv"]


@dataclass
class PastoralistConfig:
    appendix: dict[str, Any] = field(default_factory=dict)
    dep_paths: str | list[str] | None = None
    override_paths: dict[str, Any] = field(default_factory=dict)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    compact_appendix: bool = False
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "PastoralistConfig":
        if not isinstance(data, dict):
            return cls()
        appendix = data.get("appendix")
        override_paths = data.get("overridePaths") or data.get("resolutionPaths")
        return cls(
            appendix=appendix if isinstance(appendix, dict) else {},
            dep_paths=data.get("depPaths"),
            override_paths=override_paths if isinstance(override_paths, dict) else {},
            security=SecuritySettings.from_dict(
                data.get("security"),
                check_security=bool(data.get("checkSecurity", False)),
            ),
            compact_appendix=data.get("compactAppendix") is True,
            raw=dict(data),
        )


def validate_config(data: Any) -> list[str]:
    errors: list[str] = []
    if data is None:
        return errors
    if not isinstance(data, dict):
        errors.append("'pastoralist' must be a mapping")
        return errors

    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        errors.append(f"Unknown keys: {', '.join(unknown)}")

    dep_paths = data.get("depPaths")
    if dep_paths is not None:
        if isinstance(dep_paths, str):
            if dep_paths not in {"workspace", "workspaces"}:
                errors.append("'depPaths' must be 'workspace', 'workspaces' or a list")
        elif not isinstance(dep_paths, list) or not all(
            isinstance(p, str) for p in dep_paths
        ):
            errors.append("'depPaths' must be a list of strings")

    for key in ("appendix", "overridePaths", "resolutionPaths"):
        value = data.get(key)
        if value is not None and not isinstance(value, dict):
            errors.append(f"'{key}' must be a mapping")

    appendix = data.get("appendix")
    if isinstance(appendix, dict):
        for entry_key, entry in appendix.items():
            if not isinstance(entry, dict):
                errors.append(f"Appendix entry '{entry_key}' must be a mapping")
                continue
            ledger = entry.get("ledger")
            if ledger is not None and (
                not isinstance(ledger, dict)
                or not isinstance(ledger.get("addedDate"), str)
            ):
                errors.append(f"Appendix entry '{entry_key}' has an invalid ledger")

    if "compactAppendix" in data and not isinstance(data["compactAppendix"], bool):
        errors.append("'compactAppendix' must be a boolean")

    security = data.get("security")
    if security is not None:
        if not isinstance(security, dict):
            errors.append("'security' must be a mapping")
        else:
            provider = security.get("provider")
            providers = provider if isinstance(provider, list) else [provider]
            for name in providers:
                if name is not None and name not in SECURITY_PROVIDERS:
                    errors.append(f"Unknown security provider: {name}")
            threshold = security.get("severityThreshold")
            if threshold is not None and threshold not in SEVERITY_THRESHOLDS:
                errors.append(f"Invalid severityThreshold: {threshold}")
            if "autoFix" in security and not isinstance(security["autoFix"], bool):
                errors.append("'security.autoFix' must be a boolean")
    return errors


def load_external_config(root: str | Path = ".") -> dict[str, Any] | None:
    for filename in CONFIG_FILES:
        path = Path(root) / filename
        if not path.exists():
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            _log(f"Failed to load config from {filename}: {exc}", level="error")
            continue
        if data is None:
            continue
        if not isinstance(data, dict):
            _log(f"{filename} must contain a mapping", level="error")
            continue
        _log(f"Loaded configuration from {filename}")
        return data
    return None


def _merge_appendix(
    external: dict[str, Any] | None, local: dict[str, Any] | None
) -> dict[str, Any] | None:
    if not external:
        return local
    if not local:
        return external
    # local ledgers (full or compact) win; the rc file fills in the rest
    merged = merge_appendix(appendix_from_dict(local), appendix_from_dict(external))
    return appendix_to_dict(merged)


def merge_configs(
    external: dict[str, Any] | None, local: dict[str, Any] | None
) -> dict[str, Any] | None:
    """Layer the package.json block over an rc file; appendices are merged."""
    if not external:
        return local
    if not local:
        return external
    merged = {**external, **local}
    appendix = _merge_appendix(external.get("appendix"), local.get("appendix"))
    if appendix is not None:
        merged["appendix"] = appendix
    for key in ("overridePaths", "resolutionPaths", "security"):
        if isinstance(external.get(key), dict) or isinstance(local.get(key), dict):
            merged[key] = {**(external.get(key) or {}), **(local.get(key) or {})}
    return merged


def load_config(
    root: str | Path = ".", package_config: dict[str, Any] | None = None
) -> PastoralistConfig:
    merged = merge_configs(load_external_config(root), package_config)
    for error in validate_config(merged):
        _log(error, level="warning")
    return PastoralistConfig.from_dict(merged)
