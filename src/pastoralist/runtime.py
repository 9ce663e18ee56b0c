from __future__ import annotations

from contextvars import ContextVar, Token
import os
import sys

_VERBOSE_LOGGING: ContextVar[bool | None] = ContextVar(
    "pastoralist_verbose_logging", default=None
)

_DEFAULT_TREE_TIMEOUT = 60
_MAX_TREE_TIMEOUT = 600
_LEVELS = ("debug", "info", "warning", "error")
_DOTENV_LOADED = False


def load_dotenv_once() -> None:
    global _DOTENV_LOADED
    if _DOTENV_LOADED:
        return
    _DOTENV_LOADED = True
    try:
        from dotenv import find_dotenv, load_dotenv

        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)
    except Exception:
        pass


def _read_positive_int_env(name: str, default: int, maximum: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    return min(value, maximum)


def _env_flag(name: str) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    return raw in {"1", "true", "yes"}


def get_verbose_logging() -> bool:
    value = _VERBOSE_LOGGING.get()
    if value is None:
        return _env_flag("PASTORALIST_DEBUG")
    return value


def set_verbose_logging(enabled: bool) -> Token[bool | None]:
    return _VERBOSE_LOGGING.set(bool(enabled))


def reset_verbose_logging(token: Token[bool | None]) -> None:
    _VERBOSE_LOGGING.reset(token)


def get_tree_timeout() -> int:
    return _read_positive_int_env(
        "PASTORALIST_TREE_TIMEOUT", _DEFAULT_TREE_TIMEOUT, _MAX_TREE_TIMEOUT
    )


def emit(component: str, message: str, *, level: str = "debug") -> None:
    """Write a tagged message to stderr; debug output needs verbose logging."""
    if level not in _LEVELS:
        level = "info"
    if level == "debug" and not get_verbose_logging():
        return
    prefix = f"[{component}]"
    if level in {"warning", "error"}:
        prefix = f"{prefix} {level}:"
    print(f"{prefix} {message}", file=sys.stderr, flush=True)
