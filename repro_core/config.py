"""Loading and validation of the trust policy configuration.

The configuration is read once per process from ``config.toml`` and turned into an
immutable :class:`TrustConfig`. Every fault is reported eagerly as
:class:`~repro_core.errors.ConfigError` so a broken policy never degrades into
"allow everything" or "deny everything" at acquisition time.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit

from .errors import AttestationError, ConfigError
from .rebuilder.attestation import load_signing_keys
from .trust.policy import DEFAULT_STRATEGY, STRATEGIES
from .types import BlindTrustEntry, RebuilderConfig, ThresholdPolicy

CONFIG_FILENAME = "config.toml"
APP_DIRNAME = "repro-threshold"
CACHE_BACKENDS = ("file", "memory", "off")


@dataclass(frozen=True)
class TransportOverrides:
    """Command-line replacements for parts of the configured policy."""

    rebuilders: tuple[str, ...] = ()
    required_confirms: int | None = None
    blindly_allow: tuple[str, ...] = ()


@dataclass(frozen=True)
class TrustConfig:
    rebuilders: tuple[RebuilderConfig, ...]
    threshold: ThresholdPolicy
    blind_trust: tuple[BlindTrustEntry, ...] = ()
    aggregation: str = DEFAULT_STRATEGY
    early_exit: bool = True
    query_timeout_seconds: float = 10.0
    max_retries: int = 1
    backoff_seconds: float = 0.2
    cache_backend: str = "file"
    cache_ttl_seconds: float = 3600.0
    cache_inconclusive: bool = False
    cache_dir: Path = field(default_factory=lambda: default_cache_dir())
    max_parallel_downloads: int = 4

    @property
    def groups(self) -> frozenset[str]:
        found: set[str] = set()
        for rebuilder in self.rebuilders:
            found.update(rebuilder.groups)
        return frozenset(found)


def data_dir() -> Path:
    explicit = os.getenv("REPRO_THRESHOLD_HOME", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    base = os.getenv("XDG_DATA_HOME", "").strip()
    root = Path(base).expanduser() if base else Path.home() / ".local" / "share"
    return root / APP_DIRNAME


def default_cache_dir() -> Path:
    base = os.getenv("XDG_CACHE_HOME", "").strip()
    root = Path(base).expanduser() if base else Path.home() / ".cache"
    return root / APP_DIRNAME / "verdicts"


def config_path() -> Path:
    explicit = os.getenv("REPRO_THRESHOLD_CONFIG", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    return data_dir() / CONFIG_FILENAME


def load_config(
    path: Path | None = None,
    *,
    overrides: TransportOverrides | None = None,
) -> TrustConfig:
    target = path or config_path()
    try:
        text = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        payload: dict[str, Any] = {}
    except OSError as exc:
        raise ConfigError(f"failed to read config file {target}: {exc}") from exc
    else:
        try:
            payload = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"failed to parse config file {target}: {exc}") from exc
    return parse_config(payload, overrides=overrides)


def parse_config(
    payload: Mapping[str, Any],
    *,
    overrides: TransportOverrides | None = None,
) -> TrustConfig:
    rules = payload.get("rules") or {}
    if not isinstance(rules, Mapping):
        raise ConfigError("[rules] must be a table")

    raw_rebuilders = payload.get("trusted_rebuilder") or []
    if not isinstance(raw_rebuilders, list):
        raise ConfigError("[[trusted_rebuilder]] must be an array of tables")
    rebuilders = tuple(_parse_rebuilder(item, index) for index, item in enumerate(raw_rebuilders))

    blind_raw = rules.get("blindly_trust") or []
    if not isinstance(blind_raw, list):
        raise ConfigError("rules.blindly_trust must be a list of patterns")
    patterns: list[Any] = list(blind_raw)

    threshold_raw = rules.get("required_threshold", 1)
    cache_dir_raw = rules.get("cache_dir")

    if overrides is not None:
        if overrides.rebuilders:
            rebuilders = tuple(_rebuilder_from_url(url) for url in overrides.rebuilders)
        if overrides.required_confirms is not None:
            threshold_raw = overrides.required_confirms
        patterns.extend(overrides.blindly_allow)

    config = TrustConfig(
        rebuilders=rebuilders,
        threshold=ThresholdPolicy(minimum=_as_int(threshold_raw, "rules.required_threshold")),
        blind_trust=tuple(_parse_pattern(item) for item in patterns),
        aggregation=str(rules.get("aggregation", DEFAULT_STRATEGY)).strip().lower(),
        early_exit=_as_bool(rules.get("early_exit", True), "rules.early_exit"),
        query_timeout_seconds=_as_float(rules.get("query_timeout_seconds", 10.0), "rules.query_timeout_seconds"),
        max_retries=_as_int(rules.get("max_retries", 1), "rules.max_retries"),
        backoff_seconds=_as_float(rules.get("backoff_seconds", 0.2), "rules.backoff_seconds"),
        cache_backend=str(rules.get("cache", "file")).strip().lower(),
        cache_ttl_seconds=_as_float(rules.get("cache_ttl_seconds", 3600.0), "rules.cache_ttl_seconds"),
        cache_inconclusive=_as_bool(rules.get("cache_inconclusive", False), "rules.cache_inconclusive"),
        max_parallel_downloads=_as_int(rules.get("max_parallel_downloads", 4), "rules.max_parallel_downloads"),
    )
    if cache_dir_raw:
        config = replace(config, cache_dir=Path(str(cache_dir_raw)).expanduser())
    validate_config(config)
    return config


def validate_config(config: TrustConfig) -> None:
    seen: set[str] = set()
    for rebuilder in config.rebuilders:
        if rebuilder.id in seen:
            raise ConfigError(f"duplicate rebuilder id: {rebuilder.id!r}")
        seen.add(rebuilder.id)

    minimum = config.threshold.minimum
    if minimum < 1:
        raise ConfigError("rules.required_threshold must be at least 1")
    available = len(config.groups)
    if minimum > available:
        raise ConfigError(
            f"required_threshold={minimum} can never be met: only {available} distinct "
            "trust group(s) across the configured rebuilders"
        )

    if config.aggregation not in STRATEGIES:
        known = ", ".join(sorted(STRATEGIES))
        raise ConfigError(f"unknown aggregation strategy {config.aggregation!r} (known: {known})")
    if config.cache_backend not in CACHE_BACKENDS:
        raise ConfigError(f"rules.cache must be one of: {', '.join(CACHE_BACKENDS)}")
    if config.query_timeout_seconds <= 0:
        raise ConfigError("rules.query_timeout_seconds must be positive")
    if config.cache_ttl_seconds <= 0:
        raise ConfigError("rules.cache_ttl_seconds must be positive")
    if config.max_retries < 0 or config.max_retries > 1:
        raise ConfigError("rules.max_retries must be 0 or 1")
    if config.backoff_seconds < 0:
        raise ConfigError("rules.backoff_seconds must not be negative")
    if config.max_parallel_downloads < 1:
        raise ConfigError("rules.max_parallel_downloads must be at least 1")


def _parse_rebuilder(item: Any, index: int) -> RebuilderConfig:
    if not isinstance(item, Mapping):
        raise ConfigError(f"trusted_rebuilder[{index}] must be a table")
    url = str(item.get("url") or "").strip()
    host = _validate_url(url, f"trusted_rebuilder[{index}].url")
    rebuilder_id = str(item.get("name") or item.get("id") or host).strip()
    if not rebuilder_id:
        raise ConfigError(f"trusted_rebuilder[{index}] has an empty name")

    groups_raw = item.get("groups")
    if groups_raw is None:
        groups = frozenset({host})
    else:
        if not isinstance(groups_raw, list) or not groups_raw:
            raise ConfigError(f"trusted_rebuilder[{index}].groups must be a non-empty list")
        cleaned = [str(group).strip() for group in groups_raw]
        if any(not group for group in cleaned):
            raise ConfigError(f"trusted_rebuilder[{index}].groups contains an empty label")
        groups = frozenset(cleaned)

    keyring = item.get("signing_keyring")
    signing_keys: tuple[bytes, ...] = ()
    if keyring:
        try:
            signing_keys = load_signing_keys(str(keyring))
        except AttestationError as exc:
            raise ConfigError(f"trusted_rebuilder[{index}].signing_keyring: {exc}") from exc

    return RebuilderConfig(id=rebuilder_id, endpoint=url, groups=groups, signing_keys=signing_keys)


def _rebuilder_from_url(url: str) -> RebuilderConfig:
    host = _validate_url(url.strip(), "--rebuilder")
    return RebuilderConfig(id=host, endpoint=url.strip(), groups=frozenset({host}))


def _validate_url(url: str, label: str) -> str:
    parsed = urlsplit(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ConfigError(f"{label} must be an absolute http(s) url, got {url!r}")
    return parsed.hostname.lower()


def _parse_pattern(raw: Any) -> BlindTrustEntry:
    if not isinstance(raw, str):
        raise ConfigError(f"malformed blind-trust pattern: {raw!r}")
    try:
        return BlindTrustEntry.parse(raw)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigError(f"{label} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be an integer") from exc


def _as_float(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a number") from exc


def _as_bool(value: Any, label: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"{label} must be a boolean")
