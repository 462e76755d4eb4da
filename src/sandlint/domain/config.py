"""Engine configuration. Immutable value objects created by Infrastructure."""

from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from sandlint.domain.entities import Severity
from sandlint.domain.errors import ConfigurationError
from sandlint.domain.json_value import JsonValue, JsonValues

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_MEMORY_LIMIT_BYTES = 64 * 1024 * 1024
DEFAULT_EPOCH_TICK_MS = 10

_KNOWN_KEYS = frozenset(
    {
        "workers",
        "max_instances_per_rule",
        "default_timeout_ms",
        "memory_limit_bytes",
        "epoch_tick_ms",
        "plugins",
        "rules",
        "apply_fixes",
    }
)


@dataclass(frozen=True)
class RuleSettings:
    """
    User settings for one rule.

    Accepts the three forms a config file may use for a rule entry: a boolean,
    a severity string ("off" disables), or an options object.
    """

    enabled: bool = True
    severity: Severity | None = None
    options: JsonValue = None

    @classmethod
    def from_value(cls, name: str, value: object) -> RuleSettings:
        if isinstance(value, bool):
            return cls(enabled=value)
        if isinstance(value, str):
            if value == "off":
                return cls(enabled=False)
            return cls(severity=RuleSettings.parse_severity(name, value))
        if isinstance(value, dict):
            if not JsonValues.is_json_value(value):
                raise ConfigurationError(f"rules.{name}: options must be plain JSON values")
            options = dict(value)
            severity = None
            raw_severity = options.pop("severity", None)
            if raw_severity == "off":
                return cls(enabled=False, options=options)
            if raw_severity is not None:
                if not isinstance(raw_severity, str):
                    raise ConfigurationError(f"rules.{name}.severity: expected string")
                severity = RuleSettings.parse_severity(name, raw_severity)
            return cls(enabled=True, severity=severity, options=options)
        raise ConfigurationError(
            f"rules.{name}: expected boolean, severity string or options table"
        )

    @staticmethod
    def parse_severity(name: str, value: str) -> Severity:
        try:
            return Severity(value)
        except ValueError:
            allowed = ", ".join(["off"] + [s.value for s in Severity])
            raise ConfigurationError(
                f"rules.{name}: unknown severity {value!r} (expected one of {allowed})"
            ) from None

    def to_dict(self) -> dict[str, JsonValue]:
        return {
            "enabled": self.enabled,
            "severity": self.severity.value if self.severity else None,
            "options": self.options,
        }


@dataclass(frozen=True)
class EngineConfig:
    """Resolved engine settings for one run."""

    workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    max_instances_per_rule: int | None = None
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    memory_limit_bytes: int = DEFAULT_MEMORY_LIMIT_BYTES
    epoch_tick_ms: int = DEFAULT_EPOCH_TICK_MS
    plugins: tuple[str, ...] = ()
    rules: Mapping[str, RuleSettings] = field(default_factory=dict)
    apply_fixes: bool = False

    def __post_init__(self) -> None:
        for name in ("workers", "default_timeout_ms", "memory_limit_bytes", "epoch_tick_ms"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.max_instances_per_rule is not None and self.max_instances_per_rule <= 0:
            raise ConfigurationError("max_instances_per_rule must be positive")

    @property
    def instances_per_rule(self) -> int:
        """Per-rule concurrency bound; defaults to the worker count."""
        return self.max_instances_per_rule or self.workers

    @property
    def default_timeout(self) -> float:
        return self.default_timeout_ms / 1000.0

    def settings_for(self, rule_name: str) -> RuleSettings:
        return self.rules.get(rule_name, RuleSettings())

    def enabled_rules(self) -> list[str]:
        return sorted(name for name, settings in self.rules.items() if settings.enabled)

    def fingerprint(self) -> str:
        """Stable hash of the configuration for cache invalidation."""
        payload = {
            "workers": self.workers,
            "max_instances_per_rule": self.max_instances_per_rule,
            "default_timeout_ms": self.default_timeout_ms,
            "memory_limit_bytes": self.memory_limit_bytes,
            "plugins": list(self.plugins),
            "rules": {name: s.to_dict() for name, s in sorted(self.rules.items())},
        }
        return hashlib.sha256(JsonValues.canonical(payload)).hexdigest()


class ConfigurationLoader:
    """
    Builds an ``EngineConfig`` from a raw ``[tool.sandlint]`` style mapping.

    Domain does not read the filesystem; Infrastructure loads the mapping
    (``ConfigFileLoader``) and constructs this object at the composition root.
    """

    def __init__(self, config_dict: Mapping[str, object] | None = None) -> None:
        self._config: dict[str, object] = dict(config_dict or {})
        self.validate_config(self._config)
        self._engine_config = self._build(self._config)

    @property
    def config(self) -> dict[str, object]:
        return self._config

    @property
    def engine_config(self) -> EngineConfig:
        return self._engine_config

    def validate_config(self, config: Mapping[str, object]) -> None:
        """Warn about keys this version does not understand."""
        unknown = sorted(set(config) - _KNOWN_KEYS)
        if unknown:
            logging.getLogger(__name__).warning(
                "Configuration Warning: ignoring unknown keys: %s", ", ".join(unknown)
            )

    def with_overrides(self, **overrides: object) -> ConfigurationLoader:
        """Return a new loader with CLI-level overrides applied (None = keep)."""
        merged = dict(self._config)
        merged.update({k: v for k, v in overrides.items() if v is not None})
        return ConfigurationLoader(merged)

    @staticmethod
    def _positive_int(config: Mapping[str, object], key: str, default: int | None) -> int | None:
        raw = config.get(key)
        if raw is None:
            return default
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ConfigurationError(f"{key}: expected integer, got {type(raw).__name__}")
        if raw <= 0:
            raise ConfigurationError(f"{key}: must be positive")
        return raw

    @classmethod
    def _build(cls, config: Mapping[str, object]) -> EngineConfig:
        raw_plugins = config.get("plugins", [])
        if not isinstance(raw_plugins, list) or not all(isinstance(p, str) for p in raw_plugins):
            raise ConfigurationError("plugins: expected a list of module paths")

        raw_rules = config.get("rules", {})
        if not isinstance(raw_rules, dict):
            raise ConfigurationError("rules: expected a table of rule settings")
        rules = {
            str(name): RuleSettings.from_value(str(name), value)
            for name, value in raw_rules.items()
        }

        apply_fixes = config.get("apply_fixes", False)
        if not isinstance(apply_fixes, bool):
            raise ConfigurationError("apply_fixes: expected boolean")

        workers = cls._positive_int(config, "workers", os.cpu_count() or 1)
        return EngineConfig(
            workers=workers or 1,
            max_instances_per_rule=cls._positive_int(config, "max_instances_per_rule", None),
            default_timeout_ms=cls._positive_int(config, "default_timeout_ms", DEFAULT_TIMEOUT_MS)
            or DEFAULT_TIMEOUT_MS,
            memory_limit_bytes=cls._positive_int(
                config, "memory_limit_bytes", DEFAULT_MEMORY_LIMIT_BYTES
            )
            or DEFAULT_MEMORY_LIMIT_BYTES,
            epoch_tick_ms=cls._positive_int(config, "epoch_tick_ms", DEFAULT_EPOCH_TICK_MS)
            or DEFAULT_EPOCH_TICK_MS,
            plugins=tuple(raw_plugins),
            rules=rules,
            apply_fixes=apply_fixes,
        )
