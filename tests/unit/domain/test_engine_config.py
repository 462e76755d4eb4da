import logging

import pytest

from sandlint.domain.config import (
    DEFAULT_MEMORY_LIMIT_BYTES,
    DEFAULT_TIMEOUT_MS,
    ConfigurationLoader,
    EngineConfig,
    RuleSettings,
)
from sandlint.domain.entities import Severity
from sandlint.domain.errors import ConfigurationError


class TestRuleSettings:
    def test_boolean_entries(self) -> None:
        assert RuleSettings.from_value("r", True) == RuleSettings(enabled=True)
        assert RuleSettings.from_value("r", False) == RuleSettings(enabled=False)

    def test_off_disables(self) -> None:
        assert not RuleSettings.from_value("r", "off").enabled

    def test_severity_string_overrides(self) -> None:
        settings = RuleSettings.from_value("r", "warning")
        assert settings.enabled
        assert settings.severity is Severity.WARNING
        assert settings.options is None

    def test_options_object_strips_severity(self) -> None:
        settings = RuleSettings.from_value("r", {"max": 80, "severity": "info"})
        assert settings.options == {"max": 80}
        assert settings.severity is Severity.INFO

    def test_unknown_severity_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown severity 'fatal'"):
            RuleSettings.from_value("r", "fatal")

    def test_non_json_options_are_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="plain JSON"):
            RuleSettings.from_value("r", {"ratio": float("nan")})

    def test_other_types_are_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="rules.r"):
            RuleSettings.from_value("r", 3)


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig(workers=3)
        assert config.default_timeout_ms == DEFAULT_TIMEOUT_MS
        assert config.memory_limit_bytes == DEFAULT_MEMORY_LIMIT_BYTES
        assert config.instances_per_rule == 3
        assert config.default_timeout == 5.0

    def test_rejects_non_positive_values(self) -> None:
        with pytest.raises(ConfigurationError, match="workers"):
            EngineConfig(workers=0)

    def test_unconfigured_rule_is_enabled_with_defaults(self) -> None:
        assert EngineConfig().settings_for("anything") == RuleSettings()

    def test_fingerprint_is_stable_and_sensitive(self) -> None:
        a = EngineConfig(workers=2, rules={"r": RuleSettings(options={"x": 1})})
        b = EngineConfig(workers=2, rules={"r": RuleSettings(options={"x": 1})})
        c = EngineConfig(workers=2, rules={"r": RuleSettings(options={"x": 2})})
        assert a.fingerprint() == b.fingerprint()
        assert a.fingerprint() != c.fingerprint()
        assert len(a.fingerprint()) == 64


class TestConfigurationLoader:
    def test_builds_engine_config(self) -> None:
        loader = ConfigurationLoader(
            {
                "workers": 2,
                "max_instances_per_rule": 1,
                "default_timeout_ms": 250,
                "plugins": ["rules/a.wasm"],
                "rules": {"a": "warning", "b": False},
            }
        )
        config = loader.engine_config
        assert config.workers == 2
        assert config.instances_per_rule == 1
        assert config.default_timeout == 0.25
        assert config.plugins == ("rules/a.wasm",)
        assert config.enabled_rules() == ["a"]

    def test_unknown_keys_warn(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            ConfigurationLoader({"wrokers": 2})
        assert "wrokers" in caplog.text

    @pytest.mark.parametrize(
        "config, message",
        [
            ({"workers": "4"}, "workers: expected integer"),
            ({"workers": True}, "workers: expected integer"),
            ({"default_timeout_ms": -5}, "default_timeout_ms: must be positive"),
            ({"plugins": "a.wasm"}, "plugins"),
            ({"rules": ["a"]}, "rules"),
            ({"apply_fixes": "yes"}, "apply_fixes"),
        ],
    )
    def test_invalid_values_raise(self, config: dict[str, object], message: str) -> None:
        with pytest.raises(ConfigurationError, match=message):
            ConfigurationLoader(config)

    def test_with_overrides_ignores_none(self) -> None:
        loader = ConfigurationLoader({"workers": 2, "default_timeout_ms": 100})
        overridden = loader.with_overrides(workers=None, default_timeout_ms=900, apply_fixes=True)
        assert overridden.engine_config.workers == 2
        assert overridden.engine_config.default_timeout_ms == 900
        assert overridden.engine_config.apply_fixes
        assert loader.engine_config.default_timeout_ms == 100
