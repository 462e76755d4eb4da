"""Per-run snapshot of loaded rule modules."""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field

import jsonschema

from sandlint.domain.config import RuleSettings
from sandlint.domain.entities import RuleManifest, Severity
from sandlint.domain.errors import ConfigurationError, ManifestError, RuleConfigError, UnknownRuleError
from sandlint.domain.json_value import JsonValue
from sandlint.domain.protocols import SandboxFactory


@dataclass(frozen=True)
class RuleModule:
    """A loaded rule: its manifest, how to instantiate it, and user settings."""

    manifest: RuleManifest
    factory: SandboxFactory = field(compare=False)
    settings: RuleSettings = field(default_factory=RuleSettings)

    @property
    def name(self) -> str:
        return self.manifest.name

    def validate_options(self) -> None:
        """Check the configured options against the manifest's JSON Schema.

        ``null`` options mean "rule defaults" and are not validated.
        """
        schema = self.manifest.schema
        if not schema or self.settings.options is None:
            return
        try:
            jsonschema.validate(self.settings.options, schema)
        except jsonschema.SchemaError as exc:
            raise ManifestError(f"rule {self.name!r}: invalid config schema: {exc.message}") from exc
        except jsonschema.ValidationError as exc:
            location = "/".join(str(p) for p in exc.absolute_path) or "<root>"
            raise RuleConfigError(
                f"rule {self.name!r}: invalid options at {location}: {exc.message}"
            ) from exc


@dataclass(frozen=True)
class RuleSet:
    """
    Ordered, immutable set of rule modules for one run.

    Passed explicitly into the dispatcher and coordinator; there is no global
    registry. Order is load order and determines per-node dispatch order.
    """

    modules: tuple[RuleModule, ...] = ()

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for module in self.modules:
            if module.name in seen:
                raise ConfigurationError(f"duplicate rule name {module.name!r}")
            seen.add(module.name)

    def __iter__(self) -> Iterator[RuleModule]:
        return iter(self.modules)

    def __len__(self) -> int:
        return len(self.modules)

    def __contains__(self, rule_id: str) -> bool:
        return any(m.name == rule_id for m in self.modules)

    def get(self, rule_id: str) -> RuleModule:
        for module in self.modules:
            if module.name == rule_id:
                return module
        raise UnknownRuleError(f"rule {rule_id!r} is not loaded")

    @property
    def manifests(self) -> tuple[RuleManifest, ...]:
        return tuple(m.manifest for m in self.modules)

    @property
    def factories(self) -> Mapping[str, SandboxFactory]:
        return {m.name: m.factory for m in self.modules}

    @property
    def rule_configs(self) -> Mapping[str, JsonValue]:
        return {m.name: m.settings.options for m in self.modules}

    @property
    def severity_overrides(self) -> Mapping[str, Severity]:
        return {m.name: m.settings.severity for m in self.modules if m.settings.severity is not None}

    def rule_versions(self) -> tuple[tuple[str, str], ...]:
        return tuple(sorted((m.name, m.manifest.version) for m in self.modules))

    def validate(self) -> None:
        for module in self.modules:
            module.validate_options()
