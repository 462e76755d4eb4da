"""Compile rule modules, read their manifests and build the per-run RuleSet."""

import logging
from collections.abc import Sequence

from sandlint.domain.config import EngineConfig
from sandlint.domain.errors import ManifestError, RuleModuleError, SandboxFault
from sandlint.domain.protocols import TelemetryPort
from sandlint.domain.rule_set import RuleModule, RuleSet
from sandlint.infrastructure.sandbox.wasmtime_sandbox import (
    WasmtimeRuntime,
    WasmtimeSandboxFactory,
)
from sandlint.infrastructure.wire.codec import WireCodec

logger = logging.getLogger(__name__)


class RuleModuleLoader:
    """
    Loads ``.wasm`` rule modules into a ``RuleSet``.

    Each module is compiled once. The first instance answers ``get_manifest``
    and is then handed to the rule's factory so the first lint call reuses it.
    """

    def __init__(
        self,
        runtime: WasmtimeRuntime,
        codec: WireCodec,
        telemetry: TelemetryPort,
    ) -> None:
        self._runtime = runtime
        self._codec = codec
        self._telemetry = telemetry

    def load(self, paths: Sequence[str], config: EngineConfig) -> RuleSet:
        modules: list[RuleModule] = []
        for path in paths:
            module = self._load_one(path, config)
            if module is not None:
                modules.append(module)
        rule_set = RuleSet(tuple(modules))
        loaded = {m.name for m in rule_set}
        for name in config.enabled_rules():
            if name not in loaded:
                self._telemetry.warning(f"Configured rule '{name}' is not provided by any module")
        rule_set.validate()
        self._telemetry.step(f"Loaded {len(rule_set)} rule module(s)")
        return rule_set

    def _load_one(self, path: str, config: EngineConfig) -> RuleModule | None:
        compiled = self._runtime.compile_file(path)
        factory = WasmtimeSandboxFactory(self._runtime, compiled, config.memory_limit_bytes)
        try:
            first = factory.create()
        except SandboxFault as exc:
            raise RuleModuleError(f"{path}: {exc}") from exc
        try:
            manifest = self._codec.manifest(first, config.default_timeout)
        except SandboxFault as exc:
            first.close()
            raise RuleModuleError(f"{path}: get_manifest failed ({exc.kind}): {exc}") from exc
        except ManifestError as exc:
            first.close()
            raise ManifestError(f"{path}: {exc}") from exc

        settings = config.settings_for(manifest.name)
        if not settings.enabled:
            first.close()
            self._telemetry.debug(f"Rule {manifest.name} disabled by configuration")
            return None
        factory.adopt(first)
        logger.debug("loaded rule %s %s from %s", manifest.name, manifest.version, path)
        return RuleModule(manifest=manifest, factory=factory, settings=settings)
