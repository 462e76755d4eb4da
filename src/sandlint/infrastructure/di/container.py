from typing import TYPE_CHECKING, Any, cast

from sandlint.domain.config import ConfigurationLoader
from sandlint.infrastructure.config_file_loader import ConfigFileLoader
from sandlint.infrastructure.rule_loader import RuleModuleLoader
from sandlint.infrastructure.sandbox.wasmtime_sandbox import WasmtimeRuntime
from sandlint.infrastructure.wire.codec import WireCodec
from sandlint.interface.telemetry import ProjectTelemetry

if TYPE_CHECKING:
    from sandlint.domain.protocols import RuleModuleLoaderProtocol, TelemetryPort


class SandlintContainer:
    """Dependency Injection Container for the rule engine."""

    def __init__(self, config_loader: ConfigurationLoader | None = None) -> None:
        self._singletons: dict[str, Any] = {}
        self._register_defaults(config_loader)

    def _register_defaults(self, config_loader: ConfigurationLoader | None) -> None:
        """Register default implementations for protocols."""
        if config_loader is None:
            config_loader = ConfigurationLoader(ConfigFileLoader.load_config_from_fs())
        self.register_singleton("ConfigurationLoader", config_loader)

        telemetry = ProjectTelemetry("SANDLINT", "cyan", "Sandboxed rule engine online")
        self.register_singleton("TelemetryPort", telemetry)
        self.register_singleton("WireCodec", WireCodec())
        # The runtime starts its epoch ticker thread, so it is created on first use.

    def register_singleton(self, key: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[key] = instance

    def get(self, key: str) -> Any:
        """Retrieve a dependency by key. Prefer explicit get_* methods for type safety."""
        if key in self._singletons:
            return self._singletons[key]
        raise ValueError(f"Dependency '{key}' not registered.")

    def get_config_loader(self) -> ConfigurationLoader:
        return cast(ConfigurationLoader, self.get("ConfigurationLoader"))

    def get_telemetry_port(self) -> "TelemetryPort":
        """Return the telemetry/UI port."""
        return cast("TelemetryPort", self.get("TelemetryPort"))

    def get_codec(self) -> WireCodec:
        return cast(WireCodec, self.get("WireCodec"))

    def get_runtime(self, epoch_tick_ms: int | None = None) -> WasmtimeRuntime:
        """
        Return the wasmtime runtime for one epoch tick, creating it on first use.

        The tick defaults to the discovered configuration's; a run resolved
        from an explicit config file asks for its own.
        """
        tick = self._tick(epoch_tick_ms)
        key = f"WasmtimeRuntime:{tick}"
        if key not in self._singletons:
            self.register_singleton(key, WasmtimeRuntime(epoch_tick_ms=tick))
        return cast(WasmtimeRuntime, self.get(key))

    def get_rule_loader(self, epoch_tick_ms: int | None = None) -> "RuleModuleLoaderProtocol":
        tick = self._tick(epoch_tick_ms)
        key = f"RuleModuleLoader:{tick}"
        if key not in self._singletons:
            self.register_singleton(
                key, RuleModuleLoader(self.get_runtime(tick), self.get_codec(), self.get_telemetry_port())
            )
        return cast("RuleModuleLoaderProtocol", self.get(key))

    def _tick(self, epoch_tick_ms: int | None) -> int:
        return epoch_tick_ms or self.get_config_loader().engine_config.epoch_tick_ms

    def close(self) -> None:
        """Stop background threads owned by registered services."""
        for service in list(self._singletons.values()):
            if isinstance(service, WasmtimeRuntime):
                service.close()

    def reset(self) -> None:
        """Drop every registration (for tests)."""
        self.close()
        self._singletons.clear()
