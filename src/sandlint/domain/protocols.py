from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from sandlint.domain.config import EngineConfig
    from sandlint.domain.rule_set import RuleSet


class SandboxInstance(Protocol):
    """
    One isolated, runnable copy of a rule module.

    Only byte buffers cross this interface. How memory is copied in and out
    is the implementation's business.
    """

    def invoke(self, export_name: str, payload: bytes, timeout: float) -> bytes:
        """
        Call an export with an input buffer and return its output buffer.

        Raises a ``SandboxFault`` subtype on trap, timeout or memory limit;
        the instance must then be discarded.
        """
        ...

    def interrupt(self) -> None:
        """Force an in-flight ``invoke`` on this instance to stop (thread-safe)."""
        ...

    def close(self) -> None:
        """Release the instance's memory. Idempotent."""
        ...


class SandboxFactory(Protocol):
    """Creates interchangeable instances of one compiled rule module."""

    def create(self) -> SandboxInstance:
        """Instantiate a fresh sandbox. Raises ``InstantiationError``."""
        ...


class RuleModuleLoaderProtocol(Protocol):
    """Loads rule modules from disk into a per-run ``RuleSet`` snapshot."""

    def load(self, paths: Sequence[str], config: "EngineConfig") -> "RuleSet":
        """Compile every module and validate its manifest. Raises ``ConfigurationError``."""
        ...


class TelemetryPort(Protocol):
    """Protocol for telemetry/UI updates."""

    def step(self, message: str) -> None: ...
    def error(self, message: str) -> None: ...
    def warning(self, message: str) -> None: ...
    def debug(self, message: str) -> None: ...
    def handshake(self) -> None: ...
