"""
WebAssembly sandbox backed by wasmtime.

Isolation properties:
- no host imports except an empty WASI context (no preopened directories, no
  environment, no network) for modules that import ``wasi_*``;
- linear memory capped per store with ``Store.set_limits``;
- wall-clock budgets enforced with epoch interruption: one ticker thread per
  engine advances the epoch and each call sets its deadline in ticks.
"""

import logging
import math
import threading
from pathlib import Path

import wasmtime

from sandlint.domain.errors import (
    InstantiationError,
    MemoryLimitExceeded,
    RuleModuleError,
    SandboxFault,
    SandboxTimeout,
    SandboxTrap,
)
from sandlint.infrastructure.wire.guest_memory import GuestMemory

logger = logging.getLogger(__name__)

WASM_PAGE_SIZE = 65536
REQUIRED_EXPORTS = ("memory", "alloc", "get_manifest", "lint")
INSTANTIATE_TIMEOUT = 5.0


class EpochTicker:
    """Daemon thread advancing an engine's epoch at a fixed interval."""

    def __init__(self, engine: wasmtime.Engine, interval: float) -> None:
        self._engine = engine
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="sandlint-epoch", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._engine.increment_epoch()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=max(1.0, self._interval * 10))


class WasmtimeRuntime:
    """Owns the shared ``wasmtime.Engine`` and its epoch ticker."""

    def __init__(self, epoch_tick_ms: int = 10) -> None:
        config = wasmtime.Config()
        config.epoch_interruption = True
        self.engine = wasmtime.Engine(config)
        self.tick = epoch_tick_ms / 1000.0
        self._ticker = EpochTicker(self.engine, self.tick)
        self._ticker.start()
        self._advance_lock = threading.Lock()

    def __enter__(self) -> "WasmtimeRuntime":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def ticks_for(self, timeout: float) -> int:
        """Deadline in epoch ticks; one extra tick covers a partially elapsed one."""
        return max(1, math.ceil(timeout / self.tick)) + 1

    def advance(self, ticks: int) -> None:
        """Push the epoch forward so every deadline within ``ticks`` expires now."""
        with self._advance_lock:
            for _ in range(ticks):
                self.engine.increment_epoch()

    def compile(self, wasm: bytes | str, origin: str = "<memory>") -> wasmtime.Module:
        """Compile binary WebAssembly (or WAT text) once for reuse by many instances."""
        try:
            return wasmtime.Module(self.engine, wasm)
        except wasmtime.WasmtimeError as exc:
            raise RuleModuleError(f"{origin}: cannot compile rule module: {exc}") from exc

    def compile_file(self, path: str) -> wasmtime.Module:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise RuleModuleError(f"{path}: cannot read rule module: {exc}") from exc
        return self.compile(data, origin=path)

    def close(self) -> None:
        self._ticker.stop()


class _WasmtimeExports:
    """``GuestExports`` over one instance's memory/alloc/dealloc exports."""

    def __init__(self, sandbox: "WasmtimeSandbox") -> None:
        self._sandbox = sandbox

    def alloc(self, size: int) -> int:
        return self._sandbox.call_raw("alloc", size)

    def dealloc(self, pointer: int, size: int) -> None:
        self._sandbox.call_raw("dealloc", pointer, size)

    def has_dealloc(self) -> bool:
        return self._sandbox.has_export("dealloc")

    def read(self, pointer: int, length: int) -> bytes:
        return bytes(self._sandbox.memory.read(self._sandbox.store, pointer, pointer + length))

    def write(self, pointer: int, data: bytes) -> None:
        self._sandbox.memory.write(self._sandbox.store, data, pointer)

    def memory_size(self) -> int:
        return self._sandbox.memory.data_len(self._sandbox.store)


class WasmtimeSandbox:
    """One instance of a compiled rule module with its own store and memory."""

    def __init__(
        self,
        runtime: WasmtimeRuntime,
        module: wasmtime.Module,
        memory_limit_bytes: int,
    ) -> None:
        self._runtime = runtime
        self._memory_limit = memory_limit_bytes
        self._interrupted = False
        self._closed = False
        self._timeout = INSTANTIATE_TIMEOUT
        self._deadline_ticks = runtime.ticks_for(INSTANTIATE_TIMEOUT)
        self.store = wasmtime.Store(runtime.engine)
        self.store.set_limits(memory_size=memory_limit_bytes)
        self.store.set_epoch_deadline(self._deadline_ticks)
        linker = wasmtime.Linker(runtime.engine)
        if any(imp.module.startswith("wasi") for imp in module.imports):
            linker.define_wasi()
            self.store.set_wasi(wasmtime.WasiConfig())
        try:
            instance = linker.instantiate(self.store, module)
        except (wasmtime.WasmtimeError, wasmtime.Trap) as exc:
            raise InstantiationError(f"cannot instantiate rule module: {exc}") from exc
        exports = instance.exports(self.store)
        self._exports: dict[str, object] = {}
        for name in ("memory", "alloc", "dealloc", "get_manifest", "lint"):
            try:
                self._exports[name] = exports[name]
            except KeyError:
                continue
        missing = [name for name in REQUIRED_EXPORTS if name not in self._exports]
        if missing:
            raise InstantiationError(f"rule module is missing exports: {', '.join(missing)}")
        memory = self._exports["memory"]
        if not isinstance(memory, wasmtime.Memory):
            raise InstantiationError("export 'memory' is not a linear memory")
        self.memory = memory
        self._guest = GuestMemory(_WasmtimeExports(self))

    def has_export(self, name: str) -> bool:
        return isinstance(self._exports.get(name), wasmtime.Func)

    def call_raw(self, name: str, *args: int) -> object:
        """Call a guest function; wasmtime errors surface as ``SandboxFault``."""
        func = self._exports.get(name)
        if not isinstance(func, wasmtime.Func):
            raise SandboxTrap(f"export {name!r} is not a function")
        try:
            return func(self.store, *args)
        except wasmtime.Trap as exc:
            raise self._classify_trap(exc) from exc
        except wasmtime.WasmtimeError as exc:
            raise self._classify_fault(SandboxTrap(str(exc))) from exc

    def invoke(self, export_name: str, payload: bytes, timeout: float) -> bytes:
        """
        Call ``export_name`` with ``payload`` copied into guest memory.

        An empty payload calls the export with no arguments (``get_manifest``).
        Input and result buffers are released before returning.
        """
        if self._closed:
            raise SandboxTrap("sandbox instance is closed")
        self._timeout = timeout
        self._deadline_ticks = self._runtime.ticks_for(timeout)
        self.store.set_epoch_deadline(self._deadline_ticks)
        # Checked after arming: a later interrupt() expires this deadline instead.
        if self._interrupted:
            raise SandboxTrap("interrupted by host")
        try:
            if not payload:
                return self._guest.read_result(self.call_raw(export_name))
            with self._guest.lease(payload) as (pointer, length):
                return self._guest.read_result(self.call_raw(export_name, pointer, length))
        except SandboxTrap as exc:
            raise self._classify_fault(exc) from exc

    def _classify_trap(self, exc: wasmtime.Trap) -> SandboxFault:
        if exc.trap_code == wasmtime.TrapCode.INTERRUPT:
            if self._interrupted:
                return SandboxTrap("interrupted by host")
            return SandboxTimeout(f"exceeded {self._timeout * 1000:.0f} ms budget")
        return self._classify_fault(SandboxTrap(exc.message))

    def _classify_fault(self, fault: SandboxFault) -> SandboxFault:
        """A trap while memory sits at its cap is reported as a memory-limit fault."""
        if isinstance(fault, SandboxTrap) and self._near_memory_limit():
            return MemoryLimitExceeded(
                f"linear memory limit of {self._memory_limit} bytes reached ({fault})"
            )
        return fault

    def _near_memory_limit(self) -> bool:
        try:
            size = self.memory.data_len(self.store)
        except wasmtime.WasmtimeError:
            return False
        return size + WASM_PAGE_SIZE > self._memory_limit

    def interrupt(self) -> None:
        """
        Stop an in-flight call by expiring its epoch deadline.

        The epoch is engine-wide, so sibling calls on the same engine may be
        cut short too; this is only used to tear down a cancelled run.
        """
        self._interrupted = True
        self._runtime.advance(self._deadline_ticks + 1)

    def close(self) -> None:
        self._closed = True
        self._exports = {}


class WasmtimeSandboxFactory:
    """
    Instantiates a module compiled once per rule.

    Instances handed back through ``adopt`` (the one that answered
    ``get_manifest``) are reused before new ones are created.
    """

    def __init__(
        self,
        runtime: WasmtimeRuntime,
        module: wasmtime.Module,
        memory_limit_bytes: int,
    ) -> None:
        self._runtime = runtime
        self._module = module
        self._memory_limit = memory_limit_bytes
        self._warm: list[WasmtimeSandbox] = []
        self._lock = threading.Lock()

    def adopt(self, sandbox: WasmtimeSandbox) -> None:
        with self._lock:
            self._warm.append(sandbox)

    def create(self) -> WasmtimeSandbox:
        with self._lock:
            if self._warm:
                return self._warm.pop()
        logger.debug("instantiating wasm sandbox (memory limit %d bytes)", self._memory_limit)
        try:
            return WasmtimeSandbox(self._runtime, self._module, self._memory_limit)
        except wasmtime.WasmtimeError as exc:
            raise InstantiationError(f"cannot instantiate rule module: {exc}") from exc
