"""Pointer/length handshake for buffers that cross into guest linear memory."""

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Protocol

from sandlint.domain.errors import SandboxFault, SandboxTrap

logger = logging.getLogger(__name__)

_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF


class GuestExports(Protocol):
    """The raw memory-management surface of one guest instance."""

    def alloc(self, size: int) -> int: ...
    def dealloc(self, pointer: int, size: int) -> None: ...
    def has_dealloc(self) -> bool: ...
    def read(self, pointer: int, length: int) -> bytes: ...
    def write(self, pointer: int, data: bytes) -> None: ...
    def memory_size(self) -> int: ...


class GuestMemory:
    """
    Scoped ownership of guest buffers.

    Every buffer the host asks the guest to allocate is released before the
    call that needed it completes, on success and on every error path, so a
    long-lived instance does not grow across thousands of invocations.
    """

    def __init__(self, exports: GuestExports) -> None:
        self._exports = exports

    @contextmanager
    def lease(self, payload: bytes) -> Iterator[tuple[int, int]]:
        """Copy payload into guest memory; yield ``(pointer, length)``."""
        length = len(payload)
        if length == 0:
            yield 0, 0
            return
        pointer = self._exports.alloc(length) & _U32
        if pointer == 0:
            raise SandboxTrap(f"guest alloc({length}) returned a null pointer")
        try:
            self.check_bounds(pointer, length)
            self._exports.write(pointer, payload)
            yield pointer, length
        except BaseException:
            self._release_quietly(pointer, length)
            raise
        else:
            self._release(pointer, length)

    def read_result(self, value: object) -> bytes:
        """Copy out the buffer a guest export returned, then free it."""
        pointer, length = self.unpack(value)
        if length == 0:
            return b""
        self.check_bounds(pointer, length)
        try:
            data = bytes(self._exports.read(pointer, length))
        except BaseException:
            self._release_quietly(pointer, length)
            raise
        self._release(pointer, length)
        return data

    def check_bounds(self, pointer: int, length: int) -> None:
        size = self._exports.memory_size()
        if pointer + length > size:
            raise SandboxTrap(
                f"guest buffer [{pointer}, {pointer + length}) exceeds linear memory of {size} bytes"
            )

    @staticmethod
    def unpack(value: object) -> tuple[int, int]:
        """
        Accept either calling convention for a returned buffer.

        A single i64 packs ``(pointer << 32) | length``; a two-value return is
        ``(pointer, length)``.
        """
        if isinstance(value, int) and not isinstance(value, bool):
            packed = value & _U64
            return packed >> 32, packed & _U32
        if isinstance(value, Sequence) and len(value) == 2:
            pointer, length = value
            if isinstance(pointer, int) and isinstance(length, int):
                return pointer & _U32, length & _U32
        raise SandboxTrap(f"guest export returned {value!r}; expected a (pointer, length) pair")

    def _release(self, pointer: int, length: int) -> None:
        if self._exports.has_dealloc():
            self._exports.dealloc(pointer, length)

    def _release_quietly(self, pointer: int, length: int) -> None:
        """Free during unwinding; a second fault must not mask the first."""
        try:
            self._release(pointer, length)
        except SandboxFault as exc:
            logger.debug("dealloc(%d, %d) failed while unwinding: %s", pointer, length, exc)
