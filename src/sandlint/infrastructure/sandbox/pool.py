"""
Sandbox Pool: bounded sets of interchangeable sandbox instances per rule.

- Instances are created lazily through the rule's factory and reused across
  invocations of the same rule.
- A rule never has more than ``max_instances_per_rule`` instances leased or
  being created; ``acquire`` blocks instead of spawning more.
- A faulted instance is closed on release and
  never handed out again; the next ``acquire`` replaces it lazily.
"""

import itertools
import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field

from sandlint.domain.cancellation import CancellationToken
from sandlint.domain.errors import RunCancelled, UnknownRuleError
from sandlint.domain.protocols import SandboxFactory, SandboxInstance

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class SandboxHandle:
    """Exclusive lease on one instance. Only the holder may call into it."""

    rule_id: str
    instance: SandboxInstance = field(compare=False)
    handle_id: int
    generation: int


@dataclass(frozen=True)
class PoolStats:
    idle: int
    leased: int
    created: int
    discarded: int


class _RulePool:
    """Bookkeeping for one rule. Guarded by the owning pool's lock."""

    def __init__(self, rule_id: str, factory: SandboxFactory, limit: int) -> None:
        self.rule_id = rule_id
        self.factory = factory
        self.limit = limit
        self.idle: list[SandboxInstance] = []
        self.leased: dict[int, SandboxHandle] = {}
        self.reserved = 0
        self.generation = 0
        self.created = 0
        self.discarded = 0

    @property
    def busy(self) -> int:
        return len(self.leased) + self.reserved


class SandboxPool:
    """Owns every sandbox instance of a run; see module docstring."""

    def __init__(
        self,
        factories: Mapping[str, SandboxFactory],
        max_instances_per_rule: int,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if max_instances_per_rule <= 0:
            raise ValueError("max_instances_per_rule must be positive")
        self._available = threading.Condition(threading.Lock())
        self._rules = {
            rule_id: _RulePool(rule_id, factory, max_instances_per_rule)
            for rule_id, factory in factories.items()
        }
        self._handle_ids = itertools.count(1)
        self._poll_interval = poll_interval
        self._closed = False

    def __enter__(self) -> "SandboxPool":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _rule(self, rule_id: str) -> _RulePool:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise UnknownRuleError(f"no sandbox pool for rule {rule_id!r}") from None

    def acquire(self, rule_id: str, cancel: CancellationToken | None = None) -> SandboxHandle:
        """
        Lease an instance of ``rule_id``, blocking while the rule is saturated.

        Raises ``RunCancelled`` if the token fires (or the pool closes) while
        waiting, and whatever the factory raises if instantiation fails.
        """
        rule = self._rule(rule_id)
        with self._available:
            while True:
                if self._closed:
                    raise RunCancelled("sandbox pool is closed")
                if cancel is not None and cancel.cancelled:
                    raise RunCancelled(cancel.reason or "cancelled")
                if rule.idle:
                    return self._lease(rule, rule.idle.pop())
                if rule.busy + len(rule.idle) < rule.limit:
                    rule.reserved += 1
                    break
                self._available.wait(timeout=self._poll_interval)

        try:
            instance = rule.factory.create()
        except BaseException:
            with self._available:
                rule.reserved -= 1
                self._available.notify_all()
            raise

        with self._available:
            rule.reserved -= 1
            rule.created += 1
            if not self._closed:
                logger.debug("instantiated sandbox #%d for rule %s", rule.created, rule_id)
                return self._lease(rule, instance)
            self._available.notify_all()
        instance.close()
        raise RunCancelled("sandbox pool is closed")

    def _lease(self, rule: _RulePool, instance: SandboxInstance) -> SandboxHandle:
        handle = SandboxHandle(
            rule_id=rule.rule_id,
            instance=instance,
            handle_id=next(self._handle_ids),
            generation=rule.generation,
        )
        rule.leased[handle.handle_id] = handle
        return handle

    def release(self, handle: SandboxHandle, discard: bool = False) -> None:
        """Return a healthy instance for reuse, or close a faulted one."""
        rule = self._rule(handle.rule_id)
        with self._available:
            if rule.leased.pop(handle.handle_id, None) is None:
                raise ValueError(f"sandbox handle {handle.handle_id} is not leased")
            stale = discard or self._closed or handle.generation != rule.generation
            if stale:
                rule.discarded += 1
            else:
                rule.idle.append(handle.instance)
            self._available.notify_all()
        if stale:
            logger.debug("discarding sandbox for rule %s (faulted=%s)", handle.rule_id, discard)
            handle.instance.close()

    @contextmanager
    def lease(
        self, rule_id: str, cancel: CancellationToken | None = None
    ) -> Iterator[SandboxHandle]:
        """Acquire for the duration of a block; any exception discards the instance."""
        handle = self.acquire(rule_id, cancel)
        discard = False
        try:
            yield handle
        except BaseException:
            discard = True
            raise
        finally:
            self.release(handle, discard=discard)

    def evict(self, rule_id: str) -> None:
        """Close idle instances now; leased ones are closed when released."""
        rule = self._rule(rule_id)
        with self._available:
            idle, rule.idle = rule.idle, []
            rule.generation += 1
            rule.discarded += len(idle)
            self._available.notify_all()
        for instance in idle:
            instance.close()

    def interrupt_in_flight(self) -> int:
        """Interrupt every leased instance; returns how many were signalled."""
        with self._available:
            handles = [h for rule in self._rules.values() for h in rule.leased.values()]
        for handle in handles:
            handle.instance.interrupt()
        return len(handles)

    def stats(self, rule_id: str) -> PoolStats:
        rule = self._rule(rule_id)
        with self._available:
            return PoolStats(
                idle=len(rule.idle),
                leased=len(rule.leased),
                created=rule.created,
                discarded=rule.discarded,
            )

    def close(self) -> None:
        """Evict every rule and refuse further leases. Idempotent."""
        with self._available:
            self._closed = True
        for rule_id in list(self._rules):
            self.evict(rule_id)
