import json
import sys
import threading
import time
from unittest.mock import MagicMock

import pytest

from fakes import FakeFactory, diagnostic, manifest, node, request_node, response, rule_set
from sandlint.domain.cancellation import CancellationToken
from sandlint.domain.config import RuleSettings
from sandlint.domain.entities import FailureKind, Node
from sandlint.domain.errors import (
    InstantiationError,
    MemoryLimitExceeded,
    SandboxTimeout,
    SandboxTrap,
)
from sandlint.domain.rule_set import RuleSet
from sandlint.infrastructure.sandbox.pool import SandboxPool
from sandlint.infrastructure.wire.codec import WireCodec
from sandlint.use_cases.dispatch import NodeDispatcher
from sandlint.use_cases.execute import ExecutionCoordinator

SOURCE = "# Title!!!\nHello world! [url]\n`code`\n\n"


def _run(rules: RuleSet, tree: Node, workers: int = 4, cancel: CancellationToken | None = None,
         default_timeout: float = 1.0):
    work = NodeDispatcher(rules.manifests).build_work_list(tree)
    with SandboxPool(rules.factories, workers) as pool:
        coordinator = ExecutionCoordinator(pool, WireCodec(), workers, default_timeout, MagicMock())
        return work, coordinator.run(work, SOURCE, rules, file_path="doc.md", cancel=cancel)


def _echo_start(name: str, payload: bytes, timeout: float) -> bytes:
    start = request_node(payload)["range"][0]
    return response(diagnostic(start, start + 1, f"node at {start}"))


class TestExecutionCoordinator:
    def test_every_item_gets_a_response(self, ten_node_tree: Node) -> None:
        rules = rule_set((manifest("echo"), FakeFactory(_echo_start)))
        work, outcome = _run(rules, ten_node_tree)
        assert outcome.completed
        assert outcome.skipped == 0
        assert [o.item.index for o in outcome.outcomes] == list(range(len(work)))
        assert all(o.succeeded for o in outcome.outcomes)

    def test_slots_keep_work_list_order_under_concurrency(self, ten_node_tree: Node) -> None:
        def slow_for_early_nodes(name: str, payload: bytes, timeout: float) -> bytes:
            start = request_node(payload)["range"][0]
            time.sleep(max(0.0, (40 - start) / 2000))
            return _echo_start(name, payload, timeout)

        rules = rule_set((manifest("slow"), FakeFactory(slow_for_early_nodes)))
        work, outcome = _run(rules, ten_node_tree, workers=8)
        starts = [o.response.diagnostics[0].span.start for o in outcome.outcomes]
        assert starts == [item.node.range.start for item in work]

    def test_timeout_yields_one_failure_and_spares_siblings(self, ten_node_tree: Node) -> None:
        def times_out_on_emphasis(name: str, payload: bytes, timeout: float) -> bytes:
            if request_node(payload)["type"] == "Emphasis":
                raise SandboxTimeout("exceeded 1000 ms budget")
            return response()

        factory = FakeFactory(times_out_on_emphasis)
        rules = rule_set((manifest("r"), factory), (manifest("other"), FakeFactory(_echo_start)))
        _, outcome = _run(rules, ten_node_tree)

        failures = [o.failure for o in outcome.outcomes if o.failure is not None]
        assert len(failures) == 1
        assert failures[0].kind is FailureKind.TIMEOUT
        assert failures[0].rule_id == "r"
        assert failures[0].node_range.start == 17
        assert sum(1 for o in outcome.outcomes if o.item.rule_id == "other" and o.succeeded) == 10
        assert any(sandbox.closed for sandbox in factory.created)

    def test_malformed_json_is_a_decode_failure(self, ten_node_tree: Node) -> None:
        def broken_on_link(name: str, payload: bytes, timeout: float) -> bytes:
            if request_node(payload)["type"] == "Link":
                return b'{"diagnostics": [{"message": '
            return response()

        rules = rule_set((manifest("r"), FakeFactory(broken_on_link)))
        _, outcome = _run(rules, ten_node_tree)
        link = [o for o in outcome.outcomes if o.item.node.type.value == "Link"]
        assert len(link) == 1
        assert link[0].failure is not None
        assert link[0].failure.kind is FailureKind.DECODE_ERROR
        assert link[0].response is None
        assert sum(1 for o in outcome.outcomes if o.failure) == 1

    @pytest.mark.parametrize(
        "raw",
        [
            pytest.param(b"[" * 100_000, id="deep-nesting"),
            pytest.param(
                b'{"diagnostics": [], "x": 1' + b"1" * 5000 + b"}",
                id="huge-integer",
                marks=pytest.mark.skipif(
                    not hasattr(sys, "get_int_max_str_digits"), reason="no int digit limit"
                ),
            ),
        ],
    )
    def test_hostile_json_is_a_decode_failure(self, raw: bytes) -> None:
        rules = rule_set((manifest("r"), FakeFactory(lambda name, payload, timeout: raw)))
        _, outcome = _run(rules, node("Document", 0, 3))
        assert outcome.completed
        assert outcome.outcomes[0].failure.kind is FailureKind.DECODE_ERROR
        assert "invalid JSON" in outcome.outcomes[0].failure.detail

    @pytest.mark.parametrize(
        "error, kind",
        [
            (SandboxTrap("unreachable"), FailureKind.TRAP),
            (MemoryLimitExceeded("linear memory limit"), FailureKind.MEMORY_LIMIT),
        ],
    )
    def test_faults_map_to_failure_kinds(self, error: Exception, kind: FailureKind) -> None:
        def fail(name: str, payload: bytes, timeout: float) -> bytes:
            raise error

        rules = rule_set((manifest("r"), FakeFactory(fail)))
        _, outcome = _run(rules, node("Document", 0, 3))
        assert outcome.outcomes[0].failure.kind is kind

    def test_instantiation_failure(self) -> None:
        factory = MagicMock()
        factory.create.side_effect = InstantiationError("out of memory")
        rules = rule_set((manifest("r"), factory))
        _, outcome = _run(rules, node("Document", 0, 3))
        assert outcome.outcomes[0].failure.kind is FailureKind.INSTANTIATION

    def test_request_carries_config_and_path(self) -> None:
        factory = FakeFactory(lambda name, payload, timeout: response())
        rules = rule_set(
            (manifest("r"), factory), settings={"r": RuleSettings(options={"max": 3})}
        )
        _run(rules, node("Document", 0, 3))
        export, payload, _ = factory.created[0].calls[0]
        request = json.loads(payload)
        assert export == "lint"
        assert request["config"] == {"max": 3}
        assert request["file_path"] == "doc.md"
        assert request["source"] == SOURCE

    def test_manifest_timeout_overrides_default(self) -> None:
        factory = FakeFactory(lambda name, payload, timeout: response())
        rules = rule_set((manifest("r", timeout_ms=250), factory))
        _run(rules, node("Document", 0, 3), default_timeout=9.0)
        assert factory.created[0].calls[0][2] == 0.25

    def test_instances_are_reused_within_bound(self, ten_node_tree: Node) -> None:
        factory = FakeFactory(_echo_start)
        rules = rule_set((manifest("r"), factory))
        _run(rules, ten_node_tree, workers=2)
        assert 1 <= len(factory.created) <= 2

    def test_cancellation_stops_dispatch_and_interrupts(self, ten_node_tree: Node) -> None:
        started = threading.Event()
        interrupted = threading.Event()

        def block_until_interrupted(name: str, payload: bytes, timeout: float) -> bytes:
            started.set()
            if interrupted.wait(5.0):
                raise SandboxTrap("interrupted by host")
            return response()

        rules = rule_set((manifest("r"), FakeFactory(block_until_interrupted, interrupted)))
        token = CancellationToken()
        canceller = threading.Thread(target=lambda: started.wait(5.0) and token.cancel("user"))
        canceller.start()
        _, outcome = _run(rules, ten_node_tree, workers=2, cancel=token)
        canceller.join()

        assert not outcome.completed
        assert interrupted.is_set()
        assert outcome.skipped >= 1
        finished = [o for o in outcome.outcomes if o is not None]
        assert finished
        assert all(o.failure and o.failure.kind is FailureKind.CANCELLED for o in finished)

    def test_call_armed_after_the_first_interrupt_is_still_interrupted(self) -> None:
        interrupted = threading.Event()
        token = CancellationToken()
        reinterrupted: list[bool] = []

        def arms_late(name: str, payload: bytes, timeout: float) -> bytes:
            token.cancel("user")
            interrupted.wait(5.0)
            # Arming a fresh deadline forgets the earlier interrupt.
            interrupted.clear()
            reinterrupted.append(interrupted.wait(5.0))
            raise SandboxTrap("interrupted by host")

        rules = rule_set((manifest("r", "Document"), FakeFactory(arms_late, interrupted)))
        started = time.monotonic()
        _, outcome = _run(rules, node("Document", 0, 3), workers=1, cancel=token)

        assert reinterrupted == [True]
        assert time.monotonic() - started < 5.0
        assert not outcome.completed
        assert outcome.outcomes[0] is not None
        assert outcome.outcomes[0].failure is not None
        assert outcome.outcomes[0].failure.kind is FailureKind.CANCELLED

    def test_empty_work_list(self) -> None:
        rules = rule_set((manifest("r", "Table"), FakeFactory(_echo_start)))
        _, outcome = _run(rules, node("Document", 0, 3))
        assert outcome.outcomes == ()
        assert outcome.completed
