"""Wire Protocol Codec: canonical JSON shapes exchanged with rule modules."""

import json
import logging

from sandlint.domain.entities import (
    Diagnostic,
    Fix,
    LintRequest,
    LintResponse,
    Node,
    NodeType,
    RuleManifest,
    Severity,
    Span,
)
from sandlint.domain.errors import DecodeError, ManifestError
from sandlint.domain.json_value import JsonObject, JsonValues
from sandlint.domain.protocols import SandboxInstance

logger = logging.getLogger(__name__)

LINT_EXPORT = "lint"
MANIFEST_EXPORT = "get_manifest"


class WireCodec:
    """
    Encodes requests and decodes responses and manifests.

    Decoders validate every field they read and ignore fields they do not
    know, so rule modules built against a newer protocol keep working.
    """

    def encode_request(self, request: LintRequest) -> bytes:
        """Canonical bytes of ``request.to_dict()``; the node is written without recursion."""
        fields = {
            "config": JsonValues.canonical(request.config).decode("utf-8"),
            "file_path": self._scalar(request.file_path),
            "node": self.encode_node(request.node),
            "source": self._scalar(request.source),
        }
        body = ",".join(f"{self._scalar(key)}:{value}" for key, value in sorted(fields.items()))
        return ("{" + body + "}").encode("utf-8")

    @staticmethod
    def encode_node(root: Node) -> str:
        """Canonical JSON text of a subtree, however deep."""
        parts: list[str] = []
        stack: list[Node | str] = [root]
        while stack:
            item = stack.pop()
            if isinstance(item, str):
                parts.append(item)
                continue
            closing = (
                f'],"range":[{item.range.start},{item.range.end}]'
                f',"type":{WireCodec._scalar(item.type.value)}'
            )
            if item.value is not None:
                closing += f',"value":{WireCodec._scalar(item.value)}'
            parts.append('{"children":[')
            stack.append(closing + "}")
            for i in range(len(item.children) - 1, -1, -1):
                stack.append(item.children[i])
                if i:
                    stack.append(",")
        return "".join(parts)

    @staticmethod
    def _scalar(value: str | None) -> str:
        return json.dumps(value, ensure_ascii=False)

    def decode_manifest(self, raw: bytes) -> RuleManifest:
        try:
            obj = JsonObject.parse(raw, "manifest")
            node_types = frozenset(
                self._node_type(value, f"manifest.node_types[{i}]")
                for i, value in enumerate(obj.optional_list("node_types"))
            )
            return RuleManifest(
                name=obj.require_str("name"),
                version=obj.require_str("version"),
                fixable=obj.optional_bool("fixable"),
                node_types=node_types,
                schema=obj.optional_object("schema"),
                timeout_ms=obj.optional_int("timeout_ms"),
            )
        except DecodeError as exc:
            raise ManifestError(f"unparsable rule manifest: {exc}") from exc

    def decode_response(
        self, raw: bytes, manifest: RuleManifest, source_length: int
    ) -> LintResponse:
        """
        Decode a LintResponse produced by the rule described by ``manifest``.

        ``source_length`` is the UTF-8 byte length of the document; every span
        must fit inside it. A diagnostic without ``rule_id`` is attributed to
        the producing rule; one naming a different rule is rejected.
        """
        obj = JsonObject.parse(raw, "response")
        diagnostics = tuple(
            self._diagnostic(item, manifest, source_length)
            for item in obj.items_of("diagnostics")
        )
        return LintResponse(diagnostics=diagnostics)

    def lint(self, instance: SandboxInstance, request: LintRequest, timeout: float) -> bytes:
        """Round-trip one request through a sandbox; returns the raw response."""
        return instance.invoke(LINT_EXPORT, self.encode_request(request), timeout)

    def manifest(self, instance: SandboxInstance, timeout: float) -> RuleManifest:
        return self.decode_manifest(instance.invoke(MANIFEST_EXPORT, b"", timeout))

    def _diagnostic(self, obj: JsonObject, manifest: RuleManifest, source_length: int) -> Diagnostic:
        rule_id = obj.optional_str("rule_id", manifest.name)
        if rule_id != manifest.name:
            raise DecodeError(
                f"{obj.where}.rule_id: {rule_id!r} does not match producing rule {manifest.name!r}"
            )
        span = self._span(obj.child("span"), source_length)
        severity = self._severity(obj)
        fix = None
        fix_obj = obj.optional_child("fix")
        if fix_obj is not None:
            if manifest.fixable:
                fix = Fix(span=self._span(fix_obj.child("span"), source_length),
                          text=fix_obj.require_str("text"))
            else:
                logger.debug("dropping fix from non-fixable rule %s", manifest.name)
        return Diagnostic(
            rule_id=rule_id,
            message=obj.require_str("message"),
            span=span,
            severity=severity,
            fix=fix,
        )

    @staticmethod
    def _span(obj: JsonObject, source_length: int) -> Span:
        start = obj.require_int("start")
        end = obj.require_int("end")
        try:
            span = Span(start, end)
        except ValueError as exc:
            raise DecodeError(f"{obj.where}: {exc}") from exc
        if not span.fits(source_length):
            raise DecodeError(
                f"{obj.where}: [{start}, {end}) exceeds source length {source_length}"
            )
        return span

    @staticmethod
    def _severity(obj: JsonObject) -> Severity:
        raw = obj.optional_str("severity", Severity.ERROR.value)
        try:
            return Severity(raw)
        except ValueError:
            raise DecodeError(f"{obj.where}.severity: unknown severity {raw!r}") from None

    @staticmethod
    def _node_type(value: object, where: str) -> NodeType:
        if not isinstance(value, str):
            raise DecodeError(f"{where}: expected string")
        try:
            return NodeType.parse(value)
        except ValueError as exc:
            raise DecodeError(f"{where}: {exc}") from exc
