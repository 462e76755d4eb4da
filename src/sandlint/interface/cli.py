"""CLI entry points for sandlint - Thin Controller using Typer."""

import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import typer

from sandlint.domain.cancellation import CancellationToken
from sandlint.domain.config import ConfigurationLoader, EngineConfig
from sandlint.domain.errors import ConfigurationError
from sandlint.domain.protocols import RuleModuleLoaderProtocol, TelemetryPort
from sandlint.infrastructure.config_file_loader import ConfigFileLoader
from sandlint.infrastructure.wire.codec import WireCodec
from sandlint.interface.report_renderer import ReportRenderer
from sandlint.use_cases.lint_document import LintDocumentUseCase

EXIT_ERRORS = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class CLIDependencies:
    """Explicit dependencies for the CLI. All dependencies injected at composition root."""

    config_loader: ConfigurationLoader
    telemetry: TelemetryPort
    codec: WireCodec
    rule_loader_for: Callable[[int], RuleModuleLoaderProtocol]  # by epoch_tick_ms
    config_files: ConfigFileLoader


class CLIAppFactory:
    """Creates the Typer app. No top-level functions."""

    @staticmethod
    def resolve_config(
        deps: CLIDependencies,
        config_path: Path | None,
        workers: int | None,
        timeout_ms: int | None,
        apply_fixes: bool,
    ) -> EngineConfig:
        """Explicit --config file replaces discovered config; flags override both."""
        loader = deps.config_loader
        if config_path is not None:
            loader = ConfigurationLoader(deps.config_files.load_config_file(config_path))
        loader = loader.with_overrides(
            workers=workers,
            default_timeout_ms=timeout_ms,
            apply_fixes=True if apply_fixes else None,
        )
        return loader.engine_config

    @staticmethod
    def rule_paths(cli_rules: list[Path], config: EngineConfig) -> list[str]:
        """--rule paths first, then configured plugins not already named."""
        paths = [str(p) for p in cli_rules]
        paths.extend(p for p in config.plugins if p not in paths)
        return paths

    @staticmethod
    @contextmanager
    def cancel_on_interrupt(cancel: CancellationToken) -> Iterator[None]:
        """Turn Ctrl-C into run cancellation so a partial report is still produced."""

        def _handler(signum: int, frame: object) -> None:
            cancel.cancel("interrupted")

        previous = signal.signal(signal.SIGINT, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    @staticmethod
    def create_app(deps: CLIDependencies) -> typer.Typer:
        """Create the Typer app with explicitly injected dependencies."""
        app = typer.Typer(
            name="sandlint",
            help="sandlint: lint structured documents with sandboxed WebAssembly rules.",
            add_completion=False,
        )

        @app.callback()
        def main() -> None:
            """sandlint command group."""

        @app.command()
        def lint(
            source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Document to lint"),  # noqa: B008
            tree: Path = typer.Option(..., "--tree", exists=True, dir_okay=False, help="Parsed tree (JSON)"),  # noqa: B008
            rule: list[Path] | None = typer.Option(None, "--rule", help="Rule module (.wasm); repeatable"),  # noqa: B008
            config: Path | None = typer.Option(None, "--config", help="Config file (.json or pyproject.toml)"),  # noqa: B008
            fix: bool = typer.Option(False, "--fix", help="Resolve fixes and compute the rewrite"),
            write: bool = typer.Option(False, "--write", help="Write the rewritten source back (implies --fix)"),
            workers: int | None = typer.Option(None, "--workers", min=1, help="Worker threads"),
            timeout_ms: int | None = typer.Option(None, "--timeout-ms", min=1, help="Default per-call budget"),
            output_format: OutputFormat = typer.Option(OutputFormat.TEXT, "--format", help="text or json"),  # noqa: B008
        ) -> None:
            """Run every rule over SOURCE and report diagnostics, failures and fix conflicts."""
            deps.telemetry.handshake()
            cancel = CancellationToken()
            try:
                engine_config = CLIAppFactory.resolve_config(
                    deps, config, workers, timeout_ms, fix or write
                )
                root = deps.config_files.load_tree(tree)
                text = source.read_text(encoding="utf-8")
                rule_loader = deps.rule_loader_for(engine_config.epoch_tick_ms)
                rule_set = rule_loader.load(
                    CLIAppFactory.rule_paths(rule or [], engine_config), engine_config
                )
                use_case = LintDocumentUseCase(rule_set, engine_config, deps.codec, deps.telemetry)
                with CLIAppFactory.cancel_on_interrupt(cancel):
                    report = use_case.execute(root, text, file_path=str(source), cancel=cancel)
            except ConfigurationError as exc:
                deps.telemetry.error(str(exc))
                raise typer.Exit(code=EXIT_CONFIG) from exc

            if output_format is OutputFormat.JSON:
                typer.echo(ReportRenderer.render_json(report))
            else:
                for line in ReportRenderer.render_text(report):
                    typer.echo(line)

            if write and report.output is not None and report.output != text:
                source.write_text(report.output, encoding="utf-8")
                deps.telemetry.step(
                    f"Applied {len(report.accepted_fixes)} fix(es) to {source}"
                )

            if cancel.cancelled and not report.completed:
                raise typer.Exit(code=EXIT_INTERRUPTED)
            if report.has_errors():
                raise typer.Exit(code=EXIT_ERRORS)

        return app
