"""Package entry point - composition root. Wire dependencies and run the CLI app."""

import logging
import os
import sys

from sandlint.domain.errors import ConfigurationError
from sandlint.infrastructure.config_file_loader import ConfigFileLoader
from sandlint.infrastructure.di.container import SandlintContainer
from sandlint.interface.cli import EXIT_CONFIG, CLIAppFactory, CLIDependencies


def main() -> None:
    """Entry point: wire dependencies at composition root, create app, run."""
    logging.basicConfig(
        level=os.environ.get("SANDLINT_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        container = SandlintContainer()
    except ConfigurationError as exc:
        print(f"sandlint: {exc}", file=sys.stderr)
        raise SystemExit(EXIT_CONFIG) from exc
    try:
        deps = CLIDependencies(
            config_loader=container.get_config_loader(),
            telemetry=container.get_telemetry_port(),
            codec=container.get_codec(),
            rule_loader_for=container.get_rule_loader,
            config_files=ConfigFileLoader(),
        )
        app = CLIAppFactory.create_app(deps)
        app()
    finally:
        container.close()


if __name__ == "__main__":
    main()
