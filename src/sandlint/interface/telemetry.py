"""Console telemetry: rich status lines mirrored to stdlib logging."""

import logging

from rich.console import Console


class ProjectTelemetry:
    """TelemetryPort implementation for the command line."""

    def __init__(self, project_name: str, color: str, welcome_msg: str) -> None:
        self.project_name = project_name
        self.color = color
        self.welcome_msg = welcome_msg
        self.console = Console(stderr=True)
        self.logger = logging.getLogger(project_name.lower())

    def handshake(self) -> None:
        self.console.print(
            f"[bold {self.color}]{self.project_name}[/] [dim]{self.welcome_msg}[/]"
        )
        self.logger.info("%s: %s", self.project_name, self.welcome_msg)

    def step(self, message: str) -> None:
        self.console.print(f"[{self.color}]>[/] {message}", highlight=False)
        self.logger.info(message)

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]error:[/] {message}", highlight=False)
        self.logger.error(message)

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]warning:[/] {message}", highlight=False)
        self.logger.warning(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)
