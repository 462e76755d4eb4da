"""Load [tool.sandlint] from pyproject.toml, JSON config files and JSON trees. Infrastructure I/O only."""

import json
import sys
from pathlib import Path

from sandlint.domain.entities import Node
from sandlint.domain.errors import ConfigurationError, MalformedTreeError

if sys.version_info >= (3, 11):
    import tomllib as toml_lib
else:
    import tomli as toml_lib  # type: ignore[import-not-found]

TOOL_SECTION = "sandlint"
JSON_CONFIG_NAME = ".sandlint.json"


class ConfigFileLoader:
    """
    Finds and reads configuration. No top-level functions.
    """

    @staticmethod
    def load_config_from_fs(start: Path | None = None) -> dict[str, object]:
        """Walk up from ``start`` (default cwd) to the nearest config; {} if none."""
        current_path = (start or Path.cwd()).resolve()
        while True:
            json_file = current_path / JSON_CONFIG_NAME
            if json_file.is_file():
                return ConfigFileLoader.load_json_config(json_file)
            config_file = current_path / "pyproject.toml"
            if config_file.is_file():
                section = ConfigFileLoader.load_pyproject(config_file)
                if section:
                    return section
            if current_path.parent == current_path:
                return {}
            current_path = current_path.parent

    @staticmethod
    def load_pyproject(path: Path) -> dict[str, object]:
        """Return the [tool.sandlint] table of one pyproject.toml ({} if absent)."""
        try:
            with path.open("rb") as f:
                data = toml_lib.load(f)
        except OSError as exc:
            raise ConfigurationError(f"{path}: cannot read: {exc}") from exc
        except toml_lib.TOMLDecodeError as exc:
            raise ConfigurationError(f"{path}: invalid TOML: {exc}") from exc
        tool_section = data.get("tool", {}) or {}
        section = tool_section.get(TOOL_SECTION, {}) or {}
        if not isinstance(section, dict):
            raise ConfigurationError(f"{path}: [tool.{TOOL_SECTION}] must be a table")
        return section

    @staticmethod
    def load_json_config(path: Path) -> dict[str, object]:
        """Read an explicit JSON config file; the top level must be an object."""
        data = ConfigFileLoader._read_json(path)
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path}: config must be a JSON object")
        return data

    @staticmethod
    def load_config_file(path: Path) -> dict[str, object]:
        """Dispatch on suffix: pyproject-style TOML or JSON."""
        if path.suffix == ".toml":
            return ConfigFileLoader.load_pyproject(path)
        return ConfigFileLoader.load_json_config(path)

    @staticmethod
    def load_tree(path: Path) -> Node:
        """Read a parser-produced JSON tree into ``Node`` objects."""
        try:
            data = ConfigFileLoader._read_json(path)
        except ConfigurationError as exc:
            raise MalformedTreeError(str(exc)) from exc
        return Node.from_dict(data)

    @staticmethod
    def _read_json(path: Path) -> object:
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except OSError as exc:
            raise ConfigurationError(f"{path}: cannot read: {exc}") from exc
        except (ValueError, RecursionError) as exc:
            # JSONDecodeError and UnicodeDecodeError are ValueErrors; so is an
            # integer past the digit limit. RecursionError means nesting too deep.
            raise ConfigurationError(f"{path}: invalid JSON: {exc}") from exc
