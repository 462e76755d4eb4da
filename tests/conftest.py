"""Shared fixtures. Builders and fakes live in ``fakes.py``.

Run pytest from the project root; pythonpath in pyproject.toml puts src/ and
tests/ on the import path.
"""

import pytest

from fakes import node
from sandlint.domain.config import EngineConfig
from sandlint.domain.entities import Node


@pytest.fixture
def ten_node_tree() -> Node:
    """Document of 40 bytes with 10 nodes of mixed kinds."""
    return node(
        "Document", 0, 40,
        node("Header", 0, 10, node("Str", 2, 10, value="Title!!!")),
        node(
            "Paragraph", 11, 30,
            node("Str", 11, 16, value="Hello"),
            node("Emphasis", 17, 24, node("Str", 18, 23, value="world")),
            node("Link", 25, 30, node("Str", 26, 29, value="url")),
        ),
        node("CodeBlock", 31, 40, value="code"),
    )


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(workers=4, default_timeout_ms=1000)
