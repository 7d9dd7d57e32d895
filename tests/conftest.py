import json
from collections.abc import Callable
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def write_transcript() -> "Callable[[Path, list[object]], Path]":
    """
    writes transcript lines to path. Dicts are JSON encoded, strings
    are written as-is so tests can add malformed lines.
    """

    def _write(path: "Path", lines: "list[object]") -> "Path":
        path.parent.mkdir(parents=True, exist_ok=True)
        encoded = [
            line if isinstance(line, str) else json.dumps(line) for line in lines
        ]
        path.write_text("\n".join(encoded) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def assistant_turn() -> "Callable[..., dict[str, object]]":
    """
    builds an assistant transcript entry with an optional usage payload.
    """

    def _turn(
        timestamp: "str",
        usage: "dict[str, object] | None" = None,
        provider: "str" = "openai",
        model: "str" = "gpt-5",
    ) -> "dict[str, object]":
        message: "dict[str, object]" = {
            "role": "assistant",
            "provider": provider,
            "model": model,
        }
        if usage is not None:
            message["usage"] = usage
        return {"timestamp": timestamp, "message": message}

    return _turn
