"""Prompt catalog loaded from ``prompts/prompts.json``.

Entries are addressed by dotted keys (``"answer.system"``) and rendered with
``string.Template`` placeholders. The file is re-read when its mtime changes.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
_entries: dict[str, str] | None = None
_entries_mtime_ns: int | None = None


def _flatten(node: dict[str, Any], prefix: str = "") -> dict[str, str]:
    flat: dict[str, str] = {}
    for name, value in node.items():
        key = f"{prefix}{name}"
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix=f"{key}."))
        elif isinstance(value, str):
            flat[key] = value
        else:
            raise ValueError(f"Prompt entry '{key}' must be a string or an object.")
    return flat


def _load_entries() -> dict[str, str]:
    global _entries, _entries_mtime_ns
    mtime_ns = PROMPTS_PATH.stat().st_mtime_ns
    if _entries is not None and _entries_mtime_ns == mtime_ns:
        return _entries

    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Prompt catalog must be a JSON object.")
    _entries = _flatten(payload)
    _entries_mtime_ns = mtime_ns
    return _entries


def prompt_keys() -> list[str]:
    return sorted(_load_entries())


def render_prompt(key: str, **values: Any) -> str:
    entries = _load_entries()
    if key not in entries:
        raise KeyError(f"Prompt key not found: {key}")
    try:
        return Template(entries[key]).substitute(**values)
    except KeyError as exc:
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc


def clear_prompt_cache() -> None:
    global _entries, _entries_mtime_ns
    _entries = None
    _entries_mtime_ns = None
