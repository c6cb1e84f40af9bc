"""Shared JSON file loading for input adapters."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class ParseError(Exception):
    """Raised when an input file is unreadable, malformed, or structurally invalid."""


def load_json(path: Path, hint: str = "") -> object:
    from pathlib import Path as _Path

    p = _Path(str(path))
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ParseError(f"File not found: {path}") from None
    except OSError as e:
        raise ParseError(f"Cannot read file {path}: {e}") from None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        message = f"{path} is not valid JSON."
        if hint:
            message = f"{message} {hint}"
        raise ParseError(message) from e
