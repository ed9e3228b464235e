from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_FENCE_BLOCK = re.compile(r"```[\w-]*\s*\n?(.*?)```", re.DOTALL)
_LEADING_FENCE = re.compile(r"^```[\w-]*[ \t]*\n?")


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Unparsed:
    raw: str
    reason: str


ParseResult = Parsed[T] | Unparsed


def strip_code_fence(text: str) -> str:
    """Remove a code fence the model wrapped around the whole output.

    Handles ```markdown, ```md and bare ``` openers; text that is not
    fenced at both ends is only trimmed.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _LEADING_FENCE.sub("", cleaned, count=1)
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def extract_json(text: str, expect: type = dict) -> Any:
    """Pull the first JSON object (or array) out of an LLM response.

    Tries a fenced block first, then the outermost braces/brackets.
    Raises ValueError if nothing decodes to the expected type.
    """
    candidates: list[str] = []
    fence = _FENCE_BLOCK.search(text)
    if fence:
        candidates.append(fence.group(1).strip())
    candidates.append(text)

    open_char, close_char = ("[", "]") if expect is list else ("{", "}")
    for chunk in candidates:
        start = chunk.find(open_char)
        end = chunk.rfind(close_char)
        if start == -1 or end <= start:
            continue
        try:
            data = json.loads(chunk[start : end + 1])
        except json.JSONDecodeError:
            continue
        if isinstance(data, expect):
            return data

    raise ValueError(f"No JSON {expect.__name__} found in response: {text[:200]}")
