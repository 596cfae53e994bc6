"""Helpers for pulling JSON out of free-form model replies.

Models are asked for JSON but frequently wrap it in code fences or prose.
Every AI feature goes through :func:`parse_model_json` so the recovery and
fallback rules live in one place.
"""
import copy
import json
import logging
import re
from typing import Any, Dict

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?", flags=re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"```$")


def strip_code_fences(raw_text: str) -> str:
    text = (raw_text or "").strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text).strip()
        text = _FENCE_CLOSE.sub("", text).strip()
    return text


def extract_json_object(raw_text: str) -> str:
    """Return the first balanced ``{...}`` block in ``raw_text``."""
    if not raw_text:
        raise ValueError("Empty response from model")
    text = strip_code_fences(raw_text)
    start = text.find("{")
    if start == -1:
        raise ValueError("No JSON object found in response")
    depth = 0
    in_string = False
    escape = False
    for index in range(start, len(text)):
        char = text[index]
        if char == '"' and not escape:
            in_string = not in_string
        if in_string and char == "\\" and not escape:
            escape = True
            continue
        escape = False
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    raise ValueError("Incomplete JSON object in response")


def parse_model_json(raw_text: str, fallback: Dict[str, Any]) -> Dict[str, Any]:
    """Parse a JSON object out of a model reply, or return a copy of ``fallback``."""
    try:
        parsed = json.loads(extract_json_object(raw_text))
    except (ValueError, TypeError) as exc:
        logger.warning("Model reply was not valid JSON, using fallback: %s", exc)
        return copy.deepcopy(fallback)
    if not isinstance(parsed, dict):
        return copy.deepcopy(fallback)
    return parsed
