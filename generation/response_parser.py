"""
JSON extraction from model output.

Models are asked for a bare JSON object but often wrap it in ``` fences or
add a sentence around it. parse_json_object strips fences, slices from the
first "{" to the last "}" and loads the result.
"""

import json
import re

from generation.errors import MalformedResponseError


def extract_json_obj(raw: str) -> dict:
    """Parse the JSON object inside raw model text. Raises ValueError on failure."""
    raw = (raw or "").strip()
    raw = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.MULTILINE)
    raw = re.sub(r"\s*```$", "", raw, flags=re.MULTILINE)
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start == -1 or end == 0:
        raise ValueError(f"No JSON object found: {raw[:200]}")
    data = json.loads(raw[start:end])
    if not isinstance(data, dict):
        raise ValueError("Top-level JSON value is not an object")
    return data


def parse_json_object(raw: str, stage: str) -> dict:
    """extract_json_obj, re-raised as MalformedResponseError tagged with the stage."""
    try:
        return extract_json_obj(raw)
    except ValueError as e:
        # json.JSONDecodeError is a ValueError
        raise MalformedResponseError(stage, f"unparseable model output: {e}", raw=raw) from e
