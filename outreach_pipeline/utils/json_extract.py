from __future__ import annotations

import json
import re


class JSONExtractionError(ValueError):
    pass


_FENCE_RE = re.compile(r"```(?:json)?\s*(?P<body>.*?)```", re.DOTALL | re.IGNORECASE)


def extract_first_json_object(text: str) -> dict:
    """Parse the first JSON object in an LLM response.

    Accepts a bare object, an object inside a ```json fence, or an object with
    prose around it. Anything that is not a JSON object is an error.
    """
    s = (text or "").strip()
    fenced = _FENCE_RE.search(s)
    if fenced is not None:
        s = fenced.group("body").strip()

    decoder = json.JSONDecoder()
    idx = s.find("{")
    last_error: json.JSONDecodeError | None = None
    while idx != -1:
        try:
            obj, _end = decoder.raw_decode(s, idx)
        except json.JSONDecodeError as e:
            last_error = e
            idx = s.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            return obj
        idx = s.find("{", idx + 1)

    if last_error is not None:
        raise JSONExtractionError(f"Invalid JSON: {last_error}")
    raise JSONExtractionError("No JSON object found in response.")
