from __future__ import annotations

import json
import re
from typing import Any, Union


class FieldPathError(ValueError):
    pass


class _Missing:
    pass


MISSING = _Missing()

# .name | ["quoted key"] | [index]
_TOKEN_RE = re.compile(r'\.(?P<name>[A-Za-z_$][\w$\-]*)|\[\s*"(?P<quoted>(?:[^"\\]|\\.)*)"\s*\]|\[\s*(?P<index>-?\d+)\s*\]')

Segment = Union[str, int]


def parse_field_path(expr: str) -> tuple[Segment, ...]:
    """Parse a jq-style field path such as `.version`, `.build.info[0].tag` or `.["a.b"]`.

    A bare `.` selects the whole document; the leading dot may be omitted.
    """
    text = (expr or "").strip()
    if not text:
        raise FieldPathError("Field path is empty.")
    if text == ".":
        return ()
    if not text.startswith((".", "[")):
        text = "." + text
    # jq allows `.["key"]`; treat it the same as `["key"]`.
    text = text.replace('.["', '["')

    segments: list[Segment] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise FieldPathError(f"Invalid field path '{expr}' near position {pos}.")
        if m.group("name") is not None:
            segments.append(m.group("name"))
        elif m.group("quoted") is not None:
            segments.append(json.loads(f'"{m.group("quoted")}"'))
        else:
            segments.append(int(m.group("index")))
        pos = m.end()
    return tuple(segments)


def resolve(document: Any, segments: tuple[Segment, ...]) -> Any:
    """Walk a decoded JSON document; returns MISSING when any step does not apply."""
    cur = document
    for seg in segments:
        if isinstance(seg, int):
            if not isinstance(cur, list):
                return MISSING
            try:
                cur = cur[seg]
            except IndexError:
                return MISSING
        else:
            if not isinstance(cur, dict) or seg not in cur:
                return MISSING
            cur = cur[seg]
    return cur


def render_token(value: Any) -> str | None:
    """Render a resolved value the way `jq -r` prints it; None for null/empty."""
    if value is None or value is MISSING:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return json.dumps(value)
    return json.dumps(value, separators=(",", ":"), sort_keys=False)


def extract(document: Any, expr: str) -> str | None:
    try:
        segments = parse_field_path(expr)
    except FieldPathError:
        return None
    return render_token(resolve(document, segments))
