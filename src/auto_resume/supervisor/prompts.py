"""Completion markers: rendering, payload wrapping and detection in agent output."""

from __future__ import annotations

import string

DEFAULT_COMPLETION_MARKER = "###TASK_COMPLETE:{task_id}###"

_LEADING_DECORATION = " \t •●⏺◆◇○*-–—>›»│┃|$:"
_TRAILING_DECORATION = " \t │┃|"
_MIN_ECHO_CHARS = 8


def validate_marker_template(template: str) -> None:
    fields = {name for _, name, _, _ in string.Formatter().parse(template) if name is not None}
    if fields - {"task_id"}:
        raise ValueError(f"Completion marker may only reference {{task_id}}: {template!r}")
    if not template.strip():
        raise ValueError("Completion marker must not be empty.")


def render_marker(template: str, task_id: str) -> str:
    validate_marker_template(template)
    return template.format(task_id=task_id).strip()


def wrap_payload(payload: str, marker: str) -> str:
    """Instruction text sent to the agent for one task."""

    body = " ".join(payload.split())
    return (
        f"{body} -- When this task is complete, output exactly this line on its own, "
        f'without the quotes: "{marker}"'
    )


def normalize_line(line: str) -> str:
    return line.lstrip(_LEADING_DECORATION).rstrip(_TRAILING_DECORATION)


def find_completion(chunk: str, marker: str) -> bool:
    """True when some line of ``chunk`` is the marker, ignoring bullets and prompt glyphs."""

    return any(normalize_line(line) == marker for line in chunk.splitlines())


def strip_echo(chunk: str, sent_text: str | None) -> str:
    """Drop lines that merely echo text we typed into the session."""

    if not sent_text:
        return chunk
    kept = []
    for line in chunk.splitlines():
        normalized = normalize_line(line)
        if len(normalized) >= _MIN_ECHO_CHARS and normalized in sent_text:
            continue
        kept.append(line)
    return "\n".join(kept)
