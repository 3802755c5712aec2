from __future__ import annotations

import math
import re

from vidtsx_mcp.errors import ConfigNotFound
from vidtsx_mcp.types import CompositionDescriptor

CONFIG_HINT = (
    "Could not find compositionConfig in TSX file.\n\n"
    "Make sure your file exports a compositionConfig object like:\n\n"
    "export const compositionConfig = {\n"
    '  id: "MyComposition",\n'
    "  width: 1920,\n"
    "  height: 1080,\n"
    "  fps: 30,\n"
    "  durationInFrames: 150,\n"
    "};"
)

_DECLARATION = re.compile(
    r"(?:export\s+)?(?:const|let|var)\s+compositionConfig\b\s*(?::[^=]+)?=\s*\{"
)
_ENTRY = re.compile(r"""^\s*(?:"([^"]+)"|'([^']+)'|([A-Za-z_$][\w$]*))\s*:\s*(.+?)\s*$""", re.S)
_STRING = re.compile(r"""^(?:"((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'|`((?:[^`$\\]|\\.)*)`)$""")
_ESCAPE = re.compile(r"\\(.)")
_INTEGER = re.compile(r"^\d+$")
_NUMBER = re.compile(r"^\d+(?:\.\d+)?$|^\.\d+$")


def _config_block(text: str) -> str:
    """Return the body of the compositionConfig object literal.

    Braces inside string literals and comments are ignored; nested objects
    stay part of the body.
    """
    match = _DECLARATION.search(text)
    if match is None:
        raise ConfigNotFound(CONFIG_HINT)

    depth = 1
    quote: str | None = None
    start = match.end()
    index = start
    while index < len(text):
        char = text[index]
        if quote:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in "\"'`":
            quote = char
        elif text.startswith("//", index):
            newline = text.find("\n", index)
            index = len(text) if newline == -1 else newline
            continue
        elif text.startswith("/*", index):
            end = text.find("*/", index + 2)
            index = len(text) if end == -1 else end + 2
            continue
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index]
        index += 1
    raise ConfigNotFound(CONFIG_HINT)


def _strip_comments(body: str) -> str:
    out: list[str] = []
    quote: str | None = None
    index = 0
    while index < len(body):
        char = body[index]
        if quote:
            out.append(char)
            if char == "\\" and index + 1 < len(body):
                out.append(body[index + 1])
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in "\"'`":
            quote = char
            out.append(char)
        elif body.startswith("//", index):
            newline = body.find("\n", index)
            index = len(body) if newline == -1 else newline
            continue
        elif body.startswith("/*", index):
            end = body.find("*/", index + 2)
            index = len(body) if end == -1 else end + 2
            continue
        else:
            out.append(char)
        index += 1
    return "".join(out)


def _split_entries(body: str) -> list[str]:
    entries: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    escaped = False
    for char in body:
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
        elif char in "\"'`":
            quote = char
        elif char in "{[(":
            depth += 1
        elif char in "}])":
            depth -= 1
        elif char == "," and depth == 0:
            entries.append("".join(current))
            current = []
            continue
        current.append(char)
    entries.append("".join(current))
    return [entry for entry in entries if entry.strip()]


def parse_config_entries(body: str) -> dict[str, str]:
    """Parse ``key: value`` pairs at the top level of an object body.

    Values are returned as raw source text; later duplicates win.
    """
    body = _strip_comments(body)
    values: dict[str, str] = {}
    for entry in _split_entries(body):
        match = _ENTRY.match(entry)
        if match is None:
            continue
        key = match.group(1) or match.group(2) or match.group(3)
        raw = match.group(4)
        if raw.endswith(" as const"):
            raw = raw[: -len(" as const")].rstrip()
        values[key] = raw
    return values


def _string(values: dict[str, str], key: str) -> str:
    match = _STRING.match(values.get(key, ""))
    if match is None:
        raise ConfigNotFound(f"compositionConfig.{key} must be a string literal.\n\n{CONFIG_HINT}")
    value = _ESCAPE.sub(r"\1", next(group for group in match.groups() if group is not None))
    if not value:
        raise ConfigNotFound(f"compositionConfig.{key} must not be empty.\n\n{CONFIG_HINT}")
    return value


def _positive_int(values: dict[str, str], key: str) -> int:
    raw = values.get(key, "").replace("_", "")
    if not _INTEGER.match(raw) or int(raw) <= 0:
        raise ConfigNotFound(f"compositionConfig.{key} must be a positive integer.\n\n{CONFIG_HINT}")
    return int(raw)


def extract_composition_config(text: str) -> CompositionDescriptor:
    """Read the compositionConfig descriptor out of a TSX source file.

    Pure text extraction; the source is never executed. Requires ``id``,
    ``width``, ``height``, ``fps`` and one of ``durationInFrames`` or
    ``durationInSeconds`` (``seconds * fps`` rounded half up).

    Raises:
        ConfigNotFound: If the block or a required field is missing.
    """
    values = parse_config_entries(_config_block(text))

    composition_id = _string(values, "id")
    width = _positive_int(values, "width")
    height = _positive_int(values, "height")
    fps = _positive_int(values, "fps")

    if "durationInFrames" in values:
        duration_in_frames = _positive_int(values, "durationInFrames")
    elif "durationInSeconds" in values:
        raw = values["durationInSeconds"].replace("_", "")
        if not _NUMBER.match(raw):
            raise ConfigNotFound(
                f"compositionConfig.durationInSeconds must be a number.\n\n{CONFIG_HINT}"
            )
        duration_in_frames = math.floor(float(raw) * fps + 0.5)
        if duration_in_frames <= 0:
            raise ConfigNotFound(
                f"compositionConfig.durationInSeconds is too short.\n\n{CONFIG_HINT}"
            )
    else:
        raise ConfigNotFound(
            f"compositionConfig needs durationInFrames or durationInSeconds.\n\n{CONFIG_HINT}"
        )

    return CompositionDescriptor(
        id=composition_id,
        width=width,
        height=height,
        fps=fps,
        duration_in_frames=duration_in_frames,
    )
