"""Bounded error excerpts from build logs."""

import re
from typing import List, Optional, Sequence

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

ERROR_MARKERS = [
    re.compile(r"^\s*error(\[E\d+\])?:"),  # rustc / cargo
    re.compile(r":\d+(:\d+)?:\s*(fatal )?error:"),  # gcc / clang
    re.compile(r"\berror (C|LNK)\d+\b"),  # MSVC compiler / linker
    re.compile(r"\bfatal error\b", re.IGNORECASE),
    re.compile(r"^CMake Error"),
    re.compile(r"undefined reference to|linker command failed|ld returned"),
]

# Lines after a marker that still belong to the same diagnostic
DEFAULT_CONTEXT_LINES = 8


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def is_error_line(text: str) -> bool:
    """True if the line starts a compiler, linker or cmake diagnostic."""
    text = strip_ansi(text)
    return any(marker.search(text) for marker in ERROR_MARKERS)


def extract_error_excerpt(
    lines: Sequence[str],
    max_lines: int = 40,
    context_lines: int = DEFAULT_CONTEXT_LINES,
) -> Optional[str]:
    """
    Pick the lines most useful for fixing a failed build.

    Each diagnostic contributes its marker line plus following context up to
    the next blank line or the next diagnostic. When no diagnostic is found
    the tail of the log is used instead.

    Args:
        lines: Build output lines in order
        max_lines: Upper bound on excerpt length
        context_lines: Context lines kept after each marker

    Returns:
        Excerpt text, or None for an empty log
    """
    cleaned = [strip_ansi(line) for line in lines]
    if not any(line.strip() for line in cleaned):
        return None

    excerpt: List[str] = []
    index = 0
    while index < len(cleaned) and len(excerpt) < max_lines:
        if not is_error_line(cleaned[index]):
            index += 1
            continue

        if excerpt:
            excerpt.append("")
        excerpt.append(cleaned[index])
        index += 1

        taken = 0
        while (
            index < len(cleaned)
            and taken < context_lines
            and cleaned[index].strip()
            and not is_error_line(cleaned[index])
        ):
            excerpt.append(cleaned[index])
            index += 1
            taken += 1

    if excerpt:
        return "\n".join(excerpt[:max_lines]).strip("\n")

    tail = [line for line in cleaned if line.strip()][-max_lines:]
    return "\n".join(tail)
