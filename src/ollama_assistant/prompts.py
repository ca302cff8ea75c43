"""Prompt assembly from plain editor-supplied strings.

Nothing here reads the IDE; callers pass the selection, active document and
open documents they already have.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

MAX_CODE_LENGTH = 1500
TRUNCATION_MARKER = "// [Truncated due to length limits]"


class ContextMode(enum.Enum):
    """Which editor context accompanies the user's request."""

    NONE = "none"
    SELECTION = "selection"
    FILE = "file"
    OPEN_FILES = "open_files"


@dataclass
class OpenDocument:
    file_name: str
    text: str


@dataclass
class EditorContext:
    """Snapshot of what the editor can tell us, as plain strings."""

    project_name: str | None = None
    project_properties: str = ""
    selection: str = ""
    active_document_name: str | None = None
    active_document_text: str = ""
    open_documents: list[OpenDocument] = field(default_factory=list)


def truncate_code(text: str, max_length: int = MAX_CODE_LENGTH) -> str:
    """Cut *text* at a line boundary so it stays under *max_length* chars."""
    if len(text) <= max_length:
        return text
    kept: list[str] = []
    total = 0
    for line in text.splitlines():
        if total + len(line) > max_length:
            break
        kept.append(line)
        total += len(line) + 1  # newline
    kept.append(TRUNCATION_MARKER)
    return "\n".join(kept)


def expand_command(user_input: str) -> str:
    """Expand shorthand requests (explain / refactor / add comments)."""
    normalized = user_input.strip().lower()
    if normalized == "explain" or normalized.startswith("explain this"):
        return "Please explain what this code does."
    if normalized.startswith("refactor"):
        return "Refactor this code to be cleaner or more efficient."
    if normalized.startswith("add comments") or "document" in normalized:
        return "Add inline comments to explain the logic in this code."
    return user_input


def build_chat_prompt(
    user_input: str,
    mode: ContextMode = ContextMode.NONE,
    context: EditorContext | None = None,
) -> str:
    """Assemble the full prompt stored in chat history for one request."""
    ctx = context or EditorContext()
    lines = ["You are an AI code assistant running in Visual Studio."]
    if ctx.project_name:
        lines.append(
            f"The active project is named '{ctx.project_name}' "
            "and has the following properties:"
        )
        lines.append(ctx.project_properties)
    else:
        lines.append("The user is editing code in a Visual Studio project.")
    lines.append("\n\n")

    if mode is ContextMode.SELECTION and ctx.selection.strip():
        lines.append(
            f"Here is the relevant code:\n\n```{truncate_code(ctx.selection)}```"
        )
    elif mode is ContextMode.FILE and ctx.active_document_name:
        lines.append(
            f"The relevant code is in file '{ctx.active_document_name}' "
            f"which contains :\n\n```{ctx.active_document_text}```"
        )
    elif mode is ContextMode.OPEN_FILES and ctx.open_documents:
        lines.append("Please use the following files for context:")
        for doc in ctx.open_documents:
            lines.append(f"File '{doc.file_name}':\n```{doc.text}```\n\n")

    lines.append("\n\n### USER REQUEST")
    lines.append(expand_command(user_input))
    return "\n".join(lines) + "\n"


def build_error_prompt(
    level: str,
    description: str,
    file_name: str,
    project: str,
    file_text: str,
    line: int,
    column: int,
) -> str:
    """Prompt asking for a fix to a compiler diagnostic."""
    file_lines = file_text.splitlines()
    error_line = file_lines[line - 1] if 0 < line <= len(file_lines) else ""
    return "\n".join([
        "You are an AI code assistant running in Visual Studio.",
        f"The compiler is reporting an '{level}' with the description '{description}'",
        f"The error description is in file '{file_name}' which is part of the "
        f"project '{project}'",
        "",
        "Here is the contents of the file:",
        f"```{file_text}```",
        "",
        f"The error is on line {line} column {column}.",
        "Here is that line of code:",
        f"```{error_line}```",
        "",
        "I need you to provide a solution to this error.",
    ]) + "\n"


def build_quick_info_prompt(word: str, line_text: str) -> str:
    """Prompt explaining one identifier in its line of code."""
    return (
        f'Please explain the usage of "{word}" within the following line of code: '
        f"```{line_text}```"
    )
