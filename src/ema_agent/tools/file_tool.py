"""
File Operations Tool - Read, write, and edit files.

Relative paths resolve against the agent's workspace directory.
"""

import logging
from pathlib import Path
from typing import Optional

from ..tokens import count_tokens
from .base import Tool, ToolParameter, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 32_000


def truncate_text_by_tokens(text: str, max_tokens: int = DEFAULT_MAX_TOKENS) -> str:
    """Truncate text to roughly `max_tokens`, keeping its head and tail.

    The cut points snap to line boundaries and a note with the original token
    count replaces the dropped middle.
    """
    try:
        token_count = count_tokens(text)
    except Exception as e:
        logger.warning(f"Tokenizer unavailable, estimating by characters: {e}")
        token_count = int(len(text) / 2.5)

    if token_count <= max_tokens:
        return text

    ratio = token_count / (len(text) or 1)
    # Half the budget for each end, with a 5% safety margin
    chars_per_half = int((max_tokens / 2 / ratio) * 0.95)

    head = text[:chars_per_half]
    last_newline = head.rfind("\n")
    if last_newline > 0:
        head = head[:last_newline]

    tail = text[-chars_per_half:] if chars_per_half > 0 else ""
    first_newline = tail.find("\n")
    if first_newline > 0:
        tail = tail[first_newline + 1:]

    note = f"\n\n... [Content truncated: {token_count} tokens -> ~{max_tokens} tokens limit] ...\n\n"
    return head + note + tail


class FileManager:
    """Manages file operations rooted at a workspace."""

    def __init__(self, workspace_dir: str, max_tokens: int = DEFAULT_MAX_TOKENS):
        self.workspace_dir = Path(workspace_dir).expanduser().resolve()
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        self.max_tokens = max_tokens

        self.blocked_paths = {
            "/etc/shadow", ".ssh", ".gnupg", ".aws",
        }

    def _is_safe_path(self, path: Path) -> bool:
        """Check that a path does not touch credential stores."""
        path_str = str(path).lower()
        for blocked in self.blocked_paths:
            if blocked.lower() in path_str:
                logger.warning(f"Blocked path pattern: {path}")
                return False
        return True

    def _normalize_path(self, path: str) -> Path:
        """Normalize a path relative to workspace."""
        p = Path(path).expanduser()

        if not p.is_absolute():
            p = self.workspace_dir / p

        p = p.resolve()
        if not self._is_safe_path(p):
            raise PermissionError(f"Access denied: {path}")
        return p

    def read_file(self, path: str, offset: Optional[int] = None, limit: Optional[int] = None) -> str:
        """Read a file as numbered lines (`LINE_NUMBER|LINE_CONTENT`, 1-indexed)."""
        file_path = self._normalize_path(path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        if not file_path.is_file():
            raise IsADirectoryError(f"Path is a directory: {path}")

        lines = file_path.read_text(encoding="utf-8").split("\n")

        start = max((offset or 1) - 1, 0)
        end = min(start + limit, len(lines)) if limit else len(lines)

        numbered = [
            f"{start + i + 1:>6}|{line.rstrip(chr(13))}"
            for i, line in enumerate(lines[start:end])
        ]
        return truncate_text_by_tokens("\n".join(numbered), self.max_tokens)

    def write_file(self, path: str, content: str) -> str:
        """Write content to a file, creating parent directories."""
        file_path = self._normalize_path(path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return f"Successfully wrote to {file_path}"

    def edit_file(self, path: str, old_str: str, new_str: str) -> str:
        """Replace every occurrence of `old_str` with `new_str`."""
        file_path = self._normalize_path(path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {path}")

        content = file_path.read_text(encoding="utf-8")
        if old_str not in content:
            raise ValueError(f"Text not found in file: {old_str}")

        file_path.write_text(content.replace(old_str, new_str), encoding="utf-8")
        return f"Successfully edited {file_path}"


def create_file_tools(workspace_dir: str) -> list[Tool]:
    """Create file operation tools bound to a workspace."""
    manager = FileManager(workspace_dir)

    async def read_file_handler(path: str, offset: Optional[int] = None, limit: Optional[int] = None) -> ToolResult:
        try:
            return ToolResult(success=True, content=manager.read_file(path, offset, limit))
        except Exception as e:
            return ToolResult(success=False, error=str(e))

    async def write_file_handler(path: str, content: str) -> ToolResult:
        try:
            return ToolResult(success=True, content=manager.write_file(path, content))
        except Exception as e:
            return ToolResult(success=False, error=str(e))

    async def edit_file_handler(path: str, old_str: str, new_str: str) -> ToolResult:
        try:
            return ToolResult(success=True, content=manager.edit_file(path, old_str, new_str))
        except Exception as e:
            return ToolResult(success=False, error=str(e))

    read_file = Tool(
        name="read_file",
        description=(
            "Read file contents from the filesystem. Output always includes line numbers "
            "in format 'LINE_NUMBER|LINE_CONTENT' (1-indexed). Supports reading partial content "
            "by specifying line offset and limit for large files."
        ),
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Absolute or relative path to the file",
                required=True,
            ),
            ToolParameter(
                name="offset",
                param_type="integer",
                description="Starting line number (1-indexed). Use for large files to read from specific line",
                required=False,
            ),
            ToolParameter(
                name="limit",
                param_type="integer",
                description="Number of lines to read. Use with offset for large files to read in chunks",
                required=False,
            ),
        ],
        handler=read_file_handler,
    )

    write_file = Tool(
        name="write_file",
        description=(
            "Write content to a file. Will overwrite existing files completely. "
            "For existing files, you should read the file first using read_file."
        ),
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Absolute or relative path to the file",
                required=True,
            ),
            ToolParameter(
                name="content",
                param_type="string",
                description="Complete content to write (will replace existing content)",
                required=True,
            ),
        ],
        handler=write_file_handler,
    )

    edit_file = Tool(
        name="edit_file",
        description=(
            "Perform exact string replacement in a file. The old_str must match exactly. "
            "You must read the file first before editing. Preserve exact indentation from the source."
        ),
        parameters=[
            ToolParameter(
                name="path",
                param_type="string",
                description="Absolute or relative path to the file",
                required=True,
            ),
            ToolParameter(
                name="old_str",
                param_type="string",
                description="Exact string to find and replace",
                required=True,
            ),
            ToolParameter(
                name="new_str",
                param_type="string",
                description="Replacement string",
                required=True,
            ),
        ],
        handler=edit_file_handler,
    )

    return [read_file, write_file, edit_file]
