"""
Tools module for agent capabilities.
"""

from .base import BaseTool, Tool, ToolParameter, ToolResult
from .registry import ToolRegistry
from .file_tool import FileManager, create_file_tools, truncate_text_by_tokens
from .shell_tool import BackgroundShellManager, create_shell_tools
from .note_tool import NoteStore, create_note_tools

__all__ = [
    "BaseTool",
    "Tool",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "FileManager",
    "create_file_tools",
    "truncate_text_by_tokens",
    "BackgroundShellManager",
    "create_shell_tools",
    "NoteStore",
    "create_note_tools",
]
