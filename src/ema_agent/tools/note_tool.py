"""
Session Notes - let the agent record and recall important information.

Notes are stored as a JSON list of {timestamp, category, content} and survive
history summarization, so the agent can keep facts it will need later.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .base import Tool, ToolParameter, ToolResult

logger = logging.getLogger(__name__)


class NoteStore:
    """JSON-file backed note storage. The file is created on first write."""

    def __init__(self, memory_file: str):
        self.memory_file = Path(memory_file).expanduser().resolve()

    def load(self) -> list[dict]:
        """Load all notes. A missing file means no notes."""
        if not self.memory_file.exists():
            return []
        notes = json.loads(self.memory_file.read_text(encoding="utf-8"))
        return notes if isinstance(notes, list) else []

    def save(self, notes: list[dict]) -> None:
        self.memory_file.parent.mkdir(parents=True, exist_ok=True)
        self.memory_file.write_text(
            json.dumps(notes, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

    def add(self, content: str, category: str = "general") -> dict:
        """Append a timestamped note."""
        note = {
            "timestamp": datetime.now().isoformat(),
            "category": category,
            "content": content,
        }
        notes = self.load()
        notes.append(note)
        self.save(notes)
        return note

    def search(self, category: Optional[str] = None) -> list[dict]:
        notes = self.load()
        if category:
            notes = [n for n in notes if n.get("category") == category]
        return notes


def create_note_tools(memory_file: str) -> list[Tool]:
    """Create `record_note` and `recall_notes` sharing one note file."""
    store = NoteStore(memory_file)

    async def record_note_handler(content: str, category: str = "general") -> ToolResult:
        try:
            store.add(content, category or "general")
            return ToolResult(
                success=True,
                content=f"Recorded note: {content} (category: {category or 'general'})",
            )
        except Exception as e:
            logger.error(f"Failed to record note: {e}")
            return ToolResult(success=False, error=f"Failed to record note: {e}")

    async def recall_notes_handler(category: Optional[str] = None) -> ToolResult:
        try:
            if not store.load():
                return ToolResult(success=True, content="No notes recorded yet.")

            notes = store.search(category)
            if not notes:
                return ToolResult(success=True, content=f"No notes found in category: {category}")

            lines = [
                f"{i}. [{n.get('category', 'general')}] {n.get('content', '')}\n"
                f"   (recorded at {n.get('timestamp', 'unknown')})"
                for i, n in enumerate(notes, start=1)
            ]
            return ToolResult(success=True, content="Recorded Notes:\n" + "\n".join(lines))
        except Exception as e:
            return ToolResult(success=False, error=f"Failed to recall notes: {e}")

    record_note = Tool(
        name="record_note",
        description=(
            "Record important information as session notes for future reference. "
            "Use this to record key facts, user preferences, decisions, or context "
            "that should be recalled later. Each note is timestamped."
        ),
        parameters=[
            ToolParameter(
                name="content",
                param_type="string",
                description="The information to record as a note. Be concise but specific.",
                required=True,
            ),
            ToolParameter(
                name="category",
                param_type="string",
                description="Optional category/tag (e.g., 'user_preference', 'project_info', 'decision')",
                required=False,
            ),
        ],
        handler=record_note_handler,
    )

    recall_notes = Tool(
        name="recall_notes",
        description=(
            "Recall previously recorded session notes, optionally filtered by category."
        ),
        parameters=[
            ToolParameter(
                name="category",
                param_type="string",
                description="Optional: filter notes by category",
                required=False,
            ),
        ],
        handler=recall_notes_handler,
    )

    return [record_note, recall_notes]
