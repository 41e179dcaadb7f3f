"""
Steward Record Schemas

Conversation turns, pending updates, memory candidates and approved memories.
"""

from .records import (
    ConversationTurn,
    ExtractedMemory,
    Memory,
    MemoryCandidate,
    MemoryType,
    RecordStatus,
    Role,
    ThreadMessage,
    Update,
    UpdateSource,
    generate_record_id,
    generate_update_id,
    utc_now_iso,
)
from .templates import (
    render_candidate_summary,
    render_memory_line,
    render_memory_lines,
    render_update_entry,
    render_update_summary,
)

__all__ = [
    "ConversationTurn",
    "ExtractedMemory",
    "Memory",
    "MemoryCandidate",
    "MemoryType",
    "RecordStatus",
    "Role",
    "ThreadMessage",
    "Update",
    "UpdateSource",
    "generate_record_id",
    "generate_update_id",
    "utc_now_iso",
    "render_candidate_summary",
    "render_memory_line",
    "render_memory_lines",
    "render_update_entry",
    "render_update_summary",
]
