"""
Record Text Templates

Renders updates and memory candidates as Markdown: the entry block that is
filed into a knowledge document, and the summaries shown to reviewers and
submitters.
"""

from typing import Iterable, TYPE_CHECKING

if TYPE_CHECKING:
    from .records import ExtractedMemory, MemoryCandidate, Update


ENTRY_TEMPLATE = """
### {title} ({date})
- **Type**: {type}
- **Update**: {value}
- **From**: <@{submitted_by}>
- **Approved**: {date} (ID: {id})
"""

UPDATE_SUMMARY_TEMPLATE = """*ID:* `{id}`
*Type:* {type}
*Target:* {target}
*Value:* {value}
*From:* <@{submitted_by}>
*Time:* {submitted_at}"""


def render_update_entry(update: "Update", date: str, value: str = None) -> str:
    """Markdown block inserted into the target section.

    Starts and ends with a newline so it can be spliced in front of the
    next heading without touching the surrounding text.
    """
    return ENTRY_TEMPLATE.format(
        title=update.target or update.type,
        date=date,
        type=update.type,
        value=update.value if value is None else value,
        submitted_by=update.submitted_by,
        id=update.id,
    )


def render_update_summary(update: "Update") -> str:
    return UPDATE_SUMMARY_TEMPLATE.format(
        id=update.id,
        type=update.type,
        target=update.target or "-",
        value=update.value,
        submitted_by=update.submitted_by,
        submitted_at=update.submitted_at,
    )


def render_memory_line(memory: "ExtractedMemory") -> str:
    """One reviewer-editable line: ``type: content (context: ...) #tag``"""
    type_value = getattr(memory.type, "value", memory.type)
    line = f"{type_value}: {memory.content}"
    if memory.context:
        line += f" (context: {memory.context})"
    if memory.tags:
        line += " " + " ".join(f"#{tag}" for tag in memory.tags)
    return line


def render_memory_lines(memories: Iterable["ExtractedMemory"]) -> str:
    return "\n".join(render_memory_line(m) for m in memories)


def render_candidate_summary(candidate: "MemoryCandidate") -> str:
    lines = [
        f"*ID:* `{candidate.id}`",
        f"*Channel:* {candidate.channel_name or candidate.channel or '-'}",
        f"*From:* <@{candidate.submitted_by}>",
    ]
    if candidate.thread_url:
        lines.append(f"*Thread:* <{candidate.thread_url}|view>")
    lines.append("")
    lines.append(f"*Extracted memories ({len(candidate.extracted_memories)}):*")
    for i, memory in enumerate(candidate.extracted_memories, 1):
        lines.append(f"{i}. {render_memory_line(memory)}")
    return "\n".join(lines)
