"""
Document Patcher

Files approved updates into Markdown knowledge documents.

The document is treated as an opaque string: an entry is spliced in at the
end of its target section (right before the next heading of the same or a
higher level) and nothing else changes, apart from the optional
"last updated" marker. Writes replace the whole file atomically.
"""

import logging
import os
import re
import shutil
import tempfile
import threading
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple

from ..common.errors import KnowledgeTargetError
from ..common.knowledge_base import KnowledgeBase
from ..common.schemas.records import Update
from ..common.schemas.templates import render_update_entry

logger = logging.getLogger("steward.scribe.patcher")


# Speech-to-text and typing slips of the product name
DEFAULT_CORRECTIONS: Sequence[Tuple[str, str]] = (
    ("Arisco", "IrisGo"),
    (r"Iris\s+Go", "IrisGo"),
    ("IRISGO", "IrisGo"),
    ("irisgo", "IrisGo"),
    ("IrisGO", "IrisGo"),
    ("Arisgo", "IrisGo"),
    ("Irisco", "IrisGo"),
    ("Erisgo", "IrisGo"),
)

DEFAULT_LAST_UPDATED_PREFIXES = ("> Last updated: ", "> 最後更新：")

_FENCE_RE = re.compile(r"^\s*(```|~~~)")
_HEADING_RE = re.compile(r"^(#+)\s")


@dataclass
class PatchResult:
    text: str
    section_found: bool


@dataclass
class FilingResult:
    """Where an approved update ended up"""
    file: str
    section: str
    path: Path
    section_found: bool


def sanitize_content(text: str, corrections: Sequence[Tuple[str, str]] = DEFAULT_CORRECTIONS) -> str:
    """Apply the typo-correction table (case-insensitive, whole words)"""
    if not text:
        return text
    for pattern, replacement in corrections:
        text = re.sub(rf"\b{pattern}\b", replacement, text, flags=re.IGNORECASE)
    return text


def _heading_level(marker: str) -> int:
    match = _HEADING_RE.match(marker.strip() + " ")
    return len(match.group(1)) if match else 2


def _find_insert_position(text: str, section_marker: str) -> Optional[int]:
    """Offset at which an entry for ``section_marker`` belongs, or None.

    Headings inside fenced code blocks are ignored.
    """
    marker = section_marker.strip()
    level = _heading_level(marker)

    offset = 0
    in_fence = False
    exact_at = prefix_at = None
    line_ends = {}
    boundaries = []
    for line in text.splitlines(keepends=True):
        stripped = line.rstrip("\r\n")
        if _FENCE_RE.match(stripped):
            in_fence = not in_fence
        elif not in_fence:
            if stripped.rstrip() == marker and exact_at is None:
                exact_at = offset
            elif stripped.startswith(marker) and prefix_at is None:
                prefix_at = offset
            heading = _HEADING_RE.match(stripped)
            if heading and len(heading.group(1)) <= level:
                boundaries.append(offset)
        line_ends[offset] = offset + len(line)
        offset += len(line)

    section_at = exact_at if exact_at is not None else prefix_at
    if section_at is None:
        return None
    # never inside the heading line itself
    heading_end = line_ends[section_at]

    for boundary in boundaries:
        if boundary > section_at:
            # Before the line break that ends the section's last line
            eol = 2 if text[boundary - 2:boundary] == "\r\n" else 1
            return max(boundary - eol, heading_end)
    return len(text)


def apply_to_document(document_text: str, section_marker: str, new_entry_text: str) -> PatchResult:
    """Insert ``new_entry_text`` at the end of a section.

    When the section is missing the entry is appended to the end of the
    document so the content is never lost.
    """
    position = _find_insert_position(document_text, section_marker)
    if position is None:
        logger.warning("Section '%s' not found, appending at end of document", section_marker)
        return PatchResult(text=_splice(document_text, len(document_text), new_entry_text), section_found=False)

    return PatchResult(text=_splice(document_text, position, new_entry_text), section_found=True)


def _splice(text: str, position: int, entry: str) -> str:
    """Insert ``entry`` at ``position`` without merging it into a neighbouring line"""
    before, after = text[:position], text[position:]
    eol = "\r\n" if "\r\n" in text else "\n"
    if before and not after and not before.endswith("\n") and not entry.startswith(("\n", "\r\n")):
        entry = eol + entry
    if after and before.endswith("\n") and not after.startswith(("\n", "\r\n")) and not entry.endswith("\n"):
        entry += eol
    return before + entry + after


def touch_last_updated(
    text: str,
    date_str: str,
    prefixes: Sequence[str] = DEFAULT_LAST_UPDATED_PREFIXES,
) -> str:
    """Replace the first ``<prefix>YYYY-MM-DD`` marker of each prefix"""
    for prefix in prefixes:
        pattern = re.compile(re.escape(prefix) + r"\d{4}-\d{2}-\d{2}")
        text = pattern.sub(lambda _m, p=prefix: p + date_str, text, count=1)
    return text


def render_entry(
    update: Update,
    date_str: str,
    corrections: Sequence[Tuple[str, str]] = DEFAULT_CORRECTIONS,
) -> str:
    return render_update_entry(update, date_str, value=sanitize_content(update.value, corrections))


def write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` in one rename"""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if path.exists():
            shutil.copymode(str(path), tmp_name)
        os.replace(tmp_name, str(path))
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class KnowledgeDocumentWriter:
    """
    Files approved updates into their target documents.

    Args:
        knowledge_base: Resolves document file names to paths
        targets: Update type -> {"file": ..., "section": ...}
        last_updated_prefix: Marker refreshed on every write
        today: Returns the entry date (defaults to the local date)
    """

    def __init__(
        self,
        knowledge_base: KnowledgeBase,
        targets: Dict[str, Dict[str, str]],
        last_updated_prefix: str = DEFAULT_LAST_UPDATED_PREFIXES[0],
        today: Optional[Callable[[], date]] = None,
        corrections: Sequence[Tuple[str, str]] = DEFAULT_CORRECTIONS,
    ):
        self._kb = knowledge_base
        self._targets = targets
        prefixes = [last_updated_prefix] + list(DEFAULT_LAST_UPDATED_PREFIXES)
        self._prefixes = tuple(dict.fromkeys(p for p in prefixes if p))
        self._today = today or date.today
        self._corrections = corrections
        self._write_lock = threading.Lock()

    def target_for(self, update_type: str) -> Optional[Dict[str, str]]:
        return self._targets.get(update_type)

    def apply(self, update: Update) -> FilingResult:
        """Read, patch and atomically rewrite the update's target document.

        Raises:
            KnowledgeTargetError: unmapped type, missing file or write failure
        """
        target = self.target_for(update.type)
        if not target:
            raise KnowledgeTargetError(f"No knowledge target configured for type '{update.type}'")

        path = self._kb.path_for(target["file"])
        if not path.exists():
            raise KnowledgeTargetError(f"Target file not found: {path}")

        date_str = self._today().isoformat()
        entry = render_entry(update, date_str, self._corrections)
        try:
            # read-patch-write must not interleave within this process
            with self._write_lock:
                with open(path, encoding="utf-8", newline="") as f:
                    original = f.read()
                patched = apply_to_document(original, target["section"], entry)
                write_atomic(path, touch_last_updated(patched.text, date_str, self._prefixes))
        except (OSError, UnicodeDecodeError) as e:
            raise KnowledgeTargetError(f"Failed to update {path}: {e}") from e

        logger.info(
            "Filed update %s into %s (%s%s)",
            update.id, target["file"], target["section"],
            "" if patched.section_found else ", section missing",
        )
        return FilingResult(
            file=target["file"],
            section=target["section"],
            path=path,
            section_found=patched.section_found,
        )
