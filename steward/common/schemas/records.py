"""
Record Schemas

Updates and memory candidates are the two record families that pass through
the approval gate. Both start ``pending`` and leave it exactly once.
Approved candidates fan out into immutable ``Memory`` rows.
"""

import secrets
import string
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class RecordStatus(str, Enum):
    """Approval state shared by updates and memory candidates"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not RecordStatus.PENDING


class Role(str, Enum):
    """Speaker of a conversation turn"""
    USER = "user"
    ASSISTANT = "assistant"


class MemoryType(str, Enum):
    """Closed set of memory item types"""
    DECISION = "decision"
    ACTION = "action"
    PREFERENCE = "preference"
    FACT = "fact"
    CONTEXT = "context"


class UpdateSource(str, Enum):
    """Where an update request came from"""
    DM = "dm"
    ADMIN_DM = "admin_dm"
    API = "api"


# ============================================================================
# Conversation
# ============================================================================

class ConversationTurn(BaseModel):
    """One message in a user's rolling conversation window"""
    user_id: str
    role: Role
    content: str
    created_at: int = Field(..., description="Epoch milliseconds")
    expires_at: int = Field(..., description="Epoch milliseconds")


# ============================================================================
# Updates
# ============================================================================

class Update(BaseModel):
    """A single free-text knowledge edit awaiting approval"""
    id: str
    type: str = "general"
    target: str = ""
    value: str = ""
    submitted_by: str
    submitted_at: str
    status: RecordStatus = RecordStatus.PENDING
    source: Optional[str] = None
    processed_at: Optional[str] = None
    processed_by: Optional[str] = None
    edited_at: Optional[str] = None
    edited_by: Optional[str] = None
    note: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RecordStatus.PENDING


# ============================================================================
# Memories
# ============================================================================

class ExtractedMemory(BaseModel):
    """A structured item pulled out of a thread by the extractor"""
    type: MemoryType
    content: str
    context: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class ThreadMessage(BaseModel):
    """A raw message kept alongside a memory candidate"""
    user: str
    text: str
    ts: str = ""
    is_bot: bool = False


class MemoryCandidate(BaseModel):
    """A batch of extracted memories awaiting approval as a unit"""
    id: str
    source: str = "slack-thread"
    channel: Optional[str] = None
    channel_name: Optional[str] = None
    thread_ts: Optional[str] = None
    thread_url: Optional[str] = None
    raw_messages: List[ThreadMessage] = Field(default_factory=list)
    extracted_memories: List[ExtractedMemory] = Field(default_factory=list)
    submitted_by: str
    submitted_at: str
    status: RecordStatus = RecordStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RecordStatus.PENDING


class Memory(BaseModel):
    """An approved, immutable fact retained for long-term recall"""
    id: str
    type: MemoryType
    content: str
    context: Optional[str] = None
    source: Optional[str] = None
    channel: Optional[str] = None
    thread_ts: Optional[str] = None
    submitted_by: Optional[str] = None
    approved_by: Optional[str] = None
    created_at: Optional[str] = None
    approved_at: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


# ============================================================================
# IDs
# ============================================================================

_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_update_id(length: int = 6) -> str:
    """Short uppercase token, e.g. 'K3Z9QA'"""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def generate_record_id(prefix: str, length: int = 8) -> str:
    """Prefixed token for memory records, e.g. 'CAND-7QX2M0PA'"""
    return f"{prefix}-{generate_update_id(length)}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
