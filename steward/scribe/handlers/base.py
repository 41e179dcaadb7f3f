"""
Base Handler

Platform-neutral shapes for everything crossing the chat boundary:

- inbound ``ChatEvent`` (mentions, direct messages, thread replies)
- inbound ``ControlEvent`` (button clicks and form submissions)
- outbound ``Notification`` and ``EditForm``
- the ``Notifier`` protocol the orchestrator talks to
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from ...common.schemas.records import ThreadMessage
from ..actions import ReviewAction


class ChatEventType(str, Enum):
    MENTION = "mention"
    DIRECT_MESSAGE = "direct_message"
    THREAD_REPLY = "thread_reply"


@dataclass
class ChatEvent:
    """
    Common inbound message format.

    ``thread_ts`` is the root timestamp of the thread the message belongs
    to, or None for top-level messages.
    """
    type: ChatEventType
    author_id: str
    text: str
    channel: str
    ts: str
    thread_ts: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = None

    @property
    def is_valid(self) -> bool:
        return bool(self.text and self.text.strip())

    @property
    def in_thread(self) -> bool:
        return self.thread_ts is not None and self.thread_ts != self.ts


@dataclass
class ControlEvent:
    """A reviewer pressed a button or submitted an edit form"""
    action: ReviewAction
    actor_id: str
    channel: Optional[str] = None
    trigger_id: Optional[str] = None
    message_ts: Optional[str] = None
    form_fields: Optional[Dict[str, str]] = None

    @property
    def is_form_submission(self) -> bool:
        return self.form_fields is not None


@dataclass
class ActionButton:
    label: str
    action: ReviewAction
    style: Optional[str] = None  # "primary" | "danger"


@dataclass
class Notification:
    """Outbound message: Markdown body plus optional review controls"""
    text: str
    title: Optional[str] = None
    footer: Optional[str] = None
    buttons: List[ActionButton] = field(default_factory=list)

    @property
    def fallback_text(self) -> str:
        return self.title or self.text.split("\n", 1)[0]


@dataclass
class FormField:
    name: str
    label: str
    value: str = ""
    multiline: bool = False


@dataclass
class EditForm:
    """Prefilled form; submitting it produces a ControlEvent for ``action``"""
    action: ReviewAction
    title: str
    fields: List[FormField] = field(default_factory=list)
    submit_label: str = "Save"


class Notifier(Protocol):
    """Outbound chat operations used by the orchestrator"""

    async def notify(self, target_id: str, content: Notification) -> Optional[str]: ...

    async def reply(self, channel: str, text: str, thread_ts: Optional[str] = None) -> Optional[str]: ...

    async def open_form(self, actor_id: str, form: EditForm, trigger_id: Optional[str]) -> bool: ...

    async def fetch_thread(self, channel: str, thread_ts: str) -> List[ThreadMessage]: ...

    async def channel_name(self, channel: str) -> str: ...

    async def permalink(self, channel: str, ts: str) -> Optional[str]: ...

    async def display_names(self, user_ids: List[str]) -> Dict[str, str]: ...


class BaseHandler(ABC):
    """
    Abstract base class for chat platform handlers.

    Each handler must implement:
    - parse_event: raw event payload -> ChatEvent
    - parse_interaction: raw interactivity payload -> ControlEvent
    - verify_signature: webhook signature check
    """

    def __init__(self, source_name: str):
        self.source_name = source_name

    @abstractmethod
    def parse_event(self, raw_data: Dict[str, Any]) -> Optional[ChatEvent]:
        """Return a ChatEvent, or None if the event should be ignored"""
        pass

    @abstractmethod
    def parse_interaction(self, payload: Dict[str, Any]) -> Optional[ControlEvent]:
        """Return a ControlEvent, or None if the payload carries no review action.

        Raises:
            InvalidActionError: the control's action id cannot be decoded
        """
        pass

    @abstractmethod
    def verify_signature(self, body: bytes, signature: str, timestamp: str) -> bool:
        pass

    def should_process(self, event: ChatEvent) -> bool:
        return event.is_valid
