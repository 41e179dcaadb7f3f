"""
Review Actions

Interactive controls carry a string id of the form ``{verb}_{family}_{id}``,
for example ``approve_update_K3Z9QA`` or ``reject_memory_CAND-7QX2M0PA``.
The id is decoded once, at the chat boundary, into a ``ReviewAction``.
"""

from dataclasses import dataclass
from enum import Enum

from ..common.errors import InvalidActionError


class ReviewVerb(str, Enum):
    APPROVE = "approve"
    EDIT = "edit"
    REJECT = "reject"


class RecordFamily(str, Enum):
    UPDATE = "update"
    MEMORY = "memory"


@dataclass(frozen=True)
class ReviewAction:
    verb: ReviewVerb
    family: RecordFamily
    record_id: str

    @classmethod
    def parse(cls, action_id: str) -> "ReviewAction":
        """Decode an action id.

        Raises:
            InvalidActionError: unknown verb or family, or missing record id
        """
        parts = (action_id or "").split("_", 2)
        if len(parts) != 3 or not parts[2]:
            raise InvalidActionError(f"Malformed action id: {action_id!r}")
        verb, family, record_id = parts
        try:
            return cls(ReviewVerb(verb), RecordFamily(family), record_id)
        except ValueError:
            raise InvalidActionError(f"Unknown action id: {action_id!r}") from None

    @property
    def action_id(self) -> str:
        return f"{self.verb.value}_{self.family.value}_{self.record_id}"
