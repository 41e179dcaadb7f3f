"""
Review Notifications

Builders for every message the approval flow sends: review requests with
approve/edit/reject controls, outcome notices, edit forms and submitter
acknowledgements (English or Chinese, following the submitter's message).
"""

from typing import List, Optional

from ..common.schemas.records import MemoryCandidate, Update
from ..common.schemas.templates import (
    render_candidate_summary,
    render_memory_lines,
    render_update_summary,
)
from .actions import RecordFamily, ReviewAction, ReviewVerb
from .handlers.base import ActionButton, EditForm, FormField, Notification


def review_buttons(family: RecordFamily, record_id: str, include_edit: bool = True) -> List[ActionButton]:
    buttons = [ActionButton("✅ Approve", ReviewAction(ReviewVerb.APPROVE, family, record_id), "primary")]
    if include_edit:
        buttons.append(ActionButton("✏️ Edit", ReviewAction(ReviewVerb.EDIT, family, record_id)))
    buttons.append(ActionButton("❌ Reject", ReviewAction(ReviewVerb.REJECT, family, record_id), "danger"))
    return buttons


def update_review_request(update: Update) -> Notification:
    return Notification(
        title="📝 New Update Request",
        text=render_update_summary(update),
        buttons=review_buttons(RecordFamily.UPDATE, update.id),
    )


def candidate_review_request(candidate: MemoryCandidate) -> Notification:
    return Notification(
        title="🧠 New Memory Candidate",
        text=render_candidate_summary(candidate),
        buttons=review_buttons(RecordFamily.MEMORY, candidate.id),
    )


def update_edited(before: Update, after: Update) -> Notification:
    text = (
        f"*Before:*\n• Target: {before.target}\n• Value: {before.value}\n\n"
        f"*After:*\n• Target: {after.target}\n• Value: {after.value}"
    )
    return Notification(
        title=f"✏️ Update `{after.id}` Edited",
        text=text,
        buttons=review_buttons(RecordFamily.UPDATE, after.id, include_edit=False),
    )


def candidate_edited(candidate: MemoryCandidate) -> Notification:
    return Notification(
        title=f"✏️ Memory Candidate `{candidate.id}` Edited",
        text=render_candidate_summary(candidate),
        buttons=review_buttons(RecordFamily.MEMORY, candidate.id, include_edit=False),
    )


def update_result(update: Update, approved: bool) -> Notification:
    """Sent to the submitter once the update leaves pending"""
    emoji, label = ("✅", "Approved") if approved else ("❌", "Rejected")
    return Notification(
        title=f"{emoji} Update {label}",
        text=f"*ID:* `{update.id}`\n*Type:* {update.type}\n*Target:* {update.target}\n*Value:* {update.value}",
    )


def candidate_result(candidate: MemoryCandidate, approved: bool, memory_count: int = 0) -> Notification:
    if approved:
        return Notification(
            title="✅ Memories Saved",
            text=f"*ID:* `{candidate.id}`\n{memory_count} item(s) from this thread are now remembered.",
        )
    return Notification(
        title="❌ Memories Not Saved",
        text=f"*ID:* `{candidate.id}`\nThe reviewer declined to keep this thread.",
    )


def not_found(record_id: str) -> Notification:
    return Notification(text=f"❌ `{record_id}` not found or already processed.")


def info(text: str) -> Notification:
    return Notification(text=text)


def update_edit_form(update: Update) -> EditForm:
    return EditForm(
        action=ReviewAction(ReviewVerb.EDIT, RecordFamily.UPDATE, update.id),
        title="Edit Update",
        fields=[
            FormField(name="target", label="Target", value=update.target),
            FormField(name="value", label="Value", value=update.value, multiline=True),
        ],
    )


def candidate_edit_form(candidate: MemoryCandidate) -> EditForm:
    return EditForm(
        action=ReviewAction(ReviewVerb.EDIT, RecordFamily.MEMORY, candidate.id),
        title="Edit Memories",
        fields=[
            FormField(
                name="memories",
                label="One per line: type: content #tag",
                value=render_memory_lines(candidate.extracted_memories),
                multiline=True,
            ),
        ],
    )


# ============================================================================
# Submitter acknowledgements
# ============================================================================

_ACKS = {
    "submitted": (
        "✅ *Submitted for approval*\n\nID: `{id}`\nAdmin has been notified. You'll receive a message when it's reviewed.",
        "✅ *已提交審核*\n\nID: `{id}`\n已通知管理員，審核完成後會通知你。",
    ),
    "correction": (
        "✅ *Correction queued for review*\n\nID: `{id}`\nUse the buttons above to approve and write it to the knowledge base.",
        "✅ *糾正已加入審核佇列*\n\nID: `{id}`\n請使用上方按鈕確認後寫入知識庫。",
    ),
    "admin_update": (
        "✅ *Knowledge update queued for review*\n\nID: `{id}`\nUse the buttons above to approve and write it to the knowledge base.",
        "✅ *知識更新已加入審核佇列*\n\nID: `{id}`\n請使用上方按鈕確認後寫入知識庫。",
    ),
    "memory_submitted": (
        "🧠 Got it. I found {count} item(s) worth remembering and sent them for review (ID: `{id}`).",
        "🧠 收到！我找到 {count} 個值得記住的重點，已送交審核（ID: `{id}`）。",
    ),
    "memory_empty": (
        "🤔 I read the thread but found nothing worth remembering.",
        "🤔 我讀完了這個討論串，但沒有找到值得記住的內容。",
    ),
    "memory_no_thread": (
        "Mention me inside a thread and I'll remember its key points.",
        "請在討論串中提及我，我會記住重點。",
    ),
}


def acknowledgement(kind: str, chinese: bool, record_id: Optional[str] = None, count: int = 0) -> str:
    """Chinese for Chinese senders, English for everyone else"""
    en, zh = _ACKS[kind]
    return (zh if chinese else en).format(id=record_id, count=count)
