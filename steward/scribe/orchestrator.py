"""
Approval Orchestrator

Routes chat events into pending records and applies reviewer decisions.

    direct message --classify--> Update (pending) ----+
    admin correction ----------> Update (pending) ----+--> reviewer notified
    "remember" in a thread --extract--> MemoryCandidate +
                                                          |
    approve --> transition --> file into document / materialize memories
    reject  --> transition --> submitter notified
    edit    --> form --> record edited while still pending --> re-presented

Every record leaves ``pending`` exactly once; the store's conditional
transition decides which of several concurrent reviewers wins. Losers and
stale clicks get a "not found or already processed" notice.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..common.errors import KnowledgeTargetError
from ..common.knowledge_base import KnowledgeBase
from ..common.language import detect_language
from ..common.llm_client import Completion, complete_async
from ..common.schemas.records import (
    MemoryCandidate,
    RecordStatus,
    Role,
    Update,
    UpdateSource,
)
from ..storage.conversations import ConversationStore
from ..storage.memories import MemoryStore
from ..storage.updates import UpdateStore
from . import notifications
from .actions import RecordFamily, ReviewAction, ReviewVerb
from .classifier import IntentClassifier
from .handlers.base import ChatEvent, ChatEventType, ControlEvent, Notification, Notifier
from .intent_rules import extract_knowledge_info
from .patcher import FilingResult, KnowledgeDocumentWriter
from .thread_extractor import ThreadExtractor, parse_memory_lines

logger = logging.getLogger("steward.scribe.orchestrator")


REPLY_PROMPT = """You are {bot_name}, an assistant in the team's Slack workspace.

Your personality:
- Professional, efficient and helpful
- You remember recent conversations and can refer back to them

Team knowledge (loaded {loaded_at}):
{knowledge}
{history}
Context:
- User's language: {language}
- Current message: {message}

Instructions:
- Use the conversation history to understand the current message
- You MUST respond in the user's language ({language})
- Be concise; do not output your reasoning, only the final answer

Your response:"""

REPLY_FALLBACK = "Sorry, I encountered a system error. Please try again."

KNOWLEDGE_EXCERPTS = (("product", 3000), ("priorities", 1000))


class ReviewStatus(str, Enum):
    APPLIED = "applied"                 # update approved and filed
    NEEDS_FOLLOWUP = "needs_followup"   # update approved, filing incomplete
    APPROVED = "approved"               # candidate approved, memories created
    REJECTED = "rejected"
    EDITED = "edited"
    FORM_OPENED = "form_opened"
    NOT_FOUND = "not_found"             # missing or already processed
    FORBIDDEN = "forbidden"
    INVALID = "invalid"


@dataclass
class ReviewOutcome:
    status: ReviewStatus
    record_id: str
    message: str = ""
    memory_ids: List[str] = field(default_factory=list)
    filing: Optional[FilingResult] = None

    @property
    def changed_state(self) -> bool:
        return self.status in (
            ReviewStatus.APPLIED, ReviewStatus.NEEDS_FOLLOWUP,
            ReviewStatus.APPROVED, ReviewStatus.REJECTED,
        )


def family_for(record_id: str) -> RecordFamily:
    """Candidates carry a CAND- prefix; everything else is an update"""
    return RecordFamily.MEMORY if record_id.upper().startswith("CAND-") else RecordFamily.UPDATE


class ApprovalOrchestrator:
    """
    Drives the pending -> approved/rejected state machine.

    Store calls are synchronous SQLite and run in worker threads so that a
    slow disk never blocks the event loop.
    """

    def __init__(
        self,
        updates: UpdateStore,
        memories: MemoryStore,
        conversations: ConversationStore,
        classifier: IntentClassifier,
        extractor: ThreadExtractor,
        writer: KnowledgeDocumentWriter,
        knowledge_base: KnowledgeBase,
        notifier: Notifier,
        llm: Optional[Completion] = None,
        admin_user_id: str = "",
        bot_name: str = "KITT",
        reply_timeout: float = 30.0,
        oem_vendors: Optional[List[str]] = None,
    ):
        self.updates = updates
        self.memories = memories
        self.conversations = conversations
        self.classifier = classifier
        self.extractor = extractor
        self.writer = writer
        self.knowledge_base = knowledge_base
        self.notifier = notifier
        self._llm = llm
        self._admin_user_id = admin_user_id
        self._bot_name = bot_name
        self._reply_timeout = reply_timeout
        self._oem_vendors = oem_vendors

    def is_admin(self, user_id: str) -> bool:
        return bool(self._admin_user_id) and user_id == self._admin_user_id

    # ------------------------------------------------------------------
    # Inbound chat
    # ------------------------------------------------------------------

    async def handle_chat_event(self, event: ChatEvent) -> None:
        """Entry point for background tasks; never raises"""
        try:
            if not event.is_valid:
                return
            if event.type == ChatEventType.MENTION:
                if self.classifier.has_memory_trigger(event.text):
                    await self.remember_thread(event)
                else:
                    await self.reply(event, thread_ts=event.thread_ts or event.ts)
            elif event.type == ChatEventType.DIRECT_MESSAGE:
                await self.handle_direct_message(event)
            else:
                logger.debug("Ignoring %s from %s", event.type.value, event.author_id)
        except Exception:
            logger.exception("Chat event from %s failed", event.author_id)
            await self._safe_reply(event.channel, "❌ System error, please try again.", event.thread_ts)

    async def handle_direct_message(self, event: ChatEvent) -> Optional[Update]:
        """Route a DM: admin correction, update request, or conversation"""
        text = event.text.strip()
        is_admin = self.is_admin(event.author_id)
        chinese = detect_language(text).is_chinese

        if is_admin and self.classifier.is_admin_correction(text):
            info = extract_knowledge_info(text, self._oem_vendors)
            update = await self.submit_update(
                "admin_correction", info.target, text, event.author_id, UpdateSource.ADMIN_DM
            )
            await self._safe_reply(event.channel, notifications.acknowledgement("correction", chinese, update.id))
            return update

        if await self.classifier.classify(text):
            info = extract_knowledge_info(text, self._oem_vendors)
            source = UpdateSource.ADMIN_DM if is_admin else UpdateSource.DM
            update = await self.submit_update(info.type, info.target, text, event.author_id, source)
            kind = "admin_update" if is_admin else "submitted"
            await self._safe_reply(event.channel, notifications.acknowledgement(kind, chinese, update.id))
            return update

        await self.reply(event, use_history=True)
        return None

    async def submit_update(
        self,
        type: str,
        target: str,
        value: str,
        submitted_by: str,
        source: UpdateSource = UpdateSource.DM,
    ) -> Update:
        """Persist a pending update and ask the reviewer to decide"""
        update = await asyncio.to_thread(
            self.updates.create, type, target, value, submitted_by, UpdateSource(source).value
        )
        await self._notify_reviewer(notifications.update_review_request(update))
        return update

    async def remember_thread(self, event: ChatEvent) -> Optional[MemoryCandidate]:
        """Extract memories from the event's thread into a pending candidate"""
        chinese = detect_language(event.text).is_chinese
        if not event.in_thread:
            await self._safe_reply(
                event.channel,
                notifications.acknowledgement("memory_no_thread", chinese),
                event.thread_ts or event.ts,
            )
            return None

        messages = await self.notifier.fetch_thread(event.channel, event.thread_ts)
        kept = self.extractor.filter_messages(messages)
        names = await self.notifier.display_names([m.user for m in kept])
        channel_label = await self.notifier.channel_name(event.channel)

        extracted = await self.extractor.extract(kept, channel_label, names)
        if not extracted:
            await self._safe_reply(
                event.channel, notifications.acknowledgement("memory_empty", chinese), event.thread_ts
            )
            return None

        thread_url = await self.notifier.permalink(event.channel, event.thread_ts)
        raw_messages = [m.model_copy(update={"user": names.get(m.user, m.user)}) for m in kept]
        candidate = await asyncio.to_thread(
            self.memories.create_candidate,
            event.author_id,
            extracted,
            raw_messages,
            event.channel,
            channel_label,
            event.thread_ts,
            thread_url,
        )
        await self._notify_reviewer(notifications.candidate_review_request(candidate))
        await self._safe_reply(
            event.channel,
            notifications.acknowledgement("memory_submitted", chinese, candidate.id, len(extracted)),
            event.thread_ts,
        )
        return candidate

    async def reply(self, event: ChatEvent, thread_ts: Optional[str] = None, use_history: bool = False) -> str:
        """Answer a message from the knowledge base and the conversation window"""
        language = detect_language(event.text).code
        history = ""
        if use_history:
            turns = await asyncio.to_thread(self.conversations.read, event.author_id)
            history = ConversationStore.format_for_prompt(turns, self._bot_name)
            await asyncio.to_thread(self.conversations.append, event.author_id, Role.USER, event.text)

        prompt = self.build_reply_prompt(event.text, language, history)
        try:
            response = (await complete_async(
                self._llm, prompt, max_tokens=500, timeout=self._reply_timeout
            )).strip() or REPLY_FALLBACK
        except asyncio.TimeoutError:
            logger.warning("Reply generation timed out for %s", event.author_id)
            response = REPLY_FALLBACK
        except Exception as e:
            logger.error("Reply generation failed: %s", e)
            response = REPLY_FALLBACK

        if use_history:
            await asyncio.to_thread(self.conversations.append, event.author_id, Role.ASSISTANT, response)
        await self._safe_reply(event.channel, response, thread_ts)
        return response

    def build_reply_prompt(self, message: str, language: str, history: str = "") -> str:
        snapshot = self.knowledge_base.snapshot()
        sections = []
        for name, limit in KNOWLEDGE_EXCERPTS:
            text = snapshot.get(name)
            if text:
                sections.append(f"### {name}\n{text[:limit]}")
        return REPLY_PROMPT.format(
            bot_name=self._bot_name,
            loaded_at=snapshot.loaded_at or "N/A",
            knowledge="\n\n".join(sections) or "(no knowledge documents loaded)",
            history=history,
            language=language,
            message=message,
        )

    # ------------------------------------------------------------------
    # Reviewer decisions
    # ------------------------------------------------------------------

    async def handle_control_event(self, event: ControlEvent) -> Optional[ReviewOutcome]:
        """Entry point for background tasks; never raises"""
        reply_to = event.channel or event.actor_id
        try:
            outcome = await self._dispatch(event)
        except Exception:
            logger.exception("Control event %s failed", event.action.action_id)
            await self._safe_notify(reply_to, notifications.info(f"❌ Error processing `{event.action.record_id}`."))
            return None

        if outcome.message:
            await self._safe_notify(reply_to, notifications.info(outcome.message))
        return outcome

    async def _dispatch(self, event: ControlEvent) -> ReviewOutcome:
        action = event.action
        if not self._may_review(event.actor_id):
            return ReviewOutcome(ReviewStatus.FORBIDDEN, action.record_id, "❌ Only the admin can review updates.")

        if action.verb == ReviewVerb.EDIT:
            if event.is_form_submission:
                return await self.submit_edit(action, event.actor_id, event.form_fields)
            return await self.open_edit_form(action, event.actor_id, event.trigger_id)
        return await self.decide(action, event.actor_id)

    async def review(
        self,
        record_id: str,
        verb: ReviewVerb,
        reviewer: str,
        note: Optional[str] = None,
        fields: Optional[dict] = None,
    ) -> ReviewOutcome:
        """Approve, reject or edit by id, for review surfaces other than chat buttons.

        Edits take the same ``fields`` as the chat edit form: ``target``/``value``
        for updates, ``memories`` (one item per line) for candidates.
        """
        action = ReviewAction(ReviewVerb(verb), family_for(record_id), record_id)
        if not self._may_review(reviewer):
            return ReviewOutcome(ReviewStatus.FORBIDDEN, record_id, "Only the admin can review updates.")
        if action.verb == ReviewVerb.EDIT:
            return await self.submit_edit(action, reviewer, fields or {})
        return await self.decide(action, reviewer, note)

    async def decide(self, action: ReviewAction, actor: str, note: Optional[str] = None) -> ReviewOutcome:
        if action.verb == ReviewVerb.EDIT:
            raise ValueError("Edits go through open_edit_form/submit_edit")
        if action.family == RecordFamily.UPDATE:
            if action.verb == ReviewVerb.APPROVE:
                return await self.approve_update(action.record_id, actor, note)
            return await self.reject_update(action.record_id, actor, note)
        if action.verb == ReviewVerb.APPROVE:
            return await self.approve_candidate(action.record_id, actor)
        return await self.reject_candidate(action.record_id, actor, note)

    async def approve_update(self, update_id: str, actor: str, note: Optional[str] = None) -> ReviewOutcome:
        won = await asyncio.to_thread(
            self.updates.transition, update_id, RecordStatus.APPROVED, actor, note
        )
        if not won:
            return self._not_found(update_id)

        update = await asyncio.to_thread(self.updates.get, update_id)
        try:
            return await self._file_update(update)
        finally:
            await self._safe_notify(update.submitted_by, notifications.update_result(update, approved=True))

    async def _file_update(self, update: Update) -> ReviewOutcome:
        """Write an approved update into its document; failures leave it approved"""
        try:
            filing = await asyncio.to_thread(self.writer.apply, update)
        except KnowledgeTargetError as e:
            logger.warning("Update %s approved but not filed: %s", update.id, e)
            return await self._filing_failed(update, e)
        except Exception as e:
            logger.exception("Update %s approved but filing raised", update.id)
            return await self._filing_failed(update, e)

        try:
            await asyncio.to_thread(self.knowledge_base.reload)
        except Exception:
            # the write is durable; the snapshot catches up on the next reload
            logger.exception("Knowledge base reload after filing %s failed", update.id)

        if not filing.section_found:
            note = f"Section '{filing.section}' not found in {filing.file}; entry appended at end"
            await asyncio.to_thread(self.updates.set_note, update.id, note)
            return ReviewOutcome(
                ReviewStatus.NEEDS_FOLLOWUP,
                update.id,
                f"⚠️ Update `{update.id}` approved. {note}, please move it into place.",
                filing=filing,
            )

        return ReviewOutcome(
            ReviewStatus.APPLIED,
            update.id,
            f"✅ Update `{update.id}` approved and filed into {filing.file} ({filing.section}).",
            filing=filing,
        )

    async def _filing_failed(self, update: Update, error: Exception) -> ReviewOutcome:
        await asyncio.to_thread(self.updates.set_note, update.id, f"Manual follow-up needed: {error}")
        return ReviewOutcome(
            ReviewStatus.NEEDS_FOLLOWUP,
            update.id,
            f"⚠️ Update `{update.id}` approved but could not be filed ({error}). "
            f"Please update the knowledge base manually.\n\n*Content:* {update.value}",
        )

    async def reject_update(self, update_id: str, actor: str, note: Optional[str] = None) -> ReviewOutcome:
        won = await asyncio.to_thread(
            self.updates.transition, update_id, RecordStatus.REJECTED, actor, note
        )
        if not won:
            return self._not_found(update_id)

        update = await asyncio.to_thread(self.updates.get, update_id)
        await self._safe_notify(update.submitted_by, notifications.update_result(update, approved=False))
        return ReviewOutcome(ReviewStatus.REJECTED, update_id, f"❌ Update `{update_id}` rejected.")

    async def approve_candidate(self, candidate_id: str, actor: str) -> ReviewOutcome:
        memory_ids = await asyncio.to_thread(self.memories.approve_candidate, candidate_id, actor)
        if memory_ids is None:
            return self._not_found(candidate_id)

        candidate = await asyncio.to_thread(self.memories.get_candidate, candidate_id)
        await self._safe_notify(
            candidate.submitted_by,
            notifications.candidate_result(candidate, approved=True, memory_count=len(memory_ids)),
        )
        listed = ", ".join(f"`{m}`" for m in memory_ids) or "none"
        return ReviewOutcome(
            ReviewStatus.APPROVED,
            candidate_id,
            f"✅ Memory candidate `{candidate_id}` approved: {len(memory_ids)} memories saved ({listed}).",
            memory_ids=memory_ids,
        )

    async def reject_candidate(self, candidate_id: str, actor: str, note: Optional[str] = None) -> ReviewOutcome:
        won = await asyncio.to_thread(self.memories.reject_candidate, candidate_id, actor, note)
        if not won:
            return self._not_found(candidate_id)

        candidate = await asyncio.to_thread(self.memories.get_candidate, candidate_id)
        await self._safe_notify(candidate.submitted_by, notifications.candidate_result(candidate, approved=False))
        return ReviewOutcome(ReviewStatus.REJECTED, candidate_id, f"❌ Memory candidate `{candidate_id}` rejected.")

    async def open_edit_form(
        self, action: ReviewAction, actor: str, trigger_id: Optional[str]
    ) -> ReviewOutcome:
        if action.family == RecordFamily.UPDATE:
            record = await asyncio.to_thread(self.updates.get, action.record_id)
            form = notifications.update_edit_form(record) if record and record.is_pending else None
        else:
            record = await asyncio.to_thread(self.memories.get_candidate, action.record_id)
            form = notifications.candidate_edit_form(record) if record and record.is_pending else None

        if form is None:
            return self._not_found(action.record_id)

        if not await self.notifier.open_form(actor, form, trigger_id):
            return ReviewOutcome(ReviewStatus.INVALID, action.record_id, "❌ Could not open the edit form.")
        return ReviewOutcome(ReviewStatus.FORM_OPENED, action.record_id)

    async def submit_edit(self, action: ReviewAction, actor: str, fields: dict) -> ReviewOutcome:
        if action.family == RecordFamily.UPDATE:
            return await self._edit_update(action.record_id, actor, fields)
        return await self._edit_candidate(action.record_id, actor, fields)

    async def _edit_update(self, update_id: str, actor: str, fields: dict) -> ReviewOutcome:
        before = await asyncio.to_thread(self.updates.get, update_id)
        edited = before is not None and await asyncio.to_thread(
            self.updates.edit, update_id, actor, fields.get("target"), fields.get("value")
        )
        if not edited:
            return self._not_found(update_id)

        after = await asyncio.to_thread(self.updates.get, update_id)
        await self._notify_reviewer(notifications.update_edited(before, after), fallback=actor)
        return ReviewOutcome(ReviewStatus.EDITED, update_id)

    async def _edit_candidate(self, candidate_id: str, actor: str, fields: dict) -> ReviewOutcome:
        items = parse_memory_lines(fields.get("memories", ""))
        if not items:
            return ReviewOutcome(
                ReviewStatus.INVALID,
                candidate_id,
                f"⚠️ No memories left in `{candidate_id}`. Reject it instead.",
            )

        edited = await asyncio.to_thread(self.memories.edit, candidate_id, items, actor)
        if not edited:
            return self._not_found(candidate_id)

        candidate = await asyncio.to_thread(self.memories.get_candidate, candidate_id)
        await self._notify_reviewer(notifications.candidate_edited(candidate), fallback=actor)
        return ReviewOutcome(ReviewStatus.EDITED, candidate_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def pending(self) -> dict:
        updates = await asyncio.to_thread(self.updates.list_pending)
        candidates = await asyncio.to_thread(self.memories.list_pending)
        return {"updates": updates, "memory_candidates": candidates}

    async def stats(self) -> dict:
        snapshot = self.knowledge_base.snapshot()
        return {
            "updates": await asyncio.to_thread(self.updates.stats),
            "memories": await asyncio.to_thread(self.memories.stats),
            "knowledge_base": {"version": snapshot.version, "loaded_at": snapshot.loaded_at},
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _may_review(self, user_id: str) -> bool:
        return not self._admin_user_id or user_id == self._admin_user_id

    def _not_found(self, record_id: str) -> ReviewOutcome:
        logger.info("%s not found or already processed", record_id)
        return ReviewOutcome(
            ReviewStatus.NOT_FOUND, record_id, notifications.not_found(record_id).text
        )

    async def _notify_reviewer(self, content: Notification, fallback: Optional[str] = None) -> bool:
        target = self._admin_user_id or fallback
        if not target:
            logger.warning("No reviewer configured; '%s' not delivered", content.fallback_text)
            return False
        return await self._safe_notify(target, content)

    async def _safe_notify(self, target_id: str, content: Notification) -> bool:
        try:
            await self.notifier.notify(target_id, content)
            return True
        except Exception as e:
            logger.warning("Failed to notify %s: %s", target_id, e)
            return False

    async def _safe_reply(self, channel: str, text: str, thread_ts: Optional[str] = None) -> bool:
        try:
            await self.notifier.reply(channel, text, thread_ts)
            return True
        except Exception as e:
            logger.warning("Failed to reply in %s: %s", channel, e)
            return False
