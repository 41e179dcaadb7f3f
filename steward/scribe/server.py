"""
Scribe Server

FastAPI server for Slack webhooks and the review API.

Endpoints:
- POST /slack/events: Slack Events API webhook
- POST /slack/interactions: Slack button clicks and form submissions
- GET /health: Health check
- GET /stats: Record and knowledge base statistics
- GET /review: Pending updates and memory candidates
- GET /review/{record_id}: One record
- POST /review/{record_id}: Approve, reject or edit outside of chat
- POST /updates: Submit a typed update for review
- GET /memories: Search approved memories
- DELETE /memories/{memory_id}: Remove an approved memory
- POST /knowledge/reload: Re-read knowledge documents from disk

Pipeline:
1. Receive webhook event
2. Verify signature and parse with the Slack handler
3. Acknowledge immediately; process in a background task
4. Orchestrator classifies, records and asks the reviewer
5. Reviewer decision is applied exactly once
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import parse_qs

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..common.config import StewardConfig, ensure_directories, load_config
from ..common.errors import InvalidActionError
from ..common.knowledge_base import KnowledgeBase
from ..common.llm_client import FallbackCompletion
from ..common.schemas.records import MemoryType, UpdateSource
from ..storage import ConversationStore, MemoryStore, UpdateStore
from .actions import RecordFamily, ReviewVerb
from .classifier import IntentClassifier
from .handlers import SlackHandler, SlackNotifier
from .intent_rules import RuleSet, load_rules_file
from .orchestrator import ApprovalOrchestrator, ReviewStatus, family_for
from .patcher import KnowledgeDocumentWriter
from .thread_extractor import ThreadExtractor

logger = logging.getLogger("steward.scribe.server")


# Global state
config: Optional[StewardConfig] = None
orchestrator: Optional[ApprovalOrchestrator] = None
slack_handler: Optional[SlackHandler] = None
slack_notifier: Optional[SlackNotifier] = None
llm: Optional[FallbackCompletion] = None


def build_orchestrator(cfg: StewardConfig, notifier, llm: FallbackCompletion) -> ApprovalOrchestrator:
    """Wire stores, capability and knowledge base from configuration"""
    if llm.is_available:
        logger.info("LLM providers ready: %s", ", ".join(llm.providers))
    else:
        logger.warning("No LLM provider available; rules only, fallback replies")

    rules = None
    if cfg.classifier.rules_file:
        rules = RuleSet(load_rules_file(cfg.classifier.rules_file))

    knowledge_base = KnowledgeBase(cfg.knowledge.base_path, cfg.knowledge.files)
    snapshot = knowledge_base.reload()
    logger.info("Knowledge base v%d loaded from %s", snapshot.version, knowledge_base.base_path)

    conversations = ConversationStore.open(
        cfg.storage.records_db_path,
        ttl_minutes=cfg.conversation.ttl_minutes,
        max_pairs=cfg.conversation.max_pairs,
    )
    removed = conversations.cleanup_expired()
    if removed:
        logger.info("Removed %d expired conversation turns", removed)

    return ApprovalOrchestrator(
        updates=UpdateStore.open(cfg.storage.records_db_path),
        memories=MemoryStore.open(cfg.storage.memory_db_path),
        conversations=conversations,
        classifier=IntentClassifier(
            llm=llm,
            rules=rules,
            confirm_enabled=cfg.classifier.confirm_enabled,
            confirm_timeout=cfg.classifier.confirm_timeout,
            fallback_on_error=cfg.classifier.fallback_on_error,
        ),
        extractor=ThreadExtractor(llm, bot_user_id=cfg.slack.bot_user_id, bot_name=cfg.bot_name),
        writer=KnowledgeDocumentWriter(
            knowledge_base,
            cfg.knowledge.targets,
            last_updated_prefix=cfg.knowledge.last_updated_prefix,
        ),
        knowledge_base=knowledge_base,
        notifier=notifier,
        llm=llm,
        admin_user_id=cfg.slack.admin_user_id,
        bot_name=cfg.bot_name,
        reply_timeout=cfg.llm.timeout,
        oem_vendors=cfg.knowledge.oem_vendors,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize components on startup"""
    global config, orchestrator, slack_handler, slack_notifier, llm

    logger.info("Starting up...")
    load_dotenv()
    ensure_directories()

    config = load_config()
    if not config.slack.admin_user_id:
        logger.warning("No admin user configured; any user may review")

    slack_handler = SlackHandler(
        signing_secret=config.slack.signing_secret,
        bot_user_id=config.slack.bot_user_id,
    )
    slack_notifier = SlackNotifier(config.slack.bot_token)
    llm = FallbackCompletion.from_config(config.llm)
    orchestrator = build_orchestrator(config, slack_notifier, llm)

    stats = await orchestrator.stats()
    logger.info(
        "Ready: %d pending updates, %d pending memory candidates",
        stats["updates"]["pending"], stats["memories"]["candidates"]["pending"],
    )

    yield

    logger.info("Shutting down...")
    await slack_notifier.close()
    llm.close()


app = FastAPI(
    title="Steward Scribe",
    description="Approval-gated knowledge capture from team chat",
    version="0.1.0",
    lifespan=lifespan,
)


# =============================================================================
# Request/Response Models
# =============================================================================

class ReviewSubmission(BaseModel):
    """Review decision from a non-chat surface"""
    decision: ReviewVerb  # "approve", "reject" or "edit"
    reviewer: str
    note: Optional[str] = None
    # edit only
    target: Optional[str] = None
    value: Optional[str] = None
    memories: Optional[str] = None

    def edit_fields(self) -> dict:
        fields = {"target": self.target, "value": self.value, "memories": self.memories}
        return {k: v for k, v in fields.items() if v is not None}


class UpdateSubmission(BaseModel):
    """Explicitly typed update request"""
    type: str
    target: str
    value: str
    submitted_by: str


def _require_orchestrator() -> ApprovalOrchestrator:
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


def _require_handler() -> SlackHandler:
    if not slack_handler:
        raise HTTPException(status_code=503, detail="Handler not initialized")
    return slack_handler


def _verify(handler: SlackHandler, body: bytes, signature: Optional[str], timestamp: Optional[str]) -> None:
    if not handler.verify_signature(body, signature or "", timestamp or ""):
        raise HTTPException(status_code=401, detail="Invalid signature")


# =============================================================================
# Slack
# =============================================================================

@app.post("/slack/events")
async def slack_events(
    request: Request,
    background_tasks: BackgroundTasks,
    x_slack_signature: Optional[str] = Header(None),
    x_slack_request_timestamp: Optional[str] = Header(None),
):
    """Slack Events API webhook; acknowledged before processing"""
    handler = _require_handler()
    body = await request.body()
    _verify(handler, body, x_slack_signature, x_slack_request_timestamp)

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    if handler.is_url_verification(data):
        return JSONResponse({"challenge": handler.get_challenge(data)})

    # Slack redelivers when it misses our 3s ack; the first delivery is enough
    if request.headers.get("x-slack-retry-num"):
        logger.debug("Ignoring Slack retry %s", request.headers.get("x-slack-retry-num"))
        return JSONResponse({"ok": True})

    event = handler.parse_event(data)
    if event and handler.should_process(event):
        background_tasks.add_task(_require_orchestrator().handle_chat_event, event)

    return JSONResponse({"ok": True})


@app.post("/slack/interactions")
async def slack_interactions(
    request: Request,
    background_tasks: BackgroundTasks,
    x_slack_signature: Optional[str] = Header(None),
    x_slack_request_timestamp: Optional[str] = Header(None),
):
    """Button clicks and edit form submissions (form-encoded ``payload``)"""
    handler = _require_handler()
    body = await request.body()
    _verify(handler, body, x_slack_signature, x_slack_request_timestamp)

    try:
        raw = parse_qs(body.decode("utf-8")).get("payload", [""])[0]
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        event = handler.parse_interaction(payload)
    except InvalidActionError as e:
        logger.warning("Ignoring interaction: %s", e)
        event = None

    if event:
        background_tasks.add_task(_require_orchestrator().handle_control_event, event)

    # An empty 200 closes a submitted modal
    return JSONResponse({}) if payload.get("type") == "view_submission" else JSONResponse({"ok": True})


# =============================================================================
# Health & Stats
# =============================================================================

@app.get("/health")
async def health():
    """Health check endpoint"""
    snapshot = orchestrator.knowledge_base.snapshot() if orchestrator else None
    return {
        "status": "healthy",
        "service": "scribe",
        "initialized": orchestrator is not None,
        "knowledge_base_version": snapshot.version if snapshot else 0,
    }


@app.get("/stats")
async def get_stats():
    """Record and knowledge base statistics"""
    stats = {
        "service": "scribe",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if orchestrator:
        stats.update(await orchestrator.stats())
    return stats


# =============================================================================
# Review
# =============================================================================

@app.get("/review")
async def get_reviews():
    """Pending updates and memory candidates"""
    pending = await _require_orchestrator().pending()
    updates, candidates = pending["updates"], pending["memory_candidates"]
    return {
        "pending_count": len(updates) + len(candidates),
        "updates": [u.model_dump(mode="json") for u in updates],
        "memory_candidates": [
            {
                "id": c.id,
                "channel_name": c.channel_name,
                "thread_url": c.thread_url,
                "submitted_by": c.submitted_by,
                "submitted_at": c.submitted_at,
                "memory_count": len(c.extracted_memories),
            }
            for c in candidates
        ],
    }


@app.get("/review/{record_id}")
async def get_review_item(record_id: str):
    """One update or memory candidate, in any status"""
    orch = _require_orchestrator()
    if family_for(record_id) == RecordFamily.MEMORY:
        record = orch.memories.get_candidate(record_id)
    else:
        record = orch.updates.get(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Record not found")
    return record.model_dump(mode="json")


@app.post("/review/{record_id}")
async def submit_review(record_id: str, submission: ReviewSubmission):
    """Approve, reject or edit; a record already processed answers 409"""
    fields = submission.edit_fields()
    if submission.decision == ReviewVerb.EDIT and not fields:
        raise HTTPException(status_code=400, detail="Edit needs target, value or memories")

    outcome = await _require_orchestrator().review(
        record_id, submission.decision, submission.reviewer, submission.note, fields
    )
    if outcome.status == ReviewStatus.FORBIDDEN:
        raise HTTPException(status_code=403, detail=outcome.message)
    if outcome.status == ReviewStatus.NOT_FOUND:
        raise HTTPException(status_code=409, detail=outcome.message)
    if outcome.status == ReviewStatus.INVALID:
        raise HTTPException(status_code=400, detail=outcome.message)

    return {
        "status": outcome.status.value,
        "record_id": record_id,
        "message": outcome.message,
        "memory_ids": outcome.memory_ids,
    }


@app.post("/updates", status_code=201)
async def submit_update(submission: UpdateSubmission):
    """Queue a typed update for review without going through the classifier"""
    orch = _require_orchestrator()
    if not orch.writer.target_for(submission.type):
        raise HTTPException(status_code=400, detail=f"Unknown update type '{submission.type}'")

    update = await orch.submit_update(
        submission.type,
        submission.target,
        submission.value,
        submission.submitted_by,
        UpdateSource.API,
    )
    return update.model_dump(mode="json")


# =============================================================================
# Memories & Knowledge
# =============================================================================

@app.get("/memories")
async def search_memories(
    q: Optional[str] = None,
    type: Optional[MemoryType] = None,
    channel: Optional[str] = None,
    limit: int = 20,
):
    """Search approved memories by content, type and channel"""
    orch = _require_orchestrator()
    limit = max(1, min(limit, 200))
    memories = orch.memories.search(q, type.value if type else None, channel, limit)
    return {
        "count": len(memories),
        "memories": [m.model_dump(mode="json") for m in memories],
    }


@app.delete("/memories/{memory_id}")
async def delete_memory(memory_id: str):
    """Remove an approved memory (admin action)"""
    if not _require_orchestrator().memories.delete_memory(memory_id):
        raise HTTPException(status_code=404, detail="Memory not found")
    return {"status": "deleted", "memory_id": memory_id}


@app.post("/knowledge/reload")
async def reload_knowledge():
    """Re-read knowledge documents after manual edits"""
    snapshot = _require_orchestrator().knowledge_base.reload()
    return {
        "version": snapshot.version,
        "loaded_at": snapshot.loaded_at,
        "documents": {name: len(text) for name, text in snapshot.documents.items()},
    }


# =============================================================================
# CLI Entry Point
# =============================================================================

def run_server():
    """Run the Scribe server"""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    load_dotenv()
    port = load_config().slack.port

    logger.info("Starting server on port %d", port)
    uvicorn.run(
        "steward.scribe.server:app",
        host="0.0.0.0",
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
