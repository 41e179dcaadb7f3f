"""
Scribe server endpoint tests.

The app is exercised without its lifespan: module globals are patched with
an orchestrator over temporary stores and a mocked chat platform.
"""

import hashlib
import hmac
import json
import time
from datetime import date
from unittest.mock import AsyncMock, Mock
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from steward.common.config import DEFAULT_KB_TARGETS, StewardConfig
from steward.common.llm_client import FallbackCompletion
from steward.common.schemas.records import ExtractedMemory, MemoryType, RecordStatus
from steward.scribe import server
from steward.scribe.actions import ReviewVerb
from steward.scribe.classifier import IntentClassifier
from steward.scribe.handlers import ChatEvent, ChatEventType, SlackHandler
from steward.scribe.orchestrator import ApprovalOrchestrator
from steward.scribe.patcher import KnowledgeDocumentWriter
from steward.scribe.thread_extractor import ThreadExtractor


ADMIN = "UADMIN"


@pytest.fixture
def orchestrator(update_store, memory_store, conversation_store, knowledge_base):
    return ApprovalOrchestrator(
        updates=update_store,
        memories=memory_store,
        conversations=conversation_store,
        classifier=IntentClassifier(llm=None),
        extractor=ThreadExtractor(None),
        writer=KnowledgeDocumentWriter(knowledge_base, DEFAULT_KB_TARGETS, today=lambda: date(2025, 1, 7)),
        knowledge_base=knowledge_base,
        notifier=AsyncMock(),
        admin_user_id=ADMIN,
    )


@pytest.fixture
def client(monkeypatch, orchestrator):
    monkeypatch.setattr(server, "orchestrator", orchestrator)
    monkeypatch.setattr(server, "slack_handler", SlackHandler(bot_user_id="UBOT"))
    return TestClient(server.app)


def _payload_body(payload):
    return urlencode({"payload": json.dumps(payload)})


# ============================================================================
# Health & Stats
# ============================================================================

def test_health_uninitialized(monkeypatch):
    monkeypatch.setattr(server, "orchestrator", None)
    response = TestClient(server.app).get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy", "service": "scribe", "initialized": False, "knowledge_base_version": 0,
    }


def test_health(client):
    body = client.get("/health").json()
    assert body["initialized"] is True
    assert body["knowledge_base_version"] == 1


def test_stats(client, orchestrator):
    orchestrator.updates.create("oem", "Acme", "signed", "U1")

    body = client.get("/stats").json()

    assert body["service"] == "scribe"
    assert body["updates"]["pending"] == 1
    assert body["memories"]["total_memories"] == 0


def test_review_api_requires_initialization(monkeypatch):
    monkeypatch.setattr(server, "orchestrator", None)
    assert TestClient(server.app).get("/review").status_code == 503


# ============================================================================
# Slack webhooks
# ============================================================================

class TestSlackEvents:
    def test_url_verification(self, client):
        response = client.post("/slack/events", json={"type": "url_verification", "challenge": "abc123"})
        assert response.json() == {"challenge": "abc123"}

    def test_invalid_json(self, client):
        response = client.post("/slack/events", content=b"not json")
        assert response.status_code == 400

    def test_direct_message_processed_in_background(self, client, orchestrator, monkeypatch):
        handle = AsyncMock()
        monkeypatch.setattr(orchestrator, "handle_chat_event", handle)

        response = client.post("/slack/events", json={
            "type": "event_callback",
            "event": {
                "type": "message", "channel_type": "im", "user": "U1",
                "text": "Acme signed", "channel": "D1", "ts": "1.0",
            },
        })

        assert response.json() == {"ok": True}
        [event] = handle.await_args.args
        assert (event.author_id, event.text) == ("U1", "Acme signed")

    def test_bot_messages_ignored(self, client, orchestrator, monkeypatch):
        handle = AsyncMock()
        monkeypatch.setattr(orchestrator, "handle_chat_event", handle)

        client.post("/slack/events", json={
            "type": "event_callback",
            "event": {"type": "message", "channel_type": "im", "user": "UBOT", "text": "hi", "ts": "1.0"},
        })

        handle.assert_not_called()

    def test_retries_acknowledged_without_processing(self, client, orchestrator, monkeypatch):
        handle = AsyncMock()
        monkeypatch.setattr(orchestrator, "handle_chat_event", handle)

        response = client.post(
            "/slack/events",
            json={"type": "event_callback", "event": {
                "type": "app_mention", "user": "U1", "text": "<@UBOT> hi", "channel": "C1", "ts": "1.0",
            }},
            headers={"X-Slack-Retry-Num": "1"},
        )

        assert response.status_code == 200
        handle.assert_not_called()

    def test_signature_enforced(self, client, monkeypatch):
        monkeypatch.setattr(server, "slack_handler", SlackHandler(signing_secret="shh"))
        body = json.dumps({"type": "url_verification", "challenge": "c"}).encode()

        assert client.post("/slack/events", content=body).status_code == 401

        ts = str(int(time.time()))
        signature = "v0=" + hmac.new(b"shh", f"v0:{ts}:".encode() + body, hashlib.sha256).hexdigest()
        response = client.post("/slack/events", content=body, headers={
            "X-Slack-Signature": signature, "X-Slack-Request-Timestamp": ts,
        })
        assert response.json() == {"challenge": "c"}


class TestSlackInteractions:
    def test_button_click_dispatched(self, client, orchestrator, monkeypatch):
        handle = AsyncMock()
        monkeypatch.setattr(orchestrator, "handle_control_event", handle)

        response = client.post(
            "/slack/interactions",
            content=_payload_body({
                "type": "block_actions",
                "user": {"id": ADMIN},
                "channel": {"id": "D9"},
                "trigger_id": "T1",
                "actions": [{"action_id": "approve_update_K3Z9QA"}],
            }),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.json() == {"ok": True}
        [event] = handle.await_args.args
        assert event.action.verb == ReviewVerb.APPROVE
        assert event.action.record_id == "K3Z9QA"
        assert (event.actor_id, event.channel) == (ADMIN, "D9")

    def test_unknown_action_acknowledged(self, client, orchestrator, monkeypatch):
        handle = AsyncMock()
        monkeypatch.setattr(orchestrator, "handle_control_event", handle)

        response = client.post(
            "/slack/interactions",
            content=_payload_body({
                "type": "block_actions", "user": {"id": ADMIN}, "actions": [{"action_id": "open_link"}],
            }),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 200
        handle.assert_not_called()

    def test_view_submission_closes_modal(self, client, orchestrator, monkeypatch):
        monkeypatch.setattr(orchestrator, "handle_control_event", AsyncMock())

        response = client.post(
            "/slack/interactions",
            content=_payload_body({
                "type": "view_submission",
                "user": {"id": ADMIN},
                "view": {"callback_id": "edit_update_K3Z9QA", "state": {"values": {}}},
            }),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.json() == {}

    def test_invalid_payload(self, client):
        response = client.post(
            "/slack/interactions", content="payload=%7Bbroken",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 400


# ============================================================================
# Review API
# ============================================================================

class TestReviewApi:
    def test_list_and_get(self, client, orchestrator):
        update = orchestrator.updates.create("oem", "Acme", "signed", "U1")
        candidate = orchestrator.memories.create_candidate(
            "U2", [ExtractedMemory(type=MemoryType.FACT, content="Booth 12")], channel_name="product"
        )

        body = client.get("/review").json()

        assert body["pending_count"] == 2
        assert body["updates"][0]["id"] == update.id
        assert body["memory_candidates"][0] == {
            "id": candidate.id,
            "channel_name": "product",
            "thread_url": None,
            "submitted_by": "U2",
            "submitted_at": candidate.submitted_at,
            "memory_count": 1,
        }
        assert client.get(f"/review/{update.id}").json()["target"] == "Acme"
        assert client.get(f"/review/{candidate.id}").json()["status"] == "pending"
        assert client.get("/review/NOPE00").status_code == 404

    def test_approve_then_conflict(self, client, orchestrator, kb_dir):
        update = orchestrator.updates.create("oem", "Acme", "signed", "U1")

        first = client.post(f"/review/{update.id}", json={"decision": "approve", "reviewer": ADMIN})
        second = client.post(f"/review/{update.id}", json={"decision": "reject", "reviewer": ADMIN})

        assert first.status_code == 200
        assert first.json()["status"] == "applied"
        assert second.status_code == 409
        assert orchestrator.updates.get(update.id).status == RecordStatus.APPROVED
        assert "### Acme (2025-01-07)" in (kb_dir / "customers.md").read_text(encoding="utf-8")

    def test_non_admin_forbidden(self, client, orchestrator):
        update = orchestrator.updates.create("oem", "Acme", "signed", "U1")

        response = client.post(f"/review/{update.id}", json={"decision": "approve", "reviewer": "U1"})

        assert response.status_code == 403
        assert orchestrator.updates.get(update.id).is_pending

    def test_edit_without_fields(self, client):
        response = client.post("/review/K3Z9QA", json={"decision": "edit", "reviewer": ADMIN})
        assert response.status_code == 400

    def test_edit_update(self, client, orchestrator):
        update = orchestrator.updates.create("oem", "Acme", "signed", "U1")

        response = client.post(
            f"/review/{update.id}",
            json={"decision": "edit", "reviewer": ADMIN, "value": "signed for 2025"},
        )

        assert response.json()["status"] == "edited"
        stored = orchestrator.updates.get(update.id)
        assert (stored.target, stored.value, stored.edited_by) == ("Acme", "signed for 2025", ADMIN)
        assert stored.is_pending

    def test_edit_by_non_admin_forbidden(self, client, orchestrator):
        update = orchestrator.updates.create("oem", "Acme", "signed", "U1")

        response = client.post(f"/review/{update.id}", json={"decision": "edit", "reviewer": "U1", "value": "x"})

        assert response.status_code == 403
        assert orchestrator.updates.get(update.id).value == "signed"

    def test_edit_candidate_to_nothing_rejected(self, client, orchestrator):
        candidate = orchestrator.memories.create_candidate(
            "U2", [ExtractedMemory(type=MemoryType.FACT, content="Booth 12")]
        )

        response = client.post(
            f"/review/{candidate.id}", json={"decision": "edit", "reviewer": ADMIN, "memories": "  \n"}
        )

        assert response.status_code == 400
        assert len(orchestrator.memories.get_candidate(candidate.id).extracted_memories) == 1

    def test_edit_after_decision_conflicts(self, client, orchestrator):
        update = orchestrator.updates.create("oem", "Acme", "signed", "U1")
        client.post(f"/review/{update.id}", json={"decision": "reject", "reviewer": ADMIN})

        response = client.post(f"/review/{update.id}", json={"decision": "edit", "reviewer": ADMIN, "value": "x"})

        assert response.status_code == 409

    def test_approve_candidate(self, client, orchestrator):
        candidate = orchestrator.memories.create_candidate(
            "U2", [
                ExtractedMemory(type=MemoryType.DECISION, content="Ship v2 in March"),
                ExtractedMemory(type=MemoryType.FACT, content="Booth 12"),
            ],
        )

        response = client.post(f"/review/{candidate.id}", json={"decision": "approve", "reviewer": ADMIN})

        assert response.json()["status"] == "approved"
        assert len(response.json()["memory_ids"]) == 2
        assert "2 memories saved" in response.json()["message"]


class TestUpdateSubmission:
    def test_typed_update_filed_on_approval(self, client, orchestrator, kb_dir):
        response = client.post("/updates", json={
            "type": "pending", "target": "Globex", "value": "waiting on pricing sheet", "submitted_by": "U1",
        })

        assert response.status_code == 201
        body = response.json()
        assert (body["type"], body["source"], body["status"]) == ("pending", "api", "pending")
        orchestrator.notifier.notify.assert_awaited_once()

        approved = client.post(f"/review/{body['id']}", json={"decision": "approve", "reviewer": ADMIN})

        assert approved.json()["status"] == "applied"
        text = (kb_dir / "pm-memory.md").read_text(encoding="utf-8")
        section = text[text.index("## Waiting for Reply"):text.index("## Decision Context")]
        assert "### Globex (2025-01-07)" in section

    def test_unknown_type_rejected(self, client, orchestrator):
        response = client.post("/updates", json={
            "type": "pricing", "target": "Plan", "value": "x", "submitted_by": "U1",
        })

        assert response.status_code == 400
        assert orchestrator.updates.list_pending() == []


# ============================================================================
# Memories & Knowledge
# ============================================================================

class TestMemoriesApi:
    @pytest.fixture
    def approved(self, orchestrator):
        candidate = orchestrator.memories.create_candidate(
            "U2",
            [
                ExtractedMemory(type=MemoryType.DECISION, content="Ship v2 in March"),
                ExtractedMemory(type=MemoryType.FACT, content="CES booth is 12"),
            ],
            channel="C1",
        )
        return orchestrator.memories.approve_candidate(candidate.id, ADMIN)

    def test_search(self, client, approved):
        body = client.get("/memories", params={"q": "booth"}).json()
        assert body["count"] == 1
        assert body["memories"][0]["content"] == "CES booth is 12"

        by_type = client.get("/memories", params={"type": "decision"}).json()
        assert [m["content"] for m in by_type["memories"]] == ["Ship v2 in March"]

        assert client.get("/memories", params={"channel": "C2"}).json()["count"] == 0

    def test_invalid_type(self, client):
        assert client.get("/memories", params={"type": "rumor"}).status_code == 422

    def test_delete(self, client, approved):
        memory_id = approved[0]

        assert client.delete(f"/memories/{memory_id}").json() == {"status": "deleted", "memory_id": memory_id}
        assert client.delete(f"/memories/{memory_id}").status_code == 404


def test_knowledge_reload(client, kb_dir):
    (kb_dir / "knowledge-base.md").write_text("IrisGo v2", encoding="utf-8")

    body = client.post("/knowledge/reload").json()

    assert body["version"] == 2
    assert body["documents"]["product"] == len("IrisGo v2")


# ============================================================================
# Wiring
# ============================================================================

class TestBuildOrchestrator:
    @pytest.fixture
    def cfg(self, tmp_path, kb_dir):
        rules = tmp_path / "rules.json"
        rules.write_text(json.dumps([
            {"pattern": "\\bstash\\b", "stage": "memory_trigger"},
            {"pattern": "\\bsigned\\b", "stage": "update"},
        ]))
        cfg = StewardConfig()
        cfg.knowledge.base_path = str(kb_dir)
        cfg.storage.records_db_path = str(tmp_path / "records.db")
        cfg.storage.memory_db_path = str(tmp_path / "memory.db")
        cfg.classifier.rules_file = str(rules)
        cfg.classifier.confirm_enabled = False
        cfg.knowledge.oem_vendors = ["Acme"]
        return cfg

    def test_rules_file_replaces_builtin_phrases(self, cfg):
        orch = server.build_orchestrator(cfg, AsyncMock(), FallbackCompletion([]))

        assert orch.classifier.has_memory_trigger("stash this")
        assert not orch.classifier.has_memory_trigger("remember this")

    @pytest.mark.asyncio
    async def test_configured_vendors_reach_routing(self, cfg):
        orch = server.build_orchestrator(cfg, AsyncMock(), FallbackCompletion([]))

        update = await orch.handle_direct_message(ChatEvent(
            type=ChatEventType.DIRECT_MESSAGE, author_id="U1", text="Acme signed", channel="D1", ts="1.0",
        ))

        assert (update.type, update.target) == ("oem", "Acme")


@pytest.fixture
def cfg_for_lifespan(tmp_path, kb_dir):
    cfg = StewardConfig()
    cfg.knowledge.base_path = str(kb_dir)
    cfg.storage.records_db_path = str(tmp_path / "records.db")
    cfg.storage.memory_db_path = str(tmp_path / "memory.db")
    return cfg


def test_shutdown_closes_llm_connections(monkeypatch, cfg_for_lifespan):
    llm = Mock(is_available=False)
    monkeypatch.setattr(server, "load_config", lambda: cfg_for_lifespan)
    monkeypatch.setattr(server, "ensure_directories", lambda: None)
    monkeypatch.setattr(server, "FallbackCompletion", Mock(from_config=Mock(return_value=llm)))
    for name in ("config", "orchestrator", "slack_handler", "slack_notifier", "llm"):
        monkeypatch.setattr(server, name, None)

    with TestClient(server.app) as client:
        assert client.get("/health").json()["initialized"] is True
        llm.close.assert_not_called()

    llm.close.assert_called_once_with()

