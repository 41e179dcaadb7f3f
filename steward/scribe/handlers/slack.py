"""
Slack Handler

Converts Slack Events API and interactivity payloads into ChatEvents and
ControlEvents, and implements the Notifier protocol over the Slack Web API.
"""

import hashlib
import hmac
import logging
import re
import time
from typing import Any, Dict, List, Optional

import httpx

from ...common.errors import ChatDeliveryError
from ...common.schemas.records import ThreadMessage
from ..actions import ReviewAction
from .base import (
    BaseHandler,
    ChatEvent,
    ChatEventType,
    ControlEvent,
    EditForm,
    Notification,
)

logger = logging.getLogger("steward.scribe.handlers.slack")

SLACK_API_BASE = "https://slack.com/api"
SECTION_TEXT_LIMIT = 3000

_MENTION_RE = re.compile(r"<@([UW][A-Z0-9]+)>")

_IGNORED_SUBTYPES = {
    "bot_message", "channel_join", "channel_leave", "channel_topic",
    "channel_purpose", "channel_name", "message_changed", "message_deleted",
}


def format_for_slack(text: str) -> str:
    """Convert Markdown to Slack mrkdwn"""
    if not text:
        return ""
    result = re.sub(r"\*\*(.+?)\*\*", r"*\1*", text)
    result = re.sub(r"__(.+?)__", r"*\1*", result)
    result = re.sub(r"~~(.+?)~~", r"~\1~", result)
    result = re.sub(r"```\w*\n([\s\S]*?)```", r"```\1```", result)
    result = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r"<\2|\1>", result)
    result = re.sub(r"^#{1,6}\s+(.+)$", r"*\1*", result, flags=re.MULTILINE)
    result = re.sub(r"^(-{3,}|\*{3,})$", "───────────", result, flags=re.MULTILINE)
    result = re.sub(r"^[-*]\s+", "• ", result, flags=re.MULTILINE)
    return result


def _truncate(text: str, limit: int = SECTION_TEXT_LIMIT) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


def notification_blocks(content: Notification) -> List[Dict[str, Any]]:
    """Render a Notification as Block Kit blocks"""
    body = f"*{content.title}*\n\n{content.text}" if content.title else content.text
    blocks: List[Dict[str, Any]] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": _truncate(body)}}
    ]
    if content.footer:
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": content.footer}],
        })
    if content.buttons:
        elements = []
        for button in content.buttons:
            element = {
                "type": "button",
                "text": {"type": "plain_text", "text": button.label},
                "action_id": button.action.action_id,
            }
            if button.style:
                element["style"] = button.style
            elements.append(element)
        blocks.append({"type": "actions", "elements": elements})
    return blocks


def form_view(form: EditForm, private_metadata: str = "") -> Dict[str, Any]:
    """Render an EditForm as a modal view; callback_id carries the action id"""
    blocks = []
    for f in form.fields:
        blocks.append({
            "type": "input",
            "block_id": f.name,
            "label": {"type": "plain_text", "text": f.label},
            "element": {
                "type": "plain_text_input",
                "action_id": f"{f.name}_input",
                "initial_value": f.value,
                "multiline": f.multiline,
            },
        })
    return {
        "type": "modal",
        "callback_id": form.action.action_id,
        "private_metadata": private_metadata,
        "title": {"type": "plain_text", "text": form.title[:24]},
        "submit": {"type": "plain_text", "text": form.submit_label},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": blocks,
    }


class SlackHandler(BaseHandler):
    """
    Handler for Slack Events API and interactivity webhooks.

    Processes:
    - app_mention events
    - message events in direct-message channels
    - thread replies in channels
    - block_actions and view_submission payloads

    Ignores:
    - Bot messages, including the assistant's own
    - Message edits, deletions and channel housekeeping subtypes
    """

    def __init__(self, signing_secret: str = "", bot_user_id: str = ""):
        super().__init__("slack")
        self._signing_secret = signing_secret
        self._bot_user_id = bot_user_id

    def parse_event(self, raw_data: Dict[str, Any]) -> Optional[ChatEvent]:
        if raw_data.get("type") != "event_callback":
            return None

        event = raw_data.get("event", {})
        if event.get("bot_id") or event.get("subtype") in _IGNORED_SUBTYPES:
            return None
        user = event.get("user", "")
        if not user or (self._bot_user_id and user == self._bot_user_id):
            return None

        event_type = event.get("type", "")
        ts = event.get("ts", "")
        thread_ts = event.get("thread_ts")

        if event_type == "app_mention":
            kind = ChatEventType.MENTION
            text = self._strip_bot_mention(event.get("text", ""))
        elif event_type == "message":
            text = event.get("text", "")
            if thread_ts and thread_ts != ts:
                kind = ChatEventType.THREAD_REPLY
            elif event.get("channel_type") == "im":
                kind = ChatEventType.DIRECT_MESSAGE
            else:
                return None
            # Mentions in channels also arrive as app_mention
            if event.get("channel_type") != "im" and self._mentions_bot(text):
                return None
        else:
            return None

        return ChatEvent(
            type=kind,
            author_id=user,
            text=text,
            channel=event.get("channel", ""),
            ts=ts,
            thread_ts=thread_ts,
            raw_data=event,
        )

    def parse_interaction(self, payload: Dict[str, Any]) -> Optional[ControlEvent]:
        payload_type = payload.get("type")
        actor = payload.get("user", {}).get("id", "")

        if payload_type == "block_actions":
            actions = payload.get("actions") or []
            if not actions:
                return None
            container = payload.get("container", {})
            return ControlEvent(
                action=ReviewAction.parse(actions[0].get("action_id", "")),
                actor_id=actor,
                channel=(payload.get("channel") or {}).get("id") or container.get("channel_id"),
                trigger_id=payload.get("trigger_id"),
                message_ts=container.get("message_ts") or (payload.get("message") or {}).get("ts"),
            )

        if payload_type == "view_submission":
            view = payload.get("view", {})
            return ControlEvent(
                action=ReviewAction.parse(view.get("callback_id", "")),
                actor_id=actor,
                channel=view.get("private_metadata") or None,
                form_fields=self._form_values(view),
            )

        return None

    def verify_signature(self, body: bytes, signature: str, timestamp: str) -> bool:
        """
        Verify Slack request signature.

        Args:
            body: Raw request body
            signature: X-Slack-Signature header
            timestamp: X-Slack-Request-Timestamp header
        """
        if not self._signing_secret:
            return True

        if not signature or not timestamp:
            return False

        try:
            if abs(time.time() - int(timestamp)) > 300:
                return False
        except ValueError:
            return False

        sig_basestring = f"v0:{timestamp}:{body.decode('utf-8')}"
        expected_sig = "v0=" + hmac.new(
            self._signing_secret.encode("utf-8"),
            sig_basestring.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected_sig, signature)

    def is_url_verification(self, raw_data: Dict[str, Any]) -> bool:
        return raw_data.get("type") == "url_verification"

    def get_challenge(self, raw_data: Dict[str, Any]) -> Optional[str]:
        if self.is_url_verification(raw_data):
            return raw_data.get("challenge")
        return None

    def _mentions_bot(self, text: str) -> bool:
        return bool(self._bot_user_id) and f"<@{self._bot_user_id}>" in text

    def _strip_bot_mention(self, text: str) -> str:
        if self._bot_user_id:
            text = text.replace(f"<@{self._bot_user_id}>", "")
        else:
            text = _MENTION_RE.sub("", text, count=1)
        return text.strip()

    @staticmethod
    def _form_values(view: Dict[str, Any]) -> Dict[str, str]:
        values = {}
        for block_id, elements in view.get("state", {}).get("values", {}).items():
            for element in elements.values():
                values[block_id] = element.get("value") or ""
        return values


class SlackNotifier:
    """
    Notifier over the Slack Web API.

    Args:
        bot_token: Bot OAuth token (xoxb-...)
        client: Optional preconfigured AsyncClient (tests inject a mock transport)
    """

    def __init__(
        self,
        bot_token: str,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = SLACK_API_BASE,
    ):
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {bot_token}"}

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(
        self,
        method: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url}/{method}"
        if json is not None:
            response = await self._client.post(url, json=json, headers=self._headers)
        else:
            response = await self._client.get(url, params=params, headers=self._headers)
        response.raise_for_status()
        data = response.json()
        if not data.get("ok"):
            raise ChatDeliveryError(f"Slack {method} failed: {data.get('error', 'unknown_error')}")
        return data

    async def _resolve_channel(self, target_id: str) -> str:
        """User IDs are turned into their DM channel"""
        if target_id[:1] in ("U", "W"):
            data = await self._call("conversations.open", json={"users": target_id})
            return data["channel"]["id"]
        return target_id

    async def notify(self, target_id: str, content: Notification) -> Optional[str]:
        channel = await self._resolve_channel(target_id)
        data = await self._call("chat.postMessage", json={
            "channel": channel,
            "text": content.fallback_text,
            "blocks": notification_blocks(content),
        })
        return data.get("ts")

    async def reply(self, channel: str, text: str, thread_ts: Optional[str] = None) -> Optional[str]:
        """Plain reply; Markdown is converted to mrkdwn"""
        payload = {"channel": channel, "text": format_for_slack(text)}
        if thread_ts:
            payload["thread_ts"] = thread_ts
        data = await self._call("chat.postMessage", json=payload)
        return data.get("ts")

    async def open_form(self, actor_id: str, form: EditForm, trigger_id: Optional[str]) -> bool:
        if not trigger_id:
            logger.warning("No trigger_id for %s, cannot open form for %s", form.action.action_id, actor_id)
            return False
        await self._call("views.open", json={
            "trigger_id": trigger_id,
            "view": form_view(form, private_metadata=actor_id),
        })
        return True

    async def fetch_thread(self, channel: str, thread_ts: str) -> List[ThreadMessage]:
        data = await self._call(
            "conversations.replies", params={"channel": channel, "ts": thread_ts, "limit": 100}
        )
        return [
            ThreadMessage(
                user=msg.get("user") or msg.get("bot_id") or "",
                text=msg.get("text", ""),
                ts=msg.get("ts", ""),
                is_bot=bool(msg.get("bot_id")) or msg.get("subtype") == "bot_message",
            )
            for msg in data.get("messages", [])
        ]

    async def channel_name(self, channel: str) -> str:
        try:
            data = await self._call("conversations.info", params={"channel": channel})
        except (ChatDeliveryError, httpx.HTTPError) as e:
            logger.warning("Could not resolve channel %s: %s", channel, e)
            return channel
        return data.get("channel", {}).get("name") or channel

    async def permalink(self, channel: str, ts: str) -> Optional[str]:
        try:
            data = await self._call(
                "chat.getPermalink", params={"channel": channel, "message_ts": ts}
            )
        except (ChatDeliveryError, httpx.HTTPError) as e:
            logger.warning("Could not get permalink for %s/%s: %s", channel, ts, e)
            return None
        return data.get("permalink")

    async def display_names(self, user_ids: List[str]) -> Dict[str, str]:
        names: Dict[str, str] = {}
        for user_id in dict.fromkeys(user_ids):
            try:
                data = await self._call("users.info", params={"user": user_id})
                user = data.get("user", {})
                names[user_id] = user.get("real_name") or user.get("name") or user_id
            except (ChatDeliveryError, httpx.HTTPError):
                names[user_id] = user_id
        return names
