"""
Thread Extractor

Turns a chat thread into structured memory items with one model call.
Malformed model output never raises: the extractor logs it and returns an
empty list, which the orchestrator reports as "nothing worth remembering".
"""

import asyncio
import json
import logging
import re
from typing import Dict, List, Optional, Sequence

from ..common.llm_client import Completion, complete_async
from ..common.llm_utils import parse_llm_json_array
from ..common.schemas.records import ExtractedMemory, MemoryType, ThreadMessage

logger = logging.getLogger("steward.scribe.thread_extractor")


EXTRACTION_PROMPT = """You are {bot_name}, a team assistant in Slack. A user asked you to remember the key points of the conversation below.

## Source
Channel: #{channel}

## Conversation
{messages}

## Task
Extract the information from this conversation that is worth keeping long term.

### Worth remembering
1. **decision** - decisions, agreements, conclusions
2. **action** - to-dos and next steps
3. **preference** - user or team preferences
4. **fact** - important facts and figures
5. **context** - background that explains the above

### Not worth remembering
- Small talk and greetings
- Repeated information
- Temporary back-and-forth

## Output format
A JSON array. Each item has:
- type: one of decision/action/preference/fact/context
- content: the memory, short and specific
- context: related context (optional)
- tags: array of tags (optional)

Example:
[
  {{
    "type": "decision",
    "content": "Skill system prompts are not user-editable; users only create and edit skill prompts",
    "context": "Weekly sync - skill consensus",
    "tags": ["skill", "product-decision"]
  }}
]

If nothing is worth remembering, reply with an empty array [].

Output only JSON, no other text:"""


_VALID_TYPES = {t.value for t in MemoryType}

_LINE_RE = re.compile(
    r"^\s*(?:[-*•]\s*|\d+[.)]\s*)?"
    r"(?P<type>[A-Za-z]+)\s*:\s*"
    r"(?P<content>.*?)"
    r"(?:\s*\(context:\s*(?P<context>[^)]*)\))?"
    r"(?P<tags>(?:\s+#[^\s#]+)*)\s*$"
)


def format_messages(
    messages: Sequence[ThreadMessage],
    user_names: Optional[Dict[str, str]] = None,
) -> str:
    """Render messages as ``[name]: text`` blocks for the prompt"""
    user_names = user_names or {}
    return "\n\n".join(
        f"[{user_names.get(m.user, m.user)}]: {m.text}" for m in messages
    )


def parse_memories(raw: str) -> List[ExtractedMemory]:
    """Parse model output into memory items.

    Strips code fences, requires a JSON array and drops items without a
    ``type`` or ``content`` or with a type outside the allowed set. Order
    is preserved and duplicates are kept.
    """
    try:
        data = parse_llm_json_array(raw)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse extraction response: %s", e)
        logger.debug("Raw extraction response: %s", raw)
        return []

    if not isinstance(data, list):
        logger.error("Extraction response is not an array")
        return []

    memories = []
    for item in data:
        if not isinstance(item, dict) or not item.get("type") or not item.get("content"):
            logger.warning("Invalid memory item: %s", item)
            continue
        type_value = str(item["type"]).strip().lower()
        if type_value not in _VALID_TYPES:
            logger.warning("Unknown memory type '%s', dropping item", item["type"])
            continue

        tags = item.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]
        elif not isinstance(tags, (list, tuple)):
            logger.warning("Ignoring non-list tags %r", tags)
            tags = []
        content = str(item["content"]).strip()
        if not content:
            logger.warning("Blank memory content, dropping item")
            continue
        context = item.get("context")
        try:
            memories.append(ExtractedMemory(
                type=MemoryType(type_value),
                content=content,
                context=str(context).strip() if context else None,
                tags=[str(t).strip().lstrip("#") for t in tags if str(t).strip()],
            ))
        except (TypeError, ValueError) as e:
            # pydantic ValidationError is a ValueError
            logger.warning("Dropping malformed memory item %s: %s", item, e)
    return memories


def parse_memory_lines(text: str) -> List[ExtractedMemory]:
    """Parse a reviewer's edited memory list, one item per line.

    Line format: ``type: content (context: ...) #tag1 #tag2``. Lines with
    an unknown type are kept as ``fact`` with the whole line as content.
    """
    memories = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        match = _LINE_RE.match(line)
        if match and match.group("type").lower() in _VALID_TYPES and match.group("content").strip():
            tags = [t.lstrip("#") for t in match.group("tags").split()]
            context = match.group("context")
            memories.append(ExtractedMemory(
                type=MemoryType(match.group("type").lower()),
                content=match.group("content").strip(),
                context=context.strip() if context else None,
                tags=tags,
            ))
        else:
            memories.append(ExtractedMemory(type=MemoryType.FACT, content=line.strip()))
    return memories


class ThreadExtractor:
    """
    Extracts memory items from a thread.

    Args:
        llm: Completion capability
        bot_user_id: The assistant's own user ID; its messages are skipped
        bot_name: Name used in the prompt
        timeout: Seconds to wait for the model
        max_tokens: Completion budget
    """

    def __init__(
        self,
        llm: Optional[Completion],
        bot_user_id: str = "",
        bot_name: str = "KITT",
        timeout: float = 60.0,
        max_tokens: int = 1500,
    ):
        self._llm = llm
        self._bot_user_id = bot_user_id
        self._bot_name = bot_name
        self._timeout = timeout
        self._max_tokens = max_tokens

    def filter_messages(self, messages: Sequence[ThreadMessage]) -> List[ThreadMessage]:
        """Drop the assistant's own messages and empty ones"""
        return [
            m for m in messages
            if not m.is_bot
            and not (self._bot_user_id and m.user == self._bot_user_id)
            and m.text.strip()
        ]

    def build_prompt(
        self,
        messages: Sequence[ThreadMessage],
        channel_label: str,
        user_names: Optional[Dict[str, str]] = None,
    ) -> str:
        return EXTRACTION_PROMPT.format(
            bot_name=self._bot_name,
            channel=channel_label,
            messages=format_messages(messages, user_names),
        )

    async def extract(
        self,
        thread_messages: Sequence[ThreadMessage],
        channel_label: str,
        user_names: Optional[Dict[str, str]] = None,
    ) -> List[ExtractedMemory]:
        messages = self.filter_messages(thread_messages)
        if not messages:
            logger.info("No human messages in thread, nothing to extract")
            return []
        if self._llm is None:
            logger.warning("No LLM configured, skipping extraction")
            return []

        prompt = self.build_prompt(messages, channel_label, user_names)
        logger.info("Extracting memories from %d messages in #%s", len(messages), channel_label)

        try:
            raw = await complete_async(
                self._llm, prompt, max_tokens=self._max_tokens, timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.error("Memory extraction timed out after %.1fs", self._timeout)
            return []
        except Exception as e:
            logger.error("Memory extraction failed: %s", e)
            return []

        memories = parse_memories(raw)
        logger.info("Extracted %d memories", len(memories))
        return memories
