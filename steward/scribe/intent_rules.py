"""
Intent Rules

Phrase tables behind the intent classifier, kept as data so that new
languages or phrasings are a table edit rather than a code change.

Each ``IntentRule`` belongs to a stage and has a polarity:

- QUERY: questions. An EXCLUDE match ends classification as "not an update".
- UPDATE: update/record/remember phrasing. An INCLUDE match sends the message
  on to model confirmation.
- ADMIN_CORRECTION: corrective phrasing used only for the administrator.
- MEMORY_TRIGGER: "remember this" phrasing for thread mentions.

Rule files (JSON) can replace the built-in table:

    [{"pattern": "booked", "polarity": "include", "stage": "update"}, ...]
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ..common.config import DEFAULT_OEM_VENDORS

logger = logging.getLogger("steward.scribe.intent_rules")


class Polarity(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class Stage(str, Enum):
    QUERY = "query"
    UPDATE = "update"
    ADMIN_CORRECTION = "admin_correction"
    MEMORY_TRIGGER = "memory_trigger"


@dataclass(frozen=True)
class IntentRule:
    """A single phrase pattern (case-insensitive regex)"""
    pattern: str
    polarity: Polarity
    stage: Stage
    label: str = ""
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_regex", re.compile(self.pattern, re.IGNORECASE))

    def matches(self, text: str) -> bool:
        return bool(self._regex.search(text))


def _rules(stage: Stage, polarity: Polarity, entries: Iterable[Tuple[str, str]]) -> List[IntentRule]:
    return [IntentRule(pattern, polarity, stage, label) for pattern, label in entries]


DEFAULT_RULES: List[IntentRule] = (
    _rules(Stage.QUERY, Polarity.EXCLUDE, [
        (r"^\s*(what|what's|whats|who|whom|whose|when|where|why|how|which)\b", "wh-question"),
        (r"[?？]\s*$", "question mark"),
        (r"嗎|吗|什麼|什么|多少|哪[裡里個个些]|如何|怎麼|怎么|是否|為什麼|为什么", "chinese question"),
    ])
    + _rules(Stage.UPDATE, Polarity.INCLUDE, [
        (r"記得|記住|記錄|记得|记住|记录", "remember"),
        (r"更新|\bupdate", "update"),
        (r"新增|加入|添加|\badd(ed)?\b", "add"),
        (r"邀請了|邀请了|\bcontacted\b|聯繫了|联系了", "contacted"),
        (r"已經.*完成|已完成|已经.*完成|\bcompleted\b|\bdone\b", "completed"),
        (r"狀態.*變成|改為|\bchanged\b|状态.*变成|改为", "status change"),
        (r"\b(confirmed|signed|booked|scheduled|finalized|closed)\b|確認了|确认了|簽約|签约", "status"),
        (r"進度|进度|\bprogress\b", "progress"),
        (r"幫我.*通知|帮我.*通知", "notify"),
        (r"待[辦办]|\btodo\b", "todo"),
        (r"\b(remember|record|note)\s+(that|this)\b", "remember"),
    ])
    + _rules(Stage.ADMIN_CORRECTION, Polarity.INCLUDE, [
        (r"修正|糾正|纠正|\bcorrect(ion)?\b", "correct"),
        (r"目標是|目標為|目标是|目标为", "target is"),
        (r"應該是|應為|应该是|应为|\bshould be\b", "should be"),
        (r"改[成為为]", "change to"),
        (r"不是.*而是|\bnot\b.*\bbut\b", "not x but y"),
        (r"更正", "amend"),
    ])
    + _rules(Stage.MEMORY_TRIGGER, Polarity.INCLUDE, [
        (r"記住|記下|要記|幫我記|記得|记住|记下|帮我记|记得", "remember"),
        (r"記錄下來|记录下来", "write down"),
        (r"\bremember\b", "remember"),
        (r"\bsave this\b", "save this"),
        (r"\bnote this\b", "note this"),
    ])
)


class RuleSet:
    """Indexed view over a rule table"""

    def __init__(self, rules: Optional[Iterable[IntentRule]] = None):
        self._rules = list(DEFAULT_RULES if rules is None else rules)

    def __len__(self) -> int:
        return len(self._rules)

    def for_stage(self, stage: Stage) -> List[IntentRule]:
        return [r for r in self._rules if r.stage == stage]

    def first_match(
        self, stage: Stage, text: str, polarity: Optional[Polarity] = None
    ) -> Optional[IntentRule]:
        """First rule of the stage (and polarity, if given) matching ``text``"""
        for rule in self._rules:
            if rule.stage != stage:
                continue
            if polarity is not None and rule.polarity != polarity:
                continue
            if rule.matches(text):
                return rule
        return None


def load_rules_file(path: str) -> List[IntentRule]:
    """Load a rule table from a JSON file"""
    data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    rules = []
    for entry in data:
        rules.append(IntentRule(
            pattern=entry["pattern"],
            polarity=Polarity(entry.get("polarity", Polarity.INCLUDE.value)),
            stage=Stage(entry["stage"]),
            label=entry.get("label", ""),
        ))
    logger.info("Loaded %d intent rules from %s", len(rules), path)
    return rules


# ============================================================================
# Knowledge type routing
# ============================================================================

_EVENT_RE = re.compile(r"CES|展位|展會|展会|trade\s*show", re.IGNORECASE)
_CONTACT_RE = re.compile(r"邀請|邀请|contacted|聯繫|联系|meeting|會議|会议", re.IGNORECASE)
_CONTACT_NAME_RE = re.compile(r"(?:邀請了?|邀请了?|contacted)\s*([^,，。\n]+)", re.IGNORECASE)


@dataclass(frozen=True)
class KnowledgeInfo:
    """Coarse routing for a free-text update"""
    type: str = "general"
    target: str = "Knowledge Update"


def extract_knowledge_info(text: str, vendors: Optional[List[str]] = None) -> KnowledgeInfo:
    """
    Map an update message to a knowledge type and target.

    Later categories win: a message naming a vendor and a meeting is filed
    as a contact.
    """
    info = KnowledgeInfo()

    vendor_names = vendors or DEFAULT_OEM_VENDORS
    vendor_re = re.compile(
        r"\b(" + "|".join(re.escape(v) for v in vendor_names) + r")\b", re.IGNORECASE
    )
    match = vendor_re.search(text)
    if match:
        info = KnowledgeInfo(type="oem", target=match.group(1))

    if _EVENT_RE.search(text):
        info = KnowledgeInfo(type="ces", target="CES Update")

    if _CONTACT_RE.search(text):
        name = _CONTACT_NAME_RE.search(text)
        target = name.group(1).strip()[:50] if name else info.target
        info = KnowledgeInfo(type="contact", target=target)

    return info
