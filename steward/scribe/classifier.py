"""
Intent Classifier

Decides whether a direct message asks the assistant to update, record or
remember something.

Pipeline:
1. Query exclusion: questions are never updates
2. Update inclusion: without update phrasing the answer is no
3. Model confirmation: a strict YES/NO prompt with a bounded timeout

When confirmation fails (error, timeout, empty answer) the classifier
answers with ``fallback_on_error``, which defaults to True: a spurious
review request is cheap, a silently dropped update is not.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ..common.llm_client import Completion, complete_async
from .intent_rules import IntentRule, Polarity, RuleSet, Stage

logger = logging.getLogger("steward.scribe.classifier")


CONFIRM_PROMPT = """Classify this message. Is it a request to UPDATE, RECORD, or REMEMBER information (for example a status change, a completed task, a new contact, a fact to keep)?

Message: "{text}"

Reply with ONLY one word:
YES - if the user wants information updated, recorded or remembered
NO - if it is a question, a greeting, or general conversation"""


@dataclass
class ClassificationResult:
    """Outcome of classification, with the deciding stage"""
    is_update: bool
    stage: str
    matched_rule: Optional[IntentRule] = None
    confirmed_by_model: bool = False
    fallback_used: bool = False
    raw_response: Optional[str] = None


class IntentClassifier:
    """
    Rule-gated, model-confirmed update intent detection.

    Args:
        llm: Completion capability for the confirming call (None disables it)
        rules: Phrase table (defaults to the built-in rules)
        confirm_enabled: Whether stage 3 runs at all
        confirm_timeout: Seconds to wait for the confirming call
        fallback_on_error: Answer used when confirmation fails
    """

    def __init__(
        self,
        llm: Optional[Completion] = None,
        rules: Optional[RuleSet] = None,
        confirm_enabled: bool = True,
        confirm_timeout: float = 15.0,
        fallback_on_error: bool = True,
    ):
        self._llm = llm
        self._rules = rules or RuleSet()
        self._confirm_enabled = confirm_enabled
        self._confirm_timeout = confirm_timeout
        self._fallback_on_error = fallback_on_error

    @property
    def rules(self) -> RuleSet:
        return self._rules

    async def classify(self, text: str) -> bool:
        result = await self.classify_with_details(text)
        return result.is_update

    async def classify_with_details(self, text: str) -> ClassificationResult:
        if not text or not text.strip():
            return ClassificationResult(is_update=False, stage="empty")

        query = self._rules.first_match(Stage.QUERY, text, Polarity.EXCLUDE)
        if query:
            logger.debug("Query excluded (%s): %s", query.label, text[:80])
            return ClassificationResult(is_update=False, stage=Stage.QUERY.value, matched_rule=query)

        inclusion = self._rules.first_match(Stage.UPDATE, text, Polarity.INCLUDE)
        if not inclusion:
            return ClassificationResult(is_update=False, stage=Stage.UPDATE.value)

        if not self._confirm_enabled or self._llm is None:
            return ClassificationResult(
                is_update=True, stage=Stage.UPDATE.value, matched_rule=inclusion
            )

        return await self._confirm(text, inclusion)

    async def _confirm(self, text: str, inclusion: IntentRule) -> ClassificationResult:
        prompt = CONFIRM_PROMPT.format(text=text)
        try:
            raw = await complete_async(
                self._llm, prompt, max_tokens=10, timeout=self._confirm_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Intent confirmation timed out after %.1fs, defaulting to %s",
                self._confirm_timeout, self._fallback_on_error,
            )
            return self._fallback(inclusion, None)
        except Exception as e:
            logger.warning("Intent confirmation failed (%s), defaulting to %s", e, self._fallback_on_error)
            return self._fallback(inclusion, None)

        answer = (raw or "").strip()
        if not answer:
            logger.warning("Empty intent confirmation, defaulting to %s", self._fallback_on_error)
            return self._fallback(inclusion, raw)

        is_update = "YES" in answer.upper()
        logger.info("Intent confirmation for '%s': %s", text[:50], answer[:20])
        return ClassificationResult(
            is_update=is_update,
            stage="confirm",
            matched_rule=inclusion,
            confirmed_by_model=is_update,
            raw_response=raw,
        )

    def _fallback(self, inclusion: IntentRule, raw: Optional[str]) -> ClassificationResult:
        return ClassificationResult(
            is_update=self._fallback_on_error,
            stage="confirm",
            matched_rule=inclusion,
            fallback_used=True,
            raw_response=raw,
        )

    def is_admin_correction(self, text: str) -> bool:
        """Corrective phrasing ("should be", 更正, ...); only meaningful for the admin"""
        if not text:
            return False
        return self._rules.first_match(Stage.ADMIN_CORRECTION, text, Polarity.INCLUDE) is not None

    def has_memory_trigger(self, text: str) -> bool:
        """'Remember this' phrasing in a mention"""
        if not text:
            return False
        return self._rules.first_match(Stage.MEMORY_TRIGGER, text, Polarity.INCLUDE) is not None
