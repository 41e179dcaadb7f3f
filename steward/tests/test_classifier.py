"""
Tests for the intent classifier

Rule gating, model confirmation and the fallback bias on failure.
"""

import time
import pytest
from unittest.mock import Mock

from steward.scribe.classifier import IntentClassifier
from steward.scribe.intent_rules import IntentRule, Polarity, RuleSet, Stage


def _llm(answer=None, error=None):
    llm = Mock()
    llm.is_available = True
    if error:
        llm.complete.side_effect = error
    else:
        llm.complete.return_value = answer
    return llm


class TestRuleGate:
    @pytest.mark.asyncio
    async def test_question_is_not_update(self):
        llm = _llm("YES")
        classifier = IntentClassifier(llm=llm)

        assert await classifier.classify("what's our CES status?") is False
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_confirmed_status_is_update(self):
        classifier = IntentClassifier(llm=_llm("YES"))
        assert await classifier.classify("CES booth confirmed for Jan 7") is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [
        "How do we update the roadmap",
        "Did Acme sign?",
        "CES 展位確認了嗎",
        "Who contacted Dell",
    ])
    async def test_questions_excluded(self, text):
        result = await IntentClassifier(llm=_llm("YES")).classify_with_details(text)
        assert result.is_update is False
        assert result.stage == "query"

    @pytest.mark.asyncio
    async def test_no_update_phrasing(self):
        llm = _llm("YES")
        result = await IntentClassifier(llm=llm).classify_with_details("Good morning team")
        assert result.is_update is False
        assert result.stage == "update"
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_text(self):
        assert await IntentClassifier().classify("   ") is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [
        "已經邀請了王經理",
        "Acme signed the OEM agreement",
        "記得 CES 展位在 Central Hall",
        "Demo video completed",
    ])
    async def test_rules_only_without_model(self, text):
        result = await IntentClassifier(llm=None).classify_with_details(text)
        assert result.is_update is True
        assert result.matched_rule is not None

    @pytest.mark.asyncio
    async def test_confirmation_disabled(self):
        llm = _llm("NO")
        classifier = IntentClassifier(llm=llm, confirm_enabled=False)
        assert await classifier.classify("Acme signed") is True
        llm.complete.assert_not_called()


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_model_says_no(self):
        result = await IntentClassifier(llm=_llm("NO")).classify_with_details("Acme signed")
        assert result.is_update is False
        assert result.stage == "confirm"

    @pytest.mark.asyncio
    async def test_yes_anywhere_in_answer(self):
        result = await IntentClassifier(llm=_llm("yes.")).classify_with_details("Acme signed")
        assert result.is_update is True
        assert result.confirmed_by_model is True

    @pytest.mark.asyncio
    async def test_prompt_contains_message(self):
        llm = _llm("YES")
        await IntentClassifier(llm=llm).classify("Acme signed")
        prompt, max_tokens = llm.complete.call_args.args
        assert 'Message: "Acme signed"' in prompt
        assert max_tokens == 10

    @pytest.mark.asyncio
    async def test_error_falls_back_to_positive(self):
        result = await IntentClassifier(llm=_llm(error=ConnectionError("down"))).classify_with_details("Acme signed")
        assert result.is_update is True
        assert result.fallback_used is True

    @pytest.mark.asyncio
    async def test_empty_answer_falls_back(self):
        result = await IntentClassifier(llm=_llm("   ")).classify_with_details("Acme signed")
        assert result.is_update is True
        assert result.fallback_used is True

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        llm = _llm()
        llm.complete.side_effect = lambda prompt, max_tokens: time.sleep(0.5) or "NO"
        classifier = IntentClassifier(llm=llm, confirm_timeout=0.05)

        result = await classifier.classify_with_details("Acme signed")

        assert result.is_update is True
        assert result.fallback_used is True

    @pytest.mark.asyncio
    async def test_negative_fallback_configurable(self):
        classifier = IntentClassifier(llm=_llm(error=RuntimeError("boom")), fallback_on_error=False)
        assert await classifier.classify("Acme signed") is False


class TestSecondaryGates:
    def test_admin_correction(self):
        classifier = IntentClassifier()
        assert classifier.is_admin_correction("The CES target should be 50 leads")
        assert classifier.is_admin_correction("目標是 100 台")
        assert not classifier.is_admin_correction("Acme signed")

    def test_memory_trigger(self):
        classifier = IntentClassifier()
        assert classifier.has_memory_trigger("please remember this thread")
        assert classifier.has_memory_trigger("幫我記住")
        assert not classifier.has_memory_trigger("what do you think?")

    @pytest.mark.asyncio
    async def test_custom_rule_table(self):
        rules = RuleSet([IntentRule(r"\bshipped\b", Polarity.INCLUDE, Stage.UPDATE, "shipped")])
        classifier = IntentClassifier(rules=rules)
        assert await classifier.classify("v2 shipped") is True
        assert await classifier.classify("what shipped?") is True
