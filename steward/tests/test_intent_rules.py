"""Tests for the intent rule table and knowledge type routing."""

import json
import pytest

from steward.scribe.intent_rules import (
    DEFAULT_RULES,
    IntentRule,
    KnowledgeInfo,
    Polarity,
    RuleSet,
    Stage,
    extract_knowledge_info,
    load_rules_file,
)


class TestRuleTable:
    def test_every_stage_has_rules(self):
        rules = RuleSet()
        for stage in Stage:
            assert rules.for_stage(stage), stage

    def test_query_rules_are_exclusions(self):
        assert all(r.polarity == Polarity.EXCLUDE for r in RuleSet().for_stage(Stage.QUERY))

    def test_rules_are_case_insensitive(self):
        rule = IntentRule(r"\bsigned\b", Polarity.INCLUDE, Stage.UPDATE)
        assert rule.matches("ACME SIGNED TODAY")

    def test_first_match_respects_order(self):
        rules = RuleSet([
            IntentRule("deal", Polarity.INCLUDE, Stage.UPDATE, "first"),
            IntentRule("deal closed", Polarity.INCLUDE, Stage.UPDATE, "second"),
        ])
        assert rules.first_match(Stage.UPDATE, "deal closed").label == "first"

    def test_first_match_filters_polarity(self):
        rules = RuleSet(DEFAULT_RULES)
        assert rules.first_match(Stage.QUERY, "why?", Polarity.INCLUDE) is None

    def test_load_rules_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps([
            {"pattern": "booked", "stage": "update", "label": "booked"},
            {"pattern": "\\?$", "polarity": "exclude", "stage": "query"},
        ]))

        rules = load_rules_file(str(path))

        assert len(rules) == 2
        assert rules[0].polarity == Polarity.INCLUDE
        assert rules[1].stage == Stage.QUERY

    def test_load_rules_file_rejects_unknown_stage(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps([{"pattern": "x", "stage": "nope"}]))
        with pytest.raises(ValueError):
            load_rules_file(str(path))


class TestExtractKnowledgeInfo:
    def test_default(self):
        assert extract_knowledge_info("Demo video completed") == KnowledgeInfo("general", "Knowledge Update")

    def test_vendor(self):
        assert extract_knowledge_info("Lenovo signed the pilot") == KnowledgeInfo("oem", "Lenovo")

    def test_custom_vendor_list(self):
        info = extract_knowledge_info("Acme signed", vendors=["Acme"])
        assert info == KnowledgeInfo("oem", "Acme")

    def test_event(self):
        assert extract_knowledge_info("CES booth confirmed for Jan 7") == KnowledgeInfo("ces", "CES Update")

    def test_contact_with_name(self):
        info = extract_knowledge_info("已經邀請了王經理，下週回覆")
        assert info == KnowledgeInfo("contact", "王經理")

    def test_contact_wins_over_vendor(self):
        info = extract_knowledge_info("Dell meeting moved to Friday")
        assert info.type == "contact"
        assert info.target == "Dell"
