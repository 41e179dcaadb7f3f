"""
Scribe - Team Knowledge Capture

Listens to the team's chat, turns knowledge-update requests and
"remember this thread" mentions into pending records, and files them into
the knowledge base once a reviewer approves.

Key Components:
- IntentClassifier: rule-based intent detection with optional LLM confirmation
- ThreadExtractor: LLM extraction of memories from a chat thread
- KnowledgeDocumentWriter: section-aware insertion into Markdown documents
- ApprovalOrchestrator: the pending -> approved/rejected state machine
- Handlers: platform-specific event parsing and delivery (Slack)

Rules for Scribe:
1. Nothing reaches the knowledge base without a reviewer's approval
2. A record leaves pending exactly once
3. Questions are never filed as updates
4. A failed write leaves the record approved, with a note for follow-up
"""

from .actions import RecordFamily, ReviewAction, ReviewVerb
from .classifier import ClassificationResult, IntentClassifier
from .intent_rules import IntentRule, KnowledgeInfo, RuleSet, extract_knowledge_info
from .orchestrator import ApprovalOrchestrator, ReviewOutcome, ReviewStatus
from .patcher import KnowledgeDocumentWriter, apply_to_document
from .thread_extractor import ThreadExtractor

__all__ = [
    "RecordFamily",
    "ReviewAction",
    "ReviewVerb",
    "ClassificationResult",
    "IntentClassifier",
    "IntentRule",
    "KnowledgeInfo",
    "RuleSet",
    "extract_knowledge_info",
    "ApprovalOrchestrator",
    "ReviewOutcome",
    "ReviewStatus",
    "KnowledgeDocumentWriter",
    "apply_to_document",
    "ThreadExtractor",
]
