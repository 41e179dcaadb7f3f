"""
Steward

Chat assistant that keeps a team's knowledge documents current without
letting unreviewed text into them.

- Direct messages that look like updates become pending records
- "Remember this" in a thread extracts memories for review
- Nothing is filed until an administrator approves it

Usage:
    from steward.common import load_config, KnowledgeBase
    from steward.storage import UpdateStore, MemoryStore, ConversationStore
    from steward.scribe import IntentClassifier, ThreadExtractor, ApprovalOrchestrator
"""

__version__ = "0.1.0"
