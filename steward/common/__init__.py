"""
Steward Common Module

Shared infrastructure: configuration, LLM access, knowledge base snapshots
and language detection.
"""

from .config import StewardConfig, load_config
from .errors import (
    CompletionUnavailableError,
    InvalidActionError,
    KnowledgeTargetError,
    StewardError,
)
from .knowledge_base import KnowledgeBase, KnowledgeSnapshot
from .llm_client import FallbackCompletion, LLMClient

__all__ = [
    "StewardConfig",
    "load_config",
    "CompletionUnavailableError",
    "InvalidActionError",
    "KnowledgeTargetError",
    "StewardError",
    "KnowledgeBase",
    "KnowledgeSnapshot",
    "FallbackCompletion",
    "LLMClient",
]
