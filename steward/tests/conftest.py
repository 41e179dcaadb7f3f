"""Shared fixtures: SQLite stores and a knowledge directory under tmp_path."""

import pytest

from steward.common.knowledge_base import KnowledgeBase
from steward.storage import ConversationStore, MemoryStore, UpdateStore


CUSTOMERS_MD = """# Customers

> Last updated: 2024-01-01

## OEM Partners

### Existing Partner (2023-12-01)
- **Type**: oem

## Prospects

- Nobody yet
"""

PM_MEMORY_MD = """# PM Memory

> Last updated: 2024-01-01

## Events

## Waiting for Reply

## Decision Context

- Initial context
"""

PRODUCT_MD = "# Product\n\nIrisGo is an on-device assistant.\n"


@pytest.fixture
def update_store(tmp_path):
    return UpdateStore.open(str(tmp_path / "records.db"))


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore.open(str(tmp_path / "memory.db"))


class FakeClock:
    """Epoch-millisecond clock advanced by hand"""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> None:
        self.now += int(minutes * 60_000 + seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def conversation_store(tmp_path, clock):
    return ConversationStore.open(
        str(tmp_path / "records.db"), ttl_minutes=30, max_pairs=2, clock=clock
    )


@pytest.fixture
def kb_dir(tmp_path):
    base = tmp_path / "knowledge"
    base.mkdir()
    (base / "customers.md").write_text(CUSTOMERS_MD, encoding="utf-8")
    (base / "pm-memory.md").write_text(PM_MEMORY_MD, encoding="utf-8")
    (base / "knowledge-base.md").write_text(PRODUCT_MD, encoding="utf-8")
    return base


@pytest.fixture
def knowledge_base(kb_dir):
    kb = KnowledgeBase(
        str(kb_dir),
        {"product": "knowledge-base.md", "customers": "customers.md", "pm_memory": "pm-memory.md"},
    )
    kb.reload()
    return kb
