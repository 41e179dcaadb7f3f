"""Tests for KnowledgeBase snapshots."""

from steward.common.knowledge_base import KnowledgeBase, KnowledgeSnapshot


class TestKnowledgeSnapshot:
    def test_empty_snapshot(self):
        snap = KnowledgeSnapshot(version=0)
        assert not snap.is_loaded
        assert snap.get("product") == ""


class TestKnowledgeBase:
    def test_initial_snapshot_is_unloaded(self, kb_dir):
        kb = KnowledgeBase(str(kb_dir), {"product": "knowledge-base.md"})
        assert kb.snapshot().version == 0
        assert not kb.snapshot().is_loaded

    def test_reload_reads_documents(self, knowledge_base):
        snap = knowledge_base.snapshot()
        assert snap.version == 1
        assert snap.is_loaded
        assert "IrisGo" in snap.get("product")
        assert "## OEM Partners" in snap.get("customers")

    def test_missing_file_loads_empty(self, kb_dir):
        kb = KnowledgeBase(str(kb_dir), {"roadmap": "roadmap.md"})
        assert kb.reload().get("roadmap") == ""

    def test_reload_bumps_version_and_keeps_old_snapshot(self, knowledge_base, kb_dir):
        old = knowledge_base.snapshot()
        (kb_dir / "knowledge-base.md").write_text("# Product\n\nChanged.\n", encoding="utf-8")

        new = knowledge_base.reload()

        assert new.version == old.version + 1
        assert "Changed." in new.get("product")
        assert "IrisGo" in old.get("product")

    def test_path_for(self, knowledge_base, kb_dir):
        assert knowledge_base.path_for("customers.md") == kb_dir / "customers.md"
