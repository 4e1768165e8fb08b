"""Tests for the relationship index."""

import os
from datetime import timedelta

import pytest

from conftest import BASE_TIME
from trackdown.index import RelationshipIndex
from trackdown.models import SearchFilters, TicketKind


@pytest.fixture
def tree(store, make_ticket):
    """Two epics; EP-0001 holds two issues, tasks and a PR."""
    store.write(make_ticket(TicketKind.EPIC, 1, "Auth"))
    store.write(make_ticket(TicketKind.EPIC, 2, "Billing"))
    # Created out of id order so sorting by (created_date, id) is observable.
    store.write(make_ticket(TicketKind.ISSUE, 2, "Logout", epic_id="EP-0001",
                            created_date=BASE_TIME - timedelta(days=2)))
    store.write(make_ticket(TicketKind.ISSUE, 1, "Login", epic_id="EP-0001",
                            created_date=BASE_TIME - timedelta(days=1), tags=["ui"],
                            priority="high", assignee="alice"))
    store.write(make_ticket(TicketKind.ISSUE, 3, "Invoices", epic_id="EP-0002", status="active"))
    store.write(make_ticket(TicketKind.TASK, 1, "Form", issue_id="ISS-0001", epic_id="EP-0001"))
    store.write(make_ticket(TicketKind.TASK, 2, "Validation", issue_id="ISS-0001",
                            dependencies=["TSK-0001"], ai_context=["context/forms"]))
    store.write(make_ticket(TicketKind.TASK, 3, "Epic chore", epic_id="EP-0001"))
    store.write(make_ticket(TicketKind.PR, 1, "Login PR", issue_id="ISS-0001", epic_id="EP-0001",
                            pr_status="open", blocked_by=["TSK-0002"]))
    return store


def _ids(tickets):
    return [t.id for t in tickets]


class TestRebuild:
    def test_lazy_rebuild(self, tree):
        idx = RelationshipIndex(tree)
        assert idx.last_rebuild is None
        assert idx.get("EP-0001") is not None
        assert idx.last_rebuild is not None

    def test_malformed_document_is_recorded(self, store, paths, make_ticket):
        store.write(make_ticket(TicketKind.ISSUE, 1, "Good"))
        bad = os.path.join(paths.issues_dir, "ISS-0002-bad.md")
        with open(bad, "w") as f:
            f.write("---\nissue_id: ISS-0002\ntitle: [broken\n---\n")

        idx = RelationshipIndex(store)
        idx.rebuild()
        assert _ids(idx.all_items()) == ["ISS-0001"]
        assert len(idx.parse_failures) == 1
        assert idx.parse_failures[0][0] == bad
        assert idx.stats().parse_failures == 1

    def test_duplicate_id_recorded(self, store, paths, make_ticket):
        first = store.write(make_ticket(TicketKind.ISSUE, 1, "One"))
        dup = os.path.join(paths.issues_dir, "ISS-0001-copy.md")
        with open(first.file_path) as src, open(dup, "w") as dst:
            dst.write(src.read())
        idx = RelationshipIndex(store)
        idx.rebuild()
        assert len(idx.all_items()) == 1
        assert "duplicate id" in idx.parse_failures[0][1]

    def test_invalidate_picks_up_new_documents(self, tree, make_ticket):
        idx = RelationshipIndex(tree)
        assert idx.get("ISS-0009") is None
        tree.write(make_ticket(TicketKind.ISSUE, 9, "Late"))
        assert idx.get("ISS-0009") is None
        idx.invalidate()
        assert idx.get("ISS-0009") is not None


class TestHierarchy:
    def test_epic_hierarchy(self, tree):
        h = RelationshipIndex(tree).get_epic_hierarchy("EP-0001")
        assert h.epic.title == "Auth"
        assert _ids(h.issues) == ["ISS-0002", "ISS-0001"]
        assert sorted(_ids(h.tasks)) == ["TSK-0001", "TSK-0002", "TSK-0003"]
        assert _ids(h.prs) == ["PR-0001"]

    def test_epic_issues_match_epic_id(self, tree):
        idx = RelationshipIndex(tree)
        for epic in idx.all_items(TicketKind.EPIC):
            expected = {t.id for t in idx.all_items(TicketKind.ISSUE) if t.epic_id == epic.id}
            assert set(_ids(idx.get_epic_hierarchy(epic.id).issues)) == expected

    def test_scan_order_does_not_matter(self, tree, monkeypatch):
        forward = _ids(RelationshipIndex(tree).get_epic_hierarchy("EP-0001").issues)
        original = tree.iter_documents
        monkeypatch.setattr(tree, "iter_documents", lambda kind: list(reversed(original(kind))))
        backward = _ids(RelationshipIndex(tree).get_epic_hierarchy("EP-0001").issues)
        assert forward == backward

    def test_issue_hierarchy(self, tree):
        h = RelationshipIndex(tree).get_issue_hierarchy("ISS-0001")
        assert h.epic.id == "EP-0001"
        assert _ids(h.tasks) == ["TSK-0001", "TSK-0002"]
        assert _ids(h.prs) == ["PR-0001"]

    def test_task_hierarchy_inherits_epic_from_issue(self, tree):
        h = RelationshipIndex(tree).get_task_hierarchy("TSK-0002")
        assert h.issue.id == "ISS-0001"
        assert h.epic.id == "EP-0001"

    def test_pr_hierarchy(self, tree):
        h = RelationshipIndex(tree).get_pr_hierarchy("PR-0001")
        assert h.issue.id == "ISS-0001"
        assert h.epic.id == "EP-0001"

    def test_unknown_ids(self, tree):
        idx = RelationshipIndex(tree)
        assert idx.get_epic_hierarchy("EP-0099") is None
        assert idx.get_issue_hierarchy("EP-0001") is None
        assert idx.get_children("nope") == []
        assert idx.get_parent("nope") is None

    def test_dangling_parent_tolerated(self, store, make_ticket):
        store.write(make_ticket(TicketKind.ISSUE, 1, "Orphan", epic_id="EP-0404"))
        idx = RelationshipIndex(store)
        h = idx.get_issue_hierarchy("ISS-0001")
        assert h is not None
        assert h.epic is None
        result = idx.validate_relationships()
        assert result.valid
        assert any("EP-0404" in w for w in result.warnings)

    def test_children_and_parent(self, tree):
        idx = RelationshipIndex(tree)
        assert _ids(idx.get_children("EP-0001")) == ["ISS-0002", "ISS-0001"]
        assert set(_ids(idx.get_children("ISS-0001"))) == {"TSK-0001", "TSK-0002", "PR-0001"}
        assert idx.get_parent("TSK-0001").id == "ISS-0001"
        assert idx.get_parent("TSK-0003").id == "EP-0001"
        assert idx.get_parent("ISS-0003").id == "EP-0002"
        assert idx.get_parent("EP-0001") is None


class TestSearch:
    def test_by_kind_and_status(self, tree):
        idx = RelationshipIndex(tree)
        found = idx.search(SearchFilters(kind="issue", status="active"))
        assert _ids(found) == ["ISS-0003"]

    def test_filters_are_anded(self, tree):
        idx = RelationshipIndex(tree)
        assert _ids(idx.search(SearchFilters(priority="high", assignee="alice"))) == ["ISS-0001"]
        assert idx.search(SearchFilters(priority="high", assignee="bob")) == []

    def test_tags_any_of(self, tree):
        idx = RelationshipIndex(tree)
        assert _ids(idx.search(SearchFilters(tags=["ui", "backend"]))) == ["ISS-0001"]

    def test_text(self, tree):
        idx = RelationshipIndex(tree)
        assert _ids(idx.search(SearchFilters(text="invoice"))) == ["ISS-0003"]

    def test_ai_context(self, tree):
        idx = RelationshipIndex(tree)
        assert _ids(idx.search(SearchFilters(ai_context_text="forms"))) == ["TSK-0002"]

    def test_effective_state(self, tree):
        idx = RelationshipIndex(tree)
        planning = idx.search(SearchFilters(kind=["issue"], state="planning"))
        assert set(_ids(planning)) == {"ISS-0001", "ISS-0002"}

    def test_created_window(self, tree):
        idx = RelationshipIndex(tree)
        older = idx.search(SearchFilters(created_before=BASE_TIME - timedelta(hours=36)))
        assert _ids(older) == ["ISS-0002"]


class TestRelations:
    def test_related_items(self, tree):
        idx = RelationshipIndex(tree)
        rel = idx.get_related_items("TSK-0002")
        assert _ids(rel.siblings) == ["TSK-0001"]
        assert _ids(rel.dependencies) == ["TSK-0001"]
        assert _ids(rel.blocks) == ["PR-0001"]

        rel = idx.get_related_items("TSK-0001")
        assert _ids(rel.dependents) == ["TSK-0002"]
        # blocked_by edges are reported under blocks, not dependents.
        assert _ids(idx.get_related_items("TSK-0002").dependents) == []

        rel = idx.get_related_items("PR-0001")
        assert _ids(rel.blocked_by) == ["TSK-0002"]

    def test_cycle_is_an_error(self, store, make_ticket):
        store.write(make_ticket(TicketKind.TASK, 1, issue_id="ISS-0001", dependencies=["TSK-0002"]))
        store.write(make_ticket(TicketKind.TASK, 2, issue_id="ISS-0001", blocked_by=["TSK-0001"]))
        idx = RelationshipIndex(store)
        assert idx.find_cycles() == [["TSK-0001", "TSK-0002"]]
        result = idx.validate_relationships()
        assert not result.valid
        assert "dependency cycle" in result.errors[0]

    def test_long_dependency_chain(self, store, make_ticket):
        count = 1500
        for n in range(1, count + 1):
            nxt = n + 1 if n < count else 1
            store.write(make_ticket(TicketKind.TASK, n, issue_id="ISS-0001",
                                    dependencies=[f"TSK-{nxt:04d}"]))
        cycles = RelationshipIndex(store).find_cycles()
        assert len(cycles) == 1
        assert len(cycles[0]) == count
        assert cycles[0][0] == "TSK-0001"
        assert cycles[0][-1] == "TSK-1500"

    def test_tree_is_valid(self, tree):
        result = RelationshipIndex(tree).validate_relationships()
        assert result.valid
        assert result.errors == []


def test_stats_and_overview(tree):
    idx = RelationshipIndex(tree)
    stats = idx.stats()
    assert (stats.epics, stats.issues, stats.tasks, stats.prs) == (2, 3, 3, 1)

    overview = idx.project_overview()
    assert overview.total_items == 9
    assert overview.by_kind["task"] == 3
    assert overview.by_status["active"] == 1
    assert overview.completion_rate == 0
