"""Shared fixtures: a throwaway project with store and index."""

from datetime import datetime, timezone

import pytest

from trackdown.config import ProjectConfig, resolve_paths
from trackdown.index import RelationshipIndex
from trackdown.models import StateMetadata, Ticket, TicketKind
from trackdown.store import DocumentStore

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

_PREFIX = {
    TicketKind.PROJECT: "PRJ",
    TicketKind.EPIC: "EP",
    TicketKind.ISSUE: "ISS",
    TicketKind.TASK: "TSK",
    TicketKind.PR: "PR",
}


@pytest.fixture
def config(tmp_path):
    cfg = ProjectConfig(name="test-project")
    cfg.save(str(tmp_path))
    return cfg


@pytest.fixture
def paths(tmp_path, config):
    return resolve_paths(str(tmp_path), config)


@pytest.fixture
def store(paths, config):
    s = DocumentStore(paths, config)
    s.ensure_layout()
    return s


@pytest.fixture
def index(store):
    return RelationshipIndex(store)


@pytest.fixture
def make_ticket():
    """Factory for tickets with deterministic timestamps."""
    def _make(kind=TicketKind.ISSUE, number=1, title=None, **kwargs):
        kwargs.setdefault("created_date", BASE_TIME)
        kwargs.setdefault("updated_date", kwargs["created_date"])
        return Ticket(
            kind=kind,
            id=kwargs.pop("id", f"{_PREFIX[kind]}-{number:04d}"),
            title=title or f"{kind} {number}",
            **kwargs,
        )
    return _make


@pytest.fixture
def migrated_metadata():
    return StateMetadata(transitioned_at=BASE_TIME, transitioned_by="alice")
