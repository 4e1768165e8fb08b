"""Tests for data models."""

from datetime import date, datetime, timedelta, timezone

import pytest

from trackdown.errors import ParseError
from trackdown.models import (
    ItemStatus, PRStatus, StateMetadata, Ticket, TicketKind, UnifiedState,
    format_timestamp, parse_timestamp,
)


def _frontmatter(**overrides):
    data = {
        "issue_id": "ISS-0001",
        "epic_id": "EP-0001",
        "title": "Login page",
        "description": "",
        "status": "active",
        "priority": "high",
        "assignee": "alice",
        "created_date": "2026-03-01T12:00:00Z",
        "updated_date": "2026-03-02T08:30:00Z",
        "estimated_tokens": 500,
        "actual_tokens": 0,
        "ai_context": ["context/auth"],
        "sync_status": "local",
    }
    data.update(overrides)
    return data


def test_ticket_validate_valid():
    t = Ticket(kind=TicketKind.ISSUE, id="ISS-0001", title="ok")
    assert t.validate() is None


def test_ticket_validate_empty_title():
    t = Ticket(kind=TicketKind.ISSUE, id="ISS-0001", title="")
    assert "title is required" in t.validate()


def test_ticket_validate_bad_status():
    t = Ticket(kind=TicketKind.ISSUE, id="ISS-0001", title="x", status="open")
    assert "invalid status" in t.validate()


def test_ticket_validate_metadata_requires_state():
    t = Ticket(kind=TicketKind.ISSUE, id="ISS-0001", title="x",
               state_metadata=StateMetadata(transitioned_by="alice"))
    assert t.validate() == "state_metadata requires state"


def test_ticket_validate_negative_tokens():
    t = Ticket(kind=TicketKind.TASK, id="TSK-0001", title="x", estimated_tokens=-1)
    assert "negative" in t.validate()


def test_from_frontmatter_issue():
    t = Ticket.from_frontmatter(TicketKind.ISSUE, _frontmatter(), "Body text", "/tmp/x.md")
    assert t.id == "ISS-0001"
    assert t.kind == TicketKind.ISSUE
    assert t.epic_id == "EP-0001"
    assert t.issue_id == ""
    assert t.priority == "high"
    assert t.ai_context == ["context/auth"]
    assert t.updated_date == datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)
    assert t.content == "Body text"
    assert t.state is None


def test_from_frontmatter_task_parents():
    data = _frontmatter(task_id="TSK-0003", issue_id="ISS-0001")
    t = Ticket.from_frontmatter(TicketKind.TASK, data)
    assert t.id == "TSK-0003"
    assert t.issue_id == "ISS-0001"
    assert t.epic_id == "EP-0001"


def test_from_frontmatter_epic_has_no_parent():
    data = {"epic_id": "EP-0002", "title": "Auth", "status": "planning"}
    t = Ticket.from_frontmatter(TicketKind.EPIC, data)
    assert t.id == "EP-0002"
    assert t.epic_id == ""


def test_from_frontmatter_missing_id():
    data = _frontmatter()
    del data["issue_id"]
    with pytest.raises(ParseError, match="missing issue_id"):
        Ticket.from_frontmatter(TicketKind.ISSUE, data, file_path="a.md")


def test_from_frontmatter_rejects_metadata_without_state():
    data = _frontmatter(state_metadata={"transitioned_at": "2026-03-01T12:00:00Z",
                                        "transitioned_by": "alice"})
    with pytest.raises(ParseError, match="state_metadata requires state"):
        Ticket.from_frontmatter(TicketKind.ISSUE, data)


def test_from_frontmatter_bad_timestamp():
    with pytest.raises(ParseError, match="created_date"):
        Ticket.from_frontmatter(TicketKind.ISSUE, _frontmatter(created_date="yesterday"))


def test_from_frontmatter_bad_token_count():
    with pytest.raises(ParseError, match="estimated_tokens"):
        Ticket.from_frontmatter(TicketKind.ISSUE, _frontmatter(estimated_tokens="lots"))


def test_to_frontmatter_layout():
    t = Ticket.from_frontmatter(TicketKind.ISSUE, _frontmatter())
    d = t.to_frontmatter()
    keys = list(d)
    assert keys[0] == "issue_id"
    assert d["epic_id"] == "EP-0001"
    assert d["created_date"] == "2026-03-01T12:00:00Z"
    # Empty optionals are omitted
    assert "tags" not in d
    assert "state" not in d
    assert "github_number" not in d


def test_to_frontmatter_pr():
    t = Ticket(kind=TicketKind.PR, id="PR-0001", title="Fix", issue_id="ISS-0001",
               epic_id="EP-0001", pr_status=PRStatus.REVIEW)
    d = t.to_frontmatter()
    assert d["pr_id"] == "PR-0001"
    assert d["issue_id"] == "ISS-0001"
    assert d["pr_status"] == "review"


def test_frontmatter_preserves_unknown_keys():
    t = Ticket.from_frontmatter(TicketKind.ISSUE, _frontmatter(story_points=5, reviewers=["bob"]))
    assert t.extra == {"story_points": 5, "reviewers": ["bob"]}
    d = t.to_frontmatter()
    assert d["story_points"] == 5
    assert d["reviewers"] == ["bob"]


def test_state_metadata_roundtrip():
    md = StateMetadata(
        transitioned_at=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        transitioned_by="alice",
        previous_state=UnifiedState.PLANNING,
        transition_reason="Ready",
    )
    d = md.to_dict()
    assert d["transitioned_at"] == "2026-03-01T12:00:00Z"
    assert "reviewer" not in d
    assert StateMetadata.from_dict(d) == md


def test_state_metadata_from_non_mapping():
    with pytest.raises(ParseError):
        StateMetadata.from_dict(["not", "a", "mapping"])


def test_vocabularies():
    assert ItemStatus.is_valid("archived")
    assert not ItemStatus.is_valid("done")
    assert UnifiedState.is_valid("won_t_do")
    assert UnifiedState.is_resolution_state("ready_for_qa")
    assert not UnifiedState.is_resolution_state("active")
    assert TicketKind.ALL[0] == TicketKind.PROJECT


def test_parse_timestamp_formats():
    assert parse_timestamp("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("2026-03-01T14:00:00+02:00") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp(date(2026, 3, 1)) == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None


def test_parse_timestamp_naive_is_utc():
    dt = parse_timestamp("2026-03-01T12:00:00")
    assert dt.utcoffset() == timedelta(0)


def test_parse_timestamp_invalid():
    with pytest.raises(ValueError):
        parse_timestamp("not a date")


def test_format_timestamp():
    assert format_timestamp(datetime(2026, 3, 1, 12, tzinfo=timezone.utc)) == "2026-03-01T12:00:00Z"
    assert format_timestamp(None) is None
