"""Document store - read and write ticket documents on the filesystem.

Every write is a full-document rewrite through a temp file and an atomic
rename. A ticket read from disk carries the content hash of the text it was
parsed from (``Ticket.revision``); writing it back fails with ConflictError
if the document changed in between.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import replace

from trackdown import frontmatter
from trackdown.config import ProjectConfig, ProjectPaths
from trackdown.errors import ConflictError, ParseError, PersistenceError, ValidationError
from trackdown.models import PRStatus, Ticket, TicketKind, UnifiedState
from trackdown.state import get_effective_state

logger = logging.getLogger(__name__)

ARCHIVED_DIR = "archived"
COMPLETED_DIR = "completed"

_PR_STATUS_DIRS = {
    PRStatus.DRAFT: ("draft",),
    PRStatus.OPEN: ("active", "open"),
    PRStatus.REVIEW: ("active", "review"),
    PRStatus.APPROVED: ("active", "approved"),
    PRStatus.MERGED: ("merged",),
    PRStatus.CLOSED: ("closed",),
}


def slugify(title: str, max_len: int = 50) -> str:
    """Sanitize a title for use in a filename."""
    slug = title.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug[:max_len].strip("-")


def status_category(ticket: Ticket) -> tuple[str, ...]:
    """Subdirectory components a ticket belongs in, relative to its kind directory."""
    if ticket.kind == TicketKind.PR and ticket.pr_status:
        return _PR_STATUS_DIRS.get(ticket.pr_status, ())
    state = get_effective_state(ticket)
    if state == UnifiedState.ARCHIVED:
        return (ARCHIVED_DIR,)
    if state in (UnifiedState.DONE, UnifiedState.COMPLETED, UnifiedState.WONT_DO):
        return (COMPLETED_DIR,)
    return ()


class DocumentStore:
    """Filesystem persistence for tickets of every kind."""

    def __init__(self, paths: ProjectPaths, config: ProjectConfig):
        self.paths = paths
        self.config = config

    @property
    def extension(self) -> str:
        return self.config.naming_conventions.file_extension

    def ensure_layout(self) -> None:
        for d in self.paths.required_directories():
            os.makedirs(d, exist_ok=True)

    def filename_for(self, ticket: Ticket) -> str:
        slug = slugify(ticket.title)
        stem = f"{ticket.id}-{slug}" if slug else ticket.id
        return f"{stem}{self.extension}"

    def iter_documents(self, kind: str) -> list[str]:
        """All document paths for a kind, including status subdirectories, sorted."""
        base = self.paths.type_directory(kind)
        if not os.path.isdir(base):
            return []
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames.sort()
            for name in filenames:
                if name.endswith(self.extension):
                    found.append(os.path.join(dirpath, name))
        return sorted(found)

    def locate(self, kind: str, ticket_id: str) -> str | None:
        """Find a document by filename prefix without parsing it."""
        for path in self.iter_documents(kind):
            name = os.path.basename(path)
            if name == f"{ticket_id}{self.extension}" or name.startswith(f"{ticket_id}-"):
                return path
        return None

    def read_text(self, path: str) -> str:
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

    def read(self, path: str, kind: str) -> Ticket:
        """Parse a document into a Ticket. Raises ParseError or PersistenceError."""
        text = self.read_text(path)
        metadata, body = frontmatter.parse(text, path)
        ticket = Ticket.from_frontmatter(kind, metadata, body, path)
        ticket.revision = frontmatter.compute_revision(text)
        return ticket

    def target_path(self, ticket: Ticket) -> str:
        """Where the ticket's document should live given its status category."""
        base = self.paths.type_directory(ticket.kind)
        if ticket.file_path:
            name = os.path.basename(ticket.file_path)
        else:
            name = self.filename_for(ticket)
        return os.path.join(base, *status_category(ticket), name)

    def write(self, ticket: Ticket, check_revision: bool = True) -> Ticket:
        """Persist a ticket, relocating its file if its status category changed.

        Returns a copy of the ticket with ``file_path`` and ``revision`` updated.
        """
        err = ticket.validate()
        if err:
            raise ValidationError(f"{ticket.id or '<new>'}: {err}")

        target = self.target_path(ticket)
        current = ticket.file_path

        if check_revision:
            self._check_revision(ticket, target)

        text = frontmatter.stringify(ticket.to_frontmatter(), ticket.content)
        self._atomic_write(target, text)

        if current and os.path.abspath(current) != os.path.abspath(target) and os.path.exists(current):
            try:
                os.unlink(current)
            except OSError as e:
                raise PersistenceError(f"Wrote {target} but could not remove {current}: {e}") from e
            logger.debug("Moved %s -> %s", current, target)

        return replace(ticket, file_path=target, revision=frontmatter.compute_revision(text))

    def _check_revision(self, ticket: Ticket, target: str) -> None:
        if ticket.revision and ticket.file_path:
            if not os.path.exists(ticket.file_path):
                raise ConflictError(
                    f"{ticket.id}: {ticket.file_path} was removed after it was read"
                )
            on_disk = frontmatter.compute_revision(self.read_text(ticket.file_path))
            if on_disk != ticket.revision:
                raise ConflictError(
                    f"{ticket.id}: {ticket.file_path} was modified after it was read"
                )
        elif not ticket.file_path and os.path.exists(target):
            raise ConflictError(f"{ticket.id}: {target} already exists")

    def _atomic_write(self, path: str, text: str) -> None:
        tmp_path = path + ".tmp"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceError(f"Cannot write {path}: {e}") from e

    def try_read(self, path: str, kind: str) -> Ticket | None:
        """Read a document, logging and returning None when it cannot be parsed."""
        try:
            return self.read(path, kind)
        except (ParseError, PersistenceError) as e:
            logger.warning("Skipping %s: %s", path, e)
            return None
