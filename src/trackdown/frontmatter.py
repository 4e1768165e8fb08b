"""YAML front-matter codec.

A document is a ``---`` delimited YAML mapping followed by a free-form
Markdown body. ``parse`` and ``stringify`` round-trip: timestamps are kept as
strings by the loader so nothing is reinterpreted on the way through.
"""

from __future__ import annotations

import hashlib
from typing import Any

import yaml

from trackdown.errors import ParseError

DELIMITER = "---"


class NoTimestampLoader(yaml.SafeLoader):
    pass


for ch, patterns in list(NoTimestampLoader.yaml_implicit_resolvers.items()):
    NoTimestampLoader.yaml_implicit_resolvers[ch] = [
        (tag, regexp) for tag, regexp in patterns if tag != "tag:yaml.org,2002:timestamp"
    ]


def parse(text: str, path: str = "") -> tuple[dict[str, Any], str]:
    """Split a document into its front-matter mapping and body."""
    lines = text.splitlines()
    if not lines or lines[0].strip() != DELIMITER:
        raise ParseError("Missing YAML front matter", path)
    try:
        end_index = [line.rstrip() for line in lines[1:]].index(DELIMITER) + 1
    except ValueError:
        raise ParseError("Unterminated YAML front matter", path) from None
    front_matter_text = "\n".join(lines[1:end_index])
    body = "\n".join(lines[end_index + 1:])
    try:
        metadata = yaml.load(front_matter_text, Loader=NoTimestampLoader) or {}
    except yaml.YAMLError as exc:
        raise ParseError(f"Invalid YAML front matter: {exc}", path) from exc
    if not isinstance(metadata, dict):
        raise ParseError("Front matter must be a mapping", path)
    return metadata, body.strip("\n")


def stringify(metadata: dict[str, Any], body: str) -> str:
    """Serialize front matter and body back to document text."""
    front = yaml.safe_dump(
        metadata, default_flow_style=False, sort_keys=False, allow_unicode=True, width=120,
    )
    text = f"{DELIMITER}\n{front}{DELIMITER}\n"
    if body:
        text += "\n" + body.strip("\n") + "\n"
    return text


def compute_revision(text: str) -> str:
    """Content hash used as the optimistic concurrency token for a document."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
