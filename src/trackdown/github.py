"""Thin GitHub REST client used by the sync engine.

Only the calls sync needs are implemented. Requests are issued one at a
time; a fixed ``rate_limit_delay`` is slept before every mutating call and
between listing pages. HTTP failures are mapped onto the trackdown error
types so the sync engine can tell batch-fatal errors (SyncError) from
per-item ones.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from trackdown import __version__
from trackdown.config import SyncConfig
from trackdown.errors import (
    AuthenticationError,
    ConfigurationError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    RepositoryNotFoundError,
    ValidationError,
)
from trackdown.models import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"


@dataclass
class RemoteIssue:
    """A GitHub issue as seen by the sync engine."""
    id: int
    number: int
    title: str
    body: str = ""
    state: str = "open"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    assignee: str = ""
    labels: list[str] = field(default_factory=list)
    milestone: str = ""
    html_url: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteIssue:
        assignee = data.get("assignee") or {}
        milestone = data.get("milestone") or {}
        labels = []
        for label in data.get("labels") or []:
            labels.append(label["name"] if isinstance(label, dict) else str(label))
        return cls(
            id=int(data["id"]),
            number=int(data["number"]),
            title=data.get("title") or "",
            body=data.get("body") or "",
            state=data.get("state") or "open",
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            assignee=assignee.get("login", "") if isinstance(assignee, dict) else "",
            labels=labels,
            milestone=milestone.get("title", "") if isinstance(milestone, dict) else "",
            html_url=data.get("html_url") or "",
        )


@dataclass
class RateLimitInfo:
    limit: int = 0
    remaining: int = 0
    reset_at: Optional[datetime] = None

    @classmethod
    def from_headers(cls, headers: httpx.Headers) -> RateLimitInfo | None:
        if "x-ratelimit-remaining" not in headers:
            return None
        reset = headers.get("x-ratelimit-reset")
        return cls(
            limit=int(headers.get("x-ratelimit-limit", 0)),
            remaining=int(headers.get("x-ratelimit-remaining", 0)),
            reset_at=datetime.fromtimestamp(int(reset), tz=timezone.utc) if reset else None,
        )


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return resp.text[:200]


class GitHubClient:
    """Issue operations against one ``owner/repo``."""

    def __init__(self, config: SyncConfig, http_client: httpx.Client | None = None,
                 sleep: Callable[[float], None] = time.sleep):
        if config.repository.count("/") != 1 or not all(config.repository.split("/")):
            raise ConfigurationError(
                f"github_sync.repository must be 'owner/repo', got {config.repository!r}"
            )
        if not config.token:
            raise ConfigurationError("No GitHub token configured (set GITHUB_TOKEN)")
        self.config = config
        self.owner, self.repo = config.repository.split("/")
        self.api_url = config.api_url.rstrip("/")
        self.rate_limit: RateLimitInfo | None = None
        self._sleep = sleep
        self._owns_client = http_client is None
        self._http = http_client if http_client is not None else httpx.Client(timeout=30.0)
        self._http.headers.update({
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {config.token}",
            "X-GitHub-Api-Version": API_VERSION,
            "User-Agent": f"trackdown/{__version__}",
        })

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    def _delay(self) -> None:
        if self.config.rate_limit_delay > 0:
            self._sleep(self.config.rate_limit_delay / 1000.0)

    def _request(self, method: str, url: str, *, params: dict[str, Any] | None = None,
                 json: dict[str, Any] | None = None, mutating: bool = False,
                 repo_level: bool = False) -> httpx.Response:
        if mutating:
            self._delay()
        if url.startswith("/"):
            url = self.api_url + url
        try:
            resp = self._http.request(method, url, params=params, json=json)
        except httpx.TransportError as e:
            raise NetworkError(f"GitHub unreachable: {e}") from e
        info = RateLimitInfo.from_headers(resp.headers)
        if info is not None:
            self.rate_limit = info
        self._check(resp, repo_level)
        return resp

    def _check(self, resp: httpx.Response, repo_level: bool = False) -> None:
        status = resp.status_code
        if status < 400:
            return
        message = _error_message(resp)
        if status == 401:
            raise AuthenticationError(f"GitHub authentication failed: {message}")
        if status == 429 or (status == 403 and resp.headers.get("x-ratelimit-remaining") == "0"):
            reset_at = ""
            if self.rate_limit is not None and self.rate_limit.reset_at is not None:
                reset_at = format_timestamp(self.rate_limit.reset_at) or ""
            raise RateLimitError(f"GitHub rate limit exceeded: {message}", reset_at=reset_at)
        if status == 403:
            raise AuthenticationError(f"GitHub access denied: {message}")
        if status == 404 and repo_level:
            raise RepositoryNotFoundError(
                f"GitHub repository {self.config.repository} not found or not visible to the token"
            )
        if status == 404:
            raise NotFoundError(resp.request.url.path, what="GitHub resource")
        if status >= 500:
            raise NetworkError(f"GitHub server error {status}: {message}")
        raise ValidationError(f"GitHub rejected the request ({status}): {message}")

    def test_connection(self) -> dict[str, Any]:
        """Fetch the repository; raises on bad credentials or a missing repo."""
        return self._request("GET", self._repo_path, repo_level=True).json()

    def get_rate_limit(self) -> RateLimitInfo:
        data = self._request("GET", "/rate_limit", repo_level=True).json()
        core = (data.get("resources") or {}).get("core") or data.get("rate") or {}
        reset = core.get("reset")
        self.rate_limit = RateLimitInfo(
            limit=int(core.get("limit", 0)),
            remaining=int(core.get("remaining", 0)),
            reset_at=datetime.fromtimestamp(int(reset), tz=timezone.utc) if reset else None,
        )
        return self.rate_limit

    def list_issues(self, state: str = "all", since: datetime | None = None) -> list[RemoteIssue]:
        """Every issue in the repository, following pagination to the last page.

        Pull requests returned by the issues endpoint are skipped.
        """
        params: dict[str, Any] | None = {
            "state": state,
            "per_page": self.config.batch_size,
            "sort": "updated",
            "direction": "asc",
        }
        if since is not None:
            params["since"] = format_timestamp(since)

        issues: list[RemoteIssue] = []
        url: str | None = f"{self._repo_path}/issues"
        page = 0
        while url:
            if page:
                self._delay()
            resp = self._request("GET", url, params=params, repo_level=True)
            for item in resp.json():
                if "pull_request" in item:
                    continue
                issues.append(RemoteIssue.from_api(item))
            page += 1
            url = resp.links.get("next", {}).get("url")
            # The next link already carries the query string.
            params = None
        logger.debug("Fetched %d issues from %s in %d page(s)", len(issues), self.config.repository, page)
        return issues

    def get_issue(self, number: int) -> RemoteIssue:
        return RemoteIssue.from_api(self._request("GET", f"{self._repo_path}/issues/{number}").json())

    def create_issue(self, title: str, body: str = "", labels: list[str] | None = None,
                     assignees: list[str] | None = None, milestone: int | None = None) -> RemoteIssue:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = labels
        if assignees:
            payload["assignees"] = assignees
        if milestone is not None:
            payload["milestone"] = milestone
        resp = self._request("POST", f"{self._repo_path}/issues", json=payload, mutating=True)
        return RemoteIssue.from_api(resp.json())

    def update_issue(self, number: int, *, title: str | None = None, body: str | None = None,
                     state: str | None = None, labels: list[str] | None = None,
                     assignees: list[str] | None = None) -> RemoteIssue:
        payload: dict[str, Any] = {}
        if title is not None:
            payload["title"] = title
        if body is not None:
            payload["body"] = body
        if state is not None:
            payload["state"] = state
        if labels is not None:
            payload["labels"] = labels
        if assignees is not None:
            payload["assignees"] = assignees
        resp = self._request("PATCH", f"{self._repo_path}/issues/{number}", json=payload, mutating=True)
        return RemoteIssue.from_api(resp.json())
