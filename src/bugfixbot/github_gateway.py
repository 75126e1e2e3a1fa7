from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import json
import logging
import os
import re
from typing import Protocol, cast
from urllib.parse import urlencode

from bugfixbot.config import ConfigError, GitHubConfig
from bugfixbot.models import FixTask, RawComment, Side
from bugfixbot.observability import log_event
from bugfixbot.shell import run


LOGGER = logging.getLogger("bugfixbot.github_gateway")
REPLY_MARKER_PATTERN = re.compile(r"<!--\s*bugfixbot-reply:(\d+)\s*-->")
_PAGE_SIZE = 100

_THREAD_STATUSES_QUERY = """
query($owner: String!, $name: String!, $number: Int!, $after: String) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviewThreads(first: 100, after: $after) {
        pageInfo {
          hasNextPage
          endCursor
        }
        nodes {
          id
          isResolved
          comments(first: 1) {
            nodes {
              databaseId
            }
          }
        }
      }
    }
  }
}
"""

_THREAD_FOR_COMMENT_QUERY = """
query($nodeId: ID!) {
  node(id: $nodeId) {
    ... on PullRequestReviewComment {
      pullRequestReviewThread {
        id
        isResolved
      }
    }
  }
}
"""

_RESOLVE_THREAD_MUTATION = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) {
    thread {
      id
      isResolved
    }
  }
}
"""


class GitHubPollingError(RuntimeError):
    """A GitHub read failed; the caller decides whether the cycle fails."""


class UnsupportedReplyError(RuntimeError):
    """Issue-level comments have no thread to reply into."""


@dataclass(frozen=True)
class ReviewComment:
    comment_id: int
    node_id: str
    author: str
    body: str
    path: str
    line: int | None
    side: str | None
    position: int | None
    diff_hunk: str | None
    commit_id: str | None
    in_reply_to_id: int | None
    created_at: str
    updated_at: str
    html_url: str


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    node_id: str
    author: str
    body: str
    created_at: str
    updated_at: str
    html_url: str


@dataclass(frozen=True)
class CheckRun:
    name: str
    status: str
    conclusion: str | None


@dataclass(frozen=True)
class ReviewThread:
    thread_id: str
    is_resolved: bool


def append_reply_marker(*, body: str, comment_id: int) -> str:
    marker = f"<!-- bugfixbot-reply:{comment_id} -->"
    stripped = body.rstrip()
    if marker in stripped:
        return stripped
    if not stripped:
        return marker
    return f"{stripped}\n\n{marker}"


def extract_reply_marker_ids(text: str) -> tuple[int, ...]:
    return tuple(int(match.group(1)) for match in REPLY_MARKER_PATTERN.finditer(text))


def github_auth_env(config: GitHubConfig) -> dict[str, str] | None:
    """Environment overrides that authenticate ``gh`` for the configured method."""
    if config.auth == "gh":
        return None
    if config.auth == "token":
        if config.token is None:
            raise ConfigError('github.token is required when github.auth = "token"')
        return {"GH_TOKEN": config.token}
    token = os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")
    if not token:
        raise ConfigError(
            "No GitHub token found in environment. "
            "Set GITHUB_TOKEN or GH_TOKEN, or use auth = \"gh\""
        )
    return {"GH_TOKEN": token}


def parse_repo_string(repo: str) -> tuple[str, str]:
    parts = repo.strip().split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid repo format: {repo!r}. Expected owner/name")
    return parts[0], parts[1]


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    env: dict[str, str] | None = field(default=None, repr=False, compare=False)
    logger: logging.Logger = field(default=LOGGER, repr=False, compare=False)
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def find_pull_request_by_head(self, head: str) -> int | None:
        query = urlencode({"state": "open", "head": f"{self.owner}:{head}", "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/pulls?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")
        numbers: list[int] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            numbers.append(_as_int(item_obj.get("number"), field="number"))
        log_event(
            self.logger,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            found=bool(numbers),
        )
        return min(numbers) if numbers else None

    def list_review_comments(self, pr_number: int) -> list[ReviewComment]:
        comments: list[ReviewComment] = []
        for item_obj in self._paginate(
            f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments"
        ):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                ReviewComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    node_id=_as_string(item_obj.get("node_id")),
                    author=_as_string(user_obj.get("login") if user_obj else None),
                    body=_as_string(item_obj.get("body")),
                    path=_as_string(item_obj.get("path")),
                    line=_as_optional_int(item_obj.get("line")),
                    side=_as_optional_str(item_obj.get("side")),
                    position=_as_optional_int(item_obj.get("position")),
                    diff_hunk=_as_optional_str(item_obj.get("diff_hunk")),
                    commit_id=_as_optional_str(item_obj.get("commit_id")),
                    in_reply_to_id=_as_optional_int(item_obj.get("in_reply_to_id")),
                    created_at=_as_string(item_obj.get("created_at")),
                    updated_at=_as_string(item_obj.get("updated_at")),
                    html_url=_as_string(item_obj.get("html_url")),
                )
            )
        log_event(
            self.logger,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        for item_obj in self._paginate(
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        ):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                IssueComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    node_id=_as_string(item_obj.get("node_id")),
                    author=_as_string(user_obj.get("login") if user_obj else None),
                    body=_as_string(item_obj.get("body")),
                    created_at=_as_string(item_obj.get("created_at")),
                    updated_at=_as_string(item_obj.get("updated_at")),
                    html_url=_as_string(item_obj.get("html_url")),
                )
            )
        log_event(
            self.logger,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def list_resolved_thread_comment_ids(self, pr_number: int) -> set[int]:
        """Database ids of thread-starting comments whose thread is resolved."""
        resolved: set[int] = set()
        after: str | None = None
        pages = 0
        while True:
            strings = {"owner": self.owner, "name": self.name}
            if after is not None:
                strings["after"] = after
            data = self._graphql(
                _THREAD_STATUSES_QUERY, strings=strings, typed={"number": pr_number}
            )
            pages += 1
            repo_obj = _as_object_dict(data.get("repository"))
            pr_obj = _as_object_dict(repo_obj.get("pullRequest")) if repo_obj else None
            threads_obj = _as_object_dict(pr_obj.get("reviewThreads")) if pr_obj else None
            if threads_obj is None:
                break
            resolved.update(_resolved_thread_starters(threads_obj.get("nodes")))
            page_info = _as_object_dict(threads_obj.get("pageInfo"))
            cursor = _as_optional_str(page_info.get("endCursor")) if page_info else None
            if page_info is None or page_info.get("hasNextPage") is not True or not cursor:
                break
            after = cursor
        log_event(
            self.logger,
            "github_read",
            endpoint="review_thread_statuses",
            pr_number=pr_number,
            resolved_count=len(resolved),
            pages=pages,
        )
        return resolved

    def get_review_thread(self, comment_node_id: str) -> ReviewThread | None:
        data = self._graphql(_THREAD_FOR_COMMENT_QUERY, strings={"nodeId": comment_node_id})
        node_obj = _as_object_dict(data.get("node"))
        thread_obj = _as_object_dict(node_obj.get("pullRequestReviewThread")) if node_obj else None
        if thread_obj is None:
            return None
        thread_id = _as_string(thread_obj.get("id"))
        if not thread_id:
            return None
        return ReviewThread(thread_id=thread_id, is_resolved=thread_obj.get("isResolved") is True)

    def resolve_review_thread(self, thread_id: str) -> None:
        self._graphql(_RESOLVE_THREAD_MUTATION, strings={"threadId": thread_id})
        log_event(self.logger, "github_review_thread_resolved", thread_id=thread_id)

    def list_check_runs(self, ref: str) -> list[CheckRun]:
        path = f"/repos/{self.owner}/{self.name}/commits/{ref}/check-runs?per_page=100"
        payload = _as_object_dict(self._api_json("GET", path))
        if payload is None:
            raise RuntimeError("Unexpected GitHub response: expected object for check runs")
        runs_obj = payload.get("check_runs")
        if not isinstance(runs_obj, list):
            raise RuntimeError("Unexpected GitHub response: expected check_runs list")
        runs: list[CheckRun] = []
        for item in runs_obj:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            runs.append(
                CheckRun(
                    name=_as_string(item_obj.get("name")),
                    status=_as_string(item_obj.get("status")).lower(),
                    conclusion=_as_optional_str(item_obj.get("conclusion")),
                )
            )
        log_event(self.logger, "github_read", endpoint="check_runs", ref=ref, count=len(runs))
        return runs

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                "github_issue_comment_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(self.logger, "github_issue_comment_posted", issue_number=issue_number)

    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments"
        try:
            self._api_json(
                "POST",
                path,
                payload={"body": body, "in_reply_to": review_comment_id},
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                "github_review_reply_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                pr_number=pr_number,
                review_comment_id=review_comment_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            self.logger,
            "github_review_reply_posted",
            pr_number=pr_number,
            review_comment_id=review_comment_id,
        )

    def _paginate(self, base_path: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            path = f"{base_path}?{urlencode({'per_page': _PAGE_SIZE, 'page': page})}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError(f"Unexpected GitHub response: expected list for {base_path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        return items

    def _graphql(
        self,
        query: str,
        *,
        strings: dict[str, str] | None = None,
        typed: dict[str, int] | None = None,
    ) -> dict[str, object]:
        cmd = ["gh", "api", "graphql", "-f", f"query={query}"]
        for key, value in (strings or {}).items():
            cmd.extend(["-f", f"{key}={value}"])
        for key, number in (typed or {}).items():
            cmd.extend(["-F", f"{key}={number}"])
        raw = run(cmd, env=self.env)
        payload = _as_object_dict(json.loads(raw))
        if payload is None:
            raise RuntimeError("Unexpected GitHub GraphQL response: expected object")
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            raise RuntimeError(f"GitHub GraphQL request failed: {json.dumps(errors)}")
        data = _as_object_dict(payload.get("data"))
        if data is None:
            raise RuntimeError("Unexpected GitHub GraphQL response: missing data")
        return data

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False, env=self.env)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    self.logger,
                    "github_poll_get_failed",
                    level=logging.WARNING,
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, env=self.env)
        return json.loads(raw) if raw.strip() else None


class CommentSource(Protocol):
    def fetch_comments(self) -> list[RawComment]: ...

    def post_comment(self, body: str) -> None: ...

    def reply_to(self, task: FixTask, body: str) -> None: ...

    def resolve_threads(self, tasks: Sequence[FixTask]) -> tuple[int, int]: ...


class GitHubCommentSource:
    """Bot review feedback on one pull request, as seen through ``GitHubGateway``."""

    def __init__(
        self,
        gateway: GitHubGateway,
        pr_number: int,
        config: GitHubConfig,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._gateway = gateway
        self._pr_number = pr_number
        self._config = config
        self._logger = logger or LOGGER

    @property
    def pr_number(self) -> int:
        return self._pr_number

    def fetch_comments(self) -> list[RawComment]:
        review_comments = self._gateway.list_review_comments(self._pr_number)
        issue_comments = self._gateway.list_issue_comments(self._pr_number)
        try:
            resolved_ids = self._gateway.list_resolved_thread_comment_ids(self._pr_number)
        except (RuntimeError, ValueError) as exc:
            # Resolution state is advisory; the reply check still filters handled threads.
            log_event(
                self._logger,
                "github_thread_status_unavailable",
                level=logging.WARNING,
                pr_number=self._pr_number,
                error=str(exc),
            )
            resolved_ids = set()

        replied_ids = {
            comment.in_reply_to_id
            for comment in review_comments
            if comment.in_reply_to_id is not None
        }
        for comment in issue_comments:
            replied_ids.update(extract_reply_marker_ids(comment.body))

        out: list[RawComment] = []
        for review in review_comments:
            if review.in_reply_to_id is not None:
                continue
            if not self._config.is_bot_author(review.author):
                continue
            out.append(
                RawComment(
                    comment_id=review.comment_id,
                    node_id=review.node_id,
                    author=review.author,
                    body=review.body,
                    kind="review",
                    path=review.path or None,
                    line=review.line,
                    side=_as_side(review.side),
                    position=review.position,
                    diff_hunk=review.diff_hunk,
                    revision_id=review.commit_id,
                    created_at=review.created_at,
                    updated_at=review.updated_at,
                    html_url=review.html_url,
                    is_resolved=review.comment_id in resolved_ids,
                    has_reply=review.comment_id in replied_ids,
                )
            )
        for issue in issue_comments:
            if not self._config.is_bot_author(issue.author):
                continue
            out.append(
                RawComment(
                    comment_id=issue.comment_id,
                    node_id=issue.node_id,
                    author=issue.author,
                    body=issue.body,
                    kind="issue",
                    created_at=issue.created_at,
                    updated_at=issue.updated_at,
                    html_url=issue.html_url,
                    has_reply=issue.comment_id in replied_ids,
                )
            )
        out.sort(key=lambda comment: (comment.created_at, comment.comment_id))
        log_event(
            self._logger,
            "comments_fetched",
            pr_number=self._pr_number,
            count=len(out),
            resolved_count=sum(1 for comment in out if comment.is_resolved),
            replied_count=sum(1 for comment in out if comment.has_reply),
        )
        return out

    def post_comment(self, body: str) -> None:
        self._gateway.post_issue_comment(self._pr_number, body)

    def reply_to(self, task: FixTask, body: str) -> None:
        if not task.file_path:
            raise UnsupportedReplyError(
                f"Comment {task.comment_id} is an issue-level comment and has no reply thread"
            )
        self._gateway.post_review_comment_reply(
            self._pr_number,
            task.comment_id,
            append_reply_marker(body=body, comment_id=task.comment_id),
        )

    def resolve_threads(self, tasks: Sequence[FixTask]) -> tuple[int, int]:
        """Resolve the review thread behind each file-scoped task.

        Returns ``(resolved, failed)``. Threads that were already resolved count
        as resolved; tasks without a thread are skipped.
        """
        resolved = 0
        failed = 0
        for task in tasks:
            if not task.file_path or not task.node_id:
                continue
            try:
                thread = self._gateway.get_review_thread(task.node_id)
                if thread is None:
                    continue
                if not thread.is_resolved:
                    self._gateway.resolve_review_thread(thread.thread_id)
                resolved += 1
            except (RuntimeError, ValueError) as exc:
                failed += 1
                log_event(
                    self._logger,
                    "github_review_thread_resolve_failed",
                    level=logging.WARNING,
                    comment_id=task.comment_id,
                    error=str(exc),
                )
        return resolved, failed


def _as_side(value: str | None) -> Side | None:
    if value is None:
        return None
    upper = value.upper()
    if upper in {"LEFT", "RIGHT"}:
        return cast(Side, upper)
    return None


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _resolved_thread_starters(nodes: object) -> set[int]:
    resolved: set[int] = set()
    if not isinstance(nodes, list):
        return resolved
    for node in nodes:
        node_obj = _as_object_dict(node)
        if node_obj is None or node_obj.get("isResolved") is not True:
            continue
        comments_obj = _as_object_dict(node_obj.get("comments"))
        comment_nodes = comments_obj.get("nodes") if comments_obj else None
        if not isinstance(comment_nodes, list) or not comment_nodes:
            continue
        first = _as_object_dict(comment_nodes[0])
        database_id = _as_optional_int(first.get("databaseId")) if first else None
        if database_id is not None:
            resolved.add(database_id)
    return resolved


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise RuntimeError("Unexpected GitHub response type for optional int field")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(
                f"Unexpected GitHub response value for optional int field: {value}"
            ) from exc
    raise RuntimeError("Unexpected GitHub response type for optional int field")
