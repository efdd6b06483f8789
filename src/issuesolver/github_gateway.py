from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import cast
from urllib.parse import urlencode

from issuesolver.collaborators import CodeHost
from issuesolver.models import (
    ZERO_WATERMARK,
    PullRequestDetails,
    PullRequestFile,
    Review,
    ReviewComment,
    normalize_review_state,
)
from issuesolver.observability import log_event
from issuesolver.shell import run


LOGGER = logging.getLogger("issuesolver.github_gateway")
_PAGE_SIZE = 100


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway(CodeHost):
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

    def get_pull_request_details(self, owner: str, repo: str, number: int) -> PullRequestDetails:
        path = f"/repos/{owner}/{repo}/pulls/{number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        if head is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head")
        # A deleted fork comes back with a null head repo.
        head_repo = _as_object_dict(head.get("repo"))
        head_owner = _as_object_dict(head_repo.get("owner")) if head_repo else None

        details = PullRequestDetails(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            html_url=_as_string(payload_obj.get("html_url")),
            head_ref=_as_string(head.get("ref")),
            head_clone_url=_as_string(head_repo.get("clone_url")) if head_repo else "",
            head_owner=_as_string(head_owner.get("login")) if head_owner else "",
            files=tuple(self.list_pull_request_files(owner, repo, number)),
            reviews=tuple(self.list_pull_request_reviews(owner, repo, number)),
            comments=tuple(self.list_pull_request_comments(owner, repo, number)),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            repo_full_name=f"{owner}/{repo}",
            pr_number=details.number,
            file_count=len(details.files),
            review_count=len(details.reviews),
            comment_count=len(details.comments),
        )
        return details

    def list_pull_request_files(self, owner: str, repo: str, number: int) -> list[PullRequestFile]:
        files: list[PullRequestFile] = []
        for item_obj in self._paginate(f"/repos/{owner}/{repo}/pulls/{number}/files"):
            filename = _as_string(item_obj.get("filename"))
            if not filename:
                continue
            files.append(
                PullRequestFile(
                    path=filename,
                    status=_as_string(item_obj.get("status")),
                    additions=_as_optional_int(item_obj.get("additions")) or 0,
                    deletions=_as_optional_int(item_obj.get("deletions")) or 0,
                    patch=_as_string(item_obj.get("patch")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_files",
            pr_number=number,
            count=len(files),
        )
        return files

    def list_pull_request_reviews(self, owner: str, repo: str, number: int) -> list[Review]:
        reviews: list[Review] = []
        for item_obj in self._paginate(f"/repos/{owner}/{repo}/pulls/{number}/reviews"):
            user_obj = _as_object_dict(item_obj.get("user"))
            reviews.append(
                Review(
                    review_id=_as_int(item_obj.get("id"), field="id"),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    state=normalize_review_state(_as_string(item_obj.get("state"))),
                    body=_as_string(item_obj.get("body")),
                    submitted_at=_as_datetime(item_obj.get("submitted_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            pr_number=number,
            count=len(reviews),
        )
        return reviews

    def list_pull_request_comments(
        self, owner: str, repo: str, number: int
    ) -> list[ReviewComment]:
        # The pulls and issues comment endpoints return disjoint sets.
        review_comments = [
            _parse_comment(item_obj)
            for item_obj in self._paginate(f"/repos/{owner}/{repo}/pulls/{number}/comments")
        ]
        conversation_comments = [
            _parse_comment(item_obj)
            for item_obj in self._paginate(f"/repos/{owner}/{repo}/issues/{number}/comments")
        ]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_comments",
            pr_number=number,
            review_comment_count=len(review_comments),
            conversation_comment_count=len(conversation_comments),
        )
        return review_comments + conversation_comments

    def add_pull_request_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        path = f"/repos/{owner}/{repo}/issues/{number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=f"{owner}/{repo}",
                pr_number=number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", pr_number=number)

    def reply_to_review_comment(
        self, owner: str, repo: str, number: int, parent_id: int, body: str
    ) -> None:
        path = f"/repos/{owner}/{repo}/pulls/{number}/comments"
        try:
            self._api_json(
                "POST",
                path,
                payload={"body": body, "in_reply_to": parent_id},
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_review_reply_failed",
                repo_full_name=f"{owner}/{repo}",
                pr_number=number,
                review_comment_id=parent_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_review_reply_posted",
            pr_number=number,
            review_comment_id=parent_id,
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
                return items
            page += 1

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
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
                    LOGGER,
                    "github_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(f"GitHub GET failed for path {path}: {exc}") from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload)
        return json.loads(raw) if raw.strip() else None


def _parse_comment(item_obj: dict[str, object]) -> ReviewComment:
    user_obj = _as_object_dict(item_obj.get("user"))
    return ReviewComment(
        comment_id=_as_int(item_obj.get("id"), field="id"),
        user_login=_as_string(user_obj.get("login") if user_obj else None),
        body=_as_string(item_obj.get("body")),
        created_at=_as_datetime(item_obj.get("created_at")),
        path=_as_string(item_obj.get("path")),
        line=_as_optional_int(item_obj.get("line")),
        start_line=_as_optional_int(item_obj.get("start_line")),
        in_reply_to_id=_as_optional_int(item_obj.get("in_reply_to_id")),
        html_url=_as_string(item_obj.get("html_url")),
    )


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


def _as_datetime(value: object) -> datetime:
    # Pending reviews have no submission time; treat them as already seen.
    if value is None or value == "":
        return ZERO_WATERMARK
    if not isinstance(value, str):
        raise RuntimeError("Unexpected GitHub response type for timestamp field")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub timestamp value: {value}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
