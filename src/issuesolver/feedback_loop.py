from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re

from issuesolver.models import (
    GENERAL_GROUP_LABEL,
    ZERO_WATERMARK,
    PullRequestRef,
    Review,
    ReviewComment,
    Ticket,
)
from issuesolver.observability import log_event


LOGGER = logging.getLogger("issuesolver.feedback_loop")

WATERMARK_PATTERN = re.compile(r"AI Processing Timestamp: (\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z)")
RESPONSE_MARKER_PATTERN = re.compile(r"((?:COMMENT|REVIEW)_\d+)_RESPONSE:\s*")
SYNTHETIC_ID_PATTERN = re.compile(r"^(COMMENT|REVIEW)_[0-9]+$")
_PULL_REQUEST_URL_PATTERN = re.compile(r"https://github\.com/([^/]+)/([^/]+)/pull/(\d+)")
_BOT_PULL_REQUEST_COMMENT_PATTERN = re.compile(
    r"\[AI-BOT-PR\]\s+(https://github\.com/[^/\s]+/[^/\s]+/pull/\d+)"
)
_WATERMARK_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

SUMMARY_HEADER = "Previously addressed (for context only - do not re-fix):\n"
GROUP_HEADER = "## NEW Review Feedback (Action Required)\n\n"
SUMMARY_EXCERPT_LEN = 80
PARENT_EXCERPT_LEN = 150


class InvalidPullRequestUrl(ValueError):
    pass


@dataclass(frozen=True)
class FeedbackGroup:
    path: str
    reviews: dict[str, Review]
    comments: dict[str, ReviewComment]
    rendered: str

    @property
    def label(self) -> str:
        return group_label(self.path)

    def expected_ids(self) -> list[str]:
        return sorted([*self.comments.keys(), *self.reviews.keys()])


@dataclass(frozen=True)
class GroupedFeedback:
    groups: dict[str, FeedbackGroup]
    summary: str

    def ordered_groups(self) -> list[FeedbackGroup]:
        """Groups in processing order: the general bucket first, then file paths."""
        return [self.groups[path] for path in sorted(self.groups)]

    def all_comments(self) -> dict[str, ReviewComment]:
        merged: dict[str, ReviewComment] = {}
        for group in self.groups.values():
            merged.update(group.comments)
        return dict(sorted(merged.items(), key=lambda item: _synthetic_sort_key(item[0])))

    def all_reviews(self) -> dict[str, Review]:
        merged: dict[str, Review] = {}
        for group in self.groups.values():
            merged.update(group.reviews)
        return dict(sorted(merged.items(), key=lambda item: _synthetic_sort_key(item[0])))

    @property
    def item_count(self) -> int:
        return sum(len(group.reviews) + len(group.comments) for group in self.groups.values())


def group_label(path: str) -> str:
    return path or GENERAL_GROUP_LABEL


def truncate_text(text: str, max_len: int) -> str:
    compact = text.replace("\n", " ").strip()
    if len(compact) <= max_len:
        return compact
    return f"{compact[: max_len - 3]}..."


def format_watermark(timestamp: datetime) -> str:
    return timestamp.astimezone(timezone.utc).strftime(_WATERMARK_FORMAT)


def parse_watermark(text: str) -> datetime | None:
    try:
        parsed = datetime.strptime(text, _WATERMARK_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def latest_watermark(comments: Iterable[ReviewComment], *, bot_login: str) -> datetime:
    """Return the newest processing marker posted by ``bot_login``.

    Markers from any other author are ignored so that a reviewer quoting an old
    marker cannot move the watermark. Absence of a marker yields the zero
    watermark, meaning every item counts as new.
    """
    latest = ZERO_WATERMARK
    for comment in comments:
        if comment.user_login != bot_login:
            continue
        match = WATERMARK_PATTERN.search(comment.body)
        if match is None:
            continue
        timestamp = parse_watermark(match.group(1))
        if timestamp is not None and timestamp > latest:
            latest = timestamp
    return latest


def render_watermark_comment(*, ticket_key: str, processed_at: datetime, redact: bool) -> str:
    body = (
        f"AI Processing Timestamp: {format_watermark(processed_at)}\n\n"
        f"AI has processed feedback for ticket {ticket_key} at this time."
    )
    if redact:
        return body
    return (
        f"{body} Future processing will only consider feedback submitted after this timestamp."
    )


def filter_new_reviews(
    reviews: Iterable[Review], *, watermark: datetime, bot_login: str
) -> list[Review]:
    return [
        review
        for review in reviews
        if review.user_login != bot_login and review.submitted_at > watermark
    ]


def filter_new_comments(
    comments: Iterable[ReviewComment], *, watermark: datetime, bot_login: str
) -> list[ReviewComment]:
    return [
        comment
        for comment in comments
        if comment.user_login != bot_login and comment.created_at > watermark
    ]


def should_process(
    new_reviews: Iterable[Review], new_comments: Iterable[ReviewComment], *, bot_login: str
) -> bool:
    has_changes_requested = any(
        review.user_login != bot_login and review.state == "changes_requested"
        for review in new_reviews
    )
    return has_changes_requested or any(True for _ in new_comments)


def build_handled_summary(
    reviews: Iterable[Review],
    comments: Iterable[ReviewComment],
    *,
    watermark: datetime,
    bot_login: str,
) -> str:
    handled: list[str] = []
    for review in reviews:
        if review.user_login == bot_login or review.submitted_at > watermark:
            continue
        if review.body:
            handled.append(f"{truncate_text(review.body, SUMMARY_EXCERPT_LEN)} (review)")
    for comment in comments:
        if comment.user_login == bot_login or comment.created_at > watermark:
            continue
        if comment.body:
            handled.append(truncate_text(comment.body, SUMMARY_EXCERPT_LEN))

    if not handled:
        return ""
    return SUMMARY_HEADER + "".join(f"- {item}\n" for item in handled)


def describe_comment_location(comment: ReviewComment) -> str:
    if not comment.is_anchored:
        return "General comment"
    if comment.is_multi_line:
        return f"on {comment.path}:{comment.start_line}-{comment.line}"
    return f"on {comment.path}:{comment.line}"


def render_group_feedback(
    *,
    path: str,
    reviews: Mapping[str, Review],
    comments: Mapping[str, ReviewComment],
    comment_by_id: Mapping[int, ReviewComment],
) -> str:
    parts = [GROUP_HEADER]
    if path:
        parts.append(f"**File: {path}**\n\n")

    for synthetic_id, review in reviews.items():
        parts.append(f"### {synthetic_id}\n")
        parts.append(f"**Review by {review.user_login} ({review.state}):**\n")
        parts.append(f"{review.body}\n\n")

    for synthetic_id, comment in comments.items():
        parts.append(f"### {synthetic_id}\n")
        parts.append(
            f"**Comment by {comment.user_login} {describe_comment_location(comment)}:**\n"
        )
        parent = comment_by_id.get(comment.parent_id) if comment.parent_id else None
        if parent is not None:
            parts.append("*(Follow-up to previous discussion)*\n")
            parts.append(
                f'Previous comment by {parent.user_login}: '
                f'"{truncate_text(parent.body, PARENT_EXCERPT_LEN)}"\n\n'
            )
        parts.append(f"{comment.body}\n\n")

    if not reviews and not comments:
        parts.append("No new feedback.\n")
    return "".join(parts)


def collect_feedback(
    reviews: Iterable[Review],
    comments: Iterable[ReviewComment],
    *,
    watermark: datetime,
    bot_login: str,
) -> GroupedFeedback:
    """Split feedback into already-handled context and new, ID-tagged groups.

    Inputs are copied and ordered by host ID before IDs are assigned, so the same
    inputs always produce the same ``REVIEW_<n>``/``COMMENT_<n>`` numbering and
    the same rendered blocks. New reviews land in the general bucket (``""``);
    new comments land in the bucket of their file when anchored to a line.
    """
    ordered_reviews = sorted(reviews, key=lambda review: review.review_id)
    ordered_comments = sorted(comments, key=lambda comment: comment.comment_id)
    comment_by_id = {comment.comment_id: comment for comment in ordered_comments}

    summary = build_handled_summary(
        ordered_reviews, ordered_comments, watermark=watermark, bot_login=bot_login
    )

    group_reviews: dict[str, dict[str, Review]] = {}
    group_comments: dict[str, dict[str, ReviewComment]] = {}

    review_counter = 0
    for review in ordered_reviews:
        if review.user_login == bot_login or not review.body:
            continue
        if review.submitted_at <= watermark:
            continue
        review_counter += 1
        group_reviews.setdefault("", {})[f"REVIEW_{review_counter}"] = review
        group_comments.setdefault("", {})

    comment_counter = 0
    for comment in ordered_comments:
        if comment.user_login == bot_login or not comment.body:
            continue
        if comment.created_at <= watermark:
            continue
        comment_counter += 1
        path = comment.path if comment.is_anchored else ""
        group_comments.setdefault(path, {})[f"COMMENT_{comment_counter}"] = comment
        group_reviews.setdefault(path, {})

    groups: dict[str, FeedbackGroup] = {}
    for path in sorted(group_reviews):
        rendered = render_group_feedback(
            path=path,
            reviews=group_reviews[path],
            comments=group_comments[path],
            comment_by_id=comment_by_id,
        )
        groups[path] = FeedbackGroup(
            path=path,
            reviews=group_reviews[path],
            comments=group_comments[path],
            rendered=rendered,
        )

    log_event(
        LOGGER,
        "feedback_collected",
        group_count=len(groups),
        new_reviews=review_counter,
        new_comments=comment_counter,
        has_summary=bool(summary),
    )
    return GroupedFeedback(groups=groups, summary=summary)


def parse_responses(output: str, expected_ids: Iterable[str]) -> dict[str, str]:
    """Extract ``<ID>_RESPONSE:`` blocks from generator output.

    Each response runs from its marker to the first blank line, or to the next
    marker when no blank line comes first. Missing or empty responses are logged
    and left out of the result.
    """
    responses: dict[str, str] = {}
    matches = list(RESPONSE_MARKER_PATTERN.finditer(output))
    for index, match in enumerate(matches):
        start = match.end()
        limit = matches[index + 1].start() if index + 1 < len(matches) else len(output)
        blank_line = output.find("\n\n", start, limit)
        end = blank_line if blank_line != -1 else limit
        text = output[start:end].strip()
        synthetic_id = match.group(1)
        if not text:
            log_event(
                LOGGER,
                "response_parse_empty",
                level=logging.WARNING,
                synthetic_id=synthetic_id,
            )
            continue
        responses[synthetic_id] = text

    expected = list(expected_ids)
    missing = [synthetic_id for synthetic_id in expected if synthetic_id not in responses]
    if missing:
        log_event(
            LOGGER,
            "responses_missing",
            level=logging.WARNING,
            missing_ids=missing,
            expected_count=len(expected),
            found_count=len(responses),
            output_preview=truncate_text(output, 500),
        )
    log_event(
        LOGGER,
        "responses_parsed",
        count=len(responses),
        expected_count=len(expected),
    )
    return responses


def build_commit_message(*, ticket_key: str, skipped_groups: Iterable[str]) -> str:
    skipped = sorted(skipped_groups)
    if not skipped:
        return f"{ticket_key}: Apply PR feedback fixes"
    return f"{ticket_key}: Apply PR feedback fixes (skipped: {', '.join(skipped)})"


def parse_pull_request_url(url: str) -> PullRequestRef:
    match = _PULL_REQUEST_URL_PATTERN.search(url)
    if match is None:
        raise InvalidPullRequestUrl(f"Invalid GitHub pull request URL: {url!r}")
    return PullRequestRef(owner=match.group(1), repo=match.group(2), number=int(match.group(3)))


def resolve_pull_request_url(
    ticket: Ticket, *, pull_request_field: str | None, jira_username: str | None
) -> str | None:
    """Find the PR URL linked to ``ticket``.

    The configured custom field wins when it holds a non-empty string (or a list
    whose first entry is one). Otherwise the newest ticket comment posted by the
    automation user carrying an ``[AI-BOT-PR] <url>`` tag is used.
    """
    if pull_request_field:
        value = ticket.custom_fields.get(pull_request_field)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, list | tuple) and value:
            first = value[0]
            if isinstance(first, str) and first:
                return first

    for comment in reversed(ticket.comments):
        if comment.author_name != jira_username:
            continue
        match = _BOT_PULL_REQUEST_COMMENT_PATTERN.search(comment.body)
        if match is not None:
            return match.group(1)
    return None


def _synthetic_sort_key(synthetic_id: str) -> tuple[str, int]:
    if SYNTHETIC_ID_PATTERN.match(synthetic_id) is None:
        raise ValueError(f"Not a synthetic feedback ID: {synthetic_id!r}")
    kind, _, number = synthetic_id.partition("_")
    return kind, int(number)
