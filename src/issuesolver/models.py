from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, cast


ReviewState = Literal["approved", "changes_requested", "commented", "other"]
FeedbackCycleStatus = Literal["no_pull_request", "no_new_feedback", "deleted_fork", "completed"]

ZERO_WATERMARK = datetime.min.replace(tzinfo=timezone.utc)
GENERAL_GROUP_LABEL = "general/reviews"

_REVIEW_STATES = frozenset({"approved", "changes_requested", "commented"})


def normalize_review_state(raw: str) -> ReviewState:
    normalized = raw.strip().lower()
    if normalized in _REVIEW_STATES:
        return cast(ReviewState, normalized)
    return "other"


@dataclass(frozen=True)
class ReviewComment:
    comment_id: int
    user_login: str
    body: str
    created_at: datetime
    path: str = ""
    line: int | None = None
    start_line: int | None = None
    in_reply_to_id: int | None = None
    html_url: str = ""

    @property
    def is_anchored(self) -> bool:
        return bool(self.path) and bool(self.line)

    @property
    def is_multi_line(self) -> bool:
        return bool(self.start_line) and self.start_line != self.line

    @property
    def parent_id(self) -> int:
        return self.in_reply_to_id or 0


@dataclass(frozen=True)
class Review:
    review_id: int
    user_login: str
    state: ReviewState
    body: str
    submitted_at: datetime


@dataclass(frozen=True)
class PullRequestFile:
    path: str
    status: str
    additions: int
    deletions: int
    patch: str = ""


@dataclass(frozen=True)
class PullRequestDetails:
    number: int
    title: str
    body: str
    html_url: str
    head_ref: str
    head_clone_url: str
    head_owner: str
    files: tuple[PullRequestFile, ...] = ()
    reviews: tuple[Review, ...] = ()
    comments: tuple[ReviewComment, ...] = ()


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class TicketUser:
    name: str
    email: str


@dataclass(frozen=True)
class TicketComment:
    author_name: str
    body: str


@dataclass(frozen=True)
class Ticket:
    key: str
    assignee: TicketUser | None = None
    custom_fields: dict[str, object] = field(default_factory=dict)
    comments: tuple[TicketComment, ...] = ()


@dataclass(frozen=True)
class ReplyTally:
    posted: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class FeedbackCycleResult:
    ticket_key: str
    status: FeedbackCycleStatus
    pr_number: int | None = None
    skipped_groups: tuple[str, ...] = ()
    replies: ReplyTally = ReplyTally()
    watermark_advanced: bool = False
