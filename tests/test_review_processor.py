from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path
import re

import pytest

from issuesolver.config import AppConfig, GitHubConfig, JiraConfig, RuntimeConfig
from issuesolver.feedback_loop import InvalidPullRequestUrl, render_watermark_comment
from issuesolver.models import (
    PullRequestDetails,
    ReplyTally,
    Review,
    ReviewComment,
    Ticket,
    TicketUser,
)
from issuesolver.observability import configure_logging
from issuesolver.review_processor import FeedbackCycleError, ReviewFeedbackProcessor
from issuesolver.shell import CommandError


BOT = "ai-bot"
PR_URL = "https://github.com/acme/widgets/pull/42"
CLONE_URL = "https://github.com/bot/widgets.git"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NOW = datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)
_ID_PATTERN = re.compile(r"^### ((?:COMMENT|REVIEW)_\d+)$", re.MULTILINE)
_FILE_PATTERN = re.compile(r"^\*\*File: (.+)\*\*$", re.MULTILINE)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _comment(
    comment_id: int,
    *,
    user: str = "alice",
    body: str = "please fix",
    minutes: int = 10,
    path: str = "",
    line: int | None = None,
    reply_to: int | None = None,
) -> ReviewComment:
    return ReviewComment(
        comment_id=comment_id,
        user_login=user,
        body=body,
        created_at=_at(minutes),
        path=path,
        line=line,
        in_reply_to_id=reply_to,
    )


def _review(review_id: int, *, user: str = "bob", body: str = "Please add tests") -> Review:
    return Review(
        review_id=review_id,
        user_login=user,
        state="changes_requested",
        body=body,
        submitted_at=_at(10),
    )


def _marker(comment_id: int, minutes: int) -> ReviewComment:
    return _comment(
        comment_id,
        user=BOT,
        minutes=minutes,
        body=render_watermark_comment(ticket_key="PROJ-7", processed_at=_at(minutes), redact=False),
    )


def _details(
    *,
    reviews: Iterable[Review] = (),
    comments: Iterable[ReviewComment] = (),
    clone_url: str = CLONE_URL,
) -> PullRequestDetails:
    return PullRequestDetails(
        number=42,
        title="PROJ-7: Add retry budget",
        body="Implements retries.",
        html_url=PR_URL,
        head_ref="proj-7",
        head_clone_url=clone_url,
        head_owner="bot",
        reviews=tuple(reviews),
        comments=tuple(comments),
    )


class FakeTickets:
    def __init__(
        self,
        ticket: Ticket | None = None,
        *,
        security: bool = False,
        security_error: Exception | None = None,
        fetch_error: Exception | None = None,
    ) -> None:
        self.ticket = ticket or Ticket(
            key="PROJ-7",
            assignee=TicketUser(name="Dana Dev", email="dana@example.com"),
            custom_fields={"customfield_pr": PR_URL},
        )
        self.security = security
        self.security_error = security_error
        self.fetch_error = fetch_error

    def get_ticket(self, key: str) -> Ticket:
        if self.fetch_error is not None:
            raise self.fetch_error
        assert key == self.ticket.key
        return self.ticket

    def has_security_level(self, key: str) -> bool:
        _ = key
        if self.security_error is not None:
            raise self.security_error
        return self.security

    def list_in_review_ticket_keys(self) -> list[str]:
        return [self.ticket.key]


class FakeCodeHost:
    def __init__(
        self,
        details: PullRequestDetails,
        *,
        comments_error: Exception | None = None,
        fail_reply_ids: Iterable[int] = (),
    ) -> None:
        self.details = details
        self.comments_error = comments_error
        self.fail_reply_ids = set(fail_reply_ids)
        self.general_comments: list[str] = []
        self.threaded_replies: list[tuple[int, str]] = []

    def get_pull_request_details(self, owner: str, repo: str, number: int) -> PullRequestDetails:
        assert (owner, repo, number) == ("acme", "widgets", 42)
        return self.details

    def list_pull_request_comments(self, owner: str, repo: str, number: int) -> list[ReviewComment]:
        _ = owner, repo, number
        if self.comments_error is not None:
            raise self.comments_error
        return list(self.details.comments)

    def add_pull_request_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        _ = owner, repo, number
        self.general_comments.append(body)

    def reply_to_review_comment(
        self, owner: str, repo: str, number: int, parent_id: int, body: str
    ) -> None:
        _ = owner, repo, number
        if parent_id in self.fail_reply_ids:
            raise RuntimeError("reply rejected")
        self.threaded_replies.append((parent_id, body))


class FakeWorkspace:
    def __init__(self, *, fail_on: str | None = None) -> None:
        self.fail_on = fail_on
        self.calls: list[tuple[object, ...]] = []
        self.commits: list[tuple[str, str | None, str | None]] = []
        self.repo_dir: Path | None = None

    def _record(self, name: str, *args: object) -> None:
        self.calls.append((name, *args))
        if self.fail_on == name:
            raise CommandError(f"{name} failed")

    def clone_repository(self, url: str, directory: Path) -> None:
        directory.mkdir(parents=True)
        self.repo_dir = directory
        self._record("clone", url)

    def switch_to_branch(self, directory: Path, branch: str) -> None:
        _ = directory
        self._record("switch", branch)

    def pull_changes(self, directory: Path, branch: str) -> None:
        _ = directory
        self._record("pull", branch)

    def commit_changes(
        self,
        directory: Path,
        message: str,
        co_author_name: str | None,
        co_author_email: str | None,
    ) -> bool:
        _ = directory
        self._record("commit", message)
        self.commits.append((message, co_author_name, co_author_email))
        return True

    def push_changes(self, directory: Path, branch: str, fork_owner: str, repo: str) -> None:
        _ = directory
        self._record("push", branch, fork_owner, repo)


class FakeGenerator:
    def __init__(
        self,
        *,
        empty_for: Iterable[str] = (),
        error: Exception | None = None,
        raw_output: object = None,
    ) -> None:
        self.empty_for = set(empty_for)
        self.error = error
        self.raw_output = raw_output
        self.prompts: list[str] = []

    def generate_code(self, prompt: str, repo_dir: Path) -> object:
        assert repo_dir.is_dir()
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if self.raw_output is not None:
            return self.raw_output
        file_match = _FILE_PATTERN.search(prompt)
        label = file_match.group(1) if file_match else "general/reviews"
        if label in self.empty_for:
            return "   \n"
        ids = _ID_PATTERN.findall(prompt)
        return "Done.\n\n" + "".join(f"{sid}_RESPONSE:\nAddressed {sid}.\n\n" for sid in ids)


def _processor(
    tmp_path: Path,
    *,
    tickets: FakeTickets,
    host: FakeCodeHost,
    workspace: FakeWorkspace,
    generator: FakeGenerator,
) -> ReviewFeedbackProcessor:
    config = AppConfig(
        runtime=RuntimeConfig(work_dir=tmp_path / "work"),
        github=GitHubConfig(bot_login=BOT),
        jira=JiraConfig(username="svc", pull_request_field="customfield_pr"),
    )
    return ReviewFeedbackProcessor(
        config,
        tickets=tickets,  # type: ignore[arg-type]
        code_host=host,  # type: ignore[arg-type]
        workspace=workspace,  # type: ignore[arg-type]
        generator=generator,  # type: ignore[arg-type]
        now=lambda: NOW,
    )


def test_process_ticket_happy_path(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    host = FakeCodeHost(
        _details(
            reviews=[_review(5)],
            comments=[
                _comment(11, body="Cap retries", path="src/retry.py", line=2),
                _comment(12, user="carol", body="Update the docs too"),
            ],
        )
    )
    workspace = FakeWorkspace()
    generator = FakeGenerator()
    processor = _processor(
        tmp_path, tickets=FakeTickets(), host=host, workspace=workspace, generator=generator
    )

    result = processor.process_ticket("PROJ-7")

    assert result.status == "completed"
    assert result.pr_number == 42
    assert result.skipped_groups == ()
    assert result.replies == ReplyTally(posted=3, failed=0, skipped=0)
    assert result.watermark_advanced
    assert workspace.calls == [
        ("clone", CLONE_URL),
        ("switch", "proj-7"),
        ("pull", "proj-7"),
        ("commit", "PROJ-7: Apply PR feedback fixes"),
        ("push", "proj-7", "bot", "widgets"),
    ]
    assert workspace.commits == [("PROJ-7: Apply PR feedback fixes", "Dana Dev", "dana@example.com")]
    assert len(generator.prompts) == 2
    assert "### REVIEW_1" in generator.prompts[0]
    assert "### COMMENT_2" in generator.prompts[0]
    assert "**File: src/retry.py**" in generator.prompts[1]
    assert host.threaded_replies == [(11, "Addressed COMMENT_1.")]
    assert host.general_comments == [
        "@carol Addressed COMMENT_2.",
        "@bob Addressed REVIEW_1.",
        render_watermark_comment(ticket_key="PROJ-7", processed_at=NOW, redact=False),
    ]
    assert workspace.repo_dir == tmp_path / "work" / "PROJ-7-feedback"
    assert not workspace.repo_dir.exists()
    stderr = capsys.readouterr().err
    assert "ticket_key=PROJ-7 event=feedback_cycle_completed" in stderr


def test_process_ticket_without_linked_pull_request(tmp_path: Path) -> None:
    host = FakeCodeHost(_details(comments=[_comment(11)]))
    workspace = FakeWorkspace()
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(Ticket(key="PROJ-7")),
        host=host,
        workspace=workspace,
        generator=FakeGenerator(),
    )

    result = processor.process_ticket("PROJ-7")

    assert result.status == "no_pull_request"
    assert result.pr_number is None
    assert workspace.calls == []
    assert host.general_comments == []


def test_process_ticket_without_new_feedback_writes_nothing(tmp_path: Path) -> None:
    approved = Review(
        review_id=9,
        user_login="bob",
        state="approved",
        body="LGTM",
        submitted_at=_at(30),
    )
    host = FakeCodeHost(
        _details(reviews=[_review(5), approved], comments=[_comment(11), _marker(12, 20)])
    )
    workspace = FakeWorkspace()
    generator = FakeGenerator()
    processor = _processor(
        tmp_path, tickets=FakeTickets(), host=host, workspace=workspace, generator=generator
    )

    result = processor.process_ticket("PROJ-7")

    assert result.status == "no_new_feedback"
    assert result.pr_number == 42
    assert workspace.calls == []
    assert generator.prompts == []
    assert host.general_comments == []


def test_process_ticket_only_sends_feedback_after_watermark(tmp_path: Path) -> None:
    host = FakeCodeHost(
        _details(
            comments=[
                _comment(11, body="Old request"),
                _marker(12, 20),
                _comment(13, body="Fresh request", minutes=30),
            ]
        )
    )
    generator = FakeGenerator()
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=host,
        workspace=FakeWorkspace(),
        generator=generator,
    )

    result = processor.process_ticket("PROJ-7")

    assert result.status == "completed"
    assert len(generator.prompts) == 1
    prompt = generator.prompts[0]
    assert "## Previously addressed (for context only - do not re-fix):\n- Old request\n" in prompt
    assert "### COMMENT_1\n**Comment by alice General comment:**\nFresh request" in prompt
    assert "### COMMENT_2" not in prompt
    assert host.general_comments[0] == "@alice Addressed COMMENT_1."


def test_process_ticket_skips_deleted_fork(tmp_path: Path) -> None:
    host = FakeCodeHost(_details(comments=[_comment(11)], clone_url=""))
    workspace = FakeWorkspace()
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=host,
        workspace=workspace,
        generator=FakeGenerator(),
    )

    result = processor.process_ticket("PROJ-7")

    assert result.status == "deleted_fork"
    assert workspace.calls == []
    assert host.general_comments == []


def test_empty_generator_output_skips_only_that_group(tmp_path: Path) -> None:
    host = FakeCodeHost(
        _details(
            reviews=[_review(5)],
            comments=[
                _comment(21, body="Fix a", path="a.py", line=1),
                _comment(22, body="Fix b", path="b.py", line=2),
            ],
        )
    )
    workspace = FakeWorkspace()
    generator = FakeGenerator(empty_for={"a.py"})
    processor = _processor(
        tmp_path, tickets=FakeTickets(), host=host, workspace=workspace, generator=generator
    )

    result = processor.process_ticket("PROJ-7")

    assert len(generator.prompts) == 3
    assert result.skipped_groups == ("a.py",)
    assert workspace.commits[0][0] == "PROJ-7: Apply PR feedback fixes (skipped: a.py)"
    assert host.threaded_replies == [(22, "Addressed COMMENT_2.")]
    assert host.general_comments[0] == "@bob Addressed REVIEW_1."
    assert result.replies == ReplyTally(posted=2, failed=0, skipped=0)
    assert result.watermark_advanced


def test_bot_reply_to_own_comment_is_not_answered(tmp_path: Path) -> None:
    host = FakeCodeHost(
        _details(
            comments=[
                _comment(30, user=BOT, body="Fixed.", minutes=1, path="a.py", line=4),
                _comment(31, user="coderabbitai", body="Are you sure?", path="a.py", line=4, reply_to=30),
                _comment(32, body="One more thing", path="a.py", line=4, reply_to=30),
            ]
        )
    )
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=host,
        workspace=FakeWorkspace(),
        generator=FakeGenerator(),
    )

    result = processor.process_ticket("PROJ-7")

    assert result.replies == ReplyTally(posted=1, failed=0, skipped=1)
    assert host.threaded_replies == [(32, "Addressed COMMENT_2.")]


def test_reply_failure_is_counted_and_watermark_still_advances(tmp_path: Path) -> None:
    host = FakeCodeHost(
        _details(
            comments=[
                _comment(11, body="Cap retries", path="src/retry.py", line=2),
                _comment(12, body="Rename", path="src/retry.py", line=9),
            ]
        ),
        fail_reply_ids={11},
    )
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=host,
        workspace=FakeWorkspace(),
        generator=FakeGenerator(),
    )

    result = processor.process_ticket("PROJ-7")

    assert result.replies == ReplyTally(posted=1, failed=1, skipped=0)
    assert host.threaded_replies == [(12, "Addressed COMMENT_2.")]
    assert result.watermark_advanced
    assert host.general_comments[-1].startswith("AI Processing Timestamp: 2026-03-05T09:00:00Z")


def test_watermark_comment_is_redacted_for_secured_tickets(tmp_path: Path) -> None:
    host = FakeCodeHost(_details(comments=[_comment(11)]))
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(security=True),
        host=host,
        workspace=FakeWorkspace(),
        generator=FakeGenerator(),
    )

    processor.process_ticket("PROJ-7")

    assert host.general_comments[-1] == render_watermark_comment(
        ticket_key="PROJ-7", processed_at=NOW, redact=True
    )


def test_security_lookup_failure_falls_back_to_full_watermark(tmp_path: Path) -> None:
    host = FakeCodeHost(_details(comments=[_comment(11)]))
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(security_error=RuntimeError("jira down")),
        host=host,
        workspace=FakeWorkspace(),
        generator=FakeGenerator(),
    )

    result = processor.process_ticket("PROJ-7")

    assert result.watermark_advanced
    assert host.general_comments[-1] == render_watermark_comment(
        ticket_key="PROJ-7", processed_at=NOW, redact=False
    )


def test_watermark_lookup_failure_treats_everything_as_new(tmp_path: Path) -> None:
    host = FakeCodeHost(
        _details(comments=[_comment(11, body="Old request"), _marker(12, 20)]),
        comments_error=RuntimeError("gh unavailable"),
    )
    generator = FakeGenerator()
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=host,
        workspace=FakeWorkspace(),
        generator=generator,
    )

    result = processor.process_ticket("PROJ-7")

    assert result.status == "completed"
    assert "**Comment by alice General comment:**\nOld request" in generator.prompts[0]
    assert "Previously addressed" not in generator.prompts[0]


def test_generator_failure_aborts_without_replies(tmp_path: Path) -> None:
    host = FakeCodeHost(_details(comments=[_comment(11)]))
    workspace = FakeWorkspace()
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=host,
        workspace=workspace,
        generator=FakeGenerator(error=CommandError("claude timed out")),
    )

    with pytest.raises(FeedbackCycleError, match="claude timed out") as exc_info:
        processor.process_ticket("PROJ-7")

    assert exc_info.value.ticket_key == "PROJ-7"
    assert exc_info.value.pr_number == 42
    assert exc_info.value.stage == "generate:general/reviews"
    assert [call[0] for call in workspace.calls] == ["clone", "switch", "pull"]
    assert host.general_comments == []
    assert workspace.repo_dir is not None and not workspace.repo_dir.exists()


def test_push_failure_aborts_before_replies(tmp_path: Path) -> None:
    host = FakeCodeHost(_details(comments=[_comment(11)]))
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=host,
        workspace=FakeWorkspace(fail_on="push"),
        generator=FakeGenerator(),
    )

    with pytest.raises(FeedbackCycleError) as exc_info:
        processor.process_ticket("PROJ-7")

    assert exc_info.value.stage == "push"
    assert isinstance(exc_info.value.__cause__, CommandError)
    assert host.general_comments == []
    assert host.threaded_replies == []


def test_non_text_generator_output_is_a_hard_failure(tmp_path: Path) -> None:
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(),
        host=FakeCodeHost(_details(comments=[_comment(11)])),
        workspace=FakeWorkspace(),
        generator=FakeGenerator(raw_output=b"COMMENT_1_RESPONSE: bytes"),
    )

    with pytest.raises(FeedbackCycleError) as exc_info:
        processor.process_ticket("PROJ-7")

    assert isinstance(exc_info.value.__cause__, TypeError)


def test_invalid_pull_request_url_is_a_hard_failure(tmp_path: Path) -> None:
    ticket = Ticket(key="PROJ-7", custom_fields={"customfield_pr": "https://example.com/pr/1"})
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(ticket),
        host=FakeCodeHost(_details()),
        workspace=FakeWorkspace(),
        generator=FakeGenerator(),
    )

    with pytest.raises(FeedbackCycleError) as exc_info:
        processor.process_ticket("PROJ-7")

    assert exc_info.value.stage == "resolve_pull_request"
    assert exc_info.value.pr_number is None
    assert isinstance(exc_info.value.__cause__, InvalidPullRequestUrl)


def test_ticket_fetch_failure_is_reported_with_context(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    processor = _processor(
        tmp_path,
        tickets=FakeTickets(fetch_error=RuntimeError("jira down")),
        host=FakeCodeHost(_details()),
        workspace=FakeWorkspace(),
        generator=FakeGenerator(),
    )

    with pytest.raises(FeedbackCycleError, match="failed during fetch_ticket"):
        processor.process_ticket("PROJ-7")

    stderr = capsys.readouterr().err
    assert "event=feedback_cycle_failed" in stderr
    assert "stage=fetch_ticket" in stderr
