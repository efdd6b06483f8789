from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import shutil

from issuesolver.collaborators import CodeGenerator, CodeHost, TicketStore, WorkingCopy
from issuesolver.config import AppConfig
from issuesolver.feedback_loop import (
    GroupedFeedback,
    build_commit_message,
    collect_feedback,
    filter_new_comments,
    filter_new_reviews,
    latest_watermark,
    parse_pull_request_url,
    parse_responses,
    render_watermark_comment,
    resolve_pull_request_url,
    should_process,
    truncate_text,
)
from issuesolver.loop_guard import LoopGuard
from issuesolver.models import (
    ZERO_WATERMARK,
    FeedbackCycleResult,
    PullRequestDetails,
    PullRequestRef,
    ReplyTally,
    Ticket,
)
from issuesolver.observability import log_event, logging_ticket_context
from issuesolver.prompts import build_feedback_prompt


LOGGER = logging.getLogger("issuesolver.review_processor")
_PROMPT_PREVIEW_LEN = 500


class FeedbackCycleError(RuntimeError):
    """A feedback cycle aborted; the watermark was left untouched so the next poll retries."""

    def __init__(
        self, message: str, *, ticket_key: str, pr_number: int | None, stage: str
    ) -> None:
        super().__init__(message)
        self.ticket_key = ticket_key
        self.pr_number = pr_number
        self.stage = stage


@dataclass
class _CycleProgress:
    stage: str = "fetch_ticket"
    pr_number: int | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReviewFeedbackProcessor:
    def __init__(
        self,
        config: AppConfig,
        *,
        tickets: TicketStore,
        code_host: CodeHost,
        workspace: WorkingCopy,
        generator: CodeGenerator,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._config = config
        self._tickets = tickets
        self._code_host = code_host
        self._workspace = workspace
        self._generator = generator
        self._now = now
        self._bot_login = config.github.bot_login
        self._loop_guard = LoopGuard(
            bot_login=config.github.bot_login,
            known_bot_logins=config.github.known_bot_logins,
            max_thread_depth=config.github.max_thread_depth,
        )

    def process_ticket(self, ticket_key: str) -> FeedbackCycleResult:
        with logging_ticket_context(ticket_key):
            log_event(LOGGER, "feedback_cycle_started", ticket_key=ticket_key)
            progress = _CycleProgress()
            try:
                result = self._run_cycle(ticket_key, progress)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "feedback_cycle_failed",
                    level=logging.ERROR,
                    ticket_key=ticket_key,
                    pr_number=progress.pr_number,
                    stage=progress.stage,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise FeedbackCycleError(
                    f"Feedback cycle for {ticket_key} failed during {progress.stage}: {exc}",
                    ticket_key=ticket_key,
                    pr_number=progress.pr_number,
                    stage=progress.stage,
                ) from exc
            log_event(
                LOGGER,
                "feedback_cycle_completed",
                ticket_key=ticket_key,
                status=result.status,
                pr_number=result.pr_number,
                replies_posted=result.replies.posted,
                replies_failed=result.replies.failed,
                replies_skipped=result.replies.skipped,
                skipped_groups=list(result.skipped_groups),
                watermark_advanced=result.watermark_advanced,
            )
            return result

    def _run_cycle(self, ticket_key: str, progress: _CycleProgress) -> FeedbackCycleResult:
        ticket = self._tickets.get_ticket(ticket_key)

        progress.stage = "resolve_pull_request"
        pr_url = resolve_pull_request_url(
            ticket,
            pull_request_field=self._config.jira.pull_request_field,
            jira_username=self._config.jira.username,
        )
        if pr_url is None:
            log_event(LOGGER, "pull_request_not_linked", ticket_key=ticket_key)
            return FeedbackCycleResult(ticket_key=ticket_key, status="no_pull_request")
        ref = parse_pull_request_url(pr_url)
        progress.pr_number = ref.number
        log_event(
            LOGGER,
            "pull_request_resolved",
            repo_full_name=ref.full_name,
            pr_number=ref.number,
        )

        progress.stage = "fetch_pull_request"
        details = self._code_host.get_pull_request_details(ref.owner, ref.repo, ref.number)

        progress.stage = "detect_feedback"
        watermark = self._resolve_watermark(ref)
        new_reviews = filter_new_reviews(
            details.reviews, watermark=watermark, bot_login=self._bot_login
        )
        new_comments = filter_new_comments(
            details.comments, watermark=watermark, bot_login=self._bot_login
        )
        if not should_process(new_reviews, new_comments, bot_login=self._bot_login):
            log_event(
                LOGGER,
                "no_new_feedback",
                pr_number=ref.number,
                watermark=watermark.isoformat(),
            )
            return FeedbackCycleResult(
                ticket_key=ticket_key, status="no_new_feedback", pr_number=ref.number
            )

        grouped = collect_feedback(
            details.reviews,
            details.comments,
            watermark=watermark,
            bot_login=self._bot_login,
        )

        if not details.head_clone_url:
            log_event(
                LOGGER,
                "pull_request_fork_deleted",
                pr_number=ref.number,
                pr_url=pr_url,
            )
            return FeedbackCycleResult(
                ticket_key=ticket_key, status="deleted_fork", pr_number=ref.number
            )

        skipped_groups, responses = self._apply_feedback(
            ticket=ticket,
            ref=ref,
            details=details,
            grouped=grouped,
            progress=progress,
        )

        progress.stage = "dispatch_replies"
        replies = self._dispatch_replies(
            ref=ref, details=details, grouped=grouped, responses=responses
        )

        progress.stage = "advance_watermark"
        advanced = self._advance_watermark(ref=ref, ticket_key=ticket_key)
        return FeedbackCycleResult(
            ticket_key=ticket_key,
            status="completed",
            pr_number=ref.number,
            skipped_groups=tuple(sorted(skipped_groups)),
            replies=replies,
            watermark_advanced=advanced,
        )

    def _resolve_watermark(self, ref: PullRequestRef) -> datetime:
        try:
            comments = self._code_host.list_pull_request_comments(ref.owner, ref.repo, ref.number)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "watermark_lookup_failed",
                level=logging.WARNING,
                pr_number=ref.number,
                error_type=type(exc).__name__,
            )
            return ZERO_WATERMARK
        return latest_watermark(comments, bot_login=self._bot_login)

    def _apply_feedback(
        self,
        *,
        ticket: Ticket,
        ref: PullRequestRef,
        details: PullRequestDetails,
        grouped: GroupedFeedback,
        progress: _CycleProgress,
    ) -> tuple[list[str], dict[str, str]]:
        repo_dir = self._config.runtime.work_dir / f"{ticket.key}-feedback"
        skipped_groups: list[str] = []
        responses: dict[str, str] = {}
        try:
            progress.stage = "clone"
            self._workspace.clone_repository(details.head_clone_url, repo_dir)
            progress.stage = "switch_branch"
            self._workspace.switch_to_branch(repo_dir, details.head_ref)
            progress.stage = "pull"
            self._workspace.pull_changes(repo_dir, details.head_ref)

            groups = grouped.ordered_groups()
            for position, group in enumerate(groups, start=1):
                progress.stage = f"generate:{group.label}"
                log_event(
                    LOGGER,
                    "feedback_group_started",
                    group=group.label,
                    position=position,
                    total_groups=len(groups),
                    comments=len(group.comments),
                    reviews=len(group.reviews),
                )
                prompt = build_feedback_prompt(
                    pull_request=details, group=group, summary=grouped.summary
                )
                output = self._generator.generate_code(prompt, repo_dir)
                if not isinstance(output, str):
                    raise TypeError(
                        f"Generator output has unexpected type {type(output).__name__} "
                        f"for group {group.label!r}, expected str"
                    )
                if not output.strip():
                    log_event(
                        LOGGER,
                        "feedback_group_skipped",
                        level=logging.WARNING,
                        group=group.label,
                        reason="empty_output",
                        prompt_preview=truncate_text(prompt, _PROMPT_PREVIEW_LEN),
                    )
                    skipped_groups.append(group.label)
                    continue
                group_responses = parse_responses(output, group.expected_ids())
                responses.update(group_responses)
                log_event(
                    LOGGER,
                    "feedback_group_completed",
                    group=group.label,
                    responses_parsed=len(group_responses),
                )

            progress.stage = "commit"
            assignee = ticket.assignee
            self._workspace.commit_changes(
                repo_dir,
                build_commit_message(ticket_key=ticket.key, skipped_groups=skipped_groups),
                assignee.name if assignee else None,
                assignee.email if assignee else None,
            )
            progress.stage = "push"
            self._workspace.push_changes(repo_dir, details.head_ref, details.head_owner, ref.repo)
        finally:
            _remove_work_dir(repo_dir)
        return skipped_groups, responses

    def _dispatch_replies(
        self,
        *,
        ref: PullRequestRef,
        details: PullRequestDetails,
        grouped: GroupedFeedback,
        responses: dict[str, str],
    ) -> ReplyTally:
        comment_by_id = {comment.comment_id: comment for comment in details.comments}
        posted = failed = skipped = 0

        for synthetic_id, comment in grouped.all_comments().items():
            response = responses.get(synthetic_id)
            if response is None:
                log_event(
                    LOGGER,
                    "reply_missing_response",
                    level=logging.WARNING,
                    synthetic_id=synthetic_id,
                    user=comment.user_login,
                )
                continue
            reason = self._loop_guard.skip_reason(comment, comment_by_id)
            if reason is not None:
                skipped += 1
                log_event(
                    LOGGER,
                    "reply_skipped",
                    synthetic_id=synthetic_id,
                    user=comment.user_login,
                    reason=reason,
                )
                continue
            try:
                if comment.is_anchored:
                    self._code_host.reply_to_review_comment(
                        ref.owner, ref.repo, ref.number, comment.comment_id, response
                    )
                else:
                    self._code_host.add_pull_request_comment(
                        ref.owner, ref.repo, ref.number, f"@{comment.user_login} {response}"
                    )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                log_event(
                    LOGGER,
                    "reply_failed",
                    level=logging.ERROR,
                    synthetic_id=synthetic_id,
                    comment_id=comment.comment_id,
                    error_type=type(exc).__name__,
                )
                continue
            posted += 1
            log_event(
                LOGGER,
                "reply_posted",
                synthetic_id=synthetic_id,
                comment_id=comment.comment_id,
                threaded=comment.is_anchored,
            )

        for synthetic_id, review in grouped.all_reviews().items():
            response = responses.get(synthetic_id)
            if response is None:
                log_event(
                    LOGGER,
                    "reply_missing_response",
                    level=logging.WARNING,
                    synthetic_id=synthetic_id,
                    user=review.user_login,
                )
                continue
            try:
                self._code_host.add_pull_request_comment(
                    ref.owner, ref.repo, ref.number, f"@{review.user_login} {response}"
                )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                log_event(
                    LOGGER,
                    "reply_failed",
                    level=logging.ERROR,
                    synthetic_id=synthetic_id,
                    review_id=review.review_id,
                    error_type=type(exc).__name__,
                )
                continue
            posted += 1
            log_event(
                LOGGER,
                "reply_posted",
                synthetic_id=synthetic_id,
                review_id=review.review_id,
                threaded=False,
            )

        return ReplyTally(posted=posted, failed=failed, skipped=skipped)

    def _advance_watermark(self, *, ref: PullRequestRef, ticket_key: str) -> bool:
        try:
            redact = self._tickets.has_security_level(ticket_key)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "security_level_lookup_failed",
                level=logging.WARNING,
                error_type=type(exc).__name__,
            )
            redact = False

        body = render_watermark_comment(
            ticket_key=ticket_key, processed_at=self._now(), redact=redact
        )
        try:
            self._code_host.add_pull_request_comment(ref.owner, ref.repo, ref.number, body)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "watermark_advance_failed",
                level=logging.ERROR,
                pr_number=ref.number,
                error_type=type(exc).__name__,
            )
            return False
        log_event(LOGGER, "watermark_advanced", pr_number=ref.number, redacted=redact)
        return True


def _remove_work_dir(path: Path) -> None:
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        log_event(
            LOGGER,
            "work_dir_cleanup_failed",
            level=logging.WARNING,
            work_dir=str(path),
            error_type=type(exc).__name__,
        )
