from __future__ import annotations

from collections.abc import Iterable, Mapping
import logging

from issuesolver.models import ReviewComment
from issuesolver.observability import log_event


LOGGER = logging.getLogger("issuesolver.loop_guard")


class LoopGuard:
    """Decides whether replying to a comment could feed a bot-to-bot loop."""

    def __init__(
        self,
        *,
        bot_login: str,
        known_bot_logins: Iterable[str],
        max_thread_depth: int,
    ) -> None:
        if max_thread_depth < 1:
            raise ValueError("max_thread_depth must be >= 1")
        self.bot_login = bot_login
        self.known_bot_logins = frozenset(login.strip().lower() for login in known_bot_logins)
        self.max_thread_depth = max_thread_depth

    def is_known_bot(self, login: str) -> bool:
        return login.strip().lower() in self.known_bot_logins

    def thread_depth(self, comment_id: int, comment_by_id: Mapping[int, ReviewComment]) -> int:
        """Count comments by the processing identity on the chain ending at ``comment_id``."""
        depth = 0
        visited: set[int] = set()
        current_id = comment_id
        while current_id:
            if current_id in visited:
                log_event(
                    LOGGER,
                    "reply_chain_cycle_detected",
                    level=logging.WARNING,
                    comment_id=comment_id,
                    repeated_id=current_id,
                )
                break
            visited.add(current_id)
            comment = comment_by_id.get(current_id)
            if comment is None:
                break
            if comment.user_login == self.bot_login:
                depth += 1
            current_id = comment.parent_id
        return depth

    def skip_reason(
        self, comment: ReviewComment, comment_by_id: Mapping[int, ReviewComment]
    ) -> str | None:
        if self.is_known_bot(comment.user_login) and comment.parent_id:
            parent = comment_by_id.get(comment.parent_id)
            if parent is None:
                log_event(
                    LOGGER,
                    "bot_reply_parent_missing",
                    level=logging.WARNING,
                    comment_id=comment.comment_id,
                    parent_id=comment.parent_id,
                    user=comment.user_login,
                )
                return (
                    f"bot '{comment.user_login}' replying to missing parent "
                    f"{comment.parent_id} (defensive skip)"
                )
            if parent.user_login == self.bot_login:
                return f"bot '{comment.user_login}' is replying to our own comment"

        depth = self.thread_depth(comment.comment_id, comment_by_id)
        if depth >= self.max_thread_depth:
            return f"thread depth {depth} reaches max {self.max_thread_depth}"
        return None

    def should_skip(
        self, comment: ReviewComment, comment_by_id: Mapping[int, ReviewComment]
    ) -> bool:
        return self.skip_reason(comment, comment_by_id) is not None
