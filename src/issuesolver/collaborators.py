from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from issuesolver.models import PullRequestDetails, ReviewComment, Ticket


class TicketStore(ABC):
    @abstractmethod
    def get_ticket(self, key: str) -> Ticket:
        """Fetch a ticket with its custom fields, assignee and comments."""

    @abstractmethod
    def has_security_level(self, key: str) -> bool:
        """Return True when the ticket carries a security level other than none."""

    @abstractmethod
    def list_in_review_ticket_keys(self) -> list[str]:
        """List keys of tickets whose pull request is awaiting review."""


class CodeHost(ABC):
    @abstractmethod
    def get_pull_request_details(self, owner: str, repo: str, number: int) -> PullRequestDetails:
        """Fetch PR metadata with its changed files, reviews and comments."""

    @abstractmethod
    def list_pull_request_comments(
        self, owner: str, repo: str, number: int
    ) -> list[ReviewComment]:
        """List both line-anchored review comments and conversation comments."""

    @abstractmethod
    def add_pull_request_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        """Post a general conversation comment on the PR."""

    @abstractmethod
    def reply_to_review_comment(
        self, owner: str, repo: str, number: int, parent_id: int, body: str
    ) -> None:
        """Post a threaded reply under a line-anchored review comment."""


class WorkingCopy(ABC):
    @abstractmethod
    def clone_repository(self, url: str, directory: Path) -> None:
        """Clone ``url`` into ``directory``."""

    @abstractmethod
    def switch_to_branch(self, directory: Path, branch: str) -> None:
        """Check out an existing remote branch."""

    @abstractmethod
    def pull_changes(self, directory: Path, branch: str) -> None:
        """Bring the local branch up to date with its remote."""

    @abstractmethod
    def commit_changes(
        self,
        directory: Path,
        message: str,
        co_author_name: str | None,
        co_author_email: str | None,
    ) -> bool:
        """Commit all changes; return False when there was nothing to commit."""

    @abstractmethod
    def push_changes(self, directory: Path, branch: str, fork_owner: str, repo: str) -> None:
        """Push the branch without rewriting remote history."""


class CodeGenerator(ABC):
    @abstractmethod
    def generate_code(self, prompt: str, repo_dir: Path) -> str:
        """Edit files under ``repo_dir`` according to ``prompt`` and return the final text output."""
