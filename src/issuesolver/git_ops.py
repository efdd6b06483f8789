from __future__ import annotations

from pathlib import Path
import logging

from issuesolver.collaborators import WorkingCopy
from issuesolver.observability import log_event
from issuesolver.shell import run


LOGGER = logging.getLogger("issuesolver.git_ops")


class GitWorkspace(WorkingCopy):
    def clone_repository(self, url: str, directory: Path) -> None:
        directory.parent.mkdir(parents=True, exist_ok=True)
        if (directory / ".git").exists():
            log_event(LOGGER, "git_checkout_refreshed", checkout_path=str(directory))
            run(["git", "-C", str(directory), "fetch", "origin", "--prune"])
            run(["git", "-C", str(directory), "reset", "--hard"])
            run(["git", "-C", str(directory), "clean", "-ffdx"])
            return
        log_event(LOGGER, "git_checkout_cloned", checkout_path=str(directory))
        run(["git", "clone", url, str(directory)])

    def switch_to_branch(self, directory: Path, branch: str) -> None:
        log_event(
            LOGGER,
            "git_branch_switched",
            checkout_path=str(directory),
            branch=branch,
        )
        run(["git", "-C", str(directory), "fetch", "origin", "--prune"])
        run(["git", "-C", str(directory), "checkout", branch])

    def pull_changes(self, directory: Path, branch: str) -> None:
        log_event(
            LOGGER,
            "git_pull",
            checkout_path=str(directory),
            branch=branch,
        )
        run(["git", "-C", str(directory), "pull", "--ff-only", "origin", branch])

    def commit_changes(
        self,
        directory: Path,
        message: str,
        co_author_name: str | None,
        co_author_email: str | None,
    ) -> bool:
        run(["git", "-C", str(directory), "add", "-A"])
        status = run(["git", "-C", str(directory), "status", "--porcelain"]).strip()
        if not status:
            log_event(LOGGER, "git_commit_skipped", checkout_path=str(directory), reason="no_changes")
            return False

        full_message = message
        if co_author_name and co_author_email:
            full_message = f"{message}\n\nCo-authored-by: {co_author_name} <{co_author_email}>"
        log_event(
            LOGGER,
            "git_commit",
            checkout_path=str(directory),
            has_co_author=full_message != message,
        )
        run(["git", "-C", str(directory), "commit", "-m", full_message])
        return True

    def push_changes(self, directory: Path, branch: str, fork_owner: str, repo: str) -> None:
        log_event(
            LOGGER,
            "git_push",
            checkout_path=str(directory),
            branch=branch,
            fork=f"{fork_owner}/{repo}",
        )
        try:
            run(["git", "-C", str(directory), "push", "origin", f"HEAD:{branch}"])
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_push_failed",
                checkout_path=str(directory),
                branch=branch,
                fork=f"{fork_owner}/{repo}",
                error_type=type(exc).__name__,
            )
            raise
