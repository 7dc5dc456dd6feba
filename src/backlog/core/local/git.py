"""
Git transport for the local backend.

When git sync is enabled the backlog directory is expected to live inside
a git repository. Every mutation is committed with a short message
(``move: 001``, ``claim: 001 [agent:agent-a]``) and, for operations that
coordinate with other agents, pulled before and pushed after.

A repository without a configured remote is treated as a single-machine
setup: pull and push are no-ops.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from backlog.core.tasks.errors import GitError, SyncConflictError

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 60

# Markers in git output; git has no structured error reporting for these
_CONFLICT_MARKERS = ("CONFLICT", "conflict")
_UP_TO_DATE_MARKERS = ("Already up to date", "Already up-to-date")
_NO_TRACKING_MARKERS = ("no tracking information",)
_REJECTED_MARKERS = ("rejected", "non-fast-forward")
_NOTHING_TO_PUSH_MARKERS = ("Everything up-to-date", "nothing to commit")


@dataclass
class GitOutput:
    """Exit status and combined stdout/stderr of a git command."""

    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def contains(self, markers: tuple[str, ...]) -> bool:
        return any(marker in self.output for marker in markers)


class GitTransport:
    """
    Commits, pulls and pushes the backlog directory.

    Commands run in the parent of the backlog root, so the backlog can
    sit anywhere inside the repository's working tree.

    Example:
        >>> git = GitTransport(Path("/work/project/.backlog"), agent_id="agent-a")
        >>> git.commit("move", "001")
        >>> git.push()
    """

    def __init__(self, root: Path, agent_id: str = ""):
        self.root = root
        self.repo_dir = root.parent
        self.agent_id = agent_id

    def _run_git(self, args: list[str], *, check: bool = True) -> str:
        """
        Run a git command and return its output (stripped).

        Raises:
            GitError: If the command fails and check=True.
        """
        result = self._run_git_output(args)
        if check and not result.ok:
            raise self._fail(args, result)
        return result.output.strip()

    def _run_git_output(self, args: list[str]) -> GitOutput:
        """Run a git command and capture its combined output without checking."""
        cmd = ["git"] + args

        logger.debug("Running git command: %s", " ".join(cmd))

        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_dir,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError(f"Git command timed out: {' '.join(cmd)}", command=cmd) from e
        except FileNotFoundError as e:
            raise GitError("git not found in PATH", command=cmd) from e

        output = (result.stdout or "") + (result.stderr or "")
        return GitOutput(returncode=result.returncode, output=output)

    def _fail(self, args: list[str], result: GitOutput) -> GitError:
        cmd = ["git"] + args
        return GitError(
            f"Git command failed: {' '.join(cmd)}",
            command=cmd,
            stderr=result.output.strip(),
        )

    def is_repo(self) -> bool:
        """True if the backlog root is inside a git working tree."""
        return self._run_git_output(["rev-parse", "--git-dir"]).ok

    def has_remote(self) -> bool:
        """True if at least one remote is configured."""
        result = self._run_git_output(["remote"])
        return result.ok and bool(result.output.strip())

    @staticmethod
    def commit_message(action: str, task_id: str, agent_id: str = "") -> str:
        """
        Build a commit message.

        Example:
            >>> GitTransport.commit_message("claim", "001", "agent-a")
            'claim: 001 [agent:agent-a]'
        """
        if action in ("claim", "release"):
            return f"{action}: {task_id} [agent:{agent_id}]"
        return f"{action}: {task_id}"

    def commit(self, action: str, task_id: str, agent_id: str | None = None) -> None:
        """
        Stage the backlog directory and commit it.

        An empty commit ("nothing to commit") is not an error.

        Raises:
            GitError: If staging or committing fails
        """
        message = self.commit_message(action, task_id, agent_id or self.agent_id)

        self._run_git(["add", "--all", str(self.root)])

        args = ["commit", "-m", message]
        result = self._run_git_output(args)
        if not result.ok:
            if "nothing to commit" in result.output:
                logger.debug("Nothing to commit for %s", message)
                return
            raise self._fail(args, result)

        logger.debug("Committed: %s", message)

    def pull(self, *, rebase: bool = True) -> bool:
        """
        Pull from the remote.

        Returns:
            True if anything was pulled

        Raises:
            SyncConflictError: If the pull hits a merge conflict (an
                in-progress rebase is aborted first)
            GitError: For any other failure
        """
        if not self.has_remote():
            logger.debug("No remote configured, skipping pull")
            return False

        before = self.head()
        args = ["-c", f"pull.rebase={'true' if rebase else 'false'}", "pull"]
        result = self._run_git_output(args)
        if not result.ok:
            if result.contains(_CONFLICT_MARKERS):
                # Leave the working tree as it was before the pull
                self._run_git_output(["rebase", "--abort"] if rebase else ["merge", "--abort"])
                raise SyncConflictError("pull", result.output.strip())
            if result.contains(_NO_TRACKING_MARKERS):
                return False
            if not result.contains(_UP_TO_DATE_MARKERS):
                raise self._fail(args, result)
            return False

        return self.head() != before

    def head(self) -> str:
        """Current HEAD commit, or an empty string before the first commit."""
        result = self._run_git_output(["rev-parse", "--verify", "--quiet", "HEAD"])
        return result.output.strip() if result.ok else ""

    def push(self, *, force: bool = False) -> bool:
        """
        Push to the remote.

        Returns:
            True if anything was pushed

        Raises:
            SyncConflictError: If the remote rejected the push
            GitError: For any other failure
        """
        if not self.has_remote():
            logger.debug("No remote configured, skipping push")
            return False

        args = ["push", "--force"] if force else ["push"]
        result = self._run_git_output(args)
        if not result.ok:
            if result.contains(_REJECTED_MARKERS):
                raise SyncConflictError(
                    "push",
                    "push rejected - remote has changes. Pull first or force the sync",
                )
            if not result.contains(_NOTHING_TO_PUSH_MARKERS):
                raise self._fail(args, result)

        return not result.contains(_NOTHING_TO_PUSH_MARKERS)

    def is_remote_ahead(self) -> bool:
        """
        True if the upstream branch has commits the local branch lacks.

        A failed fetch or a missing upstream counts as "not ahead".
        """
        if not self.has_remote():
            return False
        if not self._run_git_output(["fetch"]).ok:
            logger.warning("git fetch failed, assuming remote is not ahead")
            return False
        result = self._run_git_output(["rev-list", "--count", "HEAD..@{upstream}"])
        if not result.ok:
            return False
        behind = result.output.strip()
        return behind not in ("", "0")

    def has_uncommitted_changes(self) -> bool:
        """
        True if the working tree has staged or unstaged changes.

        Outside a git repository there is nothing to commit.
        """
        if not self.is_repo():
            return False
        return bool(self._run_git(["status", "--porcelain"]))

    def sync(self, *, force: bool = False) -> tuple[bool, bool]:
        """
        Pull then push.

        Args:
            force: Force the push. The pull always rebases, so local
                commits are replayed on top of the remote's

        Returns:
            (pulled, pushed)
        """
        pulled = self.pull()
        pushed = self.push(force=force)
        logger.info("Synced backlog (pulled=%s, pushed=%s)", pulled, pushed)
        return pulled, pushed
