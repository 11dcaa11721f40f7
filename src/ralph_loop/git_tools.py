"""Git helpers and the snapshot collaborator used for loop checkpoints."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable

from ralph_loop.errors import GitError
from ralph_loop.schemas import Phase

logger = logging.getLogger(__name__)

CHECKPOINT_MARKER = "ralph:"
"""Reserved subject prefix on every loop-authored commit."""

DEFAULT_IGNORED_PATHS: tuple[str, ...] = (".ralph",)

REVIEW_BASE_REF = "refs/ralph/review-base"
"""Private ref holding the commit a task's work started from."""


def _git_subprocess_isolation_kwargs() -> dict[str, object]:
    """Return kwargs that prevent child console events from reaching the parent on Windows."""
    if os.name != "nt":
        return {}
    new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
    flags = new_pg | no_win
    return {"creationflags": flags} if flags else {}


def _run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: int = 60,
) -> subprocess.CompletedProcess[str]:
    """Run a git command and return the CompletedProcess."""
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            **_git_subprocess_isolation_kwargs(),
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(f"`git {' '.join(args)}` could not run: {exc}") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"`git {' '.join(args)}` failed (rc={result.returncode}): {result.stderr.strip()}"
        )
    return result


def _pathspec(ignored: Sequence[str]) -> list[str]:
    """Return a pathspec selecting the whole tree minus *ignored* paths."""
    if not ignored:
        return []
    return ["--", ".", *(f":(exclude){path}" for path in ignored)]


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------


def repo_root(path: str | Path) -> Path:
    """Return the top-level directory of the repository containing *path*."""
    out = _run_git("rev-parse", "--show-toplevel", cwd=Path(path)).stdout.strip()
    return Path(out)


def status_porcelain(repo: str | Path, ignored: Sequence[str] = ()) -> str:
    """Return ``git status --porcelain`` output, excluding *ignored* paths."""
    args = ["status", "--porcelain", *_pathspec(ignored)]
    return _run_git(*args, cwd=Path(repo)).stdout.strip()


def is_clean(repo: str | Path, ignored: Sequence[str] = ()) -> bool:
    """Return True when the working tree has no pending changes."""
    return status_porcelain(repo, ignored) == ""


def current_branch(repo: str | Path) -> str:
    """Return the current branch name, or ``"HEAD"`` when detached.

    Works on unborn branches, which have a name but no commit yet.
    """
    result = _run_git("symbolic-ref", "--short", "-q", "HEAD", cwd=Path(repo), check=False)
    return result.stdout.strip() if result.returncode == 0 else "HEAD"


def head_sha(repo: str | Path) -> str:
    """Return the short SHA of HEAD."""
    return _run_git("rev-parse", "--short", "HEAD", cwd=Path(repo)).stdout.strip()


def ref_exists(repo: str | Path, ref: str) -> bool:
    """Return True when *ref* resolves to a commit."""
    result = _run_git(
        "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", cwd=Path(repo), check=False
    )
    return result.returncode == 0


def diff(repo: str | Path, reference: str = "HEAD", ignored: Sequence[str] = ()) -> str:
    """Return ``git diff <reference>`` covering the working tree."""
    args = ["diff", reference, *_pathspec(ignored)]
    return _run_git(*args, cwd=Path(repo)).stdout


def recent_commits(repo: str | Path, count: int = 10) -> str:
    """Return ``<short-sha> <subject>`` lines for the latest *count* commits."""
    if not ref_exists(repo, "HEAD"):
        return ""
    out = _run_git("log", f"-{max(1, count)}", "--format=%h %s", cwd=Path(repo)).stdout
    return out.strip()


def find_last_checkpoint(repo: str | Path, marker: str = CHECKPOINT_MARKER) -> str | None:
    """Return the SHA of the newest commit whose subject starts with *marker*."""
    if not ref_exists(repo, "HEAD"):
        return None
    # --grep matches anywhere in the message, so confirm the subject prefix.
    out = _run_git(
        "log",
        "--fixed-strings",
        f"--grep={marker}",
        "--format=%H%x00%s",
        cwd=Path(repo),
    ).stdout
    for line in out.splitlines():
        sha, _, subject = line.partition("\x00")
        if subject.startswith(marker):
            return sha
    return None


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def ensure_git_identity(repo: str | Path) -> None:
    """Ensure the repo has a git identity configured for commits.

    Checks ``user.name`` and ``user.email``.  If either is missing, sets a
    repo-local default so ``git commit`` won't fail.
    """
    cwd = Path(repo)
    for key, fallback in [
        ("user.name", "ralph-loop"),
        ("user.email", "ralph-loop@localhost"),
    ]:
        result = _run_git("config", key, cwd=cwd, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            _run_git("config", key, fallback, cwd=cwd)
            logger.info("Set %s = %s in %s", key, fallback, cwd)


def commit_all(repo: str | Path, message: str, ignored: Sequence[str] = ()) -> str:
    """Stage everything except *ignored* paths and commit.  Return the new SHA."""
    cwd = Path(repo)
    _run_git("add", "-A", *_pathspec(ignored), cwd=cwd)
    _run_git("commit", "-m", message, cwd=cwd)
    return head_sha(cwd)


def checkpoint_message(from_phase: Phase, to_phase: Phase, reason: str) -> str:
    """Build the commit message for one phase transition."""
    subject = f"{CHECKPOINT_MARKER} {from_phase.value} -> {to_phase.value}"
    body = (reason or "").strip()
    return f"{subject}\n\n{body}\n" if body else f"{subject}\n"


# ---------------------------------------------------------------------------
# Snapshot collaborator
# ---------------------------------------------------------------------------


@runtime_checkable
class Snapshot(Protocol):
    """Version-control operations the orchestrator depends on."""

    def has_uncommitted_changes(self) -> bool: ...

    def diff(self, reference: str | None = None) -> str: ...

    def commit(self, message: str) -> str | None: ...

    def find_last_checkpoint(self, marker: str = CHECKPOINT_MARKER) -> str | None: ...

    def mark_review_base(self) -> str | None: ...


@runtime_checkable
class RepoContext(Protocol):
    """Read-only repository views that phase runners put into instructions."""

    def diff(self, reference: str | None = None) -> str: ...

    def recent_commits(self, count: int = 10) -> str: ...


class GitSnapshot:
    """:class:`Snapshot` and :class:`RepoContext` backed by the git working tree.

    Paths in *ignored* (the loop's own ``.ralph`` runtime directory by
    default) are invisible to status checks and never staged.
    """

    def __init__(
        self,
        repo_path: str | Path,
        *,
        ignored: Sequence[str] = DEFAULT_IGNORED_PATHS,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.ignored = tuple(ignored)

    def has_uncommitted_changes(self) -> bool:
        return not is_clean(self.repo_path, self.ignored)

    def diff(self, reference: str | None = None) -> str:
        """Return the working-tree diff against *reference*.

        Without a reference, diff against the commit recorded by
        :meth:`mark_review_base`, so a review sees all work done since the
        plan was made even after it was checkpointed.  Without that mark,
        use the last checkpoint, then ``HEAD~1``, then ``HEAD``.  An unborn
        repository yields ``""``.
        """
        if reference is None and ref_exists(self.repo_path, REVIEW_BASE_REF):
            reference = REVIEW_BASE_REF
        if reference is None:
            reference = self.find_last_checkpoint()
        if reference is None:
            if ref_exists(self.repo_path, "HEAD~1"):
                reference = "HEAD~1"
            elif ref_exists(self.repo_path, "HEAD"):
                reference = "HEAD"
            else:
                return ""
        return diff(self.repo_path, reference, self.ignored)

    def commit(self, message: str) -> str:
        ensure_git_identity(self.repo_path)
        sha = commit_all(self.repo_path, message, self.ignored)
        logger.info("Committed checkpoint %s", sha)
        return sha

    def find_last_checkpoint(self, marker: str = CHECKPOINT_MARKER) -> str | None:
        return find_last_checkpoint(self.repo_path, marker)

    def mark_review_base(self) -> str | None:
        """Record HEAD as the baseline for later :meth:`diff` calls.

        Returns the recorded SHA, or ``None`` (clearing any old mark) when
        the repository has no commits yet.
        """
        if not ref_exists(self.repo_path, "HEAD"):
            _run_git("update-ref", "-d", REVIEW_BASE_REF, cwd=self.repo_path, check=False)
            return None
        sha = _run_git("rev-parse", "HEAD", cwd=self.repo_path).stdout.strip()
        _run_git("update-ref", REVIEW_BASE_REF, sha, cwd=self.repo_path)
        logger.debug("Review baseline set to %s", sha[:12])
        return sha

    def recent_commits(self, count: int = 10) -> str:
        return recent_commits(self.repo_path, count)

    def current_branch(self) -> str:
        return current_branch(self.repo_path)
