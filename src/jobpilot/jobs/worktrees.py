"""Per-issue git worktrees.

Each (repository, issue) pair gets its own checkout under the configured
base directory so jobs on different issues of one repository can run side
by side. Jobs on the same issue share a checkout, and so a branch.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from jobpilot.errors import PersistenceError, WorktreeError
from jobpilot.models import WorkingCopy, as_utc, make_issue_key, repo_slug, utc_now

if TYPE_CHECKING:
    from jobpilot.store import JobStore

logger = structlog.get_logger()

BRANCH_PREFIX = "jobpilot/issue-"


def worktree_path(base_dir: Path, repo: str, issue_num: int) -> Path:
    return base_dir / f"{repo_slug(repo)}-issue-{issue_num}"


def branch_name(issue_num: int) -> str:
    return f"{BRANCH_PREFIX}{issue_num}"


async def run_git(*args: str, cwd: str | Path) -> tuple[int, str]:
    """Run git and return (exit code, combined output)."""
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise WorktreeError(f"Could not run git in {cwd}: {e}") from e
    output, _ = await process.communicate()
    return process.returncode, output.decode("utf-8", errors="replace").strip()


def _lock_for(locks: dict[str, asyncio.Lock], key: str) -> asyncio.Lock:
    lock = locks.get(key)
    if lock is None:
        lock = locks[key] = asyncio.Lock()
    return lock


class WorkingCopyAllocator:
    """Hands out one worktree per issue and remembers them in the store."""

    def __init__(self, store: JobStore, base_dir: Path, repo_map: dict[str, str] | None = None) -> None:
        self._store = store
        self._base_dir = Path(base_dir)
        self._repo_map = repo_map or {}
        self._index: dict[str, WorkingCopy] = {}
        # Per issue for the whole allocation; per primary checkout only around
        # the local worktree bookkeeping, never around a fetch
        self._issue_locks: dict[str, asyncio.Lock] = {}
        self._repo_locks: dict[str, asyncio.Lock] = {}

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    async def load_from_persistence(self) -> int:
        """Rebuild the index from stored records, dropping ones whose path is gone."""
        try:
            records = await self._store.get_all_worktrees()
        except PersistenceError:
            logger.exception("worktree.load_failed")
            return 0

        for record in records:
            if Path(record.path).exists():
                self._index[record.issue_key] = record
            else:
                await self._forget(record.issue_key)
                logger.info("worktree.stale_record_dropped", issue_key=record.issue_key)
        count = len(self._index)
        logger.info("worktree.loaded", count=count)
        return count

    async def get_or_create(self, repo: str, issue_num: int, main_repo_path: str) -> str:
        """Return the issue's worktree path, creating the worktree if needed.

        Raises:
            WorktreeError: git or the filesystem could not provide the worktree.
        """
        issue_key = make_issue_key(repo, issue_num)
        expected = worktree_path(self._base_dir, repo, issue_num)

        async with _lock_for(self._issue_locks, issue_key):
            try:
                return await self._get_or_create(issue_key, repo, issue_num, main_repo_path, expected)
            except OSError as e:
                raise WorktreeError(f"Cannot prepare worktree {expected}: {e}") from e

    async def _get_or_create(
        self, issue_key: str, repo: str, issue_num: int, main_repo_path: str, expected: Path
    ) -> str:
        existing = self._index.get(issue_key)
        if existing is not None:
            if Path(existing.path).exists():
                logger.info("worktree.reused", issue_key=issue_key, path=existing.path)
                return existing.path
            del self._index[issue_key]

        if expected.exists():
            if await self._is_valid_worktree(expected):
                logger.info("worktree.recovered", issue_key=issue_key, path=str(expected))
                await self._track(issue_key, expected, repo, issue_num)
                return str(expected)
            logger.info("worktree.invalid_dir_removed", path=str(expected))
            await self._remove_dir(main_repo_path, expected)

        await self._create(repo, issue_num, main_repo_path, expected)
        await self._track(issue_key, expected, repo, issue_num)
        logger.info("worktree.created", issue_key=issue_key, path=str(expected))
        return str(expected)

    async def remove(self, repo: str, issue_num: int, main_repo_path: str) -> None:
        """Remove the worktree, its branch and its record."""
        issue_key = make_issue_key(repo, issue_num)
        async with _lock_for(self._issue_locks, issue_key):
            record = self._index.pop(issue_key, None)
            if record is None:
                orphan = worktree_path(self._base_dir, repo, issue_num)
                if orphan.exists():
                    await self._remove_dir(main_repo_path, orphan)
                    logger.info("worktree.orphan_removed", path=str(orphan))
                return

            await self._remove_dir(main_repo_path, Path(record.path))
            await self._forget(issue_key)
            code, output = await run_git("branch", "-D", record.branch, cwd=main_repo_path)
            if code != 0:
                logger.debug("worktree.branch_delete_failed", branch=record.branch, output=output)
            logger.info("worktree.removed", issue_key=issue_key)

    async def cleanup_old(self, days: int = 7) -> int:
        """Remove tracked worktrees and untracked directories older than ``days``."""
        cutoff = utc_now().timestamp() - days * 86400
        removed = 0
        logger.info("worktree.cleanup_started", days=days)

        for record in list(self._index.values()):
            if as_utc(record.created_at).timestamp() >= cutoff:
                continue
            main_repo_path = self._repo_map.get(record.repo)
            if main_repo_path is None:
                continue
            await self.remove(record.repo, record.issue_num, main_repo_path)
            removed += 1

        if self._base_dir.is_dir():
            tracked = {record.path for record in self._index.values()}
            for entry in self._base_dir.iterdir():
                if not entry.is_dir() or str(entry) in tracked:
                    continue
                if entry.stat().st_mtime < cutoff:
                    shutil.rmtree(entry, ignore_errors=True)
                    removed += 1
                    logger.info("worktree.orphan_removed", path=str(entry))

        logger.info("worktree.cleanup_complete", removed=removed)
        return removed

    def get(self, repo: str, issue_num: int) -> WorkingCopy | None:
        return self._index.get(make_issue_key(repo, issue_num))

    def list_worktrees(self) -> list[WorkingCopy]:
        return list(self._index.values())

    # -- internals -----------------------------------------------------------

    async def _track(self, issue_key: str, path: Path, repo: str, issue_num: int) -> None:
        record = WorkingCopy(
            issue_key=issue_key,
            path=str(path),
            repo=repo,
            issue_num=issue_num,
            branch=branch_name(issue_num),
        )
        self._index[issue_key] = record
        try:
            await self._store.save_worktree(record)
        except PersistenceError:
            logger.warning("worktree.persist_failed", issue_key=issue_key)

    async def _forget(self, issue_key: str) -> None:
        try:
            await self._store.delete_worktree(issue_key)
        except PersistenceError:
            logger.warning("worktree.delete_record_failed", issue_key=issue_key)

    async def _is_valid_worktree(self, path: Path) -> bool:
        # A linked worktree has a .git file, not a directory
        if not (path / ".git").is_file():
            return False
        try:
            code, output = await run_git("rev-parse", "--is-inside-work-tree", cwd=path)
        except WorktreeError:
            return False
        return code == 0 and output == "true"

    async def _remove_dir(self, main_repo_path: str, path: Path) -> None:
        try:
            await run_git("worktree", "remove", str(path), "--force", cwd=main_repo_path)
        except WorktreeError:
            logger.debug("worktree.git_remove_failed", path=str(path))
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    async def _default_branch(self, main_repo_path: str) -> str:
        code, output = await run_git("symbolic-ref", "refs/remotes/origin/HEAD", "--short", cwd=main_repo_path)
        if code == 0 and output:
            return output.removeprefix("origin/")
        for candidate in ("origin/main", "main"):
            code, _ = await run_git("rev-parse", "--verify", "--quiet", candidate, cwd=main_repo_path)
            if code == 0:
                return "main"
        return "master"

    async def _create(self, repo: str, issue_num: int, main_repo_path: str, path: Path) -> None:
        if not Path(main_repo_path).is_dir():
            raise WorktreeError(f"Primary checkout {main_repo_path} does not exist")

        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorktreeError(f"Cannot create worktree directory {self._base_dir}: {e}") from e
        started = time.monotonic()

        code, output = await run_git("fetch", "origin", cwd=main_repo_path)
        if code != 0:
            logger.debug("worktree.fetch_failed", repo=repo, output=output)

        default = await self._default_branch(main_repo_path)
        code, _ = await run_git("rev-parse", "--verify", "--quiet", f"origin/{default}", cwd=main_repo_path)
        base_ref = f"origin/{default}" if code == 0 else default

        async with _lock_for(self._repo_locks, main_repo_path):
            await run_git("worktree", "prune", cwd=main_repo_path)
            code, output = await run_git(
                "worktree", "add", "-B", branch_name(issue_num), str(path), base_ref, cwd=main_repo_path
            )
        if code != 0:
            raise WorktreeError(f"Failed to create worktree: {output}")
        logger.debug(
            "worktree.git_add",
            repo=repo,
            issue_num=issue_num,
            base_ref=base_ref,
            seconds=round(time.monotonic() - started, 2),
        )
