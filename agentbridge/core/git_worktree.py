"""Thin async wrapper over the git CLI: branch, status, diff, log, worktrees.

Everything here is best-effort. Callers treat a missing branch or an empty
status list as a normal, displayable state.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

BRANCH_NAME_RE = re.compile(r"^[a-zA-Z0-9_\-./]+$")
_LOG_SEP = "\x00"


class GitError(Exception):
    """A git command that must succeed (worktree add/remove) failed."""


async def _run_git(
    args: list[str], cwd: str, timeout: float = 10.0,
) -> tuple[int, str, str]:
    """Run a git command. Returns (returncode, stdout, stderr).

    Timeouts and a missing git binary are reported as return code -1.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return -1, "", str(e)
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return -1, "", f"git {args[0]} timed out"
    # Only trailing newlines go: porcelain output starts with significant spaces
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace").rstrip("\n"),
        stderr.decode("utf-8", errors="replace").strip(),
    )


@dataclass
class BranchInfo:
    branch: str = ""
    ahead: int = 0
    behind: int = 0


@dataclass
class FileStatus:
    status: str  # U untracked, A added, M modified, D deleted, R renamed, C conflict
    file: str


@dataclass
class Commit:
    hash: str
    abbrev_hash: str
    parents: list[str]
    subject: str
    author: str
    relative_time: str
    refs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "abbrevHash": self.abbrev_hash,
            "parents": self.parents,
            "subject": self.subject,
            "author": self.author,
            "relativeTime": self.relative_time,
            "refs": self.refs,
        }


@dataclass
class Worktree:
    path: str
    branch: str
    is_main: bool
    status: str  # main | active | merged

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "branch": self.branch,
            "isMain": self.is_main,
            "status": self.status,
        }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def is_git_repo(path: str) -> bool:
    """Return True if path is inside a git repository."""
    code, _, _ = await _run_git(["rev-parse", "--git-dir"], cwd=path)
    return code == 0


async def toplevel(path: str) -> str | None:
    """Root directory of the repository containing *path*."""
    code, stdout, _ = await _run_git(["rev-parse", "--show-toplevel"], cwd=path)
    return stdout.strip() if code == 0 and stdout.strip() else None


async def current_branch(cwd: str | None) -> str | None:
    if not cwd or not Path(cwd).is_dir():
        return None
    code, stdout, _ = await _run_git(
        ["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd, timeout=3.0,
    )
    branch = stdout.strip()
    return branch if code == 0 and branch else None


async def branch_info(cwd: str) -> BranchInfo:
    info = BranchInfo()
    branch = await current_branch(cwd)
    if not branch:
        return info
    info.branch = branch

    code, stdout, _ = await _run_git(
        ["rev-list", "--left-right", "--count", f"{branch}...@{{upstream}}"],
        cwd=cwd, timeout=5.0,
    )
    if code == 0:
        info.ahead, info.behind = _parse_counts(stdout)
    # No upstream configured is fine: counts stay 0
    return info


def _parse_counts(output: str) -> tuple[int, int]:
    parts = output.split()
    try:
        return int(parts[0]), int(parts[1])
    except (IndexError, ValueError):
        return 0, 0


def classify_porcelain(xy: str) -> str:
    """Collapse a two-column porcelain code into one semantic letter.

    X is the index column, Y the worktree column. Untracked is ``U``,
    anything unmerged is ``C``, otherwise the worktree column wins when set.
    """
    xy = xy.ljust(2)
    x, y = xy[0], xy[1]
    if x == "?" and y == "?":
        return "U"
    if x == "U" or y == "U" or (x == "D" and y == "D") or (x == "A" and y == "A"):
        return "C"
    if y != " ":
        return y
    return x


def parse_status(output: str) -> list[FileStatus]:
    files: list[FileStatus] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(FileStatus(status=classify_porcelain(line[:2]), file=path))
    return files


async def status(cwd: str) -> list[FileStatus]:
    code, stdout, stderr = await _run_git(["status", "--porcelain=v1"], cwd=cwd)
    if code != 0:
        logger.debug("git status failed in %s: %s", cwd, stderr)
        return []
    return parse_status(stdout)


async def diff(cwd: str, file_path: str | None = None) -> str:
    args = ["diff", "HEAD"]
    if file_path:
        args.extend(["--", file_path])
    code, stdout, stderr = await _run_git(args, cwd=cwd, timeout=15.0)
    if code != 0:
        logger.debug("git diff failed in %s: %s", cwd, stderr)
        return ""
    return stdout


def parse_log(output: str) -> list[Commit]:
    commits: list[Commit] = []
    for line in output.splitlines():
        if not line:
            continue
        parts = line.split(_LOG_SEP)
        if len(parts) < 7:
            parts.extend([""] * (7 - len(parts)))
        full, short, parents, subject, author, rel, refs = parts[:7]
        commits.append(Commit(
            hash=full,
            abbrev_hash=short,
            parents=[p for p in parents.split(" ") if p],
            subject=subject,
            author=author,
            relative_time=rel,
            refs=[r for r in refs.split(", ") if r],
        ))
    return commits


async def log(cwd: str, max_count: int = 100) -> list[Commit]:
    # git expands %x00 itself; argv cannot carry a NUL byte
    fmt = "%x00".join(["%H", "%h", "%P", "%s", "%an", "%ar", "%D"])
    code, stdout, stderr = await _run_git(
        ["log", "--all", f"--max-count={max_count}", f"--format={fmt}"],
        cwd=cwd, timeout=15.0,
    )
    if code != 0:
        logger.debug("git log failed in %s: %s", cwd, stderr)
        return []
    return parse_log(stdout)


# ---------------------------------------------------------------------------
# Worktrees
# ---------------------------------------------------------------------------

def parse_worktree_list(output: str) -> list[dict]:
    """Parse ``git worktree list --porcelain`` into dicts (path, branch, bare)."""
    worktrees: list[dict] = []
    current: dict = {}
    for line in output.splitlines():
        if line.startswith("worktree "):
            if current.get("path"):
                worktrees.append(current)
            current = {"path": line[len("worktree "):]}
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current["bare"] = True
        elif line == "detached":
            current["branch"] = "(detached)"
        elif line == "" and current:
            if current.get("path"):
                worktrees.append(current)
            current = {}
    if current.get("path"):
        worktrees.append(current)
    return worktrees


async def _merged_branches(project_path: str, main_branch: str) -> tuple[set[str], str | None]:
    code, main_ref, _ = await _run_git(["rev-parse", main_branch], cwd=project_path)
    if code != 0:
        return set(), None
    code, stdout, _ = await _run_git(["branch", "--merged", main_branch], cwd=project_path)
    if code != 0:
        return set(), main_ref.strip()
    merged = set()
    for line in stdout.splitlines():
        name = line.lstrip("*+ ").strip()
        if name and name != main_branch:
            merged.add(name)
    return merged, main_ref.strip()


async def list_worktrees(project_path: str) -> list[Worktree]:
    code, stdout, stderr = await _run_git(
        ["worktree", "list", "--porcelain"], cwd=project_path,
    )
    if code != 0:
        logger.warning("git worktree list failed for %s: %s", project_path, stderr)
        return []

    entries = [wt for wt in parse_worktree_list(stdout) if not wt.get("bare")]
    main_branch = next(
        (wt.get("branch") for wt in entries if wt["path"] == project_path), None,
    )
    merged: set[str] = set()
    main_ref = None
    if main_branch:
        merged, main_ref = await _merged_branches(project_path, main_branch)

    result: list[Worktree] = []
    for wt in entries:
        branch = wt.get("branch") or "(unknown)"
        is_main = wt["path"] == project_path
        state = "main" if is_main else "active"
        if not is_main and branch in merged:
            # A fresh branch still sitting on main's tip is not "merged"
            code, ref, _ = await _run_git(["rev-parse", branch], cwd=project_path)
            state = "merged" if code != 0 or ref.strip() != main_ref else "active"
        result.append(Worktree(path=wt["path"], branch=branch, is_main=is_main, status=state))
    return result


def worktree_dir_for(project_path: str, project_name: str, branch_name: str) -> Path:
    """Sibling directory ``<project>--<branch>`` with slashes flattened."""
    sanitized = branch_name.replace("/", "--")
    return Path(project_path).parent / f"{project_name}--{sanitized}"


async def create_worktree(
    project_path: str, project_name: str, branch_name: str,
) -> dict:
    """Create a worktree for *branch_name*, creating the branch if needed.

    Raises GitError on invalid input or git failure.
    """
    if not BRANCH_NAME_RE.match(branch_name):
        raise GitError(
            "Invalid branch name. Use alphanumeric characters, hyphens, "
            "underscores, dots, and slashes only."
        )
    worktree_path = worktree_dir_for(project_path, project_name, branch_name)
    if worktree_path.exists():
        raise GitError(f"Worktree directory already exists: {worktree_path}")

    code, _, _ = await _run_git(["rev-parse", "--verify", branch_name], cwd=project_path)
    if code == 0:
        args = ["worktree", "add", str(worktree_path), branch_name]
    else:
        args = ["worktree", "add", "-b", branch_name, str(worktree_path)]

    code, _, stderr = await _run_git(args, cwd=project_path, timeout=30.0)
    if code != 0:
        raise GitError(f"git worktree add failed (exit {code}): {stderr}")
    logger.info("Created worktree: %s (branch=%s)", worktree_path, branch_name)
    return {"path": str(worktree_path), "branch": branch_name}


async def remove_worktree(project_path: str, worktree_path: str) -> None:
    """Remove a non-main worktree of the project. Raises GitError."""
    worktrees = await list_worktrees(project_path)
    match = next((wt for wt in worktrees if wt.path == worktree_path), None)
    if match is None:
        raise GitError("Worktree not found for this project")
    if match.is_main:
        raise GitError("Cannot remove the main worktree")

    code, _, stderr = await _run_git(
        ["worktree", "remove", worktree_path, "--force"],
        cwd=project_path, timeout=15.0,
    )
    if code != 0:
        raise GitError(f"git worktree remove failed for {worktree_path}: {stderr}")
    logger.info("Removed worktree: %s", worktree_path)


def file_status_dicts(files: list[FileStatus]) -> list[dict]:
    return [asdict(f) for f in files]
