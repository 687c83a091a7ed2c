from __future__ import annotations

import base64
import json
import logging
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path

from agentbridge.core import git_worktree

logger = logging.getLogger(__name__)

ICON_FILENAMES = ("favicon.ico", "favicon.png", "icon.png", "logo.png", "logo.svg")
ICON_SEARCH_DEPTH = 5
MAX_ICON_SIZE = 2 * 1024 * 1024
_SKIP_DIRS = {"node_modules", ".git", "dist", "build", ".next", "coverage"}
_ICON_MIME = {
    ".png": "image/png",
    ".ico": "image/x-icon",
    ".svg": "image/svg+xml",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


class ProjectError(Exception):
    """Invalid project path, unknown project id or foreign worktree."""


class ProjectStore:
    """Whitelist of git repositories the client may work in (``projects.json``)."""

    def __init__(self, data_dir: Path) -> None:
        self._path = data_dir / "projects.json"
        self._projects: dict[str, dict] = {}
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to read projects.json: %s", e)
            return
        self._projects = data.get("projects", {}) if isinstance(data, dict) else {}
        logger.info("Loaded %d projects", len(self._projects))

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(
            {
                "projects": self._projects,
                "updatedAt": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
            ensure_ascii=False,
        ))
        tmp_path.chmod(0o600)
        tmp_path.rename(self._path)

    async def register(self, path: str, name: str | None = None) -> dict:
        """Register the repository containing *path*.

        The path is resolved to the git root. Registering the same root twice
        returns the existing entry. Raises ProjectError.
        """
        resolved = Path(path).expanduser().resolve()
        if not resolved.exists():
            raise ProjectError(f"Directory does not exist: {resolved}")
        if not resolved.is_dir():
            raise ProjectError(f"Not a directory: {resolved}")

        root = await git_worktree.toplevel(str(resolved))
        if root is None:
            raise ProjectError(f"Not a git repository: {resolved}")

        existing = self.find_by_path(root)
        if existing is not None:
            return existing

        project_id = secrets.token_hex(4)
        self._projects[project_id] = {
            "name": name or Path(root).name,
            "path": root,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        self._save()
        logger.info("Registered project %s: %s", project_id, root)
        return {"id": project_id, **self._projects[project_id]}

    def unregister(self, project_id: str) -> bool:
        project = self._projects.pop(project_id, None)
        if project is None:
            return False
        self._save()
        logger.info("Unregistered project %s: %s", project_id, project["path"])
        return True

    def get(self, project_id: str) -> dict | None:
        project = self._projects.get(project_id)
        return {"id": project_id, **project} if project else None

    def require(self, project_id: str) -> dict:
        project = self.get(project_id)
        if project is None:
            raise ProjectError("Project not found")
        return project

    def find_by_path(self, path: str) -> dict | None:
        for project_id, project in self._projects.items():
            if project["path"] == path:
                return {"id": project_id, **project}
        return None

    def list_all(self) -> list[dict]:
        return [{"id": pid, **p} for pid, p in self._projects.items()]

    def contains_path(self, path: str) -> bool:
        """True when *path* is a registered root or lies inside one."""
        for project in self._projects.values():
            root = project["path"].rstrip("/")
            if path == root or path.startswith(root + "/"):
                return True
        return False

    async def is_known_worktree(self, path: str) -> bool:
        if self.contains_path(path):
            return True
        for project in self._projects.values():
            worktrees = await git_worktree.list_worktrees(project["path"])
            if any(wt.path == path for wt in worktrees):
                return True
        return False

    async def resolve_cwd(self, project_id: str, worktree_path: str | None = None) -> str:
        """Validated working directory for an agent in this project."""
        project = self.require(project_id)
        if not worktree_path:
            return project["path"]
        worktrees = await git_worktree.list_worktrees(project["path"])
        if not any(wt.path == worktree_path for wt in worktrees):
            raise ProjectError("Invalid worktree path for this project")
        return worktree_path


def _icon_rank(path: Path, root: Path) -> tuple[int, int]:
    name = path.name.lower()
    priority = 0 if name.startswith("favicon") else 1 if name.startswith("icon") else 2
    return len(path.relative_to(root).parts), priority


def project_icon(project_path: str) -> str | None:
    """Find a favicon/icon/logo in the project and return it as a data URI."""
    root = Path(project_path)
    if not root.is_dir():
        return None

    matches: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        depth = len(Path(dirpath).relative_to(root).parts)
        if depth >= ICON_SEARCH_DEPTH - 1:
            dirnames[:] = []
        else:
            dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS]
        matches.extend(Path(dirpath) / f for f in filenames if f in ICON_FILENAMES)

    for icon in sorted(matches, key=lambda p: _icon_rank(p, root)):
        mime = _ICON_MIME.get(icon.suffix.lower())
        if mime is None:
            continue
        try:
            size = icon.stat().st_size
            if size == 0 or size > MAX_ICON_SIZE:
                continue
            data = icon.read_bytes()
        except OSError:
            continue
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
    return None
