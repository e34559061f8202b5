"""Per-user project directories"""
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from threadwire.config import get_settings

from .base import ProjectResolver


logger = structlog.get_logger(__name__)

UNSAFE_USER_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class ProjectManager(ProjectResolver):
    """Sandboxes every user into ``<projects_dir>/<sanitized user id>``"""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or get_settings().projects_dir).resolve()
        if not self.base_dir.exists():
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Created projects base directory", base_dir=str(self.base_dir))

    def get_user_project_dir(self, user_id: str) -> str:
        # Sanitized to prevent path traversal through the user id
        user_dir = self.base_dir / UNSAFE_USER_CHARS.sub("_", user_id)
        if not user_dir.exists():
            user_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Created user project directory", user_id=user_id, user_dir=str(user_dir))
        return str(user_dir)

    def validate_project_path(self, requested_path: str, user_id: str) -> Optional[str]:
        """Resolve ``requested_path`` inside the user's directory.

        Relative paths are taken relative to the user's directory. The
        directory is created if needed.

        Returns:
            The resolved path, or None if it escapes the user's directory
        """
        user_dir = Path(self.get_user_project_dir(user_id))
        resolved = (user_dir / requested_path).resolve()

        if resolved == user_dir or user_dir in resolved.parents:
            resolved.mkdir(parents=True, exist_ok=True)
            return str(resolved)

        logger.warning("Attempted to access path outside user directory",
                       user_id=user_id,
                       requested_path=requested_path,
                       user_dir=str(user_dir))
        return None

    def list_user_projects(self, user_id: str) -> List[str]:
        user_dir = Path(self.get_user_project_dir(user_id))
        try:
            return sorted(str(entry) for entry in user_dir.iterdir() if entry.is_dir())
        except OSError:
            return []

    def get_project_info(self, project_path: str) -> Dict[str, Any]:
        path = Path(project_path)
        if not path.exists():
            return {"exists": False, "has_git": False, "file_count": 0}

        try:
            file_count = sum(1 for _ in path.iterdir())
        except OSError:
            file_count = 0

        return {
            "exists": True,
            "has_git": (path / ".git").exists(),
            "file_count": file_count,
        }
