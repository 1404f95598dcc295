"""Storage path resolver for Amphibian.

Implements environment-aware path resolution with XDG Base Directory compliance.
Supports local development, containerized deployment, and testing environments.

Layout under the resolved root::

    memory/graph.json
    memory/cooccurrence_provenance.json
    identity/identity.json
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS: Final = sys.platform == "win32"
IS_MACOS: Final = sys.platform == "darwin"

GRAPH_FILE: Final = Path("memory") / "graph.json"
PROVENANCE_FILE: Final = Path("memory") / "cooccurrence_provenance.json"
IDENTITY_FILE: Final = Path("identity") / "identity.json"


class StoragePathResolver:
    """Resolves persistence paths based on deployment environment."""

    def __init__(
        self,
        env: str | None = None,
        project_dir: Path | None = None,
        root: Path | None = None,
    ) -> None:
        """Initialize path resolver.

        Args:
            env: Force specific environment ('local', 'container', 'development', 'test')
            project_dir: Current project directory (defaults to cwd)
            root: Explicit persistence root; skips environment detection
        """
        self.env = env or self._detect_environment()
        self.project_dir = project_dir or Path.cwd()
        self.base_path = Path(root) if root is not None else self._resolve_base_path()

    def _detect_environment(self) -> str:
        """Auto-detect deployment environment.

        Returns:
            Environment type: 'container', 'local', 'development', or 'test'
        """
        if env_var := os.getenv("AMPHIBIAN_ENV"):
            return env_var

        if self._is_container():
            return "container"

        if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
            return "test"

        return "local"

    def _is_container(self) -> bool:
        """Check if running in a container.

        Returns:
            True if running in Docker/Podman/Kubernetes
        """
        if Path("/.dockerenv").exists():
            return True

        cgroup_path = Path("/proc/1/cgroup")
        if cgroup_path.exists():
            try:
                cgroup = cgroup_path.read_text()
            except OSError:
                return False
            if "/docker/" in cgroup or "/kubepods/" in cgroup:
                return True

        return False

    def _resolve_base_path(self) -> Path:
        """Resolve base storage path by environment.

        Returns:
            Base path for Amphibian data storage
        """
        if override := os.getenv("AMPHIBIAN_DATA_PATH"):
            return Path(override)

        if self.env == "container":
            return Path("/data/amphibian")

        if self.env == "local":
            return self._get_xdg_data_path()

        if self.env == "development":
            return self.project_dir / ".amphibian" / "data"

        if self.env == "test":
            return Path(tempfile.gettempdir()) / "amphibian" / "test"

        logger.warning(f"Unknown environment '{self.env}', using local development paths")
        return self._get_xdg_data_path()

    def _get_xdg_data_path(self) -> Path:
        """Get XDG data directory path.

        Returns:
            Path to XDG data directory for Amphibian
        """
        if IS_WINDOWS:
            local_app_data = os.getenv("LOCALAPPDATA")
            if local_app_data:
                return Path(local_app_data) / "amphibian"
            return Path.home() / ".amphibian" / "data"

        xdg_data = os.getenv("XDG_DATA_HOME")
        if xdg_data:
            return Path(xdg_data) / "amphibian"

        if IS_MACOS:
            return Path.home() / "Library" / "Application Support" / "amphibian"

        return Path.home() / ".local" / "share" / "amphibian"

    def get_graph_path(self) -> Path:
        """Get memory graph file path."""
        return self.base_path / GRAPH_FILE

    def get_provenance_path(self) -> Path:
        """Get co-occurrence provenance file path."""
        return self.base_path / PROVENANCE_FILE

    def get_identity_path(self) -> Path:
        """Get local identity file path."""
        return self.base_path / IDENTITY_FILE

    def ensure_directories(self) -> None:
        """Create all persistence directories if they don't exist."""
        for path in (self.get_graph_path(), self.get_identity_path()):
            path.parent.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Ensured directories exist: {self.base_path}")
