"""
Pidfiles naming the llama-server processes started by this package.

A pidfile is named after its endpoint (``<exe>_<kind>_<id>.pid``) and lives in
the runtime directory, so a later run can find and stop servers that outlived
their parent.
"""
import os
from pathlib import Path
from typing import List, NamedTuple, Optional

import psutil

from llama_lifecycle.shared.errors import FileSystemError, LaunchFailed
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)

PIDFILE_SUFFIX = ".pid"


class PidFileEntry(NamedTuple):
    endpoint_id: str
    pid: Optional[int]
    path: Path


class PidFile:
    """Static helpers for pidfile creation, reading and discovery."""

    @staticmethod
    def path_for(runtime_dir: Path, pid_id: str) -> Path:
        return Path(runtime_dir) / f"{pid_id}{PIDFILE_SUFFIX}"

    @staticmethod
    def create(path: Path, pid: Optional[int] = None) -> Path:
        """
        Create a pidfile exclusively.

        Args:
            path: Pidfile location
            pid: Pid to write; None creates an empty placeholder to fill in after spawning

        Raises:
            LaunchFailed: If the pidfile already exists
            FileSystemError: If it cannot be written
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as e:
            raise LaunchFailed(f"Pidfile {path} already exists; another server may own this endpoint") from e
        except OSError as e:
            raise FileSystemError("create pidfile", path, e) from e
        with os.fdopen(fd, "w") as f:
            if pid is not None:
                f.write(f"{pid}\n")
        return path

    @staticmethod
    def write(path: Path, pid: int) -> None:
        try:
            Path(path).write_text(f"{pid}\n")
        except OSError as e:
            raise FileSystemError("write pidfile", path, e) from e

    @staticmethod
    def read(path: Path) -> Optional[int]:
        """Pid stored in path, None when the file is missing or malformed."""
        try:
            content = Path(path).read_text().strip()
        except OSError:
            return None
        return int(content) if content.isdigit() else None

    @staticmethod
    def remove(path: Optional[Path]) -> None:
        if path is None:
            return
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove pidfile {path}: {e}")

    @staticmethod
    def is_stale(path: Path) -> bool:
        """True when the pidfile names no live, non-zombie process."""
        pid = PidFile.read(path)
        if pid is None:
            return True
        try:
            return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return True
        except psutil.AccessDenied:
            return False

    @staticmethod
    def discover(runtime_dir: Path, executable_name: str) -> List[PidFileEntry]:
        """All '<executable_name>_*.pid' files in runtime_dir."""
        prefix = f"{executable_name}_"
        runtime_dir = Path(runtime_dir)
        if not runtime_dir.is_dir():
            return []
        entries = []
        for path in sorted(runtime_dir.glob(f"{prefix}*{PIDFILE_SUFFIX}")):
            endpoint_id = path.name[len(prefix):-len(PIDFILE_SUFFIX)]
            entries.append(PidFileEntry(endpoint_id, PidFile.read(path), path))
        return entries
