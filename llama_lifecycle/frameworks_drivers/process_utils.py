"""
Process-table helpers for finding and stopping llama-server processes.
"""
import os
import time
from pathlib import Path
from typing import Iterable, List, Optional

import psutil

from llama_lifecycle.frameworks_drivers.pidfiles import PidFile
from llama_lifecycle.shared.errors import TerminationTimeout
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)

# Linux truncates the process name (comm) to 15 bytes.
PROCESS_NAME_LIMIT = 15
FORCE_KILL_WAIT = 1.0


def _matches_executable(proc: psutil.Process, executable_name: str) -> bool:
    try:
        name = proc.name()
        cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return False
    if name and name == executable_name[:PROCESS_NAME_LIMIT]:
        return True
    if name == executable_name:
        return True
    return bool(cmdline) and os.path.basename(cmdline[0]) == executable_name


def get_all_server_pids(executable_name: str) -> List[int]:
    """Pids of every running process whose name or argv[0] is executable_name."""
    own_pid = os.getpid()
    return sorted(
        proc.pid for proc in psutil.process_iter()
        if proc.pid != own_pid and _matches_executable(proc, executable_name)
    )


def find_pid_by_argv(sequence: List[str]) -> Optional[int]:
    """First pid whose argv contains sequence as consecutive tokens ('--flag=value' is split)."""
    width = len(sequence)
    for proc in psutil.process_iter():
        try:
            cmdline = proc.cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        tokens = []
        for arg in cmdline:
            for token in arg.split():
                tokens.extend(token.split("=", 1) if token.startswith("-") and "=" in token else [token])
        for start in range(len(tokens) - width + 1):
            if tokens[start:start + width] == sequence:
                return proc.pid
    return None


def is_alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def terminate_process(pid: int, timeout: float = 2.0) -> None:
    """
    Terminate a process, killing it if it ignores the polite request.

    Args:
        pid: Process to stop
        timeout: Seconds to wait after terminate before killing

    Raises:
        TerminationTimeout: If the process survives the kill
    """
    terminate_processes([pid], timeout)


def terminate_processes(pids: Iterable[int], timeout: float = 2.0) -> List[int]:
    """Terminate several processes in parallel; returns the pids that were stopped."""
    start = time.monotonic()
    procs = []
    for pid in pids:
        try:
            procs.append(psutil.Process(pid))
        except psutil.NoSuchProcess:
            continue
    if not procs:
        return []

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    gone, alive = psutil.wait_procs(procs, timeout=timeout)

    for proc in alive:
        logger.warning(f"Process {proc.pid} ignored terminate; killing")
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    killed, leftovers = psutil.wait_procs(alive, timeout=FORCE_KILL_WAIT)
    if leftovers:
        raise TerminationTimeout("force-kill", time.monotonic() - start, [proc.pid for proc in leftovers])
    return [proc.pid for proc in gone + killed]


def kill_all_servers(executable_name: str, timeout: float = 2.0) -> List[int]:
    """Stop every process named executable_name; returns the pids stopped."""
    pids = get_all_server_pids(executable_name)
    if not pids:
        return []
    logger.info(f"Killing all {executable_name} processes: {pids}")
    return terminate_processes(pids, timeout)


def kill_by_pidfile(pidfile: Path, timeout: float = 2.0) -> Optional[int]:
    """
    Stop the process named by pidfile and remove the file.

    Returns:
        The pid stopped, or None if the pidfile was stale or malformed
    """
    pid = PidFile.read(pidfile)
    if pid is None or not is_alive(pid):
        PidFile.remove(pidfile)
        return None
    logger.info(f"Killing server {pid} via pidfile {pidfile}")
    terminate_process(pid, timeout)
    PidFile.remove(pidfile)
    return pid


def kill_by_endpoint(endpoint: str, pidfile: Optional[Path] = None, timeout: float = 2.0) -> Optional[int]:
    """
    Stop the server listening on endpoint (a socket path or host).

    Tries the pidfile first, then scans argv for '--host <endpoint>'.

    Returns:
        The pid stopped, or None if nothing matched
    """
    if pidfile is not None and Path(pidfile).exists():
        pid = kill_by_pidfile(pidfile, timeout)
        if pid is not None:
            return pid

    for flag in ("--host", "-h"):
        pid = find_pid_by_argv([flag, endpoint])
        if pid is not None and pid != os.getpid():
            logger.info(f"Killing server {pid} at {endpoint} via argv scan")
            terminate_process(pid, timeout)
            if pidfile is not None:
                PidFile.remove(pidfile)
            return pid
    return None
