from __future__ import annotations

import ctypes
import ctypes.util
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from llama_lifecycle.entities.server import ServerProcess, TransportChoice
from llama_lifecycle.entities.server_args import ServerArgs
from llama_lifecycle.frameworks_drivers.config import LaunchConfig
from llama_lifecycle.frameworks_drivers.pidfiles import PidFile
from llama_lifecycle.frameworks_drivers.process_utils import kill_by_endpoint
from llama_lifecycle.frameworks_drivers.transport import DEFAULT_TIMEOUT, BaseTransport, select_transport
from llama_lifecycle.shared.errors import LaunchError, LaunchFailed, TerminationTimeout
from llama_lifecycle.shared.health_checker import HealthChecker
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.platform_utils import PlatformUtils

logger = Logger.get(__name__)

PR_SET_PDEATHSIG = 1
LOG_TAIL_LINES = 40


def _set_parent_death_signal() -> None:
    """Runs in the child before exec: deliver SIGTERM to it when this process dies."""
    libc = ctypes.CDLL(ctypes.util.find_library("c") or "libc.so.6", use_errno=True)
    libc.prctl(PR_SET_PDEATHSIG, signal.SIGTERM)


@dataclass
class LaunchedServer:
    """A ready llama-server: its description, OS handle and transport."""

    process: ServerProcess
    popen: subprocess.Popen
    transport: BaseTransport


class ProcessLauncher:
    """
    Starts llama-server processes and waits until they serve the expected model.
    """

    def __init__(self, config: Optional[LaunchConfig] = None, client_timeout: float = DEFAULT_TIMEOUT):
        self.config = config or LaunchConfig()
        self.client_timeout = client_timeout

    @staticmethod
    def _terminate_process(process: subprocess.Popen | None, timeout: float) -> None:
        """Terminate a subprocess with a timeout, killing if necessary."""
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait(timeout=1.0)

    @staticmethod
    def _read_log_tail(log_file: Optional[Path], lines: int = LOG_TAIL_LINES) -> str:
        if log_file is None or not log_file.exists():
            return ""
        try:
            content = log_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""
        return "\n".join(content.splitlines()[-lines:])

    def runtime_dir(self, executable: Path) -> Path:
        return Path(self.config.runtime_dir) if self.config.runtime_dir else executable.parent

    def _clear_endpoint(self, transport: BaseTransport, pidfile: Path) -> None:
        """Stop whatever already serves this endpoint and drop a stale pidfile."""
        status = HealthChecker.probe_status(transport, timeout=0.5)
        if status.state != "offline":
            logger.error(f"Endpoint {transport.endpoint} is already {status.state} "
                         f"(model {status.model}); stopping it before launch")
            pid = kill_by_endpoint(transport.host_arg, pidfile)
            if pid is None:
                raise LaunchFailed(f"Endpoint {transport.endpoint} is in use by a process that could not be found")
        elif pidfile.exists() and PidFile.is_stale(pidfile):
            logger.info(f"Removing stale pidfile {pidfile}")
            PidFile.remove(pidfile)
        transport.close()

    def _spawn(self, executable: Path, argv: list[str], log_file: Path) -> subprocess.Popen:
        popen_kwargs = {
            "cwd": str(executable.parent),
            "stdin": subprocess.DEVNULL,
            "stderr": subprocess.STDOUT,
            "env": os.environ.copy(),
        }
        if PlatformUtils.is_windows():
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        else:
            popen_kwargs["start_new_session"] = True
        if PlatformUtils.os_name() == "linux":
            popen_kwargs["preexec_fn"] = _set_parent_death_signal

        with open(log_file, "ab") as log_fh:
            return subprocess.Popen([str(executable), *argv], stdout=log_fh, **popen_kwargs)

    def launch(
        self,
        executable: str | Path,
        args: ServerArgs,
        transport_choice: Optional[TransportChoice] = None,
    ) -> LaunchedServer:
        """
        Start llama-server and wait until it is ready.

        Args:
            executable: Path of the llama-server binary
            args: Validated server arguments; host and port are filled in from the transport
            transport_choice: Transport preference (defaults to the configured one)

        Returns:
            The ready server

        Raises:
            LaunchFailed: If spawning fails or the process exits during startup
            ReadinessTimeout: If the server is not ready within its budget
            PortOrSocketUnavailable: If no endpoint could be allocated
            ModelMismatch: If the server reports a different model
        """
        executable = Path(executable)
        if not executable.is_file():
            raise LaunchFailed(f"llama-server executable not found: {executable}")

        transport = select_transport(
            transport_choice or self.config.transport,
            wants_http=args.wants_http,
            host=args.host,
            port=args.port,
            timeout=self.client_timeout,
        )
        args = args.with_endpoint(transport.host_arg, transport.port_arg)
        runtime_dir = self.runtime_dir(executable)
        pidfile = PidFile.path_for(runtime_dir, transport.pid_id)
        log_file = runtime_dir / f"{transport.pid_id}.log"
        budget = self.config.download_budget if args.downloads_model else self.config.load_budget

        self._clear_endpoint(transport, pidfile)
        PidFile.create(pidfile)
        argv = args.to_argv()
        logger.info(f"Starting {executable.name} for model {args.model_name} on {transport.endpoint}")
        logger.debug(f"Command: {executable} {' '.join(argv)}")

        process: Optional[subprocess.Popen] = None
        try:
            try:
                process = self._spawn(executable, argv, log_file)
            except OSError as e:
                raise LaunchFailed(f"Failed to spawn {executable}: {e}") from e
            PidFile.write(pidfile, process.pid)
            transport.alive = lambda: process.poll() is None

            try:
                HealthChecker.wait_until_ready(
                    transport, process, deadline=budget, expected_model=args.model_name,
                )
            except LaunchFailed as e:
                raise LaunchFailed(str(e), stderr=self._read_log_tail(log_file)) from e
        except BaseException as e:
            if isinstance(e, LaunchError):
                logger.error(f"Failed to start llama-server for model {args.model_name}: {e}")
            self._cleanup_failed(process, transport, pidfile)
            raise

        server = ServerProcess(
            pid=process.pid,
            transport=transport.kind,
            endpoint=transport.endpoint,
            args=argv,
            executable=executable,
            model_name=args.model_name,
            pidfile=pidfile,
            log_file=log_file,
        )
        logger.info(f"llama-server {process.pid} ready with model {args.model_name} on {transport.endpoint}")
        return LaunchedServer(process=server, popen=process, transport=transport)

    def _cleanup_failed(self, process: Optional[subprocess.Popen], transport: BaseTransport, pidfile: Path) -> None:
        try:
            self._terminate_process(process, self.config.stop_timeout)
        except subprocess.TimeoutExpired as e:
            pid = process.pid if process is not None else 0
            raise TerminationTimeout("cleanup after failed launch", e.timeout, [pid]) from e
        finally:
            transport.cleanup()
            PidFile.remove(pidfile)
