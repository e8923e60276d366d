"""
Supervision of one running llama-server: health state machine, background
monitoring and guaranteed cleanup on every exit path.
"""
from __future__ import annotations

import atexit
import os
import signal
import subprocess
import threading
import time
import weakref
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from llama_lifecycle.entities.server import SERVER_STATE_TRANSITIONS, ServerProcess, ServerState
from llama_lifecycle.frameworks_drivers.pidfiles import PidFile
from llama_lifecycle.frameworks_drivers.transport import BaseTransport
from llama_lifecycle.shared.errors import (
    InternalError,
    LlamaLifecycleError,
    ReadinessTimeout,
    ServerCrashed,
    TerminationTimeout,
)
from llama_lifecycle.shared.health_checker import HealthChecker
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.protocols import ProcessHandleProtocol
from llama_lifecycle.shared.retry import Retry, RetryExhausted

if TYPE_CHECKING:
    from llama_lifecycle.frameworks_drivers.server_registry import ProcessRegistry

logger = Logger.get(__name__)

FORCE_KILL_WAIT = 1.0
TERMINAL_STATES = {ServerState.STOPPING, ServerState.STOPPED, ServerState.CRASHED}

StateCallback = Callable[[ServerState, ServerState], None]


class ProcessSupervisor:
    """
    Owns a ServerProcess and its OS handle.

    States: STARTING -> READY <-> DEGRADED -> STOPPING -> STOPPED, and any live
    state -> CRASHED when the process exits on its own.
    """

    _instances: "weakref.WeakSet[ProcessSupervisor]" = weakref.WeakSet()
    _hooks_installed = False
    _hooks_lock = threading.Lock()
    _previous_handlers: Dict[int, object] = {}
    _pending_signals: List[int] = []

    def __init__(
        self,
        process: ServerProcess,
        popen: ProcessHandleProtocol,
        transport: BaseTransport,
        registry: Optional["ProcessRegistry"] = None,
        stop_timeout: float = 2.0,
        probe_timeout: float = 5.0,
    ):
        self.process = process
        self.popen = popen
        self.transport = transport
        self.registry = registry
        self.stop_timeout = stop_timeout
        self.probe_timeout = probe_timeout
        self.exit_code: Optional[int] = None
        self.last_error: Optional[object] = None

        self._state = ServerState.STARTING
        self._lock = threading.RLock()
        self._stop_lock = threading.Lock()
        self._callbacks: List[StateCallback] = []
        self._stop_event = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

        self._install_exit_hooks()
        ProcessSupervisor._instances.add(self)
        if registry is not None:
            registry.register(self)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    def on_state_change(self, callback: StateCallback) -> None:
        """Register callback(old_state, new_state), called after every transition."""
        self._callbacks.append(callback)

    def _transition(self, new_state: ServerState, only_from: Optional[set] = None) -> bool:
        with self._lock:
            old_state = self._state
            if only_from is not None and old_state not in only_from:
                return False
            if new_state not in SERVER_STATE_TRANSITIONS[old_state]:
                raise InternalError(f"Illegal server state transition {old_state.value} -> {new_state.value}")
            self._state = new_state
        logger.info(f"Server {self.pid}: {old_state.value} -> {new_state.value}")
        for callback in list(self._callbacks):
            callback(old_state, new_state)
        return True

    def mark_ready(self) -> None:
        self._transition(ServerState.READY)

    def check(self) -> ServerState:
        """Probe the process and endpoint once and update the state."""
        state = self.state
        if state in TERMINAL_STATES:
            return state

        if not HealthChecker.check_process_running(self.popen):
            self.exit_code = self.popen.returncode
            self.last_error = ServerCrashed(self.pid, self.exit_code)
            self._transition(ServerState.CRASHED, only_from={ServerState.STARTING, ServerState.READY,
                                                             ServerState.DEGRADED})
            return self.state

        status = HealthChecker.probe_status(self.transport, timeout=self.probe_timeout)
        if status.ready:
            self._transition(ServerState.READY, only_from={ServerState.STARTING, ServerState.DEGRADED})
        else:
            self.last_error = status.message or status.state
            if self._transition(ServerState.DEGRADED, only_from={ServerState.READY}):
                logger.warning(f"Server {self.pid} health check failed: {self.last_error}")
        return self.state

    def _monitor(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            try:
                state = self.check()
            except LlamaLifecycleError as e:
                logger.error(f"Health monitor for server {self.pid} failed: {e}")
                self.last_error = e
                continue
            if state in TERMINAL_STATES:
                if state == ServerState.CRASHED:
                    logger.error(f"Server {self.pid} crashed with exit code {self.exit_code}")
                return

    def start_monitoring(self, interval: float = 5.0) -> None:
        """Run check() every interval seconds on a daemon thread until the server stops or crashes."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return
        self._monitor_thread = threading.Thread(
            target=self._monitor, args=(interval,), name=f"llama-server-monitor-{self.pid}", daemon=True
        )
        self._monitor_thread.start()

    def wait_ready(self, timeout: float, initial_delay: float = 0.1, max_delay: float = 1.0) -> ServerState:
        """
        Block until the server is READY.

        Raises:
            ServerCrashed: If the process exited while waiting
            ReadinessTimeout: If the server did not become ready in time
        """
        retry = Retry(deadline=timeout, initial_delay=initial_delay, max_delay=max_delay)
        try:
            state = retry.run(self.check, is_done=lambda s: s in TERMINAL_STATES or s == ServerState.READY)
        except RetryExhausted as e:
            raise ReadinessTimeout(e.elapsed, e.last_result) from e
        self.raise_if_crashed()
        return state

    def raise_if_crashed(self) -> None:
        if self.state == ServerState.CRASHED:
            raise ServerCrashed(self.pid, self.exit_code)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the server: terminate, then kill after timeout.

        Endpoint files, sessions and the registry entry are released in every
        case. Calling stop again is a no-op.

        Raises:
            TerminationTimeout: If the process survived the kill
        """
        timeout = self.stop_timeout if timeout is None else timeout
        with self._stop_lock:
            if self.state == ServerState.STOPPED:
                return
            if self.state != ServerState.STOPPING:
                self._transition(ServerState.STOPPING)
            self._stop_event.set()

            start = time.monotonic()
            error: Optional[TerminationTimeout] = None
            try:
                if self.popen.poll() is None:
                    self.popen.terminate()
                    try:
                        self.popen.wait(timeout=timeout)
                    except subprocess.TimeoutExpired:
                        logger.warning(f"Server {self.pid} ignored terminate after {timeout:.1f}s; killing")
                        self.popen.kill()
                        try:
                            self.popen.wait(timeout=FORCE_KILL_WAIT)
                        except subprocess.TimeoutExpired:
                            error = TerminationTimeout("stop", time.monotonic() - start, [self.pid])
                if self.exit_code is None:
                    self.exit_code = self.popen.returncode
            finally:
                self.transport.cleanup()
                PidFile.remove(self.process.pidfile)
                if self.registry is not None:
                    self.registry.unregister(self)
                ProcessSupervisor._instances.discard(self)
                self._transition(ServerState.STOPPED)
                monitor = self._monitor_thread
                if monitor is not None and monitor is not threading.current_thread():
                    monitor.join(timeout=1.0)

        ProcessSupervisor._redeliver_pending_signals()
        if error is not None:
            raise error
        logger.info(f"Server {self.pid} stopped (exit code {self.exit_code})")

    @classmethod
    def _stop_all_instances(cls) -> bool:
        """Stop every live supervisor; False when some stop() was already running and was skipped."""
        idle = True
        for supervisor in list(cls._instances):
            if supervisor._stop_lock.locked():
                idle = False
                continue
            try:
                supervisor.stop()
            except LlamaLifecycleError as e:
                logger.error(f"Failed to stop server {supervisor.pid}: {e}")
        return idle

    @classmethod
    def _redeliver_pending_signals(cls) -> None:
        if any(s._stop_lock.locked() for s in list(cls._instances)):
            return
        while cls._pending_signals:
            signal.raise_signal(cls._pending_signals.pop(0))

    @classmethod
    def _handle_signal(cls, signum, frame) -> None:
        if not cls._stop_all_instances():
            # Re-raised once the interrupted stop() has released its endpoint.
            cls._pending_signals.append(signum)
            return
        previous = cls._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    @classmethod
    def _install_exit_hooks(cls) -> None:
        """Install the atexit hook and SIGINT/SIGTERM handlers once, chaining to earlier handlers."""
        with cls._hooks_lock:
            if cls._hooks_installed:
                return
            atexit.register(cls._stop_all_instances)
            if threading.current_thread() is threading.main_thread():
                for signum in (signal.SIGINT, signal.SIGTERM):
                    cls._previous_handlers[signum] = signal.getsignal(signum)
                    signal.signal(signum, cls._handle_signal)
            cls._hooks_installed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def __del__(self):
        if getattr(self, "_state", ServerState.STOPPED) != ServerState.STOPPED and hasattr(self, "popen"):
            try:
                self.stop()
            except LlamaLifecycleError as e:
                logger.error(f"Failed to stop server during finalisation: {e}")

    def __repr__(self) -> str:
        return f"ProcessSupervisor(pid={self.pid}, state={self.state.value}, endpoint={self.process.endpoint})"
