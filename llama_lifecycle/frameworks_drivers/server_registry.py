from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, List, Optional

from llama_lifecycle.shared.errors import LlamaLifecycleError, TerminationTimeout
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.protocols import ServerDTO

if TYPE_CHECKING:
    from llama_lifecycle.frameworks_drivers.server_supervisor import ProcessSupervisor

logger = Logger.get(__name__)


class ProcessRegistry:
    """
    Tracks the supervisors of servers started by this process.

    Instances are passed explicitly to whoever starts servers; there is no
    module-level registry.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._supervisors: Dict[int, "ProcessSupervisor"] = {}

    def register(self, supervisor: "ProcessSupervisor") -> None:
        with self._lock:
            self._supervisors[supervisor.pid] = supervisor
        logger.debug(f"Registered server {supervisor.pid}")

    def unregister(self, supervisor: "ProcessSupervisor") -> None:
        with self._lock:
            if self._supervisors.get(supervisor.pid) is supervisor:
                del self._supervisors[supervisor.pid]

    def get(self, pid: int) -> Optional["ProcessSupervisor"]:
        with self._lock:
            return self._supervisors.get(pid)

    def list(self) -> List["ProcessSupervisor"]:
        with self._lock:
            return list(self._supervisors.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._supervisors)

    def describe(self) -> List[ServerDTO]:
        """Plain summaries of the registered servers."""
        return [
            ServerDTO(
                pid=supervisor.pid,
                endpoint=supervisor.process.endpoint,
                transport=supervisor.process.transport.value,
                model=supervisor.process.model_name,
                state=supervisor.state.value,
                pidfile=str(supervisor.process.pidfile) if supervisor.process.pidfile else None,
            )
            for supervisor in self.list()
        ]

    def stop_all(self) -> None:
        """
        Stop every registered server.

        Raises:
            TerminationTimeout: With the pids of all servers that survived, after trying every one
        """
        leftovers: List[int] = []
        elapsed = 0.0
        for supervisor in self.list():
            try:
                supervisor.stop()
            except TerminationTimeout as e:
                leftovers.extend(e.leftovers)
                elapsed = max(elapsed, e.elapsed)
            except LlamaLifecycleError as e:
                logger.error(f"Failed to stop server {supervisor.pid}: {e}")
        if leftovers:
            raise TerminationTimeout("stop_all", elapsed, leftovers)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop_all()
