from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ServerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


# Allowed supervisor transitions; anything else is a bug.
SERVER_STATE_TRANSITIONS = {
    ServerState.STARTING: {ServerState.READY, ServerState.STOPPING, ServerState.CRASHED},
    ServerState.READY: {ServerState.DEGRADED, ServerState.STOPPING, ServerState.CRASHED},
    ServerState.DEGRADED: {ServerState.READY, ServerState.STOPPING, ServerState.CRASHED},
    ServerState.STOPPING: {ServerState.STOPPED},
    ServerState.STOPPED: set(),
    ServerState.CRASHED: {ServerState.STOPPING},
}


class TransportKind(str, Enum):
    UNIX_SOCKET = "unix"
    HTTP = "http"


class TransportChoice(str, Enum):
    AUTO = "auto"
    UNIX_SOCKET = "unix"
    HTTP = "http"


class ServerStatus(BaseModel):
    """Liveness/readiness of a server as reported by /health and /props."""
    state: Literal["running", "loading", "offline"]
    model: Optional[str] = None
    message: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state == "running"

    @classmethod
    def running(cls, model: Optional[str]) -> "ServerStatus":
        return cls(state="running", model=model)

    @classmethod
    def loading(cls) -> "ServerStatus":
        return cls(state="loading")

    @classmethod
    def offline(cls, message: str) -> "ServerStatus":
        return cls(state="offline", message=message)


class ServerProcess(BaseModel):
    """A launched llama-server, owned by exactly one supervisor."""

    model_config = ConfigDict(protected_namespaces=())

    pid: int = Field(gt=0)
    transport: TransportKind
    endpoint: str  # socket path or host:port
    args: List[str]  # full argv used to launch
    executable: Path
    model_name: str
    pidfile: Optional[Path] = None
    log_file: Optional[Path] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def socket_path(self) -> Optional[Path]:
        if self.transport == TransportKind.UNIX_SOCKET:
            return Path(self.endpoint)
        return None
