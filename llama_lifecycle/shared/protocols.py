from typing import Any, Optional, Protocol, TypedDict, TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from llama_lifecycle.entities.resource_plan import HostTelemetry
    from llama_lifecycle.entities.server import TransportKind


class ServerDTO(TypedDict):
    pid: int
    endpoint: str
    transport: str
    model: str
    state: str
    pidfile: Optional[str]


class TransportProtocol(Protocol):
    """Capability interface of a connection to one llama-server endpoint."""

    @property
    def kind(self) -> 'TransportKind': ...

    @property
    def endpoint(self) -> str: ...

    @property
    def host_arg(self) -> str: ...

    @property
    def port_arg(self) -> Optional[int]: ...

    @property
    def pid_id(self) -> str: ...

    def connect(self) -> httpx.Client: ...

    def call(self, session: httpx.Client, method: str, path: str, body: Any = None,
             timeout: Optional[float] = None) -> Any: ...

    def request(self, method: str, path: str, body: Any = None, timeout: Optional[float] = None) -> Any: ...

    def close(self) -> None: ...

    def cleanup(self) -> None: ...


class TelemetryProviderProtocol(Protocol):
    def snapshot(self, backend: str = "cuda") -> 'HostTelemetry': ...


class ProcessHandleProtocol(Protocol):
    """The subset of subprocess.Popen the supervisor relies on."""

    pid: int
    returncode: Optional[int]

    def poll(self) -> Optional[int]: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: Optional[float] = None) -> int: ...
