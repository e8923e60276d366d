"""
Transports to a running llama-server.

Both implementations speak HTTP/1.1 through httpx; they differ only in how the
connection is made. POSIX hosts default to a Unix domain socket in the temp
directory, Windows and callers that need a browser-reachable server use
loopback TCP.
"""
import errno
import json
import socket
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from llama_lifecycle.entities.server import TransportChoice, TransportKind
from llama_lifecycle.shared.errors import (
    Disconnected,
    PortOrSocketUnavailable,
    ProtocolError,
    RemoteError,
    ServerConnectionRefused,
    TransportTimeout,
)
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.platform_utils import SERVER_EXECUTABLE, PlatformUtils

logger = Logger.get(__name__)

DEFAULT_TIMEOUT = 180.0
MAX_RESPONSE_BYTES = 16 * 1024 * 1024
LOOPBACK_HOST = "127.0.0.1"
# sun_path is 108 bytes on Linux and 104 on macOS, including the NUL byte
UDS_MAX = 91


def allocate_socket_path(executable_name: str = SERVER_EXECUTABLE, attempts: int = 3,
                         base_dir: Optional[Path] = None) -> Path:
    """
    Pick an unused socket path in the temp directory.

    The path is bound once to prove nothing else owns it, then unlinked so
    llama-server can bind it.

    Raises:
        PortOrSocketUnavailable: If no free path was found or the path is too long
    """
    base_dir = Path(base_dir or tempfile.gettempdir())
    for _ in range(attempts):
        tail = str(uuid.uuid4()).rsplit("-", 1)[-1]
        path = base_dir / f"{executable_name}-{tail}.sock".lower()
        if len(str(path)) > UDS_MAX:
            raise PortOrSocketUnavailable(
                f"Socket path {path} is {len(str(path))} characters; the limit is {UDS_MAX}"
            )
        probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            probe.bind(str(path))
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                continue
            raise PortOrSocketUnavailable(f"Cannot bind socket {path}: {e}") from e
        finally:
            probe.close()
        path.unlink(missing_ok=True)
        return path
    raise PortOrSocketUnavailable(f"No free socket path after {attempts} attempts")


def allocate_port(host: str = LOOPBACK_HOST) -> int:
    """Ask the OS for a free TCP port on host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind((host, 0))
            return probe.getsockname()[1]
    except OSError as e:
        raise PortOrSocketUnavailable(f"Cannot obtain an ephemeral port on {host}: {e}") from e


class BaseTransport:
    """
    Request/response client shared by the socket and TCP transports.

    A session is an httpx.Client; `request` keeps one cached session and
    replaces it after a dropped connection. Setting `alive` lets the transport
    tell a restartable drop from a dead server.
    """

    kind: TransportKind

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, alive: Optional[Callable[[], bool]] = None):
        self.timeout = timeout
        self.alive = alive
        self._session: Optional[httpx.Client] = None
        self._lock = threading.Lock()

    @property
    def endpoint(self) -> str:
        raise NotImplementedError

    @property
    def host_arg(self) -> str:
        """Value passed to llama-server --host."""
        raise NotImplementedError

    @property
    def port_arg(self) -> Optional[int]:
        return None

    @property
    def pid_id(self) -> str:
        """Identifier used to name the pidfile of the server behind this endpoint."""
        raise NotImplementedError

    def _client_kwargs(self) -> dict:
        raise NotImplementedError

    def connect(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, headers={"Content-Type": "application/json"},
                            **self._client_kwargs())

    @staticmethod
    def _read_capped(response: httpx.Response) -> bytes:
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > MAX_RESPONSE_BYTES:
            raise ProtocolError(f"Response of {declared} bytes exceeds the {MAX_RESPONSE_BYTES} byte limit")
        chunks = []
        size = 0
        for chunk in response.iter_bytes():
            size += len(chunk)
            if size > MAX_RESPONSE_BYTES:
                raise ProtocolError(f"Response exceeds the {MAX_RESPONSE_BYTES} byte limit")
            chunks.append(chunk)
        return b"".join(chunks)

    @staticmethod
    def _remote_error(response: httpx.Response, data: bytes) -> RemoteError:
        body: Any = None
        message = response.reason_phrase or "error"
        error_type = None
        code = response.status_code
        if data:
            try:
                body = json.loads(data)
            except ValueError:
                body = data.decode("utf-8", errors="replace")
                message = body.strip() or message
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            error = body["error"]
            message = error.get("message") or message
            error_type = error.get("type")
        return RemoteError(code, message, body=body, error_type=error_type)

    def call(self, session: httpx.Client, method: str, path: str, body: Any = None,
             timeout: Optional[float] = None) -> Any:
        """
        Send one request on session and decode the JSON response.

        Returns:
            The decoded body, or None for 204/304 and empty bodies

        Raises:
            ServerConnectionRefused: If nothing accepts connections at the endpoint
            TransportTimeout: If the request exceeded its timeout
            Disconnected: If the connection dropped mid-request
            RemoteError: For non-2xx responses
            ProtocolError: For oversized or non-JSON bodies
        """
        timeout = self.timeout if timeout is None else timeout
        try:
            with session.stream(method, path, json=body, timeout=timeout) as response:
                if response.status_code in (204, 304):
                    return None
                data = self._read_capped(response)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"{method} {path} on {self.endpoint} timed out after {timeout:.1f}s") from e
        except httpx.ConnectError as e:
            raise ServerConnectionRefused(f"Cannot connect to {self.endpoint}: {e}") from e
        except (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError) as e:
            raise Disconnected(f"Connection to {self.endpoint} dropped during {method} {path}: {e}") from e

        if not response.is_success:
            raise self._remote_error(response, data)
        if not data.strip():
            return None
        try:
            return json.loads(data)
        except ValueError as e:
            raise ProtocolError(f"{method} {path} returned a non-JSON body: {data[:200]!r}") from e

    def _current_session(self) -> httpx.Client:
        with self._lock:
            if self._session is None:
                self._session = self.connect()
            return self._session

    def _discard_session(self, session: httpx.Client) -> None:
        with self._lock:
            if self._session is session:
                self._session = None
        session.close()

    def request(self, method: str, path: str, body: Any = None, timeout: Optional[float] = None) -> Any:
        """Send a request on the cached session, reconnecting once after a dropped connection."""
        session = self._current_session()
        try:
            return self.call(session, method, path, body, timeout)
        except Disconnected:
            self._discard_session(session)
            if self.alive is not None and not self.alive():
                raise
            logger.debug(f"Reconnecting to {self.endpoint} after a dropped connection")
        return self.call(self._current_session(), method, path, body, timeout)

    def get(self, path: str, timeout: Optional[float] = None) -> Any:
        return self.request("GET", path, timeout=timeout)

    def post(self, path: str, body: Any, timeout: Optional[float] = None) -> Any:
        return self.request("POST", path, body=body, timeout=timeout)

    def close(self) -> None:
        with self._lock:
            session, self._session = self._session, None
        if session is not None:
            session.close()

    def cleanup(self) -> None:
        """Close sessions and remove any endpoint files."""
        self.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.endpoint})"


class UnixSocketTransport(BaseTransport):
    kind = TransportKind.UNIX_SOCKET

    def __init__(self, socket_path: str | Path, timeout: float = DEFAULT_TIMEOUT,
                 alive: Optional[Callable[[], bool]] = None):
        super().__init__(timeout=timeout, alive=alive)
        self.socket_path = Path(socket_path)

    @classmethod
    def allocate(cls, timeout: float = DEFAULT_TIMEOUT, base_dir: Optional[Path] = None) -> "UnixSocketTransport":
        return cls(allocate_socket_path(base_dir=base_dir), timeout=timeout)

    @property
    def endpoint(self) -> str:
        return str(self.socket_path)

    @property
    def host_arg(self) -> str:
        return str(self.socket_path)

    @property
    def pid_id(self) -> str:
        tail = self.socket_path.stem.rsplit("-", 1)[-1]
        return f"{SERVER_EXECUTABLE}_unix_{tail}".lower()

    def _client_kwargs(self) -> dict:
        return {"transport": httpx.HTTPTransport(uds=str(self.socket_path)), "base_url": "http://localhost"}

    def cleanup(self) -> None:
        super().cleanup()
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove socket {self.socket_path}: {e}")


class HttpTransport(BaseTransport):
    kind = TransportKind.HTTP

    def __init__(self, host: str = LOOPBACK_HOST, port: int = 8080, timeout: float = DEFAULT_TIMEOUT,
                 alive: Optional[Callable[[], bool]] = None):
        super().__init__(timeout=timeout, alive=alive)
        self.host = host
        self.port = port

    @classmethod
    def allocate(cls, host: Optional[str] = None, port: Optional[int] = None,
                 timeout: float = DEFAULT_TIMEOUT) -> "HttpTransport":
        host = host or LOOPBACK_HOST
        return cls(host, port or allocate_port(host), timeout=timeout)

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def host_arg(self) -> str:
        return self.host

    @property
    def port_arg(self) -> Optional[int]:
        return self.port

    @property
    def pid_id(self) -> str:
        return f"{SERVER_EXECUTABLE}_http_{self.host}_{self.port}".lower()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _client_kwargs(self) -> dict:
        return {"base_url": self.base_url}


def select_transport(
    choice: TransportChoice = TransportChoice.AUTO,
    wants_http: bool = False,
    host: Optional[str] = None,
    port: Optional[int] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> BaseTransport:
    """
    Choose and allocate the transport for a new server.

    AUTO resolves to a Unix socket on POSIX and loopback HTTP on Windows.
    HTTP is forced by wants_http (web UI, explicit host or port).
    """
    if choice == TransportChoice.UNIX_SOCKET and PlatformUtils.is_windows():
        raise PortOrSocketUnavailable("Unix domain sockets are not supported on Windows")
    if choice == TransportChoice.UNIX_SOCKET and wants_http:
        raise PortOrSocketUnavailable("A Unix socket cannot serve the web UI or an explicit host/port")
    if choice == TransportChoice.HTTP or wants_http or PlatformUtils.is_windows():
        return HttpTransport.allocate(host, port, timeout=timeout)
    return UnixSocketTransport.allocate(timeout=timeout)
