"""
Tests for the Unix socket and HTTP transports.
"""
import http.server
import json
import socketserver
import threading
import time
from unittest.mock import Mock, patch

import pytest

from llama_lifecycle.entities.server import TransportChoice, TransportKind
from llama_lifecycle.frameworks_drivers.transport import (
    MAX_RESPONSE_BYTES,
    UDS_MAX,
    BaseTransport,
    HttpTransport,
    UnixSocketTransport,
    allocate_port,
    allocate_socket_path,
    select_transport,
)
from llama_lifecycle.shared.errors import (
    Disconnected,
    PortOrSocketUnavailable,
    ProtocolError,
    RemoteError,
    ServerConnectionRefused,
    TransportTimeout,
)

MODULE = "llama_lifecycle.frameworks_drivers.transport"


class Handler(http.server.BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _send(self, code, body=b"", content_type="application/json"):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self):
        if self.path == "/health":
            self._send(200, b'{"status": "ok"}')
        elif self.path == "/empty":
            self._send(204)
        elif self.path == "/text":
            self._send(200, b"not json", "text/plain")
        elif self.path == "/plain-error":
            self._send(500, b"boom", "text/plain")
        elif self.path == "/slow":
            time.sleep(1.0)
            self._send(200, b"{}")
        else:
            self._send(404, json.dumps({"error": {"code": 404, "message": "File Not Found", "type": "not_found_error"}}).encode())

    def do_POST(self):
        body = self.rfile.read(int(self.headers.get("Content-Length", 0)))
        if self.path == "/echo":
            self._send(200, body)
        else:
            self._send(400, json.dumps({"error": {"message": "bad prompt", "type": "invalid_request_error"}}).encode())


class UnixHTTPServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True


class TCPHTTPServer(socketserver.ThreadingMixIn, http.server.HTTPServer):
    daemon_threads = True


class UnixHandler(Handler):
    def address_string(self):
        return "unix"


def _serve(server):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def unix_server(short_tmp):
    path = short_tmp / "srv.sock"
    server = UnixHTTPServer(str(path), UnixHandler)
    _serve(server)
    yield path
    server.shutdown()
    server.server_close()


@pytest.fixture
def tcp_server():
    server = TCPHTTPServer(("127.0.0.1", 0), Handler)
    _serve(server)
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


class TestUnixSocketTransport:
    """Test cases for requests over a Unix domain socket."""

    def test_get_and_post(self, unix_server):
        with UnixSocketTransport(unix_server, timeout=5) as transport:
            assert transport.get("/health") == {"status": "ok"}
            assert transport.post("/echo", {"content": "héllo"}) == {"content": "héllo"}

    def test_empty_responses(self, unix_server):
        with UnixSocketTransport(unix_server, timeout=5) as transport:
            assert transport.get("/empty") is None

    def test_remote_error_decoded(self, unix_server):
        """Test that a JSON error body becomes a structured RemoteError."""
        with UnixSocketTransport(unix_server, timeout=5) as transport:
            with pytest.raises(RemoteError) as exc_info:
                transport.post("/completion", {"prompt": ""})
        assert exc_info.value.code == 400
        assert exc_info.value.message == "bad prompt"
        assert exc_info.value.error_type == "invalid_request_error"

    def test_plain_text_error(self, unix_server):
        with UnixSocketTransport(unix_server, timeout=5) as transport:
            with pytest.raises(RemoteError) as exc_info:
                transport.get("/plain-error")
        assert exc_info.value.code == 500
        assert exc_info.value.message == "boom"

    def test_non_json_body(self, unix_server):
        with UnixSocketTransport(unix_server, timeout=5) as transport:
            with pytest.raises(ProtocolError):
                transport.get("/text")

    def test_timeout(self, unix_server):
        with UnixSocketTransport(unix_server, timeout=5) as transport:
            with pytest.raises(TransportTimeout):
                transport.get("/slow", timeout=0.2)

    def test_connection_refused(self, short_tmp):
        with UnixSocketTransport(short_tmp / "nobody.sock", timeout=1) as transport:
            with pytest.raises(ServerConnectionRefused):
                transport.get("/health")

    def test_cleanup_removes_socket(self, short_tmp):
        path = short_tmp / "gone.sock"
        path.write_text("")
        UnixSocketTransport(path).cleanup()
        assert not path.exists()

    def test_pid_id(self):
        transport = UnixSocketTransport("/tmp/llama-server-ab12cd34ef56.sock")
        assert transport.pid_id == "llama-server_unix_ab12cd34ef56"
        assert transport.kind == TransportKind.UNIX_SOCKET
        assert transport.port_arg is None


class TestHttpTransport:
    """Test cases for loopback HTTP."""

    def test_get(self, tcp_server):
        with HttpTransport(port=tcp_server, timeout=5) as transport:
            assert transport.get("/health") == {"status": "ok"}
            assert transport.endpoint == f"127.0.0.1:{tcp_server}"

    def test_not_found(self, tcp_server):
        with HttpTransport(port=tcp_server, timeout=5) as transport:
            with pytest.raises(RemoteError) as exc_info:
                transport.get("/missing")
        assert exc_info.value.code == 404

    def test_connection_refused(self):
        with HttpTransport(port=allocate_port(), timeout=1) as transport:
            with pytest.raises(ServerConnectionRefused):
                transport.get("/health")

    def test_args_and_pid_id(self):
        transport = HttpTransport("127.0.0.1", 8089)
        assert transport.host_arg == "127.0.0.1"
        assert transport.port_arg == 8089
        assert transport.pid_id == "llama-server_http_127.0.0.1_8089"


class TestReconnect:
    """Test cases for recovering from dropped connections."""

    def test_reconnects_once(self):
        transport = HttpTransport(port=1)
        with patch.object(transport, "call", side_effect=[Disconnected("reset"), {"ok": True}]) as mock_call:
            assert transport.get("/health") == {"ok": True}
        assert mock_call.call_count == 2

    def test_dead_server_is_not_retried(self):
        transport = HttpTransport(port=1, alive=lambda: False)
        with patch.object(transport, "call", side_effect=Disconnected("reset")) as mock_call:
            with pytest.raises(Disconnected):
                transport.get("/health")
        assert mock_call.call_count == 1


class TestResponseLimits:
    def test_declared_length_too_large(self):
        response = Mock(headers={"content-length": str(MAX_RESPONSE_BYTES + 1)})
        with pytest.raises(ProtocolError):
            BaseTransport._read_capped(response)
        response.iter_bytes.assert_not_called()

    def test_streamed_body_too_large(self):
        response = Mock(headers={})
        response.iter_bytes.return_value = iter([b"x" * MAX_RESPONSE_BYTES, b"x"])
        with pytest.raises(ProtocolError):
            BaseTransport._read_capped(response)


class TestAllocation:
    """Test cases for endpoint allocation and transport selection."""

    def test_allocate_socket_path(self, short_tmp):
        path = allocate_socket_path(base_dir=short_tmp)
        assert path.parent == short_tmp
        assert path.name.startswith("llama-server-")
        assert path.suffix == ".sock"
        assert not path.exists()

    def test_socket_path_too_long(self, short_tmp):
        deep = short_tmp / ("d" * UDS_MAX)
        with pytest.raises(PortOrSocketUnavailable):
            allocate_socket_path(base_dir=deep)

    def test_allocate_port(self):
        assert 0 < allocate_port() < 65536

    @patch(f"{MODULE}.PlatformUtils.is_windows", return_value=False)
    def test_auto_on_posix_is_unix(self, mock_windows):
        transport = select_transport(TransportChoice.AUTO)
        assert isinstance(transport, UnixSocketTransport)

    @patch(f"{MODULE}.PlatformUtils.is_windows", return_value=True)
    def test_auto_on_windows_is_http(self, mock_windows):
        transport = select_transport(TransportChoice.AUTO)
        assert isinstance(transport, HttpTransport)
        assert transport.host == "127.0.0.1"

    @patch(f"{MODULE}.PlatformUtils.is_windows", return_value=False)
    def test_web_ui_forces_http(self, mock_windows):
        transport = select_transport(TransportChoice.AUTO, wants_http=True, port=8099)
        assert isinstance(transport, HttpTransport)
        assert transport.port == 8099

    @patch(f"{MODULE}.PlatformUtils.is_windows", return_value=False)
    def test_unix_with_http_requirements(self, mock_windows):
        with pytest.raises(PortOrSocketUnavailable):
            select_transport(TransportChoice.UNIX_SOCKET, wants_http=True)

    @patch(f"{MODULE}.PlatformUtils.is_windows", return_value=True)
    def test_unix_on_windows(self, mock_windows):
        with pytest.raises(PortOrSocketUnavailable):
            select_transport(TransportChoice.UNIX_SOCKET)
