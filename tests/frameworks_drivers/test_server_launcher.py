"""
Tests for launching llama-server processes, run against a stand-in server script.
"""
import uuid
from concurrent.futures import ThreadPoolExecutor

import pytest

from llama_lifecycle.entities.server import TransportChoice, TransportKind
from llama_lifecycle.entities.server_args import ServerArgs
from llama_lifecycle.frameworks_drivers.config import LaunchConfig
from llama_lifecycle.frameworks_drivers.pidfiles import PidFile
from llama_lifecycle.frameworks_drivers.process_utils import find_pid_by_argv, is_alive
from llama_lifecycle.frameworks_drivers.server_launcher import ProcessLauncher
from llama_lifecycle.frameworks_drivers.server_supervisor import ProcessSupervisor
from llama_lifecycle.frameworks_drivers.transport import allocate_port
from llama_lifecycle.shared.errors import LaunchFailed, ModelMismatch


@pytest.fixture
def runtime_dir(temp_dir):
    return temp_dir / "run"


@pytest.fixture
def launcher(runtime_dir):
    return ProcessLauncher(LaunchConfig(runtime_dir=str(runtime_dir), load_budget=20, stop_timeout=2.0),
                           client_timeout=5.0)


@pytest.fixture
def model_path(temp_dir):
    return str(temp_dir / f"tiny-{uuid.uuid4().hex[:12]}.gguf")


def _stop(launched):
    supervisor = ProcessSupervisor(launched.process, launched.popen, launched.transport, stop_timeout=2.0)
    supervisor.stop()


class TestProcessLauncher:
    """Test cases for ProcessLauncher.launch."""

    def test_launch_over_unix_socket(self, launcher, fake_server, model_path, runtime_dir):
        """Test that a launched server is ready, recorded in a pidfile and fully cleaned up on stop."""
        launched = launcher.launch(fake_server, ServerArgs(model=model_path), TransportChoice.UNIX_SOCKET)
        try:
            process = launched.process
            assert process.transport == TransportKind.UNIX_SOCKET
            assert process.socket_path.exists()
            assert PidFile.read(process.pidfile) == process.pid
            assert process.pidfile.parent == runtime_dir
            assert process.log_file.name == process.pidfile.stem + ".log"
            assert "--alias" in process.args
            assert launched.transport.get("/health") == {"status": "ok"}
        finally:
            _stop(launched)

        assert not is_alive(process.pid)
        assert not process.socket_path.exists()
        assert not process.pidfile.exists()

    def test_launch_over_http(self, launcher, fake_server, model_path):
        port = allocate_port()
        launched = launcher.launch(fake_server, ServerArgs(model=model_path, port=port))
        try:
            assert launched.process.transport == TransportKind.HTTP
            assert launched.process.endpoint == f"127.0.0.1:{port}"
            assert launched.process.args[launched.process.args.index("--port") + 1] == str(port)
        finally:
            _stop(launched)

    def test_concurrent_launches_are_independent(self, launcher, fake_server, model_path):
        """Test that two simultaneous launches of one model get separate endpoints and pidfiles."""
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(launcher.launch, fake_server, ServerArgs(model=model_path), TransportChoice.UNIX_SOCKET)
                for _ in range(2)
            ]
            launched = [future.result() for future in futures]
        first, second = launched
        try:
            assert first.process.pid != second.process.pid
            assert first.process.endpoint != second.process.endpoint
            assert first.process.pidfile != second.process.pidfile
            assert PidFile.read(first.process.pidfile) == first.process.pid
            assert PidFile.read(second.process.pidfile) == second.process.pid
            assert first.transport.get("/health") == {"status": "ok"}

            _stop(second)
            assert is_alive(first.process.pid)
            assert first.transport.get("/health") == {"status": "ok"}
            assert not second.process.pidfile.exists()
        finally:
            for server in launched:
                if server.popen.poll() is None:
                    _stop(server)

    def test_missing_executable(self, launcher, temp_dir, model_path):
        with pytest.raises(LaunchFailed, match="not found"):
            launcher.launch(temp_dir / "llama-server", ServerArgs(model=model_path))

    def test_process_exits_during_startup(self, launcher, fake_server, model_path, runtime_dir, monkeypatch):
        """Test that an early exit fails the launch and leaves no pidfile behind."""
        monkeypatch.setenv("FAKE_EXIT", "3")
        with pytest.raises(LaunchFailed, match="code 3"):
            launcher.launch(fake_server, ServerArgs(model=model_path), TransportChoice.UNIX_SOCKET)
        assert list(runtime_dir.glob("*.pid")) == []

    def test_model_mismatch_kills_server(self, launcher, fake_server, model_path, runtime_dir, monkeypatch):
        """Test that a server reporting another model is stopped, leaving no orphan."""
        monkeypatch.setenv("FAKE_MODEL_PATH", "/models/completely-different.gguf")
        with pytest.raises(ModelMismatch) as exc_info:
            launcher.launch(fake_server, ServerArgs(model=model_path), TransportChoice.UNIX_SOCKET)

        assert exc_info.value.actual == "completely-different"
        assert find_pid_by_argv(["-m", model_path]) is None
        assert list(runtime_dir.glob("*.pid")) == []

    def test_relaunch_replaces_server_on_same_endpoint(self, launcher, fake_server, model_path):
        """Test that a server left on the endpoint is stopped before the new launch."""
        port = allocate_port()
        first = launcher.launch(fake_server, ServerArgs(model=model_path, port=port))
        second = None
        try:
            second = launcher.launch(fake_server, ServerArgs(model=model_path, port=port))
            assert first.popen.poll() is not None
            assert second.process.pid != first.process.pid
            assert PidFile.read(second.process.pidfile) == second.process.pid
        finally:
            if second is not None:
                _stop(second)
            if first.popen.poll() is None:
                first.popen.kill()
                first.popen.wait()

    def test_runtime_dir_defaults_to_executable_dir(self, fake_server):
        assert ProcessLauncher().runtime_dir(fake_server) == fake_server.parent
