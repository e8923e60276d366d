"""
Tests for the StartServer use case.
"""
import subprocess
from pathlib import Path
from unittest.mock import Mock

import pytest

from llama_lifecycle.entities.resource_plan import PlanOverrides
from llama_lifecycle.entities.server import ServerProcess, ServerState, TransportKind
from llama_lifecycle.entities.server_args import ServerArgs
from llama_lifecycle.entities.toolchain import (
    BuildMode,
    BuildStatus,
    CachedBuild,
    ComputeBackend,
    ComputeBackendConfig,
    ToolchainSpec,
)
from llama_lifecycle.frameworks_drivers.config import Config
from llama_lifecycle.frameworks_drivers.resource_planner import ResourcePlanner
from llama_lifecycle.frameworks_drivers.server_launcher import LaunchedServer
from llama_lifecycle.frameworks_drivers.server_registry import ProcessRegistry
from llama_lifecycle.shared.errors import BuildUnavailable, InsufficientResources
from llama_lifecycle.use_cases.start_server import ServerHandle, StartServer, StartServerRequest


@pytest.fixture
def config(sample_config_data):
    sample_config_data["launch"]["health_interval"] = 60
    return Config(**sample_config_data)


@pytest.fixture
def build(temp_dir):
    spec = ToolchainSpec(repo_tag="b6097", backend=ComputeBackend.CUDA, platform="linux-x64")
    return CachedBuild(spec=spec, executable=temp_dir / "bin" / "llama-server", sha256="a" * 64,
                       status=BuildStatus.INSTALLED)


@pytest.fixture
def store(build):
    store = Mock()
    store.spec_for.return_value = build.spec
    store.resolve.return_value = build
    return store


@pytest.fixture
def detector():
    detector = Mock()
    detector.resolve.return_value = ComputeBackend.CUDA
    return detector


@pytest.fixture
def monitor(gpu_host):
    monitor = Mock()
    monitor.snapshot.return_value = gpu_host
    return monitor


@pytest.fixture
def remote():
    remote = Mock()
    remote.try_read.return_value = None
    return remote


@pytest.fixture
def launcher(temp_dir):
    def launch(executable, args, transport_choice=None):
        popen = Mock(spec=subprocess.Popen)
        popen.pid = 4242
        popen.returncode = None
        popen.poll.return_value = None
        popen.wait.return_value = 0
        process = ServerProcess(
            pid=4242,
            transport=TransportKind.UNIX_SOCKET,
            endpoint=str(temp_dir / "llama-server-abc.sock"),
            args=args.to_argv(),
            executable=Path(executable),
            model_name=args.model_name,
        )
        return LaunchedServer(process=process, popen=popen, transport=Mock())

    launcher = Mock()
    launcher.launch.side_effect = launch
    return launcher


@pytest.fixture
def use_case(config, store, detector, monitor, launcher, remote):
    return StartServer(
        config=config,
        store=store,
        planner=ResourcePlanner(config.planner),
        launcher=launcher,
        registry=ProcessRegistry(),
        monitor=monitor,
        detector=detector,
        remote=remote,
    )


class TestStartServer:
    """Test cases for StartServer.execute."""

    def test_plans_and_launches(self, use_case, store, detector, monitor, launcher, build, small_model):
        """Test the full path: backend, toolchain, plan, launch and supervision."""
        request = StartServerRequest(args=ServerArgs(model="/models/tiny.gguf"), metadata=small_model)

        with use_case.execute(request) as handle:
            assert isinstance(handle, ServerHandle)
            assert handle.state == ServerState.READY
            assert handle.pid == 4242
            assert handle.build is build
            assert handle.plan.gpu_layers == 16
            assert handle.plan.ctx_size == 2048
            assert use_case.registry.get(4242) is handle.supervisor

            executable, args, _ = launcher.launch.call_args.args
            assert executable == build.executable
            assert args.gpu_layers == 16
            assert args.ctx_size == 2048

        assert handle.state == ServerState.STOPPED
        assert len(use_case.registry) == 0
        detector.resolve.assert_called_once_with(ComputeBackendConfig.CPU, BuildMode.INSTALL_ONLY)
        store.resolve.assert_called_once_with(build.spec, mode=BuildMode.INSTALL_ONLY, build_args=None)
        monitor.snapshot.assert_called_once_with("cuda")

    def test_request_overrides_configuration(self, use_case, detector, store, small_model):
        request = StartServerRequest(
            args=ServerArgs(model="/models/tiny.gguf"),
            metadata=small_model,
            backend=ComputeBackendConfig.CUDA,
            mode=BuildMode.BUILD_ONLY,
            repo_tag="b7000",
            build_args=["-DGGML_NATIVE=ON"],
        )
        use_case.execute(request).stop()
        detector.resolve.assert_called_once_with(ComputeBackendConfig.CUDA, BuildMode.BUILD_ONLY)
        store.spec_for.assert_called_once_with(ComputeBackend.CUDA, "b7000")
        assert store.resolve.call_args.kwargs["build_args"] == ["-DGGML_NATIVE=ON"]

    def test_forced_values_survive_planning(self, use_case, launcher, small_model):
        request = StartServerRequest(
            args=ServerArgs(model="/models/tiny.gguf"),
            metadata=small_model,
            overrides=PlanOverrides(gpu_layers=4, ctx_size=1024),
        )
        use_case.execute(request).stop()
        args = launcher.launch.call_args.args[1]
        assert args.gpu_layers == 4
        assert args.ctx_size == 1024

    def test_metadata_from_gguf_header(self, use_case, launcher, gguf_file):
        use_case.execute(StartServerRequest(args=ServerArgs(model=str(gguf_file)))).stop()
        args = launcher.launch.call_args.args[1]
        assert args.gpu_layers == 4

    def test_without_metadata_applies_overrides(self, use_case, launcher, monitor, remote):
        """Test that a model without readable metadata launches with forced values and planned threads."""
        request = StartServerRequest(
            args=ServerArgs(hf_repo="ggml-org/tiny-model:Q8_0"),
            overrides=PlanOverrides(use_gpu=False, ctx_size=512),
        )
        handle = use_case.execute(request)
        handle.stop()
        args = launcher.launch.call_args.args[1]
        assert args.gpu_layers == 0
        assert args.ctx_size == 512
        assert handle.plan is None
        assert args.threads == 5
        assert args.threads_batch == 5
        monitor.snapshot.assert_called_once_with("cuda")
        remote.try_read.assert_called_once_with(request.args)

    def test_remote_metadata_plans_download(self, use_case, launcher, remote, small_model):
        remote.try_read.return_value = small_model
        request = StartServerRequest(args=ServerArgs(model_url="https://example.com/tiny.Q4_K_M.gguf"))
        handle = use_case.execute(request)
        handle.stop()
        assert handle.plan is not None
        assert launcher.launch.call_args.args[1].gpu_layers == 16

    def test_remote_metadata_disabled(self, use_case, remote, config):
        config.planner.remote_metadata = False
        use_case.execute(StartServerRequest(args=ServerArgs(model_url="https://example.com/tiny.gguf"))).stop()
        remote.try_read.assert_not_called()

    def test_explicit_args_go_through_planner(self, use_case, launcher, small_model):
        """Test that values set on ServerArgs are planned as forced values rather than overwritten."""
        request = StartServerRequest(args=ServerArgs(model="/models/tiny.gguf", gpu_layers=4, ctx_size=1024),
                                     metadata=small_model)
        handle = use_case.execute(request)
        handle.stop()
        args = launcher.launch.call_args.args[1]
        assert (args.gpu_layers, args.ctx_size) == (4, 1024)
        assert handle.plan.gpu_layers == 4

    def test_explicit_args_checked_against_model(self, use_case, launcher, small_model):
        request = StartServerRequest(args=ServerArgs(model="/models/tiny.gguf", gpu_layers=99), metadata=small_model)
        with pytest.raises(InsufficientResources):
            use_case.execute(request)
        launcher.launch.assert_not_called()

    def test_explicit_threads_clamped_to_host(self, use_case, launcher, small_model):
        request = StartServerRequest(args=ServerArgs(model="/models/tiny.gguf", threads=64), metadata=small_model)
        use_case.execute(request).stop()
        assert launcher.launch.call_args.args[1].threads == 16

    def test_auto_threads_left_to_server(self, use_case, launcher, small_model):
        request = StartServerRequest(args=ServerArgs(model="/models/tiny.gguf", threads=-1), metadata=small_model)
        use_case.execute(request).stop()
        assert launcher.launch.call_args.args[1].threads == -1

    def test_plain_telemetry_provider(self, config, store, detector, launcher, remote, small_model, cpu_host):
        """Test that any object with a snapshot method can supply telemetry."""
        class FixedTelemetry:
            def snapshot(self, backend="cuda"):
                return cpu_host

        use_case = StartServer(config=config, store=store, launcher=launcher, registry=ProcessRegistry(),
                               monitor=FixedTelemetry(), detector=detector, remote=remote)
        handle = use_case.execute(StartServerRequest(args=ServerArgs(model="/models/tiny.gguf"), metadata=small_model))
        handle.stop()
        assert handle.plan.device == "cpu"
        assert launcher.launch.call_args.args[1].gpu_layers == 0

    def test_explicit_executable_skips_toolchain(self, use_case, store, launcher, small_model, temp_dir):
        custom = str(temp_dir / "my-llama-server")
        request = StartServerRequest(args=ServerArgs(model="/models/tiny.gguf"), metadata=small_model,
                                     executable=custom)
        handle = use_case.execute(request)
        handle.stop()
        store.resolve.assert_not_called()
        assert handle.build is None
        assert launcher.launch.call_args.args[0] == custom

    def test_model_too_large(self, use_case, launcher, small_model, monitor):
        monitor.snapshot.return_value = monitor.snapshot.return_value.model_copy(
            update={"gpus": [], "available_ram_bytes": 1024}
        )
        with pytest.raises(InsufficientResources):
            use_case.execute(StartServerRequest(args=ServerArgs(model="/models/tiny.gguf"), metadata=small_model))
        launcher.launch.assert_not_called()

    def test_acquisition_failure(self, use_case, store, launcher):
        store.resolve.side_effect = BuildUnavailable("no prebuilt")
        with pytest.raises(BuildUnavailable):
            use_case.execute(StartServerRequest(args=ServerArgs(model="/models/tiny.gguf")))
        launcher.launch.assert_not_called()


class TestServerHandle:
    """Test cases for ServerHandle delegation."""

    def test_delegates_endpoint_methods(self, use_case, small_model):
        handle = use_case.execute(StartServerRequest(args=ServerArgs(model="/models/tiny.gguf"), metadata=small_model))
        try:
            handle.client.transport.request.return_value = {"tokens": [1, 2, 3]}
            assert handle.tokenize(content="abc").tokens == [1, 2, 3]
            assert "4242" in repr(handle)
            with pytest.raises(AttributeError):
                handle._private
        finally:
            handle.stop()
