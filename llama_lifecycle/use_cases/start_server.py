from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from llama_lifecycle.entities.resource_plan import ModelMetadata, PlanOverrides, ResourcePlan
from llama_lifecycle.entities.server import ServerState, TransportChoice
from llama_lifecycle.entities.server_args import ServerArgs
from llama_lifecycle.entities.toolchain import BuildMode, CachedBuild, ComputeBackendConfig
from llama_lifecycle.frameworks_drivers.backend_detector import BackendDetector
from llama_lifecycle.frameworks_drivers.config import Config
from llama_lifecycle.frameworks_drivers.endpoint_client import AsyncLlamaClient, LlamaClient
from llama_lifecycle.frameworks_drivers.host_monitor import HostMonitor
from llama_lifecycle.frameworks_drivers.remote_metadata import RemoteMetadataReader
from llama_lifecycle.frameworks_drivers.resource_planner import ResourcePlanner
from llama_lifecycle.frameworks_drivers.server_launcher import ProcessLauncher
from llama_lifecycle.frameworks_drivers.server_registry import ProcessRegistry
from llama_lifecycle.frameworks_drivers.server_supervisor import ProcessSupervisor
from llama_lifecycle.frameworks_drivers.toolchain_store import ToolchainStore
from llama_lifecycle.shared.gguf_utils import GGUFUtils
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.protocols import TelemetryProviderProtocol

logger = Logger.get(__name__)

_PLANNED_FIELDS = ("gpu_layers", "ctx_size", "threads", "threads_batch")


class StartServerRequest(BaseModel):
    """Everything needed to bring up one llama-server.

    Attributes:
        args: Server arguments; planned fields are filled in unless forced.
        backend: Requested compute backend (None for the configured default).
        mode: Acquisition mode (None for the configured default).
        repo_tag: llama.cpp release tag (None for the configured default).
        build_args: Extra CMake arguments for source builds.
        metadata: Model facts for planning; read from the GGUF header of a local model when omitted.
        overrides: User-forced plan values.
        transport: Transport preference (None for the configured default).
        executable: Use this llama-server binary instead of resolving a toolchain.
    """

    model_config = ConfigDict(protected_namespaces=())

    args: ServerArgs
    backend: Optional[ComputeBackendConfig] = None
    mode: Optional[BuildMode] = None
    repo_tag: Optional[str] = None
    build_args: Optional[List[str]] = None
    metadata: Optional[ModelMetadata] = None
    overrides: PlanOverrides = Field(default_factory=PlanOverrides)
    transport: Optional[TransportChoice] = None
    executable: Optional[str] = None


class ServerHandle:
    """
    A running server together with a client for its endpoint.

    Endpoint methods (completion, tokenize, embeddings, ...) are delegated to
    the LlamaClient; `aio` gives the awaitable variants.
    """

    def __init__(self, supervisor: ProcessSupervisor, client: LlamaClient,
                 build: Optional[CachedBuild] = None, plan: Optional[ResourcePlan] = None):
        self.supervisor = supervisor
        self.client = client
        self.build = build
        self.plan = plan
        self.aio = AsyncLlamaClient(client)

    @property
    def pid(self) -> int:
        return self.supervisor.pid

    @property
    def endpoint(self) -> str:
        return self.supervisor.process.endpoint

    @property
    def state(self) -> ServerState:
        return self.supervisor.state

    def stop(self, timeout: Optional[float] = None) -> None:
        self.supervisor.stop(timeout)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_") or name in ("supervisor", "client"):
            raise AttributeError(name)
        return getattr(self.client, name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def __repr__(self) -> str:
        return f"ServerHandle(pid={self.pid}, endpoint={self.endpoint}, state={self.state.value})"


class StartServer:
    """Resolve a toolchain, plan resources, launch llama-server and supervise it."""

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[ToolchainStore] = None,
        planner: Optional[ResourcePlanner] = None,
        launcher: Optional[ProcessLauncher] = None,
        registry: Optional[ProcessRegistry] = None,
        monitor: Optional[TelemetryProviderProtocol] = None,
        detector: Optional[BackendDetector] = None,
        remote: Optional[RemoteMetadataReader] = None,
    ):
        self.config = config or Config()
        self.store = store or ToolchainStore(self.config.toolchain)
        self.planner = planner or ResourcePlanner(self.config.planner)
        self.launcher = launcher or ProcessLauncher(self.config.launch, client_timeout=self.config.client.timeout)
        self.registry = registry if registry is not None else ProcessRegistry()
        self.monitor = monitor or HostMonitor()
        self.detector = detector or BackendDetector()
        self.remote = remote or RemoteMetadataReader()

    def _metadata(self, request: StartServerRequest) -> Optional[ModelMetadata]:
        if request.metadata is not None:
            return request.metadata
        if request.args.model:
            return GGUFUtils.try_read_metadata(request.args.model)
        if self.config.planner.remote_metadata:
            return self.remote.try_read(request.args)
        return None

    @staticmethod
    def _forced_overrides(args: ServerArgs, overrides: PlanOverrides) -> PlanOverrides:
        """Fold values set directly on the arguments into the overrides, which take precedence."""
        explicit = {}
        for key in _PLANNED_FIELDS:
            value = getattr(args, key)
            if value is None or getattr(overrides, key) is not None:
                continue
            # -1 threads and a 0 context defer to llama-server's own defaults
            if value > 0 or (key == "gpu_layers" and value == 0):
                explicit[key] = value
        return overrides.model_copy(update=explicit) if explicit else overrides

    @staticmethod
    def _apply_overrides(args: ServerArgs, overrides: PlanOverrides) -> ServerArgs:
        forced = {
            key: value for key, value in overrides.model_dump(exclude={"use_gpu"}).items()
            if value is not None
        }
        if overrides.use_gpu is False:
            forced["gpu_layers"] = 0
        if not forced:
            return args
        return ServerArgs.model_validate({**args.model_dump(), **forced})

    def execute(self, request: StartServerRequest) -> ServerHandle:
        """
        Bring up a ready, supervised llama-server.

        Args:
            request: What to start and with which toolchain

        Returns:
            A handle owning the server; stop it or use it as a context manager

        Raises:
            AcquisitionError: If no llama-server build could be resolved
            InsufficientResources: If the model does not fit the host
            LaunchError: If the server did not come up with the expected model
        """
        mode = request.mode or self.config.toolchain.mode
        build: Optional[CachedBuild] = None
        if request.executable:
            executable = request.executable
            backend = self.detector.resolve(request.backend or self.config.toolchain.backend, BuildMode.INSTALL_ONLY)
        else:
            backend = self.detector.resolve(request.backend or self.config.toolchain.backend, mode)
            spec = self.store.spec_for(backend, request.repo_tag)
            build = self.store.resolve(spec, mode=mode, build_args=request.build_args)
            executable = build.executable

        overrides = self._forced_overrides(request.args, request.overrides)
        # forced fields are refilled from the plan, which honours and bounds them
        args = request.args.model_copy(
            update={key: None for key in _PLANNED_FIELDS if getattr(overrides, key) is not None}
        )
        plan: Optional[ResourcePlan] = None
        metadata = self._metadata(request)
        telemetry = self.monitor.snapshot(backend.value)
        if metadata is not None:
            plan = self.planner.plan(metadata, telemetry, overrides)
            args = args.apply_plan(plan)
        else:
            logger.info(f"No metadata for model {args.model_name}; planning threads only")
            threads, threads_batch = self.planner.threads_for(telemetry, overrides)
            planned = {"threads": threads, "threads_batch": threads_batch}
            args = self._apply_overrides(args, overrides.model_copy(
                update={key: value for key, value in planned.items() if getattr(args, key) is None}
            ))

        launched = self.launcher.launch(executable, args, request.transport)
        supervisor = ProcessSupervisor(
            launched.process,
            launched.popen,
            launched.transport,
            registry=self.registry,
            stop_timeout=self.config.launch.stop_timeout,
        )
        supervisor.mark_ready()
        supervisor.start_monitoring(self.config.launch.health_interval)

        client = LlamaClient(launched.transport, timeout=self.config.client.timeout)
        return ServerHandle(supervisor, client, build=build, plan=plan)
