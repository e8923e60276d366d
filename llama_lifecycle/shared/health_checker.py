import re
import subprocess
import time
from typing import Callable, Optional

from pydantic import ValidationError

from llama_lifecycle.entities.endpoints import PropsResponse
from llama_lifecycle.entities.server import ServerStatus
from llama_lifecycle.shared.errors import LaunchFailed, ModelMismatch, ReadinessTimeout, RemoteError, TransportError
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.protocols import TransportProtocol
from llama_lifecycle.shared.retry import Retry, RetryExhausted

logger = Logger.get(__name__)


class HealthChecker:
    """
    Utility class for performing health checks on servers and processes.
    Consolidates the readiness and liveness probes used by the launcher and supervisor.
    """

    @staticmethod
    def probe_status(transport: TransportProtocol, timeout: float = 5.0) -> ServerStatus:
        """
        Translate /health and /props into a ServerStatus.

        Args:
            transport: Transport to the server
            timeout: Per-request timeout in seconds

        Returns:
            loading for a 503 from /health, running with the model name for a
            200, offline for anything else
        """
        try:
            transport.request("GET", "/health", timeout=timeout)
        except RemoteError as e:
            if e.code == 503:
                return ServerStatus.loading()
            return ServerStatus.offline(f"/health returned {e.code}: {e.message}")
        except TransportError as e:
            return ServerStatus.offline(str(e))

        try:
            props = PropsResponse.model_validate(transport.request("GET", "/props", timeout=timeout) or {})
        except RemoteError as e:
            if e.code == 503:
                return ServerStatus.loading()
            return ServerStatus.offline(f"/props returned {e.code}: {e.message}")
        except (TransportError, ValidationError) as e:
            return ServerStatus.offline(str(e))

        if props.model_name is None:
            return ServerStatus.offline("No model path in /props response")
        return ServerStatus.running(props.model_name)

    @staticmethod
    def check_process_running(process: Optional[subprocess.Popen]) -> bool:
        """
        Check if a subprocess is still running.

        Args:
            process: The subprocess to check

        Returns:
            True if the process is running, False otherwise
        """
        if process is None:
            return False

        return_code = process.poll()
        if return_code is not None:
            logger.warning(f"Process has terminated with return code {return_code}")
            return False

        return True

    @staticmethod
    def _canonical_model_id(name: str) -> str:
        name = name.lower()
        if "." in name:
            name = name.rsplit(".", 1)[0]
        name = name.replace("gguf", "")
        return re.sub(r"[^a-z0-9]+", "_", name).strip("_")

    @staticmethod
    def model_ids_match(a: str, b: str) -> bool:
        """
        Compare two model identifiers loosely.

        Case, separators and a '.gguf' extension are ignored; otherwise at
        least 75% of the shorter identifier must appear in the longer one.
        """
        ca = HealthChecker._canonical_model_id(a)
        cb = HealthChecker._canonical_model_id(b)
        if not ca or not cb:
            return False
        if ca == cb:
            return True
        short, long = (ca, cb) if len(ca) <= len(cb) else (cb, ca)
        min_match = -(-len(short) * 75 // 100)
        for length in range(len(short), min_match - 1, -1):
            for start in range(len(short) - length + 1):
                if short[start:start + length] in long:
                    return True
        return False

    @staticmethod
    def wait_until_ready(
        transport: TransportProtocol,
        process: Optional[subprocess.Popen] = None,
        deadline: float = 45.0,
        expected_model: Optional[str] = None,
        initial_delay: float = 0.1,
        max_delay: float = 1.0,
        probe_timeout: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> ServerStatus:
        """
        Poll the server until it reports running.

        Args:
            transport: Transport to the server
            process: The server process; its exit aborts the wait
            deadline: Total time budget in seconds
            expected_model: Model name the server must report
            initial_delay: First backoff delay
            max_delay: Backoff cap
            probe_timeout: Per-request timeout of each probe
            sleep: Sleep function (injectable for tests)

        Returns:
            The running status

        Raises:
            LaunchFailed: If the process exited while waiting
            ModelMismatch: If the server runs a different model
            ReadinessTimeout: If the deadline passed first
        """
        def probe() -> ServerStatus:
            if process is not None and not HealthChecker.check_process_running(process):
                raise LaunchFailed(f"Server process exited with code {process.returncode} during startup")
            status = HealthChecker.probe_status(transport, timeout=probe_timeout)
            logger.debug(f"Readiness probe of {transport.endpoint}: {status.state}")
            return status

        retry = Retry(deadline=deadline, initial_delay=initial_delay, max_delay=max_delay, sleep=sleep)
        try:
            status = retry.run(probe, is_done=lambda s: s.ready)
        except RetryExhausted as e:
            raise ReadinessTimeout(e.elapsed, e.last_result.state if e.last_result else None) from e

        if expected_model and status.model and not HealthChecker.model_ids_match(status.model, expected_model):
            raise ModelMismatch(expected_model, status.model)
        return status
