import pytest

from llama_lifecycle.shared.errors import (
    EXIT_ACQUISITION,
    EXIT_CONNECTION,
    EXIT_INTERRUPTED,
    EXIT_INVALID_CONFIG,
    EXIT_LAUNCH,
    EXIT_PLANNING,
    EXIT_UNEXPECTED,
    AcquisitionError,
    BackendUnavailable,
    BuildFailed,
    DownloadFailed,
    InsufficientResources,
    IntegrityError,
    InvalidConfig,
    LaunchError,
    ReadinessTimeout,
    RemoteError,
    ServerCrashed,
    TerminationTimeout,
    TransportTimeout,
    exit_code_for,
)


class TestExitCodes:
    """Test cases for mapping error families to exit codes."""

    @pytest.mark.parametrize("error, code", [
        (InvalidConfig("planner.ctx_size", "must be positive"), EXIT_INVALID_CONFIG),
        (BackendUnavailable("CUDA", "linux", "x64", "no devices"), EXIT_ACQUISITION),
        (IntegrityError("/tmp/a.zip", "aa", "bb"), EXIT_ACQUISITION),
        (InsufficientResources("too big", 10, 5), EXIT_PLANNING),
        (ReadinessTimeout(3.0, "loading"), EXIT_LAUNCH),
        (ServerCrashed(42, -9), EXIT_CONNECTION),
        (TransportTimeout("slow"), EXIT_CONNECTION),
        (KeyboardInterrupt(), EXIT_INTERRUPTED),
        (RuntimeError("?"), EXIT_UNEXPECTED),
    ])
    def test_exit_code_for(self, error, code):
        assert exit_code_for(error) == code


class TestErrorDetails:
    """Test cases for the structured fields carried by errors."""

    def test_families(self):
        assert issubclass(DownloadFailed, AcquisitionError)
        assert issubclass(ReadinessTimeout, LaunchError)

    def test_termination_timeout_fields(self):
        error = TerminationTimeout("stop", 2.5, [10, 11])
        assert error.leftovers == [10, 11]
        assert "10" in str(error)

    def test_remote_error_fields(self):
        error = RemoteError(400, "bad prompt", body={"error": {}}, error_type="invalid_request_error")
        assert error.code == 400
        assert error.error_type == "invalid_request_error"
        assert "400" in str(error)

    def test_server_crashed_returncode(self):
        assert ServerCrashed(7, 1).returncode == 1

    def test_build_failed_keeps_stderr(self):
        error = BuildFailed("cmake --build build", "line1\nerror: boom")
        assert error.stderr.endswith("boom")
        assert "boom" in str(error)

    def test_download_failed_attempts(self):
        error = DownloadFailed("https://example.com/a.zip", 3, "timeout")
        assert error.attempts == 3
