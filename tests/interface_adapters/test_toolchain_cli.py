"""
Tests for the llama-toolchain command line.
"""
from unittest.mock import patch

import pytest

from llama_lifecycle.entities.toolchain import (
    BuildMode,
    BuildStatus,
    CachedBuild,
    ComputeBackend,
    ComputeBackendConfig,
    ToolchainSpec,
)
from llama_lifecycle.interface_adapters import toolchain_cli
from llama_lifecycle.shared.errors import (
    EXIT_ACQUISITION,
    EXIT_INTERRUPTED,
    EXIT_INVALID_CONFIG,
    EXIT_OK,
    BuildUnavailable,
)

MANAGER = "llama_lifecycle.interface_adapters.toolchain_cli.ManageToolchain"


@pytest.fixture
def build(temp_dir):
    spec = ToolchainSpec(repo_tag="b6097", backend=ComputeBackend.CPU, platform="linux-x64")
    return CachedBuild(spec=spec, executable=temp_dir / "bin" / "llama-server", sha256="ab" * 32,
                       status=BuildStatus.INSTALLED)


class TestToolchainCli:
    """Test cases for llama-toolchain."""

    def test_no_command(self, capsys):
        assert toolchain_cli.main([]) == EXIT_INVALID_CONFIG
        assert "install" in capsys.readouterr().out

    def test_install(self, temp_dir, build, capsys):
        with patch(MANAGER) as mock_manager:
            mock_manager.return_value.install.return_value = build
            code = toolchain_cli.main([
                "install", "--root", str(temp_dir), "--backend", "cpu", "--mode", "install_only",
                "--repo-tag", "b6097", "--build-arg=-DA=1", "--build-arg=-DB=2",
            ])

        assert code == EXIT_OK
        mock_manager.return_value.install.assert_called_once_with(
            ComputeBackendConfig.CPU, "b6097", BuildMode.INSTALL_ONLY, ["-DA=1", "-DB=2"],
        )
        assert "llama_cpp_b6097_cpu" in capsys.readouterr().out

    def test_project_override(self, temp_dir, build):
        with patch(MANAGER) as mock_manager:
            mock_manager.return_value.install.return_value = build
            toolchain_cli.main(["install", "--root", str(temp_dir), "--project", "myapp"])
        store = mock_manager.call_args.args[0]
        assert store.root == (temp_dir / "myapp").resolve()

    def test_install_failure_exit_code(self, temp_dir):
        """Test that acquisition failures map to their exit code."""
        with patch(MANAGER) as mock_manager:
            mock_manager.return_value.install.side_effect = BuildUnavailable("no prebuilt")
            assert toolchain_cli.main(["install", "--root", str(temp_dir)]) == EXIT_ACQUISITION

    def test_validate(self, temp_dir, build, capsys):
        with patch(MANAGER) as mock_manager:
            mock_manager.return_value.validate.return_value = build
            assert toolchain_cli.main(["validate", "--root", str(temp_dir)]) == EXIT_OK
        assert "valid" in capsys.readouterr().out

    def test_remove_nothing(self, temp_dir, capsys):
        assert toolchain_cli.main(["remove", "--root", str(temp_dir), "--backend", "cpu"]) == EXIT_OK
        assert "Nothing to remove" in capsys.readouterr().out

    def test_list_empty(self, temp_dir, capsys):
        assert toolchain_cli.main(["list", "--root", str(temp_dir)]) == EXIT_OK
        assert "No cached builds" in capsys.readouterr().out

    def test_list(self, temp_dir, build, capsys):
        with patch(MANAGER) as mock_manager:
            mock_manager.return_value.list.return_value = [build]
            toolchain_cli.main(["list", "--root", str(temp_dir)])
        out = capsys.readouterr().out
        assert "llama_cpp_b6097_cpu" in out
        assert "installed" in out

    def test_bad_config_file(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text("{broken")
        assert toolchain_cli.main(["list", "--config", str(path)]) == EXIT_INVALID_CONFIG

    def test_interrupted(self, temp_dir):
        with patch(MANAGER) as mock_manager:
            mock_manager.return_value.install.side_effect = KeyboardInterrupt
            assert toolchain_cli.main(["install", "--root", str(temp_dir)]) == EXIT_INTERRUPTED

    def test_unknown_backend_rejected(self):
        with pytest.raises(SystemExit):
            toolchain_cli.main(["install", "--backend", "vulkan"])
