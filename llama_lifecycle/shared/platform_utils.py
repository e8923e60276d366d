"""
Host platform helpers: OS/arch naming, executable names and per-user directories.
"""
import os
import platform
import sys
from pathlib import Path

APP_NAME = "llama-lifecycle"
SERVER_EXECUTABLE = "llama-server"

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


class PlatformUtils:
    """Static helpers describing the host platform."""

    @staticmethod
    def os_name() -> str:
        if sys.platform.startswith("linux"):
            return "linux"
        if sys.platform == "darwin":
            return "macos"
        if sys.platform in ("win32", "cygwin"):
            return "windows"
        return sys.platform

    @staticmethod
    def arch() -> str:
        machine = platform.machine().lower()
        return _ARCH_ALIASES.get(machine, machine)

    @staticmethod
    def host_platform() -> str:
        """Platform identifier in the form '<os>-<arch>', e.g. 'linux-x64'."""
        return f"{PlatformUtils.os_name()}-{PlatformUtils.arch()}"

    @staticmethod
    def is_windows() -> bool:
        return PlatformUtils.os_name() == "windows"

    @staticmethod
    def is_macos() -> bool:
        return PlatformUtils.os_name() == "macos"

    @staticmethod
    def server_executable_name() -> str:
        return f"{SERVER_EXECUTABLE}.exe" if PlatformUtils.is_windows() else SERVER_EXECUTABLE

    @staticmethod
    def user_data_dir() -> Path:
        """Per-user data directory used as the default toolchain cache root."""
        os_name = PlatformUtils.os_name()
        if os_name == "windows":
            base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
            return Path(base) / APP_NAME
        if os_name == "macos":
            return Path.home() / "Library" / "Application Support" / APP_NAME
        base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
        return Path(base) / APP_NAME

    @staticmethod
    def user_config_dir() -> Path:
        os_name = PlatformUtils.os_name()
        if os_name == "windows":
            base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
            return Path(base) / APP_NAME
        if os_name == "macos":
            return Path.home() / "Library" / "Application Support" / APP_NAME
        base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
        return Path(base) / APP_NAME
