"""
llama-toolchain: install, validate, remove and list cached llama-server builds.
"""
import argparse
import sys
from typing import List, Optional

from llama_lifecycle.entities.toolchain import BuildMode, ComputeBackendConfig
from llama_lifecycle.frameworks_drivers.config import Config
from llama_lifecycle.frameworks_drivers.toolchain_store import ToolchainStore
from llama_lifecycle.shared.errors import EXIT_INTERRUPTED, EXIT_INVALID_CONFIG, EXIT_OK, exit_code_for
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.use_cases.manage_toolchain import ManageToolchain

logger = Logger.get(__name__)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--root", default=None, help="Cache root (default: LLAMA_CPP_INSTALL_DIR or the user data dir)")
    common.add_argument("--project", default=None, help="Cache namespace for one application")
    common.add_argument("--repo-tag", default=None, help="llama.cpp release tag (default: b6097)")
    common.add_argument(
        "--backend", choices=[b.value for b in ComputeBackendConfig], default=None,
        help="Compute backend (default: default)",
    )
    common.add_argument(
        "--mode", choices=[m.value for m in BuildMode], default=None,
        help="Acquisition mode (default: build_or_install)",
    )
    common.add_argument(
        "--build-arg", action="append", dest="build_args", default=None,
        help="Extra CMake argument for source builds, as --build-arg=-DNAME=VALUE; repeatable",
    )
    common.add_argument("--config", default=None, help="Path of a JSON config file")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(prog="llama-toolchain", description="Manage cached llama-server builds")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("install", parents=[common], help="Download or build llama-server")
    subparsers.add_parser("validate", parents=[common], help="Check that a valid build is cached")
    subparsers.add_parser("remove", parents=[common], help="Delete a cached build")
    subparsers.add_parser("list", parents=[common], help="List cached builds")
    return parser


def _manager(args: argparse.Namespace) -> ManageToolchain:
    config = Config.load(args.config)
    toolchain = config.toolchain
    if args.project:
        toolchain = toolchain.model_copy(update={"project": args.project})
    return ManageToolchain(ToolchainStore(toolchain, cache_root=args.root))


def _backend(args: argparse.Namespace) -> Optional[ComputeBackendConfig]:
    return ComputeBackendConfig(args.backend) if args.backend else None


def _mode(args: argparse.Namespace) -> Optional[BuildMode]:
    return BuildMode(args.mode) if args.mode else None


def cmd_install(args: argparse.Namespace) -> int:
    build = _manager(args).install(_backend(args), args.repo_tag, _mode(args), args.build_args)
    print(f"{build.spec.entry_name}: {build.executable} ({build.status.value})")
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    build = _manager(args).validate(_backend(args), args.repo_tag, _mode(args), args.build_args)
    print(f"{build.spec.entry_name}: valid ({build.executable}, sha256 {build.sha256[:12]})")
    return EXIT_OK


def cmd_remove(args: argparse.Namespace) -> int:
    manager = _manager(args)
    if manager.remove(_backend(args), args.repo_tag):
        print("Removed")
    else:
        print("Nothing to remove")
    return EXIT_OK


def cmd_list(args: argparse.Namespace) -> int:
    builds = _manager(args).list()
    if not builds:
        print("No cached builds")
        return EXIT_OK
    print(f"{'ENTRY':<36} {'PLATFORM':<14} {'STATUS':<16} EXECUTABLE")
    for build in builds:
        print(f"{build.spec.entry_name:<36} {build.spec.platform:<14} {build.status.value:<16} {build.executable}")
    return EXIT_OK


COMMANDS = {
    "install": cmd_install,
    "validate": cmd_validate,
    "remove": cmd_remove,
    "list": cmd_list,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_INVALID_CONFIG
    if args.verbose:
        Logger.set_level("DEBUG")

    try:
        return COMMANDS[args.command](args)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        return exit_code_for(e)


if __name__ == "__main__":
    sys.exit(main())
