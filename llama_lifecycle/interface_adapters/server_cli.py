"""
llama-server-ctl: start, stop, list and kill llama-server processes.
"""
import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional

from llama_lifecycle.entities.resource_plan import PlanOverrides
from llama_lifecycle.entities.server import ServerState, TransportChoice
from llama_lifecycle.entities.server_args import DEFAULT_MODEL_URL, ServerArgs
from llama_lifecycle.entities.toolchain import BuildMode, ComputeBackendConfig
from llama_lifecycle.frameworks_drivers.config import Config
from llama_lifecycle.frameworks_drivers.pidfiles import PidFile, PidFileEntry
from llama_lifecycle.frameworks_drivers.process_utils import (
    get_all_server_pids,
    is_alive,
    kill_all_servers,
    terminate_process,
)
from llama_lifecycle.frameworks_drivers.toolchain_store import ToolchainStore
from llama_lifecycle.shared.errors import (
    EXIT_INTERRUPTED,
    EXIT_INVALID_CONFIG,
    EXIT_OK,
    InvalidConfig,
    exit_code_for,
)
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.platform_utils import PlatformUtils
from llama_lifecycle.use_cases.start_server import StartServer, StartServerRequest

logger = Logger.get(__name__)

WAIT_INTERVAL = 0.5


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="Path of a JSON config file")
    common.add_argument("--root", default=None, help="Toolchain cache root")
    common.add_argument("--runtime-dir", default=None, help="Directory holding pidfiles and logs")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(prog="llama-server-ctl", description="Run and manage llama-server processes")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    p_start = subparsers.add_parser("start", parents=[common], help="Start llama-server and wait for Ctrl-C")
    source = p_start.add_mutually_exclusive_group()
    source.add_argument("-m", "--local-model-path", default=None, help="Path of a local GGUF model")
    source.add_argument("-u", "--model-url", default=None, help=f"URL of a GGUF model (default: {DEFAULT_MODEL_URL})")
    source.add_argument("--hf-repo", default=None, help="Hugging Face model 'user/model[:quant]'")
    p_start.add_argument("--http", action="store_true", help="Listen on TCP instead of a Unix socket")
    p_start.add_argument("--webui", action="store_true", help="Serve the llama-server web UI (implies --http)")
    p_start.add_argument("--port", type=int, default=None, help="TCP port (implies --http)")
    p_start.add_argument("--ctx-size", type=int, default=None, help="Force the context size")
    p_start.add_argument("--gpu-layers", type=int, default=None, help="Force the number of offloaded layers")
    p_start.add_argument("--threads", type=int, default=None, help="Force the number of generation threads")
    p_start.add_argument("--load-budget-secs", type=float, default=120.0,
                         help="Seconds allowed for a local model to load (default: 120)")
    p_start.add_argument("--download-budget-secs", type=float, default=300.0,
                         help="Seconds allowed when the model is downloaded (default: 300)")
    p_start.add_argument("--backend", choices=[b.value for b in ComputeBackendConfig], default=None,
                         help="Compute backend of the llama-server build")
    p_start.add_argument("--mode", choices=[m.value for m in BuildMode], default=None, help="Acquisition mode")
    p_start.add_argument("--repo-tag", default=None, help="llama.cpp release tag")
    p_start.add_argument("--executable", default=None, help="Use this llama-server binary")

    p_stop = subparsers.add_parser("stop", parents=[common], help="Stop llama-server processes")
    target = p_stop.add_mutually_exclusive_group(required=True)
    target.add_argument("--pid", type=int, default=None, help="Stop the server with this pid")
    target.add_argument("--all", action="store_true", help="Stop every llama-server process")

    subparsers.add_parser("list", parents=[common], help="List running servers and their pidfiles")
    subparsers.add_parser("kill-all", parents=[common], help="Kill every llama-server process")
    return parser


def _runtime_dirs(args: argparse.Namespace, config: Config) -> List[Path]:
    if args.runtime_dir:
        return [Path(args.runtime_dir)]
    if config.launch.runtime_dir:
        return [Path(config.launch.runtime_dir)]
    store = ToolchainStore(config.toolchain, cache_root=args.root)
    return store.runtime_dirs()


def _pidfiles(args: argparse.Namespace, config: Config) -> List[PidFileEntry]:
    name = Path(PlatformUtils.server_executable_name()).stem
    entries = []
    for runtime_dir in _runtime_dirs(args, config):
        entries.extend(PidFile.discover(runtime_dir, name))
    return entries


def _load_config(args: argparse.Namespace) -> Config:
    config = Config.load(args.config)
    if args.runtime_dir:
        config.launch.runtime_dir = args.runtime_dir
    return config


def _server_args(args: argparse.Namespace) -> ServerArgs:
    fields = {
        "model": args.local_model_path,
        "model_url": args.model_url,
        "hf_repo": args.hf_repo,
        "webui": args.webui,
        "port": args.port,
    }
    if args.http and args.port is None:
        fields["host"] = "127.0.0.1"
    try:
        return ServerArgs.default(**{k: v for k, v in fields.items() if v is not None})
    except ValueError as e:
        raise InvalidConfig("start", str(e)) from e


def cmd_start(args: argparse.Namespace) -> int:
    config = _load_config(args)
    config.launch.load_budget = args.load_budget_secs
    config.launch.download_budget = args.download_budget_secs

    try:
        overrides = PlanOverrides(gpu_layers=args.gpu_layers, ctx_size=args.ctx_size, threads=args.threads)
    except ValueError as e:
        raise InvalidConfig("start", str(e)) from e
    request = StartServerRequest(
        args=_server_args(args),
        backend=ComputeBackendConfig(args.backend) if args.backend else None,
        mode=BuildMode(args.mode) if args.mode else None,
        repo_tag=args.repo_tag,
        overrides=overrides,
        transport=TransportChoice.HTTP if (args.http or args.webui or args.port) else None,
        executable=args.executable,
    )

    handle = StartServer(config, store=ToolchainStore(config.toolchain, cache_root=args.root)).execute(request)
    print(f"llama-server {handle.pid} serving on {handle.endpoint}; press Ctrl-C to stop")
    try:
        while handle.state not in (ServerState.CRASHED, ServerState.STOPPED):
            time.sleep(WAIT_INTERVAL)
        handle.supervisor.raise_if_crashed()
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    finally:
        handle.stop()
    return EXIT_OK


def cmd_stop(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if args.all:
        return cmd_kill_all(args)

    entries = [entry for entry in _pidfiles(args, config) if entry.pid == args.pid]
    if not entries and args.pid not in get_all_server_pids(PlatformUtils.server_executable_name()):
        logger.error(f"Process {args.pid} is not a llama-server; refusing to stop it")
        return EXIT_INVALID_CONFIG

    terminate_process(args.pid, config.launch.stop_timeout)
    for entry in entries:
        PidFile.remove(entry.path)
    print(f"Stopped {args.pid}")
    return EXIT_OK


def cmd_list(args: argparse.Namespace) -> int:
    config = _load_config(args)
    entries = _pidfiles(args, config)
    known = set()
    print(f"{'PID':>8}  {'STATUS':<8} {'ENDPOINT':<40} PIDFILE")
    for entry in entries:
        status = "running" if entry.pid is not None and is_alive(entry.pid) else "stale"
        known.add(entry.pid)
        print(f"{entry.pid or '-':>8}  {status:<8} {entry.endpoint_id:<40} {entry.path}")
    for pid in get_all_server_pids(PlatformUtils.server_executable_name()):
        if pid not in known:
            print(f"{pid:>8}  {'running':<8} {'(unmanaged)':<40} -")
    return EXIT_OK


def cmd_kill_all(args: argparse.Namespace) -> int:
    config = _load_config(args)
    stopped = kill_all_servers(PlatformUtils.server_executable_name(), config.launch.stop_timeout)
    for entry in _pidfiles(args, config):
        if entry.pid is None or not is_alive(entry.pid):
            PidFile.remove(entry.path)
    print(f"Stopped {len(stopped)} server(s)")
    return EXIT_OK


COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "list": cmd_list,
    "kill-all": cmd_kill_all,
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
