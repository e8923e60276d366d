"""
Test configuration and fixtures for llama-lifecycle tests.
"""
import json
import os
import shutil
import struct
import sys
import tempfile
import textwrap
from pathlib import Path

import pytest

from llama_lifecycle.entities.gpu import GPU
from llama_lifecycle.entities.resource_plan import HostTelemetry, ModelMetadata
from llama_lifecycle.frameworks_drivers.config import Config

GIB = 1024 ** 3
MIB = 1024 ** 2


def pytest_collection_modifyitems(config, items):
    if os.environ.get("LLAMA_LIFECYCLE_INTEGRATION") == "1":
        return
    skip = pytest.mark.skip(reason="set LLAMA_LIFECYCLE_INTEGRATION=1 to run against a real llama-server")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def short_tmp():
    """A short temporary directory, for Unix socket paths."""
    temp_path = tempfile.mkdtemp(prefix="ll-", dir="/tmp" if os.path.isdir("/tmp") else None)
    yield Path(temp_path)
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_config_data():
    """Sample configuration data for testing."""
    return {
        "toolchain": {
            "project": "tests",
            "repo_tag": "b6097",
            "backend": "cpu",
            "mode": "install_only",
            "fail_limit": 2,
        },
        "planner": {
            "ctx_size": 2048,
            "min_ctx_size": 512,
            "safety_margin_bytes": 0,
            "safety_margin_fraction": 0.1,
        },
        "launch": {
            "transport": "auto",
            "load_budget": 30,
            "stop_timeout": 1.5,
        },
        "client": {"timeout": 60},
    }


@pytest.fixture
def config_file(temp_dir, sample_config_data):
    """Create a temporary config file."""
    config_path = temp_dir / "config.json"
    with open(config_path, "w") as f:
        json.dump(sample_config_data, f, indent=2)
    return config_path


@pytest.fixture
def sample_config(sample_config_data):
    return Config(**sample_config_data)


@pytest.fixture
def small_model():
    """A 1B-class model: 16 layers of 50 MiB each."""
    return ModelMetadata(
        name="tiny",
        parameters=1_000_000_000,
        layer_count=16,
        quantization="Q4_K_M",
        file_size_bytes=16 * 50 * MIB,
        context_length=8192,
        hidden_size=2048,
        gqa_factor=0.25,
    )


@pytest.fixture
def cpu_host():
    return HostTelemetry(
        gpus=[],
        total_ram_bytes=16 * GIB,
        available_ram_bytes=8 * GIB,
        logical_cores=8,
        physical_cores=4,
    )


@pytest.fixture
def gpu_host():
    return HostTelemetry(
        gpus=[GPU(id=0, name="Test GPU", total_memory_bytes=8 * GIB, free_memory_bytes=6 * GIB)],
        total_ram_bytes=32 * GIB,
        available_ram_bytes=16 * GIB,
        logical_cores=16,
        physical_cores=8,
    )


def _gguf_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack("<Q", len(data)) + data


def write_gguf(path: Path, metadata: dict, tensors: list) -> Path:
    """
    Write a minimal GGUF v3 header.

    metadata maps keys to str, int (written as uint32) or float values;
    tensors is a list of (name, shape) pairs.
    """
    body = b"GGUF" + struct.pack("<I", 3) + struct.pack("<Q", len(tensors)) + struct.pack("<Q", len(metadata))
    for key, value in metadata.items():
        body += _gguf_string(key)
        if isinstance(value, str):
            body += struct.pack("<I", 8) + _gguf_string(value)
        elif isinstance(value, float):
            body += struct.pack("<I", 6) + struct.pack("<f", value)
        else:
            body += struct.pack("<I", 4) + struct.pack("<I", value)
    for name, shape in tensors:
        body += _gguf_string(name) + struct.pack("<I", len(shape))
        for dim in shape:
            body += struct.pack("<Q", dim)
        body += struct.pack("<I", 0) + struct.pack("<Q", 0)
    path.write_bytes(body)
    return path


@pytest.fixture
def gguf_writer():
    return write_gguf


@pytest.fixture
def gguf_file(temp_dir):
    """A small llama-architecture GGUF file with 4 blocks and GQA."""
    return write_gguf(
        temp_dir / "tiny-model.Q8_0.gguf",
        {
            "general.architecture": "llama",
            "general.name": "Tiny Model",
            "general.file_type": 15,
            "llama.block_count": 4,
            "llama.context_length": 4096,
            "llama.embedding_length": 256,
            "llama.attention.head_count": 8,
            "llama.attention.head_count_kv": 2,
        },
        [("token_embd.weight", [256, 1000]), ("blk.0.attn_q.weight", [256, 256])],
    )


FAKE_SERVER = textwrap.dedent('''
    """Stand-in for llama-server: serves /health and /props on --host/--port."""
    import json
    import os
    import sys
    from http.server import BaseHTTPRequestHandler, HTTPServer
    from socketserver import UnixStreamServer

    argv = sys.argv[1:]

    def arg(flag, default=None):
        return argv[argv.index(flag) + 1] if flag in argv else default

    host = arg("--host", "127.0.0.1")
    port = int(arg("--port", "0"))
    model = arg("-m") or arg("-mu") or "model.gguf"
    reported = os.environ.get("FAKE_MODEL_PATH", model)
    if os.environ.get("FAKE_EXIT"):
        sys.exit(int(os.environ["FAKE_EXIT"]))

    class Handler(BaseHTTPRequestHandler):
        def address_string(self):
            return "local"

        def log_message(self, *args):
            pass

        def _send(self, code, payload):
            data = json.dumps(payload).encode()
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def do_GET(self):
            if self.path == "/health":
                self._send(200, {"status": "ok"})
            elif self.path == "/props":
                self._send(200, {"model_path": reported, "total_slots": 1})
            else:
                self._send(404, {"error": {"code": 404, "message": "not found"}})

        def do_POST(self):
            length = int(self.headers.get("Content-Length", 0))
            body = json.loads(self.rfile.read(length) or b"{}")
            if self.path == "/tokenize":
                self._send(200, {"tokens": [ord(c) for c in body["content"]]})
            elif self.path == "/detokenize":
                self._send(200, {"content": "".join(chr(t) for t in body["tokens"])})
            else:
                self._send(404, {"error": {"code": 404, "message": "not found"}})

    class UnixHTTPServer(UnixStreamServer):
        def get_request(self):
            request, _ = super().get_request()
            return request, ("local", 0)

    print("fake llama-server starting", flush=True)
    if host.endswith(".sock"):
        server = UnixHTTPServer(host, Handler)
    else:
        server = HTTPServer((host, port), Handler)
    server.serve_forever()
''')


@pytest.fixture
def fake_server(temp_dir):
    """
    An executable named llama-server that runs FAKE_SERVER with this interpreter.
    """
    script = temp_dir / "fake_llama_server.py"
    script.write_text(FAKE_SERVER)
    executable = temp_dir / "llama-server"
    executable.write_text(f"#!/bin/sh\nexec {sys.executable} {script} \"$@\"\n")
    executable.chmod(0o755)
    return executable
