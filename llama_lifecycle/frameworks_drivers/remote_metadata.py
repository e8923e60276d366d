"""
Reads GGUF headers of remote models with HTTP range requests, so that models
llama-server will download itself can still be planned before launch.
"""
import re
from pathlib import PurePosixPath
from typing import Dict, List, Optional
from urllib.parse import quote, urlparse

import requests

from llama_lifecycle.entities.resource_plan import ModelMetadata
from llama_lifecycle.entities.server_args import ServerArgs
from llama_lifecycle.shared.gguf_utils import GGUFError, GGUFUtils
from llama_lifecycle.shared.logger import Logger

logger = Logger.get(__name__)

HF_ENDPOINT = "https://huggingface.co"
DEFAULT_HF_QUANT = "Q4_K_M"
BLOCK_SIZE = 4 * 1024 * 1024
MAX_HEADER_BYTES = 128 * 1024 * 1024

_CONTENT_RANGE = re.compile(r"bytes\s+\d+-\d+/(\d+)")


class RangedHttpFile:
    """
    Sequential, read-only view of a remote file that fetches blocks on demand.

    Bytes are requested with `Range` headers and kept in memory, so reading
    the header of a multi-gigabyte model transfers only the header.
    """

    def __init__(self, session: requests.Session, url: str, headers: Optional[Dict[str, str]] = None,
                 timeout: float = 30.0, block_size: int = BLOCK_SIZE, max_bytes: int = MAX_HEADER_BYTES):
        self.session = session
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self.block_size = block_size
        self.max_bytes = max_bytes
        self.size: Optional[int] = None
        self._buffer = bytearray()
        self._pos = 0
        self._eof = False

    def _fetch(self, start: int, end: int) -> bytes:
        headers = {**self.headers, "Range": f"bytes={start}-{end}"}
        with self.session.get(self.url, headers=headers, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            if response.status_code == 206:
                match = _CONTENT_RANGE.match(response.headers.get("Content-Range", ""))
                if match:
                    self.size = int(match.group(1))
                return response.content
            # Range ignored: the body starts at offset 0
            length = response.headers.get("Content-Length")
            if length and length.isdigit():
                self.size = int(length)
            data = bytearray()
            for chunk in response.iter_content(chunk_size=64 * 1024):
                data.extend(chunk)
                if len(data) > end:
                    break
            return bytes(data[start:end + 1])

    def _fill(self, needed: int) -> None:
        while len(self._buffer) < needed and not self._eof:
            start = len(self._buffer)
            if start >= self.max_bytes:
                raise GGUFError(f"GGUF header of {self.url} exceeds {self.max_bytes} bytes")
            end = min(start + self.block_size, self.max_bytes) - 1
            data = self._fetch(start, end)
            if not data:
                self._eof = True
            self._buffer.extend(data)
            if len(data) < end - start + 1:
                self._eof = True

    def read(self, n: int = -1) -> bytes:
        if n < 0:
            raise ValueError("RangedHttpFile only supports sized reads")
        self._fill(self._pos + n)
        data = bytes(self._buffer[self._pos:self._pos + n])
        self._pos += len(data)
        return data

    def tell(self) -> int:
        return self._pos


class RemoteMetadataReader:
    """Resolves model_url and hf_repo sources and reads their GGUF metadata."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0,
                 hf_endpoint: str = HF_ENDPOINT):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.hf_endpoint = hf_endpoint.rstrip("/")

    @staticmethod
    def _auth_headers(token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    @staticmethod
    def pick_gguf(files: List[str], quant: Optional[str]) -> Optional[str]:
        """
        Choose the model file of a repository for a quantization tag.

        Projector files are skipped. Without a tag Q4_K_M is preferred, then
        the first GGUF file; with a tag only matching files qualify. Split
        models resolve to their first shard.
        """
        ggufs = sorted(f for f in files if f.lower().endswith(".gguf") and "mmproj" not in f.lower())
        wanted = (quant or DEFAULT_HF_QUANT).upper()
        matches = [f for f in ggufs if wanted in PurePosixPath(f).name.upper()]
        if matches:
            return matches[0]
        if quant is None and ggufs:
            return ggufs[0]
        return None

    def hf_file_url(self, hf_repo: str, hf_file: Optional[str] = None, token: Optional[str] = None) -> str:
        """
        Download URL of the GGUF file llama-server would fetch for a Hugging Face reference.

        Raises:
            GGUFError: If the repository has no matching GGUF file
            requests.RequestException: If the model API cannot be reached
        """
        repo, _, quant = hf_repo.partition(":")
        if not hf_file:
            response = self.session.get(
                f"{self.hf_endpoint}/api/models/{repo}", headers=self._auth_headers(token), timeout=self.timeout
            )
            response.raise_for_status()
            siblings = [s.get("rfilename", "") for s in response.json().get("siblings", [])]
            hf_file = self.pick_gguf(siblings, quant or None)
            if hf_file is None:
                raise GGUFError(f"{repo} has no GGUF file for {quant or DEFAULT_HF_QUANT}")
        return f"{self.hf_endpoint}/{repo}/resolve/main/{quote(hf_file)}"

    def read_url(self, url: str, headers: Optional[Dict[str, str]] = None) -> ModelMetadata:
        """
        Read ModelMetadata from the GGUF header at url.

        Raises:
            GGUFError: If the remote file is not a readable GGUF model
            requests.RequestException: If the file cannot be fetched
        """
        remote = RangedHttpFile(self.session, url, headers=headers, timeout=self.timeout)
        header = GGUFUtils.parse_header(remote, url)
        file_name = PurePosixPath(urlparse(url).path).name or "model.gguf"
        logger.debug(f"Read {remote.tell()} header bytes of {url}")
        return GGUFUtils.metadata_from_header(header, file_name, remote.size)

    def read(self, args: ServerArgs) -> ModelMetadata:
        """Read the metadata of the model args.model_url or args.hf_repo refers to."""
        if args.model_url:
            return self.read_url(args.model_url)
        if args.hf_repo:
            url = self.hf_file_url(args.hf_repo, args.hf_file, args.hf_token)
            return self.read_url(url, self._auth_headers(args.hf_token))
        raise ValueError("args do not reference a remote model")

    def try_read(self, args: ServerArgs) -> Optional[ModelMetadata]:
        """Like read, but returns None when the header cannot be fetched or parsed."""
        try:
            return self.read(args)
        except (requests.RequestException, GGUFError, ValueError) as e:
            logger.warning(f"Could not read remote GGUF metadata for {args.model_name}: {e}")
            return None
