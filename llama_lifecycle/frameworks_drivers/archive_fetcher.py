"""
Download, checksum verification and extraction of llama.cpp release archives.
"""
import hashlib
import os
import shutil
import stat
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional

import requests

from llama_lifecycle.shared.errors import DownloadFailed, IntegrityError
from llama_lifecycle.shared.logger import Logger
from llama_lifecycle.shared.retry import Retry, RetryExhausted

logger = Logger.get(__name__)

RELEASE_API_URL = "https://api.github.com/repos/ggml-org/llama.cpp/releases/tags/{tag}"
CHUNK_SIZE = 1024 * 1024


class ArchiveFetcher:
    """
    Fetches zip archives over HTTP with bounded retries and verifies them
    against a published sha256 digest before they are used.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 300.0,
                 tries: int = 3, initial_backoff: float = 1.0, max_backoff: float = 8.0):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.tries = tries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff

    @staticmethod
    def sha256_file(path: Path) -> str:
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def published_digest(self, repo_tag: str, asset_name: str) -> Optional[str]:
        """
        Look up the sha256 digest GitHub publishes for a release asset.

        Args:
            repo_tag: The release tag
            asset_name: File name of the asset

        Returns:
            The hex digest, or None if the release API does not provide one
        """
        url = RELEASE_API_URL.format(tag=repo_tag)
        try:
            response = self.session.get(url, timeout=30, headers={"Accept": "application/vnd.github+json"})
            response.raise_for_status()
            release = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Could not query release metadata for {repo_tag}: {e}")
            return None

        for asset in release.get("assets", []):
            if asset.get("name") != asset_name:
                continue
            digest = asset.get("digest") or ""
            if digest.startswith("sha256:"):
                return digest.split(":", 1)[1].lower()
        return None

    def _fetch_once(self, url: str, dest: Path) -> None:
        partial = dest.with_name(dest.name + ".part")
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            with open(partial, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        os.replace(partial, dest)

    def download(self, url: str, dest: Path, expected_sha256: Optional[str] = None) -> str:
        """
        Download url to dest, reusing a valid cached file.

        Args:
            url: Archive URL
            dest: Destination file path
            expected_sha256: Published digest to verify against, if any

        Returns:
            The sha256 of the downloaded file

        Raises:
            DownloadFailed: If every attempt failed
            IntegrityError: If the digest does not match
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.exists() and zipfile.is_zipfile(dest):
            actual = self.sha256_file(dest)
            if expected_sha256 is None or actual == expected_sha256.lower():
                logger.info(f"Reusing cached archive {dest}")
                return actual
            dest.unlink()

        logger.info(f"Downloading {url}")
        retry = Retry(max_attempts=self.tries, initial_delay=self.initial_backoff,
                      max_delay=self.max_backoff, multiplier=2.0)

        def on_attempt(attempt, _result, error):
            if error is not None:
                logger.warning(f"Download attempt {attempt}/{self.tries} for {url} failed: {error}")

        try:
            retry.run(lambda: self._fetch_once(url, dest), retry_on=(requests.RequestException, OSError),
                      on_attempt=on_attempt)
        except RetryExhausted as e:
            dest.with_name(dest.name + ".part").unlink(missing_ok=True)
            raise DownloadFailed(url, e.attempts, str(e.last_error)) from e.last_error

        actual = self.sha256_file(dest)
        if expected_sha256 is not None and actual != expected_sha256.lower():
            dest.unlink(missing_ok=True)
            raise IntegrityError(dest, expected_sha256.lower(), actual)
        return actual

    @staticmethod
    def extract(zip_path: Path, dest_dir: Path) -> Path:
        """
        Extract a zip archive, stripping a single shared top-level folder.

        Entries escaping dest_dir are skipped and unix permission bits are restored.

        Args:
            zip_path: Archive to extract
            dest_dir: Target directory

        Returns:
            dest_dir
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        root = dest_dir.resolve()
        with zipfile.ZipFile(zip_path) as archive:
            members = archive.infolist()
            tops = {PurePosixPath(m.filename).parts[0] for m in members if PurePosixPath(m.filename).parts}
            strip = len(tops) == 1 and all(len(PurePosixPath(m.filename).parts) > 1 or m.is_dir() for m in members)

            for member in members:
                parts = PurePosixPath(member.filename).parts
                if strip:
                    parts = parts[1:]
                if not parts:
                    continue
                target = root.joinpath(*parts).resolve()
                if target != root and root not in target.parents:
                    logger.warning(f"Skipping archive entry outside target directory: {member.filename}")
                    continue

                mode = member.external_attr >> 16
                if member.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                if stat.S_ISLNK(mode):
                    link = archive.read(member).decode("utf-8")
                    link_target = (target.parent / link).resolve()
                    if root in link_target.parents:
                        target.unlink(missing_ok=True)
                        os.symlink(link, target)
                    continue
                with archive.open(member) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                if mode & 0o777:
                    os.chmod(target, mode & 0o777)
        return dest_dir
