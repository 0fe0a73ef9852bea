# sketchshift/services/storage.py

import logging
import mimetypes
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import requests

from sketchshift import config
from sketchshift.errors import NotFound, StorageError, TransportError

log = logging.getLogger(__name__)

NAMESPACES = ("original", "preview", "js", "thumbnail")

_CONTENT_TYPES = {
    ".pde": "text/plain",
    ".js": "application/javascript",
    ".webp": "image/webp",
}


# --------------------------------------------------
# Helpers
# --------------------------------------------------
def generate_file_name(ext: str, prefix: str = "") -> str:
    """<prefix><unix seconds>_<8 hex chars><ext>"""
    return f"{prefix}{int(time.time())}_{secrets.token_hex(4)}{ext}"


def new_canvas_id(prefix: str = "processingCanvas_") -> str:
    return f"{prefix}{secrets.token_hex(4)}"


def content_type_for(file_name: str) -> str:
    ext = Path(file_name).suffix.lower()
    if ext in _CONTENT_TYPES:
        return _CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(file_name)
    return guessed or "application/octet-stream"


@dataclass
class StoredArtifact:
    url: str
    backend: str
    fellBack: bool = False


# --------------------------------------------------
# Primary: Cloudflare worker in front of R2
# --------------------------------------------------
class CloudflareWorkerStore:
    name = "cloudflare"

    def __init__(
        self,
        worker_url: str = config.STORAGE_WORKER_URL,
        api_key: str = config.STORAGE_API_KEY,
        timeout: float = config.STORAGE_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.worker_url = (worker_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def configured(self) -> bool:
        return bool(self.worker_url and self.api_key)

    def owns(self, url: str) -> bool:
        return bool(self.worker_url) and url.startswith(self.worker_url)

    def store(self, content: bytes, file_name: str, namespace: str) -> str:
        if not self.configured():
            raise TransportError("CLOUDFLARE_WORKER_URL or CLOUDFLARE_API_KEY not set")

        try:
            resp = self.session.post(
                f"{self.worker_url}/upload",
                files={"file": (file_name, content, content_type_for(file_name))},
                data={"type": namespace, "fileName": file_name},
                headers={"X-API-Key": self.api_key},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransportError(f"object store upload failed: {e}") from e

        if resp.status_code != 200:
            raise TransportError(
                f"object store upload failed: HTTP {resp.status_code} - {resp.text[:200]}"
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise TransportError(f"object store returned a malformed body: {e}") from e

        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise TransportError(f"object store rejected the upload: {error or 'success=false'}")

        path = body.get("url") or body.get("path")
        if not path:
            raise TransportError("object store response carries no url/path")

        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.worker_url}/{path.lstrip('/')}"

    def fetch(self, url: str) -> bytes:
        try:
            resp = self.session.get(url, headers={"X-API-Key": self.api_key}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"object store fetch failed: {e}") from e

        if resp.status_code == 404:
            raise NotFound(f"artifact not found: {url}")
        if resp.status_code != 200:
            raise TransportError(f"object store fetch failed: HTTP {resp.status_code}")
        return resp.content

    def delete(self, url: str):
        try:
            resp = self.session.delete(url, headers={"X-API-Key": self.api_key}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"object store delete failed: {e}") from e

        if resp.status_code not in (200, 202, 204, 404):
            raise TransportError(f"object store delete failed: HTTP {resp.status_code}")


# --------------------------------------------------
# Fallback: local filesystem
# --------------------------------------------------
class LocalFileStore:
    name = "local"

    def __init__(self, upload_root: str = config.UPLOAD_DIR, base_url: str = config.UPLOAD_BASE_URL):
        self.root = Path(upload_root).resolve()
        self.base_url = "/" + base_url.strip("/")

        for namespace in NAMESPACES:
            (self.root / namespace).mkdir(parents=True, exist_ok=True)

    def owns(self, url: str) -> bool:
        return url.startswith(self.base_url + "/")

    def url_for(self, namespace: str, file_name: str) -> str:
        return f"{self.base_url}/{namespace}/{file_name}"

    def local_path(self, url: str) -> Path:
        relative = url[len(self.base_url):].lstrip("/") if self.owns(url) else url.lstrip("/")
        path = (self.root / relative).resolve()
        if path != self.root and self.root not in path.parents:
            raise NotFound(f"invalid artifact path: {url}")
        return path

    def store(self, content: bytes, file_name: str, namespace: str) -> str:
        if "/" in file_name or "\\" in file_name or file_name in ("", ".", ".."):
            raise StorageError(f"invalid file name: {file_name!r}")

        directory = self.root / namespace
        try:
            directory.mkdir(parents=True, exist_ok=True)
            (directory / file_name).write_bytes(content)
        except OSError as e:
            raise StorageError(f"local write failed: {e}") from e

        return self.url_for(namespace, file_name)

    def fetch(self, url: str) -> bytes:
        path = self.local_path(url)
        if not path.is_file():
            raise NotFound(f"artifact not found: {url}")
        return path.read_bytes()

    def delete(self, url: str):
        self.local_path(url).unlink(missing_ok=True)


# --------------------------------------------------
# Gateway: ranked fallback chain
# --------------------------------------------------
class StorageGateway:
    """
    Stores artifacts on the first backend that accepts them.

    Backends are tried in rank order; every fallback is logged and the
    serving backend is reported back in the StoredArtifact.
    """

    def __init__(self, backends: Sequence):
        if not backends:
            raise ValueError("at least one storage backend is required")
        self.backends: List = list(backends)

    def store(self, content: bytes, file_name: str, namespace: str) -> StoredArtifact:
        errors = []
        for rank, backend in enumerate(self.backends):
            try:
                url = backend.store(content, file_name, namespace)
            except (TransportError, StorageError) as e:
                errors.append(f"{backend.name}: {e}")
                log.warning(
                    "storage backend %s failed for %s/%s, falling back: %s",
                    backend.name, namespace, file_name, e,
                )
                continue

            if rank > 0:
                log.warning("stored %s/%s on fallback backend %s", namespace, file_name, backend.name)
            return StoredArtifact(url=url, backend=backend.name, fellBack=rank > 0)

        raise StorageError(f"no storage backend accepted {namespace}/{file_name}: " + "; ".join(errors))

    def fetch(self, url: str) -> bytes:
        return self._owner(url).fetch(url)

    def delete(self, url: str) -> bool:
        """Best effort. Returns False when the delete failed."""
        if not url:
            return False
        try:
            self._owner(url).delete(url)
            return True
        except Exception as e:
            log.warning("failed to delete artifact %s: %s", url, e)
            return False

    def _owner(self, url: str):
        for backend in self.backends:
            if backend.owns(url):
                return backend
        raise NotFound(f"no storage backend serves {url}")


def build_default_gateway(session: Optional[requests.Session] = None) -> StorageGateway:
    return StorageGateway([
        CloudflareWorkerStore(session=session),
        LocalFileStore(),
    ])
