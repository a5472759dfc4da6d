"""
Key-value persistence backends for ChronoGenomics.

The record store only needs two primitives: ``get_data(key)``, returning empty
bytes for an absent key, and ``set_data(key, value)``. Any backend offering
those is a valid substitute.
"""

import base64
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional
from urllib.parse import quote, unquote

import requests
from decouple import config
from filelock import FileLock, Timeout

from chronogenomics.errors import StorageUnavailable
from chronogenomics.log import get_logger

logger = get_logger(__name__)


class KeyValueBackend(ABC):
    """
    Abstract key-value persistence capability.

    ``lock()`` guards a read-modify-write sequence. Every store built on the
    same backend shares it; the base implementation is an in-process lock.
    """

    def __init__(self) -> None:
        self._transaction_lock = threading.RLock()

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the backend's transaction lock for the duration of the block."""
        with self._transaction_lock:
            yield

    @abstractmethod
    def get_data(self, key: str) -> bytes:
        """Return the value stored under ``key``, or ``b""`` if absent."""

    @abstractmethod
    def set_data(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``. An empty value marks the key absent."""


class MemoryBackend(KeyValueBackend):
    """In-process dictionary backend."""

    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get_data(self, key: str) -> bytes:
        with self._lock:
            return self._data.get(key, b"")

    def set_data(self, key: str, value: bytes) -> None:
        with self._lock:
            if value:
                self._data[key] = bytes(value)
            else:
                self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)


class FileBackend(KeyValueBackend):
    """
    One file per key under a directory; writes are atomic replaces.

    ``lock()`` also takes an OS file lock on ``<directory>/.lock``, so backends
    opened on the same directory, in this process or another, serialize their
    transactions.
    """

    LOCK_FILE = ".lock"

    def __init__(self, directory: Path, lock_timeout: float = -1) -> None:
        super().__init__()
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create storage directory {self.directory}: {e}") from e
        self._file_lock = FileLock(str(self.directory / self.LOCK_FILE), timeout=lock_timeout)

    @contextmanager
    def lock(self) -> Iterator[None]:
        # The thread lock keeps the file lock's re-entry count to one thread
        with self._transaction_lock:
            try:
                self._file_lock.acquire()
            except Timeout as e:
                raise StorageUnavailable(f"Timed out waiting for the lock on {self.directory}") from e
            except OSError as e:
                raise StorageUnavailable(f"Cannot lock {self.directory}: {e}") from e
            try:
                yield
            finally:
                self._file_lock.release()

    def _path_for(self, key: str) -> Path:
        # Keys are record ids and fixed names; quote anything path-like anyway
        return self.directory / f"{quote(key, safe='')}.json"

    def get_data(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            with open(path, 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return b""
        except OSError as e:
            raise StorageUnavailable(f"Cannot read {path}: {e}") from e

    def set_data(self, key: str, value: bytes) -> None:
        path = self._path_for(key)
        try:
            if not value:
                path.unlink(missing_ok=True)
                return

            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(value)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageUnavailable(f"Cannot write {path}: {e}") from e

    def keys(self) -> list[str]:
        try:
            return sorted(
                unquote(path.name[:-len(".json")])
                for path in self.directory.glob("*.json")
            )
        except OSError as e:
            raise StorageUnavailable(f"Cannot list {self.directory}: {e}") from e


@dataclass
class HttpBackendConfig:
    """Configuration for the remote key-value service."""
    base_url: str = "http://127.0.0.1:8000"
    token: Optional[str] = None
    timeout: int = 30
    debug: bool = False

    @classmethod
    def from_env(cls) -> 'HttpBackendConfig':
        """Load configuration from environment variables."""
        return cls(
            base_url=config('CHRONOGENOMICS_STORAGE_URL', default='http://127.0.0.1:8000'),
            token=config('CHRONOGENOMICS_STORAGE_TOKEN', default=None),
            timeout=config('CHRONOGENOMICS_STORAGE_TIMEOUT', default=30, cast=int),
            debug=config('DEBUG', default=False, cast=bool),
        )


class HttpBackend(KeyValueBackend):
    """
    Remote key-value service over HTTP.

    ``GET {base_url}/data/{key}`` answers ``{"value": <base64>}`` or 404 for an
    absent key; ``PUT`` takes the same body. Transport errors and 5xx answers
    raise ``StorageUnavailable``.
    """

    def __init__(self, config: Optional[HttpBackendConfig] = None) -> None:
        super().__init__()
        self.config = config or HttpBackendConfig.from_env()
        self.session = requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'ChronoGenomics/1.0',
        })
        if self.config.token:
            self.session.headers['Authorization'] = f'Bearer {self.config.token}'

    def _url(self, key: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/data/{quote(key, safe='')}"

    def _make_request(self, method: str, key: str, **kwargs) -> requests.Response:
        """Make a request with consistent error handling."""
        kwargs.setdefault('timeout', self.config.timeout)
        url = self._url(key)

        if self.config.debug:
            logger.debug("Making %s request to %s", method, url)

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise StorageUnavailable(f"Storage request timed out: {url}") from e
        except requests.RequestException as e:
            raise StorageUnavailable(f"Network error while reaching storage: {e}") from e

        if response.status_code >= 500:
            raise StorageUnavailable(f"Storage service error: HTTP {response.status_code}")
        return response

    def get_data(self, key: str) -> bytes:
        response = self._make_request('GET', key)

        if response.status_code == 404:
            return b""
        if response.status_code != 200:
            raise StorageUnavailable(f"Failed to read {key}: HTTP {response.status_code}")

        try:
            value_b64 = response.json().get("value", "")
            return base64.b64decode(value_b64) if value_b64 else b""
        except (ValueError, AttributeError) as e:
            raise StorageUnavailable(f"Unreadable storage response for {key}: {e}") from e

    def set_data(self, key: str, value: bytes) -> None:
        response = self._make_request(
            'PUT',
            key,
            json={"value": base64.b64encode(value).decode('ascii')},
        )

        if response.status_code not in (200, 201, 204):
            raise StorageUnavailable(f"Failed to write {key}: HTTP {response.status_code}")
