"""Carrier registry.

Carriers are looked up by :class:`~py2bin.target.CarrierKey`. A local,
content-addressed cache directory is always consulted first; on a miss the
carrier is downloaded from a release store (GitHub release assets) into the
cache. Freshly built carriers are put into the cache and optionally uploaded.
"""

import logging
import os
import pathlib
import shutil
import tempfile
import time
from typing import Protocol
import urllib.parse

import requests

from py2bin import __version__
from py2bin.errors import Py2binError
from py2bin.target import CarrierKey


DEFAULT_CACHE_DIRNAME: str = ".py2bin_cache"
DEFAULT_CARRIER_URL: str = f"https://github.com/py2bin/py2bin/releases/download/v{__version__}/"
DEFAULT_RELEASE_API: str = f"https://api.github.com/repos/py2bin/py2bin/releases/tags/v{__version__}"

_MAX_RETRIES: int = 3
_RETRY_BASE_DELAY: float = 1.0
_CHUNK_SIZE: int = 1024 * 1024


class CarrierUnavailableError(Py2binError):
    """Raised when a carrier can neither be found locally nor fetched."""


class _RetryableStatus(Exception):
    """Internal marker for HTTP statuses worth retrying."""


class CarrierStore(Protocol):
    """Storage for carrier binaries, addressed by :class:`CarrierKey`."""

    def exists(self, key: CarrierKey) -> bool:
        """Return whether the store holds the carrier."""

    def get(self, key: CarrierKey) -> pathlib.Path:
        """Return a local path to the carrier."""

    def put(self, key: CarrierKey, path: pathlib.Path) -> pathlib.Path:
        """Store a carrier from a local file."""


def resolve_cache_root(cache_dir: pathlib.Path | None) -> pathlib.Path:
    """Resolve the carrier cache directory.

    Order: explicit argument, ``PY2BIN_CACHE_DIR``, ``./.py2bin_cache``.

    :param cache_dir: Optional cache directory override.
    :returns: Cache root directory (created if missing).
    """

    root: pathlib.Path
    if cache_dir is not None:
        root = cache_dir
    else:
        override: str | None = os.environ.get("PY2BIN_CACHE_DIR")
        if override is not None and len(override) > 0:
            root = pathlib.Path(override)
        else:
            root = pathlib.Path.cwd() / DEFAULT_CACHE_DIRNAME

    root.mkdir(parents=True, exist_ok=True)
    return root


class LocalCarrierStore:
    """Carrier cache directory; each carrier is stored under ``key.name``."""

    def __init__(self, root: pathlib.Path) -> None:
        self.root: pathlib.Path = root

    def path_for(self, key: CarrierKey) -> pathlib.Path:
        return self.root / key.name

    def exists(self, key: CarrierKey) -> bool:
        return self.path_for(key).is_file()

    def get(self, key: CarrierKey) -> pathlib.Path:
        """Return the cached carrier.

        :param key: Carrier key.
        :returns: Path to the cached file.
        :raises CarrierUnavailableError: On a cache miss.
        """

        path: pathlib.Path = self.path_for(key)
        if path.is_file() is False:
            raise CarrierUnavailableError(f"Carrier {key.name} is not in the cache at {self.root}.")
        return path

    def put(self, key: CarrierKey, path: pathlib.Path) -> pathlib.Path:
        """Copy a carrier into the cache (atomically).

        :param key: Carrier key.
        :param path: Source file; may already live inside the cache root.
        :returns: Path to the cached file.
        """

        dest: pathlib.Path = self.path_for(key)
        if path.resolve() == dest.resolve():
            return dest

        self.root.mkdir(parents=True, exist_ok=True)
        tmp: pathlib.Path = dest.with_name(dest.name + ".tmp")
        shutil.copy2(path, tmp)
        tmp.replace(dest)
        return dest

    def remove(self, key: CarrierKey) -> None:
        self.path_for(key).unlink(missing_ok=True)


class ReleaseCarrierStore:
    """Carriers published as release assets.

    Downloads retry connection errors, timeouts and 5xx responses with
    exponential backoff. Any other HTTP error is final.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_CARRIER_URL,
        release_api_url: str = DEFAULT_RELEASE_API,
        staging_dir: pathlib.Path,
        token: str | None = None,
        session: requests.Session | None = None,
        timeout: float = 60.0,
        max_retries: int = _MAX_RETRIES,
        retry_base_delay: float = _RETRY_BASE_DELAY,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url: str = base_url if base_url.endswith("/") is True else base_url + "/"
        self.release_api_url: str = release_api_url
        self.staging_dir: pathlib.Path = staging_dir
        self.token: str | None = token
        self.session: requests.Session = session if session is not None else requests.Session()
        self.timeout: float = timeout
        self.max_retries: int = max_retries
        self.retry_base_delay: float = retry_base_delay
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("py2bin")

    def url_for(self, key: CarrierKey) -> str:
        return self.base_url + urllib.parse.quote(key.name)

    def exists(self, key: CarrierKey) -> bool:
        """Check for a carrier with a ``HEAD`` request.

        :param key: Carrier key.
        :returns: ``True`` if the asset answers with a 2xx status.
        """

        try:
            resp = self.session.head(self.url_for(key), allow_redirects=True, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise CarrierUnavailableError(f"Could not reach carrier store: {e}") from e
        return 200 <= resp.status_code < 300

    def get(self, key: CarrierKey) -> pathlib.Path:
        """Download a carrier into the staging directory.

        :param key: Carrier key.
        :returns: Path of the downloaded file (``staging_dir / key.name``).
        :raises CarrierUnavailableError: If the download fails.
        """

        url: str = self.url_for(key)
        dest: pathlib.Path = self.staging_dir / key.name
        self.staging_dir.mkdir(parents=True, exist_ok=True)

        for attempt in range(self.max_retries + 1):
            try:
                self._download(url, dest)
                return dest
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout, _RetryableStatus) as e:
                if attempt < self.max_retries:
                    delay: float = self.retry_base_delay * (2**attempt)
                    self.logger.info(
                        f"py2bin: download of {key.name} failed ({e}), retry {attempt + 1}/{self.max_retries} "
                        f"in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    continue
                raise CarrierUnavailableError(
                    f"Could not download carrier {key.name} from {url} after {self.max_retries} retries: {e}"
                ) from e
            except requests.exceptions.RequestException as e:
                raise CarrierUnavailableError(f"Could not download carrier {key.name} from {url}: {e}") from e

        raise AssertionError("unreachable")

    def _download(self, url: str, dest: pathlib.Path) -> None:
        """Stream one download attempt into ``dest`` via a temporary file.

        :param url: Asset URL.
        :param dest: Final path.
        :raises CarrierUnavailableError: On a non-retryable HTTP status.
        """

        self.logger.info(f"py2bin: downloading {url}")
        t0: float = time.perf_counter()
        with self.session.get(url, stream=True, allow_redirects=True, timeout=self.timeout) as resp:
            if resp.status_code >= 500:
                raise _RetryableStatus(f"HTTP {resp.status_code}")
            if resp.status_code != 200:
                raise CarrierUnavailableError(f"Carrier download {url} failed with HTTP {resp.status_code}.")

            fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
            tmp: pathlib.Path = pathlib.Path(tmp_name)
            try:
                with os.fdopen(fd, "wb") as f:
                    for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                        f.write(chunk)
                tmp.replace(dest)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise

        t1: float = time.perf_counter()
        size: int = dest.stat().st_size
        self.logger.info(f"py2bin: downloaded {dest.name} ({size / (1024 * 1024):.1f} MiB) in {t1 - t0:.2f}s")

    def put(self, key: CarrierKey, path: pathlib.Path) -> pathlib.Path:
        """Upload a carrier as a release asset.

        :param key: Carrier key; its name becomes the asset name.
        :param path: Local carrier file.
        :returns: ``path``.
        :raises CarrierUnavailableError: If no token is configured or the upload fails.
        """

        if self.token is None or len(self.token) == 0:
            raise CarrierUnavailableError("Uploading carriers requires GITHUB_TOKEN.")

        headers: dict[str, str] = {"Authorization": f"token {self.token}"}
        try:
            resp = self.session.get(self.release_api_url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            upload_url: str = resp.json()["upload_url"].split("{")[0]

            self.logger.info(f"py2bin: uploading {key.name}")
            with open(path, "rb") as f:
                up = self.session.post(
                    upload_url,
                    params={"name": key.name},
                    data=f,
                    headers={**headers, "Content-Type": "application/octet-stream"},
                    timeout=self.timeout,
                )
            up.raise_for_status()
        except (requests.exceptions.RequestException, KeyError, ValueError) as e:
            raise CarrierUnavailableError(f"Upload of carrier {key.name} failed: {e}") from e
        return path


class CarrierRegistry:
    """Cache-first carrier lookup.

    :param local: Local cache store.
    :param remote: Optional remote store consulted on cache misses.
    :param logger: Optional logger.
    """

    def __init__(
        self,
        *,
        local: LocalCarrierStore,
        remote: CarrierStore | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.local: LocalCarrierStore = local
        self.remote: CarrierStore | None = remote
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("py2bin")

    def fetch(self, key: CarrierKey) -> pathlib.Path:
        """Return a local path to the carrier for ``key``.

        :param key: Carrier key.
        :returns: Path inside the local cache.
        :raises CarrierUnavailableError: If neither store has the carrier.
        """

        if self.local.exists(key) is True:
            self.logger.info(f"py2bin: carrier cache hit ({key.name})")
            return self.local.get(key)

        if self.remote is None:
            raise CarrierUnavailableError(
                f"Carrier {key.name} is not cached and no remote carrier store is configured."
            )

        self.logger.info(f"py2bin: carrier cache miss ({key.name})")
        downloaded: pathlib.Path = self.remote.get(key)
        return self.local.put(key, downloaded)

    def store(self, key: CarrierKey, path: pathlib.Path, *, upload: bool = False) -> pathlib.Path:
        """Cache a freshly built carrier and optionally publish it.

        :param key: Carrier key.
        :param path: Built binary.
        :param upload: Also put it into the remote store.
        :returns: Path inside the local cache.
        :raises CarrierUnavailableError: If uploading was requested but is not possible.
        """

        cached: pathlib.Path = self.local.put(key, path)
        self.logger.info(f"py2bin: cached carrier {key.name}")
        if upload is True:
            if self.remote is None:
                raise CarrierUnavailableError("No remote carrier store configured for upload.")
            self.remote.put(key, cached)
        return cached

    def evict(self, key: CarrierKey) -> None:
        self.local.remove(key)
