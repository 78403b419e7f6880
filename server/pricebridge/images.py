from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests

log = logging.getLogger(__name__)


class ImageFetchError(Exception):
    pass


class ImageFetcher:
    """Loads image bytes from a local path or an http(s) URL.

    Fetched payloads are kept in a small LRU cache keyed by the reference.
    """

    def __init__(
        self,
        timeout: float = 5.0,
        max_cache: int = 64,
        session: requests.Session | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_cache = max_cache
        self._session = session or requests.Session()
        self._cache: OrderedDict[str, bytes] = OrderedDict()
        self._lock = threading.Lock()

    def fetch(self, image_ref: str) -> bytes:
        ref = image_ref.strip()
        if not ref:
            raise ImageFetchError("empty image reference")
        with self._lock:
            cached = self._cache.get(ref)
            if cached is not None:
                self._cache.move_to_end(ref)
                return cached
        data = self._load(ref)
        with self._lock:
            self._cache[ref] = data
            while len(self._cache) > self.max_cache:
                self._cache.popitem(last=False)
        return data

    def _load(self, ref: str) -> bytes:
        parsed = urlparse(ref)
        if parsed.scheme in ("http", "https"):
            try:
                resp = self._session.get(ref, timeout=self.timeout)
                resp.raise_for_status()
            except requests.RequestException as e:
                raise ImageFetchError(f"failed to download {ref}: {e}") from e
            log.debug("downloaded image url=%s size=%d", ref, len(resp.content))
            return resp.content
        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(ref)
        try:
            return path.read_bytes()
        except OSError as e:
            raise ImageFetchError(f"failed to read {path}: {e}") from e
