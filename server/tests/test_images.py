from __future__ import annotations

from pathlib import Path

import pytest
import requests

from pricebridge.images import ImageFetcher, ImageFetchError


class FakeResponse:
    def __init__(self, content: bytes, status: int = 200) -> None:
        self.content = content
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, resp: FakeResponse | None = None, error: Exception | None = None) -> None:
        self.resp = resp
        self.error = error
        self.gets: list[tuple[str, float]] = []

    def get(self, url: str, timeout: float):
        self.gets.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.resp


def test_fetch_local_path(tmp_path: Path) -> None:
    p = tmp_path / "a.gif"
    p.write_bytes(b"GIF89a-local")
    f = ImageFetcher(session=FakeSession())
    assert f.fetch(str(p)) == b"GIF89a-local"
    assert f.fetch(p.as_uri()) == b"GIF89a-local"


def test_fetch_http_is_cached() -> None:
    session = FakeSession(FakeResponse(b"GIF89a-remote"))
    f = ImageFetcher(timeout=2.5, session=session)
    assert f.fetch("https://cdn.example/img.gif") == b"GIF89a-remote"
    assert f.fetch("https://cdn.example/img.gif") == b"GIF89a-remote"
    assert session.gets == [("https://cdn.example/img.gif", 2.5)]


def test_cache_is_bounded(tmp_path: Path) -> None:
    f = ImageFetcher(max_cache=2, session=FakeSession())
    for i in range(3):
        p = tmp_path / f"{i}.gif"
        p.write_bytes(bytes([i]))
        f.fetch(str(p))
    assert len(f._cache) == 2
    assert str(tmp_path / "0.gif") not in f._cache


def test_http_errors_are_wrapped() -> None:
    f = ImageFetcher(session=FakeSession(FakeResponse(b"", status=404)))
    with pytest.raises(ImageFetchError):
        f.fetch("http://cdn.example/missing.gif")
    f = ImageFetcher(session=FakeSession(error=requests.ConnectionError("down")))
    with pytest.raises(ImageFetchError):
        f.fetch("http://cdn.example/x.gif")


def test_missing_file_and_empty_ref(tmp_path: Path) -> None:
    f = ImageFetcher(session=FakeSession())
    with pytest.raises(ImageFetchError):
        f.fetch(str(tmp_path / "nope.gif"))
    with pytest.raises(ImageFetchError):
        f.fetch("   ")
