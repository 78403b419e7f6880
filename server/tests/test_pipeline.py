from __future__ import annotations

import threading

from pricebridge.config import ImageConfig, PleaseWaitConfig
from pricebridge.images import ImageFetchError
from pricebridge.index import DisplayRecord, ProductIndex
from pricebridge.pipeline import LookupPipeline


class FakeDispatcher:
    def __init__(self, image_ok: bool = True) -> None:
        self.calls: list[tuple] = []
        self.image_ok = image_ok
        self.fail_product = False

    def send_message(self, line1: str, line2: str = "", seconds: int = 3) -> bool:
        self.calls.append(("message", line1, line2, seconds))
        return True

    def send_not_found(self) -> bool:
        self.calls.append(("not_found",))
        return True

    def send_record(self, record: DisplayRecord) -> bool:
        if self.fail_product:
            raise RuntimeError("socket gone")
        self.calls.append(("product", record.name, record.price))
        return True

    def send_image(self, data: bytes, index: int = 0, loops: int = 1, duration: int = 5) -> bool:
        self.calls.append(("image", data, index, loops, duration))
        return self.image_ok


class FakeFetcher:
    def __init__(self, data: bytes = b"GIF89a", error: Exception | None = None) -> None:
        self.data = data
        self.error = error
        self.refs: list[str] = []

    def fetch(self, ref: str) -> bytes:
        self.refs.append(ref)
        if self.error is not None:
            raise self.error
        return self.data


def _index() -> ProductIndex:
    return ProductIndex(
        [
            DisplayRecord("0123456789012", "Widget", "19.90"),
            DisplayRecord("555", "Gadget", "5.00", image_ref="http://img/gadget.gif"),
        ]
    )


def test_found_sends_product() -> None:
    d = FakeDispatcher()
    p = LookupPipeline(_index(), d)
    try:
        assert p.process("0123456789012") is True
        assert d.calls == [("product", "Widget", "19.90")]
    finally:
        p.shutdown()


def test_missing_sends_not_found() -> None:
    d = FakeDispatcher()
    p = LookupPipeline(_index(), d)
    try:
        assert p.process("9999999999999") is False
        assert d.calls == [("not_found",)]
    finally:
        p.shutdown()


def test_please_wait_goes_first() -> None:
    d = FakeDispatcher()
    pw = PleaseWaitConfig(enabled=True, line1="Aguarde", line2="", seconds=2)
    p = LookupPipeline(_index(), d, please_wait=pw)
    try:
        p.process("0123456789012")
        assert d.calls[0] == ("message", "Aguarde", "", 2)
        assert d.calls[1][0] == "product"
    finally:
        p.shutdown()


def test_image_sent_before_text() -> None:
    d = FakeDispatcher()
    fetcher = FakeFetcher()
    images = ImageConfig(index=1, loops=2, duration=9)
    p = LookupPipeline(_index(), d, image_fetcher=fetcher, images=images)
    try:
        assert p.process("555") is True
        assert fetcher.refs == ["http://img/gadget.gif"]
        assert d.calls == [("image", b"GIF89a", 1, 2, 9), ("product", "Gadget", "5.00")]
    finally:
        p.shutdown()


def test_image_failures_never_block_text(caplog) -> None:
    for fetcher, dispatcher in [
        (FakeFetcher(error=ImageFetchError("404")), FakeDispatcher()),
        (FakeFetcher(), FakeDispatcher(image_ok=False)),
        (FakeFetcher(error=RuntimeError("weird")), FakeDispatcher()),
    ]:
        p = LookupPipeline(_index(), dispatcher, image_fetcher=fetcher)
        try:
            assert p.process("555") is True
            assert dispatcher.calls[-1] == ("product", "Gadget", "5.00")
        finally:
            p.shutdown()


def test_images_disabled_skips_fetch() -> None:
    d = FakeDispatcher()
    fetcher = FakeFetcher()
    p = LookupPipeline(_index(), d, image_fetcher=fetcher, images=ImageConfig(enabled=False))
    try:
        p.process("555")
        assert fetcher.refs == []
        assert d.calls == [("product", "Gadget", "5.00")]
    finally:
        p.shutdown()


def test_lookup_exception_becomes_not_found(caplog) -> None:
    class BrokenIndex(ProductIndex):
        def lookup(self, key):
            raise KeyError(key)

    d = FakeDispatcher()
    p = LookupPipeline(BrokenIndex(), d)
    try:
        assert p.process("1") is False
        assert d.calls == [("not_found",)]
        assert "lookup failed code=1" in caplog.text
    finally:
        p.shutdown()


def test_send_exception_becomes_not_found() -> None:
    d = FakeDispatcher()
    d.fail_product = True
    p = LookupPipeline(_index(), d)
    try:
        assert p.process("0123456789012") is False
        assert d.calls == [("not_found",)]
    finally:
        p.shutdown()


def test_submit_does_not_wait_for_lookup() -> None:
    release = threading.Event()

    class SlowIndex(ProductIndex):
        def lookup(self, key):
            release.wait(5.0)
            return super().lookup(key)

    idx = SlowIndex([DisplayRecord("1", "Slow", "1.00")])
    d = FakeDispatcher()
    p = LookupPipeline(idx, d, workers=2)
    try:
        fut = p.submit("1")
        assert fut is not None
        assert not fut.done()
        release.set()
        assert fut.result(timeout=5.0) is True
        assert d.calls == [("product", "Slow", "1.00")]
    finally:
        p.shutdown()


def test_submit_after_shutdown_is_dropped() -> None:
    p = LookupPipeline(_index(), FakeDispatcher())
    p.shutdown()
    assert p.submit("1") is None
