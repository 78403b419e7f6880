from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional

from .config import ImageConfig, PleaseWaitConfig
from .index import DisplayRecord, ProductIndex

log = logging.getLogger(__name__)


class LookupPipeline:
    """Answers one barcode scan: lookup, optional image, then name and price.

    ``submit`` hands the work to a thread pool so the read loop never waits
    on a lookup. ``process`` never raises.
    """

    def __init__(
        self,
        index: ProductIndex,
        dispatcher: Any,
        image_fetcher: Any = None,
        please_wait: PleaseWaitConfig | None = None,
        images: ImageConfig | None = None,
        workers: int = 4,
    ) -> None:
        self.index = index
        self.dispatcher = dispatcher
        self.image_fetcher = image_fetcher
        self.please_wait = please_wait or PleaseWaitConfig()
        self.images = images or ImageConfig()
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lookup")

    def submit(self, barcode: str) -> Optional[Future]:
        try:
            return self._pool.submit(self.process, barcode)
        except RuntimeError as e:
            # pool already shut down
            log.warning("lookup dropped code=%s: %s", barcode, e)
            return None

    def process(self, barcode: str) -> bool:
        """Returns True when the product was found and its text was sent."""
        try:
            if self.please_wait.enabled:
                pw = self.please_wait
                self.dispatcher.send_message(pw.line1, pw.line2, pw.seconds)
            record = self.index.lookup(barcode)
            if record is None:
                log.info("product not found code=%s", barcode)
                self.dispatcher.send_not_found()
                return False
            self._send_image(record)
            if not self.dispatcher.send_record(record):
                log.warning("failed to send product code=%s", barcode)
                return False
            return True
        except Exception:
            log.exception("lookup failed code=%s", barcode)
            self._fallback_not_found(barcode)
            return False

    def _send_image(self, record: DisplayRecord) -> None:
        if not record.image_ref or not self.images.enabled or self.image_fetcher is None:
            return
        try:
            data = self.image_fetcher.fetch(record.image_ref)
            im = self.images
            if not self.dispatcher.send_image(data, im.index, im.loops, im.duration):
                log.warning("image not delivered code=%s ref=%s", record.key, record.image_ref)
        except Exception as e:
            log.warning("image skipped code=%s ref=%s: %s", record.key, record.image_ref, e)

    def _fallback_not_found(self, barcode: str) -> None:
        try:
            self.dispatcher.send_not_found()
        except Exception:
            log.exception("not-found fallback failed code=%s", barcode)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
