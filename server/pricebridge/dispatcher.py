from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any, Callable, Optional

from .config import TerminalConfig
from .index import DisplayRecord
from .protocol import (
    MAX_IMAGE_BYTES,
    Ack,
    Barcode,
    Command,
    ImageTransfer,
    MacAddressReply,
    MacQuery,
    Message,
    NotFound,
    ProductDisplay,
    RemoteConfig,
)

log = logging.getLogger(__name__)

BarcodeHandler = Callable[[str], Any]


class CommandDispatcher:
    """Routes frames from the read loop and sends commands to the terminal."""

    def __init__(
        self,
        connection: Any,
        config: TerminalConfig,
        barcode_handler: BarcodeHandler | None = None,
    ) -> None:
        self.connection = connection
        self.config = config
        self.barcode_handler = barcode_handler
        self._replies: queue.Queue = queue.Queue(maxsize=16)
        self._query_lock = threading.Lock()

    # --- inbound -------------------------------------------------------------

    def on_frame(self, frame: Any) -> None:
        if isinstance(frame, Barcode):
            log.info("barcode received code=%s", frame.code)
            handler = self.barcode_handler
            if handler is None:
                log.warning("no barcode handler, dropping code=%s", frame.code)
                return
            try:
                handler(frame.code)
            except Exception:
                log.exception("barcode handler failed code=%s", frame.code)
            return
        if isinstance(frame, (Ack, MacAddressReply)):
            self._offer_reply(frame)
            return
        log.debug("ignoring frame %r", frame)

    def _offer_reply(self, frame: Ack | MacAddressReply) -> None:
        log.debug("reply received %r", frame)
        while True:
            try:
                self._replies.put_nowait(frame)
                return
            except queue.Full:
                try:
                    self._replies.get_nowait()
                except queue.Empty:
                    pass

    def _drain_replies(self) -> None:
        while True:
            try:
                self._replies.get_nowait()
            except queue.Empty:
                return

    def _await_reply(self, accept: Callable[[Any], bool]) -> Optional[Any]:
        deadline = time.monotonic() + self.config.response_timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    frame = self._replies.get_nowait()
                else:
                    frame = self._replies.get(timeout=remaining)
            except queue.Empty:
                return None
            if accept(frame):
                return frame
            log.debug("skipping unrelated reply %r", frame)

    # --- outbound ------------------------------------------------------------

    def _ensure_connected(self) -> bool:
        if self.connection.is_connected():
            return True
        if not self.config.reconnect_on_send:
            log.warning("not connected to terminal")
            return False
        log.warning("not connected to terminal, trying to reconnect")
        result = self.connection.connect()
        return bool(result) and self.connection.is_connected()

    def _send(self, cmd: Command) -> bool:
        if not self._ensure_connected():
            return False
        try:
            data = cmd.encode()
        except ValueError as e:
            log.error("cannot encode %s: %s", cmd.__class__.__name__, e)
            return False
        return self.connection.send(data)

    def send_product(self, name: str, price: str) -> bool:
        ok = self._send(ProductDisplay(name=name, price=price))
        if ok:
            log.info("product sent name=%s price=%s", name, price)
        return ok

    def send_record(self, record: DisplayRecord) -> bool:
        return self.send_product(record.name, record.price)

    def send_not_found(self) -> bool:
        ok = self._send(NotFound())
        if ok:
            log.info("not-found sent")
        return ok

    def send_message(self, line1: str, line2: str = "", seconds: int = 3) -> bool:
        ok = self._send(Message(line1=line1, line2=line2, seconds=seconds))
        if ok:
            log.info("message sent line1=%s line2=%s seconds=%s", line1, line2, seconds)
        return ok

    def send_image(self, data: bytes, index: int = 0, loops: int = 1, duration: int = 5) -> bool:
        """Send a GIF; returns False on oversize payloads or an ``#img_error`` reply."""
        if len(data) > MAX_IMAGE_BYTES:
            log.warning("image too large size=%d limit=%d", len(data), MAX_IMAGE_BYTES)
            return False
        with self._query_lock:
            self._drain_replies()
            cmd = ImageTransfer(data=data, index=index, loops=loops, duration=duration)
            if not self._send(cmd):
                return False
            log.info(
                "image sent size=%d index=%d loops=%d duration=%d", len(data), index, loops, duration
            )
            reply = self._await_reply(
                lambda f: isinstance(f, Ack) and f.name in ("gif_ok", "img_error")
            )
        if reply is not None and reply.name == "img_error":
            log.warning("terminal rejected image")
            return False
        return True

    def get_mac_address(self) -> Optional[str]:
        with self._query_lock:
            self._drain_replies()
            if not self._send(MacQuery()):
                return None
            reply = self._await_reply(lambda f: isinstance(f, MacAddressReply))
        if reply is None:
            log.warning("no mac address reply within %.3fs", self.config.response_timeout)
            return None
        log.info("mac address interface=%d mac=%s", reply.interface, reply.mac)
        return reply.mac

    def push_remote_config(self, gateway: str, server_names: str, terminal_name: str) -> bool:
        with self._query_lock:
            self._drain_replies()
            cmd = RemoteConfig(gateway=gateway, server_names=server_names, terminal_name=terminal_name)
            if not self._send(cmd):
                return False
            reply = self._await_reply(lambda f: isinstance(f, Ack) and f.name == "rupdconfig_ok")
        log.info(
            "remote config sent gateway=%s servers=%s name=%s acked=%s",
            gateway,
            server_names,
            terminal_name,
            reply is not None,
        )
        return True
