from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .config import AppConfig
from .connection import ConnectionManager, ConnectResult, Mode
from .dispatcher import CommandDispatcher
from .index import ProductIndex
from .pipeline import LookupPipeline

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineStatus:
    connected: bool
    state: str
    mode: str
    peer: Optional[str]
    products: int
    last_reload: Optional[datetime]


class TerminalEngine:
    """Wires connection, dispatcher and lookup pipeline for one terminal."""

    def __init__(
        self,
        config: AppConfig,
        index: ProductIndex,
        image_fetcher: Any = None,
        socket_factory: Callable[..., Any] | None = None,
        listener_factory: Callable[[int], Any] | None = None,
    ) -> None:
        self.config = config
        self.index = index
        self.connection = ConnectionManager(
            config.terminal,
            socket_factory=socket_factory,
            listener_factory=listener_factory,
        )
        self.dispatcher = CommandDispatcher(self.connection, config.terminal)
        self.pipeline = LookupPipeline(
            index,
            self.dispatcher,
            image_fetcher=image_fetcher,
            please_wait=config.please_wait,
            images=config.images,
            workers=config.workers,
        )
        self.connection.on_frame = self.dispatcher.on_frame
        self.dispatcher.barcode_handler = self.pipeline.submit
        self._supervisor: threading.Thread | None = None

    def start(self) -> None:
        if self._supervisor is not None:
            return
        self._supervisor = threading.Thread(
            target=self.supervise, name="terminal-supervisor", daemon=True
        )
        self._supervisor.start()

    def supervise(self) -> None:
        """Keep the connection up until stopped."""
        conn = self.connection
        result = conn.connect()
        if not result:
            log.warning("initial connect failed: %s", result.error.value if result.error else "?")
        while not conn.wait(self.config.terminal.reconnect_interval):
            self.check_once()

    def check_once(self) -> Optional[ConnectResult]:
        conn = self.connection
        if conn.stopped:
            return None
        if conn.mode is Mode.SERVER:
            # accept loop handles new terminals; only make sure we are listening
            return conn.connect()
        if conn.is_connected():
            return None
        log.info("terminal not connected, reconnecting")
        return conn.reconnect()

    def stop(self) -> None:
        log.info("stopping terminal engine")
        self.connection.stop()
        if self._supervisor is not None and self._supervisor is not threading.current_thread():
            self._supervisor.join(timeout=2.0)
        self.pipeline.shutdown(wait=False)

    def status(self) -> EngineStatus:
        conn = self.connection
        peer = f"{conn.peer[0]}:{conn.peer[1]}" if conn.peer else None
        return EngineStatus(
            connected=conn.is_connected(),
            state=conn.state.value,
            mode=conn.mode.value,
            peer=peer,
            products=self.index.size(),
            last_reload=self.index.last_reload_time(),
        )

    def send_product(self, key: str) -> bool:
        """Push the product for ``key`` to the terminal, or not-found."""
        record = self.index.lookup(key)
        if record is None:
            self.dispatcher.send_not_found()
            return False
        return self.dispatcher.send_record(record)

    def send_message(self, line1: str, line2: str = "", seconds: int = 3) -> bool:
        return self.dispatcher.send_message(line1, line2, seconds)
