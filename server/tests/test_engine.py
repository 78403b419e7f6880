from __future__ import annotations

import socket
import time
from typing import Callable

from pricebridge.config import AppConfig, TerminalConfig
from pricebridge.engine import TerminalEngine
from pricebridge.index import DisplayRecord, ProductIndex
from pricebridge.protocol import ProductDisplay


def _wait_for(pred: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


class PairDialer:
    def __init__(self) -> None:
        self.peers: list[socket.socket] = []

    def __call__(self, addr, timeout=None):
        ours, theirs = socket.socketpair()
        theirs.settimeout(3.0)
        self.peers.append(theirs)
        return ours

    @property
    def peer(self) -> socket.socket:
        return self.peers[-1]


class ExplodingIndex(ProductIndex):
    def lookup(self, key):
        if key == "BOOM":
            raise RuntimeError("backing store exploded")
        return super().lookup(key)


def _read_exact(sock: socket.socket, n: int) -> bytes:
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            break
        buf += chunk
    return buf


def _engine(index: ProductIndex | None = None) -> tuple[TerminalEngine, PairDialer]:
    cfg = AppConfig(
        terminal=TerminalConfig(
            host="terminal.local", poll_interval=0.02, reconnect_interval=0.05, response_timeout=0.05
        ),
        workers=1,
    )
    idx = index or ProductIndex([DisplayRecord("0123456789012", "Widget", "19.90")])
    dialer = PairDialer()
    return TerminalEngine(cfg, idx, socket_factory=dialer), dialer


def test_scan_found_and_not_found() -> None:
    engine, dialer = _engine()
    try:
        assert engine.connection.connect()
        dialer.peer.sendall(b"#0123456789012")
        frame = _read_exact(dialer.peer, 102)
        assert frame[:1] == b"#"
        assert frame[1:81] == b"Widget".ljust(80)
        assert frame[81:82] == b"|"
        assert frame[82:] == b"19.90".ljust(20)

        dialer.peer.sendall(b"#9999999999999")
        assert _read_exact(dialer.peer, 7) == b"#nfound"
    finally:
        engine.stop()


def test_lookup_exception_does_not_stop_the_read_loop() -> None:
    index = ExplodingIndex([DisplayRecord("0123456789012", "Widget", "19.90")])
    engine, dialer = _engine(index)
    try:
        assert engine.connection.connect()
        dialer.peer.sendall(b"#BOOM")
        assert _read_exact(dialer.peer, 7) == b"#nfound"
        dialer.peer.sendall(b"#0123456789012")
        assert _read_exact(dialer.peer, 102) == ProductDisplay("Widget", "19.90").encode()
        assert engine.connection.is_connected()
    finally:
        engine.stop()


def test_send_product_by_key() -> None:
    engine, dialer = _engine()
    try:
        assert engine.connection.connect()
        assert engine.send_product("0123456789012") is True
        assert _read_exact(dialer.peer, 102) == ProductDisplay("Widget", "19.90").encode()
        assert engine.send_product("nope") is False
        assert _read_exact(dialer.peer, 7) == b"#nfound"
        assert engine.send_message("Oferta", "hoje", 3)
        assert _read_exact(dialer.peer, 5).startswith(b"#mesg")
    finally:
        engine.stop()


def test_status_snapshot() -> None:
    engine, dialer = _engine()
    try:
        st = engine.status()
        assert st.connected is False
        assert st.state == "disconnected"
        assert st.mode == "client"
        assert st.products == 1
        assert st.last_reload is not None

        assert engine.connection.connect()
        st = engine.status()
        assert st.connected is True
        assert st.peer == "terminal.local:6500"
    finally:
        engine.stop()


def test_supervisor_reconnects_after_peer_close() -> None:
    engine, dialer = _engine()
    try:
        engine.start()
        assert _wait_for(engine.connection.is_connected)
        first = dialer.peer
        first.close()
        assert _wait_for(lambda: len(dialer.peers) == 2 and engine.connection.is_connected())
    finally:
        engine.stop()
    assert not engine.connection.is_connected()
