from __future__ import annotations

import logging
import select
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .config import TerminalConfig
from .protocol import MARK, Frame, Incomplete, Unrecognized, decode

log = logging.getLogger(__name__)

BUFSIZE = 255
MAX_PENDING = 4096

# The peer went away; anything else is treated as transient.
_CLOSED_ERRORS = (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Mode(Enum):
    CLIENT = "client"
    SERVER = "server"


class ConnectError(Enum):
    INVALID_ADDRESS = "invalid_address"
    TIMEOUT = "timeout"
    REFUSED = "refused"
    SOCKET_ERROR = "socket_error"


@dataclass(frozen=True)
class ConnectResult:
    ok: bool
    error: Optional[ConnectError] = None
    detail: str = ""

    def __bool__(self) -> bool:
        return self.ok


def _open_listener(port: int) -> socket.socket:
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        srv.bind(("", port))
        srv.listen(1)
    except OSError:
        srv.close()
        raise
    return srv


def _close_quietly(sock: Any) -> None:
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        sock.close()
    except OSError:
        pass


def socket_alive(sock: Any) -> bool:
    """True unless the socket is closed or the peer has already hung up.

    Never waits: the peek only runs when select() reports the socket
    readable, and the socket is non-blocking for its duration.
    """
    try:
        if sock.fileno() == -1:
            return False
        readable, _, _ = select.select([sock], [], [], 0)
    except (OSError, ValueError):
        return False
    if not readable:
        return True
    timeout = sock.gettimeout()
    try:
        sock.setblocking(False)
        peek = sock.recv(1, socket.MSG_PEEK)
    except (BlockingIOError, InterruptedError):
        # the reader consumed the data first
        return True
    except OSError:
        return False
    finally:
        try:
            sock.settimeout(timeout)
        except OSError:
            pass
    return bool(peek)


FrameHandler = Callable[[Any], None]


class ConnectionManager:
    """Owns the single TCP connection to the display terminal.

    In client mode ``connect()`` dials the terminal; in server mode it starts
    listening and every accepted connection replaces the previous one.
    """

    def __init__(
        self,
        config: TerminalConfig,
        on_frame: FrameHandler | None = None,
        socket_factory: Callable[..., Any] | None = None,
        listener_factory: Callable[[int], Any] | None = None,
    ) -> None:
        self.config = config
        self.mode = Mode(config.mode)
        self.on_frame = on_frame
        self._dial = socket_factory or socket.create_connection
        self._open_listener = listener_factory or _open_listener
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._state = ConnectionState.DISCONNECTED
        self._connected = False
        self._sock: Any = None
        self._generation = 0
        self._listener: Any = None
        self._accept_thread: threading.Thread | None = None
        self._reader: threading.Thread | None = None
        self.peer: tuple[str, int] | None = None

    # --- state ---------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def is_connected(self) -> bool:
        with self._lock:
            sock = self._sock
            if not self._connected or sock is None:
                return False
            alive = socket_alive(sock)
        if not alive:
            log.debug("socket no longer alive peer=%s", self.peer)
        return alive

    def wait(self, seconds: float) -> bool:
        """Sleep unless stopped; returns True when stop was requested."""
        return self._stop.wait(seconds)

    # --- transitions ---------------------------------------------------------

    def connect(self) -> ConnectResult:
        with self._lock:
            if self._stop.is_set():
                return ConnectResult(False, ConnectError.SOCKET_ERROR, "stopped")
            if self.mode is Mode.SERVER:
                return self._start_listener()
            if self.is_connected():
                return ConnectResult(True)
            self._drop_active("stale connection")
            return self._dial_terminal()

    def disconnect(self) -> None:
        with self._lock:
            self._drop_active("disconnect requested")
            if self._listener is not None:
                _close_quietly(self._listener)
                self._listener = None
                log.info("stopped listening port=%s", self.config.port)
            self._state = ConnectionState.DISCONNECTED

    def reconnect(self) -> ConnectResult:
        self.disconnect()
        if self._stop.wait(self.config.reconnect_interval):
            return ConnectResult(False, ConnectError.SOCKET_ERROR, "stopped")
        return self.connect()

    def stop(self) -> None:
        self._stop.set()
        self.disconnect()
        current = threading.current_thread()
        for t in (self._accept_thread, self._reader):
            if t is not None and t is not current and t.is_alive():
                t.join(timeout=max(1.0, self.config.poll_interval * 5))

    # --- I/O -----------------------------------------------------------------

    def send(self, data: bytes) -> bool:
        """Write one whole frame; frames never interleave."""
        with self._lock:
            sock = self._sock
            if sock is None or not self._connected:
                log.warning("send skipped, not connected")
                return False
            try:
                sock.sendall(data)
            except OSError as e:
                log.error("write failed peer=%s: %s", self.peer, e)
                self._drop_active("write failed")
                return False
        log.debug("sent %d byte(s)", len(data))
        return True

    # --- internals -----------------------------------------------------------

    def _dial_terminal(self) -> ConnectResult:
        host, port = self.config.host, self.config.port
        if not host:
            return self._failed(ConnectError.INVALID_ADDRESS, "no host configured")
        self._state = ConnectionState.CONNECTING
        log.info("connecting to terminal %s:%s", host, port)
        try:
            sock = self._dial((host, port), timeout=self.config.connect_timeout)
        except socket.gaierror as e:
            return self._failed(ConnectError.INVALID_ADDRESS, str(e))
        except (ValueError, OverflowError, TypeError) as e:
            return self._failed(ConnectError.INVALID_ADDRESS, str(e))
        except socket.timeout as e:
            return self._failed(ConnectError.TIMEOUT, str(e) or "timed out")
        except ConnectionRefusedError as e:
            return self._failed(ConnectError.REFUSED, str(e))
        except OSError as e:
            return self._failed(ConnectError.SOCKET_ERROR, str(e))
        self._attach(sock, (host, port))
        log.info("connected to terminal %s:%s", host, port)
        return ConnectResult(True)

    def _failed(self, error: ConnectError, detail: str) -> ConnectResult:
        self._state = ConnectionState.DISCONNECTED
        log.error(
            "connect failed host=%s port=%s error=%s: %s",
            self.config.host,
            self.config.port,
            error.value,
            detail,
        )
        return ConnectResult(False, error, detail)

    def _start_listener(self) -> ConnectResult:
        if self._listener is not None:
            return ConnectResult(True, detail="listening")
        try:
            listener = self._open_listener(self.config.port)
        except OSError as e:
            return self._failed(ConnectError.SOCKET_ERROR, str(e))
        listener.settimeout(self.config.poll_interval)
        self._listener = listener
        if self._sock is None:
            self._state = ConnectionState.CONNECTING
        self._accept_thread = threading.Thread(
            target=self._accept_loop, args=(listener,), name="terminal-accept", daemon=True
        )
        self._accept_thread.start()
        log.info("listening for terminal on port %s", self.config.port)
        return ConnectResult(True, detail="listening")

    def _accept_loop(self, listener: Any) -> None:
        while not self._stop.is_set() and self._listener is listener:
            try:
                conn, addr = listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop.is_set() or self._listener is not listener:
                    break
                log.error("accept failed: %s", e)
                self._stop.wait(self.config.read_error_backoff)
                continue
            with self._lock:
                if self._stop.is_set() or self._listener is not listener:
                    _close_quietly(conn)
                    break
                if self._sock is not None:
                    log.info("new terminal connection supersedes peer=%s", self.peer)
                self._attach(conn, addr)
            log.info("terminal connected peer=%s:%s", addr[0], addr[1])

    def _attach(self, sock: Any, peer: Any) -> None:
        self._drop_active("superseded")
        self._generation += 1
        gen = self._generation
        # Blocking writes are bounded by the connect timeout; reads wait in select().
        sock.settimeout(self.config.connect_timeout)
        self._sock = sock
        self.peer = (str(peer[0]), int(peer[1])) if peer else None
        self._connected = True
        self._state = ConnectionState.CONNECTED
        self._reader = threading.Thread(
            target=self._read_loop, args=(sock, gen), name="terminal-reader", daemon=True
        )
        self._reader.start()

    def _drop_active(self, reason: str) -> None:
        sock = self._sock
        if sock is None:
            return
        self._generation += 1
        self._sock = None
        self._connected = False
        self._state = (
            ConnectionState.CONNECTING if self._listener is not None else ConnectionState.DISCONNECTED
        )
        _close_quietly(sock)
        log.info("connection closed peer=%s reason=%s", self.peer, reason)

    def _current(self, gen: int) -> bool:
        return gen == self._generation

    def _lost(self, gen: int, reason: str) -> None:
        with self._lock:
            if self._current(gen):
                self._drop_active(reason)

    def _read_loop(self, sock: Any, gen: int) -> None:
        pending = b""
        reason = "stopped"
        while not self._stop.is_set() and self._current(gen):
            try:
                ready, _, _ = select.select([sock], [], [], self.config.poll_interval)
                if not ready:
                    # a partial frame gets one quiet poll interval to complete
                    if pending:
                        self._flush(pending, "incomplete frame timed out")
                        pending = b""
                    continue
                data = sock.recv(BUFSIZE)
            except _CLOSED_ERRORS as e:
                reason = f"peer reset ({e.__class__.__name__})"
                break
            except (OSError, ValueError) as e:
                if self._stop.is_set() or not self._current(gen):
                    break
                log.error("read error peer=%s: %s", self.peer, e)
                if self._stop.wait(self.config.read_error_backoff):
                    break
                continue
            if not data:
                reason = "closed by peer"
                break
            if pending and data.startswith(MARK):
                self._flush(pending, "incomplete frame superseded")
                pending = b""
            pending = self._handle(pending + data)
        self._lost(gen, reason)
        log.debug("reader exiting gen=%s", gen)

    def _flush(self, pending: bytes, reason: str) -> None:
        log.warning("discarding %d byte(s) peer=%s: %s", len(pending), self.peer, reason)
        self._deliver(Unrecognized(pending, reason))

    def _handle(self, buf: bytes) -> bytes:
        frame = decode(buf)
        if isinstance(frame, Incomplete):
            if len(buf) > MAX_PENDING:
                self._flush(buf, "incomplete frame too long")
                return b""
            return buf
        log.debug("received %r", buf)
        self._deliver(frame)
        return b""

    def _deliver(self, frame: Frame | Unrecognized) -> None:
        handler = self.on_frame
        if handler is None:
            return
        try:
            handler(frame)
        except Exception:
            log.exception("frame handler failed for %r", frame)
