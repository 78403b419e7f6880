from __future__ import annotations

import argparse
import socket
import sys
import threading
import time

from .protocol import ImageTransfer, parse_command


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Fake price-checker terminal for manual testing")
    p.add_argument("codes", nargs="*", help="Barcodes to scan, in order")
    p.add_argument("--host", default="127.0.0.1", help="Bridge host when dialing (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=6500, help="TCP port (default: 6500)")
    p.add_argument(
        "--listen",
        action="store_true",
        help="Wait for the bridge to dial us (bridge in client mode)",
    )
    p.add_argument(
        "--interval",
        type=float,
        default=3.0,
        help="Seconds between scans (default: 3)",
    )
    p.add_argument("--mac", default="00:1D:5B:00:65:A8", help="MAC address to report")
    return p.parse_args(argv)


def _describe(buf: bytes) -> str:
    cmd = parse_command(buf)
    if isinstance(cmd, ImageTransfer):
        return f"ImageTransfer(index={cmd.index}, loops={cmd.loops}, duration={cmd.duration}, size={len(cmd.data)})"
    return repr(cmd)


def _mac_reply(mac: str) -> bytes:
    # '#macaddr' + pad + interface + length + mac
    return b"#macaddr:" + bytes([48, len(mac) + 48]) + mac.encode("ascii")


def _reader(sock: socket.socket, stop: threading.Event, mac: str) -> None:  # pragma: no cover
    while not stop.is_set():
        try:
            data = sock.recv(200 * 1024)
        except socket.timeout:
            continue
        except OSError as e:
            print(f"[reader error] {e}", file=sys.stderr)
            break
        if not data:
            print("[bridge closed connection]")
            stop.set()
            break
        print(f"[bridge] {_describe(data)}")
        if data == b"#macaddr?":
            sock.sendall(_mac_reply(mac))
        elif data.startswith(b"#gif"):
            sock.sendall(b"#gif_ok")
        elif data.startswith(b"#rupdconfig"):
            sock.sendall(b"#rupdconfig_ok")


def _open(args: argparse.Namespace) -> socket.socket:
    if not args.listen:
        return socket.create_connection((args.host, args.port), timeout=10.0)
    srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    srv.bind(("", args.port))
    srv.listen(1)
    print(f"waiting for bridge on port {args.port}")
    try:
        conn, addr = srv.accept()
    finally:
        srv.close()
    print(f"bridge connected from {addr[0]}:{addr[1]}")
    return conn


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    try:
        sock = _open(args)
    except OSError as e:  # pragma: no cover - network dependent
        print(f"Failed to open connection on port {args.port}: {e}", file=sys.stderr)
        return 2
    sock.settimeout(0.2)

    reader_stop = threading.Event()
    reader_thread = threading.Thread(target=_reader, args=(sock, reader_stop, args.mac), daemon=True)
    reader_thread.start()

    try:
        for code in args.codes:
            if reader_stop.is_set():
                break
            print(f"[scan] {code}")
            sock.sendall(b"#" + code.encode("latin-1"))
            time.sleep(args.interval)
        while not reader_stop.is_set():
            time.sleep(0.5)
        return 0
    except KeyboardInterrupt:  # pragma: no cover - manual stop
        return 0
    finally:
        try:
            reader_stop.set()
            reader_thread.join(timeout=1.0)
        finally:
            try:
                sock.close()
            except Exception:
                pass


def run() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
