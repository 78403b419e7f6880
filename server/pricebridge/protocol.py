from __future__ import annotations

from dataclasses import dataclass
from typing import Union

MARK = b"#"
ETB = b"\x17"
SEP = b"|"

NAME_WIDTH = 80  # 4 lines x 20 columns
PRICE_WIDTH = 20
LINE_WIDTH = 20
MAX_IMAGE_BYTES = 124 * 1024
MAX_IMAGE_INDEX = 0xFE

# Length and time fields are sent as a single byte holding value + 48
_ASCII_ZERO = 48
_MAX_FIELD = 255 - _ASCII_ZERO
_UNSUPPORTED = bytes([61]) + "Não suportado".encode("latin-1")

# Replies the terminal sends on its own; anything else after '#' is a scan.
# Longest first so "#rupdconfig_ok" wins over "#rupdconfig".
ACK_PREFIXES = tuple(
    sorted(
        (
            b"#macaddr",
            b"#gif_ok",
            b"#img_error",
            b"#nfound",
            b"#mesg",
            b"#rupdconfig_ok",
            b"#rupdconfig",
            b"#playaudio",
            b"#audioconfig",
            b"#raudioconfig",
        ),
        key=len,
        reverse=True,
    )
)


class ImageTooLarge(ValueError):
    pass


def _text(s: str) -> bytes:
    return s.encode("latin-1", errors="replace")


def _fixed(raw: bytes, width: int) -> bytes:
    return raw[:width].ljust(width, b" ")


def _sized(raw: bytes) -> bytes:
    raw = raw[:_MAX_FIELD]
    return bytes([len(raw) + _ASCII_ZERO]) + raw


def clean_name(name: str) -> str:
    for ch in ("\n", "\r", "|"):
        name = name.replace(ch, " ")
    return name


def clean_price(price: str) -> str:
    return price.replace("#", "")


# --- host -> terminal -------------------------------------------------------


@dataclass
class ProductDisplay:
    name: str
    price: str

    def encode(self) -> bytes:
        name = _fixed(_text(clean_name(self.name)), NAME_WIDTH)
        price = _fixed(_text(clean_price(self.price)), PRICE_WIDTH)
        return MARK + name + SEP + price


@dataclass
class NotFound:
    def encode(self) -> bytes:
        return b"#nfound"


@dataclass
class Message:
    line1: str
    line2: str = ""
    seconds: int = 3

    def encode(self) -> bytes:
        l1 = _text(self.line1)[:LINE_WIDTH]
        l2 = _text(self.line2)[:LINE_WIDTH]
        secs = min(max(int(self.seconds), 0), 99)
        return (
            b"#mesg"
            + _sized(l1)
            + _sized(l2)
            + bytes([secs + _ASCII_ZERO, _ASCII_ZERO])
        )


@dataclass
class MacQuery:
    def encode(self) -> bytes:
        return b"#macaddr?"


@dataclass
class ImageTransfer:
    data: bytes
    index: int = 0
    loops: int = 1
    duration: int = 5

    def encode(self) -> bytes:
        if len(self.data) > MAX_IMAGE_BYTES:
            raise ImageTooLarge(
                f"image is {len(self.data)} bytes, limit is {MAX_IMAGE_BYTES}"
            )
        if not 0 <= self.index <= MAX_IMAGE_INDEX:
            raise ValueError(f"image index must be 0..{MAX_IMAGE_INDEX:#x}")
        loops = min(max(self.loops, 0), 0xFF)
        duration = min(max(self.duration, 0), 0xFF)
        header = f"{self.index:02X}{loops:02X}{duration:02X}{len(self.data):06X}0000"
        return b"#gif" + header.encode("ascii") + ETB + bytes(self.data)


@dataclass
class RemoteConfig:
    gateway: str
    server_names: str
    terminal_name: str

    def encode(self) -> bytes:
        return (
            b"#rupdconfig"
            + _sized(_text(self.gateway))
            + _sized(_text(self.server_names))
            + _sized(_text(self.terminal_name))
            + _UNSUPPORTED * 3
        )


Command = Union[ProductDisplay, NotFound, Message, MacQuery, ImageTransfer, RemoteConfig]


# --- terminal -> host -------------------------------------------------------


@dataclass(frozen=True)
class Barcode:
    code: str


@dataclass(frozen=True)
class Ack:
    name: str
    raw: bytes = b""


@dataclass(frozen=True)
class MacAddressReply:
    interface: int
    mac: str


@dataclass(frozen=True)
class Incomplete:
    raw: bytes = b""


@dataclass(frozen=True)
class Unrecognized:
    raw: bytes
    reason: str = ""


Frame = Union[Barcode, Ack, MacAddressReply]


def _parse_mac(buf: bytes) -> MacAddressReply | Incomplete | Unrecognized:
    # #macaddr <?> <iface> <len> <mac...>
    if len(buf) < 11:
        return Incomplete(buf)
    interface = buf[9] - _ASCII_ZERO
    size = buf[10] - _ASCII_ZERO
    if size < 0:
        return Unrecognized(buf, "bad mac length")
    mac = buf[11 : 11 + size]
    if len(mac) < size:
        return Incomplete(buf)
    return MacAddressReply(interface=interface, mac=mac.decode("latin-1"))


def decode(buf: bytes) -> Frame | Incomplete | Unrecognized:
    """Classify one buffer read from the terminal."""
    if not buf:
        return Incomplete(buf)
    if not buf.startswith(MARK):
        return Unrecognized(buf, "no leading '#'")
    for prefix in ACK_PREFIXES:
        if buf.startswith(prefix):
            if prefix == b"#macaddr":
                return _parse_mac(buf)
            return Ack(name=prefix[1:].decode("ascii"), raw=bytes(buf))
    code = buf[1:].rstrip(b"\x00\r\n ").decode("latin-1")
    if not code:
        return Unrecognized(buf, "empty barcode")
    return Barcode(code)


def _take_sized(buf: bytes, pos: int) -> tuple[str, int]:
    if pos >= len(buf):
        raise IndexError(pos)
    size = buf[pos] - _ASCII_ZERO
    end = pos + 1 + size
    if size < 0 or end > len(buf):
        raise IndexError(pos)
    return buf[pos + 1 : end].decode("latin-1"), end


def _parse_gif(buf: bytes) -> ImageTransfer | Incomplete | Unrecognized:
    # #gif + 16 header chars + ETB
    if len(buf) < 21:
        return Incomplete(buf)
    if buf[20:21] != ETB:
        return Unrecognized(buf, "missing ETB")
    try:
        header = buf[4:20].decode("ascii")
        index = int(header[0:2], 16)
        loops = int(header[2:4], 16)
        duration = int(header[4:6], 16)
        size = int(header[6:12], 16)
    except (UnicodeDecodeError, ValueError):
        return Unrecognized(buf, "bad gif header")
    data = buf[21 : 21 + size]
    if len(data) < size:
        return Incomplete(buf)
    return ImageTransfer(data=bytes(data), index=index, loops=loops, duration=duration)


def parse_command(buf: bytes) -> Command | Incomplete | Unrecognized:
    """Decode a host -> terminal frame back into its command object.

    Used by the terminal simulator; padding is stripped from the product
    name and price fields.
    """
    if not buf:
        return Incomplete(buf)
    if buf.startswith(b"#gif") and not buf.startswith(b"#gif_ok"):
        return _parse_gif(buf)
    if len(buf) == 1 + NAME_WIDTH + 1 + PRICE_WIDTH and buf[1 + NAME_WIDTH : 2 + NAME_WIDTH] == SEP:
        name = buf[1 : 1 + NAME_WIDTH].decode("latin-1").rstrip(" ")
        price = buf[2 + NAME_WIDTH :].decode("latin-1").rstrip(" ")
        return ProductDisplay(name=name, price=price)
    if buf == b"#nfound":
        return NotFound()
    if buf == b"#macaddr?":
        return MacQuery()
    try:
        if buf.startswith(b"#mesg"):
            line1, pos = _take_sized(buf, 5)
            line2, pos = _take_sized(buf, pos)
            if pos >= len(buf):
                return Incomplete(buf)
            return Message(line1=line1, line2=line2, seconds=buf[pos] - _ASCII_ZERO)
        if buf.startswith(b"#rupdconfig") and not buf.startswith(b"#rupdconfig_ok"):
            gateway, pos = _take_sized(buf, 11)
            servers, pos = _take_sized(buf, pos)
            name, pos = _take_sized(buf, pos)
            return RemoteConfig(gateway=gateway, server_names=servers, terminal_name=name)
    except IndexError:
        return Incomplete(buf)
    return Unrecognized(buf, "unknown command")
