from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


@dataclass
class TerminalConfig:
    host: str = ""
    port: int = 6500
    mode: str = "client"  # client | server
    connect_timeout: float = 10.0
    response_timeout: float = 0.5
    reconnect_interval: float = 5.0
    reconnect_on_send: bool = True
    poll_interval: float = 0.1
    read_error_backoff: float = 1.0


@dataclass
class PleaseWaitConfig:
    enabled: bool = False
    line1: str = "Consultando..."
    line2: str = ""
    seconds: int = 2


@dataclass
class CatalogConfig:
    products_file: str = "gertec_produtos.txt"
    refresh_interval: float = 5.0


@dataclass
class ImageConfig:
    enabled: bool = True
    index: int = 0
    loops: int = 1
    duration: int = 5
    fetch_timeout: float = 5.0
    cache_size: int = 64


@dataclass
class AppConfig:
    terminal: TerminalConfig = field(default_factory=TerminalConfig)
    please_wait: PleaseWaitConfig = field(default_factory=PleaseWaitConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    images: ImageConfig = field(default_factory=ImageConfig)
    workers: int = 4


_ALLOWED_MODES = {"client", "server"}

# env var -> (section, key); env wins over the file
ENV_OVERRIDES = {
    "PRICEBRIDGE_TERMINAL_HOST": ("terminal", "host"),
    "PRICEBRIDGE_TERMINAL_PORT": ("terminal", "port"),
    "PRICEBRIDGE_TERMINAL_MODE": ("terminal", "mode"),
    "PRICEBRIDGE_PRODUCTS_FILE": ("catalog", "products_file"),
}


def _as_int(val: Any, default: int) -> int:
    try:
        return int(val)
    except Exception:
        return default


def _as_float(val: Any, default: float) -> float:
    try:
        return float(val)
    except Exception:
        return default


def _as_bool(val: Any, default: bool) -> bool:
    if isinstance(val, bool):
        return val
    if isinstance(val, str):
        v = val.strip().lower()
        if v in ("1", "true", "yes", "on"):
            return True
        if v in ("0", "false", "no", "off"):
            return False
        return default
    if val is None:
        return default
    return bool(val)


def _as_str(val: Any, default: str) -> str:
    if val is None:
        return default
    return str(val)


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    return raw if isinstance(raw, dict) else {}


def _load_yaml(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text())
    return data or {}


def apply_env(data: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    env = os.environ if environ is None else environ
    for var, (section, key) in ENV_OVERRIDES.items():
        val = env.get(var)
        if val is None or val == "":
            continue
        sec = data.get(section)
        if not isinstance(sec, dict):
            sec = {}
            data[section] = sec
        sec[key] = val
    return data


def config_from_dict(data: Mapping[str, Any]) -> AppConfig:
    t = _section(data, "terminal")
    d = TerminalConfig()
    terminal = TerminalConfig(
        host=_as_str(t.get("host"), d.host).strip(),
        port=_as_int(t.get("port", d.port), d.port),
        mode=_as_str(t.get("mode"), d.mode).strip().lower(),
        connect_timeout=_as_float(t.get("connect_timeout", d.connect_timeout), d.connect_timeout),
        response_timeout=_as_float(
            t.get("response_timeout", d.response_timeout), d.response_timeout
        ),
        reconnect_interval=_as_float(
            t.get("reconnect_interval", d.reconnect_interval), d.reconnect_interval
        ),
        reconnect_on_send=_as_bool(t.get("reconnect_on_send"), d.reconnect_on_send),
        poll_interval=_as_float(t.get("poll_interval", d.poll_interval), d.poll_interval),
        read_error_backoff=_as_float(
            t.get("read_error_backoff", d.read_error_backoff), d.read_error_backoff
        ),
    )

    w = _section(data, "please_wait")
    dw = PleaseWaitConfig()
    please_wait = PleaseWaitConfig(
        enabled=_as_bool(w.get("enabled"), dw.enabled),
        line1=_as_str(w.get("line1"), dw.line1),
        line2=_as_str(w.get("line2"), dw.line2),
        seconds=_as_int(w.get("seconds", dw.seconds), dw.seconds),
    )

    c = _section(data, "catalog")
    dc = CatalogConfig()
    catalog = CatalogConfig(
        products_file=_as_str(c.get("products_file"), dc.products_file),
        refresh_interval=_as_float(
            c.get("refresh_interval", dc.refresh_interval), dc.refresh_interval
        ),
    )

    i = _section(data, "images")
    di = ImageConfig()
    images = ImageConfig(
        enabled=_as_bool(i.get("enabled"), di.enabled),
        index=_as_int(i.get("index", di.index), di.index),
        loops=_as_int(i.get("loops", di.loops), di.loops),
        duration=_as_int(i.get("duration", di.duration), di.duration),
        fetch_timeout=_as_float(i.get("fetch_timeout", di.fetch_timeout), di.fetch_timeout),
        cache_size=_as_int(i.get("cache_size", di.cache_size), di.cache_size),
    )

    return AppConfig(
        terminal=terminal,
        please_wait=please_wait,
        catalog=catalog,
        images=images,
        workers=_as_int(data.get("workers", 4), 4),
    )


def load_config(path: str | Path, environ: Mapping[str, str] | None = None) -> AppConfig:
    p = Path(path)
    data = _load_yaml(p)
    return config_from_dict(apply_env(data, environ))


def validate_config(cfg: AppConfig) -> None:
    t = cfg.terminal
    if t.mode not in _ALLOWED_MODES:
        raise ValueError(f"terminal.mode must be one of {sorted(_ALLOWED_MODES)}, got '{t.mode}'")
    if t.mode == "client" and not t.host:
        raise ValueError("terminal.host must be set in client mode")
    if t.port <= 0 or t.port > 65535:
        raise ValueError("terminal.port must be between 1 and 65535")
    if t.connect_timeout <= 0:
        raise ValueError("terminal.connect_timeout must be > 0")
    if t.response_timeout < 0:
        raise ValueError("terminal.response_timeout must be >= 0")
    if t.reconnect_interval < 0:
        raise ValueError("terminal.reconnect_interval must be >= 0")
    if t.poll_interval <= 0:
        raise ValueError("terminal.poll_interval must be > 0")

    if not 0 <= cfg.please_wait.seconds <= 99:
        raise ValueError("please_wait.seconds must be between 0 and 99")
    if not cfg.catalog.products_file:
        raise ValueError("catalog.products_file must be a non-empty string")
    if cfg.catalog.refresh_interval <= 0:
        raise ValueError("catalog.refresh_interval must be > 0")

    im = cfg.images
    if not 0 <= im.index <= 0xFE:
        raise ValueError("images.index must be between 0 and 254")
    if not 0 <= im.loops <= 0xFF:
        raise ValueError("images.loops must be between 0 and 255")
    if not 0 <= im.duration <= 0xFF:
        raise ValueError("images.duration must be between 0 and 255")
    if im.fetch_timeout <= 0:
        raise ValueError("images.fetch_timeout must be > 0")

    if cfg.workers <= 0:
        raise ValueError("workers must be > 0")


def load_and_validate_config(path: str | Path) -> AppConfig:
    cfg = load_config(path)
    validate_config(cfg)
    return cfg
