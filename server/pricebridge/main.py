from __future__ import annotations

import argparse
import logging
import sys
import time

from .config import AppConfig, load_and_validate_config
from .engine import TerminalEngine
from .images import ImageFetcher
from .index import FileProductSource, ProductIndex
from .protocol import NotFound, ProductDisplay


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Bridge a product catalog to a price-checker terminal")
    p.add_argument("--config", default="server/config.example.yaml", help="Path to YAML config")
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Load products and print the frame each --scan would produce, then exit",
    )
    p.add_argument(
        "--scan",
        action="append",
        default=[],
        metavar="CODE",
        help="Barcode to look up in --dry-run mode (repeatable)",
    )
    p.add_argument("--once", action="store_true", help="Connect once, report status and exit")
    p.add_argument(
        "--verbose",
        action="store_true",
        help="Enable INFO-level logging (default is ERROR)",
    )
    p.add_argument("--debug", action="store_true", help="Enable DEBUG-level logging")
    return p.parse_args(argv)


def _frame_for(index: ProductIndex, code: str) -> bytes:
    rec = index.lookup(code)
    if rec is None:
        return NotFound().encode()
    return ProductDisplay(name=rec.name, price=rec.price).encode()


def _build(cfg: AppConfig) -> tuple[ProductIndex, FileProductSource]:
    index = ProductIndex()
    source = FileProductSource(cfg.catalog.products_file)
    source.refresh_if_modified(index)
    return index, source


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    # Logging: minimal by default (ERROR). --verbose switches to INFO.
    lvl = logging.DEBUG if args.debug else logging.INFO if args.verbose else logging.ERROR
    logging.basicConfig(level=lvl, format="%(levelname)s:%(name)s:%(message)s", stream=sys.stderr)
    log = logging.getLogger(__name__)
    try:
        cfg = load_and_validate_config(args.config)
    except Exception as e:
        log.error("Failed to load config: %s", e)
        return 2

    index, source = _build(cfg)

    if args.dry_run:
        print(f"META products={index.size()} mode={cfg.terminal.mode}")
        for code in args.scan:
            print(_frame_for(index, code).decode("latin-1"))
        return 0

    fetcher = ImageFetcher(timeout=cfg.images.fetch_timeout, max_cache=cfg.images.cache_size)
    engine = TerminalEngine(cfg, index, image_fetcher=fetcher)

    if args.once:
        try:
            result = engine.connection.connect()
            st = engine.status()
            print(f"state={st.state} mode={st.mode} peer={st.peer} products={st.products}")
            return 0 if result else 3
        finally:
            engine.stop()

    engine.start()
    try:
        while True:
            try:
                source.refresh_if_modified(index)
            except Exception as e:
                log.warning("product refresh failed: %s", e)
            time.sleep(cfg.catalog.refresh_interval)
    except KeyboardInterrupt:
        return 0
    finally:
        engine.stop()


def run() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
