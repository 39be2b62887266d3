from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from secretsfs.config import defaults_json, load_config
from secretsfs.errors import ConfigError
from secretsfs.fs.registry import DuplicateNamespaceError, build_registry
from secretsfs.fs.router import new_filesystem
from secretsfs.logging.ndjson import init_logging, log_event
from secretsfs.store.factory import available_stores, build_store


def _load_dotenvs() -> None:
    """
    Load environment variables from:
    - /etc/secretsfs/.env
    - ./.env
    """
    load_dotenv(Path("/etc/secretsfs/.env"))
    load_dotenv(Path.cwd() / ".env")


def _parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="secretsfs",
        description="Mount Vault secrets as a read-only filesystem.",
    )
    ap.add_argument("mountpoint", nargs="?", help="Directory to mount on.")
    ap.add_argument("-o", dest="options", default="", help="Options passed through to fuse, comma separated.")
    ap.add_argument("--foreground", action="store_true", help="Run in foreground.")
    ap.add_argument("--print-defaults", action="store_true", help="Print default configuration.")
    ap.add_argument("--print-store", action="store_true", help="Print currently set store.")
    ap.add_argument("--print-stores", action="store_true", help="Print available stores.")
    ap.add_argument("--print-fios", action="store_true", help="Print enabled FIOs.")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = _parser()
    args = ap.parse_args(argv)

    if args.print_defaults:
        print(f"Default Configs:\n{defaults_json()}", end="")
        return 0
    if args.print_stores:
        print(f"Available Stores are: {available_stores()}")
        return 0

    _load_dotenvs()
    try:
        cfg = load_config()
        if args.print_store:
            print(f"Currently set store is: {cfg.store_enabled}")
            return 0
        store = build_store(cfg)
        registry = build_registry(store, cfg)
    except (ConfigError, DuplicateNamespaceError) as e:
        print(f"secretsfs: {e}", file=sys.stderr)
        return 1

    if args.print_fios:
        print(f"Available FIOs are: {sorted(registry.all())}")
        return 0

    if not args.mountpoint:
        ap.print_usage(sys.stderr)
        return 2

    try:
        init_logging(echo=args.foreground)
    except OSError as e:
        print(f"secretsfs: cannot prepare log dir: {e}", file=sys.stderr)
    log_event(
        level="info",
        event="app.startup",
        data={
            "store": store.describe(),
            "fios": sorted(registry.all()),
            "config": str(cfg.source) if cfg.source else None,
        },
    )

    # fusepy loads libfuse at import time
    from secretsfs.fuse_ops import mount, parse_mount_options

    mount(
        new_filesystem(registry, store),
        args.mountpoint,
        foreground=args.foreground,
        options=parse_mount_options(args.options),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
