from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional, Sequence

from artifact_cache.codec import decode_record
from artifact_cache.config import YamlConfigLoader
from artifact_cache.config.models import AppConfig, ConfigLoadRequest
from artifact_cache.disk_store import DiskStore
from artifact_cache.errors import RecordNotFoundError
from artifact_cache.logging import init_logging

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="artifact-cache", description="Inspect and maintain an artifact cache directory")
    parser.add_argument(
        "--config",
        default="artifact-cache.yaml",
        help="Path to the YAML config file (default: artifact-cache.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    subparsers.add_parser("list", help="List the keys of all persisted records")

    inspect_parser = subparsers.add_parser("inspect", help="Show the metadata and payload sizes of one record")
    inspect_parser.add_argument("key", help="Cache key to inspect")

    subparsers.add_parser("purge", help="Delete the cache directory")

    return parser


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


def _disk_store(config: AppConfig) -> Optional[DiskStore]:
    if not config.cache.persist or not config.cache.cache_dir:
        logger.error("Persistence is disabled in the config; there is no cache directory to operate on.")
        return None
    return DiskStore(config.cache.cache_dir)


async def _list(store: DiskStore) -> int:
    for key in store.list_keys():
        print(key)
    return 0


async def _inspect(store: DiskStore, key: str) -> int:
    try:
        data = await store.read(key)
    except RecordNotFoundError:
        logger.error("No cache record found. key=%s path=%s", key, store.path_for(key))
        return 1
    record = decode_record(data)
    print(json.dumps(record.metadata, indent=2, sort_keys=True))
    for name, payload in record.payloads.items():
        print(f"{name}\t{len(payload)} bytes")
    return 0


async def _purge(store: DiskStore) -> int:
    await store.remove_all()
    logger.info("Cache directory purged. path=%s", store.cache_dir)
    return 0


async def _main_async(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = await _load_config(args)
    init_logging(config.logging)

    store = _disk_store(config)
    if store is None:
        return 2

    if args.command == "list":
        return await _list(store)
    if args.command == "inspect":
        return await _inspect(store, args.key)
    if args.command == "purge":
        return await _purge(store)
    return 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return asyncio.run(_main_async(argv))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
