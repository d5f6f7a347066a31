"""Utility helpers for administrative tasks."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .backends import SqlBackend, create_backend
from .config import Settings, get_settings
from .crud import export_collections
from .migration import migrate_data
from .store import CollectionStore

logger = logging.getLogger(__name__)


def initial_data() -> Dict[str, Any]:
    """Seed document used to bootstrap an empty deployment."""

    return {
        "emergencyItems": [
            {
                "id": "1744181823081",
                "name": "背负式四冲程 灭火器",
                "category": "消防物资",
                "quantity": 1,
                "unit": "台",
                "spec": "",
                "price": 0,
                "source": "新区拨付租借",
                "date": "2025-04-02",
                "operator": "system",
                "usage": "",
                "notes": "物资位置3B",
                "totalValue": 0,
                "createdAt": "2025-04-02T00:00:00.000Z",
                "updatedAt": "2025-04-02T00:00:00.000Z",
            }
        ],
        "outboundRecords": [],
        "returnRecords": [],
        "borrowRecords": [],
        "operationLogs": [],
    }


async def init_database(settings: Optional[Settings] = None) -> None:
    """Create the tables used by the SQL backend."""

    settings = settings or get_settings()
    backend = create_backend(settings)
    try:
        if not isinstance(backend, SqlBackend):
            logger.info("%s backend needs no schema setup", backend.name)
            return
        await backend.initialize()
    finally:
        await backend.close()


async def import_backup(path: Path, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Migrate a JSON backup file into the configured store."""

    document = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        raise ValueError("Backup file must contain a JSON object")
    return await _migrate(document, settings)


async def seed_initial_data(settings: Optional[Settings] = None) -> Dict[str, Any]:
    return await _migrate(initial_data(), settings)


async def _migrate(document: Dict[str, Any], settings: Optional[Settings]) -> Dict[str, Any]:
    settings = settings or get_settings()
    backend = create_backend(settings)
    try:
        await backend.initialize()
        store = CollectionStore(
            backend, prefix=settings.kv_prefix, max_retries=settings.store_max_retries
        )
        result = await migrate_data(store, document, backup_retention=settings.backup_retention)
    finally:
        await backend.close()
    return result.model_dump()


async def export_backup(path: Path, settings: Optional[Settings] = None) -> Dict[str, int]:
    """Write every collection to ``path`` as a backup document."""

    settings = settings or get_settings()
    backend = create_backend(settings)
    try:
        await backend.initialize()
        store = CollectionStore(backend, prefix=settings.kv_prefix)
        document = await export_collections(store)
    finally:
        await backend.close()
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")
    return {name: len(records) for name, records in document.items()}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="supply-service-admin", description="Emergency supply service administration"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("init-db", help="Create SQL backend tables")
    import_parser = subparsers.add_parser("import", help="Import a JSON backup file")
    import_parser.add_argument("path", type=Path)
    export_parser = subparsers.add_parser("export", help="Export collections to a JSON file")
    export_parser.add_argument("path", type=Path)
    subparsers.add_parser("seed", help="Load the bundled initial data")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI wrapper executed from :mod:`python -m`."""

    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s:%(name)s:%(message)s")

    if args.command == "init-db":
        asyncio.run(init_database(settings))
        return 0
    if args.command == "export":
        counts = asyncio.run(export_backup(args.path, settings))
        print(json.dumps(counts, ensure_ascii=False))
        return 0
    if args.command == "import":
        result = asyncio.run(import_backup(args.path, settings))
    else:
        result = asyncio.run(seed_initial_data(settings))
    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0 if result["success"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
