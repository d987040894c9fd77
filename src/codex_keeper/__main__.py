from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from codex_keeper.config import YamlConfigLoader
from codex_keeper.config.models import AppConfig, ConfigLoadRequest
from codex_keeper.errors import KeeperError
from codex_keeper.logging import init_logging
from codex_keeper.service import (
    AddOrUpdateRequest,
    DocumentationService,
    FindLinesRequest,
    ListDocumentsRequest,
    RefreshCacheRequest,
    RemoveRequest,
    SearchRequest,
    build_request,
)

logger = logging.getLogger(__name__)

CLI_CLIENT_ID = "cli"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="codex-keeper", description="Documentation cache and search")
    parser.add_argument(
        "--config",
        default="data/config/config.yaml",
        help="Path to config.yaml (default: data/config/config.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    list_parser = subparsers.add_parser("list", help="List cached documents")
    list_parser.add_argument("--category")
    list_parser.add_argument("--tag")
    list_parser.add_argument("--page", type=int, default=1)

    add_parser = subparsers.add_parser("add", help="Add or update a document and fetch its content")
    add_parser.add_argument("name")
    add_parser.add_argument("url")
    add_parser.add_argument("--description", default="")
    add_parser.add_argument("--category", default="")
    add_parser.add_argument("--tag", dest="tags", action="append", default=[])
    add_parser.add_argument("--version")
    add_parser.add_argument("--alternative-url")

    remove_parser = subparsers.add_parser("remove", help="Remove a document and its files")
    remove_parser.add_argument("name")

    search_parser = subparsers.add_parser("search", help="Rank documents against a query")
    search_parser.add_argument("query")
    search_parser.add_argument("--category")
    search_parser.add_argument("--tag")
    search_parser.add_argument("--page", type=int, default=1)

    lines_parser = subparsers.add_parser("lines", help="Find matching lines in one document")
    lines_parser.add_argument("name")
    lines_parser.add_argument("query")

    refresh_parser = subparsers.add_parser("refresh", help="Refresh one or all documents from their sources")
    refresh_parser.add_argument("--name")
    refresh_parser.add_argument("--force", action="store_true")

    subparsers.add_parser("cleanup", help="Sweep the on-disk cache once")
    subparsers.add_parser("backup", help="Snapshot the cache and metadata")

    restore_parser = subparsers.add_parser("restore", help="Restore a snapshot")
    restore_parser.add_argument("--timestamp")

    return parser


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        data = {f.name: _to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
        for prop in ("total_pages", "has_next_page", "has_previous_page"):
            if hasattr(type(value), prop):
                data[prop] = getattr(value, prop)
        return data
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    if isinstance(value, set):
        return sorted(_to_jsonable(v) for v in value)
    if isinstance(value, dict):
        return {k: _to_jsonable(v) for k, v in value.items()}
    return value


async def _load_config(args: argparse.Namespace) -> AppConfig:
    loader = YamlConfigLoader()
    request = ConfigLoadRequest(
        yaml_path=args.config,
    )
    return await loader.load(request)


async def _run_command(service: DocumentationService, args: argparse.Namespace) -> Any:
    command = args.command
    if command == "list":
        request = build_request(ListDocumentsRequest, {"category": args.category, "tag": args.tag, "page": args.page})
        return await service.list_documents(CLI_CLIENT_ID, request)
    if command == "add":
        request = build_request(
            AddOrUpdateRequest,
            {
                "name": args.name,
                "url": args.url,
                "description": args.description,
                "category": args.category,
                "tags": args.tags,
                "version": args.version,
                "alternative_url": args.alternative_url,
            },
        )
        return await service.add_or_update(CLI_CLIENT_ID, request)
    if command == "remove":
        await service.remove(CLI_CLIENT_ID, build_request(RemoveRequest, {"name": args.name}))
        return {"removed": args.name}
    if command == "search":
        request = build_request(
            SearchRequest,
            {"query": args.query, "category": args.category, "tag": args.tag, "page": args.page},
        )
        return await service.search(CLI_CLIENT_ID, request)
    if command == "lines":
        request = build_request(FindLinesRequest, {"name": args.name, "query": args.query})
        return await service.find_lines(CLI_CLIENT_ID, request)
    if command == "refresh":
        request = build_request(RefreshCacheRequest, {"name": args.name, "force": args.force})
        return await service.refresh_cache(CLI_CLIENT_ID, request)
    if command == "cleanup":
        return await service.store.cleanup()
    if command == "backup":
        return {"backup": await service.store.create_backup()}
    if command == "restore":
        return {"restored": await service.store.restore_backup(args.timestamp)}
    raise ValueError(f"Unknown command: {command}")


async def _main_async() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    config = await _load_config(args)
    init_logging(config.logging)
    logger.debug("Running command. command=%s", args.command)

    async with DocumentationService.from_config(config, background=False) as service:
        try:
            result = await _run_command(service, args)
        except KeeperError as e:
            logger.error("Command failed. command=%s error=%s", args.command, e)
            print(json.dumps({"error": type(e).__name__, "message": str(e)}, indent=2))
            return 1
    print(json.dumps(_to_jsonable(result), indent=2, ensure_ascii=False))
    return 0


def main() -> None:
    try:
        sys.exit(asyncio.run(_main_async()))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")


if __name__ == "__main__":
    main()
