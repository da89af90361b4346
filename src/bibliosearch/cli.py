"""CLI entry point for BiblioSearch operators."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from bibliosearch.adapters.base.exceptions import AdapterError, QueryError, SearchUnavailableError

if TYPE_CHECKING:
    from bibliosearch.config.settings import Settings
    from bibliosearch.core.engine import BiblioSearchEngine

EXIT_QUERY_ERROR = 2
EXIT_UNAVAILABLE = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bibliosearch",
        description="BiblioSearch — Bibliographic search with engine fallback",
    )
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to YAML configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Log level (overrides config)",
    )
    parser.add_argument(
        "--no-primary",
        action="store_true",
        help="Disable the primary engine and use the relational fallback only",
    )
    parser.add_argument("--version", action="version", version=f"BiblioSearch {_get_version()}")

    commands = parser.add_subparsers(dest="command", required=True)

    search = commands.add_parser("search", help="Ranked full-text search")
    search.add_argument("text", help="Query text")
    _add_filter_arguments(search)
    search.add_argument("--limit", type=int, default=20, help="Results per page (1-100)")
    search.add_argument("--offset", type=int, default=0, help="Results to skip")
    search.add_argument("--facets", action="store_true", help="Include facet counts")

    facets = commands.add_parser("facets", help="Facet counts for a query")
    facets.add_argument("text", help="Query text")

    compare = commands.add_parser("compare", help="Run a query on both engines and compare timings")
    compare.add_argument("text", help="Query text")
    _add_filter_arguments(compare)
    compare.add_argument("--limit", type=int, default=20, help="Results per page (1-100)")

    network = commands.add_parser("network", help="Citation or collaboration network")
    network.add_argument("seed", type=int, help="Seed work id (citation) or person id (collaboration)")
    network.add_argument("--depth", type=int, default=None, help="Requested depth (clamped to the server cap)")
    network.add_argument("--kind", choices=["citation", "collaboration"], default="citation", help="Network kind")

    commands.add_parser("status", help="Engine, fallback and cache status")

    index = commands.add_parser("index", help="Index works into the real-time index")
    index.add_argument("file", help="JSON file with one work or a list of works ('-' for stdin)")

    update = commands.add_parser("update", help="Patch fields of an indexed work")
    update.add_argument("work_id", type=int, help="Work id")
    update.add_argument("fields", nargs="+", metavar="FIELD=VALUE", help="Fields to set")

    return parser


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--year", type=int, default=None, help="Exact publication year")
    parser.add_argument("--year-from", type=int, default=None, help="Earliest publication year")
    parser.add_argument("--year-to", type=int, default=None, help="Latest publication year")
    parser.add_argument("--type", dest="work_type", default=None, help="Work type (ARTICLE, BOOK, ...)")
    parser.add_argument("--language", default=None, help="Language code")
    parser.add_argument(
        "--peer-reviewed",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Only peer reviewed (or, with --no-peer-reviewed, only not peer reviewed) works",
    )


def _filters(args: argparse.Namespace) -> dict[str, Any]:
    names = ("year", "year_from", "year_to", "work_type", "language", "peer_reviewed")
    return {name: getattr(args, name) for name in names if getattr(args, name) is not None}


def _parse_assignments(fields: Sequence[str]) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for field in fields:
        name, sep, value = field.partition("=")
        if not sep or not name:
            raise QueryError(f"expected FIELD=VALUE, got {field!r}")
        patch[name.strip()] = value
    return patch


def _load_records(source: str) -> list[Any]:
    from bibliosearch.models.work import WorkRecord

    try:
        text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    except OSError as e:
        raise QueryError(f"cannot read work records from {source}: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise QueryError(f"work records are not valid JSON: {e}") from e
    items = data if isinstance(data, list) else [data]
    try:
        return [WorkRecord.model_validate(item) for item in items]
    except ValidationError as e:
        raise QueryError(f"invalid work record: {e}") from e


async def _run(engine: BiblioSearchEngine, args: argparse.Namespace) -> Any:
    if args.command == "search":
        options = {"limit": args.limit, "offset": args.offset}
        if args.facets:
            return await engine.search_with_facets(args.text, _filters(args), options)
        return await engine.search(args.text, _filters(args), options)
    if args.command == "facets":
        return await engine.facets(args.text)
    if args.command == "compare":
        return await engine.compare(args.text, _filters(args), {"limit": args.limit})
    if args.command == "network":
        return await engine.network(args.seed, args.depth, args.kind)
    if args.command == "status":
        return await engine.status()
    if args.command == "index":
        records = _load_records(args.file)
        invalidated = 0
        for record in records:
            invalidated += await engine.index_work(record)
        return {"indexed": [r.id for r in records], "invalidated_keys": invalidated}
    if args.command == "update":
        invalidated = await engine.update_work(args.work_id, _parse_assignments(args.fields))
        return {"updated": args.work_id, "invalidated_keys": invalidated}
    raise ValueError(f"Unknown command: {args.command}")


async def _main(settings: Settings, args: argparse.Namespace) -> Any:
    from bibliosearch.core.engine import BiblioSearchEngine

    async with BiblioSearchEngine(settings) as engine:
        return await _run(engine, args)


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load settings
    from bibliosearch.config.settings import Settings

    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            print(f"Error: Config file not found: {config_path}", file=sys.stderr)
            return 1
        settings = Settings.from_yaml(config_path)
    else:
        settings = Settings()

    # Apply CLI overrides
    if args.log_level:
        settings.observability.log_level = args.log_level
    if args.no_primary:
        settings.engine.enabled = False

    from bibliosearch.observability.logging import setup_logging

    # Results go to stdout, logs to stderr
    setup_logging(settings.observability, stream=sys.stderr)

    try:
        result = asyncio.run(_main(settings, args))
    except QueryError as e:
        print(f"Invalid query: {e}", file=sys.stderr)
        return EXIT_QUERY_ERROR
    except SearchUnavailableError as e:
        print(f"Search unavailable: {e}", file=sys.stderr)
        return EXIT_UNAVAILABLE
    except AdapterError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if isinstance(result, BaseModel):
        print(result.model_dump_json(indent=2))
    else:
        print(json.dumps(result, indent=2, default=str))
    return 0


def _get_version() -> str:
    """Get the package version."""
    from bibliosearch import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
