"""Command-line entrypoint for batch jobs."""

from __future__ import annotations

import argparse
import json
import logging
import os
from datetime import date

from dotenv import load_dotenv

from jobs.config import ALL_SOURCES, SOURCE_DEFAULTS, SourceDefaults, load_ingestion_config, log_level
from jobs.ingest import run_ingestion
from pipelines.sources.portals import canonical_portal
from jobs.map_signals import run_map_signals


def _format_source(source: SourceDefaults) -> str:
    configured = "yes" if os.getenv(f"{source.env_prefix}_API_KEY") else "no"
    base_url = os.getenv(f"{source.env_prefix}_API_BASE_URL") or source.base_url
    return (
        f"{source.name}: base_url={base_url} quota={source.max_requests}/"
        f"{source.window_seconds:g}s api_key_configured={configured}"
    )


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD") from exc


def _split(value: str | None) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _parse_portals(value: str) -> list[str]:
    try:
        return [canonical_portal(name) for name in _split(value)]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Market data ingestion and signal mapping jobs")
    parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest_parser = subparsers.add_parser(
        "ingest", help="Fetch, normalize and persist DLD, Ejari and portal records"
    )
    ingest_parser.add_argument("--org-id", required=True, help="Organization to ingest for")
    ingest_parser.add_argument(
        "--sources",
        help=f"Comma-separated sources to run (default: {','.join(ALL_SOURCES)})",
    )
    ingest_parser.add_argument(
        "--portals",
        type=_parse_portals,
        help="Comma-separated portals, case-insensitive (e.g. bayut,PropertyFinder)",
    )
    ingest_parser.add_argument("--from-date", type=_parse_date, help="Range start (YYYY-MM-DD)")
    ingest_parser.add_argument("--to-date", type=_parse_date, help="Range end (YYYY-MM-DD)")
    ingest_parser.add_argument(
        "--mock", action="store_true", help="Use generated mock records instead of live APIs"
    )

    map_parser = subparsers.add_parser(
        "map-signals", help="Score unmapped market signals against investor mandates"
    )
    map_parser.add_argument("--org-id", required=True, help="Organization to map signals for")
    map_parser.add_argument("--batch-size", type=int, default=50)
    map_parser.add_argument("--max-batches", type=int, default=10)
    map_parser.add_argument("--cursor", help="Resume after this signal id")

    subparsers.add_parser("list-sources", help="Show configured upstream sources")

    args = parser.parse_args(argv)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    logging.basicConfig(level=log_level())

    if args.command == "list-sources":
        for source in SOURCE_DEFAULTS:
            print(_format_source(source))
        return 0

    if args.command == "ingest":
        config = load_ingestion_config()
        sources = _split(args.sources) or list(ALL_SOURCES)
        unknown = set(sources) - set(ALL_SOURCES)
        if unknown:
            raise SystemExit(f"Unknown sources: {', '.join(sorted(unknown))}")
        date_range = None
        if args.from_date or args.to_date:
            end = args.to_date or date.today()
            date_range = (args.from_date or end, end)
        result = run_ingestion(
            args.org_id,
            sources=sources,
            date_range=date_range,
            use_mock_data=args.mock,
            portals=args.portals or list(config.portals),
            on_progress=lambda message, *_: print(message),
            config=config,
        )
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return 0 if result.success else 1

    if args.command == "map-signals":
        summary = run_map_signals(
            args.org_id,
            batch_size=args.batch_size,
            max_batches=args.max_batches,
            cursor=args.cursor,
        )
        print(json.dumps(summary.as_dict(), indent=2))
        return 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
