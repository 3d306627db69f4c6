"""
Run a scrape session from CLI and write the Excel export.

Examples:
    python -m scripts.run_scrape --towns "Polokwane,Tzaneen" --industries "Plumbers" --output leads.xlsx
    python -m scripts.run_scrape --towns-file towns.txt --industries "Dentists,Attorneys" --no-db
    python -m scripts.run_scrape --resume 6f0c1c3e-... --output leads.xlsx
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path

from app.scraper.config import get_scraper_settings
from app.scraper.errors import InvalidSessionTransitionError, ScraperError
from app.scraper.events import CompleteEvent, LogEvent, ProgressEvent, Subscription
from app.scraper.provider_cache import InMemoryProviderCache
from app.scraper.storage import InMemoryCheckpointStore, InMemorySessionSink
from app.scraper.types import ScrapeConfig
from app.services.scrape_session_service import ScrapeSessionService, get_scrape_session_service

logger = logging.getLogger("scripts.run_scrape")


def _split_names(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _read_names_file(path: str | None) -> list[str]:
    if not path:
        return []
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip() and not line.lstrip().startswith("#")]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scrape business listings by town and industry.")
    parser.add_argument("--towns", default=None, help="Comma-separated town names.")
    parser.add_argument("--towns-file", default=None, help="File with one town per line.")
    parser.add_argument("--industries", default=None, help="Comma-separated industry names.")
    parser.add_argument("--industries-file", default=None, help="File with one industry per line.")
    parser.add_argument("--name", default=None, help="Optional session name.")
    parser.add_argument("--simultaneous-towns", type=int, default=2)
    parser.add_argument("--simultaneous-industries", type=int, default=2)
    parser.add_argument("--simultaneous-lookups", type=int, default=2)
    parser.add_argument(
        "--no-lookup",
        action="store_true",
        help="Skip the carrier lookup phase.",
    )
    parser.add_argument(
        "--no-db",
        action="store_true",
        help="Keep sessions, checkpoints and the carrier cache in memory only.",
    )
    parser.add_argument(
        "--resume",
        dest="resume_session_id",
        default=None,
        help="Resume a paused or interrupted session from its checkpoint (database mode).",
    )
    parser.add_argument("--output", default=None, help="Write the xlsx export to this path.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    return parser


def _build_service(no_db: bool) -> ScrapeSessionService:
    if not no_db:
        return get_scrape_session_service()
    settings = get_scraper_settings()
    return ScrapeSessionService(
        settings=settings,
        checkpoint_store=InMemoryCheckpointStore(),
        sink=InMemorySessionSink(),
        provider_cache=InMemoryProviderCache(ttl_days=settings.provider_cache_ttl_days),
    )


def _print_event(event: object) -> None:
    if isinstance(event, ProgressEvent):
        eta = "?" if event.eta_seconds is None else f"{event.eta_seconds:.0f}s"
        print(
            f"[{event.percent:3d}%] {event.completed_towns}/{event.total_towns} towns "
            f"({event.failed_towns} failed), {event.businesses} businesses, eta {eta}",
            flush=True,
        )
    elif isinstance(event, LogEvent):
        print(f"  {event.entry.level.upper():7s} {event.entry.message}", flush=True)
    elif isinstance(event, CompleteEvent):
        print(json.dumps(event.summary.to_dict(), indent=2), flush=True)


async def _print_events(subscription: Subscription) -> None:
    async with subscription:
        async for event in subscription:
            _print_event(event)


async def _request_pause(service: ScrapeSessionService, session_id: str) -> None:
    try:
        await service.pause_session(session_id)
    except InvalidSessionTransitionError as exc:
        print(f"Cannot pause now: {exc}", file=sys.stderr, flush=True)


async def _run(args: argparse.Namespace) -> int:
    service = _build_service(args.no_db)

    if args.resume_session_id:
        if args.no_db:
            print("--resume needs the database; it cannot be combined with --no-db.", file=sys.stderr)
            return 2
        status = await service.resume_session(args.resume_session_id)
        session_id = status["session_id"]
    else:
        towns = _split_names(args.towns) + _read_names_file(args.towns_file)
        industries = _split_names(args.industries) + _read_names_file(args.industries_file)
        config = ScrapeConfig(
            towns=tuple(towns),
            industries=tuple(industries),
            simultaneous_towns=args.simultaneous_towns,
            simultaneous_industries=args.simultaneous_industries,
            simultaneous_lookups=args.simultaneous_lookups,
            enable_provider_lookup=not args.no_lookup,
        )
        session_id = await service.start_session(config, name=args.name)

    print(f"Session {session_id}", flush=True)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                signum,
                lambda: asyncio.ensure_future(_request_pause(service, session_id)),
            )
        except NotImplementedError:
            break

    printer = asyncio.create_task(_print_events(service.subscribe(session_id)))
    summary = await service.wait_for(session_id)
    if summary.status == "paused":
        # A paused session keeps its stream open.
        printer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await printer
        print(f"Paused. Resume with: --resume {session_id}", flush=True)
        return 0
    await printer

    if args.output:
        _, payload = await service.export_workbook(session_id)
        Path(args.output).write_bytes(payload)
        print(f"Wrote {args.output}", flush=True)
    return 0 if summary.status in ("completed", "stopped") else 1


def main() -> int:
    args = _build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    try:
        return asyncio.run(_run(args))
    except ScraperError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
