import argparse
import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from snaptriage.core.config import get_settings
from snaptriage.core.context import TriageContext, build_context, close_context
from snaptriage.core.logging_config import configure_logging
from snaptriage.core.sentry import init_sentry
from snaptriage.services import enrichment, projects
from snaptriage.services.relocation_tasks import sweep_stale_relocations
from snaptriage.workers.relocation_worker import run_relocation_worker

T = TypeVar("T")


async def _with_context(func: Callable[[TriageContext], Awaitable[T]], *, use_redis: bool = False) -> T:
    settings = get_settings()
    configure_logging(settings.log_json)
    init_sentry(settings, component="worker" if use_redis else "cli")
    ctx = build_context(settings, use_redis=use_redis)
    try:
        return await func(ctx)
    finally:
        await close_context(ctx)


async def reconcile_projects(ctx: TriageContext, *, apply: bool) -> list[projects.CountCorrection]:
    async with ctx.session_factory() as session:
        corrections = await projects.reconcile_all_projects(session, apply=apply)
    mode = "APPLIED" if apply else "DRY RUN"
    drifted = [item for item in corrections if item.drifted]
    print(f"[{mode}] {len(corrections)} projects checked, {len(drifted)} with a drifted image count")
    for item in corrections:
        marker = "*" if item.drifted else " "
        print(f" {marker} {item.name:<40} stored={item.stored:<6} actual={item.actual}")
    if drifted and not apply:
        print("Run again with --apply to write the corrected counts.")
    return corrections


async def backfill_enrichment(ctx: TriageContext, *, limit: int | None, delay: float | None) -> dict[str, int]:
    if ctx.analyzer is None:
        print("Enrichment is disabled: set ANALYSIS_API_KEY.")
        return {"processed": 0, "enriched": 0, "failed": 0}
    counts = await enrichment.backfill_missing_descriptions(ctx, limit=limit, delay_seconds=delay)
    print(f"processed={counts['processed']} enriched={counts['enriched']} failed={counts['failed']}")
    return counts


async def sweep_stale(ctx: TriageContext) -> int:
    swept = await sweep_stale_relocations(ctx)
    print(f"{swept} stale relocations marked failed")
    return swept


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Photo triage maintenance utilities")
    subparsers = parser.add_subparsers(dest="command")

    worker = subparsers.add_parser("worker", help="Run the relocation worker")
    worker.add_argument("--poll-interval", type=float, default=2.0)

    reconcile = subparsers.add_parser("reconcile-projects", help="Compare stored project image counts with the truth")
    reconcile.add_argument("--apply", action="store_true", help="Write corrected counts (default is a dry run)")

    backfill = subparsers.add_parser("backfill-enrichment", help="Analyze reviewed photos missing a description")
    backfill.add_argument("--limit", type=int, default=None)
    backfill.add_argument("--delay", type=float, default=None, help="Seconds to wait between analyzer calls")

    subparsers.add_parser("sweep-stale", help="Mark relocations stuck in pending/moving as failed")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "worker":
        asyncio.run(
            _with_context(lambda ctx: run_relocation_worker(ctx, poll_interval_seconds=args.poll_interval), use_redis=True)
        )
        return True

    if args.command == "reconcile-projects":
        asyncio.run(_with_context(lambda ctx: reconcile_projects(ctx, apply=bool(args.apply))))
        return True

    if args.command == "backfill-enrichment":
        asyncio.run(_with_context(lambda ctx: backfill_enrichment(ctx, limit=args.limit, delay=args.delay)))
        return True

    if args.command == "sweep-stale":
        asyncio.run(_with_context(sweep_stale))
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
