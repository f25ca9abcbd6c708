"""
Command-line entrypoint.

Usage:
    python -m marketsync serve [--host 0.0.0.0] [--port 8000]   # API
    python -m marketsync scheduler                              # nightly + live jobs
    python -m marketsync stage sales                            # run one stage
    python -m marketsync full-sync [--include-one-time] [--skip listings]
    python -m marketsync import-player 1234
    python -m marketsync status
    python -m marketsync cancel 42        # or: cancel --all
"""
import argparse
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _serve(args) -> None:
    import uvicorn

    uvicorn.run("marketsync.api.main:app", host=args.host, port=args.port)


async def _run_scheduler() -> None:
    from marketsync.config import get_settings
    from marketsync.scheduler.jobs import build_scheduler
    from marketsync.sync.service import build_sync_service

    settings = get_settings()
    service = build_sync_service()
    service.recover_interrupted()
    scheduler = build_scheduler(service)
    scheduler.start()
    logger.info(
        "Scheduler started (full sync at %02d:00 UTC, live sync every %d min)",
        settings.full_sync_hour,
        settings.live_sync_minutes,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        await service.aclose()


async def _run_stage(stage_name: str) -> int:
    from marketsync.errors import UnknownStageError
    from marketsync.sync.service import build_sync_service

    service = build_sync_service()
    try:
        result = await service.run_stage(stage_name, trigger="manual")
    except UnknownStageError:
        logger.error("Unknown stage %s. Known stages: %s", stage_name, service.stage_names())
        return 2
    finally:
        await service.aclose()
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


async def _run_full_sync(include_one_time: bool, skip) -> int:
    from marketsync.sync.orchestrator import RunOptions
    from marketsync.sync.service import build_sync_service

    service = build_sync_service()
    options = RunOptions(include_one_time=include_one_time, skip=tuple(skip or ()))
    try:
        result = await service.run_full_sync(options, trigger="manual")
    finally:
        await service.aclose()
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


async def _import_player(player_id: int) -> int:
    from marketsync.errors import MarketApiError, PlayerNotFoundError
    from marketsync.sync.service import build_sync_service

    service = build_sync_service()
    try:
        row = await service.import_player(player_id)
    except PlayerNotFoundError:
        logger.error("Player %s not found", player_id)
        return 1
    except MarketApiError as exc:
        logger.error("Import of player %s failed: %s", player_id, exc)
        return 1
    finally:
        await service.aclose()
    print(json.dumps(row, indent=2, default=str))
    return 0


def _status() -> int:
    from marketsync.sync.service import build_sync_service

    service = build_sync_service()
    print(json.dumps(service.get_status(), indent=2, default=str))
    return 0


def _cancel(args) -> int:
    from marketsync.sync.service import build_sync_service

    service = build_sync_service()
    if args.all:
        print(json.dumps({"cancelled": service.cancel_all()}))
        return 0
    if args.execution_id is None:
        logger.error("Pass an execution id or --all")
        return 2
    cancelled = service.cancel(args.execution_id)
    print(json.dumps({"cancelled": [args.execution_id] if cancelled else []}))
    return 0 if cancelled else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="marketsync", description="Marketplace sync pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API under uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    sub.add_parser("scheduler", help="Run the nightly and live sync jobs")

    stage = sub.add_parser("stage", help="Run a single stage to completion")
    stage.add_argument("name", help="Stage name, e.g. players_import, sales")

    full = sub.add_parser("full-sync", help="Run every stage in order")
    full.add_argument("--include-one-time", action="store_true")
    full.add_argument("--skip", action="append", default=[], metavar="STAGE")

    player = sub.add_parser("import-player", help="Fetch and upsert a single player")
    player.add_argument("player_id", type=int)

    sub.add_parser("status", help="Print per-stage status")

    cancel = sub.add_parser("cancel", help="Cancel a running execution")
    cancel.add_argument("execution_id", type=int, nargs="?")
    cancel.add_argument("--all", action="store_true", help="Cancel every running execution")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        _serve(args)
        return 0
    if args.command == "scheduler":
        asyncio.run(_run_scheduler())
        return 0
    if args.command == "stage":
        return asyncio.run(_run_stage(args.name))
    if args.command == "full-sync":
        return asyncio.run(_run_full_sync(args.include_one_time, args.skip))
    if args.command == "import-player":
        return asyncio.run(_import_player(args.player_id))
    if args.command == "status":
        return _status()
    if args.command == "cancel":
        return _cancel(args)
    return 2


if __name__ == "__main__":
    sys.exit(main())
