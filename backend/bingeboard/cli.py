"""
Operator CLI for the recommendation pipeline.

Examples:
  bingeboard init-db
  bingeboard aggregate run
  bingeboard aggregate health
  bingeboard fairness audit 7d
  bingeboard fairness report 30d
  bingeboard recommend --genres Drama Comedy --networks Netflix --limit 10
"""
import argparse
import asyncio
import json
import logging
import sys

from bingeboard.core.database import dispose_engine, init_db
from bingeboard.core.metrics import InMemoryMetricsSink, RedisMetricsSink, snapshot
from bingeboard.core.shutdown import ShutdownFlag
from bingeboard.schemas import UserPreferences, ViewingHistoryEntry
from bingeboard.utils.logger import logger as app_logger

logger = logging.getLogger(__name__)


def _sink(args: argparse.Namespace):
    return InMemoryMetricsSink() if args.metrics == "memory" else RedisMetricsSink()


def _print_metrics(sink) -> None:
    data = snapshot(sink)
    if data:
        print(json.dumps({"metrics": data}, indent=2, default=str))


async def _with_engine(coro):
    try:
        return await coro
    finally:
        await dispose_engine()


def cmd_init_db(args: argparse.Namespace) -> int:
    asyncio.run(_with_engine(init_db()))
    return 0


def cmd_aggregate_run(args: argparse.Namespace) -> int:
    from bingeboard.services.factory import build_aggregator

    shutdown = ShutdownFlag()
    shutdown.install()
    sink = _sink(args)
    aggregator = build_aggregator(shutdown=shutdown, metrics=sink)
    try:
        stats = asyncio.run(_with_engine(aggregator.run_aggregation()))
    except Exception as e:
        logger.error(f"Aggregation failed: {e}")
        return 1
    print(json.dumps({
        "status": stats.status,
        "users_processed": stats.users_processed,
        "users_skipped": stats.users_skipped,
        "errors": stats.errors,
        "batches_completed": stats.batches_completed,
        "batch_count": stats.batch_count,
        "processing_time_ms": round(stats.processing_time_ms, 1),
    }, indent=2))
    _print_metrics(sink)
    return 0


def cmd_aggregate_health(args: argparse.Namespace) -> int:
    from bingeboard.services.factory import build_aggregator

    health = asyncio.run(_with_engine(build_aggregator(metrics=_sink(args)).check_health()))
    print(health.model_dump_json(indent=2))
    return 0 if health.status == "healthy" else 1


def cmd_fairness_audit(args: argparse.Namespace) -> int:
    from bingeboard.services.factory import build_fairness_auditor

    sink = _sink(args)
    record = asyncio.run(_with_engine(build_fairness_auditor(metrics=sink).audit(args.window)))
    print(record.model_dump_json(indent=2))
    _print_metrics(sink)
    return 0


def cmd_fairness_report(args: argparse.Namespace) -> int:
    from bingeboard.services.factory import build_fairness_auditor

    report = asyncio.run(_with_engine(build_fairness_auditor(metrics=_sink(args)).generate_report(args.window)))
    print(report)
    return 0


def cmd_recommend(args: argparse.Namespace) -> int:
    from bingeboard.services.factory import build_fusion_engine

    prefs = UserPreferences(
        favorite_genres=args.genres or [],
        preferred_networks=args.networks or [],
        viewing_history=[
            ViewingHistoryEntry(show_id=tmdb_id, title=str(tmdb_id), tmdb_id=tmdb_id) for tmdb_id in args.similar_to or []
        ],
        demographic=args.demographic,
    )
    sink = _sink(args)
    engine = build_fusion_engine(metrics=sink)
    recs = asyncio.run(_with_engine(engine.get_recommendations(prefs, args.limit, user_id=args.user_id)))
    print(json.dumps([r.model_dump(mode="json") for r in recs], indent=2))
    _print_metrics(sink)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bingeboard", description="BingeBoard recommendation pipeline operations")
    p.add_argument("--metrics", choices=["redis", "memory"], default="redis",
                   help="Where counters and timings go (memory prints them at exit)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    pi = sub.add_parser("init-db", help="Create the metrics store tables")
    pi.set_defaults(func=cmd_init_db)

    pa = sub.add_parser("aggregate", help="Nightly temporal-profile aggregation")
    asub = pa.add_subparsers(dest="action", required=True)
    asub.add_parser("run", help="Run one aggregation pass").set_defaults(func=cmd_aggregate_run)
    asub.add_parser("health", help="Health of the most recent run").set_defaults(func=cmd_aggregate_health)

    pf = sub.add_parser("fairness", help="Fairness and bias auditing")
    fsub = pf.add_subparsers(dest="action", required=True)
    fa = fsub.add_parser("audit", help="Compute fairness metrics and dispatch alerts")
    fa.add_argument("window", nargs="?", default="7d", help="Time window, e.g. 7d or 24h")
    fa.set_defaults(func=cmd_fairness_audit)
    fr = fsub.add_parser("report", help="Markdown fairness report")
    fr.add_argument("window", nargs="?", default="30d", help="Time window, e.g. 30d")
    fr.set_defaults(func=cmd_fairness_report)

    pr = sub.add_parser("recommend", help="Fused recommendations for ad-hoc preferences")
    pr.add_argument("--genres", nargs="*", help="Favorite genres, e.g. Drama Sci-Fi")
    pr.add_argument("--networks", nargs="*", help="Preferred networks/platforms")
    pr.add_argument("--similar-to", nargs="*", type=int, help="TMDB ids of shows already watched")
    pr.add_argument("--demographic", help="Demographic bucket recorded in the output log")
    pr.add_argument("--user-id", help="User whose temporal profile personalizes the ranking")
    pr.add_argument("--limit", type=int, default=20)
    pr.set_defaults(func=cmd_recommend)

    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    app_logger.setLevel(logging.DEBUG if args.verbose else logging.INFO)
    try:
        return args.func(args)
    except ValueError as e:
        parser.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
