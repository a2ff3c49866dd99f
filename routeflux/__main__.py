import argparse
import asyncio
import logging
import os
import sys

# Allow running the file directly (e.g. `python routeflux/__main__.py`)
# by putting the project root on the Python path.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from routeflux import config, orchestrator
from routeflux.state import PipelineContext

log = logging.getLogger("RouteFlux")


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or greater, got {value}")
    return number


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be 1 or greater, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='routeflux',
        description="RouteFlux data fetcher - builds daily Tor relay and country snapshots",
        epilog="""
Examples:
  # Today (live data from Onionoo)
  %(prog)s

  # A single historical day
  %(prog)s 01/15/24

  # A whole month, 8 days in parallel
  %(prog)s 01/24

  # A whole year with a custom parallelism
  %(prog)s 23 --parallel=4

  # A custom range, e.g. one quarter
  %(prog)s 01/01/24-03/31/24

  # Re-fetch country files that were written before Tor Metrics had data
  %(prog)s --backfill-countries

Data Sources:
  Onionoo API       live relay data (today and yesterday)
  CollecTor         historical consensus and server-descriptor archives
  Tor Metrics       per-country client estimates
  MaxMind GeoLite2  IP geolocation (country centroids without it)
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('date_expr', nargs='?', metavar='DATE',
                        help="mm/dd/yy, mm/yy, yy, mm/dd/yy-mm/dd/yy or YYYY-MM-DD. Defaults to today.")
    parser.add_argument('--date', dest='legacy_date', metavar='YYYY-MM-DD', help="Single day (legacy form).")
    parser.add_argument('--parallel', type=positive_int, help="Dates processed concurrently.")
    parser.add_argument('--threads', type=non_negative_int, default=config.DEFAULT_XZ_THREADS,
                        help="xz decompression threads, 0 for all cores (default: %(default)s).")
    parser.add_argument('--geoip', default=config.GEOIP_DATABASE_PATH,
                        help="Path to GeoLite2-City.mmdb (default: %(default)s).")
    parser.add_argument('--cache-dir', default=config.CACHE_DIR, help="Archive cache (default: %(default)s).")
    parser.add_argument('--output-dir', default=config.OUTPUT_DIR, help="Snapshot output (default: %(default)s).")
    parser.add_argument('--backfill-countries', action='store_true',
                        help="Re-fetch empty country files and exit.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    return parser


async def run_fetch(args) -> int:
    ctx = PipelineContext(
        cache_dir=args.cache_dir,
        output_dir=args.output_dir,
        geoip_path=args.geoip,
        xz_threads=args.threads,
    )
    try:
        await ctx.start()
    except OSError as e:
        log.critical(f"Cannot create data directories: {e}")
        await ctx.close()
        return 1

    try:
        if args.backfill_countries:
            await orchestrator.run_country_backfill(ctx)
            return 0

        today = ctx.today()
        expr = f"--date={args.legacy_date}" if args.legacy_date else args.date_expr
        if expr:
            date_range = orchestrator.parse_date_range(expr, today)
        else:
            date_range = orchestrator.DateRange(today, today, orchestrator.MODE_DAY,
                                                f"{today.isoformat()} (current day)")
        dates = orchestrator.generate_dates(date_range, today)
        if not dates:
            log.warning(f"No dates to fetch in {date_range.description}")
            return 0

        parallel = args.parallel or orchestrator.default_parallel(date_range.mode)
        log.info(f"RouteFlux data fetcher v{config.VERSION}")
        log.info(f"Date range: {date_range.description}")
        log.info(f"XZ threads: {'0 (all cores)' if args.threads == 0 else args.threads}, "
                 f"GeoIP: {ctx.geo.metadata['provider']}, cache: {ctx.cache_dir}, output: {ctx.output_dir}")

        await orchestrator.run(ctx, dates, parallel)
        return 0
    finally:
        await ctx.close()


def main():
    parser = build_parser()
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    try:
        exit_code = asyncio.run(run_fetch(args))
    except ValueError as e:
        log.critical(str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        log.info("Interrupted.")
        sys.exit(130)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
