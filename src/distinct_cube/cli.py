"""distinct-cube CLI entry point.

Usage: distinct-cube simulate [options]
"""
import argparse
import logging
import sys
from collections import defaultdict
from datetime import timedelta


def _add_simulate_parser(subparsers: argparse._SubParsersAction) -> None:
    p = subparsers.add_parser(
        "simulate",
        help="Feed synthetic access logs through the cube and print DAU/MAU.",
    )
    p.add_argument(
        "--customers", type=int, default=5_000,
        help="Number of simulated customers (default: 5000)",
    )
    p.add_argument(
        "--pages", type=int, default=50,
        help="Number of article pages (default: 50)",
    )
    p.add_argument(
        "--days", type=int, default=30,
        help="Days of traffic to generate (default: 30)",
    )
    p.add_argument(
        "--records-per-day", type=int, default=2_000,
        help="Access records per day (default: 2000)",
    )
    p.add_argument(
        "--precision", type=int, default=12,
        help="HyperLogLog precision, 4..18 (default: 12)",
    )
    p.add_argument(
        "--workers", type=int, default=1,
        help="Ingestion worker threads; >1 shards the input (default: 1)",
    )
    p.add_argument(
        "--malformed-rate", type=float, default=0.001,
        help="Share of records with no customer_id (default: 0.001)",
    )
    p.add_argument(
        "--seed", type=int, default=42,
        help="RNG seed for reproducible runs (default: 42)",
    )
    p.add_argument(
        "--finalize", action="store_true",
        help="Finalize every simulated day after ingestion.",
    )


def _exact_counts(records, geo_lookup, end):
    """Exact DAU on `end` and exact 30-day MAU (total, by state, by age bracket).

    Set-based, so only for checking the estimates on simulated traffic.
    Group labels match the cube's: a missing state or age is UNKNOWN.
    """
    from distinct_cube.domain.dimensions import UNKNOWN
    from distinct_cube.query.ranges import DateRange

    window = DateRange.trailing(end, 30)
    dau: set[int] = set()
    mau: set[int] = set()
    mau_state: dict[tuple, set[int]] = defaultdict(set)
    mau_age: dict[tuple, set[int]] = defaultdict(set)
    for r in records:
        if r.customer_id is None or not window.contains(r.access_date):
            continue
        state = geo_lookup(r.source_ip, r.access_date)
        mau.add(r.customer_id)
        mau_state[(UNKNOWN if state is None else state,)].add(r.customer_id)
        mau_age[(UNKNOWN if r.age_bracket is None else r.age_bracket,)].add(r.customer_id)
        if r.access_date == end:
            dau.add(r.customer_id)
    return dau, mau, mau_state, mau_age


def _run_simulate(args: argparse.Namespace) -> None:
    from distinct_cube.cube.schema import CubeSchema
    from distinct_cube.cube.store import CubeStore
    from distinct_cube.domain.dimensions import DimensionSpec, attribute, day, geolocation
    from distinct_cube.pipeline.aggregator import AggregationPipeline
    from distinct_cube.pipeline.parallel import ParallelAggregator
    from distinct_cube.query.engine import QueryEngine
    from distinct_cube.report import format_memory, format_rows, format_summary
    from distinct_cube.simulation.traffic import TrafficGenerator

    gen = TrafficGenerator(
        num_customers=args.customers,
        num_pages=args.pages,
        days=args.days,
        records_per_day=args.records_per_day,
        malformed_rate=args.malformed_rate,
        seed=args.seed,
    )
    records = gen.generate()

    by_state = CubeStore(
        CubeSchema(
            DimensionSpec((day(), attribute("age_bracket"), geolocation(gen.geo_lookup))),
            precision=args.precision,
        ),
        name="daily_state",
    )
    by_page = CubeStore(
        CubeSchema(DimensionSpec((day(), attribute("page"))), precision=args.precision),
        name="daily_page",
    )

    if args.workers > 1:
        summary = ParallelAggregator([by_state, by_page], num_workers=args.workers).ingest(records)
    else:
        summary = AggregationPipeline([by_state, by_page]).ingest(records)

    if args.finalize:
        for offset in range(args.days):
            period = gen.start + timedelta(days=offset)
            by_state.finalize(period)
            by_page.finalize(period)

    exact_dau, exact_mau, exact_mau_state, exact_mau_age = _exact_counts(
        records, gen.geo_lookup, gen.end,
    )

    state_engine = QueryEngine(by_state)
    page_engine = QueryEngine(by_page)
    end = gen.end

    print(format_summary(summary))
    print()
    print(format_memory(by_state.memory_report(), by_state.name))
    print(format_memory(by_page.memory_report(), by_page.name))
    print()
    print(format_rows(state_engine.dau(end), f"DAU {end}", {(): len(exact_dau)}))
    print()
    print(format_rows(state_engine.mau(end), f"MAU ending {end}", {(): len(exact_mau)}))
    print()
    print(format_rows(
        state_engine.mau(end, group_by=("state",)), "MAU by state",
        {k: len(v) for k, v in exact_mau_state.items()},
    ))
    print()
    print(format_rows(
        state_engine.mau(end, group_by=("age_bracket",)), "MAU by age bracket",
        {k: len(v) for k, v in exact_mau_age.items()},
    ))
    print()
    top_pages = sorted(
        page_engine.mau(end, group_by=("page",)), key=lambda r: r.value, reverse=True,
    )[:10]
    print(format_rows(top_pages, "Top pages by distinct readers"))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="distinct-cube",
        description="Approximate distinct-count cube -- DAU/MAU without sets of IDs.",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log pipeline and store activity to stderr.",
    )
    subparsers = parser.add_subparsers(dest="command")

    _add_simulate_parser(subparsers)

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        _run_simulate(args)
