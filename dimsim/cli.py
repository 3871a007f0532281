"""
Command-line entrypoint: load a JSON dataset, materialize the star schema
and compare every query across both stores.

    dimsim dataset.json --output report.json --queries readmission_rates
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dimsim.config import settings
from dimsim.errors import DimsimError
from dimsim.etl.materialize import materialize
from dimsim.services.entity_store import EntityStore
from dimsim.services.queries import QUERIES, compare

log = logging.getLogger("dimsim")

# Queries that accept a calendar-year filter
YEAR_FILTERED = {
    "monthly_encounters_by_specialty",
    "revenue_by_specialty_month",
    "encounter_detail_summary",
}


def build_report(dataset: dict, queries: list[str], year: int | None = None) -> dict:
    """Load, materialize and compare; returns a JSON-serializable report."""
    entity_store = EntityStore().create_schema()
    counts = entity_store.load(dataset)
    dimensional_store = materialize(entity_store)

    results = {}
    for name in queries:
        params = {"year": year} if year is not None and name in YEAR_FILTERED else {}
        comparison = compare(entity_store, dimensional_store, name, **params)
        results[name] = {
            "identical": comparison.identical,
            "differences": comparison.differences,
            "rows": [row.model_dump(mode="json") for row in comparison.star_rows],
        }
    return {
        "loaded": counts,
        "all_identical": all(r["identical"] for r in results.values()),
        "queries": results,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compare encounter analytics between the OLTP and star schemas"
    )
    parser.add_argument("dataset", help="JSON file mapping entity type to its records")
    parser.add_argument("--output", default=None,
                        help="Write the JSON report here instead of stdout")
    parser.add_argument("--queries", default="all",
                        help="Comma-separated query names, or 'all'")
    parser.add_argument("--year", type=int, default=None,
                        help="Restrict month-grouped queries to one calendar year")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s"
    )

    if args.queries == "all":
        queries = list(QUERIES)
    else:
        queries = [q.strip() for q in args.queries.split(",") if q.strip()]
        unknown = [q for q in queries if q not in QUERIES]
        if unknown:
            log.error("Unknown queries: %s", ", ".join(unknown))
            return 2

    dataset_path = Path(args.dataset)
    if not dataset_path.exists():
        log.error("Dataset not found: %s", dataset_path)
        return 2
    dataset = json.loads(dataset_path.read_text())

    try:
        report = build_report(dataset, queries, year=args.year)
    except DimsimError as exc:
        log.error("%s: %s", type(exc).__name__, exc)
        return 1

    text = json.dumps(report, indent=2, default=str)
    if args.output:
        Path(args.output).write_text(text)
        log.info("Report written to %s", args.output)
    else:
        print(text)

    if not report["all_identical"]:
        log.warning("Stores disagree on at least one query")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
