"""Command-line interface for the harvest pipeline."""

import argparse
import asyncio
import sys
from typing import List, Optional

from harvest.config import CATEGORIES, DATA_DIR, get_category
from harvest.crawler import crawl_all, crawl_category
from harvest.logging_config import setup_logging
from harvest.mirror import mirror_category
from harvest.reconcile import (
    ReconcileSummary,
    assign_placeholders,
    reconcile_category,
    reconcile_chunk,
    repair_entities,
    run_offline_pass,
    upgrade_variants,
)
from harvest.store import DatasetStore

__all__ = ["main", "build_parser"]

EPILOG = """
Examples:
  # List categories and write categories.json
  harvest crawl

  # Crawl one category, listing pages only
  harvest crawl 1-LIGHTING --quick

  # Crawl everything with detail pages
  harvest crawl --all

  # Re-fetch images for one category
  harvest refresh 15-ARCHIVE

  # Re-fetch images for products 0-200 of a category as chunk 1
  harvest refresh-chunk 15-ARCHIVE 0 200 1

  # Run every repair strategy over all categories
  harvest repair --all

Environment:
  HARVEST_DATA_DIR   directory holding the category JSON documents
  HARVEST_LOG_DIR    directory for the daily JSONL log files
"""


def _add_target(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("category", nargs="?", help="Category slug, e.g. 1-LIGHTING")
    parser.add_argument("--all", action="store_true", help="Process every category")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harvest",
        description="Crawl the furniture catalog and keep its image references fresh",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )

    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="Crawl listing and detail pages")
    _add_target(crawl)
    crawl.add_argument("--quick", action="store_true", help="Skip detail pages")

    refresh = sub.add_parser("refresh", help="Re-fetch product pages for fresh image URLs")
    _add_target(refresh)

    chunk = sub.add_parser("refresh-chunk", help="Re-fetch images for an index range of a category")
    chunk.add_argument("category", help="Category slug")
    chunk.add_argument("start", type=int, help="First product index (inclusive)")
    chunk.add_argument("end", type=int, help="Last product index (exclusive)")
    chunk.add_argument("chunk_id", nargs="?", default="?", help="Label used in progress output")

    repair = sub.add_parser("repair", help="Apply all image repair strategies")
    _add_target(repair)

    sub.add_parser("fix-entities", help="Decode HTML entities in stored image URLs")
    sub.add_parser("upgrade-images", help="Upgrade small image variants to large ones")
    sub.add_parser("fix-expired", help="Replace expired signed image URLs with placeholders")

    mirror = sub.add_parser("mirror-images", help="Download images and point the dataset at local copies")
    _add_target(mirror)

    return parser


def _print_categories() -> None:
    print("Available categories:")
    for category in CATEGORIES:
        print(f"  {category.slug}: {category.name}")
    print("\nUsage: harvest crawl <category-slug> [--quick] | harvest crawl --all [--quick]")


def _target_slugs(args: argparse.Namespace, store: DatasetStore) -> Optional[List[str]]:
    """Slugs selected by ``<category>`` or ``--all``; None if the selection is invalid."""
    if args.all:
        return store.category_slugs_on_disk()
    if not args.category:
        print("Error: give a category slug or --all", file=sys.stderr)
        return None
    category = get_category(args.category)
    if category is not None:
        return [category.slug]
    if store.path_for(args.category).exists():
        return [args.category]
    print(f"Error: unknown category '{args.category}'", file=sys.stderr)
    return None


def _print_summaries(summaries: List[ReconcileSummary]) -> None:
    print(f"\n{'='*50}")
    for summary in summaries:
        print(summary.summary())
    print(
        f"Total: {sum(s.updated for s in summaries)} updated, "
        f"{sum(s.failed for s in summaries)} failed, "
        f"{sum(s.unchanged for s in summaries)} unchanged"
    )


def cmd_crawl(args: argparse.Namespace, store: DatasetStore) -> int:
    if args.all:
        reports = crawl_all(store, quick=args.quick)
        print(f"\n{'='*50}")
        for report in reports:
            print(report.summary())
        return 0

    if not args.category:
        path = store.write_categories()
        print(f"Saved categories to {path}\n")
        _print_categories()
        return 0

    category = get_category(args.category)
    if category is None:
        print(f"Error: unknown category '{args.category}'\n", file=sys.stderr)
        _print_categories()
        return 1

    report = crawl_category(category.slug, store, quick=args.quick)
    print(report.summary())
    if report.status != "done":
        return 1
    store.rebuild_aggregate()
    return 0


async def _reconcile_all(slugs: List[str], store: DatasetStore, full: bool) -> List[ReconcileSummary]:
    summaries = []
    for slug in slugs:
        summaries.append(await reconcile_category(
            slug,
            store,
            entities=full,
            variants=full,
            placeholders=full,
        ))
    return summaries


def cmd_reconcile(args: argparse.Namespace, store: DatasetStore) -> int:
    slugs = _target_slugs(args, store)
    if slugs is None:
        return 1
    summaries = asyncio.run(_reconcile_all(slugs, store, full=args.command == "repair"))
    store.rebuild_aggregate()
    _print_summaries(summaries)
    return 0


def cmd_refresh_chunk(args: argparse.Namespace, store: DatasetStore) -> int:
    category = get_category(args.category)
    slug = category.slug if category else args.category
    if category is None and not store.path_for(slug).exists():
        print(f"Error: unknown category '{args.category}'", file=sys.stderr)
        return 1
    if args.start < 0 or args.end <= args.start:
        print(f"Error: invalid range {args.start}-{args.end}", file=sys.stderr)
        return 1

    summary = asyncio.run(reconcile_chunk(slug, args.start, args.end, store, chunk_id=args.chunk_id))
    store.rebuild_aggregate()
    print(summary.summary())
    return 0


def cmd_offline(args: argparse.Namespace, store: DatasetStore) -> int:
    strategies = {
        "fix-entities": repair_entities,
        "upgrade-images": upgrade_variants,
        "fix-expired": assign_placeholders,
    }
    results = run_offline_pass(store, strategies[args.command])
    if any(results.values()):
        store.rebuild_aggregate()
    print(f"\n{'='*50}")
    for slug, changed in results.items():
        print(f"  {slug}: {changed}")
    print(f"Total: {sum(results.values())} changed")
    return 0


def cmd_mirror(args: argparse.Namespace, store: DatasetStore) -> int:
    slugs = _target_slugs(args, store)
    if slugs is None:
        return 1
    summaries = [mirror_category(slug, store) for slug in slugs]
    store.rebuild_aggregate()
    print(f"\n{'='*50}")
    for summary in summaries:
        print(summary.summary())
    print(
        f"Total: {sum(s.downloaded for s in summaries)} downloaded, "
        f"{sum(s.failed for s in summaries)} failed"
    )
    return 0


COMMANDS = {
    "crawl": cmd_crawl,
    "refresh": cmd_reconcile,
    "repair": cmd_reconcile,
    "refresh-chunk": cmd_refresh_chunk,
    "fix-entities": cmd_offline,
    "upgrade-images": cmd_offline,
    "fix-expired": cmd_offline,
    "mirror-images": cmd_mirror,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    args = build_parser().parse_args(argv)
    setup_logging()
    store = DatasetStore(DATA_DIR)
    return COMMANDS[args.command](args, store)


if __name__ == "__main__":
    sys.exit(main())
