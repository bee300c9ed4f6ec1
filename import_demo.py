"""
Example: import a plain-text guide into SQLite, then print its section tree and
a window of lines around a given position.

Usage:
    python3 import_demo.py --guide /path/to/faq.txt --title "My Guide" --system "SNES" --line 500
"""

import argparse
import logging
from pathlib import Path

from guide_reader.indexing import (
    BookmarkManager,
    CacheConfig,
    GuideMetadata,
    GuideParser,
    HeadingConfig,
    ImportWorker,
    IndexStore,
    LocalGuideStorage,
    PositionTracker,
    SqlAlchemyIndexRepository,
    StoragePaths,
    WindowCache,
)


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def print_tree(nodes, depth: int = 0) -> None:
    for node in nodes:
        print(f"{'  ' * depth}{node.line_number:>7}  {node.title}")
        print_tree(node.children, depth + 1)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--guide", required=True, type=Path, help="Path to the guide text file")
    parser.add_argument("--title", required=True, help="Guide title")
    parser.add_argument("--system", default="", help="Game system")
    parser.add_argument("--author", default=None, help="Guide author")
    parser.add_argument("--version-label", default=None, help="Guide's own version string")
    parser.add_argument("--guide-id", default=None, help="Guide id (derived from title/system if omitted)")
    parser.add_argument("--db", default=Path("./data/guide_reader.db"), type=Path, help="SQLite DB path")
    parser.add_argument("--storage-root", default=Path("./data"), type=Path, help="Storage root for guide content")
    parser.add_argument("--threshold", default=0.5, type=float, help="Heading confidence threshold")
    parser.add_argument("--line", default=0, type=int, help="Line to center the printed window on")
    parser.add_argument("--radius", default=10, type=int, help="Lines shown on each side of --line")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.guide.exists():
        raise FileNotFoundError(f"Guide not found: {args.guide}")

    args.db.parent.mkdir(parents=True, exist_ok=True)
    repo = SqlAlchemyIndexRepository(f"sqlite+pysqlite:///{args.db}")
    store = IndexStore(repo, LocalGuideStorage(StoragePaths(args.storage_root)))
    worker = ImportWorker(
        store=store,
        parser=GuideParser(HeadingConfig(threshold=args.threshold)),
        bookmarks=BookmarkManager(store),
    )

    metadata = GuideMetadata(
        title=args.title,
        system=args.system,
        author=args.author,
        version_label=args.version_label,
    )
    print(f"Importing {args.guide}")
    guide = worker.import_file(args.guide, metadata, guide_id=args.guide_id)
    print(f"{guide.id}: version {guide.current_version}, {guide.line_count} lines, status={guide.status.value}")

    print("\nSections:")
    print_tree(store.get_section_tree(guide.id))

    positions = PositionTracker(store, settle_interval=0)
    cache = WindowCache(store, CacheConfig(), positions=positions)
    try:
        positions.set_position(guide.id, args.line)
        position = positions.get_position(guide.id)
        with cache.get_window(guide.id, position.line_number, args.radius) as window:
            print(f"\nLines {window.start}..{window.end - 1} of {window.line_count}:")
            for number, line in enumerate(window.lines, start=window.start):
                print(f"{number:>7} | {line}")
    finally:
        cache.close()
        positions.close()
        repo.close()


if __name__ == "__main__":
    main()
