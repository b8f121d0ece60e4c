"""
Check CLI tool for linedb collection files.

This tool replays collection files offline and reports what it finds:
1. Live documents and tombstones
2. Superseded lines (what compaction would drop)
3. Torn tail left by an interrupted write
4. Corruption (undecodable lines, revision regressions)

Usage:
    linedb-check users.jsonl [orders.jsonl ...] [--repair] [--compact]
    linedb-check --data-dir ./data [--repair] [--compact]

Invariants:
    - Without --repair or --compact the files are never modified
    - Repairs and compactions go through atomic_replace()
    - A corrupt file is reported, never rewritten

How to change safely:
    - Do not run against a collection that a live process has open
    - Add new report fields additively; scripts parse the output
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from ..backing.file import LocalFileBackingStore
from ..collection import Collection
from ..config import CompactionConfig, LinedbConfig, ObservabilityConfig
from ..engine.compactor import CompactionReport
from ..engine.store import CollectionStore
from ..errors import LinedbError
from ..observability import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class CheckConfig:
    """Configuration for a check run.

    Attributes:
        paths: Collection files to check
        repair: Cut off torn tails
        compact: Compact files that replay cleanly
        fsync: fsync rewrites
    """

    paths: list[Path] = field(default_factory=list)
    repair: bool = False
    compact: bool = False
    fsync: bool = True


@dataclass
class CheckResult:
    """Result of checking one collection file.

    Attributes:
        path: File that was checked
        ok: Whether the file replays cleanly (a torn tail is not an error)
        documents: Live documents
        tombstones: Tombstones still in the file
        lines: Record lines accepted
        superseded_lines: Lines compaction would drop
        torn_tail_bytes: Bytes of an interrupted write at the end
        repaired: Whether the torn tail was cut off
        compaction: Report if the file was compacted
        error: Error message if the file is corrupt or a rewrite failed
    """

    path: Path
    ok: bool
    documents: int = 0
    tombstones: int = 0
    lines: int = 0
    superseded_lines: int = 0
    torn_tail_bytes: int = 0
    repaired: bool = False
    compaction: CompactionReport | None = None
    error: str | None = None


class CheckTool:
    """Checks, repairs and compacts collection files.

    Example:
        >>> tool = CheckTool(CheckConfig(paths=[Path("data/users.jsonl")]))
        >>> results = await tool.run()
        >>> results[0].ok
        True
    """

    def __init__(self, config: CheckConfig) -> None:
        """Initialize the check tool.

        Args:
            config: Check configuration
        """
        self.config = config

    async def run(self) -> list[CheckResult]:
        """Check every configured file, in order."""
        results = []
        for path in self.config.paths:
            results.append(await self.check_file(path))
        return results

    async def check_file(self, path: Path) -> CheckResult:
        """Replay one file and apply the requested fixes.

        Never raises for problems with the file; they are reported in the result.
        """
        backing = LocalFileBackingStore(path, fsync=self.config.fsync)
        try:
            data = await backing.read_all()
            store = CollectionStore(path.stem)
            try:
                report = store.load(data)
            except LinedbError as e:
                logger.error(f"Collection file {path} is corrupt: {e.message}")
                return CheckResult(path=path, ok=False, error=e.message)

            result = CheckResult(
                path=path,
                ok=True,
                documents=report.documents,
                tombstones=report.tombstones,
                lines=report.lines,
                superseded_lines=report.superseded_lines,
                torn_tail_bytes=report.torn_tail_bytes,
            )

            try:
                if self.config.repair and report.has_torn_tail:
                    await backing.atomic_replace(data[: report.committed_size])
                    result.repaired = True
                    logger.info(f"Removed {report.torn_tail_bytes} torn bytes from {path}")

                if self.config.compact:
                    result.compaction = await self._compact(path, backing)
            except LinedbError as e:
                result.error = e.message
                logger.error(f"Rewrite of {path} failed: {e.message}")
            return result
        finally:
            await backing.close()

    async def _compact(self, path: Path, backing: LocalFileBackingStore) -> CompactionReport:
        # Collection.open() cuts off a torn tail itself, so compaction implies repair
        config = LinedbConfig(compaction=CompactionConfig(enabled=False, compact_on_close=False))
        collection = await Collection.open(path.stem, backing, config)
        try:
            return await collection.compact()
        finally:
            await collection.close(compact=False)


def format_result(result: CheckResult) -> list[str]:
    """Human-readable report lines for one result."""
    if not result.ok:
        return [f"{result.path}: CORRUPT", f"  Error: {result.error}"]

    lines = [
        f"{result.path}: OK",
        f"  Documents: {result.documents}",
        f"  Tombstones: {result.tombstones}",
        f"  Lines: {result.lines}",
        f"  Superseded lines: {result.superseded_lines}",
        f"  Torn tail: {result.torn_tail_bytes} bytes{' (repaired)' if result.repaired else ''}",
    ]
    if result.compaction is not None:
        lines.append(
            f"  Compacted: {result.compaction.bytes_before} -> {result.compaction.bytes_after} bytes"
        )
    if result.error:
        lines.append(f"  Error: {result.error}")
    return lines


def collect_paths(paths: list[str], data_dir: str | None, suffix: str = ".jsonl") -> list[Path]:
    """Explicit paths first, then the collection files of data_dir in name order."""
    collected = [Path(p) for p in paths]
    if data_dir:
        collected.extend(
            p for p in sorted(Path(data_dir).glob(f"*{suffix}")) if not p.name.startswith(".tmp_")
        )
    return collected


def main() -> None:
    """CLI entry point for the check tool."""
    parser = argparse.ArgumentParser(description="Check, repair and compact linedb collection files")
    parser.add_argument("paths", nargs="*", help="Collection files to check")
    parser.add_argument("--data-dir", help="Check every collection file in this directory")
    parser.add_argument("--repair", action="store_true", help="Cut off torn tails")
    parser.add_argument("--compact", action="store_true", help="Compact files that replay cleanly")
    parser.add_argument("--no-fsync", action="store_true", help="Skip fsync on rewrites")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    setup_logging(ObservabilityConfig(log_level="DEBUG" if args.verbose else "WARNING", log_format="text"))

    paths = collect_paths(args.paths, args.data_dir)
    if not paths:
        parser.error("no collection files given (pass paths or --data-dir)")

    config = CheckConfig(paths=paths, repair=args.repair, compact=args.compact, fsync=not args.no_fsync)
    tool = CheckTool(config)
    started = time.time()
    results = asyncio.run(tool.run())

    for result in results:
        for line in format_result(result):
            print(line)
    print(f"Checked {len(results)} files in {int((time.time() - started) * 1000)}ms")

    if all(result.ok and not result.error for result in results):
        sys.exit(0)
    else:
        sys.exit(1)


if __name__ == "__main__":
    main()
