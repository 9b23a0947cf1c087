"""Replay provider export batches through the reconciliation engine.

• Reads one or more sample batches (CSV/JSON) and sleep-session batches.
• Attributes every sleep session to its sleep date.
• Reconciles each sample against the stored day record, field by field,
  using source priority and measurement time.
• Writes accepted values to a JSON record directory and appends every
  decision to the audit history.

Configuration comes from a profile (see config.py):
    storage_path        – mandatory (directory of per-user, per-day JSON records)
    audit_path          – (optional) CSV file receiving the decision history
    default_user        – (optional) user id for rows without one
    workers             – (optional) thread pool size (else MAX_WORKERS env, default 4)
    priority_overrides  – (optional) field-level source ranks
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from healthreconcile.applier import DatedSample, Reconciler
from healthreconcile.audit import AuditSink, CompositeAuditSink, CsvAuditSink, LoggingAuditSink
from healthreconcile.config import Config, ProfileConfig
from healthreconcile.exceptions import ConfigurationError
from healthreconcile.importer import load_samples, load_sleep_sessions
from healthreconcile.storage import JsonDirectoryRecordStore

# --------------------------------------------------------------------------------------
# Logging helpers
# --------------------------------------------------------------------------------------


def setup_logging(level: int = logging.INFO) -> None:
    """Configure a root logger that prints to stdout and also persists errors."""
    fmt = "%(asctime)s | %(levelname)-8s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    root = logging.getLogger()
    root.setLevel(level)

    out_hdlr = logging.StreamHandler(sys.stdout)
    out_hdlr.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    logs_dir = Path("logs")
    logs_dir.mkdir(exist_ok=True)
    err_hdlr = logging.FileHandler(logs_dir / "error.log", encoding="utf-8")
    err_hdlr.setLevel(logging.ERROR)
    err_hdlr.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root.handlers = [out_hdlr, err_hdlr]


# --------------------------------------------------------------------------------------
# Wiring
# --------------------------------------------------------------------------------------


def build_reconciler(config: Config) -> Reconciler:
    """Create the store, audit sinks and reconciler described by ``config``."""
    sinks: list[AuditSink] = [LoggingAuditSink()]
    if config.audit_path:
        sinks.append(CsvAuditSink(config.audit_path))
    return Reconciler(
        JsonDirectoryRecordStore(config.storage_path),
        CompositeAuditSink(*sinks),
        overrides=config.priority_overrides,
    )


def collect_samples(
    sample_files: list[Path],
    sleep_files: list[Path],
    default_user: str | None,
) -> tuple[list[DatedSample], int]:
    """Load every batch file. Returns (samples, number of skipped rows)."""
    samples: list[DatedSample] = []
    skipped = 0
    for path in sample_files:
        loaded, bad = load_samples(path, default_user=default_user)
        samples.extend(loaded)
        skipped += len(bad)
    for path in sleep_files:
        loaded, bad = load_sleep_sessions(path, default_user=default_user)
        samples.extend(loaded)
        skipped += len(bad)
    return samples, skipped


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="healthreconcile",
        description="Reconcile health-metric samples from several providers into per-day records.",
    )
    parser.add_argument("--profile", type=Path, required=True, help="Profile YAML/JSON file")
    parser.add_argument(
        "--samples", type=Path, action="append", default=[], help="Metric sample batch (repeatable)"
    )
    parser.add_argument(
        "--sleep", type=Path, action="append", default=[], help="Sleep session batch (repeatable)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Decide and audit without writing records")
    parser.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


# --------------------------------------------------------------------------------------
# CLI entry point
# --------------------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """Run a reconciliation pass. Returns the process exit code."""
    load_dotenv(override=True)
    args = create_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_profile(ProfileConfig.from_file(args.profile))
    except (ConfigurationError, FileNotFoundError) as e:
        logger.error("Configuration error: %s", e)
        return 2

    if not args.samples and not args.sleep:
        logger.error("Nothing to import: pass --samples and/or --sleep")
        return 2

    try:
        samples, skipped = collect_samples(args.samples, args.sleep, config.default_user)
    except (FileNotFoundError, KeyError, TypeError, ValueError) as e:
        logger.error("Could not load batch: %s", e)
        return 1

    start = datetime.now()
    summary = build_reconciler(config).apply_many(
        samples,
        max_workers=config.max_workers,
        label="dry-run" if args.dry_run else "reconcile",
        dry_run=args.dry_run,
        progress=not args.no_progress,
    )
    logger.info(
        "Finished in %.1fs (%d invalid row(s) skipped at load)",
        (datetime.now() - start).total_seconds(),
        skipped,
    )

    return 1 if summary.storage_failures else 0


if __name__ == "__main__":
    sys.exit(main())
