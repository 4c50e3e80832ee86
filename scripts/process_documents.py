#!/usr/bin/env python3
"""Document processing CLI script.

This script runs uploaded documents through the extraction pipeline and stores
the resulting ethnobotanical records in the local record store.

Supported inputs:
- PDF: `.pdf` (decoded with pypdf)
- Text: `.txt`, `.md` (UTF-8)

Usage:
    python scripts/process_documents.py article.pdf
    python scripts/process_documents.py --directory data/raw/
    python scripts/process_documents.py --config config/custom.yaml a.pdf b.txt

Options:
    --directory, -d: Process documents in directory
    --config, -c: Path to config file (default: config/config.yaml)
    --sync: Run one sync cycle after processing
    --verbose, -v: Enable verbose logging
    --dry-run: Show what would be processed without actually doing it
"""

import argparse
import asyncio
import sys
import time
from pathlib import Path

from loguru import logger

from etnopapers.pipeline.orchestrator import DocumentResult
from etnopapers.service import create_service
from etnopapers.utils.config import load_config
from etnopapers.utils.logging_setup import setup_logging

SUPPORTED_SUFFIXES = {".pdf", ".txt", ".md"}


def find_document_files(paths: list[Path]) -> list[Path]:
    """Find all supported document files from the given paths."""
    document_files: list[Path] = []

    for path in paths:
        if path.is_file():
            if path.suffix.lower() in SUPPORTED_SUFFIXES:
                document_files.append(path)
            else:
                logger.warning("Skipping unsupported file: {}", path)
        elif path.is_dir():
            for suffix in sorted(SUPPORTED_SUFFIXES):
                document_files.extend(path.rglob(f"*{suffix}"))
        else:
            logger.warning("Path does not exist: {}", path)

    # De-dup while preserving sort order.
    return sorted({p.resolve() for p in document_files})


async def run(
    files: list[Path], config_path: Path, *, sync: bool, verbose: bool
) -> list[DocumentResult]:
    config = load_config(config_path)
    setup_logging(config.logging, verbose=verbose)
    service = create_service(config)
    try:
        documents = [(path.read_bytes(), None) for path in files]
        results = await service.process_many(documents)
        if sync and config.sync.enabled:
            report = await service.sync_now()
            logger.info(
                "Sync: {} pushed, {} pulled, {} conflicts, {} failed",
                report.pushed,
                report.pulled,
                report.conflicts,
                report.failed,
            )
        return results
    finally:
        await service.stop()


def main() -> int:
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Extract ethnobotanical records from documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("paths", nargs="*", type=Path, help="Files or directories to process")
    parser.add_argument(
        "--directory", "-d", type=Path, help="Directory containing files to process"
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config/config.yaml"),
        help="Path to configuration file (default: config/config.yaml)",
    )
    parser.add_argument("--sync", action="store_true", help="Run one sync cycle afterwards")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be processed without actually doing it",
    )
    args = parser.parse_args()

    paths_to_process = list(args.paths or [])
    if args.directory:
        paths_to_process.append(args.directory)
    if not paths_to_process:
        parser.error("No files or directories specified. Use --help for usage.")

    setup_logging(verbose=args.verbose)

    files = find_document_files(paths_to_process)
    if not files:
        logger.error("No supported documents found to process")
        return 1

    logger.info("Found {} documents to process", len(files))
    if args.dry_run:
        logger.info("Dry run mode - would process:")
        for path in files:
            logger.info("  {}", path)
        return 0

    start_time = time.time()
    try:
        results = asyncio.run(
            run(files, args.config, sync=args.sync, verbose=args.verbose)
        )
    except Exception as e:
        logger.error("Processing failed: {}", e)
        return 1

    total_time = time.time() - start_time
    successful = [r for r in results if r.success]
    failed = [r for r in results if not r.success]

    logger.info("=" * 50)
    logger.info("PROCESSING SUMMARY")
    logger.info("=" * 50)
    logger.info("Total documents: {}", len(results))
    logger.info("Successful: {}", len(successful))
    logger.info("Failed: {}", len(failed))
    logger.info("Records created: {}", sum(r.records_created for r in successful))
    logger.info("Records already stored: {}", sum(r.records_skipped for r in successful))
    logger.info("Issues reported: {}", sum(len(r.issues) for r in results))
    logger.info("Total processing time: {:.2f}s", total_time)

    for path, result in zip(files, results):
        if not result.success:
            logger.warning("  - {}: {}", path.name, result.extractor_error or result.error)
        for issue in result.issues:
            logger.debug("  {} [{}] {}", path.name, issue.kind.value, issue.message)

    return 0 if successful else 1


if __name__ == "__main__":
    sys.exit(main())
