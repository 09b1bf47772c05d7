#!/usr/bin/env python3
"""Agentic OCR Batch Receipt Runner.

Runs a directory of receipt images / PDFs through the agentic pipeline:
  1. Detect vendor (pattern matching on PDF text, LLM otherwise)
  2. Parse with the vendor-specialized or generic parser
  3. Fall back to generic-enhanced / baseline OCR on low confidence
  4. Export results, per-receipt costs and a cost report

Usage:
    # Process every receipt in the default input directory
    python -m scripts.process_receipts

    # Limit to N receipts (for testing)
    python -m scripts.process_receipts --limit 5

    # Force a vendor and cap spend per receipt
    python -m scripts.process_receipts --vendor walmart --max-cost 0.02

    # Use the cheap testing preset, 8 receipts in flight
    python -m scripts.process_receipts --mode testing --concurrency 8

    # Dry run (list receipts only)
    python -m scripts.process_receipts --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path for imports
_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_root))

# Load .env before importing app modules
from dotenv import load_dotenv
load_dotenv(_root / ".env")

import structlog

structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

from agentic_ocr.core.config import settings
from agentic_ocr.modules.extraction.agent_schemas import AgenticResult, ExtractionRequest
from agentic_ocr.modules.extraction.agents.orchestrator import (
    PipelineOrchestrator,
    build_default_registry,
)
from agentic_ocr.modules.extraction.config_store import ConfigurationStore
from agentic_ocr.modules.extraction.cost_tracker import CostTracker
from agentic_ocr.modules.extraction.exceptions import AgenticOCRError
from agentic_ocr.modules.extraction.image_service import load_receipt_image
from agentic_ocr.modules.extraction.schemas import ExtractionOptions

logger = structlog.get_logger()

DEFAULT_INPUT_DIR = _root / "input" / "receipts"
DEFAULT_OUTPUT_DIR = _root / "output" / "agentic_results"

RECEIPT_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".pdf"}


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_receipts(input_dir: Path, *, max_size_mb: float) -> list[Path]:
    """All receipt files under ``input_dir``, skipping hidden and oversized ones."""
    if not input_dir.exists():
        logger.error("Input directory not found", path=str(input_dir))
        return []

    receipts: list[Path] = []
    for path in sorted(input_dir.rglob("*")):
        if not path.is_file() or path.suffix.lower() not in RECEIPT_SUFFIXES:
            continue
        if path.name.startswith((".", "~")):
            continue
        size_mb = path.stat().st_size / (1024 * 1024)
        if size_mb > max_size_mb:
            logger.warning("Skipping oversized receipt", file=path.name, size_mb=f"{size_mb:.1f}")
            continue
        receipts.append(path)
    return receipts


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


async def process_all(
    orchestrator: PipelineOrchestrator,
    paths: list[Path],
    options: ExtractionOptions,
    *,
    concurrency: int,
) -> list[tuple[Path, AgenticResult | None, str | None]]:
    """Process receipts with at most ``concurrency`` runs in flight."""
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _one(path: Path) -> tuple[Path, AgenticResult | None, str | None]:
        async with semaphore:
            try:
                image = load_receipt_image(image_bytes=path.read_bytes(), file_name=path.name)
                result = await orchestrator.process_receipt(
                    ExtractionRequest(image=image, options=options)
                )
            except AgenticOCRError as e:
                logger.error("Receipt rejected", file=path.name, error=str(e))
                return path, None, str(e)
            return path, result, None

    return await asyncio.gather(*(_one(p) for p in paths))


# ---------------------------------------------------------------------------
# Export helpers
# ---------------------------------------------------------------------------


def export_results(
    output_dir: Path,
    outcomes: list[tuple[Path, AgenticResult | None, str | None]],
    cost_tracker: CostTracker,
) -> None:
    """Export results to JSON and CSV files."""
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    results_path = output_dir / f"receipts_{timestamp}.json"
    with open(results_path, "w") as f:
        json.dump(
            [
                {
                    "file": path.name,
                    "rejected": error,
                    "result": result.model_dump(mode="json") if result else None,
                }
                for path, result, error in outcomes
            ],
            f,
            indent=2,
            default=str,
        )
    logger.info(f"Results exported: {results_path}")

    rows = cost_tracker.to_records_list()
    csv_path = output_dir / f"receipt_costs_{timestamp}.csv"
    with open(csv_path, "w", newline="") as f:
        if rows:
            writer = csv.DictWriter(f, fieldnames=list(rows[0].keys()))
            writer.writeheader()
            writer.writerows(rows)
    logger.info(f"Cost CSV exported: {csv_path}")

    cost_path = output_dir / f"receipt_cost_report_{timestamp}.json"
    with open(cost_path, "w") as f:
        json.dump(cost_tracker.summary(), f, indent=2, default=str)
    logger.info(f"Cost report exported: {cost_path}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = argparse.ArgumentParser(description="Agentic OCR batch receipt processing")
    parser.add_argument("--input-dir", type=Path, default=DEFAULT_INPUT_DIR,
                        help="Directory with receipt images / PDFs")
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR,
                        help="Output directory for results")
    parser.add_argument("--limit", type=int, default=0,
                        help="Max receipts to process (0 = all)")
    parser.add_argument("--mode", choices=["production", "development", "testing"], default=None,
                        help="Apply an orchestrator mode preset")
    parser.add_argument("--vendor", type=str, default=None,
                        help="Force a vendor tag (skips vendor detection)")
    parser.add_argument("--max-cost", type=float, default=None,
                        help="Per-receipt USD ceiling (capped by the configured budget)")
    parser.add_argument("--skip-baseline", action="store_true",
                        help="Never fall back to baseline OCR")
    parser.add_argument("--force-fallback", action="store_true",
                        help="Run the fallback chain even for confident parses")
    parser.add_argument("--concurrency", type=int, default=4,
                        help="Receipts processed in parallel")
    parser.add_argument("--dry-run", action="store_true",
                        help="List receipts without processing")

    args = parser.parse_args()

    paths = discover_receipts(args.input_dir, max_size_mb=settings.extraction_max_file_size_mb)
    if args.limit > 0:
        paths = paths[:args.limit]

    cost_tracker = CostTracker()
    orchestrator = PipelineOrchestrator(
        registry=build_default_registry(cost_tracker=cost_tracker),
        config_store=ConfigurationStore(),
        cost_tracker=cost_tracker,
    )
    if args.mode:
        orchestrator.apply_preset(args.mode)
    config = orchestrator.get_agent_status().config
    estimate = orchestrator.estimate_cost()

    print(f"\n{'='*60}")
    print(f"  AGENTIC OCR RECEIPT PIPELINE")
    print(f"{'='*60}")
    print(f"  Receipts found:  {len(paths)}")
    print(f"  Input dir:       {args.input_dir}")
    print(f"  Output dir:      {args.output_dir}")
    print(f"  Mode:            {config.mode}")
    print(f"  Threshold:       {config.quality_threshold:.0f}")
    print(f"  Budget/receipt:  ${config.cost_budget:.4f}")
    print(f"  Typical cost:    ${estimate.total.typical:.4f} (max ${estimate.total.max:.4f})")
    print(f"{'='*60}\n")

    if not paths:
        print("No receipts found. Check input directory.")
        return

    if args.dry_run:
        print("--- DRY RUN ---")
        for path in paths:
            print(f"  {path.relative_to(args.input_dir)}")
        return

    options = ExtractionOptions(
        forced_vendor=args.vendor,
        max_cost=args.max_cost,
        skip_baseline_fallback=args.skip_baseline,
        force_fallback=args.force_fallback,
    )
    outcomes = asyncio.run(
        process_all(orchestrator, paths, options, concurrency=args.concurrency)
    )

    print(cost_tracker.summary_text())

    print(f"\n{'='*60}")
    print(f"  RECEIPTS")
    print(f"{'='*60}")
    for path, result, error in outcomes:
        if result is None:
            print(f"  {path.name}: REJECTED ({error})")
        elif result.success and result.data is not None:
            print(
                f"  {path.name}: {result.metadata.vendor_type} via {result.metadata.chosen_agent}, "
                f"total {result.data.total_amount:.2f}, confidence "
                f"{result.quality.overall_confidence:.0f}, ${result.pipeline.total_cost:.4f}"
            )
        else:
            code = result.error.code.value if result.error else "UNKNOWN"
            print(f"  {path.name}: FAILED [{code}] agents={','.join(result.metadata.agents_used)}")
    print(f"{'='*60}\n")

    export_results(args.output_dir, outcomes, cost_tracker)


if __name__ == "__main__":
    main()
