#!/usr/bin/env python3
"""
CLI script for PDF ingestion.
Usage: python scripts/ingest.py <pdf_or_folder> [--owner ID] [--mode durable]
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from dotenv import load_dotenv
from tqdm import tqdm

from context.service import ContextService
from ingestion.models import DocumentMetadata
from shared import load_config


def collect_pdfs(path: str) -> list:
    """Single PDF path or every PDF below a folder."""
    p = Path(path)
    if p.is_file():
        return [p]
    return sorted(p.glob("**/*.pdf"))


def main():
    parser = argparse.ArgumentParser(
        description="Ingest PDF documents into the durable store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py ./pdfs
  python scripts/ingest.py memo.pdf --owner alice
  python scripts/ingest.py /path/to/documents --config custom_config.yaml --force
        """,
    )
    parser.add_argument(
        "path",
        help="PDF file or folder containing PDF files",
    )
    parser.add_argument(
        "--owner",
        default="local",
        help="Owner id the documents are scoped to (default: local)",
    )
    parser.add_argument(
        "--mode",
        choices=["durable", "both"],
        default="durable",
        help="Where to persist chunks (default: durable)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Reprocess documents even if their content was already ingested",
    )
    parser.add_argument(
        "--config",
        default="config/master_config.yaml",
        help="Path to configuration file (default: config/master_config.yaml)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    # Setup logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # pdfminer and PIL log per object at DEBUG
    logging.getLogger("pdfminer").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)

    env_path = os.path.join(PROJECT_ROOT, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path, override=True)
        logging.info(f"Loaded environment from: {env_path}")

    if not os.path.exists(args.path):
        print(f"Error: {args.path} does not exist")
        sys.exit(1)

    if not os.path.exists(args.config):
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)

    config = dict(load_config(args.config))
    config["ingest_mode"] = args.mode
    config["context_sweeper"] = False

    pdfs = collect_pdfs(args.path)
    if not pdfs:
        print(f"No PDF files found in {args.path}")
        sys.exit(1)

    service = ContextService.from_config(config)

    print(f"\n📄 Ingesting {len(pdfs)} PDF(s) from: {args.path}")
    print(f"📁 Output: {config.get('data_dir', 'data')}/")
    print()

    results = []
    try:
        for pdf_path in tqdm(pdfs, desc="Ingesting PDFs", unit="file"):
            data = pdf_path.read_bytes()
            metadata = DocumentMetadata(
                filename=pdf_path.name,
                declared_size=len(data),
                content_type="application/pdf",
                owner_id=args.owner,
            )
            summary = service.ingest(data, metadata, mode=args.mode, force=args.force)
            results.append((pdf_path.name, summary))
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        service.close()

    # Summary
    print("\n" + "=" * 50)
    print("📊 Ingestion Summary")
    print("=" * 50)

    ok = 0
    total_chunks = 0
    for name, summary in results:
        print(f"\n📄 {name}")
        if summary.success:
            ok += 1
            total_chunks += summary.chunk_count
            print(f"   doc_id: {summary.doc_id}{' (cached)' if summary.cached else ''}")
            print(f"   Pages: {summary.page_count}  Chunks: {summary.chunk_count}  Tables: {summary.table_count}")
            print(f"   Time: {summary.processing_time_ms}ms")
            if summary.partial_failure:
                print("   ⚠️  Some pages were only partially extracted")
        else:
            print(f"   ❌ {summary.error_code}: {summary.error}")

    print("\n" + "-" * 50)
    print(f"✅ Total: {ok}/{len(results)} documents, {total_chunks} chunks stored")

    if ok < len(results):
        sys.exit(1)


if __name__ == "__main__":
    main()
