#!/usr/bin/env python3
"""
CLI script for searching ingested documents.
Usage: python scripts/query.py --query "What is the NOI?" or python scripts/query.py for interactive mode
"""

import argparse
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from context.service import ContextService
from ingestion.storage import DurableStore
from shared import load_config


def format_results(chunks) -> str:
    """Format ranked chunks for display."""
    if not chunks:
        return "❌ No chunks available"

    output = []
    for i, chunk in enumerate(chunks, 1):
        preview = " ".join(chunk.content.split())
        output.append(f"{i}. [{chunk.doc_id}|p{chunk.page}|{chunk.chunk_id}] ({chunk.type})")
        output.append(f"   {preview[:160]}{'...' if len(preview) > 160 else ''}")
        output.append("")
    return "\n".join(output)


def interactive_mode(service: ContextService, owner: str, doc_ids: list, limit):
    """Run interactive search session."""
    print("\n" + "=" * 50)
    print("🔎 Document search")
    print("=" * 50)
    print("Type your questions. Enter 'quit' or 'exit' to end.")
    print()

    while True:
        try:
            query = input("❓ You: ").strip()

            if not query:
                continue

            if query.lower() in ("quit", "exit", "q"):
                print("\nGoodbye! 👋")
                break

            print()
            print(format_results(service.search(owner, doc_ids, query, limit)))

        except KeyboardInterrupt:
            print("\n\nGoodbye! 👋")
            break


def main():
    parser = argparse.ArgumentParser(
        description="Search ingested PDF documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/query.py                                # Interactive mode
  python scripts/query.py --query "key data points"      # Single query
  python scripts/query.py -q "cap rate" --doc-id 1a2b3c4d5e6f -k 10
        """,
    )
    parser.add_argument(
        "--query", "-q",
        help="Single query (skips interactive mode)",
    )
    parser.add_argument(
        "--doc-id",
        action="append",
        default=None,
        help="Restrict search to this doc id (repeatable; default: all of the owner's documents)",
    )
    parser.add_argument(
        "--owner",
        default="local",
        help="Owner id (default: local)",
    )
    parser.add_argument(
        "--limit", "-k",
        type=int,
        default=None,
        help="Number of chunks to return (overrides config)",
    )
    parser.add_argument(
        "--config",
        default="config/master_config.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    # Setup logging
    log_level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    config = dict(load_config(args.config))
    config["ingest_mode"] = "durable"
    config["context_sweeper"] = False
    config["ocr_backend"] = "none"

    service = ContextService.from_config(config)
    store: DurableStore = service.durable_store

    doc_ids = args.doc_id or [d.doc_id for d in store.list_documents(args.owner)]
    if not doc_ids:
        print("⚠️  No documents indexed. Run 'python scripts/ingest.py <pdf_folder>' first.")
        sys.exit(1)
    print(f"✅ Searching {len(doc_ids)} document(s)")

    try:
        if args.query:
            print()
            print(format_results(service.search(args.owner, doc_ids, args.query, args.limit)))
        else:
            interactive_mode(service, args.owner, doc_ids, args.limit)
    finally:
        service.close()


if __name__ == "__main__":
    main()
