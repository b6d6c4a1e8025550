"""
Batch ingestion script for the Second Brain retrieval engine.

This script:
1. Optionally clears the owner's existing documents
2. Finds text, markdown and HTML files under a directory
3. Uses each file's modification time as its content timestamp
4. Indexes new files and re-indexes files ingested before

Usage:
    python ingest_documents.py <directory> --owner <owner_id> [--clear]
"""
import argparse
import asyncio
import html
import logging
import re
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from models.document import ContentType, Document
from services.errors import IndexingError, NotFoundError
from services.knowledge_base import KnowledgeBase, build_knowledge_base
from config import STORE_BACKEND

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".txt", ".md", ".html", ".htm"}

_TAG = re.compile(r"<(script|style)[^>]*>.*?</\1>|<[^>]+>", re.S | re.I)


def discover_files(directory: Path) -> List[Path]:
    """Supported files under `directory`, in a stable order."""
    return sorted(
        path for path in directory.rglob("*")
        if path.is_file() and path.suffix.lower() in SUPPORTED_EXTENSIONS
    )


def document_id_for(owner_id: str, relative_path: str) -> str:
    """Stable id so that re-running the script re-indexes instead of duplicating."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{owner_id}/{relative_path}"))


def load_document(path: Path, root: Path, owner_id: str) -> Document:
    """Read a file into a Document stamped with its modification time."""
    text = path.read_text(encoding="utf-8", errors="replace")
    content_type = ContentType.from_filename(path.name)
    if content_type is ContentType.WEB:
        text = html.unescape(_TAG.sub(" ", text))

    relative_path = path.relative_to(root).as_posix()
    return Document(
        document_id=document_id_for(owner_id, relative_path),
        owner_id=owner_id,
        name=path.name,
        content_type=content_type,
        text=text,
        content_timestamp=datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc),
        metadata={"path": relative_path}
    )


async def ingest_directory(
    knowledge_base: KnowledgeBase,
    directory: Path,
    owner_id: str,
    clear: bool = False
) -> Dict[str, int]:
    """
    Ingest every supported file under a directory for one owner.

    Returns:
        Counts of indexed, re-indexed, skipped and failed files
    """
    counts = {"indexed": 0, "reindexed": 0, "skipped": 0, "failed": 0, "cleared": 0}

    if clear:
        counts["cleared"] = await knowledge_base.clear_owner(owner_id)
        logger.info(f"Cleared {counts['cleared']} existing documents")

    files = discover_files(directory)
    logger.info(f"Found {len(files)} files in {directory}")

    for path in files:
        document = load_document(path, directory, owner_id)
        if not document.text.strip():
            logger.warning(f"  - {path.name}: empty, skipped")
            counts["skipped"] += 1
            continue

        try:
            try:
                await knowledge_base.get_document(document.document_id, owner_id)
            except NotFoundError:
                await knowledge_base.ingest(document)
                counts["indexed"] += 1
            else:
                await knowledge_base.reindex(document)
                counts["reindexed"] += 1
            logger.info(f"  ✓ {path.name}")
        except IndexingError as e:
            logger.error(f"  ✗ {path.name}: {e.message}", extra={"error_code": e.code})
            counts["failed"] += 1

    return counts


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest a directory of text files into the knowledge base")
    parser.add_argument("directory", type=Path, help="Directory to ingest")
    parser.add_argument("--owner", required=True, help="Owner id the documents belong to")
    parser.add_argument("--clear", action="store_true", help="Delete the owner's existing documents first")
    parser.add_argument(
        "--store",
        default=STORE_BACKEND,
        choices=["memory", "supabase"],
        help="Store backend (default: STORE_BACKEND)"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main ingestion process."""
    args = parse_args(argv)

    if not args.directory.is_dir():
        logger.error(f"{args.directory} is not a directory")
        return 1
    if args.store == "memory":
        logger.warning("Using the in-memory store; documents are discarded when this script exits")

    try:
        logger.info("=" * 60)
        logger.info(f"Ingesting {args.directory} for owner {args.owner}")
        logger.info("=" * 60)

        knowledge_base = build_knowledge_base(args.store)
        counts = asyncio.run(ingest_directory(knowledge_base, args.directory, args.owner, args.clear))

        logger.info("=" * 60)
        logger.info(
            f"Indexed: {counts['indexed']}, re-indexed: {counts['reindexed']}, "
            f"skipped: {counts['skipped']}, failed: {counts['failed']}"
        )
        logger.info("=" * 60)
        return 1 if counts["failed"] else 0

    except KeyboardInterrupt:
        logger.warning("\nIngestion interrupted by user")
        return 1
    except Exception as e:
        logger.error(f"\nIngestion failed: {str(e)}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
