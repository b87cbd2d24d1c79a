"""
Persona - Document Ingestion Script
=====================================
CLI entry point that loads a directory of ``.txt`` files into one
user's document collection:
    1. Load settings (fail-fast on a bad ``.env``).
    2. Initialise the embedding backend and ``LanceVectorStore``
       (optionally drop the table or purge the user's documents).
    3. Clean and chunk every file, then ``store_batch`` the chunks in
       batches of at most 100.
    4. Print a structured execution summary with timing breakdown.

Flags:
    --user ID       Owner of the ingested documents (required).
    --source DIR    Directory to read.  Defaults to ``settings.DATA_RAW_DIR``.
    --purge-user    Delete the user's existing documents first.
    --drop          Drop the whole LanceDB table before ingesting.

Usage:
    python -m persona.scripts.ingest_documents --user alice
    python -m persona.scripts.ingest_documents --user alice --source ./notes --purge-user
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from pathlib import Path

# ── Ensure project root is importable when run directly ────────────────
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

_SUPPORTED_EXTENSIONS = {".txt"}
_CHUNK_CHARS = 2000


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="ingest_documents", description="Persona: embed and store a directory of text files for one user.")
    parser.add_argument("--user", required=True, help="User id that will own the documents.")
    parser.add_argument("--source", type=Path, default=None, help="Directory of .txt files (default: settings.DATA_RAW_DIR).")
    parser.add_argument("--purge-user", action="store_true", default=False, help="Delete the user's existing documents before ingesting.")
    parser.add_argument("--drop", action="store_true", default=False, help="Drop the LanceDB table before ingesting.")
    return parser.parse_args(argv)


# ── Document Collection ────────────────────────────────────────────────

def collect_documents(source: Path, max_chars: int = _CHUNK_CHARS) -> tuple[int, list[dict[str, object]]]:
    """Return ``(file_count, documents)`` for every supported file under *source*."""
    from persona.src.utils.text_utils import clean_text, metadata_from_filename, split_text

    files = sorted(f for f in source.iterdir() if f.is_file() and f.suffix.lower() in _SUPPORTED_EXTENSIONS)
    documents: list[dict[str, object]] = []
    for filepath in files:
        text = clean_text(filepath.read_text(encoding="utf-8", errors="replace"))
        chunks = split_text(text, max_chars)
        for i, chunk in enumerate(chunks):
            documents.append({"text": chunk, "metadata": {**metadata_from_filename(filepath.name), "chunk_index": i, "chunk_count": len(chunks)}})
    return len(files), documents


async def _ingest(retrieval: object, documents: list[dict[str, object]], user_id: str, batch_size: int, purge: bool) -> tuple[int, int]:
    """Optionally purge, then store *documents* in batches; returns ``(stored, user_total)``."""
    if purge:
        await retrieval.delete_user_documents(user_id)  # type: ignore[attr-defined]
    stored = 0
    for start in range(0, len(documents), batch_size):
        ids = await retrieval.store_batch(documents[start:start + batch_size], user_id)  # type: ignore[attr-defined]
        stored += len(ids)
    return stored, await retrieval.count_documents(user_id)  # type: ignore[attr-defined]


# ── Main Orchestration ─────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    t_start = time.perf_counter()

    # ── 0. Load settings + .env (timed) ────────────────────────────────
    t_settings = time.perf_counter()
    try:
        from persona.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Configuration error, check your .env file:\n")
        print(f"  {exc}")
        print()
        sys.exit(1)
    settings_ms = (time.perf_counter() - t_settings) * 1000

    from persona.src.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("Settings loaded in %.1fms", settings_ms)

    source: Path = args.source or settings.DATA_RAW_DIR
    _print_header(settings, args.user, source)

    # ── 1. Initialise embedder + store (timed) ─────────────────────────
    from persona.src.backends.embeddings import EmbeddingBackendFactory
    from persona.src.core.embedding_cache import EmbeddingCache
    from persona.src.core.errors import GatewayError
    from persona.src.core.retrieval import MAX_BATCH_SIZE, RetrievalCoordinator
    from persona.src.database.vector_store import LanceVectorStore

    t_init = time.perf_counter()
    try:
        embedder = EmbeddingBackendFactory(settings)(settings.EMBEDDING_PROVIDER)
    except GatewayError as exc:
        logger.error("Embedding backend unavailable: %s", exc)
        sys.exit(1)

    store = LanceVectorStore()
    if args.drop:
        logger.warning("Dropping table '%s' as requested.", settings.LANCEDB_TABLE_NAME)
        store.drop_table()
        store = LanceVectorStore()
    init_ms = (time.perf_counter() - t_init) * 1000

    retrieval = RetrievalCoordinator(embedder, store, EmbeddingCache(max_size=1))

    # ── 2. Collect + store ─────────────────────────────────────────────
    if not source.exists():
        logger.warning("Source directory does not exist: %s", source)
        _print_footer(0, 0, 0, time.perf_counter() - t_start, settings_ms, init_ms)
        return

    file_count, documents = collect_documents(source)
    if not documents:
        logger.warning("No supported files with content found in %s", source)
        _print_footer(file_count, 0, 0, time.perf_counter() - t_start, settings_ms, init_ms)
        return

    if args.purge_user:
        logger.warning("Purging existing documents of user '%s'.", args.user)
    logger.info("Storing %d chunk(s) from %d file(s) for user '%s'.", len(documents), file_count, args.user)
    try:
        stored, total = asyncio.run(_ingest(retrieval, documents, args.user, MAX_BATCH_SIZE, args.purge_user))
    except GatewayError:
        logger.exception("Ingestion failed.")
        sys.exit(1)

    _print_footer(file_count, stored, total, time.perf_counter() - t_start, settings_ms, init_ms)


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(settings: object, user_id: str, source: Path) -> None:
    mongo_uri_val = settings.MONGO_URI.get_secret_value()  # type: ignore[attr-defined]
    mongo_masked = mongo_uri_val.split("@")[-1] if "@" in mongo_uri_val else mongo_uri_val

    print()
    print("=" * 60)
    print("  PERSONA: Document Ingestion")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                       # type: ignore[attr-defined]
    print(f"  Embeddings   : {settings.EMBEDDING_PROVIDER} ({settings.EMBEDDING_MODEL})")  # type: ignore[attr-defined]
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")              # type: ignore[attr-defined]
    print(f"  MongoDB      : {mongo_masked} (db: {settings.MONGO_DB_NAME})")  # type: ignore[attr-defined]
    print(f"  Source dir   : {source}")
    print(f"  User         : {user_id}")
    print("=" * 60)
    print()


def _print_footer(total_files: int, stored: int, user_total: int, elapsed: float, settings_ms: float, init_ms: float) -> None:
    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Files scanned        : {total_files}")
    print(f"  Chunks stored        : {stored}")
    print(f"  User documents total : {user_total}")
    print("-" * 60)
    print(f"  Settings + .env load : {settings_ms:>8.1f}ms")
    print(f"  Backend + LanceDB    : {init_ms:>8.1f}ms")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    main()
