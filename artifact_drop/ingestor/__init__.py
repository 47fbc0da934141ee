"""
Ingestor Module - Archive Ingestion
===================================

Components:
- archive_cursor: ZIP central directory 기반 pull cursor
- session: 세션 ID, manifest, IngestionSession (session 모듈은 직접 import)
"""

from .archive_cursor import ArchiveEntry, ArchiveEntryCursor, DecompressedStream, EXHAUSTED

__all__ = [
    "ArchiveEntry",
    "ArchiveEntryCursor",
    "DecompressedStream",
    "EXHAUSTED",
]
