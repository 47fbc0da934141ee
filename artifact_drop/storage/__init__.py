"""
Storage Module - Object Store
=============================

Components:
- object_store: ObjectStore 인터페이스, MinIO / 메모리 구현
- entry_uploader: 엔트리 하나를 세션 prefix 아래로 업로드
"""

from .object_store import ObjectStore, MinIOObjectStore, InMemoryObjectStore, StoredObject
from .entry_uploader import EntryUploader, UploadReceipt, object_key, guess_content_type

__all__ = [
    "ObjectStore",
    "MinIOObjectStore",
    "InMemoryObjectStore",
    "StoredObject",
    "EntryUploader",
    "UploadReceipt",
    "object_key",
    "guess_content_type",
]
