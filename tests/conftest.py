"""
공통 테스트 fixture

ZIP 아카이브는 stdlib zipfile로 메모리에서 만든다.
"""

import io
import struct
import sys
import warnings
import zipfile
import zlib
from pathlib import Path

import pytest
import zstandard

# 프로젝트 루트를 path에 추가
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from artifact_drop.monitoring.metrics import IngestMetrics
from artifact_drop.storage.object_store import InMemoryObjectStore
from prometheus_client import CollectorRegistry


def build_zip(files, compression=zipfile.ZIP_DEFLATED) -> bytes:
    """
    (name, data) 목록으로 ZIP 생성

    name이 '/'로 끝나면 디렉터리 엔트리
    """
    buf = io.BytesIO()
    with warnings.catch_warnings():
        # 중복 이름 테스트용
        warnings.simplefilter("ignore")
        with zipfile.ZipFile(buf, "w", compression) as zf:
            for name, data in files:
                if name.endswith("/"):
                    zf.writestr(zipfile.ZipInfo(name), b"")
                else:
                    zf.writestr(name, data)
    return buf.getvalue()


def payload_range(archive: bytes, index: int):
    """index번째 엔트리의 압축 payload (start, end)"""
    info = zipfile.ZipFile(io.BytesIO(archive)).infolist()[index]
    name_length, extra_length = struct.unpack_from("<2H", archive, info.header_offset + 26)
    start = info.header_offset + 30 + name_length + extra_length
    return start, start + info.compress_size


def corrupt_payload(archive: bytes, index: int) -> bytes:
    """index번째 엔트리 payload를 0xFF로 덮어씀 (deflate: invalid block type)"""
    start, end = payload_range(archive, index)
    return archive[:start] + b"\xff" * (end - start) + archive[end:]


def central_header_offset(archive: bytes, index: int) -> int:
    pos = -1
    for _ in range(index + 1):
        pos = archive.index(b"PK\x01\x02", pos + 1)
    return pos


def patch_central(archive: bytes, index: int, field_offset: int, fmt: str, value) -> bytes:
    """central directory 헤더 필드 수정"""
    data = bytearray(archive)
    struct.pack_into(fmt, data, central_header_offset(archive, index) + field_offset, value)
    return bytes(data)


def build_zstd_zip(name: str, content: bytes) -> bytes:
    """method 93(zstd) 엔트리 하나짜리 ZIP"""
    frame = zstandard.ZstdCompressor(level=3).compress(content)
    archive = bytearray(build_zip([(name, frame)], compression=zipfile.ZIP_STORED))

    crc = zlib.crc32(content)
    local = 0
    central = central_header_offset(bytes(archive), 0)
    # local: method +8, crc +14, usize +22 / central: method +10, crc +16, usize +24
    struct.pack_into("<H", archive, local + 8, 93)
    struct.pack_into("<L", archive, local + 14, crc)
    struct.pack_into("<L", archive, local + 22, len(content))
    struct.pack_into("<H", archive, central + 10, 93)
    struct.pack_into("<L", archive, central + 16, crc)
    struct.pack_into("<L", archive, central + 24, len(content))
    return bytes(archive)


def build_raw_zip(files, zip64_extra=False, zip64_eocd=False, truncate_extra=False) -> bytes:
    """
    stored 엔트리로 ZIP을 직접 조립 (ZIP64 필드 테스트용)

    Args:
        zip64_extra: central header 크기를 0xFFFFFFFF로 두고 ZIP64 extra field에 기록
        zip64_eocd: ZIP64 EOCD record + locator 작성, EOCD는 0xFFFF/0xFFFFFFFF
        truncate_extra: ZIP64 extra에 usize만 기록 (csize 누락)
    """
    body = bytearray()
    central = bytearray()

    for name, data in files:
        raw_name = name.encode("utf-8")
        crc = zlib.crc32(data)
        offset = len(body)
        body += struct.pack("<4s5H3L2H", b"PK\x03\x04", 20, 0, 0, 0, 0,
                            crc, len(data), len(data), len(raw_name), 0)
        body += raw_name + data

        extra = b""
        size_field = len(data)
        if zip64_extra:
            size_field = 0xFFFFFFFF
            if truncate_extra:
                extra = struct.pack("<2HQ", 0x0001, 8, len(data))
            else:
                extra = struct.pack("<2H2Q", 0x0001, 16, len(data), len(data))
        central += struct.pack("<4s6H3L5H2L", b"PK\x01\x02", 45, 45, 0, 0, 0, 0,
                               crc, size_field, size_field, len(raw_name), len(extra),
                               0, 0, 0, 0, offset)
        central += raw_name + extra

    cd_offset = len(body)
    count = len(files)
    archive = body + central

    if zip64_eocd:
        record_offset = len(archive)
        archive += struct.pack("<4sQ2H2L4Q", b"PK\x06\x06", 44, 45, 45, 0, 0,
                               count, count, len(central), cd_offset)
        archive += struct.pack("<4sLQL", b"PK\x06\x07", 0, record_offset, 1)
        archive += struct.pack("<4s4H2LH", b"PK\x05\x06", 0, 0, 0xFFFF, 0xFFFF,
                               0xFFFFFFFF, 0xFFFFFFFF, 0)
    else:
        archive += struct.pack("<4s4H2LH", b"PK\x05\x06", 0, 0, count, count,
                               len(central), cd_offset, 0)
    return bytes(archive)


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def metrics():
    return IngestMetrics(registry=CollectorRegistry())


@pytest.fixture
def landing_page(tmp_path):
    path = tmp_path / "index.html"
    path.write_text("<html><body>artifacts</body></html>", encoding="utf-8")
    return str(path)
