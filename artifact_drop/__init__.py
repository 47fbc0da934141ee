"""
Artifact Drop - Streaming Archive Ingestion
===========================================

업로드된 ZIP 아카이브를 엔트리 단위로 해제하며 오브젝트 스토어에 저장

Packages:
- common: 에러 계층, 해제 codec
- ingestor: archive cursor, ingestion session
- storage: 오브젝트 스토어, 엔트리 업로더
- api: FastAPI ingress
- monitoring: Prometheus 메트릭
"""

__version__ = "1.0.0"
