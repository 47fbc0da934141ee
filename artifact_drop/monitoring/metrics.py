"""
Ingestion Metrics
=================

Prometheus 메트릭 (/metrics 엔드포인트에서 노출)
- 세션 결과별 카운터
- 업로드된 엔트리 / 바이트
- 에러 코드별 카운터
- 세션 처리 시간 분포
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY, generate_latest


class IngestMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY

        # 1. 세션 결과 (completed / aborted)
        self.sessions_total = Counter(
            'artifact_sessions_total',
            'Ingestion sessions by outcome',
            ['outcome'],
            registry=self.registry,
        )

        # 2. 업로드 결과
        self.entries_uploaded_total = Counter(
            'artifact_entries_uploaded_total',
            'Archive entries uploaded to the object store',
            registry=self.registry,
        )
        self.bytes_uploaded_total = Counter(
            'artifact_bytes_uploaded_total',
            'Decompressed bytes uploaded to the object store',
            registry=self.registry,
        )

        # 3. 에러 코드별 카운터
        self.errors_total = Counter(
            'artifact_errors_total',
            'Ingestion errors by code',
            ['code'],
            registry=self.registry,
        )

        # 4. 세션 처리 시간 분포
        self.session_duration_seconds = Histogram(
            'artifact_session_duration_seconds',
            'Time spent ingesting one archive',
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=self.registry,
        )

    def record_entry(self, size: int):
        self.entries_uploaded_total.inc()
        self.bytes_uploaded_total.inc(size)

    def record_completed(self, duration: float):
        self.sessions_total.labels(outcome='completed').inc()
        self.session_duration_seconds.observe(duration)

    def record_aborted(self, code: str, duration: float):
        self.sessions_total.labels(outcome='aborted').inc()
        self.errors_total.labels(code=code).inc()
        self.session_duration_seconds.observe(duration)

    def record_rejected(self, code: str):
        """세션 시작 전 ingress에서 거절된 요청"""
        self.errors_total.labels(code=code).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)


_default_metrics: Optional[IngestMetrics] = None


def get_metrics() -> IngestMetrics:
    """기본 레지스트리에 등록된 메트릭 인스턴스 반환"""
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = IngestMetrics()
    return _default_metrics
