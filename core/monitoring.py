import time
from contextlib import contextmanager
from typing import Optional

import prometheus_client as prom


class AdapterMetrics:
    """Prometheus counters for backend calls and emitted stream chunks."""

    def __init__(self, registry: Optional[prom.CollectorRegistry] = None):
        self.registry = registry or prom.CollectorRegistry()
        self.metrics = {
            'calls': prom.Counter(
                'adapter_calls_total', 'Backend calls started',
                ['backend', 'service', 'mode'], registry=self.registry
            ),
            'errors': prom.Counter(
                'adapter_errors_total', 'Backend calls that ended in an error',
                ['backend', 'service', 'mode'], registry=self.registry
            ),
            'chunks': prom.Counter(
                'adapter_stream_chunks_total', 'Stream chunks written to the orchestrator',
                ['backend', 'service', 'kind'], registry=self.registry
            ),
            'latency': prom.Histogram(
                'adapter_call_seconds', 'Unary call latency',
                ['backend', 'service'], registry=self.registry
            ),
        }

    def log_call(self, backend: str, service: str, mode: str):
        self.metrics['calls'].labels(backend=backend, service=service, mode=mode).inc()

    def log_error(self, backend: str, service: str, mode: str):
        self.metrics['errors'].labels(backend=backend, service=service, mode=mode).inc()

    def log_chunk(self, backend: str, service: str, kind: str):
        """kind is one of data, final, error."""
        self.metrics['chunks'].labels(backend=backend, service=service, kind=kind).inc()

    @contextmanager
    def time_call(self, backend: str, service: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            self.metrics['latency'].labels(backend=backend, service=service).observe(
                time.perf_counter() - started
            )

    def value(self, name: str, **labels) -> float:
        """Current sample value, mostly useful in tests."""
        sample = self.registry.get_sample_value(name, labels)
        return sample or 0.0

    def render(self) -> bytes:
        return prom.generate_latest(self.registry)


_metrics: Optional[AdapterMetrics] = None

def get_metrics() -> AdapterMetrics:
    global _metrics
    if _metrics is None:
        _metrics = AdapterMetrics()
    return _metrics
