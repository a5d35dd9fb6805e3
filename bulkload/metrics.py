"""Run metrics for Dynatrace."""

import os
from pathlib import Path
from typing import Any, Mapping

import httpx
import structlog

log = structlog.get_logger()


class MetricsClient:
    """Buffer run metrics and push them to Dynatrace at the end of a run."""

    def __init__(
        self,
        endpoint: str = "",
        token_path: str | None = None,
        dimensions: dict[str, Any] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.token_path = token_path
        self.dimensions = dict(dimensions or {})
        self._client = client
        self._buffer: list[str] = []
        self._token: str | None = None

    @classmethod
    def from_env(cls, dimensions: dict[str, Any] | None = None, environ: Mapping[str, str] | None = None) -> "MetricsClient":
        env = os.environ if environ is None else environ
        return cls(
            endpoint=env.get("BULKLOAD_METRICS_ENDPOINT", ""),
            token_path=env.get("BULKLOAD_METRICS_TOKEN_PATH", "/secrets/dynatrace-token"),
            dimensions=dimensions,
        )

    @property
    def buffered(self) -> list[str]:
        return list(self._buffer)

    def _get_token(self) -> str | None:
        """Load Dynatrace token from file."""
        if self._token is not None:
            return self._token
        if not self.token_path:
            return None

        token_path = Path(self.token_path)
        if token_path.exists():
            self._token = token_path.read_text().strip()
            return self._token

        log.debug("dynatrace_token_not_found", path=str(token_path))
        return None

    def increment(self, metric: str, value: int = 1, dimensions: dict[str, Any] | None = None) -> None:
        """Increment a counter metric."""
        self._record(metric, value, "count", dimensions)

    def gauge(self, metric: str, value: float, dimensions: dict[str, Any] | None = None) -> None:
        """Record a gauge metric."""
        self._record(metric, value, "gauge", dimensions)

    def _record(
        self,
        metric: str,
        value: float,
        metric_type: str,
        dimensions: dict[str, Any] | None = None,
    ) -> None:
        dims = dict(self.dimensions)
        if dimensions:
            dims.update(dimensions)

        # Dynatrace line protocol: counters are sent as deltas
        payload = f"count,delta={value}" if metric_type == "count" else f"gauge,{value}"
        key = metric
        if dims:
            key += "," + ",".join(f"{k}={v}" for k, v in dims.items())
        self._buffer.append(f"{key} {payload}")

        log.debug("metric_recorded", metric=metric, value=value, type=metric_type)

    def flush(self) -> None:
        """Send buffered metrics to Dynatrace; errors are logged, never raised."""
        if not self._buffer:
            return

        token = self._get_token()
        if not token or not self.endpoint:
            log.debug("metrics_flush_skipped", reason="no endpoint or token configured")
            self._buffer.clear()
            return

        client = self._client or httpx.Client(timeout=10)
        try:
            response = client.post(
                f"{self.endpoint.rstrip('/')}/api/v2/metrics/ingest",
                headers={
                    "Authorization": f"Api-Token {token}",
                    "Content-Type": "text/plain",
                },
                content="\n".join(self._buffer),
            )

            if response.status_code == 202:
                log.info("metrics_flushed", count=len(self._buffer))
            else:
                log.error(
                    "metrics_flush_failed",
                    status=response.status_code,
                    body=response.text[:500],
                )
        except httpx.HTTPError as e:
            log.warning("metrics_flush_error", error=str(e))
        finally:
            self._buffer.clear()
            if self._client is None:
                client.close()
