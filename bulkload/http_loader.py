"""HTTP loader: streams each file to the ClickHouse HTTP interface."""

import asyncio
from typing import AsyncIterator, BinaryIO

import httpx
import structlog

from bulkload.config import RunConfig
from bulkload.jobs import DIAGNOSTIC_LIMIT, Job

log = structlog.get_logger()

CHUNK_SIZE = 1024 * 1024

# Status reported when the request never produced a response
TRANSPORT_ERROR_STATUS = -1


class HttpLoad:
    """An in-flight POST wrapped in a task so it can be cancelled on timeout."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    async def wait(self) -> tuple[int, bytes]:
        return await self._task

    async def kill(self) -> None:
        self._task.cancel()
        # asyncio.wait doesn't raise the task's CancelledError into the caller
        await asyncio.wait([self._task])


class HttpLoader:
    """
    Loads files with one streamed POST per file.

    The request is POST {base_url}/?query=INSERT INTO <table> FORMAT <fmt>
    with basic auth, and the body is read from the file in 1 MiB chunks.
    Any 2xx response is a successful load.
    """

    def __init__(self, config: RunConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def check_available(self) -> None:
        # Nothing to resolve locally; connection errors surface per job
        return None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                # The per-job deadline bounds the whole request; only connect gets its own limit
                timeout=httpx.Timeout(None, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def start(self, job: Job, source: BinaryIO) -> HttpLoad:
        task = asyncio.create_task(self._post(job, source), name=f"load:{job.name}")
        return HttpLoad(task)

    async def _post(self, job: Job, source: BinaryIO) -> tuple[int, bytes]:
        cfg = self.config
        params = {
            "query": cfg.insert_query,
            "max_insert_threads": str(cfg.threads),
            "input_format_parallel_parsing": "1",
        }

        try:
            async with self.client.stream(
                "POST",
                f"{cfg.base_url}/",
                params=params,
                auth=(cfg.user, cfg.password),
                content=_read_chunks(source),
            ) as response:
                if response.is_success:
                    return 0, b""
                body = await _read_limited(response, DIAGNOSTIC_LIMIT)
        except httpx.HTTPError as e:
            log.debug("http_load_transport_error", file=job.name, error=str(e))
            return TRANSPORT_ERROR_STATUS, f"{type(e).__name__}: {e}".encode()

        return response.status_code, f"HTTP {response.status_code}: ".encode() + body


async def _read_chunks(source: BinaryIO) -> AsyncIterator[bytes]:
    """Yield the file in chunks without blocking the event loop on disk reads."""
    while True:
        chunk = await asyncio.to_thread(source.read, CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


async def _read_limited(response: httpx.Response, limit: int) -> bytes:
    """Read at most limit bytes of an error body; the rest is never buffered."""
    body = bytearray()
    async for chunk in response.aiter_bytes():
        body.extend(chunk)
        if len(body) >= limit:
            break
    return bytes(body[:limit])
