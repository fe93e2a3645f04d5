import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

import httpx

from upload_client.retry import RetryPolicy, UploadClientError, UploadGaveUp

logger = logging.getLogger(__name__)

READ_BLOCK = 1024 * 1024


@dataclass
class UploadResult:
    session_id: str
    job_id: str
    asset_key: str
    size: int


def file_md5(path: Path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(READ_BLOCK), b""):
            digest.update(block)
    return digest.hexdigest()


def read_chunk(path: Path, index: int, chunk_size: int) -> bytes:
    with open(path, "rb") as f:
        f.seek(index * chunk_size)
        return f.read(chunk_size)


class ChunkedUploader:
    """
    Client side of the resumable upload protocol. Chunks are sent with their
    MD5, a few at a time, and each one is retried with backoff on its own.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        chunk_size: int | None = None,
        parallelism: int = 3,
        retry_policy: RetryPolicy | None = None,
        on_chunk: Callable[[int, float], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.chunk_size = chunk_size
        self.parallelism = parallelism
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_chunk = on_chunk
        self._sleep = sleep

    async def upload(self, path, file_type: str = "video/mp4", metadata: dict | None = None) -> UploadResult:
        path = Path(path)
        payload = {
            "fileName": path.name,
            "fileSize": os.path.getsize(path),
            "fileType": file_type,
            "metadata": metadata or {},
        }
        if self.chunk_size:
            payload["chunkSize"] = self.chunk_size
        session = await self._call("POST", "/api/uploads/initiate", json=payload)
        session_id = session["sessionId"]
        logger.info(f"Upload session {session_id}: {session['totalChunks']} chunk(s) of {session['chunkSize']}")

        await self._send_chunks(session_id, path, session["chunkSize"], range(session["totalChunks"]))
        return await self._complete(session_id, path, session["totalChunks"])

    async def resume(self, session_id: str, path) -> UploadResult:
        """Send only the chunks the server is missing, then finalize."""
        path = Path(path)
        state = await self._call("POST", f"/api/uploads/resume/{session_id}")
        missing = state["missingIndices"]
        logger.info(f"Resuming upload session {session_id}: {len(missing)} chunk(s) left")
        await self._send_chunks(session_id, path, state["chunkSize"], missing)
        return await self._complete(session_id, path, state["totalChunks"])

    async def cancel(self, session_id: str) -> dict:
        return await self._call("POST", f"/api/uploads/cancel/{session_id}")

    async def _send_chunks(self, session_id: str, path: Path, chunk_size: int, indices) -> None:
        semaphore = asyncio.Semaphore(self.parallelism)

        async def send(index: int):
            async with semaphore:
                data = await asyncio.to_thread(read_chunk, path, index, chunk_size)
                result = await self._send_chunk(session_id, index, data)
                if self.on_chunk:
                    self.on_chunk(index, result["percentage"])

        tasks = [asyncio.create_task(send(i)) for i in indices]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _send_chunk(self, session_id: str, index: int, data: bytes) -> dict:
        md5 = hashlib.md5(data).hexdigest()
        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            # first delivery goes to the chunk endpoint, repeats to the retry endpoint
            route = "chunk" if attempt == 1 else "retry"
            status_code = None
            try:
                response = await self.client.post(
                    f"/api/uploads/{route}/{session_id}",
                    data={"chunkIndex": str(index), "chunkHash": md5},
                    files={"file": (f"chunk_{index:05d}", data, "application/octet-stream")},
                )
                if response.status_code < 400:
                    return response.json()["data"]
                status_code = response.status_code
                last_error = f"HTTP {status_code}: {_error_text(response)}"
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"

            if not policy.should_retry(attempt, status_code):
                raise UploadGaveUp(index, attempt, last_error, status_code=status_code)
            delay = policy.delay(attempt)
            logger.warning(f"Chunk {index} attempt {attempt} failed ({last_error}), retrying in {delay:.1f}s")
            await self._sleep(delay)

    async def _complete(self, session_id: str, path: Path, total_chunks: int) -> UploadResult:
        final_hash = await asyncio.to_thread(file_md5, path)
        data = await self._call(
            "POST",
            f"/api/uploads/complete/{session_id}",
            json={"totalChunks": total_chunks, "finalHash": final_hash},
        )
        logger.info(f"Upload session {session_id} completed, job {data['jobId']}")
        return UploadResult(
            session_id=data["sessionId"],
            job_id=data["jobId"],
            asset_key=data["assetKey"],
            size=data["size"],
        )

    async def _call(self, method: str, url: str, **kwargs) -> dict:
        response = await self.client.request(method, url, **kwargs)
        if response.status_code >= 400:
            raise UploadClientError(
                f"{method} {url} failed with HTTP {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
                body=_json_or_empty(response),
            )
        return response.json()["data"]


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        return response.json()
    except ValueError:
        return {}


def _error_text(response: httpx.Response) -> str:
    body = _json_or_empty(response)
    return body.get("error") or body.get("message") or response.text[:200]
