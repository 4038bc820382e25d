"""Usage recording for tool invocations.

Records are handed to a bounded queue and written by a single background
worker, so the response path never waits on the sink. Sink failures are
logged and dropped; they never reach the caller.
"""

import asyncio
import contextlib
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

import aiofiles

from shared.logging import get_logger
from shared.models import UsageRecord

logger = get_logger(__name__)

# Argument names whose values are never persisted
SENSITIVE_PARAMS = {
    "password", "token", "secret", "api_key", "apikey", "credential", "authorization",
}


def redact_sensitive(params: dict[str, Any]) -> dict[str, Any]:
    """Redact sensitive values, recursing into nested objects."""
    redacted = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_sensitive(value)
        else:
            redacted[key] = value
    return redacted


class UsageSink(Protocol):
    async def write(self, record: UsageRecord) -> None: ...


class JSONLinesSink:
    """Appends one JSON document per record to a file."""

    def __init__(self, log_path: str = "logs/usage.log") -> None:
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    async def write(self, record: UsageRecord) -> None:
        async with aiofiles.open(self.log_path, "a") as f:
            await f.write(record.model_dump_json() + "\n")

    async def query(
        self,
        resource_id: Optional[str] = None,
        tool_name: Optional[str] = None,
        success: Optional[bool] = None,
        start_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[UsageRecord]:
        """
        Read records back with simple filters.

        Lines that fail to parse are skipped.
        """
        results: list[UsageRecord] = []
        if not self.log_path.exists():
            return results

        async with aiofiles.open(self.log_path, "r") as f:
            async for line in f:
                if len(results) >= limit:
                    break
                try:
                    record = UsageRecord(**json.loads(line.strip()))
                except (json.JSONDecodeError, ValueError):
                    continue

                if resource_id and record.resource_id != resource_id:
                    continue
                if tool_name and record.tool_name != tool_name:
                    continue
                if success is not None and record.success != success:
                    continue
                if start_time and record.timestamp < start_time:
                    continue
                results.append(record)

        return results


class MemorySink:
    """Keeps records in memory."""

    def __init__(self) -> None:
        self.records: list[UsageRecord] = []

    async def write(self, record: UsageRecord) -> None:
        self.records.append(record)


class UsageRecorder:
    """
    Fire-and-forget usage recorder.

    ``record`` never blocks and never raises. When the queue is full the
    record is dropped with a warning.
    """

    def __init__(
        self,
        sink: UsageSink,
        queue_size: int = 1000,
        enabled: bool = True,
        shutdown_timeout: float = 5.0,
    ) -> None:
        self.sink = sink
        self.enabled = enabled
        self.shutdown_timeout = shutdown_timeout
        self._queue: asyncio.Queue[UsageRecord] = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run(), name="usage-recorder")
            logger.info("Usage recorder started")

    def record(self, record: UsageRecord) -> None:
        if not self.enabled:
            return

        if record.request_arguments:
            record = record.model_copy(
                update={"request_arguments": redact_sensitive(record.request_arguments)}
            )

        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Usage queue full, record dropped", tool=record.tool_name, dropped=self.dropped)

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self.sink.write(record)
            except Exception as e:
                logger.error("Failed to write usage record", tool=record.tool_name, error=str(e))
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued record has been handed to the sink."""
        await self._queue.join()

    async def stop(self) -> None:
        """Drain the queue within the shutdown timeout, then stop the worker."""
        if self._worker is None:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("Usage recorder stopped with pending records", pending=self._queue.qsize())

        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None
        logger.info("Usage recorder stopped")
