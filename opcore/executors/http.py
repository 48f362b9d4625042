"""
HTTP executor for the sandbox's local API.

Batches are POSTed to the filesystem batch endpoint as
``{"operations": [...]}`` and answered with a JSON list of results in the
executor wire format (camelCase ``operationId``, duration in milliseconds).
Terminal commands and AI requests are streamed as newline-delimited JSON
chunk objects.
"""

import json
from typing import Any, AsyncIterator, Optional

import httpx

from opcore.config.settings import ExecutorSettings, get_executor_settings
from opcore.errors.error_codes import ErrorCodes
from opcore.errors.exceptions import (
    ExecutorConnectionError,
    ExecutorError,
    ExecutorTimeoutError,
)
from opcore.executors.base import Executor
from opcore.logging import get_logger
from opcore.models.operations import (
    Operation,
    OperationKind,
    OperationResult,
    StreamChunk,
    StreamChunkType,
)

logger = get_logger(__name__)

# Status codes that indicate a transient server-side condition
RECOVERABLE_STATUS_CODES = frozenset({408, 429})

_STREAMING_KINDS = frozenset({OperationKind.TERMINAL, OperationKind.AI_REQUEST})


class HttpExecutor(Executor):
    """
    Executor reached over HTTP with a pooled httpx.AsyncClient.

    Use as an async context manager, or call close() when done.
    """

    def __init__(
        self,
        settings: Optional[ExecutorSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_executor_settings()
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "HttpExecutor":
        self._client()
        return self

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=httpx.Timeout(self.settings.timeout_seconds),
                transport=self._transport,
                follow_redirects=True,
            )
            logger.debug(
                f"HTTP executor client created for {self.settings.base_url} "
                f"(timeout={self.settings.timeout_seconds}s)"
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            try:
                await self._http_client.aclose()
            except Exception as e:
                logger.warning(f"Error during HTTP client cleanup: {e}")
            finally:
                self._http_client = None

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    async def execute_batch(self, operations: list[Operation]) -> list[OperationResult]:
        endpoint = self.settings.batch_endpoint
        body = {"operations": [self._to_wire(op) for op in operations]}

        try:
            response = await self._client().post(endpoint, json=body)
        except httpx.TimeoutException as e:
            raise ExecutorTimeoutError(
                f"POST {endpoint} timed out: {e}", details={"endpoint": endpoint}
            ) from e
        except httpx.TransportError as e:
            raise ExecutorConnectionError(
                f"Connection error for POST {endpoint}: {e}",
                details={"endpoint": endpoint},
            ) from e

        self._raise_for_status(response, endpoint)

        try:
            payload = response.json()
        except ValueError as e:
            raise ExecutorError(
                f"Invalid JSON from POST {endpoint}: {e}",
                error_code=ErrorCodes.BATCH_ERROR,
                recoverable=True,
            ) from e

        if isinstance(payload, dict):
            payload = payload.get("results", [])

        logger.debug(
            f"POST {endpoint} returned {len(payload)} results for {len(operations)} operations"
        )
        return [self._from_wire(item) for item in payload]

    # ------------------------------------------------------------------
    # Streaming execution
    # ------------------------------------------------------------------

    def supports_streaming(self, kind: OperationKind) -> bool:
        return kind in _STREAMING_KINDS

    async def execute_streaming(self, operation: Operation) -> AsyncIterator[StreamChunk]:
        if operation.kind == OperationKind.TERMINAL:
            endpoint = self.settings.terminal_stream_endpoint
            body: dict[str, Any] = {"command": operation.payload, "stream": True}
        elif operation.kind == OperationKind.AI_REQUEST:
            endpoint = self.settings.ai_stream_endpoint
            body = {"prompt": operation.payload, "stream": True}
        else:
            raise ExecutorError(
                f"Streaming is not supported for {operation.kind.value} operations",
                error_code=ErrorCodes.UNSUPPORTED_OPERATION,
            )
        body["operationId"] = operation.id

        try:
            async with self._client().stream("POST", endpoint, json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                self._raise_for_status(response, endpoint)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if line:
                        yield self._parse_chunk(line)
        except httpx.TimeoutException as e:
            raise ExecutorTimeoutError(
                f"Stream from {endpoint} timed out: {e}", details={"endpoint": endpoint}
            ) from e
        except httpx.TransportError as e:
            raise ExecutorConnectionError(
                f"Connection error for stream {endpoint}: {e}",
                details={"endpoint": endpoint},
            ) from e

    # ------------------------------------------------------------------
    # Wire format
    # ------------------------------------------------------------------

    @staticmethod
    def _to_wire(operation: Operation) -> dict[str, Any]:
        return {
            "id": operation.id,
            "type": operation.kind.value,
            "path": operation.target,
            "content": operation.payload,
            "priority": operation.priority.value,
        }

    @staticmethod
    def _from_wire(item: dict[str, Any]) -> OperationResult:
        item = dict(item)
        # Wire durations are milliseconds
        item["duration"] = float(item.get("duration") or 0) / 1000.0
        return OperationResult.model_validate(item)

    @staticmethod
    def _parse_chunk(line: str) -> StreamChunk:
        try:
            data = json.loads(line)
        except ValueError:
            return StreamChunk(type=StreamChunkType.STDOUT, data=line)
        if not isinstance(data, dict):
            return StreamChunk(type=StreamChunkType.STDOUT, data=line)
        return StreamChunk.model_validate(data)

    @staticmethod
    def _raise_for_status(response: httpx.Response, endpoint: str) -> None:
        if response.is_success:
            return

        status = response.status_code
        recoverable = status >= 500 or status in RECOVERABLE_STATUS_CODES
        try:
            detail = response.json().get("error") or response.text
        except (ValueError, AttributeError):
            detail = response.text
        raise ExecutorError(
            f"{endpoint} returned HTTP {status}: {detail}",
            error_code=ErrorCodes.http(status),
            details={"endpoint": endpoint, "status_code": status},
            recoverable=recoverable,
            status_code=status,
        )
