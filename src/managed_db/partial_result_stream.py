"""Reassembly and transparent resumption of streamed query results.

The backend splits a result set into partial results. Each carries a flat
list of values (row boundaries are implied by the column count), may end
with a value that continues in the next message (``chunkedValue``), and may
carry a ``resumeToken``. Restarting the call with the last token replays
everything after it, so rows are held back until a token covers them.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from typing import Any

from managed_db.codec import decode_row
from managed_db.errors import StreamFatalError, is_resumable
from managed_db.retry import BackoffPolicy
from managed_db.row import Row
from managed_db.transport.base import close_stream

logger = logging.getLogger(__name__)

MakeRequest = Callable[[str | None], AsyncIterator[dict[str, Any]]]

DEFAULT_MAX_RESUME_RETRIES = 20
DEFAULT_MAX_BUFFERED_ROWS = 1024

_NO_CHUNK = object()


def merge_chunk(head: Any, tail: Any) -> Any:
    """Join a value split across two partial results.

    Strings concatenate. Lists concatenate, except that when the last
    element of ``head`` and the first of ``tail`` are both strings or both
    lists, those two are merged recursively first.
    """
    if isinstance(head, str) and isinstance(tail, str):
        return head + tail
    if isinstance(head, list) and isinstance(tail, list):
        if not head or not tail:
            return head + tail
        last, first = head[-1], tail[0]
        if (isinstance(last, str) and isinstance(first, str)) or (
            isinstance(last, list) and isinstance(first, list)
        ):
            return [*head[:-1], merge_chunk(last, first), *tail[1:]]
        return head + tail
    raise StreamFatalError(
        f"Cannot merge chunked values of type {type(head).__name__} and {type(tail).__name__}"
    )


class PartialResultStream:
    """Lazy async iterator over the rows of one streaming query.

    ``make_request(resume_token)`` starts (or restarts) the underlying call.
    Resumable failures are retried from the last token without the consumer
    noticing; any other failure is raised once and ends the stream. The
    stream cannot be iterated again after it finishes or fails.
    """

    def __init__(
        self,
        make_request: MakeRequest,
        *,
        max_resume_retries: int = DEFAULT_MAX_RESUME_RETRIES,
        max_buffered_rows: int = DEFAULT_MAX_BUFFERED_ROWS,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        """Initialize with the request factory and resumption limits."""
        self._make_request = make_request
        self._max_resume_retries = max_resume_retries
        self._max_buffered_rows = max_buffered_rows
        self._backoff = backoff or BackoffPolicy()
        self._rows: AsyncGenerator[Row, None] | None = None
        self._closed = False
        self.metadata: dict[str, Any] | None = None
        self.fields: list[dict[str, Any]] = []
        self.stats: dict[str, Any] | None = None
        self.resume_token: str | None = None
        self.resume_count = 0

    def __aiter__(self) -> "PartialResultStream":
        return self

    async def __anext__(self) -> Row:
        if self._rows is None:
            if self._closed:
                raise StopAsyncIteration
            self._rows = self._iterate()
        return await self._rows.__anext__()

    async def aclose(self) -> None:
        """Stop the stream, closing the underlying call and any pending resume."""
        self._closed = True
        if self._rows is not None:
            await self._rows.aclose()

    async def _iterate(self) -> AsyncGenerator[Row, None]:
        pending: list[Row] = []
        values: list[Any] = []
        chunk: Any = _NO_CHUNK
        # state at the last resume token, restored on resume
        checkpoint: tuple[list[Any], Any] = ([], _NO_CHUNK)
        resumable = True
        emitted = False
        retries = 0

        while True:
            source = self._make_request(self.resume_token)
            try:
                async for partial in source:
                    if self.metadata is None and "metadata" in partial:
                        self.metadata = partial["metadata"]
                        self.fields = self.metadata.get("rowType", {}).get("fields", [])
                    if "stats" in partial:
                        self.stats = partial["stats"]

                    incoming = list(partial.get("values", []))
                    if chunk is not _NO_CHUNK and incoming:
                        incoming[0] = merge_chunk(chunk, incoming[0])
                        chunk = _NO_CHUNK
                    if partial.get("chunkedValue") and incoming:
                        chunk = incoming.pop()

                    if self.fields:
                        for value in incoming:
                            values.append(value)
                            if len(values) == len(self.fields):
                                pending.append(decode_row(self.fields, values))
                                values = []

                    token = partial.get("resumeToken")
                    if token:
                        self.resume_token = token
                        resumable = True
                        checkpoint = (list(values), chunk)
                        retries = 0
                    elif len(pending) < self._max_buffered_rows:
                        continue
                    else:
                        # rows released without a token cannot be replayed safely
                        resumable = False

                    for row in pending:
                        emitted = True
                        yield row
                    pending = []
                break
            except Exception as err:
                if not resumable or not is_resumable(err):
                    raise
                if self.resume_token is None and emitted:
                    raise
                retries += 1
                if retries > self._max_resume_retries:
                    raise StreamFatalError(
                        f"Stream could not be resumed after {self._max_resume_retries} attempts"
                    ) from err
                self.resume_count += 1
                pending = []
                values, chunk = list(checkpoint[0]), checkpoint[1]
                delay = self._backoff.delay(retries)
                logger.debug(
                    "Resuming stream after %s (attempt %d, token=%r) in %.3fs",
                    err,
                    retries,
                    self.resume_token,
                    delay,
                )
                await asyncio.sleep(delay)
            finally:
                await close_stream(source)

        if values or chunk is not _NO_CHUNK:
            raise StreamFatalError("Stream ended in the middle of a row")
        for row in pending:
            yield row
