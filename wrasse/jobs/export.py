"""Resumable export of a paginated result stream to a local file."""

import json
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

import structlog

from wrasse.errors import ExportIncompleteError
from wrasse.jobs.models import PaginationCursor, StreamRecord

logger = structlog.get_logger(__name__)

# fetch_page(marker) -> one page of (key_or_object, record) pairs after marker
FetchPage = Callable[[Optional[str]], AsyncIterator[tuple[Any, StreamRecord]]]


def key_line(item: Any) -> str:
    return str(item)


def json_line(item: Any) -> str:
    return json.dumps(item, separators=(",", ":"))


async def export_stream(
    fetch_page: FetchPage,
    path: Path,
    *,
    stream: str = "stream",
    format_line: Callable[[Any], str] = key_line,
    max_stalled_pages: int = 3,
) -> PaginationCursor:
    """
    Walk a result stream to completion, one line per record.

    The first record carries the stream's total count. Pages are refetched
    from the last seen id until that many records were written. The page
    boundary record may be delivered twice; a record whose id equals the
    last seen id is skipped. The file is truncated first, so a rerun
    rewrites it rather than appending.

    Args:
        fetch_page: Returns one page of records after the given marker
        path: Local file to (over)write
        stream: Stream name, for logs and errors
        format_line: Renders one item as a line (without newline)
        max_stalled_pages: Consecutive pages with nothing new tolerated
            before the stream is declared incomplete

    Returns:
        The final cursor

    Raises:
        ExportIncompleteError: The stream stopped short of its count
    """
    log = logger.bind(stream=stream)
    cursor = PaginationCursor()

    with open(path, "w", encoding="utf-8") as fh:
        while True:
            added = 0
            async for item, record in fetch_page(cursor.last_seen_id):
                if record.id == cursor.last_seen_id:
                    continue
                fh.write(format_line(item) + "\n")
                cursor.advance(record)
                added += 1

            if cursor.complete:
                break

            if added:
                cursor.stalled_pages = 0
                continue

            cursor.stalled_pages += 1
            log.debug(
                "export_page_stalled",
                seen=cursor.seen_count,
                expected=cursor.expected_count,
                stalled_pages=cursor.stalled_pages,
            )
            if cursor.stalled_pages >= max_stalled_pages:
                raise ExportIncompleteError(stream, cursor.seen_count, cursor.expected_count)

    log.debug("export_done", records=cursor.seen_count, path=str(path))
    return cursor
