"""Event interpreter: classify raw records into typed stream effects.

A record carries ``data:`` lines whose joined value is either a sentinel
(``[DONE]`` / ``[ERROR]``) or a JSON object with any of the optional
fields ``streamingId``, ``content``, ``savedMessageId`` and ``error``.

Malformed records are logged and skipped; they never end the stream.
Once a terminal effect has been produced, later records are ignored.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from src.streaming.events import (
    ContentDelta,
    IdentifierReassigned,
    MessagePersisted,
    StreamDone,
    StreamEffect,
    StreamErrored,
    is_terminal,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterable

logger = logging.getLogger(__name__)

DATA_FIELD = "data"
DONE_SENTINEL = "[DONE]"
ERROR_SENTINEL = "[ERROR]"
DEFAULT_ERROR_MESSAGE = "Server reported an error"

_LOG_PREVIEW_CHARS = 200


class MalformedRecordError(ValueError):
    """A record's payload could not be parsed."""


def extract_payload(record: str) -> str | None:
    """Return the joined ``data`` value of a record, or None if it has none.

    Follows the event-stream line rules: ``field: value`` with one optional
    space after the colon, comment lines start with ``:``, and several
    ``data`` lines are joined with a newline. Other fields are ignored.
    """
    data_lines: list[str] = []
    for line in record.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, sep, value = line.partition(":")
        if not sep:
            # A bare field name carries an empty value
            field, value = line, ""
        if field != DATA_FIELD:
            continue
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)

    if not data_lines:
        return None
    return "\n".join(data_lines)


def _string_field(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        logger.warning("Ignoring non-string '%s' field in stream payload: %r", key, value)
        return None
    return value or None


def parse_payload(payload: str) -> list[StreamEffect]:
    """Turn one payload value into effects.

    Raises:
        MalformedRecordError: If the payload is neither a sentinel nor a JSON object.
    """
    stripped = payload.strip()
    if stripped == DONE_SENTINEL:
        return [StreamDone()]
    if stripped == ERROR_SENTINEL:
        return [StreamErrored(message=DEFAULT_ERROR_MESSAGE)]

    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedRecordError(f"Invalid JSON payload: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedRecordError(f"Expected a JSON object, got {type(parsed).__name__}")

    effects: list[StreamEffect] = []
    streaming_id = _string_field(parsed, "streamingId")
    if streaming_id:
        effects.append(IdentifierReassigned(streaming_id=streaming_id))
    content = _string_field(parsed, "content")
    if content:
        effects.append(ContentDelta(content=content))
    saved_id = _string_field(parsed, "savedMessageId")
    if saved_id:
        effects.append(MessagePersisted(message_id=saved_id))
    error = _string_field(parsed, "error")
    if error:
        effects.append(StreamErrored(message=error))
    return effects


class EventInterpreter:
    """Stateful interpreter for one stream.

    Tracks whether a terminal effect has been seen and how many records
    were skipped as malformed.
    """

    def __init__(self) -> None:
        self.finished = False
        self.skipped_records = 0

    def interpret(self, record: str) -> list[StreamEffect]:
        """Interpret one raw record.

        Returns an empty list for records without data, for malformed
        records, and for anything arriving after a terminal effect.
        """
        if self.finished:
            logger.debug("Ignoring record after terminal effect: %s", record[:_LOG_PREVIEW_CHARS])
            return []

        payload = extract_payload(record)
        if payload is None:
            return []

        try:
            effects = parse_payload(payload)
        except MalformedRecordError as e:
            self.skipped_records += 1
            logger.warning(
                "Skipping malformed stream record (%s): %s",
                e,
                payload[:_LOG_PREVIEW_CHARS],
            )
            return []

        for index, effect in enumerate(effects):
            if is_terminal(effect):
                self.finished = True
                return effects[: index + 1]
        return effects


async def interpret_stream(
    records: AsyncIterable[str],
    interpreter: EventInterpreter | None = None,
) -> AsyncGenerator[StreamEffect, None]:
    """Yield effects for each record until a terminal effect is produced.

    Args:
        records: Raw records in arrival order (see ``decode_frames``).
        interpreter: Optional interpreter instance, to inspect its counters.

    Yields:
        Stream effects in order. The last one is terminal unless the
        records ran out first.
    """
    interpreter = interpreter or EventInterpreter()
    async for record in records:
        for effect in interpreter.interpret(record):
            yield effect
        if interpreter.finished:
            return
