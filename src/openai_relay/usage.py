"""Usage accounting for streamed chat completions.

OpenAI streams completions as server-sent events:

    data: {"choices": [{"delta": {"content": "Hel"}}]}

    data: {"choices": [{"delta": {"content": "lo"}}]}

    data: [DONE]

We read our branch of the tapped stream, pull the content fragments out of
each event, and keep a running transcript plus a character count. The count
starts at the length of the prompt messages, so one number covers both sides
of the conversation. When the stream ends, one record goes to the sink.
"""

import codecs
import json
import re
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

import logfire

from .sink import TelemetrySink

# Length of "Bearer " on the Authorization header
AUTH_SCHEME_LENGTH = 7

# Longest event record held back while waiting for its blank line
MAX_RECORD_CHARS = 1 << 20

_RECORD_SEPARATOR = "\n\n"
_NEWLINES = re.compile(r"\r\n?")


class EventStreamDecoder:
    """Turn arbitrary byte chunks into parsed ``data:`` payloads.

    Bytes go through an incremental UTF-8 decoder, so a character split across
    chunks comes out whole. Text after the last blank line is held back until
    the rest of its record arrives; only newly arrived text is scanned for the
    blank line. A record that grows past ``max_record`` characters is dropped.
    """

    def __init__(self, max_record: int = MAX_RECORD_CHARS):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._max_record = max_record
        self._pending: list[str] = []
        self._pending_size = 0
        self._overflowed = False
        self._carriage = ""

    def feed(self, chunk: bytes) -> list[Any]:
        text = self._carriage + self._decoder.decode(chunk)
        # A lone \r at the end might be the first half of \r\n
        if text.endswith("\r"):
            text, self._carriage = text[:-1], "\r"
        else:
            self._carriage = ""
        return _parse_records(self._split(_NEWLINES.sub("\n", text)))

    def close(self) -> list[Any]:
        """Flush whatever is left once the stream has ended."""
        text = _NEWLINES.sub("\n", self._carriage + self._decoder.decode(b"", final=True))
        self._carriage = ""
        records = self._split(text)
        records.append(self._take_pending())
        return _parse_records(records)

    def _split(self, text: str) -> list[str | None]:
        """Complete records in ``text``, joined onto the held-back one."""
        records = []
        # The blank line can straddle what we hold and what just arrived
        if self._pending and self._pending[-1].endswith("\n") and text.startswith("\n"):
            records.append(self._take_pending())
            text = text[1:]

        *complete, rest = text.split(_RECORD_SEPARATOR)
        if complete:
            head = self._take_pending()
            records.append(None if head is None else head + complete[0])
            records.extend(complete[1:])
        if rest:
            self._hold(rest)
        return records

    def _hold(self, text: str) -> None:
        if self._overflowed:
            # Only the last character matters now, for spotting the blank line
            self._pending = [text[-1]]
            return
        self._pending.append(text)
        self._pending_size += len(text)
        if self._pending_size > self._max_record:
            logfire.warning("Dropping an event record over {limit} characters", limit=self._max_record)
            self._overflowed = True
            self._pending = [text[-1]]

    def _take_pending(self) -> str | None:
        """The held-back record, or None if it was dropped."""
        record = None if self._overflowed else "".join(self._pending)
        self._pending = []
        self._pending_size = 0
        self._overflowed = False
        return record


def _parse_records(records: list[str | None]) -> list[Any]:
    parsed = (_parse_record(record) for record in records if record is not None)
    return [payload for payload in parsed if payload is not None]


def _parse_record(record: str) -> Any:
    """JSON payload of one event record, or None if there isn't a usable one."""
    data = [
        line[5:].removeprefix(" ")
        for line in record.split("\n")
        if line.startswith("data:")
    ]
    if not data:
        return None
    try:
        return json.loads("\n".join(data))
    except json.JSONDecodeError:
        # Partial records, [DONE], keep-alives
        return None


def content_fragment(event: Any) -> str | None:
    """The incremental text of a chat completion chunk, if it has any."""
    try:
        content = event["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if isinstance(content, str) and content:
        return content
    return None


def prompt_length(body: dict[str, Any]) -> int:
    """Total characters across the request's message contents.

    Plain string content counts as is; multi-part content counts its text parts.
    """
    messages = body.get("messages")
    if not isinstance(messages, list):
        return 0

    total = 0
    for message in messages:
        if not isinstance(message, dict):
            continue
        content = message.get("content")
        if isinstance(content, str):
            total += len(content)
        elif isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    total += len(part["text"])
    return total


@dataclass
class UsageRecord:
    """One request's worth of usage, as it goes to the dataset."""

    key: str | None
    tokens: int
    request: dict[str, Any] = field(default_factory=dict)
    response: str = ""

    def to_event(self) -> dict[str, Any]:
        # Request fields sit between key/tokens and response, same as ever
        return {"key": self.key, "tokens": self.tokens, **self.request, "response": self.response}


class UsageAccumulator:
    """Running count and transcript for one stream."""

    def __init__(self, record: UsageRecord):
        self.record = record
        self.decoder = EventStreamDecoder()
        self._parts: list[str] = []
        self.done = False

    @classmethod
    def for_request(cls, authorization: str | None, body: dict[str, Any]) -> "UsageAccumulator":
        key = authorization[AUTH_SCHEME_LENGTH:] if authorization else None
        return cls(UsageRecord(key=key, tokens=prompt_length(body), request=body))

    def _consume(self, events: list[Any]) -> None:
        for event in events:
            fragment = content_fragment(event)
            if fragment:
                self._parts.append(fragment)
                self.record.tokens += len(fragment)

    def feed(self, chunk: bytes) -> None:
        self._consume(self.decoder.feed(chunk))

    def finish(self) -> UsageRecord:
        """Flush the decoder and hand back the final record. Only once."""
        if self.done:
            raise RuntimeError("usage already finalized")
        self._consume(self.decoder.close())
        self.record.response = "".join(self._parts)
        self.done = True
        return self.record


async def track_usage(
    stream: AsyncIterator[bytes],
    accumulator: UsageAccumulator,
    sink: TelemetrySink,
    dataset: str,
) -> UsageRecord | None:
    """Read our branch to the end, then ingest and flush one record.

    Runs in the background. Nothing here may reach the caller, so failures are
    logged and the record is dropped.
    """
    with logfire.span("usage.track", dataset=dataset) as span:
        try:
            async with aclosing(stream):
                async for chunk in stream:
                    accumulator.feed(chunk)
        except Exception as e:
            logfire.warning("Usage stream ended early, dropping record: {error}", error=str(e))
            return None

        record = accumulator.finish()
        span.set_attribute("tokens", record.tokens)
        span.set_attribute("response_length", len(record.response))

        try:
            await sink.ingest(dataset, [record.to_event()])
            await sink.flush()
        except Exception:
            logfire.exception("Failed to deliver usage record")
            return None

        logfire.info("Usage recorded: {tokens} tokens", tokens=record.tokens)
        return record
