import json
import os
from typing import Any

import logfire
import pytest

# Keep logfire local while testing
os.environ.setdefault("LOGFIRE_SEND_TO_LOGFIRE", "false")
os.environ.setdefault("LOGFIRE_CONSOLE", "false")
logfire.configure(send_to_logfire=False, console=False)

from openai_relay.config import Settings  # noqa: E402


class FakeSink:
    """In-memory stand-in for the telemetry backend."""

    def __init__(self) -> None:
        self.ingested: list[tuple[str, list[dict[str, Any]]]] = []
        self.flushes = 0

    async def ingest(self, dataset: str, records: list[dict[str, Any]]) -> None:
        self.ingested.append((dataset, list(records)))

    async def flush(self) -> None:
        self.flushes += 1

    @property
    def records(self) -> list[dict[str, Any]]:
        return [record for _, records in self.ingested for record in records]


def sse_event(content: str | None = None, **extra: Any) -> bytes:
    delta = {} if content is None else {"content": content}
    payload = {"choices": [{"index": 0, "delta": delta}], **extra}
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode()


def sse_stream(*fragments: str) -> bytes:
    return b"".join(sse_event(fragment) for fragment in fragments) + b"data: [DONE]\n\n"


async def iter_chunks(*chunks: bytes):
    for chunk in chunks:
        yield chunk


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def settings() -> Settings:
    return Settings(axiom_token="xaat-test", axiom_org_id="org-test")
