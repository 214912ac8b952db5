"""Where usage records go.

The relay only needs two things from a telemetry backend: take some records
for a dataset, and push out whatever is buffered. ``AxiomSink`` does that over
Axiom's HTTP ingest API; tests swap in their own.
"""

from typing import Any, Protocol

import httpx

from .config import AXIOM_URL


class TelemetrySink(Protocol):
    """The contract any usage backend must fulfill."""

    async def ingest(self, dataset: str, records: list[dict[str, Any]]) -> None:
        """Queue records for a dataset."""
        ...

    async def flush(self) -> None:
        """Deliver everything queued so far."""
        ...


class AxiomSink:
    """Buffers records per dataset and ships them to Axiom on flush.

    Records are taken off the buffer before sending. If the POST fails they
    are gone; the error goes to whoever called ``flush``.
    """

    def __init__(
        self,
        token: str,
        org_id: str,
        *,
        url: str = AXIOM_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._pending: dict[str, list[dict[str, Any]]] = {}
        self.client = httpx.AsyncClient(
            base_url=url,
            transport=transport,
            timeout=httpx.Timeout(15.0, connect=5.0),
            headers={
                "Authorization": f"Bearer {token}",
                "X-Axiom-Org-Id": org_id,
            },
        )

    async def ingest(self, dataset: str, records: list[dict[str, Any]]) -> None:
        self._pending.setdefault(dataset, []).extend(records)

    async def flush(self) -> None:
        pending, self._pending = self._pending, {}
        for dataset, records in pending.items():
            if not records:
                continue
            response = await self.client.post(f"/v1/datasets/{dataset}/ingest", json=records)
            response.raise_for_status()

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
