"""Model policy - refuse requests for a disallowed model before they go out."""

from typing import Any

import logfire
from fastapi.responses import JSONResponse

# Any model name containing this is refused while the gate is on
DISALLOWED_MODEL = "gpt-4"

REJECTION_STATUS = 403


def rejection(marker: str = DISALLOWED_MODEL) -> JSONResponse:
    """The fixed response sent instead of forwarding."""
    return JSONResponse(
        {"error": True, "message": f"you are not allowed to use {marker} model"},
        status_code=REJECTION_STATUS,
    )


def check_model(
    body: Any,
    *,
    enabled: bool,
    marker: str = DISALLOWED_MODEL,
) -> JSONResponse | None:
    """Return a rejection if the body asks for the disallowed model.

    ``body`` is the parsed JSON of a write request, or None. Anything we can't
    read a model name out of is let through: a body that isn't there, isn't
    JSON, or isn't an object is not our business here.
    """
    if not enabled:
        return None

    try:
        model = body.get("model") or ""
        if marker in model:
            logfire.warning("Refusing request for {model}", model=model)
            return rejection(marker)
    except (AttributeError, TypeError) as e:
        logfire.warning("Model policy check skipped: {error}", error=str(e))

    return None
