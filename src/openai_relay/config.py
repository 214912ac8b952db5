"""Runtime configuration, read from the environment."""

import os
from collections.abc import Mapping
from dataclasses import dataclass

# Where we forward to when nothing else is configured
OPENAI_URL = "api.openai.com"
DEFAULT_PROTOCOL = "https"

# Upper bound on one upstream exchange, headers and body included
DEADLINE_SECONDS = 10 * 60

# How long shutdown waits for usage records still being written
SHUTDOWN_SECONDS = 30

DEFAULT_DATASET = "gpt"
AXIOM_URL = "https://api.axiom.co"


@dataclass(frozen=True)
class Settings:
    """Everything the relay needs to know about its surroundings."""

    base_url: str = OPENAI_URL
    protocol: str = DEFAULT_PROTOCOL
    openai_org_id: str | None = None
    disable_gpt4: bool = False
    axiom_token: str | None = None
    axiom_org_id: str | None = None
    axiom_dataset: str = DEFAULT_DATASET
    axiom_url: str = AXIOM_URL
    deadline_seconds: float = DEADLINE_SECONDS
    shutdown_seconds: float = SHUTDOWN_SECONDS
    host: str = "0.0.0.0"
    port: int = 8080

    @property
    def telemetry_enabled(self) -> bool:
        return bool(self.axiom_token and self.axiom_org_id)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from environment variables.

        Empty values count as unset, so ``BASE_URL=`` still falls back to the
        OpenAI host. ``DISABLE_GPT4`` is on for any non-empty value.
        """
        env = os.environ if environ is None else environ
        return cls(
            base_url=env.get("BASE_URL") or OPENAI_URL,
            protocol=env.get("PROTOCOL") or DEFAULT_PROTOCOL,
            openai_org_id=env.get("OPENAI_ORG_ID") or None,
            disable_gpt4=bool(env.get("DISABLE_GPT4")),
            axiom_token=env.get("AXIOM_TOKEN") or None,
            axiom_org_id=env.get("AXIOM_ORG_ID") or None,
            axiom_dataset=env.get("AXIOM_DATASET") or DEFAULT_DATASET,
            axiom_url=env.get("AXIOM_URL") or AXIOM_URL,
            host=env.get("HOST") or "0.0.0.0",
            port=int(env.get("PORT") or 8080),
        )
