"""openai-relay - a transparent proxy in front of an OpenAI-compatible API.

Requests under ``/api/openai/`` are retargeted at the configured upstream and
relayed back as they stream. Optionally, completions are tapped on the way
through to count usage for an Axiom dataset, and requests for a disallowed
model are refused before they leave.
"""

__version__ = "0.1.0"
