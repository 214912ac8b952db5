"""openai-relay command line.

    openai-relay serve --port 8080
    openai-relay replay capture.sse --request body.json --chunk-size 7

``replay`` runs a captured event stream through the usage accounting and
prints the record that would have been ingested. No upstream, no Axiom.
"""

import json
from pathlib import Path

import typer
import uvicorn

from .config import Settings
from .usage import UsageAccumulator

app = typer.Typer(help="Transparent proxy for OpenAI-compatible chat APIs.")


@app.command()
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (default: $HOST or 0.0.0.0)"),
    port: int = typer.Option(None, "--port", "-p", help="Port (default: $PORT or 8080)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the relay server."""
    settings = Settings.from_env()
    uvicorn.run(
        "openai_relay.app:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@app.command()
def replay(
    stream: Path = typer.Argument(..., exists=True, dir_okay=False, help="Captured event-stream body"),
    request: Path = typer.Option(None, "--request", "-r", exists=True, dir_okay=False, help="Request body JSON"),
    key: str = typer.Option("Bearer sk-replay", "--key", "-k", help="Authorization header value"),
    chunk_size: int = typer.Option(4096, "--chunk-size", "-c", min=1, help="Bytes per simulated chunk"),
    pretty: bool = typer.Option(False, "--pretty", help="Pretty-print JSON output"),
):
    """Compute the usage record for a captured stream."""
    body = json.loads(request.read_text()) if request else {}
    if not isinstance(body, dict):
        typer.echo("Error: request body must be a JSON object", err=True)
        raise typer.Exit(1)

    accumulator = UsageAccumulator.for_request(key, body)
    data = stream.read_bytes()
    for start in range(0, len(data), chunk_size):
        accumulator.feed(data[start:start + chunk_size])
    record = accumulator.finish()

    typer.echo(json.dumps(record.to_event(), indent=2 if pretty else None, ensure_ascii=False))


def main():
    app()
