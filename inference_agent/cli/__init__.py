"""Entry points for the command-line interface.

``run`` starts the agent; the other commands query the external services the
agent talks to, using the same configuration.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import signal
from pathlib import Path
from typing import Any, Dict

import httpx
import typer

from .. import health
from ..agent import build_agent, build_chain, check_chain
from ..clients import BrokerComputeClient, ChainMintClient, DAAuditClient, NodeStorageClient
from ..auth import SessionAuthenticator
from ..config import load_config
from ..errors import AgentError, ConfigError, TransportError
from ..metrics import start_metrics_server
from ..transport import AsyncBaseTransport, get_client

logger = logging.getLogger(__name__)

app = typer.Typer(help="Run and inspect the inference agent")


def _import_object(path: str) -> Any:
    module, attr = path.split(":")
    mod = importlib.import_module(module)
    return getattr(mod, attr)


@app.callback()
def _global_options(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", help="YAML configuration file (overrides INFERENCE_CONFIG)"
    ),
    metrics_port: int | None = typer.Option(
        None,
        "--metrics-port",
        help="Expose Prometheus metrics on PORT before executing the command",
    ),
    nats_conn: str | None = typer.Option(
        None,
        "--nats-conn",
        help="module:attr path to an existing NATS connection object",
    ),
) -> None:
    """Handle global options for the CLI."""

    ctx.obj = {
        "config": str(config) if config else None,
        "nats_conn": nats_conn,
        "metrics_port": metrics_port,
    }
    if metrics_port is not None:
        start_metrics_server(metrics_port)


def _config(ctx: typer.Context) -> Dict[str, Any]:
    try:
        cfg = load_config(ctx.obj.get("config"))
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    logging.basicConfig(
        level=cfg["log_level"].upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return cfg


async def _connect_transport(cfg: Dict[str, Any], nats_conn: str | None) -> AsyncBaseTransport:
    if cfg["transport"] == "memory":
        return get_client("memory")
    if nats_conn:
        connection = _import_object(nats_conn)
    else:
        import nats

        try:
            connection = await nats.connect(cfg["nats_url"])
        except Exception as exc:
            raise TransportError(f"cannot connect to {cfg['nats_url']}: {exc}") from exc
    return get_client("nats", connection=connection, jetstream=cfg["nats_jetstream"])


async def _run_agent(cfg: Dict[str, Any], nats_conn: str | None) -> None:
    transport = await _connect_transport(cfg, nats_conn)
    try:
        async with httpx.AsyncClient(timeout=cfg["request_timeout"]) as client:
            chain = build_chain(cfg, client)
            agent = build_agent(cfg, transport, client, chain=chain)
            if chain is not None:
                await check_chain(chain, cfg["chain_id"])

            main = asyncio.current_task()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, main.cancel)

            health_server = None
            if cfg.get("health_port"):
                health_server = asyncio.create_task(health.serve(port=cfg["health_port"]))
            health.attach_agent(agent)
            try:
                await agent.run()
            except asyncio.CancelledError:
                logger.info("shutdown requested, agent stopped")
            finally:
                health.attach_agent(None)
                if health_server is not None:
                    health_server.cancel()
                    await asyncio.gather(health_server, return_exceptions=True)
    finally:
        await transport.close()


@app.command("run")
def run_agent(ctx: typer.Context) -> None:
    """Process task assignments until interrupted."""

    cfg = _config(ctx)
    if cfg.get("metrics_port") and ctx.obj.get("metrics_port") is None:
        start_metrics_server(cfg["metrics_port"])
    try:
        asyncio.run(_run_agent(cfg, ctx.obj.get("nats_conn")))
    except AgentError as exc:
        logger.error("agent stopped: %s", exc)
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _run_query(coro) -> Any:
    try:
        return asyncio.run(coro)
    except AgentError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


@app.command("models")
def list_models(ctx: typer.Context) -> None:
    """List the compute providers currently discoverable."""

    cfg = _config(ctx)
    if not cfg.get("private_key"):
        typer.echo("error: INFERENCE_PRIVATE_KEY is required", err=True)
        raise typer.Exit(code=1)

    async def _list():
        async with httpx.AsyncClient(timeout=cfg["request_timeout"]) as client:
            compute = BrokerComputeClient(
                client,
                SessionAuthenticator(cfg["private_key"]),
                endpoint=cfg.get("compute_endpoint"),
                chain=build_chain(cfg, client),
                serving_contract=cfg.get("serving_contract"),
            )
            return await compute.list_models()

    for record in _run_query(_list()):
        typer.echo(f"{record.model}\t{record.url}\t{record.provider}\t{record.name}")


@app.command("verify")
def verify_submission(ctx: typer.Context, submission_id: str) -> None:
    """Check that an audit submission is available."""

    cfg = _config(ctx)
    if not cfg.get("audit_endpoint"):
        typer.echo("error: INFERENCE_AUDIT_ENDPOINT is not configured", err=True)
        raise typer.Exit(code=1)

    async def _verify():
        async with httpx.AsyncClient(timeout=cfg["request_timeout"]) as client:
            audit = DAAuditClient(client, cfg["audit_endpoint"], cfg["audit_namespace"])
            return await audit.verify(submission_id)

    available = _run_query(_verify())
    typer.echo(f"{submission_id}\t{'available' if available else 'unavailable'}")
    if not available:
        raise typer.Exit(code=2)


@app.command("token-status")
def token_status(ctx: typer.Context, token_id: str) -> None:
    """Show the owner of a provenance token."""

    cfg = _config(ctx)
    if not cfg.get("token_contract"):
        typer.echo("error: INFERENCE_TOKEN_CONTRACT is not configured", err=True)
        raise typer.Exit(code=1)

    async def _status():
        async with httpx.AsyncClient(timeout=cfg["request_timeout"]) as client:
            minter = ChainMintClient(
                build_chain(cfg, client),
                cfg["token_contract"],
                key=cfg["encryption_key_bytes"],
                key_id=cfg["encryption_key_id"],
            )
            return await minter.get_status(token_id)

    status = _run_query(_status())
    typer.echo(f"{status.token_id}\towner={status.owner}")


@app.command("download")
def download(
    ctx: typer.Context,
    content_id: str,
    output: Path | None = typer.Option(None, "--output", "-o", help="Write content to FILE"),
) -> None:
    """Fetch stored content by its content id."""

    cfg = _config(ctx)

    async def _download():
        async with httpx.AsyncClient(timeout=cfg["request_timeout"]) as client:
            storage = NodeStorageClient(client, endpoint=cfg.get("storage_endpoint"))
            return await storage.download(content_id)

    data = _run_query(_download())
    if output is not None:
        output.write_bytes(data)
        typer.echo(f"wrote {len(data)} bytes to {output}")
    else:
        typer.echo(data.decode("utf-8", errors="replace"))


def main() -> None:  # pragma: no cover - console entry point
    app()


__all__ = ["app", "main"]
