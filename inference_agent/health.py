"""HTTP health endpoint for the running agent."""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

from fastapi import FastAPI, HTTPException
import uvicorn

from .messages import HealthStatus

if TYPE_CHECKING:  # pragma: no cover
    from .agent import InferenceAgent

app = FastAPI()

_agent: Optional["InferenceAgent"] = None


def attach_agent(agent: Optional["InferenceAgent"]) -> None:
    """Serve health information for ``agent``."""
    global _agent
    _agent = agent


@app.get("/health", response_model=HealthStatus)
async def health() -> HealthStatus:
    if _agent is None:
        raise HTTPException(503, "agent not running")
    return _agent.health()


@app.get("/ready")
async def ready():
    return {"ready": _agent is not None}


async def serve(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Run the health server inside the current event loop."""
    config = uvicorn.Config(app, host=host, port=port, log_level="warning")
    server = uvicorn.Server(config)
    await server.serve()
