"""Pixel Agents server: FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pixel_agents import config
from pixel_agents.broadcast import EventHub
from pixel_agents.node_registry import NodeRegistry
from pixel_agents.observability import initialize as initialize_observability, shutdown as shutdown_observability
from pixel_agents.routers.agents import agents_router, events_router, nodes_router
from pixel_agents.services.launcher import SessionLauncher
from pixel_agents.services.supervisor import AgentSupervisor
from pixel_agents.watchers.filesystem import build_filesystem
from pixel_agents.watchers.remote import RemoteShell

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("pixel_agents")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Pixel Agents server starting up")
    initialize_observability(app)

    # 1. Nodes
    registry = NodeRegistry(config.CLUSTER_FILE)
    logger.info(f"Cluster nodes: {registry.describe()}")

    # 2. Per-node filesystem access
    shell = RemoteShell()
    filesystems = {node.name: build_filesystem(node, shell) for node in registry.list_nodes()}

    # 3. Event fan-out + supervisor
    hub = EventHub()
    supervisor = AgentSupervisor(
        registry,
        filesystems,
        hub.publish,
        launcher=SessionLauncher(shell),
    )
    app.state.event_hub = hub
    app.state.supervisor = supervisor

    # 4. Scan loops, tailers and the stale reaper
    await supervisor.start()

    yield

    logger.info("Pixel Agents server shutting down")
    await supervisor.stop()
    hub.close()
    shutdown_observability(app)


app = FastAPI(
    title="Pixel Agents API",
    description="Live activity of Claude Code agents across local and remote nodes",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the Vite dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(nodes_router)
app.include_router(agents_router)
app.include_router(events_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    supervisor = getattr(app.state, "supervisor", None)
    hub = getattr(app.state, "event_hub", None)
    return {
        "status": "ok",
        "supervisor": "running" if supervisor and supervisor.is_running else "stopped",
        "agents": len(supervisor.agents()) if supervisor else 0,
        "subscribers": hub.subscriber_count if hub else 0,
    }
