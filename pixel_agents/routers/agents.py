"""API routers for nodes, tracked agents and the live status stream."""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect

from pixel_agents.broadcast import EventHub
from pixel_agents.models import AgentSnapshot, ClusterNode, LaunchRequest
from pixel_agents.node_registry import UnknownNodeError
from pixel_agents.services.launcher import LaunchError
from pixel_agents.services.supervisor import AgentSupervisor

logger = logging.getLogger("pixel_agents.api")

nodes_router = APIRouter(prefix="/api/nodes", tags=["nodes"])
agents_router = APIRouter(prefix="/api/agents", tags=["agents"])
events_router = APIRouter(tags=["events"])


def _get_supervisor(request: Request) -> AgentSupervisor:
    supervisor = getattr(request.app.state, "supervisor", None)
    if not supervisor:
        raise HTTPException(status_code=503, detail="Supervisor not initialized")
    return supervisor


@nodes_router.get("", response_model=list[ClusterNode])
def list_nodes(request: Request):
    """List the configured cluster nodes."""
    return _get_supervisor(request).registry.list_nodes()


@agents_router.get("", response_model=list[AgentSnapshot])
def list_agents(request: Request):
    """List tracked agents with their current activity."""
    return _get_supervisor(request).snapshot()


@agents_router.get("/{agent_id}", response_model=AgentSnapshot)
def get_agent(request: Request, agent_id: int):
    agent = _get_supervisor(request).get_agent(agent_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    return agent.to_snapshot()


@agents_router.post("", response_model=AgentSnapshot)
async def launch_agent(request: Request, body: LaunchRequest):
    """Start a new Claude Code session and track it as soon as it writes."""
    supervisor = _get_supervisor(request)
    try:
        return await supervisor.launch_session(body.node, body.cwd)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=f"Unknown node: {e.args[0] if e.args else body.node}")
    except LaunchError as e:
        raise HTTPException(status_code=500, detail=str(e))


@agents_router.delete("/{agent_id}")
async def close_agent(request: Request, agent_id: int):
    """Stop tracking an agent."""
    closed = await _get_supervisor(request).close_agent(agent_id)
    if not closed:
        raise HTTPException(status_code=404, detail=f"Agent {agent_id} not found")
    return {"status": "ok", "id": agent_id}


@events_router.websocket("/ws")
async def stream_events(websocket: WebSocket) -> None:
    """Send the current state, then every status event as it happens."""
    supervisor: AgentSupervisor = websocket.app.state.supervisor
    hub: EventHub = websocket.app.state.event_hub
    listener = hub.subscribe()
    await websocket.accept()
    logger.debug("Status websocket connected")

    try:
        # Subscribed before the replay, so nothing falls between the two.
        for event in supervisor.replay_events():
            await websocket.send_json(event.model_dump())

        async def forward() -> None:
            while True:
                event = await listener.get()
                if event is None:
                    return
                await websocket.send_json(event.model_dump())

        async def drain_input() -> None:
            while True:
                await websocket.receive_text()

        sender = asyncio.create_task(forward())
        receiver = asyncio.create_task(drain_input())
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(listener)
        logger.debug("Status websocket disconnected")
