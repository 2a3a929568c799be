"""Pydantic models matching the frontend TypeScript message types."""
from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ── Cluster models ──────────────────────────────────────────────────

class ClusterNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    address: str = "localhost"
    isLocal: bool = True


# ── Status events pushed to subscribers ─────────────────────────────

ActivityState = Literal["active", "waiting"]


class AgentCreated(BaseModel):
    type: Literal["agentCreated"] = "agentCreated"
    id: int
    node: str
    projectKey: str
    projectName: str = ""


class AgentRemoved(BaseModel):
    type: Literal["agentRemoved"] = "agentRemoved"
    id: int


class OperationStarted(BaseModel):
    type: Literal["operationStarted"] = "operationStarted"
    id: int
    operationId: str
    label: str


class OperationCompleted(BaseModel):
    type: Literal["operationCompleted"] = "operationCompleted"
    id: int
    operationId: str


class OperationsCleared(BaseModel):
    type: Literal["operationsCleared"] = "operationsCleared"
    id: int


class ActivityChanged(BaseModel):
    type: Literal["activityChanged"] = "activityChanged"
    id: int
    state: ActivityState


AgentEvent = Union[
    AgentCreated,
    AgentRemoved,
    OperationStarted,
    OperationCompleted,
    OperationsCleared,
    ActivityChanged,
]


# ── API models ──────────────────────────────────────────────────────

class ActiveOperation(BaseModel):
    operationId: str
    label: str


class AgentSnapshot(BaseModel):
    id: int
    node: str
    projectKey: str
    projectName: str = ""
    currentFile: Optional[str] = None
    sessionBindingId: Optional[str] = None
    state: ActivityState = "active"
    activeOperations: list[ActiveOperation] = Field(default_factory=list)
    byteOffset: int = 0
    lastActivityAt: float = 0.0


class LaunchRequest(BaseModel):
    cwd: str
    node: Optional[str] = None  # defaults to the first local node
