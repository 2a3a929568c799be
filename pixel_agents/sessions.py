"""Session file identity and per-agent runtime state."""
from __future__ import annotations

import os.path
import posixpath
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from pixel_agents.models import ActiveOperation, AgentSnapshot, ClusterNode

_PROJECT_DIR_SEPARATORS = re.compile(r"[:\\/]")

FileKey = tuple[str, str]


def encode_project_key(cwd: str) -> str:
    """Directory name Claude Code uses for a working directory.

    ``/Users/dev/app`` -> ``-Users-dev-app``; ``C:\\Dev\\app`` -> ``C--Dev-app``.
    """
    return _PROJECT_DIR_SEPARATORS.sub("-", cwd)


def decode_project_key(project_key: str) -> str:
    """Best-effort display path for a project directory name."""
    if not project_key:
        return ""
    return project_key.replace("-", "/")


def path_module(node: ClusterNode):
    """Path flavour for a node: native locally, POSIX over ssh."""
    return os.path if node.isLocal else posixpath


@dataclass(frozen=True)
class SessionFile:
    node: ClusterNode
    path: str
    project_dir: str
    project_key: str

    @classmethod
    def from_path(cls, node: ClusterNode, path: str) -> "SessionFile":
        paths = path_module(node)
        project_dir = paths.dirname(path)
        return cls(
            node=node,
            path=path,
            project_dir=project_dir,
            project_key=paths.basename(project_dir),
        )

    @property
    def key(self) -> FileKey:
        return (self.node.name, self.path)

    @property
    def session_id(self) -> str:
        base = path_module(self.node).basename(self.path)
        return base[: -len(".jsonl")] if base.endswith(".jsonl") else base


@dataclass
class TailCursor:
    """Read position inside one owned file."""

    byte_offset: int = 0
    line_remainder: bytes = b""
    last_activity_at: float = field(default_factory=time.time)


@dataclass
class Agent:
    id: int
    node: ClusterNode
    project_dir: str
    project_key: str
    current_file: Optional[SessionFile] = None
    cursor: TailCursor = field(default_factory=TailCursor)
    active_operations: dict[str, str] = field(default_factory=dict)
    waiting: bool = False
    session_binding_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def byte_offset(self) -> int:
        return self.cursor.byte_offset

    @property
    def line_remainder(self) -> bytes:
        return self.cursor.line_remainder

    @property
    def last_activity_at(self) -> float:
        return self.cursor.last_activity_at

    @property
    def project_name(self) -> str:
        return decode_project_key(self.project_key)

    def to_snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            id=self.id,
            node=self.node.name,
            projectKey=self.project_key,
            projectName=self.project_name,
            currentFile=self.current_file.path if self.current_file else None,
            sessionBindingId=self.session_binding_id,
            state="waiting" if self.waiting else "active",
            activeOperations=[
                ActiveOperation(operationId=op_id, label=label)
                for op_id, label in self.active_operations.items()
            ],
            byteOffset=self.byte_offset,
            lastActivityAt=self.last_activity_at,
        )
