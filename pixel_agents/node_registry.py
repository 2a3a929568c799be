"""Node registry: the set of machines whose Claude Code sessions we track."""
from __future__ import annotations

import json
import logging
import socket
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from pixel_agents import config
from pixel_agents.models import ClusterNode

logger = logging.getLogger("pixel_agents")

_LOCAL_ADDRESSES = {"localhost", "127.0.0.1", "::1"}


class NodeConfigError(ValueError):
    """Raised when the cluster file exists but cannot be understood."""


class UnknownNodeError(KeyError):
    """Raised when a caller names a node that is not configured."""


def default_local_node() -> ClusterNode:
    hostname = socket.gethostname()
    if hostname.endswith(".local"):
        hostname = hostname[: -len(".local")]
    return ClusterNode(name=hostname or "localhost", address="localhost", isLocal=True)


def parse_cluster_config(data: object) -> list[ClusterNode]:
    """Turn the decoded cluster.json payload into nodes.

    Accepts ``{"nodes": [{"name", "host" | "address", "isLocal"}]}``. A node is
    local when flagged so or when its address is a loopback name.
    """
    if not isinstance(data, dict):
        raise NodeConfigError("cluster config must be a JSON object")
    raw_nodes = data.get("nodes")
    if not isinstance(raw_nodes, list):
        raise NodeConfigError("cluster config needs a 'nodes' list")

    nodes: list[ClusterNode] = []
    seen: set[str] = set()
    for raw in raw_nodes:
        if not isinstance(raw, dict):
            raise NodeConfigError(f"node entry must be an object, got {raw!r}")
        address = str(raw.get("address") or raw.get("host") or "").strip()
        name = str(raw.get("name") or address).strip()
        if not name or not address:
            raise NodeConfigError(f"node entry needs a name or host: {raw!r}")
        if name in seen:
            logger.warning(f"Duplicate cluster node '{name}' ignored")
            continue
        seen.add(name)
        is_local = raw.get("isLocal") is True or address in _LOCAL_ADDRESSES
        try:
            nodes.append(ClusterNode(name=name, address=address, isLocal=is_local))
        except ValidationError as e:
            raise NodeConfigError(str(e)) from e
    return nodes


class NodeRegistry:
    """Loads the ordered node list once; falls back to a single local node."""

    def __init__(self, cluster_file: Path):
        self.cluster_file = cluster_file
        self._nodes: list[ClusterNode] = self._load()

    def _load(self) -> list[ClusterNode]:
        if not self.cluster_file.exists():
            return [default_local_node()]

        try:
            content = self.cluster_file.read_text(encoding="utf-8")
            nodes = parse_cluster_config(json.loads(content)) if content.strip() else []
        except (OSError, json.JSONDecodeError, NodeConfigError) as e:
            logger.error(f"Failed to load cluster file {self.cluster_file}: {e}")
            return [default_local_node()]

        if not nodes:
            return [default_local_node()]
        return nodes

    def list_nodes(self) -> list[ClusterNode]:
        return list(self._nodes)

    def get_node(self, name: str) -> Optional[ClusterNode]:
        for node in self._nodes:
            if node.name == name:
                return node
        return None

    def require_node(self, name: Optional[str]) -> ClusterNode:
        """Resolve a node by name; ``None`` means the first local node."""
        if name is None:
            for node in self._nodes:
                if node.isLocal:
                    return node
            raise UnknownNodeError("no local node configured")
        node = self.get_node(name)
        if node is None:
            raise UnknownNodeError(name)
        return node

    def describe(self) -> str:
        return ", ".join(f"{n.name}{' (local)' if n.isLocal else ''}" for n in self._nodes)
