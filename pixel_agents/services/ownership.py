"""Which agent owns which session file.

The ledger is the single authority for file ownership. ``claim`` and
``release`` update both the ledger and ``agent.current_file`` in one step so
the two can never disagree. ``plan`` decides which agents should move to a
newer file this cycle; the supervisor applies the result under its lock.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from pixel_agents import config
from pixel_agents.sessions import Agent, FileKey, SessionFile, path_module

logger = logging.getLogger("pixel_agents.ownership")


class OwnershipConflict(RuntimeError):
    """Raised when a file is claimed while another agent owns it."""


@dataclass(frozen=True)
class Claim:
    agent_id: int
    path: str


class OwnershipLedger:
    def __init__(self):
        self._claimed: dict[FileKey, int] = {}
        self._ignored: dict[int, set[str]] = {}
        # Files released by rotation are never handed to anyone again.
        self._retired: set[FileKey] = set()

    # ── ownership ──────────────────────────────────────────────────

    def claim(self, agent: Agent, session_file: SessionFile) -> None:
        owner = self._claimed.get(session_file.key)
        if owner is not None and owner != agent.id:
            raise OwnershipConflict(f"{session_file.path} is owned by agent {owner}")
        if agent.current_file is not None and agent.current_file.key != session_file.key:
            self.release(agent)
        self._claimed[session_file.key] = agent.id
        agent.current_file = session_file

    def release(self, agent: Agent) -> Optional[SessionFile]:
        """Give up the agent's file and never offer it to the agent again."""
        current = agent.current_file
        if current is None:
            return None
        if self._claimed.get(current.key) == agent.id:
            del self._claimed[current.key]
        self._ignored.setdefault(agent.id, set()).add(current.path)
        self._retired.add(current.key)
        agent.current_file = None
        return current

    def forget(self, agent: Agent) -> None:
        """Drop every trace of a removed agent."""
        current = agent.current_file
        if current is not None and self._claimed.get(current.key) == agent.id:
            del self._claimed[current.key]
        self._ignored.pop(agent.id, None)
        agent.current_file = None

    def owner_of(self, node_name: str, path: str) -> Optional[int]:
        return self._claimed.get((node_name, path))

    def is_claimed(self, node_name: str, path: str) -> bool:
        return (node_name, path) in self._claimed

    def claimed_count(self) -> int:
        return len(self._claimed)

    # ── ignore sets ────────────────────────────────────────────────

    def ignore(self, agent_id: int, paths: Iterable[str]) -> None:
        self._ignored.setdefault(agent_id, set()).update(paths)

    def is_ignored(self, agent_id: int, path: str) -> bool:
        return path in self._ignored.get(agent_id, ())

    # ── arbitration ────────────────────────────────────────────────

    def plan(
        self,
        agents: Iterable[Agent],
        listings: dict[str, list[str]],
        now: float,
        stale_threshold: float = config.ROTATION_STALE_SECONDS,
    ) -> list[Claim]:
        """Decide the file claims for one arbitration cycle.

        ``listings`` maps a project directory to its session files, newest
        first. At most one claim is returned per file and per agent.
        """
        agents = sorted(agents, key=lambda a: a.id)
        taken: set[str] = set()
        claims: list[Claim] = []

        # Pending bindings only ever look for their own file.
        for agent in agents:
            if agent.current_file is not None or not agent.session_binding_id:
                continue
            expected = f"{agent.session_binding_id}{config.SESSION_SUFFIX}"
            paths = path_module(agent.node)
            for path in listings.get(agent.project_dir, []):
                if paths.basename(path) != expected:
                    continue
                if path in taken or self.is_claimed(agent.node.name, path):
                    break
                taken.add(path)
                claims.append(Claim(agent.id, path))
                break

        # Unbound agents without a file pick up the newest free file.
        for agent in agents:
            if agent.current_file is not None or agent.session_binding_id:
                continue
            path = self._candidate(agent, listings, taken)
            if path is not None:
                taken.add(path)
                claims.append(Claim(agent.id, path))

        # Silent agents compete per project directory; the most recently active wins.
        contenders: dict[tuple[str, str], Agent] = {}
        for agent in agents:
            if agent.current_file is None:
                continue
            if now - agent.last_activity_at <= stale_threshold:
                continue
            group = (agent.node.name, agent.project_dir)
            best = contenders.get(group)
            if best is None or agent.last_activity_at > best.last_activity_at:
                contenders[group] = agent
        for agent in sorted(contenders.values(), key=lambda a: a.id):
            path = self._candidate(agent, listings, taken)
            if path is not None:
                taken.add(path)
                claims.append(Claim(agent.id, path))

        return claims

    def _candidate(self, agent: Agent, listings: dict[str, list[str]], taken: set[str]) -> Optional[str]:
        current = agent.current_file.path if agent.current_file is not None else None
        for path in listings.get(agent.project_dir, []):
            if path == current or path in taken:
                continue
            if self.is_claimed(agent.node.name, path) or (agent.node.name, path) in self._retired:
                continue
            if self.is_ignored(agent.id, path):
                continue
            return path
        return None
