"""Agent supervisor: the owner of the agent table.

Runs one loop per node (arbitration, then discovery), a staleness reaper,
and wires each owned file's tailer through the transcript parser into the
agent's activity state machine. Every change to the agent table or the
ownership ledger happens under ``self._lock``; remote I/O is awaited outside
it and decisions are recomputed from fresh state once the lock is held.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Optional

from pixel_agents import config
from pixel_agents.models import (
    ActivityChanged,
    AgentCreated,
    AgentEvent,
    AgentRemoved,
    AgentSnapshot,
    ClusterNode,
    OperationStarted,
)
from pixel_agents.node_registry import NodeRegistry
from pixel_agents.observability import (
    record_agent_lifecycle,
    record_operation_started,
    start_span,
)
from pixel_agents.parsers.transcript import parse_transcript_line
from pixel_agents.services.activity import ActivityStateMachine
from pixel_agents.services.launcher import LaunchError, SessionLauncher
from pixel_agents.services.ownership import OwnershipLedger
from pixel_agents.sessions import Agent, FileKey, SessionFile, TailCursor, encode_project_key
from pixel_agents.watchers.filesystem import Filesystem
from pixel_agents.watchers.scanner import SessionScanner
from pixel_agents.watchers.tailer import FileTailer

logger = logging.getLogger("pixel_agents.supervisor")

Publish = Callable[[AgentEvent], None]


class AgentSupervisor:
    def __init__(
        self,
        registry: NodeRegistry,
        filesystems: dict[str, Filesystem],
        publish: Publish,
        *,
        launcher: Optional[SessionLauncher] = None,
        scan_interval: float = config.SCAN_INTERVAL_SECONDS,
        activity_window_minutes: int = config.ACTIVITY_WINDOW_MINUTES,
        rotation_stale_seconds: float = config.ROTATION_STALE_SECONDS,
        stale_timeout: float = config.STALE_TIMEOUT_SECONDS,
        stale_check_interval: float = config.STALE_CHECK_INTERVAL_SECONDS,
        turn_end_debounce: float = config.TURN_END_DEBOUNCE_SECONDS,
        completion_delay: float = config.COMPLETION_DELAY_SECONDS,
    ):
        self.registry = registry
        self.filesystems = filesystems
        self._publish = publish
        self.launcher = launcher
        self.scan_interval = scan_interval
        self.rotation_stale_seconds = rotation_stale_seconds
        self.stale_timeout = stale_timeout
        self.stale_check_interval = stale_check_interval
        self.turn_end_debounce = turn_end_debounce
        self.completion_delay = completion_delay

        self.ledger = OwnershipLedger()
        self.scanners: dict[str, SessionScanner] = {
            node.name: SessionScanner(
                filesystems[node.name],
                self.on_session_discovered,
                is_known=lambda path, node_name=node.name: self.ledger.is_claimed(node_name, path),
                activity_window_minutes=activity_window_minutes,
            )
            for node in registry.list_nodes()
        }

        self._agents: dict[int, Agent] = {}
        self._machines: dict[int, ActivityStateMachine] = {}
        self._tailers: dict[int, FileTailer] = {}
        # Deferred file -> whether it was first seen on the initial scan.
        self._deferred: dict[FileKey, bool] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []
        self._closing: set[asyncio.Task] = set()
        self._running = False

    # ── lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.warning("Supervisor already running")
            return
        self._running = True
        for node in self.registry.list_nodes():
            self._tasks.append(asyncio.create_task(self._node_loop(node)))
        self._tasks.append(asyncio.create_task(self._reaper_loop()))
        logger.info(f"Supervisor started for nodes: {self.registry.describe()}")

    async def stop(self) -> None:
        """Cancel the loops and quietly release every agent."""
        self._running = False
        tasks = self._tasks + list(self._closing)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        async with self._lock:
            for agent_id in list(self._agents):
                self._discard(agent_id)
        logger.info("Supervisor stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _node_loop(self, node: ClusterNode) -> None:
        while self._running:
            try:
                with start_span("pixel_agents.scan_cycle", {"node": node.name, "local": node.isLocal}):
                    await self.tick(node.name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Scan cycle failed for {node.name}: {e}")
            await asyncio.sleep(self.scan_interval)

    async def _reaper_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.stale_check_interval)
            try:
                await self.reap_stale()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Stale check failed: {e}")

    async def tick(self, node_name: str) -> None:
        """One node cycle: move silent agents to newer files, then discover."""
        await self.arbitrate(node_name)
        await self.scanners[node_name].scan()

    # ── arbitration ────────────────────────────────────────────────

    async def arbitrate(self, node_name: str) -> int:
        filesystem = self.filesystems[node_name]
        async with self._lock:
            project_dirs = sorted({a.project_dir for a in self._agents.values() if a.node.name == node_name})
        if not project_dirs:
            return 0

        listings: dict[str, list[str]] = {}
        for project_dir in project_dirs:
            listings[project_dir] = await filesystem.list_project_files(project_dir)

        switched = 0
        async with self._lock:
            agents = [a for a in self._agents.values() if a.node.name == node_name]
            for claim in self.ledger.plan(agents, listings, time.time(), self.rotation_stale_seconds):
                agent = self._agents.get(claim.agent_id)
                if agent is None or self.ledger.is_claimed(node_name, claim.path):
                    continue
                self._switch_file(agent, SessionFile.from_path(agent.node, claim.path))
                self._deferred.pop((node_name, claim.path), None)
                self.scanners[node_name].mark_known(claim.path)
                switched += 1
        return switched

    # ── discovery ──────────────────────────────────────────────────

    async def on_session_discovered(self, session_file: SessionFile, initial: bool) -> bool:
        """Adopt a newly seen file; returns False to see it again next scan."""
        filesystem = self.filesystems[session_file.node.name]
        siblings = await filesystem.list_project_files(session_file.project_dir)

        async with self._lock:
            if self.ledger.is_claimed(*session_file.key):
                return True

            pending = self._pending_binding_for(session_file)
            if pending is not None:
                self._deferred.pop(session_file.key, None)
                self._switch_file(pending, session_file)
                return True

            if session_file.key not in self._deferred and self._has_fresh_agent(session_file):
                # A rotation in that directory may still claim it next tick.
                self._deferred[session_file.key] = initial
                logger.debug(f"Deferring {session_file.path}: recent activity in {session_file.project_key}")
                return False
            # A file found at startup keeps starting at its end even when adopted later.
            from_end = self._deferred.pop(session_file.key, False) or initial

            agent = self._create_agent(session_file.node, session_file.project_dir, session_file.project_key)
            self.ledger.ignore(agent.id, (p for p in siblings if p != session_file.path))
            self._claim(agent, session_file, from_end=from_end)
            logger.info(f"Agent {agent.id}: tracking {session_file.path} on {agent.node.name}")
            return True

    def _pending_binding_for(self, session_file: SessionFile) -> Optional[Agent]:
        for agent in self._agents.values():
            if (
                agent.current_file is None
                and agent.session_binding_id == session_file.session_id
                and agent.node.name == session_file.node.name
                and agent.project_key == session_file.project_key
            ):
                return agent
        return None

    def _has_fresh_agent(self, session_file: SessionFile) -> bool:
        now = time.time()
        for agent in self._agents.values():
            if agent.node.name != session_file.node.name or agent.current_file is None:
                continue
            if agent.project_dir != session_file.project_dir:
                continue
            if now - agent.last_activity_at <= self.rotation_stale_seconds:
                return True
        return False

    # ── launch / close ─────────────────────────────────────────────

    async def launch_session(self, node_name: Optional[str], cwd: str) -> AgentSnapshot:
        """Create a pending agent bound to a fresh session id and start Claude Code."""
        node = self.registry.require_node(node_name)
        filesystem = self.filesystems[node.name]
        project_key = encode_project_key(cwd)
        project_dir = filesystem.project_dir_for(project_key)
        existing = await filesystem.list_project_files(project_dir)
        session_id = str(uuid.uuid4())

        async with self._lock:
            agent = self._create_agent(node, project_dir, project_key, session_binding_id=session_id)
            self.ledger.ignore(agent.id, existing)
            snapshot = agent.to_snapshot()

        if self.launcher is not None:
            try:
                await self.launcher.launch(node, cwd, session_id)
            except LaunchError:
                async with self._lock:
                    self._remove_agent(agent.id, "launch failed")
                raise
        logger.info(f"Agent {agent.id}: waiting for session {session_id} in {project_dir} on {node.name}")
        return snapshot

    async def close_agent(self, agent_id: int) -> bool:
        async with self._lock:
            if agent_id not in self._agents:
                return False
            self._remove_agent(agent_id, "closed")
            return True

    # ── staleness ──────────────────────────────────────────────────

    async def reap_stale(self, now: Optional[float] = None) -> list[int]:
        """Remove agents whose file went silent or vanished; returns their ids."""
        now = time.time() if now is None else now
        removed: list[int] = []
        async with self._lock:
            for agent in list(self._agents.values()):
                if agent.current_file is None:
                    if agent.session_binding_id and now - agent.created_at > self.stale_timeout:
                        self._remove_agent(agent.id, "session never started")
                        removed.append(agent.id)
                    continue
                if not agent.node.isLocal:
                    continue
                mtime = await self.filesystems[agent.node.name].stat_mtime(agent.current_file.path)
                if mtime is None:
                    self._remove_agent(agent.id, "file vanished")
                    removed.append(agent.id)
                elif now - mtime > self.stale_timeout:
                    self._remove_agent(agent.id, f"idle for {int((now - mtime) // 60)} min")
                    removed.append(agent.id)
        return removed

    # ── views ──────────────────────────────────────────────────────

    def get_agent(self, agent_id: int) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def agents(self) -> list[Agent]:
        return [self._agents[agent_id] for agent_id in sorted(self._agents)]

    def snapshot(self) -> list[AgentSnapshot]:
        return [agent.to_snapshot() for agent in self.agents()]

    def replay_events(self) -> list[AgentEvent]:
        """Current state as the status events a late subscriber missed."""
        events: list[AgentEvent] = []
        for agent in self.agents():
            events.append(self._created_event(agent))
            for operation_id, label in agent.active_operations.items():
                events.append(OperationStarted(id=agent.id, operationId=operation_id, label=label))
            if agent.waiting:
                events.append(ActivityChanged(id=agent.id, state="waiting"))
        return events

    # ── internals (call with the lock held) ────────────────────────

    def _create_agent(
        self,
        node: ClusterNode,
        project_dir: str,
        project_key: str,
        *,
        session_binding_id: Optional[str] = None,
    ) -> Agent:
        agent = Agent(
            id=self._next_id,
            node=node,
            project_dir=project_dir,
            project_key=project_key,
            session_binding_id=session_binding_id,
        )
        self._next_id += 1
        self._agents[agent.id] = agent
        self._machines[agent.id] = ActivityStateMachine(
            agent,
            self._emit,
            turn_end_debounce=self.turn_end_debounce,
            completion_delay=self.completion_delay,
        )
        self._emit(self._created_event(agent))
        record_agent_lifecycle("created", node.name)
        return agent

    @staticmethod
    def _created_event(agent: Agent) -> AgentCreated:
        return AgentCreated(
            id=agent.id,
            node=agent.node.name,
            projectKey=agent.project_key,
            projectName=agent.project_name,
        )

    def _claim(self, agent: Agent, session_file: SessionFile, *, from_end: bool = False) -> None:
        self.ledger.claim(agent, session_file)
        agent.cursor = TailCursor()
        tailer: Optional[FileTailer] = None

        def on_lines(lines: list[str]) -> None:
            self._handle_lines(agent.id, tailer, lines)

        def on_closed() -> None:
            self._handle_stream_closed(agent.id, tailer)

        filesystem = self.filesystems[agent.node.name]
        tailer = filesystem.open_tailer(session_file.path, agent.cursor, on_lines, on_closed, from_end=from_end)
        self._tailers[agent.id] = tailer
        tailer.start()

    def _switch_file(self, agent: Agent, session_file: SessionFile) -> None:
        rotation = agent.current_file is not None
        self._stop_tailer(agent.id)
        if rotation:
            previous = self.ledger.release(agent)
            self._machines[agent.id].reset()
            record_agent_lifecycle("rotated", agent.node.name)
            logger.info(f"Agent {agent.id}: switched from {previous.path} to {session_file.path}")
        else:
            # A launched agent learns the resolved directory from its first file.
            agent.project_dir = session_file.project_dir
            record_agent_lifecycle("bound", agent.node.name)
            logger.info(f"Agent {agent.id}: bound to {session_file.path}")
        self._claim(agent, session_file)

    def _stop_tailer(self, agent_id: int) -> None:
        tailer = self._tailers.pop(agent_id, None)
        if tailer is not None:
            tailer.stop()

    def _discard(self, agent_id: int) -> Optional[Agent]:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return None
        self._stop_tailer(agent_id)
        machine = self._machines.pop(agent_id, None)
        if machine is not None:
            machine.close()
        self.ledger.forget(agent)
        return agent

    def _remove_agent(self, agent_id: int, reason: str) -> None:
        agent = self._discard(agent_id)
        if agent is None:
            return
        self._emit(AgentRemoved(id=agent_id))
        record_agent_lifecycle("removed", agent.node.name)
        logger.info(f"Agent {agent_id}: removed ({reason})")

    # ── tailer callbacks ───────────────────────────────────────────

    def _handle_lines(self, agent_id: int, tailer: Optional[FileTailer], lines: list[str]) -> None:
        if tailer is None or self._tailers.get(agent_id) is not tailer:
            return
        machine = self._machines.get(agent_id)
        if machine is None:
            return
        for line in lines:
            machine.apply_all(parse_transcript_line(line))

    def _handle_stream_closed(self, agent_id: int, tailer: Optional[FileTailer]) -> None:
        if tailer is None or self._tailers.get(agent_id) is not tailer:
            return
        task = asyncio.create_task(self._remove_closed(agent_id, tailer))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _remove_closed(self, agent_id: int, tailer: FileTailer) -> None:
        async with self._lock:
            # The agent may have rotated or been closed while waiting for the lock.
            if self._tailers.get(agent_id) is not tailer:
                return
            self._remove_agent(agent_id, "remote stream closed")

    def _emit(self, event: AgentEvent) -> None:
        if isinstance(event, OperationStarted):
            agent = self._agents.get(event.id)
            record_operation_started(agent.node.name if agent else "")
        try:
            self._publish(event)
        except Exception as e:
            logger.error(f"Subscriber callback failed for {event.type}: {e}")
