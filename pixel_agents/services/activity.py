"""Per-agent activity reducer.

Consumes parsed transcript events, keeps the agent's active operations and
waiting flag current, and publishes status events. Two timers are involved:

- the turn-end debounce, armed by text-only assistant records and cancelled
  by anything that shows the turn is still going;
- per-operation completion notices, delayed so a tool that starts and
  finishes inside one read batch is still visible as briefly active.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from pixel_agents import config
from pixel_agents.models import (
    ActivityChanged,
    AgentEvent,
    OperationCompleted as OperationCompletedEvent,
    OperationStarted as OperationStartedEvent,
    OperationsCleared,
)
from pixel_agents.parsers.transcript import (
    ActivityEvent,
    NewPrompt,
    OperationCompleted,
    OperationStarted,
    TurnEnded,
)
from pixel_agents.sessions import Agent

logger = logging.getLogger("pixel_agents.activity")

Publish = Callable[[AgentEvent], None]


class ActivityStateMachine:
    def __init__(
        self,
        agent: Agent,
        publish: Publish,
        *,
        turn_end_debounce: float = config.TURN_END_DEBOUNCE_SECONDS,
        completion_delay: float = config.COMPLETION_DELAY_SECONDS,
    ):
        self.agent = agent
        self._publish = publish
        self.turn_end_debounce = turn_end_debounce
        self.completion_delay = completion_delay
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._pending_completions: dict[str, asyncio.TimerHandle] = {}
        self._closed = False

    @property
    def state(self) -> str:
        return "waiting" if self.agent.waiting else "active"

    @property
    def debounce_pending(self) -> bool:
        return self._debounce is not None

    def apply(self, event: ActivityEvent) -> None:
        if self._closed:
            return
        if isinstance(event, OperationStarted):
            self._operation_started(event)
        elif isinstance(event, OperationCompleted):
            self._operation_completed(event)
        elif isinstance(event, TurnEnded):
            if event.debounced:
                self._turn_maybe_ended()
            else:
                self._turn_ended()
        elif isinstance(event, NewPrompt):
            self._new_prompt()

    def apply_all(self, events: list[ActivityEvent]) -> None:
        for event in events:
            self.apply(event)

    def reset(self) -> None:
        """Forget everything about the previous file (rotation)."""
        if self._closed:
            return
        self._clear()
        self._publish(OperationsCleared(id=self.agent.id))

    def close(self) -> None:
        """Cancel every timer; nothing is published after this."""
        self._closed = True
        self._cancel_debounce()
        self._cancel_completions()

    # ── transitions ────────────────────────────────────────────────

    def _operation_started(self, event: OperationStarted) -> None:
        self._cancel_debounce()
        was_waiting = self.agent.waiting
        self.agent.waiting = False
        if self.agent.active_operations.get(event.id) != event.label:
            self.agent.active_operations[event.id] = event.label
            self._publish(OperationStartedEvent(id=self.agent.id, operationId=event.id, label=event.label))
        if was_waiting:
            self._publish(ActivityChanged(id=self.agent.id, state="active"))

    def _operation_completed(self, event: OperationCompleted) -> None:
        if self.agent.active_operations.pop(event.id, None) is None:
            logger.debug(f"Agent {self.agent.id}: unmatched completion {event.id}")
            return
        loop = asyncio.get_running_loop()
        self._pending_completions[event.id] = loop.call_later(
            self.completion_delay, self._publish_completion, event.id
        )

    def _publish_completion(self, operation_id: str) -> None:
        self._pending_completions.pop(operation_id, None)
        if self._closed:
            return
        self._publish(OperationCompletedEvent(id=self.agent.id, operationId=operation_id))

    def _turn_maybe_ended(self) -> None:
        if self.agent.active_operations:
            return
        self._cancel_debounce()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.turn_end_debounce, self._debounce_fired)

    def _debounce_fired(self) -> None:
        self._debounce = None
        if self._closed:
            return
        self._enter_waiting()

    def _turn_ended(self) -> None:
        self._cancel_debounce()
        self._enter_waiting()

    def _enter_waiting(self) -> None:
        self.agent.waiting = True
        self._publish(ActivityChanged(id=self.agent.id, state="waiting"))

    def _new_prompt(self) -> None:
        self._clear()
        self._publish(OperationsCleared(id=self.agent.id))
        self._publish(ActivityChanged(id=self.agent.id, state="active"))

    # ── helpers ────────────────────────────────────────────────────

    def _clear(self) -> None:
        self._cancel_debounce()
        self._cancel_completions()
        self.agent.active_operations.clear()
        self.agent.waiting = False

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    def _cancel_completions(self) -> None:
        for handle in self._pending_completions.values():
            handle.cancel()
        self._pending_completions.clear()
