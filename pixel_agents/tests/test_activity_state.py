import asyncio
import unittest

from pixel_agents.models import ActivityChanged, OperationCompleted, OperationStarted, OperationsCleared
from pixel_agents.models import ClusterNode
from pixel_agents.parsers import transcript
from pixel_agents.services.activity import ActivityStateMachine
from pixel_agents.sessions import Agent


def _agent() -> Agent:
    return Agent(id=7, node=ClusterNode(name="local"), project_dir="/p/-repo", project_key="-repo")


class ActivityStateMachineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.agent = _agent()
        self.events: list = []
        self.machine = ActivityStateMachine(
            self.agent,
            self.events.append,
            turn_end_debounce=0.05,
            completion_delay=0.02,
        )

    async def test_operation_lifecycle_with_delayed_completion(self) -> None:
        self.machine.apply(transcript.OperationStarted(id="t1", label="Reading a.py"))
        self.assertEqual(self.events, [OperationStarted(id=7, operationId="t1", label="Reading a.py")])
        self.assertEqual(self.agent.active_operations, {"t1": "Reading a.py"})

        self.machine.apply(transcript.OperationCompleted(id="t1"))
        self.assertEqual(self.agent.active_operations, {})
        self.assertEqual(len(self.events), 1)

        await asyncio.sleep(0.05)
        self.assertEqual(self.events[-1], OperationCompleted(id=7, operationId="t1"))

    async def test_unmatched_completion_is_ignored(self) -> None:
        self.machine.apply(transcript.OperationCompleted(id="ghost"))
        await asyncio.sleep(0.05)
        self.assertEqual(self.events, [])

    async def test_text_only_turn_goes_waiting_after_debounce(self) -> None:
        self.machine.apply(transcript.TurnEnded(debounced=True))
        self.assertTrue(self.machine.debounce_pending)
        self.assertEqual(self.machine.state, "active")

        await asyncio.sleep(0.1)
        self.assertEqual(self.machine.state, "waiting")
        self.assertEqual(self.events, [ActivityChanged(id=7, state="waiting")])

    async def test_debounce_is_cancelled_by_new_operation(self) -> None:
        self.machine.apply(transcript.TurnEnded(debounced=True))
        self.machine.apply(transcript.OperationStarted(id="t1", label="Running: make"))
        self.assertFalse(self.machine.debounce_pending)

        await asyncio.sleep(0.1)
        self.assertEqual(self.machine.state, "active")
        self.assertNotIn(ActivityChanged(id=7, state="waiting"), self.events)

    async def test_debounce_does_not_arm_with_active_operations(self) -> None:
        self.machine.apply(transcript.OperationStarted(id="t1", label="Planning"))
        self.machine.apply(transcript.TurnEnded(debounced=True))
        self.assertFalse(self.machine.debounce_pending)

    async def test_authoritative_turn_end_is_immediate(self) -> None:
        self.machine.apply(transcript.TurnEnded(debounced=True))
        self.machine.apply(transcript.TurnEnded(debounced=False))
        self.assertFalse(self.machine.debounce_pending)
        self.assertEqual(self.events, [ActivityChanged(id=7, state="waiting")])

        await asyncio.sleep(0.1)
        self.assertEqual(self.events, [ActivityChanged(id=7, state="waiting")])

    async def test_operation_after_waiting_reactivates(self) -> None:
        self.machine.apply(transcript.TurnEnded(debounced=False))
        self.machine.apply(transcript.OperationStarted(id="t2", label="Searching code"))
        self.assertEqual(
            self.events[-2:],
            [
                OperationStarted(id=7, operationId="t2", label="Searching code"),
                ActivityChanged(id=7, state="active"),
            ],
        )

    async def test_new_prompt_clears_everything(self) -> None:
        for op_id in ("a", "b", "c"):
            self.machine.apply(transcript.OperationStarted(id=op_id, label="Planning"))
        self.machine.apply(transcript.OperationCompleted(id="a"))
        self.machine.apply(transcript.NewPrompt())

        self.assertEqual(self.agent.active_operations, {})
        self.assertFalse(self.agent.waiting)
        self.assertEqual(self.events[-2:], [OperationsCleared(id=7), ActivityChanged(id=7, state="active")])

        # The pending completion notice for "a" was cancelled.
        await asyncio.sleep(0.05)
        self.assertNotIn(OperationCompleted(id=7, operationId="a"), self.events)

    async def test_reset_clears_without_activity_change(self) -> None:
        self.machine.apply(transcript.OperationStarted(id="t1", label="Planning"))
        self.events.clear()
        self.machine.reset()
        self.assertEqual(self.events, [OperationsCleared(id=7)])
        self.assertEqual(self.agent.active_operations, {})

    async def test_close_cancels_timers(self) -> None:
        self.machine.apply(transcript.TurnEnded(debounced=True))
        self.machine.close()
        await asyncio.sleep(0.1)
        self.assertEqual(self.events, [])
        self.machine.apply(transcript.NewPrompt())
        self.assertEqual(self.events, [])


if __name__ == "__main__":
    unittest.main()
