import unittest
from unittest.mock import MagicMock, patch

from pixel_agents.observability import otel


class RecordingHelpersTests(unittest.TestCase):
    def test_helpers_are_noops_without_instruments(self) -> None:
        with patch.dict(otel._otel_counters, clear=True), patch.dict(otel._prom_counters, clear=True):
            otel.record_discovery("local")
            otel.record_tail_bytes("local", 10)
        with otel.start_span("pixel_agents.test") as span:
            self.assertIsNone(span)

    def test_prometheus_counters_get_normalized_labels(self) -> None:
        counter = MagicMock()
        with patch.dict(otel._prom_counters, {"lifecycle": counter, "tail_bytes": counter}, clear=True):
            otel.record_agent_lifecycle("created", "")
            otel.record_tail_bytes("gpu-1", 0)
            otel.record_tail_bytes("gpu-1", 42)
        counter.labels.assert_any_call(event="created", node="unknown")
        counter.labels.assert_called_with(node="gpu-1")
        self.assertEqual(counter.labels.call_count, 2)
        counter.labels.return_value.inc.assert_called_with(42)


if __name__ == "__main__":
    unittest.main()
