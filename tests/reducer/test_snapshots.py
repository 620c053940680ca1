import json
import unittest

from agent_session_core.errors import StrictModeError
from agent_session_core.models import Run, entry_to_dict
from agent_session_core.phase import SessionPhase
from agent_session_core.reducer import SessionReducer
from tests.reducer.fixtures import RUN_ID, ev, simple_exchange, subagent_stream


def _completed_reducer(strict: bool = False) -> SessionReducer:
    reducer = SessionReducer(strict_mode=strict)
    reducer.set_run(Run(id=RUN_ID, status="completed"))
    reducer.state.phase = SessionPhase.COMPLETED
    return reducer


class SnapshotTests(unittest.TestCase):
    def test_snapshot_restores_replayed_state(self) -> None:
        source = _completed_reducer()
        source.apply_event_batch(
            simple_exchange()
            + subagent_stream()
            + [
                ev("task_notification", task_id="bg1", status="running", data={"message": "Indexing"}),
                ev("compact_boundary", trigger="auto", pre_tokens=12_000),
            ],
            replay_only=True,
        )
        body = source.build_snapshot()

        restored = _completed_reducer()
        self.assertTrue(restored.apply_snapshot(body))

        self.assertEqual(
            [entry_to_dict(e) for e in source.timeline],
            [entry_to_dict(e) for e in restored.timeline],
        )
        self.assertEqual(source.usage, restored.usage)
        self.assertEqual(source.state.turn_usages, restored.state.turn_usages)
        self.assertEqual(source.state.seen_message_ids, restored.state.seen_message_ids)
        self.assertEqual(source.state.seen_tool_ids, restored.state.seen_tool_ids)
        self.assertEqual(source.state.model, restored.state.model)
        self.assertEqual(source.meta.compact_count, restored.meta.compact_count)
        self.assertEqual("Indexing", restored.meta.task_notifications["bg1"].message)

    def test_restored_seen_ids_still_deduplicate(self) -> None:
        source = _completed_reducer()
        source.apply_event_batch(simple_exchange(), replay_only=True)
        restored = _completed_reducer()
        restored.apply_snapshot(source.build_snapshot())

        restored.apply_event_batch([ev("message_complete", message_id="m1", text="Hi there")], replay_only=True)
        self.assertEqual(len(source.timeline), len(restored.timeline))

    def test_transient_timing_fields_are_not_stored(self) -> None:
        source = _completed_reducer()
        source.meta.thinking_started_at = 123.0
        data = json.loads(source.build_snapshot())
        self.assertNotIn("thinking_started_at", data["metadata"])
        self.assertNotIn("last_compacted_at", data["metadata"])

    def test_invalid_snapshots_are_rejected(self) -> None:
        reducer = _completed_reducer()
        self.assertFalse(reducer.apply_snapshot("not json"))
        self.assertFalse(reducer.apply_snapshot(json.dumps({"timeline": "nope", "usage": {}})))
        self.assertFalse(reducer.apply_snapshot(json.dumps({"timeline": [{"kind": "alien"}], "usage": {}})))
        self.assertEqual([], reducer.timeline)

    def test_invalid_snapshot_raises_in_strict_mode(self) -> None:
        reducer = _completed_reducer(strict=True)
        with self.assertRaises(StrictModeError):
            reducer.apply_snapshot("{}")

    def test_should_write_snapshot(self) -> None:
        reducer = _completed_reducer()
        self.assertTrue(reducer.should_write_snapshot(0))
        self.assertFalse(reducer.should_write_snapshot(4))

        reducer.apply_event_batch(simple_exchange(), replay_only=True)
        self.assertTrue(reducer.should_write_snapshot(len(simple_exchange())))


if __name__ == "__main__":
    unittest.main()
