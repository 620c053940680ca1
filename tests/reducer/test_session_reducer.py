import unittest

from agent_session_core.errors import StrictModeError
from agent_session_core.models import AssistantEntry, Run, SeparatorEntry, ToolEntry, ToolStatus, UserEntry
from agent_session_core.phase import SessionPhase
from agent_session_core.reducer import SessionReducer
from agent_session_core.timeline import SESSION_ENDED_OUTPUT
from tests.reducer.fixtures import RUN_ID, ev, live_reducer, simple_exchange, tool_roundtrip


def _shape(reducer: SessionReducer) -> list[tuple[str, str]]:
    shape = []
    for entry in reducer.timeline:
        if isinstance(entry, ToolEntry):
            shape.append(("tool", f"{entry.tool.tool_name}:{entry.tool.status}"))
        else:
            shape.append((entry.kind, entry.content))
    return shape


class SessionReducerScenarioTests(unittest.TestCase):
    def test_simple_exchange_applied_live(self) -> None:
        reducer = live_reducer()
        for event in simple_exchange():
            reducer.apply_event(event)

        self.assertEqual([("user", "hello"), ("assistant", "Hi there")], _shape(reducer))
        self.assertEqual(SessionPhase.IDLE, reducer.phase)
        self.assertEqual("idle", reducer.run.status)
        self.assertEqual("sess-1", reducer.run.session_id)
        self.assertEqual("claude-sonnet", reducer.state.model)
        self.assertEqual("", reducer.state.streaming_text)
        self.assertEqual(10, reducer.usage.input_tokens)
        self.assertEqual(1, len(reducer.state.turn_usages))
        self.assertEqual("/work", reducer.effective_cwd)

    def test_batch_matches_event_by_event(self) -> None:
        events = simple_exchange() + tool_roundtrip()
        live = live_reducer()
        for event in events:
            live.apply_event(event)
        batched = live_reducer()
        batched.apply_event_batch(events)

        self.assertEqual(_shape(live), _shape(batched))
        self.assertEqual(live.phase, batched.phase)
        self.assertEqual(live.usage, batched.usage)
        self.assertEqual(live.run.session_id, batched.run.session_id)

    def test_batch_publishes_once(self) -> None:
        reducer = live_reducer()
        published = []
        unsubscribe = reducer.subscribe(published.append)

        reducer.apply_event_batch(simple_exchange())
        self.assertEqual(1, len(published))

        unsubscribe()
        reducer.apply_event(ev("command_output", content="done"))
        self.assertEqual(1, len(published))

    def test_observer_failure_does_not_block_others(self) -> None:
        reducer = live_reducer()
        seen = []

        def broken(_state) -> None:
            raise RuntimeError("observer down")

        reducer.subscribe(broken)
        reducer.subscribe(seen.append)
        reducer.apply_event(ev("command_output", content="x"))
        self.assertEqual(1, len(seen))

    def test_events_for_other_runs_are_dropped(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("user_message", run_id="other", text="nope"))
        self.assertEqual([], reducer.timeline)

    def test_events_without_run_are_dropped(self) -> None:
        reducer = SessionReducer()
        reducer.apply_event(ev("user_message", text="nope"))
        self.assertEqual([], reducer.timeline)


class SessionReducerInvariantTests(unittest.TestCase):
    def test_duplicate_message_and_tool_ids_are_ignored(self) -> None:
        reducer = live_reducer()
        for _ in range(2):
            reducer.apply_event(ev("message_complete", message_id="m1", text="once"))
            reducer.apply_event(ev("tool_start", tool_use_id="t1", tool_name="Bash"))

        self.assertEqual([("assistant", "once"), ("tool", "Bash:running")], _shape(reducer))

    def test_same_batch_twice_adds_one_entry(self) -> None:
        reducer = live_reducer()
        batch = [ev("user_message", text="Hello"), ev("message_complete", message_id="m1", text="Hi there!")]
        reducer.apply_event_batch(batch)
        reducer.apply_event_batch(batch)

        self.assertEqual([("user", "Hello"), ("assistant", "Hi there!")], _shape(reducer))

    def test_stopped_run_replay_keeps_stopped_phase(self) -> None:
        reducer = SessionReducer()
        reducer.set_run(Run(id=RUN_ID, status="stopped"))
        reducer.state.phase = SessionPhase.STOPPED
        reducer.apply_event_batch(simple_exchange(), replay_only=True)

        self.assertEqual(SessionPhase.STOPPED, reducer.phase)
        self.assertEqual("stopped", reducer.run.status)
        self.assertEqual(2, len(reducer.timeline))
        self.assertEqual(10, reducer.usage.input_tokens)

    def test_batch_keeps_run_object_and_commits_its_fields(self) -> None:
        reducer = live_reducer()
        run = reducer.run
        reducer.apply_event_batch([ev("run_state", state="running"), ev("run_state", state="failed", error="boom")])

        self.assertIs(run, reducer.run)
        self.assertEqual("failed", run.status)
        self.assertEqual("boom", run.error_message)
        self.assertEqual(SessionPhase.FAILED, reducer.phase)

    def test_failed_batch_leaves_state_untouched(self) -> None:
        reducer = live_reducer(strict=True)
        reducer.apply_event(ev("user_message", text="go"))
        reducer.apply_event(ev("tool_start", tool_use_id="t1", tool_name="Bash"))

        with self.assertRaises(StrictModeError):
            reducer.apply_event_batch(
                [
                    ev("tool_end", tool_use_id="t1", tool_name="Bash", status="success"),
                    ev("run_state", state="completed"),
                    ev("raw", source="mystery", data="?"),
                ]
            )

        self.assertEqual(ToolStatus.RUNNING, reducer.timeline[1].tool.status)
        self.assertEqual("running", reducer.run.status)
        self.assertEqual(SessionPhase.RUNNING, reducer.phase)

    def test_batch_reuses_settled_message_entries(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("user_message", text="go"))
        reducer.apply_event(ev("message_complete", message_id="m1", text="on it"))
        user, assistant = reducer.timeline

        reducer.apply_event_batch(tool_roundtrip())

        self.assertIs(user, reducer.timeline[0])
        self.assertIs(assistant, reducer.timeline[1])
        self.assertEqual(ToolStatus.SUCCESS, reducer.timeline[2].tool.status)

    def test_zero_token_usage_keeps_previous_counts(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("usage_update", input_tokens=1200, output_tokens=300, total_cost_usd=0.05))
        reducer.apply_event(ev("usage_update", input_tokens=0, output_tokens=0, total_cost_usd=0.07))

        self.assertEqual(1200, reducer.usage.input_tokens)
        self.assertEqual(300, reducer.usage.output_tokens)
        self.assertAlmostEqual(0.07, reducer.usage.cost)
        self.assertEqual(1500, reducer.total_tokens)

    def test_cost_never_decreases(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("usage_update", input_tokens=10, total_cost_usd=0.5))
        reducer.apply_event(ev("usage_update", input_tokens=20, total_cost_usd=0.1))

        self.assertEqual(20, reducer.usage.input_tokens)
        self.assertAlmostEqual(0.5, reducer.usage.cost)

    def test_terminal_replay_finalizes_open_tools(self) -> None:
        reducer = SessionReducer()
        reducer.set_run(Run(id=RUN_ID, status="completed"))
        reducer.state.phase = SessionPhase.COMPLETED
        reducer.apply_event_batch(
            [
                ev("tool_start", tool_use_id="t1", tool_name="Bash"),
                ev("tool_start", tool_use_id="t2", tool_name="Read"),
                ev("tool_end", tool_use_id="t2", tool_name="Read", status="success"),
            ],
            replay_only=True,
        )

        bash, read = reducer.timeline
        self.assertEqual(ToolStatus.ERROR, bash.tool.status)
        self.assertEqual(SESSION_ENDED_OUTPUT, bash.tool.output)
        self.assertEqual(ToolStatus.SUCCESS, read.tool.status)
        self.assertEqual(SessionPhase.COMPLETED, reducer.phase)

    def test_replay_only_leaves_phase_error_and_session_id_alone(self) -> None:
        reducer = SessionReducer()
        reducer.set_run(Run(id=RUN_ID, status="idle", session_id="keep-me"))
        reducer.state.phase = SessionPhase.SPAWNING
        reducer.apply_event_batch(
            [
                ev("session_init", session_id="old-session"),
                ev("user_message", text="hi"),
                ev("run_state", state="failed", error="API exploded"),
            ],
            replay_only=True,
        )

        self.assertEqual(SessionPhase.SPAWNING, reducer.phase)
        self.assertEqual("", reducer.error)
        self.assertEqual("keep-me", reducer.run.session_id)
        self.assertEqual(1, len(reducer.timeline))

    def test_replay_appends_repeated_user_text(self) -> None:
        reducer = SessionReducer()
        reducer.set_run(Run(id=RUN_ID, status="completed"))
        reducer.apply_event_batch(
            [ev("user_message", text="again"), ev("user_message", text="again")],
            replay_only=True,
        )
        self.assertEqual(2, len(reducer.timeline))

    def test_live_user_message_matches_local_echo(self) -> None:
        reducer = live_reducer()
        reducer.state.timeline.append(UserEntry(id="local", content="hello", ts="t"))
        reducer.apply_event(ev("user_message", text="hello"))
        self.assertEqual(1, len(reducer.timeline))

    def test_unknown_event_counts_or_raises(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("brand_new_event"))
        self.assertEqual(1, reducer.meta.unknown_event_count)

        strict = live_reducer(strict=True)
        with self.assertRaises(StrictModeError):
            strict.apply_event(ev("brand_new_event"))

    def test_unknown_run_state_is_an_anomaly(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("run_state", state="hibernating"))
        self.assertEqual(1, reducer.meta.anomaly_count)
        self.assertEqual(SessionPhase.RUNNING, reducer.phase)

    def test_run_state_error_is_suppressed_while_stopping(self) -> None:
        reducer = live_reducer()
        reducer._stopping = True
        reducer.apply_event(ev("run_state", state="failed", error="killed"))
        self.assertEqual("", reducer.error)
        self.assertEqual(SessionPhase.FAILED, reducer.phase)
        self.assertEqual("failed", reducer.run.status)

    def test_run_state_error_maps_to_failed(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("run_state", state="error", error="boom"))
        self.assertEqual(SessionPhase.FAILED, reducer.phase)
        self.assertEqual("failed", reducer.run.status)
        self.assertEqual("boom", reducer.error)


class SessionReducerToolTests(unittest.TestCase):
    def test_phantom_permission_prompt_creates_entry(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(
            ev("permission_prompt", tool_use_id="p1", tool_name="Write", request_id="req-1", tool_input={"a": 1})
        )

        (entry,) = reducer.timeline
        self.assertEqual(ToolStatus.PERMISSION_PROMPT, entry.tool.status)
        self.assertEqual("req-1", entry.tool.permission_request_id)
        self.assertEqual({"a": 1}, entry.tool.input)

        # A later tool_start for the same id must not add a second entry.
        reducer.apply_event(ev("tool_start", tool_use_id="p1", tool_name="Write"))
        self.assertEqual(1, len(reducer.timeline))

        reducer.apply_event(ev("run_state", state="idle"))
        self.assertEqual(ToolStatus.ERROR, entry.tool.status)

    def test_local_deny_then_control_cancelled(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("tool_start", tool_use_id="t1", tool_name="Bash"))
        reducer.apply_event(ev("permission_prompt", tool_use_id="t1", request_id="req-9"))
        reducer.resolve_permission_deny("req-9")
        self.assertEqual(ToolStatus.PERMISSION_DENIED, reducer.timeline[0].tool.status)

        other = live_reducer()
        other.apply_event(ev("tool_start", tool_use_id="t1", tool_name="Bash"))
        other.apply_event(ev("permission_prompt", tool_use_id="t1", request_id="req-9"))
        other.apply_event(ev("control_cancelled", request_id="req-9"))
        self.assertEqual(ToolStatus.ERROR, other.timeline[0].tool.status)

    def test_ask_user_question_waits_for_answer(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("tool_start", tool_use_id="q1", tool_name="AskUserQuestion"))
        reducer.apply_event(ev("tool_end", tool_use_id="q1", tool_name="AskUserQuestion", status="error"))
        self.assertEqual(ToolStatus.ASK_PENDING, reducer.timeline[0].tool.status)

        reducer.apply_event(ev("user_message", text="blue"))
        self.assertEqual(ToolStatus.SUCCESS, reducer.timeline[0].tool.status)
        self.assertEqual({"answer": "blue"}, reducer.timeline[0].tool.output)

    def test_tool_input_delta_accumulates_json(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("tool_start", tool_use_id="t1", tool_name="Write"))
        reducer.apply_event(ev("tool_input_delta", tool_use_id="t1", partial_json='{"path": "a'))
        self.assertEqual({}, reducer.timeline[0].tool.input)
        reducer.apply_event(ev("tool_input_delta", tool_use_id="t1", partial_json='.txt"}'))
        self.assertEqual({"path": "a.txt"}, reducer.timeline[0].tool.input)

    def test_plan_mode_follows_plan_tools(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("session_init", permission_mode="default"))
        reducer.apply_event(ev("tool_start", tool_use_id="e1", tool_name="EnterPlanMode"))
        reducer.apply_event(ev("tool_end", tool_use_id="e1", tool_name="EnterPlanMode", status="success"))
        self.assertEqual("plan", reducer.meta.permission_mode)

        reducer.set_permission_mode_override("acceptEdits")
        self.assertEqual("plan", reducer.meta.permission_mode)

        reducer.apply_event(ev("tool_start", tool_use_id="x1", tool_name="ExitPlanMode"))
        reducer.apply_event(ev("tool_end", tool_use_id="x1", tool_name="ExitPlanMode", status="success"))
        self.assertEqual("acceptEdits", reducer.meta.permission_mode)

    def test_active_tool_name(self) -> None:
        reducer = live_reducer()
        reducer.apply_event_batch(tool_roundtrip() + [ev("tool_start", tool_use_id="t9", tool_name="Grep")])
        self.assertEqual("Grep", reducer.active_tool_name)


class SessionReducerMiscEventTests(unittest.TestCase):
    def test_compact_boundary(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("compact_boundary", trigger="auto", pre_tokens=50_000))
        reducer.apply_event(ev("compact_boundary", trigger="microcompact"))

        (separator,) = reducer.timeline
        self.assertIsInstance(separator, SeparatorEntry)
        self.assertEqual("Context compacted (50k tokens)", separator.content)
        self.assertEqual(1, reducer.meta.compact_count)
        self.assertEqual(1, reducer.meta.microcompact_count)
        self.assertGreater(reducer.meta.last_compacted_at, 0)

    def test_raw_events(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("raw", source="claude_stderr", data="warning: slow"))
        reducer.apply_event(ev("raw", source="mystery", data={"x": 1}))

        (entry,) = reducer.timeline
        self.assertIsInstance(entry, AssistantEntry)
        self.assertEqual("`[claude_stderr]` warning: slow", entry.content)
        self.assertEqual(1, reducer.meta.raw_fallback_count)

    def test_task_notifications(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(ev("task_notification", task_id="bg1", status="running", data={"message": "Indexing"}))
        self.assertTrue(reducer.has_background_tasks)
        self.assertEqual(["bg1"], [t.task_id for t in reducer.active_background_tasks])

        reducer.apply_event(ev("task_notification", task_id="bg1", status="completed", data={"summary": "ok"}))
        self.assertEqual([], reducer.active_background_tasks)
        self.assertEqual("ok", reducer.meta.task_notifications["bg1"].summary)

    def test_context_warning_level(self) -> None:
        reducer = live_reducer()
        reducer.apply_event(
            ev(
                "usage_update",
                input_tokens=100_000,
                model_usage={"claude-sonnet": {"context_window": 200_000}},
            )
        )
        self.assertEqual(200_000, reducer.context_window)
        self.assertAlmostEqual(0.5, reducer.context_utilization)
        self.assertEqual("moderate", reducer.context_warning_level)

    def test_hook_events_for_non_stream_agents(self) -> None:
        reducer = SessionReducer()
        reducer.set_run(Run(id=RUN_ID, status="running", agent="codex"))
        reducer.apply_hook_event(ev("hook", hook_type="PreToolUse", tool_name="Bash", status="running"))
        reducer.apply_hook_event(ev("hook", hook_type="PostToolUse", tool_name="Bash", tool_output="ok"))

        (hook,) = reducer.state.tool_hooks
        self.assertEqual("done", hook["status"])
        self.assertEqual("ok", hook["tool_output"])

        reducer.apply_hook_usage({"run_id": RUN_ID, "input_tokens": 5, "output_tokens": 2, "cost": 0.01})
        reducer.apply_hook_usage({"run_id": RUN_ID, "input_tokens": 5, "output_tokens": 2, "cost": 0.01})
        self.assertEqual(10, reducer.usage.input_tokens)
        self.assertAlmostEqual(0.02, reducer.usage.cost)

    def test_hook_tool_events_skipped_for_stream_sessions(self) -> None:
        reducer = live_reducer()
        reducer.apply_hook_event(ev("hook", hook_type="PreToolUse", tool_name="Bash", status="running"))
        self.assertEqual([], reducer.state.tool_hooks)

    def test_slash_command_detection(self) -> None:
        reducer = live_reducer()
        self.assertTrue(reducer.is_known_slash_command("/compact"))
        self.assertFalse(reducer.is_known_slash_command("/home/user/file.txt"))
        self.assertFalse(reducer.is_known_slash_command("hello"))

        reducer.apply_event(ev("session_init", slash_commands=["compact"], skills=["review"]))
        self.assertTrue(reducer.is_known_slash_command("/compact now"))
        self.assertTrue(reducer.is_known_slash_command("/review"))
        self.assertFalse(reducer.is_known_slash_command("/unknown"))

    def test_reset_clears_everything_but_agent(self) -> None:
        reducer = live_reducer(agent="codex")
        reducer.apply_event_batch(simple_exchange())
        reducer.reset()

        self.assertIsNone(reducer.run)
        self.assertEqual([], reducer.timeline)
        self.assertEqual(SessionPhase.EMPTY, reducer.phase)
        self.assertEqual("codex", reducer.state.agent)


if __name__ == "__main__":
    unittest.main()
