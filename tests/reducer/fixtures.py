from agent_session_core.models import Run
from agent_session_core.phase import SessionPhase
from agent_session_core.reducer import SessionReducer

RUN_ID = "r1"


def ev(event_type: str, run_id: str = RUN_ID, **fields) -> dict:
    return {"type": event_type, "run_id": run_id, **fields}


def live_reducer(*, status: str = "running", agent: str = "claude", strict: bool = False) -> SessionReducer:
    reducer = SessionReducer(strict_mode=strict)
    reducer.set_run(Run(id=RUN_ID, status=status, agent=agent))
    reducer.state.phase = SessionPhase.RUNNING
    return reducer


def simple_exchange() -> list[dict]:
    return [
        ev("session_init", session_id="sess-1", model="claude-sonnet", cwd="/work", tools=["Read"]),
        ev("user_message", text="hello"),
        ev("run_state", state="running"),
        ev("message_delta", text="Hi "),
        ev("message_delta", text="there"),
        ev("message_complete", message_id="m1", text="Hi there"),
        ev("usage_update", input_tokens=10, output_tokens=5, total_cost_usd=0.01),
        ev("run_state", state="idle"),
    ]


def tool_roundtrip() -> list[dict]:
    return [
        ev("tool_start", tool_use_id="t1", tool_name="Read", input={"path": "a.txt"}),
        ev("tool_end", tool_use_id="t1", tool_name="Read", status="success", output={"text": "contents"}),
    ]


def subagent_stream() -> list[dict]:
    return [
        ev("tool_start", tool_use_id="task1", tool_name="Task"),
        ev("tool_start", tool_use_id="c1", tool_name="Grep", parent_tool_use_id="task1"),
        ev("message_delta", text="work", parent_tool_use_id="task1"),
        ev("message_complete", message_id="sm1", text="work done", parent_tool_use_id="task1"),
        ev("tool_end", tool_use_id="c1", tool_name="Grep", status="success"),
        ev("tool_end", tool_use_id="task1", tool_name="Task", status="success"),
    ]
