from __future__ import annotations

import asyncio

from loguru import logger

from agent_session_core.bridge import AgentBridge
from agent_session_core.cancellation import CancellationToken, GenerationCounter, OpGuard
from agent_session_core.errors import BridgeError, ResumeError
from agent_session_core.models import Run, UserEntry, new_entry_id, timeline_attachments, to_backend_attachments, utc_now
from agent_session_core.phase import ACTIVE_PHASES, TERMINAL_PHASES, SessionPhase, phase_for_run_status
from agent_session_core.reducer import SessionReducer
from agent_session_core.router import EventRouter
from agent_session_core.storage.snapshot_cache import SnapshotCache

RESUME_MODES = ("resume", "continue", "fork")
_RECONCILED_STATUSES = {
    "completed": SessionPhase.COMPLETED,
    "failed": SessionPhase.FAILED,
    "stopped": SessionPhase.STOPPED,
}

SPAWN_TIMEOUT_MESSAGE = "Session failed to start (CLI did not respond). Try again or check CLI installation."


class SessionStore(SessionReducer):
    """Session reducer plus the lifecycle operations that talk to the agent bridge.

    Every await is bracketed by a generation token; a completion whose token was
    cancelled by a newer load is dropped. Resume and fork share one ``OpGuard``.
    """

    def __init__(
        self,
        bridge: AgentBridge,
        *,
        router: EventRouter | None = None,
        snapshots: SnapshotCache | None = None,
        spawn_timeout_seconds: float = 30,
        response_timeout_seconds: float = 60,
        stop_grace_seconds: float = 0.5,
        strict_mode: bool = False,
    ):
        super().__init__(strict_mode=strict_mode)
        self._bridge = bridge
        self._router = router
        self._snapshots = snapshots
        self._spawn_timeout_seconds = spawn_timeout_seconds
        self._response_timeout_seconds = response_timeout_seconds
        self._stop_grace_seconds = stop_grace_seconds
        self._generation = GenerationCounter()
        self._guard = OpGuard()
        self._spawn_timer: asyncio.TimerHandle | None = None
        self._response_timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self.remote_host_name: str | None = None
        self.platform_id: str | None = None

    @property
    def resume_in_flight(self) -> bool:
        return self._guard.busy

    # -- lifecycle hooks --

    def _set_phase(self, target: SessionPhase) -> None:
        super()._set_phase(target)
        if target != SessionPhase.SPAWNING:
            self._clear_spawn_timeout()
        if target != SessionPhase.RUNNING:
            self._clear_response_timeout()

    def _cancel_response_timer(self) -> None:
        self._clear_response_timeout()

    def _on_terminal_state(self) -> None:
        run = self._state.run
        if run is None:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop to refresh run {run.id}")
            return
        self._spawn_task(self._refresh_run(run.id))

    async def _refresh_run(self, run_id: str) -> None:
        try:
            run = await self._bridge.get_run(run_id)
        except BridgeError as ex:
            logger.warning(f"Failed to refresh run {run_id}: {ex}")
            return
        if self._state.run is None or self._state.run.id != run_id:
            return
        self._state.run = run
        self._publish()

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- timers --

    def _start_spawn_timeout(self, run_id: str) -> None:
        self._clear_spawn_timeout()
        self._spawn_timer = asyncio.get_running_loop().call_later(
            self._spawn_timeout_seconds, self._on_spawn_timeout, run_id
        )

    def _clear_spawn_timeout(self) -> None:
        if self._spawn_timer is not None:
            self._spawn_timer.cancel()
            self._spawn_timer = None

    def _on_spawn_timeout(self, run_id: str) -> None:
        self._spawn_timer = None
        run = self._state.run
        if run is None or run.id != run_id or self._state.phase != SessionPhase.SPAWNING:
            return
        logger.warning(f"Spawn timeout for run {run_id} after {self._spawn_timeout_seconds}s")
        self._state.error = SPAWN_TIMEOUT_MESSAGE
        self._spawn_task(self._fail_spawn(run_id))

    async def _fail_spawn(self, run_id: str) -> None:
        try:
            await self._bridge.stop_session(run_id)
        except BridgeError as ex:
            logger.warning(f"stop_session after spawn timeout failed: {ex}")
        run = self._state.run
        if run is None or run.id != run_id:
            return
        self._set_phase(SessionPhase.FAILED)
        run.status = "failed"
        self._publish()

    def _start_response_timeout(self, run_id: str) -> None:
        self._clear_response_timeout()
        self._response_timer = asyncio.get_running_loop().call_later(
            self._response_timeout_seconds, self._on_response_timeout, run_id
        )

    def _clear_response_timeout(self) -> None:
        if self._response_timer is not None:
            self._response_timer.cancel()
            self._response_timer = None

    def _on_response_timeout(self, run_id: str) -> None:
        self._response_timer = None
        s = self._state
        if s.run is None or s.run.id != run_id or s.phase != SessionPhase.RUNNING:
            return
        if s.streaming_text or s.thinking_text:
            return
        logger.warning(f"Response timeout for run {run_id} after {self._response_timeout_seconds}s")
        s.is_timeout_error = True
        s.error = (
            f"No response from API after {self._response_timeout_seconds:g}s. Check your API key and network."
        )
        self._publish()

    # -- loading --

    async def load_run(self, run_id: str) -> None:
        token = self._generation.advance()
        if not run_id:
            self.reset()
            return

        self._set_phase(SessionPhase.LOADING)
        self._clear_content_state()
        self._publish()
        try:
            run = await self._bridge.get_run(run_id)
            if token.cancelled:
                return
            self._adopt_run(run)
            if self._router is not None:
                self._router.subscribe_current(run_id, self)
            self._set_phase(phase_for_run_status(run.status))
            is_terminal = self._state.phase in TERMINAL_PHASES

            body = None
            if is_terminal and self._snapshots is not None:
                body = await self._snapshots.read(run_id, run.status)
                if token.cancelled:
                    return

            if body is not None and self.apply_snapshot(body):
                finalized = self.finalize_terminal()
                logger.info(f"Loaded run {run_id} from snapshot ({finalized} tools finalized)")
            else:
                events = await self._bridge.get_bus_events(run_id)
                if token.cancelled:
                    return
                self.apply_event_batch(events, replay_only=is_terminal)
                if is_terminal and self._snapshots is not None and self.should_write_snapshot(len(events)):
                    await self._snapshots.write(run_id, run.status, self.build_snapshot())
                    if token.cancelled:
                        return
                logger.info(f"Loaded run {run_id} from {len(events)} events")

            final = _RECONCILED_STATUSES.get(self._state.run.status)
            if final is not None:
                if self._state.phase != final:
                    self._set_phase(final)
                self._state.error = ""
            if run.model:
                self._state.model = run.model
            self._publish()
        except BridgeError as ex:
            if token.cancelled:
                return
            logger.error(f"Failed to load run {run_id}: {ex}")
            self._state.error = str(ex)
            self._set_phase(SessionPhase.FAILED)
            self._publish()

    # -- starting and messaging --

    async def start_session(self, prompt: str, cwd: str, attachments: list[dict] | None = None) -> str:
        self._state.error = ""
        self._set_phase(SessionPhase.SPAWNING)
        self._publish()
        try:
            run = await self._bridge.start_run(
                prompt,
                cwd,
                agent=self._state.agent,
                model=self._state.model or None,
                remote_host_name=self.remote_host_name,
                platform_id=self.platform_id,
            )
            self._state.run = run
            self._add_optimistic_user_entry(prompt, attachments)
            if self._router is not None:
                self._router.subscribe_current(run.id, self)
            self._publish()

            if self.uses_stream_session:
                await self._bridge.start_session(
                    run.id,
                    attachments=to_backend_attachments(attachments),
                    platform_id=run.platform_id,
                )
                self._start_spawn_timeout(run.id)
                if not self.is_known_slash_command(prompt):
                    self._start_response_timeout(run.id)
            else:
                self._set_phase(SessionPhase.RUNNING)
                await self._bridge.send_session_message(run.id, prompt, to_backend_attachments(attachments))
            logger.info(f"Session started for run {run.id}")
            return run.id
        except BridgeError as ex:
            self._state.error = str(ex)
            self._set_phase(SessionPhase.FAILED)
            self._publish()
            raise

    async def send_message(self, text: str, attachments: list[dict] | None = None) -> None:
        run = self._state.run
        if run is None:
            logger.warning("send_message called without a run")
            return
        self._state.error = ""
        try:
            if self.uses_stream_session and self.session_alive:
                self._add_optimistic_user_entry(text, attachments)
                self._publish()
                await self._bridge.send_session_message(run.id, text, to_backend_attachments(attachments))
                if not self.is_known_slash_command(text):
                    self._start_response_timeout(run.id)
            else:
                self._set_phase(SessionPhase.RUNNING)
                self._publish()
                await self._bridge.send_session_message(run.id, text, to_backend_attachments(attachments))
        except BridgeError as ex:
            self._state.error = str(ex)
            self._publish()
            raise

    def _add_optimistic_user_entry(self, text: str, attachments: list[dict] | None) -> None:
        self._state.timeline.append(
            UserEntry(
                id=new_entry_id(),
                content=text,
                ts=utc_now(),
                attachments=timeline_attachments(attachments),
            )
        )

    async def answer_tool_question(self, tool_use_id: str, answer: str) -> None:
        self.resolve_ask_question(tool_use_id, answer)
        run = self._state.run
        if run is None or not self.session_alive:
            logger.warning(f"Answer for {tool_use_id} kept locally; no live session")
            return
        try:
            await self._bridge.send_session_message(run.id, answer)
        except BridgeError as ex:
            self._state.error = str(ex)
            self._publish()
            raise

    # -- stopping --

    async def interrupt(self) -> None:
        run = self._state.run
        if run is None or not self.is_running:
            return
        try:
            await self._bridge.send_session_control(run.id, "interrupt")
        except BridgeError as ex:
            logger.debug(f"Interrupt failed, stopping session instead: {ex}")
            try:
                await self._bridge.stop_session(run.id)
            except BridgeError as stop_ex:
                logger.warning(f"stop_session after failed interrupt: {stop_ex}")
            current = self._state.run
            if current is None or current.id != run.id:
                return
            self._set_phase(SessionPhase.STOPPED)
            current.status = "stopped"
            self._publish()

    async def stop(self) -> None:
        run = self._state.run
        if run is None:
            return
        self._stopping = True
        self._clear_response_timeout()
        try:
            if self.session_alive:
                if self._state.phase == SessionPhase.RUNNING:
                    try:
                        await self._bridge.send_session_control(run.id, "interrupt")
                        await asyncio.sleep(self._stop_grace_seconds)
                    except BridgeError as ex:
                        logger.debug(f"Interrupt before stop failed: {ex}")
                try:
                    await self._bridge.stop_session(run.id)
                except BridgeError as ex:
                    logger.warning(f"stop_session failed, marking stopped anyway: {ex}")
            else:
                await self._bridge.stop_run(run.id)
        except BridgeError as ex:
            logger.warning(f"Stop failed for run {run.id}: {ex}")
        finally:
            self._set_phase(SessionPhase.STOPPED)
            if self._state.run is not None:
                self._state.run.status = "stopped"
            self._stopping = False
            self._publish()

    # -- resume, fork and reconnect --

    async def resume_session(
        self,
        run_id: str,
        mode: str,
        initial_message: str | None = None,
        attachments: list[dict] | None = None,
    ) -> str | None:
        """Restart the agent for a previous run. Returns the id now current, or None.

        Only one resume or fork runs at a time; a second call while one is in
        flight returns None without doing anything. A ``load_run`` issued while
        the resume is waiting wins, and the resume returns None untouched.
        """
        if mode not in RESUME_MODES:
            raise ValueError(f"Unknown resume mode: {mode!r}")
        if not self._guard.acquire():
            logger.debug(f"Resume of {run_id} ignored; another resume is in flight")
            return None
        token = self._generation.advance()
        try:
            run = await self._bridge.get_run(run_id)
            if self._stale(token):
                return None
            if phase_for_run_status(run.status) in ACTIVE_PHASES and mode != "fork":
                try:
                    await self._bridge.stop_run(run_id)
                except BridgeError as ex:
                    logger.debug(f"stop_run before resume failed: {ex}")
                run = await self._bridge.get_run(run_id)
                if self._stale(token):
                    return None
                if phase_for_run_status(run.status) in ACTIVE_PHASES:
                    raise ResumeError("Session is still running")
            if mode not in ("continue", "fork") and not run.session_id:
                raise ResumeError("No session_id available for resume")

            # Read history before clearing so a failed read leaves the view intact.
            body = await self._snapshots.read(run_id, run.status) if self._snapshots is not None else None
            if self._stale(token):
                return None
            events: list[dict] | None = None
            if body is None:
                events = await self._bridge.get_bus_events(run_id)
                if self._stale(token):
                    return None

            self._adopt_run(run)
            self._clear_content_state()
            if body is not None and not self.apply_snapshot(body):
                events = await self._bridge.get_bus_events(run_id)
                if self._stale(token):
                    return None
            if events is not None:
                self.apply_event_batch(events, replay_only=True)
            if self._snapshots is not None:
                await self._snapshots.delete(run_id)
                if self._stale(token):
                    return None

            if run.model:
                self._state.model = run.model
            if initial_message:
                self._add_optimistic_user_entry(initial_message, attachments)
            self._state.error = ""
            self._set_phase(SessionPhase.SPAWNING)
            self._publish()

            target_run_id = run_id
            if mode == "fork":
                target_run_id = await self._handle_fork(run_id, token)
                if target_run_id is None:
                    return None
            else:
                await self._bridge.start_session(
                    run_id,
                    mode=mode,
                    session_id=run.session_id,
                    initial_message=initial_message,
                    attachments=to_backend_attachments(attachments),
                    platform_id=run.platform_id,
                )
                if self._stale(token):
                    return None
                self._start_spawn_timeout(run_id)
                if initial_message and not self.is_known_slash_command(initial_message):
                    self._start_response_timeout(run_id)
            logger.info(f"Resumed run {run_id} ({mode}) as {target_run_id}")
            return target_run_id
        except (BridgeError, ResumeError) as ex:
            if not self._stale(token):
                logger.warning(f"Resume of {run_id} failed: {ex}")
                self._state.error = str(ex)
                self._set_phase(SessionPhase.FAILED)
                self._publish()
            return None
        finally:
            self._guard.release()

    def _stale(self, token: CancellationToken) -> bool:
        return token.cancelled or not self._guard.is_mounted

    def _adopt_run(self, run: Run) -> None:
        self._state.run = run
        self._state.agent = run.agent
        self.remote_host_name = run.remote_host_name
        self.platform_id = run.platform_id

    async def _handle_fork(self, run_id: str, token: CancellationToken) -> str | None:
        """Fork the session, then make the new run current and replay its own history.

        Returns None when a newer load took over while waiting.
        """
        if self._router is not None:
            self._router.subscribe_current("", self)
        new_run_id = await self._bridge.fork_session(run_id)
        if self._stale(token):
            return None
        new_run = await self._bridge.get_run(new_run_id)
        if self._stale(token):
            return None

        self._adopt_run(new_run)
        if self._router is not None:
            self._router.subscribe_current(new_run_id, self)
        self._clear_content_state()

        events = await self._bridge.get_bus_events(new_run_id)
        if self._stale(token):
            return None
        own = [event for event in events if event.get("run_id") == new_run_id]
        if own:
            self.apply_event_batch(own, replay_only=True)
        self._publish()
        return new_run_id

    async def connect_session(self, run_id: str, session_id: str | None = None) -> None:
        run = self._state.run
        sid = session_id or (run.session_id if run is not None and run.id == run_id else None)
        if not sid:
            raise ResumeError("No session_id available for connect_session")
        self._set_phase(SessionPhase.SPAWNING)
        self._publish()
        await self._bridge.start_session(run_id, mode="resume", session_id=sid, platform_id=self.platform_id)
        self._start_spawn_timeout(run_id)

    # -- teardown --

    def unmount_guards(self) -> None:
        self._guard.unmount()
        self._clear_spawn_timeout()
        self._clear_response_timeout()

    async def aclose(self) -> None:
        self.unmount_guards()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._router is not None and self._state.run is not None:
            self._router.unsubscribe(self._state.run.id)
