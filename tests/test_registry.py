"""Tests for termhost.pty.manager.SessionRegistry."""

from __future__ import annotations

import asyncio
import re

import pytest

from termhost.pty.errors import (
    CompletionTimeoutError,
    SessionBusyError,
    SessionDisappearedError,
    SessionError,
    SessionNotActiveError,
    SessionNotFoundError,
    SpawnError,
    WaitSupersededError,
)
from termhost.pty.manager import SessionRegistry
from termhost.pty.markers import EXIT_CODE_MARK, ExitCodes
from termhost.pty.session import SessionStatus
from termhost.pty.shell import get_shell_config
from termhost.session.wire import EventType, Wire

from conftest import FakeSpawner

MARK = EXIT_CODE_MARK


async def _start_wait(registry: SessionRegistry, session_id: str, **kwargs) -> asyncio.Task:
    task = asyncio.create_task(registry.wait_for_completion(session_id, **kwargs))
    await asyncio.sleep(0)
    return task


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_generated_id_format(self, registry: SessionRegistry) -> None:
        session = await registry.create()
        assert re.fullmatch(r"session_\d+_\d+", session.session_id)
        assert session.status == SessionStatus.RUNNING
        assert session.exit_code is None

    async def test_ids_never_reused(self, registry: SessionRegistry) -> None:
        ids = {(await registry.create()).session_id for _ in range(5)}
        assert len(ids) == 5

    async def test_duplicate_id_rejected(self, registry: SessionRegistry) -> None:
        await registry.create("fixed")
        with pytest.raises(SessionError):
            await registry.create("fixed")

    async def test_spawns_default_shell(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        await registry.create()
        shell_path, argv, kwargs = spawner.calls[0]
        assert shell_path == "bash"
        assert argv == []
        assert kwargs["rows"] == 30 and kwargs["cols"] == 80
        assert kwargs["env"]["TERM"] == "xterm-color"

    async def test_command_written_with_marker(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="ls -la")
        assert spawner.last.writes == ["ls -la\r", f"echo {MARK}:$?\r"]
        assert session.command == "ls -la"

    async def test_bare_shell_writes_nothing(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create()
        assert spawner.last.writes == []
        assert session.command == "bash"

    async def test_created_event(self, registry: SessionRegistry, wire: Wire) -> None:
        q = wire.subscribe()
        session = await registry.create(command="ls")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_CREATED
        assert event.data["session_id"] == session.session_id

    async def test_spawn_failure(self, wire: Wire) -> None:
        registry = SessionRegistry(
            wire,
            spawner=FakeSpawner(error=OSError("no pty")),
            shell=get_shell_config("Linux"),
        )
        with pytest.raises(SpawnError) as exc_info:
            await registry.create("broken", command="ls")
        assert "no pty" in str(exc_info.value)
        session = registry.get("broken")
        assert session is not None
        assert session.status == SessionStatus.ERROR
        assert session.exit_code == ExitCodes.PTY_SPAWN_ERROR
        assert not session.alive

    async def test_write_failure_marks_error(
        self, registry: SessionRegistry, spawner: FakeSpawner, wire: Wire
    ) -> None:
        session = await registry.create("s1")
        q = wire.subscribe()
        spawner.last.fail_write = True
        registry.submit_command("s1", "ls")
        assert session.status == SessionStatus.ERROR
        assert session.exit_code == ExitCodes.GENERAL_ERROR
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.ERROR


# ---------------------------------------------------------------------------
# Output and marker detection
# ---------------------------------------------------------------------------


class TestOutput:
    async def test_marker_sets_exit_code(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="false")
        spawner.last.emit(f"{MARK}:1\r\n")
        assert session.exit_code == 1

    async def test_marker_split_across_chunks(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="exit 3")
        spawner.last.emit("output\r\n__EXITCO")
        spawner.last.emit("DE_MARK__:")
        assert session.exit_code is None
        spawner.last.emit("3\r\n$ ")
        assert session.exit_code == 3

    async def test_echoed_emit_command_ignored(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="ls")
        spawner.last.emit(f"$ echo {MARK}:$?\r\n")
        assert session.exit_code is None

    async def test_first_code_is_kept(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="ls")
        spawner.last.emit(f"{MARK}:0\r\n")
        spawner.last.emit(f"{MARK}:9\r\n")
        assert session.exit_code == 0

    async def test_buffer_keeps_raw_output(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="ls")
        spawner.last.emit("\x1b[32mfile\x1b[0m\r\n")
        assert session.buffer.read_all() == "\x1b[32mfile\x1b[0m\r\n"

    async def test_wire_output_is_filtered(
        self, registry: SessionRegistry, spawner: FakeSpawner, wire: Wire
    ) -> None:
        await registry.create(command="echo hi")
        q = wire.subscribe()
        spawner.last.emit(f"hi\r\n$ echo {MARK}:$?\r\n{MARK}:0\r\n$ ")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.OUTPUT
        assert "hi" in event.data["data"]
        assert MARK not in event.data["data"]

    async def test_marker_only_chunk_not_broadcast(
        self, registry: SessionRegistry, spawner: FakeSpawner, wire: Wire
    ) -> None:
        await registry.create(command="true")
        q = wire.subscribe()
        spawner.last.emit(f"{MARK}:0\r\n")
        assert q.empty()

    async def test_get_output(self, registry: SessionRegistry, spawner: FakeSpawner) -> None:
        session = await registry.create(command="echo hi")
        spawner.last.emit("hi\r\n")
        result = registry.get_output(session.session_id)
        assert result["output"] == "hi\r\n"
        assert result["exitCode"] is None
        assert result["status"] == "running"

    async def test_get_output_unknown(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFoundError):
            registry.get_output("nope")


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


class TestInput:
    async def test_write_input(self, registry: SessionRegistry, spawner: FakeSpawner) -> None:
        session = await registry.create()
        registry.write_input(session.session_id, "y\r")
        assert spawner.last.writes == ["y\r"]

    async def test_write_input_failure(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create()
        spawner.last.fail_write = True
        with pytest.raises(SessionError):
            registry.write_input(session.session_id, "x")
        assert session.status == SessionStatus.ERROR

    async def test_write_input_unknown(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFoundError):
            registry.write_input("nope", "x")

    async def test_write_input_after_stop(self, registry: SessionRegistry) -> None:
        session = await registry.create()
        registry.stop(session.session_id)
        with pytest.raises(SessionNotActiveError):
            registry.write_input(session.session_id, "x")

    async def test_resize(self, registry: SessionRegistry, spawner: FakeSpawner) -> None:
        session = await registry.create()
        registry.resize(session.session_id, 120, 40)
        assert spawner.last.size == (120, 40)


class TestSubmitCommand:
    async def test_resets_buffer_and_exit_code(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="echo one")
        spawner.last.emit(f"one\r\n{MARK}:0\r\n")
        assert session.exit_code == 0

        registry.submit_command(session.session_id, "echo two")
        assert session.exit_code is None
        assert session.buffer.read_all() == ""
        assert session.status == SessionStatus.RUNNING
        assert session.command == "echo two"

        spawner.last.emit(f"two\r\n{MARK}:4\r\n")
        assert session.exit_code == 4
        assert "one" not in session.buffer.read_all()

    async def test_reset_clears_carry_over(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="a")
        spawner.last.emit(f"{MARK}:0\r\n")
        registry.submit_command(session.session_id, "b")
        spawner.last.emit("still running\r\n")
        assert session.exit_code is None

    async def test_posix_payload_repeats(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="a")
        registry.submit_command(session.session_id, "b")
        assert spawner.last.writes == ["a\r", f"echo {MARK}:$?\r", "b\r", f"echo {MARK}:$?\r"]

    async def test_powershell_setup_sent_once(
        self, spawner: FakeSpawner, wire: Wire
    ) -> None:
        registry = SessionRegistry(wire, spawner=spawner, shell=get_shell_config("Windows"))
        session = await registry.create(command="dir")
        registry.submit_command(session.session_id, "dir")
        writes = spawner.last.writes
        assert sum(1 for w in writes if w.startswith("function __exitmark")) == 1
        assert writes[-2:] == ["dir\r", "__exitmark\r"]

    async def test_not_live(self, registry: SessionRegistry) -> None:
        session = await registry.create()
        registry.stop(session.session_id)
        with pytest.raises(SessionNotActiveError):
            registry.submit_command(session.session_id, "ls")


# ---------------------------------------------------------------------------
# Completion waiting
# ---------------------------------------------------------------------------


class TestWaitForCompletion:
    async def test_resolves_on_marker(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="echo hi")
        task = await _start_wait(registry, session.session_id)
        spawner.last.emit(f"echo hi\r\nhi\r\n$ echo {MARK}:$?\r\n{MARK}:0\r\n$ ")
        result = await asyncio.wait_for(task, 1)

        assert result["sessionId"] == session.session_id
        assert result["status"] == "completed"
        assert result["exitCode"] == 0
        assert "hi" in result["output"]
        assert result["output"].endswith("Exit Code: 0\r\n")
        assert MARK not in result["output"]
        assert session.status == SessionStatus.COMPLETED
        assert registry.pending_waiters() == []

    async def test_already_done_returns_immediately(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="true")
        spawner.last.emit(f"{MARK}:0\r\n")
        result = await asyncio.wait_for(registry.wait_for_completion(session.session_id), 1)
        assert result["exitCode"] == 0
        assert registry.pending_waiters() == []

    async def test_unknown_session(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFoundError):
            await registry.wait_for_completion("nope")

    async def test_resolves_on_natural_exit(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="exit 7")
        task = await _start_wait(registry, session.session_id)
        spawner.last.exit(7)
        result = await asyncio.wait_for(task, 1)
        assert result["exitCode"] == 7
        assert session.status == SessionStatus.EXITED

    async def test_disappearance_rejects(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="sleep 100")
        task = await _start_wait(registry, session.session_id)
        registry._sessions.pop(session.session_id)
        with pytest.raises(SessionDisappearedError, match="disappeared"):
            await asyncio.wait_for(task, 1)
        assert registry.pending_waiters() == []

    async def test_newer_wait_supersedes(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="sleep 100")
        first = await _start_wait(registry, session.session_id)
        second = await _start_wait(registry, session.session_id)
        with pytest.raises(WaitSupersededError):
            await asyncio.wait_for(first, 1)
        assert registry.pending_waiters() == [session.session_id]

        spawner.last.emit(f"{MARK}:0\r\n")
        result = await asyncio.wait_for(second, 1)
        assert result["exitCode"] == 0

    async def test_timeout_leaves_session_running(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="sleep 100")
        with pytest.raises(CompletionTimeoutError):
            await registry.wait_for_completion(session.session_id, timeout=0.05)
        assert session.alive
        assert session.status == SessionStatus.RUNNING
        assert registry.pending_waiters() == []

    async def test_configured_timeout(self, spawner: FakeSpawner, wire: Wire) -> None:
        registry = SessionRegistry(
            wire,
            spawner=spawner,
            shell=get_shell_config("Linux"),
            poll_interval=0.01,
            completion_timeout=0.05,
        )
        session = await registry.create(command="sleep 100")
        with pytest.raises(CompletionTimeoutError):
            await registry.wait_for_completion(session.session_id)


# ---------------------------------------------------------------------------
# Unblock
# ---------------------------------------------------------------------------


class TestUnblock:
    async def test_resolves_waiter_with_snapshot(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="tail -f log")
        task = await _start_wait(registry, session.session_id)

        assert registry.unblock(session.session_id, "partial output") is True
        result = await asyncio.wait_for(task, 1)
        assert result["status"] == "unblocked"
        assert result["output"] == "partial output"
        assert result["exitCode"] is None
        assert result["lastUnblockedOutput"] == "partial output"
        assert result["lastUnblockedOutputTimestamp"] is not None
        assert session.alive
        assert spawner.last.kill_count == 0

    async def test_resolves_exactly_once(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="tail -f log")
        task = await _start_wait(registry, session.session_id)
        assert registry.unblock(session.session_id, "first") is True
        assert registry.unblock(session.session_id, "second") is False
        result = await asyncio.wait_for(task, 1)
        assert result["output"] == "first"
        assert session.last_unblocked_output == "second"

    async def test_later_wait_sees_real_exit_code(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="make")
        task = await _start_wait(registry, session.session_id)
        registry.unblock(session.session_id, "building...")
        await asyncio.wait_for(task, 1)

        again = await _start_wait(registry, session.session_id)
        spawner.last.emit(f"done\r\n{MARK}:2\r\n")
        result = await asyncio.wait_for(again, 1)
        assert result["exitCode"] == 2
        assert result["status"] == "completed"

    async def test_submit_rejected_while_unblocked_command_runs(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="make")
        task = await _start_wait(registry, session.session_id)
        registry.unblock(session.session_id, "building...")
        await asyncio.wait_for(task, 1)
        writes_before = list(spawner.last.writes)

        with pytest.raises(SessionBusyError):
            registry.submit_command(session.session_id, "ls")
        assert spawner.last.writes == writes_before
        assert session.command == "make"

        spawner.last.emit(f"{MARK}:4\r\n")
        assert session.exit_code == 4
        registry.submit_command(session.session_id, "ls")
        assert session.command == "ls"
        assert session.exit_code is None

    async def test_without_waiter_records_snapshot(self, registry: SessionRegistry) -> None:
        session = await registry.create(command="ls")
        assert registry.unblock(session.session_id, "snap") is False
        assert session.last_unblocked_output == "snap"
        assert session.status == SessionStatus.RUNNING

    async def test_unknown_session(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFoundError):
            registry.unblock("nope", "x")


# ---------------------------------------------------------------------------
# Stop / close / cleanup
# ---------------------------------------------------------------------------


class TestStop:
    async def test_stop_marks_terminated(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="sleep 100")
        registry.stop(session.session_id)
        assert session.status == SessionStatus.TERMINATED
        assert session.exit_code == ExitCodes.MANUAL_TERMINATION
        assert session.process is None
        assert spawner.last.kill_count == 1

    async def test_stop_twice(self, registry: SessionRegistry, spawner: FakeSpawner) -> None:
        session = await registry.create(command="sleep 100")
        registry.stop(session.session_id)
        registry.stop(session.session_id)
        assert session.status == SessionStatus.TERMINATED
        assert spawner.last.kill_count == 1

    async def test_stop_keeps_observed_exit_code(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="true")
        spawner.last.emit(f"{MARK}:0\r\n")
        registry.stop(session.session_id)
        assert session.exit_code == 0

    async def test_stop_resolves_waiter(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="sleep 100")
        task = await _start_wait(registry, session.session_id)
        registry.stop(session.session_id)
        result = await asyncio.wait_for(task, 1)
        assert result["status"] == "terminated"
        assert result["exitCode"] == -2
        assert result["output"].endswith("Exit Code: -2\r\n")

    async def test_stop_unknown(self, registry: SessionRegistry) -> None:
        with pytest.raises(SessionNotFoundError, match="not found"):
            registry.stop("nope")

    async def test_kill_failure_still_terminates(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="sleep 100")
        spawner.last.kill_error = PermissionError("denied")
        with pytest.raises(PermissionError):
            registry.stop(session.session_id)
        assert session.status == SessionStatus.TERMINATED
        assert session.process is None

    async def test_exit_after_stop_ignored(
        self, registry: SessionRegistry, spawner: FakeSpawner, wire: Wire
    ) -> None:
        session = await registry.create(command="sleep 100")
        process = spawner.last
        registry.stop(session.session_id)
        q = wire.subscribe()
        process.exit(137)
        process.emit("late output")
        assert session.status == SessionStatus.TERMINATED
        assert session.exit_code == ExitCodes.MANUAL_TERMINATION
        assert session.buffer.read_all() == ""
        assert q.empty()


class TestNaturalExit:
    async def test_exit_event(
        self, registry: SessionRegistry, spawner: FakeSpawner, wire: Wire
    ) -> None:
        session = await registry.create()
        q = wire.subscribe()
        spawner.last.exit(5)
        assert session.status == SessionStatus.EXITED
        assert session.exit_code == 5
        assert session.process is None
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.EXIT
        assert event.data == {"session_id": session.session_id, "exit_code": 5}

    async def test_unknown_exit_status(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create()
        spawner.last.exit(None)
        assert session.exit_code == ExitCodes.GENERAL_ERROR

    async def test_marker_code_wins(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        session = await registry.create(command="exit")
        spawner.last.emit(f"{MARK}:0\r\n")
        spawner.last.exit(1)
        assert session.exit_code == 0


class TestCloseAndCleanup:
    async def test_close_removes(self, registry: SessionRegistry, spawner: FakeSpawner) -> None:
        session = await registry.create()
        assert registry.close(session.session_id) is True
        assert session.session_id not in registry
        assert spawner.last.kill_count == 1

    async def test_close_unknown(self, registry: SessionRegistry) -> None:
        assert registry.close("nope") is False

    async def test_list_sessions(self, registry: SessionRegistry) -> None:
        a = await registry.create(command="ls")
        b = await registry.create()
        registry.stop(b.session_id)
        summaries = {s["sessionId"]: s for s in registry.list_sessions()}
        assert summaries[a.session_id]["status"] == "running"
        assert summaries[a.session_id]["pid"] is not None
        assert summaries[b.session_id]["status"] == "terminated"
        assert summaries[b.session_id]["pid"] is None

    async def test_cleanup_all_empties_everything(
        self, registry: SessionRegistry, spawner: FakeSpawner
    ) -> None:
        first = await registry.create(command="sleep 100")
        second = await registry.create(command="sleep 100")
        spawner.processes[0].kill_error = RuntimeError("kill failed")
        waits = [
            await _start_wait(registry, first.session_id),
            await _start_wait(registry, second.session_id),
        ]

        registry.cleanup_all()

        assert len(registry) == 0
        assert registry.pending_waiters() == []
        for task in waits:
            result = await asyncio.wait_for(task, 1)
            assert result["status"] == "terminated"
        assert all(p.kill_count == 1 for p in spawner.processes)
