"""Tests for the hook dispatcher: the five verbs, payload adapters, and
how store problems turn into typed results."""

from __future__ import annotations

from pathlib import Path

import pytest

from engram.config import EngramConfig
from engram.hooks import HookDispatcher
from engram.results import BLOCKED, DEGRADED, ERROR, OK, REJECTED
from engram.storage import Storage
from tests.conftest import count_rows


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


def _broken_dispatcher(tmp_path: Path, kind: str) -> HookDispatcher:
    """A dispatcher whose store is either unavailable or corrupt."""
    if kind == "unavailable":
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        db_path = blocker / "engram.db"
    else:
        db_path = tmp_path / "corrupt.db"
        db_path.write_bytes(b"this is not a sqlite database " * 64)
    cfg = EngramConfig(db_path=db_path, backup_dir=tmp_path / "backups")
    return HookDispatcher(Storage(db_path, config=cfg), config=cfg)


# -----------------------------------------------------------------------
# End-to-end
# -----------------------------------------------------------------------


class TestScenario:

    async def test_learn_retrieve_block_and_summarise(self, dispatcher: HookDispatcher) -> None:
        first = await dispatcher.post_task("add-auth", "success")
        assert first.status == OK
        assert first.pattern.confidence == pytest.approx(0.6)

        second = await dispatcher.post_task("add-auth", "success")
        assert second.pattern.confidence == pytest.approx(0.64)
        assert second.pattern.occurrence_count == 2

        found = await dispatcher.pre_task("add")
        assert [(r.pattern.key, round(r.pattern.confidence, 2)) for r in found.patterns] == [
            ("add-auth", 0.64)
        ]
        assert "1. add-auth (confidence 0.64, seen 2x, last success)" in found.render()

        blocked = await dispatcher.pre_command("rm -rf /")
        assert blocked.status == BLOCKED
        assert blocked.exit_code == 2
        assert "BLOCKED" in blocked.render()

        failed = await dispatcher.post_task("add-auth", "failure", "tests failed")
        assert failed.pattern.confidence == pytest.approx(0.544)
        assert failed.failure_id is not None

        ended = await dispatcher.session_end()
        session = ended.session
        assert (session.success_count, session.failure_count, session.patterns_learned) == (2, 1, 1)
        assert ended.exit_code == 0


# -----------------------------------------------------------------------
# Verbs
# -----------------------------------------------------------------------


class TestPreTask:

    async def test_repeated_failure_warning(self, dispatcher: HookDispatcher) -> None:
        for i in range(3):
            await dispatcher.post_task("deploy", "failure", f"error {i}")
        result = await dispatcher.pre_task("deploy")
        assert result.warning == "'deploy' has failed 3 times before"
        assert result.failure_count == 3
        assert result.recent_errors == ["error 2", "error 1", "error 0"]
        assert "Warning" in result.render()

    async def test_below_threshold_no_warning(self, dispatcher: HookDispatcher) -> None:
        await dispatcher.post_task("deploy", "failure")
        await dispatcher.post_task("deploy", "failure")
        result = await dispatcher.pre_task("deploy")
        assert result.warning is None

    async def test_falls_back_to_context(self, dispatcher: HookDispatcher) -> None:
        await dispatcher.post_task("migrate", "success", context="billing")
        result = await dispatcher.pre_task("", "billing")
        assert [r.pattern.key for r in result.patterns] == ["migrate"]

    async def test_empty_store(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.pre_task("anything")
        assert result.status == OK
        assert result.patterns == []
        assert result.render() == ""


class TestPostTask:

    @pytest.mark.parametrize(
        "task, outcome",
        [("", "success"), ("   ", "failure"), ("build", "maybe"), ("build", "")],
    )
    async def test_rejected(self, dispatcher: HookDispatcher, task: str, outcome: str) -> None:
        result = await dispatcher.post_task(task, outcome)
        assert result.status == REJECTED
        assert result.exit_code == 1
        assert result.render().startswith("[engram] post-task rejected:")
        assert await count_rows(dispatcher.storage, "patterns") == 0

    async def test_success_does_not_log_failure(self, dispatcher: HookDispatcher) -> None:
        await dispatcher.post_task("build", "success")
        assert await count_rows(dispatcher.storage, "failures") == 0

    async def test_failure_logged_with_pattern(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.post_task("build", "failure", "linker error")
        assert result.failure_id is not None
        failures = await dispatcher.storage.get_recent_failures("build")
        assert [(f.id, f.error_message) for f in failures] == [(result.failure_id, "linker error")]

    async def test_failed_log_append_leaves_pattern_untouched(
        self, dispatcher: HookDispatcher
    ) -> None:
        await dispatcher.post_task("build", "success")
        before = await dispatcher.storage.get_pattern("build")
        await dispatcher.storage.execute_write("DROP TABLE failures")

        result = await dispatcher.post_task("build", "failure", "linker error")
        assert result.status == ERROR
        after = await dispatcher.storage.get_pattern("build")
        assert after == before
        assert await count_rows(dispatcher.storage, "pattern_outcomes") == 1

    async def test_render(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.post_task("build", "success")
        assert result.render() == (
            "[engram] Recorded success for 'build': confidence 0.6000 (1 occurrences)"
        )


class TestPreCommand:

    async def test_allowed(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.pre_command("git status")
        assert result.status == OK
        assert result.verdict.allowed is True
        assert result.render() == ""

    async def test_failure_history_warning(self, dispatcher: HookDispatcher) -> None:
        for _ in range(3):
            await dispatcher.failures.record("npm test", "exit 1")
        result = await dispatcher.pre_command("npm test")
        assert result.status == OK
        assert result.warning == "this command has failed 3 times before"

    async def test_empty_command_allowed(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.pre_command("")
        assert result.status == OK
        assert result.exit_code == 0


class TestSessions:

    async def test_start_and_end(self, dispatcher: HookDispatcher) -> None:
        started = await dispatcher.session_start()
        assert started.status == OK
        assert started.resumed is False
        await dispatcher.post_task("build", "success")
        ended = await dispatcher.session_end("built it")
        assert ended.session.summary == "built it"
        assert ended.session.started_at == started.window_start
        again = await dispatcher.session_start()
        assert again.last_session.summary == "built it"
        assert "Last session" in again.render()


# -----------------------------------------------------------------------
# Store failures
# -----------------------------------------------------------------------


class TestUnavailableStore:

    async def test_read_verbs_degrade(self, tmp_path: Path) -> None:
        dispatcher = _broken_dispatcher(tmp_path, "unavailable")
        pre = await dispatcher.pre_task("add")
        assert pre.status == DEGRADED
        assert pre.exit_code == 0
        assert pre.patterns == []
        assert "unavailable" in pre.render()

        start = await dispatcher.session_start()
        assert start.status == DEGRADED

    async def test_write_verbs_error(self, tmp_path: Path) -> None:
        dispatcher = _broken_dispatcher(tmp_path, "unavailable")
        post = await dispatcher.post_task("add", "success")
        assert post.status == ERROR
        assert post.exit_code == 1
        end = await dispatcher.session_end()
        assert end.status == ERROR

    async def test_pre_command_still_gates(self, tmp_path: Path) -> None:
        dispatcher = _broken_dispatcher(tmp_path, "unavailable")
        blocked = await dispatcher.pre_command("rm -rf /")
        assert blocked.status == BLOCKED
        allowed = await dispatcher.pre_command("ls -la")
        assert allowed.status == OK
        assert allowed.history_available is False
        assert "failure history unavailable" in allowed.render()


class TestCorruptStore:

    async def test_error_points_at_backups(self, tmp_path: Path) -> None:
        dispatcher = _broken_dispatcher(tmp_path, "corrupt")
        result = await dispatcher.pre_task("add")
        assert result.status == ERROR
        assert "restore it from a backup" in result.message
        assert str(tmp_path / "backups") in result.message

    async def test_blocking_unaffected(self, tmp_path: Path) -> None:
        dispatcher = _broken_dispatcher(tmp_path, "corrupt")
        assert (await dispatcher.pre_command("mkfs /dev/sda")).status == BLOCKED
        allowed = await dispatcher.pre_command("ls")
        assert allowed.history_available is False


# -----------------------------------------------------------------------
# Generic dispatch and payload adapters
# -----------------------------------------------------------------------


class TestDispatch:

    async def test_unknown_verb(self, dispatcher: HookDispatcher) -> None:
        with pytest.raises(ValueError, match="Unknown hook verb"):
            await dispatcher.dispatch("post-commit", {})

    async def test_non_object_payload(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.dispatch("pre-task", ["add"])  # type: ignore[arg-type]
        assert result.status == REJECTED
        assert "JSON object" in result.message

    async def test_tool_input_command(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.dispatch(
            "pre-command", {"tool_name": "Bash", "tool_input": {"command": "rm -rf ~"}}
        )
        assert result.status == BLOCKED

    async def test_non_bash_tool_allowed(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.dispatch(
            "pre-command", {"tool_name": "Edit", "tool_input": {"file_path": "x.py"}}
        )
        assert result.status == OK

    async def test_assistant_payload_fields(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.dispatch(
            "post-task",
            {"prompt": "add auth", "success": False, "error": "boom", "cwd": "/work/myapp"},
        )
        assert result.status == OK
        assert result.pattern.context == "myapp"
        failures = await dispatcher.failures.recent("add auth")
        assert [f.error_message for f in failures] == ["boom"]

    async def test_session_end_summary_field(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.dispatch("session-end", {"summary": "done"})
        assert result.session.summary == "done"

    async def test_to_dict(self, dispatcher: HookDispatcher) -> None:
        result = await dispatcher.dispatch("pre-task", {"task": "x"})
        data = result.to_dict()
        assert data["verb"] == "pre-task"
        assert data["status"] == OK
        assert data["exit_code"] == 0
        assert data["patterns"] == []


# -----------------------------------------------------------------------
# Non-hook operations
# -----------------------------------------------------------------------


class TestOperations:

    async def test_hook_stats_recorded(self, dispatcher: HookDispatcher) -> None:
        await dispatcher.pre_task("x")
        await dispatcher.post_task("", "success")
        await dispatcher.pre_command("rm -rf /")
        stats = {(s["verb"], s["status"]): s["calls"] for s in await dispatcher.storage.hook_stats()}
        assert stats == {
            ("pre-task", OK): 1,
            ("post-task", REJECTED): 1,
            ("pre-command", BLOCKED): 1,
        }

    async def test_status(self, dispatcher: HookDispatcher) -> None:
        await dispatcher.post_task("build", "success")
        status = await dispatcher.status()
        assert status["integrity"] == "ok"
        assert status["patterns"] == 1
        assert status["session_state"] == "inactive"
        assert status["matcher"] == "substring"
        assert status["last_session"] is None

    async def test_consolidate(self, dispatcher: HookDispatcher) -> None:
        data = await dispatcher.consolidate(dry_run=True)
        assert data["dry_run"] is True
        assert data["pruned"] == 0

    async def test_causal_links(self, dispatcher: HookDispatcher) -> None:
        await dispatcher.record_causal_link("migrate db", "restart workers")
        link = await dispatcher.record_causal_link("migrate db", "restart workers")
        assert link["confidence"] == pytest.approx(0.64)
        links = await dispatcher.causal_links("MIGRATE")
        assert [(l["cause"], l["effect"]) for l in links] == [("migrate db", "restart workers")]
