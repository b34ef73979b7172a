"""Tests for GitHub Actions plumbing: commands, file commands, masking, log rendering."""

from __future__ import annotations

import io
import logging

import pytest

from spritekit.actions import (
    ActionsRuntime,
    SecretRedactingFilter,
    WorkflowCommandHandler,
    format_command,
    running_in_actions,
)


@pytest.fixture
def files(tmp_path):
    paths = {name: tmp_path / name.lower() for name in ("GITHUB_OUTPUT", "GITHUB_STATE", "GITHUB_ENV")}
    for path in paths.values():
        path.write_text("")
    return paths


def runtime_with(files, **env) -> tuple[ActionsRuntime, io.StringIO]:
    stream = io.StringIO()
    full_env = {name: str(path) for name, path in files.items()}
    full_env.update(env)
    return ActionsRuntime(full_env, stream), stream


# ── Workflow commands ────────────────────────────────────────────────────────


class TestFormatCommand:
    def test_plain(self):
        assert format_command("warning", "disk low") == "::warning::disk low"

    def test_message_escaped(self):
        assert format_command("error", "50% done\nnext") == "::error::50%25 done%0Anext"

    def test_properties_escaped(self):
        line = format_command("warning", "x", file="a:b,c.py", line="3")
        assert line == "::warning file=a%3Ab%2Cc.py,line=3::x"

    def test_no_message(self):
        assert format_command("endgroup") == "::endgroup::"


class TestRunningInActions:
    def test_detects_runner(self):
        assert running_in_actions({"GITHUB_ACTIONS": "true"})
        assert not running_in_actions({})


# ── Inputs & file commands ───────────────────────────────────────────────────


class TestInputs:
    def test_get_input(self):
        runtime = ActionsRuntime({"INPUT_STEP-KEY": "  build  ", "INPUT_DRY-RUN": "true"})
        assert runtime.get_input("step-key") == "build"
        assert runtime.get_input("missing") == ""

    def test_required_input(self):
        with pytest.raises(ValueError, match="step-key"):
            ActionsRuntime({}).get_input("step-key", required=True)

    @pytest.mark.parametrize("raw,expected", [("true", True), ("False", False), ("1", True), ("", None)])
    def test_bool_input(self, raw, expected):
        runtime = ActionsRuntime({"INPUT_CHECKPOINT": raw})
        if expected is None:
            assert runtime.get_bool_input("checkpoint", default=True) is True
        else:
            assert runtime.get_bool_input("checkpoint") is expected

    def test_bool_input_invalid(self):
        with pytest.raises(ValueError):
            ActionsRuntime({"INPUT_CHECKPOINT": "maybe"}).get_bool_input("checkpoint")

    def test_get_state(self):
        assert ActionsRuntime({"STATE_sprite": "gh-a"}).get_state("sprite") == "gh-a"


class TestFileCommands:
    def test_set_output(self, files):
        runtime, _ = runtime_with(files)
        runtime.set_output("sprite-name", "gh-acme-widgets-ci-1-build")
        runtime.set_output("needs-restore", False)
        runtime.set_output("last-checkpoint-id", None)
        assert files["GITHUB_OUTPUT"].read_text() == (
            "sprite-name=gh-acme-widgets-ci-1-build\nneeds-restore=false\nlast-checkpoint-id=\n"
        )

    def test_multiline_uses_delimiter(self, files):
        runtime, _ = runtime_with(files)
        runtime.set_output("log", "line 1\nline 2")
        lines = files["GITHUB_OUTPUT"].read_text().splitlines()
        assert lines[0].startswith("log<<ghadelimiter_")
        delimiter = lines[0].split("<<", 1)[1]
        assert lines[1:] == ["line 1", "line 2", delimiter]

    def test_export_and_state(self, files):
        runtime, _ = runtime_with(files)
        runtime.export_variable("SPRITEKIT_RESTORE_DONE", True)
        runtime.save_state("SPRITEKIT_JOB_KEY", "build")
        assert files["GITHUB_ENV"].read_text() == "SPRITEKIT_RESTORE_DONE=true\n"
        assert files["GITHUB_STATE"].read_text() == "SPRITEKIT_JOB_KEY=build\n"

    def test_outside_runner_is_noop(self):
        runtime = ActionsRuntime({}, io.StringIO())
        runtime.set_output("x", "y")  # no GITHUB_OUTPUT: dropped

    def test_group(self, files):
        runtime, stream = runtime_with(files)
        with runtime.group("Running: make"):
            runtime.write("output\n")
        assert stream.getvalue() == "::group::Running: make\noutput\n::endgroup::\n"

    def test_group_closed_on_error(self, files):
        runtime, stream = runtime_with(files)
        with pytest.raises(RuntimeError):
            with runtime.group("Running: make"):
                raise RuntimeError("boom")
        assert stream.getvalue().endswith("::endgroup::\n")


# ── Masking & log rendering ──────────────────────────────────────────────────


class TestMasking:
    def test_add_mask_prints_command(self, files):
        runtime, stream = runtime_with(files)
        runtime.add_mask("sk_live_123")
        assert stream.getvalue() == "::add-mask::sk_live_123\n"

    def test_filter_redacts(self):
        redactor = SecretRedactingFilter()
        redactor.register("sk_live_123")
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "token=%s", ("sk_live_123",), None)
        assert redactor.filter(record) is True
        assert record.getMessage() == "token=***"

    def test_longest_secret_first(self):
        redactor = SecretRedactingFilter()
        redactor.register("abc")
        redactor.register("abcdef")
        assert redactor.redact("key abcdef") == "key ***"

    def test_untouched_without_secrets(self):
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "value %d", (3,), None)
        SecretRedactingFilter().filter(record)
        assert record.args == (3,)


class TestWorkflowCommandHandler:
    def emit(self, level: int, message: str) -> str:
        stream = io.StringIO()
        handler = WorkflowCommandHandler(stream)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.handle(logging.LogRecord("spritekit", level, __file__, 1, message, None, None))
        return stream.getvalue()

    def test_levels(self):
        assert self.emit(logging.INFO, "Found 3 checkpoints") == "Found 3 checkpoints\n"
        assert self.emit(logging.WARNING, "retrying") == "::warning::retrying\n"
        assert self.emit(logging.ERROR, "failed") == "::error::failed\n"
        assert self.emit(logging.DEBUG, "detail") == "::debug::detail\n"

    def test_multiline_annotation_escaped(self):
        assert self.emit(logging.ERROR, "a\nb") == "::error::a%0Ab\n"
