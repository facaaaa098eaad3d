"""Tests for verb implementation probing and process execution."""

import os
import signal
import time

import pytest

from stackctl.errors import ExecutionError
from stackctl.process import InterruptGuard, find_implementation, detect_implementation, run_verb

from conftest import write_script


class TestProbe:
    """Tests for finding a verb implementation."""

    def test_makefile_target_preferred(self, tmp_path):
        (tmp_path / "Makefile").write_text("deploy:\n\t@echo deploy\n")
        write_script(tmp_path, "deploy.sh", "echo sh\n")
        implementation = detect_implementation(tmp_path, "deploy")
        assert implementation.args[-1] == "deploy"
        assert implementation.args[0].endswith("make")

    def test_makefile_without_target(self, tmp_path):
        (tmp_path / "Makefile").write_text("undeploy:\n\t@echo undeploy\n")
        write_script(tmp_path, "deploy.sh", "echo sh\n")
        implementation = detect_implementation(tmp_path, "deploy")
        assert implementation.path == str(tmp_path / "deploy.sh")

    def test_executable_before_shell_script(self, tmp_path):
        script = write_script(tmp_path, "deploy", "echo exe\n")
        os.chmod(script, 0o755)
        write_script(tmp_path, "deploy.sh", "echo sh\n")
        implementation = detect_implementation(tmp_path, "deploy")
        assert implementation.args == (str(script),)

    def test_non_executable_script_ignored(self, tmp_path):
        write_script(tmp_path, "deploy", "echo exe\n")
        assert detect_implementation(tmp_path, "deploy") is None

    def test_nothing_found(self, tmp_path):
        assert detect_implementation(tmp_path, "backup") is None

    def test_find_missing_directory(self, tmp_path):
        with pytest.raises(ExecutionError, match="not found"):
            find_implementation("web", tmp_path / "missing", "deploy")

    def test_find_missing_verb(self, tmp_path):
        with pytest.raises(ExecutionError, match="No `backup` implementation"):
            find_implementation("web", tmp_path, "backup")


class TestRunVerb:
    """Tests for running an implementation."""

    def test_captures_output_and_exit_code(self, tmp_path):
        write_script(tmp_path, "deploy.sh", 'echo "hello $GREETING"\necho oops >&2\nexit 7\n')
        implementation = find_implementation("web", tmp_path, "deploy")
        result = run_verb("web", implementation, {"GREETING": "world", "PATH": os.environ.get("PATH", "")}, relay=False)

        assert result.returncode == 7
        assert not result.ok
        assert result.stdout == "hello world\n"
        assert result.stderr == "oops\n"

    def test_runs_in_component_directory(self, tmp_path):
        write_script(tmp_path, "deploy.sh", "pwd\n")
        implementation = find_implementation("web", tmp_path, "deploy")
        result = run_verb("web", implementation, {"PATH": os.environ.get("PATH", "")}, relay=False)
        assert result.ok
        assert os.path.realpath(result.stdout.strip()) == os.path.realpath(tmp_path)

    def test_relay_banners(self, tmp_path, capsys):
        write_script(tmp_path, "deploy.sh", "echo relayed\n")
        implementation = find_implementation("web", tmp_path, "deploy")
        run_verb("web", implementation, {"PATH": os.environ.get("PATH", "")}, relay=True)
        out = capsys.readouterr().out
        assert f"--- Dir: {tmp_path}" in out
        assert "relayed" in out

    def test_extra_args(self, tmp_path):
        write_script(tmp_path, "deploy.sh", 'echo "$1"\n')
        implementation = find_implementation("web", tmp_path, "deploy")
        result = run_verb("web", implementation, {}, relay=False, extra_args=["arg1"])
        assert result.stdout == "arg1\n"


class TestInterruptGuard:
    """Tests for deferring SIGINT/SIGTERM until the current component is done."""

    def test_first_signal_sets_flag(self):
        with InterruptGuard() as guard:
            assert guard.interrupted is None
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(0.1)
            assert guard.interrupted == "SIGTERM"

    def test_second_signal_forces_exit(self):
        with pytest.raises(KeyboardInterrupt):
            with InterruptGuard():
                os.kill(os.getpid(), signal.SIGINT)
                time.sleep(0.1)
                os.kill(os.getpid(), signal.SIGINT)
                time.sleep(0.1)

    def test_previous_handlers_restored(self):
        before = signal.getsignal(signal.SIGTERM)
        with InterruptGuard():
            assert signal.getsignal(signal.SIGTERM) != before
        assert signal.getsignal(signal.SIGTERM) == before

    def test_child_finishes_after_signal(self, tmp_path):
        """The child started before the signal runs to completion and its output is kept."""
        write_script(tmp_path, "deploy.sh", "kill -TERM $PPID\nsleep 0.3\necho finished\n")
        implementation = detect_implementation(tmp_path, "deploy")
        with InterruptGuard() as guard:
            result = run_verb("c", implementation, {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}, relay=False)
        assert guard.interrupted == "SIGTERM"
        assert result.ok
        assert result.stdout == "finished\n"
