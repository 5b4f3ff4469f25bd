"""
Tests for AnsibleRunner - command construction, output streaming and cancel.
"""

import io
import subprocess
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from onramp.errors import ConfigurationError, StepCancelledError, StepExecutionError
from onramp.playbooks import PlaybookStep
from onramp.runner import TERMINATE_GRACE_PERIOD, AnsibleRunner


ROOT = Path("/opt/aether-onramp")


def _fake_proc(lines, return_code=0):
    proc = MagicMock()
    proc.pid = 4242
    proc.stdout = io.StringIO("".join(lines))
    proc.wait.return_value = return_code
    proc.poll.return_value = return_code
    return proc


class TestBuildCommand:
    """Tests for ansible-playbook argument construction"""

    def test_with_tags(self):
        runner = AnsibleRunner(ROOT)
        step = PlaybookStep("Install 5GC Core", "deps/5gc/core.yml", ("install",))

        cmd = runner.build_command(step, "/opt/aether-onramp/hosts.ini")

        assert cmd == [
            "ansible-playbook",
            "deps/5gc/core.yml",
            "-i", "/opt/aether-onramp/hosts.ini",
            "--extra-vars", f"ROOT_DIR={ROOT}",
            "--extra-vars", f"@{ROOT / 'vars' / 'main.yml'}",
            "--tags", "install",
        ]

    def test_without_tags(self):
        runner = AnsibleRunner(ROOT, vars_file="/etc/onramp/vars.yml", playbook_bin="/usr/bin/ap")
        cmd = runner.build_command(PlaybookStep("Ping", "pingall.yml"), "hosts.ini")

        assert cmd[0] == "/usr/bin/ap"
        assert "--tags" not in cmd
        assert "@/etc/onramp/vars.yml" in cmd

    def test_inventory_default(self):
        assert AnsibleRunner(ROOT).inventory_path == ROOT / "hosts.ini"
        assert AnsibleRunner(ROOT, inventory_file="/x/inv.ini").inventory_path == Path("/x/inv.ini")


class TestBuildEnv:
    """Tests for the OnRamp environment"""

    def test_onramp_variables(self):
        env = AnsibleRunner(ROOT).build_env("/inv/hosts.ini")

        assert env["ANSIBLE_CONFIG"] == str(ROOT / "ansible.cfg")
        assert env["ROOT_DIR"] == str(ROOT)
        assert env["AETHER_ROOT_DIR"] == str(ROOT)
        assert env["HOSTS_INI_FILE"] == "/inv/hosts.ini"
        assert env["5GC_ROOT_DIR"] == str(ROOT / "deps" / "5gc")
        assert env["SRSRAN_ROOT_DIR"] == str(ROOT / "deps" / "srsran")
        assert env["N3IWF_ROOT_DIR"] == str(ROOT / "deps" / "n3iwf")

    def test_inherits_process_environment(self):
        with patch.dict("os.environ", {"PATH": "/custom/bin"}):
            env = AnsibleRunner(ROOT).build_env("hosts.ini")
        assert env["PATH"] == "/custom/bin"


class TestRunStep:
    """Tests for run_step() with a mocked subprocess"""

    def test_streams_output_on_success(self):
        runner = AnsibleRunner(ROOT)
        step = PlaybookStep("Install RKE2", "deps/k8s/rke2.yml", ("install",))
        sink = io.StringIO()
        proc = _fake_proc(["PLAY [all]\n", "ok: [node1]\n"])

        with patch("onramp.runner.subprocess.Popen", return_value=proc) as mock_popen:
            runner.run_step(step, "hosts.ini", sink, threading.Event())

        assert sink.getvalue() == "PLAY [all]\nok: [node1]\n"
        kwargs = mock_popen.call_args.kwargs
        assert kwargs["cwd"] == str(ROOT)
        assert kwargs["stderr"] == subprocess.STDOUT
        assert kwargs["env"]["HOSTS_INI_FILE"] == "hosts.ini"

    def test_nonzero_exit_raises(self):
        runner = AnsibleRunner(ROOT)
        step = PlaybookStep("Install Helm", "deps/k8s/helm.yml", ("install",))
        proc = _fake_proc(["fatal: [node1]: FAILED!\n"], return_code=2)

        with patch("onramp.runner.subprocess.Popen", return_value=proc):
            with pytest.raises(StepExecutionError) as exc_info:
                runner.run_step(step, "hosts.ini", io.StringIO(), threading.Event())

        assert exc_info.value.return_code == 2
        assert exc_info.value.step_name == "Install Helm"
        assert not isinstance(exc_info.value, StepCancelledError)

    def test_missing_binary(self):
        runner = AnsibleRunner(ROOT)
        with patch("onramp.runner.subprocess.Popen", side_effect=FileNotFoundError("ansible-playbook")):
            with pytest.raises(StepExecutionError, match="not found"):
                runner.run_step(PlaybookStep("Ping", "pingall.yml"), "hosts.ini",
                                io.StringIO(), threading.Event())

    def test_cancelled_before_start_does_not_launch(self):
        runner = AnsibleRunner(ROOT)
        cancel = threading.Event()
        cancel.set()

        with patch("onramp.runner.subprocess.Popen") as mock_popen:
            with pytest.raises(StepCancelledError):
                runner.run_step(PlaybookStep("Ping", "pingall.yml"), "hosts.ini",
                                io.StringIO(), cancel)

        mock_popen.assert_not_called()

    def test_cancel_during_run_terminates_process(self):
        runner = AnsibleRunner(ROOT)
        cancel = threading.Event()
        terminated = threading.Event()

        class BlockingStdout:
            def __iter__(self):
                yield "TASK [wait]\n"
                terminated.wait(5)

            def close(self):
                pass

        proc = MagicMock()
        proc.pid = 99
        proc.stdout = BlockingStdout()
        proc.poll.return_value = None
        proc.terminate.side_effect = terminated.set
        proc.wait.return_value = -15

        sink = io.StringIO()
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        try:
            with patch("onramp.runner.subprocess.Popen", return_value=proc):
                with pytest.raises(StepCancelledError):
                    runner.run_step(PlaybookStep("Wait", "wait.yml"), "hosts.ini", sink, cancel)
        finally:
            timer.cancel()

        proc.terminate.assert_called_once()
        assert sink.getvalue() == "TASK [wait]\n"

    def test_output_decoded_as_utf8_with_replacement(self):
        runner = AnsibleRunner(ROOT)
        proc = _fake_proc(["ok: [node1]\n"])

        with patch("onramp.runner.subprocess.Popen", return_value=proc) as mock_popen:
            runner.run_step(PlaybookStep("Ping", "pingall.yml"), "hosts.ini",
                            io.StringIO(), threading.Event())

        kwargs = mock_popen.call_args.kwargs
        assert kwargs["encoding"] == "utf-8"
        assert kwargs["errors"] == "replace"

    @pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script")
    def test_non_utf8_output_does_not_fail_step(self, tmp_path):
        script = tmp_path / "ansible-playbook"
        script.write_text("#!/bin/sh\nprintf 'ok: [node1] \\377\\376\\n'\nexit 0\n")
        script.chmod(0o755)
        runner = AnsibleRunner(tmp_path, playbook_bin=str(script))
        sink = io.StringIO()

        runner.run_step(PlaybookStep("Ping", "pingall.yml"), "hosts.ini", sink, threading.Event())

        assert sink.getvalue() == "ok: [node1] \ufffd\ufffd\n"

    def test_read_error_terminates_process(self):
        runner = AnsibleRunner(ROOT)
        proc = _fake_proc(["PLAY [all]\n"])
        proc.poll.return_value = None
        proc.wait.return_value = -15

        class BrokenSink:
            def write(self, data):
                raise OSError("disk full")

        with patch("onramp.runner.subprocess.Popen", return_value=proc):
            with pytest.raises(OSError, match="disk full"):
                runner.run_step(PlaybookStep("Ping", "pingall.yml"), "hosts.ini",
                                BrokenSink(), threading.Event())

        proc.terminate.assert_called_once()
        proc.wait.assert_called_once_with(timeout=TERMINATE_GRACE_PERIOD)
        proc.kill.assert_not_called()

    def test_read_error_kills_process_ignoring_sigterm(self):
        runner = AnsibleRunner(ROOT)
        proc = MagicMock()
        proc.pid = 7
        proc.stdout = MagicMock()
        proc.stdout.__iter__.side_effect = UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte")
        proc.poll.return_value = None
        proc.wait.side_effect = [subprocess.TimeoutExpired("ansible-playbook", TERMINATE_GRACE_PERIOD), -9]

        with patch("onramp.runner.subprocess.Popen", return_value=proc):
            with pytest.raises(UnicodeDecodeError):
                runner.run_step(PlaybookStep("Ping", "pingall.yml"), "hosts.ini",
                                io.StringIO(), threading.Event())

        proc.terminate.assert_called_once()
        proc.kill.assert_called_once()
        assert proc.wait.call_count == 2
        proc.stdout.close.assert_called_once()

    def test_finished_process_not_terminated(self):
        runner = AnsibleRunner(ROOT)
        proc = _fake_proc(["ok: [node1]\n"])

        with patch("onramp.runner.subprocess.Popen", return_value=proc):
            runner.run_step(PlaybookStep("Ping", "pingall.yml"), "hosts.ini",
                            io.StringIO(), threading.Event())

        proc.terminate.assert_not_called()


class TestVarsFile:
    """Tests for blueprint / vars handling"""

    def test_ensure_uses_quickstart(self, tmp_path):
        vars_dir = tmp_path / "vars"
        vars_dir.mkdir()
        (vars_dir / "main-quickstart.yml").write_text(yaml.safe_dump({"core": {"standalone": True}}))
        runner = AnsibleRunner(tmp_path)

        assert runner.ensure_vars_file() is True
        assert runner.load_vars() == {"core": {"standalone": True}}

    def test_ensure_keeps_existing(self, tmp_path):
        vars_dir = tmp_path / "vars"
        vars_dir.mkdir()
        (vars_dir / "main.yml").write_text("k8s:\n  rke2: {}\n")
        (vars_dir / "main-quickstart.yml").write_text("other: 1\n")
        runner = AnsibleRunner(tmp_path)

        assert runner.ensure_vars_file() is True
        assert "k8s" in runner.load_vars()

    def test_ensure_without_blueprint(self, tmp_path):
        assert AnsibleRunner(tmp_path).ensure_vars_file() is False

    def test_list_and_activate_blueprints(self, tmp_path):
        vars_dir = tmp_path / "vars"
        vars_dir.mkdir()
        (vars_dir / "main-gnbsim.yml").write_text("gnbsim: {}\n")
        (vars_dir / "main-srsran.yml").write_text("srsran: {}\n")
        runner = AnsibleRunner(tmp_path)

        assert runner.list_blueprints() == ["gnbsim", "srsran"]
        runner.activate_blueprint("srsran")
        assert runner.load_vars() == {"srsran": {}}

    def test_activate_missing_blueprint(self, tmp_path):
        (tmp_path / "vars").mkdir()
        with pytest.raises(ConfigurationError, match="not found"):
            AnsibleRunner(tmp_path).activate_blueprint("nope")

    def test_non_mapping_blueprint_rejected(self, tmp_path):
        vars_dir = tmp_path / "vars"
        vars_dir.mkdir()
        (vars_dir / "main-bad.yml").write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            AnsibleRunner(tmp_path).activate_blueprint("bad")
