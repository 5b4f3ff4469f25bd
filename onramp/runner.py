"""
Ansible step executor for the OnRamp playbook checkout.

The TaskManager only depends on the ``StepExecutor`` protocol; ``AnsibleRunner``
is the production implementation that shells out to ``ansible-playbook`` the
way the OnRamp Makefiles do.

Usage:
    from onramp.runner import AnsibleRunner

    runner = AnsibleRunner(Path("/opt/aether-onramp"))
    runner.ensure_vars_file()
    runner.run_step(step, str(runner.inventory_path), sys.stdout, threading.Event())
"""

import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

import yaml

from onramp.errors import ConfigurationError, StepCancelledError, StepExecutionError
from onramp.playbooks import PlaybookStep

logger = logging.getLogger(__name__)

# Seconds between cancel-event checks while a playbook runs
CANCEL_POLL_INTERVAL = 0.1
# Seconds to wait after SIGTERM before SIGKILL
TERMINATE_GRACE_PERIOD = 10.0

# deps/<dir> exported as <NAME>_ROOT_DIR, as the OnRamp Makefile does
COMPONENT_ROOT_DIRS = {
    "5GC_ROOT_DIR": "5gc",
    "4GC_ROOT_DIR": "4gc",
    "K8S_ROOT_DIR": "k8s",
    "AMP_ROOT_DIR": "amp",
    "GNBSIM_ROOT_DIR": "gnbsim",
    "SRSRAN_ROOT_DIR": "srsran",
    "OAI_ROOT_DIR": "oai",
    "SDRAN_ROOT_DIR": "sdran",
    "UERANSIM_ROOT_DIR": "ueransim",
    "OSCRIC_ROOT_DIR": "oscric",
    "N3IWF_ROOT_DIR": "n3iwf",
}


class OutputSink(Protocol):
    def write(self, data: str) -> Any:
        ...


class StepExecutor(Protocol):
    """
    Runs one playbook step against an inventory.

    Implementations must write step output to ``output`` as it is produced,
    should stop early once ``cancel_event`` is set, and must raise
    StepExecutionError (StepCancelledError when cancelled) if and only if
    the step did not complete successfully.
    """

    def run_step(
        self,
        step: PlaybookStep,
        inventory: str,
        output: OutputSink,
        cancel_event: threading.Event,
    ) -> None:
        ...


class AnsibleRunner:
    """Executes ansible-playbook commands inside an OnRamp checkout."""

    def __init__(
        self,
        onramp_dir: Union[str, Path],
        vars_file: Optional[Union[str, Path]] = None,
        inventory_file: Optional[Union[str, Path]] = None,
        playbook_bin: str = "ansible-playbook",
    ):
        self.onramp_dir = Path(onramp_dir)
        self.vars_file = Path(vars_file) if vars_file else self.onramp_dir / "vars" / "main.yml"
        self._inventory_file = Path(inventory_file) if inventory_file else None
        self.playbook_bin = playbook_bin

    @property
    def inventory_path(self) -> Path:
        """Inventory used when the caller does not supply one."""
        return self._inventory_file or self.onramp_dir / "hosts.ini"

    @property
    def vars_dir(self) -> Path:
        return self.vars_file.parent

    # ----- vars / blueprints --------------------------------------------------

    def list_blueprints(self) -> List[str]:
        """Names of available blueprints (``vars/main-<name>.yml``)."""
        names = []
        for path in sorted(self.vars_dir.glob("main-*.yml")):
            names.append(path.stem[len("main-"):])
        return names

    def activate_blueprint(self, name: str) -> Path:
        """
        Copy ``vars/main-<name>.yml`` over the active vars file.

        Raises:
            ConfigurationError: blueprint missing or not a YAML mapping
        """
        src = self.vars_dir / f"main-{name}.yml"
        if not src.exists():
            raise ConfigurationError(f"blueprint {name!r} not found: {src}")
        self._load_yaml_mapping(src)
        shutil.copyfile(src, self.vars_file)
        logger.info(f"Activated blueprint {name} -> {self.vars_file}")
        return self.vars_file

    def ensure_vars_file(self) -> bool:
        """
        Make sure the active vars file exists.

        When it is missing, the ``quickstart`` blueprint is activated if the
        checkout ships one.

        Returns:
            True if a vars file is now in place
        """
        if self.vars_file.exists():
            return True
        if not (self.vars_dir / "main-quickstart.yml").exists():
            logger.warning(f"No vars file at {self.vars_file} and no quickstart blueprint")
            return False
        self.activate_blueprint("quickstart")
        return True

    def load_vars(self) -> Dict[str, Any]:
        """Parse the active vars file."""
        return self._load_yaml_mapping(self.vars_file)

    @staticmethod
    def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
        try:
            with open(path) as f:
                content = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed to read {path}: {e}") from e
        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigurationError(f"{path} must contain a YAML mapping")
        return content

    # ----- execution ----------------------------------------------------------

    def build_command(self, step: PlaybookStep, inventory: str) -> List[str]:
        cmd = [
            self.playbook_bin,
            step.playbook,
            "-i", inventory,
            "--extra-vars", f"ROOT_DIR={self.onramp_dir}",
            "--extra-vars", f"@{self.vars_file}",
        ]
        tags = step.tag_string()
        if tags:
            cmd.extend(["--tags", tags])
        return cmd

    def build_env(self, inventory: str) -> Dict[str, str]:
        """Environment the OnRamp Makefile exports for playbook runs."""
        root = str(self.onramp_dir)
        env = os.environ.copy()
        env["ANSIBLE_CONFIG"] = str(self.onramp_dir / "ansible.cfg")
        env["ROOT_DIR"] = root
        env["AETHER_ROOT_DIR"] = root
        env["HOSTS_INI_FILE"] = inventory
        for var, subdir in COMPONENT_ROOT_DIRS.items():
            env[var] = str(self.onramp_dir / "deps" / subdir)
        return env

    def run_step(
        self,
        step: PlaybookStep,
        inventory: str,
        output: OutputSink,
        cancel_event: threading.Event,
    ) -> None:
        """
        Run one playbook, streaming combined stdout/stderr into ``output``.

        Undecodable bytes are replaced rather than raised. If reading output
        fails, the child is terminated before the error propagates.

        Raises:
            StepCancelledError: cancel_event was set before or during the run
            StepExecutionError: binary missing or non-zero exit status
        """
        if cancel_event.is_set():
            raise StepCancelledError("cancelled before start", step_name=step.name)

        cmd = self.build_command(step, inventory)
        logger.debug(f"Running {' '.join(cmd)}")

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.onramp_dir),
                env=self.build_env(inventory),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise StepExecutionError(
                f"{self.playbook_bin} not found: {e}", step_name=step.name
            ) from e
        except OSError as e:
            raise StepExecutionError(
                f"failed to start {self.playbook_bin}: {e}", step_name=step.name
            ) from e

        finished = threading.Event()
        watcher = threading.Thread(
            target=self._terminate_on_cancel,
            args=(proc, cancel_event, finished),
            name=f"ansible-cancel-{proc.pid}",
            daemon=True,
        )
        watcher.start()

        completed = False
        try:
            for line in proc.stdout:
                output.write(line)
            return_code = proc.wait()
            completed = True
        finally:
            finished.set()
            watcher.join()
            if not completed:
                self._stop_process(proc)
            proc.stdout.close()

        if cancel_event.is_set():
            raise StepCancelledError(
                f"cancelled (exit status {return_code})",
                step_name=step.name,
                return_code=return_code,
            )
        if return_code != 0:
            raise StepExecutionError(
                f"{self.playbook_bin} exited with status {return_code}",
                step_name=step.name,
                return_code=return_code,
            )

    @staticmethod
    def _terminate_on_cancel(
        proc: subprocess.Popen,
        cancel_event: threading.Event,
        finished: threading.Event,
    ) -> None:
        while not finished.is_set():
            if not cancel_event.wait(CANCEL_POLL_INTERVAL):
                continue
            logger.info(f"Cancel requested, terminating ansible-playbook pid {proc.pid}")
            AnsibleRunner._stop_process(proc)
            return

    @staticmethod
    def _stop_process(proc: subprocess.Popen) -> None:
        """Terminate the child if it is still running, killing it after the grace period."""
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_GRACE_PERIOD)
        except subprocess.TimeoutExpired:
            logger.warning(f"ansible-playbook pid {proc.pid} ignored SIGTERM, killing")
            proc.kill()
            proc.wait()
