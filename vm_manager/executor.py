import json
import logging
import subprocess
from dataclasses import dataclass
from threading import Lock
from typing import Any

from vm_manager.errors import ProvisioningFailed, ProvisioningTimeout


logger = logging.getLogger(__name__)


@dataclass
class ProvisioningResult:
    log: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class ProvisioningExecutor:
    def __init__(
        self,
        cli: str = "azure",
        timeout_sec: float | None = None,
        config_mode_command: list[str] | None = None,
    ):
        self.cli = cli
        self.timeout_sec = timeout_sec
        self.config_mode_command = list(config_mode_command or [])
        self._lock = Lock()
        self._running: dict[str, subprocess.Popen] = {}

    def build_command(
        self,
        resource_group: str,
        vm_name: str,
        template_path: str,
        parameters: dict[str, Any],
    ) -> list[str]:
        return [
            self.cli,
            "group",
            "deployment",
            "create",
            resource_group,
            "-n",
            vm_name,
            "-f",
            template_path,
            "-p",
            json.dumps(parameters),
        ]

    def submit(
        self,
        resource_group: str,
        vm_name: str,
        template_path: str,
        parameters: dict[str, Any],
    ) -> ProvisioningResult:
        self._switch_config_mode(vm_name)
        cmd = self.build_command(resource_group, vm_name, template_path, parameters)
        logger.info(
            "provisioning deployment resource_group=%s vm_name=%s template=%s",
            resource_group,
            vm_name,
            template_path,
        )
        proc = self._spawn(cmd, vm_name)
        with self._lock:
            self._running[vm_name] = proc
        try:
            stdout, stderr = proc.communicate(timeout=self.timeout_sec)
        except subprocess.TimeoutExpired as exc:
            proc.kill()
            stdout, stderr = proc.communicate()
            log = (stdout or "") + (stderr or "")
            logger.error(
                "provisioning timed out vm_name=%s timeout_sec=%s",
                vm_name,
                self.timeout_sec,
            )
            raise ProvisioningTimeout(
                vm_name=vm_name, timeout_sec=exc.timeout, log=log
            ) from exc
        finally:
            with self._lock:
                self._running.pop(vm_name, None)
        return ProvisioningResult(
            log=(stdout or "") + (stderr or ""), exit_code=proc.returncode
        )

    def cancel(self, vm_name: str) -> bool:
        with self._lock:
            proc = self._running.get(vm_name)
        if proc is None or proc.poll() is not None:
            return False
        logger.warning("cancelling provisioning vm_name=%s pid=%s", vm_name, proc.pid)
        proc.kill()
        return True

    def _spawn(self, cmd: list[str], vm_name: str) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise ProvisioningFailed(
                vm_name=vm_name, detail=f"could not run {cmd[0]}: {exc}"
            ) from exc

    def _switch_config_mode(self, vm_name: str) -> None:
        if not self.config_mode_command:
            return
        cmd = [self.cli, *self.config_mode_command]
        try:
            completed = subprocess.run(
                cmd,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
            )
        except OSError as exc:
            raise ProvisioningFailed(
                vm_name=vm_name, detail=f"could not run {cmd[0]}: {exc}"
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ProvisioningTimeout(
                vm_name=vm_name, timeout_sec=exc.timeout
            ) from exc
        if completed.returncode != 0:
            logger.warning(
                "config mode switch exited %s cmd=%s output=%s",
                completed.returncode,
                " ".join(cmd),
                (completed.stderr or completed.stdout or "").strip(),
            )
