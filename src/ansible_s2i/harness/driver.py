"""
Integration test driver for the builder image.

Builds the bundled sample application with ``s2i`` (twice, to exercise
save-artifacts/assemble across incremental builds), runs the result with
Docker and checks that the playbook inside exits cleanly. Every command's exit
code is checked; the first failure triggers cleanup and its code is returned.
"""
from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Sequence

import requests

from ansible_s2i.polling import poll

TEST_APP_PATH = Path(__file__).parent / "test-app"

DEFAULT_CONTAINER_ENV = {
    "PLAYBOOK_FILE": "test-playbook.yaml",
    "INVENTORY_FILE": "inventory",
    "OPTS": "-vvv -u 1001 --connection local",
}
CONTAINER_USER = "100001"
PROBE_TIMEOUT = 5


class StepFailed(Exception):
    """
    A driver step failed; carries the exit code to propagate.
    """
    def __init__(self, step: str, returncode: int):
        super().__init__(f"{step} failed with exit code {returncode}")
        self.step = step
        self.returncode = returncode


class IntegrationTestDriver:
    """
    Runs the build/run/cleanup sequence against one builder image.
    """
    def __init__(
        self,
        image_name: str,
        s2i_args: str = "",
        probe_url: Optional[str] = None,
        attempts: int = 10,
        delay: float = 1.0,
        container_env: Optional[dict] = None,
        keep_image: bool = False,
        test_app: Path = TEST_APP_PATH,
    ):
        self.image_name = image_name
        self.s2i_args = shlex.split(s2i_args)
        self.probe_url = probe_url
        self.attempts = attempts
        self.delay = delay
        self.container_env = dict(DEFAULT_CONTAINER_ENV if container_env is None else container_env)
        self.keep_image = keep_image
        self.test_app = test_app
        self.workdir: Optional[Path] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def app_image(self) -> str:
        return f"{self.image_name}-testapp"

    @property
    def app_dir(self) -> Path:
        if self.workdir is None:
            raise RuntimeError("prepare() has not been called")
        return self.workdir / "test-app"

    @property
    def cid_file(self) -> Path:
        if self.workdir is None:
            raise RuntimeError("prepare() has not been called")
        return self.workdir / "cid"

    def _run(self, step: str, cmd: Sequence[str], **kwargs) -> subprocess.CompletedProcess:
        self.logger.info("%s: %s", step, shlex.join(cmd))
        try:
            result = subprocess.run(list(cmd), **kwargs)
        except OSError as e:
            self.logger.error("Cannot run %s: %s", cmd[0], e)
            raise StepFailed(step, 127) from e
        if result.returncode != 0:
            raise StepFailed(step, result.returncode)
        return result

    def image_exists(self) -> None:
        self._run(
            "image check", ["docker", "inspect", self.image_name],
            stdout=subprocess.DEVNULL,
        )

    def prepare(self) -> Path:
        """
        Copy the sample application into a scratch directory and commit it
        to a fresh Git repository, as s2i builds from a Git source.
        """
        self.workdir = Path(tempfile.mkdtemp(prefix="ansible-s2i-test-"))
        shutil.copytree(self.test_app, self.app_dir)
        git = ["git", "-C", str(self.app_dir)]
        self._run("git init", [*git, "init", "-q"])
        self._run("git config", [*git, "config", "user.email", "build@localhost"])
        self._run("git config", [*git, "config", "user.name", "builder"])
        self._run("git add", [*git, "add", "-A"])
        self._run("git commit", [*git, "commit", "-q", "-m", "Sample commit"])
        return self.app_dir

    def s2i_build(self) -> None:
        cmd = [
            "s2i", "build", "--incremental=true", *self.s2i_args,
            f"file://{self.app_dir}", self.image_name, self.app_image,
        ]
        self._run("s2i build", cmd)

    def s2i_usage(self) -> None:
        self._run(
            "s2i usage", ["s2i", "usage", *self.s2i_args, self.image_name],
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
        )

    def run_container(self) -> None:
        env_args = []
        for k, v in self.container_env.items():
            env_args += ["-e", f"{k}={v}"]
        cmd = [
            "docker", "run", f"--user={CONTAINER_USER}", *env_args,
            "-d", f"--cidfile={self.cid_file}", self.app_image,
        ]
        self._run("docker run", cmd, stdout=subprocess.DEVNULL)

    def container_id(self) -> Optional[str]:
        if self.workdir is None or not self.cid_file.is_file():
            return None
        return self.cid_file.read_text().strip() or None

    def wait_for_cid(self) -> bool:
        """
        Wait for the CID file. Running out of attempts is only logged; the
        run continues as if the container had started.
        """
        found = poll(self.cid_file.is_file, attempts=self.attempts, delay=self.delay)
        if not found:
            self.logger.warning(
                "CID file %s did not appear after %d attempts", self.cid_file, self.attempts
            )
        return found

    def wait_for_exit(self) -> None:
        cid = self.container_id()
        if cid is None:
            self.logger.warning("No container id, skipping exit code check")
            return
        result = self._run(
            "docker wait", ["docker", "wait", cid],
            capture_output=True, text=True,
        )
        output = result.stdout.strip()
        try:
            code = int(output)
        except ValueError:
            self.logger.error("Unexpected output from docker wait: %r", output)
            raise StepFailed("docker wait", 1) from None
        if code != 0:
            self._run_unchecked(["docker", "logs", cid], quiet=False)
            raise StepFailed("container", code)
        self.logger.info("Container %s exited with 0", cid[:12])

    def _probe_once(self) -> bool:
        try:
            resp = requests.get(self.probe_url, timeout=PROBE_TIMEOUT)
        except requests.RequestException as e:
            self.logger.debug("Probe of %s failed: %s", self.probe_url, e)
            return False
        return resp.status_code == 200

    def probe(self) -> None:
        if not self.probe_url:
            return
        if not poll(self._probe_once, attempts=self.attempts, delay=self.delay):
            raise StepFailed(f"probe {self.probe_url}", 1)
        self.logger.info("Probe of %s returned 200", self.probe_url)

    def cleanup(self) -> None:
        """
        Remove the container, the application image and the scratch
        directory. Failures here are logged and otherwise ignored.
        """
        cid = self.container_id()
        if cid is not None:
            for cmd in (["docker", "stop", cid], ["docker", "rm", cid]):
                self._run_unchecked(cmd)
        if not self.keep_image:
            self._run_unchecked(["docker", "rmi", self.app_image])
        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)
            self.workdir = None

    def _run_unchecked(self, cmd: list, quiet: bool = True) -> None:
        out = subprocess.DEVNULL if quiet else None
        try:
            result = subprocess.run(cmd, stdout=out, stderr=out)
        except OSError as e:
            self.logger.warning("Cannot run %s: %s", cmd[0], e)
            return
        if result.returncode != 0:
            self.logger.warning("Command failed (%d): %s", result.returncode, shlex.join(cmd))

    def run(self) -> int:
        """
        Run the whole sequence. Returns 0 on success, otherwise the exit code
        of the first failing step.
        """
        try:
            self.image_exists()
            self.prepare()
            # The second build restores the artifacts saved by the first one.
            self.s2i_build()
            self.s2i_build()
            self.s2i_usage()
            self.run_container()
            self.wait_for_cid()
            if self.probe_url:
                # A probed container is a service and is not expected to exit.
                self.probe()
            else:
                self.wait_for_exit()
        except StepFailed as e:
            self.logger.error("Test failed: %s", e)
            return e.returncode
        finally:
            self.cleanup()
        self.logger.info("Tests for %s succeeded", self.image_name)
        return 0
