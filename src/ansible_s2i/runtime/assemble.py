"""
S2I assemble and save-artifacts steps.

assemble restores roles saved by a previous build, copies the application
source into APP_HOME and installs Galaxy requirements. save-artifacts streams
the installed roles back out so an incremental build can reuse them.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tarfile
from pathlib import Path
from typing import BinaryIO, Optional

logger = logging.getLogger(__name__)

SOURCE_DIR = Path("/tmp/src")
ARTIFACTS_DIR = Path("/tmp/artifacts")
REQUIREMENTS_FILE = "requirements.yml"
ROLES_DIR = "roles"


def restore_artifacts(artifacts_dir: Path, app_home: Path) -> bool:
    """
    Move the contents of a previous build's artifacts into app_home.
    Returns True if anything was restored.
    """
    if not artifacts_dir.is_dir():
        return False
    entries = list(artifacts_dir.iterdir())
    if not entries:
        return False
    logger.info("Restoring build artifacts from %s", artifacts_dir)
    for entry in entries:
        shutil.move(str(entry), str(app_home / entry.name))
    return True


def copy_sources(source_dir: Path, app_home: Path) -> None:
    logger.info("Installing application source from %s", source_dir)
    shutil.copytree(source_dir, app_home, dirs_exist_ok=True)


def install_requirements(app_home: Path) -> bool:
    requirements = app_home / REQUIREMENTS_FILE
    if not requirements.is_file():
        return False
    cmd = [
        "ansible-galaxy", "install",
        "-r", REQUIREMENTS_FILE,
        "-p", ROLES_DIR,
    ]
    logger.info("Installing Galaxy requirements from %s", requirements)
    subprocess.run(cmd, check=True, cwd=app_home)
    return True


def assemble(
    app_home: Path,
    source_dir: Path = SOURCE_DIR,
    artifacts_dir: Path = ARTIFACTS_DIR,
) -> None:
    app_home.mkdir(parents=True, exist_ok=True)
    restore_artifacts(artifacts_dir, app_home)
    copy_sources(source_dir, app_home)
    install_requirements(app_home)


def save_artifacts(app_home: Path, stream: Optional[BinaryIO] = None) -> None:
    """
    Write a tar archive of the installed roles to stream (stdout by default).
    An empty archive is written when there are no roles.
    """
    stream = stream or sys.stdout.buffer
    roles = app_home / ROLES_DIR
    with tarfile.open(fileobj=stream, mode="w|") as tar:
        if roles.is_dir():
            tar.add(str(roles), arcname=ROLES_DIR)
    stream.flush()


def app_home_from_environ() -> Path:
    return Path(os.environ.get("APP_HOME") or os.getcwd())
