"""
S2I run script: prepare the environment and exec ansible-playbook.

This is intended to run as the container's entrypoint. It reads:
- INVENTORY_FILE: path of an inventory to copy (wins over the URL sources)
- INVENTORY_URL: URL of an inventory to download
- DYNAMIC_SCRIPT_URL: URL of a dynamic inventory script, made executable
- ALLOW_ANSIBLE_CONNECTION_LOCAL: the literal "false" strips ansible_connection=local
- VAULT_PASS: vault password, written to a file passed with --vault-password-file
- WORK_DIR: directory to run from (defaults to APP_HOME)
- OPTS, PLAYBOOK_FILE: passed to ansible-playbook as given

Any failing step aborts with a non-zero exit code; on success the process is
replaced by ansible-playbook and its exit code is the result.
"""
from __future__ import annotations

import argparse
import logging
import os
import shlex
import shutil
import string
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import requests

logger = logging.getLogger(__name__)

ANSIBLE_PLAYBOOK = "ansible-playbook"
INVENTORY_PATH = Path("/tmp/inventory")
VAULT_PASS_PATH = Path("/tmp/secrets/vault-password")
PASSWD_PATH = Path("/etc/passwd")
PASSWD_TEMPLATE = Path("etc") / "passwd.template"
DEFAULT_APP_HOME = "/opt/app-root/src"
LOCAL_CONNECTION = "ansible_connection=local"
FETCH_TIMEOUT = 60


@dataclass
class LauncherSettings:
    inventory_file: Optional[str] = None
    inventory_url: Optional[str] = None
    dynamic_script_url: Optional[str] = None
    allow_connection_local: Optional[str] = None
    vault_pass: Optional[str] = None
    work_dir: Optional[str] = None
    opts: str = ""
    playbook_file: Optional[str] = None
    app_home: str = DEFAULT_APP_HOME
    app_root: Optional[str] = None
    user_name: str = "default"
    inventory_path: Path = INVENTORY_PATH
    vault_pass_path: Path = VAULT_PASS_PATH
    passwd_path: Path = PASSWD_PATH

    @classmethod
    def from_environ(cls, env: Optional[Mapping[str, str]] = None) -> "LauncherSettings":
        """
        Build settings from environment variables. A variable set to the
        empty string counts as set.
        """
        env = os.environ if env is None else env
        return cls(
            inventory_file=env.get("INVENTORY_FILE"),
            inventory_url=env.get("INVENTORY_URL"),
            dynamic_script_url=env.get("DYNAMIC_SCRIPT_URL"),
            allow_connection_local=env.get("ALLOW_ANSIBLE_CONNECTION_LOCAL"),
            vault_pass=env.get("VAULT_PASS"),
            work_dir=env.get("WORK_DIR") or None,
            opts=env.get("OPTS", ""),
            playbook_file=env.get("PLAYBOOK_FILE") or None,
            app_home=env.get("APP_HOME") or DEFAULT_APP_HOME,
            app_root=env.get("APP_ROOT") or None,
            user_name=env.get("USER_NAME") or "default",
            inventory_path=Path(env.get("INVENTORY_PATH") or INVENTORY_PATH),
            vault_pass_path=Path(env.get("VAULT_PASS_FILE") or VAULT_PASS_PATH),
            passwd_path=Path(env.get("PASSWD_FILE") or PASSWD_PATH),
        )

    @property
    def strip_local_connection(self) -> bool:
        return self.allow_connection_local == "false"


def write_passwd(settings: LauncherSettings, uid: int, gid: int) -> Optional[Path]:
    """
    Render the passwd template so the arbitrary uid the container runs as
    has a named entry. Only the USER_NAME entry of the existing passwd file is
    replaced; every other account is kept. Returns the written path, or None
    without APP_ROOT.
    """
    if not settings.app_root:
        logger.debug("APP_ROOT not set; leaving passwd untouched")
        return None
    template = Path(settings.app_root) / PASSWD_TEMPLATE
    rendered = string.Template(template.read_text()).safe_substitute(
        USER_NAME=settings.user_name,
        USER_ID=str(uid),
        GROUP_ID=str(gid),
        HOME=settings.app_home,
    )
    entry_prefix = f"{settings.user_name}:"
    kept = []
    if settings.passwd_path.exists():
        kept = [
            line for line in settings.passwd_path.read_text().splitlines()
            if not line.startswith(entry_prefix)
        ]
    entries = [line for line in rendered.splitlines() if line.strip()]
    settings.passwd_path.write_text("\n".join(kept + entries) + "\n")
    logger.info("Wrote passwd entry for uid %d to %s", uid, settings.passwd_path)
    return settings.passwd_path


def _download(url: str, target: Path) -> None:
    resp = requests.get(url, timeout=FETCH_TIMEOUT)
    resp.raise_for_status()
    target.write_bytes(resp.content)


def resolve_inventory(settings: LauncherSettings, target: Optional[Path] = None) -> Optional[Path]:
    """
    Populate the inventory file from the first configured source.
    Returns the inventory path, or None if no source is configured.
    """
    target = target or settings.inventory_path
    if settings.inventory_file is not None:
        logger.info("Copying inventory from %s", settings.inventory_file)
        shutil.copyfile(settings.inventory_file, target)
    elif settings.inventory_url is not None:
        logger.info("Downloading inventory from %s", settings.inventory_url)
        _download(settings.inventory_url, target)
    elif settings.dynamic_script_url is not None:
        logger.info("Downloading dynamic inventory script from %s", settings.dynamic_script_url)
        _download(settings.dynamic_script_url, target)
        target.chmod(0o755)
    else:
        return None
    return target


def strip_local_connection(path: Path) -> None:
    text = path.read_text()
    path.write_text(text.replace(LOCAL_CONNECTION, ""))


def write_vault_password(value: str, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(value)
    path.chmod(0o600)
    return path


def build_command(
    settings: LauncherSettings,
    inventory: Optional[Path] = None,
    vault_file: Optional[Path] = None,
) -> list[str]:
    cmd = [ANSIBLE_PLAYBOOK, *shlex.split(settings.opts)]
    if inventory is not None:
        cmd += ["-i", str(inventory)]
    if vault_file is not None:
        cmd.append(f"--vault-password-file={vault_file}")
    if settings.playbook_file:
        cmd.append(settings.playbook_file)
    return cmd


def prepare(settings: LauncherSettings) -> list[str]:
    """
    Run every preparation step and return the ansible-playbook argv.
    """
    write_passwd(settings, os.getuid(), os.getgid())

    inventory = resolve_inventory(settings)
    if inventory is not None and settings.strip_local_connection:
        logger.info("Removing %s from %s", LOCAL_CONNECTION, inventory)
        strip_local_connection(inventory)

    vault_file = None
    if settings.vault_pass is not None:
        vault_file = write_vault_password(settings.vault_pass, settings.vault_pass_path)

    return build_command(settings, inventory, vault_file)


def main(argv: list[str] | None = None, environ: Optional[Mapping[str, str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Prepare the container and run ansible-playbook")
    parser.add_argument("--dry-run", action="store_true", help="Print the command instead of running it")
    ns = parser.parse_args(argv)

    try:
        settings = LauncherSettings.from_environ(environ)
        cmd = prepare(settings)
    except ValueError as e:
        # shlex raises ValueError on unbalanced quotes in OPTS
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    except requests.RequestException as e:
        print(f"Failed to fetch inventory: {e}", file=sys.stderr)
        return 3
    except OSError as e:
        print(f"Failed to prepare environment: {e}", file=sys.stderr)
        return 4

    workdir = settings.work_dir or settings.app_home
    if ns.dry_run:
        print(f"cd {shlex.quote(workdir)} && {shlex.join(cmd)}")
        return 0

    try:
        os.chdir(workdir)
    except OSError as e:
        print(f"Cannot change to working directory {workdir}: {e}", file=sys.stderr)
        return 4
    logger.info("Running %s in %s", shlex.join(cmd), workdir)
    sys.stdout.flush()
    sys.stderr.flush()
    try:
        os.execvp(cmd[0], cmd)
    except OSError as e:
        print(f"Failed to run {cmd[0]}: {e}", file=sys.stderr)
        return 127
    return 0  # not reached


if __name__ == "__main__":
    raise SystemExit(main())
