import os
import shutil
import stat
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

from ansible_s2i.runtime.run_playbook import (
    LauncherSettings,
    build_command,
    main,
    prepare,
    resolve_inventory,
    strip_local_connection,
    write_passwd,
    write_vault_password,
)


def _settings(tmp_path, **env):
    base = {
        "INVENTORY_PATH": str(tmp_path / "inventory"),
        "VAULT_PASS_FILE": str(tmp_path / "secrets" / "vaultpass"),
        "PASSWD_FILE": str(tmp_path / "passwd"),
        "APP_HOME": str(tmp_path),
    }
    base.update(env)
    return LauncherSettings.from_environ(base)


def _fake_get(body: bytes, status: int = 200, calls=None):
    def fake_get(url, timeout):
        if calls is not None:
            calls.append(url)
        resp = Mock()
        resp.content = body
        resp.status_code = status
        if status >= 400:
            resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
        return resp
    return fake_get


def test_inventory_file_wins_over_urls(tmp_path, monkeypatch):
    src = tmp_path / "hosts"
    src.write_text("[web]\nhost1\n")
    calls = []
    monkeypatch.setattr("requests.get", _fake_get(b"from url", calls=calls))

    s = _settings(
        tmp_path,
        INVENTORY_FILE=str(src),
        INVENTORY_URL="http://example.invalid/inv",
        DYNAMIC_SCRIPT_URL="http://example.invalid/dyn.py",
    )
    inv = resolve_inventory(s)

    assert inv == tmp_path / "inventory"
    assert inv.read_text() == "[web]\nhost1\n"
    assert calls == []


def test_inventory_url_is_downloaded(tmp_path, monkeypatch):
    calls = []
    monkeypatch.setattr("requests.get", _fake_get(b"[db]\ndb1\n", calls=calls))

    s = _settings(tmp_path, INVENTORY_URL="http://example.invalid/inv", DYNAMIC_SCRIPT_URL="http://x/dyn")
    inv = resolve_inventory(s)

    assert calls == ["http://example.invalid/inv"]
    assert inv.read_bytes() == b"[db]\ndb1\n"
    assert not os.access(inv, os.X_OK)


def test_dynamic_script_is_made_executable(tmp_path, monkeypatch):
    monkeypatch.setattr("requests.get", _fake_get(b"#!/bin/sh\necho '{}'\n"))

    s = _settings(tmp_path, DYNAMIC_SCRIPT_URL="http://example.invalid/dyn.sh")
    inv = resolve_inventory(s)

    assert inv.read_bytes().startswith(b"#!/bin/sh")
    assert stat.S_IMODE(inv.stat().st_mode) == 0o755


def test_no_inventory_source(tmp_path):
    s = _settings(tmp_path)
    assert resolve_inventory(s) is None
    assert "-i" not in build_command(s)


def test_download_error_is_raised(tmp_path, monkeypatch):
    monkeypatch.setattr("requests.get", _fake_get(b"not found", status=404))
    s = _settings(tmp_path, INVENTORY_URL="http://example.invalid/missing")
    with pytest.raises(requests.HTTPError):
        resolve_inventory(s)


def test_strip_local_connection(tmp_path):
    inv = tmp_path / "inventory"
    inv.write_text("a ansible_connection=local\nb ansible_connection=local foo=1\nc\n")
    strip_local_connection(inv)
    assert "ansible_connection=local" not in inv.read_text()
    assert "foo=1" in inv.read_text()


@pytest.mark.parametrize("value, stripped", [("false", True), ("False", False), ("no", False), (None, False)])
def test_prepare_strips_only_on_literal_false(tmp_path, monkeypatch, value, stripped):
    src = tmp_path / "hosts"
    src.write_text("localhost ansible_connection=local\n")
    env = {"INVENTORY_FILE": str(src)}
    if value is not None:
        env["ALLOW_ANSIBLE_CONNECTION_LOCAL"] = value
    s = _settings(tmp_path, **env)

    prepare(s)

    text = (tmp_path / "inventory").read_text()
    assert ("ansible_connection=local" not in text) == stripped


def test_vault_password_file(tmp_path):
    path = write_vault_password("s3cret", tmp_path / "secrets" / "vaultpass")
    assert path.read_text() == "s3cret"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_vault_flag_only_when_vault_pass_set(tmp_path):
    with_vault = prepare(_settings(tmp_path, VAULT_PASS="pw"))
    vault_file = tmp_path / "secrets" / "vaultpass"
    assert f"--vault-password-file={vault_file}" in with_vault
    assert vault_file.read_text() == "pw"

    without = prepare(_settings(tmp_path / "other"))
    assert not any(a.startswith("--vault-password-file") for a in without)


def test_build_command_order(tmp_path):
    s = _settings(tmp_path, OPTS="-vvv -u 1001 --connection local", PLAYBOOK_FILE="site.yml")
    cmd = build_command(s, tmp_path / "inventory", tmp_path / "vp")
    assert cmd == [
        "ansible-playbook", "-vvv", "-u", "1001", "--connection", "local",
        "-i", str(tmp_path / "inventory"),
        f"--vault-password-file={tmp_path / 'vp'}",
        "site.yml",
    ]


def test_build_command_keeps_quoted_opts(tmp_path):
    s = _settings(tmp_path, OPTS="-e 'greeting=hello world'")
    assert build_command(s)[1:] == ["-e", "greeting=hello world"]


def test_write_passwd_renders_template(tmp_path):
    app_root = tmp_path / "root"
    (app_root / "etc").mkdir(parents=True)
    (app_root / "etc" / "passwd.template").write_text(
        "${USER_NAME}:x:${USER_ID}:${GROUP_ID}:${USER_NAME} user:${HOME}:/sbin/nologin\n"
    )
    s = _settings(tmp_path, APP_ROOT=str(app_root), USER_NAME="ansible", APP_HOME="/opt/app-root/src")

    out = write_passwd(s, 1000123, 0)

    assert out.read_text() == "ansible:x:1000123:0:ansible user:/opt/app-root/src:/sbin/nologin\n"


def test_write_passwd_skipped_without_app_root(tmp_path):
    assert write_passwd(_settings(tmp_path), 1, 1) is None
    assert not (tmp_path / "passwd").exists()


def test_main_execs_ansible_playbook(tmp_path, monkeypatch):
    src = tmp_path / "hosts"
    src.write_text("localhost\n")
    workdir = tmp_path / "work"
    workdir.mkdir()
    env = {
        "INVENTORY_PATH": str(tmp_path / "inventory"),
        "INVENTORY_FILE": str(src),
        "WORK_DIR": str(workdir),
        "PLAYBOOK_FILE": "test-playbook.yaml",
        "OPTS": "-vvv",
    }
    calls = {}

    def fake_execvp(file, args):
        calls["file"] = file
        calls["args"] = args
        calls["cwd"] = os.getcwd()

    monkeypatch.setattr("os.execvp", fake_execvp)
    monkeypatch.chdir(tmp_path)

    assert main([], environ=env) == 0
    assert calls["file"] == "ansible-playbook"
    assert calls["args"] == [
        "ansible-playbook", "-vvv", "-i", str(tmp_path / "inventory"), "test-playbook.yaml"
    ]
    assert calls["cwd"] == str(workdir)


def test_main_missing_inventory_file_fails(tmp_path, monkeypatch):
    monkeypatch.setattr("os.execvp", Mock(side_effect=AssertionError("must not exec")))
    env = {"INVENTORY_PATH": str(tmp_path / "inventory"), "INVENTORY_FILE": str(tmp_path / "nope")}
    assert main([], environ=env) == 4


def test_main_download_failure(tmp_path, monkeypatch):
    monkeypatch.setattr("requests.get", _fake_get(b"", status=500))
    monkeypatch.setattr("os.execvp", Mock(side_effect=AssertionError("must not exec")))
    env = {"INVENTORY_PATH": str(tmp_path / "inventory"), "INVENTORY_URL": "http://example.invalid/inv"}
    assert main([], environ=env) == 3


def test_main_bad_opts(tmp_path, monkeypatch):
    monkeypatch.setattr("os.execvp", Mock(side_effect=AssertionError("must not exec")))
    env = {"INVENTORY_PATH": str(tmp_path / "inventory"), "OPTS": "-e 'unterminated"}
    assert main([], environ=env) == 2


def test_main_dry_run(tmp_path, capsys):
    env = {"INVENTORY_PATH": str(tmp_path / "inventory"), "WORK_DIR": "/work", "PLAYBOOK_FILE": "site.yml"}
    assert main(["--dry-run"], environ=env) == 0
    assert capsys.readouterr().out.strip() == "cd /work && ansible-playbook site.yml"


SHIPPED_PASSWD_TEMPLATE = Path(__file__).resolve().parents[2] / "etc" / "passwd.template"


def test_write_passwd_keeps_other_accounts(tmp_path):
    app_root = tmp_path / "root"
    (app_root / "etc").mkdir(parents=True)
    shutil.copyfile(SHIPPED_PASSWD_TEMPLATE, app_root / "etc" / "passwd.template")
    passwd = tmp_path / "passwd"
    passwd.write_text(
        "root:x:0:0:root:/root:/bin/bash\n"
        "nobody:x:65534:65534:Kernel Overflow User:/:/sbin/nologin\n"
        "default:x:1001:0:Default Application User:/opt/app-root/src:/sbin/nologin\n"
    )
    s = _settings(tmp_path, APP_ROOT=str(app_root), USER_NAME="default", APP_HOME="/opt/app-root/src")

    write_passwd(s, 1000123, 0)

    lines = passwd.read_text().splitlines()
    assert lines[0] == "root:x:0:0:root:/root:/bin/bash"
    assert lines[1].startswith("nobody:x:65534:")
    defaults = [l for l in lines if l.startswith("default:")]
    assert defaults == ["default:x:1000123:0:default user:/opt/app-root/src:/sbin/nologin"]


def test_empty_inventory_file_counts_as_set(tmp_path, monkeypatch):
    monkeypatch.setattr("requests.get", Mock(side_effect=AssertionError("must not download")))
    monkeypatch.setattr("os.execvp", Mock(side_effect=AssertionError("must not exec")))
    env = {
        "INVENTORY_PATH": str(tmp_path / "inventory"),
        "INVENTORY_FILE": "",
        "INVENTORY_URL": "http://example.invalid/inv",
    }
    assert main([], environ=env) == 4
