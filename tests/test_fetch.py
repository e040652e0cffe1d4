import subprocess

import pytest

import sync_keys
from sync_keys import FetchFailure, Runner, S3CliSync, normalize_s3_path, parse_sync_output


class ScriptedRunner(Runner):
    def __init__(self, rc=0, out="", err="", dry_run=False):
        super().__init__(timeout=5, dry_run=dry_run)
        self.rc, self.out, self.err = rc, out, err
        self.cmds = []

    def __call__(self, cmd, *, timeout=None, mutating=True):
        self.cmds.append((cmd, mutating))
        return self.rc, self.out, self.err


SYNC_OUTPUT = """\
download: s3://bucket/keys/alice.pub to ../../tmp/ssh-keys/alice.pub
download: s3://bucket/keys/dave.smith.pub to ../../tmp/ssh-keys/dave.smith.pub
delete: ../../tmp/ssh-keys/carol.pub
"""


def test_parse_sync_output():
    res = parse_sync_output(SYNC_OUTPUT)
    assert res.downloaded == ["alice.pub", "dave.smith.pub"]
    assert res.deleted == ["carol.pub"]
    assert res.changed


def test_parse_dryrun_output():
    res = parse_sync_output("(dryrun) delete: /tmp/ssh-keys/bob.pub\n")
    assert res.deleted == ["bob.pub"]


def test_parse_empty_output_means_no_changes():
    assert not parse_sync_output("").changed
    assert not parse_sync_output("Completed 1 file(s)\n").changed


@pytest.mark.parametrize(
    "raw,want",
    [
        ("mybucket/ssh-keys", "mybucket/ssh-keys"),
        ("s3://mybucket/ssh-keys/", "mybucket/ssh-keys/"),
        (" mybucket ", "mybucket"),
    ],
)
def test_normalize_s3_path(raw, want):
    assert normalize_s3_path(raw) == want


def test_normalize_s3_path_rejects_empty():
    with pytest.raises(RuntimeError):
        normalize_s3_path("s3://")


def test_sync_builds_aws_command(tmp_path):
    runner = ScriptedRunner(out=SYNC_OUTPUT)
    dest = tmp_path / "keys"

    res = S3CliSync("s3://bucket/keys", runner, region="eu-central-1").sync(dest)

    assert dest.is_dir()
    assert res.downloaded == ["alice.pub", "dave.smith.pub"]
    cmd, mutating = runner.cmds[0]
    assert mutating is False
    assert cmd[:5] == ["aws", "s3", "sync", "s3://bucket/keys", str(dest)]
    assert cmd[5:9] == ["--exclude", "*", "--include", "*.pub"]
    assert "--delete" in cmd and "--no-progress" in cmd
    assert cmd[-2:] == ["--region", "eu-central-1"]


def test_sync_dry_run_passes_dryrun_flag(tmp_path):
    runner = ScriptedRunner(dry_run=True)

    S3CliSync("bucket/keys", runner).sync(tmp_path / "keys")

    cmd, _ = runner.cmds[0]
    assert cmd[-1] == "--dryrun"
    assert "--region" not in cmd


def test_sync_failure_raises(tmp_path):
    runner = ScriptedRunner(rc=1, err="An error occurred (AccessDenied)")

    with pytest.raises(FetchFailure, match="AccessDenied"):
        S3CliSync("bucket/keys", runner).sync(tmp_path / "keys")


def test_runner_reports_timeout(monkeypatch):
    def boom(cmd, *, timeout):
        raise subprocess.TimeoutExpired(cmd, timeout)

    monkeypatch.setattr(sync_keys, "run", boom)

    assert Runner(timeout=1)(["sleep", "10"]) == (124, "", "timeout")


def test_runner_missing_binary(monkeypatch):
    def missing(cmd, *, timeout):
        raise FileNotFoundError("no such file: aws")

    monkeypatch.setattr(sync_keys, "run", missing)

    rc, _, err = Runner()(["aws"])
    assert rc == 127
    assert "aws" in err


def test_runner_dry_run_skips_mutating_commands(monkeypatch):
    def fail(cmd, *, timeout):
        raise AssertionError("should not run")

    monkeypatch.setattr(sync_keys, "run", fail)

    assert Runner(dry_run=True)(["useradd", "alice"]) == (0, "", "")


def test_runner_strips_output(monkeypatch):
    monkeypatch.setattr(
        sync_keys,
        "run",
        lambda cmd, *, timeout: subprocess.CompletedProcess(cmd, 0, "ok\n", ""),
    )

    assert Runner()(["true"], mutating=False) == (0, "ok", "")


def test_sync_into_regular_file_is_fetch_failure(tmp_path):
    dest = tmp_path / "keys"
    dest.write_text("not a directory")

    with pytest.raises(FetchFailure, match="cannot create key directory"):
        S3CliSync("bucket/keys", ScriptedRunner()).sync(dest)


def test_unreadable_key_dir_is_fetch_failure(tmp_path):
    not_a_dir = tmp_path / "keys"
    not_a_dir.write_text("")

    with pytest.raises(FetchFailure, match="cannot read keys"):
        sync_keys.load_key_files(not_a_dir)
