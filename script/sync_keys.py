#!/usr/bin/env python3
"""
ssh-key-sync - sync_keys

Sync SSH public keys from S3 and create/update/delete local user accounts
based on key names. Each `<name>.pub` in the synced directory becomes the
`~/.ssh/authorized_keys` of account `<name>`; accounts under the home root
without a key are removed.

Meant to run periodically (cron/systemd timer) as root.

Exit codes:
  0 = sync and reconcile completed
  1 = bad arguments
  2 = missing required argument
  3 = runtime/config error (fetch failed, lock held, bad config)
  4 = reconcile completed but some accounts could not be handled
"""

from __future__ import annotations

import abc
import argparse
import contextlib
import dataclasses
import fcntl
import logging
import os
import pwd
import re
import shlex
import subprocess
import sys
import tempfile
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

log = logging.getLogger("sync_keys")

EXIT_OK = 0
EXIT_BAD_ARGS = 1
EXIT_MISSING_ARG = 2
EXIT_RUNTIME = 3
EXIT_FAILURES = 4

KEY_SUFFIX = ".pub"
NAME_RE = re.compile(r"^[a-z][-a-z0-9.]*$")
DEFAULT_EXCLUDE = ("root", "ec2-user", "centos", "ubuntu")
DEFAULT_KEY_DIR = "/tmp/ssh-keys"
DEFAULT_LOCK_FILE = "/var/lock/sync-keys.lock"

# -------------------------
# Utilities
# -------------------------


def eprint(*args: Any) -> None:
    print(*args, file=sys.stderr)


def run(cmd: List[str], *, timeout: int = 60) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def shell_escape(s: str) -> str:
    return shlex.quote(s)


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as ex:
        raise RuntimeError(
            "PyYAML is required. Install with: python3 -m pip install pyyaml "
            "or your distro package (python3-pyyaml)."
        ) from ex

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RuntimeError("Config root must be a mapping/dict")
    return data


def cfg_get(cfg: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def cfg_list(cfg: Dict[str, Any], path: str, default: Sequence[str]) -> List[str]:
    v = cfg_get(cfg, path, None)
    if v is None:
        return list(default)
    if isinstance(v, str):
        return [x for x in v.replace(",", " ").split() if x]
    if not isinstance(v, list):
        raise RuntimeError(f"Config key {path} must be a list")
    return [str(x) for x in v]


def cfg_int(cfg: Dict[str, Any], path: str, default: Optional[int]) -> Optional[int]:
    v = cfg_get(cfg, path, default)
    if v is None:
        return None
    try:
        return int(v)
    except (TypeError, ValueError) as ex:
        raise RuntimeError(f"Config key {path} must be an integer, got {v!r}") from ex


def setup_logging(
    debug: bool = False, log_file: Optional[str] = None
) -> logging.Logger:
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()

    formatter = logging.Formatter(
        fmt="[%(asctime)s] - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    log.addHandler(handler)

    if log_file:
        d = os.path.dirname(log_file)
        if d:
            os.makedirs(d, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)

    log.setLevel(logging.DEBUG if debug else logging.INFO)
    return log


# -------------------------
# Errors
# -------------------------


class SyncError(RuntimeError):
    pass


class InvalidPrincipalName(SyncError):
    def __init__(self, name: str) -> None:
        super().__init__(f"{name!r} is not a valid user name")
        self.name = name


class AccountStoreFailure(SyncError):
    def __init__(self, name: str, operation: str, detail: str) -> None:
        super().__init__(f"{operation} {name} failed: {detail}")
        self.name = name
        self.operation = operation
        self.detail = detail


class FetchFailure(SyncError):
    pass


class LockHeld(SyncError):
    pass


# -------------------------
# Model
# -------------------------


@dataclasses.dataclass(frozen=True)
class KeyFile:
    principal_name: str
    content: bytes
    source_path: Path


@dataclasses.dataclass
class Principal:
    name: str
    exists: bool
    credential_content: Optional[bytes] = None
    uid: Optional[int] = None


def validate_name(name: str) -> str:
    if not NAME_RE.match(name):
        raise InvalidPrincipalName(name)
    return name


def load_key_files(key_dir: Path) -> List[KeyFile]:
    """Regular `*.pub` files at the top of key_dir, sorted by file name."""
    keys: List[KeyFile] = []
    try:
        for p in sorted(key_dir.iterdir(), key=lambda x: x.name):
            if not p.name.endswith(KEY_SUFFIX) or not p.is_file():
                continue
            name = p.name[: -len(KEY_SUFFIX)]
            if not name:
                continue
            keys.append(
                KeyFile(principal_name=name, content=p.read_bytes(), source_path=p)
            )
    except OSError as ex:
        raise FetchFailure(f"cannot read keys from {key_dir}: {ex}") from ex
    return keys


# -------------------------
# Reporting
# -------------------------

CREATED = "created"
UPDATED = "updated"
UNTOUCHED = "untouched"
DELETED = "deleted"
SKIPPED = "skipped"
FAILED = "failed"

CHANGES = (CREATED, UPDATED, DELETED)


@dataclasses.dataclass
class Action:
    name: str
    outcome: str
    details: str = ""


class Report:
    def __init__(self) -> None:
        self.items: List[Action] = []
        self.aborted = False

    def record(self, name: str, outcome: str, details: str = "") -> Action:
        act = Action(name, outcome, details)
        self.items.append(act)
        msg = f"{name}: {details}" if details else name
        if outcome == FAILED:
            log.error(msg)
        elif outcome == SKIPPED:
            log.warning(msg)
        elif outcome == UNTOUCHED:
            log.debug(msg)
        else:
            log.info(msg)
        return act

    def names(self, outcome: str) -> List[str]:
        return [x.name for x in self.items if x.outcome == outcome]

    @property
    def changes(self) -> List[Action]:
        return [x for x in self.items if x.outcome in CHANGES]

    @property
    def failed(self) -> bool:
        return self.aborted or any(x.outcome == FAILED for x in self.items)

    def summarize(self) -> Dict[str, int]:
        counts = {k: 0 for k in (CREATED, UPDATED, UNTOUCHED, DELETED, SKIPPED, FAILED)}
        for x in self.items:
            counts[x.outcome] = counts.get(x.outcome, 0) + 1
        return counts

    def summary_line(self) -> str:
        s = " ".join(f"{k}={v}" for k, v in self.summarize().items())
        return f"Summary: {s}" + (" (aborted)" if self.aborted else "")


# -------------------------
# Command runner
# -------------------------


@dataclasses.dataclass
class Runner:
    timeout: int = 60
    dry_run: bool = False

    def __call__(
        self, cmd: List[str], *, timeout: Optional[int] = None, mutating: bool = True
    ) -> Tuple[int, str, str]:
        line = " ".join(shell_escape(c) for c in cmd)
        log.debug("+ %s", line)
        if self.dry_run and mutating:
            log.info("dry-run: %s", line)
            return 0, "", ""

        try:
            cp = run(cmd, timeout=timeout or self.timeout)
        except subprocess.TimeoutExpired:
            return 124, "", "timeout"
        except FileNotFoundError as ex:
            return 127, "", str(ex)
        return cp.returncode, (cp.stdout or "").strip(), (cp.stderr or "").strip()


# -------------------------
# Object storage sync
# -------------------------


@dataclasses.dataclass
class FetchResult:
    downloaded: List[str] = dataclasses.field(default_factory=list)
    deleted: List[str] = dataclasses.field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.downloaded or self.deleted)


class ObjectStorageSync(abc.ABC):
    @abc.abstractmethod
    def sync(self, dest: Path) -> FetchResult:
        raise NotImplementedError


def normalize_s3_path(path: str) -> str:
    p = path.strip()
    if p.startswith("s3://"):
        p = p[len("s3://"):]
    if not p.strip("/"):
        raise RuntimeError(f"Invalid S3 path: {path!r}")
    return p


def parse_sync_output(out: str) -> FetchResult:
    """
    Parse `aws s3 sync` output lines such as

      download: s3://bucket/keys/alice.pub to ../ssh-keys/alice.pub
      delete: ../ssh-keys/bob.pub
      (dryrun) download: ...
    """
    res = FetchResult()
    for raw in out.splitlines():
        line = raw.strip()
        if line.startswith("(dryrun)"):
            line = line[len("(dryrun)"):].strip()
        if line.startswith("download:"):
            rest = line[len("download:"):].strip()
            src = rest.split(" to ", 1)[0]
            res.downloaded.append(os.path.basename(src))
        elif line.startswith("delete:"):
            res.deleted.append(os.path.basename(line[len("delete:"):].strip()))
    return res


class S3CliSync(ObjectStorageSync):
    def __init__(
        self,
        s3_path: str,
        runner: Runner,
        *,
        region: Optional[str] = None,
        cli: str = "aws",
        timeout: int = 300,
    ) -> None:
        self.s3_path = normalize_s3_path(s3_path)
        self.runner = runner
        self.region = region
        self.cli = cli
        self.timeout = timeout

    def command(self, dest: Path) -> List[str]:
        cmd = [
            self.cli,
            "s3",
            "sync",
            f"s3://{self.s3_path}",
            str(dest),
            "--exclude",
            "*",
            "--include",
            f"*{KEY_SUFFIX}",
            "--delete",
            "--no-progress",
        ]
        if self.region:
            cmd += ["--region", self.region]
        if self.runner.dry_run:
            cmd.append("--dryrun")
        return cmd

    def sync(self, dest: Path) -> FetchResult:
        try:
            dest.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as ex:
            raise FetchFailure(f"cannot create key directory {dest}: {ex}") from ex
        rc, out, err = self.runner(
            self.command(dest), timeout=self.timeout, mutating=False
        )
        if rc != 0:
            raise FetchFailure(
                f"sync from s3://{self.s3_path} failed: rc={rc} {err or out}".strip()
            )
        if not dest.is_dir():
            raise FetchFailure(f"key directory {dest} missing after sync")
        res = parse_sync_output(out)
        log.debug("fetched: downloaded=%s deleted=%s", res.downloaded, res.deleted)
        return res


# -------------------------
# Account store
# -------------------------


class AccountStore(abc.ABC):
    @abc.abstractmethod
    def list_accounts(self) -> List[Principal]:
        raise NotImplementedError

    @abc.abstractmethod
    def lookup(self, name: str) -> Principal:
        raise NotImplementedError

    @abc.abstractmethod
    def create(self, name: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, name: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def write_credentials(self, name: str, content: bytes) -> None:
        raise NotImplementedError


class OsAccountStore(AccountStore):
    """Local accounts via the passwd database, useradd and userdel."""

    def __init__(
        self,
        runner: Runner,
        *,
        home_root: str = "/home",
        shell: str = "/bin/bash",
        groups: Sequence[str] = ("wheel",),
        useradd: str = "/usr/sbin/useradd",
        userdel: str = "/usr/sbin/userdel",
    ) -> None:
        self.runner = runner
        self.home_root = Path(home_root)
        self.shell = shell
        self.groups = list(groups)
        self.useradd = useradd
        self.userdel = userdel

    def _passwd(self, name: str) -> Optional[pwd.struct_passwd]:
        try:
            return pwd.getpwnam(name)
        except KeyError:
            return None

    def _keys_path(self, pw: pwd.struct_passwd) -> Path:
        return Path(pw.pw_dir) / ".ssh" / "authorized_keys"

    def list_accounts(self) -> List[Principal]:
        out: List[Principal] = []
        for pw in pwd.getpwall():
            home = Path(pw.pw_dir)
            # Only accounts whose home actually exists under home_root.
            if home.parent != self.home_root or not home.is_dir():
                continue
            out.append(Principal(name=pw.pw_name, exists=True, uid=pw.pw_uid))
        return sorted(out, key=lambda p: p.name)

    def lookup(self, name: str) -> Principal:
        pw = self._passwd(name)
        if pw is None:
            return Principal(name=name, exists=False)
        try:
            content: Optional[bytes] = self._keys_path(pw).read_bytes()
        except FileNotFoundError:
            content = None
        except OSError as ex:
            raise AccountStoreFailure(name, "read", str(ex)) from ex
        return Principal(
            name=name, exists=True, credential_content=content, uid=pw.pw_uid
        )

    def create(self, name: str) -> None:
        cmd = [self.useradd, "-m", "-s", self.shell]
        if self.groups:
            cmd += ["-G", ",".join(self.groups)]
        cmd.append(name)
        rc, out, err = self.runner(cmd)
        if rc != 0:
            raise AccountStoreFailure(name, "useradd", f"rc={rc} {err or out}".strip())

    def delete(self, name: str) -> None:
        rc, out, err = self.runner([self.userdel, "-r", "-f", name])
        if rc != 0:
            raise AccountStoreFailure(name, "userdel", f"rc={rc} {err or out}".strip())

    def write_credentials(self, name: str, content: bytes) -> None:
        if self.runner.dry_run:
            dest = self.home_root / name / ".ssh" / "authorized_keys"
            log.info("dry-run: write %s", dest)
            return
        pw = self._passwd(name)
        if pw is None:
            raise AccountStoreFailure(name, "write", "no such account")

        dest = self._keys_path(pw)
        ssh_dir = dest.parent
        try:
            ssh_dir.mkdir(mode=0o700, exist_ok=True)
            os.chmod(ssh_dir, 0o700)
            os.chown(ssh_dir, pw.pw_uid, pw.pw_gid)
            # Temp file in the same dir so the replace is atomic.
            fd, tmp = tempfile.mkstemp(prefix=".authorized_keys.", dir=str(ssh_dir))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                os.chmod(tmp, 0o600)
                os.chown(tmp, pw.pw_uid, pw.pw_gid)
                os.replace(tmp, dest)
            except OSError:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp)
                raise
        except OSError as ex:
            raise AccountStoreFailure(name, "write", f"{dest}: {ex}") from ex


# -------------------------
# Reconciler
# -------------------------


def allow_all(principal: Principal) -> bool:
    return True


def uid_range(
    min_uid: Optional[int], max_uid: Optional[int]
) -> Callable[[Principal], bool]:
    """Deletion predicate: only accounts with min_uid <= uid <= max_uid."""

    def allowed(principal: Principal) -> bool:
        if principal.uid is None:
            return min_uid is None and max_uid is None
        if min_uid is not None and principal.uid < min_uid:
            return False
        if max_uid is not None and principal.uid > max_uid:
            return False
        return True

    return allowed


class Reconciler:
    def __init__(
        self,
        store: AccountStore,
        key_dir: Path,
        *,
        exclude: Sequence[str] = DEFAULT_EXCLUDE,
        fail_fast: bool = False,
        may_delete: Callable[[Principal], bool] = allow_all,
    ) -> None:
        self.store = store
        self.key_dir = Path(key_dir)
        self.exclude = frozenset(exclude)
        self.fail_fast = fail_fast
        self.may_delete = may_delete

    def reconcile(self, keys_changed: bool = True) -> Report:
        rep = Report()
        if not self.key_dir.is_dir():
            raise FetchFailure(f"key directory {self.key_dir} does not exist")
        keys = load_key_files(self.key_dir)

        if keys_changed:
            for key in keys:
                if not self._guard(rep, key.principal_name, self._apply_key, key, rep):
                    return rep
        else:
            log.debug("no key changes; skipping create/update pass")

        present = {k.principal_name for k in keys}
        for principal in self.store.list_accounts():
            if principal.name in self.exclude or principal.name in present:
                continue
            if not self.may_delete(principal):
                rep.record(
                    principal.name,
                    SKIPPED,
                    "key removed but account is protected by deletion policy",
                )
                continue
            if not self._guard(rep, principal.name, self._delete, principal.name, rep):
                return rep
        return rep

    def _guard(
        self, rep: Report, name: str, fn: Callable[..., None], *args: Any
    ) -> bool:
        """Run one principal's step; False when the run must stop."""
        try:
            fn(*args)
        except AccountStoreFailure as ex:
            rep.record(name, FAILED, str(ex))
            if self.fail_fast:
                rep.aborted = True
                log.error("aborting run after failure on %s", name)
                return False
        return True

    def _apply_key(self, key: KeyFile, rep: Report) -> None:
        name = key.principal_name
        try:
            validate_name(name)
        except InvalidPrincipalName:
            rep.record(name, SKIPPED, "name is not valid")
            return
        if name in self.exclude:
            rep.record(name, SKIPPED, "account is excluded")
            return

        principal = self.store.lookup(name)
        if not principal.exists:
            self.store.create(name)
            self.store.write_credentials(name, key.content)
            rep.record(name, CREATED, "account was created and public key was added")
        elif principal.credential_content != key.content:
            self.store.write_credentials(name, key.content)
            rep.record(name, UPDATED, "public key was updated")
        else:
            rep.record(name, UNTOUCHED, "public key unchanged")

    def _delete(self, name: str, rep: Report) -> None:
        self.store.delete(name)
        rep.record(name, DELETED, "account was deleted")


# -------------------------
# Run lock
# -------------------------


@contextlib.contextmanager
def run_lock(path: str) -> Iterator[None]:
    d = os.path.dirname(path)
    if d:
        os.makedirs(d, exist_ok=True)
    with open(path, "a") as fh:
        try:
            fcntl.lockf(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as ex:
            raise LockHeld(f"another run holds {path}") from ex
        log.debug("acquired lock %s", path)
        try:
            yield
        finally:
            fcntl.lockf(fh, fcntl.LOCK_UN)


# -------------------------
# Settings
# -------------------------


class MissingArgument(RuntimeError):
    pass


@dataclasses.dataclass
class Settings:
    s3_path: str
    key_dir: Path = Path(DEFAULT_KEY_DIR)
    region: Optional[str] = None
    cli: str = "aws"
    sync_timeout: int = 300
    home_root: str = "/home"
    shell: str = "/bin/bash"
    groups: List[str] = dataclasses.field(default_factory=lambda: ["wheel"])
    exclude: List[str] = dataclasses.field(
        default_factory=lambda: list(DEFAULT_EXCLUDE)
    )
    command_timeout: int = 60
    min_uid: Optional[int] = None
    max_uid: Optional[int] = None
    fail_fast: bool = False
    force: bool = False
    dry_run: bool = False
    debug: bool = False
    lock_file: str = DEFAULT_LOCK_FILE
    log_file: Optional[str] = None


def build_settings(cfg: Dict[str, Any], args: argparse.Namespace) -> Settings:
    s3_path = args.s3_path or cfg_get(cfg, "storage.path")
    if not s3_path:
        raise MissingArgument("--s3-path is required (or storage.path in config)")

    return Settings(
        s3_path=str(s3_path),
        key_dir=Path(args.key_dir or cfg_get(cfg, "keys.dir", DEFAULT_KEY_DIR)),
        region=args.region or cfg_get(cfg, "storage.region"),
        cli=str(cfg_get(cfg, "storage.cli", "aws")),
        sync_timeout=cfg_int(cfg, "storage.timeout_seconds", 300) or 300,
        home_root=str(cfg_get(cfg, "accounts.home_root", "/home")),
        shell=str(cfg_get(cfg, "accounts.shell", "/bin/bash")),
        groups=cfg_list(cfg, "accounts.groups", ["wheel"]),
        exclude=cfg_list(cfg, "accounts.exclude", DEFAULT_EXCLUDE),
        command_timeout=cfg_int(cfg, "accounts.command_timeout_seconds", 60) or 60,
        min_uid=cfg_int(cfg, "deletion.min_uid", None),
        max_uid=cfg_int(cfg, "deletion.max_uid", None),
        fail_fast=args.fail_fast or bool(cfg_get(cfg, "policy.fail_fast", False)),
        force=args.force,
        dry_run=args.dry_run,
        debug=args.debug,
        lock_file=args.lock_file
        or str(cfg_get(cfg, "run.lock_file", DEFAULT_LOCK_FILE)),
        log_file=args.log_file or cfg_get(cfg, "run.log_file"),
    )


# -------------------------
# Run
# -------------------------


def run_sync(
    settings: Settings,
    *,
    sync: Optional[ObjectStorageSync] = None,
    store: Optional[AccountStore] = None,
) -> Tuple[int, Optional[Report]]:
    runner = Runner(timeout=settings.command_timeout, dry_run=settings.dry_run)
    if sync is None:
        sync = S3CliSync(
            settings.s3_path,
            runner,
            region=settings.region,
            cli=settings.cli,
            timeout=settings.sync_timeout,
        )
    if store is None:
        store = OsAccountStore(
            runner,
            home_root=settings.home_root,
            shell=settings.shell,
            groups=settings.groups,
        )

    try:
        fetched = sync.sync(settings.key_dir)
    except FetchFailure as ex:
        log.error("%s", ex)
        return EXIT_RUNTIME, None

    if fetched.changed:
        log.info(
            "Starting... (%d downloaded, %d deleted)",
            len(fetched.downloaded),
            len(fetched.deleted),
        )
    else:
        log.info("No keys to update.")

    may_delete: Callable[[Principal], bool] = allow_all
    if settings.min_uid is not None or settings.max_uid is not None:
        may_delete = uid_range(settings.min_uid, settings.max_uid)

    reconciler = Reconciler(
        store,
        settings.key_dir,
        exclude=settings.exclude,
        fail_fast=settings.fail_fast,
        may_delete=may_delete,
    )
    try:
        rep = reconciler.reconcile(keys_changed=fetched.changed or settings.force)
    except FetchFailure as ex:
        log.error("%s", ex)
        return EXIT_RUNTIME, None

    log.info(rep.summary_line())
    log.info("Finished.")
    return (EXIT_FAILURES if rep.failed else EXIT_OK), rep


# -------------------------
# Main
# -------------------------


class ArgParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        eprint(f"{self.prog}: error: {message}")
        code = EXIT_MISSING_ARG if "required" in message else EXIT_BAD_ARGS
        sys.exit(code)


def build_parser() -> ArgParser:
    ap = ArgParser(
        prog="sync-keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=(
            "Sync SSH public keys from S3 and create/delete user accounts "
            "based on key name."
        ),
        epilog=textwrap.dedent("""\
        Examples:
          sync-keys --s3-path mybucket/ssh-keys
          sync-keys --s3-path mybucket/ssh-keys --debug
          sync-keys --config /etc/sync-keys.yml --dry-run
          sync-keys --config /etc/sync-keys.yml --fail-fast --log-file /var/log/sk.log
        """),
    )
    ap.add_argument(
        "-s", "--s3-path", help="S3 path to public keys (e.g. mybucket/ssh-keys)"
    )
    ap.add_argument("-d", "--debug", action="store_true", help="Trace every command")
    ap.add_argument("-c", "--config", help="Path to YAML config")
    ap.add_argument(
        "-k", "--key-dir", help=f"Local directory for keys (default {DEFAULT_KEY_DIR})"
    )
    ap.add_argument("-r", "--region", help="Override the AWS CLI default region")
    ap.add_argument(
        "--fail-fast", action="store_true", help="Stop on first account failure"
    )
    ap.add_argument(
        "--force",
        action="store_true",
        help="Compare every key even if the sync reported no changes",
    )
    ap.add_argument(
        "--dry-run",
        action="store_true",
        help="Do not change anything; print intended actions",
    )
    ap.add_argument("--lock-file", help=f"Run lock path (default {DEFAULT_LOCK_FILE})")
    ap.add_argument("--log-file", help="Also append log output to this file")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    ap = build_parser()
    # If no options, print usage and exit
    if not argv:
        ap.print_usage(sys.stderr)
        return EXIT_MISSING_ARG
    args = ap.parse_args(argv)

    try:
        cfg = load_yaml(args.config) if args.config else {}
    except Exception as ex:
        eprint(f"ERROR: {ex}")
        return EXIT_RUNTIME

    try:
        settings = build_settings(cfg, args)
    except MissingArgument as ex:
        ap.print_usage(sys.stderr)
        eprint(f"ERROR: {ex}")
        return EXIT_MISSING_ARG
    except RuntimeError as ex:
        eprint(f"ERROR: {ex}")
        return EXIT_RUNTIME

    try:
        setup_logging(settings.debug, settings.log_file)
    except OSError as ex:
        eprint(f"ERROR: cannot open log file {settings.log_file}: {ex}")
        return EXIT_RUNTIME

    if not settings.dry_run and os.geteuid() != 0:
        log.error("must run as root to manage accounts (or use --dry-run)")
        return EXIT_RUNTIME

    try:
        with run_lock(settings.lock_file):
            code, _ = run_sync(settings)
            return code
    except LockHeld as ex:
        log.error("%s", ex)
        return EXIT_RUNTIME
    except OSError as ex:
        log.error("run failed: %s", ex)
        return EXIT_RUNTIME


if __name__ == "__main__":
    sys.exit(main())
