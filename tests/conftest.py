import logging
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest

from sync_keys import (
    AccountStore,
    AccountStoreFailure,
    FetchResult,
    ObjectStorageSync,
    Principal,
)


class MemoryAccountStore(AccountStore):
    """In-memory account database: name -> authorized_keys bytes (or None)."""

    def __init__(self, accounts: Optional[Dict[str, Optional[bytes]]] = None, uids: Optional[Dict[str, int]] = None):
        self.accounts: Dict[str, Optional[bytes]] = dict(accounts or {})
        self.uids: Dict[str, int] = dict(uids or {})
        self.fail_on: Set[str] = set()
        self.calls: List[tuple] = []

    def _maybe_fail(self, op: str, name: str) -> None:
        if name in self.fail_on:
            raise AccountStoreFailure(name, op, "rc=1 boom")

    def list_accounts(self):
        return [
            Principal(name=n, exists=True, credential_content=c, uid=self.uids.get(n, 1000))
            for n, c in sorted(self.accounts.items())
        ]

    def lookup(self, name):
        if name not in self.accounts:
            return Principal(name=name, exists=False)
        return Principal(name=name, exists=True, credential_content=self.accounts[name], uid=self.uids.get(name, 1000))

    def create(self, name):
        self.calls.append(("create", name))
        self._maybe_fail("useradd", name)
        self.accounts[name] = None

    def delete(self, name):
        self.calls.append(("delete", name))
        self._maybe_fail("userdel", name)
        del self.accounts[name]

    def write_credentials(self, name, content):
        self.calls.append(("write", name))
        self._maybe_fail("write", name)
        self.accounts[name] = content


class FakeSync(ObjectStorageSync):
    def __init__(self, result: Optional[FetchResult] = None, error: Optional[Exception] = None):
        self.result = result or FetchResult()
        self.error = error
        self.calls: List[Path] = []

    def sync(self, dest):
        self.calls.append(dest)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def key_dir(tmp_path):
    d = tmp_path / "ssh-keys"
    d.mkdir()
    return d


@pytest.fixture
def write_key(key_dir):
    def _write(name: str, content: bytes) -> Path:
        p = key_dir / f"{name}.pub"
        p.write_bytes(content)
        return p

    return _write


@pytest.fixture
def store():
    return MemoryAccountStore()


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    log = logging.getLogger("sync_keys")
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()
    log.setLevel(logging.NOTSET)
