"""Tests for the credential vault implementations."""

from __future__ import annotations

import stat
import threading
from pathlib import Path

import pytest

from glucosync.errors import PersistenceFailure
from glucosync.vault import CredentialVault, FileCredentialVault, MemoryCredentialVault


@pytest.fixture(params=["memory", "file"])
def any_vault(request: pytest.FixtureRequest, tmp_path: Path) -> CredentialVault:
    if request.param == "memory":
        return MemoryCredentialVault()
    return FileCredentialVault(tmp_path / "vault")


class TestVaultContract:
    def test_store_then_load(self, any_vault: CredentialVault) -> None:
        any_vault.store("official.oauth", b"secret-bytes")
        assert any_vault.load("official.oauth") == b"secret-bytes"

    def test_missing_key_loads_none(self, any_vault: CredentialVault) -> None:
        assert any_vault.load("informal.session") is None

    def test_store_replaces_previous_value(self, any_vault: CredentialVault) -> None:
        any_vault.store("informal.session", b"old")
        any_vault.store("informal.session", b"new")
        assert any_vault.load("informal.session") == b"new"

    def test_clear_removes_key(self, any_vault: CredentialVault) -> None:
        any_vault.store("informal.account", b"x")
        any_vault.clear("informal.account")
        assert any_vault.load("informal.account") is None

    def test_clear_missing_key_is_noop(self, any_vault: CredentialVault) -> None:
        any_vault.clear("never.stored")

    @pytest.mark.parametrize("key", ["", "../escape", "a/b", "..", "spaces not allowed"])
    def test_invalid_key_rejected(self, any_vault: CredentialVault, key: str) -> None:
        with pytest.raises(ValueError):
            any_vault.store(key, b"x")

    def test_concurrent_writers(self, any_vault: CredentialVault) -> None:
        """Threads writing different keys never lose each other's values."""

        def writer(n: int) -> None:
            for i in range(20):
                any_vault.store(f"key-{n}", f"{n}:{i}".encode())

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for n in range(5):
            assert any_vault.load(f"key-{n}") == f"{n}:19".encode()


class TestFileVault:
    def test_files_are_private(self, tmp_path: Path) -> None:
        vault = FileCredentialVault(tmp_path / "vault")
        vault.store("official.oauth", b"token")

        secret_file = tmp_path / "vault" / "official.oauth.secret"
        assert stat.S_IMODE(secret_file.stat().st_mode) == 0o600
        assert stat.S_IMODE((tmp_path / "vault").stat().st_mode) == 0o700

    def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        vault = FileCredentialVault(tmp_path / "vault")
        vault.store("a", b"1")
        vault.store("a", b"2")
        assert [p.name for p in (tmp_path / "vault").iterdir()] == ["a.secret"]

    def test_survives_new_instance(self, tmp_path: Path) -> None:
        FileCredentialVault(tmp_path / "vault").store("informal.account", b"persisted")
        assert FileCredentialVault(tmp_path / "vault").load("informal.account") == b"persisted"

    def test_unusable_directory_raises_persistence_failure(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file in the way")
        with pytest.raises(PersistenceFailure):
            FileCredentialVault(blocker / "vault")


class TestMemoryVault:
    def test_len_counts_keys(self) -> None:
        vault = MemoryCredentialVault()
        vault.store("a", b"1")
        vault.store("b", b"2")
        assert len(vault) == 2
