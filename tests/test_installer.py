# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Integration tests for Installer

Runs install / uninstall / upgrade end to end against a real target
directory, with repositories served by an in-memory fetcher.
"""

import asyncio
import dataclasses
import threading
from pathlib import Path

import pytest

from modpkg.models import InstallOptions, PackageStatus, PlanOperation
from modpkg.services import executor as executor_module
from modpkg.services.executor import ProgressHooks
from modpkg.services.pkgdb import PackageDatabase
from modpkg.services.service import Installer
from modpkg.services.session import Session
from modpkg.services.transactions import TransactionLogger

from conftest import FakeFetcher, RepoBuilder, sha256

SKYMOD = {"skymod.esp": b"plugin", "textures/sky/sky.dds": b"texture"}


def installed(target):
    return {name: record.version for name, record in PackageDatabase(target).load().items()}


def requested(target):
    return {name: str(c) for name, c in PackageDatabase(target).load_requested().items()}


def journal_entry(target, transaction_id):
    return TransactionLogger(PackageDatabase(target).transactions_file).get_transaction(transaction_id)


class TestInstall:
    """Test Installer.install"""

    @pytest.mark.asyncio
    async def test_installs_package(self, installer, repo, target):
        """Should write files, record the package and remember the request"""
        repo.add("skymod", "1.0.0", SKYMOD)

        result = await installer.install(["SkyMod"])

        assert result.success, result.error
        assert result.resolution == {"skymod": "1.0.0"}
        assert (target / "skymod.esp").read_bytes() == b"plugin"
        assert (target / "textures/sky/sky.dds").read_bytes() == b"texture"
        assert installed(target) == {"skymod": "1.0.0"}
        assert requested(target) == {"skymod": "*"}
        assert [p.status for p in result.packages] == [PackageStatus.RECORDED]
        assert journal_entry(target, result.transaction_id)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_installs_dependencies(self, installer, repo, target):
        """Should install the dependency closure, dependencies first"""
        repo.add("lib", "1.0.0", {"lib/lib.dll": b"lib"})
        repo.add("lib", "2.0.0", {"lib/lib.dll": b"lib2"})
        repo.add("app", "1.0.0", {"app.esp": b"app"}, dependencies={"lib": "^1.0.0"})

        result = await installer.install(["app"])

        assert result.success, result.error
        assert installed(target) == {"app": "1.0.0", "lib": "1.0.0"}
        assert requested(target) == {"app": "*"}
        assert [e.name for e in result.plan.entries] == ["lib", "app"]

    @pytest.mark.asyncio
    async def test_keeps_installed_version(self, installer, repo, target):
        """Should not upgrade on a repeated install"""
        repo.add("skymod", "1.0.0", SKYMOD)
        await installer.install(["skymod"])
        repo.add("skymod", "1.1.0", SKYMOD)

        result = await installer.install(["skymod"])

        assert result.success, result.error
        assert result.plan.is_empty
        assert installed(target) == {"skymod": "1.0.0"}

    @pytest.mark.asyncio
    async def test_resolution_conflict(self, installer, repo, target):
        """Should report the conflicting package and change nothing"""
        repo.add("q", "1.9.0", {"q.esp": b"q"})
        repo.add("q", "3.0.0", {"q.esp": b"q3"})
        repo.add("p", "1.0.0", {"p.esp": b"p"}, dependencies={"q": "^2.0.0"})

        result = await installer.install(["p"])

        assert not result.success
        assert result.error_kind == "ResolutionConflict"
        assert result.error["details"]["package"] == "q"
        assert installed(target) == {}
        assert requested(target) == {}
        assert journal_entry(target, result.transaction_id)["status"] == "failed"

    @pytest.mark.asyncio
    async def test_invalid_specifier(self, installer, repo):
        """Should return a ParseError result instead of raising"""
        repo.add("skymod", "1.0.0", SKYMOD)
        result = await installer.install(["1skymod"])
        assert result.error_kind == "ParseError"

    @pytest.mark.asyncio
    async def test_existing_untracked_file(self, installer, repo, target):
        """Should refuse to overwrite an untracked file with different content unless forced"""
        repo.add("skymod", "1.0.0", SKYMOD)
        (target / "skymod.esp").write_bytes(b"user file")

        result = await installer.install(["skymod"])
        assert result.error_kind == "ModifiedFileConflict"
        assert (target / "skymod.esp").read_bytes() == b"user file"
        assert installed(target) == {}

        result = await installer.install(["skymod"], InstallOptions(force=True))
        assert result.success, result.error
        assert (target / "skymod.esp").read_bytes() == b"plugin"


class TestFetching:
    """Test fetch, verification and URL fallback during install"""

    @pytest.mark.asyncio
    async def test_digest_mismatch(self, installer, repo, target):
        """Should fail the package on a digest mismatch and install nothing"""
        repo.add("skymod", "1.0.0", SKYMOD, digests={"sha256": "00" * 32})

        result = await installer.install(["skymod"])

        assert result.error_kind == "DigestMismatch"
        assert result.packages[0].status == PackageStatus.FAILED
        assert not (target / "skymod.esp").exists()
        assert requested(target) == {}

    @pytest.mark.asyncio
    async def test_falls_back_to_next_url(self, installer, repo, fetcher, target):
        """Should use the next URL when the first is unreachable"""
        good = "https://mods.example.com/skymod-1.0.0.zip"
        repo.add("skymod", "1.0.0", SKYMOD, urls=["https://dead.example.com/skymod.zip", good])

        result = await installer.install(["skymod"])

        assert result.success, result.error
        assert "https://dead.example.com/skymod.zip" in fetcher.calls
        assert fetcher.calls.index(good) > fetcher.calls.index("https://dead.example.com/skymod.zip")

    @pytest.mark.asyncio
    async def test_all_urls_fail(self, installer, repo):
        """Should report FetchError once every URL is exhausted"""
        repo.add("skymod", "1.0.0", SKYMOD, urls=["https://dead.example.com/skymod.zip"])
        result = await installer.install(["skymod"])
        assert result.error_kind == "FetchError"
        attempts = result.error["details"]["attempts"]
        assert attempts["https://dead.example.com/skymod.zip"]["attempts"] == 2
        assert attempts["https://dead.example.com/skymod.zip"]["recent_errors"]

    @pytest.mark.asyncio
    async def test_failed_dependency_halts_dependents(self, installer, repo, target):
        """Should halt dependents of a failed package and keep independent ones"""
        repo.add("lib", "1.0.0", {"lib.dll": b"lib"}, digests={"sha256": "00" * 32})
        repo.add("app", "1.0.0", {"app.esp": b"app"}, dependencies={"lib": "*"})
        repo.add("zzz", "1.0.0", {"zzz.esp": b"z"})

        result = await installer.install(["app", "zzz"])

        assert not result.success
        progress = {p.name: p for p in result.packages}
        assert progress["lib"].error["error"] == "DigestMismatch"
        assert progress["app"].error["error"] == "DependencyFailed"
        assert progress["zzz"].status == PackageStatus.RECORDED
        assert installed(target) == {"zzz": "1.0.0"}
        assert requested(target) == {"zzz": "*"}

    @pytest.mark.asyncio
    async def test_manifest_unreachable(self, installer, fetcher):
        """Should report FetchError when no repository can be loaded"""
        fetcher.responses.clear()
        result = await installer.install(["skymod"])
        assert result.error_kind == "FetchError"


class CountingFetcher(FakeFetcher):
    """FakeFetcher that records the peak number of fetches in flight"""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def fetch(self, url: str, progress=None) -> bytes:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            return await super().fetch(url, progress)
        finally:
            self.in_flight -= 1


class TestExecution:
    """Test progress reporting, fetch concurrency and filesystem errors"""

    @pytest.mark.asyncio
    async def test_reports_progress(self, config, fetcher, repo):
        """Should report every state change and the fetched byte count"""
        archive = repo.add("skymod", "1.0.0", SKYMOD)
        statuses = []
        downloads = []
        hooks = ProgressHooks(
            on_status=lambda p: statuses.append((p.name, p.status)),
            on_download=lambda name, received, total: downloads.append((name, received, total)),
        )

        result = await Installer(config, fetcher=fetcher, hooks=hooks).install(["skymod"])

        assert result.success, result.error
        assert statuses == [
            ("skymod", PackageStatus.PENDING),
            ("skymod", PackageStatus.FETCHED),
            ("skymod", PackageStatus.VERIFIED),
            ("skymod", PackageStatus.STAGED),
            ("skymod", PackageStatus.APPLIED),
            ("skymod", PackageStatus.RECORDED),
        ]
        assert downloads[-1] == ("skymod", len(archive), len(archive))
        assert result.packages[0].bytes_fetched == len(archive)

    @pytest.mark.asyncio
    async def test_reports_failure(self, config, fetcher, repo):
        """Should report the failed state to the status callback"""
        repo.add("skymod", "1.0.0", SKYMOD, digests={"sha256": "00" * 32})
        statuses = []
        hooks = ProgressHooks(on_status=lambda p: statuses.append(p.status))

        result = await Installer(config, fetcher=fetcher, hooks=hooks).install(["skymod"])

        assert result.error_kind == "DigestMismatch"
        assert statuses[-1] == PackageStatus.FAILED

    @pytest.mark.asyncio
    async def test_applies_off_event_loop(self, config, fetcher, repo):
        """Should apply and record packages in a worker thread"""
        repo.add("skymod", "1.0.0", SKYMOD)
        loop_thread = threading.get_ident()
        threads = {}
        hooks = ProgressHooks(on_status=lambda p: threads.setdefault(p.status, threading.get_ident()))

        result = await Installer(config, fetcher=fetcher, hooks=hooks).install(["skymod"])

        assert result.success, result.error
        assert threads[PackageStatus.FETCHED] == loop_thread
        assert threads[PackageStatus.APPLIED] != loop_thread
        assert threads[PackageStatus.RECORDED] != loop_thread

    @pytest.mark.asyncio
    async def test_bounded_concurrent_fetches(self, config):
        """Should never run more fetches at once than max_concurrent_fetches"""
        fetcher = CountingFetcher()
        repo = RepoBuilder(fetcher)
        names = [f"mod{i}" for i in range(6)]
        for name in names:
            repo.add(name, "1.0.0", {f"{name}.esp": name.encode()})
        installer = Installer(dataclasses.replace(config, max_concurrent_fetches=2), fetcher=fetcher)

        result = await installer.install(names)

        assert result.success, result.error
        assert fetcher.peak == 2

    @pytest.mark.asyncio
    async def test_unreadable_staged_file(self, installer, repo, target, monkeypatch):
        """Should fail only the package whose staged files cannot be read"""
        repo.add("broken", "1.0.0", {"broken.esp": b"b"})
        repo.add("other", "1.0.0", {"other.esp": b"o"})
        real_digest = executor_module.file_digest

        def failing_digest(path):
            if "broken-1.0.0" in Path(path).parts:
                raise PermissionError(13, "Permission denied", str(path))
            return real_digest(path)

        monkeypatch.setattr(executor_module, "file_digest", failing_digest)
        result = await installer.install(["broken", "other"])

        assert result.error_kind == "InstallIOError"
        progress = {p.name: p for p in result.packages}
        assert progress["broken"].status == PackageStatus.FAILED
        assert progress["other"].status == PackageStatus.RECORDED
        assert installed(target) == {"other": "1.0.0"}


class TestConflicts:
    """Test ownership collisions and locking"""

    @pytest.mark.asyncio
    async def test_duplicate_path_between_incoming(self, installer, repo, target):
        """Should abort before touching the filesystem when two packages claim a path"""
        repo.add("a", "1.0.0", {"shared.esp": b"a", "a.esp": b"a"})
        repo.add("b", "1.0.0", {"Shared.ESP": b"b"})

        result = await installer.install(["a", "b"])

        assert result.error_kind == "DuplicatePathConflict"
        assert not (target / "a.esp").exists()
        assert installed(target) == {}

    @pytest.mark.asyncio
    async def test_duplicate_path_with_installed(self, installer, repo, target):
        """Should refuse a package claiming a file another package owns"""
        repo.add("a", "1.0.0", {"shared.esp": b"a"})
        repo.add("b", "1.0.0", {"shared.esp": b"b"})
        await installer.install(["a"])

        result = await installer.install(["b"])

        assert result.error_kind == "DuplicatePathConflict"
        assert (target / "shared.esp").read_bytes() == b"a"
        assert installed(target) == {"a": "1.0.0"}

    @pytest.mark.asyncio
    async def test_locked_target_fails_fast(self, installer, repo, target):
        """Should fail with SessionLockedError while another session is active"""
        repo.add("skymod", "1.0.0", SKYMOD)
        with Session(target):
            result = await installer.install(["skymod"])
        assert result.error_kind == "SessionLockedError"
        assert installed(target) == {}


class TestUninstall:
    """Test Installer.uninstall"""

    @pytest.mark.asyncio
    async def test_removes_package_and_orphans(self, installer, repo, target):
        """Should remove the package, its unneeded dependencies and emptied directories"""
        repo.add("lib", "1.0.0", {"lib/data/lib.dll": b"lib"})
        repo.add("app", "1.0.0", {"app.esp": b"app"}, dependencies={"lib": "^1.0.0"})
        await installer.install(["app"])

        result = await installer.uninstall(["app"])

        assert result.success, result.error
        assert [(e.name, e.operation) for e in result.plan.entries] == [
            ("app", PlanOperation.REMOVE),
            ("lib", PlanOperation.REMOVE),
        ]
        assert not (target / "app.esp").exists()
        assert not (target / "lib").exists()
        assert (target / "pkgdb").is_dir()
        assert installed(target) == {}
        assert requested(target) == {}

    @pytest.mark.asyncio
    async def test_modified_file_blocks_uninstall(self, installer, repo, target):
        """Should return ModifiedFileConflict and leave every file untouched"""
        repo.add("skymod", "1.0.0", SKYMOD)
        await installer.install(["skymod"])
        (target / "textures/sky/sky.dds").write_bytes(b"retextured")

        result = await installer.uninstall(["skymod"])

        assert result.error_kind == "ModifiedFileConflict"
        assert result.error["details"]["paths"] == ["textures/sky/sky.dds"]
        assert (target / "skymod.esp").read_bytes() == b"plugin"
        assert (target / "textures/sky/sky.dds").read_bytes() == b"retextured"
        assert installed(target) == {"skymod": "1.0.0"}
        assert requested(target) == {"skymod": "*"}

    @pytest.mark.asyncio
    async def test_force_removes_modified_file(self, installer, repo, target):
        """Should delete modified files when forced"""
        repo.add("skymod", "1.0.0", SKYMOD)
        await installer.install(["skymod"])
        (target / "skymod.esp").write_bytes(b"edited")

        result = await installer.uninstall(["skymod"], force=True)

        assert result.success, result.error
        assert not (target / "skymod.esp").exists()
        assert installed(target) == {}

    @pytest.mark.asyncio
    async def test_required_package_cannot_be_uninstalled(self, installer, repo, target):
        """Should name the packages that still require the target"""
        repo.add("lib", "1.0.0", {"lib.dll": b"lib"})
        repo.add("app", "1.0.0", {"app.esp": b"app"}, dependencies={"lib": "^1.0.0"})
        await installer.install(["app", "lib"])

        result = await installer.uninstall(["lib"])

        assert result.error_kind == "ResolutionConflict"
        assert result.error["details"]["requirers"] == {"app@1.0.0": "^1.0.0"}
        assert installed(target) == {"app": "1.0.0", "lib": "1.0.0"}

    @pytest.mark.asyncio
    async def test_preserves_config_files(self, installer, repo, target):
        """Should keep files matching config patterns unless purging"""
        files = {"skymod.esp": b"plugin", "SkyMod.ini": b"[settings]"}
        repo.add("skymod", "1.0.0", files, config=["*.INI"])
        await installer.install(["skymod"])

        result = await installer.uninstall(["skymod"])
        assert result.success, result.error
        assert result.plan.get("skymod").files.preserve == ["SkyMod.ini"]
        assert (target / "SkyMod.ini").exists()
        assert not (target / "skymod.esp").exists()

        (target / "SkyMod.ini").unlink()
        await installer.install(["skymod"])
        result = await installer.uninstall(["skymod"], purge=True)
        assert result.success, result.error
        assert not (target / "SkyMod.ini").exists()


class TestUpgrade:
    """Test Installer.upgrade"""

    async def install_v1(self, installer, repo):
        repo.add("a", "1.0.0", {"f1": b"one", "f2": b"two"})
        result = await installer.install(["a"])
        assert result.success, result.error
        repo.add("a", "2.0.0", {"f2": b"two v2", "f3": b"three"})

    @pytest.mark.asyncio
    async def test_upgrade_applies_diff(self, installer, repo, target):
        """Should remove f1, replace f2 and add f3"""
        await self.install_v1(installer, repo)

        result = await installer.upgrade(["a"])

        assert result.success, result.error
        entry = result.plan.get("a")
        assert (entry.files.remove, entry.files.replace, entry.files.add) == (["f1"], ["f2"], ["f3"])
        assert not (target / "f1").exists()
        assert (target / "f2").read_bytes() == b"two v2"
        assert (target / "f3").read_bytes() == b"three"
        assert installed(target) == {"a": "2.0.0"}
        assert requested(target) == {"a": "*"}

    @pytest.mark.asyncio
    async def test_upgrade_everything(self, installer, repo, target):
        """Should upgrade every package when no targets are given"""
        await self.install_v1(installer, repo)
        result = await installer.upgrade()
        assert result.success, result.error
        assert installed(target) == {"a": "2.0.0"}

    @pytest.mark.asyncio
    async def test_upgrade_with_constraint(self, installer, repo, target):
        """Should replace the requested constraint when a specifier is given"""
        await self.install_v1(installer, repo)
        result = await installer.upgrade(["a^1.0.0"])
        assert result.success, result.error
        assert installed(target) == {"a": "1.0.0"}
        assert requested(target) == {"a": "^1.0.0"}

    @pytest.mark.asyncio
    async def test_file_moves_between_packages(self, installer, repo, target):
        """Should hand a file from one package to another in a single upgrade"""
        repo.add("b", "1.0.0", {"b.esp": b"b"})
        repo.add("z", "1.0.0", {"z.esp": b"z", "shared.esp": b"from z"})
        assert (await installer.install(["b", "z"])).success

        repo.add("b", "2.0.0", {"b.esp": b"b", "shared.esp": b"from b"})
        repo.add("z", "2.0.0", {"z.esp": b"z"})
        result = await installer.upgrade()

        assert result.success, result.error
        assert [e.name for e in result.plan.changes] == ["z", "b"]
        assert (target / "shared.esp").read_bytes() == b"from b"
        assert installed(target) == {"b": "2.0.0", "z": "2.0.0"}
        records = PackageDatabase(target).load()
        assert "shared.esp" in records["b"].files
        assert "shared.esp" not in records["z"].files

    @pytest.mark.asyncio
    async def test_modified_replace_target(self, installer, repo, target):
        """Should refuse to replace a modified file unless forced"""
        await self.install_v1(installer, repo)
        (target / "f2").write_bytes(b"user edit")

        result = await installer.upgrade(["a"])
        assert result.error_kind == "ModifiedFileConflict"
        assert (target / "f1").exists()
        assert installed(target) == {"a": "1.0.0"}

        result = await installer.upgrade(["a"], InstallOptions(force=True))
        assert result.success, result.error
        assert (target / "f2").read_bytes() == b"two v2"


class TestRecovery:
    """Test re-running interrupted operations"""

    @pytest.mark.asyncio
    async def test_rerun_after_crash_before_record(self, installer, repo, target):
        """Should converge when files were applied but never recorded"""
        repo.add("skymod", "1.0.0", SKYMOD)
        await installer.install(["skymod"])
        PackageDatabase(target).remove("skymod")

        result = await installer.install(["skymod"])

        assert result.success, result.error
        assert installed(target) == {"skymod": "1.0.0"}
        record = PackageDatabase(target).load()["skymod"]
        assert record.digests["skymod.esp"] == sha256(b"plugin")

    @pytest.mark.asyncio
    async def test_rerun_after_partial_upgrade(self, installer, repo, target):
        """Should converge when an upgrade stopped halfway through applying"""
        repo.add("a", "1.0.0", {"f1": b"one", "f2": b"two"})
        await installer.install(["a"])
        repo.add("a", "2.0.0", {"f2": b"two v2", "f3": b"three"})
        (target / "f2").write_bytes(b"two v2")
        (target / "f3").write_bytes(b"three")
        (target / "f1").unlink()

        result = await installer.upgrade(["a"])

        assert result.success, result.error
        assert installed(target) == {"a": "2.0.0"}
        assert PackageDatabase(target).verify_unmodified(PackageDatabase(target).load()["a"]) == set()

    @pytest.mark.asyncio
    async def test_idempotent_install(self, installer, repo, target):
        """Should do nothing on a second identical install"""
        repo.add("skymod", "1.0.0", SKYMOD)
        await installer.install(["skymod"])
        result = await installer.install(["skymod"])
        assert result.success, result.error
        assert result.plan.is_empty
        assert result.packages == []
