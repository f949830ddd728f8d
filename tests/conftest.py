from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

import pbs_pv_runner as runner


class FakeProvider:
    """In-memory StorageProvider recording every call."""

    def __init__(self, provider_type: str, volumes: Optional[Dict[str, List[runner.Volume]]] = None):
        self.provider_type = provider_type
        self.volumes = volumes or {}
        self.calls: List[tuple] = []
        self.fail_list: set = set()
        self.fail_create: set = set()
        self.fail_delete: set = set()
        self.existing: set = set()

    def list_volumes(self, source: str) -> List[runner.Volume]:
        self.calls.append(("list_volumes", source))
        if source in self.fail_list:
            raise runner.ProviderError(f"cannot list {source}")
        return list(self.volumes.get(source, []))

    def create_snapshot(self, volume: runner.Volume) -> runner.Snapshot:
        self.calls.append(("create_snapshot", volume.name))
        if volume.name in self.fail_create:
            raise runner.ProviderError(f"snapshot of {volume.name} rejected")
        return runner.Snapshot(volume=volume, name=f"{volume.name}@pvbkp-test", device=Path(f"/dev/fake/{volume.leaf}"))

    def delete_snapshot(self, snapshot: runner.Snapshot) -> None:
        self.calls.append(("delete_snapshot", snapshot.volume.name))
        if snapshot.volume.name in self.fail_delete:
            raise runner.ProviderError(f"cannot delete {snapshot.name}")

    def materialize_volume(self, target: runner.RestoreTarget, archive: runner.Archive,
                           force: bool = False) -> runner.VolumeHandle:
        self.calls.append(("materialize_volume", target.name, archive.name, force))
        dest = runner.destination_name(target, archive)
        if dest in self.existing and not force:
            raise runner.DestinationExists(f"{dest} already exists")
        return runner.VolumeHandle(target.name, dest, Path("/dev") / dest, created=dest not in self.existing)

    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] != "list_volumes"]

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)


class FakeArchiver:
    """Archiver double: streams and fetches are recorded, failures injected per archive name."""

    backup_time = 1738288800

    def __init__(self, snapshot_sets: Sequence[runner.SnapshotSetRef] = ()):
        self.snapshot_sets = list(snapshot_sets)
        self.calls: List[tuple] = []
        self.fail_stream: Dict[str, BaseException] = {}
        self.fail_fetch: set = set()
        self.fail_namespace = False

    def ensure_namespace(self) -> None:
        self.calls.append(("ensure_namespace",))
        if self.fail_namespace:
            raise runner.ArchiverError("namespace create failed")

    def stream(self, archive_name: str, device: Path) -> runner.Ack:
        self.calls.append(("stream", archive_name, str(device)))
        if archive_name in self.fail_stream:
            raise self.fail_stream[archive_name]
        return runner.Ack(archive_name, "test", self.backup_time)

    def list_snapshot_sets(self) -> List[runner.SnapshotSetRef]:
        self.calls.append(("list_snapshot_sets",))
        return list(self.snapshot_sets)

    def list_archives(self, snapshot_set: runner.SnapshotSetRef) -> List[runner.Archive]:
        self.calls.append(("list_archives", snapshot_set.backup_time))
        return list(snapshot_set.archives)

    def fetch(self, snapshot_set: runner.SnapshotSetRef, archive_name: str, device: Path) -> None:
        self.calls.append(("fetch", snapshot_set.backup_time, archive_name, str(device)))
        if archive_name in self.fail_fetch:
            raise runner.ArchiverError(f"transfer of {archive_name} failed")

    def mutations(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("ensure_namespace", "stream", "fetch")]


def make_volume(provider: str, source: str, leaf: str, uid: str = "85a081ee", size: int = 1 << 30) -> runner.Volume:
    return runner.Volume(name=f"{source}/{leaf}", provider=provider, source=source, leaf=leaf, size=size, uid=uid)


def make_archive(provider: str, leaf: str, uid: str = "0123abcd", size: int = 1 << 30) -> runner.Archive:
    name = runner.make_archive_name(provider, leaf, uid)
    return runner.Archive(name=name, provider=provider, leaf=leaf, size=size, backup_id=f"pve1-pv.{name[:-4]}")


@pytest.fixture
def make_config():
    def _make(**overrides) -> runner.Config:
        base = dict(
            repos={"main": runner.RepoConfig("main", "backup@pbs@pbs.example:store", "secret")},
            default_repo="main",
            backup_id="pve1-pv",
            zfs_pools=("tank",),
            lvm_vgs=("pve",),
            lock_path="/tmp/pbs-pv-runner-test.lock",
        )
        base.update(overrides)
        return runner.Config(**base)

    return _make


@pytest.fixture
def providers() -> Dict[str, FakeProvider]:
    return {"zfs": FakeProvider("zfs"), "lvmthin": FakeProvider("lvmthin")}


@pytest.fixture
def write_config(tmp_path: Path):
    def _write(text: str, name: str = "config.yaml") -> Path:
        p = tmp_path / name
        p.write_text(text)
        return p

    return _write
