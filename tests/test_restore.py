from __future__ import annotations

import re
from typing import Dict

import pytest

import pbs_pv_runner as runner
from conftest import FakeArchiver, FakeProvider, make_archive

ZFS_PV = runner.RestoreTarget("zfs_pv", "zfs", root="tank/restored")
LVM_PVE = runner.RestoreTarget("lvm_pve", "lvmthin", vg="pve", thinpool="data")

OLD, NEW = 1738200000, 1738288800


def _sets() -> list:
    old = runner.SnapshotSetRef(OLD, (make_archive("zfs", "vm-1-disk-0"),))
    new = runner.SnapshotSetRef(NEW, (
        make_archive("zfs", "vm-1-disk-0"),
        make_archive("lvmthin", "vm-7777-disk-data.raw"),
        make_archive("lvmthin", "vm-8888.raw"),
    ))
    return [old, new]


@pytest.fixture
def restore_config(make_config):
    return make_config(
        restore_targets={"zfs_pv": ZFS_PV, "lvm_pve": LVM_PVE},
        restore_rules=(
            runner.RestoreRule("zfs", "zfs_pv"),
            runner.RestoreRule("lvmthin", "lvm_pve", re.compile("vm-7777-.*")),
        ),
        default_target="zfs_pv",
    )


def test_selection_is_required(restore_config, providers) -> None:
    with pytest.raises(runner.ConfigurationError):
        runner.run_restore(restore_config, providers=providers, archiver=FakeArchiver(_sets()))


def test_dry_run_reports_routes_without_mutations(restore_config, providers) -> None:
    archiver = FakeArchiver(_sets())
    report = runner.run_restore(restore_config, select_all=True, dry_run=True,
                                providers=providers, archiver=archiver)

    assert report.snapshot_time == NEW
    assert [(o.target, o.tier, o.status) for o in report.outcomes] == [
        ("zfs_pv", runner.TIER_RULE, runner.STATUS_PLANNED),
        ("lvm_pve", runner.TIER_RULE, runner.STATUS_PLANNED),
        ("lvm_pve", runner.TIER_SAME_TYPE, runner.STATUS_PLANNED),
    ]
    assert archiver.mutations() == []
    assert providers["zfs"].mutations() == providers["lvmthin"].mutations() == []


def test_restore_materializes_then_fetches(restore_config, providers) -> None:
    archiver = FakeArchiver(_sets())
    name = make_archive("lvmthin", "vm-7777-disk-data.raw").name

    report = runner.run_restore(restore_config, archives=[name], providers=providers, archiver=archiver)

    assert report.status == "success"
    assert report.outcomes[0].status == runner.STATUS_RESTORED
    assert report.outcomes[0].destination == "pve/vm-7777-disk-data.raw"
    assert providers["lvmthin"].calls == [("materialize_volume", "lvm_pve", name, False)]
    assert ("fetch", NEW, name, "/dev/pve/vm-7777-disk-data.raw") in archiver.calls


def test_timestamp_selector_picks_newest_set_at_or_before(restore_config, providers) -> None:
    archiver = FakeArchiver(_sets())
    report = runner.run_restore(restore_config, snapshot=str(NEW - 1), select_all=True, dry_run=True,
                                providers=providers, archiver=archiver)
    assert report.snapshot_time == OLD
    assert len(report.outcomes) == 1


def test_no_set_before_selector(restore_config, providers) -> None:
    with pytest.raises(runner.SnapshotSetNotFound):
        runner.run_restore(restore_config, snapshot="2020-01-01T00:00:00Z", select_all=True,
                           providers=providers, archiver=FakeArchiver(_sets()))


def test_missing_archive_and_missing_route_are_item_failures(make_config, providers) -> None:
    cfg = make_config(restore_targets={"lvm_pve": LVM_PVE})
    archiver = FakeArchiver(_sets())
    zfs_name = make_archive("zfs", "vm-1-disk-0").name
    lvm_name = make_archive("lvmthin", "vm-8888.raw").name

    report = runner.run_restore(cfg, archives=["nope.img", zfs_name, lvm_name],
                                providers=providers, archiver=archiver)

    assert [o.status for o in report.outcomes] == [
        runner.STATUS_FAILED, runner.STATUS_FAILED, runner.STATUS_RESTORED,
    ]
    assert "not found" in report.outcomes[0].error
    assert "no restore target" in report.outcomes[1].error
    assert report.exit_code == runner.EXIT_FAILURE


def test_existing_destination_fails_without_force(restore_config, providers) -> None:
    providers["zfs"].existing.add("tank/restored/vm-1-disk-0")
    archiver = FakeArchiver(_sets())
    name = make_archive("zfs", "vm-1-disk-0").name

    report = runner.run_restore(restore_config, archives=[name], providers=providers, archiver=archiver)
    assert report.outcomes[0].status == runner.STATUS_FAILED
    assert "already exists" in report.outcomes[0].error
    assert not [c for c in archiver.calls if c[0] == "fetch"]

    report = runner.run_restore(restore_config, archives=[name], force=True,
                                providers=providers, archiver=archiver)
    assert report.outcomes[0].status == runner.STATUS_RESTORED


def test_two_archives_on_one_destination_fail_the_later(make_config, providers) -> None:
    a = make_archive("zfs", "vm-1-disk-0", uid="11111111")
    b = make_archive("lvmthin", "vm-1-disk-0", uid="22222222")
    cfg = make_config(restore_targets={"zfs_pv": ZFS_PV}, default_target="zfs_pv")
    archiver = FakeArchiver([runner.SnapshotSetRef(NEW, (a, b))])

    report = runner.run_restore(cfg, select_all=True, providers=providers, archiver=archiver)

    assert [o.status for o in report.outcomes] == [runner.STATUS_RESTORED, runner.STATUS_FAILED]
    assert "already the destination of" in report.outcomes[1].error


def test_fetch_failure_is_recorded(restore_config, providers) -> None:
    archiver = FakeArchiver(_sets())
    name = make_archive("zfs", "vm-1-disk-0").name
    archiver.fail_fetch.add(name)

    report = runner.run_restore(restore_config, select_all=True, providers=providers, archiver=archiver)

    assert [o.status for o in report.outcomes] == [
        runner.STATUS_FAILED, runner.STATUS_RESTORED, runner.STATUS_RESTORED,
    ]
    assert report.status == "partial failure"


def test_select_snapshot_set_parsing() -> None:
    sets = _sets()
    assert runner.select_snapshot_set(sets, "latest").backup_time == NEW
    assert runner.select_snapshot_set(sets, "2025-01-31T02:00:00Z").backup_time == NEW
    assert runner.select_snapshot_set(sets, "2025-01-30T02:00:00").backup_time == OLD
    with pytest.raises(runner.ConfigurationError):
        runner.select_snapshot_set(sets, "yesterday")
    with pytest.raises(runner.SnapshotSetNotFound):
        runner.select_snapshot_set([], "latest")


def test_failed_fetch_names_the_volume_it_created(restore_config, providers) -> None:
    archiver = FakeArchiver(_sets())
    name = make_archive("zfs", "vm-1-disk-0").name
    archiver.fail_fetch.add(name)

    report = runner.run_restore(restore_config, archives=[name], providers=providers, archiver=archiver)

    error = report.outcomes[0].error
    assert "transfer of" in error
    assert "tank/restored/vm-1-disk-0" in error
    assert "--force" in error


def test_failed_fetch_onto_existing_volume_has_no_leftover_note(restore_config, providers) -> None:
    providers["zfs"].existing.add("tank/restored/vm-1-disk-0")
    archiver = FakeArchiver(_sets())
    name = make_archive("zfs", "vm-1-disk-0").name
    archiver.fail_fetch.add(name)

    report = runner.run_restore(restore_config, archives=[name], force=True, providers=providers, archiver=archiver)

    assert report.outcomes[0].error == f"transfer of {name} failed"
