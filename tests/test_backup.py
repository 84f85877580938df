import pytest

from pxcoperator.api.backup import (
    PITR,
    BcpRestoreState,
    PerconaXtraDBClusterBackup,
    PerconaXtraDBClusterBackupList,
    PerconaXtraDBClusterRestore,
    PerconaXtraDBClusterRestoreSpec,
    PXCBackupState,
    PXCBackupStatus,
)
from pxcoperator.api.types import BackupStorageS3Spec, ObjectMeta, ValidationError


def _backup(deleted=False, finalizers=()):
    return PerconaXtraDBClusterBackup(
        metadata=ObjectMeta(
            name="bk",
            uid="uid-1",
            deletion_timestamp="2021-01-01T00:00:00Z" if deleted else None,
            finalizers=list(finalizers),
        )
    )


def test_owner_ref():
    ref = _backup().owner_ref()
    assert ref.api_version == "pxc.percona.com/v1"
    assert ref.kind == "PerconaXtraDBClusterBackup"
    assert (ref.name, ref.uid, ref.controller) == ("bk", "uid-1", True)


def test_state_lookup_by_value():
    assert PXCBackupState("") is PXCBackupState.NEW
    assert BcpRestoreState("Point-in-time recovering") is BcpRestoreState.PITR
    with pytest.raises(ValueError):
        PXCBackupState("Unknown state")


@pytest.mark.parametrize(
    "items, expected",
    [
        ([], False),
        ([_backup()], False),
        ([_backup(deleted=True)], False),
        ([_backup(finalizers=["delete-s3-backup"])], False),
        ([_backup(), _backup(deleted=True, finalizers=["delete-s3-backup"])], True),
    ],
)
def test_has_unfinished_finalizers(items, expected):
    assert PerconaXtraDBClusterBackupList(items=items).has_unfinished_finalizers() is expected


def _restore(**spec):
    return PerconaXtraDBClusterRestore(spec=PerconaXtraDBClusterRestoreSpec(**spec))


def test_restore_requires_cluster():
    with pytest.raises(ValidationError, match="pxcCluster can't be empty"):
        _restore(backup_name="bk").check_n_set_defaults()


def test_restore_pitr_source_needs_storage():
    restore = _restore(
        pxc_cluster="c", backup_name="bk", pitr=PITR(backup_source=PXCBackupStatus())
    )
    with pytest.raises(ValidationError, match="can't be empty simultaneously"):
        restore.check_n_set_defaults()


def test_restore_pitr_source_with_s3_is_accepted():
    restore = _restore(
        pxc_cluster="c",
        backup_name="bk",
        pitr=PITR(backup_source=PXCBackupStatus(s3=BackupStorageS3Spec(bucket="b"))),
    )
    restore.check_n_set_defaults()
    assert restore.spec.backup_name == "bk"


def test_restore_needs_backup():
    with pytest.raises(ValidationError, match="backupName and BackupSource can't be empty"):
        _restore(pxc_cluster="c").check_n_set_defaults()


def test_restore_rejects_both_backups():
    restore = _restore(pxc_cluster="c", backup_name="bk", backup_source=PXCBackupStatus())
    with pytest.raises(ValidationError, match="can't be specified simultaneously"):
        restore.check_n_set_defaults()


def test_restore_with_source_only():
    restore = _restore(pxc_cluster="c", backup_source=PXCBackupStatus(destination="s3://b/x"))
    restore.check_n_set_defaults()
    assert restore.status.state == BcpRestoreState.NEW