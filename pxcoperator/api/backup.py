"""Backup and restore custom resources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .types import BackupStorageS3Spec, ObjectMeta, ValidationError

GROUP_NAME = "pxc.percona.com"
SCHEME_GROUP_VERSION = GROUP_NAME + "/v1"


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False


class PXCBackupState(str, Enum):
    NEW = ""
    STARTING = "Starting"
    RUNNING = "Running"
    FAILED = "Failed"
    SUCCEEDED = "Succeeded"


@dataclass
class PXCBackupSpec:
    pxc_cluster: str = ""
    storage_name: str = ""


@dataclass
class PXCBackupStatus:
    state: PXCBackupState = PXCBackupState.NEW
    completed_at: datetime | None = None
    last_scheduled: datetime | None = None
    destination: str = ""
    storage_name: str = ""
    s3: BackupStorageS3Spec | None = None


@dataclass
class PerconaXtraDBClusterBackup:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PXCBackupSpec = field(default_factory=PXCBackupSpec)
    status: PXCBackupStatus = field(default_factory=PXCBackupStatus)
    scheduler_name: str = ""
    priority_class_name: str = ""

    KIND = "PerconaXtraDBClusterBackup"

    def owner_ref(self):
        """Return a controller owner reference pointing at this backup."""
        return OwnerReference(
            api_version=SCHEME_GROUP_VERSION,
            kind=self.KIND,
            name=self.metadata.name,
            uid=self.metadata.uid,
            controller=True,
        )


def _has_unfinished_finalizers(items) -> bool:
    return any(
        item.metadata.deletion_timestamp is not None and item.metadata.finalizers
        for item in items
    )


@dataclass
class PerconaXtraDBClusterBackupList:
    items: list[PerconaXtraDBClusterBackup] = field(default_factory=list)

    def has_unfinished_finalizers(self):
        """Return True if a deleted item still carries finalizers."""
        return _has_unfinished_finalizers(self.items)


class BcpRestoreState(str, Enum):
    NEW = ""
    STARTING = "Starting"
    STOP_CLUSTER = "Stopping Cluster"
    RESTORE = "Restoring"
    START_CLUSTER = "Starting Cluster"
    PITR = "Point-in-time recovering"
    FAILED = "Failed"
    SUCCEEDED = "Succeeded"


@dataclass
class PITR:
    backup_source: PXCBackupStatus | None = None
    type: str = ""
    date: str = ""
    gtid: str = ""


@dataclass
class PerconaXtraDBClusterRestoreSpec:
    pxc_cluster: str = ""
    backup_name: str = ""
    backup_source: PXCBackupStatus | None = None
    pitr: PITR | None = None


@dataclass
class PerconaXtraDBClusterRestoreStatus:
    state: BcpRestoreState = BcpRestoreState.NEW
    comments: str = ""
    completed_at: datetime | None = None
    last_scheduled: datetime | None = None


@dataclass
class PerconaXtraDBClusterRestore:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PerconaXtraDBClusterRestoreSpec = field(default_factory=PerconaXtraDBClusterRestoreSpec)
    status: PerconaXtraDBClusterRestoreStatus = field(
        default_factory=PerconaXtraDBClusterRestoreStatus
    )

    def check_n_set_defaults(self):
        """Raise ValidationError if the restore specification is inconsistent."""
        spec = self.spec
        if not spec.pxc_cluster:
            raise ValidationError("pxcCluster can't be empty")
        if (
            spec.pitr is not None
            and spec.pitr.backup_source is not None
            and not spec.pitr.backup_source.storage_name
            and spec.pitr.backup_source.s3 is None
        ):
            raise ValidationError(
                "PITR.BackupSource.StorageName and PITR.BackupSource.S3 "
                "can't be empty simultaneously"
            )
        if not spec.backup_name and spec.backup_source is None:
            raise ValidationError("backupName and BackupSource can't be empty simultaneously")
        if spec.backup_name and spec.backup_source is not None:
            raise ValidationError(
                "backupName and BackupSource can't be specified simultaneously"
            )


@dataclass
class PerconaXtraDBClusterRestoreList:
    items: list[PerconaXtraDBClusterRestore] = field(default_factory=list)