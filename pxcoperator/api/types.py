"""Specification types shared by the cluster custom resource."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

SMART_UPDATE_STATEFULSET_STRATEGY_TYPE = "SmartUpdate"
WORKLOAD_SA = "default"
FINALIZER_DELETE_S3_BACKUP = "delete-s3-backup"

PULL_ALWAYS = "Always"
READ_WRITE_ONCE = "ReadWriteOnce"
RESOURCE_STORAGE = "storage"

AFFINITY_TOPOLOGY_KEY_OFF = "none"
DEFAULT_AFFINITY_TOPOLOGY_KEY = "kubernetes.io/hostname"
AFFINITY_VALID_TOPOLOGY_KEYS = frozenset(
    {
        AFFINITY_TOPOLOGY_KEY_OFF,
        "kubernetes.io/hostname",
        "failure-domain.beta.kubernetes.io/zone",
        "failure-domain.beta.kubernetes.io/region",
    }
)


class ValidationError(Exception):
    """Raised when a resource specification is not acceptable."""


class NoCustomVolumeError(LookupError):
    """Raised when no custom volume is found."""

    def __init__(self, message: str = "no custom volume found"):
        super().__init__(message)


class Platform(str, Enum):
    KUBERNETES = "kubernetes"
    OPENSHIFT = "openshift"


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    deletion_timestamp: str | None = None


@dataclass(frozen=True)
class NamespacedName:
    name: str = ""
    namespace: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class Probe:
    initial_delay_seconds: int = 0
    timeout_seconds: int = 0
    period_seconds: int = 0
    success_threshold: int = 0
    failure_threshold: int = 0


@dataclass
class ResourcesList:
    memory: str = ""
    cpu: str = ""
    ephemeral_storage: str = ""


@dataclass
class PodResources:
    requests: ResourcesList | None = None
    limits: ResourcesList | None = None


@dataclass
class PodAffinity:
    topology_key: str | None = None
    advanced: dict[str, Any] | None = None


@dataclass
class PodDisruptionBudgetSpec:
    min_available: int | str | None = None
    max_unavailable: int | str | None = None


@dataclass
class VolumeSpec:
    """Data volume: an emptyDir, a hostPath or a persistent volume claim."""

    empty_dir: dict[str, Any] | None = None
    host_path: dict[str, Any] | None = None
    persistent_volume_claim: dict[str, Any] | None = None

    def _default_claim(self) -> None:
        if self.empty_dir is None and self.host_path is None and self.persistent_volume_claim is None:
            self.persistent_volume_claim = {}

    def reconcile_opts(self) -> bool:
        """Fill in defaults; return True when the access modes were set."""
        self._default_claim()
        changed = False
        if self.persistent_volume_claim is not None:
            if not self.persistent_volume_claim.get("accessModes"):
                self.persistent_volume_claim["accessModes"] = [READ_WRITE_ONCE]
                changed = True
        return changed

    def validate(self) -> None:
        """Raise ValidationError unless a claim carries a storage request."""
        self._default_claim()
        if self.persistent_volume_claim is not None:
            resources = self.persistent_volume_claim.get("resources") or {}
            requests = resources.get("requests") or {}
            if RESOURCE_STORAGE not in requests:
                raise ValidationError("volume.resources.storage can't be empty")


@dataclass
class PodSpec:
    enabled: bool = False
    size: int = 0
    image: str = ""
    resources: PodResources | None = None
    sidecar_resources: PodResources | None = None
    volume_spec: VolumeSpec | None = None
    affinity: PodAffinity | None = None
    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    priority_class_name: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    image_pull_secrets: list[dict[str, Any]] = field(default_factory=list)
    configuration: str = ""
    pod_disruption_budget: PodDisruptionBudgetSpec | None = None
    vault_secret_name: str = ""
    ssl_secret_name: str = ""
    ssl_internal_secret_name: str = ""
    env_vars_secret_name: str = ""
    termination_grace_period_seconds: int | None = None
    force_unsafe_bootstrap: bool = False
    service_type: str = ""
    replicas_service_type: str = ""
    external_traffic_policy: str = ""
    replicas_external_traffic_policy: str = ""
    load_balancer_source_ranges: list[str] = field(default_factory=list)
    service_annotations: dict[str, str] = field(default_factory=dict)
    scheduler_name: str = ""
    readiness_initial_delay_seconds: int | None = None
    readiness_probes: Probe = field(default_factory=Probe)
    liveness_initial_delay_seconds: int | None = None
    liveness_probes: Probe = field(default_factory=Probe)
    pod_security_context: dict[str, Any] | None = None
    container_security_context: dict[str, Any] | None = None
    service_account_name: str = ""
    image_pull_policy: str = ""
    sidecars: list[dict[str, Any]] = field(default_factory=list)
    runtime_class_name: str | None = None

    def reconcile_affinity_opts(self) -> None:
        """Bring the anti-affinity settings to valid values.

        A missing affinity or topology key gets the default key; advanced
        settings take precedence and clear the key; an unknown key is
        replaced by the default.
        """
        if self.affinity is None:
            self.affinity = PodAffinity(topology_key=DEFAULT_AFFINITY_TOPOLOGY_KEY)
        elif self.affinity.topology_key is None:
            self.affinity.topology_key = DEFAULT_AFFINITY_TOPOLOGY_KEY
        elif self.affinity.advanced is not None:
            self.affinity.topology_key = None
        elif self.affinity.topology_key not in AFFINITY_VALID_TOPOLOGY_KEYS:
            self.affinity.topology_key = DEFAULT_AFFINITY_TOPOLOGY_KEY


@dataclass
class ReplicationSource:
    host: str = ""
    port: int = 0
    weight: int = 0


@dataclass
class ReplicationChannel:
    name: str = ""
    is_source: bool = False
    sources_list: list[ReplicationSource] = field(default_factory=list)


@dataclass
class ServiceExpose:
    enabled: bool = False
    type: str = ""
    load_balancer_source_ranges: list[str] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)
    traffic_policy: str = ""


@dataclass
class PXCSpec(PodSpec):
    auto_recovery: bool | None = None
    replication_channels: list[ReplicationChannel] = field(default_factory=list)
    expose: ServiceExpose = field(default_factory=ServiceExpose)


@dataclass
class TLSSpec:
    sans: list[str] = field(default_factory=list)
    issuer_conf: dict[str, Any] | None = None


@dataclass
class UpgradeOptions:
    version_service_endpoint: str = ""
    apply: str = ""
    schedule: str = ""


@dataclass
class PITRSpec:
    enabled: bool = False
    storage_name: str = ""
    resources: PodResources | None = None
    time_between_uploads: float = 0.0


@dataclass
class PXCScheduledBackupSchedule:
    name: str = ""
    schedule: str = ""
    keep: int = 0
    storage_name: str = ""


class BackupStorageType(str, Enum):
    FILESYSTEM = "filesystem"
    S3 = "s3"


@dataclass
class BackupStorageS3Spec:
    bucket: str = ""
    credentials_secret: str = ""
    region: str = ""
    endpoint_url: str = ""


@dataclass
class BackupStorageSpec:
    type: BackupStorageType = BackupStorageType.S3
    s3: BackupStorageS3Spec = field(default_factory=BackupStorageS3Spec)
    volume: VolumeSpec | None = None
    node_selector: dict[str, str] = field(default_factory=dict)
    resources: PodResources | None = None
    affinity: dict[str, Any] | None = None
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    scheduler_name: str = ""
    priority_class_name: str = ""
    pod_security_context: dict[str, Any] | None = None
    container_security_context: dict[str, Any] | None = None
    runtime_class_name: str | None = None


@dataclass
class PXCScheduledBackup:
    image: str = ""
    image_pull_secrets: list[dict[str, Any]] = field(default_factory=list)
    image_pull_policy: str = ""
    schedule: list[PXCScheduledBackupSchedule] = field(default_factory=list)
    storages: dict[str, BackupStorageSpec] = field(default_factory=dict)
    service_account_name: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    pitr: PITRSpec = field(default_factory=PITRSpec)


@dataclass
class LogCollectorSpec:
    enabled: bool = False
    image: str = ""
    resources: PodResources | None = None
    configuration: str = ""
    container_security_context: dict[str, Any] | None = None
    image_pull_policy: str = ""
    runtime_class_name: str | None = None


@dataclass
class PMMSpec:
    enabled: bool = False
    server_host: str = ""
    image: str = ""
    server_user: str = ""
    pxc_params: str = ""
    proxysql_params: str = ""
    resources: PodResources | None = None
    container_security_context: dict[str, Any] | None = None
    image_pull_policy: str = ""
    runtime_class_name: str | None = None


def contains_volume(volumes: Iterable[Mapping[str, Any]], name: str) -> bool:
    """Return True if a volume with the given name is among ``volumes``."""
    return any(volume.get("name") == name for volume in volumes)


def add_sidecar_containers(logger, existing, sidecars):
    """Return ``existing`` followed by the sidecars whose names are not taken."""
    if not sidecars:
        return existing
    names = {container.get("name") for container in existing}
    result = list(existing)
    for container in sidecars:
        name = container.get("name")
        if name in names:
            logger.info(f"Sidecar container name cannot be {name}. It's skipped")
            continue
        result.append(container)
    return result