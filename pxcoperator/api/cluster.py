"""The cluster custom resource: defaults, validation and helpers."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from packaging.version import Version

from .status import AppState, PerconaXtraDBClusterStatus
from .types import (
    PULL_ALWAYS,
    SMART_UPDATE_STATEFULSET_STRATEGY_TYPE,
    WORKLOAD_SA,
    BackupStorageType,
    LogCollectorSpec,
    NamespacedName,
    ObjectMeta,
    PMMSpec,
    PodDisruptionBudgetSpec,
    PodSpec,
    Platform,
    PXCScheduledBackup,
    PXCSpec,
    TLSSpec,
    UpgradeOptions,
    ValidationError,
)

log = logging.getLogger(__name__)

OPERATOR_VERSION = "1.7.0"
API_GROUP = "pxc.percona.com"
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"
ISSUE_VAULT_TOKEN_ANNOTATION = "percona.com/issue-vault-token"
LEGACY_WORKLOAD_SA = "percona-xtradb-cluster-operator-workload"

CLUSTER_NAME_MAX_LEN = 22
DEFAULT_PXC_GRACE_PERIOD_SEC = 600
DEFAULT_PROXY_GRACE_PERIOD_SEC = 30
MAX_SAFE_PXC_SIZE = 5
MIN_SAFE_PROXY_SIZE = 2
_RESERVED_CHANNEL_NAMES = frozenset({"group_replication_applier", "group_replication_recovery"})
_KEY_SPLIT = re.compile(r"[=:]")


def _text(value) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def _parse_ini_keys(text: str) -> dict[str, set[str]]:
    """Return the keys of each section of an ini document."""
    sections: dict[str, set[str]] = {"DEFAULT": set()}
    current = "DEFAULT"
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped[0] in "#;":
            continue
        if stripped.startswith("["):
            end = stripped.find("]")
            if end == -1:
                raise ValidationError(f"load configuration: unclosed section: {stripped}")
            current = stripped[1:end].strip()
            sections.setdefault(current, set())
            continue
        key = _KEY_SPLIT.split(stripped, maxsplit=1)[0].strip()
        if not key:
            raise ValidationError(f"load configuration: empty key name: {stripped}")
        sections[current].add(key)
    return sections


@dataclass
class ServerVersion:
    platform: Platform | str = ""
    info: str = ""


@dataclass
class PerconaXtraDBClusterSpec:
    platform: Platform | str = ""
    cr_version: str = ""
    pause: bool = False
    secrets_name: str = ""
    vault_secret_name: str = ""
    ssl_secret_name: str = ""
    ssl_internal_secret_name: str = ""
    log_collector_secret_name: str = ""
    tls: TLSSpec | None = None
    pxc: PXCSpec | None = None
    proxysql: PodSpec | None = None
    haproxy: PodSpec | None = None
    pmm: PMMSpec | None = None
    log_collector: LogCollectorSpec | None = None
    backup: PXCScheduledBackup | None = None
    update_strategy: str = ""
    upgrade_options: UpgradeOptions = field(default_factory=UpgradeOptions)
    allow_unsafe_config: bool = False
    init_image: str = ""
    enable_cr_validation_webhook: bool | None = None


def _enabled(spec) -> bool:
    return spec is not None and spec.enabled


@dataclass
class PerconaXtraDBCluster:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PerconaXtraDBClusterSpec = field(default_factory=PerconaXtraDBClusterSpec)
    status: PerconaXtraDBClusterStatus = field(default_factory=PerconaXtraDBClusterStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def validate(self):
        """Raise ValidationError if the specification is not acceptable."""
        if len(self.name) > CLUSTER_NAME_MAX_LEN:
            raise ValidationError(
                f"cluster name ({self.name}) too long, must be no more than "
                f"{CLUSTER_NAME_MAX_LEN} characters"
            )
        c = self.spec
        if c.pxc is None:
            raise ValidationError(
                f"spec.pxc section is not specified. Please check {self.name} cluster settings"
            )
        if c.pxc.auto_recovery is None:
            c.pxc.auto_recovery = True
        if not c.pxc.image:
            raise ValidationError("pxc.Image can't be empty")

        channels = c.pxc.replication_channels
        if channels:
            is_src = channels[0].is_source
            for channel in channels:
                if (
                    len(channel.name) > 64
                    or not channel.name
                    or channel.name in _RESERVED_CHANNEL_NAMES
                ):
                    raise ValidationError(
                        f"invalid replication channel name {channel.name}, "
                        "please see channel naming conventions"
                    )
                if is_src != channel.is_source:
                    raise ValidationError(
                        "you can specify only one type of replication please specify "
                        "equal values for isSource field"
                    )
                if channel.is_source:
                    continue
                if not channel.sources_list:
                    raise ValidationError(
                        f"sources list for replication channel {channel.name} should be "
                        "empty, because it's replica"
                    )

        if _enabled(c.pmm) and not c.pmm.image:
            raise ValidationError("pmm.Image can't be empty")

        if c.pxc.volume_spec is None:
            raise ValidationError("PXC: volumeSpec should be specified")
        try:
            c.pxc.volume_spec.validate()
        except ValidationError as exc:
            raise ValidationError(f"PXC: validate volume spec: {exc}") from exc

        if _enabled(c.haproxy) and _enabled(c.proxysql):
            raise ValidationError(
                "can't enable both HAProxy and ProxySQL please only select one of them"
            )

        if _enabled(c.haproxy) and not c.haproxy.image:
            raise ValidationError("haproxy.Image can't be empty")

        if _enabled(c.proxysql):
            if not c.proxysql.image:
                raise ValidationError("proxysql.Image can't be empty")
            if c.proxysql.volume_spec is None:
                raise ValidationError("ProxySQL: volumeSpec should be specified")
            try:
                c.proxysql.volume_spec.validate()
            except ValidationError as exc:
                raise ValidationError(f"ProxySQL: validate volume spec: {exc}") from exc

        if c.backup is not None:
            if not c.backup.image:
                raise ValidationError("backup.Image can't be empty")
            pitr = c.backup.pitr
            if pitr.enabled:
                if not pitr.storage_name:
                    raise ValidationError("backup.PITR.StorageName can't be empty")
                if pitr.storage_name not in c.backup.storages:
                    raise ValidationError(f"pitr storage {pitr.storage_name} doesn't exist")
            for sch in c.backup.schedule:
                storage = c.backup.storages.get(sch.storage_name)
                if storage is None:
                    raise ValidationError(f"storage {sch.storage_name} doesn't exist")
                if storage.type == BackupStorageType.FILESYSTEM:
                    if storage.volume is None:
                        raise ValidationError(
                            f"backup storage {sch.storage_name}: volume should be specified"
                        )
                    try:
                        storage.volume.validate()
                    except ValidationError as exc:
                        raise ValidationError(f"Backup: validate volume spec: {exc}") from exc

        if (
            c.update_strategy == SMART_UPDATE_STATEFULSET_STRATEGY_TYPE
            and not _enabled(c.proxysql)
            and not _enabled(c.haproxy)
        ):
            raise ValidationError("ProxySQL or HAProxy should be enabled if SmartUpdate set")

    def should_wait_for_token_issue(self):
        """Return True if the vault token issue annotation is present."""
        return ISSUE_VAULT_TOKEN_ANNOTATION in self.metadata.annotations

    def _set_version(self) -> bool:
        if self.spec.cr_version:
            return False
        api_version = OPERATOR_VERSION
        last = self.metadata.annotations.get(LAST_APPLIED_ANNOTATION)
        if last is not None:
            try:
                parsed = json.loads(last)
                if not isinstance(parsed, dict):
                    raise ValueError("not an object")
                last_api_version = parsed.get("apiVersion") or ""
                if not isinstance(last_api_version, str):
                    raise ValueError("apiVersion is not a string")
            except ValueError as exc:
                log.warning("failed to unmarshal cr: %s", exc)
            else:
                if last_api_version:
                    api_version = last_api_version.removeprefix(API_GROUP + "/v").replace("-", ".")
        self.spec.cr_version = api_version
        return True

    def _version(self) -> Version:
        return Version(self.spec.cr_version)

    def compare_version_with(self, ver):
        """Return -1, 0 or 1 as the resource version is below, equal to or above ``ver``."""
        if not self.spec.cr_version:
            self._set_version()
        current, other = self._version(), Version(ver)
        return (current > other) - (current < other)

    def config_has_key(self, section, key):
        """Return True if the PXC configuration has ``key`` in ``section``."""
        sections = _parse_ini_keys(self.spec.pxc.configuration if self.spec.pxc else "")
        return key in sections.get(section, set())

    def _set_safe_defaults(self, logger) -> None:
        spec = self.spec
        if spec.allow_unsafe_config:
            return

        def loginfo(msg: str) -> None:
            logger.info(msg)
            logger.info("Set allowUnsafeConfigurations=true to disable safe configuration")

        pxc = spec.pxc
        if pxc.size < 3:
            loginfo(f"Cluster size will be changed from {pxc.size} to 3 due to safe config")
            pxc.size = 3
        elif pxc.size > MAX_SAFE_PXC_SIZE:
            loginfo(
                f"Cluster size will be changed from {pxc.size} to {MAX_SAFE_PXC_SIZE} "
                "due to safe config"
            )
            pxc.size = MAX_SAFE_PXC_SIZE
        if pxc.size % 2 == 0:
            loginfo(
                f"Cluster size will be changed from {pxc.size} to {pxc.size + 1} "
                "due to safe config"
            )
            pxc.size += 1

        for label, proxy in (("ProxySQL", spec.proxysql), ("HAProxy", spec.haproxy)):
            if _enabled(proxy) and proxy.size < MIN_SAFE_PROXY_SIZE:
                loginfo(
                    f"{label} size will be changed from {proxy.size} to "
                    f"{MIN_SAFE_PROXY_SIZE} due to safe config"
                )
                proxy.size = MIN_SAFE_PROXY_SIZE

    def _set_probes_defaults(self) -> None:
        pxc = self.spec.pxc
        live, ready = pxc.liveness_probes, pxc.readiness_probes
        if pxc.liveness_initial_delay_seconds is not None:
            live.initial_delay_seconds = pxc.liveness_initial_delay_seconds
        elif live.initial_delay_seconds == 0:
            live.initial_delay_seconds = 300
        if live.timeout_seconds == 0:
            live.timeout_seconds = 5
        live.success_threshold = 1

        if pxc.readiness_initial_delay_seconds is not None:
            ready.initial_delay_seconds = pxc.readiness_initial_delay_seconds
        elif ready.initial_delay_seconds == 0:
            ready.initial_delay_seconds = 15
        if ready.period_seconds == 0:
            ready.period_seconds = 30
        if ready.failure_threshold == 0:
            ready.failure_threshold = 5
        if ready.timeout_seconds == 0:
            ready.timeout_seconds = 15

        haproxy = self.spec.haproxy
        if not _enabled(haproxy):
            return
        live, ready = haproxy.liveness_probes, haproxy.readiness_probes
        if haproxy.readiness_initial_delay_seconds is not None:
            ready.initial_delay_seconds = haproxy.readiness_initial_delay_seconds
        elif ready.initial_delay_seconds == 0:
            ready.initial_delay_seconds = 15
        if ready.period_seconds == 0:
            ready.period_seconds = 5
        if ready.timeout_seconds == 0:
            ready.timeout_seconds = 1

        if haproxy.liveness_initial_delay_seconds is not None:
            live.initial_delay_seconds = haproxy.liveness_initial_delay_seconds
        elif live.initial_delay_seconds == 0:
            live.initial_delay_seconds = 60
        if live.timeout_seconds == 0:
            live.timeout_seconds = 5
        if live.failure_threshold == 0:
            live.failure_threshold = 4
        if live.period_seconds == 0:
            live.period_seconds = 30
        live.success_threshold = 1

    def _set_security_context(self) -> None:
        fs_group = None if self.spec.platform == Platform.OPENSHIFT else 1001

        def context() -> dict:
            ctx: dict = {"supplementalGroups": [1001]}
            if fs_group is not None:
                ctx["fsGroup"] = fs_group
            return ctx

        if self.spec.pxc.pod_security_context is None:
            self.spec.pxc.pod_security_context = context()
        if self.spec.proxysql is not None and self.spec.proxysql.pod_security_context is None:
            self.spec.proxysql.pod_security_context = context()
        if self.spec.backup is not None:
            for storage in self.spec.backup.storages.values():
                if storage.pod_security_context is None:
                    storage.pod_security_context = context()

    def _proxy_defaults(self, proxy: PodSpec, env_suffix: str, workload_sa: str) -> None:
        if not proxy.image_pull_policy:
            proxy.image_pull_policy = PULL_ALWAYS
        if proxy.pod_disruption_budget is None:
            proxy.pod_disruption_budget = PodDisruptionBudgetSpec(max_unavailable=1)
        if proxy.termination_grace_period_seconds is None:
            proxy.termination_grace_period_seconds = DEFAULT_PROXY_GRACE_PERIOD_SEC
        if not proxy.service_account_name:
            proxy.service_account_name = workload_sa
        if not proxy.env_vars_secret_name:
            proxy.env_vars_secret_name = f"{self.name}-env-vars-{env_suffix}"
        proxy.reconcile_affinity_opts()
        if self.spec.pause:
            proxy.size = 0

    def check_n_set_defaults(self, server_version, logger=None):
        """Validate the resource and fill in defaults.

        Return True when the resource should be updated on the cluster.
        """
        logger = logger or log
        workload_sa = LEGACY_WORKLOAD_SA
        if self.compare_version_with("1.6.0") >= 0:
            workload_sa = WORKLOAD_SA

        cr_version_changed = self._set_version()

        try:
            self.validate()
        except ValidationError as exc:
            raise ValidationError(f"validate cr: {exc}") from exc

        c = self.spec
        changed = False
        name = self.name

        if c.pxc is not None:
            pxc = c.pxc
            changed = pxc.volume_spec.reconcile_opts()
            if not pxc.image_pull_policy:
                pxc.image_pull_policy = PULL_ALWAYS
            pxc.vault_secret_name = c.vault_secret_name or f"{name}-vault"
            pxc.ssl_secret_name = c.ssl_secret_name or f"{name}-ssl"
            pxc.ssl_internal_secret_name = c.ssl_internal_secret_name or f"{name}-ssl-internal"

            for channel in pxc.replication_channels:
                for src in channel.sources_list:
                    if src.weight == 0:
                        src.weight = 100
                    if src.port == 0:
                        src.port = 3306

            self._set_safe_defaults(logger)

            if pxc.pod_disruption_budget is None:
                pxc.pod_disruption_budget = PodDisruptionBudgetSpec(max_unavailable=1)
            if pxc.termination_grace_period_seconds is None:
                pxc.termination_grace_period_seconds = DEFAULT_PXC_GRACE_PERIOD_SEC
            if not pxc.service_account_name:
                pxc.service_account_name = workload_sa
            if not pxc.env_vars_secret_name:
                pxc.env_vars_secret_name = f"{name}-env-vars-pxc"
            pxc.reconcile_affinity_opts()
            if c.pause:
                pxc.size = 0
            if c.pmm is not None and c.pmm.resources is None:
                c.pmm.resources = pxc.resources
            if c.log_collector is not None and c.log_collector.resources is None:
                c.log_collector.resources = pxc.resources
            if not c.log_collector_secret_name:
                c.log_collector_secret_name = f"{name}-log-collector"

        if _enabled(c.pmm) and not c.pmm.image_pull_policy:
            c.pmm.image_pull_policy = PULL_ALWAYS

        if _enabled(c.log_collector) and not c.log_collector.image_pull_policy:
            c.log_collector.image_pull_policy = PULL_ALWAYS

        if _enabled(c.haproxy):
            self._proxy_defaults(c.haproxy, "haproxy", workload_sa)

        if _enabled(c.proxysql):
            proxysql = c.proxysql
            changed = proxysql.volume_spec.reconcile_opts()
            proxysql.ssl_secret_name = c.ssl_secret_name or f"{name}-ssl"
            proxysql.ssl_internal_secret_name = (
                c.ssl_internal_secret_name or f"{name}-ssl-internal"
            )
            self._proxy_defaults(proxysql, "proxysql", workload_sa)

        if c.backup is not None:
            if not c.backup.image_pull_policy:
                c.backup.image_pull_policy = PULL_ALWAYS
            if c.backup.pitr.enabled and c.backup.pitr.time_between_uploads == 0:
                c.backup.pitr.time_between_uploads = 60
            for sch in c.backup.schedule:
                storage = c.backup.storages[sch.storage_name]
                if storage.type == BackupStorageType.FILESYSTEM:
                    changed = storage.volume.reconcile_opts()

        if not c.platform:
            c.platform = server_version.platform or Platform.KUBERNETES

        self._set_probes_defaults()
        self._set_security_context()

        if c.enable_cr_validation_webhook is None:
            c.enable_cr_validation_webhook = False

        return cr_version_changed or changed

    def _named(self, suffix: str) -> NamespacedName:
        return NamespacedName(name=self.name + suffix, namespace=self.namespace)

    def proxysql_unready_service_namespaced_name(self):
        return self._named("-proxysql-unready")

    def proxysql_service_namespaced_name(self):
        return self._named("-proxysql")

    def haproxy_service_namespaced_name(self):
        return self._named("-haproxy")

    def haproxy_replicas_namespaced_name(self):
        return self._named("-haproxy-replicas")

    def haproxy_enabled(self):
        return _enabled(self.spec.haproxy)

    def proxysql_enabled(self):
        return _enabled(self.spec.proxysql)

    def can_backup(self):
        """Raise ValidationError if a backup cannot be taken in the current state."""
        if self.status.status == AppState.READY:
            return
        if not self.spec.allow_unsafe_config:
            raise ValidationError(
                "allowUnsafeConfigurations must be true to run backup on cluster with "
                f"status {_text(self.status.status)}"
            )
        if self.status.pxc.ready < 1:
            raise ValidationError("there are no ready PXC nodes")


@dataclass
class PerconaXtraDBClusterList:
    items: list[PerconaXtraDBCluster] = field(default_factory=list)

    def has_unfinished_finalizers(self):
        """Return True if a deleted item still carries finalizers."""
        return any(
            item.metadata.deletion_timestamp is not None and item.metadata.finalizers
            for item in self.items
        )