"""Observed state of a cluster and its components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

MAX_STATUSES_QUANTITY = 20


class AppState(str, Enum):
    UNKNOWN = "unknown"
    INIT = "initializing"
    PAUSED = "paused"
    STOPPING = "stopping"
    READY = "ready"
    ERROR = "error"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class ClusterCondition:
    status: ConditionStatus | str = ""
    type: AppState | str = ""
    last_transition_time: datetime | None = None
    reason: str = ""
    message: str = ""


@dataclass
class ComponentStatus:
    status: AppState | str = ""
    message: str = ""
    version: str = ""
    image: str = ""
    label_selector_path: str = ""


@dataclass
class AppStatus(ComponentStatus):
    size: int = 0
    ready: int = 0


@dataclass
class PerconaXtraDBClusterStatus:
    pxc: AppStatus = field(default_factory=AppStatus)
    proxysql: AppStatus = field(default_factory=AppStatus)
    haproxy: AppStatus = field(default_factory=AppStatus)
    backup: ComponentStatus = field(default_factory=ComponentStatus)
    pmm: ComponentStatus = field(default_factory=ComponentStatus)
    log_collector: ComponentStatus = field(default_factory=ComponentStatus)
    host: str = ""
    messages: list[str] = field(default_factory=list)
    status: AppState | str = ""
    conditions: list[ClusterCondition] = field(default_factory=list)
    observed_generation: int = 0
    size: int = 0
    ready: int = 0

    def cluster_status(self, in_progress, deleted):
        """Return the overall state derived from the component states."""
        if deleted or AppState.STOPPING in (
            self.pxc.status,
            self.proxysql.status,
            self.haproxy.status,
        ):
            return AppState.STOPPING
        pxc_status = self.pxc.status
        if pxc_status == AppState.PAUSED or (not in_progress and pxc_status == AppState.READY):
            if self.haproxy.status and self.haproxy.status != pxc_status:
                return self.haproxy.status
            if self.proxysql.status and self.proxysql.status != pxc_status:
                return self.proxysql.status
            return pxc_status
        return AppState.INIT

    def add_condition(self, condition):
        """Record a condition unless its type repeats the latest one."""
        if not self.conditions:
            self.conditions.append(condition)
            return
        if self.conditions[-1].type != condition.type:
            self.conditions.append(condition)
        if len(self.conditions) > MAX_STATUSES_QUANTITY:
            self.conditions = self.conditions[-MAX_STATUSES_QUANTITY:]