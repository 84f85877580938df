import pytest

from pxcoperator.api.types import (
    DEFAULT_AFFINITY_TOPOLOGY_KEY,
    PodAffinity,
    PodSpec,
    PXCSpec,
    ValidationError,
    VolumeSpec,
    add_sidecar_containers,
    contains_volume,
)


class _RecordingLogger:
    def __init__(self):
        self.messages = []

    def info(self, message):
        self.messages.append(message)


@pytest.mark.parametrize(
    "pod, desired",
    [
        (PodSpec(), PodAffinity(topology_key=DEFAULT_AFFINITY_TOPOLOGY_KEY)),
        (
            PodSpec(affinity=PodAffinity(topology_key="beta.kubernetes.io/instance-type")),
            PodAffinity(topology_key=DEFAULT_AFFINITY_TOPOLOGY_KEY),
        ),
        (
            PodSpec(affinity=PodAffinity(topology_key="kubernetes.io/hostname")),
            PodAffinity(topology_key="kubernetes.io/hostname"),
        ),
        (
            PodSpec(
                affinity=PodAffinity(
                    topology_key="kubernetes.io/hostname",
                    advanced={"nodeAffinity": {}},
                )
            ),
            PodAffinity(advanced={"nodeAffinity": {}}),
        ),
    ],
    ids=[
        "no affinity set",
        "wrong antiAffinityTopologyKey",
        "valid antiAffinityTopologyKey",
        "valid antiAffinityTopologyKey with Advanced",
    ],
)
def test_reconcile_affinity(pod, desired):
    pod.reconcile_affinity_opts()
    assert pod.affinity == desired


def test_reconcile_affinity_missing_key_with_advanced_gets_default():
    pod = PodSpec(affinity=PodAffinity(advanced={"nodeAffinity": {}}))
    pod.reconcile_affinity_opts()
    assert pod.affinity.topology_key == DEFAULT_AFFINITY_TOPOLOGY_KEY


def test_reconcile_affinity_off_key_is_kept():
    pod = PXCSpec(affinity=PodAffinity(topology_key="none"))
    pod.reconcile_affinity_opts()
    assert pod.affinity.topology_key == "none"


def test_volume_reconcile_defaults_to_claim():
    volume = VolumeSpec()
    assert volume.reconcile_opts() is True
    assert volume.persistent_volume_claim == {"accessModes": ["ReadWriteOnce"]}


def test_volume_reconcile_keeps_access_modes():
    volume = VolumeSpec(persistent_volume_claim={"accessModes": ["ReadWriteMany"]})
    assert volume.reconcile_opts() is False
    assert volume.persistent_volume_claim["accessModes"] == ["ReadWriteMany"]


def test_volume_reconcile_empty_dir_untouched():
    volume = VolumeSpec(empty_dir={})
    assert volume.reconcile_opts() is False
    assert volume.persistent_volume_claim is None


def test_volume_validate_requires_storage():
    volume = VolumeSpec()
    with pytest.raises(ValidationError, match="volume.resources.storage can't be empty"):
        volume.validate()
    assert volume.persistent_volume_claim == {}


def test_volume_validate_accepts_storage_request():
    volume = VolumeSpec(
        persistent_volume_claim={"resources": {"requests": {"storage": "6Gi"}}}
    )
    volume.validate()
    assert volume.persistent_volume_claim["resources"]["requests"]["storage"] == "6Gi"


def test_volume_validate_host_path_needs_no_storage():
    volume = VolumeSpec(host_path={"path": "/data"})
    volume.validate()
    assert volume.persistent_volume_claim is None


def test_contains_volume():
    volumes = [{"name": "datadir"}, {"name": "config"}]
    assert contains_volume(volumes, "config") is True
    assert contains_volume(volumes, "tmp") is False


def test_add_sidecar_containers_skips_duplicates():
    logger = _RecordingLogger()
    existing = [{"name": "pxc"}]
    sidecars = [{"name": "pxc"}, {"name": "exporter"}]
    result = add_sidecar_containers(logger, existing, sidecars)
    assert [c["name"] for c in result] == ["pxc", "exporter"]
    assert logger.messages == ["Sidecar container name cannot be pxc. It's skipped"]


def test_add_sidecar_containers_without_sidecars_returns_existing():
    logger = _RecordingLogger()
    existing = [{"name": "pxc"}]
    assert add_sidecar_containers(logger, existing, []) is existing
    assert logger.messages == []


def test_pxc_spec_inherits_pod_spec_fields():
    spec = PXCSpec(image="percona/pxc", size=3)
    assert (spec.image, spec.size, spec.auto_recovery) == ("percona/pxc", 3, None)