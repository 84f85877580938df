# pxcoperator

Tools for running Percona XtraDB Cluster:

- `pxcoperator.api` describes a cluster, its backups and restores as plain
  dataclasses, and applies validation and defaulting rules to them.
- `pxcoperator.pitr` replays binary logs stored in S3 on top of a restored
  backup (point-in-time recovery).
- `pxcoperator.peerlist` watches the DNS SRV records of a headless service and
  runs a script whenever the set of peers changes.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Point-in-time recovery

`pxc-pitr-recover` reads its settings from the environment:

| Variable | Meaning |
| --- | --- |
| `PXC_SERVICE` | service name of the cluster nodes |
| `PXC_USER`, `PXC_PASS` | database credentials |
| `PITR_RECOVERY_TYPE` | `latest`, `date`, `transaction` or `skip` |
| `PITR_DATE` | stop time, `YYYY-MM-DD HH:MM:SS`, taken as UTC (type `date`) |
| `PITR_GTID` | GTID to stop at (type `transaction`) or to skip (type `skip`) |
| `ENDPOINT`, `ACCESS_KEY_ID`, `SECRET_ACCESS_KEY`, `DEFAULT_REGION`, `S3_BUCKET_URL` | storage holding the full backup |
| `BINLOG_S3_ENDPOINT`, `BINLOG_ACCESS_KEY_ID`, `BINLOG_SECRET_ACCESS_KEY`, `BINLOG_S3_REGION`, `BINLOG_S3_BUCKET_URL` | storage holding the collected binary logs |

`ENDPOINT` and `BINLOG_S3_ENDPOINT` default to `s3.amazonaws.com`; an endpoint
starting with `https` is reached over TLS. Requests are path-style and signed
with AWS Signature Version 4.

```
pxc-pitr-recover
```

The only command is `recover`, which is also the default; any other command
name prints a usage message and exits with status 1.

The recovery:

1. reads the GTID set the backup was taken at from the backup's `sst_info`
   and `xtrabackup_info` files (unpacked with `xbstream -x --decompress`);
2. finds the first synced primary node by running `peer-list
   -on-start=/usr/bin/get-pxc-state -service=<PXC_SERVICE>`;
3. picks the stored `binlog_*` objects with the same source id that follow the
   backup, using the server's `GTID_SUBTRACT`;
4. pipes each one through `mysqlbinlog --disable-log-bin ... | mysql` with
   `MYSQL_PWD` set from `PXC_PASS`. For type `date` it stops before the first
   binary log whose name carries a later timestamp.

So it needs `mysqlbinlog`, `mysql`, `xbstream`, `sh`, `peer-list` and
`/usr/bin/get-pxc-state` available.

The building blocks can be used on their own:

```python
from pxcoperator.pitr.recoverer import get_bucket_and_prefix, get_extend_gtid_set

get_bucket_and_prefix("s3://operator-testing/test")   # ("operator-testing", "test/")
get_extend_gtid_set("source-id:1-40", "source-id:15")  # "source-id:15-40"
```

`pxcoperator.pitr.storage.S3` lists, reads and writes objects under a key
prefix; `pxcoperator.pitr.pxc.PXC` wraps a node connection and the
`binlog_utils_udf` helper functions. Failures raise `StorageError`,
`PXCError` or `RecoverError`.

## Peer discovery

```
peer-list -service=cluster1-pxc -on-start=/usr/bin/on-start.sh
```

Every second the service's SRV records are resolved. When the set of targets
differs from the last one, the script is run with bash and receives the sorted
host names, one per line, on standard input. `-on-start` runs on the first
lookup, `-on-change` on every later change; without `-on-change` the command
stops after the first run. `-ns` (or `POD_NAMESPACE`) and `-domain` give the
cluster domain; without `-domain` it is taken from the `search` line of
`/etc/resolv.conf`. `SIGUSR1` makes it exit with status 0; a failing script
makes it exit with status 1.

## Cluster resources

```python
from pxcoperator.api.cluster import (
    PerconaXtraDBCluster,
    PerconaXtraDBClusterSpec,
    ServerVersion,
)
from pxcoperator.api.types import ObjectMeta, PXCSpec, VolumeSpec

cluster = PerconaXtraDBCluster(
    metadata=ObjectMeta(name="cluster1", namespace="pxc"),
    spec=PerconaXtraDBClusterSpec(
        pxc=PXCSpec(
            image="percona/percona-xtradb-cluster:8.0",
            size=3,
            volume_spec=VolumeSpec(
                persistent_volume_claim={"resources": {"requests": {"storage": "6Gi"}}}
            ),
        ),
    ),
)
changed = cluster.check_n_set_defaults(ServerVersion())
cluster.can_backup()   # raises ValidationError if a backup is not allowed
```

`validate()` raises `ValidationError` with the reason a resource is rejected.
`check_n_set_defaults()` validates and then fills in the resource version,
image pull policies, secret names, probe timings, disruption budgets,
grace periods, service accounts, anti-affinity and pod security contexts. Unless
`allow_unsafe_config` is set it keeps the PXC size odd and between 3 and 5 and
enabled proxies at 2 or more; `pause` sets sizes to 0. It returns True when
the resource should be written back.

Other helpers: `compare_version_with()`, `config_has_key()`, the
`*_namespaced_name()` methods, `PerconaXtraDBClusterStatus.cluster_status()`
and `add_condition()` (keeps the last 20 conditions) in `pxcoperator.api.status`,
and in `pxcoperator.api.backup` the backup and restore resources with
`owner_ref()`, `has_unfinished_finalizers()` and the restore's
`check_n_set_defaults()`.

## What this package does not do

- It has no controller: nothing here talks to a Kubernetes API server, watches
  resources or creates StatefulSets, Services or backup jobs. Resources are
  built in Python; there is no reader from YAML or JSON manifests.
- It does not collect binary logs into S3; it only replays logs that are
  already stored there.
- It has no admission webhook.