"""Point-in-time recovery of a cluster from binary logs kept in S3."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Mapping
from urllib.parse import urlsplit

from .pxc import PXC, PXCError, get_pxc_first_host
from .storage import S3, StorageError

log = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "s3.amazonaws.com"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_INT_RE = re.compile(r"[+-]?\d+")


class RecoverError(Exception):
    """Raised when recovery cannot be prepared or performed."""


class RecoverType(str, Enum):
    LATEST = "latest"  # recover to the latest existing binlog
    DATE = "date"  # recover to exact date
    TRANSACTION = "transaction"  # recover to the needed transaction
    SKIP = "skip"  # skip transactions


# (attribute, environment variable, required)
_BACKUP_ENV = (
    ("endpoint", "ENDPOINT", False),
    ("access_key_id", "ACCESS_KEY_ID", True),
    ("access_key", "SECRET_ACCESS_KEY", True),
    ("region", "DEFAULT_REGION", True),
    ("backup_dest", "S3_BUCKET_URL", True),
)

_BINLOG_ENV = (
    ("endpoint", "BINLOG_S3_ENDPOINT", False),
    ("access_key_id", "BINLOG_ACCESS_KEY_ID", True),
    ("access_key", "BINLOG_SECRET_ACCESS_KEY", True),
    ("region", "BINLOG_S3_REGION", True),
    ("bucket_url", "BINLOG_S3_BUCKET_URL", True),
)

_CONFIG_ENV = (
    ("pxc_service_name", "PXC_SERVICE", True),
    ("pxc_user", "PXC_USER", True),
    ("pxc_pass", "PXC_PASS", True),
    ("recover_time", "PITR_DATE", False),
    ("recover_type", "PITR_RECOVERY_TYPE", True),
    ("gtid", "PITR_GTID", False),
)


@dataclass
class BackupS3:
    endpoint: str = DEFAULT_ENDPOINT
    access_key_id: str = ""
    access_key: str = ""
    region: str = ""
    backup_dest: str = ""


@dataclass
class BinlogS3:
    endpoint: str = DEFAULT_ENDPOINT
    access_key_id: str = ""
    access_key: str = ""
    region: str = ""
    bucket_url: str = ""


def _parse_env(cls, table, environ: Mapping[str, str]) -> dict[str, str]:
    defaults = {f.name: f.default for f in fields(cls)}
    values = {}
    for attr, name, required in table:
        if required and name not in environ:
            raise RecoverError(f'required environment variable "{name}" is not set')
        value = environ.get(name, "")
        values[attr] = value if value else defaults[attr]
    return values


@dataclass
class Config:
    pxc_service_name: str = ""
    pxc_user: str = ""
    pxc_pass: str = ""
    recover_time: str = ""
    recover_type: str = ""
    gtid: str = ""
    backup_storage: BackupS3 = field(default_factory=BackupS3)
    binlog_storage: BinlogS3 = field(default_factory=BinlogS3)

    def verify(self):
        """Fill in the default endpoints where none is given."""
        if not self.backup_storage.endpoint:
            self.backup_storage.endpoint = DEFAULT_ENDPOINT
        if not self.binlog_storage.endpoint:
            self.binlog_storage.endpoint = DEFAULT_ENDPOINT

    @classmethod
    def from_env(cls, environ=None):
        """Build the configuration from environment variables."""
        environ = os.environ if environ is None else environ
        values = _parse_env(cls, _CONFIG_ENV, environ)
        return cls(
            **values,
            backup_storage=BackupS3(**_parse_env(BackupS3, _BACKUP_ENV, environ)),
            binlog_storage=BinlogS3(**_parse_env(BinlogS3, _BINLOG_ENV, environ)),
        )


def _strip_scheme(endpoint: str) -> str:
    return endpoint.removeprefix("https://").removeprefix("http://")


def _parse_int(value: str, message: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise RecoverError(f"{message}: invalid syntax {value!r}")
    return int(value)


def get_bucket_and_prefix(bucket_url):
    """Split a bucket URL into the bucket name and the key prefix."""
    try:
        parts = urlsplit(bucket_url)
    except ValueError as exc:
        raise RecoverError(f"parse url: {exc}") from exc
    path = parts.path.removesuffix("/").removeprefix("/")

    if parts.scheme and parts.scheme == "s3":
        return parts.netloc, path + "/"

    bucket_arr = path.split("/")
    prefix = ""
    if len(bucket_arr) > 1:
        prefix = path.removeprefix(bucket_arr[0] + "/") + "/"
    bucket = bucket_arr[0]
    if not bucket:
        raise RecoverError(f"can't get bucket name from {bucket_url}")
    return bucket, prefix


def get_start_gtid_set(backup):
    """Return the GTID set the backup in ``backup`` was taken at."""
    bucket_arr = backup.backup_dest.split("/")
    if len(bucket_arr) < 2:
        raise RecoverError("parsing bucket")

    prefix = backup.backup_dest.removeprefix(bucket_arr[0] + "/")
    backup_prefix = prefix + "/"
    sst_prefix = prefix + ".sst_info/"

    try:
        s3 = S3(
            _strip_scheme(backup.endpoint),
            backup.access_key_id,
            backup.access_key,
            bucket_arr[0],
            sst_prefix,
            backup.region,
            backup.endpoint.startswith("https"),
        )
    except StorageError as exc:
        raise RecoverError(f"new storage manager: {exc}") from exc

    try:
        sst_info = sorted(s3.list_objects("sst_info"))
    except StorageError as exc:
        raise RecoverError(f"list {prefix} info fies: {exc}") from exc
    if not sst_info:
        raise RecoverError("no info files in sst dir")
    try:
        sst_info_obj = s3.get_object(sst_info[0])
    except StorageError as exc:
        raise RecoverError(f"get {prefix} info: {exc}") from exc

    s3.prefix = backup_prefix

    try:
        xtrabackup_info = sorted(s3.list_objects("xtrabackup_info"))
    except StorageError as exc:
        raise RecoverError(f"list {prefix} info fies: {exc}") from exc
    if not xtrabackup_info:
        raise RecoverError("no info files in backup")
    try:
        xtrabackup_info_obj = s3.get_object(xtrabackup_info[0])
    except StorageError as exc:
        raise RecoverError(f"get {prefix} info: {exc}") from exc

    try:
        return get_last_backup_gtid(sst_info_obj, xtrabackup_info_obj)
    except RecoverError as exc:
        raise RecoverError(f"get last backup gtid: {exc}") from exc


def get_last_backup_gtid(sst_info, xtrabackup_info):
    """Return the GTID set of the backup from its compressed info files."""
    try:
        sst_content = get_decompressed_content(sst_info, "sst_info")
    except RecoverError as exc:
        raise RecoverError(f"get sst_info content: {exc}") from exc
    try:
        xtrabackup_content = get_decompressed_content(xtrabackup_info, "xtrabackup_info")
    except RecoverError as exc:
        raise RecoverError(f"get xtrabackup info content: {exc}") from exc

    sst_gtid_set = get_gtid_from_sst_info(sst_content)
    curr_gtid = sst_gtid_set.split(":")[0]
    gtid_set = get_set_from_xtrabackup_info(curr_gtid, xtrabackup_content)
    return curr_gtid + ":" + gtid_set


def get_set_from_xtrabackup_info(gtid, xtrabackup_info):
    """Return the transaction range recorded for source ``gtid``."""
    try:
        gtids = get_gtid_from_xtrabackup(xtrabackup_info)
    except RecoverError as exc:
        raise RecoverError(f"get gtid from xtrabackup info: {exc}") from exc
    for value in gtids.split(","):
        parts = value.split(":")
        if parts[0] == gtid:
            if len(parts) < 2:
                raise RecoverError(f"incorrect gtid set {value}")
            return parts[1]
    raise RecoverError("can't find current gtid in xtrabackup file")


def get_gtid_from_xtrabackup(content):
    """Return the quoted GTID set following "GTID of the last"."""
    sep = b"GTID of the last"
    start = content.find(sep)
    if start == -1:
        raise RecoverError("no gtid data in backup")
    rest = content[start + len(sep):]
    end = rest.find(b"'\n")
    if end == -1:
        raise RecoverError("can't find gtid data in backup")
    quote = rest.find(b"'")
    return rest[quote + 1:end].decode()


def get_gtid_from_sst_info(content):
    """Return the value of the galera-gtid line."""
    sep = b"galera-gtid="
    start = content.find(sep)
    if start == -1:
        raise RecoverError("no gtid data in backup")
    rest = content[start + len(sep):]
    end = rest.find(b"\n")
    if end == -1:
        raise RecoverError("can't find gtid data in backup")
    return rest[:end].decode()


def get_decompressed_content(info, filename):
    """Unpack an xbstream archive read from ``info`` and return ``filename``."""
    tmp_dir = tempfile.gettempdir()
    data = info.read()
    try:
        result = subprocess.run(
            ["xbstream", "-x", "--decompress"],
            cwd=tmp_dir,
            input=data,
            capture_output=True,
            check=False,
        )
    except OSError as exc:
        raise RecoverError(f"xbsream cmd run. stderr: , stdout: : {exc}") from exc
    stderr = result.stderr.decode(errors="replace")
    stdout = result.stdout.decode(errors="replace")
    if result.returncode != 0:
        raise RecoverError(
            f"xbsream cmd run. stderr: {stderr}, stdout: {stdout}: "
            f"exit status {result.returncode}"
        )
    if stderr:
        raise RecoverError(f"run xbstream error: {stderr}")
    try:
        return (Path(tmp_dir) / filename).read_bytes()
    except OSError as exc:
        raise RecoverError(f"read xtrabackup_info file: {exc}") from exc


def get_extend_gtid_set(gtid_set, gtid):
    """Return the range from the start of ``gtid`` to the end of ``gtid_set``."""
    if gtid_set == gtid:
        return gtid

    parts = gtid_set.split(":")
    if len(parts) < 2:
        raise RecoverError(f"incorrect source in gtid set {gtid_set}")
    ends = parts[1].split("-")
    last = ends[1] if len(ends) > 1 else ends[0]

    gtid_parts = gtid.split(":")
    if len(gtid_parts) < 2:
        raise RecoverError(f"incorrect source in gtid set {gtid}")
    starts = gtid_parts[1].split("-")

    return gtid_parts[0] + ":" + starts[0] + "-" + last


def _check_transaction_after_backup(start_gtid: str, gtid: str) -> None:
    gtid_split = start_gtid.split(":")
    if len(gtid_split) != 2:
        raise RecoverError("Invalid start gtidset provided")
    set_split = gtid_split[1].split("-")
    last_set = set_split[1] if len(set_split) > 1 else set_split[0]
    last_set_int = _parse_int(last_set, "failed to cast last set value to in")
    target = gtid.split(":")
    if len(target) < 2:
        raise RecoverError(f"failed to parse transaction num to restore: {gtid!r}")
    transaction_num = _parse_int(target[1], "failed to parse transaction num to restore")
    if transaction_num < last_set_int:
        raise RecoverError("Can't restore to transaction before backup")


class Recoverer:
    """Replays binary logs from storage onto a cluster node."""

    def __init__(self, config):
        config.verify()
        binlog = config.binlog_storage
        try:
            bucket, prefix = get_bucket_and_prefix(binlog.bucket_url)
        except RecoverError as exc:
            raise RecoverError(f"get bucket and prefix: {exc}") from exc
        try:
            self.storage = S3(
                _strip_scheme(binlog.endpoint),
                binlog.access_key_id,
                binlog.access_key,
                bucket,
                prefix,
                binlog.region,
                binlog.endpoint.startswith("https"),
            )
        except StorageError as exc:
            raise RecoverError(f"new storage manager: {exc}") from exc

        try:
            start_gtid = get_start_gtid_set(config.backup_storage)
        except RecoverError as exc:
            raise RecoverError(f"get start GTID: {exc}") from exc

        if config.recover_type == RecoverType.TRANSACTION.value:
            _check_transaction_after_backup(start_gtid, config.gtid)

        self.recover_time = config.recover_time
        self.pxc_user = config.pxc_user
        self.pxc_pass = config.pxc_pass
        self.pxc_service_name = config.pxc_service_name
        self.recover_type = config.recover_type
        self.start_gtid = start_gtid
        self.gtid = config.gtid
        self.db: PXC | None = None
        self.binlogs: list[str] = []
        self.gtid_set = ""
        self.recover_flag = ""
        self.recover_end_time: datetime | None = None

    def run(self):
        """Find the binary logs to apply and replay them."""
        try:
            host = get_pxc_first_host(self.pxc_service_name)
        except PXCError as exc:
            raise RecoverError(f"get host: {exc}") from exc
        try:
            self.db = PXC(host, self.pxc_user, self.pxc_pass)
        except PXCError as exc:
            raise RecoverError(f"new manager with host {host}: {exc}") from exc

        try:
            self._set_binlogs()
        except RecoverError as exc:
            raise RecoverError(f"get binlog list: {exc}") from exc

        try:
            recover_type = RecoverType(self.recover_type)
        except ValueError:
            raise RecoverError("wrong recover type") from None

        if recover_type is RecoverType.SKIP:
            self.recover_flag = " --exclude-gtids=" + self.gtid
        elif recover_type is RecoverType.TRANSACTION:
            self.recover_flag = " --exclude-gtids=" + self.gtid_set
        elif recover_type is RecoverType.DATE:
            self.recover_flag = ' --stop-datetime="' + self.recover_time + '"'
            try:
                end = datetime.strptime(self.recover_time, _DATE_FORMAT)
            except ValueError as exc:
                raise RecoverError(f"parse date: {exc}") from exc
            self.recover_end_time = end.replace(tzinfo=timezone.utc)

        try:
            self._recover()
        except RecoverError as exc:
            raise RecoverError(f"recover: {exc}") from exc

    def _recover(self) -> None:
        try:
            self.db.drop_collector_functions()
        except PXCError as exc:
            raise RecoverError(f"drop collector funcs: {exc}") from exc

        env = dict(os.environ, MYSQL_PWD=os.environ.get("PXC_PASS", ""))
        for binlog in self.binlogs:
            log.info("working with %s", binlog)
            if self.recover_type == RecoverType.DATE.value:
                parts = binlog.split("_")
                if len(parts) < 2:
                    raise RecoverError("get timestamp from binlog name")
                binlog_time = _parse_int(parts[1], "get binlog time")
                if binlog_time > int(self.recover_end_time.timestamp()):
                    return

            try:
                binlog_obj = self.storage.get_object(binlog)
            except StorageError as exc:
                raise RecoverError(f"get obj: {exc}") from exc

            command = (
                "mysqlbinlog --disable-log-bin" + self.recover_flag
                + " - | mysql -h" + self.db.host + " -u" + self.pxc_user
            )
            try:
                result = subprocess.run(
                    ["sh", "-c", command],
                    input=binlog_obj.read(),
                    capture_output=True,
                    env=env,
                    check=False,
                )
            except OSError as exc:
                raise RecoverError(f"cmd run. stderr: , stdout: : {exc}") from exc
            if result.returncode != 0:
                raise RecoverError(
                    f"cmd run. stderr: {result.stderr.decode(errors='replace')}, "
                    f"stdout: {result.stdout.decode(errors='replace')}: "
                    f"exit status {result.returncode}"
                )

    def _set_binlogs(self) -> None:
        try:
            names = self.storage.list_objects("binlog_")
        except StorageError as exc:
            raise RecoverError(f"list objects with prefix 'binlog_': {exc}") from exc

        binlogs: list[str] = []
        source_id = self.start_gtid.split(":")[0]
        log.info("current gtid set is %s", self.start_gtid)
        for binlog in reversed(names):
            if "-gtid-set" in binlog:
                continue
            try:
                info_obj = self.storage.get_object(binlog + "-gtid-set")
            except StorageError as exc:
                log.info("Can't get binlog object with gtid set. Name: %s error %s", binlog, exc)
                continue
            try:
                binlog_gtid_set = info_obj.read().decode()
            except (OSError, UnicodeDecodeError) as exc:
                raise RecoverError(f"read {binlog} gtid-set object: {exc}") from exc
            log.info("checking current file name %s gtid %s", binlog, binlog_gtid_set)
            if source_id != binlog_gtid_set.split(":")[0]:
                log.info("Source id is not equal to binlog source id")
                continue

            if self.gtid and self.recover_type == RecoverType.TRANSACTION.value:
                try:
                    sub_result = self.db.subtract_gtid_set(binlog_gtid_set, self.gtid)
                except PXCError as exc:
                    raise RecoverError(
                        f"check if '{binlog_gtid_set}' is a subset of '{self.gtid}: {exc}"
                    ) from exc
                if sub_result != binlog_gtid_set:
                    try:
                        self.gtid_set = get_extend_gtid_set(binlog_gtid_set, self.gtid)
                    except RecoverError as exc:
                        raise RecoverError(f"get gtid set for extend: {exc}") from exc
                if not self.gtid_set:
                    continue

            binlogs.append(binlog)
            try:
                sub_result = self.db.subtract_gtid_set(self.start_gtid, binlog_gtid_set)
            except PXCError as exc:
                raise RecoverError(
                    f"check if '{self.start_gtid}' is a subset of '{binlog_gtid_set}: {exc}"
                ) from exc
            log.info("Checking sub result binlog gtid %s sub result %s", binlog_gtid_set, sub_result)
            if sub_result != self.start_gtid:
                break

        if not binlogs:
            raise RecoverError(f"no objects for prefix binlog_ or with source_id={source_id}")
        binlogs.reverse()
        self.binlogs = binlogs


_USAGE = (
    'ERROR: unknown command "{}".\n'
    "Commands:\n"
    "  recover - recover from binlogs\n"
)


def main(argv=None):
    """Run the recovery command; return the process exit status."""
    argv = sys.argv[1:] if argv is None else list(argv)
    command = argv[0] if argv else "recover"
    if command != "recover":
        sys.stderr.write(_USAGE.format(command))
        return 1

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    try:
        config = Config.from_env()
    except RecoverError as exc:
        log.error("ERROR: get recoverer config: %s", exc)
        return 1
    try:
        recoverer = Recoverer(config)
    except RecoverError as exc:
        log.error("ERROR: new recoverer controller: %s", exc)
        return 1
    log.info("run recover")
    try:
        recoverer.run()
    except RecoverError as exc:
        log.error("ERROR: recover: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())