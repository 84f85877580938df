"""Access to a Percona XtraDB Cluster node for binary log handling."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass

import pymysql

log = logging.getLogger(__name__)

USING_PASS_ERROR_MESSAGE = (
    "mysqlbinlog: [Warning] Using a password on the command line interface can be insecure."
)
SYNCED_STATE = (
    "wsrep_ready:ON:wsrep_connected:ON:wsrep_local_state_comment:Synced:"
    "wsrep_cluster_status:Primary"
)
_DEFAULT_PORT = 3306
_INT_RE = re.compile(r"[+-]?\d+")


class PXCError(Exception):
    """Raised when talking to a cluster node fails."""


@dataclass
class Binlog:
    name: str
    size: int
    encrypted: str
    gtid_set: str = ""


def _split_addr(addr: str) -> tuple[str, int]:
    if addr.startswith("["):
        host, _, rest = addr[1:].partition("]")
        port = rest.removeprefix(":")
    elif addr.count(":") == 1:
        host, port = addr.split(":")
    else:
        host, port = addr, ""
    if not port:
        return host, _DEFAULT_PORT
    try:
        return host, int(port)
    except ValueError as exc:
        raise PXCError(f"cannot connect to host: invalid port in {addr!r}") from exc


class PXC:
    """Connection to one cluster node."""

    def __init__(self, addr, user, password):
        host, port = _split_addr(addr)
        try:
            self._conn = pymysql.connect(
                host=host, port=port, user=user, password=password, autocommit=True
            )
        except pymysql.MySQLError as exc:
            raise PXCError(f"cannot connect to host: {exc}") from exc
        self.host = addr

    def close(self):
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _fetch_one(self, query, args=None):
        with self._conn.cursor() as cur:
            cur.execute(query, args)
            return cur.fetchone()

    def _fetch_all(self, query, args=None):
        with self._conn.cursor() as cur:
            cur.execute(query, args)
            return list(cur.fetchall())

    def _execute(self, query, args=None):
        with self._conn.cursor() as cur:
            cur.execute(query, args)

    def _ensure_function(self, name: str, returns: str) -> None:
        try:
            row = self._fetch_one(f"select name from mysql.func where name='{name}'")
        except pymysql.MySQLError as exc:
            raise PXCError(f"get udf name: {exc}") from exc
        if row is None or not row[0]:
            try:
                self._execute(
                    f"CREATE FUNCTION {name} RETURNS {returns} SONAME 'binlog_utils_udf.so'"
                )
            except pymysql.MySQLError as exc:
                raise PXCError(f"create function: {exc}") from exc

    def get_gtid_set(self, binlog_name):
        """Return the GTID set stored in the given binary log."""
        self._ensure_function("get_gtid_set_by_binlog", "STRING")
        try:
            row = self._fetch_one("SELECT get_gtid_set_by_binlog(%s)", (binlog_name,))
        except pymysql.MySQLError as exc:
            if "Binary log does not exist" in str(exc):
                return ""
            raise PXCError(f"scan set: {exc}") from exc
        if row is None or row[0] is None:
            raise PXCError("scan set: no value returned")
        return str(row[0])

    def _show_binary_logs(self) -> list[Binlog]:
        try:
            rows = self._fetch_all("SHOW BINARY LOGS")
        except pymysql.MySQLError as exc:
            raise PXCError(f"show binary logs: {exc}") from exc
        binlogs = []
        for row in rows:
            if len(row) != 3:
                raise PXCError(f"scan binlogs: expected 3 columns, got {len(row)}")
            name, size, encrypted = row
            binlogs.append(Binlog(name=str(name), size=int(size), encrypted=str(encrypted)))
        return binlogs

    def get_binlog_list(self):
        """Return the server's binary logs, then rotate to a new one."""
        binlogs = self._show_binary_logs()
        try:
            self._execute("FLUSH BINARY LOGS")
        except pymysql.MySQLError as exc:
            raise PXCError(f"flush binary logs: {exc}") from exc
        return binlogs

    def get_binlog_names_list(self):
        """Return the names of the server's binary logs."""
        return [binlog.name for binlog in self._show_binary_logs()]

    def get_binlog_name(self, gtid_set):
        """Return the binary log file holding the given GTID set."""
        if not gtid_set:
            return ""
        self._ensure_function("get_binlog_by_gtid_set", "STRING")
        try:
            row = self._fetch_one("SELECT get_binlog_by_gtid_set(%s)", (gtid_set,))
        except pymysql.MySQLError as exc:
            raise PXCError(f"scan binlog: {exc}") from exc
        if row is None:
            raise PXCError("scan binlog: no rows in result set")
        value = row[0] or ""
        return str(value).removeprefix("./")

    def get_binlog_first_timestamp(self, binlog):
        """Return the timestamp, in seconds, of the first record in a binary log."""
        self._ensure_function("get_first_record_timestamp_by_binlog", "INTEGER")
        try:
            row = self._fetch_one(
                "SELECT get_first_record_timestamp_by_binlog(%s) DIV 1000000", (binlog,)
            )
        except pymysql.MySQLError as exc:
            raise PXCError(f"scan binlog timestamp: {exc}") from exc
        if row is None or row[0] is None:
            raise PXCError("scan binlog timestamp: no value returned")
        return str(row[0])

    def subtract_gtid_set(self, gtid_set, sub_set):
        """Return ``gtid_set`` with ``sub_set`` removed, computed by the server."""
        try:
            row = self._fetch_one("SELECT GTID_SUBTRACT(%s,%s)", (gtid_set, sub_set))
        except pymysql.MySQLError as exc:
            raise PXCError(f"scan gtid subtract result: {exc}") from exc
        if row is None or row[0] is None:
            raise PXCError("scan gtid subtract result: no value returned")
        return str(row[0])

    def drop_collector_functions(self):
        """Drop the helper functions created by the collector."""
        for name in (
            "get_first_record_timestamp_by_binlog",
            "get_binlog_by_gtid_set",
            "get_gtid_set_by_binlog",
        ):
            try:
                self._execute(f"DROP FUNCTION IF EXISTS {name}")
            except pymysql.MySQLError as exc:
                raise PXCError(f"drop {name} function: {exc}") from exc


def _get_nodes_by_service_name(service_name: str) -> list[str]:
    cmd = ["peer-list", "-on-start=/usr/bin/get-pxc-state", "-service=" + service_name]
    try:
        result = subprocess.run(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
        )
    except OSError as exc:
        raise PXCError(f"get peer-list output: {exc}") from exc
    output = result.stdout
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    if result.returncode != 0:
        raise PXCError(f"get peer-list output: exit status {result.returncode}: {output}")
    return output.split("node:")


def _nodes(service_name: str) -> list[str]:
    try:
        return _get_nodes_by_service_name(service_name)
    except PXCError as exc:
        raise PXCError(f"get nodes by service name: {exc}") from exc


def get_pxc_first_host(service_name):
    """Return the first synced primary node of the service, in sorted order."""
    for node in sorted(_nodes(service_name)):
        if SYNCED_STATE in node:
            host = node.split(":")[0]
            if host:
                return host
            break
    raise PXCError("can't find host")


def _get_binlog_time(host: str, user: str, password: str) -> int:
    try:
        db = PXC(host, user, password)
    except PXCError as exc:
        raise PXCError(f"creating connection for host {host}: {exc}") from exc
    with db:
        try:
            names = db.get_binlog_names_list()
        except PXCError as exc:
            raise PXCError(f"get binlog list for host {host}: {exc}") from exc
        if not names:
            raise PXCError(f"get binlog list for host {host}: no binlogs found")
        binlog_time = 0
        for name in names:
            try:
                ts = db.get_binlog_first_timestamp(name)
            except PXCError as exc:
                log.error("get binlog timestamp for binlog %s host %s: get binlog first timestamp: %s", name, host, exc)
                binlog_time = 0
                continue
            if not _INT_RE.fullmatch(ts):
                log.error("get binlog timestamp for binlog %s host %s: parse timestamp: %r", name, host, ts)
                binlog_time = 0
                continue
            binlog_time = int(ts)
            if binlog_time > 0:
                break
    if binlog_time == 0:
        raise PXCError(
            f"get binlog oldest timestamp for host {host}: no binlogs timestamp found"
        )
    return binlog_time


def get_pxc_oldest_binlog_host(service_name, user, password):
    """Return the synced node whose binary logs reach furthest back."""
    oldest_host = ""
    oldest_ts = 0
    for node in _nodes(service_name):
        if SYNCED_STATE not in node:
            continue
        host = node.split(":")[0]
        try:
            binlog_time = _get_binlog_time(host, user, password)
        except PXCError as exc:
            log.error("get binlog time %s", exc)
            continue
        if not oldest_host or (oldest_ts > 0 and binlog_time < oldest_ts):
            oldest_host = host
            oldest_ts = binlog_time
    if not oldest_host:
        raise PXCError("can't find host")
    return oldest_host