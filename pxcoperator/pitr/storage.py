"""Object storage access for binary log collection and recovery."""

from __future__ import annotations

import abc
import hashlib
import hmac
import io
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import BinaryIO
from urllib.parse import quote

import requests

_ALGORITHM = "AWS4-HMAC-SHA256"
_DEFAULT_REGION = "us-east-1"
_TIMEOUT = 60


class StorageError(Exception):
    """Raised when an object storage operation fails."""


class Storage(abc.ABC):
    """Minimal interface of an object store."""

    @abc.abstractmethod
    def get_object(self, object_name: str) -> BinaryIO:
        """Return a readable stream with the object's content."""

    @abc.abstractmethod
    def put_object(self, name: str, data: BinaryIO, size: int) -> None:
        """Store ``size`` bytes read from ``data`` under ``name``."""

    @abc.abstractmethod
    def list_objects(self, prefix: str) -> list[str]:
        """Return names of the objects starting with ``prefix``."""


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode(), hashlib.sha256).digest()


def _quote(value: str, safe: str = "-_.~") -> str:
    return quote(value, safe=safe)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _children(elem: ET.Element, name: str) -> list[ET.Element]:
    return [child for child in elem if _local(child.tag) == name]


def _child_text(elem: ET.Element, name: str) -> str:
    found = _children(elem, name)
    return (found[0].text or "") if found else ""


class S3(Storage):
    """S3-compatible storage using path-style requests signed with SigV4."""

    def __init__(self, endpoint, access_key_id, secret_access_key, bucket_name, prefix, region, use_ssl):
        self.endpoint = endpoint.rstrip("/")
        if not self.endpoint:
            raise StorageError("new minio client: endpoint is empty")
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.region = region or _DEFAULT_REGION
        self.scheme = "https" if use_ssl else "http"
        self.session = requests.Session()

    def _path(self, key: str = "") -> str:
        return "/" + _quote(self.bucket_name) + "/" + _quote(key, safe="/-_.~")

    def _authorization(self, method, path, canonical_query, headers, payload_hash, now):
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        datestamp = now.strftime("%Y%m%d")
        names = sorted(headers)
        signed_headers = ";".join(names)
        canonical_headers = "".join(f"{name}:{headers[name]}\n" for name in names)
        canonical_request = "\n".join(
            [method, path, canonical_query, canonical_headers, signed_headers, payload_hash]
        )
        scope = f"{datestamp}/{self.region}/s3/aws4_request"
        string_to_sign = "\n".join(
            [_ALGORITHM, amz_date, scope, _sha256_hex(canonical_request.encode())]
        )
        key = _hmac(("AWS4" + self.secret_access_key).encode(), datestamp)
        for part in (self.region, "s3", "aws4_request"):
            key = _hmac(key, part)
        signature = hmac.new(key, string_to_sign.encode(), hashlib.sha256).hexdigest()
        return (
            f"{_ALGORITHM} Credential={self.access_key_id}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )

    def _request(self, method: str, path: str, query: dict[str, str] | None = None, body: bytes = b""):
        query = query or {}
        canonical_query = "&".join(
            f"{_quote(k)}={_quote(v)}" for k, v in sorted(query.items())
        )
        now = datetime.now(timezone.utc)
        payload_hash = _sha256_hex(body)
        headers = {
            "host": self.endpoint,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": now.strftime("%Y%m%dT%H%M%SZ"),
        }
        headers["Authorization"] = self._authorization(
            method, path, canonical_query, dict(headers), payload_hash, now
        )
        url = f"{self.scheme}://{self.endpoint}{path}"
        if canonical_query:
            url += "?" + canonical_query
        try:
            response = self.session.request(
                method, url, headers=headers, data=body or None, timeout=_TIMEOUT
            )
        except requests.RequestException as exc:
            raise StorageError(str(exc)) from exc
        if response.status_code >= 300:
            raise StorageError(self._error_message(response))
        return response

    @staticmethod
    def _error_message(response) -> str:
        message = f"status {response.status_code}"
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError:
            return message
        code = _child_text(root, "Code")
        text = _child_text(root, "Message")
        details = ": ".join(part for part in (code, text) if part)
        return f"{message}: {details}" if details else message

    def get_object(self, object_name):
        try:
            response = self._request("GET", self._path(self.prefix + object_name))
        except StorageError as exc:
            raise StorageError(f"get object: {exc}") from exc
        return io.BytesIO(response.content)

    def put_object(self, name, data, size):
        body = data.read(size) if size is not None and size >= 0 else data.read()
        try:
            self._request("PUT", self._path(self.prefix + name), body=body)
        except StorageError as exc:
            raise StorageError(f"put object: {exc}") from exc

    def list_objects(self, prefix):
        full_prefix = self.prefix + prefix
        names: list[str] = []
        marker = ""
        while True:
            query = {"delimiter": "/", "prefix": full_prefix}
            if marker:
                query["marker"] = marker
            try:
                response = self._request("GET", self._path(), query)
                root = ET.fromstring(response.content)
            except (StorageError, ET.ParseError) as exc:
                raise StorageError(f"list object {full_prefix}: {exc}") from exc
            keys = [_child_text(item, "Key") for item in _children(root, "Contents")]
            keys += [_child_text(item, "Prefix") for item in _children(root, "CommonPrefixes")]
            names.extend(key.removeprefix(self.prefix) for key in keys)
            if _child_text(root, "IsTruncated").lower() != "true":
                break
            marker = _child_text(root, "NextMarker") or (keys[-1] if keys else "")
            if not marker:
                break
        return names