import io

import pytest

from pxcoperator.pitr.storage import S3, Storage, StorageError

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

LIST_PAGE_1 = b"""<?xml version="1.0" encoding="UTF-8"?>
<ListBucketResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">
  <Name>bucket</Name>
  <IsTruncated>true</IsTruncated>
  <NextMarker>pre/binlog_2</NextMarker>
  <Contents><Key>pre/binlog_1</Key></Contents>
  <Contents><Key>pre/binlog_2</Key></Contents>
</ListBucketResult>"""

LIST_PAGE_2 = b"""<?xml version="1.0" encoding="UTF-8"?>
<ListBucketResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">
  <Name>bucket</Name>
  <IsTruncated>false</IsTruncated>
  <Contents><Key>pre/binlog_3</Key></Contents>
</ListBucketResult>"""

ERROR_BODY = b"""<?xml version="1.0" encoding="UTF-8"?>
<Error><Code>NoSuchKey</Code><Message>missing</Message></Error>"""


class FakeResponse:
    def __init__(self, status_code=200, content=b""):
        self.status_code = status_code
        self.content = content


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, data=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "data": data})
        return self.responses.pop(0)


def make_s3(responses, use_ssl=True, region="", endpoint="s3.example.com/"):
    s3 = S3(endpoint, "placeholder", "secret", "bucket", "pre/", region, use_ssl)
    s3.session = FakeSession(responses)
    return s3


def test_storage_is_abstract():
    with pytest.raises(TypeError):
        Storage()


def test_get_object_reads_prefixed_key():
    s3 = make_s3([FakeResponse(200, b"content")])
    stream = s3.get_object("obj")
    assert stream.read() == b"content"
    call = s3.session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "https://s3.example.com/bucket/pre/obj"


def test_get_request_is_signed_with_empty_payload_hash():
    s3 = make_s3([FakeResponse(200, b"")])
    s3.get_object("obj")
    headers = s3.session.calls[0]["headers"]
    assert headers["x-amz-content-sha256"] == EMPTY_SHA256
    assert headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=placeholder/")
    assert "/us-east-1/s3/aws4_request" in headers["Authorization"]


def test_plain_http_when_ssl_disabled():
    s3 = make_s3([FakeResponse(200, b"x")], use_ssl=False)
    s3.get_object("a")
    assert s3.session.calls[0]["url"].startswith("http://s3.example.com/")


def test_get_object_error_raises():
    s3 = make_s3([FakeResponse(404, ERROR_BODY)])
    with pytest.raises(StorageError) as info:
        s3.get_object("missing")
    assert "get object" in str(info.value)
    assert "NoSuchKey" in str(info.value)


def test_put_object_sends_body():
    s3 = make_s3([FakeResponse(200)], region="eu-west-1")
    s3.put_object("binlog_1", io.BytesIO(b"abcdef"), 3)
    call = s3.session.calls[0]
    assert call["method"] == "PUT"
    assert call["data"] == b"abc"
    assert call["url"].endswith("/bucket/pre/binlog_1")
    assert "/eu-west-1/s3/aws4_request" in call["headers"]["Authorization"]


def test_put_object_error_raises():
    s3 = make_s3([FakeResponse(500, b"")])
    with pytest.raises(StorageError, match="put object"):
        s3.put_object("x", io.BytesIO(b"1"), 1)


def test_list_objects_paginates_and_trims_prefix():
    s3 = make_s3([FakeResponse(200, LIST_PAGE_1), FakeResponse(200, LIST_PAGE_2)])
    names = s3.list_objects("binlog_")
    assert names == ["binlog_1", "binlog_2", "binlog_3"]
    assert "prefix=pre%2Fbinlog_" in s3.session.calls[0]["url"]
    assert "marker=pre%2Fbinlog_2" in s3.session.calls[1]["url"]


def test_list_objects_uses_changed_prefix():
    s3 = make_s3([FakeResponse(200, LIST_PAGE_2)])
    s3.prefix = "pre/"
    assert s3.list_objects("") == ["binlog_3"]
    s3.session.responses.append(FakeResponse(200, LIST_PAGE_2))
    s3.prefix = "other/"
    assert s3.list_objects("") == ["pre/binlog_3"]


def test_list_objects_error_raises():
    s3 = make_s3([FakeResponse(403, ERROR_BODY)])
    with pytest.raises(StorageError, match="list object"):
        s3.list_objects("binlog_")