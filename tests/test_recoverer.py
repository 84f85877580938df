import pytest

from pxcoperator.pitr.recoverer import (
    DEFAULT_ENDPOINT,
    BackupS3,
    BinlogS3,
    Config,
    RecoverError,
    Recoverer,
    RecoverType,
    get_bucket_and_prefix,
    get_extend_gtid_set,
    get_gtid_from_sst_info,
    get_gtid_from_xtrabackup,
    get_set_from_xtrabackup_info,
    get_start_gtid_set,
    main,
)


@pytest.mark.parametrize(
    "address, bucket, prefix",
    [
        ("operator-testing/test", "operator-testing", "test/"),
        ("s3://operator-testing/test", "operator-testing", "test/"),
        ("https://somedomain/operator-testing/test", "operator-testing", "test/"),
        ("operator-testing/test/", "operator-testing", "test/"),
        ("operator-testing/test/pitr", "operator-testing", "test/pitr/"),
        ("https://somedomain/operator-testing", "operator-testing", ""),
        ("operator-testing", "operator-testing", ""),
    ],
)
def test_get_bucket_and_prefix(address, bucket, prefix):
    assert get_bucket_and_prefix(address) == (bucket, prefix)


def test_get_bucket_and_prefix_empty():
    with pytest.raises(RecoverError, match="can't get bucket name"):
        get_bucket_and_prefix("")


def test_get_gtid_from_content():
    content = b"sometext GTID of the last set 'test_set:1-10'\n\t"
    assert get_gtid_from_xtrabackup(content) == "test_set:1-10"


def test_get_gtid_from_xtrabackup_missing():
    with pytest.raises(RecoverError, match="no gtid data"):
        get_gtid_from_xtrabackup(b"nothing here\n")


def test_get_gtid_from_xtrabackup_unterminated():
    with pytest.raises(RecoverError, match="can't find gtid data"):
        get_gtid_from_xtrabackup(b"GTID of the last set 'abc:1-2'")


@pytest.mark.parametrize(
    "gtid_set, gtid, expected",
    [
        ("source-id:1-40", "source-id:15", "source-id:15-40"),
        ("source-id:1-40", "source-id:11-15", "source-id:11-40"),
    ],
)
def test_get_extend_gtid_set(gtid_set, gtid, expected):
    assert get_extend_gtid_set(gtid_set, gtid) == expected


def test_get_extend_gtid_set_equal():
    assert get_extend_gtid_set("source-id:5", "source-id:5") == "source-id:5"


def test_get_extend_gtid_set_invalid():
    with pytest.raises(RecoverError, match="incorrect source"):
        get_extend_gtid_set("source-id", "source-id:3")


def test_get_gtid_from_sst_info():
    assert get_gtid_from_sst_info(b"[sst]\ngalera-gtid=abc:12\nother=1\n") == "abc:12"


def test_get_gtid_from_sst_info_errors():
    with pytest.raises(RecoverError, match="no gtid data"):
        get_gtid_from_sst_info(b"[sst]\n")
    with pytest.raises(RecoverError, match="can't find gtid data"):
        get_gtid_from_sst_info(b"galera-gtid=abc:12")


def test_get_set_from_xtrabackup_info():
    content = b"GTID of the last change 'uuid-a:1-5,uuid-b:1-9'\n"
    assert get_set_from_xtrabackup_info("uuid-b", content) == "1-9"
    assert get_set_from_xtrabackup_info("uuid-a", content) == "1-5"


def test_get_set_from_xtrabackup_info_missing_source():
    content = b"GTID of the last change 'uuid-a:1-5'\n"
    with pytest.raises(RecoverError, match="can't find current gtid"):
        get_set_from_xtrabackup_info("uuid-c", content)


def test_get_start_gtid_set_bad_destination():
    backup = BackupS3(backup_dest="nobucket")
    with pytest.raises(RecoverError, match="parsing bucket"):
        get_start_gtid_set(backup)


def _environ():
    return {
        "PXC_SERVICE": "cluster1-pxc",
        "PXC_USER": "operator",
        "PXC_PASS": "password",
        "PITR_RECOVERY_TYPE": "date",
        "PITR_DATE": "2021-01-02 03:04:05",
        "ACCESS_KEY_ID": "placeholder",
        "SECRET_ACCESS_KEY": "secret",
        "DEFAULT_REGION": "us-east-1",
        "S3_BUCKET_URL": "bucket/backup",
        "BINLOG_ACCESS_KEY_ID": "placeholder",
        "BINLOG_SECRET_ACCESS_KEY": "secret",
        "BINLOG_S3_REGION": "us-east-1",
        "BINLOG_S3_BUCKET_URL": "binlogs/pitr",
        "BINLOG_S3_ENDPOINT": "https://minio.example.com",
    }


def test_config_from_env():
    config = Config.from_env(_environ())
    assert config.pxc_service_name == "cluster1-pxc"
    assert config.recover_type == "date"
    assert config.gtid == ""
    assert config.backup_storage.endpoint == DEFAULT_ENDPOINT
    assert config.backup_storage.backup_dest == "bucket/backup"
    assert config.binlog_storage.endpoint == "https://minio.example.com"
    assert config.binlog_storage.bucket_url == "binlogs/pitr"


def test_config_from_env_missing_required():
    environ = _environ()
    del environ["BINLOG_S3_BUCKET_URL"]
    with pytest.raises(RecoverError, match="BINLOG_S3_BUCKET_URL"):
        Config.from_env(environ)


def test_config_verify_sets_endpoints():
    config = Config(
        backup_storage=BackupS3(endpoint=""),
        binlog_storage=BinlogS3(endpoint=""),
    )
    config.verify()
    assert config.backup_storage.endpoint == "s3.amazonaws.com"
    assert config.binlog_storage.endpoint == "s3.amazonaws.com"


def test_recover_type_values():
    assert RecoverType("transaction") is RecoverType.TRANSACTION
    assert RecoverType.SKIP == "skip"
    with pytest.raises(ValueError):
        RecoverType("bogus")


def test_recoverer_rejects_empty_binlog_bucket():
    config = Config.from_env(_environ())
    config.binlog_storage.bucket_url = ""
    with pytest.raises(RecoverError, match="get bucket and prefix"):
        Recoverer(config)


def test_recoverer_rejects_bad_backup_destination():
    config = Config.from_env(_environ())
    config.backup_storage.backup_dest = "nobucket"
    with pytest.raises(RecoverError, match="get start GTID: parsing bucket"):
        Recoverer(config)


def test_main_unknown_command(capsys):
    assert main(["nonsense"]) == 1
    assert 'unknown command "nonsense"' in capsys.readouterr().err


def test_main_missing_config(monkeypatch):
    monkeypatch.delenv("PXC_SERVICE", raising=False)
    assert main(["recover"]) == 1