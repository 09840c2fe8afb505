"""Tests for the backup capture pipeline."""

import asyncio
import socket
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from botocore.exceptions import NoCredentialsError

from devdb.backup.auth import CredentialResolver
from devdb.backup.pipeline import BackupCapturePipeline, backup_key
from devdb.core.engines import DumpCommand
from devdb.data.models.backups import ConnectionDescriptor
from devdb.data.models.projects import EngineType
from devdb.errors import (
    BackupConnectivityError,
    BackupCredentialError,
    BackupDumpError,
    BackupUploadError,
    NotFoundError,
    ValidationError,
)

from conftest import client_error, make_project


@pytest_asyncio.fixture
async def source_port():
    """A local TCP listener standing in for the source database."""

    async def accept(reader, writer):
        writer.close()

    server = await asyncio.start_server(accept, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


def closed_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def rds_client():
    client = MagicMock()
    client.generate_db_auth_token.return_value = "iam-token"
    return client


@pytest.fixture
def pipeline(object_store, rds_client, tmp_path):
    return BackupCapturePipeline(
        object_store,
        CredentialResolver(default_region="eu-west-1", client_factory=lambda region: rds_client),
        bucket="devdb-test-backups",
        staging_dir=tmp_path / "dumps",
        connect_timeout=1.0,
    )


def connection(port: int, **overrides) -> ConnectionDescriptor:
    fields = {
        "host": "127.0.0.1",
        "port": port,
        "username": "reader",
        "password": "hunter22",
        "database": "shop",
    }
    fields.update(overrides)
    return ConnectionDescriptor(**fields)


def fake_dump(pipeline, commands, payload=b"PGDMP"):
    async def run_dump(command):
        commands.append(command)
        argv = command.argv
        if "-f" in argv:
            path = argv[argv.index("-f") + 1]
        else:
            path = next(a for a in argv if a.startswith("--result-file=")).split("=", 1)[1]
        with open(path, "wb") as fh:
            fh.write(payload)

    pipeline.run_dump = run_dump


class TestCapture:
    @pytest.mark.asyncio
    async def test_postgres_capture_uploads_and_cleans_up(
        self, pipeline, source_port, s3_client, tmp_path
    ):
        commands = []
        fake_dump(pipeline, commands)

        artifact = await pipeline.capture(make_project(), connection(source_port))

        assert artifact.bucket == "devdb-test-backups"
        assert artifact.object_storage_key.startswith("acme/acme-shop/")
        assert artifact.object_storage_key.endswith(".dump")
        assert artifact.content_type == "application/octet-stream"
        assert artifact.size_bytes == 5
        assert "password" not in artifact.to_dict()["source"]

        [command] = commands
        assert command.argv[0] == "pg_dump"
        assert command.env == {"PGPASSWORD": "hunter22", "PGSSLMODE": "require"}
        put = s3_client.put_object.call_args.kwargs
        assert put["Bucket"] == "devdb-test-backups"
        assert put["ContentType"] == "application/octet-stream"
        assert list((tmp_path / "dumps").iterdir()) == []

    @pytest.mark.asyncio
    async def test_mysql_capture_uses_sql_artifacts(self, pipeline, source_port):
        commands = []
        fake_dump(pipeline, commands, payload=b"-- MySQL dump")
        project = make_project(engine=EngineType.MYSQL, version="8.0")

        artifact = await pipeline.capture(project, connection(source_port))

        assert commands[0].argv[0] == "mysqldump"
        assert "--ssl-mode=REQUIRED" in commands[0].argv
        assert artifact.object_storage_key.endswith(".sql")
        assert artifact.content_type == "application/sql"

    @pytest.mark.asyncio
    async def test_target_overrides(self, pipeline, source_port):
        fake_dump(pipeline, [])

        artifact = await pipeline.capture(
            make_project(),
            connection(source_port),
            target_bucket="other-bucket",
            target_key="manual/shop.dump",
        )

        assert artifact.uri == "s3://other-bucket/manual/shop.dump"

    @pytest.mark.asyncio
    async def test_missing_bucket_is_created(self, pipeline, source_port, s3_client):
        s3_client.head_bucket.side_effect = client_error("404", "HeadBucket")
        fake_dump(pipeline, [])

        await pipeline.capture(make_project(), connection(source_port))

        s3_client.create_bucket.assert_called_once_with(Bucket="devdb-test-backups")

    @pytest.mark.asyncio
    async def test_upload_failure_still_cleans_up(
        self, pipeline, source_port, s3_client, tmp_path
    ):
        s3_client.put_object.side_effect = client_error("AccessDenied", "PutObject")
        fake_dump(pipeline, [])

        with pytest.raises(BackupUploadError):
            await pipeline.capture(make_project(), connection(source_port))

        assert list((tmp_path / "dumps").iterdir()) == []

    @pytest.mark.asyncio
    async def test_dump_failure_still_cleans_up(self, pipeline, source_port, tmp_path):
        async def failing_dump(command):
            path = command.argv[command.argv.index("-f") + 1]
            with open(path, "wb") as fh:
                fh.write(b"partial")
            raise BackupDumpError("pg_dump failed with code 1", exit_code=1)

        pipeline.run_dump = failing_dump

        with pytest.raises(BackupDumpError):
            await pipeline.capture(make_project(), connection(source_port))

        assert list((tmp_path / "dumps").iterdir()) == []

    @pytest.mark.asyncio
    async def test_unreachable_source(self, pipeline, s3_client):
        with pytest.raises(BackupConnectivityError) as exc_info:
            await pipeline.capture(make_project(), connection(closed_port()))

        message = exc_info.value.message
        assert "VPC routing" in message
        assert "security group" in message
        assert "DNS" in message
        s3_client.put_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_endpoint_override_is_dialled(self, pipeline, source_port):
        commands = []
        fake_dump(pipeline, commands)

        await pipeline.capture(
            make_project(),
            connection(source_port, host="shop.abc123.eu-west-1.rds.amazonaws.com",
                       endpoint_override="127.0.0.1"),
        )

        argv = commands[0].argv
        assert argv[argv.index("-h") + 1] == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_rds_instance_is_located(self, pipeline, rds_client, source_port):
        rds_client.describe_db_instances.return_value = {
            "DBInstances": [
                {
                    "DBInstanceIdentifier": "shop-prod",
                    "DBInstanceStatus": "available",
                    "Endpoint": {"Address": "127.0.0.1", "Port": source_port},
                    "DBName": "shop",
                }
            ]
        }
        commands = []
        fake_dump(pipeline, commands)
        conn = ConnectionDescriptor(
            username="reader", password="hunter22", rds_instance="shop-prod"
        )

        artifact = await pipeline.capture(make_project(), conn)

        rds_client.describe_db_instances.assert_called_once_with(
            DBInstanceIdentifier="shop-prod"
        )
        argv = commands[0].argv
        assert argv[argv.index("-h") + 1] == "127.0.0.1"
        assert argv[argv.index("-p") + 1] == str(source_port)
        assert argv[argv.index("-d") + 1] == "shop"
        assert artifact.source_connection["rdsInstance"] == "shop-prod"
        assert artifact.source_connection["host"] == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_missing_rds_instance(self, pipeline, rds_client, s3_client):
        rds_client.describe_db_instances.side_effect = client_error(
            "DBInstanceNotFound", "DescribeDBInstances"
        )
        conn = ConnectionDescriptor(
            username="reader", password="hunter22", rds_instance="shop-gone"
        )

        with pytest.raises(NotFoundError, match="shop-gone"):
            await pipeline.capture(make_project(), conn)

        s3_client.put_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_target_region_uses_regional_client(
        self, pipeline, source_port, s3_client, monkeypatch
    ):
        regional = MagicMock()
        created = []

        def fake_client(service, region_name=None, endpoint_url=None):
            created.append((service, region_name))
            return regional

        monkeypatch.setattr("devdb.backup.storage.boto3.client", fake_client)
        regional.head_bucket.side_effect = client_error("404", "HeadBucket")
        fake_dump(pipeline, [])

        artifact = await pipeline.capture(
            make_project(),
            connection(source_port),
            target_bucket="dr-backups",
            target_region="eu-central-1",
        )

        assert created == [("s3", "eu-central-1")]
        regional.create_bucket.assert_called_once_with(
            Bucket="dr-backups",
            CreateBucketConfiguration={"LocationConstraint": "eu-central-1"},
        )
        assert regional.put_object.call_args.kwargs["Bucket"] == "dr-backups"
        s3_client.put_object.assert_not_called()
        assert artifact.uri.startswith("s3://dr-backups/")

    @pytest.mark.asyncio
    async def test_default_region_reuses_client(self, pipeline, source_port, s3_client):
        fake_dump(pipeline, [])

        await pipeline.capture(
            make_project(), connection(source_port), target_region="us-east-1"
        )

        s3_client.put_object.assert_called_once()


class TestCredentials:
    @pytest.mark.asyncio
    async def test_password_is_used_as_is(self, rds_client):
        resolver = CredentialResolver(client_factory=lambda region: rds_client)

        assert await resolver.resolve(connection(5432)) == "hunter22"
        rds_client.generate_db_auth_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_iam_token(self, rds_client):
        resolver = CredentialResolver(
            default_region="eu-west-1", client_factory=lambda region: rds_client
        )
        conn = connection(
            5432,
            host="shop.abc123.eu-west-1.rds.amazonaws.com",
            password=None,
            iam_auth=True,
            endpoint_override="10.0.0.9",
        )

        assert await resolver.resolve(conn) == "iam-token"
        rds_client.generate_db_auth_token.assert_called_once_with(
            DBHostname="shop.abc123.eu-west-1.rds.amazonaws.com",
            Port=5432,
            DBUsername="reader",
            Region="eu-west-1",
        )

    @pytest.mark.asyncio
    async def test_iam_token_failure(self, rds_client):
        rds_client.generate_db_auth_token.side_effect = NoCredentialsError()
        resolver = CredentialResolver(client_factory=lambda region: rds_client)

        with pytest.raises(BackupCredentialError) as exc_info:
            await resolver.resolve(connection(5432, password=None, iam_auth=True))

        message = exc_info.value.message
        assert "rds-db:connect" in message
        assert "reachable" in message
        assert "TLS" in message

    def test_password_or_iam_required(self):
        with pytest.raises(ValueError):
            connection(5432, password=None)

    def test_host_required_without_rds_instance(self):
        with pytest.raises(ValueError):
            ConnectionDescriptor(username="reader", password="hunter22", database="shop")

    @pytest.mark.asyncio
    async def test_locate_keeps_explicit_database(self, rds_client):
        rds_client.describe_db_instances.return_value = {
            "DBInstances": [
                {"Endpoint": {"Address": "shop.abc.rds.amazonaws.com", "Port": 5432},
                 "DBName": "postgres"}
            ]
        }
        resolver = CredentialResolver(client_factory=lambda region: rds_client)
        conn = ConnectionDescriptor(
            username="reader", password="pw", rds_instance="shop-prod", database="shop"
        )

        located = await resolver.locate(conn)

        assert located.host == "shop.abc.rds.amazonaws.com"
        assert located.port == 5432
        assert located.database == "shop"

    @pytest.mark.asyncio
    async def test_locate_without_database(self, rds_client):
        rds_client.describe_db_instances.return_value = {
            "DBInstances": [{"Endpoint": {"Address": "shop.abc.rds.amazonaws.com", "Port": 3306}}]
        }
        resolver = CredentialResolver(client_factory=lambda region: rds_client)
        conn = ConnectionDescriptor(username="reader", password="pw", rds_instance="shop-prod")

        with pytest.raises(ValidationError, match="no default database"):
            await resolver.locate(conn)

    @pytest.mark.asyncio
    async def test_locate_is_skipped_without_rds_instance(self, rds_client):
        resolver = CredentialResolver(client_factory=lambda region: rds_client)
        conn = connection(5432)

        assert await resolver.locate(conn) is conn
        rds_client.describe_db_instances.assert_not_called()


class TestRunDump:
    @pytest.mark.asyncio
    async def test_success(self, pipeline, tmp_path):
        out = tmp_path / "out.txt"
        await pipeline.run_dump(
            DumpCommand(argv=["sh", "-c", f'printf "$DUMP_SECRET" > {out}'],
                        env={"DUMP_SECRET": "s3"})
        )

        assert out.read_text() == "s3"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, pipeline):
        with pytest.raises(BackupDumpError) as exc_info:
            await pipeline.run_dump(
                DumpCommand(argv=["sh", "-c", "echo 'access denied' >&2; exit 3"])
            )

        assert exc_info.value.exit_code == 3
        assert "access denied" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_missing_tool(self, pipeline):
        with pytest.raises(BackupDumpError, match="Could not start"):
            await pipeline.run_dump(DumpCommand(argv=["devdb-no-such-dump-tool"]))


def test_backup_key_layout():
    when = datetime(2024, 5, 1, 12, 30, 5, tzinfo=timezone.utc)

    assert backup_key(make_project(), "dump", when) == "acme/acme-shop/20240501T123005Z.dump"
