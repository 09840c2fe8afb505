"""
Engine profiles.

Each profile isolates engine-specific knowledge (container image, ports,
bootstrap environment, init-time restore, dump commands) from the
orchestration layer. The reconciler and the backup pipeline only talk to
``EngineProfile``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from ..data.models.backups import ConnectionDescriptor
from ..data.models.projects import Credentials, EngineType
from ..errors import ValidationError

INITDB_PATH = "/docker-entrypoint-initdb.d"
SEED_MOUNT_PATH = "/seed"
BACKUP_URL_ENV = "DEVDB_BACKUP_URL"


@dataclass
class DumpCommand:
    """An external dump utility invocation."""

    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)


class EngineProfile(ABC):
    """Engine-specific constants and command builders."""

    engine: EngineType
    image_repository: str
    supported_versions: Tuple[str, ...]
    port: int
    data_mount_path: str
    dump_extension: str
    content_type: str

    def image(self, version: str) -> str:
        self.validate_version(version)
        return f"{self.image_repository}:{version}"

    def validate_version(self, version: str) -> None:
        if version not in self.supported_versions:
            raise ValidationError(
                f"Invalid {self.engine.value} version '{version}'. "
                f"Supported versions are: {', '.join(self.supported_versions)}"
            )

    @abstractmethod
    def environment(self, credentials: Credentials) -> Dict[str, str]:
        """Bootstrap environment for the engine container."""

    @abstractmethod
    def readiness_command(self, credentials: Credentials) -> List[str]:
        """Command the kubelet runs to decide whether the engine accepts connections."""

    @abstractmethod
    def seed_script(self, source_ref: str) -> str:
        """Shell script run by the init container to stage a backup artifact.

        The artifact URL is read from ``$DEVDB_BACKUP_URL``; everything written
        to ``/seed`` is visible to the engine under its initdb directory.
        """

    @abstractmethod
    def dump_command(
        self, connection: ConnectionDescriptor, secret: str, output_path: str
    ) -> DumpCommand:
        """Build the dump invocation for a live database."""


class PostgresProfile(EngineProfile):
    """PostgreSQL (official ``postgres`` image)."""

    engine = EngineType.POSTGRES
    image_repository = "postgres"
    supported_versions = ("13", "14", "15", "16")
    port = 5432
    data_mount_path = "/var/lib/postgresql/data"
    dump_extension = "dump"
    content_type = "application/octet-stream"

    def environment(self, credentials: Credentials) -> Dict[str, str]:
        return {
            "POSTGRES_DB": credentials.database_name,
            "POSTGRES_USER": credentials.username,
            "POSTGRES_PASSWORD": credentials.password,
            # The volume root holds lost+found, which initdb refuses to touch
            "PGDATA": f"{self.data_mount_path}/pgdata",
        }

    def readiness_command(self, credentials: Credentials) -> List[str]:
        return [
            "pg_isready",
            "-U",
            credentials.username,
            "-d",
            credentials.database_name,
        ]

    def seed_script(self, source_ref: str) -> str:
        return "\n".join(
            [
                "set -e",
                f'curl -fsSL -o {SEED_MOUNT_PATH}/backup.dump "${BACKUP_URL_ENV}"',
                f"cat > {SEED_MOUNT_PATH}/zz-restore.sh <<'EOF'",
                'pg_restore --no-owner --no-privileges -U "$POSTGRES_USER" '
                f'-d "$POSTGRES_DB" {INITDB_PATH}/backup.dump',
                "EOF",
            ]
        )

    def dump_command(
        self, connection: ConnectionDescriptor, secret: str, output_path: str
    ) -> DumpCommand:
        return DumpCommand(
            argv=[
                "pg_dump",
                "-h",
                connection.dial_host,
                "-p",
                str(connection.port),
                "-U",
                connection.username,
                "-d",
                connection.database,
                "-F",
                "c",
                "-f",
                output_path,
            ],
            env={"PGPASSWORD": secret, "PGSSLMODE": "require"},
        )


class MySQLProfile(EngineProfile):
    """MySQL (official ``mysql`` image)."""

    engine = EngineType.MYSQL
    image_repository = "mysql"
    supported_versions = ("5.7", "8.0", "8.4")
    port = 3306
    data_mount_path = "/var/lib/mysql"
    dump_extension = "sql"
    content_type = "application/sql"

    def environment(self, credentials: Credentials) -> Dict[str, str]:
        env = {
            "MYSQL_DATABASE": credentials.database_name,
            "MYSQL_ROOT_PASSWORD": credentials.password,
        }
        # The image creates root itself and rejects MYSQL_USER=root
        if credentials.username != "root":
            env["MYSQL_USER"] = credentials.username
            env["MYSQL_PASSWORD"] = credentials.password
        return env

    def readiness_command(self, credentials: Credentials) -> List[str]:
        return ["sh", "-c", 'mysqladmin ping -h 127.0.0.1 -uroot -p"$MYSQL_ROOT_PASSWORD"']

    def seed_script(self, source_ref: str) -> str:
        filename = "backup.sql.gz" if source_ref.split("?")[0].endswith(".gz") else "backup.sql"
        return "\n".join(
            [
                "set -e",
                f'curl -fsSL -o {SEED_MOUNT_PATH}/{filename} "${BACKUP_URL_ENV}"',
            ]
        )

    def dump_command(
        self, connection: ConnectionDescriptor, secret: str, output_path: str
    ) -> DumpCommand:
        argv = [
            "mysqldump",
            "-h",
            connection.dial_host,
            "-P",
            str(connection.port),
            "-u",
            connection.username,
            "--ssl-mode=REQUIRED",
            "--single-transaction",
            "--routines",
            "--triggers",
            f"--result-file={output_path}",
        ]
        if connection.iam_auth:
            argv.append("--enable-cleartext-plugin")
        argv.append(connection.database)
        return DumpCommand(argv=argv, env={"MYSQL_PWD": secret})


_PROFILES: Dict[EngineType, EngineProfile] = {
    EngineType.POSTGRES: PostgresProfile(),
    EngineType.MYSQL: MySQLProfile(),
}


def get_profile(engine: EngineType | str) -> EngineProfile:
    """Return the profile for an engine type."""
    try:
        return _PROFILES[EngineType(engine)]
    except ValueError:
        raise ValidationError(
            f"Invalid engine type '{engine}'. Supported: "
            + ", ".join(e.value for e in EngineType)
        )
