"""Ordered schema migrations for the state store.

Each step carries a monotonically increasing version and forward/backward
DDL. Applied versions are recorded in ``schema_migrations`` so rerunning
migrate_to_latest() is a no-op. Every step runs in its own BEGIN IMMEDIATE
transaction that re-checks the log first, so processes migrating the same
file at once apply each step once. A failing step rolls back and raises
MigrationError.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from vmx._logging import get_logger
from vmx.exceptions import MigrationError
from vmx.schema import utcnow

if TYPE_CHECKING:
    from sqlalchemy.engine import Connection, Engine

logger = get_logger(__name__)

IMMEDIATE_OPTION = "sqlite_begin_immediate"
"""Connection execution option: open SQLite transactions with BEGIN IMMEDIATE."""


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    up: tuple[str, ...]
    down: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        name="create_virtual_machines",
        up=(
            """
            CREATE TABLE virtual_machines (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL UNIQUE,
                bridge VARCHAR,
                mac_address VARCHAR NOT NULL UNIQUE,
                memory VARCHAR NOT NULL,
                cpus INTEGER NOT NULL,
                cpu VARCHAR NOT NULL,
                disk_size VARCHAR NOT NULL,
                drive_path VARCHAR,
                version VARCHAR NOT NULL,
                disk_format VARCHAR,
                iso_path VARCHAR,
                status VARCHAR NOT NULL,
                pid INTEGER,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
        ),
        down=("DROP TABLE virtual_machines",),
    ),
    Migration(
        version=2,
        name="add_port_forward",
        up=("ALTER TABLE virtual_machines ADD COLUMN port_forward VARCHAR",),
        down=("ALTER TABLE virtual_machines DROP COLUMN port_forward",),
    ),
    Migration(
        version=3,
        name="create_images",
        up=(
            """
            CREATE TABLE images (
                id VARCHAR PRIMARY KEY,
                repository VARCHAR NOT NULL,
                tag VARCHAR NOT NULL,
                size INTEGER NOT NULL,
                path VARCHAR NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
        ),
        down=("DROP TABLE images",),
    ),
    Migration(
        version=4,
        name="add_image_format",
        up=("ALTER TABLE images ADD COLUMN format VARCHAR NOT NULL DEFAULT 'qcow2'",),
        down=("ALTER TABLE images DROP COLUMN format",),
    ),
    Migration(
        version=5,
        name="unique_image_repository_tag",
        up=("CREATE UNIQUE INDEX uq_images_repository_tag ON images (repository, tag)",),
        down=("DROP INDEX uq_images_repository_tag",),
    ),
    Migration(
        version=6,
        name="add_image_digest",
        up=("ALTER TABLE images ADD COLUMN digest VARCHAR",),
        down=("ALTER TABLE images DROP COLUMN digest",),
    ),
    Migration(
        version=7,
        name="index_image_digest",
        up=("CREATE INDEX ix_images_digest ON images (digest)",),
        down=("DROP INDEX ix_images_digest",),
    ),
    Migration(
        version=8,
        name="create_volumes",
        up=(
            """
            CREATE TABLE volumes (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL UNIQUE,
                base_image_id VARCHAR NOT NULL REFERENCES images (id) ON DELETE CASCADE,
                path VARCHAR NOT NULL,
                created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
        ),
        down=("DROP TABLE volumes",),
    ),
    Migration(
        version=9,
        name="add_volume_size",
        up=("ALTER TABLE volumes ADD COLUMN size VARCHAR",),
        down=("ALTER TABLE volumes DROP COLUMN size",),
    ),
    Migration(
        version=10,
        name="add_machine_volume",
        up=("ALTER TABLE virtual_machines ADD COLUMN volume VARCHAR",),
        down=("ALTER TABLE virtual_machines DROP COLUMN volume",),
    ),
)

LATEST_VERSION: int = MIGRATIONS[-1].version

_CREATE_LOG_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name VARCHAR NOT NULL,
    applied_at DATETIME NOT NULL
)
"""


def _step_connection(engine: Engine) -> Connection:
    """Connection whose SQLite transactions take the write lock on BEGIN."""
    return engine.connect().execution_options(**{IMMEDIATE_OPTION: True})


def _ensure_log_table(engine: Engine) -> None:
    with _step_connection(engine) as conn, conn.begin():
        conn.execute(text(_CREATE_LOG_TABLE))


def _applied(conn: Connection) -> set[int]:
    return {row[0] for row in conn.execute(text("SELECT version FROM schema_migrations"))}


def applied_versions(engine: Engine) -> list[int]:
    """Versions recorded in the migration log, ascending."""
    try:
        _ensure_log_table(engine)
        with engine.connect() as conn:
            return sorted(_applied(conn))
    except SQLAlchemyError as e:
        raise MigrationError(f"Cannot read migration log: {e}") from e


def current_version(engine: Engine) -> int:
    """Highest applied version (0 for an empty database)."""
    versions = applied_versions(engine)
    return versions[-1] if versions else 0


def migrate_to_latest(engine: Engine, migrations: tuple[Migration, ...] = MIGRATIONS) -> list[int]:
    """Apply every pending forward step in version order.

    Returns:
        Versions applied by this call (empty when already up to date)

    Raises:
        MigrationError: A step failed; it was rolled back and later steps were not run
    """
    done = set(applied_versions(engine))
    applied: list[int] = []

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version in done:
            continue
        try:
            with _step_connection(engine) as conn, conn.begin():
                if migration.version in _applied(conn):
                    logger.debug(
                        f"Migration {migration.version:03d}_{migration.name} already applied by another process",
                        extra={"version": migration.version},
                    )
                    continue
                for statement in migration.up:
                    conn.execute(text(statement))
                conn.execute(
                    text("INSERT INTO schema_migrations (version, name, applied_at) VALUES (:v, :n, :t)"),
                    {"v": migration.version, "n": migration.name, "t": utcnow().isoformat(" ")},
                )
        except SQLAlchemyError as e:
            logger.error(
                f"Migration {migration.version:03d}_{migration.name} failed",
                extra={"version": migration.version, "error": str(e)},
            )
            raise MigrationError(
                f"Migration {migration.version:03d}_{migration.name} failed: {e}",
                context={"version": migration.version, "name": migration.name},
            ) from e
        logger.debug(f"Applied migration {migration.version:03d}_{migration.name}", extra={"version": migration.version})
        applied.append(migration.version)

    return applied


def migrate_down(engine: Engine, target: int, migrations: tuple[Migration, ...] = MIGRATIONS) -> list[int]:
    """Revert applied steps with version > target, newest first.

    Returns:
        Versions reverted by this call

    Raises:
        MigrationError: A backward step failed
    """
    done = set(applied_versions(engine))
    reverted: list[int] = []

    for migration in sorted(migrations, key=lambda m: m.version, reverse=True):
        if migration.version <= target or migration.version not in done:
            continue
        try:
            with _step_connection(engine) as conn, conn.begin():
                if migration.version not in _applied(conn):
                    continue
                for statement in migration.down:
                    conn.execute(text(statement))
                conn.execute(text("DELETE FROM schema_migrations WHERE version = :v"), {"v": migration.version})
        except SQLAlchemyError as e:
            raise MigrationError(
                f"Reverting migration {migration.version:03d}_{migration.name} failed: {e}",
                context={"version": migration.version, "name": migration.name},
            ) from e
        logger.debug(f"Reverted migration {migration.version:03d}_{migration.name}", extra={"version": migration.version})
        reverted.append(migration.version)

    return reverted
