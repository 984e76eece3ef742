"""Schema migrations from SQL files, with optional cross-process locking."""

from __future__ import annotations

import contextlib
import math
import re
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from servicekit.servicelog import ServiceLogger, emit_service_log

DEFAULT_LOCK_TIMEOUT = 30.0
_POSTGRES_LOCK_POLL = 0.2
_VERSION_TABLE = "goose_db_version"
_DIRECTIVE = "-- +goose"
_FILE_PATTERN = re.compile(r"^(\d+)_.*\.sql$")

ReleaseLock = Callable[[], None]

_DIALECTS = {
    "postgres": "postgres",
    "pgx": "postgres",
    "mysql": "mysql",
    "tidb": "mysql",
    "sqlite3": "sqlite3",
    "sqlite": "sqlite3",
    "mssql": "mssql",
    "azuresql": "mssql",
    "sqlserver": "mssql",
}

_PARAM = {"postgres": "%s", "mysql": "%s", "sqlite3": "?", "mssql": "?"}

_CREATE_VERSION_TABLE = {
    "sqlite3": (
        f"CREATE TABLE IF NOT EXISTS {_VERSION_TABLE} ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, version_id INTEGER NOT NULL, "
        "is_applied INTEGER NOT NULL, tstamp TIMESTAMP DEFAULT (datetime('now')))"
    ),
    "mysql": (
        f"CREATE TABLE IF NOT EXISTS {_VERSION_TABLE} ("
        "id serial NOT NULL, version_id bigint NOT NULL, is_applied boolean NOT NULL, "
        "tstamp timestamp NULL default now(), PRIMARY KEY(id))"
    ),
    "postgres": (
        f"CREATE TABLE IF NOT EXISTS {_VERSION_TABLE} ("
        "id serial NOT NULL, version_id bigint NOT NULL, is_applied boolean NOT NULL, "
        "tstamp timestamp NULL default now(), PRIMARY KEY(id))"
    ),
}

_SQLSERVER_VERSION_TABLE = """
IF OBJECT_ID('dbo.goose_db_version', 'U') IS NULL
BEGIN
    CREATE TABLE dbo.goose_db_version (
        id BIGINT IDENTITY(1,1) NOT NULL PRIMARY KEY,
        version_id BIGINT NOT NULL,
        is_applied BIT NOT NULL,
        tstamp DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME()
    );
END;

IF NOT EXISTS (SELECT 1 FROM dbo.goose_db_version)
BEGIN
    INSERT INTO dbo.goose_db_version (version_id, is_applied)
    VALUES (0, 1);
END;"""

_SQLSERVER_GET_LOCK = """
DECLARE @res INT;
EXEC @res = sp_getapplock
    @Resource = ?,
    @LockMode = 'Exclusive',
    @LockOwner = 'Session',
    @LockTimeout = ?;
SELECT @res;
"""


class MigrationError(Exception):
    """Raised when a database cannot be opened, locked or migrated."""


@dataclass
class DBConfig:
    """A named database: its driver, DSN and, optionally, a DB-API connect function."""

    driver: str
    dsn: str = ""
    connect: Optional[Callable[[str], Any]] = None


@dataclass
class MigrationSettings:
    """When and how migrations run. ``lock_timeout`` is in seconds."""

    auto_run: bool = False
    db_name: str = ""
    directory: str = ""
    lock_enabled: bool = False
    lock_key: str = ""
    lock_timeout: float = 0.0


@dataclass
class MigrationConfig:
    """The service name, its databases, and the migration settings."""

    service_name: str = ""
    databases: dict[str, DBConfig] = field(default_factory=dict)
    migration: MigrationSettings = field(default_factory=MigrationSettings)


@runtime_checkable
class Runner(Protocol):
    """Applies or rolls back migrations on an open connection."""

    def run(self, conn: Any, driver: str, directory: str, action: str) -> None:
        """Run ``action`` (``up`` or ``down``) with the migrations in ``directory``."""


def _clean(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_db_alias(name: str) -> str:
    """Return the canonical form of a database alias."""
    return _clean(name)


def _connect(db_cfg: DBConfig) -> Any:
    if db_cfg.connect is not None:
        return db_cfg.connect(db_cfg.dsn)
    if _clean(db_cfg.driver) in ("sqlite", "sqlite3"):
        return sqlite3.connect(db_cfg.dsn)
    raise LookupError(f"unknown driver {db_cfg.driver!r}")


def open_sql_db(cfg: MigrationConfig, db_name: str) -> tuple[Any, DBConfig]:
    """Open the database registered under ``db_name`` and return it with its config."""
    alias = normalize_db_alias(db_name)
    db_cfg = cfg.databases.get(alias)
    if db_cfg is None:
        db_cfg = next(
            (c for name, c in cfg.databases.items() if normalize_db_alias(name) == alias),
            None,
        )
    if db_cfg is None:
        raise MigrationError(f"database {alias!r} not found in DB_LIST")
    try:
        conn = _connect(db_cfg)
    except Exception as err:
        raise MigrationError(f"open db failed: {err}") from err
    return conn, db_cfg


def goose_dialect(driver: str) -> str:
    """Return the migration dialect name for a database driver name."""
    name = _clean(driver)
    return "mssql" if name == "sqlserver" else name


@dataclass(frozen=True)
class _Migration:
    version: int
    name: str
    up: tuple[str, ...]
    down: tuple[str, ...]
    use_tx: bool


def _parse_migration(version: int, path: Path) -> _Migration:
    sections: dict[str, list[str]] = {"up": [], "down": []}
    current: Optional[str] = None
    buf: list[str] = []
    in_block = False
    use_tx = True

    def flush() -> None:
        statement = "\n".join(buf).strip()
        buf.clear()
        if current is None:
            return
        if any(line.strip() and not line.strip().startswith("--") for line in statement.splitlines()):
            sections[current].append(statement)

    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if stripped.startswith(_DIRECTIVE):
            directive = stripped[len(_DIRECTIVE):].strip().upper()
            if directive in ("UP", "DOWN"):
                flush()
                current = directive.lower()
                in_block = False
            elif directive == "STATEMENTBEGIN":
                flush()
                in_block = True
            elif directive == "STATEMENTEND":
                in_block = False
                flush()
            elif directive == "NO TRANSACTION":
                use_tx = False
            else:
                raise MigrationError(f"{path.name}: unknown directive {stripped!r}")
            continue
        if current is None:
            continue
        buf.append(line)
        if not in_block and stripped.endswith(";") and not stripped.startswith("--"):
            flush()
    flush()

    if not sections["up"] and not sections["down"] and current is None:
        raise MigrationError(f"{path.name}: no '{_DIRECTIVE} Up' annotation found")
    return _Migration(version, path.name, tuple(sections["up"]), tuple(sections["down"]), use_tx)


def _collect(directory: str) -> list[_Migration]:
    root = Path(directory)
    if not root.is_dir():
        raise MigrationError(f"{directory} directory does not exist")
    found: dict[int, _Migration] = {}
    for path in sorted(root.iterdir()):
        match = _FILE_PATTERN.match(path.name)
        if match is None or not path.is_file():
            continue
        version = int(match.group(1))
        if version < 1:
            raise MigrationError(f"migration version must be greater than zero: {path.name}")
        if version in found:
            raise MigrationError(
                f"duplicate migration version {version}: {found[version].name}, {path.name}"
            )
        found[version] = _parse_migration(version, path)
    return [found[v] for v in sorted(found)]


def _ensure_table(conn: Any, dialect: str) -> None:
    with contextlib.closing(conn.cursor()) as cur:
        if dialect == "mssql":
            cur.execute(_SQLSERVER_VERSION_TABLE)
        else:
            cur.execute(_CREATE_VERSION_TABLE[dialect])
            cur.execute(f"SELECT COUNT(*) FROM {_VERSION_TABLE}")
            row = cur.fetchone()
            if not row or not row[0]:
                p = _PARAM[dialect]
                cur.execute(
                    f"INSERT INTO {_VERSION_TABLE} (version_id, is_applied) VALUES ({p}, {p})",
                    (0, True),
                )
    conn.commit()


def _current_version(conn: Any) -> int:
    with contextlib.closing(conn.cursor()) as cur:
        cur.execute(f"SELECT version_id, is_applied FROM {_VERSION_TABLE} ORDER BY id")
        rows = cur.fetchall()
    state = {int(version): bool(applied) for version, applied in rows}
    return max((v for v, applied in state.items() if applied and v > 0), default=0)


def _apply(conn: Any, dialect: str, migration: _Migration, up: bool) -> None:
    p = _PARAM[dialect]
    record = f"INSERT INTO {_VERSION_TABLE} (version_id, is_applied) VALUES ({p}, {p})"
    statements = migration.up if up else migration.down
    with contextlib.closing(conn.cursor()) as cur:
        try:
            for statement in statements:
                cur.execute(statement)
                if not migration.use_tx:
                    conn.commit()
            cur.execute(record, (migration.version, up))
            conn.commit()
        except Exception as err:
            with contextlib.suppress(Exception):
                conn.rollback()
            raise MigrationError(f"{migration.name}: {err}") from err


class SqlMigrationRunner:
    """Runs numbered ``<version>_<name>.sql`` files with Up and Down sections.

    Applied versions are recorded in the ``goose_db_version`` table.
    ``up`` applies every migration newer than the current version;
    ``down`` rolls back the current one.
    """

    def run(self, conn: Any, driver: str, directory: str, action: str) -> None:
        dialect = _DIALECTS.get(goose_dialect(driver))
        if dialect is None:
            raise MigrationError(f"set migration dialect failed: unknown dialect {driver!r}")
        act = _clean(action)
        if act == "up":
            try:
                self._up(conn, dialect, directory)
            except Exception as err:
                raise MigrationError(f"migration up failed: {err}") from err
        elif act == "down":
            try:
                self._down(conn, dialect, directory)
            except Exception as err:
                raise MigrationError(f"migration down failed: {err}") from err
        else:
            raise MigrationError(f"invalid action {action!r}, expected up or down")

    def _up(self, conn: Any, dialect: str, directory: str) -> None:
        migrations = _collect(directory)
        _ensure_table(conn, dialect)
        current = _current_version(conn)
        for migration in migrations:
            if migration.version > current:
                _apply(conn, dialect, migration, up=True)

    def _down(self, conn: Any, dialect: str, directory: str) -> None:
        migrations = {m.version: m for m in _collect(directory)}
        _ensure_table(conn, dialect)
        current = _current_version(conn)
        if current == 0:
            raise MigrationError("no migration to roll back")
        migration = migrations.get(current)
        if migration is None:
            raise MigrationError(f"migration {current} not found")
        _apply(conn, dialect, migration, up=False)


_default_runner: Runner = SqlMigrationRunner()


def run_migrations(conn: Any, driver: str, directory: str, action: str) -> None:
    """Run ``action`` with the SQL file runner."""
    SqlMigrationRunner().run(conn, driver, directory, action)


def set_default_runner(runner: Optional[Runner]) -> None:
    """Replace the runner used by :func:`auto_run_up`; None leaves it unchanged."""
    global _default_runner
    if runner is None:
        return
    _default_runner = runner


def ensure_version_table(driver: str, conn: Any) -> None:
    """On SQL Server, create and seed the version table if it is missing."""
    if _clean(driver) != "sqlserver":
        return
    try:
        with contextlib.closing(conn.cursor()) as cur:
            cur.execute(_SQLSERVER_VERSION_TABLE)
        conn.commit()
    except Exception as err:
        raise MigrationError(f"ensure goose_db_version table failed: {err}") from err


def _acquire_sqlserver_lock(conn: Any, lock_key: str, timeout: float) -> ReleaseLock:
    try:
        with contextlib.closing(conn.cursor()) as cur:
            cur.execute(_SQLSERVER_GET_LOCK, (lock_key, int(timeout * 1000)))
            row = cur.fetchone()
    except Exception as err:
        raise MigrationError(f"acquire sqlserver migration lock failed: {err}") from err
    result = int(row[0]) if row and row[0] is not None else -999
    if result < 0:
        raise MigrationError(f"acquire sqlserver migration lock failed with code {result}")

    def release() -> None:
        with contextlib.closing(conn.cursor()) as cur:
            cur.execute(
                "EXEC sp_releaseapplock @Resource = ?, @LockOwner = 'Session';", (lock_key,)
            )

    return release


def _acquire_mysql_lock(conn: Any, lock_key: str, timeout: float) -> ReleaseLock:
    wait_seconds = max(int(math.ceil(timeout)), 1)
    try:
        with contextlib.closing(conn.cursor()) as cur:
            cur.execute("SELECT GET_LOCK(%s, %s)", (lock_key, wait_seconds))
            row = cur.fetchone()
    except Exception as err:
        raise MigrationError(f"acquire mysql migration lock failed: {err}") from err
    got = row[0] if row else None
    if got is None or int(got) != 1:
        raise MigrationError("acquire mysql migration lock failed: lock timeout")

    def release() -> None:
        with contextlib.closing(conn.cursor()) as cur:
            cur.execute("SELECT RELEASE_LOCK(%s)", (lock_key,))
            cur.fetchone()

    return release


def _acquire_postgres_lock(conn: Any, lock_key: str, timeout: float) -> ReleaseLock:
    deadline = time.monotonic() + timeout
    while True:
        try:
            with contextlib.closing(conn.cursor()) as cur:
                cur.execute("SELECT pg_try_advisory_lock(hashtext(%s))", (lock_key,))
                row = cur.fetchone()
        except Exception as err:
            raise MigrationError(f"acquire postgres migration lock failed: {err}") from err
        if row and bool(row[0]):
            break
        if time.monotonic() > deadline:
            raise MigrationError("acquire postgres migration lock failed: lock timeout")
        time.sleep(_POSTGRES_LOCK_POLL)

    def release() -> None:
        with contextlib.closing(conn.cursor()) as cur:
            cur.execute("SELECT pg_advisory_unlock(hashtext(%s))", (lock_key,))
            cur.fetchone()

    return release


def acquire_migration_lock(
    conn: Any, driver: str, lock_key: str, timeout: float = 0.0
) -> ReleaseLock:
    """Take a database-wide lock named ``lock_key`` and return a function that releases it.

    ``timeout`` is in seconds; zero or less means 30 seconds. Drivers without
    lock support get a release function that does nothing.
    """
    if timeout <= 0:
        timeout = DEFAULT_LOCK_TIMEOUT
    name = _clean(driver)
    if name == "sqlserver":
        return _acquire_sqlserver_lock(conn, lock_key, timeout)
    if name == "mysql":
        return _acquire_mysql_lock(conn, lock_key, timeout)
    if name == "postgres":
        return _acquire_postgres_lock(conn, lock_key, timeout)
    return lambda: None


def default_migration_lock_key(cfg: Optional[MigrationConfig], db_name: str) -> str:
    """Return ``<service>:migration:<db>``, with fallbacks for empty parts."""
    service = "service"
    if cfg is not None:
        service = cfg.service_name.strip() or "service"
    db = (db_name or "").strip() or "default"
    return f"{service}:migration:{db}"


def _log(
    log: Optional[ServiceLogger],
    operation: str,
    status: str,
    started: float,
    error_code: str,
    metadata: dict[str, Any],
) -> None:
    emit_service_log(log, operation, status, time.monotonic() - started, error_code, metadata)


def _release_lock(release: ReleaseLock, log: Optional[ServiceLogger], metadata: dict[str, Any]) -> None:
    started = time.monotonic()
    try:
        release()
    except Exception:
        _log(log, "migration_lock", "failed", started, "lock_release_failed", metadata)
        return
    _log(log, "migration_lock", "released", started, "", metadata)


def auto_run_up(
    cfg: MigrationConfig,
    runner: Optional[Runner] = None,
    log: Optional[ServiceLogger] = None,
) -> None:
    """Apply pending migrations when auto-run is enabled.

    ``runner`` defaults to the runner set by :func:`set_default_runner`.
    With locking enabled, the run happens while holding the migration lock.
    """
    started = time.monotonic()
    settings = cfg.migration
    if not settings.auto_run:
        _log(log, "migration_autorun", "skipped", started, "", {"auto_run": False})
        return
    runner = runner if runner is not None else _default_runner

    db_name = normalize_db_alias(settings.db_name)
    try:
        conn, db_cfg = open_sql_db(cfg, db_name)
    except MigrationError:
        _log(log, "migration_autorun", "failed", started, "open_db_failed", {"db_name": db_name})
        raise
    driver = db_cfg.driver

    with contextlib.closing(conn), contextlib.ExitStack() as stack:
        try:
            ensure_version_table(driver, conn)
        except MigrationError:
            _log(
                log, "migration_autorun", "failed", started, "ensure_version_table_failed",
                {"db_name": db_name, "driver": driver},
            )
            raise

        if settings.lock_enabled:
            lock_started = time.monotonic()
            lock_key = settings.lock_key.strip() or default_migration_lock_key(cfg, db_name)
            timeout_ms = int(settings.lock_timeout * 1000)
            try:
                release = acquire_migration_lock(conn, driver, lock_key, settings.lock_timeout)
            except Exception:
                _log(
                    log, "migration_lock", "failed", lock_started, "lock_acquire_failed",
                    {"db_name": db_name, "driver": driver, "lock_key": lock_key, "timeout_ms": timeout_ms},
                )
                _log(
                    log, "migration_autorun", "failed", started, "lock_acquire_failed",
                    {"db_name": db_name, "driver": driver, "lock_key": lock_key},
                )
                raise
            _log(
                log, "migration_lock", "success", lock_started, "",
                {"db_name": db_name, "driver": driver, "lock_key": lock_key, "timeout_ms": timeout_ms},
            )
            stack.callback(
                _release_lock, release, log,
                {"db_name": db_name, "driver": driver, "lock_key": lock_key},
            )

        run_metadata = {
            "db_name": db_name,
            "driver": driver,
            "dir": settings.directory,
            "lock_enabled": settings.lock_enabled,
        }
        try:
            runner.run(conn, driver, settings.directory, "up")
        except Exception:
            _log(log, "migration_autorun", "failed", started, "run_failed", run_metadata)
            raise
        _log(log, "migration_autorun", "success", started, "", run_metadata)