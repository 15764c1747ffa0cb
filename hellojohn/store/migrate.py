"""Ordered, idempotent SQL migrations for tenant databases."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from hellojohn.logging import get_logger
from hellojohn.store.errors import MigrationError

logger = get_logger(__name__)

_MIGRATION_RE = re.compile(r"^(\d+)_(.+)\.sql$")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    sql: str


@dataclass
class MigrationResult:
    applied: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: Optional[int] = None
    error: Optional[Exception] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failed is None


def parse_migrations(files: Iterable[Tuple[str, str]]) -> List[Migration]:
    """Turn ``(filename, sql)`` pairs into migrations sorted by version.

    Files that do not match ``NNNN_name.sql`` are ignored; two files with the
    same version are rejected.
    """
    migrations = {}
    for filename, sql in files:
        match = _MIGRATION_RE.match(Path(filename).name)
        if not match:
            continue
        version = int(match.group(1))
        if version in migrations:
            raise MigrationError("duplicate migration version", {"version": version})
        migrations[version] = Migration(version, match.group(2), sql)
    return [migrations[v] for v in sorted(migrations)]


def embedded_migrations() -> List[Migration]:
    root = Path(__file__).parent / "migrations"
    files = [(path.name, path.read_text(encoding="utf-8")) for path in root.glob("*.sql")]
    return parse_migrations(files)


class Migrator:
    def __init__(self, migrations: Optional[List[Migration]] = None):
        self.migrations = migrations if migrations is not None else embedded_migrations()

    def has_pending(self, executor) -> bool:
        executor.ensure_migrations_table()
        watermark = executor.current_version()
        return any(m.version > watermark for m in self.migrations)

    def run(self, executor, *, tenant: str = "") -> MigrationResult:
        """Apply every migration above the executor's watermark, stopping at the first failure."""
        started = time.perf_counter()
        result = MigrationResult()
        executor.ensure_migrations_table()
        watermark = executor.current_version()
        for migration in self.migrations:
            if migration.version <= watermark:
                result.skipped.append(migration.version)
                continue
            try:
                executor.apply(migration.version, migration.name, migration.sql)
            except Exception as exc:
                result.failed = migration.version
                result.error = exc
                logger.error(
                    "migration_failed",
                    tenant=tenant,
                    version=migration.version,
                    name=migration.name,
                    error=str(exc),
                )
                break
            result.applied.append(migration.version)
            logger.info(
                "migration_applied", tenant=tenant, version=migration.version, name=migration.name
            )
        result.duration_ms = (time.perf_counter() - started) * 1000
        return result
