"""Apply the bundled SQL migrations through the asyncpg pool."""

from __future__ import annotations

import logging
import pathlib
from typing import List

import asyncpg

_LOG = logging.getLogger(__name__)

MIGRATIONS_DIR = pathlib.Path(__file__).resolve().parent


def migration_paths() -> List[pathlib.Path]:
	return sorted(MIGRATIONS_DIR.glob("*.sql"))


async def apply_migrations(pool: asyncpg.pool.Pool) -> List[str]:
	"""Run every migration not yet recorded in ``schema_migrations``."""
	applied_now: List[str] = []
	async with pool.acquire() as conn:
		await conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS schema_migrations (
				version TEXT PRIMARY KEY,
				applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
			)
			"""
		)
		applied = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}
		for path in migration_paths():
			version = path.name.split("_", 1)[0]
			if version in applied:
				continue
			async with conn.transaction():
				await conn.execute(path.read_text())
				await conn.execute("INSERT INTO schema_migrations (version) VALUES ($1)", version)
			_LOG.info("migrations.applied", extra={"migration": path.name})
			applied_now.append(path.name)
	return applied_now


__all__ = ["apply_migrations", "migration_paths"]
