"""
PhiloGraph Migration Runner

Applies db/migrations/*.sql in name order to DATABASE_URL, creates the
Neo4j constraints of the graph store and the MongoDB indexes of the
document store.

Usage:
    philograph-migrate
    python -m philograph.migrate

Migrations are idempotent (CREATE ... IF NOT EXISTS).
"""

import sys
from pathlib import Path

from dotenv import load_dotenv
import psycopg

from philograph.config import PhiloGraphConfig
from philograph.storage.mongo_store import MongoDocumentStore
from philograph.storage.neo4j_store import Neo4jGraphStore

DEFAULT_MIGRATIONS_DIR = Path(__file__).parent.parent / 'db' / 'migrations'

REQUIRED_TABLES = [
    'concept',
    'saga_log',
    'lookup_cache',
]


def run_migrations(database_url: str, migrations_dir: Path = None) -> int:
    """
    Run all migration files in order.

    Returns:
        Number of migration files applied
    """
    if migrations_dir is None:
        migrations_dir = DEFAULT_MIGRATIONS_DIR

    if not migrations_dir.exists():
        raise FileNotFoundError(f"Migrations directory not found: {migrations_dir}")

    migration_files = sorted(migrations_dir.glob('*.sql'))
    if not migration_files:
        print(f"Warning: no migration files found in {migrations_dir}")
        return 0

    print(f"Found {len(migration_files)} migration(s)")

    with psycopg.connect(database_url) as conn:
        for migration_file in migration_files:
            print(f"Running: {migration_file.name}...", end=' ')
            sql = migration_file.read_text(encoding='utf-8')

            # Rolls back on error and re-raises
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(sql)
            print("ok")

    return len(migration_files)


def verify_migrations(database_url: str) -> list:
    """
    Returns:
        Names of required tables that are missing
    """
    missing = []
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            for table in REQUIRED_TABLES:
                cur.execute("""
                    SELECT EXISTS (
                        SELECT 1 FROM information_schema.tables
                        WHERE table_name = %s
                    )
                """, (table,))
                if not cur.fetchone()[0]:
                    missing.append(table)
    return missing


def main() -> int:
    load_dotenv()
    config = PhiloGraphConfig.from_env()

    if not config.database.database_url:
        print("Error: DATABASE_URL environment variable not set")
        return 1

    try:
        run_migrations(config.database.database_url)
    except (psycopg.Error, FileNotFoundError) as e:
        print(f"Migration halted: {e}")
        return 1

    missing = verify_migrations(config.database.database_url)
    for table in missing:
        print(f"Missing table: {table}")

    if config.graph.is_configured():
        store = Neo4jGraphStore.connect(
            config.graph.neo4j_uri,
            config.graph.neo4j_user,
            config.graph.neo4j_password,
        )
        try:
            store.ensure_constraints()
            print("Neo4j constraints ensured")
        finally:
            store.close()

    if config.documents.is_configured():
        documents = MongoDocumentStore.connect(
            config.documents.mongodb_uri,
            config.documents.mongodb_database,
        )
        try:
            documents.ensure_indexes()
            print("MongoDB indexes ensured")
        finally:
            documents.close()

    return 1 if missing else 0


if __name__ == '__main__':
    sys.exit(main())
