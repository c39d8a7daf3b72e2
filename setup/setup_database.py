#!/usr/bin/env python3
"""
Database setup script for the DORA pipeline.

Creates the Supabase schema programmatically using direct PostgreSQL connection.
The repos / team_repos / tokens tables are normally owned by the surrounding
application; they are created here only if missing so a fresh project works.

Usage:
    python setup/setup_database.py           # Create schema
    python setup/setup_database.py --verify  # Verify existing schema
    python setup/setup_database.py --drop    # Drop and recreate (DANGEROUS)
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import psycopg2

from utils.config_loader import load_config
from utils.logger import setup_logger

logger = setup_logger(__name__)


# Tables in creation order (referenced tables first)
TABLES = {
    "tokens": """
CREATE TABLE IF NOT EXISTS tokens (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    token TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'github',  -- github | bitbucket
    email TEXT,                           -- required for bitbucket
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
""",
    "repos": """
CREATE TABLE IF NOT EXISTS repos (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    token_id UUID REFERENCES tokens(id) ON DELETE SET NULL,
    org_name TEXT NOT NULL,
    repo_name TEXT NOT NULL,
    cfr_type TEXT NOT NULL DEFAULT 'PR_MERGE',  -- PR_MERGE | CI-CD
    workflow_file TEXT,
    dev_branch TEXT,
    stage_branch TEXT,
    prod_branch TEXT,
    last_fetched_at TIMESTAMPTZ,
    UNIQUE(org_name, repo_name)
);
""",
    "team_repos": """
CREATE TABLE IF NOT EXISTS team_repos (
    team_id UUID NOT NULL,
    repo_id UUID NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    PRIMARY KEY (team_id, repo_id)
);
""",
    "fetch_data": """
CREATE TABLE IF NOT EXISTS fetch_data (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    repo_id UUID NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    state TEXT NOT NULL DEFAULT 'processing'
        CHECK (state IN ('processing', 'success', 'failure')),
    raw_response JSONB,
    fetched_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
""",
    "pull_requests": """
CREATE TABLE IF NOT EXISTS pull_requests (
    id UUID PRIMARY KEY,
    repo_id UUID NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    fetch_data_id UUID REFERENCES fetch_data(id) ON DELETE CASCADE,

    pr_no INTEGER,
    title TEXT,
    author TEXT,
    state TEXT,                    -- MERGED / OPEN / CLOSED
    base_branch TEXT,
    head_branch TEXT,
    created_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ,
    state_changed_at TIMESTAMPTZ,
    url TEXT,
    provider TEXT,

    commits INTEGER,
    additions INTEGER,
    deletions INTEGER,
    comments INTEGER,

    -- Lead time components (seconds)
    first_commit_to_open DOUBLE PRECISION,
    cycle_time DOUBLE PRECISION,
    first_response_time DOUBLE PRECISION,
    rework_time DOUBLE PRECISION,
    merge_time DOUBLE PRECISION,
    merge_to_deploy DOUBLE PRECISION
);
""",
    "workflow_runs": """
CREATE TABLE IF NOT EXISTS workflow_runs (
    id UUID PRIMARY KEY,
    repo_id UUID NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    fetch_data_id UUID REFERENCES fetch_data(id) ON DELETE CASCADE,

    run_id BIGINT,
    name TEXT,
    head_branch TEXT,
    status TEXT,
    conclusion TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ,
    html_url TEXT,
    actor TEXT,
    workflow_id TEXT
);
""",
    "incidents": """
CREATE TABLE IF NOT EXISTS incidents (
    id UUID PRIMARY KEY,
    repo_id UUID NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    fetch_data_id UUID REFERENCES fetch_data(id) ON DELETE CASCADE,

    workflow_run_id UUID,          -- triggering run (no FK: provider incidents may precede it)
    pull_request_id UUID,
    pr_no TEXT,
    creation_date TIMESTAMPTZ,
    resolved_date TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

    -- Provider-reported details
    title TEXT,
    status TEXT,
    incident_type TEXT,
    url TEXT,
    provider TEXT,
    summary TEXT,
    assigned_to TEXT,

    CHECK (resolved_date IS NULL OR creation_date IS NULL OR resolved_date >= creation_date)
);
""",
}

CREATE_INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_pull_requests_repo_state_updated ON pull_requests(repo_id, state, updated_at);",
    "CREATE INDEX IF NOT EXISTS idx_pull_requests_fetch_data ON pull_requests(fetch_data_id);",
    "CREATE INDEX IF NOT EXISTS idx_workflow_runs_repo_created ON workflow_runs(repo_id, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_workflow_runs_fetch_data ON workflow_runs(fetch_data_id);",
    "CREATE INDEX IF NOT EXISTS idx_incidents_repo_creation ON incidents(repo_id, creation_date);",
    "CREATE INDEX IF NOT EXISTS idx_incidents_fetch_data ON incidents(fetch_data_id);",
    "CREATE INDEX IF NOT EXISTS idx_fetch_data_repo_state ON fetch_data(repo_id, state, fetched_at DESC);",
]

# Only the tables this pipeline owns; collaborator tables are never dropped
OWNED_TABLES = ["incidents", "workflow_runs", "pull_requests", "fetch_data"]
DROP_TABLE_SQL = " ".join(f"DROP TABLE IF EXISTS {name} CASCADE;" for name in OWNED_TABLES)


def index_name(idx_sql: str) -> str:
    return idx_sql.split("INDEX IF NOT EXISTS ")[1].split(" ON")[0]


def get_database_url(config) -> str:
    """
    Get PostgreSQL database URL.

    Uses DATABASE_URL from .env; exits with instructions when it is missing.
    """
    if config.credentials.database_url:
        return config.credentials.database_url

    logger.error("DATABASE_URL not found in .env file")
    logger.error("\nTo get your DATABASE_URL:")
    logger.error("1. Go to Supabase Dashboard → Project Settings → Database")
    logger.error("2. Find 'Connection string' under 'Connection pooling'")
    logger.error("3. Copy the 'URI' connection string")
    logger.error("4. Add to .env file: DATABASE_URL=postgresql://...")
    sys.exit(1)


def create_connection(database_url: str):
    """Create a PostgreSQL database connection."""
    try:
        conn = psycopg2.connect(database_url)
        logger.info("✓ Connected to PostgreSQL database")
        return conn
    except psycopg2.Error as e:
        logger.error(f"✗ Failed to connect to database: {e}")
        logger.error("\nMake sure:")
        logger.error("1. DATABASE_URL is correct in .env file")
        logger.error("2. Your IP is allowed in Supabase (Project Settings → Database → Connection pooling)")
        logger.error("3. Database password is correct")
        sys.exit(1)


def execute_sql(conn, sql_statement: str, description: str) -> bool:
    """Execute a SQL statement."""
    try:
        cursor = conn.cursor()
        cursor.execute(sql_statement)
        conn.commit()
        cursor.close()
        logger.info(f"✓ {description}")
        return True
    except psycopg2.Error as e:
        logger.error(f"✗ {description} failed: {e}")
        conn.rollback()
        return False


def verify_schema(conn) -> bool:
    """Verify that every table exists; report missing indexes."""
    try:
        cursor = conn.cursor()

        ok = True
        for table in TABLES:
            cursor.execute(
                """
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_name = %s
                );
                """,
                (table,)
            )
            if cursor.fetchone()[0]:
                logger.info(f"✓ Table '{table}' exists")
            else:
                logger.error(f"✗ Table '{table}' does not exist")
                ok = False

        cursor.execute("SELECT indexname FROM pg_indexes;")
        indexes = {row[0] for row in cursor.fetchall()}
        for idx_sql in CREATE_INDEXES_SQL:
            idx = index_name(idx_sql)
            if idx in indexes:
                logger.info(f"✓ Index '{idx}' exists")
            else:
                logger.warning(f"⚠ Index '{idx}' missing")

        cursor.close()
        return ok

    except psycopg2.Error as e:
        logger.error(f"✗ Schema verification failed: {e}")
        return False


def create_schema(conn) -> bool:
    """Create the database schema."""
    logger.info("\n" + "="*80)
    logger.info("CREATING SCHEMA")
    logger.info("="*80 + "\n")

    for table, create_sql in TABLES.items():
        if not execute_sql(conn, create_sql, f"Created table '{table}'"):
            return False

    for idx_sql in CREATE_INDEXES_SQL:
        if not execute_sql(conn, idx_sql, f"Created index '{index_name(idx_sql)}'"):
            return False

    logger.info("\n✓ Database schema created successfully!")
    return True


def drop_schema(conn) -> bool:
    """Drop the pipeline-owned tables (DANGEROUS)."""
    logger.warning("\n" + "="*80)
    logger.warning("⚠️  WARNING: DROPPING EXISTING SCHEMA")
    logger.warning("="*80)
    logger.warning(f"This will DELETE ALL DATA in: {', '.join(OWNED_TABLES)}")

    response = input("\nType 'yes' to confirm: ")
    if response.lower() != 'yes':
        logger.info("Aborted.")
        return False

    if not execute_sql(conn, DROP_TABLE_SQL, f"Dropped tables {', '.join(OWNED_TABLES)}"):
        return False

    logger.info("✓ Schema dropped")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Set up database schema for the DORA pipeline"
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Verify existing schema without creating"
    )
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop and recreate pipeline tables (DANGEROUS - deletes all ingested data)"
    )

    args = parser.parse_args()

    config = load_config()
    logger.info("✓ Configuration loaded")

    database_url = get_database_url(config)
    conn = create_connection(database_url)

    try:
        if args.verify:
            logger.info("\n" + "="*80)
            logger.info("VERIFYING SCHEMA")
            logger.info("="*80 + "\n")

            if verify_schema(conn):
                logger.info("\n✓ Schema verification successful")
                sys.exit(0)
            else:
                logger.error("\n✗ Schema verification failed")
                sys.exit(1)

        if args.drop:
            if not drop_schema(conn):
                sys.exit(1)

        if create_schema(conn):
            logger.info("\n" + "="*80)
            logger.info("NEXT STEPS")
            logger.info("="*80)
            logger.info("\n1. Verify the schema:")
            logger.info("   python setup/setup_database.py --verify")
            logger.info("\n2. Fetch data for a repo:")
            logger.info("   python main.py fetch <repo-id>")
            sys.exit(0)
        else:
            logger.error("\n✗ Schema creation failed")
            sys.exit(1)

    finally:
        conn.close()
        logger.info("\n✓ Database connection closed")


if __name__ == "__main__":
    main()
