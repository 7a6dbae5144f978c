"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    mode TEXT NOT NULL DEFAULT 'local' CHECK (mode IN ('local', 'github', 'hybrid')),
    repo TEXT,
    folder TEXT,
    status TEXT NOT NULL DEFAULT 'planning'
        CHECK (status IN ('planning', 'active', 'paused', 'review', 'completed', 'archived')),
    token_budget INTEGER,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    cost_budget_cents INTEGER,
    cost_spent_cents INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    workflow_id TEXT,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'backlog'
        CHECK (status IN ('backlog', 'todo', 'in_progress', 'review', 'blocked', 'done', 'archived')),
    priority INTEGER NOT NULL DEFAULT 3,
    assigned_agent_id TEXT,
    assigned_role_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    estimated_duration_minutes INTEGER,
    actual_duration_minutes INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    depends_on_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    PRIMARY KEY (task_id, depends_on_task_id),
    CHECK (task_id != depends_on_task_id)
);

CREATE INDEX IF NOT EXISTS idx_task_dependencies_reverse
    ON task_dependencies(depends_on_task_id);

CREATE TABLE IF NOT EXISTS subtasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    workflow_id TEXT,
    creator_agent_id TEXT NOT NULL,
    creator_role_id TEXT,
    filename TEXT NOT NULL,
    path TEXT,
    type TEXT NOT NULL DEFAULT 'other'
        CHECK (type IN ('code', 'document', 'diagram', 'config', 'test', 'asset', 'data', 'other')),
    mime_type TEXT,
    content TEXT,
    content_hash TEXT,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft', 'pending', 'approved', 'rejected', 'superseded')),
    review_comments TEXT,
    reviewed_by TEXT,
    reviewed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_artifacts_task ON artifacts(task_id);

CREATE TABLE IF NOT EXISTS relationships (
    id TEXT PRIMARY KEY,
    source_agent_id TEXT NOT NULL,
    target_agent_id TEXT NOT NULL,
    relationship_type TEXT NOT NULL
        CHECK (relationship_type IN ('delegation', 'collaboration', 'review', 'escalation',
                                     'consultation', 'dependency', 'supervision')),
    authority_delta INTEGER NOT NULL DEFAULT 0
        CHECK (authority_delta BETWEEN -5 AND 5),
    bidirectional INTEGER NOT NULL DEFAULT 0,
    auto_approval INTEGER NOT NULL DEFAULT 1,
    max_interactions_per_workflow INTEGER
        CHECK (max_interactions_per_workflow IS NULL OR max_interactions_per_workflow >= 1),
    priority INTEGER NOT NULL DEFAULT 0,
    description TEXT,
    conditions_json TEXT NOT NULL DEFAULT '[]',
    total_interactions INTEGER NOT NULL DEFAULT 0,
    successful_interactions INTEGER NOT NULL DEFAULT 0,
    failed_interactions INTEGER NOT NULL DEFAULT 0,
    avg_response_time REAL NOT NULL DEFAULT 0,
    timed_interactions INTEGER NOT NULL DEFAULT 0,
    last_interaction_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_relationships_source ON relationships(source_agent_id);
CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(target_agent_id);

CREATE TABLE IF NOT EXISTS interactions (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL,
    initiator_agent_id TEXT NOT NULL,
    target_agent_id TEXT NOT NULL,
    interaction_type TEXT NOT NULL,
    task_id TEXT REFERENCES tasks(id) ON DELETE SET NULL,
    relationship_id TEXT REFERENCES relationships(id) ON DELETE SET NULL,
    parent_interaction_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'completed', 'failed', 'cancelled', 'timeout')),
    priority INTEGER NOT NULL DEFAULT 3,
    message TEXT NOT NULL,
    thinking TEXT,
    response_json TEXT,
    error_json TEXT,
    user_intervention_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    total_tokens INTEGER,
    duration_ms INTEGER,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_interactions_workflow ON interactions(workflow_id);
CREATE INDEX IF NOT EXISTS idx_interactions_parent ON interactions(parent_interaction_id);
"""


def init_db(db_path: Path | str) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    Pass ``":memory:"`` for a throwaway ledger.
    """
    if str(db_path) != ":memory:":
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path | str):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
