"""
SQLite schema for the local sync database.

This module defines the database schema for:
- The durable mutation queue (pending and fatal local writes)
- The sync audit log (confirmations, retries, conflicts, rekeys, ...)

The schema supports:
- FIFO ordering per entity via the autoincrement seq column
- Restart recovery (in_flight markers are cleared on open)
- Retry scheduling via next_attempt_at
- Manual intervention via state = 'fatal'
"""

QUEUE_SCHEMA_SQL = """
-- Pending local writes awaiting remote confirmation
CREATE TABLE IF NOT EXISTS pending_mutations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,  -- Submission order
    id TEXT NOT NULL UNIQUE,                -- Mutation id returned by enqueue
    entity_type TEXT NOT NULL,              -- tickets, users, technicians
    target_entity_id TEXT NOT NULL,         -- May be a local- temporary id
    kind TEXT NOT NULL,                     -- create, update, delete
    payload TEXT NOT NULL,                  -- JSON blob
    enqueued_at TEXT NOT NULL,              -- ISO8601 timestamp
    retry_count INTEGER NOT NULL DEFAULT 0,
    unknown_failures INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    failure_kind TEXT,                      -- unreachable, rejected, unknown
    next_attempt_at TEXT,                   -- NULL = attempt immediately
    state TEXT NOT NULL DEFAULT 'pending',  -- pending, fatal
    in_flight INTEGER NOT NULL DEFAULT 0,   -- 1 while a worker applies it
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

-- Index for per-entity FIFO lookups
CREATE INDEX IF NOT EXISTS idx_pending_mutations_target
ON pending_mutations(target_entity_id, seq);

-- Index for listing by state
CREATE INDEX IF NOT EXISTS idx_pending_mutations_state
ON pending_mutations(state, seq);

-- Trigger to update updated_at on modification
CREATE TRIGGER IF NOT EXISTS pending_mutations_updated_at
AFTER UPDATE ON pending_mutations
BEGIN
    UPDATE pending_mutations SET updated_at = CURRENT_TIMESTAMP WHERE seq = NEW.seq;
END;
"""

AUDIT_SCHEMA_SQL = """
-- Audit log for sync engine events
CREATE TABLE IF NOT EXISTS sync_audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,               -- enqueued, confirmed, conflict, rekeyed, ...
    entity_type TEXT,
    entity_id TEXT,
    mutation_id TEXT,
    event_data TEXT,                        -- JSON blob with event-specific details
    actor TEXT NOT NULL,                    -- user id, or "system"
    timestamp TEXT NOT NULL
);

-- Index for finding events by entity
CREATE INDEX IF NOT EXISTS idx_sync_audit_entity
ON sync_audit_log(entity_id);

-- Index for finding events by type
CREATE INDEX IF NOT EXISTS idx_sync_audit_type
ON sync_audit_log(event_type);
"""
