"""SQLite schema migrations."""
from __future__ import annotations

import os
import sqlite3
from typing import Iterable

SCHEMA: Iterable[str] = [
    """
CREATE TABLE IF NOT EXISTS questions (
  id TEXT PRIMARY KEY,
  topic_id INTEGER NOT NULL,
  type TEXT NOT NULL,
  level TEXT NOT NULL,
  text TEXT NOT NULL,
  official_answer TEXT,
  usable_in_practice INTEGER NOT NULL DEFAULT 1,
  usable_in_interview INTEGER NOT NULL DEFAULT 1
);
""",
    """
CREATE INDEX IF NOT EXISTS ix_questions_lookup ON questions(type, topic_id, level);
""",
    """
CREATE TABLE IF NOT EXISTS question_options (
  question_id TEXT NOT NULL REFERENCES questions(id) ON DELETE CASCADE,
  id TEXT NOT NULL,
  position INTEGER NOT NULL,
  text TEXT NOT NULL,
  is_correct INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (question_id, id)
);
""",
    """
CREATE TABLE IF NOT EXISTS templates (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  description TEXT,
  kind TEXT NOT NULL,
  visibility_default TEXT NOT NULL,
  selection_json TEXT NOT NULL,
  settings_json TEXT NOT NULL
);
""",
    """
CREATE TABLE IF NOT EXISTS assignments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  template_id INTEGER NOT NULL REFERENCES templates(id),
  visibility TEXT NOT NULL,
  group_id INTEGER,
  user_id TEXT,
  window_start TEXT,
  window_end TEXT,
  max_attempts INTEGER,
  cooldown_hours INTEGER,
  certification_enabled INTEGER NOT NULL DEFAULT 0
);
""",
    """
CREATE TABLE IF NOT EXISTS group_members (
  group_id INTEGER NOT NULL,
  user_id TEXT NOT NULL,
  PRIMARY KEY (group_id, user_id)
);
""",
    """
CREATE TABLE IF NOT EXISTS sessions (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  assignment_id INTEGER,
  template_id INTEGER,
  kind TEXT NOT NULL,
  status TEXT NOT NULL,
  rules_json TEXT NOT NULL,
  selection_json TEXT NOT NULL,
  question_ids_json TEXT NOT NULL,
  current_question_index INTEGER NOT NULL DEFAULT 0,
  shortfall_json TEXT NOT NULL,
  started_at TEXT,
  paused_at TEXT,
  submitted_at TEXT,
  finished_at TEXT,
  active_since TEXT,
  total_time_sec INTEGER NOT NULL DEFAULT 0,
  question_started_sec INTEGER NOT NULL DEFAULT 0,
  total_score REAL NOT NULL DEFAULT 0,
  max_score REAL NOT NULL DEFAULT 0,
  completion_reason TEXT,
  attempt_number INTEGER NOT NULL DEFAULT 1,
  parent_session_id TEXT,
  credit_entry_id TEXT,
  certificate_signaled INTEGER NOT NULL DEFAULT 0,
  version INTEGER NOT NULL DEFAULT 0
);
""",
    """
CREATE UNIQUE INDEX IF NOT EXISTS ux_sessions_one_active
  ON sessions(user_id, assignment_id)
  WHERE status IN ('in_progress', 'paused') AND assignment_id IS NOT NULL;
""",
    """
CREATE INDEX IF NOT EXISTS ix_sessions_user ON sessions(user_id, started_at);
""",
    """
CREATE TABLE IF NOT EXISTS answers (
  id TEXT PRIMARY KEY,
  session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
  question_id TEXT NOT NULL,
  question_type TEXT NOT NULL,
  selected_option_ids TEXT NOT NULL,
  given_text TEXT,
  is_correct INTEGER,
  score REAL NOT NULL DEFAULT 0,
  match_percent REAL,
  time_spent_sec INTEGER NOT NULL DEFAULT 0,
  answered_at TEXT NOT NULL,
  UNIQUE (session_id, question_id)
);
""",
    """
CREATE TABLE IF NOT EXISTS credit_ledger (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  transaction_type TEXT NOT NULL,
  credits INTEGER NOT NULL,
  balance_after INTEGER NOT NULL,
  description TEXT,
  source_ref TEXT,
  interview_session_id TEXT,
  expires_at TEXT,
  created_at TEXT NOT NULL
);
""",
    """
CREATE INDEX IF NOT EXISTS ix_credit_ledger_user ON credit_ledger(user_id, created_at);
""",
    """
CREATE TABLE IF NOT EXISTS certificate_signals (
  session_id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  assignment_id INTEGER,
  score REAL NOT NULL,
  max_score REAL NOT NULL,
  signaled_at TEXT NOT NULL
);
""",
    """
CREATE TABLE IF NOT EXISTS session_audit_events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  timestamp TEXT NOT NULL,
  session_id TEXT NOT NULL,
  user_id TEXT NOT NULL,
  event_type TEXT NOT NULL,
  metadata TEXT
);
""",
]


def migrate(db_path: str = "data/sessions.db") -> None:
    """Apply schema migrations to the SQLite database."""

    directory = os.path.dirname(db_path) or "."
    os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()
        for stmt in SCHEMA:
            cur.execute(stmt)
        conn.commit()
    finally:
        conn.close()


if __name__ == "__main__":
    migrate()
