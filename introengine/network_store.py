"""
SQLite persistence for IntroEngine.

One NetworkStore wraps one connection. Every read and write is scoped by
user_id; touching a row that belongs to another user raises NotFoundError.
Writes run in explicit BEGIN IMMEDIATE transactions so concurrent workers
on the same database file serialize on the write lock instead of failing
half-way through an upsert.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from introengine.config import SQLITE_BUSY_TIMEOUT_MS, get_db_path
from introengine.errors import ConflictError, NotFoundError, ValidationError
from introengine.graph_engine import normalize_company_name, normalize_domain
from introengine.status import (STATUS_SUGGESTED, TERMINAL_STATUSES,
                                check_contact_for_type, check_transition,
                                normalize_status)
from introengine.thresholds import MATURITY_LEVELS

logger = logging.getLogger(__name__)

CONNECTION_TYPES = ('ex-colleague', 'client', 'vendor', 'investor', 'friend', 'other')
SIGNAL_RELEVANCE = ('high', 'medium', 'low')

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT UNIQUE,
    is_active INTEGER NOT NULL DEFAULT 1,
    allow_inferred INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contacts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    name TEXT NOT NULL,
    email TEXT,
    linkedin_url TEXT,
    current_company TEXT,
    current_company_domain TEXT,
    current_title TEXT,
    past_companies TEXT NOT NULL DEFAULT '[]',
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_contacts_user_email
    ON contacts(user_id, email) WHERE email IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_contacts_user ON contacts(user_id);

CREATE TABLE IF NOT EXISTS connections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    contact_id INTEGER NOT NULL REFERENCES contacts(id),
    relationship_strength INTEGER NOT NULL DEFAULT 1
        CHECK (relationship_strength BETWEEN 1 AND 5),
    last_interaction_date TEXT,
    connection_type TEXT NOT NULL DEFAULT 'other',
    source TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, contact_id)
);

CREATE TABLE IF NOT EXISTS work_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    company_name TEXT NOT NULL,
    company_domain TEXT,
    company_industry TEXT,
    title TEXT,
    start_date TEXT,
    end_date TEXT,
    is_current INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS companies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    name TEXT NOT NULL,
    domain TEXT,
    industry TEXT,
    size_bucket TEXT,
    employee_count INTEGER,
    country TEXT,
    technologies TEXT NOT NULL DEFAULT '[]',
    digital_maturity TEXT,
    icp_score REAL,
    icp_breakdown TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_companies_user_domain
    ON companies(user_id, domain) WHERE domain IS NOT NULL;

CREATE TABLE IF NOT EXISTS company_signals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    company_id INTEGER NOT NULL REFERENCES companies(id),
    signal_type TEXT NOT NULL,
    signal_date TEXT,
    relevance TEXT NOT NULL DEFAULT 'medium',
    details TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_signals_company ON company_signals(user_id, company_id);

CREATE TABLE IF NOT EXISTS icp_definitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id),
    target_industries TEXT NOT NULL DEFAULT '[]',
    company_size_min INTEGER,
    company_size_max INTEGER,
    target_technologies TEXT NOT NULL DEFAULT '[]',
    digital_maturity TEXT NOT NULL DEFAULT 'any',
    target_locations TEXT NOT NULL DEFAULT '[]',
    key_roles TEXT NOT NULL DEFAULT '[]',
    pain_points TEXT NOT NULL DEFAULT '[]',
    opportunity_triggers TEXT NOT NULL DEFAULT '[]',
    anti_icp_criteria TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS opportunities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    target_id INTEGER NOT NULL REFERENCES companies(id),
    contact_id INTEGER REFERENCES contacts(id),
    contact_key INTEGER NOT NULL DEFAULT 0,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'suggested',
    is_active INTEGER NOT NULL DEFAULT 1,
    score_industry_fit REAL,
    score_buying_signal REAL,
    score_intro_strength REAL,
    score_lead_potential REAL,
    score_total INTEGER,
    path_reason TEXT,
    suggested_message TEXT,
    closed_reason TEXT,
    status_changed_at TEXT NOT NULL,
    last_action_at TEXT,
    scored_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_opportunities_active_key
    ON opportunities(user_id, target_id, contact_key) WHERE is_active = 1;
CREATE INDEX IF NOT EXISTS idx_opportunities_user ON opportunities(user_id, is_active);

CREATE TABLE IF NOT EXISTS follow_up_drafts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    opportunity_id INTEGER NOT NULL REFERENCES opportunities(id),
    followup_type TEXT NOT NULL,
    message TEXT NOT NULL,
    days_waiting INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS account_locks (
    user_id INTEGER PRIMARY KEY,
    job TEXT NOT NULL,
    acquired_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pipeline_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    stage TEXT NOT NULL,
    run_at TEXT NOT NULL,
    counts TEXT,
    duration_seconds REAL,
    status TEXT NOT NULL,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS weekly_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    metrics TEXT NOT NULL,
    summary TEXT NOT NULL,
    insights TEXT NOT NULL DEFAULT '[]',
    recommended_actions TEXT NOT NULL DEFAULT '[]',
    generated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_weekly_summaries_user ON weekly_summaries(user_id, id);
"""

_CONTACT_JSON = ('past_companies',)
_COMPANY_JSON = ('technologies', 'icp_breakdown')
_ICP_LIST_FIELDS = ('target_industries', 'target_technologies', 'target_locations',
                    'key_roles', 'pain_points', 'opportunity_triggers', 'anti_icp_criteria')
_SCORE_FIELDS = ('score_industry_fit', 'score_buying_signal', 'score_intro_strength',
                 'score_lead_potential', 'score_total')
_SUMMARY_JSON = ('metrics', 'summary', 'insights', 'recommended_actions')


def _now() -> str:
    return datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")


def _row_to_dict(row: Optional[sqlite3.Row], json_fields: Iterable[str] = ()) -> Optional[Dict]:
    if row is None:
        return None
    result = dict(row)
    for field in json_fields:
        raw = result.get(field)
        if raw is None:
            continue
        try:
            result[field] = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Unreadable JSON in {field}: {raw!r}")
            result[field] = None
    return result


def _as_list(value, field: str) -> List:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ValidationError(f"{field} must be a list")
    return list(value)


class NetworkStore:
    """User-scoped access to contacts, targets, ICPs and opportunities."""

    def __init__(self, db_path: Optional[str] = None, busy_timeout_ms: int = SQLITE_BUSY_TIMEOUT_MS):
        self.db_path = db_path or get_db_path()
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, isolation_level=None,
                                    check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        self.conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL")
        self._init_database()

    def _init_database(self):
        with self._lock:
            self.conn.executescript(SCHEMA)

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE ... COMMIT; rolls back on any exception. Re-entrant."""
        with self._lock:
            if self.conn.in_transaction:
                yield self.conn
                return
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # =========================================================================
    # USERS
    # =========================================================================

    def create_user(self, email: str, allow_inferred: bool = False) -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO users (email, allow_inferred, created_at) VALUES (?, ?, ?)",
                ((email or "").strip().lower() or None, int(bool(allow_inferred)), _now()))
            return cur.lastrowid

    def get_user(self, user_id: int) -> Dict:
        row = self._query_one("SELECT * FROM users WHERE id = ?", (user_id,))
        if row is None:
            raise NotFoundError(f"User {user_id} not found")
        return dict(row)

    def list_users(self, active_only: bool = True) -> List[Dict]:
        sql = "SELECT * FROM users"
        if active_only:
            sql += " WHERE is_active = 1"
        return [dict(r) for r in self._query(sql + " ORDER BY id")]

    def set_allow_inferred(self, user_id: int, allow: bool):
        self.get_user(user_id)
        with self.transaction() as conn:
            conn.execute("UPDATE users SET allow_inferred = ? WHERE id = ?",
                         (int(bool(allow)), user_id))

    # =========================================================================
    # CONTACTS & CONNECTIONS
    # =========================================================================

    def upsert_contact(self, user_id: int, fields: Dict) -> int:
        """
        Insert a contact or merge onto the existing row. Matching order:
        email, then linkedin_url, then name + current company.
        Only fields present (and not None) overwrite stored values.
        """
        self.get_user(user_id)
        name = (fields.get('name') or "").strip()
        if not name:
            raise ValidationError("Contact name is required")

        values = {'name': name}
        if fields.get('email'):
            values['email'] = fields['email'].strip().lower()
        for key in ('linkedin_url', 'current_company', 'current_title'):
            if fields.get(key) is not None:
                values[key] = str(fields[key]).strip() or None
        if fields.get('current_company_domain') is not None:
            values['current_company_domain'] = normalize_domain(fields['current_company_domain'])
        if fields.get('past_companies') is not None:
            past = _as_list(fields['past_companies'], 'past_companies')
            for entry in past:
                if not isinstance(entry, dict) or not entry.get('company'):
                    raise ValidationError("past_companies entries need a 'company'")
            values['past_companies'] = json.dumps(past)

        with self.transaction() as conn:
            existing = None
            if values.get('email'):
                existing = conn.execute(
                    "SELECT id FROM contacts WHERE user_id = ? AND email = ?",
                    (user_id, values['email'])).fetchone()
            if existing is None and values.get('linkedin_url'):
                existing = conn.execute(
                    "SELECT id FROM contacts WHERE user_id = ? AND linkedin_url = ?",
                    (user_id, values['linkedin_url'])).fetchone()
            if existing is None:
                existing = conn.execute(
                    """SELECT id FROM contacts
                       WHERE user_id = ? AND lower(name) = lower(?)
                         AND lower(COALESCE(current_company, '')) = lower(?)""",
                    (user_id, name, values.get('current_company') or "")).fetchone()

            now = _now()
            if existing is not None:
                cols = ", ".join(f"{k} = ?" for k in values)
                conn.execute(f"UPDATE contacts SET {cols}, updated_at = ? WHERE id = ?",
                             tuple(values.values()) + (now, existing['id']))
                return existing['id']

            values.update({'user_id': user_id, 'created_at': now, 'updated_at': now})
            cols = ", ".join(values)
            marks = ", ".join("?" for _ in values)
            cur = conn.execute(f"INSERT INTO contacts ({cols}) VALUES ({marks})",
                               tuple(values.values()))
            return cur.lastrowid

    def get_contact(self, user_id: int, contact_id: int, include_deleted: bool = False) -> Dict:
        row = self._query_one("SELECT * FROM contacts WHERE id = ? AND user_id = ?",
                              (contact_id, user_id))
        if row is None or (row['is_deleted'] and not include_deleted):
            raise NotFoundError(f"Contact {contact_id} not found for user {user_id}")
        return _row_to_dict(row, _CONTACT_JSON)

    def get_contacts(self, user_id: int, include_deleted: bool = False) -> List[Dict]:
        sql = "SELECT * FROM contacts WHERE user_id = ?"
        if not include_deleted:
            sql += " AND is_deleted = 0"
        rows = self._query(sql + " ORDER BY created_at, id", (user_id,))
        return [_row_to_dict(r, _CONTACT_JSON) for r in rows]

    def soft_delete_contact(self, user_id: int, contact_id: int):
        self.get_contact(user_id, contact_id, include_deleted=True)
        with self.transaction() as conn:
            conn.execute("UPDATE contacts SET is_deleted = 1, updated_at = ? WHERE id = ?",
                         (_now(), contact_id))

    def upsert_connection(self, user_id: int, contact_id: int, relationship_strength: int = 1,
                          last_interaction_date: Optional[str] = None,
                          connection_type: str = 'other', source: Optional[str] = None) -> int:
        self.get_contact(user_id, contact_id, include_deleted=True)
        try:
            strength = int(relationship_strength)
        except (TypeError, ValueError):
            raise ValidationError(f"relationship_strength must be 1-5, got {relationship_strength!r}")
        if not 1 <= strength <= 5:
            raise ValidationError(f"relationship_strength must be 1-5, got {strength}")
        connection_type = (connection_type or 'other').lower()
        if connection_type not in CONNECTION_TYPES:
            raise ValidationError(
                f"connection_type must be one of {', '.join(CONNECTION_TYPES)}")

        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO connections (user_id, contact_id, relationship_strength,
                                         last_interaction_date, connection_type, source, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, contact_id) DO UPDATE SET
                    relationship_strength = excluded.relationship_strength,
                    last_interaction_date = COALESCE(excluded.last_interaction_date,
                                                     connections.last_interaction_date),
                    connection_type = excluded.connection_type,
                    source = COALESCE(excluded.source, connections.source),
                    updated_at = excluded.updated_at
            """, (user_id, contact_id, strength, last_interaction_date,
                  connection_type, source, _now()))
            row = conn.execute("SELECT id FROM connections WHERE user_id = ? AND contact_id = ?",
                               (user_id, contact_id)).fetchone()
            return row['id']

    def get_connections(self, user_id: int) -> List[Dict]:
        rows = self._query("""
            SELECT cn.* FROM connections cn
            JOIN contacts c ON c.id = cn.contact_id
            WHERE cn.user_id = ? AND c.is_deleted = 0
            ORDER BY cn.contact_id
        """, (user_id,))
        return [dict(r) for r in rows]

    # =========================================================================
    # USER WORK HISTORY
    # =========================================================================

    def add_work_history(self, user_id: int, fields: Dict) -> int:
        self.get_user(user_id)
        if not fields.get('company_name'):
            raise ValidationError("company_name is required")
        with self.transaction() as conn:
            cur = conn.execute("""
                INSERT INTO work_history (user_id, company_name, company_domain, company_industry,
                                          title, start_date, end_date, is_current)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (user_id, fields['company_name'], normalize_domain(fields.get('company_domain')),
                  fields.get('company_industry'), fields.get('title'), fields.get('start_date'),
                  fields.get('end_date'), int(bool(fields.get('is_current')))))
            return cur.lastrowid

    def get_work_history(self, user_id: int) -> List[Dict]:
        rows = self._query("""
            SELECT * FROM work_history WHERE user_id = ?
            ORDER BY is_current DESC, start_date DESC, id
        """, (user_id,))
        return [dict(r) for r in rows]

    # =========================================================================
    # COMPANIES (targets) & SIGNALS
    # =========================================================================

    def upsert_company(self, user_id: int, fields: Dict) -> int:
        """Insert a target company or merge onto the row with the same domain (else name)."""
        self.get_user(user_id)
        name = (fields.get('name') or "").strip()
        if not name:
            raise ValidationError("Company name is required")

        values = {'name': name}
        domain = normalize_domain(fields.get('domain'))
        if domain:
            values['domain'] = domain
        for key in ('industry', 'size_bucket', 'country'):
            if fields.get(key) is not None:
                values[key] = str(fields[key]).strip() or None
        if fields.get('employee_count') is not None:
            try:
                values['employee_count'] = int(fields['employee_count'])
            except (TypeError, ValueError):
                raise ValidationError(f"employee_count must be an integer, got {fields['employee_count']!r}")
            if values['employee_count'] < 0:
                raise ValidationError("employee_count cannot be negative")
        if fields.get('technologies') is not None:
            values['technologies'] = json.dumps(_as_list(fields['technologies'], 'technologies'))
        if fields.get('digital_maturity') is not None:
            maturity = str(fields['digital_maturity']).lower()
            if maturity not in MATURITY_LEVELS:
                raise ValidationError(f"digital_maturity must be one of {', '.join(MATURITY_LEVELS)}")
            values['digital_maturity'] = maturity

        with self.transaction() as conn:
            existing = None
            if domain:
                existing = conn.execute("SELECT id FROM companies WHERE user_id = ? AND domain = ?",
                                        (user_id, domain)).fetchone()
            if existing is None:
                norm = normalize_company_name(name)
                for row in conn.execute("SELECT id, name, domain FROM companies WHERE user_id = ?",
                                        (user_id,)):
                    if normalize_company_name(row['name']) == norm and (
                            not domain or not row['domain']):
                        existing = row
                        break

            now = _now()
            if existing is not None:
                cols = ", ".join(f"{k} = ?" for k in values)
                conn.execute(f"UPDATE companies SET {cols}, updated_at = ? WHERE id = ?",
                             tuple(values.values()) + (now, existing['id']))
                return existing['id']

            values.update({'user_id': user_id, 'created_at': now, 'updated_at': now})
            cols = ", ".join(values)
            marks = ", ".join("?" for _ in values)
            cur = conn.execute(f"INSERT INTO companies ({cols}) VALUES ({marks})",
                               tuple(values.values()))
            return cur.lastrowid

    def get_company(self, user_id: int, company_id: int) -> Dict:
        row = self._query_one("SELECT * FROM companies WHERE id = ? AND user_id = ?",
                              (company_id, user_id))
        if row is None:
            raise NotFoundError(f"Company {company_id} not found for user {user_id}")
        return _row_to_dict(row, _COMPANY_JSON)

    def get_companies(self, user_id: int) -> List[Dict]:
        rows = self._query("SELECT * FROM companies WHERE user_id = ? ORDER BY id", (user_id,))
        return [_row_to_dict(r, _COMPANY_JSON) for r in rows]

    def update_company_icp(self, user_id: int, company_id: int, icp_score: float,
                           breakdown: Optional[Dict] = None):
        """Last write wins."""
        with self.transaction() as conn:
            cur = conn.execute("""
                UPDATE companies SET icp_score = ?, icp_breakdown = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
            """, (icp_score, json.dumps(breakdown) if breakdown is not None else None,
                  _now(), company_id, user_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Company {company_id} not found for user {user_id}")

    def update_company_enrichment(self, user_id: int, company_id: int, fields: Dict) -> List[str]:
        """Fill industry / size_bucket where still missing. Returns the columns written."""
        company = self.get_company(user_id, company_id)
        updates = {k: fields[k] for k in ('industry', 'size_bucket')
                   if fields.get(k) and not company.get(k)}
        if not updates:
            return []
        cols = ", ".join(f"{k} = ?" for k in updates)
        with self.transaction() as conn:
            conn.execute(f"UPDATE companies SET {cols}, updated_at = ? WHERE id = ? AND user_id = ?",
                         tuple(updates.values()) + (_now(), company_id, user_id))
        return list(updates)

    def add_company_signal(self, user_id: int, company_id: int, signal_type: str,
                           signal_date: Optional[str] = None, relevance: str = 'medium',
                           details: Optional[str] = None) -> int:
        self.get_company(user_id, company_id)
        relevance = (relevance or 'medium').lower()
        if relevance not in SIGNAL_RELEVANCE:
            raise ValidationError(f"relevance must be one of {', '.join(SIGNAL_RELEVANCE)}")
        if not signal_type:
            raise ValidationError("signal_type is required")
        with self.transaction() as conn:
            cur = conn.execute("""
                INSERT INTO company_signals (user_id, company_id, signal_type, signal_date,
                                             relevance, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (user_id, company_id, signal_type.lower(), signal_date, relevance, details, _now()))
            return cur.lastrowid

    def get_company_signals(self, user_id: int, company_id: Optional[int] = None) -> List[Dict]:
        if company_id is None:
            rows = self._query("""
                SELECT * FROM company_signals WHERE user_id = ?
                ORDER BY company_id, signal_date DESC, id
            """, (user_id,))
        else:
            rows = self._query("""
                SELECT * FROM company_signals WHERE user_id = ? AND company_id = ?
                ORDER BY signal_date DESC, id
            """, (user_id, company_id))
        return [dict(r) for r in rows]

    # =========================================================================
    # ICP
    # =========================================================================

    def get_icp(self, user_id: int) -> Optional[Dict]:
        row = self._query_one("SELECT * FROM icp_definitions WHERE user_id = ?", (user_id,))
        return _row_to_dict(row, _ICP_LIST_FIELDS)

    def upsert_icp(self, user_id: int, icp: Dict) -> int:
        self.get_user(user_id)
        values = {k: json.dumps(_as_list(icp.get(k), k)) for k in _ICP_LIST_FIELDS}
        values['company_size_min'] = icp.get('company_size_min')
        values['company_size_max'] = icp.get('company_size_max')
        values['digital_maturity'] = (icp.get('digital_maturity') or 'any').lower()
        values['updated_at'] = _now()

        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        updates = ", ".join(f"{k} = excluded.{k}" for k in values)
        with self.transaction() as conn:
            conn.execute(f"""
                INSERT INTO icp_definitions (user_id, {cols}) VALUES (?, {marks})
                ON CONFLICT(user_id) DO UPDATE SET {updates}
            """, (user_id,) + tuple(values.values()))
            return conn.execute("SELECT id FROM icp_definitions WHERE user_id = ?",
                                (user_id,)).fetchone()['id']

    # =========================================================================
    # OPPORTUNITIES
    # =========================================================================

    def upsert_opportunity(self, key: Tuple[int, int, Optional[int]], fields: Dict) -> Tuple[int, str]:
        """
        Create or update the single active opportunity for
        (user_id, target_id, contact_id).

        New rows take fields['status'] (default 'suggested'). Existing rows keep
        their status; only type and path_reason are refreshed.
        Returns (opportunity_id, 'created' | 'updated' | 'unchanged').
        """
        user_id, target_id, contact_id = key
        opp_type = check_contact_for_type(fields.get('type'), contact_id)
        self.get_company(user_id, target_id)
        if contact_id is not None:
            self.get_contact(user_id, contact_id, include_deleted=True)
        contact_key = contact_id or 0
        refresh = {'type': opp_type}
        if 'path_reason' in fields:
            refresh['path_reason'] = fields['path_reason']

        for attempt in range(2):
            try:
                with self.transaction() as conn:
                    row = conn.execute("""
                        SELECT * FROM opportunities
                        WHERE user_id = ? AND target_id = ? AND contact_key = ? AND is_active = 1
                    """, (user_id, target_id, contact_key)).fetchone()
                    now = _now()
                    if row is None:
                        status = normalize_status(fields.get('status') or STATUS_SUGGESTED)
                        cur = conn.execute("""
                            INSERT INTO opportunities
                                (user_id, target_id, contact_id, contact_key, type, status,
                                 is_active, path_reason, suggested_message,
                                 status_changed_at, created_at, updated_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """, (user_id, target_id, contact_id, contact_key, opp_type, status,
                              int(status not in TERMINAL_STATUSES), fields.get('path_reason'),
                              fields.get('suggested_message'), now, now, now))
                        return cur.lastrowid, 'created'

                    changes = {k: v for k, v in refresh.items() if row[k] != v}
                    if not changes:
                        return row['id'], 'unchanged'
                    cols = ", ".join(f"{k} = ?" for k in changes)
                    conn.execute(f"UPDATE opportunities SET {cols}, updated_at = ? WHERE id = ?",
                                 tuple(changes.values()) + (now, row['id']))
                    return row['id'], 'updated'
            except sqlite3.IntegrityError as e:
                # Another writer inserted the same key first; re-read and update its row
                if attempt:
                    raise ConflictError(
                        f"Opportunity upsert for {key} kept conflicting: {e}") from e
                logger.warning(f"Concurrent insert for opportunity {key}, retrying as update")
        raise ConflictError(f"Opportunity upsert for {key} did not complete")

    def get_opportunity(self, user_id: int, opportunity_id: int) -> Dict:
        row = self._query_one("SELECT * FROM opportunities WHERE id = ? AND user_id = ?",
                              (opportunity_id, user_id))
        if row is None:
            raise NotFoundError(f"Opportunity {opportunity_id} not found for user {user_id}")
        return dict(row)

    def list_active_opportunities(self, user_id: int, types: Optional[Iterable[str]] = None) -> List[Dict]:
        sql = "SELECT * FROM opportunities WHERE user_id = ? AND is_active = 1"
        params = [user_id]
        if types:
            types = list(types)
            sql += f" AND type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        rows = self._query(sql + " ORDER BY id", tuple(params))
        return [dict(r) for r in rows]

    def list_opportunities(self, user_id: int, status: Optional[str] = None,
                           order_by_score: bool = False) -> List[Dict]:
        sql = """
            SELECT o.*, c.name AS target_name, c.industry AS target_industry,
                   ct.name AS contact_name
            FROM opportunities o
            JOIN companies c ON c.id = o.target_id
            LEFT JOIN contacts ct ON ct.id = o.contact_id
            WHERE o.user_id = ?
        """
        params = [user_id]
        if status:
            sql += " AND o.status = ?"
            params.append(normalize_status(status))
        if order_by_score:
            sql += " ORDER BY o.score_total IS NULL, o.score_total DESC, o.id"
        else:
            sql += " ORDER BY o.id"
        return [dict(r) for r in self._query(sql, tuple(params))]

    def set_status(self, user_id: int, opportunity_id: int, status: str,
                   closed_reason: Optional[str] = None) -> Dict:
        """
        Move an opportunity along the status machine. Re-applying the
        current status is a no-op; illegal moves raise ValidationError.
        """
        with self.transaction() as conn:
            row = conn.execute("SELECT * FROM opportunities WHERE id = ? AND user_id = ?",
                               (opportunity_id, user_id)).fetchone()
            if row is None:
                raise NotFoundError(f"Opportunity {opportunity_id} not found for user {user_id}")
            if normalize_status(status) == row['status']:
                return dict(row)
            new_status = check_transition(row['status'], status)
            now = _now()
            terminal = new_status in TERMINAL_STATUSES
            conn.execute("""
                UPDATE opportunities
                SET status = ?, is_active = ?, closed_reason = ?, status_changed_at = ?,
                    last_action_at = ?, updated_at = ?
                WHERE id = ?
            """, (new_status, int(not terminal), closed_reason if terminal else None,
                  now, now, now, opportunity_id))
            return dict(conn.execute("SELECT * FROM opportunities WHERE id = ?",
                                     (opportunity_id,)).fetchone())

    def set_suggested_message(self, user_id: int, opportunity_id: int, message: str):
        with self.transaction() as conn:
            cur = conn.execute("""
                UPDATE opportunities SET suggested_message = ?, updated_at = ?
                WHERE id = ? AND user_id = ?
            """, (message, _now(), opportunity_id, user_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Opportunity {opportunity_id} not found for user {user_id}")

    def update_scores(self, user_id: int, opportunity_id: int, scores: Dict):
        """Write the five score columns and scored_at. Nothing else is touched."""
        values = (scores['industry_fit'], scores['buying_signal'], scores['intro_strength'],
                  scores['lead_potential'], scores['total'])
        with self.transaction() as conn:
            cur = conn.execute(f"""
                UPDATE opportunities
                SET {', '.join(f'{k} = ?' for k in _SCORE_FIELDS)}, scored_at = ?
                WHERE id = ? AND user_id = ?
            """, values + (_now(), opportunity_id, user_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Opportunity {opportunity_id} not found for user {user_id}")

    def user_closed_keys(self, user_id: int) -> set:
        """
        (target_id, contact_key) pairs closed by the user (won, or lost for a
        reason the pipeline did not record). The pipeline never re-suggests them.
        """
        rows = self._query("""
            SELECT DISTINCT target_id, contact_key FROM opportunities
            WHERE user_id = ? AND is_active = 0
              AND (status = 'won' OR closed_reason IS NULL
                   OR closed_reason NOT IN ('path_vanished', 'below_icp_threshold'))
        """, (user_id,))
        return {(r['target_id'], r['contact_key']) for r in rows}

    # =========================================================================
    # FOLLOW-UP DRAFTS
    # =========================================================================

    def add_follow_up_draft(self, user_id: int, opportunity_id: int, followup_type: str,
                            message: str, days_waiting: Optional[int] = None) -> int:
        self.get_opportunity(user_id, opportunity_id)
        with self.transaction() as conn:
            cur = conn.execute("""
                INSERT INTO follow_up_drafts (user_id, opportunity_id, followup_type, message,
                                              days_waiting, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (user_id, opportunity_id, followup_type, message, days_waiting, _now()))
            return cur.lastrowid

    def list_follow_up_drafts(self, user_id: int, opportunity_id: Optional[int] = None) -> List[Dict]:
        sql = "SELECT * FROM follow_up_drafts WHERE user_id = ?"
        params = [user_id]
        if opportunity_id is not None:
            sql += " AND opportunity_id = ?"
            params.append(opportunity_id)
        return [dict(r) for r in self._query(sql + " ORDER BY id", tuple(params))]

    # =========================================================================
    # ACCOUNT LOCKS & RUN LOG
    # =========================================================================

    def acquire_account_lock(self, user_id: int, job: str, ttl_minutes: int) -> bool:
        """Take the account lock; a lock older than ttl_minutes is treated as abandoned."""
        now = datetime.utcnow()
        cutoff = (now - timedelta(minutes=ttl_minutes)).strftime("%Y-%m-%d %H:%M:%S")
        with self.transaction() as conn:
            row = conn.execute("SELECT job, acquired_at FROM account_locks WHERE user_id = ?",
                               (user_id,)).fetchone()
            if row is not None and row['acquired_at'] > cutoff:
                return False
            if row is not None:
                logger.warning(f"Taking over abandoned lock for user {user_id} "
                               f"({row['job']} since {row['acquired_at']})")
            conn.execute("""
                INSERT INTO account_locks (user_id, job, acquired_at) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET job = excluded.job,
                                                   acquired_at = excluded.acquired_at
            """, (user_id, job, now.strftime("%Y-%m-%d %H:%M:%S")))
            return True

    def release_account_lock(self, user_id: int):
        with self.transaction() as conn:
            conn.execute("DELETE FROM account_locks WHERE user_id = ?", (user_id,))

    def record_pipeline_run(self, user_id: Optional[int], stage: str, counts: Optional[Dict],
                            duration: float, status: str = "success",
                            error_message: Optional[str] = None) -> int:
        with self.transaction() as conn:
            cur = conn.execute("""
                INSERT INTO pipeline_runs (user_id, stage, run_at, counts, duration_seconds,
                                           status, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (user_id, stage, _now(), json.dumps(counts) if counts is not None else None,
                  round(duration, 2), status, error_message))
            return cur.lastrowid

    def list_pipeline_runs(self, user_id: Optional[int] = None) -> List[Dict]:
        if user_id is None:
            rows = self._query("SELECT * FROM pipeline_runs ORDER BY id")
        else:
            rows = self._query("SELECT * FROM pipeline_runs WHERE user_id = ? ORDER BY id",
                               (user_id,))
        return [_row_to_dict(r, ('counts',)) for r in rows]

    # =========================================================================
    # WEEKLY SUMMARIES
    # =========================================================================

    def add_weekly_summary(self, user_id: int, report: Dict) -> int:
        """Persist one advisor report ({period_start, period_end, metrics, summary, ...})."""
        self.get_user(user_id)
        with self.transaction() as conn:
            cur = conn.execute("""
                INSERT INTO weekly_summaries (user_id, period_start, period_end, metrics, summary,
                                              insights, recommended_actions, generated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (user_id, report['period_start'], report['period_end'],
                  json.dumps(report['metrics']), json.dumps(report['summary']),
                  json.dumps(report.get('insights') or []),
                  json.dumps(report.get('recommended_actions') or []),
                  report.get('generated_at') or _now()))
            return cur.lastrowid

    def get_last_weekly_summary(self, user_id: int) -> Optional[Dict]:
        row = self._query_one("""
            SELECT * FROM weekly_summaries WHERE user_id = ? ORDER BY id DESC LIMIT 1
        """, (user_id,))
        return _row_to_dict(row, _SUMMARY_JSON)
