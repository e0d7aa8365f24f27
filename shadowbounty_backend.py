#!/usr/bin/env python3
"""
ShadowBounty State Backends
============================
Persistence for organizations, bounties, claims, the legacy submission
log, the event bus table and the audit log.

Two backends with the same shape:
  SQLiteBackend   — durable, WAL mode, survives restarts
  InMemoryBackend — dev/test backend, process-local

Status changes go through compare-and-set methods: the write only lands
if the stored status still matches the expected pre-state, and the
return value tells the caller whether it did.

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from shadowbounty_types import (
    Bounty,
    BountyStatus,
    Claim,
    ClaimStatus,
    Organization,
)

logger = logging.getLogger("sb-backend")


# ============================================================================
# PER-BOUNTY LOCKS
# ============================================================================

class KeyedLock:
    """
    One re-entrant lock per key. Shared by the ledger, the claim registry
    and the review engine so every mutation of a bounty and its claims is
    serialized per bounty id.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Any, threading.RLock] = {}

    def _lock_for(self, key: Any) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class InMemoryBackend:
    """Dict-backed store. Same semantics as SQLiteBackend, nothing persisted."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orgs: Dict[str, Dict[str, Any]] = {}
        self._bounties: Dict[int, Dict[str, Any]] = {}
        self._claims: Dict[int, Dict[str, Any]] = {}
        self._submissions: List[str] = []
        self._events: List[Dict[str, Any]] = []
        self._audit: List[Dict[str, Any]] = []
        self._next_bounty = 1
        self._next_claim = 1
        self.start_time = datetime.utcnow()

    # ── Organizations ──

    def put_organization(self, org: Organization) -> None:
        with self._lock:
            self._orgs[org.wallet_address] = org.to_dict()

    def get_organization(self, wallet_address: str) -> Optional[Organization]:
        with self._lock:
            data = self._orgs.get(wallet_address)
        return Organization.from_dict(data) if data else None

    def list_organizations(self) -> List[Organization]:
        with self._lock:
            rows = list(self._orgs.values())
        return [Organization.from_dict(r) for r in rows]

    # ── Bounties ──

    def insert_bounty(self, bounty: Bounty) -> Bounty:
        with self._lock:
            bounty.bounty_id = self._next_bounty
            self._next_bounty += 1
            self._bounties[bounty.bounty_id] = bounty.to_dict()
        return bounty

    def get_bounty(self, bounty_id: int) -> Optional[Bounty]:
        with self._lock:
            data = self._bounties.get(bounty_id)
        return Bounty.from_dict(data) if data else None

    def list_bounties(
        self,
        creator: Optional[str] = None,
        status: Optional[BountyStatus] = None,
    ) -> List[Bounty]:
        with self._lock:
            rows = list(self._bounties.values())
        bounties = [Bounty.from_dict(r) for r in rows]
        if creator:
            bounties = [b for b in bounties if b.creator == creator]
        if status:
            bounties = [b for b in bounties if b.status == status]
        bounties.sort(key=lambda b: (b.created_at, b.bounty_id), reverse=True)
        return bounties

    def cas_bounty(self, bounty: Bounty, expected: BountyStatus) -> bool:
        with self._lock:
            current = self._bounties.get(bounty.bounty_id)
            if not current or current["status"] != expected.value:
                return False
            self._bounties[bounty.bounty_id] = bounty.to_dict()
            return True

    # ── Claims ──

    def insert_claim(self, claim: Claim) -> Claim:
        with self._lock:
            claim.claim_id = self._next_claim
            self._next_claim += 1
            self._claims[claim.claim_id] = claim.to_dict()
        return claim

    def get_claim(self, claim_id: int) -> Optional[Claim]:
        with self._lock:
            data = self._claims.get(claim_id)
        return Claim.from_dict(data) if data else None

    def list_claims(
        self,
        bounty_id: Optional[int] = None,
        submitter: Optional[str] = None,
    ) -> List[Claim]:
        with self._lock:
            rows = list(self._claims.values())
        claims = [Claim.from_dict(r) for r in rows]
        if bounty_id is not None:
            claims = [c for c in claims if c.bounty_id == bounty_id]
        if submitter:
            claims = [c for c in claims if c.submitter == submitter]
        claims.sort(key=lambda c: (c.submitted_at, c.claim_id))
        return claims

    def cas_claim(self, claim: Claim, expected: ClaimStatus) -> bool:
        with self._lock:
            current = self._claims.get(claim.claim_id)
            if not current or current["status"] != expected.value:
                return False
            self._claims[claim.claim_id] = claim.to_dict()
            return True

    def cas_approve_claim(self, claim: Claim) -> bool:
        """
        Pending → Approved, only while the bounty is Open and no sibling
        claim is Approved. Checked and written in one critical section.
        """
        with self._lock:
            current = self._claims.get(claim.claim_id)
            bounty = self._bounties.get(claim.bounty_id)
            if not current or current["status"] != ClaimStatus.PENDING.value:
                return False
            if not bounty or bounty["status"] != BountyStatus.OPEN.value:
                return False
            for other in self._claims.values():
                if (other["bounty_id"] == claim.bounty_id
                        and other["status"] == ClaimStatus.APPROVED.value):
                    return False
            self._claims[claim.claim_id] = claim.to_dict()
            return True

    # ── Legacy submission log ──

    def append_submission(self, content_id: str) -> None:
        with self._lock:
            self._submissions.append(content_id)

    def list_submissions(self) -> List[str]:
        with self._lock:
            return list(reversed(self._submissions))

    # ── Event bus & audit ──

    def publish_event(self, topic: str, payload: Dict[str, Any]) -> str:
        eid = f"bus_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._events.append({
                "event_id": eid,
                "topic": topic,
                "payload": dict(payload),
                "timestamp": datetime.utcnow().isoformat(),
            })
        logger.info(f"Event published: {topic} -> {eid}")
        return eid

    def list_events(self, topic: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [e for e in self._events if not topic or e["topic"] == topic]
        return list(reversed(rows))[:limit]

    def audit(self, action: str, detail: Optional[Dict[str, Any]] = None, actor: str = "system") -> str:
        aid = f"aud_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._audit.append({
                "seq": len(self._audit) + 1,
                "audit_id": aid,
                "action": action,
                "actor": actor,
                "detail": dict(detail or {}),
                "timestamp": datetime.utcnow().isoformat(),
            })
        logger.info(f"Audit: {action} by {actor} -> {aid}")
        return aid

    def get_audit_log(self, action: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [a for a in self._audit if not action or a["action"] == action]
        return list(reversed(rows))[:limit]


# ============================================================================
# SQLITE BACKEND
# ============================================================================

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS organizations (
        wallet_address  TEXT PRIMARY KEY,
        org_name        TEXT NOT NULL,
        data            TEXT NOT NULL,
        registered_at   TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS bounties (
        bounty_id       INTEGER PRIMARY KEY AUTOINCREMENT,
        creator         TEXT NOT NULL,
        status          TEXT NOT NULL DEFAULT 'open',
        data            TEXT NOT NULL,
        created_at      TEXT NOT NULL,
        updated_at      TEXT
    );

    CREATE TABLE IF NOT EXISTS claims (
        claim_id        INTEGER PRIMARY KEY AUTOINCREMENT,
        bounty_id       INTEGER NOT NULL,
        submitter       TEXT NOT NULL,
        status          TEXT NOT NULL DEFAULT 'pending',
        data            TEXT NOT NULL,
        submitted_at    TEXT NOT NULL,
        updated_at      TEXT,
        FOREIGN KEY (bounty_id) REFERENCES bounties(bounty_id)
    );

    CREATE TABLE IF NOT EXISTS submission_log (
        seq             INTEGER PRIMARY KEY AUTOINCREMENT,
        list_name       TEXT NOT NULL DEFAULT 'submissions',
        content_id      TEXT NOT NULL,
        appended_at     TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS events (
        event_id    TEXT PRIMARY KEY,
        topic       TEXT NOT NULL,
        payload     TEXT NOT NULL,
        timestamp   TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS audit_log (
        audit_id    TEXT PRIMARY KEY,
        action      TEXT NOT NULL,
        actor       TEXT NOT NULL DEFAULT 'system',
        detail      TEXT NOT NULL DEFAULT '{}',
        timestamp   TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_bounties_creator ON bounties(creator);
    CREATE INDEX IF NOT EXISTS idx_bounties_status ON bounties(status);
    CREATE INDEX IF NOT EXISTS idx_claims_bounty ON claims(bounty_id);
    CREATE INDEX IF NOT EXISTS idx_claims_submitter ON claims(submitter);
    CREATE INDEX IF NOT EXISTS idx_events_topic ON events(topic);
    CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action);
"""


class SQLiteBackend:
    """SQLite-backed persistent store. One short-lived connection per call."""

    SUBMISSIONS_LIST = "submissions"

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.start_time = datetime.utcnow()
        self._init_db()

    def _get_db(self) -> sqlite3.Connection:
        """Open a connection with WAL mode for concurrent readers/writers."""
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back and re-raise on error, always close."""
        conn = self._get_db()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables if they don't exist. Safe to call multiple times."""
        with self._db() as conn:
            conn.executescript(_SCHEMA)
        logger.info(f"Database ready: {self.db_path}")

    # ── Organizations ──

    def put_organization(self, org: Organization) -> None:
        data = org.to_dict()
        with self._db() as conn:
            conn.execute(
                """INSERT INTO organizations (wallet_address, org_name, data, registered_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(wallet_address) DO UPDATE SET
                       org_name = excluded.org_name,
                       data = excluded.data,
                       registered_at = excluded.registered_at""",
                (org.wallet_address, org.org_name, json.dumps(data), data["registeredAt"]),
            )

    def get_organization(self, wallet_address: str) -> Optional[Organization]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT data FROM organizations WHERE wallet_address = ?",
                (wallet_address,),
            ).fetchone()
        return Organization.from_dict(json.loads(row["data"])) if row else None

    def list_organizations(self) -> List[Organization]:
        with self._db() as conn:
            rows = conn.execute("SELECT data FROM organizations").fetchall()
        return [Organization.from_dict(json.loads(r["data"])) for r in rows]

    # ── Bounties ──

    @staticmethod
    def _bounty_from_row(row: sqlite3.Row) -> Bounty:
        data = json.loads(row["data"])
        data["bounty_id"] = row["bounty_id"]
        return Bounty.from_dict(data)

    def insert_bounty(self, bounty: Bounty) -> Bounty:
        data = bounty.to_dict()
        with self._db() as conn:
            cur = conn.execute(
                "INSERT INTO bounties (creator, status, data, created_at) VALUES (?, ?, ?, ?)",
                (bounty.creator, bounty.status.value, json.dumps(data), data["created_at"]),
            )
            bounty.bounty_id = cur.lastrowid
        return bounty

    def get_bounty(self, bounty_id: int) -> Optional[Bounty]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT bounty_id, data FROM bounties WHERE bounty_id = ?", (bounty_id,)
            ).fetchone()
        return self._bounty_from_row(row) if row else None

    def list_bounties(
        self,
        creator: Optional[str] = None,
        status: Optional[BountyStatus] = None,
    ) -> List[Bounty]:
        query = "SELECT bounty_id, data FROM bounties WHERE 1=1"
        params: list = []
        if creator:
            query += " AND creator = ?"
            params.append(creator)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, bounty_id DESC"
        with self._db() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._bounty_from_row(r) for r in rows]

    def cas_bounty(self, bounty: Bounty, expected: BountyStatus) -> bool:
        now = datetime.utcnow().isoformat()
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE bounties SET status = ?, data = ?, updated_at = ? "
                "WHERE bounty_id = ? AND status = ?",
                (bounty.status.value, json.dumps(bounty.to_dict()), now,
                 bounty.bounty_id, expected.value),
            )
            return cur.rowcount == 1

    # ── Claims ──

    @staticmethod
    def _claim_from_row(row: sqlite3.Row) -> Claim:
        data = json.loads(row["data"])
        data["claim_id"] = row["claim_id"]
        return Claim.from_dict(data)

    def insert_claim(self, claim: Claim) -> Claim:
        data = claim.to_dict()
        with self._db() as conn:
            cur = conn.execute(
                """INSERT INTO claims (bounty_id, submitter, status, data, submitted_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (claim.bounty_id, claim.submitter, claim.status.value,
                 json.dumps(data), data["submitted_at"]),
            )
            claim.claim_id = cur.lastrowid
        return claim

    def get_claim(self, claim_id: int) -> Optional[Claim]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT claim_id, data FROM claims WHERE claim_id = ?", (claim_id,)
            ).fetchone()
        return self._claim_from_row(row) if row else None

    def list_claims(
        self,
        bounty_id: Optional[int] = None,
        submitter: Optional[str] = None,
    ) -> List[Claim]:
        query = "SELECT claim_id, data FROM claims WHERE 1=1"
        params: list = []
        if bounty_id is not None:
            query += " AND bounty_id = ?"
            params.append(bounty_id)
        if submitter:
            query += " AND submitter = ?"
            params.append(submitter)
        query += " ORDER BY submitted_at ASC, claim_id ASC"
        with self._db() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._claim_from_row(r) for r in rows]

    def cas_claim(self, claim: Claim, expected: ClaimStatus) -> bool:
        now = datetime.utcnow().isoformat()
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE claims SET status = ?, data = ?, updated_at = ? "
                "WHERE claim_id = ? AND status = ?",
                (claim.status.value, json.dumps(claim.to_dict()), now,
                 claim.claim_id, expected.value),
            )
            return cur.rowcount == 1

    def cas_approve_claim(self, claim: Claim) -> bool:
        """Single UPDATE: atomic across processes sharing the database file."""
        now = datetime.utcnow().isoformat()
        with self._db() as conn:
            cur = conn.execute(
                """UPDATE claims SET status = 'approved', data = ?, updated_at = ?
                   WHERE claim_id = ? AND status = 'pending'
                     AND EXISTS (SELECT 1 FROM bounties
                                 WHERE bounty_id = ? AND status = 'open')
                     AND NOT EXISTS (SELECT 1 FROM claims
                                     WHERE bounty_id = ? AND status = 'approved')""",
                (json.dumps(claim.to_dict()), now, claim.claim_id,
                 claim.bounty_id, claim.bounty_id),
            )
            return cur.rowcount == 1

    # ── Legacy submission log ──

    def append_submission(self, content_id: str) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT INTO submission_log (list_name, content_id, appended_at) VALUES (?, ?, ?)",
                (self.SUBMISSIONS_LIST, content_id, datetime.utcnow().isoformat()),
            )

    def list_submissions(self) -> List[str]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT content_id FROM submission_log WHERE list_name = ? ORDER BY seq DESC",
                (self.SUBMISSIONS_LIST,),
            ).fetchall()
        return [r["content_id"] for r in rows]

    # ── Event bus & audit ──

    def publish_event(self, topic: str, payload: Dict[str, Any]) -> str:
        """Persist event and log it."""
        eid = f"bus_{uuid.uuid4().hex[:12]}"
        with self._db() as conn:
            conn.execute(
                "INSERT INTO events (event_id, topic, payload, timestamp) VALUES (?, ?, ?, ?)",
                (eid, topic, json.dumps(payload), datetime.utcnow().isoformat()),
            )
        logger.info(f"Event published: {topic} -> {eid}")
        return eid

    def list_events(self, topic: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self._db() as conn:
            if topic:
                rows = conn.execute(
                    "SELECT rowid, * FROM events WHERE topic = ? ORDER BY rowid DESC LIMIT ?",
                    (topic, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT rowid, * FROM events ORDER BY rowid DESC LIMIT ?", (limit,)
                ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "topic": r["topic"],
                "payload": json.loads(r["payload"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]

    def audit(self, action: str, detail: Optional[Dict[str, Any]] = None, actor: str = "system") -> str:
        """Write an immutable audit log entry."""
        aid = f"aud_{uuid.uuid4().hex[:12]}"
        with self._db() as conn:
            conn.execute(
                "INSERT INTO audit_log (audit_id, action, actor, detail, timestamp) VALUES (?, ?, ?, ?, ?)",
                (aid, action, actor, json.dumps(detail or {}), datetime.utcnow().isoformat()),
            )
        logger.info(f"Audit: {action} by {actor} -> {aid}")
        return aid

    def get_audit_log(self, action: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Retrieve audit log entries, newest first, with monotonic seq."""
        with self._db() as conn:
            if action:
                rows = conn.execute(
                    "SELECT rowid, * FROM audit_log WHERE action = ? ORDER BY rowid DESC LIMIT ?",
                    (action, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT rowid, * FROM audit_log ORDER BY rowid DESC LIMIT ?", (limit,),
                ).fetchall()
        return [
            {
                "seq": r["rowid"],
                "audit_id": r["audit_id"],
                "action": r["action"],
                "actor": r["actor"],
                "detail": json.loads(r["detail"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]
