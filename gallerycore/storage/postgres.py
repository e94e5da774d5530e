from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gallerycore.logging import get_logger
from gallerycore.storage.errors import ConstraintViolation
from gallerycore.storage.models import (
    PROVIDER_ID_FIELDS,
    LoginHistory,
    Notification,
    OneTimeToken,
    QuotaTransaction,
    QuotaUsage,
    RefreshToken,
    Subscription,
    TransactionType,
    User,
    utcnow,
)

_USER_COLUMNS = (
    "id, email, handle, password_hash, tier, is_active, email_verified, "
    "failed_login_attempts, locked_until, last_login_at, password_changed_at, "
    "google_id, github_id, panel_user_id, created_at"
)
_UPDATABLE_USER_FIELDS = {
    "email",
    "handle",
    "password_hash",
    "tier",
    "is_active",
    "email_verified",
    "failed_login_attempts",
    "locked_until",
    "last_login_at",
    "password_changed_at",
    "google_id",
    "github_id",
    "panel_user_id",
}
_UPDATABLE_SUBSCRIPTION_FIELDS = {"tier", "status"}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS gallery_user (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    handle TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    tier TEXT NOT NULL DEFAULT 'free',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    failed_login_attempts INTEGER NOT NULL DEFAULT 0,
    locked_until TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    password_changed_at TIMESTAMPTZ,
    google_id TEXT UNIQUE,
    github_id TEXT UNIQUE,
    panel_user_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS gallery_refresh_token (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES gallery_user(id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL UNIQUE,
    issued_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    revoked_at TIMESTAMPTZ,
    replaced_by_token TEXT,
    user_agent TEXT,
    ip_address TEXT
);
CREATE TABLE IF NOT EXISTS gallery_token_usage (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE REFERENCES gallery_user(id) ON DELETE CASCADE,
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    tokens_used BIGINT NOT NULL DEFAULT 0 CHECK (tokens_used >= 0),
    total_tokens_used BIGINT NOT NULL DEFAULT 0 CHECK (total_tokens_used >= 0),
    analysis_count INTEGER NOT NULL DEFAULT 0,
    total_analysis_count INTEGER NOT NULL DEFAULT 0,
    custom_limit BIGINT CHECK (custom_limit IS NULL OR custom_limit >= 0),
    last_analysis_at TIMESTAMPTZ,
    last_analysis_url TEXT,
    last_analysis_tokens BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS gallery_token_usage_period_end_idx
    ON gallery_token_usage (period_end);
CREATE TABLE IF NOT EXISTS gallery_token_transaction (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES gallery_user(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    tokens_amount BIGINT NOT NULL,
    tokens_before BIGINT NOT NULL,
    tokens_after BIGINT NOT NULL,
    analysis_id TEXT,
    analysis_url TEXT,
    description TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    seq BIGSERIAL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS gallery_token_transaction_user_idx
    ON gallery_token_transaction (user_id, seq DESC);
CREATE TABLE IF NOT EXISTS gallery_login_history (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES gallery_user(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    success BOOLEAN NOT NULL,
    ip_address TEXT NOT NULL,
    user_agent TEXT NOT NULL,
    failure_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS gallery_subscription (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL UNIQUE REFERENCES gallery_user(id) ON DELETE CASCADE,
    tier TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS gallery_one_time_token (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES gallery_user(id) ON DELETE CASCADE,
    purpose TEXT NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TIMESTAMPTZ NOT NULL,
    used_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS gallery_notification (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES gallery_user(id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


def _field_from_unique_violation(exc: errors.UniqueViolation) -> str:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    for name in ("email", "handle", "google_id", "github_id", "token_hash"):
        if name in constraint:
            return name
    return "unknown"


class PostgresStore:
    """Postgres-backed store for users, credentials and the quota ledger.

    Read-modify-write operations lock the affected row with ``FOR UPDATE``
    inside a single transaction; refresh rotation uses a conditional update on
    ``revoked_at IS NULL`` so that only one concurrent rotation succeeds.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    # row mappers
    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row["handle"],
            password_hash=row.get("password_hash"),
            tier=row.get("tier") or "free",
            is_active=bool(row.get("is_active", True)),
            email_verified=bool(row.get("email_verified", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
            google_id=row.get("google_id"),
            github_id=row.get("github_id"),
            panel_user_id=row.get("panel_user_id"),
            created_at=row.get("created_at") or utcnow(),
        )

    def _refresh_from_row(self, row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by_token=row.get("replaced_by_token"),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    def _usage_from_row(self, row: Dict[str, Any]) -> QuotaUsage:
        return QuotaUsage(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            period_start=row["period_start"],
            period_end=row["period_end"],
            tokens_used=int(row["tokens_used"]),
            total_tokens_used=int(row["total_tokens_used"]),
            analysis_count=int(row["analysis_count"]),
            total_analysis_count=int(row["total_analysis_count"]),
            custom_limit=row.get("custom_limit"),
            last_analysis_at=row.get("last_analysis_at"),
            last_analysis_url=row.get("last_analysis_url"),
            last_analysis_tokens=row.get("last_analysis_tokens"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _transaction_from_row(self, row: Dict[str, Any]) -> QuotaTransaction:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return QuotaTransaction(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=row["type"],
            tokens_amount=int(row["tokens_amount"]),
            tokens_before=int(row["tokens_before"]),
            tokens_after=int(row["tokens_after"]),
            analysis_id=row.get("analysis_id"),
            analysis_url=row.get("analysis_url"),
            description=row.get("description"),
            metadata=metadata,
            created_at=row.get("created_at") or utcnow(),
        )

    def _one_time_from_row(self, row: Dict[str, Any]) -> OneTimeToken:
        return OneTimeToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=row["purpose"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used_at=row.get("used_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    def _subscription_from_row(self, row: Dict[str, Any]) -> Subscription:
        return Subscription(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tier=row["tier"],
            status=row["status"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        handle: str,
        *,
        password_hash: Optional[str] = None,
        tier: str = "free",
        is_active: bool = True,
        email_verified: bool = False,
        google_id: Optional[str] = None,
        github_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        user_id = user_id or str(uuid.uuid4())
        normalized_email = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO gallery_user
                        (id, email, handle, password_hash, tier, is_active,
                         email_verified, google_id, github_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        normalized_email,
                        handle,
                        password_hash,
                        tier,
                        is_active,
                        email_verified,
                        google_id,
                        github_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _field_from_unique_violation(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _get_user_where(self, clause: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM gallery_user WHERE {clause} = %s",
                (value,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", email.strip().lower())

    def get_user_by_handle(self, handle: str) -> Optional[User]:
        return self._get_user_where("handle", handle)

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        column = PROVIDER_ID_FIELDS.get(provider)
        if not column:
            return None
        return self._get_user_where(column, provider_id)

    def update_user(self, user_id: str, **updates: Any) -> Optional[User]:
        unknown = set(updates) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if not updates:
            return self.get_user(user_id)
        if "email" in updates:
            updates["email"] = updates["email"].strip().lower()
        assignments = ", ".join(f"{key} = %s" for key in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE gallery_user SET {assignments} WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (*updates.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _field_from_unique_violation(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row) if row else None

    def _update_user_sql(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._user_from_row(row) if row else None

    def increment_failed_attempts(self, user_id: str) -> Optional[User]:
        return self._update_user_sql(
            f"""
            UPDATE gallery_user SET failed_login_attempts = failed_login_attempts + 1
            WHERE id = %s RETURNING {_USER_COLUMNS}
            """,
            (user_id,),
        )

    def lock_user(self, user_id: str, locked_until: datetime) -> Optional[User]:
        return self._update_user_sql(
            f"UPDATE gallery_user SET locked_until = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
            (locked_until, user_id),
        )

    def reset_failed_attempts(self, user_id: str) -> Optional[User]:
        return self._update_user_sql(
            f"""
            UPDATE gallery_user SET failed_login_attempts = 0, locked_until = NULL
            WHERE id = %s RETURNING {_USER_COLUMNS}
            """,
            (user_id,),
        )

    def record_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user_sql(
            f"""
            UPDATE gallery_user
            SET failed_login_attempts = CASE WHEN locked_until > %s
                    THEN failed_login_attempts ELSE 0 END,
                locked_until = CASE WHEN locked_until > %s THEN locked_until ELSE NULL END,
                last_login_at = %s
            WHERE id = %s RETURNING {_USER_COLUMNS}
            """,
            (at, at, at, user_id),
        )

    # refresh tokens
    def _insert_refresh_token(self, conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO gallery_refresh_token
                (id, user_id, token_hash, issued_at, expires_at, user_agent, ip_address)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token_hash,
                token.issued_at,
                token.expires_at,
                token.user_agent,
                token.ip_address,
            ),
        )

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gallery_refresh_token WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_token_id: str, new_token: RefreshToken, now: datetime
    ) -> bool:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    revoked = conn.execute(
                        """
                        UPDATE gallery_refresh_token
                        SET revoked_at = %s, replaced_by_token = %s
                        WHERE id = %s AND revoked_at IS NULL
                        RETURNING id
                        """,
                        (now, new_token.token_hash, old_token_id),
                    ).fetchone()
                    if not revoked:
                        return False
                    self._insert_refresh_token(conn, new_token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        return True

    def revoke_refresh_token(self, token_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE gallery_refresh_token SET revoked_at = %s
                WHERE id = %s AND revoked_at IS NULL RETURNING id
                """,
                (now, token_id),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE gallery_refresh_token SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (now, user_id),
            )
            return cur.rowcount or 0

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gallery_refresh_token WHERE user_id = %s ORDER BY issued_at",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    # quota ledger
    def get_quota_usage(self, user_id: str) -> Optional[QuotaUsage]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gallery_token_usage WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._usage_from_row(row) if row else None

    def create_quota_usage_if_missing(self, usage: QuotaUsage) -> QuotaUsage:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gallery_token_usage (id, user_id, period_start, period_end)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (usage.id, usage.user_id, usage.period_start, usage.period_end),
            )
            row = conn.execute(
                "SELECT * FROM gallery_token_usage WHERE user_id = %s", (usage.user_id,)
            ).fetchone()
        return self._usage_from_row(row)

    def _lock_usage(self, conn, user_id: str) -> QuotaUsage:
        row = conn.execute(
            "SELECT * FROM gallery_token_usage WHERE user_id = %s FOR UPDATE", (user_id,)
        ).fetchone()
        if not row:
            raise ConstraintViolation("quota usage row missing", {"user_id": user_id})
        return self._usage_from_row(row)

    def _insert_transaction(self, conn, tx: QuotaTransaction) -> None:
        conn.execute(
            """
            INSERT INTO gallery_token_transaction
                (id, user_id, type, tokens_amount, tokens_before, tokens_after,
                 analysis_id, analysis_url, description, metadata, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                tx.id,
                tx.user_id,
                tx.type.value,
                tx.tokens_amount,
                tx.tokens_before,
                tx.tokens_after,
                tx.analysis_id,
                tx.analysis_url,
                tx.description,
                json.dumps(tx.metadata),
                tx.created_at,
            ),
        )

    def _update_usage_returning(self, conn, sql: str, params: tuple) -> QuotaUsage:
        row = conn.execute(sql + " RETURNING *", params).fetchone()
        return self._usage_from_row(row)

    def apply_quota_deduction(
        self,
        user_id: str,
        amount: int,
        *,
        now: datetime,
        analysis_id: Optional[str] = None,
        analysis_url: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Tuple[QuotaUsage, QuotaTransaction]:
        with self._connect() as conn:
            with conn.transaction():
                current = self._lock_usage(conn, user_id)
                before = current.tokens_used
                tx = QuotaTransaction(
                    user_id=user_id,
                    type=TransactionType.ANALYSIS,
                    tokens_amount=-amount,
                    tokens_before=before,
                    tokens_after=before + amount,
                    analysis_id=analysis_id,
                    analysis_url=analysis_url,
                    description=description,
                    metadata=metadata or {},
                    created_at=now,
                )
                usage = self._update_usage_returning(
                    conn,
                    """
                    UPDATE gallery_token_usage
                    SET tokens_used = tokens_used + %s,
                        total_tokens_used = total_tokens_used + %s,
                        analysis_count = analysis_count + 1,
                        total_analysis_count = total_analysis_count + 1,
                        last_analysis_at = %s,
                        last_analysis_url = COALESCE(%s, last_analysis_url),
                        last_analysis_tokens = %s,
                        updated_at = %s
                    WHERE user_id = %s
                    """,
                    (amount, amount, now, analysis_url, amount, now, user_id),
                )
                self._insert_transaction(conn, tx)
        return usage, tx

    def apply_quota_credit(
        self,
        user_id: str,
        amount: int,
        tx_type: TransactionType,
        *,
        now: datetime,
        reduce_lifetime: bool = False,
        analysis_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Tuple[QuotaUsage, QuotaTransaction]:
        with self._connect() as conn:
            with conn.transaction():
                current = self._lock_usage(conn, user_id)
                before = current.tokens_used
                after = max(0, before - amount)
                tx = QuotaTransaction(
                    user_id=user_id,
                    type=tx_type,
                    tokens_amount=before - after,
                    tokens_before=before,
                    tokens_after=after,
                    analysis_id=analysis_id,
                    description=description,
                    metadata=metadata or {},
                    created_at=now,
                )
                lifetime = (
                    max(0, current.total_tokens_used - amount)
                    if reduce_lifetime
                    else current.total_tokens_used
                )
                usage = self._update_usage_returning(
                    conn,
                    """
                    UPDATE gallery_token_usage
                    SET tokens_used = %s, total_tokens_used = %s, updated_at = %s
                    WHERE user_id = %s
                    """,
                    (after, lifetime, now, user_id),
                )
                self._insert_transaction(conn, tx)
        return usage, tx

    def reset_quota_usage(
        self,
        user_id: str,
        period_start: datetime,
        period_end: datetime,
        *,
        now: datetime,
        only_if_expired: bool = False,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[Tuple[QuotaUsage, QuotaTransaction]]:
        with self._connect() as conn:
            with conn.transaction():
                current = self._lock_usage(conn, user_id)
                if only_if_expired and not current.period_end < now:
                    return None
                meta = dict(metadata or {})
                meta.setdefault("previous_period_end", current.period_end.isoformat())
                tx = QuotaTransaction(
                    user_id=user_id,
                    type=TransactionType.RESET,
                    tokens_amount=current.tokens_used,
                    tokens_before=current.tokens_used,
                    tokens_after=0,
                    description=description,
                    metadata=meta,
                    created_at=now,
                )
                usage = self._update_usage_returning(
                    conn,
                    """
                    UPDATE gallery_token_usage
                    SET tokens_used = 0, analysis_count = 0,
                        period_start = %s, period_end = %s, updated_at = %s
                    WHERE user_id = %s
                    """,
                    (period_start, period_end, now, user_id),
                )
                self._insert_transaction(conn, tx)
        return usage, tx

    def set_quota_custom_limit(
        self,
        user_id: str,
        custom_limit: Optional[int],
        *,
        now: datetime,
        tier_limit: int,
        reason: Optional[str] = None,
        set_by: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tuple[QuotaUsage, QuotaTransaction, Optional[int]]:
        with self._connect() as conn:
            with conn.transaction():
                current = self._lock_usage(conn, user_id)
                previous = current.custom_limit
                tx = QuotaTransaction(
                    user_id=user_id,
                    type=TransactionType.CUSTOM_QUOTA_SET,
                    tokens_amount=0,
                    tokens_before=current.tokens_used,
                    tokens_after=current.tokens_used,
                    description=description,
                    metadata={
                        "previous_limit": previous,
                        "new_limit": custom_limit,
                        "tier_limit": tier_limit,
                        "reason": reason,
                        "set_by": set_by,
                    },
                    created_at=now,
                )
                usage = self._update_usage_returning(
                    conn,
                    "UPDATE gallery_token_usage SET custom_limit = %s, updated_at = %s WHERE user_id = %s",
                    (custom_limit, now, user_id),
                )
                self._insert_transaction(conn, tx)
        return usage, tx, previous

    def list_expired_quota_usage(self, now: datetime) -> List[QuotaUsage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gallery_token_usage WHERE period_end < %s ORDER BY period_end",
                (now,),
            ).fetchall()
        return [self._usage_from_row(row) for row in rows]

    def list_custom_quota_usage(self) -> List[QuotaUsage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gallery_token_usage WHERE custom_limit IS NOT NULL ORDER BY updated_at DESC"
            ).fetchall()
        return [self._usage_from_row(row) for row in rows]

    def list_quota_transactions(
        self, user_id: str, *, limit: int = 20, offset: int = 0
    ) -> Tuple[List[QuotaTransaction], int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM gallery_token_transaction WHERE user_id = %s
                ORDER BY seq DESC LIMIT %s OFFSET %s
                """,
                (user_id, limit, offset),
            ).fetchall()
            total_row = conn.execute(
                "SELECT COUNT(*) AS total FROM gallery_token_transaction WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        total = int(total_row["total"]) if total_row else 0
        return [self._transaction_from_row(row) for row in rows], total

    # login history
    def append_login_history(self, entry: LoginHistory) -> LoginHistory:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gallery_login_history
                    (id, user_id, provider, success, ip_address, user_agent, failure_reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.provider,
                    entry.success,
                    entry.ip_address,
                    entry.user_agent,
                    entry.failure_reason,
                    entry.created_at,
                ),
            )
        return entry

    def list_login_history(self, user_id: str) -> List[LoginHistory]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gallery_login_history WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            LoginHistory(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                provider=row["provider"],
                success=bool(row["success"]),
                ip_address=row["ip_address"],
                user_agent=row["user_agent"],
                failure_reason=row.get("failure_reason"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # subscriptions
    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gallery_subscription WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._subscription_from_row(row) if row else None

    def create_subscription_if_missing(self, user_id: str, tier: str = "free") -> Subscription:
        sub = Subscription(user_id=user_id, tier=tier)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO gallery_subscription (id, user_id, tier, status)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO NOTHING
                    """,
                    (sub.id, user_id, tier, sub.status),
                )
                row = conn.execute(
                    "SELECT * FROM gallery_subscription WHERE user_id = %s", (user_id,)
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("subscription user missing", {"user_id": user_id})
        return self._subscription_from_row(row)

    def update_subscription(self, user_id: str, **updates: Any) -> Optional[Subscription]:
        unknown = set(updates) - _UPDATABLE_SUBSCRIPTION_FIELDS
        if unknown:
            raise ValueError(f"unknown subscription fields: {sorted(unknown)}")
        if not updates:
            return self.get_subscription(user_id)
        assignments = ", ".join(f"{key} = %s" for key in updates)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE gallery_subscription SET {assignments}, updated_at = now()
                WHERE user_id = %s RETURNING *
                """,
                (*updates.values(), user_id),
            ).fetchone()
        return self._subscription_from_row(row) if row else None

    # one-time tokens
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO gallery_one_time_token
                        (id, user_id, purpose, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.purpose,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("one-time token collision", {"field": "token_hash"})
        return token

    def consume_one_time_token(
        self, token_hash: str, purpose: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE gallery_one_time_token SET used_at = %s
                WHERE token_hash = %s AND purpose = %s
                  AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, purpose, now),
            ).fetchone()
        return self._one_time_from_row(row) if row else None

    def invalidate_one_time_tokens(self, user_id: str, purpose: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE gallery_one_time_token SET used_at = %s
                WHERE user_id = %s AND purpose = %s AND used_at IS NULL
                """,
                (now, user_id, purpose),
            )
            return cur.rowcount or 0

    # notifications
    def create_notification(self, notification: Notification) -> Notification:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO gallery_notification (id, user_id, kind, title, message, payload, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    notification.id,
                    notification.user_id,
                    notification.kind,
                    notification.title,
                    notification.message,
                    json.dumps(notification.payload),
                    notification.created_at,
                ),
            )
        return notification

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM gallery_notification WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        notifications = []
        for row in rows:
            payload = row.get("payload") or {}
            if isinstance(payload, str):
                payload = json.loads(payload)
            notifications.append(
                Notification(
                    id=str(row["id"]),
                    user_id=str(row["user_id"]),
                    kind=row["kind"],
                    title=row["title"],
                    message=row["message"],
                    payload=payload,
                    created_at=row["created_at"],
                )
            )
        return notifications
