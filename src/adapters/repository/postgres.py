"""
PostgreSQL repository adapters - Implement the domain repository protocols.

This module provides the PostgreSQL implementations of the domain's
repository ports using psycopg3 with raw SQL.

Concurrency Design - Store-Level Serialization:
-----------------------------------------------
No adapter holds an application-level lock. Every coordination point is a
single conditional statement or a short row-locked transaction:

1. **Attempt counter**: ``UPDATE ... SET attempt_count = attempt_count + 1,
   state = CASE ... RETURNING attempt_count, state``. Concurrent wrong codes
   are strictly ordered by the row lock; each observes a distinct count, and
   the increment reaching the ceiling commits the lockout in its transaction.

2. **Active code uniqueness**: partial unique index on
   ``attendance_codes(code) WHERE state = 'ACTIVE'``. A collision surfaces as
   UniqueViolation and is reported as CodeInstall.COLLISION.

3. **Exactly-once redemption**: primary key on
   ``attendance_records(user_id, event_id)`` with ``ON CONFLICT DO NOTHING``;
   the point award runs in the same transaction only if the insert won.

4. **Linking tokens**: ``SELECT ... FOR UPDATE`` on the token row, then the
   identity rewrite and the ISSUED -> USED flip commit together.
"""

import logging
from datetime import datetime
from pathlib import Path

from psycopg import errors
from psycopg_pool import ConnectionPool

from src.domain.exceptions import DuplicateIdentity
from src.domain.ports import (
    AttendanceCode,
    AttendanceCodeState,
    AuthProvider,
    ChallengeWrite,
    CodeInstall,
    Event,
    EventStatus,
    FailedAttempt,
    Identity,
    LinkingToken,
    LinkingTokenState,
    LinkStatus,
    LockoutPolicy,
    PendingVerification,
    RecordResult,
    VerificationState,
)

logger = logging.getLogger(__name__)

_IDENTITY_COLUMNS = (
    "id, email, provider, institutional_id, institutional_email, email_verified, "
    "has_completed_onboarding, first_name, last_name, points"
)
_EVENT_COLUMNS = "id, name, points_value, start_time, end_time, status"


def _identity_from_row(row: tuple) -> Identity:
    return Identity(
        id=row[0],
        email=row[1],
        provider=AuthProvider(row[2]),
        institutional_id=row[3],
        institutional_email=row[4],
        email_verified=row[5],
        has_completed_onboarding=row[6],
        first_name=row[7],
        last_name=row[8],
        points=row[9],
    )


def _event_from_row(row: tuple) -> Event:
    return Event(
        id=row[0],
        name=row[1],
        points_value=row[2],
        start_time=row[3],
        end_time=row[4],
        status=EventStatus(row[5]),
    )


class PostgresVerificationRepository:
    """
    Implements VerificationRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    All SQL uses parameterized queries for security.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """
        Initialize repository with connection pool.

        Args:
            pool: psycopg3 ConnectionPool for database connections
        """
        self._pool = pool

    def find_institutional_email_owner(self, institutional_email: str) -> str | None:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                "SELECT id FROM identities WHERE institutional_email = %s",
                (institutional_email,),
            )
            row = cursor.fetchone()
            return row[0] if row else None

    def upsert_challenge(
        self, identity_id: str, institutional_email: str, code_hash: str, issued_at: datetime
    ) -> ChallengeWrite:
        """
        Create or reset the pending verification for an identity.

        Uses INSERT ... SELECT ... ON CONFLICT DO UPDATE WHERE for an atomic
        upsert. The SELECT only yields unverified identities, and the WHERE
        clause refuses to overwrite a record whose cooldown is still running,
        so a fresh challenge cannot bypass the lockout. When nothing was
        written, the identity row tells which condition refused it.
        """
        sql = """
            INSERT INTO pending_verifications
                (identity_id, institutional_email, code_hash, state, attempt_count, issued_at)
            SELECT id, %s, %s, 'PENDING', 0, %s
            FROM identities
            WHERE id = %s AND NOT email_verified
            ON CONFLICT (identity_id) DO UPDATE
            SET institutional_email = EXCLUDED.institutional_email,
                code_hash = EXCLUDED.code_hash,
                state = 'PENDING',
                attempt_count = 0,
                issued_at = EXCLUDED.issued_at,
                rate_limited_until = NULL
            WHERE pending_verifications.state = 'PENDING'
               OR pending_verifications.rate_limited_until IS NULL
               OR pending_verifications.rate_limited_until <= EXCLUDED.issued_at
        """
        try:
            with self._pool.connection() as conn, conn.cursor() as cursor:
                cursor.execute(sql, (institutional_email, code_hash, issued_at, identity_id))
                if cursor.rowcount == 1:
                    conn.commit()
                    return ChallengeWrite.ISSUED
                cursor.execute(
                    "SELECT email_verified FROM identities WHERE id = %s", (identity_id,)
                )
                row = cursor.fetchone()
                conn.rollback()
        except errors.ForeignKeyViolation:
            return ChallengeWrite.UNKNOWN_IDENTITY
        if row is None:
            return ChallengeWrite.UNKNOWN_IDENTITY
        if row[0]:
            return ChallengeWrite.ALREADY_VERIFIED
        return ChallengeWrite.RATE_LIMITED

    def get_pending(self, identity_id: str) -> PendingVerification | None:
        sql = """
            SELECT identity_id, institutional_email, code_hash, issued_at,
                   attempt_count, state, rate_limited_until
            FROM pending_verifications
            WHERE identity_id = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (identity_id,))
            row = cursor.fetchone()

        if row is None:
            return None
        return PendingVerification(
            identity_id=row[0],
            institutional_email=row[1],
            code_hash=row[2],
            issued_at=row[3],
            attempt_count=row[4],
            state=VerificationState(row[5]),
            rate_limited_until=row[6],
        )

    def release_rate_limit(self, identity_id: str, now: datetime) -> bool:
        sql = """
            UPDATE pending_verifications
            SET state = 'PENDING', attempt_count = 0, rate_limited_until = NULL
            WHERE identity_id = %s
              AND state = 'RATE_LIMITED'
              AND (rate_limited_until IS NULL OR rate_limited_until <= %s)
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (identity_id, now))
            released = cursor.rowcount == 1
            conn.commit()
            return released

    def record_failed_attempt(
        self,
        identity_id: str,
        code_hash: str,
        ceiling: int,
        policy: LockoutPolicy,
        until: datetime,
    ) -> FailedAttempt | None:
        """
        Count a wrong code and commit the lockout in the same transaction.

        The row lock taken by UPDATE orders concurrent callers; a waiting
        caller re-evaluates the WHERE clause against the committed row, which
        is no longer PENDING (or no longer exists) once the ceiling fired.
        Under the purge policy the row lock is held until the identity
        DELETE commits, and a verified identity falls back to the cooldown.
        """
        increment_sql = """
            UPDATE pending_verifications
            SET attempt_count = attempt_count + 1,
                state = CASE WHEN attempt_count + 1 >= %(ceiling)s AND %(rate_limit)s
                             THEN 'RATE_LIMITED' ELSE state END,
                rate_limited_until = CASE WHEN attempt_count + 1 >= %(ceiling)s AND %(rate_limit)s
                                          THEN %(until)s ELSE rate_limited_until END
            WHERE identity_id = %(identity_id)s
              AND state = 'PENDING'
              AND code_hash = %(code_hash)s
            RETURNING attempt_count, state
        """
        rate_limit_sql = """
            UPDATE pending_verifications
            SET state = 'RATE_LIMITED', rate_limited_until = %s
            WHERE identity_id = %s
        """
        params = {
            "identity_id": identity_id,
            "code_hash": code_hash,
            "ceiling": ceiling,
            "rate_limit": policy == LockoutPolicy.RATE_LIMIT,
            "until": until,
        }
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(increment_sql, params)
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                return None
            count, state = row[0], VerificationState(row[1])

            if count >= ceiling and policy == LockoutPolicy.PURGE:
                cursor.execute(
                    "DELETE FROM identities WHERE id = %s AND NOT email_verified",
                    (identity_id,),
                )
                if cursor.rowcount == 1:
                    state = VerificationState.PURGED
                else:
                    cursor.execute(rate_limit_sql, (until, identity_id))
                    state = VerificationState.RATE_LIMITED
            conn.commit()
            return FailedAttempt(count, state)

    def complete_verification(self, identity_id: str, code_hash: str) -> bool:
        """
        Delete the pending record and mark the identity verified in one transaction.

        The DELETE is conditional on the hash that was checked, so a
        concurrently replaced challenge is never completed by a stale code.
        """
        delete_sql = """
            DELETE FROM pending_verifications
            WHERE identity_id = %s AND state = 'PENDING' AND code_hash = %s
            RETURNING institutional_email
        """
        verify_sql = """
            UPDATE identities
            SET email_verified = TRUE, institutional_email = %s, updated_at = NOW()
            WHERE id = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(delete_sql, (identity_id, code_hash))
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                return False
            try:
                cursor.execute(verify_sql, (row[0], identity_id))
            except errors.UniqueViolation:
                conn.rollback()
                raise DuplicateIdentity("Institutional email is already registered") from None
            verified = cursor.rowcount == 1
            conn.commit()
            return verified

    def purge_unverified_identity(self, identity_id: str) -> bool:
        """Delete an unverified identity; ON DELETE CASCADE removes dependents."""
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                "DELETE FROM identities WHERE id = %s AND NOT email_verified",
                (identity_id,),
            )
            purged = cursor.rowcount == 1
            conn.commit()
            return purged


class PostgresAttendanceRepository:
    """
    Implements AttendanceRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def get_event(self, event_id: str) -> Event | None:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(f"SELECT {_EVENT_COLUMNS} FROM events WHERE id = %s", (event_id,))
            row = cursor.fetchone()
        return _event_from_row(row) if row else None

    def get_code(self, event_id: str) -> AttendanceCode | None:
        sql = """
            SELECT event_id, code, state, generated_at, generated_by
            FROM attendance_codes
            WHERE event_id = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (event_id,))
            row = cursor.fetchone()

        if row is None:
            return None
        return AttendanceCode(
            event_id=row[0],
            code=row[1],
            state=AttendanceCodeState(row[2]),
            generated_at=row[3],
            generated_by=row[4],
        )

    def supersede_ended_codes(self, now: datetime) -> int:
        sql = """
            UPDATE attendance_codes AS c
            SET state = 'SUPERSEDED'
            FROM events AS e
            WHERE c.event_id = e.id
              AND c.state <> 'SUPERSEDED'
              AND (e.status IN ('completed', 'cancelled')
                   OR (e.end_time IS NOT NULL AND e.end_time <= %s))
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (now,))
            changed = cursor.rowcount
            conn.commit()
        if changed:
            logger.info("Superseded %d attendance code(s) of ended events", changed)
        return changed

    def install_code(
        self, event_id: str, code: str, generated_by: str, generated_at: datetime
    ) -> CodeInstall:
        """
        Upsert the event's code row as ACTIVE.

        ON CONFLICT (event_id) keeps one row per event, so concurrent admins
        never leave two active codes for the same event. A clash with another
        event's active code violates the partial unique index.
        """
        sql = """
            INSERT INTO attendance_codes (event_id, code, state, generated_at, generated_by)
            VALUES (%s, %s, 'ACTIVE', %s, %s)
            ON CONFLICT (event_id) DO UPDATE
            SET code = EXCLUDED.code,
                state = 'ACTIVE',
                generated_at = EXCLUDED.generated_at,
                generated_by = EXCLUDED.generated_by
            WHERE attendance_codes.state <> 'SUPERSEDED'
        """
        try:
            with self._pool.connection() as conn, conn.cursor() as cursor:
                cursor.execute(sql, (event_id, code, generated_at, generated_by))
                installed = cursor.rowcount == 1
                conn.commit()
        except errors.UniqueViolation:
            return CodeInstall.COLLISION
        return CodeInstall.INSTALLED if installed else CodeInstall.SUPERSEDED

    def set_code_state(self, event_id: str, state: AttendanceCodeState) -> CodeInstall:
        sql = """
            UPDATE attendance_codes
            SET state = %s
            WHERE event_id = %s AND state <> 'SUPERSEDED'
        """
        try:
            with self._pool.connection() as conn, conn.cursor() as cursor:
                cursor.execute(sql, (state.value, event_id))
                updated = cursor.rowcount == 1
                conn.commit()
        except errors.UniqueViolation:
            return CodeInstall.COLLISION
        return CodeInstall.INSTALLED if updated else CodeInstall.SUPERSEDED

    def find_event_by_active_code(self, code: str) -> Event | None:
        sql = """
            SELECT e.id, e.name, e.points_value, e.start_time, e.end_time, e.status
            FROM attendance_codes AS c
            JOIN events AS e ON e.id = c.event_id
            WHERE c.code = %s AND c.state = 'ACTIVE'
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(sql, (code,))
            row = cursor.fetchone()
        return _event_from_row(row) if row else None

    def record_attendance(
        self, user_id: str, event_id: str, points: int, attended_at: datetime
    ) -> RecordResult:
        """
        Insert the attendance record and award points in one transaction.

        A concurrent insert for the same (user_id, event_id) waits on the
        key and then does nothing, so points are awarded exactly once.
        """
        insert_sql = """
            INSERT INTO attendance_records (user_id, event_id, points_awarded, attended_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, event_id) DO NOTHING
        """
        award_sql = """
            UPDATE identities
            SET points = points + %s, updated_at = NOW()
            WHERE id = %s
        """
        try:
            with self._pool.connection() as conn, conn.cursor() as cursor:
                cursor.execute(insert_sql, (user_id, event_id, points, attended_at))
                if cursor.rowcount == 0:
                    conn.rollback()
                    return RecordResult.ALREADY_RECORDED
                cursor.execute(award_sql, (points, user_id))
                conn.commit()
        except errors.ForeignKeyViolation as exc:
            if exc.diag.constraint_name == "attendance_records_event_id_fkey":
                return RecordResult.UNKNOWN_EVENT
            return RecordResult.UNKNOWN_USER
        return RecordResult.RECORDED

    def has_attended(self, user_id: str, event_id: str) -> bool:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM attendance_records WHERE user_id = %s AND event_id = %s",
                (user_id, event_id),
            )
            return cursor.fetchone() is not None

    def end_event(self, event_id: str, now: datetime) -> Event | None:
        end_sql = f"""
            UPDATE events
            SET end_time = CASE
                    WHEN end_time IS NULL OR end_time > %s THEN %s
                    ELSE end_time
                END,
                status = CASE WHEN status = 'cancelled' THEN status ELSE 'completed' END,
                updated_at = NOW()
            WHERE id = %s
            RETURNING {_EVENT_COLUMNS}
        """
        supersede_sql = """
            UPDATE attendance_codes SET state = 'SUPERSEDED' WHERE event_id = %s
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(end_sql, (now, now, event_id))
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                return None
            cursor.execute(supersede_sql, (event_id,))
            conn.commit()
        return _event_from_row(row)


class PostgresIdentityRepository:
    """
    Implements IdentityRepository protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def _fetch_identity(self, where: str, params: tuple) -> Identity | None:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE {where}", params)
            row = cursor.fetchone()
        return _identity_from_row(row) if row else None

    def get_identity(self, identity_id: str) -> Identity | None:
        return self._fetch_identity("id = %s", (identity_id,))

    def find_by_email(self, email: str) -> Identity | None:
        return self._fetch_identity("email = %s", (email,))

    def find_by_institutional_id(
        self, institutional_id: str, exclude_identity_id: str | None = None
    ) -> Identity | None:
        return self._fetch_identity(
            "institutional_id = %s AND (%s::text IS NULL OR id <> %s)",
            (institutional_id, exclude_identity_id, exclude_identity_id),
        )

    def find_by_institutional_email(self, institutional_email: str) -> Identity | None:
        return self._fetch_identity("institutional_email = %s", (institutional_email,))

    def create_linking_token(self, token: LinkingToken) -> None:
        sql = """
            INSERT INTO linking_tokens
                (token, existing_identity_id, incoming_email, incoming_provider, expires_at, state)
            VALUES (%s, %s, %s, %s, %s, %s)
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute(
                sql,
                (
                    token.token,
                    token.existing_identity_id,
                    token.incoming_email,
                    token.incoming_provider.value,
                    token.expires_at,
                    token.state.value,
                ),
            )
            conn.commit()

    def get_linking_token(self, token: str) -> LinkingToken | None:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            return self._select_token(cursor, token, lock=False)

    def consume_linking_token(
        self, token: str, now: datetime
    ) -> tuple[LinkStatus, Identity | None]:
        """
        Flip the token to USED and rewrite the identity in one transaction.

        SELECT FOR UPDATE serializes concurrent consumers of the same token:
        the second caller waits, then reads the committed USED state.
        """
        link_sql = f"""
            UPDATE identities
            SET email = %s, provider = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {_IDENTITY_COLUMNS}
        """
        use_sql = """
            UPDATE linking_tokens
            SET state = 'USED', used_at = %s
            WHERE token = %s AND state = 'ISSUED'
        """
        with self._pool.connection() as conn, conn.cursor() as cursor:
            found = self._select_token(cursor, token, lock=True)
            if found is None:
                conn.rollback()
                return LinkStatus.NOT_FOUND, None
            if found.used:
                conn.rollback()
                return LinkStatus.ALREADY_USED, None
            if found.is_expired(now):
                conn.rollback()
                return LinkStatus.EXPIRED, None

            try:
                cursor.execute(
                    link_sql,
                    (
                        found.incoming_email,
                        found.incoming_provider.value,
                        found.existing_identity_id,
                    ),
                )
            except errors.UniqueViolation:
                conn.rollback()
                return LinkStatus.DUPLICATE_EMAIL, None
            row = cursor.fetchone()
            if row is None:
                conn.rollback()
                return LinkStatus.UNKNOWN_IDENTITY, None

            cursor.execute(use_sql, (now, token))
            if cursor.rowcount != 1:
                conn.rollback()
                return LinkStatus.ALREADY_USED, None
            conn.commit()
        return LinkStatus.LINKED, _identity_from_row(row)

    def delete_expired_tokens(self, now: datetime) -> int:
        with self._pool.connection() as conn, conn.cursor() as cursor:
            cursor.execute("DELETE FROM linking_tokens WHERE expires_at <= %s", (now,))
            removed = cursor.rowcount
            conn.commit()
            return removed

    @staticmethod
    def _select_token(cursor, token: str, lock: bool) -> LinkingToken | None:
        sql = """
            SELECT token, existing_identity_id, incoming_email, incoming_provider,
                   expires_at, state
            FROM linking_tokens
            WHERE token = %s
        """
        if lock:
            sql += " FOR UPDATE"
        cursor.execute(sql, (token,))
        row = cursor.fetchone()
        if row is None:
            return None
        return LinkingToken(
            token=row[0],
            existing_identity_id=row[1],
            incoming_email=row[2],
            incoming_provider=AuthProvider(row[3]),
            expires_at=row[4],
            state=LinkingTokenState(row[5]),
        )


def run_migrations(pool: ConnectionPool) -> None:
    """
    Execute all SQL migration files from the migrations directory.

    Migrations are executed in sorted order (alphabetically by filename).
    Each migration should be idempotent (use IF NOT EXISTS, etc.).

    Args:
        pool: psycopg3 ConnectionPool instance
    """
    # Structure: src/adapters/repository/postgres.py -> migrations/
    migrations_dir = Path(__file__).parent.parent.parent.parent / "migrations"

    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return

    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("No migration files found")
        return

    logger.info(f"Running {len(sql_files)} migration(s)")

    for sql_file in sql_files:
        logger.info(f"Executing migration: {sql_file.name}")
        try:
            sql_content = sql_file.read_text()

            with pool.connection() as conn:
                conn.execute(sql_content)

            logger.info(f"Migration complete: {sql_file.name}")
        except Exception as e:
            logger.error(f"Migration failed: {sql_file.name} - {e}")
            raise RuntimeError(f"Database migration failed: {sql_file.name}") from e
