"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
AuthStore is the repository; _row_to_user / _row_to_session /
_row_to_transfer_token are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only token hashes are stored. Lookups go through the UNIQUE index on
  token_hash; there is no way to find a session or transfer token from
  anything the client does not already hold.

Time:
  Timestamps are stored as fixed-width ISO-8601 UTC text
  (2026-01-01T00:00:00.000000+00:00). Fixed width makes SQL string
  comparison chronological, so "expires_at > :now" works in the database.
  Callers pass `now` explicitly; the store never reads the clock, which keeps
  expiry boundaries testable.

Failures:
  Driver-level OperationalError / pool timeouts are re-raised as
  StorageUnavailable. IntegrityError is left alone -- it signals a real
  constraint violation, not an outage.

DB path: auth/tutorauth.db unless DATABASE_URL is set.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import StorageUnavailable
from auth.models import Session, TransferToken, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'tutorauth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("telegram_user_id", BigInteger, nullable=False, unique=True),
    Column("username", Text),
    Column("first_name", Text),
    Column("last_name", Text),
    Column("photo_url", Text),
    Column("last_auth_date", BigInteger),  # epoch seconds of last accepted assertion
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("ip", Text),
    Column("user_agent", Text),
    Index("ix_sessions_user_id", "user_id"),
)

_transfer_tokens = Table(
    "transfer_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("created_ip", Text),
    Column("created_user_agent", Text),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Render a datetime in the store's fixed-width UTC text format."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, Session and TransferToken entities.

    Usage:
        store = AuthStore()
        user, is_new = store.upsert_platform_user(User(telegram_user_id=42), auth_date, now)
        store.create_session(Session(user_id=user.id, token_hash=h, expires_at=...), now)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout_seconds: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout_seconds
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Translate driver outages into StorageUnavailable."""
        try:
            yield
        except (OperationalError, PoolTimeoutError) as exc:
            raise StorageUnavailable(str(exc.__class__.__name__)) from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (OperationalError, PoolTimeoutError):
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user_by_telegram_id(self, telegram_user_id: int) -> User | None:
        """Look up a user by the platform's stable user id. O(1) via UNIQUE index."""
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.telegram_user_id == telegram_user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def upsert_platform_user(self, profile: User, auth_date: int, now: datetime) -> tuple[User, bool]:
        """Create or refresh a user from a verified login and advance last_auth_date.

        Profile fields are overwritten with what the platform sent (None
        clears a field the user removed). last_auth_date only moves forward.
        Returns (user, is_new_user).

        Two first logins racing for the same telegram_user_id both try the
        INSERT; the loser hits the UNIQUE constraint and falls through to the
        update path.
        """
        stamp = to_iso(now)
        profile_values = {
            "username": profile.username,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "photo_url": profile.photo_url,
        }
        with self._guard():
            existing = self.get_user_by_telegram_id(profile.telegram_user_id)
            if existing is None:
                try:
                    with self.engine.begin() as conn:
                        conn.execute(
                            _users.insert().values(
                                telegram_user_id=profile.telegram_user_id,
                                last_auth_date=auth_date,
                                created_at=stamp,
                                updated_at=stamp,
                                **profile_values,
                            )
                        )
                    return self.get_user_by_telegram_id(profile.telegram_user_id), True
                except IntegrityError:
                    pass

            # The advance is evaluated in SQL against the row being updated, so
            # concurrent logins can never write an older auth_date over a newer one.
            with self.engine.begin() as conn:
                conn.execute(
                    _users.update()
                    .where(_users.c.telegram_user_id == profile.telegram_user_id)
                    .values(
                        last_auth_date=case(
                            (func.coalesce(_users.c.last_auth_date, 0) < auth_date, auth_date),
                            else_=_users.c.last_auth_date,
                        ),
                        updated_at=stamp,
                        **profile_values,
                    )
                )
            return self.get_user_by_telegram_id(profile.telegram_user_id), False

    def ensure_user(self, profile: User, now: datetime) -> User:
        """Return the user with profile.telegram_user_id, creating it if absent.

        Used for the local development user; does not touch last_auth_date.
        """
        existing = self.get_user_by_telegram_id(profile.telegram_user_id)
        if existing is not None:
            return existing
        stamp = to_iso(now)
        with self._guard():
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _users.insert().values(
                            telegram_user_id=profile.telegram_user_id,
                            username=profile.username,
                            first_name=profile.first_name,
                            last_name=profile.last_name,
                            photo_url=profile.photo_url,
                            created_at=stamp,
                            updated_at=stamp,
                        )
                    )
            except IntegrityError:
                pass
        return self.get_user_by_telegram_id(profile.telegram_user_id)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session, now: datetime) -> int:
        """Insert a session record and return its ID."""
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token_hash=session.token_hash,
                    created_at=to_iso(now),
                    expires_at=session.expires_at,
                    ip=session.ip,
                    user_agent=session.user_agent,
                )
            )
            return result.inserted_primary_key[0]

    def get_active_session_user(self, token_hash: str, now: datetime) -> User | None:
        """Return the owner of a valid session with this token hash, else None.

        Valid means revoked_at IS NULL AND expires_at > now. The predicate is
        evaluated in SQL so the row and the expiry decision come from the same
        read.
        """
        query = (
            select(_users)
            .select_from(_sessions.join(_users, _users.c.id == _sessions.c.user_id))
            .where(
                (_sessions.c.token_hash == token_hash)
                & _sessions.c.revoked_at.is_(None)
                & (_sessions.c.expires_at > to_iso(now))
            )
        )
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_active_sessions(self, user_id: int, now: datetime) -> list[Session]:
        """Return the user's unrevoked, unexpired sessions, newest first."""
        with self._guard(), self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & _sessions.c.revoked_at.is_(None)
                    & (_sessions.c.expires_at > to_iso(now))
                )
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke_session_by_hash(self, token_hash: str, now: datetime) -> int:
        """Stamp revoked_at on the session with this hash. Already-revoked rows are left alone."""
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == token_hash) & _sessions.c.revoked_at.is_(None))
                .values(revoked_at=to_iso(now))
            )
        return result.rowcount

    def revoke_session_by_id(self, session_id: int, user_id: int, now: datetime) -> bool:
        """Revoke one session. user_id is checked to prevent IDOR attacks.

        Returns True if the session exists and belongs to user_id (revoking an
        already-revoked owned session is still True), False otherwise.
        """
        with self._guard(), self.engine.begin() as conn:
            owned = conn.execute(
                select(_sessions.c.id).where((_sessions.c.id == session_id) & (_sessions.c.user_id == user_id))
            ).fetchone()
            if owned is None:
                return False
            conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & _sessions.c.revoked_at.is_(None))
                .values(revoked_at=to_iso(now))
            )
        return True

    def revoke_user_sessions(self, user_id: int, now: datetime, except_token_hash: str | None = None) -> int:
        """Revoke every live session of user_id, optionally sparing one. Returns the count."""
        condition = (_sessions.c.user_id == user_id) & _sessions.c.revoked_at.is_(None)
        if except_token_hash is not None:
            condition = condition & (_sessions.c.token_hash != except_token_hash)
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(_sessions.update().where(condition).values(revoked_at=to_iso(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Transfer tokens
    # ------------------------------------------------------------------

    def create_transfer_token(self, token: TransferToken, now: datetime) -> int:
        """Insert a transfer token record and return its ID."""
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                _transfer_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    used_at=None,
                    created_at=to_iso(now),
                    created_ip=token.created_ip,
                    created_user_agent=token.created_user_agent,
                )
            )
            return result.inserted_primary_key[0]

    def get_transfer_token_by_hash(self, token_hash: str) -> TransferToken | None:
        """Look up a transfer token by hash regardless of state. O(1) via UNIQUE index."""
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(_transfer_tokens.select().where(_transfer_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_transfer_token(row) if row is not None else None

    def claim_transfer_token(self, token_id: int, now: datetime) -> bool:
        """Atomically mark a transfer token used. Returns True for exactly one caller.

        Compare-and-swap on the row predicate, not on a previously read
        snapshot: the UPDATE only matches while used_at IS NULL AND
        expires_at >= now. SQLite serializes writers, so of any number of
        concurrent claims one sees rowcount == 1 and the rest see 0.
        The UPDATE is the first statement of its transaction so the write
        lock is requested up front (under the busy timeout) rather than
        upgraded from a stale read snapshot.
        """
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                _transfer_tokens.update()
                .where(
                    (_transfer_tokens.c.id == token_id)
                    & _transfer_tokens.c.used_at.is_(None)
                    & (_transfer_tokens.c.expires_at >= to_iso(now))
                )
                .values(used_at=to_iso(now))
            )
        return result.rowcount == 1

    def purge_spent_transfer_tokens(self, now: datetime) -> int:
        """Delete used or expired transfer tokens. Returns the number removed."""
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                _transfer_tokens.delete().where(
                    _transfer_tokens.c.used_at.is_not(None) | (_transfer_tokens.c.expires_at < to_iso(now))
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        telegram_user_id=row.telegram_user_id,
        username=row.username,
        first_name=row.first_name,
        last_name=row.last_name,
        photo_url=row.photo_url,
        last_auth_date=row.last_auth_date,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        ip=row.ip,
        user_agent=row.user_agent,
    )


def _row_to_transfer_token(row) -> TransferToken:
    return TransferToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
        created_ip=row.created_ip,
        created_user_agent=row.created_user_agent,
    )
