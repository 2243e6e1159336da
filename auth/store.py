"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper.
UserStore and OtpStore are the repositories; _row_to_user / _row_to_otp are
the mappers. Service, route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is a UNIQUE constraint on users.email. Emails are
  normalized to lowercase before every write and lookup, so the constraint is
  effectively case-insensitive.

Concurrency (OtpStore):
  The OTP code table and the issuance counter are the only shared mutable
  state in the subsystem. Every mutation is ONE statement:
    - upsert_code:            INSERT .. ON CONFLICT DO UPDATE
    - increment_with_window:  INSERT .. ON CONFLICT DO UPDATE .. RETURNING
    - reserve_attempt:        UPDATE .. SET attempts + 1 WHERE attempts < max .. RETURNING
    - delete_on_match:        DELETE .. WHERE email AND hash AND unexpired
  so two concurrent requests for the same email can neither both pass the
  rate limit, nor both consume the same code, nor compare more guesses than
  the attempt cap allows. A statement that hits transient lock contention
  never applied, so _contention_retry may re-run it safely.

Timestamps: users use ISO 8601 UTC strings (display data); OTP rows use
float epoch seconds so expiry comparisons happen inside the WHERE clause.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, case, create_engine, event, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from auth.models import OtpRecord, Role, User, normalize_email

logger = logging.getLogger("docaccess.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'docaccess_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for OAuth/OTP-only accounts
    Column("name", String(255), nullable=False),
    Column("role", String(10), nullable=False, server_default=Role.USER.value),
    Column("external_id", String(255), unique=True),  # OAuth subject
    Column("picture", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_otp_codes = Table(
    "otp_codes",
    _metadata,
    Column("email", String(320), primary_key=True),  # one live code per email
    Column("code_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
)

_otp_rate_limits = Table(
    "otp_rate_limits",
    _metadata,
    Column("email", String(320), primary_key=True),
    Column("window_start", Float, nullable=False),
    Column("issue_count", Integer, nullable=False),
)

# Mutable user fields accepted by UserStore.update_user().
_USER_UPDATE_FIELDS = {"name", "role", "password_hash", "external_id", "picture", "last_login"}


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # timeout is the busy handler wait; writers queue instead of failing.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 15
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def _insert_for(engine: Engine):
    """Return the dialect insert() that supports ON CONFLICT."""
    if engine.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def _is_lock_contention(exc: BaseException) -> bool:
    return isinstance(exc, OperationalError) and "locked" in str(exc).lower()


# Re-runs a single-statement store operation on transient SQLite lock contention.
# Any other error, or the fifth contended attempt, propagates unchanged.
_contention_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception(_is_lock_contention),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# User repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(email="a@x.com", name="A", password_hash=hash_password("...")))
        user = store.get_by_email("A@X.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _make_engine(db_url)
        _metadata.create_all(self.engine, tables=[_users])

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the email (or external_id)
        already exists. Callers translate that into a Conflict.
        """
        user_id = user.id or uuid.uuid4().hex
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    name=user.name,
                    role=Role(user.role).value,
                    external_id=user.external_id,
                    picture=user.picture,
                    created_at=now,
                    updated_at=now,
                    last_login=user.last_login,
                )
            )
            conn.commit()
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (normalized). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_external_id(self, external_id: str) -> User | None:
        """Look up a user by OAuth subject id. Returns None if no account is linked."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.external_id == external_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by email. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Accepted fields: name, role, password_hash, external_id, picture,
        last_login. Unknown fields raise ValueError (fail fast).

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _USER_UPDATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC time as last_login. Called on every successful sign-in."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def ping(self) -> bool:
        """Health probe: True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("User store health check failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# OTP repository
# ---------------------------------------------------------------------------


class OtpStore:
    """Repository for OTP records and the per-email issuance counter.

    All methods take `now` as epoch seconds so the OTP service (and tests)
    control the clock.
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = _make_engine(db_url)
        _metadata.create_all(self.engine, tables=[_otp_codes, _otp_rate_limits])
        self._insert = _insert_for(self.engine)

    def upsert_code(self, email: str, code_hash: str, now: float, expires_at: float) -> None:
        """Store a fresh code for email, replacing any previous one and resetting attempts."""
        stmt = self._insert(_otp_codes).values(
            email=normalize_email(email),
            code_hash=code_hash,
            created_at=now,
            expires_at=expires_at,
            attempts=0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_otp_codes.c.email],
            set_={"code_hash": code_hash, "created_at": now, "expires_at": expires_at, "attempts": 0},
        )

        @_contention_retry
        def run() -> None:
            with self.engine.connect() as conn:
                conn.execute(stmt)
                conn.commit()

        run()

    def increment_with_window(self, email: str, now: float, window_seconds: int) -> tuple[int, float]:
        """Atomically count one issuance for email in a fixed window.

        Opens a new window (count=1) when none exists or the current one is
        older than window_seconds; otherwise increments. Returns
        (count_after_increment, window_start).
        """
        cutoff = now - window_seconds
        expired = _otp_rate_limits.c.window_start <= cutoff
        stmt = self._insert(_otp_rate_limits).values(email=normalize_email(email), window_start=now, issue_count=1)
        stmt = stmt.on_conflict_do_update(
            index_elements=[_otp_rate_limits.c.email],
            set_={
                "issue_count": case((expired, 1), else_=_otp_rate_limits.c.issue_count + 1),
                "window_start": case((expired, now), else_=_otp_rate_limits.c.window_start),
            },
        ).returning(_otp_rate_limits.c.issue_count, _otp_rate_limits.c.window_start)

        @_contention_retry
        def run() -> tuple[int, float]:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).fetchone()
                conn.commit()
            return int(row.issue_count), float(row.window_start)

        return run()

    def reserve_attempt(self, email: str, now: float, max_attempts: int) -> str | None:
        """Spend one verification attempt on the live code for email.

        Returns the stored code hash when an attempt was still available,
        None when the code is missing, expired or exhausted. Check and
        increment are one statement, so N concurrent callers spend N distinct
        attempts and at most max_attempts of them get a hash back.
        """
        stmt = (
            _otp_codes.update()
            .where(
                (_otp_codes.c.email == normalize_email(email))
                & (_otp_codes.c.expires_at > now)
                & (_otp_codes.c.attempts < max_attempts)
            )
            .values(attempts=_otp_codes.c.attempts + 1)
            .returning(_otp_codes.c.code_hash)
        )

        @_contention_retry
        def run() -> str | None:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).fetchone()
                conn.commit()
            return row.code_hash if row is not None else None

        return run()

    def delete_on_match(self, email: str, code_hash: str, now: float) -> bool:
        """Consume the code: delete the record iff the hash matches and it is unexpired.

        Exactly one of any number of concurrent callers can see rowcount == 1.
        """
        stmt = _otp_codes.delete().where(
            (_otp_codes.c.email == normalize_email(email))
            & (_otp_codes.c.code_hash == code_hash)
            & (_otp_codes.c.expires_at > now)
        )

        @_contention_retry
        def run() -> bool:
            with self.engine.connect() as conn:
                result = conn.execute(stmt)
                conn.commit()
            return result.rowcount == 1

        return run()

    def get_code(self, email: str) -> OtpRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_otp_codes.select().where(_otp_codes.c.email == normalize_email(email))).fetchone()
        return _row_to_otp(row) if row is not None else None

    def purge_expired(self, now: float, window_seconds: int) -> int:
        """Delete expired codes and closed rate-limit windows. Returns rows removed."""
        with self.engine.connect() as conn:
            codes = conn.execute(_otp_codes.delete().where(_otp_codes.c.expires_at <= now))
            windows = conn.execute(
                _otp_rate_limits.delete().where(_otp_rate_limits.c.window_start <= now - window_seconds)
            )
            conn.commit()
        return codes.rowcount + windows.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        role=Role(row.role),
        external_id=row.external_id,
        picture=row.picture,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_otp(row) -> OtpRecord:
    return OtpRecord(
        email=row.email,
        code_hash=row.code_hash,
        created_at=datetime.fromtimestamp(row.created_at, tz=timezone.utc),
        expires_at=datetime.fromtimestamp(row.expires_at, tz=timezone.utc),
        attempts=row.attempts,
    )
