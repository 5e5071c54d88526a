import base64
import hashlib
import hmac
import json
import secrets
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Mapping

PBKDF2_ITERATIONS = 600_000
CONFIG_ROW_ID = 1
PASSCODE_HISTORY_WINDOW = 5
SUPER_ADMIN_ROLE = "super_admin"
ADMIN_ROLES = ("super_admin", "admin")


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${iterations}${salt_b64}${digest_b64}"


def _verify_password(password: str, encoded_hash: str) -> bool:
    try:
        algorithm, iterations_str, salt_b64, digest_b64 = encoded_hash.split("$", 3)
        if algorithm != "pbkdf2_sha256":
            return False
        iterations = int(iterations_str)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(digest_b64.encode("ascii"))
    except (ValueError, TypeError):
        return False

    actual = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual, expected)


def _parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}
    return False


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds")


class SecurityStore:
    """Relational store backing the admin passcode gate.

    The passcode procedures (``set_admin_passcode``, ``verify_admin_passcode``,
    ``update_admin_passcode``) each run as one transaction, so the attempt
    counter and lock window always change together with the hash comparison.
    Hashes are produced and compared here only; callers never see plaintext
    comparisons.
    """

    def __init__(
        self,
        db_path: str | None = None,
        database_url: str | None = None,
        admin_email: str = "admin@example.com",
        max_failed_attempts: int = 5,
        lockout_seconds: int = 900,
        hash_iterations: int = PBKDF2_ITERATIONS,
    ):
        self._backend = "postgres" if database_url else "sqlite"
        self._integrity_error = sqlite3.IntegrityError
        self._psycopg = None
        self._dict_row_factory = None

        self.default_admin_email = _normalize_email(admin_email) or "admin@example.com"
        self.max_failed_attempts = max(1, int(max_failed_attempts))
        self.lockout_seconds = max(1, int(lockout_seconds))
        self.hash_iterations = max(1000, int(hash_iterations))

        if database_url:
            normalized = self._normalize_database_url(database_url)
            try:
                import psycopg  # type: ignore[import-not-found]
                from psycopg.rows import dict_row  # type: ignore[import-not-found]
            except ImportError as exc:
                raise RuntimeError(
                    "DATABASE_URL is set but psycopg is not installed. Install psycopg[binary]."
                ) from exc

            self.database_url = normalized
            self._psycopg = psycopg
            self._dict_row_factory = dict_row
            self._integrity_error = psycopg.IntegrityError
        else:
            if not db_path:
                raise ValueError("db_path is required when DATABASE_URL is not set.")
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    @staticmethod
    def _normalize_database_url(url: str) -> str:
        clean = url.strip()
        if clean.startswith("postgres://"):
            return "postgresql://" + clean[len("postgres://") :]
        return clean

    def _is_postgres(self) -> bool:
        return self._backend == "postgres"

    def _adapt_query(self, query: str) -> str:
        if not self._is_postgres():
            return query
        return query.replace("?", "%s")

    def _for_update(self) -> str:
        # SQLite serialises writers with BEGIN IMMEDIATE instead of row locks.
        return " FOR UPDATE" if self._is_postgres() else ""

    def _connect(self):
        if self._is_postgres():
            assert self._psycopg is not None
            return self._psycopg.connect(self.database_url, row_factory=self._dict_row_factory)

        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self._connect() as conn:
            if not self._is_postgres():
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()

    @staticmethod
    def _row_dict(row: Any) -> dict[str, Any] | None:
        if row is None:
            return None
        return dict(row)

    def _execute(self, query: str, params: tuple[Any, ...] = ()) -> int:
        with self._connect() as conn:
            cursor = conn.execute(self._adapt_query(query), params)
            conn.commit()
            return int(cursor.rowcount or 0)

    def _fetchone(self, query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self._connect() as conn:
            return self._row_dict(conn.execute(self._adapt_query(query), params).fetchone())

    def _fetchall(self, query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(self._adapt_query(query), params).fetchall()
            return [self._row_dict(row) for row in rows]

    def _init_db(self) -> None:
        if self._is_postgres():
            serial_pk = "BIGSERIAL PRIMARY KEY"
            bool_false = "BOOLEAN NOT NULL DEFAULT FALSE"
            bool_true = "BOOLEAN NOT NULL DEFAULT TRUE"
        else:
            serial_pk = "INTEGER PRIMARY KEY AUTOINCREMENT"
            bool_false = "INTEGER NOT NULL DEFAULT 0"
            bool_true = "INTEGER NOT NULL DEFAULT 1"

        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS admin_security_config (
                id INTEGER PRIMARY KEY,
                admin_email TEXT NOT NULL,
                passcode_hash TEXT,
                require_fingerprint {bool_false},
                failed_attempts INTEGER NOT NULL DEFAULT 0,
                locked_until TEXT,
                bootstrapped {bool_false},
                updated_at TEXT NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS admin_passcode_history (
                id {serial_pk},
                passcode_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS admin_passcode_reset_tokens (
                id {serial_pk},
                admin_email TEXT NOT NULL,
                code_hash TEXT NOT NULL,
                code_salt TEXT NOT NULL,
                requested_ip TEXT,
                requested_user_id TEXT,
                expires_at TEXT NOT NULL,
                used_at TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_reset_tokens_email_created
            ON admin_passcode_reset_tokens(admin_email, created_at DESC)
            """,
            f"""
            CREATE TABLE IF NOT EXISTS admin_unlock_attempts (
                id {serial_pk},
                device_fingerprint TEXT NOT NULL,
                success {bool_false},
                created_at TEXT NOT NULL
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS admin_audit_log (
                id {serial_pk},
                action TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                resource_type TEXT,
                resource_id TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_admin_audit_log_created_at
            ON admin_audit_log(created_at DESC)
            """,
            f"""
            CREATE TABLE IF NOT EXISTS auth_users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                email_confirmed {bool_true},
                session_version INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT,
                full_name TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS user_roles (
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, role)
            )
            """,
        ]

        with self._connect() as conn:
            if not self._is_postgres():
                conn.execute("PRAGMA journal_mode=WAL")
            for statement in statements:
                conn.execute(statement)
            conn.commit()

    @staticmethod
    def _now_iso() -> str:
        return _iso(datetime.now(timezone.utc))

    def backend_name(self) -> str:
        return self._backend

    def check_database(self) -> tuple[bool, str]:
        try:
            row = self._fetchone("SELECT 1 AS ok")
        except Exception:
            return False, "database query failed"

        if not row:
            return False, "database returned no result"

        try:
            if int(row["ok"]) != 1:
                return False, "database returned unexpected result"
        except (TypeError, ValueError, KeyError):
            pass

        return True, ""

    # -- security config ---------------------------------------------------

    def get_security_config(self) -> dict[str, Any] | None:
        row = self._fetchone(
            """
            SELECT id, admin_email, passcode_hash, require_fingerprint, failed_attempts,
                   locked_until, bootstrapped, updated_at
            FROM admin_security_config
            WHERE id = ?
            """,
            (CONFIG_ROW_ID,),
        )
        if not row:
            return None
        return {
            "id": int(row["id"]),
            "admin_email": _normalize_email(str(row["admin_email"])),
            "passcode_hash": str(row["passcode_hash"]) if row.get("passcode_hash") else None,
            "require_fingerprint": _to_bool(row.get("require_fingerprint")),
            "failed_attempts": int(row.get("failed_attempts") or 0),
            "locked_until": str(row["locked_until"]) if row.get("locked_until") else None,
            "bootstrapped": _to_bool(row.get("bootstrapped")),
            "updated_at": str(row["updated_at"]),
        }

    def set_admin_passcode(self, new_passcode: str) -> bool:
        """Create the config row with a bootstrap passcode in a single upsert.

        An existing hash is never overwritten, so concurrent bootstraps converge
        on whichever insert landed first.
        """
        self._execute(
            """
            INSERT INTO admin_security_config (
                id, admin_email, passcode_hash, require_fingerprint, failed_attempts,
                locked_until, bootstrapped, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                passcode_hash = excluded.passcode_hash,
                failed_attempts = 0,
                locked_until = NULL,
                bootstrapped = excluded.bootstrapped,
                updated_at = excluded.updated_at
            WHERE admin_security_config.passcode_hash IS NULL
            """,
            (
                CONFIG_ROW_ID,
                self.default_admin_email,
                _hash_password(new_passcode, self.hash_iterations),
                False,
                0,
                None,
                True,
                self._now_iso(),
            ),
        )
        return True

    def set_require_fingerprint(self, require_fingerprint: bool) -> None:
        self._execute(
            "UPDATE admin_security_config SET require_fingerprint = ?, updated_at = ? WHERE id = ?",
            (bool(require_fingerprint), self._now_iso(), CONFIG_ROW_ID),
        )

    def verify_admin_passcode(
        self,
        passcode: str,
        device_fingerprint: str,
        record_attempt: bool = True,
    ) -> dict[str, Any]:
        """Compare a passcode and update the lockout state atomically.

        Returns ``{"ok", "reason", "locked_until"}``; ``reason`` is one of
        ``ok``, ``invalid``, ``locked`` or ``not_configured``. Sign-in checks
        pass ``record_attempt=False``: they share the counter and lock window
        but are not unlock attempts.
        """
        now = datetime.now(timezone.utc)
        now_iso = _iso(now)

        def record(conn: Any, success: bool) -> None:
            if record_attempt:
                conn.execute(
                    self._adapt_query(
                        "INSERT INTO admin_unlock_attempts (device_fingerprint, success, created_at) VALUES (?, ?, ?)"
                    ),
                    (device_fingerprint, success, now_iso),
                )

        with self._transaction() as conn:
            row = self._row_dict(
                conn.execute(
                    self._adapt_query(
                        "SELECT passcode_hash, failed_attempts, locked_until FROM admin_security_config WHERE id = ?"
                        + self._for_update()
                    ),
                    (CONFIG_ROW_ID,),
                ).fetchone()
            )
            if row is None or not row.get("passcode_hash"):
                return {"ok": False, "reason": "not_configured", "locked_until": None}

            failures = int(row.get("failed_attempts") or 0)
            locked_until = _parse_iso_datetime(row.get("locked_until"))
            if locked_until and locked_until > now:
                record(conn, False)
                return {"ok": False, "reason": "locked", "locked_until": _iso(locked_until)}
            if locked_until:
                failures = 0

            if _verify_password(passcode, str(row["passcode_hash"])):
                conn.execute(
                    self._adapt_query(
                        """
                        UPDATE admin_security_config
                        SET failed_attempts = 0, locked_until = NULL, updated_at = ?
                        WHERE id = ?
                        """
                    ),
                    (now_iso, CONFIG_ROW_ID),
                )
                record(conn, True)
                return {"ok": True, "reason": "ok", "locked_until": None}

            failures += 1
            new_locked_until: str | None = None
            reason = "invalid"
            if failures >= self.max_failed_attempts:
                new_locked_until = _iso(now + timedelta(seconds=self.lockout_seconds))
                reason = "locked"

            conn.execute(
                self._adapt_query(
                    """
                    UPDATE admin_security_config
                    SET failed_attempts = ?, locked_until = ?, updated_at = ?
                    WHERE id = ?
                    """
                ),
                (failures, new_locked_until, now_iso, CONFIG_ROW_ID),
            )
            record(conn, False)
            return {"ok": False, "reason": reason, "locked_until": new_locked_until}

    def update_admin_passcode(self, new_passcode: str) -> bool:
        """Replace the passcode, clear the lockout and append history in one transaction."""
        now_iso = self._now_iso()
        new_hash = _hash_password(new_passcode, self.hash_iterations)

        with self._transaction() as conn:
            row = conn.execute(
                self._adapt_query("SELECT id FROM admin_security_config WHERE id = ?" + self._for_update()),
                (CONFIG_ROW_ID,),
            ).fetchone()
            if row is None:
                return False

            conn.execute(
                self._adapt_query(
                    """
                    UPDATE admin_security_config
                    SET passcode_hash = ?, bootstrapped = ?, failed_attempts = 0,
                        locked_until = NULL, updated_at = ?
                    WHERE id = ?
                    """
                ),
                (new_hash, False, now_iso, CONFIG_ROW_ID),
            )
            conn.execute(
                self._adapt_query("INSERT INTO admin_passcode_history (passcode_hash, created_at) VALUES (?, ?)"),
                (new_hash, now_iso),
            )
            return True

    def add_passcode_history(self, passcode_hash: str) -> None:
        self._execute(
            "INSERT INTO admin_passcode_history (passcode_hash, created_at) VALUES (?, ?)",
            (passcode_hash, self._now_iso()),
        )

    def is_recent_admin_passcode(self, passcode: str, limit: int = PASSCODE_HISTORY_WINDOW) -> bool:
        # update_admin_passcode appends the live hash in the same transaction,
        # so the newest row is the live passcode and the window covers it plus
        # the ``limit`` passcodes that preceded it. Costs up to limit + 1 PBKDF2
        # verifications per call.
        rows = self._fetchall(
            """
            SELECT passcode_hash
            FROM admin_passcode_history
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (max(1, int(limit)) + 1,),
        )
        return any(_verify_password(passcode, str(row["passcode_hash"])) for row in rows)

    # -- reset tokens ------------------------------------------------------

    def count_recent_reset_requests(self, admin_email: str, requested_ip: str | None, since: datetime) -> int:
        row = self._fetchone(
            """
            SELECT COUNT(*) AS count
            FROM admin_passcode_reset_tokens
            WHERE admin_email = ? AND COALESCE(requested_ip, '') = ? AND created_at >= ?
            """,
            (_normalize_email(admin_email), (requested_ip or "").strip(), _iso(since)),
        )
        return int(row["count"]) if row else 0

    def invalidate_reset_tokens(self, admin_email: str) -> int:
        return self._execute(
            """
            UPDATE admin_passcode_reset_tokens
            SET used_at = ?
            WHERE admin_email = ? AND used_at IS NULL
            """,
            (self._now_iso(), _normalize_email(admin_email)),
        )

    def create_reset_token(
        self,
        admin_email: str,
        code_hash: str,
        code_salt: str,
        expires_at: datetime,
        requested_ip: str | None = None,
        requested_user_id: str | None = None,
    ) -> None:
        self._execute(
            """
            INSERT INTO admin_passcode_reset_tokens (
                admin_email,
                code_hash,
                code_salt,
                requested_ip,
                requested_user_id,
                expires_at,
                used_at,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                _normalize_email(admin_email),
                code_hash,
                code_salt,
                (requested_ip or "").strip() or None,
                requested_user_id,
                _iso(expires_at),
                None,
                self._now_iso(),
            ),
        )

    def list_redeemable_reset_tokens(self, admin_email: str, limit: int = 5) -> list[dict[str, Any]]:
        rows = self._fetchall(
            """
            SELECT id, code_hash, code_salt, expires_at, created_at
            FROM admin_passcode_reset_tokens
            WHERE admin_email = ? AND used_at IS NULL AND expires_at > ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (_normalize_email(admin_email), self._now_iso(), max(1, int(limit))),
        )
        return [
            {
                "id": int(row["id"]),
                "code_hash": str(row["code_hash"]),
                "code_salt": str(row["code_salt"]),
                "expires_at": str(row["expires_at"]),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    def mark_reset_token_used(self, token_id: int) -> bool:
        updated = self._execute(
            "UPDATE admin_passcode_reset_tokens SET used_at = ? WHERE id = ? AND used_at IS NULL",
            (self._now_iso(), int(token_id)),
        )
        return updated == 1

    # -- audit log ---------------------------------------------------------

    def insert_audit_event(
        self,
        action: str,
        actor_id: str,
        metadata: Mapping[str, Any] | None = None,
        resource_type: str = "security",
        resource_id: str | None = None,
    ) -> None:
        metadata_value = (
            json.dumps(dict(metadata), sort_keys=True, separators=(",", ":"), default=str) if metadata else None
        )
        self._execute(
            """
            INSERT INTO admin_audit_log (action, actor_id, resource_type, resource_id, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                action.strip()[:120],
                str(actor_id),
                resource_type,
                resource_id,
                metadata_value,
                self._now_iso(),
            ),
        )

    def list_audit_events(self, resource_type: str = "security", limit: int = 100) -> list[dict[str, Any]]:
        safe_limit = max(1, min(int(limit), 1000))
        rows = self._fetchall(
            """
            SELECT id, action, actor_id, resource_type, resource_id, metadata, created_at
            FROM admin_audit_log
            WHERE resource_type = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (resource_type, safe_limit),
        )

        events: list[dict[str, Any]] = []
        for row in rows:
            metadata_text = row.get("metadata")
            metadata: Any = None
            if isinstance(metadata_text, str) and metadata_text:
                try:
                    metadata = json.loads(metadata_text)
                except (TypeError, ValueError):
                    metadata = metadata_text

            events.append(
                {
                    "id": int(row["id"]),
                    "action": str(row["action"]),
                    "actor_id": str(row["actor_id"]),
                    "resource_type": str(row["resource_type"]) if row.get("resource_type") else None,
                    "resource_id": str(row["resource_id"]) if row.get("resource_id") else None,
                    "metadata": metadata,
                    "created_at": str(row["created_at"]),
                }
            )
        return events

    # -- auth identities ---------------------------------------------------

    @staticmethod
    def _identity_from_row(row: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "id": str(row["id"]),
            "email": str(row["email"]),
            "email_confirmed": _to_bool(row.get("email_confirmed")),
            "session_version": int(row.get("session_version") or 1),
            "created_at": str(row["created_at"]),
        }

    def find_identity_by_email(self, email: str) -> dict[str, Any] | None:
        row = self._fetchone(
            """
            SELECT id, email, email_confirmed, session_version, created_at
            FROM auth_users
            WHERE email = ?
            """,
            (_normalize_email(email),),
        )
        return self._identity_from_row(row) if row else None

    def get_identity_by_id(self, identity_id: str) -> dict[str, Any] | None:
        row = self._fetchone(
            """
            SELECT id, email, email_confirmed, session_version, created_at
            FROM auth_users
            WHERE id = ?
            """,
            (str(identity_id),),
        )
        return self._identity_from_row(row) if row else None

    def create_identity(self, email: str, password: str, email_confirmed: bool = True) -> dict[str, Any]:
        email_normalized = _normalize_email(email)
        now_iso = self._now_iso()
        try:
            self._execute(
                """
                INSERT INTO auth_users (
                    id, email, password_hash, email_confirmed, session_version, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    email_normalized,
                    _hash_password(password, self.hash_iterations),
                    bool(email_confirmed),
                    1,
                    now_iso,
                    now_iso,
                ),
            )
        except self._integrity_error:
            # Lost a creation race; the other writer's row is just as good.
            pass

        identity = self.find_identity_by_email(email_normalized)
        if identity is None:
            raise RuntimeError("Failed to create admin user")
        return identity

    def update_identity_password(self, identity_id: str, password: str) -> None:
        self._execute(
            "UPDATE auth_users SET password_hash = ?, updated_at = ? WHERE id = ?",
            (_hash_password(password, self.hash_iterations), self._now_iso(), str(identity_id)),
        )

    def authenticate_identity(self, email: str, password: str) -> dict[str, Any] | None:
        row = self._fetchone(
            """
            SELECT id, email, password_hash, email_confirmed, session_version, created_at
            FROM auth_users
            WHERE email = ?
            """,
            (_normalize_email(email),),
        )
        if not row:
            return None
        if not _to_bool(row.get("email_confirmed")):
            return None
        if not _verify_password(password, str(row["password_hash"])):
            return None
        return self._identity_from_row(row)

    def revoke_identity_sessions(self, identity_id: str) -> None:
        self._execute(
            """
            UPDATE auth_users
            SET session_version = COALESCE(session_version, 1) + 1, updated_at = ?
            WHERE id = ?
            """,
            (self._now_iso(), str(identity_id)),
        )

    def upsert_profile(self, identity_id: str, email: str, full_name: str) -> None:
        now_iso = self._now_iso()
        self._execute(
            """
            INSERT INTO profiles (id, email, full_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email = excluded.email,
                full_name = excluded.full_name,
                updated_at = excluded.updated_at
            """,
            (str(identity_id), _normalize_email(email), full_name, now_iso, now_iso),
        )

    def grant_role(self, identity_id: str, role: str = SUPER_ADMIN_ROLE) -> None:
        self._execute(
            """
            INSERT INTO user_roles (user_id, role, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id, role) DO NOTHING
            """,
            (str(identity_id), role, self._now_iso()),
        )

    def is_admin(self, identity_id: str) -> bool:
        row = self._fetchone(
            "SELECT COUNT(*) AS count FROM user_roles WHERE user_id = ? AND role IN (?, ?)",
            (str(identity_id), *ADMIN_ROLES),
        )
        return bool(row and int(row["count"]) > 0)
