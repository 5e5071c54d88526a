"""Admin passcode gate: unlock, lockout, rotation, reset codes and audit trail.

Every method returns a plain result dict. Expected failures come back as
``{"ok": False, "error": <code>}``; store errors from the atomic passcode
procedures propagate so the HTTP layer can answer with a 500.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from mailer import EmailSendError, ResetCodeMailer
from security_store import PASSCODE_HISTORY_WINDOW, SUPER_ADMIN_ROLE, SecurityStore

L = logging.getLogger("admin_security")

PASSCODE_MIN_LENGTH = 6
PASSCODE_MAX_LENGTH = 128
RESET_CODE_TTL_SECONDS = 600
RESET_REQUEST_WINDOW_SECONDS = 900
RESET_REQUEST_LIMIT = 3
RESET_TOKEN_CANDIDATES = 5
RESET_CODE_PATTERN = re.compile(r"^\d{6}$")
NO_FINGERPRINT = "(none)"
ADMIN_FULL_NAME = "Admin"


def hash_reset_code(code: str, salt: str) -> str:
    return hashlib.sha256(f"{code}{salt}".encode("utf-8")).hexdigest()


def passcode_is_acceptable(passcode: str) -> bool:
    return len(passcode.strip()) >= PASSCODE_MIN_LENGTH and len(passcode) <= PASSCODE_MAX_LENGTH


def _failure(error: str, **extra: Any) -> dict[str, Any]:
    return {"ok": False, "error": error, **extra}


class AdminSecurity:
    def __init__(self, store: SecurityStore, mailer: ResetCodeMailer):
        self.store = store
        self.mailer = mailer

    # -- config & identity -------------------------------------------------

    def ensure_config(self) -> tuple[dict[str, Any], bool]:
        config = self.store.get_security_config()
        if config and config.get("passcode_hash"):
            return config, False

        # Nobody is meant to know this value; the reset-code flow sets the real one.
        self.store.set_admin_passcode(secrets.token_urlsafe(32))
        config = self.store.get_security_config()
        if not config or not config.get("passcode_hash"):
            raise RuntimeError("Admin security not configured")

        try:
            self.store.add_passcode_history(str(config["passcode_hash"]))
        except Exception:  # pylint: disable=broad-except
            L.warning("Seeding passcode history after bootstrap failed.", exc_info=True)

        L.info("Admin security config bootstrapped for %s.", config["admin_email"])
        return config, True

    def ensure_admin_identity(self, config: Mapping[str, Any], password_to_sync: str | None = None) -> dict[str, Any]:
        admin_email = str(config["admin_email"])
        identity = self.store.find_identity_by_email(admin_email)
        if identity is not None:
            if password_to_sync:
                self.store.update_identity_password(identity["id"], password_to_sync)
            return identity

        return self.store.create_identity(
            admin_email,
            password_to_sync or secrets.token_urlsafe(32),
            email_confirmed=True,
        )

    def log_audit(self, actor_id: str, action: str, metadata: Mapping[str, Any] | None = None) -> None:
        try:
            self.store.insert_audit_event(action=action, actor_id=actor_id, metadata=metadata)
        except Exception:  # pylint: disable=broad-except
            L.exception("Audit event write failed for %s", action)

    def _actor(self, config: Mapping[str, Any], subject: str | None) -> str:
        if subject:
            return subject
        return str(self.ensure_admin_identity(config)["id"])

    def _authorize(self, config: Mapping[str, Any], subject: str | None, action: str, ip: str | None) -> bool:
        if subject and self.store.is_admin(subject):
            return True
        self.log_audit(
            self._actor(config, subject),
            "access_denied",
            {"attempted_action": action, "ip": ip},
        )
        return False

    # -- read-only & settings ----------------------------------------------

    def get_config(self, config: Mapping[str, Any], was_bootstrapped: bool) -> dict[str, Any]:
        return {
            "ok": True,
            "require_fingerprint": bool(config.get("require_fingerprint")),
            "bootstrapped": bool(was_bootstrapped or config.get("bootstrapped")),
        }

    def log_event(
        self,
        config: Mapping[str, Any],
        action_name: str,
        subject: str | None,
        ip: str | None,
    ) -> dict[str, Any]:
        # Unauthenticated reports are still recorded against the admin identity.
        self.log_audit(self._actor(config, subject), action_name.strip() or "security_event", {"ip": ip})
        return {"ok": True}

    def set_require_fingerprint(
        self,
        config: Mapping[str, Any],
        require_fingerprint: bool,
        subject: str | None,
        ip: str | None,
    ) -> dict[str, Any]:
        if not self._authorize(config, subject, "set_require_fingerprint", ip):
            return _failure("not_authorized")

        self.store.set_require_fingerprint(require_fingerprint)
        self.log_audit(
            str(subject),
            "security_setting_updated",
            {"require_fingerprint": bool(require_fingerprint), "ip": ip},
        )
        return {"ok": True}

    def history(self, config: Mapping[str, Any], subject: str | None, ip: str | None, limit: int = 100) -> dict[str, Any]:
        if not self._authorize(config, subject, "history", ip):
            return _failure("not_authorized")
        return {"ok": True, "events": self.store.list_audit_events(resource_type="security", limit=limit)}

    def revoke_sessions(self, config: Mapping[str, Any], subject: str | None, ip: str | None) -> dict[str, Any]:
        if not self._authorize(config, subject, "revoke_sessions", ip):
            return _failure("not_authorized")

        identity = self.ensure_admin_identity(config)
        self.store.revoke_identity_sessions(identity["id"])
        self.log_audit(str(subject), "sessions_revoked", {"ip": ip})
        return {"ok": True}

    # -- unlock ------------------------------------------------------------

    def unlock(
        self,
        config: Mapping[str, Any],
        passcode: str,
        device_fingerprint: str | None,
        ip: str | None,
    ) -> dict[str, Any]:
        if config.get("bootstrapped"):
            identity = self.ensure_admin_identity(config)
            self.log_audit(identity["id"], "unlock_failed", {"reason": "setup_required", "ip": ip})
            return _failure("setup_required", reason="setup_required")

        if config.get("require_fingerprint") and not device_fingerprint:
            identity = self.ensure_admin_identity(config)
            self.log_audit(identity["id"], "unlock_failed", {"reason": "fingerprint_required", "ip": ip})
            return _failure("fingerprint_required", reason="fingerprint_required")

        # The sign-in credential follows the attempted passcode; the store decides pass/fail.
        identity = self.ensure_admin_identity(config, password_to_sync=passcode)
        try:
            result = self.store.verify_admin_passcode(passcode, device_fingerprint or NO_FINGERPRINT)
        except BaseException:
            self.store.update_identity_password(identity["id"], secrets.token_urlsafe(32))
            raise

        if not result.get("ok"):
            self.store.update_identity_password(identity["id"], secrets.token_urlsafe(32))
            reason = str(result.get("reason") or "invalid")
            locked_until = result.get("locked_until")
            self.log_audit(
                identity["id"],
                "unlock_failed",
                {
                    "reason": reason,
                    "locked_until": locked_until,
                    "device_fingerprint": device_fingerprint,
                    "ip": ip,
                },
            )
            return _failure(reason, reason=reason, locked_until=locked_until)

        self.store.upsert_profile(identity["id"], str(config["admin_email"]), ADMIN_FULL_NAME)
        self.store.grant_role(identity["id"], SUPER_ADMIN_ROLE)
        self.log_audit(identity["id"], "unlock_success", {"device_fingerprint": device_fingerprint, "ip": ip})
        return {"ok": True, "admin_email": str(config["admin_email"])}

    # -- sign-in -----------------------------------------------------------

    def sign_in(
        self,
        config: Mapping[str, Any],
        email: str,
        password: str,
        ip: str | None,
    ) -> tuple[dict[str, Any] | None, dict[str, Any]]:
        """Authenticate the admin identity for a bearer token.

        The password must also be the live passcode, checked through the
        verify procedure so sign-in failures feed the same lockout as unlock.
        Returns ``(identity, result)``; ``identity`` is None on failure.
        """
        result = self.store.verify_admin_passcode(password, NO_FINGERPRINT, record_attempt=False)
        identity = None
        if result.get("ok"):
            identity = self.store.authenticate_identity(email, password)
            if identity is None:
                result = {"ok": False, "reason": "invalid", "locked_until": None}

        if identity is None:
            self.log_audit(
                self._actor(config, None),
                "sign_in_failed",
                {"reason": result.get("reason"), "locked_until": result.get("locked_until"), "ip": ip},
            )
        return identity, result

    # -- rotation ----------------------------------------------------------

    def _persist_new_passcode(self, config: Mapping[str, Any], new_passcode: str) -> dict[str, Any]:
        if not self.store.update_admin_passcode(new_passcode):
            raise RuntimeError("rotate_failed")
        return self.ensure_admin_identity(config, password_to_sync=new_passcode)

    def change_passcode(
        self,
        config: Mapping[str, Any],
        current_passcode: str,
        new_passcode: str,
        subject: str | None,
        ip: str | None,
        device_fingerprint: str | None = None,
    ) -> dict[str, Any]:
        if not passcode_is_acceptable(new_passcode):
            self.log_audit(self._actor(config, subject), "passcode_change_failed", {"reason": "weak_passcode", "ip": ip})
            return _failure("weak_passcode")

        if not self._authorize(config, subject, "change_passcode", ip):
            return _failure("not_authorized")
        actor_id = str(subject)

        verified = self.store.verify_admin_passcode(current_passcode, device_fingerprint or NO_FINGERPRINT)
        if not verified.get("ok"):
            locked_until = verified.get("locked_until")
            self.log_audit(
                actor_id,
                "passcode_change_failed",
                {"reason": "invalid_current", "locked_until": locked_until, "ip": ip},
            )
            return _failure("invalid_current", locked_until=locked_until)

        if self.store.is_recent_admin_passcode(new_passcode, limit=PASSCODE_HISTORY_WINDOW):
            self.log_audit(actor_id, "passcode_change_failed", {"reason": "passcode_reused", "ip": ip})
            return _failure("passcode_reused")

        self._persist_new_passcode(config, new_passcode)
        self.log_audit(actor_id, "passcode_changed", {"ip": ip})
        return {"ok": True}

    # -- reset codes -------------------------------------------------------

    def request_reset_code(self, config: Mapping[str, Any], subject: str | None, ip: str | None) -> dict[str, Any]:
        admin_email = str(config["admin_email"])
        actor_id = self._actor(config, subject)
        now = datetime.now(timezone.utc)

        recent = self.store.count_recent_reset_requests(
            admin_email,
            ip,
            since=now - timedelta(seconds=RESET_REQUEST_WINDOW_SECONDS),
        )
        if recent >= RESET_REQUEST_LIMIT:
            self.log_audit(actor_id, "passcode_reset_request_failed", {"reason": "too_many_requests", "ip": ip})
            return _failure("too_many_requests")

        self.store.invalidate_reset_tokens(admin_email)

        code = f"{secrets.randbelow(1_000_000):06d}"
        salt = secrets.token_hex(16)
        expires_at = now + timedelta(seconds=RESET_CODE_TTL_SECONDS)
        self.store.create_reset_token(
            admin_email,
            code_hash=hash_reset_code(code, salt),
            code_salt=salt,
            expires_at=expires_at,
            requested_ip=ip,
            requested_user_id=subject,
        )

        try:
            self.mailer.send_reset_code(admin_email, code, ttl_minutes=RESET_CODE_TTL_SECONDS // 60)
        except EmailSendError as exc:
            self.log_audit(
                actor_id,
                "passcode_reset_request_failed",
                {"reason": "email_send_failed", "details": exc.details, "ip": ip},
            )
            return _failure("email_send_failed", details=exc.details)

        self.log_audit(
            actor_id,
            "passcode_reset_requested",
            {"ip": ip, "expires_at": expires_at.isoformat(timespec="seconds")},
        )
        return {"ok": True, "to": admin_email}

    def _redeem_reset_code(self, admin_email: str, code: str) -> bool:
        for token in self.store.list_redeemable_reset_tokens(admin_email, limit=RESET_TOKEN_CANDIDATES):
            expected = hash_reset_code(code, token["code_salt"])
            if hmac.compare_digest(expected, token["code_hash"]):
                return self.store.mark_reset_token_used(token["id"])
        return False

    def reset_passcode_with_code(
        self,
        config: Mapping[str, Any],
        code: str,
        new_passcode: str,
        ip: str | None,
    ) -> dict[str, Any]:
        identity = self.ensure_admin_identity(config)

        def fail(reason: str) -> dict[str, Any]:
            self.log_audit(identity["id"], "passcode_reset_failed", {"reason": reason, "ip": ip})
            return _failure(reason)

        code = code.strip()
        if not RESET_CODE_PATTERN.fullmatch(code):
            return fail("invalid_code")
        if not passcode_is_acceptable(new_passcode):
            return fail("weak_passcode")
        if not self._redeem_reset_code(str(config["admin_email"]), code):
            return fail("invalid_or_expired_code")
        if self.store.is_recent_admin_passcode(new_passcode, limit=PASSCODE_HISTORY_WINDOW):
            return fail("passcode_reused")

        identity = self._persist_new_passcode(config, new_passcode)
        self.store.revoke_identity_sessions(identity["id"])
        self.log_audit(identity["id"], "passcode_reset_success", {"ip": ip, "sessions_revoked": True})
        return {"ok": True, "revoked": True}
