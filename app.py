import argparse
import json
import logging
import os
import secrets
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from flask import Flask, jsonify, request
from waitress import serve
from werkzeug.middleware.proxy_fix import ProxyFix

from access_tokens import AccessTokenSigner, bearer_token_from_header
from admin_security import AdminSecurity
from mailer import DEFAULT_API_URL, ResetCodeMailer
from security_store import PBKDF2_ITERATIONS, SecurityStore

app = Flask(__name__)


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


_is_production = _env_flag("PRODUCTION", False)
_trust_proxy_count = int(os.getenv("TRUST_PROXY_COUNT", "0"))
if _trust_proxy_count > 0:
    app.wsgi_app = ProxyFix(  # type: ignore[method-assign]
        app.wsgi_app,
        x_for=_trust_proxy_count,
        x_proto=_trust_proxy_count,
        x_host=_trust_proxy_count,
    )

_service_role_key = os.getenv("SERVICE_ROLE_KEY", "").strip()
_anon_key = os.getenv("ANON_KEY", "").strip()
_database_url = os.getenv("DATABASE_URL", "").strip()
_sqlite_path = os.getenv("APP_DB_PATH", str(Path(__file__).resolve().parent / "data" / "admin_security.db"))

if _is_production and not _service_role_key:
    raise RuntimeError("SERVICE_ROLE_KEY must be set in production.")
if _is_production and not _database_url:
    raise RuntimeError("DATABASE_URL must be set in production.")

STORE = SecurityStore(
    db_path=_sqlite_path if not _database_url else None,
    database_url=_database_url or None,
    admin_email=os.getenv("ADMIN_EMAIL", "admin@example.com"),
    max_failed_attempts=int(os.getenv("PASSCODE_MAX_ATTEMPTS", "5")),
    lockout_seconds=int(os.getenv("PASSCODE_LOCKOUT_SECONDS", "900")),
    hash_iterations=int(os.getenv("PASSCODE_HASH_ITERATIONS", str(PBKDF2_ITERATIONS))),
)

MAILER = ResetCodeMailer(
    api_key=os.getenv("RESEND_API_KEY", ""),
    preferred_sender=os.getenv("RESEND_FROM", ""),
    api_url=os.getenv("RESEND_API_URL", DEFAULT_API_URL),
    timeout_seconds=float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10")),
)

SIGNER = AccessTokenSigner(
    _anon_key or _service_role_key or secrets.token_urlsafe(48),
    ttl_seconds=int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "3600")),
)

SERVICE = AdminSecurity(STORE, MAILER)

if _database_url:
    app.logger.info("Admin security store backend: PostgreSQL (DATABASE_URL).")
else:
    app.logger.info("Admin security store backend: SQLite (%s).", _sqlite_path)

if _trust_proxy_count > 0:
    app.logger.info("ProxyFix enabled with TRUST_PROXY_COUNT=%s", _trust_proxy_count)
elif _is_production:
    app.logger.warning(
        "TRUST_PROXY_COUNT is 0. Behind a reverse proxy every client shares one reset-code throttle bucket."
    )

if not _service_role_key:
    app.logger.warning("SERVICE_ROLE_KEY is not set. Every admin security action will fail.")

if not _anon_key:
    app.logger.info("ANON_KEY is not set. Access tokens are signed with the service credential.")

if not MAILER.configured():
    app.logger.warning("RESEND_API_KEY is not set. Reset codes cannot be emailed.")

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": os.getenv("CORS_ALLOW_ORIGIN", "*"),
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


@app.after_request
def _set_response_headers(response):
    for header, value in _CORS_HEADERS.items():
        response.headers.setdefault(header, value)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    return response


def _json_no_store(payload: dict[str, object], status_code: int = 200):
    response = jsonify(payload)
    response.status_code = status_code
    response.headers["Cache-Control"] = "no-store"
    return response


def _client_ip() -> str | None:
    # Forwarded headers are only honoured through ProxyFix (TRUST_PROXY_COUNT).
    return (request.remote_addr or "").strip() or None


def _request_subject() -> str | None:
    token = bearer_token_from_header(request.headers.get("Authorization"))
    return SIGNER.introspect(token, STORE)


def _error_message(exc: BaseException) -> str:
    if len(exc.args) == 1 and isinstance(exc.args[0], Mapping):
        detail = exc.args[0]
        if detail.get("message"):
            return str(detail["message"])
        return json.dumps(dict(detail), sort_keys=True, default=str)
    return str(exc) or exc.__class__.__name__


def _missing_credentials_response():
    return _json_no_store({"ok": False, "error": "Missing backend service credentials"}, 500)


def _optional_str(payload: Mapping[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    return str(value)


ActionHandler = Callable[[dict[str, Any], bool, Mapping[str, Any]], dict[str, Any]]


def _action_get_config(config, was_bootstrapped, payload):
    return SERVICE.get_config(config, was_bootstrapped)


def _action_log_event(config, was_bootstrapped, payload):
    return SERVICE.log_event(config, str(payload.get("action_name") or ""), _request_subject(), _client_ip())


def _action_set_require_fingerprint(config, was_bootstrapped, payload):
    return SERVICE.set_require_fingerprint(
        config,
        bool(payload.get("require_fingerprint")),
        _request_subject(),
        _client_ip(),
    )


def _action_unlock(config, was_bootstrapped, payload):
    return SERVICE.unlock(
        config,
        str(payload.get("passcode") or ""),
        _optional_str(payload, "device_fingerprint"),
        _client_ip(),
    )


def _action_change_passcode(config, was_bootstrapped, payload):
    return SERVICE.change_passcode(
        config,
        str(payload.get("current_passcode") or ""),
        str(payload.get("new_passcode") or ""),
        _request_subject(),
        _client_ip(),
        device_fingerprint=_optional_str(payload, "device_fingerprint"),
    )


def _action_revoke_sessions(config, was_bootstrapped, payload):
    return SERVICE.revoke_sessions(config, _request_subject(), _client_ip())


def _action_history(config, was_bootstrapped, payload):
    try:
        limit = int(payload.get("limit") or 100)
    except (TypeError, ValueError):
        limit = 100
    return SERVICE.history(config, _request_subject(), _client_ip(), limit=limit)


def _action_request_reset_code(config, was_bootstrapped, payload):
    return SERVICE.request_reset_code(config, _request_subject(), _client_ip())


def _action_reset_passcode_with_code(config, was_bootstrapped, payload):
    return SERVICE.reset_passcode_with_code(
        config,
        str(payload.get("code") or ""),
        str(payload.get("new_passcode") or ""),
        _client_ip(),
    )


_ACTIONS: dict[str, ActionHandler] = {
    "get_config": _action_get_config,
    "log_event": _action_log_event,
    "set_require_fingerprint": _action_set_require_fingerprint,
    "unlock": _action_unlock,
    "change_passcode": _action_change_passcode,
    "revoke_sessions": _action_revoke_sessions,
    "history": _action_history,
    "request_reset_code": _action_request_reset_code,
    "reset_passcode_with_code": _action_reset_passcode_with_code,
}


@app.route("/admin-security", methods=["POST", "OPTIONS"])
@app.route("/", methods=["POST", "OPTIONS"])
def admin_security_action():
    if request.method == "OPTIONS":
        return app.response_class(status=200)

    if not _service_role_key:
        return _missing_credentials_response()

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    action = str(payload.get("action") or "")

    try:
        config, was_bootstrapped = SERVICE.ensure_config()
        handler = _ACTIONS.get(action)
        if handler is None:
            return _json_no_store({"ok": False, "error": "unknown_action"})
        return _json_no_store(handler(config, was_bootstrapped, payload))
    except Exception as exc:  # pylint: disable=broad-except
        app.logger.exception("Admin security action %r failed.", action)
        return _json_no_store({"ok": False, "error": _error_message(exc)}, 500)


@app.route("/auth/token", methods=["POST", "OPTIONS"])
def issue_access_token():
    if request.method == "OPTIONS":
        return app.response_class(status=200)

    if not _service_role_key:
        return _missing_credentials_response()

    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}
    email = str(payload.get("email") or "").strip()
    password = str(payload.get("password") or "")
    if not email or not password:
        return _json_no_store({"error": "invalid_credentials"}, 401)

    try:
        config, _ = SERVICE.ensure_config()
        identity, result = SERVICE.sign_in(config, email, password, _client_ip())
    except Exception as exc:  # pylint: disable=broad-except
        app.logger.exception("Admin sign-in failed.")
        return _json_no_store({"error": _error_message(exc)}, 500)

    if identity is None:
        if result.get("reason") == "locked":
            return _json_no_store({"error": "locked", "locked_until": result.get("locked_until")}, 429)
        return _json_no_store({"error": "invalid_credentials"}, 401)

    return _json_no_store(
        {
            "access_token": SIGNER.issue(identity),
            "token_type": "bearer",
            "expires_in": SIGNER.ttl_seconds,
            "user": {"id": identity["id"], "email": identity["email"]},
        }
    )


@app.route("/healthz", methods=["GET"])
def healthz():
    return _json_no_store(
        {
            "status": "alive",
            "service": "admin-security",
            "time_utc": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
    )


@app.route("/readyz", methods=["GET"])
def readyz():
    database_ok, database_reason = STORE.check_database()
    database_check: dict[str, object] = {
        "status": "ok" if database_ok else "fail",
        "backend": STORE.backend_name(),
    }
    if not database_ok:
        database_check["reason"] = database_reason

    payload: dict[str, object] = {
        "status": "ready" if database_ok else "not_ready",
        "checks": {"database": database_check},
        "time_utc": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }
    return _json_no_store(payload, 200 if database_ok else 503)


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=5000)
    parser.add_argument('--log-level', default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper())
    serve(app, host=args.host, port=args.port)
