import shutil
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from admin_security import AdminSecurity
from mailer import ResetCodeMailer
from security_store import SecurityStore, _hash_password, _verify_password


class SecurityStoreTests(unittest.TestCase):
    def setUp(self):
        self.tmp_dir = Path(tempfile.mkdtemp(prefix="admin-security-store-"))
        self.addCleanup(shutil.rmtree, self.tmp_dir, ignore_errors=True)
        self.store = SecurityStore(
            db_path=str(self.tmp_dir / "store.db"),
            admin_email="Owner@Example.com",
            max_failed_attempts=3,
            lockout_seconds=600,
            hash_iterations=1000,
        )

    def _configure(self, passcode: str) -> None:
        self.store.set_admin_passcode("bootstrap-value")
        self.assertTrue(self.store.update_admin_passcode(passcode))

    def test_password_hash_round_trip(self):
        encoded = _hash_password("Correct123", 1000)
        self.assertTrue(encoded.startswith("pbkdf2_sha256$1000$"))
        self.assertTrue(_verify_password("Correct123", encoded))
        self.assertFalse(_verify_password("correct123", encoded))
        self.assertFalse(_verify_password("Correct123", "not-a-hash"))

    def test_bootstrap_never_overwrites_existing_passcode(self):
        self.store.set_admin_passcode("first-value")
        first = self.store.get_security_config()
        self.store.set_admin_passcode("second-value")
        second = self.store.get_security_config()

        self.assertEqual(first["passcode_hash"], second["passcode_hash"])
        self.assertEqual(second["admin_email"], "owner@example.com")
        self.assertTrue(second["bootstrapped"])

    def test_concurrent_bootstrap_converges_on_one_passcode(self):
        service = AdminSecurity(self.store, ResetCodeMailer(api_key=None))
        results = []
        errors = []

        def bootstrap():
            try:
                results.append(service.ensure_config())
            except Exception as exc:  # pylint: disable=broad-except
                errors.append(exc)

        threads = [threading.Thread(target=bootstrap) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        hashes = {config["passcode_hash"] for config, _ in results}
        self.assertEqual(len(hashes), 1)
        self.assertEqual(hashes, {self.store.get_security_config()["passcode_hash"]})

    def test_verify_without_config_reports_not_configured(self):
        result = self.store.verify_admin_passcode("anything", "(none)")
        self.assertEqual(result, {"ok": False, "reason": "not_configured", "locked_until": None})

    def test_verify_counts_failures_then_locks(self):
        self._configure("Correct123")

        first = self.store.verify_admin_passcode("wrong", "fp")
        self.assertEqual(first["reason"], "invalid")
        self.assertEqual(self.store.get_security_config()["failed_attempts"], 1)

        self.store.verify_admin_passcode("wrong", "fp")
        locked = self.store.verify_admin_passcode("wrong", "fp")
        self.assertEqual(locked["reason"], "locked")
        self.assertIsNotNone(locked["locked_until"])

        during = self.store.verify_admin_passcode("Correct123", "fp")
        self.assertEqual(during, {"ok": False, "reason": "locked", "locked_until": locked["locked_until"]})
        self.assertEqual(self.store.get_security_config()["failed_attempts"], 3)

        attempts = self.store._fetchall("SELECT success, device_fingerprint FROM admin_unlock_attempts")
        self.assertEqual(len(attempts), 4)
        self.assertTrue(all(row["device_fingerprint"] == "fp" for row in attempts))

    def test_expired_lock_resets_counter(self):
        self._configure("Correct123")
        for _ in range(3):
            self.store.verify_admin_passcode("wrong", "fp")

        past = (datetime.now(timezone.utc) - timedelta(seconds=5)).isoformat(timespec="seconds")
        self.store._execute("UPDATE admin_security_config SET locked_until = ? WHERE id = 1", (past,))

        retry = self.store.verify_admin_passcode("wrong", "fp")
        self.assertEqual(retry["reason"], "invalid")
        self.assertIsNone(retry["locked_until"])
        self.assertEqual(self.store.get_security_config()["failed_attempts"], 1)

    def test_successful_verify_clears_failures(self):
        self._configure("Correct123")
        self.store.verify_admin_passcode("wrong", "fp")

        result = self.store.verify_admin_passcode("Correct123", "fp")
        self.assertEqual(result, {"ok": True, "reason": "ok", "locked_until": None})
        config = self.store.get_security_config()
        self.assertEqual(config["failed_attempts"], 0)
        self.assertIsNone(config["locked_until"])

    def test_update_passcode_requires_config_row(self):
        self.assertFalse(self.store.update_admin_passcode("Correct123"))

    def test_update_passcode_clears_lock_and_bootstrap_flag(self):
        self._configure("Correct123")
        for _ in range(3):
            self.store.verify_admin_passcode("wrong", "fp")

        self.assertTrue(self.store.update_admin_passcode("Rotated123"))
        config = self.store.get_security_config()
        self.assertFalse(config["bootstrapped"])
        self.assertEqual(config["failed_attempts"], 0)
        self.assertIsNone(config["locked_until"])
        self.assertTrue(self.store.verify_admin_passcode("Rotated123", "fp")["ok"])

    def test_recent_passcode_window(self):
        passcodes = [f"Passcode-{n}" for n in range(1, 9)]
        self._configure(passcodes[0])
        for passcode in passcodes[1:7]:
            self.store.update_admin_passcode(passcode)

        # live passcode is Passcode-7; window covers it and Passcode-2..6
        self.assertFalse(self.store.is_recent_admin_passcode(passcodes[0]))
        for passcode in passcodes[1:7]:
            self.assertTrue(self.store.is_recent_admin_passcode(passcode), passcode)
        self.assertFalse(self.store.is_recent_admin_passcode(passcodes[7]))

    def test_recent_passcode_check_reads_history_only(self):
        self._configure("Correct123")
        with mock.patch.object(self.store, "get_security_config", side_effect=AssertionError("config read")):
            self.assertTrue(self.store.is_recent_admin_passcode("Correct123"))
            self.assertFalse(self.store.is_recent_admin_passcode("Unused12345"))

    def test_verify_without_attempt_record_still_counts_failures(self):
        self._configure("Correct123")
        for _ in range(3):
            self.store.verify_admin_passcode("wrong", "(none)", record_attempt=False)

        locked = self.store.verify_admin_passcode("Correct123", "fp")
        self.assertEqual(locked["reason"], "locked")
        attempts = self.store._fetchall("SELECT success FROM admin_unlock_attempts")
        self.assertEqual(len(attempts), 1)

    def test_reset_tokens_are_single_use(self):
        self._configure("Correct123")
        expires = datetime.now(timezone.utc) + timedelta(minutes=10)
        self.store.create_reset_token("owner@example.com", "hash-1", "salt-1", expires, requested_ip="10.0.0.1")

        tokens = self.store.list_redeemable_reset_tokens("OWNER@example.com")
        self.assertEqual(len(tokens), 1)
        self.assertTrue(self.store.mark_reset_token_used(tokens[0]["id"]))
        self.assertFalse(self.store.mark_reset_token_used(tokens[0]["id"]))
        self.assertEqual(self.store.list_redeemable_reset_tokens("owner@example.com"), [])

    def test_invalidate_reset_tokens_keeps_request_count(self):
        self._configure("Correct123")
        now = datetime.now(timezone.utc)
        for index in range(2):
            self.store.create_reset_token(
                "owner@example.com",
                f"hash-{index}",
                f"salt-{index}",
                now + timedelta(minutes=10),
                requested_ip="10.0.0.1",
            )

        self.assertEqual(self.store.invalidate_reset_tokens("owner@example.com"), 2)
        self.assertEqual(self.store.list_redeemable_reset_tokens("owner@example.com"), [])

        since = now - timedelta(minutes=15)
        self.assertEqual(self.store.count_recent_reset_requests("owner@example.com", "10.0.0.1", since), 2)
        self.assertEqual(self.store.count_recent_reset_requests("owner@example.com", "10.0.0.2", since), 0)
        self.assertEqual(self.store.count_recent_reset_requests("owner@example.com", None, since), 0)

    def test_identity_lifecycle(self):
        identity = self.store.create_identity("Owner@Example.com", "Secret123")
        self.assertEqual(identity["email"], "owner@example.com")
        self.assertEqual(identity["session_version"], 1)

        duplicate = self.store.create_identity("owner@example.com", "Other12345")
        self.assertEqual(duplicate["id"], identity["id"])
        self.assertIsNotNone(self.store.authenticate_identity("owner@example.com", "Secret123"))
        self.assertIsNone(self.store.authenticate_identity("owner@example.com", "Other12345"))

        self.store.revoke_identity_sessions(identity["id"])
        self.assertEqual(self.store.get_identity_by_id(identity["id"])["session_version"], 2)

        self.assertFalse(self.store.is_admin(identity["id"]))
        self.store.grant_role(identity["id"])
        self.store.grant_role(identity["id"])
        self.assertTrue(self.store.is_admin(identity["id"]))

    def test_audit_metadata_round_trip(self):
        self.store.insert_audit_event("unlock_failed", "actor-1", {"reason": "invalid", "ip": None})
        self.store.insert_audit_event("other_scope", "actor-1", resource_type="billing")

        events = self.store.list_audit_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["metadata"], {"ip": None, "reason": "invalid"})
        self.assertEqual(events[0]["resource_type"], "security")

    def test_check_database(self):
        self.assertEqual(self.store.check_database(), (True, ""))
        self.assertEqual(self.store.backend_name(), "sqlite")


if __name__ == "__main__":
    unittest.main(verbosity=2)
