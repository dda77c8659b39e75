import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from services.generation_gateway.app import keys
from services.generation_gateway.app.errors import FailureKind, GatewayError

VALID_KEY = "in3d_live_" + "0123456789abcdef" * 2


class KeyFormatTests(unittest.TestCase):
    def test_generated_keys_have_expected_shape(self):
        key = keys.generate_api_key()
        self.assertTrue(key.startswith("in3d_live_"))
        self.assertEqual(len(key), len("in3d_live_") + 32)
        self.assertTrue(keys.is_valid_key_format(key))

    def test_rejects_wrong_prefix_length_and_alphabet(self):
        self.assertFalse(keys.is_valid_key_format("in3d_test_" + "a" * 32))
        self.assertFalse(keys.is_valid_key_format("in3d_live_" + "a" * 31))
        self.assertFalse(keys.is_valid_key_format("in3d_live_" + "g" * 32))
        self.assertFalse(keys.is_valid_key_format("in3d_live_" + "A" * 32))

    def test_display_prefix_hides_the_middle(self):
        self.assertEqual(keys.key_display_prefix(VALID_KEY), "in3d_live_0123…cdef")

    def test_hash_depends_on_pepper(self):
        with mock.patch.dict(os.environ, {"API_KEY_PEPPER": "one"}):
            first = keys.hash_api_key(VALID_KEY)
        with mock.patch.dict(os.environ, {"API_KEY_PEPPER": "two"}):
            second = keys.hash_api_key(VALID_KEY)
        self.assertNotEqual(first, second)
        self.assertEqual(len(first), 64)


class CredentialExtractionTests(unittest.TestCase):
    def test_bearer_key_is_preferred(self):
        headers = {"authorization": f"Bearer {VALID_KEY}", "x-in3d-key": "other"}
        self.assertEqual(keys.extract_credential(headers, key_header="x-in3d-key"), VALID_KEY)

    def test_dedicated_header_used_when_bearer_is_a_session_token(self):
        headers = {"authorization": "Bearer eyJhbGciOi", "x-in3d-key": VALID_KEY}
        self.assertEqual(keys.extract_credential(headers, key_header="x-in3d-key"), VALID_KEY)

    def test_missing_credential_returns_none(self):
        self.assertIsNone(keys.extract_credential({}, key_header="x-in3d-key"))

    def test_malformed_authorization_header_is_ignored(self):
        self.assertIsNone(keys.parse_bearer_token("Basic abc"))
        self.assertIsNone(keys.parse_bearer_token("Bearer"))


class FileKeyStoreTests(unittest.TestCase):
    def setUp(self):
        self._env = mock.patch.dict(
            os.environ,
            {"API_KEY_PEPPER": "test-pepper", "DEFAULT_TIER": "free", "DEFAULT_CREDITS": "100"},
        )
        self._env.start()
        self._tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self._tmpdir.name) / "keys.json"
        self.store = keys.FileKeyStore(str(self.path))

    def tearDown(self):
        self._tmpdir.cleanup()
        self._env.stop()

    def _set_account(self, user_id, tier, credits):
        payload = json.loads(self.path.read_text(encoding="utf-8")) if self.path.exists() else {}
        payload.setdefault("keys", {})
        payload.setdefault("accounts", {})[user_id] = {"tier": tier, "credits_remaining": credits}
        self.path.write_text(json.dumps(payload), encoding="utf-8")

    def test_issue_and_validate_round_trip(self):
        issued = keys.issue_api_key(self.store, user_id="user-1", scope="full", label="ci")
        self._set_account("user-1", "pro", 5)

        principal = keys.KeyValidator(self.store).validate(issued.raw_key)

        self.assertEqual(principal.user_id, "user-1")
        self.assertEqual(principal.scope, keys.Scope.FULL)
        self.assertEqual(principal.tier, keys.Tier.PRO)
        self.assertEqual(principal.credits_remaining, 5)
        stored = self.path.read_text(encoding="utf-8")
        self.assertNotIn(issued.raw_key, stored)

    def test_account_defaults_apply_when_missing(self):
        issued = keys.issue_api_key(self.store, user_id="user-2", scope="read", label="ci")
        principal = keys.KeyValidator(self.store).validate(issued.raw_key)
        self.assertEqual(principal.tier, keys.Tier.FREE)
        self.assertEqual(principal.credits_remaining, 100)

    def test_validation_has_no_side_effects(self):
        issued = keys.issue_api_key(self.store, user_id="user-1", scope="full", label="ci")
        self._set_account("user-1", "pro", 5)
        before = self.path.read_text(encoding="utf-8")
        validator = keys.KeyValidator(self.store)
        validator.validate(issued.raw_key)
        validator.validate(issued.raw_key)
        self.assertEqual(self.path.read_text(encoding="utf-8"), before)

    def test_unknown_and_revoked_keys_are_invalid(self):
        issued = keys.issue_api_key(self.store, user_id="user-1", scope="full", label="ci")
        validator = keys.KeyValidator(self.store)
        with self.assertRaises(GatewayError) as ctx:
            validator.validate(VALID_KEY)
        self.assertEqual(ctx.exception.kind, FailureKind.INVALID_CREDENTIAL)

        keys.revoke_api_key(self.store, user_id="user-1", key_id=issued.record.key_id)
        with self.assertRaises(GatewayError) as ctx:
            validator.validate(issued.raw_key)
        self.assertEqual(ctx.exception.kind, FailureKind.INVALID_CREDENTIAL)

    def test_missing_and_malformed_credentials(self):
        validator = keys.KeyValidator(self.store)
        with self.assertRaises(GatewayError) as ctx:
            validator.validate(None)
        self.assertEqual(ctx.exception.kind, FailureKind.MISSING_CREDENTIAL)
        self.assertEqual(ctx.exception.status_code, 401)
        with self.assertRaises(GatewayError) as ctx:
            validator.validate("not-a-key")
        self.assertEqual(ctx.exception.kind, FailureKind.INVALID_CREDENTIAL)

    def test_active_key_limit(self):
        for index in range(keys.MAX_ACTIVE_KEYS_PER_USER):
            keys.issue_api_key(self.store, user_id="user-1", scope="read", label=f"k{index}")
        with self.assertRaises(GatewayError) as ctx:
            keys.issue_api_key(self.store, user_id="user-1", scope="read", label="extra")
        self.assertEqual(ctx.exception.kind, FailureKind.INVALID_REQUEST)

    def test_issue_rejects_unknown_scope(self):
        with self.assertRaises(GatewayError) as ctx:
            keys.issue_api_key(self.store, user_id="user-1", scope="admin", label="ci")
        self.assertEqual(ctx.exception.kind, FailureKind.INVALID_REQUEST)

    def test_revoke_unknown_key(self):
        with self.assertRaises(GatewayError) as ctx:
            keys.revoke_api_key(self.store, user_id="user-1", key_id="missing")
        self.assertEqual(ctx.exception.kind, FailureKind.NOT_FOUND)

    def test_decrement_credits_persists(self):
        self._set_account("user-1", "pro", 5)
        self.assertEqual(self.store.decrement_credits("user-1", 2), 3)
        self.assertEqual(self.store.get_account("user-1").credits_remaining, 3)

    def test_invalid_tier_marks_store_unavailable(self):
        self._set_account("user-1", "platinum", 5)
        with self.assertRaises(GatewayError) as ctx:
            self.store.get_account("user-1")
        self.assertEqual(ctx.exception.kind, FailureKind.STORE_UNAVAILABLE)
        self.assertTrue(ctx.exception.retryable)

    def test_corrupt_file_marks_store_unavailable(self):
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(GatewayError) as ctx:
            self.store.ping()
        self.assertEqual(ctx.exception.kind, FailureKind.STORE_UNAVAILABLE)


class NullKeyStoreTests(unittest.TestCase):
    def test_every_key_is_rejected(self):
        validator = keys.KeyValidator(keys.NullKeyStore())
        with self.assertRaises(GatewayError) as ctx:
            validator.validate(VALID_KEY)
        self.assertEqual(ctx.exception.kind, FailureKind.INVALID_CREDENTIAL)


if __name__ == "__main__":
    unittest.main()
