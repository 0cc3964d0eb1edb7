"""Tests for credential hashing and the password policy."""

import pytest

from tenantauth.service.errors import ValidationError
from tenantauth.service.passwords import CredentialHasher, PasswordPolicy


class TestCredentialHasher:
    def test_verify_accepts_matching_password(self, hasher):
        encoded = hasher.hash("Secret@123")
        assert hasher.verify("Secret@123", encoded) is True

    def test_verify_rejects_other_password(self, hasher):
        encoded = hasher.hash("Secret@123")
        assert hasher.verify("Secret@124", encoded) is False

    def test_hashes_are_salted(self, hasher):
        first = hasher.hash("Secret@123")
        second = hasher.hash("Secret@123")
        assert first != second
        assert first.startswith("$argon2id$")

    @pytest.mark.parametrize("encoded", ["", None, "not-a-hash", "$argon2id$v=19$broken"])
    def test_malformed_hash_returns_false(self, hasher, encoded):
        assert hasher.verify("Secret@123", encoded) is False

    def test_needs_rehash_when_parameters_change(self, hasher):
        encoded = hasher.hash("Secret@123")
        stronger = CredentialHasher(time_cost=2, memory_cost=2048, parallelism=1)
        assert hasher.needs_rehash(encoded) is False
        assert stronger.needs_rehash(encoded) is True

    def test_needs_rehash_for_garbage(self, hasher):
        assert hasher.needs_rehash("garbage") is True


class TestComplexity:
    def test_strong_password_passes(self, policy):
        result = policy.validate_complexity("Str0ng!Pass")
        assert result.valid
        assert result.errors == []

    def test_reports_every_violation(self, policy):
        result = policy.validate_complexity("abc")
        assert not result.valid
        assert result.errors == [
            "Password must be at least 8 characters",
            "Password must contain at least one uppercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]

    @pytest.mark.parametrize(
        "password,message",
        [
            ("lowercase1!", "Password must contain at least one uppercase letter"),
            ("UPPERCASE1!", "Password must contain at least one lowercase letter"),
            ("NoDigits!!", "Password must contain at least one number"),
            ("NoSpecial12", "Password must contain at least one special character"),
        ],
    )
    def test_single_violation(self, policy, password, message):
        assert policy.validate_complexity(password).errors == [message]

    def test_ensure_valid_raises_with_details(self, policy):
        with pytest.raises(ValidationError) as excinfo:
            policy.ensure_valid("short", field_name="new_password")
        assert excinfo.value.status_code == 400
        assert excinfo.value.detail["field"] == "new_password"
        assert "Password must be at least 8 characters" in excinfo.value.detail["errors"]


class TestHistoryReuse:
    def test_detects_recent_password(self, hasher, policy):
        recent = [hasher.hash("Newest@1"), hasher.hash("Older@11")]
        assert policy.is_reused("Older@11", recent) is True

    def test_fresh_password_is_not_reused(self, hasher, policy):
        recent = [hasher.hash("Newest@1")]
        assert policy.is_reused("Another@1", recent) is False

    def test_only_checks_limit_entries(self, hasher):
        policy = PasswordPolicy(hasher, history_limit=2)
        recent = [hasher.hash(p) for p in ("First@111", "Second@11", "Third@111")]
        assert policy.is_reused("Third@111", recent) is False
        assert policy.is_reused("Third@111", recent, limit=3) is True

    def test_stops_at_first_match(self, policy):
        calls = []

        class CountingHasher:
            def verify(self, plaintext, encoded):
                calls.append(encoded)
                return encoded == "match"

        policy.hasher = CountingHasher()
        assert policy.is_reused("x", ["nope", "match", "never-checked"]) is True
        assert calls == ["nope", "match"]

    def test_empty_history(self, policy):
        assert policy.is_reused("Anything@1", []) is False
