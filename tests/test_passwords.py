"""Tests for argon2id hashing and the password policy."""

import pytest

from propauth.service.errors import ValidationError
from propauth.service.passwords import MAX_PASSWORD_LENGTH, PasswordHasher, PasswordPolicy


@pytest.fixture
def hasher(settings):
    return PasswordHasher(settings)


@pytest.fixture
def policy(settings):
    return PasswordPolicy(settings)


class TestPasswordHasher:
    """Hashing and verification."""

    def test_hash_is_argon2id(self, hasher):
        pwd_hash = hasher.hash("Secure#Pass1")

        assert pwd_hash.startswith("$argon2id$")
        assert "Secure#Pass1" not in pwd_hash

    def test_same_password_produces_different_hashes(self, hasher):
        """Each hash carries its own salt."""
        assert hasher.hash("Secure#Pass1") != hasher.hash("Secure#Pass1")

    def test_verify_round_trip(self, hasher):
        pwd_hash = hasher.hash("Secure#Pass1")

        assert hasher.verify("Secure#Pass1", pwd_hash) is True
        assert hasher.verify("Secure#Pass2", pwd_hash) is False

    def test_verify_never_raises_on_garbage(self, hasher):
        assert hasher.verify("Secure#Pass1", "not-a-hash") is False
        assert hasher.verify("Secure#Pass1", None) is False
        assert hasher.verify("", hasher.hash("Secure#Pass1")) is False

    def test_empty_password_rejected(self, hasher):
        with pytest.raises(ValidationError):
            hasher.hash("")

    def test_needs_rehash_when_costs_change(self, settings, hasher):
        pwd_hash = hasher.hash("Secure#Pass1")
        stronger = PasswordHasher(settings.model_copy(update={"argon2_time_cost": 2}))

        assert hasher.needs_rehash(pwd_hash) is False
        assert stronger.needs_rehash(pwd_hash) is True
        assert hasher.needs_rehash("garbage") is True


class TestPasswordPolicy:
    """Strength rules applied at signup, reset and change."""

    def test_strong_password_passes(self, policy):
        assert policy.problems("Secure#Pass1") == []
        policy.validate("Secure#Pass1")

    @pytest.mark.parametrize(
        "password,fragment",
        [
            ("Sh#1", "at least 8"),
            ("lowercase#1", "uppercase"),
            ("NoNumbers#", "number"),
            ("NoSpecial1", "special"),
        ],
    )
    def test_each_rule_reports_a_problem(self, policy, password, fragment):
        problems = policy.problems(password)

        assert any(fragment in p for p in problems)

    def test_too_long_password(self, policy):
        problems = policy.problems("Aa1#" + "x" * MAX_PASSWORD_LENGTH)

        assert any("at most" in p for p in problems)

    def test_validate_lists_every_problem(self, policy):
        with pytest.raises(ValidationError) as excinfo:
            policy.validate("short", field="new_password")

        assert excinfo.value.detail["field"] == "new_password"
        assert len(excinfo.value.detail["problems"]) == 4

    def test_rules_follow_settings(self, settings):
        relaxed = PasswordPolicy(
            settings.model_copy(
                update={
                    "password_require_upper": False,
                    "password_require_special": False,
                    "password_min_length": 4,
                }
            )
        )

        assert relaxed.problems("abc1") == []
