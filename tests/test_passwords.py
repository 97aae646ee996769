from hrsecurity.service.passwords import PasswordVerifier, build_hasher, password_violations
from hrsecurity.storage.models import TenantSecurityPolicy


def _verifier(time_cost=1):
    return PasswordVerifier(build_hasher(time_cost=time_cost, memory_cost_kib=1024, parallelism=1))


def test_hash_is_argon2id_and_verifies():
    verifier = _verifier()
    hashed = verifier.hash("Sunflower42")

    assert hashed.startswith("$argon2id$")
    assert verifier.verify("Sunflower42", hashed)
    assert not verifier.verify("sunflower42", hashed)


def test_verify_tolerates_missing_and_garbage_hashes():
    verifier = _verifier()

    assert verifier.verify("anything", None) is False
    assert verifier.verify("anything", "") is False
    assert verifier.verify("anything", "not-a-hash") is False


def test_needs_rehash_when_parameters_change():
    old = _verifier(time_cost=1)
    new = _verifier(time_cost=2)
    hashed = old.hash("Sunflower42")

    assert old.needs_rehash(hashed) is False
    assert new.needs_rehash(hashed) is True
    assert new.needs_rehash("not-a-hash") is False


def test_default_policy_requires_length_uppercase_and_number():
    policy = TenantSecurityPolicy(tenant_id="acme")

    assert password_violations("short", policy) == [
        "At least 8 characters",
        "At least one uppercase letter",
        "At least one number",
    ]
    assert password_violations("Longenough1", policy) == []


def test_special_character_rule_is_opt_in():
    policy = TenantSecurityPolicy(
        tenant_id="acme",
        password_min_length=12,
        password_require_uppercase=False,
        password_require_number=False,
        password_require_special=True,
    )

    assert password_violations("lowercaseonly", policy) == ["At least one special character"]
    assert password_violations("lowercase-only", policy) == []
    assert password_violations("a!", policy) == ["At least 12 characters"]
