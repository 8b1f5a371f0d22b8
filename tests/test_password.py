import pytest

from secret_rotation import password as password_module
from secret_rotation.config import DEFAULT_EXCLUDE_CHARACTERS
from secret_rotation.errors import InvalidLength, PasswordPolicyError
from secret_rotation.password import DIGITS, LOWERCASE, SYMBOLS, UPPERCASE, generate_password


def has_every_class(password):
    return (
        any(c in UPPERCASE for c in password)
        and any(c in LOWERCASE for c in password)
        and any(c in DIGITS for c in password)
        and any(c in SYMBOLS for c in password)
    )


@pytest.mark.parametrize("length", [4, 5, 8, 20, 32, 128])
def test_generate_password_length_and_classes(length):
    for _ in range(50):
        password = generate_password(length)
        assert len(password) == length
        assert has_every_class(password)


@pytest.mark.parametrize("length", [-1, 0, 1, 3])
def test_generate_password_rejects_short_length(length):
    with pytest.raises(InvalidLength):
        generate_password(length)


def test_invalid_length_is_a_value_error():
    with pytest.raises(ValueError):
        generate_password(2)


def test_excluded_characters_never_appear():
    for _ in range(100):
        password = generate_password(40, DEFAULT_EXCLUDE_CHARACTERS)
        assert not set(password) & set(DEFAULT_EXCLUDE_CHARACTERS)
        assert has_every_class(password)


def test_exclusion_emptying_a_class_fails():
    with pytest.raises(PasswordPolicyError):
        generate_password(10, DIGITS)


def test_only_characters_from_the_alphabet():
    alphabet = set(UPPERCASE + LOWERCASE + DIGITS + SYMBOLS)
    assert set(generate_password(500)) <= alphabet


def test_uses_secrets_module_for_every_draw(monkeypatch):
    calls = []

    def fake_randbelow(n):
        calls.append(n)
        return 0

    monkeypatch.setattr(password_module.secrets, "randbelow", fake_randbelow)
    password = generate_password(6)

    # 6 character draws and 5 shuffle swaps
    assert len(calls) == 11
    assert len(password) == 6


def test_passwords_differ_between_calls():
    assert len({generate_password(20) for _ in range(20)}) == 20
