import pytest

from telecare.errors import WeakPassword
from telecare.security import ensure_strong_password, hash_password, is_strong_password, verify_password


@pytest.mark.parametrize(
    "password",
    ["Abcdef1!", "Str0ng&Longer", "xY9@xY9@"],
)
def test_strong_passwords_accepted(password):
    assert is_strong_password(password)


@pytest.mark.parametrize(
    "password",
    [
        "Abcde1!",  # seven characters
        "abcdef1!",  # no uppercase
        "ABCDEF1!",  # no lowercase
        "Abcdefg!",  # no digit
        "Abcdefg1",  # no special
        "",
        None,
    ],
)
def test_weak_passwords_rejected(password):
    assert not is_strong_password(password)
    with pytest.raises(WeakPassword) as exc:
        ensure_strong_password(password)
    assert exc.value.status_code == 400


def test_hash_is_salted_and_verifiable():
    first = hash_password("Abcdef1!")
    second = hash_password("Abcdef1!")
    assert first != second
    assert first != "Abcdef1!"
    assert verify_password("Abcdef1!", first)
    assert verify_password("Abcdef1!", second)
    assert not verify_password("Abcdef1?", first)


def test_verify_password_handles_missing_or_corrupt_hash():
    assert not verify_password("Abcdef1!", None)
    assert not verify_password(None, hash_password("Abcdef1!"))
    assert not verify_password("Abcdef1!", "not-a-bcrypt-hash")
