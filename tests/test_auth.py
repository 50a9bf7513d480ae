import os
import stat

import pytest
from jose import jwt

from wadm.auth import AuthManager


@pytest.fixture()
def auth(tmp_path):
    return AuthManager(str(tmp_path / "data"))


def test_setup_issues_a_valid_token(auth):
    assert auth.is_configured() is False
    token = auth.setup_password("secret")
    assert auth.is_configured() is True
    assert auth.verify_token(token) is True


def test_auth_file_is_owner_only(auth):
    auth.setup_password("secret")
    mode = stat.S_IMODE(os.stat(auth.auth_file).st_mode)
    assert mode == 0o600


def test_setup_twice_is_refused(auth):
    auth.setup_password("secret")
    with pytest.raises(RuntimeError):
        auth.setup_password("another")


def test_short_password_is_rejected(auth):
    with pytest.raises(ValueError):
        auth.setup_password("abc")
    assert auth.is_configured() is False


def test_verify_password(auth):
    auth.setup_password("secret")
    assert auth.verify_password("wrong") is None
    token = auth.verify_password("secret")
    assert token and auth.verify_token(token)


def test_no_token_is_valid_before_setup(auth, tmp_path):
    other = AuthManager(str(tmp_path / "other"))
    other.setup_password("secret")
    foreign = other.issue_token()
    assert auth.verify_token(foreign) is False
    assert auth.verify_token("") is False
    assert auth.verify_token(None) is False


def test_tampered_and_foreign_tokens_are_invalid(auth):
    auth.setup_password("secret")
    assert auth.verify_token("not-a-jwt") is False
    forged = jwt.encode({"sub": "admin"}, "some-other-secret", algorithm="HS256")
    assert auth.verify_token(forged) is False


def test_expired_token_is_invalid(auth):
    auth.setup_password("secret")
    secret = auth._load()["jwt_secret"]
    expired = jwt.encode({"sub": "admin", "exp": 1}, secret, algorithm="HS256")
    assert auth.verify_token(expired) is False


def test_change_password_keeps_live_tokens(auth):
    token = auth.setup_password("secret")
    assert auth.change_password("wrong", "newpass") is False
    assert auth.change_password("secret", "newpass") is True
    assert auth.verify_password("secret") is None
    assert auth.verify_password("newpass")
    assert auth.verify_token(token) is True


def test_forced_setup_keeps_the_secret(auth):
    token = auth.setup_password("secret")
    auth.setup_password("newpass", force=True)
    assert auth.verify_token(token) is True
