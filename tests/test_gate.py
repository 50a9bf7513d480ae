import pytest

from wadm.auth import AuthManager
from wadm.config import ConfigManager
from wadm.gate import evaluate
from wadm.protocol import Rejection


@pytest.fixture()
def managers(tmp_path):
    auth = AuthManager(str(tmp_path / "data"))
    config = ConfigManager(str(tmp_path))
    token = auth.setup_password("secret")
    return auth, config, token


def test_developer_mode_off_forbids_everyone(managers):
    auth, config, token = managers
    assert evaluate(token, auth, config) is Rejection.FORBIDDEN
    assert evaluate("garbage", auth, config) is Rejection.FORBIDDEN
    assert evaluate(None, auth, config) is Rejection.FORBIDDEN


def test_bad_token_is_unauthorized_when_enabled(managers):
    auth, config, _ = managers
    config.set_developer_mode(True)
    assert evaluate("garbage", auth, config) is Rejection.UNAUTHORIZED
    assert evaluate(None, auth, config) is Rejection.UNAUTHORIZED
    assert evaluate("", auth, config) is Rejection.UNAUTHORIZED


def test_valid_token_is_admitted_when_enabled(managers):
    auth, config, token = managers
    config.set_developer_mode(True)
    assert evaluate(token, auth, config) is None


def test_flag_change_applies_to_the_next_attempt(managers):
    auth, config, token = managers
    config.set_developer_mode(True)
    assert evaluate(token, auth, config) is None
    config.set_developer_mode(False)
    assert evaluate(token, auth, config) is Rejection.FORBIDDEN
    config.set_developer_mode(True)
    assert evaluate(token, auth, config) is None
