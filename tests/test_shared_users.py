import json

import pytest

from common.crypto import TokenAuth
from sharing.settings import ServerConfig
from sharing.users import SharedUserStore


@pytest.fixture
def config_dir(tmp_path):
    return tmp_path / "config"


@pytest.fixture
def users(config_dir):
    return SharedUserStore(str(config_dir), ServerConfig.load(str(config_dir)))


def user_token():
    return TokenAuth.generate_user_token("hardware")


def test_tokens_are_encrypted_at_rest(users, config_dir):
    token = user_token()
    user = users.issue_access(token, "Ana", ["EDIT", "bogus"])
    assert user.permissions == ["EDIT"]

    raw = json.loads((config_dir / "shared-users.json").read_text())
    assert raw[0]["user_token"] != token
    assert TokenAuth.looks_encrypted(raw[0]["access_token"])

    reloaded = SharedUserStore(str(config_dir), ServerConfig.load(str(config_dir)))
    found = reloaded.find_by_user_token(token)
    assert found.id == user.id
    assert reloaded.access_token_matches(found, user.access_token)


def test_plain_legacy_tokens_still_work(config_dir):
    config = ServerConfig.load(str(config_dir))
    token = "ab" * 16
    (config_dir / "shared-users.json").write_text(json.dumps([
        {"id": "u1", "userToken": token, "accessToken": "cd" * 32, "nickname": "Old"},
    ]))
    users = SharedUserStore(str(config_dir), config)
    assert users.find_by_user_token(token).nickname == "Old"


def test_reissue_keeps_one_record(users):
    token = user_token()
    first = users.issue_access(token, "Ana", ["READ_ONLY"])
    old_access = first.access_token
    second = users.issue_access(token, "Ana B", ["FULL"])
    assert second.id == first.id
    assert second.permissions == ["FULL"]
    assert second.access_token != old_access
    assert len(users.list_users()) == 1


def test_invalid_user_token_rejected(users):
    with pytest.raises(ValueError):
        users.issue_access("not-a-token", "x", ["READ_ONLY"])


def test_defaults_to_read_only(users):
    user = users.issue_access(user_token(), "  ", [])
    assert user.permissions == ["READ_ONLY"]
    assert user.nickname == "Guest"


def test_revoke(users):
    user = users.issue_access(user_token(), "Ana", ["READ_ONLY"])
    assert users.revoke_user(user.id)
    assert users.get(user.id) is None
    assert not users.revoke_user(user.id)


def test_update_user_ignores_unknown_fields(users):
    user = users.issue_access(user_token(), "Ana", ["READ_ONLY"])
    updated = users.update_user(user.id, nickname="Bea", access_token="stolen", permissions=["UPLOAD"])
    assert updated.nickname == "Bea"
    assert updated.permissions == ["UPLOAD"]
    assert updated.access_token != "stolen"


def test_host_secret_reset_keeps_users_readable(users, config_dir):
    token = user_token()
    users.issue_access(token, "Ana", ["READ_ONLY"])
    old_secret = users.server_config.host_secret
    users.reset_host_secret()
    assert users.server_config.host_secret != old_secret

    reloaded = SharedUserStore(str(config_dir), ServerConfig.load(str(config_dir)))
    assert reloaded.find_by_user_token(token) is not None


def test_short_host_secret_is_regenerated(config_dir):
    config_dir.mkdir()
    (config_dir / "server-config.json").write_text(json.dumps({"hostSecret": "short", "port": 9000}))
    config = ServerConfig.load(str(config_dir))
    assert len(config.host_secret) == 128
    assert config.port == 9000
    saved = json.loads((config_dir / "server-config.json").read_text())
    assert saved["host_secret"] == config.host_secret
