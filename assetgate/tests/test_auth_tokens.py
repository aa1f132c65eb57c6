from datetime import timedelta

import jwt

from assetgate.core.auth import issue_access_token, verify_access_token
from assetgate.core.database import utc_now
from assetgate.tests.factories import TEST_JWT_SECRET


def test_round_trip_token(user):
    result = verify_access_token(issue_access_token(user))

    assert result.ok
    assert result.user_id == user.user_id
    assert result.claims["role"] == "USER"
    assert result.claims["token_version"] == 0


def test_expired_token(user):
    token = issue_access_token(user, now=utc_now() - timedelta(hours=2))

    result = verify_access_token(token)

    assert not result.ok
    assert result.error == "token_expired"


def test_wrong_signature(user):
    token = issue_access_token(user, secret="another-secret")

    assert verify_access_token(token).error == "invalid_token"


def test_missing_subject_is_rejected():
    token = jwt.encode({"exp": utc_now() + timedelta(hours=1)}, TEST_JWT_SECRET, algorithm="HS256")

    assert verify_access_token(token).error == "invalid_token"


def test_unsigned_token_is_rejected(user):
    token = jwt.encode({"sub": user.user_id, "exp": utc_now() + timedelta(hours=1)}, None, algorithm="none")

    assert verify_access_token(token).error == "invalid_token"


def test_audience_enforced_when_configured(user, test_settings, monkeypatch):
    token = issue_access_token(user)
    monkeypatch.setattr(test_settings, "JWT_AUDIENCE", "assetgate")

    assert verify_access_token(token).error == "invalid_token"
    assert verify_access_token(issue_access_token(user)).ok


def test_unconfigured_secret(user, test_settings, monkeypatch):
    token = issue_access_token(user)
    monkeypatch.setattr(test_settings, "JWT_SECRET", None)

    assert verify_access_token(token).error == "auth_not_configured"
