"""
Bearer credential resolution.

Only a credential signed with JWT_SECRET and carrying a future exp yields a
user id; everything else is Unauthenticated.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from proaccess.core.auth import get_current_user_id, issue_token, resolve
from proaccess.core.errors import Unauthenticated


def test_issued_token_resolves_to_user():
    token = issue_token("user_u")
    assert resolve(token) == "user_u"


def test_sub_claim_is_accepted(test_settings):
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"sub": "user_sub", "exp": exp}, test_settings.JWT_SECRET, algorithm="HS256")
    assert resolve(token) == "user_sub"


def test_expired_token_rejected():
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    token = issue_token("user_u", ttl_seconds=60, now=past)
    with pytest.raises(Unauthenticated) as exc:
        resolve(token)
    assert "expired" in exc.value.message.lower()


def test_forged_token_rejected():
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"userId": "user_u", "exp": exp}, "some-other-secret-entirely", algorithm="HS256")
    with pytest.raises(Unauthenticated):
        resolve(token)


def test_token_without_exp_rejected(test_settings):
    token = jwt.encode({"userId": "user_u"}, test_settings.JWT_SECRET, algorithm="HS256")
    with pytest.raises(Unauthenticated):
        resolve(token)


def test_token_without_user_rejected(test_settings):
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    token = jwt.encode({"exp": exp}, test_settings.JWT_SECRET, algorithm="HS256")
    with pytest.raises(Unauthenticated):
        resolve(token)


@pytest.mark.parametrize("credential", [None, "", "not-a-jwt", "a.b.c"])
def test_garbage_rejected(credential):
    with pytest.raises(Unauthenticated):
        resolve(credential)


def test_missing_secret_fails_closed(monkeypatch, test_settings):
    token = issue_token("user_u")
    monkeypatch.setattr(test_settings, "JWT_SECRET", None)
    with pytest.raises(Unauthenticated):
        resolve(token)


def test_dependency_requires_bearer_prefix():
    token = issue_token("user_u")
    assert asyncio.run(get_current_user_id(f"Bearer {token}")) == "user_u"
    with pytest.raises(Unauthenticated):
        asyncio.run(get_current_user_id(token))
    with pytest.raises(Unauthenticated):
        asyncio.run(get_current_user_id(None))
