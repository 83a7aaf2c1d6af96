from datetime import timedelta

import pytest
from fastapi import HTTPException

import orgbilling.main as billing_main


def test_get_current_user_missing_cookie_is_unauthorized():
    with pytest.raises(HTTPException) as excinfo:
        billing_main.get_current_user(None)

    assert excinfo.value.status_code == 401


def test_resolve_user_invalid_token_returns_none():
    assert billing_main.resolve_user_from_session_token("not-a-valid-token") is None


def test_resolve_user_expired_token_returns_none(monkeypatch):
    expired_token = billing_main.create_access_token(subject="user-42", expires_delta=timedelta(minutes=-5))

    def _unexpected_lookup(_user_id: str):
        raise AssertionError("get_member_by_user_id should not be called for expired tokens")

    monkeypatch.setattr(billing_main, "get_member_by_user_id", _unexpected_lookup)

    assert billing_main.resolve_user_from_session_token(expired_token) is None


def test_get_current_user_valid_token_returns_member(monkeypatch):
    member = billing_main.CurrentUser(id="user-42", organization_id="org-1", role="owner")
    monkeypatch.setattr(
        billing_main,
        "get_member_by_user_id",
        lambda user_id: member if user_id == "user-42" else None,
    )

    token = billing_main.create_access_token(subject=member.id)

    assert billing_main.get_current_user(token) is member


def test_get_current_user_for_inactive_member_is_unauthorized(monkeypatch):
    monkeypatch.setattr(billing_main, "get_member_by_user_id", lambda user_id: None)
    token = billing_main.create_access_token(subject="user-removed")

    with pytest.raises(HTTPException) as excinfo:
        billing_main.get_current_user(token)

    assert excinfo.value.status_code == 401


def test_importing_app_does_not_start_grace_sweep():
    from orgbilling import grace_sweep

    assert grace_sweep._worker is None


def test_app_context_delegates_to_registered_resolver(monkeypatch):
    from orgbilling import app_context

    monkeypatch.setattr(app_context, "_get_current_user", None)
    with pytest.raises(RuntimeError, match="get_current_user"):
        app_context.get_current_user(session_token="token")

    monkeypatch.setattr(app_context, "_get_current_user", lambda session_token=None: session_token)
    assert app_context.get_current_user(session_token="token") == "token"
