from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import httpx
import pytest
from cryptography.exceptions import InvalidTag
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from supportbridge.core.config import get_settings
from supportbridge.core.crypto import decrypt_token, encrypt_token, installation_token_aad
from supportbridge.core.http import get_http_client
from supportbridge.main import create_app
from supportbridge.models.enums import Platform
from supportbridge.models.identity import Account, Installation
from supportbridge.models.oauth import OAuthState
from supportbridge.services.installations import installation_context


def test_token_encryption_is_bound_to_installation() -> None:
    account_id = uuid4()
    aad = installation_token_aad(account_id=account_id, platform="slack")
    blob = encrypt_token(token="xoxb-secret", aad=aad)

    assert b"xoxb-secret" not in blob
    assert decrypt_token(blob=blob, aad=aad) == "xoxb-secret"
    with pytest.raises(InvalidTag):
        decrypt_token(blob=blob, aad=installation_token_aad(account_id=account_id, platform="discord"))


def _slack_oauth_api(request: httpx.Request) -> httpx.Response:
    assert request.url.path.endswith("/oauth.v2.access")
    return httpx.Response(
        200,
        json={
            "ok": True,
            "access_token": "xoxb-installed",
            "scope": "chat:write,users:read",
            "bot_user_id": "UBOT",
            "team": {"id": f"T{uuid4().hex[:8]}", "name": "Acme"},
        },
    )


@pytest.fixture()
def client(monkeypatch, db_session: Session) -> TestClient:
    monkeypatch.setenv("FRONTEND_URL", "https://app.example.com")
    get_settings.cache_clear()
    app = create_app()

    def _mock_http_client():
        with httpx.Client(transport=httpx.MockTransport(_slack_oauth_api)) as c:
            yield c

    app.dependency_overrides[get_http_client] = _mock_http_client
    return TestClient(app, follow_redirects=False)


def _pending_state(db_session: Session, *, expires_in: timedelta = timedelta(minutes=10)) -> OAuthState:
    account = Account(name="OAuth account")
    db_session.add(account)
    db_session.flush()
    state = OAuthState(
        account_id=account.id,
        platform=Platform.slack,
        state=uuid4().hex,
        expires_at=datetime.now(UTC) + expires_in,
    )
    db_session.add(state)
    db_session.commit()
    return state


def test_slack_callback_stores_encrypted_installation(client: TestClient, db_session: Session) -> None:
    state = _pending_state(db_session)

    res = client.get("/slack/oauth/callback", params={"code": "abc", "state": state.state})
    assert res.status_code == 302
    assert res.headers["location"] == (
        "https://app.example.com/settings/integrations?platform=slack&status=installed"
    )

    db_session.expire_all()
    installation = db_session.execute(
        select(Installation).where(Installation.account_id == state.account_id)
    ).scalars().one()
    assert installation.bot_user_id == "UBOT"
    assert installation.encrypted_access_token is not None
    assert b"xoxb-installed" not in installation.encrypted_access_token
    assert installation_context(installation).access_token == "xoxb-installed"
    assert db_session.get(Account, state.account_id).active_platform == Platform.slack

    replay = client.get("/slack/oauth/callback", params={"code": "abc", "state": state.state})
    assert replay.status_code == 400


def test_expired_state_is_rejected(client: TestClient, db_session: Session) -> None:
    state = _pending_state(db_session, expires_in=timedelta(minutes=-1))
    res = client.get("/slack/oauth/callback", params={"code": "abc", "state": state.state})
    assert res.status_code == 400


def test_denied_consent_redirects_back(client: TestClient) -> None:
    res = client.get("/slack/oauth/callback", params={"error": "access_denied"})
    assert res.status_code == 302
    assert res.headers["location"].endswith("?platform=slack&status=denied")
