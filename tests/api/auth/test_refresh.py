from jose import jwt
from tests.conftest import SECRET_KEY


def refresh_body(tokens):
    return {"session_id": tokens["session_id"], "refresh_token": tokens["refresh_token"]}


async def test_refresh_token_success(client, signed_in):
    """Test successful token refresh with valid refresh token."""
    response = await client.post("/auth/refresh", json=refresh_body(signed_in))

    assert response.status_code == 200
    new_tokens = response.json()
    assert new_tokens["token_type"] == "bearer"
    assert new_tokens["session_id"] == signed_in["session_id"]
    assert new_tokens["refresh_token"] != signed_in["refresh_token"]

    # Custom claims survive the rotation
    payload = jwt.decode(new_tokens["access_token"], SECRET_KEY, algorithms=["HS256"],
                         options={"verify_exp": False})
    assert payload["sub"] == "user-1"
    assert payload["role"] == "customer"
    assert payload["type"] == "access"


async def test_replay_within_leeway_returns_current_pair(client, signed_in):
    first = await client.post("/auth/refresh", json=refresh_body(signed_in))
    second = await client.post("/auth/refresh", json=refresh_body(signed_in))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["refresh_token"] == first.json()["refresh_token"]


async def test_replay_after_leeway_revokes_all_sessions(client, signed_in, internal_headers, clock, store):
    other = await client.post("/auth/sessions", json={"subject_id": "user-1"}, headers=internal_headers)
    rotated = await client.post("/auth/refresh", json=refresh_body(signed_in))
    assert rotated.status_code == 200

    clock.advance(120)

    response = await client.post("/auth/refresh", json=refresh_body(signed_in))

    assert response.status_code == 401
    assert response.json()["code"] == "TOKEN_REUSE_DETECTED"
    assert store.list_for_subject("user-1") == []

    # The other device is signed out as well
    response = await client.post("/auth/refresh", json=refresh_body(other.json()))
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


async def test_refresh_unknown_session(client, issuer):
    issued = issuer.issue("user-1", "missing-session")

    response = await client.post("/auth/refresh", json=refresh_body(issued.pair.model_dump()))

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


async def test_refresh_invalid_token_format(client):
    response = await client.post("/auth/refresh", json={
        "session_id": "session-1",
        "refresh_token": "invalid_token_format"
    })

    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


async def test_refresh_with_access_token(client, signed_in):
    response = await client.post("/auth/refresh", json={
        "session_id": signed_in["session_id"],
        "refresh_token": signed_in["access_token"]
    })

    assert response.status_code == 401
    assert "type" in response.json()["detail"].lower()


async def test_refresh_expired_token(client, signed_in, clock):
    clock.advance(8 * 24 * 3600)

    response = await client.post("/auth/refresh", json=refresh_body(signed_in))

    assert response.status_code == 401
    assert "expired" in response.json()["detail"].lower()


async def test_refresh_validation_errors(client):
    response = await client.post("/auth/refresh", json={})
    assert response.status_code == 422

    response = await client.post("/auth/refresh", json={"session_id": "session-1", "refresh_token": ""})
    assert response.status_code == 422


async def test_refresh_busy_session_is_retryable(client, signed_in, leases):
    leases.provider.acquire(signed_in["session_id"], 60_000)

    response = await client.post("/auth/refresh", json=refresh_body(signed_in))

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["code"] == "LOCK_TIMEOUT"


async def test_two_tabs_refresh_after_access_expiry(client, signed_in, clock, store):
    clock.advance(16 * 60)

    first = await client.post("/auth/refresh", json=refresh_body(signed_in))
    second = await client.post("/auth/refresh", json=refresh_body(signed_in))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["refresh_token"] == first.json()["refresh_token"]
    assert store.get(signed_in["session_id"]) is not None
