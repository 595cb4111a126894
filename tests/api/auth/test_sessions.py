from jose import jwt
from tests.conftest import SECRET_KEY


async def test_start_session_success(client, internal_headers, store):
    response = await client.post(
        "/auth/sessions",
        json={"subject_id": "user-1", "claims": {"role": "customer"}},
        headers=internal_headers,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["token_type"] == "bearer"
    assert data["session_id"]
    assert "access_token_expires_at" in data

    payload = jwt.decode(data["access_token"], SECRET_KEY, algorithms=["HS256"],
                         options={"verify_exp": False})
    assert payload["sub"] == "user-1"
    assert payload["role"] == "customer"
    assert store.get(data["session_id"]).subject_id == "user-1"


async def test_start_session_requires_internal_key(client):
    response = await client.post("/auth/sessions", json={"subject_id": "user-1"})

    assert response.status_code == 401
    assert "required" in response.json()["detail"].lower()


async def test_start_session_rejects_wrong_internal_key(client, store):
    response = await client.post(
        "/auth/sessions",
        json={"subject_id": "user-1"},
        headers={"X-Internal-Api-Key": "not-the-key"},
    )

    assert response.status_code == 401
    assert store.list_for_subject("user-1") == []


async def test_start_session_blank_subject(client, internal_headers):
    response = await client.post("/auth/sessions", json={"subject_id": "   "}, headers=internal_headers)

    assert response.status_code == 422


async def test_list_sessions(client, internal_headers, signed_in):
    await client.post("/auth/sessions", json={"subject_id": "user-1"}, headers=internal_headers)
    await client.post("/auth/sessions", json={"subject_id": "user-2"}, headers=internal_headers)

    response = await client.get(
        "/auth/sessions",
        headers={"Authorization": f"Bearer {signed_in['access_token']}"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["subject_id"] == "user-1"
    assert len(data["sessions"]) == 2
    assert signed_in["session_id"] in [s["session_id"] for s in data["sessions"]]
    # Hashes never leave the service
    assert "refresh_token_hash" not in data["sessions"][0]


async def test_list_sessions_requires_access_token(client, signed_in):
    response = await client.get("/auth/sessions")
    # 401 or 403 depending on the FastAPI version
    assert response.status_code in (401, 403)

    response = await client.get(
        "/auth/sessions",
        headers={"Authorization": f"Bearer {signed_in['refresh_token']}"},
    )
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_TOKEN"


async def test_list_sessions_with_expired_access_token(client, signed_in, clock):
    clock.advance(16 * 60)

    response = await client.get(
        "/auth/sessions",
        headers={"Authorization": f"Bearer {signed_in['access_token']}"},
    )

    assert response.status_code == 401
    assert "expired" in response.json()["detail"].lower()
