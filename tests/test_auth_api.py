from datetime import timedelta

from conftest import PASSWORD, auth_headers


def test_register_returns_tokens_and_profile(api, client):
    data = api.register("alice")

    assert data["user"]["username"] == "alice"
    assert data["user"]["isAdmin"] is False
    assert data["accessToken"] and data["refreshToken"]
    assert "passwordHash" not in data["user"]

    me = client.get("/api/me", headers=auth_headers(data["accessToken"]))
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "alice@example.com"


def test_register_duplicate_username(api, client):
    api.register("alice")

    response = client.post("/api/register", json={
        "username": "alice", "email": "other@example.com", "password": PASSWORD,
    })

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["details"]["code"] == "conflict"


def test_register_weak_password(client):
    response = client.post("/api/register", json={
        "username": "bob", "email": "bob@example.com", "password": "short",
    })

    assert response.status_code == 422
    assert response.json()["details"]["code"] == "validation_error"


def test_register_escapes_names(api, client):
    response = client.post("/api/register", json={
        "username": "carol", "email": "carol@example.com", "password": PASSWORD,
        "firstName": "<script>x</script>",
    })

    assert response.status_code == 201
    assert response.json()["data"]["user"]["firstName"] == "&lt;script&gt;x&lt;/script&gt;"


def test_login(api):
    api.register("alice")

    data = api.login("alice")

    assert data["user"]["username"] == "alice"
    assert data["tokenType"] == "bearer"


def test_login_wrong_password(api, client):
    api.register("alice")

    response = client.post("/api/login", json={"username": "alice", "password": "Wrong1234"})

    assert response.status_code == 401
    assert response.json()["details"]["code"] == "invalid_credentials"
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_token_responses_are_not_cached(api, client):
    response = client.post("/api/login", json={"username": "admin", "password": "AdminPass1"})

    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Request-ID" in response.headers


def test_me_requires_token(client):
    response = client.get("/api/me")

    assert response.status_code == 401
    assert response.json()["error"] == "Not authenticated"


def test_me_rejects_malformed_header(client):
    response = client.get("/api/me", headers={"Authorization": "Token abc"})

    assert response.status_code == 401
    assert response.json()["details"]["code"] == "invalid_token"


def test_expired_access_token(api, client, tokens, storage):
    api.register("alice")
    user = next(u for u in storage.users.values() if u.username == "alice")
    pair = tokens.issue_token_pair(user, access_expires=timedelta(seconds=-1))

    response = client.get("/api/me", headers=auth_headers(pair.access_token))

    assert response.status_code == 401
    assert response.json()["details"]["code"] == "invalid_token"


def test_refresh_rotates_pair(api, client):
    data = api.register("alice")

    response = client.post("/api/refresh", json={"refreshToken": data["refreshToken"]})

    assert response.status_code == 200
    rotated = response.json()["data"]
    assert rotated["accessToken"] != data["accessToken"]
    assert rotated["refreshToken"] != data["refreshToken"]
    assert client.get("/api/me", headers=auth_headers(rotated["accessToken"])).status_code == 200


def test_refresh_rejects_access_token(api, client):
    data = api.register("alice")

    response = client.post("/api/refresh", json={"refreshToken": data["accessToken"]})

    assert response.status_code == 401


def test_logout_everywhere_revokes_tokens(api, client):
    data = api.register("alice")
    headers = auth_headers(data["accessToken"])

    response = client.post("/api/logout", json={"everywhere": True}, headers=headers)

    assert response.status_code == 200
    assert client.get("/api/me", headers=headers).status_code == 401
    refresh = client.post("/api/refresh", json={"refreshToken": data["refreshToken"]})
    assert refresh.status_code == 401
    assert refresh.json()["error"] == "Token has been revoked"


def test_plain_logout_keeps_tokens_valid(api, client):
    data = api.register("alice")
    headers = auth_headers(data["accessToken"])

    assert client.post("/api/logout", headers=headers).status_code == 200
    assert client.get("/api/me", headers=headers).status_code == 200


def test_update_profile(api, client):
    headers = api.headers("alice")

    response = client.put("/api/me", json={"firstName": "Alice", "preferredLanguage": "fr"}, headers=headers)

    assert response.status_code == 200
    profile = response.json()["data"]
    assert profile["firstName"] == "Alice"
    assert profile["preferredLanguage"] == "fr"


def test_update_profile_email_taken(api, client):
    api.register("bob")
    headers = api.headers("alice")

    response = client.put("/api/me", json={"email": "bob@example.com"}, headers=headers)

    assert response.status_code == 400
    assert response.json()["details"]["code"] == "conflict"


def test_change_password_revokes_other_sessions(api, client):
    data = api.register("alice")
    old_headers = auth_headers(data["accessToken"])

    response = client.post(
        "/api/me/password", json={"currentPassword": PASSWORD, "newPassword": "Changed456"}, headers=old_headers
    )

    assert response.status_code == 200
    fresh = response.json()["data"]
    assert client.get("/api/me", headers=old_headers).status_code == 401
    assert client.get("/api/me", headers=auth_headers(fresh["accessToken"])).status_code == 200
    assert api.login("alice", "Changed456")["user"]["username"] == "alice"


def test_change_password_wrong_current(api, client):
    headers = api.headers("alice")

    response = client.post(
        "/api/me/password", json={"currentPassword": "Nope12345", "newPassword": "Changed456"}, headers=headers
    )

    assert response.status_code == 401


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] == "connected"


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/nothing-here")

    assert response.status_code == 404
    assert response.json()["success"] is False
