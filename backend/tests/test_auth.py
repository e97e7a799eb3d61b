"""
Authentication tests.

Verifies:
- Registration issues a session token
- Login/logout/me round trip
- Failed logins warn, then lock the account
"""

from storefront.services import auth_service, login_throttle_service


def _register(client, email="asha@example.com", password="Password123!"):
    return client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "display_name": "Asha"},
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:

    def test_register_returns_token(self, client, db_session):
        resp = _register(client)

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["user"]["email"] == "asha@example.com"
        assert body["user"]["role"] == "customer"
        assert body["token"]

        me = client.get("/api/auth/me", headers=_bearer(body["token"]))
        assert me.get_json()["user"]["display_name"] == "Asha"

    def test_weak_password(self, client, db_session):
        resp = _register(client, password="password")
        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "VALIDATION"

    def test_duplicate_email(self, client, db_session):
        _register(client)
        resp = _register(client, email="ASHA@example.com")
        assert resp.status_code == 409

    def test_missing_fields(self, client, db_session):
        resp = client.post("/api/auth/register", json={"email": "asha@example.com"})
        assert resp.status_code == 400


class TestLogin:

    def test_login_and_logout(self, client, db_session):
        _register(client)

        resp = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "Password123!"})
        assert resp.status_code == 200
        token = resp.get_json()["token"]

        assert client.post("/api/auth/logout", headers=_bearer(token)).status_code == 200
        assert client.get("/api/auth/me", headers=_bearer(token)).status_code == 401

    def test_wrong_password(self, client, db_session):
        _register(client)
        resp = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "Wrong123!"})
        assert resp.status_code == 401
        assert "warning" not in resp.get_json()

    def test_provider_account_has_no_password(self, db_session, customer):
        assert auth_service.authenticate(customer.email, "Password123!") is None

    def test_lockout_after_repeated_failures(self, client, db_session):
        _register(client)
        bad = {"email": "asha@example.com", "password": "Wrong123!"}

        statuses = [
            client.post("/api/auth/login", json=bad).status_code
            for _ in range(login_throttle_service.MAX_FAILED_ATTEMPTS)
        ]
        assert statuses[:-1] == [401] * (login_throttle_service.MAX_FAILED_ATTEMPTS - 1)
        assert statuses[-1] == 429

        # Correct password is refused while locked
        resp = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "Password123!"})
        assert resp.status_code == 429
        assert resp.get_json()["locked"] is True

    def test_warning_before_lockout(self, client, db_session):
        _register(client)
        bad = {"email": "asha@example.com", "password": "Wrong123!"}
        for _ in range(login_throttle_service.MAX_FAILED_ATTEMPTS - 3):
            resp = client.post("/api/auth/login", json=bad)
        assert resp.get_json()["warning"] == "3 attempts remaining before account lockout"
