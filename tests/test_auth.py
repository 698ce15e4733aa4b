"""Tests for authentication: password hashing, JWTs, login, MFA and logout."""

import pytest
from datetime import timedelta

from foodhub.core.security import (
    blacklist_token,
    create_access_token,
    create_mfa_token,
    decode_access_token,
    generate_otp_code,
    get_password_hash,
    verify_password,
)
from foodhub.db.base import utcnow


# ============== Password hashing ==============

class TestPasswordHashing:
    def test_hash_and_verify(self):
        h = get_password_hash("secret123")
        assert verify_password("secret123", h)

    def test_wrong_password_rejected(self):
        h = get_password_hash("secret123")
        assert not verify_password("wrong", h)

    def test_hash_is_unique(self):
        assert get_password_hash("same") != get_password_hash("same")

    def test_invalid_hash_returns_false(self):
        assert not verify_password("test", "not-a-hash")


# ============== JWT tokens ==============

class TestJWTTokens:
    def test_create_and_decode(self):
        token = create_access_token(data={"sub": "42", "email": "a@b.com", "role": "CASHIER"})
        payload = decode_access_token(token)
        assert payload["sub"] == "42"
        assert payload["role"] == "CASHIER"
        assert "jti" in payload and "exp" in payload

    def test_expired_token_rejected(self):
        token = create_access_token(data={"sub": "1"}, expires_delta=timedelta(seconds=-1))
        assert decode_access_token(token) is None

    def test_garbage_token_rejected(self):
        assert decode_access_token("not.a.token") is None

    def test_blacklisted_token_rejected(self):
        token = create_access_token(data={"sub": "1"})
        assert blacklist_token(token) is True
        assert decode_access_token(token) is None

    def test_mfa_token_is_not_an_access_token(self):
        assert decode_access_token(create_mfa_token(1)) is None

    def test_otp_is_six_digits(self):
        code = generate_otp_code()
        assert len(code) == 6 and code.isdigit()


# ============== Login ==============

class TestLogin:
    def test_login_success(self, client, owner):
        response = client.post("/api/auth/login", json={
            "email": "owner@example.com",
            "password": "testpass123",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["token_type"] == "bearer"
        assert body["data"]["user"]["role"] == "RESTAURANT_OWNER"
        assert decode_access_token(body["data"]["token"])["sub"] == str(owner.id)

    def test_wrong_password(self, client, owner):
        response = client.post("/api/auth/login", json={
            "email": "owner@example.com",
            "password": "wrong-password",
        })
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid credentials."

    def test_unknown_email(self, client):
        response = client.post("/api/auth/login", json={
            "email": "nobody@example.com",
            "password": "whatever123",
        })
        assert response.status_code == 401

    def test_inactive_user(self, client, db_session, owner):
        owner.status = "inactive"
        db_session.commit()
        response = client.post("/api/auth/login", json={
            "email": "owner@example.com",
            "password": "testpass123",
        })
        assert response.status_code == 401
        assert response.json()["detail"] == "User account is inactive"

    def test_invalid_email_format(self, client):
        response = client.post("/api/auth/login", json={"email": "not-an-email", "password": "x"})
        assert response.status_code == 422

    def test_login_stamps_last_login(self, client, db_session, owner):
        client.post("/api/auth/login", json={"email": "owner@example.com", "password": "testpass123"})
        db_session.refresh(owner)
        assert owner.last_login_at is not None


# ============== MFA ==============

class TestMfa:
    @pytest.fixture
    def mfa_owner(self, db_session, owner):
        owner.mfa_enabled = True
        db_session.commit()
        return owner

    def _challenge(self, client, db_session, user, code="123456"):
        response = client.post("/api/auth/login", json={
            "email": user.email,
            "password": "testpass123",
        })
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["mfa_required"] is True
        assert "token" not in data
        # The emailed code is random; pin it so the test can answer
        db_session.refresh(user)
        user.mfa_code_hash = get_password_hash(code)
        db_session.commit()
        return data["temp_token"]

    def test_login_returns_challenge(self, client, db_session, mfa_owner):
        temp_token = self._challenge(client, db_session, mfa_owner)
        assert temp_token
        db_session.refresh(mfa_owner)
        assert mfa_owner.mfa_code_expires_at is not None

    def test_verify_issues_access_token(self, client, db_session, mfa_owner):
        temp_token = self._challenge(client, db_session, mfa_owner)
        response = client.post("/api/auth/mfa/verify", json={"temp_token": temp_token, "otp": "123456"})
        assert response.status_code == 200
        token = response.json()["data"]["token"]
        assert decode_access_token(token)["sub"] == str(mfa_owner.id)

    def test_code_is_single_use(self, client, db_session, mfa_owner):
        temp_token = self._challenge(client, db_session, mfa_owner)
        first = client.post("/api/auth/mfa/verify", json={"temp_token": temp_token, "otp": "123456"})
        assert first.status_code == 200
        second = client.post("/api/auth/mfa/verify", json={"temp_token": temp_token, "otp": "123456"})
        assert second.status_code == 401

    def test_wrong_code_rejected(self, client, db_session, mfa_owner):
        temp_token = self._challenge(client, db_session, mfa_owner)
        response = client.post("/api/auth/mfa/verify", json={"temp_token": temp_token, "otp": "654321"})
        assert response.status_code == 401
        assert "Invalid MFA code" in response.json()["message"]

    def test_expired_code_rejected(self, client, db_session, mfa_owner):
        temp_token = self._challenge(client, db_session, mfa_owner)
        mfa_owner.mfa_code_expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()
        response = client.post("/api/auth/mfa/verify", json={"temp_token": temp_token, "otp": "123456"})
        assert response.status_code == 401

    def test_malformed_temp_token(self, client):
        response = client.post("/api/auth/mfa/verify", json={"temp_token": "abc", "otp": "123456"})
        assert response.status_code == 401

    def test_access_token_cannot_stand_in_for_temp_token(self, client, owner):
        token = create_access_token(data={"sub": str(owner.id), "role": owner.role.value})
        response = client.post("/api/auth/mfa/verify", json={"temp_token": token, "otp": "123456"})
        assert response.status_code == 401

    def test_otp_must_be_six_digits(self, client, owner):
        response = client.post("/api/auth/mfa/verify", json={
            "temp_token": create_mfa_token(owner.id),
            "otp": "12ab",
        })
        assert response.status_code == 422


# ============== Session endpoints ==============

class TestCurrentUser:
    def test_profile(self, client, owner, owner_headers):
        response = client.get("/api/user", headers=owner_headers)
        assert response.status_code == 200
        assert response.json()["email"] == "owner@example.com"

    def test_no_token(self, client):
        response = client.get("/api/user")
        assert response.status_code == 401
        assert response.json()["message"] == "Unauthenticated."

    def test_cookie_token(self, client, owner, auth_headers):
        token = auth_headers(owner)["Authorization"].split(" ", 1)[1]
        response = client.get("/api/user", headers={"Cookie": f"access_token={token}"})
        assert response.status_code == 200

    def test_disabled_user_token_rejected(self, client, db_session, owner, owner_headers):
        owner.status = "suspended"
        db_session.commit()
        assert client.get("/api/user", headers=owner_headers).status_code == 401

    def test_logout_blacklists_token(self, client, owner, owner_headers):
        response = client.post("/api/auth/logout", headers=owner_headers)
        assert response.status_code == 200
        assert client.get("/api/user", headers=owner_headers).status_code == 401


# ============== Security events ==============

class TestAuthFailuresAreTracked:
    def test_failed_login_counts_toward_brute_force(self, client, owner):
        from foodhub.core.cache import redis_cache

        for _ in range(2):
            client.post("/api/auth/login", json={"email": "owner@example.com", "password": "nope12345"})
        assert redis_cache.get("brute_force:email:owner@example.com") == 2

