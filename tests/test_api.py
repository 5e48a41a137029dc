"""End-to-end tests for the HTTP API."""

import smtplib

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_PASSWORD
from tenantauth.api.main import create_app
from tenantauth.core.config import Config
from tenantauth.security.two_factor import TOTPGenerator
from tenantauth.storage.models import Role


@pytest.fixture
def app(store):
    """Application sharing the test store, without file logging."""
    config = Config()
    config.set("auth.secret_key", "api-test-secret")
    config.set("email.enabled", False)
    return create_app(config, db_path=str(store.db_path), configure_logging=False)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def login(app):
    """Factory returning a client signed in as ``user``."""

    def _login(user, **extra):
        client = TestClient(app)
        response = client.post(
            "/api/auth/login", json={"email": user.email, "password": TEST_PASSWORD, **extra}
        )
        assert response.status_code == 200, response.text
        return client

    return _login


def _wrong(code: str) -> str:
    return str((int(code) + 500_000) % 1_000_000).zfill(6)


class TestHealth:
    """Service metadata."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAccounts:
    """Signup, login and session lifecycle."""

    def test_signup(self, client):
        response = client.post(
            "/api/auth/signup",
            json={"email": "New@Example.com", "password": "long enough pw", "name": "New"},
        )
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["email"] == "new@example.com"
        assert user["role"] == "user"
        assert "password_hash" not in user

    def test_signup_duplicate(self, client, make_user):
        existing = make_user()
        response = client.post(
            "/api/auth/signup", json={"email": existing.email, "password": "long enough pw"}
        )
        assert response.status_code == 409

    def test_signup_weak_password(self, client):
        response = client.post("/api/auth/signup", json={"email": "a@example.com", "password": "x"})
        assert response.status_code == 400

    def test_invalid_body(self, client):
        response = client.post("/api/auth/signup", json={"email": "not-an-email", "password": "p"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"

    def test_malformed_json(self, client):
        response = client.post(
            "/api/auth/login", content=b"{nope", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Request body must be valid JSON"

    def test_login_sets_cookie_and_me(self, client, make_user):
        user = make_user()
        response = client.post(
            "/api/auth/login", json={"email": user.email, "password": TEST_PASSWORD}
        )
        assert response.status_code == 200
        assert "session_token" in response.cookies
        assert response.json()["user"]["user_id"] == user.user_id

        me = client.get("/api/auth/me").json()
        assert me["user"]["email"] == user.email
        assert me["organizations"] == []
        assert me["twoFactorEnabled"] is False

    def test_bad_password(self, client, make_user):
        user = make_user()
        response = client.post("/api/auth/login", json={"email": user.email, "password": "wrong"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid email or password"}

    def test_me_requires_session(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized - Authentication required"

    def test_logout_revokes_session(self, app, login, make_user):
        client = login(make_user())
        token = client.cookies.get("session_token")
        assert client.post("/api/auth/logout").json() == {"success": True}

        replay = TestClient(app).get("/api/auth/me", headers={"Cookie": f"session_token={token}"})
        assert replay.status_code == 401


class TestAdministration:
    """Role-gated administrative endpoints."""

    def test_user_can_manage_own_keys_but_not_users(self, login, make_user):
        user = make_user()
        client = login(user)

        assert client.post("/api/dev/api-keys", json={"name": "mine"}).status_code == 201

        response = client.patch(f"/api/admin/users/{user.user_id}", json={"role": "admin"})
        assert response.status_code == 403
        assert response.json()["required"] == "user:update:all"
        assert response.json()["current"] == "user"

        assert client.get("/api/admin/audit-logs").status_code == 403

    def test_admin_reads_audit_log(self, login, make_user):
        client = login(make_user(role=Role.ADMIN))
        body = client.get("/api/admin/audit-logs", params={"action": "login"}).json()
        assert body["count"] == 1
        assert body["logs"][0]["action"] == "login"

    def test_admin_lists_users(self, login, make_user):
        make_user()
        client = login(make_user(role=Role.ADMIN))
        users = client.get("/api/admin/users").json()["users"]
        assert len(users) == 2
        assert all("password_hash" not in u for u in users)

    def test_admin_cannot_touch_super_admin(self, login, make_user):
        root = make_user(role=Role.SUPER_ADMIN)
        client = login(make_user(role=Role.ADMIN))

        response = client.patch(f"/api/admin/users/{root.user_id}", json={"isActive": False})
        assert response.status_code == 403
        target = make_user()
        response = client.patch(f"/api/admin/users/{target.user_id}", json={"role": "super_admin"})
        assert response.status_code == 403

    def test_super_admin_changes_roles(self, login, make_user):
        target = make_user(role=Role.ADMIN)
        client = login(make_user(role=Role.SUPER_ADMIN))

        response = client.patch(f"/api/admin/users/{target.user_id}", json={"role": "user"})
        assert response.status_code == 200
        assert response.json()["user"]["role"] == "user"

    def test_deactivated_user_loses_session(self, app, login, make_user):
        target = make_user()
        target_client = login(target)
        admin = login(make_user(role=Role.ADMIN))

        response = admin.patch(f"/api/admin/users/{target.user_id}", json={"isActive": False})
        assert response.json()["user"]["is_active"] is False
        assert target_client.get("/api/auth/me").status_code == 401

    def test_unknown_user(self, login, make_user):
        client = login(make_user(role=Role.ADMIN))
        assert client.patch("/api/admin/users/user_nope", json={"role": "user"}).status_code == 404


class TestTwoFactorFlow:
    """Enrollment, login with a second factor and lockout."""

    def _enroll(self, client):
        setup = client.post("/api/2fa/setup").json()
        totp = TOTPGenerator(secret=setup["secret"])
        response = client.post(
            "/api/2fa/verify", json={"code": totp.generate(), "action": "enable"}
        )
        assert response.json() == {"success": True, "backupCodeUsed": False}
        return totp, setup

    def test_setup_payload(self, login, make_user):
        user = make_user()
        setup = login(user).post("/api/2fa/setup").json()

        assert setup["provisioningUri"].startswith("otpauth://totp/")
        assert setup["qrCodeUrl"].startswith("data:image/png;base64,")
        assert len(setup["backupCodes"]) == 10

    def test_login_requires_second_factor(self, app, login, make_user):
        user = make_user()
        totp, setup = self._enroll(login(user))

        client = TestClient(app)
        response = client.post(
            "/api/auth/login", json={"email": user.email, "password": TEST_PASSWORD}
        )
        assert response.status_code == 401
        assert response.json()["requiresTwoFactor"] is True

        response = client.post(
            "/api/auth/login",
            json={"email": user.email, "password": TEST_PASSWORD, "totpCode": totp.generate()},
        )
        assert response.status_code == 200

        status = client.get("/api/2fa/status").json()
        assert status == {"isEnabled": True, "hasBackupCodes": True, "backupCodesCount": 10}

    def test_backup_code_login(self, app, login, make_user):
        user = make_user()
        _, setup = self._enroll(login(user))

        client = login(user, code=setup["backupCodes"][0])
        assert client.get("/api/2fa/status").json()["backupCodesCount"] == 9

    def test_wrong_codes_lock_the_account(self, app, login, make_user):
        user = make_user()
        client = login(user)
        totp, _ = self._enroll(client)
        bad = _wrong(totp.generate())

        for remaining in (4, 3, 2, 1):
            response = client.post("/api/2fa/verify", json={"code": bad})
            assert response.status_code == 400
            assert response.json()["remaining"] == remaining

        response = client.post("/api/2fa/verify", json={"code": bad})
        assert response.status_code == 429
        assert response.json()["isLocked"] is True
        assert int(response.headers["Retry-After"]) > 0

        response = TestClient(app).post(
            "/api/auth/login",
            json={"email": user.email, "password": TEST_PASSWORD, "code": totp.generate()},
        )
        assert response.status_code == 429

    def test_enable_before_setup(self, login, make_user):
        response = login(make_user()).post(
            "/api/2fa/verify", json={"token": "123456", "action": "enable"}
        )
        assert response.status_code == 400

    def test_disable(self, login, make_user):
        client = login(make_user())
        self._enroll(client)

        assert client.post("/api/2fa/disable").json() == {"success": True}
        assert client.get("/api/2fa/status").json()["isEnabled"] is False

    def test_disable_without_setup(self, login, make_user):
        assert login(make_user()).post("/api/2fa/disable").status_code == 400

    def test_regenerate_backup_codes(self, login, make_user):
        client = login(make_user())
        _, setup = self._enroll(client)

        codes = client.post("/api/2fa/backup-codes").json()["backupCodes"]
        assert len(codes) == 10
        assert set(codes).isdisjoint(setup["backupCodes"])


class TestApiKeys:
    """Developer key management and bearer access."""

    def test_create_and_use(self, client, login, make_user):
        user = make_user()
        owner = login(user)
        created = owner.post(
            "/api/dev/api-keys", json={"name": "CI", "permissions": ["apiKey:read"]}
        ).json()
        assert created["key"].startswith("sk_")
        assert "hashed_key" not in created["apiKey"]

        response = client.get(
            "/api/v1/whoami", headers={"Authorization": f"Bearer {created['key']}"}
        )
        assert response.status_code == 200
        assert response.json()["userId"] == user.user_id
        assert response.json()["permissions"] == ["apiKey:read"]

    def test_whoami_requires_key(self, client):
        response = client.get("/api/v1/whoami")
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized - Valid API key required"

    def test_key_without_permission(self, client, login, make_user):
        owner = login(make_user())
        key = owner.post(
            "/api/dev/api-keys", json={"name": "narrow", "permissions": ["billing:read"]}
        ).json()["key"]

        response = client.get("/api/v1/whoami", headers={"Authorization": f"Bearer {key}"})
        assert response.status_code == 403
        assert response.json()["required"] == "apiKey:read"

    def test_rotation_invalidates_old_key(self, client, login, make_user):
        owner = login(make_user())
        created = owner.post("/api/dev/api-keys", json={"name": "CI", "permissions": ["*"]}).json()
        key_id = created["apiKey"]["key_id"]

        rotated = owner.post(f"/api/dev/api-keys/{key_id}/rotate").json()
        assert rotated["key"] != created["key"]

        old = client.get("/api/v1/whoami", headers={"Authorization": f"Bearer {created['key']}"})
        new = client.get("/api/v1/whoami", headers={"Authorization": f"Bearer {rotated['key']}"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_list_update_delete(self, login, make_user):
        owner = login(make_user())
        key_id = owner.post(
            "/api/dev/api-keys", json={"name": "CI", "expiresAt": "2099-01-01T00:00:00Z"}
        ).json()["apiKey"]["key_id"]

        keys = owner.get("/api/dev/api-keys").json()["apiKeys"]
        assert [k["key_id"] for k in keys] == [key_id]

        updated = owner.put(
            f"/api/dev/api-keys/{key_id}", json={"name": "renamed", "expiresAt": None}
        ).json()["apiKey"]
        assert updated["name"] == "renamed"
        assert updated["expires_at"] is None

        assert owner.delete(f"/api/dev/api-keys/{key_id}").json() == {"success": True}
        assert owner.get(f"/api/dev/api-keys/{key_id}").status_code == 404

    def test_expiry_without_offset_is_utc(self, client, login, make_user):
        owner = login(make_user())
        created = owner.post(
            "/api/dev/api-keys",
            json={"name": "CI", "permissions": ["*"], "expiresAt": "2099-01-01T00:00:00"},
        )
        assert created.status_code == 201
        key = created.json()["key"]
        key_id = created.json()["apiKey"]["key_id"]
        bearer = {"Authorization": f"Bearer {key}"}

        assert client.get("/api/v1/whoami", headers=bearer).status_code == 200

        updated = owner.put(
            f"/api/dev/api-keys/{key_id}", json={"expiresAt": "2098-06-01T12:00:00"}
        )
        assert updated.status_code == 200
        assert client.get("/api/v1/whoami", headers=bearer).status_code == 200

        owner.put(f"/api/dev/api-keys/{key_id}", json={"expiresAt": "2000-01-01T00:00:00"})
        assert client.get("/api/v1/whoami", headers=bearer).status_code == 401

    def test_other_users_key(self, login, make_user):
        owner = login(make_user())
        key_id = owner.post("/api/dev/api-keys", json={"name": "CI"}).json()["apiKey"]["key_id"]

        response = login(make_user()).get(f"/api/dev/api-keys/{key_id}")
        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"

        admin = login(make_user(role=Role.ADMIN))
        assert admin.get(f"/api/dev/api-keys/{key_id}").status_code == 200

    def test_organization_key_requires_membership(self, login, make_user):
        owner = login(make_user())
        org_id = owner.post(
            "/api/organizations", json={"name": "Acme", "slug": "acme"}
        ).json()["organization"]["organization_id"]

        assert owner.post(
            "/api/dev/api-keys", json={"name": "org", "organizationId": org_id}
        ).status_code == 201
        outsider = login(make_user())
        response = outsider.post(
            "/api/dev/api-keys", json={"name": "org", "organizationId": org_id}
        )
        assert response.status_code == 403


class TestNotifications:
    """Welcome and lockout emails are sent without blocking the request."""

    @pytest.fixture
    def sent(self, app, monkeypatch):
        notifier = app.state.services.notifier
        outbox = []
        monkeypatch.setattr(notifier, "enabled", True)
        monkeypatch.setattr(notifier, "_send_smtp", outbox.append)
        return outbox

    def _enroll(self, client):
        setup = client.post("/api/2fa/setup").json()
        totp = TOTPGenerator(secret=setup["secret"])
        client.post("/api/2fa/verify", json={"code": totp.generate(), "action": "enable"})
        return totp

    def _alerts(self, sent):
        return [msg for msg in sent if msg["Subject"].startswith("Security alert")]

    def test_signup_sends_welcome(self, client, sent):
        response = client.post(
            "/api/auth/signup",
            json={"email": "new@example.com", "password": "long enough pw", "name": "New"},
        )
        assert response.status_code == 201
        assert [(msg["To"], msg["Subject"]) for msg in sent] == [
            ("new@example.com", "Welcome! Your account is ready")
        ]

    def test_signup_survives_smtp_failure(self, app, client, monkeypatch):
        notifier = app.state.services.notifier

        def refuse(msg):
            raise smtplib.SMTPException("relay refused")

        monkeypatch.setattr(notifier, "enabled", True)
        monkeypatch.setattr(notifier, "_send_smtp", refuse)
        response = client.post(
            "/api/auth/signup", json={"email": "new@example.com", "password": "long enough pw"}
        )
        assert response.status_code == 201

    def test_two_factor_lockout_alerts_once(self, login, make_user, sent):
        user = make_user()
        client = login(user)
        bad = _wrong(self._enroll(client).generate())

        for _ in range(5):
            response = client.post("/api/2fa/verify", json={"code": bad})
        assert response.status_code == 429

        alerts = self._alerts(sent)
        assert len(alerts) == 1
        assert alerts[0]["To"] == user.email

        client.post("/api/2fa/verify", json={"code": bad})
        assert len(self._alerts(sent)) == 1

    def test_login_lockout_alerts_on_locking_attempt(self, app, login, make_user, sent):
        user = make_user()
        bad = _wrong(self._enroll(login(user)).generate())
        client = TestClient(app)
        credentials = {"email": user.email, "password": TEST_PASSWORD, "code": bad}

        for _ in range(4):
            assert client.post("/api/auth/login", json=credentials).status_code == 400
        assert self._alerts(sent) == []

        assert client.post("/api/auth/login", json=credentials).status_code == 429
        assert [msg["To"] for msg in self._alerts(sent)] == [user.email]

        logs = app.state.services.audit.get_audit_logs(user_id=user.user_id)
        assert "account_locked" in [log.action for log in logs]

    def test_already_locked_login_sends_nothing(self, app, login, make_user, sent):
        user = make_user()
        bad = _wrong(self._enroll(login(user)).generate())
        client = TestClient(app)
        credentials = {"email": user.email, "password": TEST_PASSWORD, "code": bad}
        for _ in range(5):
            client.post("/api/auth/login", json=credentials)

        response = client.post("/api/auth/login", json=credentials)
        assert response.status_code == 429
        assert len(self._alerts(sent)) == 1


class TestOrganizations:
    """Tenant lifecycle over HTTP."""

    @pytest.fixture
    def owner(self, make_user):
        return make_user()

    @pytest.fixture
    def owner_client(self, login, owner):
        return login(owner)

    @pytest.fixture
    def org_id(self, owner_client):
        response = owner_client.post(
            "/api/organizations", json={"name": "Acme Corp", "slug": "Acme-Corp"}
        )
        assert response.status_code == 201
        organization = response.json()["organization"]
        assert organization["slug"] == "acme-corp"
        assert organization["members"][0]["role"] == "owner"
        return organization["organization_id"]

    def _invite(self, client, org_id, email, role="member"):
        response = client.post(
            f"/api/organizations/{org_id}/invite", json={"email": email, "role": role}
        )
        assert response.status_code == 201, response.text
        assert response.json()["emailSent"] is False
        return response.json()["invite"]

    def _member_id(self, client, org_id, user_id):
        members = client.get(f"/api/organizations/{org_id}").json()["organization"]["members"]
        return next(m["member_id"] for m in members if m["user_id"] == user_id)

    def test_duplicate_and_invalid_slug(self, owner_client, org_id):
        response = owner_client.post(
            "/api/organizations", json={"name": "Again", "slug": "acme-corp"}
        )
        assert response.status_code == 409
        response = owner_client.post("/api/organizations", json={"name": "Bad", "slug": "--"})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid organization:")

    def test_listing_and_non_member(self, owner_client, org_id, login, make_user):
        listed = owner_client.get("/api/organizations").json()["organizations"]
        assert [(o["organization_id"], o["role"]) for o in listed] == [(org_id, "owner")]

        response = login(make_user()).get(f"/api/organizations/{org_id}")
        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden - Not a member of this organization"

    def test_invite_and_accept(self, owner_client, org_id, login, make_user):
        invitee = make_user()
        invite = self._invite(owner_client, org_id, invitee.email, role="admin")
        assert [i["invite_id"] for i in owner_client.get(
            f"/api/organizations/{org_id}/invites"
        ).json()["invites"]] == [invite["invite_id"]]

        invitee_client = login(invitee)
        accepted = invitee_client.post(f"/api/invites/{invite['token']}/accept")
        assert accepted.json() == {"success": True}
        again = invitee_client.post(f"/api/invites/{invite['token']}/accept")
        assert again.status_code == 400
        assert again.json()["error"] == "Invalid or expired invitation"

        me = invitee_client.get("/api/auth/me").json()
        assert me["organizations"][0]["role"] == "admin"

    def test_owner_role_cannot_be_invited(self, owner_client, org_id):
        response = owner_client.post(
            f"/api/organizations/{org_id}/invite",
            json={"email": "boss@example.com", "role": "owner"},
        )
        assert response.status_code == 400

    def test_member_cannot_invite(self, owner_client, org_id, login, make_user):
        member = make_user()
        invite = self._invite(owner_client, org_id, member.email)
        member_client = login(member)
        member_client.post(f"/api/invites/{invite['token']}/accept")

        response = member_client.post(
            f"/api/organizations/{org_id}/invite", json={"email": "x@example.com"}
        )
        assert response.status_code == 403

    def test_cancel_invite(self, owner_client, org_id):
        invite = self._invite(owner_client, org_id, "later@example.com")
        path = f"/api/organizations/{org_id}/invites/{invite['invite_id']}"
        assert owner_client.delete(path).json() == {"success": True}
        assert owner_client.delete(path).status_code == 404

    def test_admin_cannot_grant_ownership(self, owner, owner_client, org_id, login, make_user):
        admin = make_user()
        member = make_user()
        for user, role in ((admin, "admin"), (member, "member")):
            invite = self._invite(owner_client, org_id, user.email, role=role)
            login(user).post(f"/api/invites/{invite['token']}/accept")

        admin_client = login(admin)
        member_id = self._member_id(owner_client, org_id, member.user_id)
        path = f"/api/organizations/{org_id}/members/{member_id}"

        assert admin_client.patch(path, json={"role": "owner"}).status_code == 403
        promoted = admin_client.patch(path, json={"role": "admin"})
        assert promoted.status_code == 200
        assert promoted.json()["member"]["role"] == "admin"

        owner_member_id = self._member_id(owner_client, org_id, owner.user_id)
        response = admin_client.delete(f"/api/organizations/{org_id}/members/{owner_member_id}")
        assert response.status_code == 403

    def test_last_owner_cannot_leave(self, owner, owner_client, org_id):
        member_id = self._member_id(owner_client, org_id, owner.user_id)
        path = f"/api/organizations/{org_id}/members/{member_id}"

        assert owner_client.patch(path, json={"role": "member"}).status_code == 400
        assert owner_client.delete(path).status_code == 400

    def test_update_and_delete(self, owner_client, org_id):
        response = owner_client.put(
            f"/api/organizations/{org_id}", json={"description": "Widgets"}
        )
        assert response.json()["organization"]["description"] == "Widgets"

        assert owner_client.delete(f"/api/organizations/{org_id}").json() == {"success": True}
        assert owner_client.get(f"/api/organizations/{org_id}").status_code == 403
