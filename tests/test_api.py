import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from portal import mailer
from portal.main import create_app
from portal.oauth import GoogleProfile
from portal.visitor_stats import visitor_id

JWT_TEST_SECRET = "api-test-signing-key-0123456789abcdef"


@pytest.fixture
def data_dir(tmp_path):
    public = tmp_path / "public"
    public.mkdir()
    (public / "index.html").write_text("<h1>login</h1>")
    (public / "home.html").write_text("<h1>home</h1>")
    (public / "about.html").write_text("<h1>about</h1>")
    (public / "common.js").write_text("// shared script")
    return tmp_path


@pytest.fixture
def client(data_dir):
    app = create_app(
        visitor_data_file=data_dir / "visitor-data.json",
        users_db_file=data_dir / "users.db",
        legacy_users_file=data_dir / "users.json",
        public_dir=data_dir / "public",
        jwt_secret=JWT_TEST_SECRET,
        bcrypt_rounds=4,
    )
    with TestClient(app, follow_redirects=False) as c:
        yield c


def _stats(client) -> dict:
    resp = client.get("/api/visitor-stats")
    assert resp.status_code == 200
    return resp.json()


def _login(client, username="analyst", password="s3cret"):
    client.app.state.users.create_user(username=username, password=password, email_verified=True)
    resp = client.post("/login", json={"username": username, "password": password})
    assert resp.status_code == 200
    return resp


# --- visitor counting -------------------------------------------------------

def test_visitor_stats_shape(client):
    data = _stats(client)
    assert set(data) == {
        "totalVisitors", "uniqueVisitors", "todayVisitors",
        "todayUniqueVisitors", "dailyStats", "lastUpdated",
    }
    assert data["totalVisitors"] == 0


def test_page_view_counted_once_per_day(client):
    for _ in range(3):
        assert client.get("/").status_code == 200
    data = _stats(client)
    assert data["totalVisitors"] == 1
    assert data["todayVisitors"] == 1
    assert data["todayUniqueVisitors"] == 1


def test_different_agents_are_different_visitors(client):
    client.get("/", headers={"User-Agent": "UA1"})
    client.get("/about", headers={"User-Agent": "UA2"})
    assert _stats(client)["uniqueVisitors"] == 2


def test_forwarded_address_identifies_visitor(client):
    client.get("/", headers={"X-Forwarded-For": "1.2.3.4, 10.0.0.1", "User-Agent": "UA1"})
    today = _stats(client)["dailyStats"]
    [bucket] = today.values()
    assert bucket["uniqueIds"] == [visitor_id("1.2.3.4", "UA1")]


def test_api_auth_and_health_are_not_page_views(client):
    client.get("/healthz")
    client.get("/api/auth-status")
    client.get("/auth/google")
    for _ in range(5):
        client.get("/api/visitor-stats")
    client.post("/login", json={})
    assert _stats(client)["totalVisitors"] == 0


def test_polling_stats_does_not_change_them(client):
    client.get("/")
    first = _stats(client)
    assert _stats(client) == first


def test_stats_failure_is_reported_as_500(client):
    with patch.object(client.app.state.tracker, "get_stats", side_effect=RuntimeError("boom")):
        resp = client.get("/api/visitor-stats")
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to get visitor statistics"}


def test_state_is_saved_on_shutdown(data_dir):
    app = create_app(
        visitor_data_file=data_dir / "visitor-data.json",
        users_db_file=data_dir / "users.db",
        public_dir=data_dir / "public",
        jwt_secret=JWT_TEST_SECRET,
    )
    with TestClient(app) as c:
        c.get("/")
    saved = json.loads((data_dir / "visitor-data.json").read_text())
    assert saved["totalVisitors"] == 1

    # a new process picks up where the last one stopped
    with TestClient(create_app(
        visitor_data_file=data_dir / "visitor-data.json",
        users_db_file=data_dir / "users.db",
        public_dir=data_dir / "public",
        jwt_secret=JWT_TEST_SECRET,
    )) as c:
        assert c.get("/api/visitor-stats").json()["totalVisitors"] == 1


# --- pages ------------------------------------------------------------------

def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.text == "ok"


def test_html_urls_redirect_to_clean_urls(client):
    resp = client.get("/index.html")
    assert resp.status_code == 301
    assert resp.headers["location"] == "/"
    resp = client.get("/about.html")
    assert resp.status_code == 301
    assert resp.headers["location"] == "/about"


def test_public_pages_and_static_files(client):
    assert "about" in client.get("/about").text
    assert client.get("/common.js").text == "// shared script"
    assert client.get("/missing").status_code == 404
    assert client.get("/api/missing").status_code == 404
    assert client.get("/../users.db").status_code == 404


def test_protected_page_requires_session(client):
    resp = client.get("/home")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/"


def test_protected_page_with_bad_token_clears_cookie(client):
    client.cookies.set("auth_token", "not-a-jwt")
    resp = client.get("/home")
    assert resp.status_code == 302
    assert "auth_token=" in resp.headers["set-cookie"]
    assert "Max-Age=0" in resp.headers["set-cookie"]


# --- login / logout ---------------------------------------------------------

def test_login_sets_session_and_serves_protected_page(client):
    resp = _login(client)
    assert resp.json() == {"success": True, "message": "Login successful"}
    assert "auth_token=" in resp.headers["set-cookie"]
    assert "httponly" in resp.headers["set-cookie"].lower()

    resp = client.get("/home")
    assert resp.status_code == 200
    assert "home" in resp.text
    # the session slides forward on every protected page view
    assert "auth_token=" in resp.headers["set-cookie"]

    status = client.get("/api/auth-status").json()
    assert status == {"authenticated": True, "username": "analyst"}


def test_login_with_form_body(client):
    client.app.state.users.create_user(username="analyst", password="s3cret")
    resp = client.post("/login", data={"username": "analyst", "password": "s3cret"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True


def test_login_requires_credentials(client):
    resp = client.post("/login", json={"username": "analyst"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_login_rejects_wrong_password(client):
    client.app.state.users.create_user(username="analyst", password="s3cret")
    resp = client.post("/login", json={"username": "analyst", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid username or password"


@pytest.mark.parametrize(
    "body",
    [
        {"username": 5, "password": "x"},
        {"email": ["a@example.org"], "password": "x"},
        {"username": "analyst", "password": 123456},
        {"username": None, "email": {"x": 1}, "password": "x"},
    ],
)
def test_login_rejects_non_string_fields(client, body):
    resp = client.post("/login", json=body)
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_verify_rejects_bad_codes(client):
    client.app.state.users.create_pending_email_user("a@example.org", "pw")
    assert client.post("/verify", json={"email": "a@example.org", "code": "ü"}).status_code == 401
    assert client.post("/verify", json={"email": "a@example.org", "code": 123456}).status_code == 400


def test_logout_by_mixed_case_email(client):
    client.app.state.users.create_user(email="a@example.org", password="pw", email_verified=True)
    assert client.post("/login", json={"email": "a@example.org", "password": "pw"}).status_code == 200
    client.cookies.clear()

    resp = client.post("/logout", json={"email": "A@Example.ORG"})
    assert resp.json()["success"] is True
    [rec] = client.app.state.users.recent_logins()
    assert rec.logout_time is not None


def test_logout_records_session_and_clears_cookie(client):
    _login(client)
    resp = client.post("/logout", json={})
    assert resp.json()["success"] is True
    assert "Max-Age=0" in resp.headers["set-cookie"]

    [rec] = client.app.state.users.recent_logins()
    assert rec.logout_time is not None
    assert rec.duration_seconds is not None

    assert client.get("/api/auth-status").json() == {"authenticated": False}
    assert client.get("/home").status_code == 302


def test_email_signup_verification_flow(client):
    sent = {}

    def _capture(to, code):
        sent[to] = code

    with patch.object(mailer, "send_verification_code", side_effect=_capture):
        resp = client.post("/login", json={"email": "new@example.org", "password": "pw"})
    assert resp.status_code == 401
    assert "verification code has been sent" in resp.json()["message"]
    code = sent["new@example.org"]

    resp = client.post("/login", json={"email": "new@example.org", "password": "pw"})
    assert resp.json()["message"] == "Please verify your email before logging in."

    resp = client.post("/login", json={"email": "new@example.org", "password": "other"})
    assert resp.json()["message"] == "Invalid password for this email"

    assert client.post("/verify", json={"email": "new@example.org", "code": "12"}).status_code == 401
    resp = client.post("/verify", json={"email": "new@example.org", "code": code})
    assert resp.status_code == 200

    resp = client.post("/login", json={"email": "new@example.org", "password": "pw"})
    assert resp.status_code == 200
    assert client.get("/api/auth-status").json()["username"] == "new@example.org"


def test_signup_mail_failure(client):
    with patch.object(mailer, "send_verification_code", side_effect=mailer.MailError("down")):
        resp = client.post("/login", json={"email": "new@example.org", "password": "pw"})
    assert resp.status_code == 500
    assert resp.json()["message"] == "Failed to send verification email."


# --- Google OAuth -----------------------------------------------------------

def test_google_login_unconfigured_redirects_home(client):
    resp = client.get("/auth/google")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/"


def test_google_login_redirects_to_consent_screen(client):
    with patch("portal.oauth.GOOGLE_CLIENT_ID", "cid"), patch("portal.oauth.GOOGLE_CLIENT_SECRET", "csecret"):
        resp = client.get("/auth/google")
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("https://accounts.google.com/")
    assert "client_id=cid" in resp.headers["location"]
    assert "oauth_state=" in resp.headers["set-cookie"]


def test_google_callback_rejects_state_mismatch(client):
    client.cookies.set("oauth_state", "expected")
    resp = client.get("/auth/google/callback?code=abc&state=forged")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/"


def test_google_callback_non_ascii_state(client):
    client.cookies.set("oauth_state", "expected")
    resp = client.get("/auth/google/callback", params={"code": "abc", "state": "é"})
    assert resp.status_code == 302
    assert resp.headers["location"] == "/"


def test_google_callback_creates_user_and_session(client):
    client.cookies.set("oauth_state", "s1")
    profile = GoogleProfile(email="g@example.org", display_name="G User")
    with patch("portal.oauth.fetch_profile", new=AsyncMock(return_value=profile)):
        resp = client.get("/auth/google/callback?code=abc&state=s1")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/home"
    assert client.app.state.users.get_by_email("g@example.org") is not None
    assert client.get("/home").status_code == 200
    [rec] = client.app.state.users.recent_logins()
    assert rec.email == "g@example.org"


def test_google_callback_network_failure(client):
    client.cookies.set("oauth_state", "s1")
    failing = AsyncMock(side_effect=httpx.ConnectError("down"))
    with patch("portal.oauth.fetch_profile", new=failing):
        resp = client.get("/auth/google/callback?code=abc&state=s1")
    assert resp.headers["location"] == "/"


# --- admin ------------------------------------------------------------------

def test_admin_not_configured(client):
    resp = client.get("/api/users", auth=("admin", "pw"))
    assert resp.status_code == 503


def test_admin_endpoints(client, monkeypatch):
    monkeypatch.setattr("portal.main.ADMIN_USER", "admin")
    monkeypatch.setattr("portal.main.ADMIN_PASSWORD", "pw")
    _login(client)
    client.get("/")

    assert client.get("/api/users", auth=("admin", "wrong")).status_code == 401

    resp = client.get("/api/users", auth=("admin", "pw"))
    assert resp.status_code == 200
    [user] = resp.json()
    assert user["username"] == "analyst"
    assert "password" not in user

    resp = client.get("/admin", auth=("admin", "pw"))
    assert resp.status_code == 200
    assert "osint-portal / admin" in resp.text
    assert "analyst" in resp.text
