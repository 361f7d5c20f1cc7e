from __future__ import annotations

import logging
import secrets
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from portal import mailer, oauth, pages, sessions
from portal.admin_html import render_admin_page
from portal.config import (
    ADMIN_PASSWORD,
    ADMIN_USER,
    APP_VERSION,
    AUTH_COOKIE,
    JWT_SECRET,
    LEGACY_USERS_FILE,
    PROTECTED_PAGES,
    PUBLIC_DIR,
    SERVER_HOST,
    SERVER_PORT,
    USERS_DB_FILE,
    VISITOR_DATA_FILE,
)
from portal.users import User, UserStore
from portal.visitor_stats import VisitorStatsTracker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Admin auth
_http_basic = HTTPBasic(auto_error=True)


def _require_admin(credentials: HTTPBasicCredentials = Depends(_http_basic)):
    if not ADMIN_USER or not ADMIN_PASSWORD:
        raise HTTPException(status_code=503, detail="Admin not configured: set ADMIN_USER and ADMIN_PASSWORD")
    ok = secrets.compare_digest(credentials.username.encode(), ADMIN_USER.encode()) and \
         secrets.compare_digest(credentials.password.encode(), ADMIN_PASSWORD.encode())
    if not ok:
        raise HTTPException(
            status_code=401,
            headers={"WWW-Authenticate": "Basic"},
        )


def _client_ip(request: Request) -> str:
    # CF-Connecting-IP is the real client IP when behind Cloudflare
    cf_ip = request.headers.get("cf-connecting-ip", "").strip()
    xff = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    return cf_ip or xff or (request.client.host if request.client else "unknown")


def _uptime_str(start: float) -> str:
    elapsed = time.monotonic() - start
    days = int(elapsed // 86400)
    hours = int((elapsed % 86400) // 3600)
    if days > 0:
        return f"{days}d {hours}h"
    minutes = int((elapsed % 3600) // 60)
    return f"{hours}h {minutes}m"


async def _read_body(request: Request) -> dict:
    """Accept both JSON and urlencoded/multipart form bodies.

    Only string fields are kept; anything else reads as missing.
    """
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _fail(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": False, "message": message})


def _login(users: UserStore, username: str, email: str, password: str) -> tuple[int, str, User | None]:
    """Run the local login rules. Returns (status, message, user on success)."""
    if username:
        user = users.authenticate_username(username, password)
        if user is None:
            logger.info("Invalid credentials for username %s", username)
            return 401, "Invalid username or password", None
        return 200, "Login successful", user

    user = users.get_by_email(email)
    if user is None:
        _, code = users.create_pending_email_user(email, password)
        try:
            mailer.send_verification_code(email, code)
        except mailer.MailError:
            logger.exception("Failed to send verification email to %s", email)
            return 500, "Failed to send verification email.", None
        return 401, ("A verification code has been sent to your email. "
                     "Please verify to activate your account."), None
    if not users.check_password(user, password):
        logger.info("Invalid password for email %s", email)
        return 401, "Invalid password for this email", None
    if not user.email_verified:
        return 401, "Please verify your email before logging in.", None
    return 200, "Login successful", user


def create_app(
    *,
    visitor_data_file: str | Path = VISITOR_DATA_FILE,
    users_db_file: str | Path = USERS_DB_FILE,
    legacy_users_file: str | Path = LEGACY_USERS_FILE,
    public_dir: str | Path = PUBLIC_DIR,
    jwt_secret: str = JWT_SECRET,
    bcrypt_rounds: int | None = None,
) -> FastAPI:
    public_root = Path(public_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.start_time = time.monotonic()
        if jwt_secret == "change-me":
            logger.warning("JWT_SECRET is not set; sessions are signed with the default secret")

        tracker = VisitorStatsTracker.from_file(visitor_data_file)
        users = UserStore(users_db_file, bcrypt_rounds=bcrypt_rounds)
        users.migrate_legacy_users(legacy_users_file)
        app.state.tracker = tracker
        app.state.users = users

        async with httpx.AsyncClient() as client:
            app.state.http_client = client
            try:
                yield
            finally:
                # uvicorn maps SIGINT/SIGTERM onto lifespan shutdown
                if tracker.persist():
                    logger.info("Saved visitor data to %s on shutdown", tracker.path)
                app.state.http_client = None

    app = FastAPI(title="OSINT Portal Server", version=APP_VERSION, lifespan=lifespan)

    # Middleware: the last one registered runs first.

    @app.middleware("http")
    async def protect_pages(request: Request, call_next):
        name = pages.page_name(request.url.path)
        if request.method not in ("GET", "HEAD") or name not in PROTECTED_PAGES:
            return await call_next(request)
        token = request.cookies.get(AUTH_COOKIE)
        claims = sessions.read_token(token, jwt_secret)
        if claims is None:
            logger.info("No valid session for protected page: %s", name)
            response = RedirectResponse("/", status_code=302)
            if token:
                sessions.clear_session_cookie(response)
            return response
        request.state.user = claims
        response = await call_next(request)
        sessions.refresh_session(response, claims, jwt_secret)
        return response

    @app.middleware("http")
    async def redirect_html(request: Request, call_next):
        if request.method in ("GET", "HEAD"):
            target = pages.clean_url(request.url.path)
            if target is not None:
                if request.url.query:
                    target = f"{target}?{request.url.query}"
                return RedirectResponse(target, status_code=301)
        return await call_next(request)

    @app.middleware("http")
    async def count_page_views(request: Request, call_next):
        if pages.counts_as_page_view(request.method, request.url.path):
            request.app.state.tracker.record_visit(
                _client_ip(request), request.headers.get("user-agent", "unknown"),
            )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-Requested-With"],
    )

    @app.get("/healthz")
    async def healthz():
        return PlainTextResponse("ok")

    @app.get("/api/visitor-stats")
    async def visitor_stats(request: Request):
        try:
            return JSONResponse(content=request.app.state.tracker.get_stats())
        except Exception:
            logger.exception("Error getting visitor stats")
            return JSONResponse(status_code=500, content={"error": "Failed to get visitor statistics"})

    @app.get("/api/auth-status")
    async def auth_status(request: Request):
        token = request.cookies.get(AUTH_COOKIE)
        claims = sessions.read_token(token, jwt_secret)
        if claims is None:
            response = JSONResponse(content={"authenticated": False})
            if token:
                sessions.clear_session_cookie(response)
            return response
        return JSONResponse(content={"authenticated": True, "username": claims.get("username")})

    @app.get("/api/users", dependencies=[Depends(_require_admin)])
    def list_users(request: Request):
        return [u.to_public_dict() for u in request.app.state.users.list_users()]

    @app.post("/login")
    async def login(request: Request):
        body = await _read_body(request)
        username = (body.get("username") or "").strip()
        email = (body.get("email") or "").strip().lower()
        password = body.get("password") or ""
        logger.info("Login attempt from %s", _client_ip(request))
        if (not username and not email) or not password:
            return _fail(400, "Username or email and password required")

        users: UserStore = request.app.state.users
        try:
            status, message, user = await run_in_threadpool(_login, users, username, email, password)
            if user is not None:
                await run_in_threadpool(users.log_login, user)
        except sqlite3.Error:
            logger.exception("User store error during login")
            return _fail(500, "Server error")

        if user is None:
            return _fail(status, message)
        logger.info("Login successful for %s", user.display_name)
        response = JSONResponse(content={"success": True, "message": message})
        sessions.start_session(response, user.id, user.display_name, jwt_secret)
        return response

    @app.post("/verify")
    async def verify(request: Request):
        body = await _read_body(request)
        email = (body.get("email") or "").strip().lower()
        code = str(body.get("code") or "").strip()
        if not email or not code:
            return _fail(400, "Email and verification code required")
        try:
            user = await run_in_threadpool(request.app.state.users.verify_email, email, code)
        except sqlite3.Error:
            logger.exception("User store error during verification")
            return _fail(500, "Server error")
        if user is None:
            return _fail(401, "Invalid verification code")
        return JSONResponse(content={"success": True, "message": "Email verified. You can now log in."})

    @app.post("/logout")
    async def logout(request: Request):
        users: UserStore = request.app.state.users
        claims = sessions.read_token(request.cookies.get(AUTH_COOKIE), jwt_secret)
        body = await _read_body(request)
        username = (body.get("username") or "").strip()
        email = (body.get("email") or "").strip().lower()
        try:
            user = None
            if claims is not None:
                user = await run_in_threadpool(users.get_by_id, claims["id"])
            elif username:
                user = await run_in_threadpool(users.get_by_username, username)
            elif email:
                user = await run_in_threadpool(users.get_by_email, email)
            if user is not None:
                duration = await run_in_threadpool(users.log_logout, user)
                logger.info("Logout for %s after %ss", user.display_name, duration)
        except sqlite3.Error:
            logger.exception("Failed to record logout")
        response = JSONResponse(content={"success": True, "message": "Logged out successfully."})
        sessions.clear_session_cookie(response)
        return response

    @app.get("/auth/google")
    async def google_login():
        if not oauth.is_configured():
            logger.warning("Google OAuth requested but GOOGLE_CLIENT_ID/SECRET are not set")
            return RedirectResponse("/", status_code=302)
        state = secrets.token_urlsafe(24)
        response = RedirectResponse(oauth.authorization_url(state), status_code=302)
        response.set_cookie(oauth.STATE_COOKIE, state, max_age=600, httponly=True, samesite="lax")
        return response

    @app.get("/auth/google/callback")
    async def google_callback(request: Request, code: str = Query(""), state: str = Query("")):
        expected = request.cookies.get(oauth.STATE_COOKIE, "")
        if not code or not expected or not secrets.compare_digest(state.encode("utf-8"), expected.encode("utf-8")):
            logger.info("Rejected Google OAuth callback: missing code or state mismatch")
            return RedirectResponse("/", status_code=302)
        try:
            profile = await oauth.fetch_profile(request.app.state.http_client, code)
        except (httpx.HTTPError, oauth.OAuthError, ValueError):
            logger.exception("Google OAuth exchange failed")
            return RedirectResponse("/", status_code=302)

        users: UserStore = request.app.state.users
        try:
            user = await run_in_threadpool(users.find_or_create_oauth_user, profile.email, profile.display_name)
            await run_in_threadpool(users.log_login, user)
        except sqlite3.Error:
            logger.exception("User store error during Google login")
            return RedirectResponse("/", status_code=302)

        logger.info("Google login successful for %s", profile.email)
        response = RedirectResponse("/home", status_code=302)
        response.delete_cookie(oauth.STATE_COOKIE)
        sessions.start_session(response, user.id, user.display_name, jwt_secret)
        return response

    @app.get("/admin", response_class=HTMLResponse, dependencies=[Depends(_require_admin)])
    def admin_page(request: Request):
        users: UserStore = request.app.state.users
        html = render_admin_page(
            generated=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            uptime=_uptime_str(request.app.state.start_time),
            stats=request.app.state.tracker.get_stats(),
            user_count=users.count(),
            logins=users.recent_logins(20),
            version=APP_VERSION,
        )
        return HTMLResponse(content=html)

    # Registered last so every route above takes precedence.
    @app.get("/{path:path}")
    async def serve_public(request: Request):
        path = request.url.path
        if pages.is_backend_path(path):
            raise HTTPException(status_code=404)
        page = pages.resolve_page(public_root, path)
        if page is not None:
            return FileResponse(page)
        root = public_root.resolve()
        candidate = (public_root / path.lstrip("/")).resolve()
        if candidate.is_relative_to(root) and candidate.is_file():
            return FileResponse(candidate)
        raise HTTPException(status_code=404)

    return app


app = create_app()


def run() -> None:
    uvicorn.run("portal.main:app", host=SERVER_HOST, port=SERVER_PORT)
