"""
web/routes.py -- Browser-facing auth routes and the guarded dashboard.

GET routes are loaders: they return the data a page needs as JSON (the HTML
front end lives elsewhere). POST routes take form posts, check CSRF and the
honeypot first, and answer with a redirect on success or
{"errors": {field: [messages]}} with status 400 on validation failure.

Route registration order matters. FastAPI resolves same-level paths in order:
  - GET /onboarding must be registered before GET /onboarding/{provider}.
  - GET /auth/{provider}/callback is distinct from POST /auth/{provider}, but
    both are registered before anything else under /auth.

Routes:
  GET  /                              -- landing loader (optional user + toast)
  GET  /login                         -- login loader (anonymous only)
  POST /login                         -- password login
  GET  /logout                        -- redirect /
  POST /logout                        -- audit LOGOUT, destroy session
  POST /auth/{provider}               -- redirect to the identity provider
  GET  /auth/{provider}/callback      -- provider callback -> account linking
  GET  /signup, POST /signup          -- email a signup code
  GET  /verify, POST /verify          -- check a code, hand off via VerificationSession
  GET  /onboarding, POST /onboarding  -- create a password account
  GET  /onboarding/{provider}         -- provider onboarding loader
  POST /onboarding/{provider}         -- create account + connection
  GET  /forgot-password, POST         -- email a reset code
  GET  /reset-password, POST          -- set a new password
  GET  /profile                       -- current user + connections
  GET  /dashboard                     -- section cards for the user's roles
  GET  /dashboard/{section}           -- section gated by its role list
  GET  /settings                      -- admin only

Security:
  [C2] Every post-login redirect goes through _safe_next().
  [H2] Logins, code sends and code checks are rate-limited per IP (api/limiter.py).
  [M5] Cache-Control: no-store on every response that sets or clears a session.
  Guards raise auth.errors exceptions; api/main.py maps them to redirects and
  status codes, so handlers never build those responses themselves.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import code_request_limit, login_limit, verify_limit
from auth import permissions
from auth.dependencies import get_context, get_identity, require_anonymous, require_user, require_user_with_role
from auth.errors import AuthError, InvalidCredentials, NotFound, StorageConflict
from auth.linking import AlreadyLinkedOther, AlreadyLinkedSelf, Linked, MatchedByEmail, NeedsOnboarding, Resumed
from auth.models import User
from auth.providers import Err, authenticate_with_provider
from auth.sessions import IssuedSession, clear_session_cookie, set_session_cookie
from auth.verification import (
    ONBOARDING,
    ONBOARDING_EMAIL_KEY,
    PREFILLED_PROFILE_KEY,
    RESET_PASSWORD,
    VERIFICATION_COOKIE,
)
from core.config import get_settings
from web.forms import (
    ForgotPasswordForm,
    LoginForm,
    OnboardingForm,
    ProviderOnboardingForm,
    ResetPasswordForm,
    SignupForm,
    VerifyForm,
    form_errors,
)
from web.security import get_csrf_token, read_protected_form
from web.toast import Toast, pop_toast, redirect_with_toast

logger = logging.getLogger("staffwise.web")

router = APIRouter()

_REDIRECT_TO_SESSION_KEY = "redirectTo"

# Dashboard sections and the roles that unlock them (any one suffices).
SECTIONS: dict[str, dict] = {
    "php": {"title": "PHP", "roles": ["admin", "phpAdmin"]},
    "incidents": {"title": "Incidents", "roles": ["admin", "incidentAdmin"]},
    "id-requests": {"title": "ID Requests", "roles": ["admin", "idRequestAdmin"]},
    "car-pass-requests": {"title": "Car Pass Requests", "roles": ["admin", "carPassAdmin"]},
    "access-requests": {"title": "Access Requests", "roles": ["admin", "accessRequestAdmin"]},
}
DASHBOARD_ROLES = ["admin", "phpAdmin", "accessRequestAdmin", "incidentAdmin", "idRequestAdmin", "carPassAdmin"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths. [C2]

    Prevents open redirects via /login?redirectTo=https://attacker.com,
    //attacker.com or /\\attacker.com (browsers read a backslash as a slash).
    Only paths that start with "/" followed by neither "/" nor "\\" pass.
    """
    if next_url and next_url.startswith("/") and next_url[1:2] not in ("/", "\\"):
        return next_url
    return "/"


def _no_store(resp: Response) -> Response:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _loader(request: Request, data: dict, status_code: int = 200) -> JSONResponse:
    """Loader payload plus the CSRF token and any pending toast."""
    payload = {"csrf": get_csrf_token(request), "toast": pop_toast(request), **data}
    return _no_store(JSONResponse(payload, status_code=status_code))


def _errors(errors: dict[str, list[str]]) -> JSONResponse:
    return _no_store(JSONResponse({"errors": errors}, status_code=400))


def _user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "name": user.name,
        "imageUrl": user.image_url,
        "roles": [role.name for role in user.roles],
    }


def _set_verification_cookie(resp: Response, vs_id: str) -> None:
    cfg = get_settings()
    resp.set_cookie(
        key=VERIFICATION_COOKIE,
        value=vs_id,
        max_age=cfg.verification_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=cfg.secure_cookies,
        path="/",
    )


def handle_new_session(issued: IssuedSession, redirect_to: Optional[str], toast: Toast | None = None, request=None):
    """Redirect after login with the session cookie attached."""
    target = _safe_next(redirect_to)
    if toast is not None and request is not None:
        resp = redirect_with_toast(request, target, toast)
    else:
        resp = RedirectResponse(target, status_code=302)
    set_session_cookie(resp, issued)
    resp.delete_cookie(VERIFICATION_COOKIE, path="/")
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Landing
# ---------------------------------------------------------------------------


@router.get("/")
def index(request: Request) -> JSONResponse:
    identity = get_identity(request)
    user_id = identity.sessions.resolve_principal(get_context(request).session_token)
    user = identity.store.get_by_id(user_id) if user_id is not None else None
    return _loader(request, {"user": _user_payload(user) if user else None})


# ---------------------------------------------------------------------------
# Provider redirect / callback
#
# Registered before /login so the /auth/* prefix is resolved first.
# ---------------------------------------------------------------------------


@router.post("/auth/{provider}")
async def provider_redirect(request: Request, provider: str):
    """Send the browser to the provider's authorization page.

    The provider name is checked against the registry first, so a spoofed
    name can never produce a redirect to an arbitrary URL.
    """
    form = await read_protected_form(request)
    identity = get_identity(request)
    idp = identity.providers.get(provider)
    if idp is None:
        raise NotFound(f"unknown provider {provider!r}")
    redirect_to = form.get(_REDIRECT_TO_SESSION_KEY)
    if redirect_to:
        request.session[_REDIRECT_TO_SESSION_KEY] = _safe_next(redirect_to)
    redirect_uri = str(request.url_for("provider_callback", provider=provider))
    return await idp.authorize_redirect(request, redirect_uri)


@router.get("/auth/{provider}/callback", name="provider_callback")
async def provider_callback(request: Request, provider: str):
    """Exchange the callback for a Profile and reconcile it with local accounts.

    Every outcome ends in a redirect. Provider failures and persistence
    failures both become a generic "try again" toast; the detail is logged.
    """
    identity = get_identity(request)
    if provider not in identity.providers:
        raise NotFound(f"unknown provider {provider!r}")
    label = identity.providers.label(provider)

    result = await authenticate_with_provider(identity.providers, provider, request)
    if isinstance(result, Err):
        return redirect_with_toast(
            request,
            "/login",
            Toast("error", "Auth Failed", f"There was an error authenticating with {label}. Please try again."),
        )
    profile = result.value
    shown = f'"{profile.username or profile.email} {label}"'

    try:
        outcome = identity.link_profile(provider, profile, get_context(request))
    except (AuthError, SQLAlchemyError):
        logger.exception("Account linking failed for %s:%s", provider, profile.provider_id)
        return redirect_with_toast(
            request,
            "/login",
            Toast("error", "Auth Failed", f"There was an error authenticating with {label}. Please try again."),
        )

    redirect_to = request.session.pop(_REDIRECT_TO_SESSION_KEY, None)

    if isinstance(outcome, AlreadyLinkedSelf):
        return redirect_with_toast(
            request, "/", Toast("success", "Already Connected", f"Your {shown} account is already connected.")
        )
    if isinstance(outcome, AlreadyLinkedOther):
        return redirect_with_toast(
            request,
            "/",
            Toast("success", "Already Connected", f"Your {shown} account is already connected to another account."),
        )
    if isinstance(outcome, Linked):
        return redirect_with_toast(
            request, "/", Toast("success", "Connected", f"Your {shown} account has been connected.")
        )
    if isinstance(outcome, Resumed):
        return handle_new_session(outcome.session, redirect_to)
    if isinstance(outcome, MatchedByEmail):
        return handle_new_session(
            outcome.session,
            redirect_to,
            Toast("success", "Connected", f"Your {shown} account has been connected."),
            request=request,
        )
    if isinstance(outcome, NeedsOnboarding):
        if identity.store.get_by_email(outcome.email) is not None:
            # Unverified provider email that belongs to an existing account:
            # onboarding could never create the user, so send them to log in.
            identity.verifications.destroy(outcome.verification_id)
            return redirect_with_toast(
                request,
                "/login",
                Toast(
                    "error",
                    "Account Exists",
                    f"An account with {outcome.email} already exists. "
                    f"Log in, then connect {label} from your profile.",
                ),
            )
        target = f"/onboarding/{provider}"
        if redirect_to:
            target += "?" + urlencode({"redirectTo": redirect_to})
        resp = RedirectResponse(target, status_code=302)
        _set_verification_cookie(resp, outcome.verification_id)
        return _no_store(resp)
    raise AssertionError(f"unhandled link outcome {outcome!r}")


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", dependencies=[Depends(require_anonymous)])
def login_page(request: Request) -> JSONResponse:
    identity = get_identity(request)
    return _loader(
        request,
        {"providers": identity.providers.enabled(), "redirectTo": request.query_params.get("redirectTo")},
    )


@router.post("/login")
@login_limit  # shared with POST /api/v1/auth/login
async def login_post(request: Request):
    """Handle a username/password login form.

    Unknown username and wrong password produce the same form error.
    """
    form = await read_protected_form(request)
    require_anonymous(request)
    try:
        data = LoginForm.model_validate(form)
    except ValidationError as exc:
        return _errors(form_errors(exc))
    try:
        issued = get_identity(request).login(data.username, data.password, remember=data.remember)
    except InvalidCredentials:
        return _errors({"": ["Invalid username or password"]})
    return handle_new_session(issued, data.redirect_to)


@router.get("/logout")
def logout_page() -> RedirectResponse:
    return RedirectResponse("/", status_code=302)


@router.post("/logout")
async def logout(request: Request) -> Response:
    await read_protected_form(request)
    get_identity(request).logout(get_context(request))
    resp = RedirectResponse("/", status_code=302)
    clear_session_cookie(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Signup / verify / onboarding
# ---------------------------------------------------------------------------


@router.get("/signup", dependencies=[Depends(require_anonymous)])
def signup_page(request: Request) -> JSONResponse:
    return _loader(request, {})


@router.post("/signup", dependencies=[Depends(require_anonymous)])
@code_request_limit
async def signup_post(request: Request):
    form = await read_protected_form(request)
    try:
        data = SignupForm.model_validate(form)
    except ValidationError as exc:
        return _errors(form_errors(exc))
    identity = get_identity(request)
    if identity.store.get_by_email(data.email) is not None:
        return _errors({"email": ["A user already exists with this email"]})
    identity.send_signup_code(data.email)
    query = urlencode({"type": ONBOARDING, "target": data.email})
    return RedirectResponse(f"/verify?{query}", status_code=302)


def _verify(request: Request, payload: dict):
    try:
        data = VerifyForm.model_validate(payload)
    except ValidationError as exc:
        return _errors(form_errors(exc))
    vs_id = get_identity(request).verify(data.type, data.target, data.code)
    if vs_id is None:
        return _errors({"code": ["Invalid code"]})
    target = "/onboarding" if data.type == ONBOARDING else "/reset-password"
    if data.redirect_to:
        target += "?" + urlencode({"redirectTo": _safe_next(data.redirect_to)})
    resp = RedirectResponse(target, status_code=302)
    _set_verification_cookie(resp, vs_id)
    return _no_store(resp)


@router.get("/verify")
@verify_limit
def verify_page(request: Request):
    """A link from the email carries ?code=; without it, just echo the params."""
    params = dict(request.query_params)
    if "code" not in params:
        return _loader(request, {"status": "idle", "payload": params})
    return _verify(request, params)


@router.post("/verify")
@verify_limit
async def verify_post(request: Request):
    form = await read_protected_form(request)
    return _verify(request, form)


@router.get("/onboarding", dependencies=[Depends(require_anonymous)])
def onboarding_page(request: Request):
    email = get_identity(request).onboarding_email(request.cookies.get(VERIFICATION_COOKIE))
    if email is None:
        return RedirectResponse("/signup", status_code=302)
    return _loader(request, {"email": email})


@router.post("/onboarding", dependencies=[Depends(require_anonymous)])
async def onboarding_post(request: Request):
    form = await read_protected_form(request)
    identity = get_identity(request)
    vs_id = request.cookies.get(VERIFICATION_COOKIE)
    if identity.onboarding_email(vs_id) is None:
        return RedirectResponse("/signup", status_code=302)
    try:
        data = OnboardingForm.model_validate(form)
    except ValidationError as exc:
        return _errors(form_errors(exc))
    if identity.store.get_by_username(data.username) is not None:
        return _errors({"username": ["A user already exists with this username"]})
    try:
        issued = identity.complete_onboarding(vs_id, data.username, data.name, data.password, data.remember)
    except StorageConflict:
        return _errors({"username": ["A user already exists with this username"]})
    if issued is None:
        return RedirectResponse("/signup", status_code=302)
    return handle_new_session(
        issued, data.redirect_to, Toast("success", "Welcome aboard!", "Thanks for signing up!"), request=request
    )


@router.get("/onboarding/{provider}", dependencies=[Depends(require_anonymous)])
def provider_onboarding_page(request: Request, provider: str):
    identity = get_identity(request)
    data = identity.provider_onboarding_data(request.cookies.get(VERIFICATION_COOKIE), provider)
    if data is None:
        return RedirectResponse("/signup", status_code=302)
    prefilled = data[PREFILLED_PROFILE_KEY]
    return _loader(
        request,
        {
            "provider": provider,
            "providerLabel": identity.providers.label(provider),
            "email": prefilled.get("email"),
            "prefilled": {"username": prefilled.get("username"), "name": prefilled.get("name")},
        },
    )


@router.post("/onboarding/{provider}", dependencies=[Depends(require_anonymous)])
async def provider_onboarding_post(request: Request, provider: str):
    form = await read_protected_form(request)
    identity = get_identity(request)
    vs_id = request.cookies.get(VERIFICATION_COOKIE)
    bag = identity.provider_onboarding_data(vs_id, provider)
    if bag is None:
        return RedirectResponse("/signup", status_code=302)
    try:
        data = ProviderOnboardingForm.model_validate(form)
    except ValidationError as exc:
        return _errors(form_errors(exc))
    if identity.store.get_by_email(bag[ONBOARDING_EMAIL_KEY]) is not None:
        return _errors({"email": ["A user already exists with this email"]})
    if identity.store.get_by_username(data.username) is not None:
        return _errors({"username": ["A user already exists with this username"]})
    try:
        issued = identity.complete_provider_onboarding(vs_id, provider, data.username, data.name, data.remember)
    except StorageConflict:
        return _errors({"username": ["A user already exists with this username"]})
    if issued is None:
        return RedirectResponse("/signup", status_code=302)
    return handle_new_session(
        issued, data.redirect_to, Toast("success", "Welcome aboard!", "Thanks for signing up!"), request=request
    )


# ---------------------------------------------------------------------------
# Forgot / reset password
# ---------------------------------------------------------------------------


@router.get("/forgot-password", dependencies=[Depends(require_anonymous)])
def forgot_password_page(request: Request) -> JSONResponse:
    return _loader(request, {})


@router.post("/forgot-password", dependencies=[Depends(require_anonymous)])
@code_request_limit
async def forgot_password_post(request: Request):
    """Always continue to /verify, whether or not the account exists."""
    form = await read_protected_form(request)
    try:
        data = ForgotPasswordForm.model_validate(form)
    except ValidationError as exc:
        return _errors(form_errors(exc))
    get_identity(request).send_reset_code(data.username_or_email)
    query = urlencode({"type": RESET_PASSWORD, "target": data.username_or_email.lower()})
    return RedirectResponse(f"/verify?{query}", status_code=302)


@router.get("/reset-password", dependencies=[Depends(require_anonymous)])
def reset_password_page(request: Request):
    username = get_identity(request).reset_password_username(request.cookies.get(VERIFICATION_COOKIE))
    if username is None:
        return RedirectResponse("/login", status_code=302)
    return _loader(request, {"resetPasswordUsername": username})


@router.post("/reset-password", dependencies=[Depends(require_anonymous)])
async def reset_password_post(request: Request):
    form = await read_protected_form(request)
    identity = get_identity(request)
    vs_id = request.cookies.get(VERIFICATION_COOKIE)
    if identity.reset_password_username(vs_id) is None:
        return RedirectResponse("/login", status_code=302)
    try:
        data = ResetPasswordForm.model_validate(form)
    except ValidationError as exc:
        return _errors(form_errors(exc))
    if not identity.reset_password(vs_id, data.password):
        return RedirectResponse("/login", status_code=302)
    resp = redirect_with_toast(request, "/login", Toast("success", "Password reset", "Log in with your new password."))
    resp.delete_cookie(VERIFICATION_COOKIE, path="/")
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Authenticated pages
# ---------------------------------------------------------------------------


@router.get("/profile")
def profile(request: Request, user: User = Depends(require_user)) -> JSONResponse:
    connections = get_identity(request).store.list_connections(user.id)
    return _loader(
        request,
        {
            "user": _user_payload(user),
            "connections": [
                {"id": c.id, "providerName": c.provider_name, "createdAt": c.created_at} for c in connections
            ],
        },
    )


@router.get("/dashboard")
def dashboard(request: Request) -> JSONResponse:
    """Section cards, filtered to the ones the user's roles unlock."""
    identity = get_identity(request)
    user = permissions.require_user_with_roles(identity.sessions, get_context(request), DASHBOARD_ROLES)
    cards = [
        {"section": name, "title": meta["title"], "link": f"/dashboard/{name}"}
        for name, meta in SECTIONS.items()
        if permissions.user_has_roles(user, meta["roles"])
    ]
    return _loader(request, {"user": _user_payload(user), "cards": cards})


@router.get("/dashboard/{section}")
def dashboard_section(request: Request, section: str) -> JSONResponse:
    meta = SECTIONS.get(section)
    if meta is None:
        raise NotFound(f"unknown section {section!r}")
    identity = get_identity(request)
    user = permissions.require_user_with_roles(identity.sessions, get_context(request), meta["roles"])
    return _loader(request, {"section": section, "title": meta["title"], "user": _user_payload(user)})


@router.get("/settings")
def settings_page(request: Request, user: User = Depends(require_user_with_role("admin"))) -> JSONResponse:
    identity = get_identity(request)
    return _loader(
        request,
        {"roles": [{"name": r.name, "description": r.description} for r in identity.store.list_roles()]},
    )
