"""
auth/providers.py -- Third-party identity providers (Authlib OAuth / OIDC).

Each provider implements the IdentityProvider interface: redirect the browser
to the provider, then exchange the callback's authorization artifact for a
normalized Profile. Providers live in a ProviderRegistry keyed by name; adding
a provider means registering another implementation, not branching on a
string in the routes.

Only providers with both client ID and secret configured get registered.

Security notes:
  [H1] Email verification is mandatory. A provider that cannot vouch for the
       email makes exchange() fail. Account linking matches existing users by
       email, so an unverified address would let an attacker who added a
       victim's email to their provider account take over the victim's
       Staffwise account.

  OAuth state (CSRF protection for the redirect/callback pair) is handled by
  authlib via Starlette SessionMiddleware.

authenticate_with_provider() never raises for provider-side trouble. It
returns Ok(profile) or Err(ProviderError); the detail goes to the log only.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError

from auth.errors import ProviderError
from auth.models import Profile
from core.config import get_settings

logger = logging.getLogger("staffwise.auth.providers")


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ok:
    value: Profile


@dataclass(frozen=True)
class Err:
    error: ProviderError


ExchangeResult = Union[Ok, Err]


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class IdentityProvider(Protocol):
    name: str
    label: str

    async def authorize_redirect(self, request, redirect_uri: str) -> Any: ...

    async def exchange(self, request) -> Profile: ...


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class _AuthlibProvider:
    """Shared plumbing for providers backed by an Authlib starlette client."""

    name = ""
    label = ""

    def __init__(self, client) -> None:
        self.client = client

    async def authorize_redirect(self, request, redirect_uri: str):
        return await self.client.authorize_redirect(request, redirect_uri)


class GitHubProvider(_AuthlibProvider):
    """GitHub -- authorization code flow with static endpoints.

    GitHub does not include the email in the token. Two API calls are needed:
      1. GET /user         -- numeric id (stable subject), display name, avatar
      2. GET /user/emails  -- the primary verified email [H1]
    """

    name = "github"
    label = "GitHub"

    async def exchange(self, request) -> Profile:
        token = await self.client.authorize_access_token(request)

        resp = await self.client.get("user", token=token)
        resp.raise_for_status()
        profile = resp.json()

        emails_resp = await self.client.get("user/emails", token=token)
        emails_resp.raise_for_status()
        email: str | None = None
        for entry in emails_resp.json():
            if entry.get("primary") and entry.get("verified"):
                email = entry["email"]
                break
        if not email:
            raise ValueError(
                "GitHub OAuth: no primary verified email found. "
                "The user must verify their email address on GitHub before logging in."
            )

        return Profile(
            provider_id=str(profile["id"]),
            email=_normalize_email(email),
            username=profile.get("name") or profile.get("login"),
            name=profile.get("name"),
            image_url=profile.get("avatar_url"),
            email_verified=True,
        )


class OIDCProvider(_AuthlibProvider):
    """Generic OpenID Connect provider using the id_token userinfo claims.

    [H1] The email claim is only accepted when email_verified is True, unless
    the provider is configured to trust its directory (trust_email=True), as
    for a single-tenant corporate directory where addresses are administered.
    """

    def __init__(self, client, name: str, label: str, trust_email: bool = False) -> None:
        super().__init__(client)
        self.name = name
        self.label = label
        self.trust_email = trust_email

    async def exchange(self, request) -> Profile:
        token = await self.client.authorize_access_token(request)
        userinfo = token.get("userinfo")
        if not userinfo:
            raise ValueError(f"{self.name} OAuth: no userinfo in token response")

        email = _normalize_email(userinfo.get("email") or userinfo.get("preferred_username"))
        subject = userinfo.get("oid") or userinfo.get("sub")
        if not email or not subject:
            raise ValueError(f"{self.name} OAuth: missing email or sub claim in userinfo")

        verified = bool(userinfo.get("email_verified", False)) or self.trust_email
        if not verified:
            raise ValueError(
                f"{self.name} OAuth: email is not verified. "
                "The provider must confirm email ownership before login is allowed."
            )

        return Profile(
            provider_id=str(subject),
            email=email,
            username=userinfo.get("name") or userinfo.get("preferred_username"),
            name=userinfo.get("given_name") or userinfo.get("name"),
            image_url=userinfo.get("picture"),
            email_verified=True,
        )


class MicrosoftProvider(OIDCProvider):
    """Microsoft Entra ID (Azure AD) v2.0 endpoint.

    Entra ID only emits email_verified for some account types. For a single
    tenant the directory administers addresses, so the email claim is trusted;
    for the multi-tenant aliases it is not.
    """

    def __init__(self, client, tenant: str) -> None:
        super().__init__(client, name="microsoft", label="Microsoft", trust_email=tenant not in _MULTI_TENANT_ALIASES)
        self.tenant = tenant


_MULTI_TENANT_ALIASES = {"common", "organizations", "consumers"}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    def __init__(self) -> None:
        self._providers: dict[str, IdentityProvider] = {}

    def register(self, provider: IdentityProvider) -> None:
        self._providers[provider.name] = provider
        logger.info("Identity provider registered: %s", provider.name)

    def get(self, name: str) -> IdentityProvider | None:
        return self._providers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def label(self, name: str) -> str:
        provider = self._providers.get(name)
        return provider.label if provider else name

    def enabled(self) -> list[dict]:
        """Return [{"name": ..., "label": ...}] for the login page buttons."""
        return [{"name": p.name, "label": p.label} for p in self._providers.values()]


def build_registry(oauth: OAuth | None = None) -> ProviderRegistry:
    """Register every provider whose credentials are configured."""
    cfg = get_settings()
    oauth = oauth or OAuth()
    registry = ProviderRegistry()

    if cfg.github_client_id and cfg.github_client_secret:
        oauth.register(
            name="github",
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        registry.register(GitHubProvider(oauth.create_client("github")))

    if cfg.microsoft_client_id and cfg.microsoft_client_secret:
        tenant = cfg.microsoft_tenant_id
        oauth.register(
            name="microsoft",
            client_id=cfg.microsoft_client_id,
            client_secret=cfg.microsoft_client_secret,
            server_metadata_url=f"https://login.microsoftonline.com/{tenant}/v2.0/.well-known/openid-configuration",
            client_kwargs={"scope": "openid profile email", "prompt": "login"},
        )
        registry.register(MicrosoftProvider(oauth.create_client("microsoft"), tenant))

    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        oauth.register(
            name="oidc",
            client_id=cfg.oidc_client_id,
            client_secret=cfg.oidc_client_secret,
            server_metadata_url=cfg.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        registry.register(OIDCProvider(oauth.create_client("oidc"), name="oidc", label=cfg.oidc_display_name))

    return registry


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------


async def authenticate_with_provider(registry: ProviderRegistry, provider_name: str, request) -> ExchangeResult:
    """Exchange the callback's authorization artifact for a Profile.

    Every failure -- unknown provider, OAuth error, transport error, missing or
    unverified email, malformed payload -- becomes Err(ProviderError). The
    detail is logged server-side; callers show a generic "try again" toast.
    """
    provider = registry.get(provider_name)
    if provider is None:
        return Err(ProviderError(provider_name, "provider not configured"))
    try:
        profile = await provider.exchange(request)
    except (OAuthError, httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
        logger.exception("Identity provider exchange failed for %r", provider_name)
        return Err(ProviderError(provider_name, str(exc)))
    return Ok(profile)
