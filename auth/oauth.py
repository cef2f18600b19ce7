"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with client ID and secret (and,
for generic OIDC, a discovery URL) get registered. When none are registered,
Settings.identity_configured is False and the session gate runs in its
unconfigured mode (see auth/gate.py [G3]).

Security notes:
  [H1] Email verification is mandatory. get_oauth_user_info() raises
       ValueError if the provider does not confirm the email is verified.
       The allow-list is keyed by email, so an unverified address would let
       anyone who types a listed email into a provider account sign in.

  OAuth state parameter (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware. The session stores the state between the authorization
  redirect and the callback.

Supported providers:
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/, web/, accounts/, audit/, or cache/.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("sentinel.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

# Generic OIDC -- Okta, Azure AD, Keycloak, Authentik, etc.
if _cfg.oidc_client_id and _cfg.oidc_client_secret and _cfg.oidc_discovery_url:
    oauth.register(
        name="oidc",
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret,
        server_metadata_url=_cfg.oidc_discovery_url,
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Generic OIDC provider registered (display name: %s)", _cfg.oidc_display_name)


# ---------------------------------------------------------------------------
# Provider metadata
# ---------------------------------------------------------------------------


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every configured provider.

    Used by GET /api/v1/auth/providers and the login template to decide which
    sign-in buttons to render.
    """
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Email / subject extraction [H1]
# ---------------------------------------------------------------------------


def get_oauth_user_info(provider: str, token: dict) -> tuple[str, str]:
    """Extract (email, subject_id) from a Google/OIDC token response.

    Both providers return an id_token whose claims include email,
    email_verified and sub. authlib parses it into token["userinfo"].

    [H1] The email claim is only accepted when email_verified is True.
    Providers that omit email_verified are treated as unverified.

    Returns:
        (email, subject_id) -- email lowercased.

    Raises:
        ValueError: unknown provider, missing claims, or unverified email.
    """
    if provider not in ("google", "oidc"):
        raise ValueError(f"Unknown OAuth provider: {provider!r}")

    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            f"{provider} OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")

    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return email.strip().lower(), str(subject_id)
