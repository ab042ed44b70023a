"""Consume third-party OAuth authorization codes (GitHub, Google)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.exceptions import UpstreamRejectedError
from sessionguard.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)

OAUTH_PROVIDERS = {
    "github": {
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
    "google": {
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
}


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    provider_uid: str
    email: Optional[str]
    email_verified: bool
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class OAuthClient:
    """
    Exchange an authorization code and fetch the provider identity

    Transport failures surface as the ``Upstream*`` exceptions raised by
    ``UpstreamClient``; a malformed provider answer is an
    ``UpstreamRejectedError``.
    """

    def __init__(self, client: UpstreamClient, *, cfg: Settings = default_settings) -> None:
        self.client = client
        self.cfg = cfg

    def is_supported(self, provider: str) -> bool:
        return provider in OAUTH_PROVIDERS

    def _credentials(self, provider: str) -> Tuple[str, str]:
        if provider == "github":
            return self.cfg.GITHUB_CLIENT_ID, self.cfg.GITHUB_CLIENT_SECRET
        return self.cfg.GOOGLE_CLIENT_ID, self.cfg.GOOGLE_CLIENT_SECRET

    def is_configured(self, provider: str) -> bool:
        client_id, client_secret = self._credentials(provider)
        return bool(client_id and client_secret)

    def redirect_uri(self, provider: str) -> str:
        return f"{self.cfg.OAUTH_REDIRECT_BASE_URL.rstrip('/')}/{provider}/callback"

    def exchange_code(self, provider: str, code: str) -> OAuthIdentity:
        provider_config = OAUTH_PROVIDERS[provider]
        client_id, client_secret = self._credentials(provider)

        token_response = self.client.post(
            provider_config["token_url"],
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri(provider),
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
        token_result = _json_object(token_response, provider, "token")
        access_token = token_result.get("access_token")
        if not access_token:
            # GitHub answers 200 with an error body for bad codes
            error = token_result.get("error_description") or token_result.get("error") or "no access token"
            raise UpstreamRejectedError(f"{provider} token exchange failed: {error}")

        headers = {"Authorization": f"Bearer {access_token}"}
        if provider == "github":
            headers["Accept"] = "application/vnd.github+json"

        userinfo = _json_object(
            self.client.get(provider_config["userinfo_url"], headers=headers), provider, "userinfo"
        )
        identity = _parse_userinfo(provider, userinfo)

        if provider == "github" and not identity.email:
            emails_response = self.client.get(provider_config["emails_url"], headers=headers)
            try:
                emails = emails_response.json()
            except ValueError:
                emails = []
            primary = next(
                (
                    e.get("email")
                    for e in emails
                    if isinstance(e, dict) and e.get("primary") and e.get("verified")
                ),
                None,
            )
            if primary:
                identity = OAuthIdentity(
                    provider=identity.provider,
                    provider_uid=identity.provider_uid,
                    email=primary,
                    email_verified=True,
                    name=identity.name,
                    avatar_url=identity.avatar_url,
                )

        if not identity.provider_uid:
            raise UpstreamRejectedError(f"{provider} returned an identity without an id")

        logger.info(f"OAuth exchange succeeded for {provider} user {identity.provider_uid}")
        return identity


def _json_object(response, provider: str, stage: str) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        raise UpstreamRejectedError(f"{provider} {stage} response was not JSON")
    if not isinstance(payload, dict):
        raise UpstreamRejectedError(f"{provider} {stage} response had an unexpected shape")
    return payload


def _parse_userinfo(provider: str, userinfo: Dict[str, Any]) -> OAuthIdentity:
    if provider == "google":
        return OAuthIdentity(
            provider=provider,
            provider_uid=str(userinfo.get("id") or ""),
            email=userinfo.get("email"),
            email_verified=bool(userinfo.get("verified_email")),
            name=userinfo.get("name"),
            avatar_url=userinfo.get("picture"),
        )
    # The public GitHub email is not guaranteed verified
    return OAuthIdentity(
        provider=provider,
        provider_uid=str(userinfo.get("id") or ""),
        email=None,
        email_verified=False,
        name=userinfo.get("name") or userinfo.get("login"),
        avatar_url=userinfo.get("avatar_url"),
    )
