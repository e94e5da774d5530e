from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from gallerycore.config import Settings
from gallerycore.logging import get_logger
from gallerycore.service.account_guard import OAuthProfile

logger = get_logger(__name__)

# Provider endpoints for the authorization-code exchange
OAUTH_PROVIDERS: Dict[str, Dict[str, str]] = {
    "google": {
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
    "github": {
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
}


class OAuthVerifier(Protocol):
    """Turns a provider credential into an identity the server has checked."""

    def verify(self, provider: str, code: str) -> Optional[OAuthProfile]: ...


@dataclass(frozen=True)
class OAuthClientCredentials:
    client_id: str
    client_secret: str


def _profile_from_google(userinfo: Mapping[str, Any]) -> Optional[OAuthProfile]:
    email = userinfo.get("email")
    if not userinfo.get("id") or not email:
        return None
    if userinfo.get("verified_email") is not True:
        logger.warning("oauth_email_unverified", provider="google")
        return None
    return OAuthProfile(
        provider_id=str(userinfo["id"]),
        email=str(email),
        username=userinfo.get("given_name") or str(email).split("@", 1)[0],
    )


class HttpOAuthVerifier:
    """Authorization-code exchange against Google and GitHub.

    Every failure (unknown provider, missing client credentials, a rejected
    code, malformed provider responses, no verified email) is logged and
    reported as ``None``; callers treat that as an authentication failure.
    """

    def __init__(
        self,
        credentials: Mapping[str, OAuthClientCredentials],
        redirect_uri: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.credentials = dict(credentials)
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpOAuthVerifier":
        credentials: Dict[str, OAuthClientCredentials] = {}
        if settings.oauth_google_client_id and settings.oauth_google_client_secret:
            credentials["google"] = OAuthClientCredentials(
                settings.oauth_google_client_id, settings.oauth_google_client_secret
            )
        if settings.oauth_github_client_id and settings.oauth_github_client_secret:
            credentials["github"] = OAuthClientCredentials(
                settings.oauth_github_client_id, settings.oauth_github_client_secret
            )
        return cls(credentials, settings.oauth_redirect_uri)

    def _exchange_code(
        self, client: httpx.Client, provider: str, creds: OAuthClientCredentials, code: str
    ) -> Optional[str]:
        response = client.post(
            OAUTH_PROVIDERS[provider]["token_url"],
            data={
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        result = response.json()
        access_token = result.get("access_token") if isinstance(result, dict) else None
        if not access_token:
            logger.error("oauth_no_access_token", provider=provider)
            return None
        return str(access_token)

    def _github_profile(
        self, client: httpx.Client, userinfo: Mapping[str, Any], headers: Dict[str, str]
    ) -> Optional[OAuthProfile]:
        if not userinfo.get("id"):
            return None
        # The public profile email may be unverified; use the primary verified address
        response = client.get(OAUTH_PROVIDERS["github"]["emails_url"], headers=headers)
        response.raise_for_status()
        emails = response.json()
        primary = None
        if isinstance(emails, list):
            primary = next(
                (
                    e.get("email")
                    for e in emails
                    if isinstance(e, dict) and e.get("primary") and e.get("verified")
                ),
                None,
            )
        if not primary:
            logger.warning("oauth_email_unverified", provider="github")
            return None
        return OAuthProfile(
            provider_id=str(userinfo["id"]),
            email=str(primary),
            username=userinfo.get("login"),
        )

    def verify(self, provider: str, code: str) -> Optional[OAuthProfile]:
        if provider not in OAUTH_PROVIDERS:
            logger.warning("oauth_unknown_provider", provider=provider)
            return None
        creds = self.credentials.get(provider)
        if not creds or not self.redirect_uri:
            logger.error("oauth_not_configured", provider=provider)
            return None
        if not code:
            return None
        try:
            with httpx.Client(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                access_token = self._exchange_code(client, provider, creds, code)
                if not access_token:
                    return None
                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                response = client.get(OAUTH_PROVIDERS[provider]["userinfo_url"], headers=headers)
                response.raise_for_status()
                userinfo = response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                if provider == "github":
                    profile = self._github_profile(client, userinfo, headers)
                else:
                    profile = _profile_from_google(userinfo)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None
        if profile is None:
            logger.error("oauth_identity_incomplete", provider=provider)
            return None
        logger.info("oauth_exchange_success", provider=provider, provider_id=profile.provider_id)
        return profile
