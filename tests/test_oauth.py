"""Authorization-code exchange against mocked Google and GitHub endpoints."""

from urllib.parse import parse_qs

import httpx
import pytest

from gallerycore.config import Settings
from gallerycore.service.oauth import HttpOAuthVerifier, OAuthClientCredentials

CREDS = {
    "google": OAuthClientCredentials("g-client", "g-secret"),
    "github": OAuthClientCredentials("gh-client", "gh-secret"),
}
REDIRECT = "https://gallery.example.com/oauth/callback"


class FakeProvider:
    """Serves token, userinfo and email endpoints; records every request."""

    def __init__(self, *, userinfo=None, emails=None, token_status=200, token_body=None):
        self.userinfo = userinfo or {}
        self.emails = emails if emails is not None else []
        self.token_status = token_status
        self.token_body = token_body if token_body is not None else {"access_token": "at-1"}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in ("/token", "/login/oauth/access_token"):
            form = parse_qs(request.content.decode())
            if form.get("code") != ["good-code"]:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(self.token_status, json=self.token_body)
        if request.headers.get("authorization") != "Bearer at-1":
            return httpx.Response(401)
        if path in ("/oauth2/v2/userinfo", "/user"):
            return httpx.Response(200, json=self.userinfo)
        if path == "/user/emails":
            return httpx.Response(200, json=self.emails)
        return httpx.Response(404)


def _verifier(provider: FakeProvider, **kwargs):
    return HttpOAuthVerifier(
        CREDS, kwargs.pop("redirect_uri", REDIRECT), transport=httpx.MockTransport(provider), **kwargs
    )


class TestGoogle:
    def test_verified_identity(self):
        fake = FakeProvider(
            userinfo={"id": "1093", "email": "pat@example.com", "verified_email": True, "given_name": "Pat"}
        )
        profile = _verifier(fake).verify("google", "good-code")

        assert profile.provider_id == "1093"
        assert profile.email == "pat@example.com"
        assert profile.username == "Pat"
        form = parse_qs(fake.requests[0].content.decode())
        assert form["client_id"] == ["g-client"]
        assert form["redirect_uri"] == [REDIRECT]
        assert form["grant_type"] == ["authorization_code"]

    def test_unverified_email_refused(self):
        fake = FakeProvider(
            userinfo={"id": "1093", "email": "pat@example.com", "verified_email": False}
        )
        assert _verifier(fake).verify("google", "good-code") is None

    def test_rejected_code(self):
        fake = FakeProvider(userinfo={"id": "1", "email": "a@example.com", "verified_email": True})
        assert _verifier(fake).verify("google", "stolen-code") is None
        assert len(fake.requests) == 1

    def test_token_response_without_access_token(self):
        fake = FakeProvider(token_body={"error": "nope"})
        assert _verifier(fake).verify("google", "good-code") is None


class TestGitHub:
    def test_uses_primary_verified_email(self):
        fake = FakeProvider(
            userinfo={"id": 42, "login": "octo", "email": "public@example.com"},
            emails=[
                {"email": "public@example.com", "primary": False, "verified": False},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ],
        )
        profile = _verifier(fake).verify("github", "good-code")

        assert profile.provider_id == "42"
        assert profile.email == "octo@example.com"
        assert profile.username == "octo"
        assert fake.requests[1].headers["accept"] == "application/vnd.github+json"

    def test_no_verified_primary_email(self):
        fake = FakeProvider(
            userinfo={"id": 42, "login": "octo"},
            emails=[{"email": "octo@example.com", "primary": True, "verified": False}],
        )
        assert _verifier(fake).verify("github", "good-code") is None

    def test_provider_outage(self):
        fake = FakeProvider(token_status=503)
        assert _verifier(fake).verify("github", "good-code") is None


class TestConfiguration:
    def _unreachable(self, request):
        raise AssertionError("no request expected")

    @pytest.mark.parametrize("provider", ["myspace", ""])
    def test_unknown_provider(self, provider):
        verifier = HttpOAuthVerifier(CREDS, REDIRECT, transport=httpx.MockTransport(self._unreachable))
        assert verifier.verify(provider, "good-code") is None

    def test_missing_credentials(self):
        verifier = HttpOAuthVerifier({}, REDIRECT, transport=httpx.MockTransport(self._unreachable))
        assert verifier.verify("github", "good-code") is None

    def test_missing_redirect_uri(self):
        verifier = HttpOAuthVerifier(CREDS, None, transport=httpx.MockTransport(self._unreachable))
        assert verifier.verify("google", "good-code") is None

    def test_from_settings_keeps_only_complete_pairs(self):
        settings = Settings(
            jwt_secret="s" * 40,
            oauth_github_client_id="gh-client",
            oauth_github_client_secret="gh-secret",
            oauth_google_client_id="g-client",
            oauth_redirect_uri=REDIRECT,
        )
        verifier = HttpOAuthVerifier.from_settings(settings)
        assert set(verifier.credentials) == {"github"}
        assert verifier.redirect_uri == REDIRECT
