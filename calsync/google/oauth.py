"""
Google OAuth credential management.

Holds one credential per principal in ``oauth_google_tokens``. Access tokens
are refreshed with the stored refresh token; concurrent refreshes race on the
row version and the loser simply keeps whatever the winner wrote.
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple
from urllib.parse import urlencode

import requests
from requests.exceptions import RequestException
from sqlalchemy.orm.exc import StaleDataError

from calsync.datetime_utils import utcnow
from calsync.google.errors import NonRetryableIntegrationError, RetryableIntegrationError
from calsync.logging_config import get_logger
from calsync.models import OAuthGoogleToken, db

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


class GoogleOAuthService:
    """Authorization-code exchange and access-token refresh against Google's token endpoint."""

    def __init__(self, client_id, client_secret, redirect_uri, token_uri, authorization_uri, scope, timeout=30):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.token_uri = token_uri
        self.authorization_uri = authorization_uri
        self.scope = scope
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            client_id=config.get("GOOGLE_CLIENT_ID"),
            client_secret=config.get("GOOGLE_CLIENT_SECRET"),
            redirect_uri=config.get("GOOGLE_REDIRECT_URI"),
            token_uri=config.get("GOOGLE_TOKEN_URI"),
            authorization_uri=config.get("GOOGLE_AUTHORIZATION_URI"),
            scope=config.get("GOOGLE_OAUTH_SCOPE"),
            timeout=config.get("HTTP_TIMEOUT_SECONDS", 30),
        )

    # -------------------------
    # Authorization code flow
    # -------------------------
    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "access_type": "offline",
            # Forces Google to hand out a refresh token even on re-consent
            "prompt": "consent",
            "state": state,
        }
        return f"{self.authorization_uri}?{urlencode(params)}"

    def exchange_code_for_token(self, code: str, user_id: int) -> OAuthGoogleToken:
        """
        Trade an authorization code for tokens and store them for ``user_id``.

        Raises:
            ValueError: First-time credential without a refresh token
            RetryableIntegrationError: Network failure or 5xx from Google
            NonRetryableIntegrationError: Google rejected the code
        """
        logger.info("Exchanging code for token", user_id=user_id)

        data = self._post_token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        })

        access_token = data["access_token"]
        refresh_token = data.get("refresh_token")
        scope = data.get("scope")
        expiry_at = self._expiry_from(data)

        token = db.session.get(OAuthGoogleToken, user_id)
        if token is not None:
            logger.info("Updating existing token", user_id=user_id)
            token.update_tokens(access_token, refresh_token, expiry_at, scope)
        else:
            logger.info("Creating new token", user_id=user_id)
            token = OAuthGoogleToken.create(user_id, access_token, refresh_token, expiry_at, scope)
            db.session.add(token)

        db.session.commit()
        logger.info("Token saved", user_id=user_id, expiry_at=expiry_at.isoformat())
        return token

    # -------------------------
    # Refresh
    # -------------------------
    def refresh_access_token(self, user_id: int) -> Optional[OAuthGoogleToken]:
        """
        Refresh and persist the access token for ``user_id``.

        Losing an optimistic-lock race to another refresher is not an error:
        the session is rolled back and the winner's token stays in place.

        Raises:
            NonRetryableIntegrationError: No stored credential, or the refresh
                token was revoked/expired
            RetryableIntegrationError: Network failure or 5xx from Google
        """
        token = db.session.get(OAuthGoogleToken, user_id)
        if token is None:
            raise NonRetryableIntegrationError(f"Google OAuth token not found for userId={user_id}")

        access_token, expiry_at = self.request_token_refresh(token)
        token.update_access_token(access_token, expiry_at)

        try:
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            logger.info("Token refreshed concurrently by another worker", user_id=user_id)
            return db.session.get(OAuthGoogleToken, user_id)

        logger.info("Access token refreshed", user_id=user_id, expiry_at=expiry_at.isoformat())
        return token

    def request_token_refresh(self, token: OAuthGoogleToken) -> Tuple[str, datetime]:
        """POST grant_type=refresh_token. Returns (access_token, expiry_at)."""
        data = self._post_token_request({
            "grant_type": "refresh_token",
            "refresh_token": token.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }, user_id=token.user_id)
        return data["access_token"], self._expiry_from(data)

    def get_valid_token(self, user_id: int, horizon_minutes: int = 5, force_refresh: bool = False) -> OAuthGoogleToken:
        """Stored credential for ``user_id``, refreshed first when it expires within the horizon."""
        token = db.session.get(OAuthGoogleToken, user_id)
        if token is None:
            raise NonRetryableIntegrationError(f"Google OAuth token not found for userId={user_id}")

        if force_refresh or token.is_expiring_soon(horizon_minutes):
            logger.debug("Refreshing access token", user_id=user_id, forced=force_refresh)
            token = self.refresh_access_token(user_id)
        return token

    # -------------------------
    # Helpers
    # -------------------------
    def _post_token_request(self, payload, user_id=None):
        try:
            response = requests.post(self.token_uri, data=payload, timeout=self.timeout)
        except RequestException as e:
            logger.warning("Token endpoint unreachable", user_id=user_id, error=str(e))
            raise RetryableIntegrationError(f"Network error calling token endpoint: {e}") from e

        if response.status_code in (400, 401):
            logger.warning("Token request rejected", user_id=user_id, status=response.status_code)
            raise NonRetryableIntegrationError(
                f"Refresh token revoked or expired, re-authorization required: {response.text}"
                if payload.get("grant_type") == "refresh_token"
                else f"Authorization code rejected: {response.text}"
            )
        if response.status_code >= 500:
            raise RetryableIntegrationError(f"Token endpoint error {response.status_code}: {response.text}")
        if response.status_code >= 400:
            raise NonRetryableIntegrationError(f"Token endpoint error {response.status_code}: {response.text}")

        return response.json()

    @staticmethod
    def _expiry_from(data) -> datetime:
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
        return utcnow() + timedelta(seconds=int(expires_in))
