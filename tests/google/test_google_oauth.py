"""
Tests for GoogleOAuthService: code exchange, refresh and optimistic-lock races.
requests.post is patched; tokens live in the in-memory database.
"""
from datetime import timedelta
from unittest.mock import Mock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from sqlalchemy.orm.exc import StaleDataError

from calsync.datetime_utils import utcnow
from calsync.google.errors import NonRetryableIntegrationError, RetryableIntegrationError
from calsync.google.oauth import GoogleOAuthService
from calsync.models import OAuthGoogleToken, db


def _token_response(status_code=200, body=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = body or {}
    return response


@pytest.fixture
def oauth_service(app):
    return GoogleOAuthService.from_config(app.config)


def _stored(user_id):
    db.session.expire_all()
    return db.session.get(OAuthGoogleToken, user_id)


# ==============================================================================
# AUTHORIZATION URL
# ==============================================================================

class TestAuthorizationUrl:
    """Consent URL parameters."""

    def test_requests_offline_access_with_consent(self, oauth_service):
        url = oauth_service.build_authorization_url("state-123")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert parsed.netloc == "accounts.google.com"
        assert params["state"] == ["state-123"]
        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert params["client_id"] == ["test-client-id"]
        assert params["response_type"] == ["code"]


# ==============================================================================
# CODE EXCHANGE
# ==============================================================================

class TestExchangeCode:
    """Storing credentials after consent."""

    @patch("calsync.google.oauth.requests.post")
    def test_creates_new_credential(self, mock_post, oauth_service):
        mock_post.return_value = _token_response(body={
            "access_token": "access-1", "refresh_token": "refresh-1", "expires_in": 3599, "scope": "calendar",
        })

        oauth_service.exchange_code_for_token("code-abc", 7)

        token = _stored(7)
        assert token.access_token == "access-1"
        assert token.refresh_token == "refresh-1"
        assert token.expiry_at > utcnow() + timedelta(minutes=59)
        assert mock_post.call_args.kwargs["data"]["grant_type"] == "authorization_code"

    @patch("calsync.google.oauth.requests.post")
    def test_new_credential_without_refresh_token_is_rejected(self, mock_post, oauth_service):
        mock_post.return_value = _token_response(body={"access_token": "access-1", "expires_in": 3600})

        with pytest.raises(ValueError):
            oauth_service.exchange_code_for_token("code-abc", 7)

        assert _stored(7) is None

    @patch("calsync.google.oauth.requests.post")
    def test_existing_credential_keeps_refresh_token(self, mock_post, oauth_service, make_token):
        make_token(user_id=7, refresh_token="refresh-old")
        mock_post.return_value = _token_response(body={"access_token": "access-2", "expires_in": 3600})

        oauth_service.exchange_code_for_token("code-abc", 7)

        token = _stored(7)
        assert token.access_token == "access-2"
        assert token.refresh_token == "refresh-old"

    @patch("calsync.google.oauth.requests.post")
    def test_rejected_code(self, mock_post, oauth_service):
        mock_post.return_value = _token_response(400, text='{"error": "invalid_grant"}')

        with pytest.raises(NonRetryableIntegrationError):
            oauth_service.exchange_code_for_token("bad", 7)


# ==============================================================================
# REFRESH
# ==============================================================================

class TestRefresh:
    """Access-token refresh with the stored refresh token."""

    @patch("calsync.google.oauth.requests.post")
    def test_refresh_updates_access_token_only(self, mock_post, oauth_service, make_token):
        make_token(user_id=7, access_token="access-old", refresh_token="refresh-1")
        mock_post.return_value = _token_response(body={"access_token": "access-new", "expires_in": 3600})

        oauth_service.refresh_access_token(7)

        token = _stored(7)
        assert token.access_token == "access-new"
        assert token.refresh_token == "refresh-1"
        sent = mock_post.call_args.kwargs["data"]
        assert sent["grant_type"] == "refresh_token"
        assert sent["refresh_token"] == "refresh-1"

    def test_missing_credential_is_non_retryable(self, oauth_service):
        with pytest.raises(NonRetryableIntegrationError):
            oauth_service.refresh_access_token(999)

    @pytest.mark.parametrize("status", [400, 401])
    @patch("calsync.google.oauth.requests.post")
    def test_revoked_refresh_token_is_non_retryable(self, mock_post, status, oauth_service, make_token):
        make_token(user_id=7)
        mock_post.return_value = _token_response(status, text='{"error": "invalid_grant"}')

        with pytest.raises(NonRetryableIntegrationError) as exc_info:
            oauth_service.refresh_access_token(7)

        # Must not look like a calendar 401, or the worker would loop on refresh
        assert exc_info.value.status_code == 0
        assert "re-authorization required" in str(exc_info.value)

    @patch("calsync.google.oauth.requests.post")
    def test_server_error_is_retryable(self, mock_post, oauth_service, make_token):
        make_token(user_id=7)
        mock_post.return_value = _token_response(503)

        with pytest.raises(RetryableIntegrationError):
            oauth_service.refresh_access_token(7)

    @patch("calsync.google.oauth.requests.post")
    def test_network_error_is_retryable(self, mock_post, oauth_service, make_token):
        make_token(user_id=7)
        mock_post.side_effect = requests.ConnectionError("reset")

        with pytest.raises(RetryableIntegrationError):
            oauth_service.refresh_access_token(7)

    @patch("calsync.google.oauth.requests.post")
    def test_concurrent_refresh_conflict_is_swallowed(self, mock_post, oauth_service, make_token):
        make_token(user_id=7, access_token="access-old")
        mock_post.return_value = _token_response(body={"access_token": "access-new", "expires_in": 3600})

        with patch("calsync.google.oauth.db.session.commit", side_effect=StaleDataError("version mismatch")):
            oauth_service.refresh_access_token(7)

        assert _stored(7).access_token == "access-old"


# ==============================================================================
# PROACTIVE REFRESH
# ==============================================================================

class TestGetValidToken:
    """Refresh ahead of expiry."""

    def test_fresh_token_is_returned_without_refresh(self, oauth_service, make_token):
        make_token(user_id=7, expires_in=timedelta(hours=1))

        with patch.object(oauth_service, "refresh_access_token") as refresh:
            token = oauth_service.get_valid_token(7, horizon_minutes=5)

        refresh.assert_not_called()
        assert token.access_token == "access-1"

    def test_expiring_token_is_refreshed(self, oauth_service, make_token):
        make_token(user_id=7, expires_in=timedelta(minutes=2))

        with patch.object(oauth_service, "refresh_access_token") as refresh:
            oauth_service.get_valid_token(7, horizon_minutes=5)

        refresh.assert_called_once_with(7)

    def test_force_refresh(self, oauth_service, make_token):
        make_token(user_id=7, expires_in=timedelta(hours=1))

        with patch.object(oauth_service, "refresh_access_token") as refresh:
            oauth_service.get_valid_token(7, force_refresh=True)

        refresh.assert_called_once_with(7)
