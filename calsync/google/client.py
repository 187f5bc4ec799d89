"""
Thin Google Calendar v3 client over a requests Session.

Every call authenticates as a specific principal. Responses are classified
into success, retryable or non-retryable failures so the outbox worker can
decide what to do without looking at HTTP details.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional
from urllib.parse import quote

import requests
from requests.exceptions import ConnectionError, Timeout, RequestException

from calsync.datetime_utils import to_rfc3339
from calsync.google.errors import NonRetryableIntegrationError, RetryableIntegrationError
from calsync.google.oauth import GoogleOAuthService
from calsync.logging_config import get_logger

logger = get_logger(__name__)

# Resource already gone: fine for delete, and an update of a vanished event has nothing left to do
GONE_STATUSES = (404, 410)


@dataclass
class CalendarEvent:
    title: str
    description: Optional[str]
    start_at: datetime
    end_at: datetime


class GoogleCalendarClient:
    """Create, update and delete events on one Google calendar."""

    def __init__(self, oauth_service: GoogleOAuthService, base_url: str = "https://www.googleapis.com/calendar/v3",
                 calendar_id: str = "primary", timezone: str = "UTC", refresh_horizon_minutes: int = 5,
                 timeout: int = 30, session: Optional[requests.Session] = None):
        self.oauth_service = oauth_service
        self.base_url = base_url.rstrip("/")
        self.calendar_id = calendar_id
        self.timezone = timezone
        self.refresh_horizon_minutes = refresh_horizon_minutes
        self.timeout = timeout

        # Reusable HTTP session
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config, oauth_service: GoogleOAuthService):
        return cls(
            oauth_service,
            base_url=config.get("GOOGLE_CALENDAR_BASE_URL", "https://www.googleapis.com/calendar/v3"),
            calendar_id=config.get("GOOGLE_CALENDAR_ID", "primary"),
            timezone=config.get("GOOGLE_CALENDAR_TIMEZONE", "UTC"),
            refresh_horizon_minutes=config.get("GOOGLE_TOKEN_REFRESH_HORIZON_MINUTES", 5),
            timeout=config.get("HTTP_TIMEOUT_SECONDS", 30),
        )

    # -------------------------
    # Events
    # -------------------------
    def create_event(self, user_id: int, event: CalendarEvent) -> str:
        """Insert a new event and return its Google id."""
        logger.info("Creating calendar event", user_id=user_id, title=event.title)

        response = self._request(user_id, "POST", self._events_path(), json=self._event_body(event))
        self._raise_for_status(response, "create_event", user_id)
        if response.status_code in GONE_STATUSES:
            # The calendar itself is missing; nothing to create into
            raise NonRetryableIntegrationError(f"Calendar not found: {self.calendar_id}")
        return response.json()["id"]

    def update_event(self, user_id: int, event_id: str, event: CalendarEvent) -> None:
        """Fetch the event, overwrite title/description/times and PUT it back."""
        logger.info("Updating calendar event", user_id=user_id, event_id=event_id)

        path = self._events_path(event_id)
        response = self._request(user_id, "GET", path)
        self._raise_for_status(response, "update_event", user_id)
        if response.status_code in GONE_STATUSES:
            logger.info("Event no longer exists, treating update as done", user_id=user_id, event_id=event_id)
            return

        body = response.json()
        body.update(self._event_body(event))

        response = self._request(user_id, "PUT", path, json=body)
        self._raise_for_status(response, "update_event", user_id)

    def delete_event(self, user_id: int, event_id: str) -> None:
        """Delete an event. Deleting an event that is already gone succeeds."""
        logger.info("Deleting calendar event", user_id=user_id, event_id=event_id)

        response = self._request(user_id, "DELETE", self._events_path(event_id))
        self._raise_for_status(response, "delete_event", user_id)

    # -------------------------
    # HTTP plumbing
    # -------------------------
    def _request(self, user_id: int, method: str, path: str, **kwargs) -> requests.Response:
        """
        Send one authenticated request.

        A 401 forces exactly one token refresh and a single resend; whatever
        comes back the second time is returned as is.
        """
        url = f"{self.base_url}{path}"

        try:
            token = self.oauth_service.get_valid_token(user_id, self.refresh_horizon_minutes)
            response = self.session.request(method, url, headers=self._auth_headers(token.access_token),
                                            timeout=self.timeout, **kwargs)

            if response.status_code == 401:
                logger.info("401 from Google, refreshing token and retrying", user_id=user_id)
                token = self.oauth_service.get_valid_token(user_id, self.refresh_horizon_minutes, force_refresh=True)
                response = self.session.request(method, url, headers=self._auth_headers(token.access_token),
                                                timeout=self.timeout, **kwargs)
            return response

        except (ConnectionError, Timeout) as e:
            raise RetryableIntegrationError(f"Network error during {method} {path}: {e}") from e
        except RequestException as e:
            raise RetryableIntegrationError(f"Request failed during {method} {path}: {e}") from e

    def _raise_for_status(self, response: requests.Response, operation: str, user_id: int) -> None:
        status = response.status_code
        if status < 400:
            return

        reason = self._error_reason(response)
        if status in GONE_STATUSES:
            logger.info("Google resource already gone, treating as success",
                        operation=operation, user_id=user_id, status=status)
            return

        logger.error("Google API error", operation=operation, user_id=user_id, status=status, reason=reason)

        if status in (401, 403):
            raise NonRetryableIntegrationError(f"Authentication/Authorization failed: {reason}", status_code=status)
        if status == 429:
            raise RetryableIntegrationError("Rate limit exceeded")
        if status >= 500:
            raise RetryableIntegrationError(f"Server error: {status}")
        raise NonRetryableIntegrationError(f"Bad request: {status} - {reason}", status_code=0)

    @staticmethod
    def _error_reason(response: requests.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return response.text or "Unknown"

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(self.calendar_id, safe='')}/events"
        if event_id:
            path = f"{path}/{quote(event_id, safe='')}"
        return path

    def _event_body(self, event: CalendarEvent) -> Dict:
        return {
            "summary": event.title,
            "description": event.description,
            "start": {"dateTime": to_rfc3339(event.start_at, self.timezone), "timeZone": self.timezone},
            "end": {"dateTime": to_rfc3339(event.end_at, self.timezone), "timeZone": self.timezone},
        }
