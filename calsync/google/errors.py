"""Exceptions raised by the Google integration layer."""


class IntegrationError(Exception):
    """Base class for failures talking to an external service."""


class RetryableIntegrationError(IntegrationError):
    """Transient failure: network trouble, 5xx, rate limiting."""


class NonRetryableIntegrationError(IntegrationError):
    """
    Permanent failure that retrying will not fix.

    ``status_code`` carries the HTTP status when one applies (401/403), and
    0 otherwise. The worker treats 401 as a signal to refresh credentials.
    """

    def __init__(self, message, status_code=0):
        super().__init__(message)
        self.status_code = status_code
