"""
Shared plumbing for Google API connectors.

Builds discovery service objects lazily, one per thread, and maps
googleapiclient errors onto the msgsync error taxonomy. Retrying is left to
the orchestrator.
"""

import json
import logging
import threading
from collections.abc import Callable
from typing import Any, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from msgsync.errors import PlatformAPIError, TransientUpstreamError, UpstreamAuthError

logger = logging.getLogger(__name__)

# 403 reasons that mean "slow down" rather than "not allowed"
RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "RESOURCE_EXHAUSTED"}
)

DEFAULT_PAGE_SIZE = 100


def http_error_reasons(error: HttpError) -> set[str]:
    """Extract the error reasons from an HttpError body."""
    reasons: set[str] = set()
    try:
        payload = json.loads(error.content.decode("utf-8"))
    except (AttributeError, UnicodeDecodeError, ValueError):
        return reasons

    if not isinstance(payload, dict):
        return reasons
    body = payload.get("error", {})
    if not isinstance(body, dict):
        return reasons

    for detail in body.get("errors", []) or []:
        if isinstance(detail, dict) and detail.get("reason"):
            reasons.add(detail["reason"])
    if body.get("status"):
        reasons.add(body["status"])
    return reasons


def translate_http_error(error: HttpError, operation_name: str) -> PlatformAPIError:
    """
    Map an HttpError onto the error taxonomy.

    Args:
        error: Error raised by a googleapiclient request
        operation_name: Name for the error message

    Returns:
        TransientUpstreamError, UpstreamAuthError or PlatformAPIError
    """
    status_code = error.resp.status
    message = f"{operation_name} failed with status {status_code}: {error}"

    if status_code == 429 or status_code >= 500:
        return TransientUpstreamError(message)
    if status_code == 403 and http_error_reasons(error) & RATE_LIMIT_REASONS:
        return TransientUpstreamError(message)
    if status_code in (401, 403):
        return UpstreamAuthError(message)
    return PlatformAPIError(message)


class GoogleAPIConnector:
    """
    Mixin for connectors backed by googleapiclient services.

    Subclasses set SERVICE_NAME and SERVICE_VERSION and use self.service.
    Service objects are not thread-safe, so each thread builds its own.
    """

    SERVICE_NAME = ""
    SERVICE_VERSION = ""

    def __init__(self, credentials: Credentials, page_size: int = DEFAULT_PAGE_SIZE):
        """
        Args:
            credentials: Authorized Google credentials for the account
            page_size: Page size for list calls
        """
        self.credentials = credentials
        self.page_size = page_size
        self._local = threading.local()

    def _build_service(self, name: str, version: str) -> Any:
        services = getattr(self._local, "services", None)
        if services is None:
            services = self._local.services = {}
        if (name, version) not in services:
            try:
                services[(name, version)] = build(
                    name, version, credentials=self.credentials, cache_discovery=False
                )
                logger.debug(f"Created {name} {version} service")
            except Exception as e:
                logger.error(f"Failed to create {name} service: {e}")
                raise PlatformAPIError(f"Failed to create API service: {e}") from e
        return services[(name, version)]

    @property
    def service(self) -> Any:
        """
        Get or create this thread's Google API service object.

        Raises:
            PlatformAPIError: If the service cannot be created
        """
        return self._build_service(self.SERVICE_NAME, self.SERVICE_VERSION)

    def _execute(
        self,
        request_fn: Callable[[], Any],
        operation_name: str,
        not_found_ok: bool = False,
    ) -> Optional[Any]:
        """
        Execute a request and translate its failures.

        Args:
            request_fn: Callable building and executing the request
            operation_name: Name for logging purposes
            not_found_ok: Return None instead of raising on 404

        Returns:
            The response, or None for a tolerated 404

        Raises:
            TransientUpstreamError: Rate limits, server and network errors
            UpstreamAuthError: Credential or permission failures
            PlatformAPIError: Any other API failure
        """
        try:
            return request_fn()
        except HttpError as e:
            if not_found_ok and e.resp.status == 404:
                logger.debug(f"{operation_name}: not found")
                return None
            error = translate_http_error(e, operation_name)
            logger.debug(str(error))
            raise error from e
        except RefreshError as e:
            raise UpstreamAuthError(f"{operation_name}: credentials rejected: {e}") from e
        except (TransportError, httplib2.HttpLib2Error, OSError) as e:
            raise TransientUpstreamError(f"{operation_name}: network error: {e}") from e
