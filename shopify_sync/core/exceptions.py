"""Exception hierarchy for the sync service."""

from typing import Optional


class SyncServiceError(Exception):
    """Base sync service error."""
    pass


class ShopifyAPIError(SyncServiceError):
    """Shopify API request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ShopifyAPIError):
    """Authentication failed (401/403)."""
    pass


class RateLimitError(ShopifyAPIError):
    """Rate limit exceeded (429 or THROTTLED)."""
    pass


class ShopifyServerError(ShopifyAPIError):
    """Server side or transport failure, safe to retry."""
    pass


class GraphQLError(ShopifyAPIError):
    """GraphQL errors returned in a successful HTTP response."""
    pass


class BulkOperationError(SyncServiceError):
    """Bulk operation could not be started or did not complete."""
    pass


class BulkOperationTimeoutError(BulkOperationError):
    """Bulk operation did not finish before the deadline."""
    pass


class SyncCancelledError(SyncServiceError):
    """A running sync was cancelled."""
    pass


class SyncAlreadyRunningError(SyncServiceError):
    """A sync is already running for the mapping."""

    def __init__(self, mapping_id: str):
        super().__init__(f"Sync already running for mapping: {mapping_id}")
        self.mapping_id = mapping_id


class MappingNotFoundError(SyncServiceError):
    """Mapping does not exist."""

    def __init__(self, mapping_id: str):
        super().__init__(f"Mapping not found: {mapping_id}")
        self.mapping_id = mapping_id


class ExpressionError(SyncServiceError):
    """Expression could not be compiled or evaluated."""
    pass


class ScheduleValidationError(SyncServiceError):
    """Schedule pattern is invalid or runs too often."""
    pass


class WebhookVerificationError(SyncServiceError):
    """Webhook signature verification failed."""
    pass


class DatabaseWriteError(SyncServiceError):
    """Write request cannot be executed."""
    pass
