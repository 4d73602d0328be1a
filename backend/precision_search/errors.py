"""
Precision Search - Error Types

Errors are raised where they occur and caught at the queue controller's
boundaries (candidate, strategy, transaction, invocation).
"""


class PrecisionSearchError(Exception):
    """Base exception for precision search errors"""
    pass


class RepositoryError(PrecisionSearchError):
    """Raised when the backing store cannot complete a read or write"""
    pass


class ConflictError(RepositoryError):
    """Raised when a compare-and-set precondition does not hold"""
    pass


class NotFoundError(PrecisionSearchError):
    """Raised when a referenced record does not exist"""
    pass


class AccessDeniedError(PrecisionSearchError):
    """Raised when a record belongs to a different owner"""
    pass


class MailApiError(PrecisionSearchError):
    """Raised when the mailbox API call fails"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class MailboxAuthError(MailApiError):
    """Raised when mailbox credentials are expired or revoked"""
    pass


class ExternalServiceError(PrecisionSearchError):
    """Raised when a classification or query suggestion call fails"""
    pass


class RejectedDocumentError(PrecisionSearchError):
    """Raised when automation tries to reconnect a document the user unlinked"""
    pass
