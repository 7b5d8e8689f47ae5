"""Messaging error taxonomy.

Each error is an HTTPException so routes can let it propagate untouched; the
stable ``code`` is echoed in the ``X-Error-Code`` header for clients.
"""

from typing import Optional

from fastapi import HTTPException, status


class MessagingError(HTTPException):
    code = "MESSAGING_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Messaging error"

    def __init__(self, detail: Optional[str] = None, headers: Optional[dict] = None):
        merged = {"X-Error-Code": self.code}
        if headers:
            merged.update(headers)
        super().__init__(
            status_code=type(self).status_code,
            detail=detail or self.default_detail,
            headers=merged,
        )


class NotFound(MessagingError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"


class Forbidden(MessagingError):
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not authorized"


class NotAMember(Forbidden):
    code = "NOT_A_MEMBER"
    default_detail = "Not a member of this conversation"


class InvalidGroupComposition(MessagingError):
    code = "INVALID_GROUP_COMPOSITION"
    default_detail = "Group conversations need a name and at least 3 members"


class NotGroupConversation(MessagingError):
    code = "NOT_GROUP_CONVERSATION"
    default_detail = "Membership of direct conversations cannot change"


class InvalidIdentifier(MessagingError):
    code = "INVALID_ID"
    default_detail = "Invalid identifier"


class RateLimited(MessagingError):
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = "Rate limit exceeded"

    def __init__(self, detail: Optional[str] = None, *, retry_after_seconds: int = 1):
        super().__init__(detail, headers={"X-Retry-After": str(retry_after_seconds)})
