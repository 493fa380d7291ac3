"""Exceptions raised by Vision Board services."""

from typing import Optional


class VisionBoardError(Exception):
    """Base class for service errors."""
    status_code = 400

    def to_dict(self) -> dict:
        return {"error": str(self)}


class AuthorizationError(VisionBoardError):
    """Raised when a request carries no usable identity."""
    status_code = 401


class ForbiddenError(VisionBoardError):
    """Raised when the caller does not own the resource."""
    status_code = 403


class NotFoundError(VisionBoardError):
    """Raised when a board, goal, profile or checkout does not exist."""
    status_code = 404

    def __init__(self, kind: str, key: Optional[str] = None):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found")


class ValidationError(VisionBoardError):
    """Raised for malformed input."""
    status_code = 400


class QuotaExceededError(VisionBoardError):
    """Raised when a board, goal or image quota is exhausted."""
    status_code = 400

    def __init__(self, message: str, requires_upgrade: bool = False, credits: Optional[int] = None):
        self.requires_upgrade = requires_upgrade
        self.credits = credits
        super().__init__(message)

    def to_dict(self) -> dict:
        body = {"error": str(self), "requiresUpgrade": self.requires_upgrade}
        if self.credits is not None:
            body["credits"] = self.credits
        return body


class ExternalServiceError(VisionBoardError):
    """Raised when an upstream provider call fails."""
    status_code = 502

    def __init__(self, service: str, detail: str):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} request failed: {detail}")
