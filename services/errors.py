# services/errors.py
from typing import Dict, List, Optional


class ChatServiceError(Exception):
    """Base class for failures the HTTP layer turns into structured responses."""


class Unauthenticated(ChatServiceError):
    pass


class Forbidden(ChatServiceError):
    pass


class NotFound(ChatServiceError):
    pass


class InvalidOperation(ChatServiceError):
    pass


class ValidationError(ChatServiceError):
    def __init__(self, message: str, errors: Optional[Dict[str, List[str]]] = None):
        super().__init__(message)
        self.errors = errors or {}


class StoreError(ChatServiceError):
    """Backend failure; the message is safe to show, the cause is only logged."""
