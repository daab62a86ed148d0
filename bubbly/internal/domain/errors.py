from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for failures reported back to a requester.

    Every subclass carries a stable ``code`` so the HTTP layer and the
    event channel can report the same structured reason.
    """
    code = "error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(ChatError):
    code = "not_found"
    status_code = 404


class Conflict(ChatError):
    code = "conflict"
    status_code = 409


class DuplicateUsername(Conflict):
    pass


class AlreadyFriends(Conflict):
    pass


class AlreadyMember(Conflict):
    pass


class Invalid(ChatError):
    code = "invalid"
    status_code = 400


class InvalidCredentials(ChatError):
    code = "invalid_credentials"
    status_code = 401


class StoreFailure(ChatError):
    code = "store_failure"
    status_code = 500
