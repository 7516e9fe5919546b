# fanreply/core/errors.py
from typing import Optional


class FanreplyError(Exception):
    """Base class for errors raised by the OAuth, platform and AI layers."""


class InvalidState(FanreplyError):
    """OAuth `state` is unknown, already used or expired."""


class TokenExchangeFailed(FanreplyError):
    def __init__(self, status: Optional[int], body: str):
        self.status = status
        self.body = body
        super().__init__(f"Failed to exchange code for tokens: {status} {body[:200]}")


class TokenRefreshFailed(FanreplyError):
    def __init__(self, status: Optional[int], body: str):
        self.status = status
        self.body = body
        super().__init__(f"Failed to refresh token: {status} {body[:200]}")


class NotConnected(FanreplyError):
    def __init__(self, creator_id: int):
        self.creator_id = creator_id
        super().__init__(f"Creator {creator_id} is not connected to Fanvue")


class PlatformApiError(FanreplyError):
    """Non-2xx (or transport failure) from the Fanvue API.

    `message` is the provider's own message when it sent one, so it can be
    shown to the dashboard user as-is.
    """

    def __init__(self, status: Optional[int], message: str):
        self.status = status
        self.message = message
        super().__init__(message)


class GenerationFailed(FanreplyError):
    pass


class SignatureInvalid(FanreplyError):
    pass
