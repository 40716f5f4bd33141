"""
teams_relay/errors.py — exception taxonomy.

Only AuthRequired, AuthExpired, LoginTimeout and AuthFailed ever reach
callers. SessionUnreadable is caught by the store and MalformedCredentialEntry
by the extraction engine; both exist so those modules can raise and catch a
named condition instead of a bare Exception.
"""
from typing import Optional


class TeamsRelayError(Exception):
    """Base class. `remediation` is a short hint shown to the user/agent."""

    remediation = "Run `teams-relay login` and try again."

    def __init__(self, message: str, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        if remediation is not None:
            self.remediation = remediation


class AuthRequired(TeamsRelayError):
    """No usable credential for the audience; a browser login is needed."""

    def __init__(self, audience: str, message: Optional[str] = None) -> None:
        self.audience = audience
        super().__init__(
            message or f"No valid {audience} credential available. Browser login required."
        )


class AuthExpired(TeamsRelayError):
    """The remote service rejected the credential (HTTP 401)."""

    def __init__(self, audience: str, message: Optional[str] = None) -> None:
        self.audience = audience
        super().__init__(
            message or f"The {audience} credential was rejected as expired. Re-auth required."
        )


class LoginTimeout(TeamsRelayError):
    """The user did not finish the interactive login in time."""

    remediation = "Run `teams-relay login` again and complete sign-in in the browser window."


class AuthFailed(TeamsRelayError):
    """The browser login cycle failed for a reason other than a timeout."""


class SessionUnreadable(TeamsRelayError):
    """A persisted document exists but cannot be decrypted or parsed."""


class MalformedCredentialEntry(ValueError):
    """A single storage entry or cookie failed to decode."""
