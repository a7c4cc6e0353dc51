"""
Exception hierarchy for okta-creds.

Library code raises these; only the CLI turns them into messages and exit
codes.  Every error has a short ``kind`` used in the run summary.
"""


class OktaCredsError(Exception):
    """Base class for all okta-creds errors."""

    kind = "Error"

    def __str__(self):
        message = super().__str__()
        return message or self.kind


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationError(OktaCredsError):
    kind = "AuthenticationError"


class InvalidCredentials(AuthenticationError):
    kind = "InvalidCredentials"


class AccountLocked(AuthenticationError):
    kind = "AccountLocked"


class PasswordExpired(AuthenticationError):
    kind = "PasswordExpired"


class EnrollmentRequired(AuthenticationError):
    kind = "EnrollmentRequired"


class ChallengeError(OktaCredsError):
    kind = "ChallengeError"


class FactorRejected(ChallengeError):
    kind = "FactorRejected"


class FactorTimeout(ChallengeError):
    kind = "FactorTimeout"


class UnsupportedFactor(ChallengeError):
    kind = "UnsupportedFactor"


class InvalidTransition(OktaCredsError):
    """A negotiator operation was called in a state that does not allow it."""

    kind = "InvalidTransition"


class SessionExpired(OktaCredsError):
    kind = "SessionExpired"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class NetworkError(OktaCredsError):
    """Transient transport failure, possibly after several attempts."""

    kind = "NetworkError"

    def __init__(self, message="", attempts=1):
        super().__init__(message)
        self.attempts = attempts

    def __str__(self):
        message = super().__str__()
        if self.attempts > 1:
            return f"{message} (after {self.attempts} attempts)"
        return message


NetworkFailure = NetworkError


# ---------------------------------------------------------------------------
# Assertions and credentials
# ---------------------------------------------------------------------------


class FetchError(OktaCredsError):
    kind = "FetchError"


class ApplicationNotAccessible(FetchError):
    kind = "ApplicationNotAccessible"


class StepUpRequired(FetchError):
    kind = "StepUpRequired"


class MalformedResponse(FetchError):
    kind = "MalformedResponse"


class SsoLoginFailed(FetchError):
    kind = "SsoLoginFailed"


class AssertionParseError(OktaCredsError):
    kind = "AssertionParseError"


class MalformedAssertion(AssertionParseError):
    kind = "MalformedAssertion"


class NoRolesGranted(AssertionParseError):
    kind = "NoRolesGranted"


class ExchangeError(OktaCredsError):
    kind = "ExchangeError"

    def __init__(self, message="", code=None):
        super().__init__(message)
        self.code = code


class RoleNotAssumable(ExchangeError):
    kind = "RoleNotAssumable"


# ---------------------------------------------------------------------------
# Discovery, reconciliation and local files
# ---------------------------------------------------------------------------


class DiscoveryAborted(OktaCredsError):
    kind = "DiscoveryAborted"


class ReconciliationConflict(OktaCredsError):
    """Two entries resolve to the same profile name inside one session."""

    kind = "ReconciliationConflict"

    def __init__(self, name, first, second):
        super().__init__(
            f"profile name '{name}' is claimed by both {first} and {second}"
        )
        self.name = name
        self.first = first
        self.second = second


class SecretStoreError(OktaCredsError):
    kind = "SecretStoreError"


class ConfigError(OktaCredsError):
    kind = "ConfigError"
