"""
Okta login as an explicit state machine.

    UNAUTHENTICATED -> PRIMARY_FACTOR_SUBMITTED -> CHALLENGE_REQUIRED
        -> CHALLENGE_ANSWERED -> (CHALLENGE_REQUIRED ...) -> AUTHENTICATED -> EXPIRED

The Negotiator only talks to an ``idp`` object exposing ``primary_login``,
``verify_factor`` and ``create_session`` (see ``okta_creds.idp.IdpClient``),
so every transition can be driven from fixtures.  ``login`` is the
interactive driver used by the CLI.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from .errors import (
    AccountLocked,
    AuthenticationError,
    ChallengeError,
    EnrollmentRequired,
    FactorRejected,
    FactorTimeout,
    InvalidTransition,
    NetworkError,
    PasswordExpired,
    SessionExpired,
    UnsupportedFactor,
)
from .idp import AuthnResult

logger = logging.getLogger(__name__)

DEFAULT_FACTOR_ATTEMPTS = 3
PUSH_POLL_INTERVAL = 3  # seconds between push-approval polls
PUSH_POLL_TIMEOUT = 180  # seconds before giving up on a push

SUPPORTED_FACTOR_TYPES = {
    "push",
    "token:software:totp",
    "token:hotp",
    "token:hardware",
    "token",
    "sms",
    "call",
    "email",
    "question",
}


def utcnow():
    return datetime.now(timezone.utc)


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    PRIMARY_FACTOR_SUBMITTED = "primary-factor-submitted"
    CHALLENGE_REQUIRED = "challenge-required"
    CHALLENGE_ANSWERED = "challenge-answered"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    ABORTED = "aborted"


TRANSITIONS = {
    AuthState.UNAUTHENTICATED: {AuthState.PRIMARY_FACTOR_SUBMITTED, AuthState.ABORTED},
    AuthState.PRIMARY_FACTOR_SUBMITTED: {
        AuthState.CHALLENGE_REQUIRED,
        AuthState.AUTHENTICATED,
        AuthState.UNAUTHENTICATED,
        AuthState.ABORTED,
    },
    AuthState.CHALLENGE_REQUIRED: {AuthState.CHALLENGE_ANSWERED, AuthState.ABORTED},
    AuthState.CHALLENGE_ANSWERED: {
        AuthState.CHALLENGE_REQUIRED,
        AuthState.AUTHENTICATED,
        AuthState.ABORTED,
    },
    AuthState.AUTHENTICATED: {AuthState.EXPIRED, AuthState.ABORTED},
    AuthState.EXPIRED: {AuthState.UNAUTHENTICATED, AuthState.ABORTED},
    AuthState.ABORTED: {AuthState.UNAUTHENTICATED},
}


class FactorStatus(Enum):
    OFFERED = "offered"
    CHALLENGED = "challenged"
    REJECTED = "rejected"
    VERIFIED = "verified"


@dataclass(frozen=True)
class Session:
    """An authenticated Okta session.

    Attributes:
        id: Okta session id, sent as the ``sid`` cookie
        username: login the session belongs to
        expires_at: aware UTC datetime after which the session is unusable
        mfa_verified: whether a second factor was verified
    """

    id: str
    username: str
    expires_at: datetime
    mfa_verified: bool = False

    def is_expired(self, now=None):
        return (now or utcnow()) >= self.expires_at

    def ensure_active(self, now=None):
        if self.is_expired(now):
            raise SessionExpired(f"Okta session for {self.username} expired at {self.expires_at:%H:%M:%S} UTC")
        return self

    def __str__(self):
        return f"Session(user={self.username}, expires={self.expires_at.isoformat()}, mfa={self.mfa_verified})"


class Negotiator:
    """Drives one login through primary authentication and MFA.

    Factors are resolved one at a time.  Every rejection spends one unit of
    a budget shared by all factors; a rejected factor is no longer offered,
    but may be retried directly while budget remains.  Running out of budget
    aborts the negotiation with AuthenticationError.
    """

    def __init__(
        self,
        idp,
        max_attempts=DEFAULT_FACTOR_ATTEMPTS,
        push_poll_interval=PUSH_POLL_INTERVAL,
        push_timeout=PUSH_POLL_TIMEOUT,
        clock=time.monotonic,
        sleep=time.sleep,
        now=utcnow,
    ):
        self.idp = idp
        self.max_attempts = max_attempts
        self.push_poll_interval = push_poll_interval
        self.push_timeout = push_timeout
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self._state = AuthState.UNAUTHENTICATED
        self._reset()

    def _reset(self):
        self._username = None
        self._state_token = None
        self._factors = ()
        self._statuses = {}
        self._active = None
        self._last_rejected = None
        self._attempts = 0
        self._session = None

    @property
    def state(self):
        return self._state

    @property
    def attempts(self):
        return self._attempts

    @property
    def last_rejected(self):
        return self._last_rejected

    def factor_status(self, factor):
        return self._statuses.get(factor.id)

    def _transition(self, target):
        if target not in TRANSITIONS[self._state]:
            raise InvalidTransition(f"cannot move from {self._state.value} to {target.value}")
        logger.debug("auth state %s -> %s", self._state.value, target.value)
        self._state = target

    def _require(self, *states):
        if self._state not in states:
            expected = ", ".join(s.value for s in states)
            raise InvalidTransition(f"operation needs state {expected}, current state is {self._state.value}")

    # -- primary factor ------------------------------------------------------

    def authenticate(self, username, password):
        """Submit username and password.

        Returns the Session when no MFA is needed, otherwise None with the
        negotiator left in CHALLENGE_REQUIRED.
        """
        if self._state in (AuthState.EXPIRED, AuthState.ABORTED):
            self._transition(AuthState.UNAUTHENTICATED)
        self._require(AuthState.UNAUTHENTICATED)
        self._reset()
        self._username = username
        self._transition(AuthState.PRIMARY_FACTOR_SUBMITTED)
        try:
            result = self.idp.primary_login(username, password)
        except (NetworkError, AuthenticationError) as exc:
            logger.debug("primary authentication failed: %s", exc.kind)
            self._transition(AuthState.UNAUTHENTICATED)
            raise
        return self._after_primary(result)

    def _after_primary(self, result):
        status = result.status
        if status == "SUCCESS":
            return self._establish(result.session_token, mfa_verified=False)
        if status in ("MFA_REQUIRED", "MFA_CHALLENGE"):
            if not result.factors:
                self._fail()
                raise EnrollmentRequired("MFA is required, but the user has no enrolled factors")
            if not any(f.factor_type in SUPPORTED_FACTOR_TYPES for f in result.factors):
                self._fail()
                kinds = ", ".join(sorted({f.factor_type for f in result.factors}))
                raise UnsupportedFactor(f"none of the enrolled MFA factors is supported ({kinds})")
            self._state_token = result.state_token
            self._factors = result.factors
            self._statuses = {f.id: FactorStatus.OFFERED for f in result.factors}
            self._transition(AuthState.CHALLENGE_REQUIRED)
            return None
        self._fail()
        if status == "LOCKED_OUT":
            raise AccountLocked("account is locked out, contact your administrator")
        if status == "PASSWORD_EXPIRED":
            raise PasswordExpired("password has expired, reset it in Okta and try again")
        if status in ("MFA_ENROLL", "MFA_ENROLL_ACTIVATE"):
            raise EnrollmentRequired("MFA enrollment is required, enroll a factor in Okta first")
        raise AuthenticationError(f"unexpected authentication status {status}")

    # -- challenges ----------------------------------------------------------

    def list_factors(self):
        """Supported factors still on offer, in the order Okta listed them."""
        self._require(AuthState.CHALLENGE_REQUIRED)
        return tuple(
            f for f in self._factors
            if f.factor_type in SUPPORTED_FACTOR_TYPES and self._statuses[f.id] is not FactorStatus.REJECTED
        )

    def _check_offered(self, factor):
        if factor in self.list_factors():
            return
        if self._last_rejected is not None and factor.id == self._last_rejected.id:
            return
        raise InvalidTransition(f"factor {factor.label} is not on offer")

    def begin_challenge(self, factor):
        """Ask Okta to send a code for SMS, call and email factors.

        Only one challenge is outstanding; starting another one abandons the
        previous.
        """
        self._require(AuthState.CHALLENGE_REQUIRED)
        self._check_offered(factor)
        if self._active is not None and self._active.id != factor.id:
            self._statuses[self._active.id] = FactorStatus.OFFERED
        self._active = factor
        self._statuses[factor.id] = FactorStatus.CHALLENGED
        if factor.sends_code:
            result = self.idp.verify_factor(factor, self._state_token)
            if result.state_token:
                self._state_token = result.state_token

    def resolve_factor(self, factor, response=None):
        """Verify *factor* with the user's *response* (None for push).

        Returns the Session on success.  Raises FactorRejected when the
        answer was wrong and budget remains, AuthenticationError when it does
        not, and FactorTimeout when the challenge window elapsed or Okta did
        not answer in time.
        """
        self._require(AuthState.CHALLENGE_REQUIRED)
        if factor.factor_type not in SUPPORTED_FACTOR_TYPES:
            raise UnsupportedFactor(f"unsupported MFA factor {factor.factor_type}")
        self._check_offered(factor)
        if response is None and not factor.is_push:
            raise ChallengeError(f"{factor.label} needs a response")

        self._active = factor
        self._statuses[factor.id] = FactorStatus.CHALLENGED
        self._transition(AuthState.CHALLENGE_ANSWERED)
        try:
            if factor.is_push:
                result = self._poll_push(factor)
            else:
                result = self.idp.verify_factor(factor, self._state_token, response)
        except NetworkError as exc:
            self._fail()
            raise FactorTimeout(f"{factor.label} verification did not complete: {exc}") from exc

        if result.status == "SUCCESS":
            self._statuses[factor.id] = FactorStatus.VERIFIED
            self._active = None
            return self._establish(result.session_token, mfa_verified=True)
        if result.factor_result == "REJECTED":
            self._reject(factor)
        if result.factor_result == "TIMEOUT":
            self._fail()
            raise FactorTimeout(f"{factor.label} challenge timed out")
        self._fail()
        raise AuthenticationError(f"unexpected MFA status {result.status}/{result.factor_result}")

    def _poll_push(self, factor):
        deadline = self._clock() + self.push_timeout
        result = self.idp.verify_factor(factor, self._state_token)
        while result.status == "MFA_CHALLENGE" and result.factor_result == "WAITING":
            if self._clock() >= deadline:
                return AuthnResult(status="MFA_CHALLENGE", factor_result="TIMEOUT")
            self._sleep(self.push_poll_interval)
            result = self.idp.verify_factor(factor, self._state_token)
        return result

    def _reject(self, factor):
        self._attempts += 1
        self._statuses[factor.id] = FactorStatus.REJECTED
        self._last_rejected = factor
        self._active = None
        rejected = FactorRejected(f"{factor.label} was rejected")
        if self._attempts >= self.max_attempts:
            self._fail()
            raise AuthenticationError(f"MFA failed after {self._attempts} rejected attempts") from rejected
        self._transition(AuthState.CHALLENGE_REQUIRED)
        remaining = self.max_attempts - self._attempts
        raise FactorRejected(f"{factor.label} was rejected ({remaining} attempt{'s' if remaining != 1 else ''} left)")

    # -- session -------------------------------------------------------------

    def _establish(self, session_token, mfa_verified):
        idp_session = self.idp.create_session(session_token)
        self._session = Session(
            id=idp_session.id,
            username=self._username,
            expires_at=idp_session.expires_at,
            mfa_verified=mfa_verified,
        )
        self._state_token = None
        self._transition(AuthState.AUTHENTICATED)
        logger.info("authenticated %s, session valid until %s", self._username, self._session.expires_at)
        return self._session

    def _fail(self):
        self._state_token = None
        self._active = None
        self._session = None
        self._transition(AuthState.ABORTED)

    def abort(self):
        """User-initiated abort: drop whatever was negotiated so far."""
        if self._state is not AuthState.ABORTED:
            self._fail()

    @property
    def session(self):
        """The authenticated Session; raises SessionExpired once it lapses."""
        if self._state is AuthState.EXPIRED:
            raise SessionExpired("Okta session expired, log in again")
        self._require(AuthState.AUTHENTICATED)
        if self._session.is_expired(self._now()):
            self._transition(AuthState.EXPIRED)
            raise SessionExpired(f"Okta session for {self._username} expired, log in again")
        return self._session


# ---------------------------------------------------------------------------
# Interactive driver
# ---------------------------------------------------------------------------


def login(negotiator, username, password, prompter):
    """Run a full negotiation, asking *prompter* for factor choices and codes.

    *prompter* needs ``choose_factor(factors)``, ``passcode(factor)`` and
    ``notify(message)``.  Ctrl-C discards the negotiation.
    """
    try:
        session = negotiator.authenticate(username, password)
        if session is None:
            prompter.notify("MFA verification required.")
        while session is None:
            factors = negotiator.list_factors()
            if not factors:
                factor = negotiator.last_rejected
            elif len(factors) == 1:
                factor = factors[0]
            else:
                factor = prompter.choose_factor(factors)

            answer = None
            if factor.is_push:
                prompter.notify("Sending push notification to Okta Verify, please approve it.")
            else:
                if factor.sends_code:
                    prompter.notify(f"Sending code via {factor.label}...")
                    negotiator.begin_challenge(factor)
                answer = prompter.passcode(factor)

            try:
                session = negotiator.resolve_factor(factor, answer)
            except FactorRejected as exc:
                prompter.notify(str(exc))
        return session
    except KeyboardInterrupt:
        negotiator.abort()
        raise
