"""
Okta HTTP API client.

Only the calls needed to log one user in and reach their AWS applications:
primary authentication, factor verification, session creation, app links
and the application launch page.  Responses are turned into small tagged
records with their required fields checked, so the rest of the code never
pokes at raw JSON.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlparse

import requests

from .errors import (
    ApplicationNotAccessible,
    InvalidCredentials,
    MalformedResponse,
    NetworkError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}

FEDERATED_APP_NAME = "amazon_aws"
SSO_APP_NAME = "amazon_aws_sso"

APP_KINDS = {
    FEDERATED_APP_NAME: "federated",
    SSO_APP_NAME: "sso",
}

FACTOR_LABELS = {
    "push": "Okta Verify Push",
    "token:software:totp": "TOTP Authenticator",
    "token:hotp": "HOTP Token",
    "token:hardware": "Hardware Token",
    "token": "One-time Password",
    "sms": "SMS",
    "call": "Voice Call",
    "email": "Email",
    "question": "Security Question",
}


# ---------------------------------------------------------------------------
# Payload records
# ---------------------------------------------------------------------------


def parse_timestamp(value):
    """Parse an Okta ISO-8601 timestamp into an aware UTC datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise MalformedResponse(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require(payload, key, kind):
    if not isinstance(payload, dict) or payload.get(key) in (None, ""):
        raise MalformedResponse(f"{kind} response is missing '{key}'")
    return payload[key]


def _link_href(links, name):
    link = (links or {}).get(name)
    if isinstance(link, list):
        link = link[0] if link else None
    if isinstance(link, dict):
        return link.get("href")
    return None


@dataclass(frozen=True)
class Factor:
    """One MFA mechanism the user has enrolled."""

    id: str
    factor_type: str
    provider: str = ""
    verify_url: str = None
    detail: str = ""

    @classmethod
    def from_payload(cls, payload):
        profile = payload.get("profile") or {}
        detail = profile.get("phoneNumber") or profile.get("email") or profile.get("questionText") or ""
        return cls(
            id=_require(payload, "id", "factor"),
            factor_type=_require(payload, "factorType", "factor"),
            provider=payload.get("provider", ""),
            verify_url=_link_href(payload.get("_links"), "verify"),
            detail=detail,
        )

    @property
    def label(self):
        label = FACTOR_LABELS.get(self.factor_type, self.factor_type)
        if self.provider and self.provider != "OKTA":
            label = f"{label} ({self.provider})"
        if self.detail:
            label = f"{label}: {self.detail}"
        return label

    @property
    def is_push(self):
        return self.factor_type == "push"

    @property
    def sends_code(self):
        """Factors whose code must be sent before the user can type it."""
        return self.factor_type in ("sms", "call", "email")

    def __str__(self):
        return self.label


@dataclass(frozen=True)
class AuthnResult:
    """One step of the Okta authentication transaction."""

    status: str
    state_token: str = None
    session_token: str = None
    expires_at: datetime = None
    factor_result: str = None
    factors: tuple = field(default_factory=tuple)

    @classmethod
    def from_payload(cls, payload):
        status = _require(payload, "status", "authn")
        embedded = payload.get("_embedded") or {}
        factors = tuple(Factor.from_payload(f) for f in embedded.get("factors", []))
        result = cls(
            status=status,
            state_token=payload.get("stateToken"),
            session_token=payload.get("sessionToken"),
            expires_at=parse_timestamp(payload.get("expiresAt")),
            factor_result=payload.get("factorResult"),
            factors=factors,
        )
        if status == "SUCCESS" and not result.session_token:
            raise MalformedResponse("authn response is missing 'sessionToken'")
        if status in ("MFA_REQUIRED", "MFA_CHALLENGE") and not result.state_token:
            raise MalformedResponse("authn response is missing 'stateToken'")
        return result


@dataclass(frozen=True)
class IdpSession:
    id: str
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload):
        return cls(
            id=_require(payload, "id", "session"),
            expires_at=parse_timestamp(_require(payload, "expiresAt", "session")),
        )


@dataclass(frozen=True)
class Application:
    """An Okta app link; ``kind`` is 'federated', 'sso' or None."""

    id: str
    label: str
    link_url: str
    app_name: str

    @classmethod
    def from_payload(cls, payload):
        return cls(
            id=payload.get("appInstanceId") or payload.get("id") or _require(payload, "linkUrl", "app link"),
            label=_require(payload, "label", "app link"),
            link_url=_require(payload, "linkUrl", "app link"),
            app_name=_require(payload, "appName", "app link"),
        )

    @property
    def kind(self):
        return APP_KINDS.get(self.app_name)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def redact(url):
    """Strip token-like query parameters from *url* before logging it."""
    return re.sub(r"((?:session|state)?[Tt]oken=)[^&]+", r"\1<redacted>", url)


def normalize_base_url(okta_url):
    if not okta_url.startswith("http"):
        okta_url = f"https://{okta_url}"
    return okta_url.rstrip("/")


class IdpClient:
    """Thin wrapper around the Okta authn, sessions and app links APIs."""

    def __init__(self, okta_url, timeout=DEFAULT_TIMEOUT, http=None, http_factory=requests.Session):
        self.base_url = normalize_base_url(okta_url)
        self.timeout = timeout
        self.http = http or http_factory()
        self.http_factory = http_factory

    def __repr__(self):
        return f"IdpClient({self.base_url!r})"

    def _send(self, method, url, http=None, **kwargs):
        http = http or self.http
        logger.debug("%s %s", method, redact(url))
        try:
            response = http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise NetworkError(f"{method} {redact(url)}: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"{method} {redact(url)}: HTTP {response.status_code}")
        return response

    @staticmethod
    def _json(response, kind):
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponse(f"{kind} response is not JSON") from exc

    def _session_http(self, session):
        # a fresh cookie jar per call keeps worker threads apart
        http = self.http_factory()
        http.cookies.set("sid", session.id, domain=urlparse(self.base_url).hostname)
        return http

    # -- authentication ------------------------------------------------------

    def primary_login(self, username, password):
        """POST /api/v1/authn with username and password."""
        response = self._send(
            "POST",
            f"{self.base_url}/api/v1/authn",
            json={"username": username, "password": password},
            headers=JSON_HEADERS,
        )
        if response.status_code == 401:
            raise InvalidCredentials("invalid username or password")
        if response.status_code >= 400:
            raise MalformedResponse(f"authn failed with HTTP {response.status_code}")
        return AuthnResult.from_payload(self._json(response, "authn"))

    def verify_factor(self, factor, state_token, answer=None):
        """POST to the factor's verify endpoint.

        Without *answer* this triggers the challenge (push, SMS, call, email)
        or polls a pending push.  A wrong passcode comes back as a 403, which
        is reported as a REJECTED factor result.
        """
        url = factor.verify_url or f"{self.base_url}/api/v1/authn/factors/{factor.id}/verify"
        payload = {"stateToken": state_token}
        if answer is not None:
            payload["answer" if factor.factor_type == "question" else "passCode"] = answer
        response = self._send("POST", url, json=payload, headers=JSON_HEADERS)
        if response.status_code == 403:
            return AuthnResult(status="MFA_CHALLENGE", state_token=state_token, factor_result="REJECTED")
        if response.status_code >= 400:
            raise MalformedResponse(f"factor verification failed with HTTP {response.status_code}")
        return AuthnResult.from_payload(self._json(response, "factor verification"))

    def create_session(self, session_token):
        """Exchange a one-time session token for an Okta session."""
        response = self._send(
            "POST",
            f"{self.base_url}/api/v1/sessions",
            json={"sessionToken": session_token},
            headers=JSON_HEADERS,
        )
        if response.status_code >= 400:
            raise MalformedResponse(f"session creation failed with HTTP {response.status_code}")
        return IdpSession.from_payload(self._json(response, "session"))

    # -- applications --------------------------------------------------------

    def list_applications(self, session):
        """Return the current user's app links."""
        response = self._send(
            "GET",
            f"{self.base_url}/api/v1/users/me/appLinks",
            http=self._session_http(session),
            headers={"Accept": "application/json"},
        )
        if response.status_code >= 400:
            raise MalformedResponse(f"app links request failed with HTTP {response.status_code}")
        payload = self._json(response, "app links")
        if not isinstance(payload, list):
            raise MalformedResponse("app links response is not a list")
        return [Application.from_payload(item) for item in payload]

    def get_application_page(self, session, link_url):
        """GET the application launch page; returns its HTML."""
        http = self._session_http(session)
        response = self._send("GET", link_url, http=http, allow_redirects=True)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("redirect chain: %s", [redact(r.url) for r in response.history])
        if response.status_code in (401, 403, 404):
            raise ApplicationNotAccessible(f"{redact(link_url)} answered HTTP {response.status_code}")
        if response.status_code >= 400:
            raise MalformedResponse(f"application page failed with HTTP {response.status_code}")
        return response.text
