"""
SAML assertion fetching and AWS role extraction.
"""

import base64
import binascii
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass

from bs4 import BeautifulSoup

from .errors import MalformedAssertion, MalformedResponse, NoRolesGranted, StepUpRequired

logger = logging.getLogger(__name__)

SAML_NS = "{urn:oasis:names:tc:SAML:2.0:assertion}"
SAML_ROLE_ATTRIBUTE = "https://aws.amazon.com/SAML/Attributes/Role"
SAML_SESSION_ATTRIBUTE = "https://aws.amazon.com/SAML/Attributes/SessionDuration"

ROLE_ARN_RE = re.compile(r"^arn:aws[a-z-]*:iam::(\d{12}):role/(.+)$")
PROVIDER_ARN_RE = re.compile(r"^arn:aws[a-z-]*:iam::(\d{12}):saml-provider/.+$")

# Okta answers a step-up (re-authentication) request with a page that embeds
# a fresh state token instead of the SAML form.
STATE_TOKEN_RE = re.compile(r"""var\s+stateToken\s*=\s*['"]|"stateToken"\s*:""")


@dataclass(frozen=True)
class Assertion:
    """A base64 SAMLResponse as posted by the application's launch form."""

    raw: str
    action_url: str = None
    relay_state: str = None
    application: str = None

    def __repr__(self):
        return f"Assertion(application={self.application!r}, action_url={self.action_url!r})"


@dataclass(frozen=True)
class SamlRole:
    principal_arn: str
    role_arn: str
    account_id: str
    role_name: str

    def __str__(self):
        return self.role_arn


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


def _extract_saml_form(html):
    """Return (saml_assertion, action_url, relay_state) from an HTML form, or Nones."""
    soup = BeautifulSoup(html, "lxml")
    tag = soup.find("input", {"name": "SAMLResponse"})
    if not tag or not tag.get("value"):
        return None, None, None
    form = tag.find_parent("form")
    action_url = form["action"] if form and form.get("action") else None
    relay = soup.find("input", {"name": "RelayState"})
    relay_state = relay.get("value") if relay else None
    return tag["value"], action_url, relay_state


def fetch_assertion(idp, session, application):
    """Load *application*'s launch page with *session* and return its Assertion.

    The session must still be valid.  Raises ApplicationNotAccessible when
    Okta refuses the page, StepUpRequired when Okta asks for additional
    verification and MalformedResponse when no SAML form is found.
    """
    session.ensure_active()
    html = idp.get_application_page(session, application.link_url)
    raw, action_url, relay_state = _extract_saml_form(html)
    if raw:
        logger.debug("SAML form found for %s, posting to %s", application.label, action_url)
        return Assertion(raw=raw, action_url=action_url, relay_state=relay_state, application=application.label)
    if STATE_TOKEN_RE.search(html):
        raise StepUpRequired(f"{application.label} requires additional verification in the browser")
    raise MalformedResponse(f"no SAMLResponse form on the launch page of {application.label}")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _decode(assertion):
    try:
        xml = base64.b64decode(assertion.raw, validate=True).decode("utf-8")
        return ET.fromstring(xml)
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MalformedAssertion(f"SAMLResponse is not base64 encoded XML: {exc}") from exc
    except ET.ParseError as exc:
        raise MalformedAssertion(f"SAMLResponse is not valid XML: {exc}") from exc


def _attribute_values(root, name):
    for attr in root.iter(f"{SAML_NS}Attribute"):
        if attr.get("Name", "") != name:
            continue
        for value_el in attr.iter(f"{SAML_NS}AttributeValue"):
            text = (value_el.text or "").strip()
            if text:
                yield text


def _parse_role_value(text):
    """Parse ``provider_arn,role_arn`` (in either order) into a SamlRole."""
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 2:
        raise MalformedAssertion(f"role attribute value {text!r} is not a pair of ARNs")

    role_arn = next((p for p in parts if ROLE_ARN_RE.match(p)), None)
    principal_arn = next((p for p in parts if PROVIDER_ARN_RE.match(p)), None)
    if not role_arn or not principal_arn:
        raise MalformedAssertion(f"role attribute value {text!r} lacks a role or provider ARN")

    account_id, role_path = ROLE_ARN_RE.match(role_arn).groups()
    return SamlRole(
        principal_arn=principal_arn,
        role_arn=role_arn,
        account_id=account_id,
        role_name=role_path.split("/")[-1],
    )


def extract_roles(assertion):
    """Return the roles granted by *assertion*, in document order.

    Duplicate (account, role) pairs keep their first occurrence.  Matching is
    case-sensitive.
    """
    root = _decode(assertion)
    roles = []
    seen = set()
    for text in _attribute_values(root, SAML_ROLE_ATTRIBUTE):
        role = _parse_role_value(text)
        key = (role.account_id, role.role_name)
        if key in seen:
            continue
        seen.add(key)
        roles.append(role)
    if not roles:
        raise NoRolesGranted(f"the assertion for {assertion.application or 'this application'} grants no AWS roles")
    return roles


def session_duration(assertion):
    """SessionDuration attribute in seconds, or None when absent or invalid."""
    for text in _attribute_values(_decode(assertion), SAML_SESSION_ATTRIBUTE):
        try:
            return int(text)
        except ValueError:
            logger.warning("ignoring invalid SessionDuration %r", text)
    return None


def match_roles(roles, account=None, role=None):
    """Roles matching an account id and/or role name (or role ARN)."""
    return [
        r for r in roles
        if (not account or r.account_id == account)
        and (not role or role in (r.role_name, r.role_arn))
    ]
