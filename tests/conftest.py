"""Shared fixtures for tests."""

import base64
from datetime import datetime, timedelta, timezone

import pytest

from okta_creds.auth import Session
from okta_creds.idp import Application, AuthnResult, Factor, IdpSession
from okta_creds.saml import Assertion
from okta_creds.sso import Account, DiscoveredApplication


SAML_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<saml2p:Response xmlns:saml2p="urn:oasis:names:tc:SAML:2.0:protocol"
                 xmlns:saml2="urn:oasis:names:tc:SAML:2.0:assertion">
  <saml2:Assertion>
    <saml2:AttributeStatement>
      <saml2:Attribute Name="https://aws.amazon.com/SAML/Attributes/Role">
{values}
      </saml2:Attribute>
{duration}
    </saml2:AttributeStatement>
  </saml2:Assertion>
</saml2p:Response>
"""


def saml_response(role_values, duration=None):
    """Base64 SAMLResponse granting *role_values* ("provider,role" strings)."""
    values = "\n".join(
        f"        <saml2:AttributeValue>{value}</saml2:AttributeValue>" for value in role_values
    )
    block = ""
    if duration is not None:
        block = (
            '      <saml2:Attribute Name="https://aws.amazon.com/SAML/Attributes/SessionDuration">\n'
            f"        <saml2:AttributeValue>{duration}</saml2:AttributeValue>\n"
            "      </saml2:Attribute>"
        )
    xml = SAML_TEMPLATE.format(values=values, duration=block)
    return base64.b64encode(xml.encode("utf-8")).decode("ascii")


def role_value(account_id, role_name, provider="Okta", reverse=False):
    provider_arn = f"arn:aws:iam::{account_id}:saml-provider/{provider}"
    role_arn = f"arn:aws:iam::{account_id}:role/{role_name}"
    return f"{role_arn},{provider_arn}" if reverse else f"{provider_arn},{role_arn}"


def launch_page(raw, action="https://signin.aws.amazon.com/saml", relay_state=None):
    relay = f'<input type="hidden" name="RelayState" value="{relay_state}"/>' if relay_state else ""
    return (
        "<html><body>"
        f'<form id="appForm" method="POST" action="{action}">'
        f'<input type="hidden" name="SAMLResponse" value="{raw}"/>{relay}'
        "</form></body></html>"
    )


def make_factor(factor_id, factor_type="token:software:totp", provider="GOOGLE"):
    return Factor(id=factor_id, factor_type=factor_type, provider=provider)


class FakeIdp:
    """Scripted stand-in for IdpClient.

    ``login_results`` is returned by primary_login; ``verify`` maps a factor
    id to a list of AuthnResults handed out in order.
    """

    def __init__(self, login_result, verify=None, session_ttl=timedelta(hours=2)):
        self.login_result = login_result
        self.verify = {k: list(v) for k, v in (verify or {}).items()}
        self.session_ttl = session_ttl
        self.verify_calls = []
        self.created = []

    def primary_login(self, username, password):
        if isinstance(self.login_result, Exception):
            raise self.login_result
        return self.login_result

    def verify_factor(self, factor, state_token, answer=None):
        self.verify_calls.append((factor.id, answer))
        result = self.verify[factor.id].pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def create_session(self, session_token):
        self.created.append(session_token)
        return IdpSession(id=f"sid-{session_token}", expires_at=datetime.now(timezone.utc) + self.session_ttl)


def mfa_required(*factors):
    return AuthnResult(status="MFA_REQUIRED", state_token="state-1", factors=tuple(factors))


def success(token="session-token"):
    return AuthnResult(status="SUCCESS", session_token=token)


def rejected():
    return AuthnResult(status="MFA_CHALLENGE", state_token="state-1", factor_result="REJECTED")


def waiting():
    return AuthnResult(status="MFA_CHALLENGE", state_token="state-1", factor_result="WAITING")


def discovered(session_name, accounts, region="eu-west-1", label=None):
    """A DiscoveredApplication from ``{(account_id, name): [roles]}``."""
    label = label or session_name
    app = Application(id=f"app-{session_name}", label=label, link_url=f"https://acme.okta.com/home/{label}", app_name="amazon_aws_sso")
    return DiscoveredApplication(
        application=app,
        session_name=session_name,
        start_url=f"https://{session_name}.awsapps.com/start",
        region=region,
        accounts=tuple(
            Account(id=account_id, name=name, roles=tuple(sorted(roles)))
            for (account_id, name), roles in sorted(accounts.items())
        ),
    )


@pytest.fixture
def session():
    return Session(
        id="sid-123",
        username="alice@example.com",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        mfa_verified=True,
    )


@pytest.fixture
def expired_session():
    return Session(
        id="sid-old",
        username="alice@example.com",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
    )


@pytest.fixture
def federated_app():
    return Application(
        id="0oa1",
        label="AWS Production",
        link_url="https://acme.okta.com/home/amazon_aws/0oa1/272",
        app_name="amazon_aws",
    )


@pytest.fixture
def sso_app():
    return Application(
        id="0oa2",
        label="AWS SSO",
        link_url="https://acme.okta.com/home/amazon_aws_sso/0oa2/1",
        app_name="amazon_aws_sso",
    )


@pytest.fixture
def assertion():
    raw = saml_response([
        role_value("111111111111", "Admin"),
        role_value("111111111111", "ReadOnly", reverse=True),
        role_value("222222222222", "Admin"),
    ], duration=7200)
    return Assertion(raw=raw, action_url="https://signin.aws.amazon.com/saml", application="AWS Production")
