import base64
from unittest.mock import MagicMock

import pytest

from conftest import launch_page, role_value, saml_response
from okta_creds.errors import MalformedAssertion, MalformedResponse, NoRolesGranted, SessionExpired, StepUpRequired
from okta_creds.saml import Assertion, extract_roles, fetch_assertion, match_roles, session_duration


def assertion_of(raw):
    return Assertion(raw=raw, application="AWS Production")


class TestFetchAssertion:
    def test_form_is_extracted(self, session, federated_app):
        raw = saml_response([role_value("111111111111", "Admin")])
        idp = MagicMock()
        idp.get_application_page.return_value = launch_page(raw, relay_state="rs")
        result = fetch_assertion(idp, session, federated_app)
        assert result.raw == raw
        assert result.action_url == "https://signin.aws.amazon.com/saml"
        assert result.relay_state == "rs"
        assert result.application == "AWS Production"
        idp.get_application_page.assert_called_once_with(session, federated_app.link_url)

    def test_step_up(self, session, federated_app):
        idp = MagicMock()
        idp.get_application_page.return_value = "<script>var stateToken = '00xyz';</script>"
        with pytest.raises(StepUpRequired):
            fetch_assertion(idp, session, federated_app)

    def test_no_form(self, session, federated_app):
        idp = MagicMock()
        idp.get_application_page.return_value = "<html><body>Sign in</body></html>"
        with pytest.raises(MalformedResponse):
            fetch_assertion(idp, session, federated_app)

    def test_expired_session(self, expired_session, federated_app):
        idp = MagicMock()
        with pytest.raises(SessionExpired):
            fetch_assertion(idp, expired_session, federated_app)
        idp.get_application_page.assert_not_called()


class TestExtractRoles:
    def test_roles_in_document_order(self, assertion):
        roles = extract_roles(assertion)
        assert [(r.account_id, r.role_name) for r in roles] == [
            ("111111111111", "Admin"),
            ("111111111111", "ReadOnly"),
            ("222222222222", "Admin"),
        ]
        assert roles[1].principal_arn == "arn:aws:iam::111111111111:saml-provider/Okta"
        assert roles[1].role_arn == "arn:aws:iam::111111111111:role/ReadOnly"

    def test_duplicates_removed(self):
        raw = saml_response([
            role_value("111111111111", "Admin"),
            role_value("111111111111", "Admin", reverse=True),
            role_value("111111111111", "admin"),
        ])
        roles = extract_roles(assertion_of(raw))
        assert [r.role_name for r in roles] == ["Admin", "admin"]

    def test_role_path(self):
        raw = saml_response(["arn:aws:iam::111111111111:saml-provider/Okta,arn:aws:iam::111111111111:role/team/Deployer"])
        assert extract_roles(assertion_of(raw))[0].role_name == "Deployer"

    def test_no_roles(self):
        with pytest.raises(NoRolesGranted):
            extract_roles(assertion_of(saml_response([])))

    @pytest.mark.parametrize("value", [
        "arn:aws:iam::111111111111:role/Admin",
        "arn:aws:iam::111111111111:role/Admin,arn:aws:iam::111111111111:role/Other",
    ])
    def test_malformed_role_value(self, value):
        with pytest.raises(MalformedAssertion):
            extract_roles(assertion_of(saml_response([value])))

    def test_not_base64(self):
        with pytest.raises(MalformedAssertion):
            extract_roles(assertion_of("%%% not base64 %%%"))

    def test_not_xml(self):
        raw = base64.b64encode(b"<unclosed").decode()
        with pytest.raises(MalformedAssertion):
            extract_roles(assertion_of(raw))

    def test_same_result_for_same_fixture(self, assertion):
        assert extract_roles(assertion) == extract_roles(assertion)


class TestSessionDuration:
    def test_present(self, assertion):
        assert session_duration(assertion) == 7200

    def test_absent(self):
        assert session_duration(assertion_of(saml_response([role_value("111111111111", "Admin")]))) is None


def test_match_roles(assertion):
    roles = extract_roles(assertion)
    assert len(match_roles(roles)) == 3
    assert [r.account_id for r in match_roles(roles, role="Admin")] == ["111111111111", "222222222222"]
    assert match_roles(roles, account="222222222222", role="ReadOnly") == []
    assert match_roles(roles, role="arn:aws:iam::111111111111:role/ReadOnly")[0].role_name == "ReadOnly"
