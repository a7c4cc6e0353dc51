"""
IAM Identity Center discovery.

Each Okta ``amazon_aws_sso`` application is opened by posting its SAML
assertion to the portal ACS endpoint, which hands back a portal token.  The
token drives the boto3 ``sso`` client to page through accounts and their
roles.  Applications and accounts are fetched on a bounded worker pool; the
pages of one listing are always fetched in order.
"""

import logging
import re
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from urllib.parse import urlparse

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .aws_config import sanitize_name
from .errors import DiscoveryAborted, FetchError, MalformedResponse, NetworkError, OktaCredsError, SsoLoginFailed
from .exchange import Credential
from .retry import RetryPolicy, botocore_config, error_code
from .saml import fetch_assertion

logger = logging.getLogger(__name__)

SSO_DEFAULT_REGION = "us-east-1"
SSO_TOKEN_COOKIE = "x-amz-sso_authn"
PORTAL_REGION_RE = re.compile(r"portal\.sso\.([a-z0-9-]+)\.amazonaws\.com")
START_HOST_SUFFIX = ".awsapps.com"
DEFAULT_MAX_WORKERS = 10


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    roles: tuple = ()

    @property
    def display_name(self):
        return self.name or self.id


@dataclass(frozen=True)
class DiscoveredApplication:
    """One identity-center application with its accounts sorted by id."""

    application: object
    session_name: str
    start_url: str
    region: str
    accounts: tuple = ()


@dataclass
class DiscoveryResult:
    applications: list = field(default_factory=list)
    failures: dict = field(default_factory=dict)

    @property
    def complete(self):
        return not self.failures


# ---------------------------------------------------------------------------
# Portal
# ---------------------------------------------------------------------------


def _start_url(response):
    for r in [*response.history, response]:
        host = urlparse(r.url).hostname or ""
        if host.endswith(START_HOST_SUFFIX):
            return f"https://{host}/start"
    return None


def portal_login(assertion, http=None, timeout=30):
    """POST *assertion* to the AWS SSO ACS endpoint.

    Returns ``(token, region, start_url)``.  The region is taken from the
    ACS host and the start URL from the ``*.awsapps.com`` landing page.
    """
    if not assertion.action_url:
        raise SsoLoginFailed(f"assertion for {assertion.application} has no ACS URL")
    http = http or requests.Session()
    data = {"SAMLResponse": assertion.raw}
    if assertion.relay_state:
        data["RelayState"] = assertion.relay_state
    try:
        resp = http.post(assertion.action_url, data=data, allow_redirects=True, timeout=timeout)
    except requests.RequestException as exc:
        raise NetworkError(f"SSO portal login: {exc}") from exc
    if resp.status_code == 429 or resp.status_code >= 500:
        raise NetworkError(f"SSO portal login: HTTP {resp.status_code}")
    if resp.status_code >= 400:
        raise SsoLoginFailed(f"SSO portal rejected the assertion with HTTP {resp.status_code}")

    # The portal sets x-amz-sso_authn as a cookie on the SSO domain
    token = http.cookies.get(SSO_TOKEN_COOKIE)
    if not token:
        for r in resp.history:
            token = r.cookies.get(SSO_TOKEN_COOKIE)
            if token:
                break
    if not token:
        raise SsoLoginFailed(
            f"no {SSO_TOKEN_COOKIE} token after the SAML POST; "
            "is the Okta app configured for AWS IAM Identity Center?"
        )

    m = PORTAL_REGION_RE.search(assertion.action_url)
    region = m.group(1) if m else SSO_DEFAULT_REGION
    start_url = _start_url(resp)
    if not start_url:
        raise SsoLoginFailed(f"could not determine the SSO start URL for {assertion.application}")
    return token, region, start_url


class SsoPortal:
    """The identity-center portal API for one token."""

    def __init__(self, token, region, start_url=None, client=None, policy=None, timeout=30, sleep=time.sleep, stop=None):
        self.token = token
        self.region = region
        self.start_url = start_url
        self.client = client or boto3.client("sso", region_name=region, config=botocore_config(timeout))
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._stop = stop or threading.Event()

    def _call(self, description, func, **kwargs):
        if self._stop.is_set():
            raise DiscoveryAborted("discovery cancelled")
        try:
            return self.policy.call(lambda: func(accessToken=self.token, **kwargs), description, sleep=self._sleep)
        except (ClientError, BotoCoreError) as exc:
            raise FetchError(f"{description}: {error_code(exc)}") from exc

    def _paginate(self, description, func, key, **kwargs):
        items = []
        cursor = None
        while True:
            if cursor:
                kwargs["nextToken"] = cursor
            page = self._call(description, func, **kwargs)
            items.extend(page.get(key, []))
            cursor = page.get("nextToken")
            if not cursor:
                return items

    def list_accounts(self):
        accounts = self._paginate("ListAccounts", self.client.list_accounts, "accountList")
        result = []
        for a in accounts:
            account_id = a.get("accountId") if isinstance(a, dict) else None
            if not account_id:
                raise MalformedResponse(f"ListAccounts returned an entry without accountId: {a!r}")
            result.append(Account(id=account_id, name=a.get("accountName") or account_id))
        return result

    def list_account_roles(self, account_id):
        roles = self._paginate(
            f"ListAccountRoles {account_id}", self.client.list_account_roles, "roleList", accountId=account_id,
        )
        names = set()
        for r in roles:
            name = r.get("roleName") if isinstance(r, dict) else None
            if not name:
                raise MalformedResponse(f"ListAccountRoles {account_id} returned an entry without roleName")
            names.add(name)
        return sorted(names)

    def get_role_credentials(self, account_id, role_name):
        """Call sso:GetRoleCredentials and return a Credential."""
        resp = self._call(
            f"GetRoleCredentials {account_id}/{role_name}",
            self.client.get_role_credentials,
            accountId=account_id,
            roleName=role_name,
        )
        return Credential.from_sso(resp["roleCredentials"])


def open_portal(idp, session, application, policy=None, timeout=30, stop=None, login=portal_login):
    """Fetch *application*'s assertion and log in to its SSO portal."""
    assertion = fetch_assertion(idp, session, application)
    token, region, start_url = login(assertion, timeout=timeout)
    logger.info("opened SSO portal %s (%s) for %s", start_url, region, application.label)
    return SsoPortal(token, region, start_url, policy=policy, timeout=timeout, stop=stop)


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_applications(idp, session):
    """The user's identity-center applications, in Okta's order."""
    session.ensure_active()
    return [app for app in idp.list_applications(session) if app.kind == "sso"]


class Discoverer:
    """Enumerates accounts and roles of identity-center applications.

    ``portal_factory(application, stop)`` returns an object with
    ``list_accounts()``, ``list_account_roles(account_id)``, ``region`` and
    ``start_url``; by default it logs in through Okta.
    """

    def __init__(self, idp, session, max_workers=DEFAULT_MAX_WORKERS, policy=None, timeout=30, portal_factory=None):
        self.idp = idp
        self.session = session
        self.max_workers = max_workers
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self.portal_factory = portal_factory or self._open_portal
        self._stop = threading.Event()

    def _open_portal(self, application, stop):
        return open_portal(self.idp, self.session, application, self.policy, self.timeout, stop)

    def discover_applications(self):
        return discover_applications(self.idp, self.session)

    def _open_application(self, application):
        portal = self.portal_factory(application, self._stop)
        return portal, portal.list_accounts()

    def discover(self, applications=None):
        """Discover *applications* (default: all of the user's SSO apps).

        An application whose login or listing fails is recorded in
        ``failures`` and left out of ``applications``.  Ctrl-C cancels the
        pending work and raises DiscoveryAborted.
        """
        if applications is None:
            applications = self.discover_applications()
        self.session.ensure_active()
        self._stop.clear()
        result = DiscoveryResult()
        portals = {}
        roles = defaultdict(dict)

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="okta-creds-discover")
        aborted = False
        try:
            app_futures = {pool.submit(self._open_application, app): app for app in applications}
            role_futures = {}
            for future in as_completed(app_futures):
                app = app_futures[future]
                try:
                    portal, accounts = future.result()
                except OktaCredsError as exc:
                    logger.warning("discovery failed for %s: %s", app.label, exc)
                    result.failures[app.label] = exc
                    continue
                portals[app.id] = (portal, accounts)
                logger.info("%s: %d account(s)", app.label, len(accounts))
                for account in accounts:
                    role_futures[pool.submit(portal.list_account_roles, account.id)] = (app, account)

            for future in as_completed(role_futures):
                app, account = role_futures[future]
                try:
                    roles[app.id][account.id] = tuple(future.result())
                except OktaCredsError as exc:
                    if app.label not in result.failures:
                        logger.warning("listing roles of %s in %s failed: %s", account.id, app.label, exc)
                        result.failures[app.label] = exc
        except KeyboardInterrupt:
            aborted = True
            self._stop.set()
            raise DiscoveryAborted("discovery cancelled, nothing was written") from None
        finally:
            pool.shutdown(wait=not aborted, cancel_futures=True)

        for app in applications:
            if app.label in result.failures or app.id not in portals:
                continue
            portal, accounts = portals[app.id]
            result.applications.append(DiscoveredApplication(
                application=app,
                session_name=sanitize_name(app.label),
                start_url=portal.start_url,
                region=portal.region,
                accounts=tuple(
                    Account(id=a.id, name=a.name, roles=roles[app.id].get(a.id, ()))
                    for a in sorted(accounts, key=lambda a: a.id)
                ),
            ))
        return result
