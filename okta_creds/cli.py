"""
okta-creds: turn an Okta login into temporary AWS credentials.

    okta-creds [refresh] [PROFILE ...]   refresh federated profiles (default)
    okta-creds init [ORGANIZATION]       write an organization file from Okta
    okta-creds init-sso [ORGANIZATION]   discover IAM Identity Center accounts
                                         and reconcile ~/.aws/config
"""

import argparse
import logging
import sys

from . import __version__, prompts
from .auth import Negotiator, login
from .aws_config import ConfigStore, sanitize_name
from .credentials import CredentialsFile
from .errors import (
    ApplicationNotAccessible,
    AssertionParseError,
    AuthenticationError,
    ChallengeError,
    ConfigError,
    DiscoveryAborted,
    ExchangeError,
    FetchError,
    NetworkError,
    OktaCredsError,
    RoleNotAssumable,
    SecretStoreError,
    SessionExpired,
)
from .exchange import exchange_for_credentials, sts_client
from .idp import IdpClient
from .reconcile import AcceptSuggestions, DeferAll, merge, summarize
from .saml import extract_roles, fetch_assertion, match_roles, session_duration
from .settings import (
    Organization,
    ProfileSpec,
    list_organizations,
    load_organization,
    load_settings,
    organization_path,
    save_organization,
)
from .sso import Discoverer, open_portal

logger = logging.getLogger(__name__)

# Errors that fail one profile but not the run
PROFILE_ERRORS = (
    FetchError, AssertionParseError, ExchangeError, NetworkError, SecretStoreError, SessionExpired, ConfigError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def configure_logging(verbose=0, debug=False):
    if debug or verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if level > logging.DEBUG:
        for noisy in ("botocore", "boto3", "urllib3"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


class Summary:
    """Per-profile outcome of a run, printed at the end."""

    def __init__(self):
        self.results = []

    def ok(self, name, detail=""):
        self.results.append((name, "OK", detail))

    def skipped(self, name, reason):
        self.results.append((name, "SKIPPED", reason))

    def failed(self, name, error):
        self.results.append((name, "FAILED", f"[{error.kind}] {error}"))

    @property
    def success(self):
        return all(status != "FAILED" for _, status, _ in self.results)

    def print(self):
        if not self.results:
            return
        width = max(len(name) for name, _, _ in self.results)
        print("\nSummary:")
        for name, status, detail in self.results:
            print(f"  {name:<{width}}  {status:<7}  {detail}".rstrip())


def authenticate(organization, settings, username=None):
    """Log in to *organization*'s Okta; returns ``(idp, session)``."""
    idp = IdpClient(organization.okta_url, timeout=settings.timeout)
    username = username or organization.username or prompts.ask("Username")
    if not username:
        raise ConfigError(f"no username for organization {organization.name}")
    print(f"\nAuthenticating to {idp.base_url} as {username}…")
    password = prompts.ask_password()
    negotiator = Negotiator(
        idp,
        max_attempts=settings.factor_attempts,
        push_poll_interval=settings.push_poll_interval,
        push_timeout=settings.push_timeout,
    )
    session = login(negotiator, username, password, prompts.ConsolePrompter())
    print("Okta authentication successful.")
    return idp, session


def _pick_organization(settings, name):
    if name:
        path = organization_path(settings.home, name)
        if path.exists():
            return load_organization(path)
        return None
    organizations = list_organizations(settings.home)
    if len(organizations) == 1:
        return organizations[0]
    if not organizations:
        return None
    print("\nConfigured organizations:")
    return prompts.select(organizations, "Select organization", render=lambda o: o.name)


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------


def refresh_federated(idp, session, application, spec, organization, settings, role_override=None):
    assertion = fetch_assertion(idp, session, application)
    roles = extract_roles(assertion)
    role_name = role_override or spec.role or organization.role
    candidates = match_roles(roles, spec.account, role_name)
    if not candidates:
        wanted = f"account={spec.account or 'any'}, role={role_name or 'any'}"
        raise RoleNotAssumable(f"no role in {application.label} matching {wanted}")
    role = prompts.choose_role(candidates, f"Roles for profile {spec.name}")
    duration = (
        spec.duration_seconds
        or organization.duration_seconds
        or session_duration(assertion)
        or settings.duration_seconds
    )
    logger.info("assuming %s for %s", role.role_arn, spec.name)
    return exchange_for_credentials(
        assertion,
        role,
        duration=duration,
        sts=sts_client(settings.region, settings.timeout),
        policy=settings.retry_policy,
    )


def refresh_sso(portal, spec, organization, role_override=None):
    if not spec.account:
        raise ConfigError(f"profile {spec.name} uses an IAM Identity Center application and needs an account")
    account_id = spec.account
    if not account_id.isdigit():
        accounts = {a.name: a.id for a in portal.list_accounts()}
        if account_id not in accounts:
            raise ApplicationNotAccessible(f"no account named {account_id} in {spec.application}")
        account_id = accounts[account_id]
    role_name = role_override or spec.role or organization.role
    if not role_name:
        roles = portal.list_account_roles(account_id)
        if not roles:
            raise RoleNotAssumable(f"no roles in account {account_id}")
        role_name = roles[0] if len(roles) == 1 else prompts.select(roles, f"Select role for {spec.name}")
    return portal.get_role_credentials(account_id, role_name)


def refresh_organization(organization, specs, settings, args, sso_profiles, store, summary):
    idp, session = authenticate(organization, settings, args.username)
    applications = {app.label: app for app in idp.list_applications(session) if app.kind}
    portals = {}
    for spec in specs:
        if spec.name in sso_profiles:
            logger.warning("profile %s is an IAM Identity Center profile in the AWS config, skipping", spec.name)
            summary.skipped(spec.name, "conflicts with an SSO profile in the AWS config")
            continue
        print(f"\nRefreshing {spec.name}…")
        try:
            application = applications.get(spec.application)
            if application is None:
                raise ApplicationNotAccessible(f"no AWS application labelled '{spec.application}' in Okta")
            if application.kind == "sso":
                if application.id not in portals:
                    portals[application.id] = open_portal(
                        idp, session, application, settings.retry_policy, settings.timeout,
                    )
                credential = refresh_sso(portals[application.id], spec, organization, args.role)
            else:
                credential = refresh_federated(idp, session, application, spec, organization, settings, args.role)
            store.put(spec.name, credential)
        except PROFILE_ERRORS as exc:
            logger.debug("profile %s failed", spec.name, exc_info=True)
            summary.failed(spec.name, exc)
            continue
        expiry = credential.expiration.strftime("%Y-%m-%d %H:%M:%S UTC")
        summary.ok(spec.name, f"expires {expiry}")


def cmd_refresh(args, settings):
    organizations = list_organizations(settings.home, args.organizations)
    if not organizations:
        raise ConfigError(f"no organizations matching '{args.organizations}' in {settings.home}; run 'okta-creds init'")

    sso_profiles = {p.name for p in ConfigStore().load().profiles}
    store = CredentialsFile()
    summary = Summary()
    matched = False
    try:
        for organization in organizations:
            specs = organization.matching_profiles(args.profiles)
            if not specs:
                continue
            matched = True
            refresh_organization(organization, specs, settings, args, sso_profiles, store, summary)
    finally:
        summary.print()
    if not matched:
        raise ConfigError("no profiles matched " + (" ".join(args.profiles) or "any organization"))
    if summary.success:
        print(f"\nCredentials written to {store.path}")
    return 0 if summary.success else 1


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


def build_organization(idp, session, name, okta_url, username, default_role=None):
    """Generate an Organization with one profile per federated application."""
    profiles = []
    for application in idp.list_applications(session):
        if application.kind != "federated":
            continue
        try:
            roles = extract_roles(fetch_assertion(idp, session, application))
        except (FetchError, AssertionParseError) as exc:
            print(f"  Skipping {application.label}: [{exc.kind}] {exc}")
            continue
        role_names = sorted({r.role_name for r in roles})
        role = default_role if default_role in role_names else None
        if role is None and len(role_names) > 1:
            print(f"\nDefault role for {application.label}:")
            role = prompts.select(role_names, "Select role")
        elif role is None:
            role = role_names[0]
        accounts = sorted({r.account_id for r in roles if r.role_name == role})
        account = accounts[0] if len(accounts) == 1 and len({r.account_id for r in roles}) > 1 else None
        profiles.append(ProfileSpec(
            name=sanitize_name(application.label),
            application=application.label,
            role=role if role != default_role else None,
            account=account,
        ))
    return Organization(
        name=name,
        okta_url=okta_url,
        username=username,
        role=default_role,
        profiles=tuple(sorted(profiles, key=lambda p: p.name)),
    )


def cmd_init(args, settings):
    name = args.organization or prompts.ask("Organization name")
    if not name:
        raise ConfigError("an organization name is required")
    path = organization_path(settings.home, name)
    previous = load_organization(path) if path.exists() else None
    okta_url = args.okta_url or (previous.okta_url if previous else None) or prompts.ask(
        "Okta URL", f"https://{name}.okta.com"
    )
    username = args.username or (previous.username if previous else None) or prompts.ask("Username")
    draft = Organization(name=name, okta_url=okta_url, username=username)

    idp, session = authenticate(draft, settings, username)
    organization = build_organization(idp, session, name, idp.base_url, username, args.role)
    if previous:
        names = {p.name for p in organization.profiles}
        kept = tuple(p for p in previous.profiles if p.name not in names)
        organization = Organization(
            name=name,
            okta_url=organization.okta_url,
            username=username,
            role=organization.role or previous.role,
            duration_seconds=previous.duration_seconds,
            profiles=tuple(sorted(kept + organization.profiles, key=lambda p: p.name)),
        )

    print(f"\n{path}:\n")
    print(organization.render())
    if not prompts.confirm(f"Write {path}?", args.yes):
        print("Nothing written.")
        return 1
    save_organization(settings.home, organization)
    print(f"Wrote {path}")
    return 0


# ---------------------------------------------------------------------------
# init-sso
# ---------------------------------------------------------------------------


def _chooser(args):
    if args.accept_suggested:
        return AcceptSuggestions()
    if args.defer:
        return DeferAll()
    return prompts.InteractiveChooser()


def cmd_init_sso(args, settings):
    organization = _pick_organization(settings, args.organization)
    if organization is None:
        raise ConfigError("no such organization; run 'okta-creds init' first")
    idp, session = authenticate(organization, settings, args.username)

    discoverer = Discoverer(
        idp, session, max_workers=settings.max_workers, policy=settings.retry_policy, timeout=settings.timeout,
    )
    applications = discoverer.discover_applications()
    if not applications:
        print("No AWS IAM Identity Center applications found in Okta.")
        return 1
    print(f"Discovering accounts in {len(applications)} application(s)…")
    result = discoverer.discover(applications)

    summary = Summary()
    for label, error in sorted(result.failures.items()):
        summary.failed(label, error)
    if result.failures:
        summary.print()
        if not result.applications:
            return 1
        if not args.allow_partial and not prompts.confirm(
            "Some applications failed. Continue with the ones that succeeded?", args.yes
        ):
            raise DiscoveryAborted("discovery incomplete, nothing was written")

    store = ConfigStore()
    with store.locked():
        before = store.load()
        after = merge(before, result.applications, _chooser(args), settings.suggestion_policy)
        if after.render() == before.render():
            print(f"\n{store.path} is up to date.")
            return 0 if result.complete else 1

        print("\nProfile changes:")
        for name, change in summarize(before, after):
            profile = after.profile(name)
            role = profile.role_name or "(no role)"
            print(f"  {name:<30} {change:<9} {profile.account_id} {role}")
        if not prompts.confirm(f"Write {store.path}?", args.yes):
            print("Nothing written.")
            return 1
        store.save(after)
    print(f"Wrote {store.path}")
    return 0 if result.complete else 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _build_parser():
    parser = argparse.ArgumentParser(
        prog="okta-creds",
        description="Turn an Okta login into temporary AWS credentials.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  okta-creds                            Refresh every profile of every organization
  okta-creds refresh 'prod-*'           Refresh profiles matching a glob
  okta-creds refresh -o acme --role Admin dev
  okta-creds init acme                  Generate ~/.okta-creds/acme.ini
  okta-creds init-sso acme --defer      Discover SSO accounts, decide roles later
""",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More output (-vv for debug)")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    parser.add_argument("--home", help="Settings directory (default: $OKTA_CREDS_HOME or ~/.okta-creds)")
    parser.add_argument("--max-workers", type=int, help="Parallel discovery workers")
    parser.set_defaults(command="refresh", profiles=[], organizations="*", role=None, username=None)

    sub = parser.add_subparsers(dest="command")

    refresh = sub.add_parser("refresh", help="Refresh credentials for federated profiles")
    refresh.add_argument("profiles", nargs="*", help="Profile name globs (default: all)")
    refresh.add_argument("-o", "--organizations", default="*", help="Organization name glob")
    refresh.add_argument("--role", help="Assume this role instead of the configured one")
    refresh.add_argument("--username", help="Okta username (overrides the organization file)")

    init = sub.add_parser("init", help="Create an organization file from your Okta applications")
    init.add_argument("organization", nargs="?")
    init.add_argument("--okta-url", help="Okta URL, e.g. https://acme.okta.com")
    init.add_argument("--username", help="Okta username")
    init.add_argument("--role", help="Default role name")
    init.add_argument("-y", "--yes", action="store_true", help="Write without asking")

    init_sso = sub.add_parser("init-sso", help="Discover IAM Identity Center accounts into the AWS config")
    init_sso.add_argument("organization", nargs="?")
    init_sso.add_argument("--username", help="Okta username")
    choice = init_sso.add_mutually_exclusive_group()
    choice.add_argument("--accept-suggested", action="store_true", help="Take the suggested role everywhere")
    choice.add_argument("--defer", action="store_true", help="Leave ambiguous accounts for later")
    init_sso.add_argument("--allow-partial", action="store_true", help="Continue when some applications fail")
    init_sso.add_argument("-y", "--yes", action="store_true", help="Write without asking")
    return parser


COMMANDS = {
    "refresh": cmd_refresh,
    "init": cmd_init,
    "init-sso": cmd_init_sso,
}


def main(argv=None):
    args = _build_parser().parse_args(argv)
    configure_logging(args.verbose, args.debug)
    try:
        settings = load_settings(args.home, {"max_workers": args.max_workers})
        return COMMANDS[args.command or "refresh"](args, settings)
    except KeyboardInterrupt:
        print("\nAborted.", file=sys.stderr)
        return 130
    except (AuthenticationError, ChallengeError) as exc:
        print(f"Authentication failed [{exc.kind}]: {exc}", file=sys.stderr)
        return 1
    except OktaCredsError as exc:
        print(f"Error [{exc.kind}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
