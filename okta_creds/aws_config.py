"""
The AWS config file as a value: identity-center sessions, the profiles that
point at them, and every other section passed through untouched.

``ConfigStore`` owns the on-disk side: an exclusive ``flock`` around the
read-modify-write cycle and an atomic replace on commit, so a crash never
leaves a half-written file and two concurrent runs never interleave.
"""

import configparser
import contextlib
import fcntl
import io
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import ConfigError

logger = logging.getLogger(__name__)

SESSION_PREFIX = "sso-session "
PROFILE_PREFIX = "profile "
DEFAULT_SCOPES = "sso:account:access"

PROVENANCE_KEY = "okta_creds_provenance"
STATUS_KEY = "okta_creds_status"

EXPLICIT = "explicit"
AUTO = "auto"

PENDING = "pending"
RESELECT = "reselect"

MANAGED_PROFILE_KEYS = ("sso_session", "sso_account_id", "sso_role_name", PROVENANCE_KEY, STATUS_KEY)
MANAGED_SESSION_KEYS = ("sso_start_url", "sso_region", "sso_registration_scopes")


def default_config_path():
    return Path(os.environ.get("AWS_CONFIG_FILE") or Path.home() / ".aws" / "config")


def sanitize_name(name):
    """Lower-case *name*, collapse spaces and hyphens, drop other punctuation.

    >>> sanitize_name("My  Org -- Prod (EU)")
    'my-org-prod-eu'
    """
    result = []
    for char in name:
        if char in " -":
            if result and result[-1] != "-":
                result.append("-")
        elif char.isascii() and (char.isalnum() or char == "_"):
            result.append(char)
    return "".join(result).rstrip("-").lower()


# ---------------------------------------------------------------------------
# Document model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SsoSession:
    name: str
    start_url: str
    region: str
    scopes: str = DEFAULT_SCOPES
    extra: tuple = ()

    def items(self):
        yield "sso_start_url", self.start_url
        yield "sso_region", self.region
        yield "sso_registration_scopes", self.scopes
        yield from self.extra


@dataclass(frozen=True)
class Profile:
    """A profile bound to an identity-center session.

    ``role_name`` is None while the role choice is deferred; ``status`` is
    ``pending`` for accounts never resolved and ``reselect`` when the
    previous role disappeared.
    """

    name: str
    session: str
    account_id: str
    role_name: str = None
    provenance: str = EXPLICIT
    status: str = None
    extra: tuple = ()

    @property
    def resolved(self):
        return self.role_name is not None and self.status is None

    def items(self):
        yield "sso_session", self.session
        yield "sso_account_id", self.account_id
        if self.role_name:
            yield "sso_role_name", self.role_name
        yield from self.extra
        yield PROVENANCE_KEY, self.provenance
        if self.status:
            yield STATUS_KEY, self.status


@dataclass(frozen=True)
class ConfigDocument:
    """Immutable snapshot of the AWS config file.

    ``extras`` holds every section this tool does not manage, as
    ``(section, ((key, value), ...))`` pairs in file order.
    """

    sessions: tuple = ()
    profiles: tuple = ()
    extras: tuple = ()
    _by_name: dict = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        seen = {}
        for section, _ in self.extras:
            if section.startswith(PROFILE_PREFIX):
                seen[section[len(PROFILE_PREFIX):]] = section
        for profile in self.profiles:
            if profile.name in seen:
                raise ConfigError(f"profile '{profile.name}' is defined twice")
            seen[profile.name] = profile
        object.__setattr__(self, "_by_name", {p.name: p for p in self.profiles})

    def session(self, name):
        return next((s for s in self.sessions if s.name == name), None)

    def profile(self, name):
        return self._by_name.get(name)

    def unmanaged_profile_names(self):
        return {s[len(PROFILE_PREFIX):] for s, _ in self.extras if s.startswith(PROFILE_PREFIX)}

    def profile_names(self):
        return set(self._by_name) | self.unmanaged_profile_names()

    def replace_sessions(self, session_names, sessions, profiles):
        """Swap every session in *session_names* (and its profiles) for new ones."""
        kept_sessions = [s for s in self.sessions if s.name not in session_names]
        kept_profiles = [p for p in self.profiles if p.session not in session_names]
        return replace(
            self,
            sessions=tuple(kept_sessions) + tuple(sessions),
            profiles=tuple(kept_profiles) + tuple(profiles),
        )

    # -- serialization -------------------------------------------------------

    @classmethod
    def parse(cls, text):
        parser = _parser()
        try:
            parser.read_string(text)
        except configparser.Error as exc:
            raise ConfigError(f"cannot parse AWS config: {exc}") from exc

        sessions, profiles, extras = [], [], []
        for section in parser.sections():
            values = dict(parser.items(section))
            if section.startswith(SESSION_PREFIX) and "sso_start_url" in values and "sso_region" in values:
                sessions.append(SsoSession(
                    name=section[len(SESSION_PREFIX):],
                    start_url=values["sso_start_url"],
                    region=values["sso_region"],
                    scopes=values.get("sso_registration_scopes", DEFAULT_SCOPES),
                    extra=tuple((k, v) for k, v in values.items() if k not in MANAGED_SESSION_KEYS),
                ))
            elif section.startswith(PROFILE_PREFIX) and "sso_session" in values and "sso_account_id" in values:
                profiles.append(Profile(
                    name=section[len(PROFILE_PREFIX):],
                    session=values["sso_session"],
                    account_id=values["sso_account_id"],
                    role_name=values.get("sso_role_name") or None,
                    provenance=values.get(PROVENANCE_KEY, EXPLICIT),
                    status=values.get(STATUS_KEY) or None,
                    extra=tuple((k, v) for k, v in values.items() if k not in MANAGED_PROFILE_KEYS),
                ))
            else:
                extras.append((section, tuple(values.items())))
        return cls(sessions=tuple(sessions), profiles=tuple(profiles), extras=tuple(extras))

    def render(self):
        """Serialize deterministically: extras in file order, then sessions and
        profiles sorted by name."""
        parser = _parser()
        for section, items in self.extras:
            parser[section] = dict(items)
        for session in sorted(self.sessions, key=lambda s: s.name):
            parser[SESSION_PREFIX + session.name] = dict(session.items())
        for profile in sorted(self.profiles, key=lambda p: p.name):
            parser[PROFILE_PREFIX + profile.name] = dict(profile.items())
        buffer = io.StringIO()
        parser.write(buffer)
        return buffer.getvalue()


def _parser():
    parser = configparser.ConfigParser(interpolation=None, inline_comment_prefixes=(), default_section="__defaults__")
    parser.optionxform = str
    return parser


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def atomic_write(path, text, mode=0o600):
    """Write *text* next to *path* and swap it in with ``os.replace``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


class ConfigStore:
    """Reads and atomically rewrites one AWS config file."""

    def __init__(self, path=None):
        self.path = Path(path) if path else default_config_path()
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @contextlib.contextmanager
    def locked(self):
        """Hold an exclusive lock for a read-modify-write cycle."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "w") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                yield self
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def load(self):
        try:
            text = self.path.read_text()
        except FileNotFoundError:
            return ConfigDocument()
        except OSError as exc:
            raise ConfigError(f"cannot read {self.path}: {exc}") from exc
        return ConfigDocument.parse(text)

    def save(self, document):
        text = document.render()
        try:
            atomic_write(self.path, text)
        except OSError as exc:
            raise ConfigError(f"cannot write {self.path}: {exc}") from exc
        logger.info("wrote %s", self.path)
        return text
