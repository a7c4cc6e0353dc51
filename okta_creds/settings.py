"""
Tool settings and organization files.

Everything lives in one home directory (``$OKTA_CREDS_HOME`` or
``~/.okta-creds``):

    config.ini          [default] tuning knobs
    <organization>.ini  [organization] okta_url, username, role, duration_seconds
                        [profile NAME] application, role, account, duration_seconds

Command-line values win over file values, which win over built-in defaults.
"""

import configparser
import dataclasses
import fnmatch
import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .aws_config import atomic_write
from .errors import ConfigError
from .reconcile import SuggestionPolicy
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

SETTINGS_FILE = "config.ini"
SETTINGS_SECTION = "default"
ORGANIZATION_SECTION = "organization"
PROFILE_PREFIX = "profile "


def default_home():
    return Path(os.environ.get("OKTA_CREDS_HOME") or Path.home() / ".okta-creds")


def load_config(config_path):
    """Load an INI file; a missing file reads as empty."""
    config = configparser.ConfigParser(interpolation=None)
    try:
        config.read(config_path)
    except configparser.Error as exc:
        raise ConfigError(f"cannot parse {config_path}: {exc}") from exc
    return config


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Settings:
    home: Path
    max_workers: int = 10
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    timeout: int = 30
    region: str = "us-east-1"
    duration_seconds: int = 3600
    factor_attempts: int = 3
    push_poll_interval: int = 3
    push_timeout: int = 180
    suggestion_basis: str = "resolved"
    suggestion_min_share: float = 0.0

    @property
    def retry_policy(self):
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    @property
    def suggestion_policy(self):
        return SuggestionPolicy(basis=self.suggestion_basis, min_share=self.suggestion_min_share)


def _convert(name, kind, raw):
    try:
        value = kind(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name}: {raw!r}") from exc
    if kind in (int, float) and value < 0:
        raise ConfigError(f"{name} must not be negative, got {raw!r}")
    return value


def load_settings(home=None, overrides=None):
    """Build Settings from ``config.ini`` under *home* and CLI *overrides*.

    Override values of None are ignored.
    """
    home = Path(home) if home else default_home()
    config = load_config(home / SETTINGS_FILE)
    section = config[SETTINGS_SECTION] if config.has_section(SETTINGS_SECTION) else {}
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    values = {}
    for f in dataclasses.fields(Settings):
        if f.name == "home":
            continue
        if f.name in overrides:
            values[f.name] = _convert(f.name, f.type, overrides[f.name])
        elif f.name in section:
            values[f.name] = _convert(f.name, f.type, section[f.name])
    unknown = set(section) - {f.name for f in dataclasses.fields(Settings)}
    if unknown:
        logger.warning("ignoring unknown settings in %s: %s", home / SETTINGS_FILE, ", ".join(sorted(unknown)))
    if values.get("max_workers", 1) < 1:
        raise ConfigError("max_workers must be at least 1")
    if values.get("retry_attempts", 1) < 1:
        raise ConfigError("retry_attempts must be at least 1")
    return Settings(home=home, **values)


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProfileSpec:
    """A federated (or identity-center) profile refreshed by ``refresh``."""

    name: str
    application: str
    role: str = None
    account: str = None
    duration_seconds: int = None


@dataclass(frozen=True)
class Organization:
    name: str
    okta_url: str
    username: str = None
    role: str = None
    duration_seconds: int = None
    profiles: tuple = ()

    def matching_profiles(self, patterns=None):
        """Profiles whose names match any of the glob *patterns* (all if empty)."""
        if not patterns:
            return list(self.profiles)
        return [p for p in self.profiles if any(fnmatch.fnmatchcase(p.name, pat) for pat in patterns)]

    def render(self):
        config = configparser.ConfigParser(interpolation=None)
        config[ORGANIZATION_SECTION] = {"okta_url": self.okta_url}
        for key in ("username", "role", "duration_seconds"):
            value = getattr(self, key)
            if value is not None:
                config[ORGANIZATION_SECTION][key] = str(value)
        for profile in self.profiles:
            section = PROFILE_PREFIX + profile.name
            config[section] = {"application": profile.application}
            for key in ("role", "account", "duration_seconds"):
                value = getattr(profile, key)
                if value is not None:
                    config[section][key] = str(value)
        buffer = io.StringIO()
        config.write(buffer)
        return buffer.getvalue()


def _optional_int(section, key, where):
    raw = section.get(key)
    return None if raw in (None, "") else _convert(f"{where}: {key}", int, raw)


def load_organization(path):
    path = Path(path)
    name = path.stem
    config = load_config(path)
    org = config[ORGANIZATION_SECTION] if config.has_section(ORGANIZATION_SECTION) else {}

    profiles = []
    for section in config.sections():
        if not section.startswith(PROFILE_PREFIX):
            continue
        values = config[section]
        profile_name = section[len(PROFILE_PREFIX):].strip()
        if not values.get("application"):
            raise ConfigError(f"{path}: profile '{profile_name}' has no application")
        profiles.append(ProfileSpec(
            name=profile_name,
            application=values["application"],
            role=values.get("role") or None,
            account=values.get("account") or None,
            duration_seconds=_optional_int(values, "duration_seconds", path),
        ))

    return Organization(
        name=name,
        okta_url=org.get("okta_url") or f"https://{name}.okta.com",
        username=org.get("username") or None,
        role=org.get("role") or None,
        duration_seconds=_optional_int(org, "duration_seconds", path),
        profiles=tuple(profiles),
    )


def organization_path(home, name):
    return Path(home) / f"{name}.ini"


def list_organizations(home, pattern="*"):
    """Organizations under *home* whose names match the glob *pattern*."""
    home = Path(home)
    if not home.is_dir():
        return []
    return [
        load_organization(path)
        for path in sorted(home.glob("*.ini"))
        if path.name != SETTINGS_FILE and fnmatch.fnmatchcase(path.stem, pattern)
    ]


def save_organization(home, organization):
    path = organization_path(home, organization.name)
    atomic_write(path, organization.render(), mode=0o600)
    logger.info("wrote %s", path)
    return path
