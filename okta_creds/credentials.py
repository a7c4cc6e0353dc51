"""
The AWS shared credentials file as the secret store for temporary keys.
"""

import configparser
import io
import logging
import os
from pathlib import Path

from .aws_config import atomic_write
from .errors import SecretStoreError
from .exchange import Credential, parse_expiration

logger = logging.getLogger(__name__)

EXPIRATION_KEY = "x-expiration"
KEYS = ("aws_access_key_id", "aws_secret_access_key", "aws_session_token", EXPIRATION_KEY)


def default_credentials_path():
    return Path(os.environ.get("AWS_SHARED_CREDENTIALS_FILE") or Path.home() / ".aws" / "credentials")


class CredentialsFile:
    """put/get of Credentials by profile name.

    A profile that holds long-lived keys (no session token) is never
    overwritten.
    """

    def __init__(self, path=None):
        self.path = Path(path) if path else default_credentials_path()

    def _read(self):
        # Disable inline comment characters so we can use keys like 'x-expiration'
        config = configparser.ConfigParser(interpolation=None, inline_comment_prefixes=())
        if self.path.exists():
            try:
                config.read(self.path)
            except (configparser.Error, OSError) as exc:
                raise SecretStoreError(f"cannot read {self.path}: {exc}") from exc
        return config

    def get(self, profile):
        config = self._read()
        if not config.has_section(profile):
            return None
        section = config[profile]
        if "aws_session_token" not in section:
            return None
        return Credential(
            access_key_id=section.get("aws_access_key_id"),
            secret_access_key=section.get("aws_secret_access_key"),
            session_token=section.get("aws_session_token"),
            expiration=parse_expiration(section.get(EXPIRATION_KEY)),
        )

    def put(self, profile, credential):
        config = self._read()
        if config.has_section(profile):
            section = config[profile]
            if "aws_access_key_id" in section and "aws_session_token" not in section:
                raise SecretStoreError(
                    f"profile '{profile}' in {self.path} holds long-lived keys, refusing to overwrite it"
                )
        else:
            config.add_section(profile)

        config.set(profile, "aws_access_key_id", credential.access_key_id)
        config.set(profile, "aws_secret_access_key", credential.secret_access_key)
        config.set(profile, "aws_session_token", credential.session_token)
        config.set(profile, EXPIRATION_KEY, credential.expiration.isoformat())

        buffer = io.StringIO()
        config.write(buffer)
        try:
            atomic_write(self.path, buffer.getvalue(), mode=0o600)
        except OSError as exc:
            raise SecretStoreError(f"cannot write {self.path}: {exc}") from exc
        logger.info("stored credentials for %s in %s", profile, self.path)
