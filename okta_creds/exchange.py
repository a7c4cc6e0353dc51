"""
Exchange a SAML assertion for temporary AWS credentials through STS.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import boto3
from botocore.exceptions import ClientError

from .errors import ExchangeError, RoleNotAssumable
from .retry import RetryPolicy, botocore_config, error_code

logger = logging.getLogger(__name__)

DEFAULT_SESSION_DURATION = 3600  # 1 hour
MIN_SESSION_DURATION = 900
MAX_SESSION_DURATION = 43200  # STS max is 12 h

NOT_ASSUMABLE_CODES = {"AccessDenied", "AccessDeniedException"}


@dataclass(frozen=True)
class Credential:
    """Short-lived AWS keys with their expiry (aware UTC datetime)."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime

    @classmethod
    def from_sts(cls, payload):
        expiration = payload["Expiration"]
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return cls(
            access_key_id=payload["AccessKeyId"],
            secret_access_key=payload["SecretAccessKey"],
            session_token=payload["SessionToken"],
            expiration=expiration,
        )

    @classmethod
    def from_sso(cls, payload):
        """From sso:GetRoleCredentials, whose expiration is in milliseconds."""
        return cls(
            access_key_id=payload["accessKeyId"],
            secret_access_key=payload["secretAccessKey"],
            session_token=payload["sessionToken"],
            expiration=datetime.fromtimestamp(payload["expiration"] / 1000, tz=timezone.utc),
        )

    def __repr__(self):
        return f"Credential(access_key_id={self.access_key_id!r}, expiration={self.expiration})"


def parse_expiration(value):
    """Parse a stored ISO-8601 expiry; None when missing or unreadable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def clamp_duration(seconds):
    return max(MIN_SESSION_DURATION, min(int(seconds), MAX_SESSION_DURATION))


def sts_client(region, timeout=30):
    return boto3.client("sts", region_name=region, config=botocore_config(timeout))


def exchange_for_credentials(
    assertion,
    role,
    duration=DEFAULT_SESSION_DURATION,
    sts=None,
    policy=None,
    region=None,
    sleep=time.sleep,
):
    """Call STS AssumeRoleWithSAML for *role* and return a Credential.

    Throttling and 5xx answers are retried per *policy*; anything else fails
    on the first attempt.
    """
    sts = sts or sts_client(region)
    policy = policy or RetryPolicy()

    def assume():
        return sts.assume_role_with_saml(
            RoleArn=role.role_arn,
            PrincipalArn=role.principal_arn,
            SAMLAssertion=assertion.raw,
            DurationSeconds=clamp_duration(duration),
        )

    try:
        response = policy.call(assume, f"AssumeRoleWithSAML {role.role_arn}", sleep=sleep)
    except ClientError as exc:
        code = error_code(exc)
        message = exc.response.get("Error", {}).get("Message", code)
        if code in NOT_ASSUMABLE_CODES:
            raise RoleNotAssumable(f"{role.role_arn}: {message}", code=code) from exc
        raise ExchangeError(f"{role.role_arn}: {message}", code=code) from exc

    credential = Credential.from_sts(response["Credentials"])
    logger.info("assumed %s until %s", role.role_arn, credential.expiration)
    return credential
