"""
okta-creds: temporary AWS credentials from an Okta login, for federated SAML
applications and AWS IAM Identity Center.
"""

__version__ = "0.1.0"
