"""Authentication helpers for AWS.

This module centralizes creation of boto3 clients for deployment targets and
defines which botocore exceptions count as expected remote failures. Steps
catch ``REMOTE_ERRORS`` at their boundary and turn them into failed outcomes;
anything else (for example a malformed request shape) is a defect and is
left to propagate.
"""

from __future__ import annotations

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    NoRegionError,
    PartialCredentialsError,
    ProfileNotFound,
    ReadTimeoutError,
)

from deployops.core.jobs import Credential

REMOTE_ERRORS = (
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

_CLIENT_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})


class AuthError(RuntimeError):
    """Raised when an AWS session or client cannot be created."""


def _format_auth_error(exc: Exception, credential: Credential | None) -> str:
    """Return a user-friendly auth error message."""
    if isinstance(exc, ProfileNotFound) and credential and credential.profile:
        return (
            f"AWS profile '{credential.profile}' was not found.\n"
            "Configure it with:\n"
            f"  $ aws configure --profile {credential.profile}"
        )
    if isinstance(exc, NoRegionError):
        return "AWS region is not set. Add a region to the deployment target."
    return f"AWS authentication failed: {exc}"


def get_session(credential: Credential | None = None) -> boto3.Session:
    """
    Create a boto3 session for a target credential.

    Static keys win over a named profile. Without a credential the default
    boto3 credential chain is used.
    """
    try:
        if credential and credential.access_key_id:
            return boto3.Session(
                aws_access_key_id=credential.access_key_id,
                aws_secret_access_key=credential.secret_access_key,
                aws_session_token=credential.session_token,
            )
        if credential and credential.profile:
            return boto3.Session(profile_name=credential.profile)
        return boto3.Session()
    except ProfileNotFound as exc:
        raise AuthError(_format_auth_error(exc, credential)) from exc


def get_client(service: str, region: str | None, credential: Credential | None = None):
    """
    Create and return a boto3 client for ``service`` in ``region``.

    Raises:
        AuthError: If the session or client cannot be created.
    """
    session = get_session(credential)
    try:
        return session.client(service, region_name=region, config=_CLIENT_CONFIG)
    except (NoRegionError, ProfileNotFound) as exc:
        raise AuthError(_format_auth_error(exc, credential)) from exc


class AWSClientFactory:
    """Creates clients for one region/credential pair."""

    def __init__(self, region: str | None, credential: Credential | None = None):
        self.region = region
        self.credential = credential

    def __call__(self, service: str):
        return get_client(service, self.region, self.credential)
