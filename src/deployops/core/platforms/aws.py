"""Shared configuration helpers for AWS deployment platforms."""

from __future__ import annotations

from typing import Any, Callable, Iterable

from deployops.core.auth import AWSClientFactory, AuthError
from deployops.core.events import EventLogger, Severity
from deployops.core.jobs import Credential, Release

ClientsFactory = Callable[[str | None, Credential | None], Callable[[str], Any]]

PARAM_REGION = "region"
PARAM_CONTEXT = "context"

INFO_MISSING_PARAMETERS = "Deployment target is missing required parameters"
INFO_AUTH_FAILED = "Could not authenticate with AWS"


def required_parameters(
    release: Release,
    names: Iterable[str],
    logger: EventLogger,
) -> dict[str, str] | None:
    """
    Return the named target parameters, or None if any is missing.

    Missing parameter names are reported as an info event.
    """
    target = release.target
    if target is None:
        logger.event(Severity.INFO, INFO_MISSING_PARAMETERS, {"missing": ["target"]})
        return None

    values = {name: target.parameter(name) for name in names}
    missing = [name for name, value in values.items() if value is None]
    if missing:
        logger.event(Severity.INFO, INFO_MISSING_PARAMETERS, {"missing": missing})
        return None
    return {k: v for k, v in values.items() if v is not None}


def connect(
    release: Release,
    services: Iterable[str],
    logger: EventLogger,
    clients: ClientsFactory = AWSClientFactory,
) -> dict[str, Any] | None:
    """
    Create one boto3 client per service for the release target.

    Returns None (after reporting why) when authentication fails.
    """
    target = release.target
    if target is None:
        return None

    try:
        factory = clients(target.region, target.credential)
        return {service: factory(service) for service in services}
    except AuthError as exc:
        logger.event(
            Severity.INFO,
            INFO_AUTH_FAILED,
            {"region": target.region, "error": str(exc)},
        )
        return None
