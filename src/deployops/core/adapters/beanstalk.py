from __future__ import annotations

from deployops.core.models import BeanstalkEvent, EnvironmentHealth


def _environment_selector(environment: str, plural: bool = True) -> dict:
    """Return the request key selecting an environment by id ("e-...") or name."""
    if environment.startswith("e-"):
        key = "EnvironmentId"
    else:
        key = "EnvironmentName"
    if plural:
        return {f"{key}s": [environment]}
    return {key: environment}


class BeanstalkAdapter:
    """Adapter around the boto3 Elastic Beanstalk client."""

    def __init__(self, client):
        """Create an Elastic Beanstalk adapter for an authenticated boto3 client."""
        self.client = client

    def environment_health(self, application: str, environment: str) -> EnvironmentHealth:
        """Return environment status and health, or a "Missing" record."""
        response = self.client.describe_environments(
            ApplicationName=application,
            IncludeDeleted=False,
            **_environment_selector(environment),
        )
        environments = response.get("Environments") or []
        if not environments:
            return EnvironmentHealth.missing(environment)
        raw = environments[0]
        return EnvironmentHealth(
            environment=str(raw.get("EnvironmentName") or environment),
            status=str(raw.get("Status") or ""),
            health=str(raw.get("Health") or ""),
            health_status=str(raw.get("HealthStatus") or ""),
            version_label=str(raw.get("VersionLabel") or ""),
        )

    def recent_events(
        self, application: str, environment: str, max_records: int = 25
    ) -> list[BeanstalkEvent]:
        """Return the most recent environment events, newest first."""
        selector = _environment_selector(environment, plural=False)
        response = self.client.describe_events(
            ApplicationName=application,
            MaxRecords=max_records,
            **selector,
        )
        return [
            BeanstalkEvent(
                date=str(raw.get("EventDate") or ""),
                severity=str(raw.get("Severity") or ""),
                message=str(raw.get("Message") or ""),
            )
            for raw in response.get("Events") or []
        ]

    def version_exists(self, application: str, version_label: str) -> bool:
        """Return True if the application version label is already registered."""
        response = self.client.describe_application_versions(
            ApplicationName=application,
            VersionLabels=[version_label],
        )
        return bool(response.get("ApplicationVersions"))

    def create_application_version(
        self,
        application: str,
        version_label: str,
        description: str,
        bucket: str,
        key: str,
    ) -> None:
        """Register a new application version from an S3 bundle."""
        self.client.create_application_version(
            ApplicationName=application,
            VersionLabel=version_label,
            Description=description,
            SourceBundle={"S3Bucket": bucket, "S3Key": key},
        )

    def update_environment(self, environment: str, version_label: str) -> None:
        """Deploy an application version to an environment."""
        self.client.update_environment(
            VersionLabel=version_label,
            **_environment_selector(environment, plural=False),
        )
