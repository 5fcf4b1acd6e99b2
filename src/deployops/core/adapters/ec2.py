from __future__ import annotations

from typing import Any, Mapping

from deployops.core.models import Instance


class EC2Adapter:
    """Adapter around the boto3 EC2 client."""

    def __init__(self, client):
        """Create an EC2 adapter for an authenticated boto3 client."""
        self.client = client

    def find_instances(self, filters: list[Mapping[str, Any]]) -> list[Instance]:
        """Return instances matching all ``filters`` (ANDed by EC2)."""
        paginator = self.client.get_paginator("describe_instances")
        instances: list[Instance] = []
        for page in paginator.paginate(Filters=list(filters)):
            for reservation in page.get("Reservations", []):
                for raw in reservation.get("Instances", []):
                    instances.append(self._to_instance(raw))
        return instances

    @staticmethod
    def _to_instance(raw: Mapping[str, Any]) -> Instance:
        tags = {t.get("Key"): t.get("Value") for t in raw.get("Tags") or []}
        return Instance(
            id=raw["InstanceId"],
            name=str(tags.get("Name") or ""),
            state=str((raw.get("State") or {}).get("Name") or "Unknown"),
            instance_type=str(raw.get("InstanceType") or ""),
            private_ip=str(raw.get("PrivateIpAddress") or ""),
        )
