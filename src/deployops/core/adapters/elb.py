from __future__ import annotations

from typing import Any, Iterable, Mapping

from deployops.core.models import InstanceHealth, LoadBalancer


class ClassicELBAdapter:
    """Adapter around the boto3 classic Elastic Load Balancing client."""

    def __init__(self, client):
        """Create a load balancer adapter for an authenticated boto3 client."""
        self.client = client

    def describe_load_balancer(self, name: str) -> LoadBalancer | None:
        """Return the load balancer description, or None if AWS returned none."""
        response = self.client.describe_load_balancers(LoadBalancerNames=[name])
        descriptions = response.get("LoadBalancerDescriptions") or []
        if not descriptions:
            return None
        raw = descriptions[0]
        return LoadBalancer(
            name=raw.get("LoadBalancerName", name),
            dns_name=raw.get("DNSName", ""),
            instance_ids=tuple(i["InstanceId"] for i in raw.get("Instances") or []),
            health_check_target=(raw.get("HealthCheck") or {}).get("Target", ""),
        )

    def instance_health(self, name: str) -> list[InstanceHealth]:
        """Return the health of every instance registered with the load balancer."""
        response = self.client.describe_instance_health(LoadBalancerName=name)
        return [self._to_health(raw) for raw in response.get("InstanceStates") or []]

    def register(self, name: str, instance_ids: Iterable[str]) -> None:
        """Register instances with the load balancer."""
        self.client.register_instances_with_load_balancer(
            LoadBalancerName=name,
            Instances=[{"InstanceId": i} for i in instance_ids],
        )

    def deregister(self, name: str, instance_ids: Iterable[str]) -> None:
        """Deregister instances from the load balancer."""
        self.client.deregister_instances_from_load_balancer(
            LoadBalancerName=name,
            Instances=[{"InstanceId": i} for i in instance_ids],
        )

    @staticmethod
    def _to_health(raw: Mapping[str, Any]) -> InstanceHealth:
        return InstanceHealth(
            instance_id=raw["InstanceId"],
            state=str(raw.get("State") or "Unknown"),
            reason_code=str(raw.get("ReasonCode") or ""),
            description=str(raw.get("Description") or ""),
        )
