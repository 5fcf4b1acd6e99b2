"""Blue/green deployment by swapping instances between two classic load balancers.

The platform finds the instances carrying the target's EC2 tag, validates
the membership of the active and passive load balancers, then swaps the two
sets: first into the passive load balancer, then out of the active one.
The second direction only starts once the first has converged. Both load
balancers are health checked at the end.

Instances registered with a load balancer but not tagged are "unknown".
They are never swapped, and any unknown instance that is not OutOfService
fails validation because it is serving traffic we do not own.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

from deployops.core.adapters.ec2 import EC2Adapter
from deployops.core.adapters.elb import ClassicELBAdapter
from deployops.core.auth import AWSClientFactory, REMOTE_ERRORS
from deployops.core.events import EventLogger, Severity
from deployops.core.formatting import render_filters, render_rows
from deployops.core.jobs import Job, JobExecution, Release
from deployops.core.models import (
    IN_SERVICE,
    OUT_OF_SERVICE,
    Instance,
    InstanceHealth,
    LoadBalancer,
)
from deployops.core.pipeline import (
    CleanupStack,
    JobPlatform,
    PipelineContext,
    Reporter,
    Stage,
    StepOutcome,
)
from deployops.core.platforms.aws import ClientsFactory, connect, required_parameters
from deployops.core.waiter import PollState, Waiter, WaitTimeout

PARAM_ACTIVE_LB = "elb_active"
PARAM_PASSIVE_LB = "elb_passive"
PARAM_EC2_TAG = "ec2_tag"

STEP_1_CONFIGURING = "ELB Platform - Validating ELB configuration"
STEP_2_FETCH_EC2_INSTANCES = "ELB Platform - Fetch tagged EC2 Instances"
STEP_3_FETCH_ACTIVE_INSTANCES = "ELB Platform - Fetch and validate instances from Active ELB"
STEP_4_FETCH_PASSIVE_INSTANCES = "ELB Platform - Fetch and validate instances from Passive ELB"
STEP_5_SWAP_PASSIVE_INSTANCES = "ELB Platform - Swap instances in Passive ELB"
STEP_6_SWAP_ACTIVE_INSTANCES = "ELB Platform - Swap instances in Active ELB"
STEP_7_ACTIVE_HEALTH = "ELB Platform - Check health state of Active ELB"
STEP_8_PASSIVE_HEALTH = "ELB Platform - Check health state of Passive ELB"

ERR_CONFIGURATOR = "Elastic Load Balancer deploy platform is not configured correctly"
ERR_TAGGED_INSTANCES = "Could not find tagged instances"
ERR_ACTIVE_INSTANCES = "Could not find valid instances in Active ELB"
ERR_PASSIVE_INSTANCES = "Could not find valid instances in Passive ELB"
ERR_NOTHING_TO_SWAP = "Neither load balancer contains tagged instances"
ERR_SWAP_PASSIVE_INSTANCES = "Could not swap instances in Passive ELB"
ERR_SWAP_ACTIVE_INSTANCES = "Could not swap instances in Active ELB"
ERR_ACTIVE_HEALTH = "Active Elastic Load Balancer is not ready"
ERR_PASSIVE_HEALTH = "Passive Elastic Load Balancer is not ready"

EVENT_FIND_INSTANCES = "EC2 Instances Finder"
EVENT_VALIDATE = "Validate ELBs contain only eligible instances"
EVENT_SWAP = "Swapping instances in Elastic Load Balancers"
EVENT_HEALTH = "Checking Health of Elastic Load Balancers"

INFO_FOUND_UNKNOWNS = "Found unknown instances in ELBs - These will not be swapped"
INFO_WAITING_REGISTER = "Waiting for instances to come into service"
INFO_WAITING_REMOVE = "Waiting for instances to switch out of service"

ERR_NO_FILTERS = "No valid EC2 tag filters found"
ERR_NO_INSTANCES = "No instances matched the EC2 tag filters"
ERR_ACTIVE_UNKNOWNS = "Unknown instances are in service"
ERR_LB_NOT_FOUND = "Load balancer was not found"
ERR_WAIT_REGISTER = "An error occurred while waiting for instances to become live"
ERR_WAIT_REMOVE = "An error occurred while waiting for instances to be deregistered"


class InstanceFinder(Protocol):
    """Interface for EC2 instance lookup."""

    def find_instances(self, filters: list[Mapping[str, Any]]) -> list[Instance]:
        ...


class LoadBalancerClient(Protocol):
    """Interface for classic load balancer membership operations."""

    def describe_load_balancer(self, name: str) -> LoadBalancer | None:
        ...

    def instance_health(self, name: str) -> list[InstanceHealth]:
        ...

    def register(self, name: str, instance_ids: Sequence[str]) -> None:
        ...

    def deregister(self, name: str, instance_ids: Sequence[str]) -> None:
        ...


def parse_tag_filters(tag_filters: str) -> list[dict[str, Any]]:
    """
    Parse a comma-separated tag expression into EC2 describe filters.

    "key" matches the presence of a tag, "key=value" matches its value. All
    filters are ANDed by EC2. Empty and malformed segments are ignored.

    Example:
        "deploymentgroup,Name=web" yields a tag-key filter for
        "deploymentgroup" and a tag:Name filter for "web".
    """
    filters: list[dict[str, Any]] = []
    for segment in (tag_filters or "").split(","):
        segment = segment.strip()
        if not segment:
            continue
        parts = segment.split("=")
        if len(parts) == 1:
            filters.append({"Name": "tag-key", "Values": [parts[0]]})
        elif len(parts) == 2 and parts[0]:
            filters.append({"Name": f"tag:{parts[0]}", "Values": [parts[1]]})
    return filters


class EC2Finder:
    """Find the instances participating in the swap."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(self, ec2: InstanceFinder, tag_filters: str) -> StepOutcome:
        filters = parse_tag_filters(tag_filters)
        if not filters:
            return StepOutcome.failed(ERR_NO_FILTERS, {"tags": tag_filters})

        try:
            instances = ec2.find_instances(filters)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc))

        if not instances:
            return StepOutcome.failed(ERR_NO_INSTANCES, {"filters": render_filters(filters)})

        summary = "\n".join(
            [
                "Filters:",
                render_filters(filters),
                "",
                render_rows(
                    ["Instance ID", "Instance Type", "State"],
                    [(i.id, i.instance_type, i.state) for i in instances],
                    [30, 20, 20],
                ),
            ]
        )
        self.logger.event(Severity.SUCCESS, EVENT_FIND_INSTANCES, {"summary": summary})
        return StepOutcome.succeeded([i.id for i in instances])


class ELBManager:
    """Validate that a load balancer only serves traffic from tagged instances."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def validate(
        self,
        elb: LoadBalancerClient,
        lb_name: str,
        tagged: Sequence[str],
    ) -> StepOutcome:
        """
        Partition a load balancer's instances into known and unknown.

        Returns:
            A successful outcome carrying the known instance ids (possibly
            empty), or a failure when an unknown instance is not OutOfService.
        """
        try:
            states = elb.instance_health(lb_name)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), {"loadBalancer": lb_name})

        tagged_ids = set(tagged)
        known = [s.instance_id for s in states if s.instance_id in tagged_ids]
        unknown = [s for s in states if s.instance_id not in tagged_ids]

        if unknown:
            context = {
                "loadBalancer": lb_name,
                "unknownInstances": [u.instance_id for u in unknown],
                "taggedInstances": list(tagged),
            }
            self.logger.event(Severity.INFO, INFO_FOUND_UNKNOWNS, context)

            active = [u for u in unknown if u.state != OUT_OF_SERVICE]
            if active:
                context["invalidActiveInstances"] = "\n\n".join(
                    f"Instance: {u.instance_id}\nState: {u.state}\n"
                    f"Reason: {u.reason_code} - {u.description}"
                    for u in active
                )
                return StepOutcome.failed(ERR_ACTIVE_UNKNOWNS, context)

        return StepOutcome.succeeded(known)

    def get_valid_elb_instances(
        self,
        elb: LoadBalancerClient,
        lb_name: str,
        tagged: Sequence[str],
    ) -> list[str] | None:
        """Return the known instance ids, or None when validation fails."""
        outcome = self.validate(elb, lb_name, tagged)
        return outcome.data if outcome.ok else None


class Swapper:
    """Move instances into and out of one load balancer and wait for convergence."""

    def __init__(self, logger: EventLogger, waiter: Waiter, log_every: int = 9):
        self.logger = logger
        self.waiter = waiter
        self.log_every = log_every

    def __call__(
        self,
        elb: LoadBalancerClient,
        lb_name: str,
        add: Sequence[str],
        remove: Sequence[str],
    ) -> StepOutcome:
        context = {
            "loadBalancer": lb_name,
            "instancesToBeRegistered": list(add),
            "instancesToBeRemoved": list(remove),
        }

        try:
            if add:
                elb.register(lb_name, list(add))
            if remove:
                elb.deregister(lb_name, list(remove))
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), context)

        self.logger.event(Severity.SUCCESS, EVENT_SWAP, context)

        waited = self._wait(elb, lb_name, add, IN_SERVICE, INFO_WAITING_REGISTER, ERR_WAIT_REGISTER)
        if not waited:
            return waited
        return self._wait(
            elb, lb_name, remove, OUT_OF_SERVICE, INFO_WAITING_REMOVE, ERR_WAIT_REMOVE
        )

    def _wait(
        self,
        elb: LoadBalancerClient,
        lb_name: str,
        instances: Sequence[str],
        state: str,
        waiting_message: str,
        error_message: str,
    ) -> StepOutcome:
        if not instances:
            return StepOutcome.succeeded()

        poll = PollState(log_every=self.log_every)
        try:
            self.waiter.wait(
                lambda: self._converged(elb, lb_name, instances, state, waiting_message, poll)
            )
        except (WaitTimeout, *REMOTE_ERRORS) as exc:
            return StepOutcome.failed(error_message, {"loadBalancer": lb_name, "error": str(exc)})
        return StepOutcome.succeeded()

    def _converged(
        self,
        elb: LoadBalancerClient,
        lb_name: str,
        instances: Sequence[str],
        state: str,
        waiting_message: str,
        poll: PollState,
    ) -> bool:
        # Deregistered instances disappear from the load balancer
        states = {h.instance_id: h.state for h in elb.instance_health(lb_name)}
        default = OUT_OF_SERVICE if state == OUT_OF_SERVICE else None
        pending = [i for i in instances if states.get(i, default) != state]
        if not pending:
            return True

        if poll.tick():
            self.logger.event(
                Severity.INFO,
                waiting_message,
                {"loadBalancer": lb_name, "pending": pending, "states": states},
            )
        return False


class ELBHealthChecker:
    """Summarize the state of a load balancer and its instances."""

    def __init__(self, logger: EventLogger):
        self.logger = logger

    def __call__(self, elb: LoadBalancerClient, lb_name: str) -> StepOutcome:
        try:
            lb = elb.describe_load_balancer(lb_name)
            if lb is None:
                return StepOutcome.failed(ERR_LB_NOT_FOUND, {"loadBalancer": lb_name})
            states = elb.instance_health(lb_name)
        except REMOTE_ERRORS as exc:
            return StepOutcome.failed(str(exc), {"loadBalancer": lb_name})

        self.logger.event(
            Severity.SUCCESS,
            EVENT_HEALTH,
            {"loadBalancer": self._summary(lb, states)},
        )
        return StepOutcome.succeeded(states)

    @staticmethod
    def _summary(lb: LoadBalancer, states: list[InstanceHealth]) -> str:
        rows = []
        for s in states:
            state = s.state
            if not s.neutral_reason:
                state = f"{state} - [{s.reason_code}] {s.description}"
            rows.append((s.instance_id, lb.name, state))

        return "\n".join(
            [
                f"Load Balancer: {lb.name}",
                f"DNS: {lb.dns_name}",
                f"Status: {'Ok' if states else 'Empty'}",
                "",
                render_rows(["Instance ID", "Load Balancer", "Status"], rows, [30, 40, 30]),
            ]
        )


@dataclass(frozen=True)
class ELBConfig:
    """Resolved configuration for one swap."""

    ec2: InstanceFinder
    elb: LoadBalancerClient
    region: str | None
    active_lb: str
    passive_lb: str
    ec2_tag: str

    def summary(self) -> dict[str, Any]:
        return {
            "Region": self.region,
            "Active ELB": self.active_lb,
            "Passive ELB": self.passive_lb,
            "EC2 Tag": self.ec2_tag,
        }


class ELBConfigurator:
    """Resolve the swap configuration from a release target."""

    def __init__(self, logger: EventLogger, clients: ClientsFactory = AWSClientFactory):
        self.logger = logger
        self.clients = clients

    def __call__(self, release: Release) -> ELBConfig | None:
        params = required_parameters(
            release, [PARAM_ACTIVE_LB, PARAM_PASSIVE_LB, PARAM_EC2_TAG], self.logger
        )
        if params is None:
            return None

        sdk = connect(release, ["ec2", "elb"], self.logger, self.clients)
        if sdk is None:
            return None

        return ELBConfig(
            ec2=EC2Adapter(sdk["ec2"]),
            elb=ClassicELBAdapter(sdk["elb"]),
            region=release.target.region,
            active_lb=params[PARAM_ACTIVE_LB],
            passive_lb=params[PARAM_PASSIVE_LB],
            ec2_tag=params[PARAM_EC2_TAG],
        )


@dataclass
class ELBContext(PipelineContext):
    config: ELBConfig | None = None
    tagged: list[str] | None = None
    active_instances: list[str] | None = None
    passive_instances: list[str] | None = None


class ELBDeployPlatform(JobPlatform):
    """Blue/green release through two classic load balancers."""

    job_types = (Release,)

    def __init__(
        self,
        logger: EventLogger,
        waiter: Waiter,
        reporter: Reporter | None = None,
        *,
        configurator: ELBConfigurator | None = None,
        finder: EC2Finder | None = None,
        manager: ELBManager | None = None,
        swapper: Swapper | None = None,
        health: ELBHealthChecker | None = None,
    ):
        super().__init__(logger, reporter)
        self.configurator = configurator or ELBConfigurator(logger)
        self.finder = finder or EC2Finder(logger)
        self.manager = manager or ELBManager(logger)
        self.swapper = swapper or Swapper(logger, waiter)
        self.health = health or ELBHealthChecker(logger)

    def context(
        self,
        job: Job,
        execution: JobExecution,
        workspace: Path,
        cleanup: CleanupStack,
    ) -> ELBContext:
        return ELBContext(job=job, execution=execution, workspace=workspace, cleanup=cleanup)

    def stages(self) -> list[Stage]:
        return [
            Stage(STEP_1_CONFIGURING, ERR_CONFIGURATOR, self._configure, writes="config"),
            Stage(
                STEP_2_FETCH_EC2_INSTANCES,
                ERR_TAGGED_INSTANCES,
                self._find_tagged,
                reads=("config",),
                writes="tagged",
            ),
            Stage(
                STEP_3_FETCH_ACTIVE_INSTANCES,
                ERR_ACTIVE_INSTANCES,
                lambda ctx: self.manager.validate(ctx.config.elb, ctx.config.active_lb, ctx.tagged),
                reads=("config", "tagged"),
                writes="active_instances",
            ),
            Stage(
                STEP_4_FETCH_PASSIVE_INSTANCES,
                ERR_PASSIVE_INSTANCES,
                self._validate_passive,
                reads=("config", "tagged", "active_instances"),
                writes="passive_instances",
            ),
            Stage(
                STEP_5_SWAP_PASSIVE_INSTANCES,
                ERR_SWAP_PASSIVE_INSTANCES,
                lambda ctx: self.swapper(
                    ctx.config.elb,
                    ctx.config.passive_lb,
                    ctx.active_instances,
                    ctx.passive_instances,
                ),
                reads=("config", "active_instances", "passive_instances"),
            ),
            Stage(
                STEP_6_SWAP_ACTIVE_INSTANCES,
                ERR_SWAP_ACTIVE_INSTANCES,
                lambda ctx: self.swapper(
                    ctx.config.elb,
                    ctx.config.active_lb,
                    ctx.passive_instances,
                    ctx.active_instances,
                ),
                reads=("config", "active_instances", "passive_instances"),
            ),
            Stage(
                STEP_7_ACTIVE_HEALTH,
                ERR_ACTIVE_HEALTH,
                lambda ctx: self.health(ctx.config.elb, ctx.config.active_lb),
                reads=("config",),
            ),
            Stage(
                STEP_8_PASSIVE_HEALTH,
                ERR_PASSIVE_HEALTH,
                lambda ctx: self.health(ctx.config.elb, ctx.config.passive_lb),
                reads=("config",),
            ),
        ]

    def _configure(self, ctx: ELBContext) -> StepOutcome:
        config = self.configurator(ctx.job)
        if config is None:
            return StepOutcome.failed()
        self.reporter.listing("Platform configuration:", config.summary())
        return StepOutcome.succeeded(config)

    def _find_tagged(self, ctx: ELBContext) -> StepOutcome:
        outcome = self.finder(ctx.config.ec2, ctx.config.ec2_tag)
        if outcome:
            self.reporter.listing("Tagged instances:", outcome.data)
        return outcome

    def _validate_passive(self, ctx: ELBContext) -> StepOutcome:
        outcome = self.manager.validate(ctx.config.elb, ctx.config.passive_lb, ctx.tagged)
        if outcome and not outcome.data and not ctx.active_instances:
            return StepOutcome.failed(
                ERR_NOTHING_TO_SWAP,
                {
                    "activeLoadBalancer": ctx.config.active_lb,
                    "passiveLoadBalancer": ctx.config.passive_lb,
                },
            )
        return outcome
