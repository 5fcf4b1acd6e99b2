from pathlib import Path

import pytest
from botocore.exceptions import ClientError

from deployops.core.events import MemoryEventLogger, Severity
from deployops.core.jobs import JobExecution, Release, Target
from deployops.core.models import Instance, InstanceHealth, LoadBalancer
from deployops.core.pipeline import StepOutcome
from deployops.core.platforms.elb import (
    ERR_ACTIVE_UNKNOWNS,
    ERR_NOTHING_TO_SWAP,
    ERR_SWAP_PASSIVE_INSTANCES,
    ERR_WAIT_REGISTER,
    INFO_FOUND_UNKNOWNS,
    EC2Finder,
    ELBConfig,
    ELBDeployPlatform,
    ELBHealthChecker,
    ELBManager,
    Swapper,
    parse_tag_filters,
)
from deployops.core.waiter import Waiter


def _waiter(attempts: int = 5) -> Waiter:
    return Waiter(interval=0, max_attempts=attempts, sleep=lambda _: None)


class _EC2Stub:
    def __init__(self, ids: list[str]):
        self.ids = ids
        self.filters = None

    def find_instances(self, filters):
        self.filters = filters
        return [Instance(id=i, instance_type="t3.small", state="running") for i in self.ids]


class _ELBStub:
    """Two or more load balancers whose membership converges immediately."""

    def __init__(self, members: dict[str, dict[str, str]], converge: bool = True):
        self.members = members
        self.converge = converge
        self.calls: list[tuple[str, str, list[str]]] = []

    def describe_load_balancer(self, name):
        if name not in self.members:
            return None
        return LoadBalancer(
            name=name, dns_name=f"{name}.elb.example", instance_ids=tuple(self.members[name])
        )

    def instance_health(self, name):
        return [InstanceHealth(i, state, "N/A") for i, state in self.members[name].items()]

    def register(self, name, instance_ids):
        self.calls.append(("register", name, list(instance_ids)))
        state = "InService" if self.converge else "OutOfService"
        for i in instance_ids:
            self.members[name][i] = state

    def deregister(self, name, instance_ids):
        self.calls.append(("deregister", name, list(instance_ids)))
        for i in instance_ids:
            self.members[name].pop(i, None)


@pytest.mark.parametrize(
    "value, expected",
    [
        (
            "deploymentgroup,Name=myapp",
            [
                {"Name": "tag-key", "Values": ["deploymentgroup"]},
                {"Name": "tag:Name", "Values": ["myapp"]},
            ],
        ),
        ("  env=prod , ,", [{"Name": "tag:env", "Values": ["prod"]}]),
        ("a=b=c", []),
        ("=value", []),
        ("", []),
    ],
)
def test_parse_tag_filters(value, expected):
    assert parse_tag_filters(value) == expected


def test_ec2_finder_returns_instance_ids_and_logs_summary():
    logger = MemoryEventLogger()
    ec2 = _EC2Stub(["i-1", "i-2"])

    outcome = EC2Finder(logger)(ec2, "group=web")

    assert outcome.data == ["i-1", "i-2"]
    assert ec2.filters == [{"Name": "tag:group", "Values": ["web"]}]
    assert "i-2" in logger.events[0].context["summary"]


def test_ec2_finder_fails_without_filters_or_instances():
    logger = MemoryEventLogger()

    assert not EC2Finder(logger)(_EC2Stub(["i-1"]), " , ")
    assert not EC2Finder(logger)(_EC2Stub([]), "group=web")


def test_validation_rejects_live_unknown_instances():
    logger = MemoryEventLogger()
    elb = _ELBStub({"active": {"i-1": "InService", "i-2": "InService", "i-9": "InService"}})

    outcome = ELBManager(logger).validate(elb, "active", ["i-1", "i-2", "i-3"])

    assert not outcome
    assert outcome.error == ERR_ACTIVE_UNKNOWNS
    assert "i-9" in outcome.context["invalidActiveInstances"]
    assert ELBManager(logger).get_valid_elb_instances(elb, "active", ["i-1", "i-2"]) is None


def test_validation_tolerates_out_of_service_unknown_instances():
    logger = MemoryEventLogger()
    elb = _ELBStub({"active": {"i-1": "InService", "i-9": "OutOfService"}})

    known = ELBManager(logger).get_valid_elb_instances(elb, "active", ["i-1", "i-2"])

    assert known == ["i-1"]
    assert logger.messages(Severity.INFO) == [INFO_FOUND_UNKNOWNS]
    assert logger.failures() == []


def test_swapper_registers_and_deregisters_then_converges():
    logger = MemoryEventLogger()
    elb = _ELBStub({"passive": {"i-3": "InService"}})

    outcome = Swapper(logger, _waiter())(elb, "passive", ["i-1"], ["i-3"])

    assert outcome
    assert elb.calls == [("register", "passive", ["i-1"]), ("deregister", "passive", ["i-3"])]
    assert elb.members["passive"] == {"i-1": "InService"}


def test_swapper_skips_empty_lists():
    elb = _ELBStub({"passive": {}})

    assert Swapper(MemoryEventLogger(), _waiter())(elb, "passive", [], [])
    assert elb.calls == []


def test_swapper_times_out_when_instances_never_come_into_service():
    logger = MemoryEventLogger()
    elb = _ELBStub({"passive": {}}, converge=False)

    outcome = Swapper(logger, _waiter(3), log_every=1)(elb, "passive", ["i-1"], [])

    assert not outcome
    assert outcome.error == ERR_WAIT_REGISTER
    assert len(logger.messages(Severity.INFO)) == 3


def test_swapper_reports_remote_errors():
    class _Failing(_ELBStub):
        def register(self, name, instance_ids):
            raise ClientError({"Error": {"Code": "Throttling", "Message": "slow down"}}, "Register")

    outcome = Swapper(MemoryEventLogger(), _waiter())(_Failing({"p": {}}), "p", ["i-1"], [])

    assert not outcome
    assert "slow down" in outcome.error


def test_health_checker_summarises_instances():
    logger = MemoryEventLogger()
    elb = _ELBStub({"active": {"i-1": "InService"}})

    assert ELBHealthChecker(logger)(elb, "active")
    assert "Status: Ok" in logger.events[0].context["loadBalancer"]
    assert not ELBHealthChecker(logger)(elb, "missing")


def _release() -> Release:
    return Release(
        id="r-1",
        application="app",
        target=Target(
            platform="elb",
            region="us-east-1",
            parameters={"elb_active": "active", "elb_passive": "passive", "ec2_tag": "app=web"},
        ),
    )


def _config(ec2, elb) -> ELBConfig:
    return ELBConfig(
        ec2=ec2,
        elb=elb,
        region="us-east-1",
        active_lb="active",
        passive_lb="passive",
        ec2_tag="app=web",
    )


def test_blue_green_swap_end_to_end(tmp_path: Path):
    logger = MemoryEventLogger()
    ec2 = _EC2Stub(["i-1", "i-2", "i-3"])
    elb = _ELBStub({"active": {"i-1": "InService", "i-2": "InService"}, "passive": {}})
    platform = ELBDeployPlatform(logger, _waiter(), configurator=lambda release: _config(ec2, elb))

    ok = platform(_release(), JobExecution("elb", "deploy"), tmp_path)

    assert ok is True
    assert logger.failures() == []
    assert elb.calls == [
        ("register", "passive", ["i-1", "i-2"]),
        ("deregister", "active", ["i-1", "i-2"]),
    ]
    assert elb.members == {"active": {}, "passive": {"i-1": "InService", "i-2": "InService"}}


def test_failed_passive_swap_never_attempts_active_swap(tmp_path: Path):
    logger = MemoryEventLogger()
    ec2 = _EC2Stub(["i-1", "i-2"])
    elb = _ELBStub({"active": {"i-1": "InService"}, "passive": {"i-2": "InService"}})
    swaps: list[str] = []

    def _swapper(client, lb_name, add, remove):
        swaps.append(lb_name)
        if lb_name == "passive":
            return StepOutcome.failed("register failed")
        return StepOutcome.succeeded()

    platform = ELBDeployPlatform(
        logger,
        _waiter(),
        configurator=lambda release: _config(ec2, elb),
        swapper=_swapper,
    )

    assert platform(_release(), JobExecution("elb", "deploy"), tmp_path) is False
    assert swaps == ["passive"]
    assert [e.message for e in logger.failures()] == [ERR_SWAP_PASSIVE_INSTANCES]


def test_nothing_to_swap_fails_validation(tmp_path: Path):
    logger = MemoryEventLogger()
    elb = _ELBStub({"active": {}, "passive": {}})
    platform = ELBDeployPlatform(
        logger, _waiter(), configurator=lambda release: _config(_EC2Stub(["i-1"]), elb)
    )

    assert platform(_release(), JobExecution("elb", "deploy"), tmp_path) is False
    assert logger.failures()[0].context["reason"] == ERR_NOTHING_TO_SWAP
    assert elb.calls == []
