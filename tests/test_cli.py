from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from deployops.cli.cli import app
from deployops.cli.common.events import ConsoleEventLogger, ConsoleReporter
from deployops.cli.common.exits import EXIT_PIPELINE_FAILED, exit_for_result
from deployops.core.events import Severity
from deployops.core.runner import PipelineResult

runner = CliRunner()


class _OutStub:
    def __init__(self):
        self.calls: list[tuple[str, object]] = []

    def __getattr__(self, name):
        def record(value):
            self.calls.append((name, value))

        return record


def test_console_logger_prints_and_keeps_events():
    output = _OutStub()
    logger = ConsoleEventLogger(output)

    logger.event(Severity.SUCCESS, "Code Deployment", {"id": "d-1"})
    logger.event(Severity.INFO, "Still deploying")
    logger.event(Severity.FAILURE, "Deployment failed", {"reason": "boom"})

    assert output.calls == [
        ("success", "Code Deployment"),
        ("info", "Still deploying"),
        ("error", "Deployment failed"),
        ("kv", {"reason": "boom"}),
    ]
    assert len(logger.events) == 3


def test_verbose_console_logger_prints_every_context():
    output = _OutStub()

    ConsoleEventLogger(output, verbose=True).event(Severity.INFO, "note", {"k": "v"})

    assert output.calls == [("info", "note"), ("kv", {"k": "v"})]


def test_console_reporter_lists_mappings_and_sequences():
    output = _OutStub()
    reporter = ConsoleReporter(output)

    reporter.section("S3 Platform - Validating S3 configuration")
    reporter.listing("Platform configuration:", {"Bucket": "b"})
    reporter.listing("Commands:", ["make"])

    assert output.calls == [
        ("header", "S3 Platform - Validating S3 configuration"),
        ("print", "Platform configuration:"),
        ("kv", {"Bucket": "b"}),
        ("print", "Commands:"),
        ("bullets", ["make"]),
    ]


@pytest.fixture
def build_job(tmp_path: Path) -> Path:
    (tmp_path / "ws" / "job").mkdir(parents=True)
    path = tmp_path / "job.yml"
    path.write_text(
        f"workspace: {tmp_path / 'ws'}\nbuild:\n  id: b-1\n  application: app\n"
    )
    return path


def test_build_dry_run_does_not_run_anything(build_job: Path):
    result = runner.invoke(app, ["build", str(build_job), "--dry-run", "--no-confirm"])

    assert result.exit_code == 0
    assert "Dry-run enabled" in result.output


def test_deploy_rejects_a_build_job_file(build_job: Path):
    result = runner.invoke(app, ["deploy", str(build_job), "--no-confirm"])

    assert result.exit_code == 2


def test_platforms_lists_every_platform():
    result = runner.invoke(app, ["platforms"])

    assert result.exit_code == 0
    assert "codedeploy" in result.output


def test_failed_pipeline_result_exits_with_pipeline_code():
    with pytest.raises(typer.Exit) as exc_info:
        exit_for_result(PipelineResult.failure("deploy", "Deployment process failed"), "done")

    assert exc_info.value.exit_code == EXIT_PIPELINE_FAILED
