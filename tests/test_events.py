from deployops.core.events import GuardedEventLogger, MemoryEventLogger, Severity


def test_memory_logger_records_stage_and_context():
    logger = MemoryEventLogger()
    logger.stage = "release.deploy"

    logger.event(Severity.SUCCESS, "Code Deployment", {"id": "d-1"})
    logger.event("info", "Still deploying")

    assert [e.severity for e in logger.events] == [Severity.SUCCESS, Severity.INFO]
    assert logger.events[0].stage == "release.deploy"
    assert logger.events[0].context == {"id": "d-1"}
    assert logger.events[1].context == {}
    assert logger.messages(Severity.INFO) == ["Still deploying"]


def test_failures_filters_failure_events():
    logger = MemoryEventLogger()
    logger.event(Severity.INFO, "a")
    logger.event(Severity.FAILURE, "b")

    assert [e.message for e in logger.failures()] == ["b"]


def test_guarded_logger_swallows_sink_errors(capsys):
    class _Broken:
        stage = ""

        def event(self, severity, message, context=None):
            raise BrokenPipeError("closed")

    guarded = GuardedEventLogger(_Broken())

    guarded.event(Severity.FAILURE, "Deployment failed")

    assert guarded.dropped == 1
    assert "event logger failed" in capsys.readouterr().err


def test_guarded_logger_forwards_events_and_stage():
    inner = MemoryEventLogger()
    guarded = GuardedEventLogger(inner)

    guarded.stage = "end"
    guarded.event(Severity.SUCCESS, "done", {"k": "v"})

    assert inner.stage == "end"
    assert guarded.stage == "end"
    assert inner.events[0].context == {"k": "v"}
    assert guarded.dropped == 0
