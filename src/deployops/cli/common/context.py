"""Application context management for the CLI."""

from dataclasses import dataclass

from deployops.cli.common.events import ConsoleEventLogger, ConsoleReporter
from deployops.core.events import GuardedEventLogger
from deployops.core.runner import JobRunner, build_platforms
from deployops.core.settings import Settings


@dataclass
class AppContext:
    """Application context holding settings, the event sinks and the platform runner."""

    settings: Settings
    events: ConsoleEventLogger
    logger: GuardedEventLogger
    reporter: ConsoleReporter
    runner: JobRunner


def build_context(*, verbose: bool = False) -> AppContext:
    """Build and return the application context.

    Args:
        verbose: Print event context for every event, not only failures.

    Returns:
        AppContext: Context wired to settings read from the environment.
    """
    settings = Settings.from_env()
    events = ConsoleEventLogger(verbose=verbose)
    logger = GuardedEventLogger(events)
    reporter = ConsoleReporter()
    platforms = build_platforms(settings, logger, reporter)
    return AppContext(
        settings=settings,
        events=events,
        logger=logger,
        reporter=reporter,
        runner=JobRunner(logger, platforms),
    )
