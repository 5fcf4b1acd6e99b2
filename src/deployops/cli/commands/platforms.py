"""List the registered build and deploy platforms."""

from deployops.cli.common.output import out
from deployops.core.events import MemoryEventLogger
from deployops.core.runner import build_platforms
from deployops.core.settings import Settings


def platforms():
    """
    Show every platform a job can name.
    """
    settings = Settings.from_env()
    registered = build_platforms(settings, MemoryEventLogger())

    rows = [
        (
            ptype.value,
            type(platform).__name__,
            ", ".join(t.__name__.lower() for t in platform.job_types),
        )
        for ptype, platform in registered.items()
    ]
    out.platforms_table(rows, title="Platforms")
    out.kv(
        {
            "Linux builder": settings.linux_builder,
            "Windows builder tag": settings.windows_tag,
            "Wait": f"{settings.wait_attempts} x {settings.wait_interval:g}s",
        }
    )
