"""Application build configuration (.hal.yml) and command environments.

Applications describe how they are built and deployed in a ``.hal.yml`` file
at the root of their source tree. This module loads that file with PyYAML,
validates it and fills in defaults. It also assembles the environment
variables exposed to user supplied commands.
"""

from __future__ import annotations

import copy
import re
from pathlib import Path
from typing import Any, Mapping

import yaml

from deployops.core.jobs import Build, Job, Release

CONFIG_FILES = (".hal.yml", ".hal.yaml")
MAX_COMMANDS = 10

TEXT_KEYS = ("platform", "image", "dist", "transform_dist")
LIST_KEYS = (
    "build",
    "build_transform",
    "before_deploy",
    "deploy",
    "after_deploy",
    "rsync_exclude",
    "rsync_before",
    "rsync_after",
)

DEFAULT_CONFIGURATION: dict[str, Any] = {
    "platform": "linux",
    "image": "default",
    "dist": ".",
    "transform_dist": ".",
    "env": {},
    **{key: [] for key in LIST_KEYS},
}

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigurationError(ValueError):
    """Raised when a .hal.yml file is invalid."""


def find_configuration(job_dir: Path) -> Path | None:
    """Return the first configuration file present in ``job_dir``."""
    for name in CONFIG_FILES:
        candidate = Path(job_dir) / name
        if candidate.is_file():
            return candidate
    return None


def _text(yaml_doc: Mapping[str, Any], key: str) -> str | None:
    value = yaml_doc.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        raise ConfigurationError(f'.hal.yml configuration key "{key}" is invalid')
    return str(value).strip()


def _commands(yaml_doc: Mapping[str, Any], key: str) -> list[str]:
    if key not in yaml_doc or yaml_doc[key] is None:
        return []

    commands = yaml_doc[key]
    if not isinstance(commands, list):
        commands = [commands]

    if len(commands) > MAX_COMMANDS:
        raise ConfigurationError(
            f'Too many commands specified for "{key}". No more than {MAX_COMMANDS} are allowed.'
        )

    sanitized: list[str] = []
    for command in commands:
        if isinstance(command, (dict, list)):
            raise ConfigurationError(f'.hal.yml configuration key "{key}" is invalid')
        text = "" if command is None else str(command).strip()
        if text:
            sanitized.append(text)
    return sanitized


def _env(yaml_doc: Mapping[str, Any]) -> dict[str, dict[str, str]]:
    raw = yaml_doc.get("env")
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError('.hal.yml configuration key "env" is invalid')

    env: dict[str, dict[str, str]] = {}
    for env_name, variables in raw.items():
        if not isinstance(env_name, str) or not isinstance(variables, dict):
            raise ConfigurationError('.hal.yml configuration key "env" is invalid')
        for name, value in variables.items():
            if isinstance(value, (dict, list)) or not _ENV_NAME.match(str(name)):
                raise ConfigurationError(f'.hal.yml env var for "{env_name}" is invalid')
            env.setdefault(env_name, {})[str(name)] = "" if value is None else str(value).strip()
    return env


def parse_configuration(
    text: str,
    defaults: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Parse and validate .hal.yml contents.

    Scalar command entries become one-element lists and empty commands are
    dropped. Missing keys keep their default values.

    Raises:
        ConfigurationError: If the YAML is invalid or a key has the wrong shape.
    """
    config = copy.deepcopy(dict(defaults or DEFAULT_CONFIGURATION))

    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(".hal.yml was invalid") from exc

    if doc is None:
        return config
    if not isinstance(doc, dict):
        raise ConfigurationError(".hal.yml was invalid")

    for key in TEXT_KEYS:
        value = _text(doc, key)
        if value:
            config[key] = value

    for env_name, variables in _env(doc).items():
        config.setdefault("env", {}).setdefault(env_name, {}).update(variables)

    for key in LIST_KEYS:
        config[key] = _commands(doc, key)

    return config


def read_configuration(
    job_dir: Path,
    defaults: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Load the configuration found in ``job_dir``, or the defaults if none exists."""
    path = find_configuration(job_dir)
    if path is None:
        return copy.deepcopy(dict(defaults or DEFAULT_CONFIGURATION))
    return parse_configuration(path.read_text(encoding="utf-8"), defaults)


def job_environment(job: Job) -> dict[str, str]:
    """Return the HAL_* variables describing a job."""
    env = {
        "HAL_JOBID": job.id,
        "HAL_APP": job.application,
        "HAL_ENVIRONMENT": job.environment,
        "HAL_COMMIT": job.commit,
        "HAL_GITREF": job.reference,
    }
    if isinstance(job, Build):
        env["HAL_BUILDID"] = job.id
    if isinstance(job, Release):
        env["HAL_BUILDID"] = job.build_id
        env["HAL_RELEASEID"] = job.id
        if job.target is not None:
            env["HAL_METHOD"] = job.target.platform
            env["HAL_CONTEXT"] = job.target.parameter("context") or ""
    return env


def determine_environment(
    base: Mapping[str, str],
    configuration_env: Mapping[str, Mapping[str, Any]] | None,
) -> dict[str, str]:
    """
    Merge the environment for user supplied commands.

    User variables come from the "global" section and then the section
    named after HAL_ENVIRONMENT. Base (job) variables always win over user
    variables.
    """
    env = {k: str(v) for k, v in base.items()}

    configuration_env = configuration_env or {}
    user: dict[str, str] = {}
    for section in ("global", env.get("HAL_ENVIRONMENT", "")):
        for name, value in (configuration_env.get(section) or {}).items():
            user[name] = str(value)

    return {**user, **env}


def stage_environment(job: Job, config: Mapping[str, Any]) -> dict[str, str]:
    """Return the merged environment for a stage of ``job``."""
    return determine_environment(job_environment(job), config.get("env"))
