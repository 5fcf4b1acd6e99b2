"""PowerShell scripts sent to the Windows builder through SSM.

Each script is identified by a ``PowershellScript`` member and rendered by
its own function. ``render`` looks the renderer up in ``SCRIPTS``, a table
covering every member, so an unknown script cannot be requested.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Mapping

BASE_BUILD_PATH = r"C:\deployops\builds"

SAFE_HEADER = """\
Set-StrictMode -Version Latest
$ErrorActionPreference = "Stop"
$ProgressPreference = 'SilentlyContinue'"""

_BSDTAR_HEADER = """\
if (-not (Test-Path "${env:ProgramFiles(x86)}\\GnuWin32\\bin\\bsdtar.exe")) {
    Throw "bsdtar is missing. Please install LibArchive for Windows."
}
Set-Alias bsdtar "${env:ProgramFiles(x86)}\\GnuWin32\\bin\\bsdtar.exe\""""


class PowershellScript(str, Enum):
    PREPARE_BUILDER = "prepare_builder"
    DOWNLOAD_BUILD = "download_build"
    UNTAR_BUILD = "untar_build"
    SET_ENVIRONMENT = "set_environment"
    RUN_NATIVE = "run_native"
    RUN_DOCKER = "run_docker"
    TRANSFER_TO_OUTPUT = "transfer_to_output"
    TAR_BUILD = "tar_build"
    UPLOAD_BUILD = "upload_build"
    CLEANUP = "cleanup"


def quote(value: str) -> str:
    """Quote a value as a single-quoted PowerShell string."""
    return "'" + str(value).replace("'", "''") + "'"


def input_dir(job_id: str) -> str:
    return f"{BASE_BUILD_PATH}\\{job_id}"


def output_dir(job_id: str) -> str:
    return f"{BASE_BUILD_PATH}\\{job_id}-output"


def archive_file(job_id: str) -> str:
    return f"{BASE_BUILD_PATH}\\{job_id}.tar.gz"


def prepare_builder() -> str:
    path = quote(BASE_BUILD_PATH)
    return f"if (-not (Test-Path {path})) {{ New-Item {path} -type directory | Out-Null }}"


def download_build(local_file: str, bucket: str, key: str) -> str:
    return "\n".join(
        [
            f"Write-Host 'Downloading artifact from s3://{bucket}/{key}'",
            f"Read-S3Object -BucketName {quote(bucket)} -Key {quote(key)} "
            f"-File {quote(local_file)}",
        ]
    )


def untar_build(local_file: str, unpack_dir: str) -> str:
    return "\n".join(
        [
            _BSDTAR_HEADER,
            f"New-Item {quote(unpack_dir)} -type directory | Out-Null",
            f"bsdtar -xz --file={quote(local_file)} --directory={quote(unpack_dir)}",
            f"Remove-Item {quote(local_file)} -Force",
        ]
    )


def set_environment(env: Mapping[str, str]) -> str:
    return "\n".join(f"$env:{name} = {quote(value)}" for name, value in sorted(env.items()))


def run_native(command: str, workdir: str) -> str:
    return "\n".join(
        [
            f"Set-Location {quote(workdir)}",
            command,
            "if ($LastExitCode) { Exit $LastExitCode }",
        ]
    )


def run_docker(command: str, workdir: str, image: str, env: Mapping[str, str]) -> str:
    env_flags = " ".join(f"--env {quote(f'{k}={v}')}" for k, v in sorted(env.items()))
    escaped = command.replace("\n", ";").replace('"', '`"')
    return "\n".join(
        [
            " ".join(
                part
                for part in (
                    "docker run --rm",
                    f"--volume {quote(workdir + ':C:/build')}",
                    "--workdir C:/build",
                    env_flags,
                    quote(image),
                    "powershell -NonInteractive -NoProfile -ExecutionPolicy Unrestricted",
                    f'-Command "{escaped}"',
                )
                if part
            ),
            "Exit $LastExitCode",
        ]
    )


def transfer_to_output(source_dir: str, target_dir: str) -> str:
    contents = quote(source_dir + "\\*")
    return "\n".join(
        [
            f"New-Item {quote(target_dir)} -type directory | Out-Null",
            f"Copy-Item {contents} -Destination {quote(target_dir)} -Recurse",
        ]
    )


def tar_build(local_file: str, build_dir: str) -> str:
    return "\n".join(
        [
            _BSDTAR_HEADER,
            f"bsdtar -cz --file={quote(local_file)} -C {quote(build_dir)} .",
            f"Remove-Item {quote(build_dir)} -Recurse -Force",
        ]
    )


def upload_build(local_file: str, bucket: str, key: str) -> str:
    return "\n".join(
        [
            f"Write-Host 'Uploading artifact to s3://{bucket}/{key}'",
            f"Write-S3Object -BucketName {quote(bucket)} -Key {quote(key)} "
            f"-File {quote(local_file)} "
            '-CannedACLName "bucket-owner-full-control"',
            f"Remove-Item {quote(local_file)} -Force",
        ]
    )


def cleanup(*paths: str) -> str:
    return "\n".join(
        f"if (Test-Path {quote(p)}) {{ Remove-Item {quote(p)} -Recurse -Force }}" for p in paths
    )


SCRIPTS: dict[PowershellScript, Callable[..., str]] = {
    PowershellScript.PREPARE_BUILDER: prepare_builder,
    PowershellScript.DOWNLOAD_BUILD: download_build,
    PowershellScript.UNTAR_BUILD: untar_build,
    PowershellScript.SET_ENVIRONMENT: set_environment,
    PowershellScript.RUN_NATIVE: run_native,
    PowershellScript.RUN_DOCKER: run_docker,
    PowershellScript.TRANSFER_TO_OUTPUT: transfer_to_output,
    PowershellScript.TAR_BUILD: tar_build,
    PowershellScript.UPLOAD_BUILD: upload_build,
    PowershellScript.CLEANUP: cleanup,
}


def render(script: PowershellScript, *args, **kwargs) -> str:
    """Render one script."""
    return SCRIPTS[script](*args, **kwargs)


def commands(*scripts: str) -> list[str]:
    """Return SSM "commands" for scripts, prefixed with the strict mode header."""
    return [SAFE_HEADER, *scripts]
