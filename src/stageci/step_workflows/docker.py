# step_workflows/docker.py
from __future__ import annotations

from typing import Dict, List

from ..dsl import cmd
from ..model import Command


# ---------------------------------------------------------------------
# Docker command helpers
# ---------------------------------------------------------------------
# These only build Commands; running them goes through the same
# CommandRunner boundary as every other step.
# ---------------------------------------------------------------------

def docker_build(
    image: str,
    context: str = ".",
    *,
    name: str | None = None,
    dockerfile: str | None = None,
    build_args: Dict[str, str] | None = None,
    pull: bool = False,
    no_cache: bool = False,
    timeout: float | None = None,
) -> Command:
    """`docker build -t <image> [...] <context>`"""
    args: List[str] = ["build", "-t", image]
    if dockerfile:
        args.extend(["-f", dockerfile])
    for key, value in (build_args or {}).items():
        args.extend(["--build-arg", f"{key}={value}"])
    if pull:
        args.append("--pull")
    if no_cache:
        args.append("--no-cache")
    args.append(context)
    return cmd("docker", *args, name=name or f"Build {image}", timeout=timeout)


def docker_run(
    image: str,
    *command: str,
    name: str | None = None,
    container: str | None = None,
    detach: bool = False,
    remove: bool = True,
    env: Dict[str, str] | None = None,
    ports: List[str] | None = None,
    volumes: List[str] | None = None,
    user: str | None = None,
    entrypoint: str | None = None,
    halt_on_failure: bool = True,
    timeout: float | None = None,
) -> Command:
    """`docker run [...] <image> [command...]`"""
    args: List[str] = ["run"]
    if remove and not detach:
        args.append("--rm")
    if detach:
        args.append("-d")
    if container:
        args.extend(["--name", container])
    for key, value in (env or {}).items():
        args.extend(["-e", f"{key}={value}"])
    for port in ports or []:
        args.extend(["-p", port])
    for vol in volumes or []:
        args.extend(["-v", vol])
    if user:
        args.extend(["--user", user])
    if entrypoint is not None:
        args.extend(["--entrypoint", entrypoint])
    args.append(image)
    args.extend(command)
    return cmd(
        "docker",
        *args,
        name=name or f"Run {image}",
        halt_on_failure=halt_on_failure,
        timeout=timeout,
    )


def docker_inspect(target: str, fmt: str | None = None, *, name: str | None = None) -> Command:
    """`docker inspect [--format <fmt>] <target>`"""
    args: List[str] = ["inspect"]
    if fmt:
        args.extend(["--format", fmt])
    args.append(target)
    return cmd("docker", *args, name=name or f"Inspect {target}")


def docker_rm(container: str, *, name: str | None = None) -> Command:
    """Force-remove a container; a missing container is not a failure."""
    return cmd("docker", "rm", "-f", container, name=name or f"Remove container {container}", halt_on_failure=False)


def docker_rmi(image: str, *, name: str | None = None) -> Command:
    """Force-remove an image; a missing image is not a failure."""
    return cmd("docker", "rmi", "-f", image, name=name or f"Remove image {image}", halt_on_failure=False)
