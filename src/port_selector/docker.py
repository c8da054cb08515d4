"""Docker container lookup for ports published through docker-proxy."""

import logging
import shutil
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DOCKER_PROXY = "docker-proxy"
COMPOSE_WORKING_DIR_LABEL = "com.docker.compose.project.working_dir"


@dataclass
class ContainerInfo:
    """A container publishing a port, and the project directory it came from."""

    container_id: str
    project_dir: str = ""


def is_docker_proxy(process_name: str) -> bool:
    return process_name == DOCKER_PROXY


def is_docker_available() -> bool:
    available = shutil.which("docker") is not None
    logger.debug("docker CLI available: %s", available)
    return available


def _docker(args: list[str]) -> str | None:
    """Run a docker command, returning stripped stdout or None on failure."""
    try:
        result = subprocess.run(
            ["docker"] + args,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as e:
        logger.debug("docker %s failed: %s", " ".join(args), e)
        return None
    if result.returncode != 0:
        logger.debug("docker %s exited with %d", " ".join(args), result.returncode)
        return None
    return result.stdout.strip()


def _first_line(output: str) -> str:
    return output.split("\n", 1)[0].strip()


def find_container_by_port(port: int) -> str:
    """Return the ID of a running container publishing ``port``, or ""."""
    if not is_docker_available():
        return ""
    output = _docker(["ps", "--filter", f"publish={port}", "--format", "{{.ID}}"])
    if not output:
        logger.debug("no container found on port %d", port)
        return ""
    return _first_line(output)


def get_project_directory(container_id: str) -> str:
    """Return a container's project directory.

    The docker-compose working directory label is preferred; otherwise the
    source of the first bind mount is used.
    """
    if not container_id:
        return ""

    label = _docker(
        ["inspect", container_id, "--format", f'{{{{index .Config.Labels "{COMPOSE_WORKING_DIR_LABEL}"}}}}']
    )
    # docker inspect prints "<no value>" for a missing label
    if label and label != "<no value>":
        return label

    mounts = _docker(
        ["inspect", container_id, "--format", '{{range .Mounts}}{{if eq .Type "bind"}}{{.Source}}\n{{end}}{{end}}']
    )
    if mounts:
        return _first_line(mounts)
    return ""


def get_container_info(port: int) -> ContainerInfo | None:
    container_id = find_container_by_port(port)
    if not container_id:
        return None
    return ContainerInfo(container_id=container_id, project_dir=get_project_directory(container_id))
