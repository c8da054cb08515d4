"""Port availability checks and owning-process lookup."""

import errno
import logging
import os
import re
import socket
import subprocess
from dataclasses import dataclass
from typing import Protocol

import psutil

from . import docker

logger = logging.getLogger(__name__)

# Bind errors meaning "someone holds the port", as opposed to "no IPv6 here"
_PORT_TAKEN_ERRNOS = {errno.EADDRINUSE, errno.EACCES, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}

# users:(("ruby",pid=876344,fd=6))
_SS_PROCESS_RE = re.compile(r'users:\(\("([^"]+)",pid=(\d+),fd=\d+\)')


@dataclass
class ProcessInfo:
    """What is known about the process listening on a port."""

    pid: int = 0
    name: str = ""
    cwd: str = ""
    user: str = ""
    container_id: str = ""

    def __str__(self) -> str:
        parts = [f"pid={self.pid}"]
        if self.name:
            parts.append(self.name)
        if self.cwd:
            parts.append(f"cwd={self.cwd}")
        return ", ".join(parts)


class PortProber(Protocol):
    """Answers whether a port is free and who holds it."""

    def is_free(self, port: int) -> bool: ...

    def owner_of(self, port: int) -> ProcessInfo | None: ...


def _bind(family: socket.AddressFamily, address: tuple, dual_stack: bool = False) -> None:
    with socket.socket(family, socket.SOCK_STREAM) as s:
        if os.name != "nt":
            # Ignore sockets lingering in TIME_WAIT
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if dual_stack:
            s.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        s.bind(address)


def is_port_free(port: int) -> bool:
    """Check if a port is available by binding to it on all interfaces.

    A dual-stack IPv6 socket is tried first, so listeners on either IPv4 or
    IPv6 (such as ``::1``) make the port busy. Hosts without IPv6 fall back
    to an IPv4 bind.
    """
    try:
        _bind(socket.AF_INET6, ("::", port), dual_stack=True)
        return True
    except OSError as e:
        if e.errno in _PORT_TAKEN_ERRNOS:
            return False
        logger.debug("IPv6 bind unavailable (%s), checking port %d over IPv4", e, port)

    try:
        _bind(socket.AF_INET, ("", port))
        return True
    except OSError:
        return False


def _listening_pid(port: int) -> int | None:
    """Return the PID listening on ``port``, 0 if it is hidden, None if no listener is visible."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        logger.debug("not allowed to list connections, owner of port %d unknown", port)
        return 0

    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
            continue
        return conn.pid or 0
    return None


def _describe_process(pid: int) -> ProcessInfo:
    """Fill in name, cwd and user for ``pid``, leaving blank what we may not read."""
    info = ProcessInfo(pid=pid)
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return info

    for attr, getter in (("name", proc.name), ("cwd", proc.cwd), ("user", proc.username)):
        try:
            setattr(info, attr, getter())
        except (psutil.AccessDenied, psutil.NoSuchProcess) as e:
            logger.debug("cannot read %s of pid %d: %s", attr, pid, e)
    return info


def _process_from_ss(port: int) -> ProcessInfo | None:
    """Use ``ss -tlnp`` when the socket's PID is hidden from psutil."""
    try:
        result = subprocess.run(["ss", "-tlnp"], capture_output=True, text=True, check=False)
    except OSError:
        return None
    if result.returncode != 0:
        return None

    suffix = f":{port}"
    for line in result.stdout.splitlines():
        fields = line.split()
        if len(fields) < 4 or not fields[3].endswith(suffix):
            continue
        match = _SS_PROCESS_RE.search(line)
        if match is None:
            continue
        info = _describe_process(int(match.group(2)))
        info.name = info.name or match.group(1)
        return info
    return None


def get_port_process(port: int) -> ProcessInfo | None:
    """Return information about the process listening on ``port``.

    Sources, in order: psutil's connection table and process details,
    ``ss -tlnp`` when the PID is hidden from us, and finally docker for
    ports published by a container (the container's project directory is
    reported as the working directory).

    Returns:
        ProcessInfo, or None if nothing could be determined.
    """
    info = None
    pid = _listening_pid(port)
    if pid:
        info = _describe_process(pid)
    elif pid == 0:
        info = _process_from_ss(port) or ProcessInfo()

    if info is None or info.pid == 0 or docker.is_docker_proxy(info.name):
        container = docker.get_container_info(port)
        if container is not None:
            info = info or ProcessInfo()
            info.container_id = container.container_id
            if container.project_dir:
                info.cwd = container.project_dir
            logger.debug("port %d published by container %s", port, container.container_id)

    return info


class SystemProber:
    """PortProber backed by the local network stack and process table."""

    def is_free(self, port: int) -> bool:
        return is_port_free(port)

    def owner_of(self, port: int) -> ProcessInfo | None:
        return get_port_process(port)
