"""In-memory allocation store mapping ports to (directory, name) pairs.

Everything in this module is pure bookkeeping: no files are read or written
and no sockets are touched. Port availability is passed in as an
``is_free`` predicate where a decision depends on it.
"""

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)

DEFAULT_NAME = "main"
STATUS_EXTERNAL = "external"

# Sorts before any real timestamp
_NEVER = datetime.min.replace(tzinfo=UTC)

PortChecker = Callable[[int], bool]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def normalize_directory(directory: str) -> str:
    """Resolve ``.``, ``..``, duplicate and trailing slashes in a directory path."""
    path = os.path.normpath(directory)
    # normpath keeps a leading "//" as POSIX allows
    if path.startswith("//"):
        path = "/" + path.lstrip("/")
    return path


def normalize_name(name: str | None) -> str:
    """Return the allocation name, defaulting empty names to ``main``."""
    return name or DEFAULT_NAME


def unknown_directory(port: int) -> str:
    """Return the placeholder directory for a busy port with no known owner."""
    return f"(unknown:{port})"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass
class AllocationInfo:
    """A single port assignment."""

    port: int
    directory: str
    name: str = DEFAULT_NAME
    assigned_at: datetime | None = None
    last_used_at: datetime | None = None
    locked: bool = False
    locked_at: datetime | None = None
    process_name: str = ""
    container_id: str = ""
    # External allocations track busy ports owned by processes outside our directories
    status: str = ""
    external_pid: int = 0
    external_user: str = ""
    external_process_name: str = ""

    def __post_init__(self):
        self.directory = normalize_directory(self.directory)
        self.name = normalize_name(self.name)
        self.assigned_at = _as_utc(self.assigned_at)
        self.last_used_at = _as_utc(self.last_used_at)
        self.locked_at = _as_utc(self.locked_at)

    @property
    def last_activity(self) -> datetime | None:
        """Most recent use of the port, falling back to its assignment time."""
        return self.last_used_at or self.assigned_at

    @property
    def is_external(self) -> bool:
        return self.status == STATUS_EXTERNAL

    def recency_key(self) -> tuple[datetime, int]:
        """Sort key where larger means newer; lower ports win ties."""
        return (self.last_activity or _NEVER, -self.port)


def _most_recent(candidates: list[AllocationInfo]) -> AllocationInfo | None:
    if not candidates:
        return None
    return max(candidates, key=AllocationInfo.recency_key)


@dataclass
class Store:
    """All known allocations, keyed by port, plus the round-robin cursor."""

    allocations: dict[int, AllocationInfo] = field(default_factory=dict)
    last_issued_port: int = 0

    # --- Queries ---

    def count(self) -> int:
        return len(self.allocations)

    def sorted_by_port(self) -> list[AllocationInfo]:
        """Return all allocations ordered by ascending port."""
        return [self.allocations[port] for port in sorted(self.allocations)]

    def find_by_port(self, port: int) -> AllocationInfo | None:
        return self.allocations.get(port)

    def find_by_directory(self, directory: str) -> AllocationInfo | None:
        """Return the most recently used allocation of a directory, any name."""
        directory = normalize_directory(directory)
        return _most_recent(
            [info for info in self.allocations.values() if info.directory == directory]
        )

    def find_by_directory_and_name(self, directory: str, name: str) -> AllocationInfo | None:
        """Return the canonical allocation for a (directory, name) pair.

        When several ports match, the one with the latest ``last_used_at``
        (or ``assigned_at``) wins and equal timestamps are broken by the
        lowest port number, so repeated calls always agree.
        """
        return _most_recent(self._matching(directory, name))

    def find_by_directory_and_name_with_priority(
        self,
        directory: str,
        name: str,
        is_free: PortChecker | None,
    ) -> AllocationInfo | None:
        """Return the best reusable allocation for a (directory, name) pair.

        Candidates are ranked locked+free, then locked+busy, then
        unlocked+free. Unlocked+busy allocations are never returned. Within a
        rank the newest allocation wins, then the lowest port. A ``None``
        checker treats every port as busy.

        Args:
            directory: Directory requesting a port.
            name: Allocation name within the directory.
            is_free: Predicate reporting whether a port can be bound.

        Returns:
            The allocation to reuse, or None if a fresh port is needed.
        """
        ranked: dict[int, list[AllocationInfo]] = {1: [], 2: [], 3: []}
        for info in self._matching(directory, name):
            free = is_free(info.port) if is_free is not None else False
            if info.locked:
                ranked[1 if free else 2].append(info)
            elif free:
                ranked[3].append(info)
            else:
                logger.debug("skipping port %d: unlocked and busy", info.port)

        for rank in (1, 2, 3):
            best = _most_recent(ranked[rank])
            if best is not None:
                return best
        return None

    def is_port_locked(self, port: int) -> bool:
        info = self.allocations.get(port)
        return info is not None and info.locked

    def get_locked_ports_for_exclusion(self, current_directory: str) -> set[int]:
        """Return ports locked by any directory other than ``current_directory``."""
        current_directory = normalize_directory(current_directory)
        return {
            port
            for port, info in self.allocations.items()
            if info.locked and info.directory != current_directory
        }

    def get_frozen_ports(self, freeze_minutes: float) -> set[int]:
        """Return ports used within the last ``freeze_minutes``, whoever owns them."""
        if freeze_minutes <= 0:
            return set()
        cutoff = utcnow() - timedelta(minutes=freeze_minutes)
        return {
            port
            for port, info in self.allocations.items()
            if info.last_activity is not None and info.last_activity > cutoff
        }

    def get_allocated_ports_for_directory(self, directory: str) -> set[int]:
        directory = normalize_directory(directory)
        return {port for port, info in self.allocations.items() if info.directory == directory}

    # --- Assignment ---

    def set_allocation(self, directory: str, port: int) -> AllocationInfo:
        """Assign ``port`` to the default name of ``directory``."""
        return self.set_allocation_with_name(directory, port, DEFAULT_NAME)

    def set_allocation_with_name(self, directory: str, port: int, name: str) -> AllocationInfo:
        """Assign ``port`` to (directory, name), dropping its other unlocked ports."""
        return self.set_allocation_with_port_check_and_name(directory, port, "", name, None)

    def set_allocation_with_process(self, directory: str, port: int, process_name: str) -> AllocationInfo:
        """Assign ``port`` to the default name of ``directory`` and record the process."""
        return self.set_allocation_with_port_check_and_name(
            directory, port, process_name, DEFAULT_NAME, None
        )

    def set_allocation_with_port_check_and_name(
        self,
        directory: str,
        port: int,
        process_name: str,
        name: str,
        is_free: PortChecker | None,
    ) -> AllocationInfo:
        """Assign ``port`` to (directory, name) and retire superseded ports.

        Other ports recorded for the same pair are deleted only when they are
        unlocked and ``is_free`` reports them free; a busy old port is kept so
        a still-running service is not lost track of. With no checker every
        unlocked old port is deleted. Locked ports are always kept.

        Args:
            directory: Directory receiving the port.
            port: Port being assigned.
            process_name: Process to record; empty keeps the existing value.
            name: Allocation name within the directory.
            is_free: Predicate reporting whether a port can be bound.

        Returns:
            The allocation now stored under ``port``.
        """
        directory = normalize_directory(directory)
        name = normalize_name(name)
        now = utcnow()

        for old in self._matching(directory, name):
            if old.port == port or old.locked:
                continue
            if is_free is not None and not is_free(old.port):
                logger.debug("keeping superseded port %d: still in use", old.port)
                continue
            logger.debug("removing superseded port %d for %s (%s)", old.port, directory, name)
            del self.allocations[old.port]

        existing = self.allocations.get(port)
        if existing is not None and existing.directory == directory and existing.name == name:
            existing.last_used_at = now
            if process_name:
                existing.process_name = process_name
            return existing

        info = AllocationInfo(
            port=port,
            directory=directory,
            name=name,
            assigned_at=now,
            last_used_at=now,
            process_name=process_name,
        )
        self.allocations[port] = info
        return info

    def add_allocation_for_scan(
        self,
        directory: str,
        port: int,
        process_name: str,
        container_id: str,
    ) -> AllocationInfo:
        """Record a port discovered by a scan without touching the directory's other ports."""
        directory = normalize_directory(directory)
        existing = self.allocations.get(port)
        if existing is not None:
            existing.directory = directory
            if process_name:
                existing.process_name = process_name
            if container_id:
                existing.container_id = container_id
            return existing

        now = utcnow()
        info = AllocationInfo(
            port=port,
            directory=directory,
            assigned_at=now,
            last_used_at=now,
            process_name=process_name,
            container_id=container_id,
        )
        self.allocations[port] = info
        return info

    def set_unknown_port_allocation(self, port: int, process_name: str) -> AllocationInfo:
        """Record a busy port whose owning directory could not be determined."""
        return self.add_allocation_for_scan(unknown_directory(port), port, process_name, "")

    def set_external_allocation(
        self,
        port: int,
        pid: int,
        user: str,
        process_name: str,
    ) -> AllocationInfo:
        """Record a busy port claimed by a process outside any tracked directory."""
        now = utcnow()
        info = AllocationInfo(
            port=port,
            directory=unknown_directory(port),
            assigned_at=now,
            last_used_at=now,
            status=STATUS_EXTERNAL,
            external_pid=pid,
            external_user=user,
            external_process_name=process_name,
        )
        self.allocations[port] = info
        return info

    def refresh_external_allocations(self, is_free: PortChecker) -> int:
        """Drop external allocations whose port has been released."""
        stale = [port for port, info in self.allocations.items() if info.is_external and is_free(port)]
        for port in stale:
            del self.allocations[port]
        return len(stale)

    def update_last_used_by_port(self, port: int) -> bool:
        info = self.allocations.get(port)
        if info is None:
            return False
        info.last_used_at = utcnow()
        return True

    def update_last_used(self, directory: str) -> bool:
        info = self.find_by_directory(directory)
        if info is None:
            return False
        info.last_used_at = utcnow()
        return True

    def update_last_used_by_directory_and_name(self, directory: str, name: str) -> bool:
        info = self.find_by_directory_and_name(directory, name)
        if info is None:
            return False
        info.last_used_at = utcnow()
        return True

    # --- Removal ---

    def remove_by_port(self, port: int) -> AllocationInfo | None:
        return self.allocations.pop(port, None)

    def remove_by_directory_and_name(self, directory: str, name: str) -> AllocationInfo | None:
        """Remove the canonical allocation of (directory, name) and return it."""
        info = self.find_by_directory_and_name(directory, name)
        if info is None:
            return None
        return self.allocations.pop(info.port)

    def remove_by_directory(self, directory: str) -> list[AllocationInfo]:
        """Remove every allocation of a directory, whatever its name."""
        directory = normalize_directory(directory)
        ports = sorted(port for port, info in self.allocations.items() if info.directory == directory)
        return [self.allocations.pop(port) for port in ports]

    def remove_all(self) -> list[AllocationInfo]:
        removed = self.sorted_by_port()
        self.allocations.clear()
        return removed

    def remove_expired(self, ttl: timedelta) -> int:
        """Remove unlocked allocations idle for longer than ``ttl``.

        Locked allocations are kept regardless of age. A zero or negative
        ``ttl`` disables expiration.

        Returns:
            Number of allocations removed.
        """
        if ttl <= timedelta(0):
            return 0
        cutoff = utcnow() - ttl
        expired = [
            port
            for port, info in self.allocations.items()
            if not info.locked and (info.last_activity is None or info.last_activity < cutoff)
        ]
        for port in expired:
            logger.debug("expiring port %d (%s)", port, self.allocations[port].directory)
            del self.allocations[port]
        return len(expired)

    # --- Locking ---

    def set_locked(self, directory: str, locked: bool) -> bool:
        info = self.find_by_directory(directory)
        return self._apply_lock(info, locked)

    def set_locked_by_directory_and_name(self, directory: str, name: str, locked: bool) -> bool:
        info = self.find_by_directory_and_name(directory, name)
        return self._apply_lock(info, locked)

    def set_locked_by_port(self, port: int, locked: bool) -> bool:
        return self._apply_lock(self.allocations.get(port), locked)

    def set_locked_by_port_and_name(self, port: int, name: str, locked: bool) -> bool:
        info = self.allocations.get(port)
        if info is None or info.name != normalize_name(name):
            return False
        return self._apply_lock(info, locked)

    def unlock_other_locked_ports(self, directory: str, name: str, except_port: int) -> int:
        """Clear the lock on every other port of (directory, name).

        Returns:
            Number of allocations that were unlocked.
        """
        unlocked = 0
        for info in self._matching(directory, name):
            if info.port != except_port and info.locked:
                info.locked = False
                info.locked_at = None
                unlocked += 1
        return unlocked

    # --- Internals ---

    def _matching(self, directory: str, name: str) -> list[AllocationInfo]:
        directory = normalize_directory(directory)
        name = normalize_name(name)
        return [
            info
            for info in self.allocations.values()
            if info.directory == directory and info.name == name
        ]

    @staticmethod
    def _apply_lock(info: AllocationInfo | None, locked: bool) -> bool:
        if info is None:
            return False
        if locked and not info.locked:
            info.locked_at = utcnow()
        elif not locked:
            info.locked_at = None
        info.locked = locked
        return True
