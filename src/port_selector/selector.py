"""Port selection and directory-level allocation management.

All :class:`Allocator` methods mutate a :class:`~port_selector.allocations.Store`
in memory; callers run them inside :func:`~port_selector.storage.with_store`
so the result is persisted only when the method returns normally.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from . import eventlog
from .allocations import (
    DEFAULT_NAME,
    AllocationInfo,
    PortChecker,
    Store,
    normalize_directory,
    normalize_name,
)
from .config import Config
from .errors import (
    AllocationNotFoundError,
    AllPortsBusyError,
    ForceRequiredError,
    PortInUseError,
    PortOutOfRangeError,
)
from .eventlog import EventLog
from .ports import PortProber, ProcessInfo
from .table import shorten_home_path

logger = logging.getLogger(__name__)


def find_free_port(
    start: int,
    end: int,
    last_issued: int,
    excluded: Iterable[int],
    is_free: PortChecker,
) -> int:
    """Find the next free port in ``[start, end]``, round-robin.

    The scan begins just after ``last_issued`` when it lies in
    ``[start, end)`` and otherwise at ``start``, wrapping around once.

    Args:
        start: First port of the range.
        end: Last port of the range (inclusive).
        last_issued: Port handed out by the previous fresh allocation.
        excluded: Ports that must be skipped without probing.
        is_free: Predicate reporting whether a port can be bound.

    Returns:
        The first free, non-excluded port.

    Raises:
        AllPortsBusyError: If every port is excluded or busy.
    """
    excluded = set(excluded)
    first = last_issued + 1 if start <= last_issued < end else start
    logger.debug("searching for free port in range %d-%d, starting at %d", start, end, first)

    for port in list(range(first, end + 1)) + list(range(start, first)):
        if port in excluded:
            continue
        if is_free(port):
            logger.debug("found free port: %d", port)
            return port
        logger.debug("port %d is busy", port)
    raise AllPortsBusyError(start, end)


@dataclass
class LockResult:
    """Outcome of a lock or unlock request."""

    port: int
    locked: bool
    name: str = DEFAULT_NAME
    reassigned_from: str | None = None
    external: bool = False
    process_name: str = ""


@dataclass
class ScanRecord:
    """A busy port seen during a scan."""

    port: int
    directory: str
    process: ProcessInfo | None = None
    already_allocated: bool = False


class Allocator:
    """Applies the allocation policy to a store.

    Args:
        config: Port range, freeze period and TTL.
        prober: Source of port availability and ownership.
        events: Event log queueing one event per store change; the caller
            flushes it once the store has been saved.
    """

    def __init__(self, config: Config, prober: PortProber, events: EventLog | None = None):
        self.config = config
        self.prober = prober
        self.events = events or EventLog()

    # --- Selection ---

    def select(self, store: Store, directory: str, name: str = DEFAULT_NAME) -> int:
        """Return the port for (directory, name), allocating one if needed.

        Expired allocations are reclaimed first. An existing allocation is
        reused in priority order (locked+free, locked+busy, unlocked+free);
        otherwise a fresh port is issued round-robin, skipping busy, frozen,
        foreign-locked ports and ports held by the directory's other names.

        Raises:
            AllPortsBusyError: If no port in the range can be issued.
        """
        directory = normalize_directory(directory)
        name = normalize_name(name)
        logger.debug("selecting port for %s (name=%s)", directory, name)

        expired = self._expire(store)

        existing = store.find_by_directory_and_name_with_priority(directory, name, self.prober.is_free)
        if existing is not None:
            logger.debug("reusing port %d (locked=%s)", existing.port, existing.locked)
            store.update_last_used_by_port(existing.port)
            self._log_expired(expired)
            self.events.log(eventlog.ALLOC_UPDATE, port=existing.port, dir=directory, name=name)
            return existing.port

        excluded = self._excluded_ports(store, directory, name)
        port = find_free_port(
            self.config.port_start,
            self.config.port_end,
            store.last_issued_port,
            excluded,
            self.prober.is_free,
        )
        store.set_allocation_with_port_check_and_name(directory, port, "", name, self.prober.is_free)
        store.last_issued_port = port

        self._log_expired(expired)
        self.events.log(eventlog.ALLOC_ADD, port=port, dir=directory, name=name)
        return port

    def _expire(self, store: Store) -> list[AllocationInfo]:
        ttl = self.config.ttl
        if not ttl:
            return []
        before = dict(store.allocations)
        removed = store.remove_expired(ttl)
        if not removed:
            return []
        logger.debug("removed %d expired allocations", removed)
        return [info for port, info in sorted(before.items()) if port not in store.allocations]

    def _log_expired(self, expired: list[AllocationInfo]) -> None:
        for info in expired:
            self.events.log(eventlog.ALLOC_EXPIRE, port=info.port, dir=info.directory, name=info.name)

    def _excluded_ports(self, store: Store, directory: str, name: str) -> set[int]:
        frozen = store.get_frozen_ports(self.config.freeze_period_minutes)
        locked = store.get_locked_ports_for_exclusion(directory)
        other_names = {
            port
            for port, info in store.allocations.items()
            if info.directory == directory and info.name != name
        }
        logger.debug(
            "excluding %d frozen, %d locked, %d other-name ports",
            len(frozen),
            len(locked),
            len(other_names),
        )
        return frozen | locked | other_names

    # --- Locking ---

    def set_locked(
        self,
        store: Store,
        directory: str,
        name: str = DEFAULT_NAME,
        locked: bool = True,
        port: int | None = None,
        force: bool = False,
    ) -> LockResult:
        """Lock or unlock an allocation.

        Without ``port`` the current (directory, name) allocation is toggled.
        With ``port`` that specific port is locked for the directory, being
        allocated first if needed.

        Raises:
            AllocationNotFoundError: If there is nothing to lock or unlock.
            PortOutOfRangeError: If an unallocated port lies outside the range.
            ForceRequiredError: If the port belongs to another directory and
                ``force`` was not given.
            PortInUseError: If the port belongs to another directory and is busy.
        """
        directory = normalize_directory(directory)
        name = normalize_name(name)
        if port is None:
            result = self._lock_current(store, directory, name, locked)
        else:
            result = self._lock_port(store, directory, name, locked, port, force)

        if result.external:
            self.events.log(
                eventlog.ALLOC_EXTERNAL,
                port=result.port,
                process=result.process_name,
            )
        else:
            self.events.log(
                eventlog.ALLOC_LOCK,
                port=result.port,
                dir=directory,
                name=result.name,
                locked=str(result.locked).lower(),
            )
        return result

    def _lock_current(self, store: Store, directory: str, name: str, locked: bool) -> LockResult:
        info = store.find_by_directory_and_name(directory, name)
        if info is None:
            raise AllocationNotFoundError(
                f"no allocation found for {shorten_home_path(directory)} with name '{name}' "
                "(run port-selector first)"
            )
        store.set_locked_by_port(info.port, locked)
        if locked:
            store.unlock_other_locked_ports(directory, name, info.port)
        return LockResult(port=info.port, locked=locked, name=name)

    def _lock_port(
        self,
        store: Store,
        directory: str,
        name: str,
        locked: bool,
        port: int,
        force: bool,
    ) -> LockResult:
        info = store.find_by_port(port)
        if info is not None:
            if info.directory == directory:
                store.set_locked_by_port(port, locked)
                if locked:
                    store.unlock_other_locked_ports(directory, info.name, port)
                return LockResult(port=port, locked=locked, name=info.name)
            return self._lock_foreign_port(store, directory, name, locked, info, force)

        if not locked:
            raise AllocationNotFoundError(f"no allocation found for port {port}")

        start, end = self.config.port_start, self.config.port_end
        if not start <= port <= end:
            raise PortOutOfRangeError(f"port {port} is outside configured range {start}-{end}")

        if not self.prober.is_free(port):
            owner = self.prober.owner_of(port)
            if owner is None or not owner.cwd or normalize_directory(owner.cwd) != directory:
                owner = owner or ProcessInfo()
                logger.debug("port %d is busy (%s), registering as external", port, owner)
                store.set_external_allocation(port, owner.pid, owner.user, owner.name)
                return LockResult(port=port, locked=False, name=name, external=True, process_name=owner.name)
            logger.debug("port %d is used by a process in %s", port, directory)

        self._assign_locked(store, directory, name, port)
        return LockResult(port=port, locked=True, name=name)

    def _lock_foreign_port(
        self,
        store: Store,
        directory: str,
        name: str,
        locked: bool,
        info: AllocationInfo,
        force: bool,
    ) -> LockResult:
        port = info.port
        owner_dir = shorten_home_path(info.directory)

        if not locked:
            if not force:
                raise ForceRequiredError(
                    f"port {port} is allocated to {owner_dir}\n"
                    f" use --unlock {port} --force to unlock it anyway",
                    port,
                    info.directory,
                )
            store.set_locked_by_port(port, False)
            return LockResult(port=port, locked=False, name=info.name)

        if not self.prober.is_free(port):
            raise PortInUseError(
                f"port {port} is in use by {owner_dir}; stop the service first",
                port,
                info.directory,
            )

        if not force:
            state = "locked" if info.locked else "allocated"
            raise ForceRequiredError(
                f"port {port} is {state} by {owner_dir}\n"
                f" use --lock {port} --force to reassign it to current directory",
                port,
                info.directory,
            )

        logger.debug("reassigning port %d from %s", port, owner_dir)
        store.remove_by_port(port)
        self._assign_locked(store, directory, name, port)
        return LockResult(port=port, locked=True, name=name, reassigned_from=info.directory)

    def _assign_locked(self, store: Store, directory: str, name: str, port: int) -> None:
        store.set_allocation_with_port_check_and_name(directory, port, "", name, self.prober.is_free)
        store.set_locked_by_port(port, True)
        # Only after the new lock is in place, so old locked ports survive the assignment
        store.unlock_other_locked_ports(directory, name, port)

    # --- Forgetting ---

    def forget(self, store: Store, directory: str, name: str | None = None) -> list[AllocationInfo]:
        """Remove the directory's allocations, or only those of ``name``.

        Returns:
            The removed allocations; empty if there were none.
        """
        if name is None:
            removed = store.remove_by_directory(directory)
        else:
            info = store.remove_by_directory_and_name(directory, name)
            removed = [info] if info is not None else []
        for info in removed:
            self.events.log(eventlog.ALLOC_DELETE, port=info.port, dir=info.directory, name=info.name)
        return removed

    def forget_all(self, store: Store) -> list[AllocationInfo]:
        removed = store.remove_all()
        if removed:
            self.events.log(eventlog.ALLOC_DELETE_ALL, count=len(removed))
        return removed

    # --- Discovery ---

    def scan(self, store: Store) -> list[ScanRecord]:
        """Record every busy, unrecorded port in the range with its owner.

        Ports whose owning directory cannot be determined are recorded under
        the ``(unknown:<port>)`` marker.

        Returns:
            One record per busy port, including ones that were already
            allocated (flagged ``already_allocated``).
        """
        records = []
        for port in range(self.config.port_start, self.config.port_end + 1):
            if self.prober.is_free(port):
                continue

            existing = store.find_by_port(port)
            if existing is not None:
                records.append(ScanRecord(port=port, directory=existing.directory, already_allocated=True))
                continue

            owner = self.prober.owner_of(port)
            process_name = ""
            if owner is not None:
                process_name = "docker-proxy" if owner.container_id else owner.name

            if owner is not None and owner.cwd:
                info = store.add_allocation_for_scan(owner.cwd, port, process_name, owner.container_id)
            else:
                info = store.set_unknown_port_allocation(port, process_name)
            records.append(ScanRecord(port=port, directory=info.directory, process=owner))
            self.events.log(eventlog.ALLOC_ADD, port=port, dir=info.directory, name=info.name, source="scan")
        return records

    def refresh(self, store: Store) -> int:
        """Drop external allocations whose port has been released.

        Returns:
            Number of allocations removed.
        """
        removed = store.refresh_external_allocations(self.prober.is_free)
        if removed:
            self.events.log(eventlog.ALLOC_REFRESH, removed=removed)
        return removed
