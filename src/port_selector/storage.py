"""Persistence of the allocation store.

The allocations file is only ever rewritten through :func:`with_store` (or
the equivalent :func:`locked_store` context manager), which holds an
exclusive advisory lock for the whole load / mutate / save cycle. Saves go
through a temporary file and ``os.replace`` so readers never observe a
half-written file.
"""

import logging
import os
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, TypeVar

import yaml

from .allocations import AllocationInfo, Store
from .errors import CorruptedStoreError, StoreIOError
from .locking import Locker, default_locker

logger = logging.getLogger(__name__)

ALLOCATIONS_FILENAME = "allocations.yaml"
LOCK_SUFFIX = ".lock"

T = TypeVar("T")

# Attribute name -> accepted keys, preferred spelling first
_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "directory": ("directory",),
    "name": ("name",),
    "assigned_at": ("assignedAt", "assigned_at"),
    "last_used_at": ("lastUsedAt", "last_used_at"),
    "locked": ("locked",),
    "locked_at": ("lockedAt", "locked_at"),
    "process_name": ("processName", "process_name"),
    "container_id": ("containerId", "container_id"),
    "status": ("status",),
    "external_pid": ("externalPid", "external_pid"),
    "external_user": ("externalUser", "external_user"),
    "external_process_name": ("externalProcessName", "external_process_name"),
}
_TIME_FIELDS = {"assigned_at", "last_used_at", "locked_at"}
_STR_FIELDS = {"name", "process_name", "container_id", "status", "external_user", "external_process_name"}


def allocations_path(config_dir: Path) -> Path:
    return Path(config_dir) / ALLOCATIONS_FILENAME


def lock_path(config_dir: Path) -> Path:
    return Path(config_dir) / (ALLOCATIONS_FILENAME + LOCK_SUFFIX)


# --- Serialization ---


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as an RFC 3339 UTC timestamp."""
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_timestamp(value: Any, port: int) -> datetime | None:
    if value is None or value == "":
        return None
    # yaml.safe_load already turns unquoted timestamps into datetimes
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise CorruptedStoreError(
                f"allocations file is corrupted: invalid timestamp {value!r} for port {port}"
            ) from e
    else:
        raise CorruptedStoreError(
            f"allocations file is corrupted: invalid timestamp {value!r} for port {port}"
        )
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _pick(data: dict, keys: tuple[str, ...], default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


def _parse_port_key(key: Any) -> int:
    if isinstance(key, bool):
        raise CorruptedStoreError(f"allocations file is corrupted: invalid port key {key!r}")
    try:
        port = int(key)
    except (TypeError, ValueError) as e:
        raise CorruptedStoreError(f"allocations file is corrupted: invalid port key {key!r}") from e
    if not 1 <= port <= 65535:
        raise CorruptedStoreError(f"allocations file is corrupted: port {port} out of range")
    return port


def _parse_entry(port: int, entry: Any) -> AllocationInfo:
    if not isinstance(entry, dict):
        raise CorruptedStoreError(f"allocations file is corrupted: entry for port {port} is not a mapping")

    embedded = entry.get("port")
    if embedded is not None and embedded != port:
        raise CorruptedStoreError(
            f"allocations file is corrupted: entry under port {port} claims port {embedded}"
        )

    values: dict[str, Any] = {}
    for attr, keys in _FIELD_KEYS.items():
        value = _pick(entry, keys)
        if value is None:
            continue
        if attr in _TIME_FIELDS:
            values[attr] = _parse_timestamp(value, port)
        elif attr == "locked":
            if not isinstance(value, bool):
                raise CorruptedStoreError(f"allocations file is corrupted: invalid locked flag for port {port}")
            values[attr] = value
        elif attr == "external_pid":
            if not isinstance(value, int):
                raise CorruptedStoreError(f"allocations file is corrupted: invalid pid for port {port}")
            values[attr] = value
        elif attr in _STR_FIELDS:
            values[attr] = str(value)
        else:
            values[attr] = value

    directory = values.pop("directory", None)
    if not isinstance(directory, str) or not directory:
        raise CorruptedStoreError(f"allocations file is corrupted: missing directory for port {port}")

    return AllocationInfo(port=port, directory=directory, **values)


def store_from_dict(data: Any) -> Store:
    """Build a Store from parsed YAML, validating its structure.

    Raises:
        CorruptedStoreError: If the data does not describe a valid store.
    """
    if data is None:
        return Store()
    if not isinstance(data, dict):
        raise CorruptedStoreError("allocations file is corrupted: top level is not a mapping")

    last_issued = _pick(data, ("lastIssuedPort", "last_issued_port"), 0) or 0
    if not isinstance(last_issued, int) or isinstance(last_issued, bool):
        raise CorruptedStoreError(f"allocations file is corrupted: invalid lastIssuedPort {last_issued!r}")

    raw = data.get("allocations") or {}
    if not isinstance(raw, dict):
        raise CorruptedStoreError("allocations file is corrupted: allocations is not a mapping")

    store = Store(last_issued_port=last_issued)
    for key, entry in raw.items():
        port = _parse_port_key(key)
        if port in store.allocations:
            raise CorruptedStoreError(f"allocations file is corrupted: duplicate port {port}")
        store.allocations[port] = _parse_entry(port, entry)
    return store


def store_to_dict(store: Store) -> dict:
    """Convert a Store into plain data ready for ``yaml.safe_dump``."""
    allocations: dict[int, dict] = {}
    for info in store.sorted_by_port():
        entry: dict[str, Any] = {"directory": info.directory, "name": info.name}
        if info.assigned_at is not None:
            entry["assignedAt"] = format_timestamp(info.assigned_at)
        if info.last_used_at is not None:
            entry["lastUsedAt"] = format_timestamp(info.last_used_at)
        if info.locked:
            entry["locked"] = True
        if info.locked_at is not None:
            entry["lockedAt"] = format_timestamp(info.locked_at)
        if info.process_name:
            entry["processName"] = info.process_name
        if info.container_id:
            entry["containerId"] = info.container_id
        if info.status:
            entry["status"] = info.status
        if info.external_pid:
            entry["externalPid"] = info.external_pid
        if info.external_user:
            entry["externalUser"] = info.external_user
        if info.external_process_name:
            entry["externalProcessName"] = info.external_process_name
        allocations[info.port] = entry
    return {"lastIssuedPort": store.last_issued_port, "allocations": allocations}


# --- File access ---


def load_store(config_dir: Path) -> Store:
    """Read the allocations file without taking the lock.

    Only suitable for read-only views; anything that writes back must use
    :func:`with_store`.

    Returns:
        The stored allocations, or an empty Store if the file does not exist.

    Raises:
        CorruptedStoreError: If the file exists but cannot be parsed.
        StoreIOError: If the file exists but cannot be read.
    """
    path = allocations_path(config_dir)
    try:
        text = path.read_text()
    except FileNotFoundError:
        return Store()
    except OSError as e:
        raise StoreIOError(f"failed to read {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise CorruptedStoreError(f"allocations file {path} is corrupted: {e}") from e

    store = store_from_dict(data)
    logger.debug("loaded %d allocations from %s", store.count(), path)
    return store


def save_store(config_dir: Path, store: Store) -> None:
    """Write the allocations file atomically (temp file + rename)."""
    config_dir = Path(config_dir)
    path = allocations_path(config_dir)
    _ensure_dir(config_dir)

    content = yaml.safe_dump(store_to_dict(store), sort_keys=False, default_flow_style=False)

    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", dir=config_dir, prefix=ALLOCATIONS_FILENAME + ".", suffix=".tmp", delete=False
        ) as tmp:
            tmp_path = Path(tmp.name)
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
    except OSError as e:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise StoreIOError(f"failed to write temp file in {config_dir}: {e}") from e

    try:
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise StoreIOError(f"failed to replace {path}: {e}") from e

    logger.debug("saved %d allocations to %s", store.count(), path)


def _ensure_dir(config_dir: Path) -> None:
    try:
        config_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StoreIOError(f"failed to create config directory {config_dir}: {e}") from e


@contextmanager
def locked_store(config_dir: Path, locker: Locker | None = None) -> Iterator[Store]:
    """Hold the allocations lock and yield the loaded store.

    The store is saved when the ``with`` block completes normally. If the
    block raises, nothing is written. The lock is released in every case.

    Args:
        config_dir: Directory holding the allocations file.
        locker: Lock implementation; defaults to the platform's advisory lock.

    Raises:
        CorruptedStoreError: If the existing file cannot be parsed.
        StoreIOError: If the directory, lock or file cannot be used.
    """
    config_dir = Path(config_dir)
    _ensure_dir(config_dir)
    if locker is None:
        locker = default_locker(lock_path(config_dir))

    locker.acquire()
    try:
        store = load_store(config_dir)
        yield store
        save_store(config_dir, store)
    finally:
        locker.release()


def with_store(config_dir: Path, mutate: Callable[[Store], T], locker: Locker | None = None) -> T:
    """Run ``mutate`` against the store under the exclusive lock.

    The store is persisted only if ``mutate`` returns; if it raises, the
    exception propagates and the file is left untouched.

    Returns:
        Whatever ``mutate`` returned.
    """
    with locked_store(config_dir, locker) as store:
        return mutate(store)
