"""Tests for port_selector.allocations module."""

from datetime import UTC, datetime, timedelta

from port_selector.allocations import (
    DEFAULT_NAME,
    STATUS_EXTERNAL,
    AllocationInfo,
    Store,
    normalize_directory,
    normalize_name,
    unknown_directory,
    utcnow,
)


def _info(port, directory="/a", name="main", minutes_ago=0, locked=False, **kwargs):
    when = utcnow() - timedelta(minutes=minutes_ago)
    return AllocationInfo(
        port=port,
        directory=directory,
        name=name,
        assigned_at=when,
        last_used_at=when,
        locked=locked,
        **kwargs,
    )


def _store(*infos, last_issued_port=0):
    return Store(allocations={info.port: info for info in infos}, last_issued_port=last_issued_port)


class TestNormalization:
    """Tests for directory and name normalization."""

    def test_normalize_directory(self):
        """Test that trailing, duplicate and dot segments are resolved."""
        assert normalize_directory("/home/u/project/") == "/home/u/project"
        assert normalize_directory("/home/u//project/./src/..") == "/home/u/project"

    def test_leading_double_slash_collapsed(self):
        """Test that a leading // is reduced to a single slash."""
        assert normalize_directory("//home/u/project") == "/home/u/project"
        assert normalize_directory("///home/u/project/") == "/home/u/project"
        assert AllocationInfo(port=3000, directory="//home/u/project").directory == "/home/u/project"

    def test_double_slash_lookup(self):
        """Test that // and / spellings of a directory find the same allocation."""
        store = _store(_info(3000, directory="/home/u/project"))
        assert store.find_by_directory_and_name("//home/u/project", "main").port == 3000

    def test_normalize_name(self):
        """Test that an empty name becomes main."""
        assert normalize_name("") == DEFAULT_NAME
        assert normalize_name(None) == DEFAULT_NAME
        assert normalize_name("web") == "web"

    def test_info_normalizes_on_creation(self):
        """Test that AllocationInfo cleans its directory, name and timestamps."""
        naive = datetime(2026, 1, 2, 3, 4, 5)
        info = AllocationInfo(port=3000, directory="/a/b/", name="", assigned_at=naive)
        assert info.directory == "/a/b"
        assert info.name == "main"
        assert info.assigned_at == naive.replace(tzinfo=UTC)

    def test_unknown_directory(self):
        """Test the placeholder for a port with no known owner."""
        assert unknown_directory(3005) == "(unknown:3005)"


class TestFindByDirectoryAndName:
    """Tests for canonical lookups."""

    def test_not_found(self):
        """Test that a missing pair returns None."""
        assert _store().find_by_directory_and_name("/a", "main") is None

    def test_most_recent_wins(self):
        """Test that the most recently used port wins."""
        store = _store(_info(3000, minutes_ago=10), _info(3001, minutes_ago=1))
        assert store.find_by_directory_and_name("/a", "main").port == 3001

    def test_tie_broken_by_lowest_port(self):
        """Test that equal timestamps resolve to the lowest port."""
        when = utcnow()
        store = _store(
            AllocationInfo(port=3005, directory="/a", assigned_at=when, last_used_at=when),
            AllocationInfo(port=3002, directory="/a", assigned_at=when, last_used_at=when),
        )
        for _ in range(5):
            assert store.find_by_directory_and_name("/a", "main").port == 3002

    def test_falls_back_to_assigned_at(self):
        """Test that assigned_at is used when last_used_at is unset."""
        older = AllocationInfo(port=3000, directory="/a", assigned_at=utcnow() - timedelta(hours=1))
        newer = AllocationInfo(port=3001, directory="/a", assigned_at=utcnow())
        assert _store(older, newer).find_by_directory_and_name("/a", "main").port == 3001

    def test_name_and_directory_must_match(self):
        """Test that both directory and name must match."""
        store = _store(_info(3000, name="web"), _info(3001, directory="/b"))
        assert store.find_by_directory_and_name("/a", "main") is None
        assert store.find_by_directory_and_name("/a", "web").port == 3000

    def test_trailing_slash_matches(self):
        """Test that a trailing slash finds the same allocation."""
        store = _store(_info(3000))
        assert store.find_by_directory_and_name("/a/", "").port == 3000

    def test_find_by_directory_ignores_name(self):
        """Test that find_by_directory matches any name."""
        store = _store(_info(3000, name="web", minutes_ago=5), _info(3001, name="db"))
        assert store.find_by_directory("/a").port == 3001


class TestFindWithPriority:
    """Tests for find_by_directory_and_name_with_priority."""

    def test_locked_free_beats_newer_unlocked_free(self):
        """Test that a locked free port beats a newer unlocked one."""
        store = _store(_info(3000, locked=True, minutes_ago=60), _info(3001))
        found = store.find_by_directory_and_name_with_priority("/a", "main", lambda p: True)
        assert found.port == 3000

    def test_locked_busy_beats_unlocked_free(self):
        """Test that a locked busy port beats an unlocked free one."""
        store = _store(_info(3000, locked=True), _info(3001))
        found = store.find_by_directory_and_name_with_priority("/a", "main", lambda p: p != 3000)
        assert found.port == 3000

    def test_locked_free_beats_locked_busy(self):
        """Test that a locked free port beats a locked busy one."""
        store = _store(_info(3000, locked=True), _info(3001, locked=True, minutes_ago=30))
        found = store.find_by_directory_and_name_with_priority("/a", "main", lambda p: p != 3000)
        assert found.port == 3001

    def test_unlocked_busy_skipped(self):
        """Test that an unlocked busy port is never returned."""
        store = _store(_info(3000))
        assert store.find_by_directory_and_name_with_priority("/a", "main", lambda p: False) is None

    def test_none_checker_treats_all_as_busy(self):
        """Test that without a checker only locked ports qualify."""
        store = _store(_info(3000), _info(3001, locked=True, minutes_ago=5))
        found = store.find_by_directory_and_name_with_priority("/a", "main", None)
        assert found.port == 3001

    def test_tie_within_class_lowest_port(self):
        """Test that equal timestamps resolve to the lowest port."""
        when = utcnow()
        store = _store(
            AllocationInfo(port=3004, directory="/a", assigned_at=when, last_used_at=when),
            AllocationInfo(port=3003, directory="/a", assigned_at=when, last_used_at=when),
        )
        found = store.find_by_directory_and_name_with_priority("/a", "main", lambda p: True)
        assert found.port == 3003


class TestExclusionQueries:
    """Tests for locked, frozen and per-directory port sets."""

    def test_locked_ports_for_exclusion(self):
        """Test that only other directories' locked ports are excluded."""
        store = _store(
            _info(3000, directory="/a", locked=True),
            _info(3001, directory="/b", locked=True),
            _info(3002, directory="/b"),
        )
        assert store.get_locked_ports_for_exclusion("/a") == {3001}
        assert store.get_locked_ports_for_exclusion("/c") == {3000, 3001}

    def test_frozen_ports(self):
        """Test that recently used ports are frozen."""
        store = _store(
            _info(3000, minutes_ago=5),
            _info(3001, directory="/b", minutes_ago=120),
        )
        assert store.get_frozen_ports(60) == {3000}

    def test_frozen_disabled(self):
        """Test that a zero freeze period freezes nothing."""
        store = _store(_info(3000))
        assert store.get_frozen_ports(0) == set()

    def test_allocated_ports_for_directory(self):
        """Test collecting every port of a directory."""
        store = _store(_info(3000), _info(3001, name="web"), _info(3002, directory="/b"))
        assert store.get_allocated_ports_for_directory("/a") == {3000, 3001}

    def test_is_port_locked(self):
        """Test is_port_locked for locked, unlocked and missing ports."""
        store = _store(_info(3000, locked=True), _info(3001))
        assert store.is_port_locked(3000) is True
        assert store.is_port_locked(3001) is False
        assert store.is_port_locked(3002) is False


class TestSetAllocation:
    """Tests for set_allocation_with_port_check_and_name and its wrappers."""

    def test_creates_entry(self):
        """Test that a new allocation gets both timestamps."""
        store = Store()
        info = store.set_allocation_with_name("/a", 3000, "web")
        assert store.find_by_port(3000) is info
        assert info.name == "web"
        assert info.assigned_at is not None
        assert info.last_used_at == info.assigned_at

    def test_removes_superseded_free_unlocked(self):
        """Test that a free, unlocked old port of the pair is dropped."""
        store = _store(_info(3000, minutes_ago=5))
        store.set_allocation_with_port_check_and_name("/a", 3001, "", "main", lambda p: True)
        assert store.find_by_port(3000) is None

    def test_keeps_superseded_busy(self):
        """Test that a busy old port of the pair is kept."""
        store = _store(_info(3000, minutes_ago=5))
        store.set_allocation_with_port_check_and_name("/a", 3001, "", "main", lambda p: p != 3000)
        assert store.find_by_port(3000) is not None

    def test_keeps_superseded_locked(self):
        """Test that a locked old port of the pair is kept."""
        store = _store(_info(3000, locked=True))
        store.set_allocation("/a", 3001)
        assert store.find_by_port(3000).locked is True

    def test_other_names_untouched(self):
        """Test that the directory's other names keep their ports."""
        store = _store(_info(3000, name="web"))
        store.set_allocation("/a", 3001)
        assert store.find_by_port(3000) is not None

    def test_same_owner_keeps_lock_and_assigned_at(self):
        """Test that reassigning to the same owner keeps the lock and assigned_at."""
        original = _info(3000, locked=True, minutes_ago=30)
        assigned = original.assigned_at
        store = _store(original)
        info = store.set_allocation_with_process("/a", 3000, "node")
        assert info.locked is True
        assert info.assigned_at == assigned
        assert info.last_used_at > assigned
        assert info.process_name == "node"

    def test_replaces_other_owner(self):
        """Test that a port held by another pair is taken over."""
        store = _store(_info(3000, directory="/b", locked=True))
        info = store.set_allocation("/a", 3000)
        assert info.directory == "/a"
        assert info.locked is False


class TestScanAndExternal:
    """Tests for scan-discovered and external allocations."""

    def test_add_allocation_for_scan_keeps_other_ports(self):
        """Test that a scanned port does not replace the directory's other ports."""
        store = _store(_info(3000))
        store.add_allocation_for_scan("/a", 3001, "node", "")
        assert set(store.allocations) == {3000, 3001}

    def test_add_allocation_for_scan_updates_existing(self):
        """Test that scanning an existing port updates its owner details."""
        store = _store(_info(3000, directory="/old"))
        info = store.add_allocation_for_scan("/new", 3000, "", "abc123")
        assert info.directory == "/new"
        assert info.container_id == "abc123"

    def test_unknown_port_allocation(self):
        """Test that an ownerless port is stored under the placeholder directory."""
        store = Store()
        info = store.set_unknown_port_allocation(3002, "java")
        assert info.directory == "(unknown:3002)"
        assert info.process_name == "java"

    def test_external_allocation(self):
        """Test that external allocations record their process."""
        store = Store()
        info = store.set_external_allocation(3003, 4242, "bob", "nginx")
        assert info.is_external
        assert info.status == STATUS_EXTERNAL
        assert info.directory == "(unknown:3003)"
        assert (info.external_pid, info.external_user, info.external_process_name) == (4242, "bob", "nginx")

    def test_refresh_external(self):
        """Test that only released external ports are dropped."""
        store = _store(
            _info(3000, directory="(unknown:3000)", status=STATUS_EXTERNAL),
            _info(3001, directory="(unknown:3001)", status=STATUS_EXTERNAL),
            _info(3002),
        )
        removed = store.refresh_external_allocations(lambda p: p != 3001)
        assert removed == 1
        assert set(store.allocations) == {3001, 3002}


class TestUpdateLastUsed:
    """Tests for timestamp refresh operations."""

    def test_by_port(self):
        """Test touching an allocation by port."""
        store = _store(_info(3000, minutes_ago=30))
        before = store.find_by_port(3000).last_used_at
        assert store.update_last_used_by_port(3000) is True
        assert store.find_by_port(3000).last_used_at > before
        assert store.update_last_used_by_port(3999) is False

    def test_by_directory(self):
        """Test touching the most recent allocation of a directory."""
        store = _store(_info(3000, minutes_ago=30))
        assert store.update_last_used("/a") is True
        assert store.update_last_used("/b") is False

    def test_by_directory_and_name(self):
        """Test touching a (directory, name) allocation."""
        store = _store(_info(3000, name="web", minutes_ago=30))
        assert store.update_last_used_by_directory_and_name("/a", "web") is True
        assert store.update_last_used_by_directory_and_name("/a", "main") is False


class TestRemoval:
    """Tests for removal operations."""

    def test_remove_by_port(self):
        """Test removing a single port."""
        store = _store(_info(3000))
        assert store.remove_by_port(3000).port == 3000
        assert store.remove_by_port(3000) is None

    def test_remove_by_directory_and_name(self):
        """Test removing one name of a directory."""
        store = _store(_info(3000), _info(3001, name="web"))
        removed = store.remove_by_directory_and_name("/a", "web")
        assert removed.port == 3001
        assert set(store.allocations) == {3000}
        assert store.remove_by_directory_and_name("/a", "web") is None

    def test_remove_by_directory(self):
        """Test removing every allocation of a directory."""
        store = _store(_info(3000), _info(3001, name="web"), _info(3002, directory="/b"))
        removed = store.remove_by_directory("/a")
        assert [info.port for info in removed] == [3000, 3001]
        assert set(store.allocations) == {3002}

    def test_remove_all(self):
        """Test clearing the store."""
        store = _store(_info(3000), _info(3001, directory="/b"), last_issued_port=3001)
        assert len(store.remove_all()) == 2
        assert store.count() == 0
        assert store.last_issued_port == 3001


class TestRemoveExpired:
    """Tests for TTL reclamation."""

    def test_removes_old_unlocked(self):
        """Test that stale unlocked allocations expire."""
        store = _store(_info(3000, minutes_ago=120), _info(3001))
        assert store.remove_expired(timedelta(hours=1)) == 1
        assert set(store.allocations) == {3001}

    def test_locked_survive(self):
        """Test that locked allocations never expire."""
        store = _store(_info(3000, locked=True, minutes_ago=60 * 24 * 365))
        assert store.remove_expired(timedelta(hours=1)) == 0
        assert 3000 in store.allocations

    def test_zero_ttl_disabled(self):
        """Test that a zero TTL removes nothing."""
        store = _store(_info(3000, minutes_ago=60 * 24 * 365))
        assert store.remove_expired(timedelta(0)) == 0

    def test_missing_timestamps_expire(self):
        """Test that allocations without timestamps count as expired."""
        store = _store(AllocationInfo(port=3000, directory="/a"))
        assert store.remove_expired(timedelta(days=30)) == 1


class TestLocking:
    """Tests for lock state mutations."""

    def test_set_locked_by_port_sets_locked_at(self):
        """Test that locking records locked_at and unlocking clears it."""
        store = _store(_info(3000))
        assert store.set_locked_by_port(3000, True) is True
        assert store.find_by_port(3000).locked_at is not None
        assert store.set_locked_by_port(3000, False) is True
        assert store.find_by_port(3000).locked_at is None

    def test_relock_keeps_locked_at(self):
        """Test that locking twice keeps the first locked_at."""
        store = _store(_info(3000))
        store.set_locked_by_port(3000, True)
        first = store.find_by_port(3000).locked_at
        store.set_locked_by_port(3000, True)
        assert store.find_by_port(3000).locked_at == first

    def test_missing_returns_false(self):
        """Test that locking a missing allocation returns False."""
        store = Store()
        assert store.set_locked_by_port(3000, True) is False
        assert store.set_locked("/a", True) is False
        assert store.set_locked_by_directory_and_name("/a", "main", True) is False

    def test_set_locked_by_directory(self):
        """Test locking by directory."""
        store = _store(_info(3000, name="web"))
        assert store.set_locked("/a", True) is True
        assert store.is_port_locked(3000)

    def test_set_locked_by_directory_and_name(self):
        """Test locking by directory and name."""
        store = _store(_info(3000), _info(3001, name="web"))
        store.set_locked_by_directory_and_name("/a", "web", True)
        assert store.is_port_locked(3001)
        assert not store.is_port_locked(3000)

    def test_set_locked_by_port_and_name(self):
        """Test that the name must match when locking by port."""
        store = _store(_info(3000, name="web"))
        assert store.set_locked_by_port_and_name(3000, "main", True) is False
        assert store.set_locked_by_port_and_name(3000, "web", True) is True

    def test_unlock_other_locked_ports(self):
        """Test that other locked ports of the pair are released."""
        store = _store(
            _info(3000, locked=True),
            _info(3001, locked=True),
            _info(3002, name="web", locked=True),
        )
        assert store.unlock_other_locked_ports("/a", "main", 3001) == 1
        assert not store.is_port_locked(3000)
        assert store.is_port_locked(3001)
        assert store.is_port_locked(3002)
