import pytest

from backupchain.errors import DependencyError, NodeNotFoundError, ValidationError
from backupchain.models import FULL, INCREMENTAL, STATUS_COMPLETE, STATUS_FAILED, STATUS_RUNNING


def make_full(lineage, clock=None, complete=True):
    node_id = lineage.create_node(FULL)
    if complete:
        lineage.mark_complete(node_id)
    if clock is not None:
        clock.advance(hours=1)
    return node_id


class TestCreateNode:

    def test_full_node_starts_running(self, lineage, clock):
        node_id = lineage.create_node(FULL, source_root="/data")
        node = lineage.get_node(node_id)
        assert node.kind == FULL
        assert node.status == STATUS_RUNNING
        assert node.completed_at is None
        assert node.parent_id is None
        assert node.created_at == clock.now()
        assert node.source_root == "/data"

    def test_full_node_cannot_have_parent(self, lineage):
        full_id = make_full(lineage)
        with pytest.raises(ValidationError):
            lineage.create_node(FULL, parent_id=full_id)

    def test_incremental_requires_parent(self, lineage):
        with pytest.raises(ValidationError):
            lineage.create_node(INCREMENTAL)

    def test_incremental_parent_must_exist(self, lineage):
        with pytest.raises(ValidationError):
            lineage.create_node(INCREMENTAL, parent_id=42)

    def test_incremental_parent_must_be_complete(self, lineage):
        full_id = make_full(lineage, complete=False)
        with pytest.raises(ValidationError):
            lineage.create_node(INCREMENTAL, parent_id=full_id)

    def test_incremental_parent_must_be_full(self, lineage, clock):
        full_id = make_full(lineage, clock)
        inc_id = lineage.create_node(INCREMENTAL, parent_id=full_id)
        lineage.mark_complete(inc_id)
        with pytest.raises(ValidationError):
            lineage.create_node(INCREMENTAL, parent_id=inc_id)

    def test_incremental_reference_defaults_to_parent(self, lineage, clock):
        full_id = make_full(lineage, clock)
        inc_id = lineage.create_node(INCREMENTAL, parent_id=full_id)
        assert lineage.get_node(inc_id).reference_id == full_id

    def test_reference_must_belong_to_chain(self, lineage, clock):
        first = make_full(lineage, clock)
        second = make_full(lineage, clock)
        other = lineage.create_node(INCREMENTAL, parent_id=first)
        with pytest.raises(ValidationError):
            lineage.create_node(INCREMENTAL, parent_id=second, reference_id=other)

    def test_unknown_kind_rejected(self, lineage):
        with pytest.raises(ValidationError):
            lineage.create_node("differential")

    def test_created_at_strictly_increases_when_clock_stalls(self, lineage, clock):
        first = lineage.create_node(FULL)
        second = lineage.create_node(FULL)
        assert lineage.get_node(second).created_at > lineage.get_node(first).created_at

    def test_created_at_strictly_increases_when_clock_goes_back(self, lineage, clock):
        first = lineage.create_node(FULL)
        clock.advance(hours=-5)
        second = lineage.create_node(FULL)
        assert lineage.get_node(second).created_at > lineage.get_node(first).created_at


class TestQueries:

    def test_latest_full_ignores_incomplete(self, lineage, clock):
        assert lineage.latest_full() is None
        done = make_full(lineage, clock)
        make_full(lineage, clock, complete=False)
        assert lineage.latest_full() == done

    def test_latest_full_ignores_failed(self, lineage, clock):
        done = make_full(lineage, clock)
        failed = lineage.create_node(FULL)
        lineage.mark_failed(failed)
        assert lineage.latest_full() == done
        assert lineage.get_node(failed).status == STATUS_FAILED
        assert lineage.get_node(failed).completed_at is None

    def test_incrementals_of_ascending(self, lineage, clock):
        full_id = make_full(lineage, clock)
        ids = []
        for _ in range(3):
            ids.append(lineage.create_node(INCREMENTAL, parent_id=full_id))
            clock.advance(minutes=10)
        assert lineage.incrementals_of(full_id) == ids

    def test_latest_usable_skips_failed_siblings(self, lineage, clock):
        full_id = make_full(lineage, clock)
        assert lineage.latest_usable(full_id) == full_id

        good = lineage.create_node(INCREMENTAL, parent_id=full_id)
        lineage.mark_complete(good)
        clock.advance(minutes=10)
        bad = lineage.create_node(INCREMENTAL, parent_id=full_id)
        lineage.mark_failed(bad)

        assert lineage.latest_usable(full_id) == good

    def test_failed_node_cannot_complete(self, lineage):
        node_id = lineage.create_node(FULL)
        lineage.mark_failed(node_id)
        with pytest.raises(ValidationError):
            lineage.mark_complete(node_id)

    def test_mark_complete_sets_completion(self, lineage, clock):
        node_id = lineage.create_node(FULL)
        clock.advance(minutes=3)
        lineage.mark_complete(node_id)
        node = lineage.get_node(node_id)
        assert node.status == STATUS_COMPLETE
        assert node.completed_at == clock.now()

    def test_completion_time_is_never_moved(self, lineage, clock):
        node_id = make_full(lineage)
        completed_at = lineage.get_node(node_id).completed_at
        clock.advance(hours=2)
        with pytest.raises(ValidationError):
            lineage.mark_complete(node_id)
        assert lineage.get_node(node_id).completed_at == completed_at

    def test_empty_manifest_is_recorded(self, lineage):
        node_id = make_full(lineage)
        assert not lineage.get_node(node_id).manifest_recorded
        lineage.add_manifest(node_id, [])
        node = lineage.get_node(node_id)
        assert node.manifest_recorded
        assert lineage.manifest(node_id) == []

    def test_unknown_node(self, lineage):
        with pytest.raises(NodeNotFoundError):
            lineage.get_node(99)
        assert lineage.find_node(99) is None

    def test_state_survives_reopen(self, db, clock, temp_dir):
        from backupchain.database import BackupDatabase
        from backupchain.lineage import LineageStore

        store = LineageStore(db, clock)
        full_id = make_full(store, clock)
        inc_id = store.create_node(INCREMENTAL, parent_id=full_id)
        store.add_manifest(inc_id, ["a.txt", "b/c.txt"])
        db.close()

        with BackupDatabase(str(temp_dir / "test.db")) as reopened:
            again = LineageStore(reopened, clock)
            assert again.latest_full() == full_id
            assert again.incrementals_of(full_id) == [inc_id]
            assert again.manifest(inc_id) == ["a.txt", "b/c.txt"]


class TestDeleteNode:

    def test_full_with_children_is_blocked(self, lineage, clock):
        full_id = make_full(lineage, clock)
        lineage.create_node(INCREMENTAL, parent_id=full_id)
        with pytest.raises(DependencyError):
            lineage.delete_node(full_id)
        assert lineage.find_node(full_id) is not None

    def test_children_then_parent(self, lineage, clock, dedup):
        full_id = make_full(lineage, clock)
        inc_id = lineage.create_node(INCREMENTAL, parent_id=full_id)
        content_hash = dedup.put(b"payload")
        dedup.link(content_hash, inc_id, "a.txt")
        lineage.add_manifest(inc_id, ["a.txt"])

        assert lineage.delete_node(inc_id) == [content_hash]
        assert lineage.file_entries(inc_id) == []
        assert lineage.manifest(inc_id) == []
        assert lineage.delete_node(full_id) == []
        assert lineage.list_nodes() == []

    def test_delete_unknown(self, lineage):
        with pytest.raises(NodeNotFoundError):
            lineage.delete_node(7)
