import pytest

from backupchain.errors import BrokenChainError, IntegrityError, ValidationError
from backupchain.models import FULL, INCREMENTAL
from backupchain.planner import RestorePlanner
from tests.conftest import read_tree


def capture(lineage, dedup, clock, kind, files, parent_id=None, reference_id=None, manifest=None):
    """Create a completed node holding the given {path: bytes} entries."""
    node_id = lineage.create_node(kind, parent_id=parent_id, reference_id=reference_id)
    for path, content in files.items():
        dedup.link(dedup.put(content), node_id, path)
    if manifest is not None:
        lineage.add_manifest(node_id, manifest)
    lineage.mark_complete(node_id)
    clock.advance(hours=1)
    return node_id


@pytest.fixture
def planner(lineage, dedup):
    return RestorePlanner(lineage, dedup)


class TestPlan:

    def test_full_is_its_own_chain(self, planner, lineage, dedup, clock):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"hello"})
        assert [node.id for node in planner.plan(f1)] == [f1]

    def test_siblings_before_target(self, planner, lineage, dedup, clock):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a"})
        i1 = capture(lineage, dedup, clock, INCREMENTAL, {}, parent_id=f1)
        i2 = capture(lineage, dedup, clock, INCREMENTAL, {}, parent_id=f1)

        assert [node.id for node in planner.plan(i2)] == [f1, i1, i2]
        assert [node.id for node in planner.plan(i1)] == [f1, i1]

    def test_chain_stays_within_parent(self, planner, lineage, dedup, clock):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a"})
        capture(lineage, dedup, clock, INCREMENTAL, {}, parent_id=f1)
        f2 = capture(lineage, dedup, clock, FULL, {"a.txt": b"b"})
        i2 = capture(lineage, dedup, clock, INCREMENTAL, {}, parent_id=f2)
        assert [node.id for node in planner.plan(i2)] == [f2, i2]

    def test_failed_siblings_are_skipped(self, planner, lineage, dedup, clock):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a"})
        broken = lineage.create_node(INCREMENTAL, parent_id=f1)
        lineage.mark_failed(broken)
        clock.advance(hours=1)
        i2 = capture(lineage, dedup, clock, INCREMENTAL, {}, parent_id=f1)
        assert [node.id for node in planner.plan(i2)] == [f1, i2]

    def test_incomplete_target_rejected(self, planner, lineage):
        node_id = lineage.create_node(FULL)
        with pytest.raises(ValidationError):
            planner.plan(node_id)
        assert [node.id for node in planner.plan(node_id, allow_incomplete=True)] == [node_id]

    def test_missing_reference_breaks_chain(self, planner, lineage, dedup, clock):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a"})
        i1 = capture(lineage, dedup, clock, INCREMENTAL, {"b.txt": b"b"}, parent_id=f1)
        i2 = capture(lineage, dedup, clock, INCREMENTAL, {"c.txt": b"c"}, parent_id=f1, reference_id=i1)

        for content_hash in lineage.delete_node(i1):
            dedup.release(content_hash)

        with pytest.raises(BrokenChainError):
            planner.plan(i2)

    def test_missing_parent_breaks_chain(self, planner, lineage, dedup, clock, db):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a"})
        i1 = capture(lineage, dedup, clock, INCREMENTAL, {"b.txt": b"b"}, parent_id=f1)
        # simulate a parent lost by an older, unsafe tool
        db.conn.execute("PRAGMA foreign_keys = OFF")
        db.conn.execute("DELETE FROM nodes WHERE id = ?", (f1,))
        db.conn.commit()

        with pytest.raises(BrokenChainError):
            planner.plan(i1)


class TestRestore:

    def test_incremental_overlays_full(self, planner, lineage, dedup, clock, temp_dir):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"hello"})
        i1 = capture(lineage, dedup, clock, INCREMENTAL, {"a.txt": b"world", "b.txt": b"new"}, parent_id=f1)

        summary = planner.restore(i1, temp_dir / "out")

        assert read_tree(temp_dir / "out") == {"a.txt": b"world", "b.txt": b"new"}
        assert summary["chain"] == [f1, i1]
        assert summary["files_restored"] == 2

    def test_later_sibling_wins(self, planner, lineage, dedup, clock, temp_dir):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"v0", "keep.txt": b"k"})
        capture(lineage, dedup, clock, INCREMENTAL, {"a.txt": b"v1", "x.txt": b"x1"}, parent_id=f1)
        i2 = capture(lineage, dedup, clock, INCREMENTAL, {"a.txt": b"v2"}, parent_id=f1)

        planner.restore(i2, temp_dir / "out")
        assert read_tree(temp_dir / "out") == {"a.txt": b"v2", "keep.txt": b"k", "x.txt": b"x1"}

    def test_empty_incremental_is_noop(self, planner, lineage, dedup, clock, temp_dir):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a", "sub/b.txt": b"b"})
        i1 = capture(lineage, dedup, clock, INCREMENTAL, {}, parent_id=f1)
        planner.restore(i1, temp_dir / "out")
        assert read_tree(temp_dir / "out") == {"a.txt": b"a", "sub/b.txt": b"b"}

    def test_manifest_drops_deleted_files(self, planner, lineage, dedup, clock, temp_dir):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a", "gone.txt": b"g"},
                     manifest=["a.txt", "gone.txt"])
        i1 = capture(lineage, dedup, clock, INCREMENTAL, {"new.txt": b"n"}, parent_id=f1,
                     manifest=["a.txt", "new.txt"])

        planner.restore(i1, temp_dir / "out")
        assert read_tree(temp_dir / "out") == {"a.txt": b"a", "new.txt": b"n"}

    def test_manifest_path_without_content_breaks_chain(self, planner, lineage, dedup, clock, temp_dir):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"a"}, manifest=["a.txt", "lost.txt"])
        with pytest.raises(BrokenChainError):
            planner.restore(f1, temp_dir / "out")

    def test_existing_files_are_overwritten_and_others_left(self, planner, lineage, dedup, clock, temp_dir):
        out = temp_dir / "out"
        out.mkdir()
        (out / "a.txt").write_bytes(b"stale")
        (out / "unrelated.txt").write_bytes(b"mine")
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"fresh"})

        planner.restore(f1, out)
        assert read_tree(out) == {"a.txt": b"fresh", "unrelated.txt": b"mine"}

    def test_verify_detects_corrupt_object(self, planner, lineage, dedup, clock, temp_dir):
        f1 = capture(lineage, dedup, clock, FULL, {"a.txt": b"original"})
        content_hash = lineage.file_entries(f1)[0].object_hash
        dedup.object_path(content_hash).write_bytes(b"bit rot")

        with pytest.raises(IntegrityError):
            planner.restore(f1, temp_dir / "out", verify=True)
        assert read_tree(temp_dir / "out") == {}

    def test_unsafe_paths_are_refused(self, planner, lineage, dedup, clock, temp_dir):
        f1 = capture(lineage, dedup, clock, FULL, {"../escape.txt": b"x"})
        with pytest.raises(ValidationError):
            planner.restore(f1, temp_dir / "out")
        assert not (temp_dir / "escape.txt").exists()
