"""Tests for sizes traversal and aggregation."""

import os

import pytest
from sizes import (
    ConfigurationError,
    EntryStat,
    SizeAggregator,
    SizeNode,
    TraversalConfig,
    resolve_config,
    walk,
)


class FakeFileSystem:
    """In-memory file system keyed by absolute path."""

    def __init__(self, entries, root="/scan", unreadable=()):
        self.root = root
        self.stats = {root: EntryStat(device=1, inode=1, size=4096, is_dir=True)}
        for rel_path, entry in entries.items():
            self.stats[os.path.join(root, rel_path)] = entry
        self.unreadable = {os.path.join(root, path) for path in unreadable}

    def listdir(self, path):
        if path in self.unreadable:
            raise PermissionError(13, "Permission denied", path)
        return sorted(
            os.path.basename(child)
            for child in self.stats
            if child != path and os.path.dirname(child) == path
        )

    def lstat(self, path):
        try:
            return self.stats[path]
        except KeyError:
            raise FileNotFoundError(2, "No such file or directory", path) from None

    def stat(self, path):
        return self.lstat(path)


def make_file(inode, size, device=1, nlink=1):
    return EntryStat(device=device, inode=inode, size=size, is_file=True, nlink=nlink)


def make_dir(inode, device=1):
    return EntryStat(device=device, inode=inode, size=4096, is_dir=True)


def scan(fs, **kwargs):
    config = resolve_config(fs.root, fs=fs, **kwargs)
    aggregator = SizeAggregator()
    state = walk(config, aggregator, fs=fs)
    return aggregator.root, state


def assert_sums(node):
    """Check that every internal node totals its children."""
    if node.is_leaf:
        return
    assert node.total_bytes == sum(child.total_bytes for child in node.children.values())
    for child in node.children.values():
        assert_sums(child)


@pytest.fixture
def sample_fs():
    """Create the a / b/c / b/d tree."""
    return FakeFileSystem(
        {
            "a": make_file(2, 100),
            "b": make_dir(3),
            "b/c": make_file(4, 200),
            "b/d": make_file(5, 9_500_000_000),
        }
    )


class TestSizeAggregator:
    """Test SizeAggregator.record method."""

    def test_creates_intermediate_nodes(self):
        aggregator = SizeAggregator()
        aggregator.record(["x", "y", "z"], 10)
        root = aggregator.root
        assert root.total_bytes == 10
        assert root.children["x"].total_bytes == 10
        assert root.children["x"].children["y"].children["z"].total_bytes == 10

    def test_adds_to_every_ancestor(self):
        aggregator = SizeAggregator()
        aggregator.record(["x", "y"], 10)
        aggregator.record(["x", "z"], 5)
        aggregator.record(["w"], 1)
        root = aggregator.root
        assert root.total_bytes == 16
        assert root.children["x"].total_bytes == 15
        assert_sums(root)

    def test_empty_segments_hit_root_only(self):
        aggregator = SizeAggregator()
        aggregator.record([], 42)
        assert aggregator.root == SizeNode(total_bytes=42)


class TestResolveConfig:
    """Test resolve_config function."""

    def test_missing_root(self, tmp_path):
        with pytest.raises(ConfigurationError, match="does not exist"):
            resolve_config(str(tmp_path / "missing"))

    def test_negative_depth(self, tmp_path):
        with pytest.raises(ConfigurationError):
            resolve_config(str(tmp_path), max_depth=-1)

    def test_root_device(self, tmp_path):
        config = resolve_config(str(tmp_path))
        assert config.root_device == os.stat(tmp_path).st_dev

    def test_no_root_device_without_one_file_system(self, tmp_path):
        config = resolve_config(str(tmp_path), one_file_system=False)
        assert config.root_device is None

    def test_relative_root_made_absolute(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = resolve_config(".")
        assert config.root == str(tmp_path)


class TestWalk:
    """Test walk function with an in-memory file system."""

    def test_totals(self, sample_fs):
        root, state = scan(sample_fs)
        assert root.total_bytes == 9_500_000_300
        assert root.children["a"].total_bytes == 100
        assert root.children["b"].total_bytes == 9_500_000_200
        assert root.children["b"].children["d"].total_bytes == 9_500_000_000
        assert state.visited == 4
        assert_sums(root)

    def test_empty_directory_is_recorded(self):
        fs = FakeFileSystem({"empty": make_dir(2)})
        root, _ = scan(fs)
        assert root.children["empty"] == SizeNode(total_bytes=0)

    def test_max_depth_zero(self, sample_fs):
        root, _ = scan(sample_fs, max_depth=0)
        assert root.total_bytes == 9_500_000_300
        assert root.is_leaf

    def test_max_depth_folds_deeper_entries(self, sample_fs):
        root, _ = scan(sample_fs, max_depth=1)
        assert set(root.children) == {"a", "b"}
        assert root.children["b"].total_bytes == 9_500_000_200
        assert root.children["b"].is_leaf

    def test_exclude_mid_path(self):
        fs = FakeFileSystem(
            {
                "app": make_dir(2),
                "app/main.py": make_file(3, 10),
                "app/node_modules": make_dir(4),
                "app/node_modules/lib": make_dir(5),
                "app/node_modules/lib/index.js": make_file(6, 500),
            }
        )
        root, state = scan(fs, excludes=["node_modules"])
        assert root.total_bytes == 10
        assert "node_modules" not in root.children["app"].children
        assert state.pruned == 1

    def test_one_file_system_prunes_other_device(self):
        fs = FakeFileSystem(
            {
                "local": make_file(2, 10),
                "mnt": make_dir(3, device=2),
                "mnt/big": make_file(4, 1000, device=2),
            }
        )
        root, _ = scan(fs)
        assert root.total_bytes == 10
        assert "mnt" not in root.children

        root, _ = scan(fs, one_file_system=False)
        assert root.total_bytes == 1010
        assert root.children["mnt"].children["big"].total_bytes == 1000

    def test_hardlinks_squashed(self):
        fs = FakeFileSystem(
            {
                "parent": make_dir(2),
                "parent/one": make_file(7, 4096, nlink=2),
                "parent/two": make_file(7, 4096, nlink=2),
            }
        )
        root, _ = scan(fs)
        parent = root.children["parent"]
        assert parent.total_bytes == 4096
        assert parent.children["one"].total_bytes == 4096
        assert parent.children["two"].total_bytes == 0

        root, _ = scan(fs, squash_hardlinks=False)
        assert root.children["parent"].total_bytes == 8192

    def test_hardlink_dedup_ignores_max_depth(self):
        fs = FakeFileSystem(
            {
                "a": make_dir(2),
                "a/deep": make_dir(3),
                "a/deep/f": make_file(9, 300, nlink=2),
                "b": make_dir(4),
                "b/f": make_file(9, 300, nlink=2),
            }
        )
        root, _ = scan(fs, max_depth=1)
        assert root.total_bytes == 300
        assert root.children["a"].total_bytes == 300
        assert root.children["b"].total_bytes == 0

    def test_unreadable_directory_is_skipped(self, caplog):
        fs = FakeFileSystem(
            {
                "locked": make_dir(2),
                "locked/secret": make_file(3, 50),
                "open": make_file(4, 10),
            },
            unreadable=["locked"],
        )
        with caplog.at_level("WARNING", logger="sizes"):
            root, state = scan(fs)
        assert root.total_bytes == 10
        assert root.children["locked"].total_bytes == 0
        assert state.errors == 1
        assert "Cannot read directory /scan/locked" in caplog.text

    def test_vanished_entry_is_skipped(self, caplog):
        class VanishingFileSystem(FakeFileSystem):
            def listdir(self, path):
                names = super().listdir(path)
                return [*names, "gone"] if path == self.root else names

        fs = VanishingFileSystem({"kept": make_file(2, 10)})
        with caplog.at_level("WARNING", logger="sizes"):
            root, state = scan(fs)
        assert root.total_bytes == 10
        assert "gone" not in root.children
        assert state.errors == 1
        assert "Cannot access /scan/gone" in caplog.text

    def test_file_root(self):
        fs = FakeFileSystem({})
        fs.stats[fs.root] = make_file(1, 77)
        root, _ = scan(fs)
        assert root == SizeNode(total_bytes=77)


class TestWalkRealFileSystem:
    """Test walk function against the real file system."""

    def test_hardlinks(self, tmp_path):
        parent = tmp_path / "parent"
        parent.mkdir()
        (parent / "one").write_bytes(b"x" * 4096)
        os.link(parent / "one", parent / "two")

        squashed = SizeAggregator()
        walk(resolve_config(str(tmp_path)), squashed)
        assert squashed.root.children["parent"].total_bytes == 4096

        counted = SizeAggregator()
        walk(resolve_config(str(tmp_path), squash_hardlinks=False), counted)
        assert counted.root.children["parent"].total_bytes == 8192

    def test_symlinked_directory_not_followed(self, tmp_path):
        target = tmp_path / "target"
        target.mkdir()
        (target / "data").write_bytes(b"x" * 1000)
        link = tmp_path / "link"
        link.symlink_to(target, target_is_directory=True)

        aggregator = SizeAggregator()
        walk(resolve_config(str(tmp_path)), aggregator)
        root = aggregator.root
        assert root.children["link"].is_leaf
        assert root.children["link"].total_bytes == os.lstat(link).st_size
        assert root.children["target"].total_bytes == 1000
        assert root.total_bytes == 1000 + os.lstat(link).st_size
        assert_sums(root)

    def test_sum_invariant(self, tmp_path):
        for rel_path, size in [("a", 10), ("b/c", 20), ("b/d/e", 30), ("f/g", 40)]:
            path = tmp_path / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"x" * size)

        aggregator = SizeAggregator()
        walk(resolve_config(str(tmp_path)), aggregator)
        assert aggregator.root.total_bytes == 100
        assert_sums(aggregator.root)


class TestWalkVanishingRoot:
    """Test walk when the root disappears after the configuration is resolved."""

    def test_root_removed(self, sample_fs, caplog):
        config = resolve_config(sample_fs.root, fs=sample_fs)
        del sample_fs.stats[sample_fs.root]
        aggregator = SizeAggregator()
        with caplog.at_level("ERROR", logger="sizes"):
            state = walk(config, aggregator, fs=sample_fs)
        assert state.errors == 1
        assert aggregator.root == SizeNode()
        assert "Cannot access /scan" in caplog.text
