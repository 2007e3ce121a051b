"""
Tests for the file tree builder (torrent_bridge/tree.py)
"""

from torrent_bridge.models import TorrentFile
from torrent_bridge.tree import paths_to_tree


class TestPathsToTree:
    """Tests for paths_to_tree."""

    def test_nested(self, sample_files):
        """Test folders nest with cumulative paths."""
        tree = paths_to_tree(sample_files)

        assert len(tree) == 1
        show = tree[0]
        assert show["path"] == "Show"
        assert [c["path"] for c in show["children"]] == ["Show/Season 1", "Show/info.nfo"]
        season = show["children"][0]
        assert [c["path"] for c in season["children"]] == [
            "Show/Season 1/E01.mkv", "Show/Season 1/E02.mkv",
        ]

    def test_leaves_carry_file_fields(self, sample_files):
        """Test leaves have file fields and no children key."""
        leaf = paths_to_tree(sample_files)[0]["children"][1]
        assert leaf == {"path": "Show/info.nfo", "size": 10, "progress": 100}
        assert "children" not in leaf

    def test_single_file(self):
        """Test a single-file torrent is one leaf."""
        tree = paths_to_tree([TorrentFile(path="ubuntu.iso", size=5, progress=0)])
        assert tree == [{"path": "ubuntu.iso", "size": 5, "progress": 0}]

    def test_backslashes(self):
        """Test Windows separators build the same tree."""
        tree = paths_to_tree([TorrentFile(path="A\\b.txt", size=1)])
        assert tree[0]["path"] == "A"
        assert tree[0]["children"][0]["path"] == "A/b.txt"

    def test_empty(self):
        """Test an empty listing gives an empty tree."""
        assert paths_to_tree([]) == []
