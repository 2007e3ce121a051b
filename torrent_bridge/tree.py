"""
Turn a flat file listing into a nested tree.
"""

from dataclasses import asdict
from typing import Any, Dict, List

from .models import TorrentFile
from .utils import join_path, split_path


def paths_to_tree(files: List[TorrentFile]) -> List[Dict[str, Any]]:
    """
    Build a tree of nodes from files, keeping their listing order.

    Every node has a cumulative "path". Directory nodes carry "children";
    leaf nodes carry the file's fields and no "children" key.

    Example:
        [a/b.txt, a/c/d.txt] ->
        [{path: "a", children: [{path: "a/b.txt", size, progress},
                                {path: "a/c", children: [...]}]}]
    """
    root: List[Dict[str, Any]] = []
    index: Dict[str, Dict[str, Any]] = {}
    by_path = {"/".join(split_path(f.path)): f for f in files}

    for f in files:
        siblings = root
        parent = ""
        for segment in split_path(f.path):
            path = join_path(parent, segment)
            node = index.get(path)
            if node is None:
                node = {"path": path, "children": []}
                index[path] = node
                siblings.append(node)
            siblings = node["children"]
            parent = path

    def finish(nodes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        finished = []
        for node in nodes:
            children = node.pop("children")
            found = by_path.get(node["path"])
            if found is not None:
                node = {**asdict(found), **node}
            if children:
                node["children"] = finish(children)
            finished.append(node)
        return finished

    return finish(root)
