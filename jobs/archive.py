"""
Long-term object storage for archived aggregates.
"""

import json
import os
from abc import ABC, abstractmethod

from ledger.base import dumps


class ObjectArchive(ABC):

    @abstractmethod
    def put_json(self, key, obj):
        """Store *obj* as JSON under *key*, replacing any previous object."""

    @abstractmethod
    def get_json(self, key):
        """Return the object stored under *key*, or None."""


class FilesystemArchive(ObjectArchive):
    """Objects as files under a root directory; keys are relative paths."""

    def __init__(self, root):
        self.root = os.path.abspath(root)

    def _path(self, key):
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f"Archive key escapes root: {key!r}")
        return path

    def put_json(self, key, obj):
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = path + ".tmp"
        with open(tmp, "w") as f:
            f.write(dumps(obj, indent=2, sort_keys=True))
        os.replace(tmp, path)
        return path

    def get_json(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r") as f:
            return json.load(f)
