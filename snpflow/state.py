"""
On-disk phase state: completion markers and the binaries/paths manifest.

A marker file that exists means its step finished successfully. Nothing in
here ever deletes the working directory; it belongs to the user and is what
makes a phase resumable.
"""

import json
import os
import tempfile

from snpflow.errors import ArtifactError

MANIFEST_NAME = "manifest.json"


def write_json_atomic(path, data):
    """Write JSON next to its destination and rename it into place."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=4, sort_keys=True)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path, what):
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        raise ArtifactError(f"{what} not found: {path}")
    except json.JSONDecodeError as e:
        raise ArtifactError(f"{what} is not valid JSON ({path}): {e}")


class PhaseDir:
    """One phase's directory under the working directory."""

    def __init__(self, path):
        self.path = path

    def ensure(self):
        os.makedirs(self.path, exist_ok=True)
        return self

    def exists(self):
        return os.path.isdir(self.path)

    def file(self, name):
        return os.path.join(self.path, name)

    def is_done(self, marker):
        return os.path.isfile(self.file(marker))

    def mark_done(self, marker):
        self.ensure()
        with open(self.file(marker), "w") as f:
            f.write("true\n")

    @property
    def manifest_path(self):
        return self.file(MANIFEST_NAME)

    def has_manifest(self):
        return os.path.isfile(self.manifest_path)

    def read_manifest(self):
        return read_json(self.manifest_path, "Manifest")

    def write_manifest(self, entries):
        write_json_atomic(self.manifest_path, entries)

    def __repr__(self):
        return f"PhaseDir({self.path!r})"
