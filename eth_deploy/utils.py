"""Bunch of file utilities."""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock


logger = logging.getLogger(__name__)


#: Same formatting for all JSON files we write, so diffs stay readable
STANDARD_JSON_FORMAT = {"indent": 4, "separators": (",", ": "), "sort_keys": True}


@contextmanager
def wait_other_writers(path: Path | str, timeout=120):
    """Wait other potential writers writing the same file.

    - Work around issues when parallel processes, or an operator running
      the same script twice, write the same file

    - Use a ``.lock`` file next to the written file

    Example:

    .. code-block:: python

        with wait_other_writers(manifest_path):
            data = read_json(manifest_path)
            data["1"]["Token"] = {"address": address}
            atomic_write_json(manifest_path, data)

    :param path:
        File that is being written

    :param timeout:
        How many seconds wait to acquire the lock file.

        Default 2 minutes.

    :raise filelock.Timeout:
        If the file writer is stuck with the lock.
    """

    if isinstance(path, str):
        path = Path(path)

    assert isinstance(path, Path), f"Not Path object: {path}"

    os.makedirs(path.parent, exist_ok=True)

    # https://stackoverflow.com/a/60281933/315168
    lock_file = path.parent / (path.name + ".lock")

    lock = FileLock(lock_file, timeout=timeout)

    if lock.is_locked:
        logger.info(
            "File %s locked for writing, waiting %f seconds",
            path,
            timeout,
        )

    with lock:
        yield


def read_json(path: Path) -> dict:
    """Read a JSON file, missing file is an empty dict."""
    if not path.exists():
        return {}
    with open(path, "rt") as inp:
        return json.load(inp)


def atomic_write_json(path: Path, data: dict):
    """Write a JSON file so that readers never see a partial file.

    - Write to a temporary file in the same directory

    - Flush it to the disk

    - Rename over the old file, which is atomic on POSIX and Windows
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "wt") as out:
            json.dump(data, out, **STANDARD_JSON_FORMAT)
            out.flush()
            os.fsync(out.fileno())
        os.replace(temp_name, path)
    except BaseException:
        # Interrupted write leaves the old file untouched
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise
