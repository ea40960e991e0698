"""Common utilities for rolloutctl."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any
from urllib.parse import quote


def get_home_dir() -> Path:
    """Get the rolloutctl home directory (config and default state)."""
    return Path(os.environ.get("ROLLOUT_HOME", "~/.rolloutctl")).expanduser()


def merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def parse_key_value_pairs(pairs: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Parse KEY=VALUE pairs from a list of strings.

    Args:
        pairs: List of KEY=VALUE strings

    Returns:
        Dictionary of parsed pairs
    """
    result = {}
    for pair in pairs:
        if "=" in pair:
            key, value = pair.split("=", 1)
            result[key.strip()] = value.strip()
    return result


def chunks(lst: list[Any], n: int) -> list[list[Any]]:
    """Split a list into chunks of size n."""
    return [lst[i : i + n] for i in range(0, len(lst), n)]


def state_filename(key: str, suffix: str) -> str:
    """File name for a state record keyed by an opaque id.

    The id is percent-encoded, so the mapping is reversible and distinct
    ids never share a file.
    """
    return quote(key, safe="") + suffix


def _fsync_dir(directory: Path) -> None:
    # Directory fsync is not available everywhere (e.g. Windows)
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_json(path: Path, data: Any) -> None:
    """Durably replace ``path`` with the JSON encoding of ``data``.

    The content is written to a temporary file in the same directory,
    flushed and fsynced, then renamed over the destination. A crash leaves
    either the old or the new file, never a torn one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    _fsync_dir(path.parent)


def append_json_line(path: Path, data: dict[str, Any]) -> None:
    """Append one JSON record to a JSON-lines file and fsync it.

    A torn final line left by a crash is terminated first, so the new
    record starts on a line of its own.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    line = (json.dumps(data, default=str) + "\n").encode()
    with open(path, "a+b") as f:
        if f.seek(0, os.SEEK_END) > 0:
            f.seek(-1, os.SEEK_END)
            if f.read(1) != b"\n":
                line = b"\n" + line
        f.write(line)
        f.flush()
        os.fsync(f.fileno())


def read_json_lines(path: Path) -> list[dict[str, Any]]:
    """Read a JSON-lines file, skipping a torn trailing line."""
    if not path.exists():
        return []
    entries = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return entries
