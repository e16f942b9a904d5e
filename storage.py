"""Local repository store for uploaded images.

Files are addressed by owner/repo/path under `config.UPLOAD_DIR`. Every write
returns the git blob SHA-1 of the content, and deletes must present the SHA of
the version they remove, mirroring how the hosting service versions files.
Each repository keeps an append-only commit history next to its files.
"""

import hashlib
import json
import re
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import config

HISTORY_FILE = ".history.jsonl"

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_history_lock = threading.Lock()


class StorageError(Exception):
    """Base class for repository storage failures."""


class InvalidPathError(StorageError, ValueError):
    pass


class StorageNotFoundError(StorageError):
    pass


class StorageConflictError(StorageError):
    pass


def _hidden(path: str) -> bool:
    return any(part.startswith(".") for part in path.split("/"))


def validate_folder(folder: Optional[str]) -> str:
    """Return the normalised target folder, rejecting traversal attempts and hidden segments."""
    folder = (folder or "").strip() or config.DEFAULT_FOLDER
    if "//" in folder or folder.startswith("/") or "\\" in folder or _hidden(folder):
        raise InvalidPathError("Invalid folder path")
    return folder.rstrip("/")


def blob_sha(data: bytes) -> str:
    """Git blob SHA-1 of `data`."""
    header = f"blob {len(data)}\0".encode()
    return hashlib.sha1(header + data).hexdigest()


def _repo_root(owner: str, repo: str) -> Path:
    for name in (owner, repo):
        if not _NAME_RE.match(name or "") or name in {".", ".."}:
            raise InvalidPathError(f"Invalid repository name: {name!r}")
    return Path(config.UPLOAD_DIR) / owner / repo


def _resolve(owner: str, repo: str, path: str) -> Path:
    path = (path or "").strip("/")
    # Hidden entries, the commit history included, are never addressable
    if _hidden(path):
        raise InvalidPathError(f"Invalid path: {path!r}")
    root = _repo_root(owner, repo).resolve()
    target = (root / path).resolve()
    if target != root and not target.is_relative_to(root):
        raise InvalidPathError(f"Path escapes repository: {path!r}")
    return target


def _record(owner: str, repo: str, entry: Dict[str, Any]) -> None:
    history_path = _repo_root(owner, repo) / HISTORY_FILE
    history_path.parent.mkdir(parents=True, exist_ok=True)
    entry = dict(entry, timestamp=time.time())
    with _history_lock, open(history_path, "a", encoding="utf-8") as f:
        f.write(json.dumps(entry) + "\n")


def commit_file(owner: str, repo: str, path: str, data: bytes, message: str) -> str:
    """Write `data` at owner/repo/path and return its content SHA."""
    dest = _resolve(owner, repo, path)
    if dest == _resolve(owner, repo, ""):
        raise InvalidPathError(f"Invalid file path: {path!r}")
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    sha = blob_sha(data)
    _record(owner, repo, {"action": "commit", "path": path, "sha": sha, "message": message})
    return sha


def delete_file(owner: str, repo: str, path: str, sha: Optional[str] = None, message: Optional[str] = None) -> str:
    """
    Remove a committed file.

    When `sha` is given it must match the stored content, otherwise
    StorageConflictError is raised and nothing is deleted.
    """
    target = _resolve(owner, repo, path)
    if not target.is_file():
        raise StorageNotFoundError(f"File not found: {path}")
    current = blob_sha(target.read_bytes())
    if sha and sha != current:
        raise StorageConflictError(f"{path} is at {current}, not {sha}")
    target.unlink()
    _record(owner, repo, {
        "action": "delete",
        "path": path,
        "sha": current,
        "message": message or f"Delete image: {Path(path).name}",
    })
    return current


def file_path(owner: str, repo: str, path: str) -> Path:
    target = _resolve(owner, repo, path)
    if not target.is_file():
        raise StorageNotFoundError(f"File not found: {path}")
    return target


def list_contents(owner: str, repo: str, path: str = "") -> Dict[str, Any]:
    """Folders and files directly under `path`, hidden entries excluded."""
    path = (path or "").strip("/")
    target = _resolve(owner, repo, path)
    if not target.is_dir():
        raise StorageNotFoundError(f"Repository or path not found: {owner}/{repo}/{path}")

    folders: List[Dict[str, Any]] = []
    files: List[Dict[str, Any]] = []
    for entry in sorted(target.iterdir(), key=lambda p: p.name):
        if entry.name.startswith("."):
            continue
        entry_path = f"{path}/{entry.name}" if path else entry.name
        if entry.is_dir():
            folders.append({"name": entry.name, "path": entry_path, "type": "directory"})
        else:
            files.append({
                "name": entry.name,
                "path": entry_path,
                "type": "file",
                "size": entry.stat().st_size,
                "extension": entry.suffix.lstrip(".").lower(),
            })
    return {
        "folders": folders,
        "files": files,
        "current_path": path,
        "parent_path": "/".join(path.split("/")[:-1]) if path else "",
    }


def history(owner: str, repo: str) -> List[Dict[str, Any]]:
    history_path = _repo_root(owner, repo) / HISTORY_FILE
    if not history_path.exists():
        return []
    with open(history_path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]
