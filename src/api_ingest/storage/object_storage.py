import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from logging import getLogger

from api_ingest.exceptions.exceptions import StorageError

logger = getLogger(__name__)


class ObjectStorage(ABC):
    """Put/get/delete/list capability over a flat key space."""

    @abstractmethod
    def put_bytes(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None: ...

    @abstractmethod
    def put_file(self, key: str, file_path: str, content_type: str = "application/octet-stream") -> None: ...

    @abstractmethod
    def get_bytes(self, key: str) -> bytes: ...

    @abstractmethod
    def download_file(self, key: str, file_path: str) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def list(self, prefix: str) -> list[str]: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def url_for(self, key: str) -> str: ...

    def delete_prefix(self, prefix: str) -> int:
        keys = self.list(prefix)
        for key in keys:
            self.delete(key)
        return len(keys)


class LocalFileStorage(ObjectStorage):
    """Filesystem-backed storage for single-node deployments and tests."""

    def __init__(self, root: str, public_base_url: str = ""):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put_bytes(self, key, data, content_type="application/octet-stream"):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # write-then-rename so readers never observe a partial object
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def put_file(self, key, file_path, content_type="application/octet-stream"):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        shutil.copyfile(file_path, tmp)
        os.replace(tmp, path)

    def get_bytes(self, key):
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {key}") from e

    def download_file(self, key, file_path):
        try:
            shutil.copyfile(self._path(key), file_path)
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {key}") from e

    def delete(self, key):
        self._path(key).unlink(missing_ok=True)

    def list(self, prefix):
        base = self._path(prefix) if prefix else self.root
        directory = base if prefix.endswith("/") or base.is_dir() else base.parent
        if not directory.exists():
            return []
        keys = []
        for path in directory.rglob("*"):
            if path.is_file() and not path.name.endswith(".part"):
                key = path.relative_to(self.root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def exists(self, key):
        return self._path(key).is_file()

    def url_for(self, key):
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return self._path(key).as_uri()
