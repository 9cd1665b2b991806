from __future__ import annotations

import shutil
from pathlib import Path

from conductor.errors import ContentStoreError


class LocalContentStore:
    """Blob store rooted at a directory; keys are slash-separated relative paths."""

    def __init__(self, base_path: Path) -> None:
        self.base_path = base_path.resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        if not key or key.startswith("/") or "\\" in key:
            raise ContentStoreError(f"Invalid content key: {key!r}")
        path = (self.base_path / key).resolve()
        if path == self.base_path or not path.is_relative_to(self.base_path):
            raise ContentStoreError(f"Content key escapes store root: {key!r}")
        return path

    async def write(self, key: str, content: str | bytes) -> str:
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content
        path.write_bytes(data)
        return str(path)

    async def read(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise ContentStoreError(f"No content stored at {key!r}") from exc

    async def read_text(self, key: str) -> str:
        return (await self.read(key)).decode("utf-8", errors="replace")

    async def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    async def delete(self, key: str) -> None:
        self._resolve(key).unlink(missing_ok=True)

    async def delete_tree(self, prefix: str) -> None:
        path = self._resolve(prefix.rstrip("/"))
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
