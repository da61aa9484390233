"""Artifact stores for finished report bundles.

The engine only uploads after fully successful executions and never waits for the
upload before reporting completion. Deletes are driven by external cleanup.
"""

from __future__ import annotations

import asyncio
import mimetypes
import shutil
from pathlib import Path
from typing import Protocol

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ArtifactStore(Protocol):
    async def upload(self, local_dir: Path, remote_key: str) -> None:
        ...

    async def delete(self, remote_key: str) -> None:
        ...


def _iter_files(local_dir: Path) -> list[Path]:
    return sorted(p for p in Path(local_dir).rglob("*") if p.is_file())


def _safe_key(key: str) -> str:
    parts = [p for p in str(key or "").replace("\\", "/").split("/") if p not in ("", ".", "..")]
    if not parts:
        raise ValueError("empty artifact key")
    return "/".join(parts)


class LocalArtifactStore:
    """Copies report bundles under a root directory; keys map to relative paths."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def path_for(self, remote_key: str) -> Path:
        return self.root / _safe_key(remote_key)

    async def upload(self, local_dir: Path, remote_key: str) -> None:
        src = Path(local_dir)
        if not src.is_dir():
            raise FileNotFoundError(f"missing report directory: {src}")
        dest = self.path_for(remote_key)
        await asyncio.to_thread(shutil.copytree, src, dest, dirs_exist_ok=True)
        logger.info("Uploaded report bundle", key=remote_key, dest=str(dest))

    async def delete(self, remote_key: str) -> None:
        target = self.path_for(remote_key)
        if target.is_dir():
            await asyncio.to_thread(shutil.rmtree, target, True)
        elif target.exists():
            target.unlink()
        logger.info("Deleted report bundle", key=remote_key)


class HttpArtifactStore:
    """PUTs every file of a report bundle to ``{base_url}/{key}/{relative_path}``."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        if not self.base_url:
            raise ValueError("Missing artifact store base_url")
        self.token = token
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"User-Agent": "E2E Execution Engine"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(headers=headers, timeout=self.timeout_seconds, transport=self._transport)

    async def upload(self, local_dir: Path, remote_key: str) -> None:
        src = Path(local_dir)
        files = _iter_files(src)
        if not files:
            raise FileNotFoundError(f"no files to upload in {src}")
        key = _safe_key(remote_key)
        async with self._client() as client:
            for path in files:
                rel = path.relative_to(src).as_posix()
                content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
                resp = await client.put(
                    f"{self.base_url}/{key}/{rel}",
                    content=await asyncio.to_thread(path.read_bytes),
                    headers={"Content-Type": content_type},
                )
                resp.raise_for_status()
        logger.info("Uploaded report bundle", key=key, files=len(files))

    async def delete(self, remote_key: str) -> None:
        key = _safe_key(remote_key)
        async with self._client() as client:
            resp = await client.delete(f"{self.base_url}/{key}")
            if resp.status_code != 404:
                resp.raise_for_status()
        logger.info("Deleted report bundle", key=key)
