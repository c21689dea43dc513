"""Загрузка картинок во внешнее хранилище и построение публичных ссылок."""

import time
from typing import Protocol

import httpx

from imaginarena.core.config import settings
from imaginarena.core.errors import TransientIOError, ValidationError


class ImageUploader(Protocol):
    async def upload(self, path: str, data: bytes, content_type: str) -> str: ...


def build_submission_path(match_id: int, user_id: int, filename: str, now: float | None = None) -> str:
    # Путь уникален по матчу, игроку и времени загрузки.
    timestamp_ms = int((time.time() if now is None else now) * 1000)
    extension = filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else "png"
    return f"submissions/{match_id}-{user_id}-{timestamp_ms}.{extension}"


class BlobStore:
    def __init__(
        self,
        base_url: str | None = None,
        public_url: str | None = None,
        bucket: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.blob_store_url).rstrip("/")
        self.public_url = (public_url or settings.blob_public_url).rstrip("/")
        self.bucket = bucket or settings.blob_bucket
        self.token = settings.blob_store_token if token is None else token
        self.timeout = timeout or settings.blob_upload_timeout

    def public_link(self, path: str) -> str:
        return f"{self.public_url}/{self.bucket}/{path}"

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Кладет объект по пути и возвращает его публичный URL."""
        if not data:
            raise ValidationError("Image file is empty")

        headers = {"Content-Type": content_type or "application/octet-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.put(f"{self.base_url}/{self.bucket}/{path}", content=data, headers=headers)
        except httpx.HTTPError as exc:
            raise TransientIOError("Image storage is unavailable, try again") from exc

        if response.status_code >= 500:
            raise TransientIOError("Image storage is unavailable, try again")
        if response.status_code >= 400:
            raise ValidationError(f"Image upload rejected ({response.status_code})")
        return self.public_link(path)
