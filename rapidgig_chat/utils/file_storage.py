import os
import uuid
from dataclasses import dataclass

import aiofiles
import aiofiles.os
from fastapi import UploadFile

from rapidgig_chat.core.config import Settings

CHUNK_SIZE = 64 * 1024


@dataclass
class StoredFile:
    url: str
    name: str
    size: int
    content_type: str


class LocalFileStorage:
    """Writes attachments to disk and returns an opaque URL for them."""

    def __init__(self, upload_dir: str, url_prefix: str, max_bytes: int, allowed_types: list[str]) -> None:
        self.upload_dir = upload_dir
        self.url_prefix = url_prefix.rstrip("/")
        self.max_bytes = max_bytes
        self.allowed_types = set(allowed_types)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalFileStorage":
        return cls(settings.upload_dir, settings.upload_url_prefix, settings.max_upload_bytes, settings.allowed_upload_types)

    async def save(self, upload: UploadFile) -> StoredFile:
        content_type = upload.content_type or "application/octet-stream"
        if content_type not in self.allowed_types:
            raise ValueError("Invalid file type. Only images, documents, and archives are allowed.")
        original = os.path.basename(upload.filename or "")
        _, ext = os.path.splitext(original)
        stored_name = f"message-{uuid.uuid4().hex}{ext.lower()}"
        os.makedirs(self.upload_dir, exist_ok=True)
        path = os.path.join(self.upload_dir, stored_name)

        size = 0
        try:
            async with aiofiles.open(path, "wb") as out:
                while chunk := await upload.read(CHUNK_SIZE):
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise ValueError(f"File too large. Maximum size: {self.max_bytes // (1024 * 1024)}MB")
                    await out.write(chunk)
        except BaseException:
            # no partial file survives a rejected or interrupted upload
            if os.path.exists(path):
                os.remove(path)
            raise
        return StoredFile(url=f"{self.url_prefix}/{stored_name}", name=original or stored_name, size=size, content_type=content_type)

    async def discard(self, stored: StoredFile) -> None:
        """Remove a saved attachment whose message never made it to the store."""
        path = os.path.join(self.upload_dir, os.path.basename(stored.url))
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass

    def message_type_for(self, stored: StoredFile) -> str:
        return "image" if stored.content_type.startswith("image/") else "file"
