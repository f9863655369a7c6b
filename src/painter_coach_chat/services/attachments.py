"""Image attachment collaborator. Only the uploaded URL reaches the chat engine."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from ..domain.errors import ValidationError


@dataclass(frozen=True)
class ImageUpload:
    data: bytes
    filename: str
    content_type: str = "image/jpeg"


class ImageUploader(ABC):
    """Stores an image somewhere public and returns its URL."""

    @abstractmethod
    async def upload_image(self, image: ImageUpload) -> Optional[str]:
        """Upload an image. Returns None when the upload failed."""


def validate_attachment_url(url: str) -> str:
    """Reject attachment URLs that are not absolute http(s) URLs."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(
            "Invalid image URL: only http(s) URLs are supported",
            context={"attachment_url": url[:100]},
        )
    return url
