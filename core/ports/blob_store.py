from typing import Protocol


class BlobStoreError(Exception):
    """Upload to the media store failed."""


class BlobStorePort(Protocol):
    def upload(self, raw_payload: str, folder: str) -> str:
        """Store a base64 / data-URI image and return its public URL."""
        ...
