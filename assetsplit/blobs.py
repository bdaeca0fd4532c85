"""Process-local object URLs for reassembled resources."""

from __future__ import annotations

import uuid

BLOB_SCHEME = "blob:"
BLOB_ORIGIN = "assetsplit"


class BlobRegistry:
    """Hands out ``blob:`` URLs for in-memory buffers until they are revoked.

    A registry is owned by whoever created it; nothing here is shared between
    registries or stored at module level.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    def __contains__(self, url: object) -> bool:
        return url in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)

    def create_object_url(self, data: bytes) -> str:
        url = f"{BLOB_SCHEME}{BLOB_ORIGIN}/{uuid.uuid4().hex}"
        self._blobs[url] = bytes(data)
        return url

    def get(self, url: str) -> bytes:
        try:
            return self._blobs[url]
        except KeyError:
            raise KeyError(f"Unknown or revoked object URL: {url}") from None

    def size(self, url: str) -> int:
        return len(self.get(url))

    def revoke_object_url(self, url: str) -> bool:
        """Release the buffer behind ``url``; returns ``False`` if it was not registered."""
        return self._blobs.pop(url, None) is not None

    def clear(self) -> None:
        self._blobs.clear()


def is_object_url(url: str) -> bool:
    return url.startswith(BLOB_SCHEME)
