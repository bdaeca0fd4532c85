from __future__ import annotations

import pytest

from assetsplit.blobs import BlobRegistry, is_object_url


def test_object_urls_are_unique_and_revocable() -> None:
    registry = BlobRegistry()
    first = registry.create_object_url(b"one")
    second = registry.create_object_url(b"one")

    assert first != second
    assert is_object_url(first)
    assert first in registry
    assert registry.size(first) == 3

    assert registry.revoke_object_url(first)
    assert not registry.revoke_object_url(first)
    assert first not in registry
    with pytest.raises(KeyError):
        registry.get(first)
    assert registry.get(second) == b"one"


def test_registries_do_not_share_buffers() -> None:
    ours = BlobRegistry()
    theirs = BlobRegistry()
    url = ours.create_object_url(bytearray(b"mutable"))

    assert url not in theirs
    assert ours.get(url) == b"mutable"

    ours.clear()
    assert len(ours) == 0


def test_plain_urls_are_not_object_urls() -> None:
    assert not is_object_url("/libreoffice-wasm/soffice.wasm.gz")
    assert not is_object_url("https://example.com/blob:thing")
