import gc
import logging

import pytest

from tilefetch.services.blobs import BlobStore
from tilefetch.services.errors import InvalidHandleUsage
from tilefetch.services.imagery import ImageResult


def _image(content: bytes = b"payload") -> ImageResult:
    return ImageResult(content=content, content_type="image/png", width=512, height=512)


def test_handle_reads_once_and_releases():
    store = BlobStore(strict=True)
    handle = store.create_handle(_image())

    assert handle.url.startswith("blob:")
    assert store.live_count() == 1
    assert handle.read() == b"payload"
    assert handle.consumed

    handle.release()

    assert handle.released
    assert store.live_count() == 0


def test_context_manager_releases_on_error():
    store = BlobStore(strict=True)
    handle = store.create_handle(_image())

    with pytest.raises(RuntimeError):
        with handle:
            raise RuntimeError("render failed")

    assert handle.released
    assert store.live_count() == 0


def test_context_manager_tolerates_explicit_release_inside_block():
    store = BlobStore(strict=True)

    with store.create_handle(_image()) as handle:
        handle.read()
        handle.release()

    assert store.live_count() == 0


def test_strict_store_rejects_double_release():
    store = BlobStore(strict=True)
    handle = store.create_handle(_image())
    handle.release()

    with pytest.raises(InvalidHandleUsage):
        handle.release()


def test_strict_store_rejects_use_after_release_and_second_read():
    store = BlobStore(strict=True)
    handle = store.create_handle(_image())
    handle.read()

    with pytest.raises(InvalidHandleUsage):
        handle.read()

    handle.release()
    with pytest.raises(InvalidHandleUsage):
        handle.read()


def test_strict_store_rejects_reissuing_a_released_result():
    store = BlobStore(strict=True)
    image = _image()
    store.create_handle(image).release()

    with pytest.raises(InvalidHandleUsage):
        store.create_handle(image)


def test_lenient_store_logs_and_ignores_misuse(caplog):
    store = BlobStore(strict=False)
    image = _image()
    handle = store.create_handle(image)
    handle.release()

    with caplog.at_level(logging.WARNING, logger="tilefetch.services.blobs"):
        handle.release()
        assert handle.read() is None
        assert store.create_handle(image) is None

    assert store.live_count() == 0
    assert len([record for record in caplog.records if "invalid display handle" in record.getMessage()]) == 3


def test_strict_mode_follows_environment(monkeypatch):
    monkeypatch.delenv("TILEFETCH_STRICT_HANDLES", raising=False)
    assert BlobStore().strict is True

    monkeypatch.setenv("TILEFETCH_STRICT_HANDLES", "0")
    assert BlobStore().strict is False

    monkeypatch.setenv("TILEFETCH_STRICT_HANDLES", "yes")
    assert BlobStore().strict is True


def test_store_forgets_released_results_once_they_are_dropped():
    store = BlobStore(strict=True)

    for index in range(1000):
        with store.create_handle(_image(f"tile-{index}".encode())) as handle:
            handle.read()
    del handle
    gc.collect()

    assert store.live_count() == 0
    assert len(store._issued_results) == 0
