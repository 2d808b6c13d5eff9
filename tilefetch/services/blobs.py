"""Single-use display handles wrapping fetched imagery.

A :class:`DisplayHandle` is the only thing handed to the rendering side. It can
be read once and must be released once; ``with handle:`` releases it on every
exit path. Misuse (a second release, reading after release, or issuing a new
handle for an image that was already released) raises
:class:`~tilefetch.services.errors.InvalidHandleUsage` when the store is
strict, and is logged and ignored otherwise. Strict mode is the default and is
controlled by the ``TILEFETCH_STRICT_HANDLES`` environment variable.
"""

from __future__ import annotations

import logging
import os
import uuid
import weakref
from typing import Dict

from .errors import InvalidHandleUsage
from .imagery import ImageResult

logger = logging.getLogger(__name__)

STRICT_HANDLES_ENV = "TILEFETCH_STRICT_HANDLES"
_FALSE_VALUES = {"0", "false", "no", "off"}


def _strict_handles_default() -> bool:
    raw_value = os.getenv(STRICT_HANDLES_ENV, "").strip().lower()
    if not raw_value:
        return True
    return raw_value not in _FALSE_VALUES


class DisplayHandle:
    """Short-lived reference to one image result, readable exactly once."""

    def __init__(self, store: "BlobStore", image: ImageResult) -> None:
        self._store = store
        self._image: ImageResult | None = image
        self.url = f"blob:{uuid.uuid4()}"
        self.result_id = image.result_id
        self.content_type = image.content_type
        self.width = image.width
        self.height = image.height
        self._consumed = False
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def consumed(self) -> bool:
        return self._consumed

    def read(self) -> bytes | None:
        if self._released or self._image is None:
            self._store._misuse(f"Display handle {self.url} was read after it was released.")
            return None
        if self._consumed:
            self._store._misuse(f"Display handle {self.url} was read more than once.")
            return None
        self._consumed = True
        return self._image.content

    def release(self) -> None:
        self._store.release(self)

    def __enter__(self) -> "DisplayHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._released:
            self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"DisplayHandle({self.url!r}, {self.content_type!r}, {state})"


class BlobStore:
    """Issues display handles and tracks which of them are still live."""

    def __init__(self, *, strict: bool | None = None) -> None:
        self.strict = _strict_handles_default() if strict is None else strict
        self._live: Dict[str, DisplayHandle] = {}
        # Entries disappear once the ImageResult is garbage collected.
        self._issued_results: "weakref.WeakSet[ImageResult]" = weakref.WeakSet()

    def create_handle(self, image: ImageResult) -> DisplayHandle | None:
        if image in self._issued_results:
            self._misuse(
                f"A display handle was already issued for image result {image.result_id}."
            )
            return None

        handle = DisplayHandle(self, image)
        self._issued_results.add(image)
        self._live[handle.url] = handle
        logger.debug("Issued %s for %s (%sx%s)", handle.url, image.content_type, image.width, image.height)
        return handle

    def release(self, handle: DisplayHandle) -> None:
        if self._live.get(handle.url) is not handle:
            self._misuse(f"Display handle {handle.url} was released more than once.")
            return

        del self._live[handle.url]
        handle._released = True
        handle._image = None
        logger.debug("Released %s", handle.url)

    def live_count(self) -> int:
        return len(self._live)

    def _misuse(self, message: str) -> None:
        if self.strict:
            raise InvalidHandleUsage(message)
        logger.warning("Ignoring invalid display handle usage: %s", message)
