"""Console output decoding for local processes."""

from __future__ import annotations

import logging

LOGGER = logging.getLogger(__name__)

CODE_PAGE_BANNERS = ("Active code page: 65001\r\n", "Active code page: 65001\n")


def decode_output(
    payload: bytes | str | None,
    *,
    windows: bool,
    legacy_encoding: str = "gbk",
    transcode: bool = True,
) -> str:
    """Decode process output.

    On Windows, ``cmd`` usually writes the legacy double-byte code page. Bytes
    are only treated as legacy text when they are not valid UTF-8, so output
    that is already UTF-8 is never re-encoded. ``transcode=False`` disables the
    legacy fallback entirely.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return strip_banners(payload)

    candidates = ["utf-8"]
    if windows and transcode:
        candidates.append(legacy_encoding)
    for encoding in candidates:
        try:
            text = payload.decode(encoding)
        except (LookupError, UnicodeDecodeError):
            continue
        if encoding != "utf-8":
            LOGGER.debug("output_transcoded", extra={"encoding": encoding, "bytes": len(payload)})
        return strip_banners(text)
    return strip_banners(payload.decode("utf-8", errors="replace"))


def strip_banners(text: str) -> str:
    for banner in CODE_PAGE_BANNERS:
        text = text.replace(banner, "")
    return text
