#!/usr/bin/env python3
"""
rpgm_decrypt.py
===============

Single-file decryption for RPG Maker MV/MZ image containers (`.rpgmvp`, `.png_`).

The containers only obfuscate the first bytes of the embedded PNG. Decrypting
drops the 16-byte `RPGMV` container header and stamps the canonical PNG
signature + IHDR chunk header back onto the payload. The rest of the stream is
untouched, so no key is required.
"""

from __future__ import annotations

import io
import logging
import struct
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

# ---------------------------------------------------------------------------
# Header constants
# ---------------------------------------------------------------------------

SOURCE_MAGIC = bytes([
    0x52, 0x50, 0x47, 0x4D, 0x56, 0x00, 0x00, 0x00,
    0x00, 0x03, 0x01, 0x00, 0x00, 0x00, 0x00, 0x00,
])

TARGET_MAGIC = bytes([
    # PNG signature
    0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A,
    # IHDR length is always 13
    0x00, 0x00, 0x00, 0x0D,
    # "IHDR"
    0x49, 0x48, 0x44, 0x52,
])

MIN_CONTAINER_SIZE = len(SOURCE_MAGIC) + len(TARGET_MAGIC)
DEFAULT_OUTPUT_EXTENSION = ".png"

PathLike = Union[str, Path]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ConversionError(RuntimeError):
    """Per-file failure. Never aborts a batch."""


class ReadError(ConversionError):
    pass


class TooSmallError(ConversionError):
    def __init__(self, size: int):
        self.size = size
        super().__init__(
            f"file is too small ({size} bytes, need at least {MIN_CONTAINER_SIZE})"
        )


class BadMagicError(ConversionError):
    def __init__(self, header: bytes):
        self.header = header
        super().__init__(f"invalid magic: {header.hex()}")


class InvalidImageError(ConversionError):
    pass


class WriteError(ConversionError):
    pass


# ---------------------------------------------------------------------------
# Transform
# ---------------------------------------------------------------------------

def has_container_magic(raw: bytes) -> bool:
    return raw[: len(SOURCE_MAGIC)] == SOURCE_MAGIC


def transform(raw: bytes) -> bytes:
    """Strip the container header and restore the PNG signature.

    The result is ``len(raw) - 16`` bytes long and starts with TARGET_MAGIC.
    Raises TooSmallError or BadMagicError; *raw* itself is never modified.
    """
    if len(raw) < MIN_CONTAINER_SIZE:
        raise TooSmallError(len(raw))
    if not has_container_magic(raw):
        raise BadMagicError(bytes(raw[: len(SOURCE_MAGIC)]))

    out = bytearray(raw[len(SOURCE_MAGIC):])
    out[: len(TARGET_MAGIC)] = TARGET_MAGIC
    return bytes(out)


def verify_png_payload(payload: bytes) -> None:
    """Check that Pillow accepts *payload* as a PNG with non-zero dimensions."""
    try:
        with Image.open(io.BytesIO(payload)) as img:
            width, height = img.size
            if img.format != "PNG":
                raise InvalidImageError(f"unexpected image format: {img.format}")
            if width <= 0 or height <= 0:
                raise InvalidImageError(f"zero dimensions ({width}x{height})")
            img.verify()
    except InvalidImageError:
        raise
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, struct.error) as exc:
        raise InvalidImageError(f"invalid PNG: {exc}") from exc


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------

def normalize_extension(extension: str) -> str:
    """Return *extension* with a leading dot; raises ValueError if unusable."""
    if not extension.startswith("."):
        extension = f".{extension}"
    if extension == "." or "/" in extension or "\\" in extension or "\0" in extension:
        raise ValueError(f"invalid output extension: {extension!r}")
    return extension


def derive_output_path(source: PathLike, extension: str = DEFAULT_OUTPUT_EXTENSION) -> Path:
    extension = normalize_extension(extension)
    path = Path(source)
    # Everything from the last dot goes, so a bare ".rpgmvp" becomes ".png".
    name = path.name
    dot = name.rfind(".")
    stem = name[:dot] if dot >= 0 else name
    return path.with_name(stem + extension)


def write_payload(
    source: PathLike,
    payload: bytes,
    extension: str = DEFAULT_OUTPUT_EXTENSION,
) -> Path:
    target = derive_output_path(source, extension)
    try:
        target.write_bytes(payload)
    except OSError as exc:
        raise WriteError(f"write decrypted file {target}: {exc}") from exc
    return target


# ---------------------------------------------------------------------------
# One file end to end
# ---------------------------------------------------------------------------

def read_container(source: PathLike) -> bytes:
    try:
        return Path(source).read_bytes()
    except OSError as exc:
        raise ReadError(f"read {source}: {exc}") from exc


def decrypt_file(
    source: PathLike,
    extension: str = DEFAULT_OUTPUT_EXTENSION,
    verify: bool = False,
    skip_existing: bool = False,
    dry_run: bool = False,
) -> Optional[Path]:
    """Decrypt one container next to itself.

    Returns the written path, or None when the target already existed and
    *skip_existing* is set. Raises ConversionError subclasses on failure.
    """
    target = derive_output_path(source, extension)
    if skip_existing and target.exists():
        logging.debug("Already decrypted: %s", target)
        return None

    payload = transform(read_container(source))
    if verify:
        verify_png_payload(payload)

    if dry_run:
        logging.info("[dry-run] %s -> %s", source, target)
        return target

    written = write_payload(source, payload, extension)
    logging.debug("Decrypted %s -> %s", source, written)
    return written
