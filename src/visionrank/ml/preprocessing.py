"""Image preprocessing: resize, decode, drop alpha, and shape the model input.

Stages, in pipeline order:

    normalize_image  bytes -> bytes at the canonical width x height
    decode_image     bytes + mimetype -> RGBA PixelBuffer
    project_rgb      RGBA PixelBuffer -> RGB ChannelBuffer
    build_tensor     RGB ChannelBuffer -> int32 array of shape (1, H, W, 3)

Decoding dispatches through ``DECODERS``; new formats are added with
``register_decoder`` rather than by editing ``decode_image``.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar, Protocol

import numpy as np
from PIL import Image, UnidentifiedImageError

from visionrank.errors import DecodeError, ShapeMismatchError, UnsupportedFormatError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

RGBA_CHANNELS: int = 4
RGB_CHANNELS: int = 3

# Re-encoding options per Pillow format; JPEG defaults to quality 75.
_SAVE_OPTIONS: dict[str, dict[str, object]] = {
    "JPEG": {"quality": 95},
}

_PIL_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError)


# ---------------------------------------------------------------------------
# Buffers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawImage:
    """Uploaded bytes together with their declared mimetype."""

    data: bytes
    mimetype: str


@dataclass(frozen=True)
class _FlatBuffer:
    data: NDArray[np.generic]
    width: int
    height: int

    channels: ClassVar[int]

    def __post_init__(self) -> None:
        expected = self.width * self.height * self.channels
        if self.data.ndim != 1 or self.data.size != expected:
            raise ShapeMismatchError(
                f"{type(self).__name__} of {self.width}x{self.height} needs {expected} samples, "
                f"got {self.data.size}"
            )

    @property
    def num_pixels(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class PixelBuffer(_FlatBuffer):
    """Row-major RGBA samples, uint8, length width * height * 4."""

    channels: ClassVar[int] = RGBA_CHANNELS


@dataclass(frozen=True)
class ChannelBuffer(_FlatBuffer):
    """Row-major RGB samples, int32, length width * height * 3."""

    channels: ClassVar[int] = RGB_CHANNELS


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


def normalize_image(data: bytes, width: int, height: int, max_pixels: int | None = None) -> bytes:
    """Stretch an encoded image to exactly ``width`` x ``height``.

    The result is re-encoded in the source container format, so the declared
    mimetype still describes it. Aspect ratio is not preserved.

    Raises:
        DecodeError: If the bytes are not a parseable image, exceed
            ``max_pixels``, or cannot be re-encoded.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            source_format = img.format
            if max_pixels is not None and img.width * img.height > max_pixels:
                raise DecodeError(f"Image of {img.width}x{img.height} exceeds the {max_pixels} pixel limit")
            img.load()
            resized = img.resize((width, height), Image.Resampling.BILINEAR)
    except _PIL_ERRORS as exc:
        raise DecodeError(f"Cannot parse image: {exc}") from exc

    if source_format is None:
        raise DecodeError("Cannot determine the image container format")

    out = io.BytesIO()
    try:
        resized.save(out, format=source_format, **_SAVE_OPTIONS.get(source_format, {}))
    except (OSError, ValueError, KeyError) as exc:
        raise DecodeError(f"Cannot re-encode {source_format} image at {width}x{height}: {exc}") from exc

    logger.debug("Resized %s image to %dx%d", source_format, width, height)
    return out.getvalue()


# ---------------------------------------------------------------------------
# Format decoders
# ---------------------------------------------------------------------------


class Decoder(Protocol):
    """Turns encoded bytes of one container format into RGBA samples."""

    def decode(self, data: bytes) -> PixelBuffer:
        """Decode ``data``.

        Raises:
            DecodeError: If the bytes are not a valid image of this format.
        """
        ...


@dataclass(frozen=True)
class PillowDecoder:
    """Decoder restricted to a single Pillow format plugin.

    Restricting the plugin means a PNG uploaded as ``image/jpeg`` fails
    instead of being decoded by whichever plugin recognizes it.
    """

    format_name: str

    def decode(self, data: bytes) -> PixelBuffer:
        try:
            with Image.open(io.BytesIO(data), formats=[self.format_name]) as img:
                if img.mode == "CMYK":
                    img = img.convert("RGB")
                rgba = img.convert("RGBA")
        except _PIL_ERRORS as exc:
            raise DecodeError(f"Invalid {self.format_name} data: {exc}") from exc

        samples = np.asarray(rgba, dtype=np.uint8).reshape(-1)
        return PixelBuffer(data=samples, width=rgba.width, height=rgba.height)


JPEG_DECODER = PillowDecoder("JPEG")
PNG_DECODER = PillowDecoder("PNG")
BMP_DECODER = PillowDecoder("BMP")

DECODERS: dict[str, Decoder] = {
    "image/jpeg": JPEG_DECODER,
    "image/jpg": JPEG_DECODER,
    "image/pjpeg": JPEG_DECODER,
    "image/png": PNG_DECODER,
    "image/bmp": BMP_DECODER,
    "image/x-ms-bmp": BMP_DECODER,
}


def canonical_mimetype(mimetype: str) -> str:
    """Lower-case a mimetype and strip parameters such as ``; charset=``."""
    return mimetype.split(";", 1)[0].strip().lower()


def register_decoder(mimetype: str, decoder: Decoder) -> None:
    """Register (or replace) the decoder used for ``mimetype``."""
    DECODERS[canonical_mimetype(mimetype)] = decoder


def supported_mimetypes() -> list[str]:
    return sorted(DECODERS)


def decode_image(data: bytes, mimetype: str) -> PixelBuffer:
    """Decode ``data`` with the decoder registered for ``mimetype``.

    Raises:
        UnsupportedFormatError: If no decoder is registered for the mimetype.
        DecodeError: If the registered decoder rejects the bytes.
    """
    decoder = DECODERS.get(canonical_mimetype(mimetype))
    if decoder is None:
        raise UnsupportedFormatError(
            f"Unsupported image format '{mimetype}' (supported: {', '.join(supported_mimetypes())})"
        )
    return decoder.decode(data)


# ---------------------------------------------------------------------------
# Channel projection and tensor shaping
# ---------------------------------------------------------------------------


def project_rgb(pixels: PixelBuffer, width: int | None = None, height: int | None = None) -> ChannelBuffer:
    """Drop the alpha sample of every pixel, keeping R, G, B in order.

    ``width``/``height`` default to the buffer's own dimensions; pass the
    canonical size to require that the decoded image actually has it.

    Raises:
        ShapeMismatchError: If the buffer does not hold width * height RGBA pixels.
    """
    width = pixels.width if width is None else width
    height = pixels.height if height is None else height
    expected = width * height * RGBA_CHANNELS
    if pixels.data.size != expected:
        raise ShapeMismatchError(
            f"Expected {expected} RGBA samples for {width}x{height}, got {pixels.data.size}"
        )

    rgb = pixels.data.reshape(-1, RGBA_CHANNELS)[:, :RGB_CHANNELS].astype(np.int32).reshape(-1)
    return ChannelBuffer(data=rgb, width=width, height=height)


def build_tensor(channels: ChannelBuffer, height: int, width: int) -> NDArray[np.int32]:
    """Reshape an RGB buffer into a single-image NHWC batch of shape (1, H, W, 3).

    Raises:
        ShapeMismatchError: If the buffer length is not height * width * 3.
    """
    expected = height * width * RGB_CHANNELS
    if channels.data.size != expected:
        raise ShapeMismatchError(
            f"Cannot reshape {channels.data.size} samples into (1, {height}, {width}, {RGB_CHANNELS})"
        )
    return channels.data.astype(np.int32, copy=False).reshape(1, height, width, RGB_CHANNELS)
