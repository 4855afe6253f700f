#!/usr/bin/env python3
"""
pcxdecoder.py — PCX RLE decoder

Reads:
- Header info (manufacturer, version, encoding, etc.)
- RLE scan lines, one per colour plane per row
- Optional 256-colour VGA palette trailing the pixel data
Produces:
    PixelBuffer (height x width RGBA), decoded in the foreground or on a
    background worker that reports progress through DecodeProgress messages.
"""

import argparse
import io
import logging
import os
import queue
import struct
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

log = logging.getLogger(__name__)

PCX_IDENTIFIER = 10
PCX_HEADER_SIZE = 128
# Everything after the identifier byte (127 bytes, little-endian)
PCX_HEADER_TAIL_FMT = "<BBB HHHH HH 48s B B H H H H 54s".replace(" ", "")
PCX_PALETTE_MARKER = 0x0C
PCX_PALETTE_SIZE = 768
RLE_RUN_MASK = 0xC0
RLE_COUNT_MASK = 0x3F

RGB = Tuple[int, int, int]
RGBA = Tuple[int, int, int, int]


# =============================== ERRORS ===============================

class PCXError(Exception):
    """Base exception for PCX decoding errors"""


class InvalidSignatureError(PCXError):
    """First header byte is not the PCX identifier"""


class UnsupportedFormatError(PCXError):
    """Bit depth / plane count / encoding combination not handled"""


class TruncatedDataError(PCXError):
    """Source exhausted mid-header or mid-scan-line"""


class FormatMismatchError(PCXError):
    """Plane buffers or rows disagree with the image geometry"""


class MissingPaletteError(PCXError):
    """Indexed pixel with no usable palette entry"""


# =============================== BYTE SOURCE ===============================

class ByteSource:
    """Forward-only reader over a binary stream."""

    def __init__(self, stream):
        if isinstance(stream, (bytes, bytearray, memoryview)):
            stream = io.BytesIO(bytes(stream))
        self.stream = stream
        self.consumed = 0

    def read_bytes(self, n: int) -> bytes:
        # raw streams may return short reads before EOF
        data = b""
        while len(data) < n:
            chunk = self.stream.read(n - len(data))
            if not chunk:
                break
            data += chunk
        self.consumed += len(data)
        if len(data) != n:
            raise TruncatedDataError(
                f"Unexpected end of data: wanted {n} bytes, got {len(data)}")
        return data

    def read_byte(self) -> int:
        return self.read_bytes(1)[0]

    def read_u16(self) -> int:
        return struct.unpack("<H", self.read_bytes(2))[0]

    def try_read_byte(self) -> Optional[int]:
        """Like read_byte, but None at end of data."""
        data = self.stream.read(1)
        if not data:
            return None
        self.consumed += 1
        return data[0]


def as_source(source) -> ByteSource:
    if isinstance(source, ByteSource):
        return source
    return ByteSource(source)


# =============================== HEADER ===============================

@dataclass(frozen=True)
class PCXHeader:
    identifier: int
    version: int
    encoding: int
    bits_per_pixel: int
    x_start: int
    y_start: int
    x_end: int
    y_end: int
    h_resolution: int
    v_resolution: int
    colormap: bytes
    reserved: int
    n_planes: int
    bytes_per_line: int
    palette_type: int
    h_screen_size: int
    v_screen_size: int
    filler: bytes

    @property
    def width(self) -> int: return self.x_end - self.x_start + 1
    @property
    def height(self) -> int: return self.y_end - self.y_start + 1

    @property
    def legacy_palette(self) -> List[RGB]:
        """The 16-colour EGA palette stored in the header."""
        raw = self.colormap
        return [tuple(raw[i:i + 3]) for i in range(0, 48, 3)]


def is_valid_format(header: PCXHeader) -> bool:
    return header.identifier == PCX_IDENTIFIER


def read_header(source) -> PCXHeader:
    """
    Read the fixed 128-byte header.

    The identifier byte is checked before anything else is read, so a
    non-PCX source loses exactly one byte.
    """
    src = as_source(source)
    identifier = src.read_byte()
    if identifier != PCX_IDENTIFIER:
        log.debug("Not a PCX file: identifier %d", identifier)
        raise InvalidSignatureError(
            f"Not a PCX file: identifier byte is {identifier}, expected {PCX_IDENTIFIER}")
    fields = struct.unpack(PCX_HEADER_TAIL_FMT, src.read_bytes(PCX_HEADER_SIZE - 1))
    header = PCXHeader(identifier, *fields)
    log.debug("Read header: %dx%d, %d bpp, %d plane(s)",
              header.width, header.height, header.bits_per_pixel, header.n_planes)
    return header


def describe_header(header: PCXHeader, path: Optional[Path] = None) -> dict:
    info = {}
    if path is not None:
        path = Path(path)
        info["Filename"] = os.path.basename(path)
        info["File Size"] = f"{path.stat().st_size} bytes"
    info.update({
        "Manufacturer": f"{header.identifier} (ZSoft .PCX)" if is_valid_format(header) else str(header.identifier),
        "Version": header.version,
        "Encoding": header.encoding,
        "Bits per Pixel": header.bits_per_pixel,
        "Image Dimensions": f"{header.width} × {header.height}",
        "HDPI": header.h_resolution,
        "VDPI": header.v_resolution,
        "Color Planes": header.n_planes,
        "Bytes per Line": header.bytes_per_line,
        "Palette Type": header.palette_type,
    })
    return info


# =============================== RLE SCAN LINES ===============================

def packed_length(samples: int, bits_per_pixel: int) -> int:
    return (samples * bits_per_pixel + 7) // 8


def unpack_samples(data: bytes, bits_per_pixel: int, count: int) -> bytes:
    """Split packed bytes into one sample per byte, high bits first."""
    if bits_per_pixel == 8:
        return bytes(data[:count])
    per_byte = 8 // bits_per_pixel
    mask = (1 << bits_per_pixel) - 1
    shifts = [8 - bits_per_pixel * (k + 1) for k in range(per_byte)]
    out = bytearray()
    for byte in data:
        for shift in shifts:
            out.append((byte >> shift) & mask)
        if len(out) >= count:
            break
    return bytes(out[:count])


def decode_scan_line(source, output_length: int, bits_per_pixel: int = 8,
                     bytes_per_line: Optional[int] = None) -> bytes:
    """
    Expand one RLE-encoded plane line into `output_length` samples.

    Runs are expanded up to the encoded stride (`bytes_per_line`, or the
    packed width when not given). A run longer than what is left of the
    stride is clipped; its run header and value are still consumed so the
    next line starts at the right byte.
    """
    src = as_source(source)
    needed = packed_length(output_length, bits_per_pixel)
    stride = needed if bytes_per_line is None else bytes_per_line
    if stride < needed:
        raise FormatMismatchError(
            f"Scan line stride {stride} too short for {output_length} samples at {bits_per_pixel} bpp")

    out = bytearray()
    while len(out) < stride:
        b = src.read_byte()
        if (b & RLE_RUN_MASK) == RLE_RUN_MASK:
            count = b & RLE_COUNT_MASK
            value = src.read_byte()
        else:
            count, value = 1, b
        out.extend(bytes((value,)) * min(count, stride - len(out)))
    return unpack_samples(out, bits_per_pixel, output_length)


# =============================== COMPOSITION ===============================

def compose_row(plane_buffers: Sequence[bytes], width: Optional[int] = None) -> List[RGBA]:
    lengths = {len(p) for p in plane_buffers}
    if width is not None:
        lengths.add(width)
    if len(lengths) > 1:
        raise FormatMismatchError(f"Plane lengths disagree: {sorted(lengths)}")

    if len(plane_buffers) == 3:
        r, g, b = plane_buffers
        return [(r[j], g[j], b[j], 255) for j in range(len(r))]
    if len(plane_buffers) == 4:
        r, g, b, a = plane_buffers
        return [(r[j], g[j], b[j], a[j]) for j in range(len(r))]
    if len(plane_buffers) == 1:
        return [(v, v, v, 255) for v in plane_buffers[0]]
    raise FormatMismatchError(f"Cannot compose {len(plane_buffers)} planes")


# =============================== PALETTE ===============================

def resolve_palette(source, header: PCXHeader) -> Optional[List[RGB]]:
    """
    Read the 256-colour palette that may follow the pixel data.

    Must be called with the source positioned right after the last
    pixel byte.
    """
    src = as_source(source)
    marker = src.try_read_byte()
    if marker != PCX_PALETTE_MARKER:
        log.debug("No extended palette (next byte: %s)", marker)
        return None
    raw = src.read_bytes(PCX_PALETTE_SIZE)
    log.debug("Read 256-colour palette")
    return [tuple(raw[i:i + 3]) for i in range(0, PCX_PALETTE_SIZE, 3)]


def index_colors(header: PCXHeader, palette: Optional[List[RGB]]) -> List[RGB]:
    if palette:
        return palette
    if header.palette_type == 2:
        return [(i, i, i) for i in range(256)]
    return header.legacy_palette


def map_indices(indices: bytes, colors: List[RGB]) -> List[RGBA]:
    row = []
    for idx in indices:
        if idx >= len(colors):
            raise MissingPaletteError(
                f"Pixel index {idx} has no palette entry ({len(colors)} colours available)")
        r, g, b = colors[idx]
        row.append((r, g, b, 255))
    return row


# =============================== PIXEL BUFFER ===============================

class PixelBuffer:
    """Row-major RGBA image, written one row at a time from the top."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.pixels = np.zeros((height, width, 4), dtype=np.uint8)
        self.rows_written = 0
        self.frozen = False

    def write_row(self, y: int, row: Sequence[RGBA]):
        if self.frozen:
            raise RuntimeError("Pixel buffer is complete and read-only")
        if y != self.rows_written:
            raise FormatMismatchError(f"Row {y} written out of order (expected {self.rows_written})")
        if len(row) != self.width:
            raise FormatMismatchError(f"Row {y} has {len(row)} pixels, expected {self.width}")
        self.pixels[y] = row
        self.rows_written += 1

    def freeze(self):
        self.pixels.flags.writeable = False
        self.frozen = True

    def __getitem__(self, xy) -> RGBA:
        x, y = xy
        return tuple(int(c) for c in self.pixels[y, x])

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels.copy())


# =============================== DECODER ===============================

@dataclass(frozen=True)
class DecodeProgress:
    """One progress message; `image` is set only on the final message."""
    percent: int
    image: Optional[PixelBuffer] = None
    error: Optional[BaseException] = None

    @property
    def finished(self) -> bool:
        return self.image is not None or self.error is not None


ProgressCallback = Callable[[DecodeProgress], None]


class DecoderState(Enum):
    IDLE = "idle"
    HEADER_READ = "header_read"
    DECODING = "decoding"
    COMPLETED = "completed"
    FAILED = "failed"


class ColorMode(Enum):
    MONO = "1-bit Monochrome"
    LEGACY = "16-Color (Header Palette)"
    INDEXED = "256-Color (Indexed)"
    RGB = "24-bit True Color"
    RGBA = "32-bit True Color + Alpha"


def color_mode(header: PCXHeader) -> ColorMode:
    """Pick the reconstruction for a header, or raise UnsupportedFormatError."""
    bpp, planes = header.bits_per_pixel, header.n_planes
    if header.encoding != 1:
        raise UnsupportedFormatError(f"Unsupported encoding {header.encoding} (only RLE is supported)")
    if header.width <= 0 or header.height <= 0:
        raise UnsupportedFormatError(f"Invalid image size: {header.width}x{header.height}")
    if bpp not in (1, 2, 4, 8):
        raise UnsupportedFormatError(f"Unsupported bits per pixel: {bpp}")
    if header.bytes_per_line < packed_length(header.width, bpp):
        raise UnsupportedFormatError(
            f"Bytes per line ({header.bytes_per_line}) too small for width {header.width}")

    if planes == 1:
        if bpp == 1:
            return ColorMode.MONO
        if bpp == 8:
            return ColorMode.INDEXED
        return ColorMode.LEGACY
    if bpp == 8 and planes == 3:
        return ColorMode.RGB
    if bpp == 8 and planes == 4:
        return ColorMode.RGBA
    raise UnsupportedFormatError(f"Unsupported PCX format: {bpp}-bit, {planes} plane(s)")


MONO_COLORS = [(0, 0, 0), (255, 255, 255)]


class PCXDecoder:
    """
    Decodes one PCX image from a byte source.

    States run IDLE -> HEADER_READ -> DECODING -> COMPLETED; any error
    moves the decoder to FAILED and is re-raised.
    """

    def __init__(self, stream, header: Optional[PCXHeader] = None,
                 on_progress: Optional[ProgressCallback] = None):
        self.source = as_source(stream)
        self.header = header
        self.on_progress = on_progress
        self.image: Optional[PixelBuffer] = None
        self.palette: Optional[List[RGB]] = None
        self.progress = 0
        self.state = DecoderState.IDLE if header is None else DecoderState.HEADER_READ

    @property
    def is_pcx_file(self) -> bool:
        return self.header is not None and is_valid_format(self.header)

    def read_header(self) -> PCXHeader:
        if self.state is not DecoderState.IDLE:
            raise RuntimeError(f"Header already read (state: {self.state.value})")
        try:
            self.header = read_header(self.source)
        except PCXError:
            self.state = DecoderState.FAILED
            raise
        self.state = DecoderState.HEADER_READ
        return self.header

    def decode(self) -> PixelBuffer:
        if self.state is not DecoderState.HEADER_READ:
            raise RuntimeError(f"Cannot decode in state {self.state.value}")
        self.state = DecoderState.DECODING
        try:
            mode = color_mode(self.header)
            log.info("Decoding %dx%d image as %s", self.header.width, self.header.height, mode.value)
            image = PixelBuffer(self.header.width, self.header.height)
            if mode is ColorMode.INDEXED:
                self._decode_indexed(image)
            else:
                self._decode_rows(image, mode)
        except Exception as e:
            log.debug("Decoding failed: %s", e)
            self.state = DecoderState.FAILED
            raise
        image.freeze()
        self.image = image
        self.state = DecoderState.COMPLETED
        log.info("Decoding finished")
        self._notify(DecodeProgress(percent=100, image=image))
        return image

    def _scan_lines(self) -> List[bytes]:
        h = self.header
        return [decode_scan_line(self.source, h.width, h.bits_per_pixel, h.bytes_per_line)
                for _ in range(h.n_planes)]

    def _decode_rows(self, image: PixelBuffer, mode: ColorMode):
        if mode is ColorMode.MONO:
            self.palette = MONO_COLORS
        elif mode is ColorMode.LEGACY:
            self.palette = self.header.legacy_palette

        for y in range(image.height):
            planes = self._scan_lines()
            if self.palette is not None:
                row = map_indices(planes[0], self.palette)
            else:
                row = compose_row(planes, image.width)
            image.write_row(y, row)
            self._row_done(y)

    def _decode_indexed(self, image: PixelBuffer):
        # The palette trails the pixel data, so keep the indices until it is read
        index_rows = []
        for y in range(image.height):
            index_rows.append(self._scan_lines()[0])
            self._row_done(y)
        self.palette = resolve_palette(self.source, self.header)
        colors = index_colors(self.header, self.palette)
        if self.palette is None:
            self.palette = colors
        for y, indices in enumerate(index_rows):
            image.write_row(y, map_indices(indices, colors))

    def _row_done(self, y: int):
        self.progress = (y + 1) * 100 // self.header.height
        log.debug("Row %d done (%d%%)", y, self.progress)
        self._notify(DecodeProgress(percent=self.progress))

    def _notify(self, message: DecodeProgress):
        if self.on_progress is not None:
            self.on_progress(message)


def decode_foreground(header: PCXHeader, source,
                      on_progress: Optional[ProgressCallback] = None) -> PixelBuffer:
    return PCXDecoder(source, header=header, on_progress=on_progress).decode()


# =============================== BACKGROUND ===============================

class DecodeTask:
    """
    Runs one decode on a dedicated worker thread.

    Every DecodeProgress is put on `messages` (and passed to `on_progress`
    on the worker thread). The last message carries either the finished
    image or the error. The source must not be touched by anyone else
    while the task runs.
    """

    def __init__(self, header: PCXHeader, source,
                 on_progress: Optional[ProgressCallback] = None):
        self.messages: "queue.Queue[DecodeProgress]" = queue.Queue()
        self._on_progress = on_progress
        self._decoder = PCXDecoder(source, header=header, on_progress=self._post)
        self._thread = threading.Thread(target=self._run, name="pcx-decode", daemon=True)
        self._image: Optional[PixelBuffer] = None
        self._error: Optional[BaseException] = None
        self._terminal: Optional[DecodeProgress] = None

    def start(self) -> "DecodeTask":
        self._thread.start()
        return self

    @property
    def palette(self) -> Optional[List[RGB]]:
        """Colours used for indexed images; valid once the task is done."""
        return self._decoder.palette

    @property
    def done(self) -> bool:
        return not self._thread.is_alive() and (self._image is not None or self._error is not None)

    def result(self, timeout: Optional[float] = None) -> PixelBuffer:
        self._thread.join(timeout)
        if self._thread.is_alive():
            raise TimeoutError("PCX decode still running")
        if self._error is not None:
            raise self._error
        return self._image

    def _post(self, message: DecodeProgress):
        self.messages.put(message)
        if message.finished:
            self._terminal = message
        if self._on_progress is not None:
            self._on_progress(message)

    def _run(self):
        try:
            self._image = self._decoder.decode()
        except Exception as e:
            if self._terminal is not None:
                # the image was already handed off; only the callback failed
                log.exception("Progress callback failed on the completion message")
                self._image = self._terminal.image
                return
            if not isinstance(e, PCXError):
                log.exception("Unexpected error while decoding")
            self._error = e
            try:
                self._post(DecodeProgress(percent=self._decoder.progress, error=e))
            except Exception:
                log.exception("Progress callback failed on the error message")


def decode_background(header: PCXHeader, source,
                      on_progress: Optional[ProgressCallback] = None) -> DecodeTask:
    return DecodeTask(header, source, on_progress).start()


def decode_pcx(path: Path) -> Tuple[PixelBuffer, PCXHeader, Optional[List[RGB]]]:
    """Decode a PCX file in the foreground; returns (image, header, palette)."""
    with open(path, "rb") as fp:
        decoder = PCXDecoder(fp)
        decoder.read_header()
        image = decoder.decode()
        return image, decoder.header, decoder.palette


# =============================== CLI ===============================

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Decode a PCX image")
    parser.add_argument("file", type=Path, help="PCX file to decode")
    parser.add_argument("-o", "--output", type=Path, help="save the decoded image (format from extension)")
    parser.add_argument("--background", action="store_true", help="decode on a worker thread")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    try:
        with open(args.file, "rb") as fp:
            header = read_header(fp)
            for k, v in describe_header(header, args.file).items():
                print(f"{k}: {v}")

            if args.background:
                task = decode_background(header, fp)
                while True:
                    message = task.messages.get()
                    if message.finished:
                        break
                    print(f"\rLoading - {message.percent} %", end="", flush=True)
                print()
                image = task.result()
            else:
                image = decode_foreground(header, fp)
    except PCXError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(f"Decoded {image.width} × {image.height} pixels")
    if args.output:
        image.to_pil().save(args.output)
        print(f"Saved {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
