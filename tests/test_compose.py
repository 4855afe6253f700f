"""
Pytest tests for plane composition and palette handling
"""

import io

import pytest

from pcxdecoder import (
    FormatMismatchError,
    MissingPaletteError,
    TruncatedDataError,
    compose_row,
    index_colors,
    map_indices,
    read_header,
    resolve_palette,
)
from pcx_bytes import legacy_colormap, make_header, vga_palette


def header_for(**kwargs):
    return read_header(io.BytesIO(make_header(**kwargs)))


class TestComposeRow:
    def test_rgb(self):
        row = compose_row([bytes([10, 20, 30]), bytes([40, 50, 60]), bytes([70, 80, 90])])
        assert row == [(10, 40, 70, 255), (20, 50, 80, 255), (30, 60, 90, 255)]

    def test_rgba_takes_alpha_from_fourth_plane(self):
        row = compose_row([bytes([1, 2]), bytes([3, 4]), bytes([5, 6]), bytes([0, 128])], width=2)
        assert row == [(1, 3, 5, 0), (2, 4, 6, 128)]

    def test_single_plane_is_grey(self):
        assert compose_row([bytes([0, 200])]) == [(0, 0, 0, 255), (200, 200, 200, 255)]

    def test_plane_lengths_must_agree(self):
        with pytest.raises(FormatMismatchError):
            compose_row([bytes([1, 2]), bytes([3]), bytes([5, 6])])

    def test_plane_length_must_match_width(self):
        with pytest.raises(FormatMismatchError):
            compose_row([bytes([1, 2]), bytes([3, 4]), bytes([5, 6])], width=3)

    def test_two_planes_are_rejected(self):
        with pytest.raises(FormatMismatchError):
            compose_row([bytes([1]), bytes([2])])


class TestResolvePalette:
    def test_no_marker(self):
        fp = io.BytesIO(b"\x0b" + b"\x00" * 768)

        assert resolve_palette(fp, header_for(n_planes=1)) is None
        assert fp.tell() == 1

    def test_exhausted_source(self):
        assert resolve_palette(io.BytesIO(b""), header_for(n_planes=1)) is None

    def test_marker_reads_768_bytes(self):
        colors = [(i, 255 - i, i // 2) for i in range(256)]
        fp = io.BytesIO(vga_palette(colors) + b"tail")

        palette = resolve_palette(fp, header_for(n_planes=1))

        assert palette == colors
        assert fp.tell() == 769
        assert fp.read() == b"tail"

    def test_short_palette(self):
        with pytest.raises(TruncatedDataError):
            resolve_palette(io.BytesIO(b"\x0c" + b"\x01" * 100), header_for(n_planes=1))


class TestIndexColors:
    def test_extended_palette_wins(self):
        palette = [(9, 9, 9)] * 256
        assert index_colors(header_for(n_planes=1, palette_type=2), palette) is palette

    def test_greyscale_fallback(self):
        colors = index_colors(header_for(n_planes=1, palette_type=2), None)
        assert len(colors) == 256
        assert colors[77] == (77, 77, 77)

    def test_legacy_fallback(self):
        header = header_for(n_planes=1, colormap=legacy_colormap([(255, 0, 0), (0, 255, 0)]))
        colors = index_colors(header, None)
        assert len(colors) == 16
        assert colors[:2] == [(255, 0, 0), (0, 255, 0)]

    def test_map_indices(self):
        assert map_indices(bytes([1, 0]), [(1, 2, 3), (4, 5, 6)]) == [(4, 5, 6, 255), (1, 2, 3, 255)]

    def test_index_outside_palette(self):
        with pytest.raises(MissingPaletteError, match="index 20"):
            map_indices(bytes([0, 20]), [(0, 0, 0)] * 16)
