"""
Perceptual placeholder encoding (BlurHash).

Turns the processor's raw RGBA sample into a short string clients can render
as a blurred preview while the real image loads.
"""

from typing import List

import blurhash

from src.engines.media.processor import PixelSample

COMPONENTS_X = 4
COMPONENTS_Y = 3


def sample_to_rows(sample: PixelSample) -> List[List[List[int]]]:
    """Raw interleaved bytes -> image[y][x][r, g, b]; alpha is dropped."""
    data = sample.data
    channels = sample.channels
    rows = []
    for y in range(sample.height):
        row_start = y * sample.width * channels
        rows.append([
            list(data[offset:offset + 3])
            for offset in range(row_start, row_start + sample.width * channels, channels)
        ])
    return rows


def encode_blurhash(sample: PixelSample, components_x: int = COMPONENTS_X, components_y: int = COMPONENTS_Y) -> str:
    return blurhash.encode(sample_to_rows(sample), components_x=components_x, components_y=components_y)
