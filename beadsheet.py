"""Bead pattern core - beadsheet

Maps images onto a fixed bead palette, reduces the color count and grows
outlines around the design.
"""
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "numpy",
#     "pillow",
# ]
# ///

import json
import logging
import math
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
ALPHA_THRESHOLD = 50  # alpha below this is an empty cell
FALLBACK_CODE = "H7"
FALLBACK_HEX = "#000000"
OUTLINE_FALLBACK_HEX = "#ffffff"
DEFAULT_MERGE_THRESHOLD = 10
DEFAULT_PALETTE = Path(__file__).parent / "colors" / "mard.json"

_HEX_RE = re.compile(r"#?([0-9a-fA-F]{6})")

RGB = tuple[int, int, int]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BeadColor:
    """Palette entry: catalogue code, canonical hex and RGB triple."""

    code: str
    hex: str
    rgb: RGB


@dataclass(frozen=True)
class Bead:
    """A filled grid cell. Empty cells are ``None``."""

    x: int
    y: int
    code: str
    hex: str


@dataclass(frozen=True)
class ColorCount:
    code: str
    hex: str
    count: int


@dataclass(frozen=True)
class CropBox:
    """Square crop in source image pixels. May reach past the image edges."""

    x: int
    y: int
    width: int
    height: int


Palette = dict[str, BeadColor]
Grid = list[list[Bead | None]]

FALLBACK_COLOR = BeadColor(FALLBACK_CODE, FALLBACK_HEX, (0, 0, 0))


# ---------------------------------------------------------------------------
# Color parsing & distance
# ---------------------------------------------------------------------------

def hex_to_rgb(h: str) -> RGB:
    """Convert '#RRGGBB' (any case, '#' optional) to (R, G, B).

    Malformed input gives black instead of raising.
    """
    m = _HEX_RE.fullmatch(h.strip()) if isinstance(h, str) else None
    if m is None:
        return 0, 0, 0
    v = m.group(1)
    return int(v[0:2], 16), int(v[2:4], 16), int(v[4:6], 16)


def rgb_to_hex(rgb: Sequence[int]) -> str:
    return f"#{int(rgb[0]):02x}{int(rgb[1]):02x}{int(rgb[2]):02x}"


def color_distance(c1: Sequence[float], c2: Sequence[float]) -> float:
    """Euclidean distance in RGB space."""
    return math.sqrt((c1[0] - c2[0]) ** 2
                     + (c1[1] - c2[1]) ** 2
                     + (c1[2] - c2[2]) ** 2)


def pairwise_distances(a: np.ndarray, b: np.ndarray | None = None) -> np.ndarray:
    """RGB distance matrix between rows of ``a`` (N, 3) and ``b`` (M, 3)."""
    a = np.asarray(a, dtype=np.float64)
    b = a if b is None else np.asarray(b, dtype=np.float64)
    diff = a[:, np.newaxis, :] - b[np.newaxis, :, :]
    return np.sqrt((diff ** 2).sum(axis=-1))


# ---------------------------------------------------------------------------
# Bead color database
# ---------------------------------------------------------------------------

def build_palette(label_to_hex: Mapping[str, str],
                  exclude: Iterable[str] = ()) -> Palette:
    """Build an ordered palette from a code -> hex mapping."""
    skip = set(exclude)
    palette: Palette = {}
    for code, hexval in label_to_hex.items():
        if code in skip:
            continue
        rgb = hex_to_rgb(hexval)
        palette[code] = BeadColor(code, rgb_to_hex(rgb), rgb)
    return palette


def load_bead_colors(
    json_path: str | Path = DEFAULT_PALETTE,
) -> tuple[str, Palette, dict[str, list[str] | None]]:
    """Load a palette file, returning (brand, palette, presets).

    Transparent beads are excluded. A preset maps to a list of codes, or
    ``None`` meaning the whole palette.
    """
    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    palette = build_palette(data["label_to_hex"],
                            exclude=data.get("transparent", []))
    presets: dict[str, list[str] | None] = {}
    for key, preset in data.get("presets", {}).items():
        colors = preset.get("colors")
        presets[key] = list(colors) if colors is not None else None
    if not presets:
        presets["all_colors"] = None
    brand = data.get("brand", Path(json_path).stem)
    return brand, palette, presets


# ---------------------------------------------------------------------------
# Nearest color lookup
# ---------------------------------------------------------------------------

def find_nearest_color(hex_value: str, palette: Palette,
                       candidates: Sequence[str] | None = None) -> BeadColor:
    """Return the palette color closest to ``hex_value``.

    Only ``candidates`` are considered when given; codes missing from the
    palette are skipped. Ties keep the first candidate. Falls back to
    black (H7) when nothing can be matched.
    """
    target = hex_to_rgb(hex_value)
    codes = palette.keys() if candidates is None else candidates
    best = FALLBACK_COLOR
    best_dist = math.inf
    for code in codes:
        color = palette.get(code)
        if color is None:
            continue
        d = color_distance(target, color.rgb)
        if d < best_dist:
            best_dist = d
            best = color
    return best


def find_nearest_in_palette(source_code: str, palette_codes: Sequence[str],
                            palette: Palette) -> BeadColor | None:
    """Closest other code to ``source_code`` among ``palette_codes``.

    The source code itself is never returned. Returns None when the source
    is unknown or there is no other usable candidate.
    """
    source = palette.get(source_code)
    if source is None:
        return None
    best: BeadColor | None = None
    best_dist = math.inf
    for code in palette_codes:
        if code == source_code:
            continue
        color = palette.get(code)
        if color is None:
            continue
        d = color_distance(source.rgb, color.rgb)
        if d < best_dist:
            best_dist = d
            best = color
    return best


# ---------------------------------------------------------------------------
# Quantization
# ---------------------------------------------------------------------------

def default_crop(width: int, height: int) -> CropBox:
    """Centered square that contains the whole image."""
    side = max(width, height)
    return CropBox((width - side) // 2, (height - side) // 2, side, side)


def sample_image(image: Image.Image, resolution: int,
                 crop: CropBox | None = None) -> np.ndarray:
    """Crop and nearest-neighbour resize to a (resolution, resolution, 4) array.

    Areas of the crop outside the image come back fully transparent.
    """
    if resolution <= 0:
        raise ValueError(f"resolution must be positive, got {resolution}")
    if crop is None:
        crop = default_crop(*image.size)
    if crop.width <= 0 or crop.height <= 0:
        raise ValueError(f"Empty crop region: {crop}")
    rgba = image.convert("RGBA")
    region = rgba.crop((crop.x, crop.y, crop.x + crop.width, crop.y + crop.height))
    region = region.resize((resolution, resolution), Image.Resampling.NEAREST)
    return np.array(region, dtype=np.uint8)


def quantize_pixels(rgba: np.ndarray, palette: Palette,
                    candidates: Sequence[str] | None = None) -> Grid:
    """Map an (H, W, 4) RGBA array onto palette codes.

    Pixels with alpha below ALPHA_THRESHOLD become empty cells.
    """
    rgba = np.asarray(rgba)
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected an (H, W, 4) RGBA array, got {rgba.shape}")
    n_rows, n_cols = rgba.shape[:2]
    grid: Grid = [[None] * n_cols for _ in range(n_rows)]

    opaque = rgba[..., 3] >= ALPHA_THRESHOLD
    if not opaque.any():
        return grid

    codes = [c for c in (palette.keys() if candidates is None else candidates)
             if c in palette]

    # Distances are computed once per distinct source color
    flat_rgb = rgba[opaque][:, :3].astype(np.int32)
    uniq, inverse = np.unique(flat_rgb, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    if codes:
        pal_rgb = np.array([palette[c].rgb for c in codes], dtype=np.float64)
        nearest = pairwise_distances(uniq, pal_rgb).argmin(axis=1)
        chosen = [palette[codes[k]] for k in nearest.tolist()]
    else:
        chosen = [FALLBACK_COLOR] * len(uniq)

    ys, xs = np.nonzero(opaque)
    for y, x, k in zip(ys.tolist(), xs.tolist(), inverse.tolist()):
        color = chosen[k]
        grid[y][x] = Bead(x, y, color.code, color.hex)
    return grid


def image_to_grid(image: Image.Image, palette: Palette, resolution: int,
                  crop: CropBox | None = None,
                  candidates: Sequence[str] | None = None) -> Grid:
    """Sample ``image`` at ``resolution`` and quantize it to the palette."""
    return quantize_pixels(sample_image(image, resolution, crop),
                           palette, candidates)


# ---------------------------------------------------------------------------
# Color counting & reduction
# ---------------------------------------------------------------------------

def count_colors(grid: Grid) -> list[ColorCount]:
    """Per-code bead counts, most used first (ties in scan order)."""
    counts: dict[str, int] = {}
    hexes: dict[str, str] = {}
    for row in grid:
        for bead in row:
            if bead is None:
                continue
            counts[bead.code] = counts.get(bead.code, 0) + 1
            hexes.setdefault(bead.code, bead.hex)
    items = [ColorCount(code, hexes[code], n) for code, n in counts.items()]
    return sorted(items, key=lambda c: -c.count)


def resolve_merge_map(merge_map: Mapping[str, str],
                      codes: Iterable[str]) -> dict[str, str]:
    """Follow victim -> survivor links of every code to its final survivor."""
    resolved: dict[str, str] = {}
    for code in codes:
        target = code
        for _ in range(len(merge_map)):
            if target not in merge_map:
                break
            target = merge_map[target]
        resolved[code] = target
    return resolved


def _remap(grid: Grid, mapping: Mapping[str, tuple[str, str]]) -> Grid:
    """Rewrite beads whose code is in ``mapping`` (code -> (code, hex)).

    Untouched beads are carried over as the same objects.
    """
    out: Grid = []
    for row in grid:
        new_row: list[Bead | None] = []
        for bead in row:
            if bead is not None and bead.code in mapping:
                code, hexval = mapping[bead.code]
                if code != bead.code:
                    bead = replace(bead, code=code, hex=hexval)
            new_row.append(bead)
        out.append(new_row)
    return out


def _closest_active_pair(dist: np.ndarray) -> tuple[int, int]:
    """Lowest (i, j) pair holding the smallest finite distance, or (-1, -1)."""
    flat = int(np.argmin(dist))
    if not np.isfinite(dist.flat[flat]):
        return -1, -1
    i, j = divmod(flat, dist.shape[1])
    return i, j


def reduce_colors(grid: Grid, max_colors: int) -> Grid:
    """Merge the closest pair of colors until ``max_colors`` remain.

    The less used color of each pair is absorbed into the more used one
    (ties go to the earlier color), so dominant colors survive. Returns
    ``grid`` itself when it already fits the budget.
    """
    counts = count_colors(grid)
    if len(counts) <= max_colors:
        return grid

    codes = [c.code for c in counts]
    hexes = {c.code: c.hex for c in counts}
    tally = [c.count for c in counts]
    n = len(codes)

    # Upper triangle only: entry (i, j) with i < j is the pair distance
    dist = pairwise_distances(np.array([hex_to_rgb(c.hex) for c in counts]))
    dist[np.tril_indices(n)] = np.inf

    merge_map: dict[str, str] = {}
    remaining = n
    while remaining > max_colors:
        i, j = _closest_active_pair(dist)
        if i < 0:
            logger.debug("No mergeable pair left with %d colors", remaining)
            break
        survivor, victim = (i, j) if tally[i] >= tally[j] else (j, i)
        merge_map[codes[victim]] = codes[survivor]
        tally[survivor] += tally[victim]
        dist[victim, :] = np.inf
        dist[:, victim] = np.inf
        remaining -= 1
        logger.debug("Merged %s into %s (%.1f apart)",
                     codes[victim], codes[survivor],
                     color_distance(hex_to_rgb(hexes[codes[victim]]),
                                    hex_to_rgb(hexes[codes[survivor]])))

    resolved = resolve_merge_map(merge_map, codes)
    mapping = {code: (target, hexes[target])
               for code, target in resolved.items() if target != code}
    return _remap(grid, mapping)


def merge_color(grid: Grid, source_code: str, target_code: str,
                palette: Palette) -> Grid:
    """Replace every ``source_code`` bead with ``target_code``."""
    target = palette.get(target_code)
    if target is None or source_code == target_code:
        return grid
    return _remap(grid, {source_code: (target.code, target.hex)})


def merge_into_nearest(grid: Grid, code: str, palette: Palette) -> Grid:
    """Fold ``code`` into the closest other color already in the grid."""
    in_use = [c.code for c in count_colors(grid)]
    target = find_nearest_in_palette(code, in_use, palette)
    if target is None:
        return grid
    return merge_color(grid, code, target.code, palette)


def merge_small_counts(grid: Grid, palette: Palette,
                       threshold: int = DEFAULT_MERGE_THRESHOLD) -> Grid:
    """Merge every color used fewer than ``threshold`` times into its
    nearest frequent color.

    When no color reaches the threshold the most used one is kept and
    everything else merges into it.
    """
    counts = count_colors(grid)
    keepers = [c for c in counts if c.count >= threshold]
    sources = [c for c in counts if c.count < threshold]
    if not sources:
        return grid
    if not keepers:
        keepers = [sources.pop(0)]
        if not sources:
            return grid

    keeper_codes = [c.code for c in keepers]
    mapping: dict[str, tuple[str, str]] = {}
    for src in sources:
        target = find_nearest_in_palette(src.code, keeper_codes, palette)
        if target is not None:
            mapping[src.code] = (target.code, target.hex)
    logger.debug("Merging %d rare colors below %d", len(mapping), threshold)
    return _remap(grid, mapping)


# ---------------------------------------------------------------------------
# Outline
# ---------------------------------------------------------------------------

def filled_mask(grid: Grid) -> np.ndarray:
    return np.array([[bead is not None for bead in row] for row in grid],
                    dtype=bool)


def _dilate8(mask: np.ndarray) -> np.ndarray:
    """8-connected dilation via shifts; cells past the edge count as empty."""
    H, W = mask.shape
    padded = np.zeros((H + 2, W + 2), dtype=bool)
    padded[1:-1, 1:-1] = mask
    dilated = np.zeros_like(mask)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dy == 0 and dx == 0:
                continue
            dilated |= padded[1 + dy:1 + dy + H, 1 + dx:1 + dx + W]
    return dilated


def apply_outline(grid: Grid, width: int, outline_code: str,
                  palette: Palette) -> Grid:
    """Grow ``width`` rings of ``outline_code`` beads around the design.

    Each ring is computed from the previous ring's snapshot, so growth is
    one cell per pass in all 8 directions.
    """
    if width <= 0 or not grid or not grid[0]:
        return grid
    color = palette.get(outline_code)
    outline_hex = color.hex if color is not None else OUTLINE_FALLBACK_HEX

    current = grid
    for ring in range(width):
        filled = filled_mask(current)
        grown = _dilate8(filled) & ~filled
        if not grown.any():
            logger.debug("Outline stopped growing after %d rings", ring)
            break
        nxt = [list(row) for row in current]
        ys, xs = np.nonzero(grown)
        for y, x in zip(ys.tolist(), xs.tolist()):
            nxt[y][x] = Bead(x, y, outline_code, outline_hex)
        current = nxt
    return current


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def build_pattern(
    image: Image.Image, palette: Palette,
    resolution: int, partitions: int = 1,
    crop: CropBox | None = None,
    candidates: Sequence[str] | None = None,
    max_colors: int = 64,
    merge_threshold: int = 0,
    outline_width: int = 0,
    outline_code: str = FALLBACK_CODE,
) -> tuple[Grid, Grid]:
    """Run quantize -> reduce -> rare-color merge -> outline.

    Returns (raw_grid, final_grid). The grid side is
    ``resolution * partitions``.
    """
    if partitions <= 0:
        raise ValueError(f"partitions must be positive, got {partitions}")
    raw = image_to_grid(image, palette, resolution * partitions, crop, candidates)
    grid = reduce_colors(raw, max_colors)
    if merge_threshold > 0:
        grid = merge_small_counts(grid, palette, merge_threshold)
    grid = apply_outline(grid, outline_width, outline_code, palette)
    return raw, grid
