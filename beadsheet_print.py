"""Bead pattern sheets - beadsheet print layout

Splits a finished bead grid into N x N printable sheets and lays out each
sheet: the grid itself, a thumbnail of the whole design and the material
list (BOM) of the colors used on that sheet.
"""
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "numpy",
#     "pillow",
# ]
# ///

import argparse
import logging
import math
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import NamedTuple

from PIL import Image, ImageDraw, ImageFont

import beadsheet
from beadsheet import ColorCount, CropBox, Grid

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
PAGE_SIZES = {"tall": (2400, 3200), "wide": (3200, 2400)}
DEFAULT_MARGIN = 90  # doubled on the page
TALL_CONTENT_GAP = 120
WIDE_CONTENT_GAP = 100
LABEL_OFFSET = 40
RULER_OFFSET = 40
THUMB_SQUARE_THRESHOLD = 64  # full grids taller than this use squares

BOM_GAP_X = 16
BOM_GAP_Y = 24
BOM_MIN_SLOT_W = 60
BOM_MAX_ITEM_H = 140
BOM_MAX_COLS = 8
BOM_ASPECT = 4.0
BOM_FALLBACK_ITEM_H = 10.0
BOM_MIN_GAIN = 2.0  # a wider layout must beat the current best by this much

EXPORT_FORMATS = {"png": "png", "jpeg": "jpg", "jpg": "jpg", "pdf": "pdf"}


# ---------------------------------------------------------------------------
# Layout types
# ---------------------------------------------------------------------------

class Rect(NamedTuple):
    x: float
    y: float
    w: float
    h: float


@dataclass(frozen=True)
class SheetLayout:
    """Page regions for one sheet, in output pixels."""

    grid: Rect
    thumb: Rect
    bom: Rect
    label_pos: tuple[float, float]


@dataclass(frozen=True)
class BomConfig:
    cols: int
    item_h: float
    slot_w: float


@dataclass(frozen=True)
class SheetPlan:
    """Everything needed to draw one sheet."""

    index: int
    label: str
    partitions: int
    block_size: int
    width: int
    height: int
    layout: SheetLayout
    origin: tuple[int, int]
    cell_size: float
    window: Grid
    thumb_cell: float
    thumb_squares: bool
    highlight: Rect
    counts: list[ColorCount]
    bom: BomConfig
    bom_items: list[Rect]


# ---------------------------------------------------------------------------
# Sheet addressing
# ---------------------------------------------------------------------------

def column_label(index: int) -> str:
    """Ruler label for a 0-based column: A..Z, AA, AB, ... (bijective base 26)."""
    label = ""
    i = index
    while i >= 0:
        label = chr(65 + i % 26) + label
        i = i // 26 - 1
    return label


def sheet_label(index: int, partitions: int) -> str:
    """'<row letter><1-based column>', e.g. sheet 3 of 2x2 is 'B2'."""
    row, col = divmod(index, partitions)
    return f"{chr(65 + row)}{col + 1}"


def sheet_origin(index: int, partitions: int, block_size: int) -> tuple[int, int]:
    """Top-left (x, y) cell of a sheet inside the full grid."""
    row, col = divmod(index, partitions)
    return col * block_size, row * block_size


def sheet_window(grid: Grid, index: int, partitions: int, block_size: int) -> Grid:
    x0, y0 = sheet_origin(index, partitions, block_size)
    return [row[x0:x0 + block_size] for row in grid[y0:y0 + block_size]]


def page_size(orientation: str) -> tuple[int, int]:
    try:
        return PAGE_SIZES[orientation]
    except KeyError:
        raise ValueError(f"Unknown orientation {orientation!r}, "
                         f"expected one of {sorted(PAGE_SIZES)}") from None


# ---------------------------------------------------------------------------
# Page layout
# ---------------------------------------------------------------------------

def compute_layout(orientation: str, width: int, height: int,
                   margin: float) -> SheetLayout:
    """Split the page into grid, thumbnail and BOM regions.

    tall: grid on top, thumbnail bottom-left, BOM bottom-right.
    wide: grid on the left, thumbnail and BOM stacked in a sidebar a third
    of the grid wide; the whole block is centered on the page.
    """
    if orientation not in PAGE_SIZES:
        raise ValueError(f"Unknown orientation {orientation!r}")
    safe_w = width - 2 * margin
    safe_h = height - 2 * margin

    if orientation == "tall":
        gap = TALL_CONTENT_GAP
        max_grid_h = (safe_h - gap - 100) * 0.75
        grid_size = max(0, math.floor(min(safe_w, max_grid_h)))
        thumb_size = grid_size / 3
        grid = Rect(margin + (safe_w - grid_size) / 2, margin, grid_size, grid_size)
        bottom_y = margin + grid_size + gap
        thumb = Rect(grid.x, bottom_y, thumb_size, thumb_size)
        label_pos = (thumb.x + thumb_size / 2, thumb.y + thumb_size + LABEL_OFFSET)
        bom_x = grid.x + thumb_size + gap
        bom = Rect(bom_x, bottom_y,
                   grid.x + grid_size - bom_x,
                   (height - margin - 60) - bottom_y)
    else:
        gap = WIDE_CONTENT_GAP
        max_grid_w = (safe_w - gap) * 0.75
        grid_size = max(0, math.floor(min(max_grid_w, safe_h)))
        sidebar_w = grid_size / 3
        start_x = (width - (grid_size + gap + sidebar_w)) / 2
        start_y = (height - grid_size) / 2
        grid = Rect(start_x, start_y, grid_size, grid_size)
        sidebar_x = start_x + grid_size + gap
        thumb = Rect(sidebar_x, start_y, sidebar_w, sidebar_w)
        label_pos = (thumb.x + sidebar_w / 2, thumb.y + sidebar_w + LABEL_OFFSET)
        bom_y = label_pos[1] + 60
        bom = Rect(sidebar_x, bom_y, sidebar_w, start_y + grid_size - bom_y)

    return SheetLayout(grid=grid, thumb=thumb, bom=bom, label_pos=label_pos)


def pack_bom(count: int, rect: Rect) -> BomConfig:
    """Pick the BOM column count that gives the tallest items.

    Tries 1..BOM_MAX_COLS columns. Slots narrower than BOM_MIN_SLOT_W are
    rejected and items are capped at a quarter of the slot width and at
    BOM_MAX_ITEM_H. If nothing fits, a single column of small items is
    returned.
    """
    best_cols, best_h = 1, BOM_FALLBACK_ITEM_H
    for cols in range(1, BOM_MAX_COLS + 1):
        if count <= 0:
            break
        rows = math.ceil(count / cols)
        avail_w = rect.w - (cols - 1) * BOM_GAP_X
        avail_h = rect.h - (rows - 1) * BOM_GAP_Y
        if avail_w <= 0 or avail_h <= 0:
            continue
        slot_w = avail_w / cols
        slot_h = avail_h / rows
        if slot_w < BOM_MIN_SLOT_W:
            continue
        h = min(slot_h, slot_w / BOM_ASPECT, BOM_MAX_ITEM_H)
        if h > best_h + BOM_MIN_GAIN:
            best_cols, best_h = cols, h

    slot_w = (rect.w - (best_cols - 1) * BOM_GAP_X) / best_cols
    logger.debug("BOM: %d colors in %d columns, item height %.1f",
                 count, best_cols, best_h)
    return BomConfig(cols=best_cols, item_h=best_h, slot_w=slot_w)


def bom_positions(count: int, rect: Rect, config: BomConfig) -> list[Rect]:
    """Row-major item slots for ``count`` BOM entries."""
    items: list[Rect] = []
    for idx in range(count):
        row, col = divmod(idx, config.cols)
        items.append(Rect(rect.x + col * (config.slot_w + BOM_GAP_X),
                          rect.y + row * (config.item_h + BOM_GAP_Y),
                          config.slot_w, config.item_h))
    return items


def plan_sheet(
    grid: Grid, index: int, partitions: int, block_size: int,
    orientation: str = "tall",
    width: int | None = None, height: int | None = None,
    margin: float = DEFAULT_MARGIN * 2,
) -> SheetPlan:
    """Compute the geometry of sheet ``index`` of an N x N split of ``grid``."""
    if partitions <= 0 or block_size <= 0:
        raise ValueError("partitions and block_size must be positive")
    if not 0 <= index < partitions * partitions:
        raise ValueError(f"Sheet index {index} out of range for "
                         f"{partitions}x{partitions} sheets")
    page_w, page_h = page_size(orientation)
    width = page_w if width is None else width
    height = page_h if height is None else height

    layout = compute_layout(orientation, width, height, margin)
    origin = sheet_origin(index, partitions, block_size)
    window = sheet_window(grid, index, partitions, block_size)
    counts = beadsheet.count_colors(window)
    bom = pack_bom(len(counts), layout.bom)

    full_side = max(len(grid), len(grid[0]) if grid else 1, 1)
    thumb_cell = layout.thumb.w / full_side
    highlight = Rect(layout.thumb.x + origin[0] * thumb_cell,
                     layout.thumb.y + origin[1] * thumb_cell,
                     block_size * thumb_cell, block_size * thumb_cell)

    return SheetPlan(
        index=index,
        label=sheet_label(index, partitions),
        partitions=partitions,
        block_size=block_size,
        width=width,
        height=height,
        layout=layout,
        origin=origin,
        cell_size=layout.grid.w / block_size,
        window=window,
        thumb_cell=thumb_cell,
        thumb_squares=len(grid) > THUMB_SQUARE_THRESHOLD,
        highlight=highlight,
        counts=counts,
        bom=bom,
        bom_items=bom_positions(len(counts), layout.bom, bom),
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

@lru_cache(maxsize=64)
def _load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """Try to load a monospace system font, fall back to default."""
    candidates = [
        "/System/Library/Fonts/Menlo.ttc",
        "/System/Library/Fonts/SFNSMono.ttf",
        "/usr/share/fonts/truetype/jetbrains-mono/JetBrainsMono-Light.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
    ]
    size = max(1, int(size))
    for path in candidates:
        try:
            return ImageFont.truetype(path, size)
        except (OSError, IOError):
            continue
    try:
        return ImageFont.truetype("consola.ttf", size)
    except (OSError, IOError):
        return ImageFont.load_default()


def _text_color(hexval: str) -> str:
    """Black or white text for contrast against the given background."""
    r, g, b = beadsheet.hex_to_rgb(hexval)
    lum = 0.299 * r + 0.587 * g + 0.114 * b
    return "#000000" if lum > 140 else "#ffffff"


def _draw_centered(draw: ImageDraw.ImageDraw, cx: float, cy: float, text: str,
                   font, fill: str) -> None:
    bbox = draw.textbbox((0, 0), text, font=font)
    tw = bbox[2] - bbox[0]
    th = bbox[3] - bbox[1]
    draw.text((cx - tw / 2 - bbox[0], cy - th / 2 - bbox[1]), text,
              fill=fill, font=font)


def _dashed_rect(draw: ImageDraw.ImageDraw, rect: Rect, fill: str,
                 width: int, dash: float = 6) -> None:
    x0, y0, x1, y1 = rect.x, rect.y, rect.x + rect.w, rect.y + rect.h
    for (ax, ay), (bx, by) in (((x0, y0), (x1, y0)), ((x1, y0), (x1, y1)),
                               ((x1, y1), (x0, y1)), ((x0, y1), (x0, y0))):
        length = math.hypot(bx - ax, by - ay)
        if length == 0:
            continue
        ux, uy = (bx - ax) / length, (by - ay) / length
        pos = 0.0
        while pos < length:
            end = min(pos + dash, length)
            draw.line([(ax + ux * pos, ay + uy * pos), (ax + ux * end, ay + uy * end)],
                      fill=fill, width=width)
            pos += 2 * dash


def _draw_grid(draw: ImageDraw.ImageDraw, plan: SheetPlan, show_grid: bool,
               dark: bool) -> None:
    cell = plan.cell_size
    ox, oy = plan.layout.grid.x, plan.layout.grid.y
    grid_line = "#444444" if dark else "#e5e5e5"
    bead_line = grid_line if show_grid else ("#333333" if dark else "#f0f0f0")

    if show_grid:
        ruler_font = _load_font(max(14, min(36, cell * 0.6)))
        for x in range(plan.block_size):
            _draw_centered(draw, ox + x * cell + cell / 2, oy - RULER_OFFSET,
                           column_label(x), ruler_font, "#888888")
        for y in range(plan.block_size):
            _draw_centered(draw, ox - RULER_OFFSET, oy + y * cell + cell / 2,
                           str(y + 1), ruler_font, "#888888")

    code_font = _load_font(max(16, math.floor(cell * 0.4)))
    for y in range(plan.block_size):
        row = plan.window[y] if y < len(plan.window) else []
        for x in range(plan.block_size):
            bead = row[x] if x < len(row) else None
            box = [ox + x * cell, oy + y * cell, ox + (x + 1) * cell, oy + (y + 1) * cell]
            if bead is None:
                if show_grid:
                    draw.rectangle(box, outline=grid_line, width=1)
                continue
            draw.rectangle(box, fill=bead.hex, outline=bead_line, width=1)
            if cell > 10:
                _draw_centered(draw, box[0] + cell / 2, box[1] + cell / 2,
                               bead.code, code_font, _text_color(bead.hex))

    if show_grid:
        guide = "#888888" if dark else "#333333"
        side = cell * plan.block_size
        for i in range(0, plan.block_size + 1, 5):
            draw.line([(ox + i * cell, oy), (ox + i * cell, oy + side)], fill=guide, width=2)
            draw.line([(ox, oy + i * cell), (ox + side, oy + i * cell)], fill=guide, width=2)
        draw.rectangle([ox, oy, ox + side, oy + side], outline=guide, width=2)


def _draw_thumbnail(draw: ImageDraw.ImageDraw, plan: SheetPlan, full_grid: Grid,
                    dark: bool) -> None:
    tc = plan.thumb_cell
    tx, ty = plan.layout.thumb.x, plan.layout.thumb.y
    radius = tc / 2
    for y, row in enumerate(full_grid):
        for x, bead in enumerate(row):
            if bead is None:
                continue
            if plan.thumb_squares:
                draw.rectangle([tx + x * tc, ty + y * tc, tx + (x + 1) * tc, ty + (y + 1) * tc],
                               fill=bead.hex)
            else:
                cx, cy, r = tx + x * tc + radius, ty + y * tc + radius, radius * 1.1
                draw.ellipse([cx - r, cy - r, cx + r, cy + r], fill=bead.hex)

    # Solid stroke, then dashed in the opposite color
    h = plan.highlight
    box = [h.x, h.y, h.x + h.w, h.y + h.h]
    draw.rectangle(box, outline="#ffffff" if dark else "#000000", width=3)
    _dashed_rect(draw, h, "#000000" if dark else "#ffffff", width=2)


def _draw_bom(draw: ImageDraw.ImageDraw, plan: SheetPlan, text_fill: str) -> None:
    item_h = plan.bom.item_h
    radius = item_h / 2
    code_font = _load_font(math.floor(item_h * 0.35))
    count_font = _load_font(math.floor(item_h * 0.45))
    for count, slot in zip(plan.counts, plan.bom_items):
        cx, cy = slot.x + radius, slot.y + radius
        draw.ellipse([cx - radius, cy - radius, cx + radius, cy + radius], fill=count.hex)
        if item_h >= 20:
            _draw_centered(draw, cx, cy, count.code, code_font, _text_color(count.hex))
        text = f"x{count.count}"
        bbox = draw.textbbox((0, 0), text, font=count_font)
        draw.text((slot.x + 2 * radius + item_h * 0.2 - bbox[0],
                   cy - (bbox[3] - bbox[1]) / 2 - bbox[1]),
                  text, fill=text_fill, font=count_font)


def render_sheet(plan: SheetPlan, full_grid: Grid, show_grid: bool = True,
                 dark: bool = False, brand: str = "beadsheet") -> Image.Image:
    """Draw one sheet: rulers and grid, thumbnail, sheet label, BOM, footer."""
    background = "#141414" if dark else "#ffffff"
    text_fill = "#eeeeee" if dark else "#000000"
    img = Image.new("RGB", (plan.width, plan.height), background)
    draw = ImageDraw.Draw(img)

    if full_grid:
        _draw_grid(draw, plan, show_grid, dark)
        _draw_thumbnail(draw, plan, full_grid, dark)
        if plan.partitions > 1:
            lx, ly = plan.layout.label_pos
            _draw_centered(draw, lx, ly, f"Sheet {plan.label}", _load_font(32), text_fill)
        _draw_bom(draw, plan, text_fill)

    footer_font = _load_font(28)
    bbox = draw.textbbox((0, 0), brand, font=footer_font)
    draw.text((plan.width / 2 - (bbox[2] - bbox[0]) / 2 - bbox[0],
               plan.height - 30 - bbox[3]),
              brand, fill="#666666" if dark else "#999999", font=footer_font)
    return img


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def _output_base(output: Path) -> Path:
    if output.suffix.lower() in {".png", ".jpg", ".jpeg", ".pdf"}:
        return output.with_suffix("")
    return output


def export_sheets(
    grid: Grid, output: str | Path, fmt: str = "png",
    partitions: int = 1, block_size: int | None = None,
    orientation: str = "tall", margin: float = DEFAULT_MARGIN * 2,
    show_grid: bool = True, dark: bool = False, brand: str = "beadsheet",
) -> list[Path]:
    """Render every sheet and write them out.

    png/jpeg: one file, or ``<name>_<label>.<ext>`` per sheet when split.
    pdf: a single file with one page per sheet.
    """
    ext = EXPORT_FORMATS.get(fmt.lower())
    if ext is None:
        raise ValueError(f"Unknown export format {fmt!r}")
    if block_size is None:
        block_size = max(1, len(grid) // max(1, partitions))
    base = _output_base(Path(output))
    total = partitions * partitions

    def _render(i: int) -> Image.Image:
        plan = plan_sheet(grid, i, partitions, block_size, orientation, margin=margin)
        return render_sheet(plan, grid, show_grid=show_grid, dark=dark, brand=brand)

    if ext == "pdf":
        path = base.with_name(f"{base.name}.pdf")
        pages = [_render(i) for i in range(total)]
        pages[0].save(path, "PDF", save_all=True, append_images=pages[1:])
        return [path]

    save_kwargs = {"quality": 90} if ext == "jpg" else {}
    if total == 1:
        path = base.with_name(f"{base.name}.{ext}")
        _render(0).save(path, **save_kwargs)
        return [path]
    paths: list[Path] = []
    for i in range(total):
        path = base.with_name(f"{base.name}_{sheet_label(i, partitions)}.{ext}")
        _render(i).save(path, **save_kwargs)
        paths.append(path)
    return paths


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _parse_crop(text: str) -> CropBox:
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 4:
        raise ValueError(f"Crop must be x,y,w,h, got {text!r}")
    x, y, w, h = (int(p) for p in parts)
    return CropBox(x, y, w, h)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bead pattern sheet generator"
    )
    parser.add_argument("input", help="Input image path")
    parser.add_argument("-o", "--output", default=None,
                        help="Output path (default: <input>_beadsheet.<format>)")
    parser.add_argument("-r", "--resolution", type=int, default=24,
                        help="Beads per sheet side (default: 24)")
    parser.add_argument("-p", "--partitions", type=int, default=1,
                        help="Split into N x N sheets (default: 1)")
    parser.add_argument("--palette", default=None,
                        help="Palette JSON (default: colors/mard.json)")
    parser.add_argument("--preset", default="all_colors",
                        help="Palette preset restricting the usable colors")
    parser.add_argument("-m", "--max-colors", type=int, default=64,
                        help="Maximum number of colors (default: 64)")
    parser.add_argument("--merge-threshold", type=int, default=0,
                        help="Merge colors used fewer times than this (0=off)")
    parser.add_argument("--outline-width", type=int, default=1,
                        help="Outline rings around the design (default: 1)")
    parser.add_argument("--outline-color", default=None,
                        help="Outline color code (default: H7, or H1 with --dark)")
    parser.add_argument("--crop", default=None,
                        help="Square crop x,y,w,h in image pixels (default: whole image)")
    parser.add_argument("--layout", choices=sorted(PAGE_SIZES), default="tall",
                        help="Page orientation (default: tall)")
    parser.add_argument("--margin", type=int, default=DEFAULT_MARGIN,
                        help=f"Page margin (default: {DEFAULT_MARGIN})")
    parser.add_argument("--format", choices=["png", "jpeg", "pdf"], default="png",
                        help="Output format (default: png)")
    parser.add_argument("--no-grid", action="store_true",
                        help="Hide rulers and grid lines")
    parser.add_argument("--dark", action="store_true", help="Dark sheet theme")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG,
                            format="%(levelname)s %(name)s: %(message)s")
    if args.resolution <= 0:
        parser.error("--resolution must be positive")
    if args.partitions <= 0:
        parser.error("--partitions must be positive")
    if args.outline_width < 0:
        parser.error("--outline-width cannot be negative")
    max_colors = max(1, args.max_colors)
    crop = None
    if args.crop:
        try:
            crop = _parse_crop(args.crop)
        except ValueError as exc:
            parser.error(str(exc))

    input_path = Path(args.input)
    if args.output is None:
        output_path = input_path.parent / f"{input_path.stem}_beadsheet"
    else:
        output_path = Path(args.output)

    json_path = Path(args.palette) if args.palette else beadsheet.DEFAULT_PALETTE
    if not json_path.exists():
        print(f"Error: {json_path} not found")
        return

    # 1. Load palette
    print("Loading palette...")
    brand, palette, presets = beadsheet.load_bead_colors(json_path)
    if args.preset not in presets:
        parser.error(f"Unknown preset {args.preset!r}, choose from {sorted(presets)}")
    candidates = presets[args.preset]
    print(f"  {brand}: {len(candidates) if candidates else len(palette)} colors available")
    outline_code = args.outline_color or ("H1" if args.dark else beadsheet.FALLBACK_CODE)
    if outline_code not in palette:
        parser.error(f"Unknown outline color {outline_code!r}")

    # 2. Load image
    print(f"Loading image: {input_path}")
    img = Image.open(input_path).convert("RGBA")
    print(f"  Image size: {img.width}x{img.height}")

    # 3. Quantize, reduce, outline
    side = args.resolution * args.partitions
    print(f"Mapping to {side}x{side} beads...")
    try:
        raw, grid = beadsheet.build_pattern(
            img, palette, args.resolution, args.partitions, crop=crop,
            candidates=candidates, max_colors=max_colors,
            merge_threshold=args.merge_threshold,
            outline_width=args.outline_width, outline_code=outline_code)
    except ValueError as exc:
        parser.error(str(exc))
    print(f"  {len(beadsheet.count_colors(raw))} colors before reduction")
    usage = beadsheet.count_colors(grid)
    print(f"  {len(usage)} colors after reduction")

    # 4. Render sheets
    print(f"Rendering {args.partitions * args.partitions} sheet(s)...")
    paths = export_sheets(
        grid, output_path, args.format, partitions=args.partitions,
        block_size=args.resolution, orientation=args.layout,
        margin=args.margin * 2, show_grid=not args.no_grid, dark=args.dark,
        brand=brand)
    for path in paths:
        print(f"Saved: {path}")

    # Summary
    total = sum(c.count for c in usage)
    print(f"\nColor usage ({len(usage)} colors, {total} beads total):")
    for c in usage:
        print(f"  {c.code:>4s}: {c.count:4d}  {c.hex.upper()}")


if __name__ == "__main__":
    main()
