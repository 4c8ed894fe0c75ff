# planche/domain/compositor.py
"""Synchronous planche compositor.

Everything here is a pure function of its inputs: no module state, no
cached handles. The async service offloads these calls to an executor.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from PIL import Image

from planche.config.settings import settings
from planche.delivery.schemas.body import PORTRAIT_RATIO, Effect, Slot
from planche.domain.errors import (
    AssetFetchError,
    CompositionError,
    InvalidCropError,
    PlancheError,
    WatermarkError,
)
from planche.infrastructure.imaging import image_process

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%Y-%m-%d %H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

Size = Tuple[int, int]

def round_half_up(value: float) -> int:
    """Pixel rounding used for every percentage conversion; .5 goes up."""
    return int(math.floor(value + 0.5))

@dataclass(frozen=True)
class SlotGeometry:
    left: int
    top: int
    width: int
    height: int

@dataclass
class PlacedSlot:
    image: Image.Image
    left: int
    top: int

@dataclass
class WatermarkOutcome:
    image: Image.Image
    applied: bool
    error: Optional[WatermarkError] = None

def decode_image(data: bytes, label: str) -> Image.Image:
    if not data:
        raise AssetFetchError(f"{label} image is empty")
    try:
        return image_process.decode_image(data)
    except Exception as e:
        raise AssetFetchError(f"{label} image could not be decoded: {e}") from e

def _usable_size(image: Image.Image, fallback: Size) -> Size:
    width, height = image.size
    if width > 0 and height > 0:
        return width, height
    logger.warning(f"Image reports no usable size {image.size}, falling back to {fallback}")
    return tuple(fallback)

def canvas_size(background: Image.Image) -> Size:
    return _usable_size(background, settings.DEFAULT_CANVAS_SIZE)

def portrait_size(portrait: Image.Image) -> Size:
    return _usable_size(portrait, settings.DEFAULT_PORTRAIT_SIZE)

def slot_geometry(slot: Slot, canvas: Size) -> SlotGeometry:
    bg_width, bg_height = canvas
    px_width = round_half_up(slot.width / 100 * bg_width)
    return SlotGeometry(
        left=round_half_up(slot.x / 100 * bg_width),
        top=round_half_up(slot.y / 100 * bg_height),
        width=px_width,
        # Ratio applies to the pixel width, not to the percentage
        height=round_half_up(px_width * PORTRAIT_RATIO),
    )

def crop_rows(slot: Slot, portrait_height: int) -> Tuple[int, int]:
    if slot.crop_top + slot.crop_bottom >= 100:
        raise InvalidCropError(
            f"cropTop ({slot.crop_top}) + cropBottom ({slot.crop_bottom}) must stay below 100"
        )
    top = round_half_up(slot.crop_top / 100 * portrait_height)
    bottom = round_half_up(slot.crop_bottom / 100 * portrait_height)
    if portrait_height - top - bottom <= 0:
        raise InvalidCropError(
            f"Crop of {top}px + {bottom}px leaves no rows of a {portrait_height}px portrait"
        )
    return top, bottom

def transform_slot(portrait: Image.Image, slot: Slot, canvas: Size) -> PlacedSlot:
    """Crop, cover-fit, desaturate and rotate one copy of the portrait."""
    geometry = slot_geometry(slot, canvas)
    photo = portrait
    try:
        if slot.crop_top > 0 or slot.crop_bottom > 0:
            # Always measured on the original portrait, never on another slot's copy
            top, bottom = crop_rows(slot, portrait_size(portrait)[1])
            photo = image_process.crop_rows(photo, top, bottom)
        photo = image_process.crop_to_fill(photo, geometry.width, geometry.height)
        if slot.effect == Effect.GRAYSCALE:
            photo = image_process.desaturate(photo)
        if slot.rotation != 0:
            photo = image_process.rotate_expand(photo, slot.rotation)
    except PlancheError:
        raise
    except Exception as e:
        raise CompositionError(f"Slot transform failed: {type(e).__name__}: {e}") from e

    return PlacedSlot(image=photo, left=geometry.left, top=geometry.top)

def transform_slots(portrait: Image.Image, slots: Sequence[Slot], canvas: Size) -> List[PlacedSlot]:
    return [transform_slot(portrait, slot, canvas) for slot in slots]

def composite_slots(background: Image.Image, placed: Sequence[PlacedSlot]) -> Image.Image:
    """Single pass over all slots; later entries land on top of earlier ones."""
    try:
        canvas = background.convert("RGB")
        for item in placed:
            image_process.paste_layer(canvas, item.image, (item.left, item.top))
        return canvas
    except Exception as e:
        raise CompositionError(f"Composite failed: {type(e).__name__}: {e}") from e

def build_watermark(size: Size) -> Image.Image:
    try:
        return image_process.build_watermark_layer(
            size,
            text=settings.WATERMARK_TEXT,
            font_size=settings.WATERMARK_FONT_SIZE,
            spacing=settings.WATERMARK_SPACING,
            opacity=settings.WATERMARK_OPACITY,
            angle=settings.WATERMARK_ANGLE,
            font_path=settings.WATERMARK_FONT_PATH,
        )
    except Exception as e:
        raise WatermarkError(f"{type(e).__name__}: {e}") from e

def apply_watermark(image: Image.Image) -> WatermarkOutcome:
    try:
        layer = build_watermark(image.size)
        try:
            marked = image_process.overlay(image, layer)
        except Exception as e:
            raise WatermarkError(f"{type(e).__name__}: {e}") from e
        return WatermarkOutcome(image=marked, applied=True)
    except WatermarkError as e:
        logger.warning(f"Watermark skipped, returning unwatermarked composite: {e}")
        return WatermarkOutcome(image=image, applied=False, error=e)

def finish(background: Image.Image, placed: Sequence[PlacedSlot], add_watermark: bool) -> Image.Image:
    composed = composite_slots(background, placed)
    if add_watermark:
        composed = apply_watermark(composed).image
    return composed

def compose_planche(
    background_bytes: bytes,
    portrait_bytes: bytes,
    slots: Sequence[Slot],
    add_watermark: bool,
) -> Image.Image:
    background = decode_image(background_bytes, "Background")
    portrait = decode_image(portrait_bytes, "Portrait")
    placed = transform_slots(portrait, slots, canvas_size(background))
    return finish(background, placed, add_watermark)

def encode(image: Image.Image) -> bytes:
    try:
        return image_process.encode_jpeg(image, quality=settings.JPEG_QUALITY)
    except Exception as e:
        raise CompositionError(f"JPEG encode failed: {type(e).__name__}: {e}") from e

def render_planche(
    background_bytes: bytes,
    portrait_bytes: bytes,
    slots: Sequence[Slot],
    add_watermark: bool,
) -> bytes:
    return encode(compose_planche(background_bytes, portrait_bytes, slots, add_watermark))
