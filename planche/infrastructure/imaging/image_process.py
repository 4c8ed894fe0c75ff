# planche/infrastructure/imaging/image_process.py
import io
import math
from typing import Optional, Tuple

from PIL import Image, ImageDraw, ImageFont, ImageOps

TRANSPARENT = (0, 0, 0, 0)

def decode_image(data: bytes, mode: str = "RGB") -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert(mode)

def crop_rows(image_pil: Image.Image, top: int, bottom: int) -> Image.Image:
    """Keep rows [top, height - bottom) at full width."""
    width, height = image_pil.size
    return image_pil.crop((0, top, width, height - bottom))

def crop_to_fill(image_pil: Image.Image, target_w: int, target_h: int) -> Image.Image:
    source_w, source_h = image_pil.size
    target_ratio = target_w / target_h
    source_ratio = source_w / source_h

    if source_ratio > target_ratio:
        scale_factor = target_h / source_h
        scaled_w = max(target_w, int(source_w * scale_factor))
        scaled_h = target_h
        resized_image = image_pil.resize((scaled_w, scaled_h), Image.Resampling.LANCZOS)
        crop_x = (scaled_w - target_w) // 2
        return resized_image.crop((crop_x, 0, crop_x + target_w, scaled_h))
    else:
        scale_factor = target_w / source_w
        scaled_w = target_w
        scaled_h = max(target_h, int(source_h * scale_factor))
        resized_image = image_pil.resize((scaled_w, scaled_h), Image.Resampling.LANCZOS)
        crop_y = (scaled_h - target_h) // 2
        return resized_image.crop((0, crop_y, scaled_w, crop_y + target_h))

def desaturate(image_pil: Image.Image) -> Image.Image:
    return ImageOps.grayscale(image_pil).convert("RGB")

def rotate_expand(image_pil: Image.Image, degrees: float) -> Image.Image:
    # Pillow turns counter-clockwise; templates are authored clockwise
    rgba = image_pil.convert("RGBA")
    return rgba.rotate(-degrees, resample=Image.Resampling.BICUBIC, expand=True, fillcolor=TRANSPARENT)

def paste_layer(canvas: Image.Image, layer: Image.Image, position: Tuple[int, int]) -> None:
    # paste clips anything outside the canvas, negative offsets included
    if layer.mode == "RGBA":
        canvas.paste(layer, position, mask=layer)
    else:
        canvas.paste(layer, position)

def load_font(font_size: int, font_path: Optional[str] = None) -> ImageFont.FreeTypeFont:
    if font_path:
        return ImageFont.truetype(font_path, font_size)
    return ImageFont.load_default(size=font_size)

def build_watermark_layer(
    size: Tuple[int, int],
    text: str,
    font_size: int,
    spacing: int,
    opacity: float,
    angle: float,
    font_path: Optional[str] = None,
) -> Image.Image:
    """Transparent layer of `size` with `text` tiled every 2*spacing px along a diagonal.

    The pattern is drawn on a square field as large as the canvas diagonal,
    rotated, then center-cropped, so the rotated tiles reach every corner.
    """
    width, height = size
    font = load_font(font_size, font_path)
    cell = spacing * 2
    fill = (255, 255, 255, int(round(255 * opacity)))

    tile = Image.new("RGBA", (cell, cell), (255, 255, 255, 0))
    ImageDraw.Draw(tile).text((spacing, spacing), text, font=font, fill=fill, anchor="ms")

    side = int(math.ceil(math.hypot(width, height)))
    field = Image.new("RGBA", (side, side), (255, 255, 255, 0))
    for top in range(0, side, cell):
        for left in range(0, side, cell):
            field.paste(tile, (left, top))
    # Negative angles rise to the right on screen; bilinear keeps alpha within the fill opacity
    field = field.rotate(-angle, resample=Image.Resampling.BILINEAR)

    left = (side - width) // 2
    top = (side - height) // 2
    return field.crop((left, top, left + width, top + height))

def overlay(image_pil: Image.Image, layer: Image.Image) -> Image.Image:
    base = image_pil.convert("RGBA")
    return Image.alpha_composite(base, layer).convert("RGB")

def encode_jpeg(image_pil: Image.Image, quality: int = 80) -> bytes:
    # JPEG can't have alpha
    if image_pil.mode != "RGB":
        image_pil = image_pil.convert("RGB")
    buf = io.BytesIO()
    image_pil.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()
