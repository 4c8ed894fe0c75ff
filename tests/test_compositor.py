import io

import numpy as np
import pytest
from PIL import Image

from imaging_helpers import BLUE, GREEN, RED, WHITE, close, gradient_bytes, image_bytes, two_band_portrait
from planche.delivery.schemas.body import Slot
from planche.domain import compositor
from planche.domain.compositor import SlotGeometry
from planche.domain.errors import AssetFetchError, CompositionError, InvalidCropError, WatermarkError
from planche.infrastructure.imaging import image_process


def slot(**kwargs) -> Slot:
    data = {"x": 10, "y": 10, "width": 50, "rotation": 0, "cropTop": 0, "cropBottom": 0}
    data.update(kwargs)
    return Slot.model_validate(data)


def portrait_image(data: bytes) -> Image.Image:
    return compositor.decode_image(data, "Portrait")


class TestGeometry:
    def test_percentages_become_pixels(self):
        assert compositor.slot_geometry(slot(), (1000, 1000)) == SlotGeometry(100, 100, 500, 665)

    def test_ratio_applies_to_pixel_width(self):
        # 33% of 1000 = 330px, 330 * 1.33 = 438.9
        geometry = compositor.slot_geometry(slot(x=0, y=0, width=33), (1000, 1000))
        assert (geometry.width, geometry.height) == (330, 439)

    def test_uses_each_axis_of_the_background(self):
        geometry = compositor.slot_geometry(slot(x=25, y=20, width=50), (800, 1200))
        assert (geometry.left, geometry.top, geometry.width, geometry.height) == (200, 240, 400, 532)

    def test_half_pixels_round_up(self):
        assert compositor.slot_geometry(slot(x=50, y=50, width=50), (801, 1001)) == SlotGeometry(401, 501, 401, 533)
        # 5% of 1000 = 50px, 50 * 1.33 = 66.5
        assert compositor.slot_geometry(slot(x=0, y=0, width=5), (1000, 1000)).height == 67
        assert compositor.crop_rows(slot(cropTop=12.5), 4) == (1, 0)

    def test_crop_rows_measured_on_portrait_height(self):
        assert compositor.crop_rows(slot(cropTop=25), 400) == (100, 0)
        assert compositor.crop_rows(slot(cropTop=10, cropBottom=5), 400) == (40, 20)

    @pytest.mark.parametrize("top,bottom", [(60, 50), (50, 50), (100, 0)])
    def test_crop_consuming_whole_portrait_is_rejected(self, top, bottom):
        with pytest.raises(InvalidCropError):
            compositor.crop_rows(slot(cropTop=top, cropBottom=bottom), 400)

    def test_missing_dimensions_fall_back_to_default_canvas(self):
        assert compositor.canvas_size(Image.new("RGB", (0, 0))) == (1000, 1000)


class TestTransformSlot:
    def test_output_matches_slot_box(self, blue_portrait):
        placed = compositor.transform_slot(portrait_image(blue_portrait), slot(), (1000, 1000))
        assert placed.image.size == (500, 665)
        assert (placed.left, placed.top) == (100, 100)

    def test_crop_does_not_shrink_visible_height(self):
        portrait = portrait_image(two_band_portrait())
        placed = compositor.transform_slot(portrait, slot(cropTop=25), (1000, 1000))
        assert placed.image.size == (500, 665)
        # The red band is exactly the cropped 25%
        assert close(placed.image.getpixel((250, 0)), BLUE)

    def test_without_crop_the_top_band_is_visible(self):
        portrait = portrait_image(two_band_portrait())
        placed = compositor.transform_slot(portrait, slot(), (1000, 1000))
        assert close(placed.image.getpixel((250, 0)), RED)

    def test_each_slot_crops_from_the_original_portrait(self):
        portrait = portrait_image(two_band_portrait())
        placed = compositor.transform_slots(portrait, [slot(cropTop=25), slot(cropTop=0)], (1000, 1000))
        assert close(placed[0].image.getpixel((250, 0)), BLUE)
        assert close(placed[1].image.getpixel((250, 0)), RED)
        assert portrait.size == (300, 400)

    def test_rotation_expands_with_transparent_corners(self, blue_portrait):
        placed = compositor.transform_slot(portrait_image(blue_portrait), slot(rotation=10), (1000, 1000))
        width, height = placed.image.size
        assert placed.image.mode == "RGBA"
        assert width > 500 and height > 665
        assert placed.image.getpixel((0, 0))[3] == 0
        assert placed.image.getpixel((width - 1, height - 1))[3] == 0
        assert placed.image.getpixel((width // 2, height // 2))[3] == 255

    def test_positive_rotation_turns_clockwise(self, blue_portrait):
        placed = compositor.transform_slot(portrait_image(blue_portrait), slot(rotation=10), (1000, 1000))
        width, _ = placed.image.size
        alpha = np.array(placed.image)[:, :, 3]
        # Clockwise: the photo's top-left corner becomes the highest point, left of center
        first_row = np.nonzero((alpha > 128).any(axis=1))[0][0]
        columns = np.nonzero(alpha[first_row] > 128)[0]
        assert columns.mean() < width / 2

    def test_zero_width_slot_is_a_composition_error(self, blue_portrait):
        with pytest.raises(CompositionError):
            compositor.transform_slot(portrait_image(blue_portrait), slot(width=0), (1000, 1000))


class TestComposePlanche:
    def test_slot_is_placed_at_its_pixel_box(self, white_background, blue_portrait):
        image = compositor.compose_planche(white_background, blue_portrait, [slot()], add_watermark=False)
        assert image.size == (1000, 1000)
        assert close(image.getpixel((100, 100)), BLUE)
        assert close(image.getpixel((599, 764)), BLUE)
        assert image.getpixel((99, 99)) == WHITE
        assert image.getpixel((600, 765)) == WHITE

    def test_later_slot_draws_over_earlier_one(self, white_background, red_portrait):
        first = slot(x=10, y=10, width=30)
        second = slot(x=20, y=20, width=30, effect="grayscale")

        image = compositor.compose_planche(white_background, red_portrait, [first, second], add_watermark=False)
        r, g, b = image.getpixel((250, 250))
        assert r == g == b

        image = compositor.compose_planche(white_background, red_portrait, [second, first], add_watermark=False)
        assert close(image.getpixel((250, 250)), RED)

    def test_grayscale_only_affects_its_own_slot(self, white_background, blue_portrait):
        gray = slot(x=5, y=5, width=30, effect="grayscale")
        colour = slot(x=55, y=5, width=30)
        image = compositor.compose_planche(white_background, blue_portrait, [gray, colour], add_watermark=False)
        pixels = np.asarray(image).astype(int)

        gray_region = pixels[60:440, 60:340]
        colour_region = pixels[60:440, 560:840]
        assert (gray_region.max(axis=2) - gray_region.min(axis=2)).max() == 0
        assert (colour_region.max(axis=2) - colour_region.min(axis=2)).min() > 100

    def test_out_of_bounds_slot_is_clipped(self, white_background, blue_portrait):
        image = compositor.compose_planche(
            white_background, blue_portrait, [slot(x=90, y=-10, width=50)], add_watermark=False
        )
        assert image.size == (1000, 1000)
        assert close(image.getpixel((950, 0)), BLUE)

    def test_invalid_crop_aborts_render(self, white_background, blue_portrait):
        with pytest.raises(InvalidCropError):
            compositor.render_planche(
                white_background, blue_portrait, [slot(), slot(cropTop=60, cropBottom=50)], add_watermark=False
            )

    def test_undecodable_input_is_an_asset_error(self, white_background):
        with pytest.raises(AssetFetchError):
            compositor.compose_planche(white_background, b"not an image", [slot()], add_watermark=False)
        with pytest.raises(AssetFetchError):
            compositor.compose_planche(b"", white_background, [slot()], add_watermark=False)

    def test_render_is_deterministic(self, white_background, blue_portrait):
        slots = [slot(rotation=-7, effect="grayscale"), slot(x=40, cropBottom=10)]
        first = compositor.render_planche(white_background, blue_portrait, slots, add_watermark=True)
        second = compositor.render_planche(white_background, blue_portrait, slots, add_watermark=True)
        assert first == second

    def test_rotated_slot_end_to_end(self):
        background = gradient_bytes((800, 1200))
        portrait = image_bytes((300, 400), GREEN)
        rotated = slot(x=25, y=20, width=50, rotation=10)

        image = compositor.compose_planche(background, portrait, [rotated], add_watermark=False)
        original = np.asarray(Image.open(io.BytesIO(background)).convert("RGB"))
        result = np.asarray(image)

        placed = compositor.transform_slot(
            portrait_image(portrait), rotated, compositor.canvas_size(Image.open(io.BytesIO(background)))
        )
        width, height = placed.image.size
        outside = np.ones(result.shape[:2], dtype=bool)
        outside[240:240 + height, 200:200 + width] = False

        assert image.size == (800, 1200)
        assert np.array_equal(result[outside], original[outside])
        assert close(image.getpixel((200 + width // 2, 240 + height // 2)), GREEN)
        # Transparent corner of the expanded box leaves the background untouched
        assert tuple(result[240, 200]) == tuple(original[240, 200])

        encoded = compositor.render_planche(background, portrait, [rotated], add_watermark=False)
        with Image.open(io.BytesIO(encoded)) as decoded:
            assert decoded.format == "JPEG"
            assert decoded.size == (800, 1200)


class TestWatermark:
    def test_watermark_brightens_dark_canvas(self):
        background = image_bytes((600, 600), (0, 0, 0))
        portrait = image_bytes((30, 40), (0, 0, 0))
        image = compositor.compose_planche(background, portrait, [], add_watermark=True)
        pixels = np.asarray(image)
        assert pixels.max() > 40
        # Semi-transparent white on black never reaches full white
        assert pixels.max() < 120

    def test_watermark_layer_covers_canvas_size(self):
        layer = image_process.build_watermark_layer(
            (640, 480), text="© PHOTO SCOLAIRE", font_size=40, spacing=150, opacity=0.3, angle=-45
        )
        assert layer.size == (640, 480)
        assert layer.mode == "RGBA"
        max_alpha = np.asarray(layer)[:, :, 3].max()
        # Rotation must not push glyph edges above the configured opacity
        assert 0 < max_alpha <= round(255 * 0.3) + 1

    def test_failing_watermark_returns_unwatermarked_composite(self, monkeypatch, white_background, blue_portrait):
        def broken(*args, **kwargs):
            raise RuntimeError("font backend exploded")

        monkeypatch.setattr(image_process, "build_watermark_layer", broken)
        marked = compositor.compose_planche(white_background, blue_portrait, [slot()], add_watermark=True)
        plain = compositor.compose_planche(white_background, blue_portrait, [slot()], add_watermark=False)
        assert marked.tobytes() == plain.tobytes()

        data = compositor.render_planche(white_background, blue_portrait, [slot()], add_watermark=True)
        with Image.open(io.BytesIO(data)) as decoded:
            assert decoded.size == (1000, 1000)

    def test_missing_font_is_reported_as_skipped(self, monkeypatch):
        from planche.config.settings import settings

        monkeypatch.setattr(settings, "WATERMARK_FONT_PATH", "/nonexistent/font.ttf")
        canvas = Image.new("RGB", (200, 200), WHITE)
        outcome = compositor.apply_watermark(canvas)
        assert outcome.applied is False
        assert isinstance(outcome.error, WatermarkError)
        assert outcome.image is canvas
