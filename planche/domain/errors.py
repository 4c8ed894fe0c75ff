# planche/domain/errors.py


class PlancheError(Exception):
    """Base class for every render failure."""


class AssetFetchError(PlancheError):
    """Background or portrait bytes could not be retrieved or decoded."""


class InvalidCropError(PlancheError):
    """cropTop + cropBottom leaves no rows of the portrait."""


class CompositionError(PlancheError):
    """Resize, rotate, grayscale, composite or encode failed."""


class WatermarkError(PlancheError):
    """Watermark layer could not be built or applied. Never propagated out of a render."""
