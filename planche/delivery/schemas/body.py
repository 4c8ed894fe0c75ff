from dataclasses import dataclass
from enum import Enum
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from planche.config.settings import settings

PORTRAIT_RATIO = 1.33

class Effect(str, Enum):
    GRAYSCALE = "grayscale"

# Legacy values found in the template store
_EFFECT_ALIASES = {"nb": Effect.GRAYSCALE, "grayscale": Effect.GRAYSCALE, "greyscale": Effect.GRAYSCALE}

_GEOMETRY_KEYS = {
    "x", "y", "width", "rotation", "effect", "decorations",
    "cropTop", "crop_top", "cropBottom", "crop_bottom",
}

class Slot(BaseModel):
    """One placement of the portrait, in percent of the background."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    x: float
    y: float
    width: float
    rotation: float = 0.0
    crop_top: float = Field(0.0, ge=0, alias="cropTop")
    crop_bottom: float = Field(0.0, ge=0, alias="cropBottom")
    effect: Optional[Effect] = None
    # mug, feather, css and anything else the renderer does not act on
    decorations: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_decorations(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        extra = {k: v for k, v in data.items() if k not in _GEOMETRY_KEYS}
        if not extra:
            return data
        cleaned = {k: v for k, v in data.items() if k in _GEOMETRY_KEYS}
        cleaned["decorations"] = {**(data.get("decorations") or {}), **extra}
        return cleaned

    @field_validator("effect", mode="before")
    @classmethod
    def _normalise_effect(cls, value: Any) -> Any:
        if value is None or isinstance(value, Effect):
            return value
        key = str(value).strip().lower()
        if key in ("", "none"):
            return None
        return _EFFECT_ALIASES.get(key, value)

    @property
    def visible_height_percent(self) -> float:
        return self.width * PORTRAIT_RATIO

    @property
    def layout_height_percent(self) -> float:
        # Container height that keeps the visible height once crop insets are removed
        remaining = 1 - self.crop_top / 100 - self.crop_bottom / 100
        if remaining <= 0:
            raise ValueError("cropTop + cropBottom must stay below 100")
        return self.visible_height_percent / remaining

class WebVariant(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    planche: str
    background_url: Optional[str] = Field(None, alias="backgroundUrl")
    photos: List[Slot] = Field(default_factory=list)

@dataclass(frozen=True)
class PlancheLayout:
    background_url: Optional[str]
    slots: List[Slot]
    web: bool = False

class TemplateData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    planche: str
    format: Optional[str] = None
    background: Optional[str] = None
    background_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("backgroundUrl", "backgroundS3Url", "background_url")
    )
    price: float = 0.0
    order: int = 0
    rotation_web: Optional[bool] = Field(None, alias="rotationWeb")
    photos: List[Slot] = Field(default_factory=list)
    photo_web: Optional[WebVariant] = Field(None, alias="photoWeb")

    def web_background_url(self) -> Optional[str]:
        if self.photo_web is None:
            return None
        if self.photo_web.background_url:
            return self.photo_web.background_url
        if not self.background_url:
            return None
        parts = urlsplit(self.background_url)
        if not parts.scheme or not parts.netloc:
            return None
        path = settings.WEB_BACKGROUND_PATH.format(planche=self.photo_web.planche)
        return f"{parts.scheme}://{parts.netloc}{path}"

    def effective_layout(self) -> PlancheLayout:
        """Web variant replaces the primary background and slots when present."""
        if self.photo_web is not None:
            return PlancheLayout(self.web_background_url(), list(self.photo_web.photos), web=True)
        return PlancheLayout(self.background_url, list(self.photos))

class SubjectPortrait(BaseModel):
    student_id: str
    portrait_url: Optional[str] = None
    display_name: str = ""

class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    student_id: str = Field(..., alias="studentId")
    planche: str
    add_watermark: bool = Field(False, alias="addWatermark")
    overwrite: bool = True
