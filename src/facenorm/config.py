"""Environment-based configuration for facenorm."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, BeforeValidator, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from facenorm.errors import InvalidConfigurationError
from facenorm.geometry import BorderType, Point2D, Size2D, as_point, as_size

if TYPE_CHECKING:
    from pydantic import ValidationInfo


class Settings(BaseSettings):
    """Package defaults loaded from FACENORM_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACENORM_",
        case_sensitive=False,
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Geometric normalization targets
    crop_height: int = Field(default=80, ge=1)
    crop_width: int = Field(default=64, ge=1)
    right_eye_y: float = 16.0
    right_eye_x: float = 15.0
    left_eye_y: float = 16.0
    left_eye_x: float = 48.0
    resample_border: BorderType = BorderType.ZERO

    # Weighted Gaussian smoothing
    filter_radius_y: int = Field(default=1, ge=0)
    filter_radius_x: int = Field(default=1, ge=0)
    filter_sigma_y: float = Field(default=math.sqrt(2.0), gt=0.0)
    filter_sigma_x: float = Field(default=math.sqrt(2.0), gt=0.0)
    filter_border: BorderType = BorderType.MIRROR
    filter_chunk_rows: int = Field(default=16, ge=1)

    # Plane-sharded execution
    max_workers: int = Field(default=2, ge=1)


def get_settings() -> Settings:
    """Create and return package settings."""
    return Settings()


# ---------------------------------------------------------------------------
# Component configuration helpers
# ---------------------------------------------------------------------------


def _to_point(value: Any, info: ValidationInfo) -> Point2D:
    return as_point(value, info.field_name or "point")


def _to_size(value: Any, info: ValidationInfo) -> Size2D:
    return as_size(value, info.field_name or "size")


PointValue = Annotated[Point2D, BeforeValidator(_to_point)]
SizeValue = Annotated[Size2D, BeforeValidator(_to_size)]

ConfigT = TypeVar("ConfigT", bound=BaseModel)


def build_config(model: type[ConfigT], **values: object) -> ConfigT:
    """Validate a component configuration.

    Raises:
        InvalidConfigurationError: If any value violates the model constraints.
    """
    try:
        return model(**values)
    except ValidationError as exc:
        raise InvalidConfigurationError(f"invalid {model.__name__}: {exc}") from exc


def replace_config(config: ConfigT, **changes: object) -> ConfigT:
    """Return a re-validated copy of ``config`` with ``changes`` applied."""
    values = {name: getattr(config, name) for name in type(config).model_fields}
    values.update(changes)
    return build_config(type(config), **values)
