"""Pydantic DTOs shared by the pipeline, the API and the CLI."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RunConfig(BaseModel):
    """Validated inputs for one pyramid run; rejected before any work begins."""

    model_config = ConfigDict(frozen=True)

    image_path: str = Field(min_length=1, description="Path to the source raster image")
    server_address: str = Field(description="Layout service base URL")
    layout_key: str = Field(min_length=1, description="Layout identifier on the server")
    secret: str = Field(description="Access secret passed as a query parameter")
    background_color: tuple[int, int, int] = Field(
        default=(255, 255, 255),
        description="RGB fill used to pad every level canvas",
    )
    tile_size: int = Field(default=256, gt=0, description="Tile edge length in pixels")

    @field_validator("server_address")
    @classmethod
    def _validate_server_address(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned:
            raise ValueError("Server address must not be empty")
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError(f"Server address must use http or https, got '{value}'")
        return cleaned

    @field_validator("background_color")
    @classmethod
    def _validate_background_color(cls, value: tuple[int, int, int]) -> tuple[int, int, int]:
        for channel in value:
            if not 0 <= channel <= 255:
                msg = f"Background channel values must be within 0-255, received {value}"
                raise ValueError(msg)
        return value


class ProgressUpdate(BaseModel):
    """Latest-only progress snapshot; each write replaces the previous one."""

    model_config = ConfigDict(frozen=True)

    current: int = Field(ge=0)
    total: int = Field(ge=0)
    zoom_level: int = Field(ge=0)
    percentage: int = Field(ge=0, le=100)
    status: str


class RunSnapshotResponse(BaseModel):
    """View of the current (or last) run for polling clients."""

    run_id: str | None = None
    status: str
    layout_key: str | None = None
    layout_path: str | None = None
    max_zoom: int | None = Field(default=None, description="Highest zoom level finalized on success")
    tiles_uploaded: int = Field(default=0, ge=0)
    message: str | None = Field(default=None, description="Completion, cancellation or failure message")
    progress: ProgressUpdate | None = None


class CancelResponse(BaseModel):
    cancelled: bool
