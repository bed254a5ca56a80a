"""Tile pyramid builder: resample, pad, slice, encode and upload every level."""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from layout_uploader.errors import RunCancelledError
from layout_uploader.layout_client import LayoutClient
from layout_uploader.progress import RunState
from layout_uploader.schemas import RunConfig
from layout_uploader.settings import Settings
from layout_uploader.tiler import encode_jpeg, iter_tiles, load_source_image, render_level
from layout_uploader.zoom import plan_levels, total_tile_count

LOGGER = logging.getLogger(__name__)

FINALIZING_STATUS = "Finalizing upload"


def processing_status(zoom_level: int, current: int, total: int) -> str:
    return f"Processing zoom level {zoom_level} ({current}/{total})"


class PyramidBuilder:
    """Run one upload of a source image as a quad-tree of JPEG tiles.

    Levels are processed finest first. Cancellation is polled before each
    level, before each tile and once more before finalize; an upload already
    in flight is never interrupted.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        client: LayoutClient,
        state: RunState,
        layout_path: str | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.state = state
        self.layout_path = layout_path or str(uuid4())
        self.tiles_uploaded = 0
        self.total_tiles = 0

    async def build(self) -> int:
        """Upload every tile, finalize, and return the highest zoom level produced."""

        cfg = self.config
        tile_size = cfg.tile_size
        source = await asyncio.to_thread(load_source_image, cfg.image_path)
        plans = plan_levels(source.width, source.height, tile_size)
        self.total_tiles = total_tile_count(len(plans))
        LOGGER.info(
            "Building %s levels (%s tiles) for layout %s path=%s",
            len(plans),
            self.total_tiles,
            cfg.layout_key,
            self.layout_path,
        )

        max_zoom = 0
        last_level = 0
        for plan in plans:
            self._checkpoint()
            max_zoom = max(max_zoom, plan.level)
            last_level = plan.level
            canvas = await asyncio.to_thread(render_level, source, plan, cfg.background_color)
            for tile in iter_tiles(canvas, plan.level, tile_size):
                self._checkpoint()
                jpeg_bytes = encode_jpeg(tile)
                await self.client.upload_tile(
                    layout_key=cfg.layout_key,
                    layout_path=self.layout_path,
                    zoom_level=plan.level,
                    x=tile.pixel_x,
                    y=tile.pixel_y,
                    secret=cfg.secret,
                    jpeg_bytes=jpeg_bytes,
                )
                self.tiles_uploaded += 1
                self.state.publish_progress(
                    current=self.tiles_uploaded,
                    total=self.total_tiles,
                    zoom_level=plan.level,
                    status=processing_status(plan.level, self.tiles_uploaded, self.total_tiles),
                )
            LOGGER.info("Level %s uploaded (%s tiles)", plan.level, plan.tile_count)

        self._checkpoint()
        self.state.publish_progress(
            current=self.tiles_uploaded,
            total=self.total_tiles,
            zoom_level=last_level,
            status=FINALIZING_STATUS,
        )
        await self.client.finalize_upload(
            layout_key=cfg.layout_key,
            layout_path=self.layout_path,
            secret=cfg.secret,
            max_zoom=max_zoom,
        )
        self.state.publish_progress(
            current=self.tiles_uploaded,
            total=self.total_tiles,
            zoom_level=last_level,
            status=f"Completed (max zoom {max_zoom})",
        )
        return max_zoom

    def _checkpoint(self) -> None:
        if self.state.cancel_requested():
            LOGGER.info("Cancellation observed after %s tiles", self.tiles_uploaded)
            self.state.mark_cancelled()
            raise RunCancelledError()


async def run_pyramid(
    config: RunConfig,
    *,
    state: RunState,
    client: LayoutClient | None = None,
    settings: Settings | None = None,
) -> int:
    """Build and upload a pyramid, creating a ``LayoutClient`` when none is supplied."""

    if client is not None:
        return await PyramidBuilder(config, client=client, state=state).build()
    async with LayoutClient(config.server_address, settings=settings) as owned:
        return await PyramidBuilder(config, client=owned, state=state).build()
