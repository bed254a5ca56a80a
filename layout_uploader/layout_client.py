"""HTTP client for the layout service tile upload + finalize endpoints."""

from __future__ import annotations

import logging
from urllib.parse import quote

import httpx

from layout_uploader.errors import FinalizeError, UploadError
from layout_uploader.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)
UPLOAD_TILE_SUFFIX = "/LayoutUtil/UploadTile"
FINALIZE_SUFFIX = "/api/Location/LocationLayout/UpdatePath"
DEFAULT_USER_AGENT = "SDLayoutUploader-Python"


def build_timeout(settings: Settings) -> httpx.Timeout:
    upload = settings.upload
    return httpx.Timeout(
        connect=upload.connect_timeout_s,
        read=upload.request_timeout_s,
        write=upload.request_timeout_s,
        pool=upload.connect_timeout_s,
    )


class LayoutClient:
    """Wrap the two layout-service calls used by a pyramid run.

    Parameters
    ----------
    server_url:
        Base server address; trailing slashes are stripped.
    client:
        Optional ``httpx.AsyncClient`` (useful for tests). When omitted, a
        client with bounded timeouts is created and closed by :meth:`aclose`.
    settings:
        Optional settings override for timeouts and the User-Agent header.
    """

    def __init__(
        self,
        server_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or get_settings()
        self.server_url = server_url.rstrip("/")
        self.user_agent = cfg.upload.user_agent or DEFAULT_USER_AGENT
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=build_timeout(cfg))

    async def __aenter__(self) -> "LayoutClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def tile_url(self, *, layout_key: str, layout_path: str, zoom_level: int, x: int, y: int) -> str:
        segments = [layout_key, layout_path, str(zoom_level), str(x), str(y)]
        path = "/".join(quote(segment, safe="") for segment in segments)
        return f"{self.server_url}{UPLOAD_TILE_SUFFIX}/{path}"

    def finalize_url(self) -> str:
        return f"{self.server_url}{FINALIZE_SUFFIX}"

    async def upload_tile(
        self,
        *,
        layout_key: str,
        layout_path: str,
        zoom_level: int,
        x: int,
        y: int,
        secret: str,
        jpeg_bytes: bytes,
    ) -> None:
        """POST one JPEG tile; ``x``/``y`` are absolute pixel offsets, not grid indices."""

        url = self.tile_url(layout_key=layout_key, layout_path=layout_path, zoom_level=zoom_level, x=x, y=y)
        files = {"file": ("tile.jpg", jpeg_bytes, "image/jpeg")}
        LOGGER.debug("Uploading tile %s (%s bytes)", url, len(jpeg_bytes))
        try:
            response = await self._client.post(
                url,
                params={"__sc__": secret},
                files=files,
                headers={"User-Agent": self.user_agent},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            LOGGER.error("Tile upload rejected: level=%s x=%s y=%s status=%s", zoom_level, x, y, status)
            raise UploadError(f"Upload failed: HTTP {status} for tile {zoom_level}/{x}/{y}", status_code=status) from exc
        except httpx.HTTPError as exc:
            LOGGER.error("Tile upload transport failure: level=%s x=%s y=%s: %s", zoom_level, x, y, exc)
            raise UploadError(f"Upload failed: {exc.__class__.__name__}: {exc}") from exc

    async def finalize_upload(
        self,
        *,
        layout_key: str,
        layout_path: str,
        secret: str,
        max_zoom: int,
    ) -> None:
        """Register the uploaded layout path and its highest produced zoom level."""

        params = {
            "LayoutKey": layout_key,
            "LayoutPath": layout_path,
            "apikey": secret,
            "MaxZoom": str(max_zoom),
        }
        LOGGER.info("Finalizing layout %s path=%s max_zoom=%s", layout_key, layout_path, max_zoom)
        try:
            response = await self._client.get(
                self.finalize_url(),
                params=params,
                headers={"User-Agent": self.user_agent},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise FinalizeError(f"Failed to finalize upload: HTTP {status}", status_code=status) from exc
        except httpx.HTTPError as exc:
            raise FinalizeError(f"Failed to finalize upload: {exc.__class__.__name__}: {exc}") from exc
