"""
Background map tiles: disk cache, download and compositing.

Tiles are fetched from a configurable slippy map URL template, cached on disk
under a content-addressed path (SHA-256 of the resolved URL), then cropped
and stitched into a single image matching the viewport's pixel size.
"""

import hashlib
import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from io import BytesIO
from pathlib import Path, PurePosixPath
from typing import Callable, List, Optional, Tuple, Union
from urllib.parse import urlparse

import requests
from PIL import Image

from constants import (
    CACHE_APP_DIR,
    CACHE_TILES_DIR,
    TILE_DEFAULT_EXTENSION,
    TILE_FETCH_WORKERS,
    TILE_REQUEST_TIMEOUT,
    TILE_SIZE,
    TILE_USER_AGENT,
)
from slippy import Map

logger = logging.getLogger(__name__)

TILE_PLACEHOLDERS = ("{z}", "{x}", "{y}")


class TileFetchError(RuntimeError):
    """A background tile could not be downloaded or decoded."""


def default_cache_dir() -> Path:
    """Tile cache directory: $XDG_CACHE_HOME/derive.rs/tiles (or ~/.cache/...)."""
    root = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(root) / CACHE_APP_DIR / CACHE_TILES_DIR


def validate_url_template(url_template: str) -> str:
    """Check that a tile URL template is usable.

    Raises:
        ValueError: if a placeholder is missing or the URL is not http(s)
    """
    missing = [p for p in TILE_PLACEHOLDERS if p not in url_template]
    if missing:
        raise ValueError(f"Tile URL template is missing {', '.join(missing)}: {url_template}")

    parsed = urlparse(url_template)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Tile URL template must be an http(s) URL: {url_template}")
    return url_template


def _is_image(data: bytes) -> bool:
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
        return True
    except Exception:
        return False


class TileCache:
    """
    Downloads slippy map tiles and keeps them in an on-disk cache.

    Cache entries never expire. A failed download never leaves a file at the
    cache path: bytes are written to a temporary file next to the entry and
    renamed into place only once the response was successful and decodable.
    """

    def __init__(self, url_template: str, cache_dir: Optional[Union[str, Path]] = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = TILE_REQUEST_TIMEOUT):
        self.url_template = validate_url_template(url_template)
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def tile_url(self, zoom: int, x: int, y: int) -> str:
        """Substitute zoom/x/y into the URL template."""
        return (
            self.url_template
            .replace("{z}", str(zoom))
            .replace("{x}", str(x))
            .replace("{y}", str(y))
        )

    def cache_path(self, url: str) -> Path:
        """Cache location for a resolved tile URL."""
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest().upper()
        extension = PurePosixPath(urlparse(url).path).suffix or TILE_DEFAULT_EXTENSION
        return self.cache_dir / f"{digest}{extension}"

    def fetch(self, zoom: int, x: int, y: int) -> bytes:
        """Return the raw image bytes of a tile, from cache or network.

        Raises:
            TileFetchError: on transport errors, non-2xx responses, or a body
                that is not an image
        """
        url = self.tile_url(zoom, x, y)
        path = self.cache_path(url)

        cached = self._read_cached(path)
        if cached is not None:
            logger.debug(f"cached: {url}")
            return cached

        logger.debug(f"fetch:  {url}")
        data = self._download(url)
        self._store(path, data)
        return data

    def _read_cached(self, path: Path) -> Optional[bytes]:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Tile cache read failed for {path.name}: {e}")
            return None

        if not _is_image(data):
            logger.warning(f"Discarding unreadable tile cache entry {path.name}")
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            return None
        return data

    def _download(self, url: str) -> bytes:
        headers = {"User-Agent": TILE_USER_AGENT}
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise TileFetchError(f"Failed to fetch tile {url}: {e}") from e

        data = resp.content
        if not _is_image(data):
            raise TileFetchError(f"Tile response is not an image: {url}")
        return data

    def _store(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            # Atomic; a concurrent fetch of the same URL just replaces identical bytes
            os.replace(temp_path, path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise


class Basemap:
    """
    Stitches the tiles covering a viewport into one RGBA image.

    Tiles are downloaded in parallel; pasting onto the canvas happens on the
    calling thread only.
    """

    def __init__(self, map: Map, tile_cache: TileCache, workers: int = TILE_FETCH_WORKERS):
        self.map = map
        self.tile_cache = tile_cache
        self.workers = max(1, workers)

    def tiles(self) -> List[Tuple[int, int]]:
        """All (x, y) tile indices needed to cover the viewport."""
        return [
            (x, y)
            for y in self.map.tile_range_y()
            for x in self.map.tile_range_x()
        ]

    def assemble(self, progress_callback: Optional[Callable[[], None]] = None) -> Image.Image:
        """Fetch all tiles and compose them into a viewport-sized image.

        Args:
            progress_callback: Optional callable invoked once per placed tile

        Raises:
            TileFetchError: if any tile fails; the composite is abandoned
        """
        canvas = Image.new("RGBA", self.map.pixel_size(), (0, 0, 0, 0))
        tiles = self.tiles()
        logger.info(f"Assembling basemap from {len(tiles)} tiles at zoom {self.map.zoom}")

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = {pool.submit(self._load_tile, x, y): (x, y) for x, y in tiles}
            try:
                for future in as_completed(futures):
                    x, y = futures[future]
                    self._paste(canvas, future.result(), x, y)
                    if progress_callback:
                        progress_callback()
            except BaseException:
                for f in futures:
                    f.cancel()
                raise

        return canvas

    def _load_tile(self, x: int, y: int) -> Image.Image:
        data = self.tile_cache.fetch(self.map.zoom, x, y)
        try:
            tile = Image.open(BytesIO(data)).convert("RGBA")
        except Exception as e:
            raise TileFetchError(f"Cannot decode tile {self.map.zoom}/{x}/{y}: {e}") from e
        return tile.crop((0, 0, TILE_SIZE, TILE_SIZE))

    def _paste(self, canvas: Image.Image, tile: Image.Image, x: int, y: int) -> None:
        """Place a tile; the first row/column is cropped to the visible part."""
        first_x, first_y = self.map.tile_offsets()
        offset_x, offset_y = self.map.pixel_offsets()

        if x == first_x:
            left, dest_x = offset_x, 0
        else:
            left, dest_x = 0, (x - first_x) * TILE_SIZE - offset_x

        if y == first_y:
            top, dest_y = offset_y, 0
        else:
            top, dest_y = 0, (y - first_y) * TILE_SIZE - offset_y

        canvas.paste(tile.crop((left, top, TILE_SIZE, TILE_SIZE)), (dest_x, dest_y))


def create_tint(map: Map, strength: float) -> Image.Image:
    """Uniform black layer; 0.0 is fully transparent, 1.0 fully black.

    Strength is clamped to [0, 1] before scaling to the alpha channel.
    """
    alpha = int(min(max(strength, 0.0), 1.0) * 255)
    return Image.new("RGBA", map.pixel_size(), (0, 0, 0, alpha))


def composite(base: Image.Image, *layers: Image.Image) -> Image.Image:
    """Alpha-composite layers, in order, over a copy of the base image."""
    result = base.convert("RGBA")  # always a new image
    for layer in layers:
        result.alpha_composite(layer.convert("RGBA"))
    return result
