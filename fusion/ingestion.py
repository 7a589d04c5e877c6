"""
fusion.ingestion
================
Raster I/O through rasterio: reading images and masks, writing outputs,
alignment validation and output file naming.

All arrays are ``(channels, height, width)``.  The data directory is passed
explicitly to :class:`RasterIO`; relative image paths are resolved against
it.

Public API
----------
GeoInfo                                  → width, height, count, dtype, nodata, crs, ...
read_geoinfo(path, crop, bands)          → GeoInfo
RasterIO(data_dir)
    .load(entry)                         → (np.ndarray, GeoInfo)
    .load_mask(cfg, crop)                → np.ndarray (uint8 or bool)
    .load_quality_layer(cfg, crop)       → np.ndarray (bool, True = fill)
    .write(array, geoinfo, path, driver) → Path actually written
    .copy(src, dst)                      → Path
driver_for(path)                         → GDAL driver name
validate_alignment(geoinfos)             → None  (raises on mismatch)
output_filename(origin, prefix, ...)     → str
"""

from __future__ import annotations

import shutil
import warnings
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.errors import RasterioError
from rasterio.windows import Window, transform as window_transform

from .config import ConfigurationError, ImageEntry, MaskFileConfig, QualityLayerConfig
from .masks import QUALITY_PRESETS, quality_to_mask


class RasterIOError(OSError):
    """Reading or writing a raster file failed."""


# ======================================================================== #
#  1.  Geo information                                                      #
# ======================================================================== #

@dataclass(frozen=True)
class GeoInfo:
    """Size, type and georeference of one (possibly cropped) raster."""
    width: int
    height: int
    count: int
    dtype: str
    nodata: Optional[float] = None
    crs: Any = None
    transform: Any = None
    driver: str = "GTiff"

    def with_nodata(self, value: Optional[float]) -> "GeoInfo":
        return replace(self, nodata=value)

    def with_count(self, count: int, dtype: Optional[str] = None) -> "GeoInfo":
        return replace(self, count=count, dtype=dtype or self.dtype)


def _window(src, crop: Optional[Sequence[int]]) -> Optional[Window]:
    if crop is None:
        return None
    x, y, w, h = (int(v) for v in crop)
    if w == 0:
        w = src.width - x
    if h == 0:
        h = src.height - y
    if x < 0 or y < 0 or x + w > src.width or y + h > src.height:
        raise ConfigurationError(
            f"Crop rectangle {tuple(crop)} exceeds the image size "
            f"{src.width}x{src.height} of {src.name}."
        )
    return Window(x, y, w, h)


def _indexes(src, bands: Optional[Sequence[int]]) -> List[int]:
    if bands is None:
        return list(range(1, src.count + 1))
    bad = [b for b in bands if not 0 <= b < src.count]
    if bad:
        raise ConfigurationError(
            f"Band selection {bad} out of range for {src.name} with {src.count} bands."
        )
    return [b + 1 for b in bands]


def _geoinfo(src, window: Optional[Window], indexes: List[int]) -> GeoInfo:
    transform = src.transform
    width, height = src.width, src.height
    if window is not None:
        transform = window_transform(window, src.transform)
        width, height = int(window.width), int(window.height)
    return GeoInfo(
        width=width,
        height=height,
        count=len(indexes),
        dtype=str(src.dtypes[indexes[0] - 1]),
        nodata=src.nodata,
        crs=src.crs,
        transform=transform,
        driver=src.driver,
    )


def read_geoinfo(
    path: str | Path,
    crop: Optional[Sequence[int]] = None,
    bands: Optional[Sequence[int]] = None,
) -> GeoInfo:
    """Read lightweight rasterio metadata for one file."""
    try:
        with rasterio.open(path) as src:
            return _geoinfo(src, _window(src, crop), _indexes(src, bands))
    except RasterioError as exc:
        raise RasterIOError(f"Could not read metadata of {path}: {exc}") from exc


# ======================================================================== #
#  2.  Reader / writer                                                      #
# ======================================================================== #

class RasterIO:
    """
    rasterio-backed image loader and writer.

    Parameters
    ----------
    data_dir : str or Path, optional
        Directory that relative input paths are resolved against.
    """

    def __init__(self, data_dir: Optional[str | Path] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else None

    def resolve(self, path: str | Path) -> Path:
        path = Path(path)
        if self.data_dir is not None and not path.is_absolute():
            return self.data_dir / path
        return path

    # ----- reading -----
    def read_geoinfo(self, entry: ImageEntry) -> GeoInfo:
        return read_geoinfo(self.resolve(entry.path), entry.crop, entry.bands)

    def _read(self, path, crop=None, bands=None) -> Tuple[np.ndarray, GeoInfo]:
        path = self.resolve(path)
        try:
            with rasterio.open(path) as src:
                window = _window(src, crop)
                indexes = _indexes(src, bands)
                array = src.read(indexes, window=window)
                return array, _geoinfo(src, window, indexes)
        except RasterioError as exc:
            raise RasterIOError(f"Could not read {path}: {exc}") from exc

    def load(self, entry: ImageEntry) -> Tuple[np.ndarray, GeoInfo]:
        """Read the (cropped, band-selected) image of *entry*."""
        return self._read(entry.path, entry.crop, entry.bands)

    def load_mask(
        self,
        cfg: MaskFileConfig,
        crop: Optional[Sequence[int]] = None,
    ) -> np.ndarray:
        """
        Read a mask file.

        Plain masks are returned as read (expected ``uint8``); quality layers
        are converted to a boolean mask with their bits and ranges.
        """
        array, _ = self._read(cfg.path, crop)
        if cfg.is_quality_layer:
            return quality_to_mask(array, cfg.bits, cfg.parsed_ranges())
        return array

    def load_quality_layer(
        self,
        cfg: QualityLayerConfig,
        crop: Optional[Sequence[int]] = None,
    ) -> np.ndarray:
        """Read a quality layer as boolean layer (True = interpolate)."""
        bits, options = cfg.bits, cfg.parsed_ranges()
        if cfg.preset is not None:
            try:
                preset = QUALITY_PRESETS[cfg.preset.lower()]
            except KeyError:
                raise ConfigurationError(
                    f"Unknown quality layer preset '{cfg.preset}'. "
                    f"Available: {sorted(QUALITY_PRESETS)}"
                ) from None
            bits = bits or preset["bits"]
            options = options or preset["options"]
        array, _ = self._read(cfg.path, crop)
        return quality_to_mask(array, bits, options)

    # ----- writing -----
    def write(
        self,
        array: np.ndarray,
        geoinfo: GeoInfo,
        path: str | Path,
        driver: Optional[str] = None,
    ) -> Path:
        """
        Write *array* with the georeference of *geoinfo*.

        If a non-GeoTIFF driver fails, writing is retried once as GeoTIFF
        with a ``.tif`` extension.  Returns the path that was written.
        """
        path = Path(path)
        driver = driver or driver_for(path)
        try:
            self._write(array, geoinfo, path, driver)
            return path
        except (RasterioError, OSError) as exc:
            if driver == "GTiff":
                raise RasterIOError(f"Could not write {path}: {exc}") from exc
            fallback = path.with_suffix(".tif")
            warnings.warn(
                f"Writing {path.name} with driver {driver} failed ({exc}). "
                f"Retrying as GeoTIFF {fallback.name}."
            )
        try:
            self._write(array, geoinfo, fallback, "GTiff")
        except (RasterioError, OSError) as exc:
            raise RasterIOError(f"Could not write {fallback}: {exc}") from exc
        return fallback

    @staticmethod
    def _write(array: np.ndarray, geoinfo: GeoInfo, path: Path, driver: str) -> None:
        array = np.asarray(array)
        if array.dtype == np.bool_:
            array = array.astype(np.uint8) * 255
        if array.ndim == 2:
            array = array[np.newaxis]
        profile: Dict[str, Any] = {
            "driver": driver,
            "width": array.shape[2],
            "height": array.shape[1],
            "count": array.shape[0],
            "dtype": array.dtype.name,
            "crs": geoinfo.crs,
            "transform": geoinfo.transform,
        }
        if geoinfo.nodata is not None:
            profile["nodata"] = geoinfo.nodata
        path.parent.mkdir(parents=True, exist_ok=True)
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(array)

    def copy(self, src: str | Path, dst: str | Path) -> Path:
        """Copy an input file verbatim to an output path."""
        src, dst = self.resolve(src), Path(dst)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
        except OSError as exc:
            raise RasterIOError(f"Could not copy {src} to {dst}: {exc}") from exc
        return dst


# ======================================================================== #
#  3.  Drivers and file names                                               #
# ======================================================================== #

_DRIVERS: Dict[str, str] = {
    ".tif": "GTiff",
    ".tiff": "GTiff",
    ".img": "HFA",
    ".vrt": "VRT",
    ".nc": "netCDF",
    ".png": "PNG",
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".bmp": "BMP",
    ".envi": "ENVI",
    ".bil": "EHdr",
}

_EXTENSIONS: Dict[str, str] = {
    "GTiff": ".tif",
    "HFA": ".img",
    "VRT": ".vrt",
    "netCDF": ".nc",
    "PNG": ".png",
    "JPEG": ".jpg",
    "BMP": ".bmp",
    "ENVI": ".envi",
    "EHdr": ".bil",
}


def driver_for(path: str | Path) -> str:
    """GDAL driver name for the extension of *path* (GeoTIFF if unknown)."""
    return _DRIVERS.get(Path(path).suffix.lower(), "GTiff")


def output_filename(
    origin: str | Path,
    prefix: str,
    postfix: str,
    date1: int,
    date2: int,
    date3: Optional[int] = None,
    driver: Optional[str] = None,
) -> str:
    """
    Name of a predicted image.

    ``<prefix><date2>_from_<date1>[_and_<date3>]<postfix><ext>``, where the
    extension is the one of *origin* unless a *driver* is given.  When the
    image is not predicted from other dates (``date1 == date2`` and no
    different ``date3``) the stem of *origin* is used instead of the dates.
    """
    origin = Path(origin)
    ext = _EXTENSIONS.get(driver, origin.suffix) if driver else origin.suffix
    ext = ext or ".tif"
    if date1 == date2 and date3 in (None, date2):
        name = origin.stem
    else:
        name = f"{date2}_from_{date1}"
        if date3 is not None:
            name += f"_and_{date3}"
    return f"{prefix}{name}{postfix}{ext}"


# ======================================================================== #
#  4.  Alignment validation                                                 #
# ======================================================================== #

def validate_alignment(geoinfos: Dict[Any, GeoInfo] | Iterable[Tuple[Any, GeoInfo]]) -> GeoInfo:
    """
    Check that all images share width, height and channel count.

    Parameters
    ----------
    geoinfos : mapping or iterable of (key, GeoInfo)
        Keys are only used in the error message.

    Returns
    -------
    GeoInfo
        The reference (first) entry.

    Raises
    ------
    ConfigurationError
        With a descriptive message listing every mismatch.
    """
    items = list(geoinfos.items()) if isinstance(geoinfos, dict) else list(geoinfos)
    if not items:
        raise ConfigurationError("No images to validate.")

    ref_key, ref = items[0]
    errors: List[str] = []
    for key, gi in items[1:]:
        if (gi.width, gi.height) != (ref.width, ref.height):
            errors.append(
                f"{key}: size {gi.width}x{gi.height} != reference "
                f"{ref.width}x{ref.height} of {ref_key}"
            )
        if gi.count != ref.count:
            errors.append(
                f"{key}: {gi.count} channels != reference {ref.count} of {ref_key}"
            )

    if errors:
        msg = "Image alignment check failed:\n  • " + "\n  • ".join(errors)
        raise ConfigurationError(msg)
    return ref