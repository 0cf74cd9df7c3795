"""
Detection and removal of slice interleaving in a stack of DICOM slices.

A diffusion series stored as one file per slice arrives either volume-major
(all slices of volume 0, then all slices of volume 1, ...) or slice-major
(location 0 for every volume, then location 1 for every volume, ...). The
downstream writers assume volume-major order, so slice-major stacks are
permuted in place along the slice axis.
"""
import logging
from typing import NamedTuple
import numpy as np

from .errors import DataIntegrityError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


class InterleaveResult(NamedTuple):
    slices_per_volume: int
    num_volumes: int
    is_interleaved: bool


def build_slice_location_map(locations: list[str]) -> dict[str, int]:
    """
    Counts how many slices share each reported slice-location string.

    The returned dict keeps the order in which locations were first seen.
    """
    location_map: dict[str, int] = {}
    for location in locations:
        location_map[location] = location_map.get(location, 0) + 1
    return location_map


def count_slices_per_volume(locations: list[str]) -> int:
    """
    Number of distinct slice locations, i.e. the number of slices per volume.

    Raises:
        DataIntegrityError: If the slice count is not evenly divisible by the
            number of distinct locations (slices are missing from the series).
    """
    if not locations:
        raise DataIntegrityError("No slice locations were provided.")
    location_map = build_slice_location_map(locations)
    if len(locations) % len(location_map) != 0:
        raise DataIntegrityError(
            f"Missing DICOM Slice files: Number of slice files ({len(locations)}) not evenly "
            f"divisible by the number of slice locations ({len(location_map)})."
        )
    return len(location_map)


def slice_location_indicators(locations: list[str], location_map: dict[str, int] = None) -> list[int]:
    """Position of each slice's location string in first-seen order."""
    if location_map is None:
        location_map = build_slice_location_map(locations)
    position = {location: i for i, location in enumerate(location_map)}
    return [position[location] for location in locations]


def is_slice_interleaved(locations: list[str]) -> bool:
    """
    Decides whether the slices are ordered slice-major.

    Only the first two slices are compared: if they report the same location,
    all volumes of one location come first. Irregular orderings beyond the
    first pair are not detected. A single slice, or a single location, is
    always treated as volume-major.
    """
    if len(locations) < 2:
        return False
    location_map = build_slice_location_map(locations)
    if len(location_map) == 1:
        return False
    indicators = slice_location_indicators(locations[:2], location_map)
    return indicators[0] == indicators[1]


def deinterleave_index(num_slices: int, slices_per_volume: int) -> np.ndarray:
    """
    Source slice index for every destination slice when de-interleaving.

    With V = num_slices / slices_per_volume volumes, volume k and in-volume
    slice m: ``new[k * slices_per_volume + m] = old[m * V + k]``.
    """
    if slices_per_volume < 1 or num_slices % slices_per_volume != 0:
        raise DataIntegrityError(
            f"Cannot permute {num_slices} slices into volumes of {slices_per_volume} slices."
        )
    num_volumes = num_slices // slices_per_volume
    k = np.arange(num_volumes)[:, np.newaxis]
    m = np.arange(slices_per_volume)[np.newaxis, :]
    return (m * num_volumes + k).ravel()


def interleave_index(num_slices: int, slices_per_volume: int) -> np.ndarray:
    """Inverse of :func:`deinterleave_index` (volume-major back to slice-major)."""
    return np.argsort(deinterleave_index(num_slices, slices_per_volume))


def deinterleave_volume(data: np.ndarray, slices_per_volume: int) -> np.ndarray:
    """
    Permutes the slice axis of a ``[x, y, slice]`` array from slice-major to volume-major order.

    The permutation is applied in place, one x-plane of (y, slice) columns at a
    time, and the same array is returned.
    """
    order = deinterleave_index(data.shape[2], slices_per_volume)
    for x in range(data.shape[0]):
        data[x] = data[x][:, order]
    return data


def resolve_interleaving(volume, locations: list[str], multi_slice_volume: bool) -> InterleaveResult:
    """
    Determines slices per volume and de-interleaves the volume when required.

    Args:
        volume (DiffusionVolume): Assembled volume; its data is modified in place.
        locations (list[str]): Raw slice-location string for every slice, in file order.
        multi_slice_volume (bool): True if the data came from a single multi-frame file.

    Returns:
        InterleaveResult: slices_per_volume, num_volumes and whether the input was interleaved.

    Raises:
        DataIntegrityError: If the slices cannot be evenly partitioned into volumes.
    """
    num_slices = volume.num_slices
    if len(locations) != num_slices:
        raise DataIntegrityError(
            f"Got {len(locations)} slice locations for a volume with {num_slices} slices."
        )

    if multi_slice_volume:
        # De-interleaving a multi-frame file is not supported; frames are used as stored.
        location_map = build_slice_location_map(locations)
        slices_per_volume = len(location_map)
        if num_slices % slices_per_volume != 0:
            logger.warning(f"Multi-frame file has {num_slices} frames over {slices_per_volume} "
                           f"locations; treating it as a single volume.")
            slices_per_volume = num_slices
        logger.info(f"Multi-frame volume: SlicesPerVolume = {slices_per_volume}, de-interleaving skipped.")
        return InterleaveResult(slices_per_volume, num_slices // slices_per_volume, False)

    slices_per_volume = count_slices_per_volume(locations)
    num_volumes = num_slices // slices_per_volume
    logger.info(f"SlicesPerVolume = {slices_per_volume}, NumVolumes = {num_volumes}")

    if num_slices < 2 or slices_per_volume == 1:
        return InterleaveResult(slices_per_volume, num_volumes, False)

    if not is_slice_interleaved(locations):
        logger.info("Dicom images are ordered in a volume interleaving way.")
        return InterleaveResult(slices_per_volume, num_volumes, False)

    logger.info("Dicom images are ordered in a slice interleaving way.")
    deinterleave_volume(volume.data, slices_per_volume)
    return InterleaveResult(slices_per_volume, num_volumes, True)
