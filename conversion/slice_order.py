import logging
import numpy as np

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def reference_slice_index(num_headers: int, is_interleaved: bool, num_volumes: int) -> int:
    """
    Index of the next slice in the same spatial stack as slice 0.

    For volume-major input this is slice 1; for slice-interleaved input the
    next location of volume 0 sits ``num_volumes`` files later. A single
    header has no second slice and compares against itself.
    """
    if num_headers <= 1:
        return 0
    return num_volumes if is_interleaved else 1


def determine_slice_order_is(volume, header_origins, is_interleaved: bool, num_volumes: int) -> bool:
    """
    Determines whether slices go inferior to superior (IS) along the through-plane axis.

    Args:
        volume (DiffusionVolume): Volume whose origin is slice 0's origin.
        header_origins (list): Reported origin of every slice, in file order.
        is_interleaved (bool): Whether the files were slice-interleaved.
        num_volumes (int): Number of gradient volumes.

    Returns:
        bool: True for IS order, False for SI order (negative projection).
    """
    image0_origin = np.asarray(volume.origin, dtype=float)
    next_slice = reference_slice_index(len(header_origins), is_interleaved, num_volumes)
    image1_origin = np.asarray(header_origins[next_slice], dtype=float)
    logger.debug(f"Slice 0: {image0_origin}")
    logger.debug(f"Slice {next_slice}: {image1_origin}")

    displacement = image1_origin - image0_origin
    projection = float(displacement @ volume.space_directions()[:, 2])
    return not projection < 0


def set_directions_from_slice_order(volume, slice_order_is: bool) -> None:
    """Negates the through-plane column of the direction matrix for SI slice order."""
    if slice_order_is:
        logger.info("Slice order is IS")
        return
    logger.info("Slice order is SI")
    direction = volume.direction.copy()
    direction[:, 2] = -direction[:, 2]
    volume.direction = direction
