import logging
import numpy as np

from .errors import VolumeReadError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

PIXEL_DTYPE = np.int16


class DiffusionVolume:
    """
    A 3D grid of signed 16-bit samples with its physical geometry.

    The sample array is indexed ``[x, y, z]`` (columns, rows, slices), so the
    x index varies fastest when the buffer is serialized in Fortran order.
    This matches the on-disk voxel order of both NRRD and NIfTI.

    Parameters
    ----------
    data : np.ndarray
        3D sample array of shape (cols, rows, slices). Converted to int16.
    spacing : array-like
        Three positive voxel spacings (x, y, z) in mm.
    origin : array-like
        Position of the first voxel in patient (LPS) coordinates.
    direction : np.ndarray, optional
        3x3 direction-cosine matrix; each column is the unit direction of one
        index axis. Defaults to identity.
    """
    def __init__(self, data, spacing, origin, direction=None):
        data = np.asarray(data)
        if data.ndim != 3:
            raise ValueError(f"Volume data must be 3D, got {data.ndim}D with shape {data.shape}.")
        self.data = np.asarray(data, dtype=PIXEL_DTYPE)

        spacing = np.asarray(spacing, dtype=float)
        if spacing.shape != (3,) or np.any(spacing <= 0):
            raise ValueError(f"Spacing must be three positive values, got {spacing}.")
        self.spacing = spacing

        origin = np.asarray(origin, dtype=float)
        if origin.shape != (3,):
            raise ValueError(f"Origin must have three components, got {origin}.")
        self.origin = origin

        self.direction = np.eye(3) if direction is None else np.array(direction, dtype=float)
        if self.direction.shape != (3, 3):
            raise ValueError(f"Direction must be a 3x3 matrix, got shape {self.direction.shape}.")

    @property
    def shape(self) -> tuple:
        return self.data.shape

    @property
    def num_voxels(self) -> int:
        return int(self.data.size)

    @property
    def num_slices(self) -> int:
        return int(self.data.shape[2])

    def spacing_matrix(self) -> np.ndarray:
        """Diagonal 3x3 matrix holding the voxel spacing."""
        return np.diag(self.spacing)

    def space_directions(self) -> np.ndarray:
        """
        Spacing-scaled direction matrix (direction @ spacing).

        Column ``i`` is the physical displacement from one voxel to the next
        along index axis ``i``.
        """
        return self.direction @ self.spacing_matrix()

    def copy(self):
        return DiffusionVolume(self.data.copy(), self.spacing.copy(), self.origin.copy(), self.direction.copy())


def build_direction_matrix(direction_cosines) -> np.ndarray:
    """
    Builds a right-handed direction-cosine matrix from DICOM ImageOrientationPatient.

    The first three values are the row direction cosine (direction of increasing
    column index), the last three the column direction cosine (direction of
    increasing row index). They become the first two columns of the matrix; the
    third column, the through-plane axis, is their cross product.

    Args:
        direction_cosines (array-like): Six direction cosines [Rx, Ry, Rz, Cx, Cy, Cz].

    Returns:
        np.ndarray: 3x3 direction matrix whose columns are the index axes.
    """
    dircos = np.asarray(direction_cosines, dtype=float).ravel()
    if dircos.size != 6:
        raise ValueError(f"Expected 6 direction cosines, got {dircos.size}.")

    direction = np.eye(3)
    direction[:, 0] = dircos[:3]
    direction[:, 1] = dircos[3:]
    # Cross product gives the slice (I-axis in L-P-I) direction
    direction[:, 2] = np.cross(direction[:, 0], direction[:, 1])
    return direction


def assemble_volume(facade) -> tuple[DiffusionVolume, bool]:
    """
    Builds the raw 3D volume from the ordered slices exposed by a header facade.

    Args:
        facade: A header facade (see ``data_io.dicom_utils.DicomHeaderFacade``)
            exposing ``headers``, ``is_multi_frame`` and ``read_voxels()``.

    Returns:
        tuple[DiffusionVolume, bool]:
            - volume: samples with origin, spacing and direction taken from slice 0.
            - multi_slice_volume: True when the whole acquisition came from one
              multi-frame file (de-interleaving is not legal in that case).

    Raises:
        VolumeReadError: If the collaborator fails to read or decode the series.
    """
    if not facade.headers:
        raise VolumeReadError("Cannot assemble a volume: no slice headers were provided.")

    try:
        voxels = facade.read_voxels()
    except VolumeReadError as e:
        logger.error(f"Exception thrown while reading the DICOM volume: {e}")
        raise

    ref_header = facade.headers[0]
    volume = DiffusionVolume(
        voxels,
        spacing=ref_header.spacing,
        origin=ref_header.origin,
        direction=build_direction_matrix(ref_header.direction_cosines)
    )
    multi_slice_volume = bool(facade.is_multi_frame)

    logger.info(f"Assembled volume of shape {volume.shape} "
                f"({'single multi-frame file' if multi_slice_volume else f'{len(facade.headers)} slice files'}).")
    logger.debug(f"LPS direction matrix:\n{volume.direction}")
    logger.debug(f"Spacing matrix:\n{volume.spacing_matrix()}")
    return volume, multi_slice_volume


def reshape_to_4d(volume: DiffusionVolume, num_volumes: int) \
        -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Reinterprets a 3D slice stack as a 4D (x, y, z, volume) image.

    The underlying buffer is reused unchanged: the 3D array is read in Fortran
    order and refilled into the 4D shape. This is only correct when the slices
    are in volume-major order.

    Args:
        volume (DiffusionVolume): The assembled (and de-interleaved) volume.
        num_volumes (int): Number of gradient volumes.

    Returns:
        tuple:
            - data_4d (np.ndarray): int16 array of shape (cols, rows, slices_per_volume, num_volumes).
            - direction_4d (np.ndarray): 4x4 direction with the 3x3 in the top-left block.
            - spacing_4d (np.ndarray): spacing with 1.0 for the volume axis.
            - origin_4d (np.ndarray): origin with 0.0 for the volume axis.
    """
    if num_volumes < 1:
        raise ValueError(f"Number of volumes must be positive, got {num_volumes}.")

    nx, ny, nz = volume.shape
    slices_per_volume = nz // num_volumes
    if slices_per_volume * num_volumes != nz:
        logger.warning(f"#of slices in volume not evenly divisible by the number of volumes: "
                       f"slices = {nz} volumes = {num_volumes} left-over slices = {nz % num_volumes}")

    size_4d = (nx, ny, slices_per_volume, num_volumes)
    flat = volume.data.ravel(order='F')
    data_4d = flat[:int(np.prod(size_4d))].reshape(size_4d, order='F')

    direction_4d = np.eye(4)
    direction_4d[:3, :3] = volume.direction
    spacing_4d = np.append(volume.spacing, 1.0)
    origin_4d = np.append(volume.origin, 0.0)
    return data_4d, direction_4d, spacing_4d, origin_4d
