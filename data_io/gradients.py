import os
import logging
import warnings
import numpy as np
from dipy.core.gradients import gradient_table, GradientTable # Import GradientTable for type hinting

with warnings.catch_warnings():
    # nibabel.nicom warns on import about its experimental DICOM readers
    warnings.simplefilter('ignore', UserWarning)
    from nibabel.nicom.dwiparams import B2q, nearest_pos_semi_def, q2bg

from conversion.errors import DataIntegrityError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def _as_gradient_array(gradients) -> np.ndarray:
    gradients = np.asarray(gradients, dtype=float)
    if gradients.size == 0:
        return np.zeros((0, 3), dtype=float)
    if gradients.ndim != 2 or gradients.shape[1] != 3:
        raise ValueError(f"Gradients must have shape (N, 3), but got shape {gradients.shape}.")
    return gradients


def compute_max_bvalue(bvals) -> float:
    """Largest b-value in the list; 0.0 for an empty or all-non-positive list."""
    bvals = np.asarray(bvals, dtype=float)
    if bvals.size == 0:
        return 0.0
    return float(max(0.0, bvals.max()))


def scale_gradients_by_bvalue(gradients, bvals, max_bvalue: float = None) -> np.ndarray:
    """
    Scales each unit gradient direction by ``sqrt(b / max_b)``.

    The norm of the scaled vector then encodes the relative diffusion
    weighting of its volume, as expected by the NRRD DWMRI convention.

    Parameters
    ----------
    gradients : array-like
        (N, 3) unit-norm gradient directions, one per volume.
    bvals : array-like
        N b-values in the same order.
    max_bvalue : float, optional
        The nominal b-value. Defaults to the maximum of `bvals`. If it is 0,
        every scaled vector is the zero vector.

    Returns
    -------
    np.ndarray
        (N, 3) b-value scaled gradient vectors.
    """
    gradients = _as_gradient_array(gradients)
    bvals = np.asarray(bvals, dtype=float)
    if len(bvals) != gradients.shape[0]:
        raise ValueError(
            f"Number of b-values ({len(bvals)}) must match the number of "
            f"gradient vectors ({gradients.shape[0]})."
        )
    if max_bvalue is None:
        max_bvalue = compute_max_bvalue(bvals)

    if max_bvalue > 0:
        scale_factors = np.sqrt(bvals / max_bvalue)
    else:
        scale_factors = np.zeros(len(bvals), dtype=float)

    for k, scale in enumerate(scale_factors):
        logger.debug(f"Scale Factor for Multiple BValues: {k} -- sqrt( {bvals[k]} / {max_bvalue} ) = {scale}")
    return gradients * scale_factors[:, np.newaxis]


def rotate_to_measurement_frame(gradients, measurement_frame, use_identity_measurement_frame: bool) -> np.ndarray:
    """
    Expresses gradients relative to an identity measurement frame, if requested.

    Some scanners record the prescribed directions already rotated by the
    oblique slice orientation. With `use_identity_measurement_frame` each
    vector is multiplied by the inverse of `measurement_frame`; otherwise the
    vectors are returned unchanged.
    """
    gradients = _as_gradient_array(gradients)
    if not use_identity_measurement_frame:
        return gradients.copy()
    inverse_frame = np.linalg.inv(np.asarray(measurement_frame, dtype=float))
    return (inverse_frame @ gradients.T).T


def compute_bvalue_scaled_gradients(gradients, bvals, measurement_frame=None,
                                    use_identity_measurement_frame: bool = False) -> np.ndarray:
    """
    Full gradient pipeline: b-value scaling followed by optional frame rotation.

    The result has one row per b-value, in volume order, and is what both
    the NRRD ``DWMRI_gradient_NNNN`` lines and the FSL ``.bvec`` rows contain.
    """
    if measurement_frame is None:
        measurement_frame = np.eye(3)
    scaled = scale_gradients_by_bvalue(gradients, bvals)
    return rotate_to_measurement_frame(scaled, measurement_frame, use_identity_measurement_frame)


def read_gradient_override_file(gradient_vector_file: str, num_volumes: int) -> np.ndarray:
    """
    Reads gradient directions that replace the ones found in the DICOM headers.

    File format::

        <num_gradients>
        x y z
        x y z
        ...

    Args:
        gradient_vector_file (str): Path to the override file.
        num_volumes (int): Number of reconstructed volumes; must equal the declared count.

    Returns:
        np.ndarray: (N, 3) gradient directions. Reading stops at the end of the
        input; a trailing group with fewer than three numbers is dropped.

    Raises:
        FileNotFoundError: If the file does not exist.
        DataIntegrityError: If the declared count is missing or differs from `num_volumes`.
    """
    if not os.path.exists(gradient_vector_file):
        raise FileNotFoundError(f"Gradient vector file not found: {gradient_vector_file}")

    with open(gradient_vector_file, 'r') as f:
        tokens = f.read().split()

    try:
        num_gradients = int(tokens[0])
    except (IndexError, ValueError):
        raise DataIntegrityError(f"Gradient vector file {gradient_vector_file} does not start with a gradient count.")

    if num_gradients != num_volumes:
        logger.error(f"number of Gradients ({num_gradients}) doesn't match number of volumes ({num_volumes})")
        raise DataIntegrityError(
            f"number of Gradients ({num_gradients}) in {gradient_vector_file} doesn't match "
            f"number of volumes ({num_volumes})"
        )

    values = []
    for token in tokens[1:]:
        try:
            values.append(float(token))
        except ValueError:
            logger.warning(f"Stopped reading {gradient_vector_file} at non-numeric token '{token}'.")
            break

    num_complete = len(values) // 3
    if num_complete != num_gradients:
        logger.warning(f"Gradient vector file declares {num_gradients} gradients but holds {num_complete}.")
    return np.array(values[:num_complete * 3], dtype=float).reshape(num_complete, 3)


def bmatrix_to_gradient(b_matrix) -> tuple[float, np.ndarray]:
    """
    Derives a b-value and unit gradient direction from a 3x3 diffusion b-matrix.

    The direction is the principal eigenvector and the b-value its eigenvalue
    (the b-matrix of a single gradient is ``b * g g^T``).

    Returns:
        tuple[float, np.ndarray]: (b_value, unit_direction). A zero b-matrix
        gives (0.0, [0, 0, 0]).
    """
    B = np.asarray(b_matrix, dtype=float)
    if B.shape != (3, 3):
        raise ValueError(f"b-matrix must be 3x3, got shape {B.shape}.")
    # fix rounding errors by making B positive semi-definite first
    q = B2q(nearest_pos_semi_def(B), tol=1e-8)
    b_value, direction = q2bg(q)
    return float(b_value), np.asarray(direction, dtype=float)

def create_gradient_table(bvals, unit_bvecs, b0_threshold: float = 50.0, atol: float = 1e-2) -> GradientTable:
    """
    Checks a b-value list and its unit directions by building a dipy GradientTable.

    Every volume above `b0_threshold` must carry a unit-norm direction (within
    `atol`); b0 volumes may carry the zero vector.

    Raises:
        DataIntegrityError: If the table is malformed or dipy rejects it.
    """
    bvals = np.asarray(bvals, dtype=float)
    try:
        unit_bvecs = _as_gradient_array(unit_bvecs)
    except ValueError as e:
        raise DataIntegrityError(str(e))
    if bvals.ndim != 1 or len(bvals) != unit_bvecs.shape[0]:
        raise DataIntegrityError(
            f"Gradient table has {bvals.size} b-values for {unit_bvecs.shape[0]} directions."
        )

    try:
        gtab = gradient_table(bvals, bvecs=unit_bvecs, b0_threshold=b0_threshold, atol=atol)
    except ValueError as e:
        raise DataIntegrityError(f"Invalid diffusion gradient table: {e}")

    logger.info(f"Gradient table: {int(gtab.b0s_mask.sum())} b0 and "
                f"{int((~gtab.b0s_mask).sum())} diffusion-weighted volumes.")
    return gtab
