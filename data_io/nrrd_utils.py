import os
import logging
import numpy as np
import nrrd # For reading NRRD files

from .gradients import compute_max_bvalue

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

NRRD_MAGIC = "NRRD0005"
NRRD_SPACE = "left-posterior-superior"
DETACHED_HEADER_EXTENSION = ".nhdr"
RAW_DATA_EXTENSION = ".raw"


def format_number(value: float, precision: int = 17) -> str:
    """Scientific notation with `precision` significant digits, e.g. ``1.0000000000000000e+03``."""
    return f"{float(value):.{precision - 1}e}"


def _format_vector(vector, precision: int = 17) -> str:
    return "(" + ",".join(format_number(v, precision) for v in vector) + ")"


def _format_matrix_columns(matrix, precision: int = 17) -> str:
    matrix = np.asarray(matrix, dtype=float)
    return " ".join(_format_vector(matrix[:, i], precision) for i in range(matrix.shape[1]))


def make_file_comment(version: str, use_bmatrix_gradient_directions: bool = False,
                      use_identity_measurement_frame: bool = False,
                      small_gradient_threshold: float = 0.2) -> str:
    """
    Builds the comment block stamped at the top of every written NRRD header.

    Args:
        version (str): Converter version string.
        use_bmatrix_gradient_directions (bool): Recorded as a command line option if set.
        use_identity_measurement_frame (bool): Recorded as a command line option if set.
        small_gradient_threshold (float): Always recorded.

    Returns:
        str: Newline-terminated comment lines, each starting with '#'.
    """
    lines = [
        "#",
        "#",
        f"# This file was created by dwiconvert version {version}",
        "# Command line options:",
        f"# --small_gradient_threshold {small_gradient_threshold:g}",
    ]
    if use_identity_measurement_frame:
        lines.append("# --use_identity_measurement_frame")
    if use_bmatrix_gradient_directions:
        lines.append("# --use_bmatrix_gradient_directions")
    return "\n".join(lines) + "\n"


def raw_data_filename(output_path: str) -> str | None:
    """Sibling `.raw` file of a detached `.nhdr` header, or None for a single-file `.nrrd`."""
    extension_pos = output_path.find(DETACHED_HEADER_EXTENSION)
    if extension_pos == -1:
        return None
    return output_path[:extension_pos] + RAW_DATA_EXTENSION


def build_dwi_nrrd_header(converter, comment: str = "", data_file: str = None) -> str:
    """
    Renders the text header of a DWI NRRD file in its fixed field order.

    Args:
        converter (DWIConverter): Converter after `extract_dwi_data()`.
        comment (str): Comment block inserted after the magic line.
        data_file (str, optional): Base name of the detached data file; adds the
            ``content`` and ``data file`` fields.

    Returns:
        str: Header text, terminated by the empty line that separates it from the data.
    """
    volume = converter.volume
    measurement_frame = np.eye(3) if converter.use_identity_measurement_frame else converter.measurement_frame
    gradients = converter.get_bvalue_scaled_diffusion_vectors()

    header = f"{NRRD_MAGIC}\n{comment}"
    lines = []
    if data_file is not None:
        lines.append(f"content: exists({data_file},0)")
    lines += [
        "type: short",
        "dimension: 4",
        f"space: {NRRD_SPACE}",
        f"sizes: {converter.cols} {converter.rows} {converter.slices_per_volume} {converter.num_volumes}",
        f"thicknesses:  NaN  NaN {format_number(volume.spacing[2])} NaN",
        f"space directions: {_format_matrix_columns(converter.nrrd_space_directions)} none",
        "centerings: cell cell cell ???",
        "kinds: space space space list",
        "endian: little",
        "encoding: raw",
        'space units: "mm" "mm" "mm"',
        f"space origin: {_format_vector(volume.origin)} ",
    ]
    if data_file is not None:
        lines.append(f"data file: {data_file}")
    lines += [
        f"measurement frame: {_format_matrix_columns(measurement_frame)}",
        "modality:=DWMRI",
        # nominal b-value, i.e. the largest one
        f"DWMRI_b-value:={format_number(converter.max_bvalue)}",
    ]
    for k, gradient in enumerate(gradients):
        lines.append(f"DWMRI_gradient_{k:04d}:=" + "   ".join(format_number(v) for v in gradient))

    return header + "\n".join(lines) + "\n\n"


def write_dwi_nrrd(converter, output_path: str, comment: str = "") -> bool:
    """
    Writes the converted DWI volume as NRRD.

    A path containing ``.nhdr`` produces a detached header plus a sibling
    ``.raw`` file; any other path produces one file with the little-endian
    int16 samples appended after the header.

    Args:
        converter (DWIConverter): Converter after `extract_dwi_data()`.
        output_path (str): Output header (`.nhdr`) or single file (`.nrrd`) path.
        comment (str): Comment block, see :func:`make_file_comment`.

    Returns:
        bool: True if writing was successful, False otherwise.
    """
    raw_path = raw_data_filename(output_path)
    data_file = os.path.basename(raw_path) if raw_path is not None else None
    # x varies fastest on disk
    voxel_bytes = converter.volume.data.astype('<i2').tobytes(order='F')

    try:
        header_text = build_dwi_nrrd_header(converter, comment, data_file)
        output_dir = os.path.dirname(output_path)
        if output_dir and not os.path.exists(output_dir):
            os.makedirs(output_dir, exist_ok=True)

        # the detached header is only written once its data file exists
        if raw_path is not None:
            with open(raw_path, 'wb') as f:
                f.write(voxel_bytes)
            logger.info(f"Wrote raw volume data to: {raw_path}")

        with open(output_path, 'wb') as f:
            f.write(header_text.encode('ascii'))
            if raw_path is None:
                f.write(voxel_bytes)
    except Exception as e:
        logger.error(f"Exception thrown while writing NRRD file {output_path}: {e}")
        return False

    logger.info(f"Successfully wrote DWI NRRD file: {output_path}")
    return True


def nrrd_header_geometry(header: dict) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Splits the spatial part of a pynrrd header into direction, spacing and origin.

    Returns:
        tuple:
            - direction (np.ndarray): 3x3, columns are unit axis directions.
            - spacing (np.ndarray): length of each space direction.
            - origin (np.ndarray): space origin, zeros if absent.
    """
    space_directions = np.asarray(header['space directions'], dtype=float)
    # One row per axis; the list axis has no direction (NaN row)
    spatial = space_directions[~np.isnan(space_directions).any(axis=1)][:3]
    if spatial.shape != (3, 3):
        raise ValueError(f"Expected three spatial axes in 'space directions', got {spatial.shape[0]}.")
    spacing = np.linalg.norm(spatial, axis=1)
    direction = (spatial / spacing[:, np.newaxis]).T
    origin = np.asarray(header.get('space origin', np.zeros(3)), dtype=float)
    return direction, spacing, origin


def read_dwi_nrrd(nrrd_filepath: str) -> tuple[np.ndarray | None, np.ndarray | None, np.ndarray | None, dict]:
    """
    Reads a DWI NRRD file together with its diffusion table.

    Per-volume b-values are recovered from the stored gradient norms as
    ``|g|^2 * DWMRI_b-value``, and the gradients are returned normalized.

    Args:
        nrrd_filepath (str): Path to the `.nrrd` or `.nhdr` file.

    Returns:
        tuple:
            - data (np.ndarray | None): Image data indexed (x, y, z, volume).
            - bvals (np.ndarray | None): One b-value per volume.
            - bvecs (np.ndarray | None): (N, 3) unit gradients; zero for b=0 volumes.
            - header (dict): The full NRRD header.
            Returns (None, None, None, {}) if reading fails or the file is not DWI.
    """
    if not os.path.exists(nrrd_filepath):
        logger.error(f"NRRD file not found: {nrrd_filepath}")
        return None, None, None, {}

    try:
        data, header = nrrd.read(nrrd_filepath)
        logger.info(f"Successfully read NRRD file: {nrrd_filepath}")
    except Exception as e:
        logger.error(f"Failed to read NRRD file {nrrd_filepath}: {e}")
        return None, None, None, {}

    if str(header.get('modality', '')).upper() != 'DWMRI' or 'DWMRI_b-value' not in header:
        logger.error(f"NRRD file {nrrd_filepath} is not a DWMRI file (missing modality or DWMRI_b-value).")
        return None, None, None, header

    try:
        nominal_bvalue = float(header['DWMRI_b-value'])
        gradient_keys = sorted(key for key in header if key.startswith('DWMRI_gradient_'))
        gradients = np.array([[float(v) for v in str(header[key]).split()] for key in gradient_keys], dtype=float)
    except ValueError as e:
        logger.error(f"Could not parse the diffusion table of {nrrd_filepath}: {e}")
        return None, None, None, header

    if gradients.shape != (len(gradient_keys), 3):
        logger.error(f"Malformed DWMRI_gradient fields in {nrrd_filepath}.")
        return None, None, None, header
    if data.ndim != 4 or data.shape[3] != len(gradient_keys):
        logger.error(f"NRRD data shape {data.shape} does not match {len(gradient_keys)} gradients.")
        return None, None, None, header

    norms = np.linalg.norm(gradients, axis=1)
    bvals = norms ** 2 * nominal_bvalue
    bvecs = np.zeros_like(gradients)
    nonzero = norms > 0
    bvecs[nonzero] = gradients[nonzero] / norms[nonzero, np.newaxis]
    logger.info(f"Read {len(bvals)} gradients, max b-value {compute_max_bvalue(bvals)}.")
    return data, bvals, bvecs, header
