import logging
import numpy as np
import nibabel as nib
import os

from conversion.errors import OutputConfigurationError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

NIFTI_EXTENSIONS = ('.nii.gz', '.nii')

# NIfTI xform codes
NIFTI_XFORM_UNKNOWN = 0
NIFTI_XFORM_SCANNER_ANAT = 1

LPS_TO_RAS = np.diag([-1.0, -1.0, 1.0, 1.0])


def has_valid_nifti_extension(filepath: str) -> int:
    """
    Position at which the NIfTI suffix of `filepath` starts.

    Parameters
    ----------
    filepath : str
        Volume file name ending in ``.nii`` or ``.nii.gz``.

    Returns
    -------
    int
        Index of the suffix, so ``filepath[:index]`` is the stem.

    Raises
    ------
    OutputConfigurationError
        If neither suffix is present.
    """
    for extension in NIFTI_EXTENSIONS:
        if filepath.endswith(extension):
            return len(filepath) - len(extension)
    logger.error(f"FSL Format output chosen, but output volume {filepath} is not a recognized NIFTI filetype")
    raise OutputConfigurationError(
        f"FSL Format output chosen, but output volume {filepath} is not a recognized NIFTI filetype "
        f"(expected one of {', '.join(NIFTI_EXTENSIONS)})."
    )


def derive_fsl_filenames(volume_path: str, bval_path: str = None, bvec_path: str = None) -> tuple[str, str]:
    """
    Resolves the `.bval` / `.bvec` paths written next to a NIfTI volume.

    Explicit paths are used as given; missing ones replace the NIfTI suffix of
    `volume_path`. The suffix is only required when a path has to be derived.

    Returns
    -------
    tuple[str, str]
        (bval_path, bvec_path).
    """
    if bval_path and bvec_path:
        return bval_path, bvec_path
    stem = volume_path[:has_valid_nifti_extension(volume_path)]
    return bval_path or stem + '.bval', bvec_path or stem + '.bvec'


def write_fsl_bvals(bvals, filepath: str) -> None:
    """Writes one b-value per line, in volume order."""
    with open(filepath, 'w') as f:
        for bval in np.asarray(bvals, dtype=float):
            f.write(f"{float(bval)}\n")


def write_fsl_bvecs(bvecs, filepath: str) -> None:
    """Writes one gradient per line as three space-separated components, in volume order."""
    bvecs = np.asarray(bvecs, dtype=float).reshape(-1, 3)
    with open(filepath, 'w') as f:
        for bvec in bvecs:
            f.write(" ".join(str(float(v)) for v in bvec) + "\n")


def load_fsl_bvecs(filepath: str) -> np.ndarray:
    """
    Loads b-vectors from an FSL-formatted text file.

    The file may hold 3 rows (X, Y, Z) and N columns, or N rows and 3 columns.
    An ambiguous 3x3 file is read as N rows.

    Parameters
    ----------
    filepath : str
        Path to the FSL bvec file.

    Returns
    -------
    np.ndarray
        An Nx3 NumPy array of b-vectors.

    Raises
    ------
    FileNotFoundError
        If the specified filepath does not exist.
    ValueError
        If the file is empty, malformed, or not 3xN / Nx3.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"FSL bvec file not found at: {filepath}")

    try:
        bvecs = np.loadtxt(filepath, ndmin=2)
        if bvecs.size == 0:
            raise ValueError(f"bvec file is empty: {filepath}")
    except Exception as e: # Catches errors from loadtxt (e.g. malformed, not numbers)
        raise ValueError(f"Failed to load or parse bvec file {filepath}: {e}")

    if bvecs.shape[1] == 3:
        pass # Already Nx3
    elif bvecs.shape[0] == 3:
        bvecs = bvecs.T
    else:
        raise ValueError(f"b-vectors in {filepath} must be 3xN or Nx3. Got shape {bvecs.shape}.")
    return bvecs


def load_fsl_bvals(filepath: str) -> np.ndarray:
    """
    Loads b-values from an FSL-formatted text file (single row or column).

    Parameters
    ----------
    filepath : str
        Path to the FSL bval file.

    Returns
    -------
    np.ndarray
        A 1D NumPy array of b-values.

    Raises
    ------
    FileNotFoundError
        If the specified filepath does not exist.
    ValueError
        If the file is empty, malformed, or not one-dimensional.
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"FSL bval file not found at: {filepath}")

    try:
        bvals = np.loadtxt(filepath)
        if bvals.size == 0:
            raise ValueError(f"bval file is empty: {filepath}")
    except Exception as e:
        raise ValueError(f"Failed to load or parse bval file {filepath}: {e}")

    bvals = bvals.squeeze()
    if bvals.ndim == 0:
        bvals = bvals.reshape(1,)
    elif bvals.ndim != 1:
        raise ValueError(
            f"b-values in {filepath} could not be converted to a 1D array. Got shape {bvals.shape} after squeeze."
        )
    return bvals


def lps_to_ras_affine(direction, spacing, origin) -> np.ndarray:
    """4x4 NIfTI (RAS) affine from an LPS direction matrix, spacing and origin."""
    direction = np.asarray(direction, dtype=float)[:3, :3]
    spacing = np.asarray(spacing, dtype=float)[:3]
    affine_lps = np.eye(4)
    affine_lps[:3, :3] = direction @ np.diag(spacing)
    affine_lps[:3, 3] = np.asarray(origin, dtype=float)[:3]
    return LPS_TO_RAS @ affine_lps


def write_nifti_4d(data4d: np.ndarray, direction4: np.ndarray, spacing4: np.ndarray,
                   origin4: np.ndarray, filepath: str) -> None:
    """
    Writes a 4D DWI volume as NIfTI with a scanner-anatomical qform.

    Parameters
    ----------
    data4d : np.ndarray
        Samples indexed (x, y, z, volume).
    direction4, spacing4, origin4 : np.ndarray
        4D geometry in LPS, spatial part in the first three entries.
    filepath : str
        Output `.nii` / `.nii.gz` path.
    """
    affine = lps_to_ras_affine(direction4, spacing4, origin4)
    img = nib.Nifti1Image(np.asarray(data4d), affine)
    img.header.set_zooms(tuple(float(s) for s in np.asarray(spacing4)[:4]))
    img.header.set_xyzt_units('mm')
    img.set_qform(affine, code=NIFTI_XFORM_SCANNER_ANAT)
    img.set_sform(affine, code=NIFTI_XFORM_UNKNOWN)

    output_dir = os.path.dirname(filepath)
    if output_dir and not os.path.exists(output_dir):
        os.makedirs(output_dir, exist_ok=True)
    nib.save(img, filepath)


def write_fsl_file_set(data4d, direction4, spacing4, origin4, bvals, bvecs,
                       volume_path: str, bval_path: str = None, bvec_path: str = None) -> bool:
    """
    Writes a NIfTI volume with its `.bval` and `.bvec` tables.

    Output names are resolved before anything is written, so an unusable
    volume name raises :class:`OutputConfigurationError` and leaves no files.

    Returns
    -------
    bool
        True if all three files were written, False on the first write failure.
    """
    bval_path, bvec_path = derive_fsl_filenames(volume_path, bval_path, bvec_path)

    try:
        write_nifti_4d(data4d, direction4, spacing4, origin4, volume_path)
        logger.info(f"Wrote 4D NIfTI volume: {volume_path}")
    except Exception as e:
        logger.error(f"Exception thrown while writing {volume_path}: {e}")
        return False

    try:
        write_fsl_bvals(bvals, bval_path)
    except OSError as e:
        logger.error(f"Failed to write {bval_path}: {e}")
        return False

    try:
        write_fsl_bvecs(bvecs, bvec_path)
    except OSError as e:
        logger.error(f"Failed to write {bvec_path}: {e}")
        return False

    logger.info(f"Wrote FSL gradient tables: {bval_path}, {bvec_path}")
    return True


def write_fsl_formatted_file_set(converter, volume_path: str, bval_path: str = None,
                                 bvec_path: str = None) -> bool:
    """
    Writes a converted DWI series as FSL NIfTI + bval + bvec.

    The 3D slice stack is reinterpreted as 4D without copying voxel order, and
    the `.bvec` rows are the same b-value scaled, frame-rotated vectors that a
    NRRD header would carry.

    Parameters
    ----------
    converter : DWIConverter
        Converter after `extract_dwi_data()`.
    volume_path : str
        Output `.nii` / `.nii.gz` path.
    bval_path, bvec_path : str, optional
        Explicit table paths; derived from `volume_path` when omitted.

    Returns
    -------
    bool
        True on success, False if any file could not be written.
    """
    data4d, direction4, spacing4, origin4 = converter.get_4d_volume()
    return write_fsl_file_set(
        data4d, direction4, spacing4, origin4,
        converter.bvalues,
        converter.get_bvalue_scaled_diffusion_vectors(),
        volume_path, bval_path, bvec_path
    )
