import abc
import logging
import numpy as np

from data_io.dicom_utils import DicomHeaderFacade
from data_io.gradients import (
    bmatrix_to_gradient,
    compute_bvalue_scaled_gradients,
    compute_max_bvalue,
    read_gradient_override_file,
)
from .errors import DWIConversionError, DataIntegrityError
from .interleave import resolve_interleaving
from .slice_order import determine_slice_order_is, set_directions_from_slice_order
from .volume import assemble_volume, reshape_to_4d

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

DEFAULT_SMALL_GRADIENT_THRESHOLD = 0.2


class DWIConverter(abc.ABC):
    """
    Base class turning an ordered DICOM slice stack into a DWI volume and gradient table.

    Subclasses supply the scanner-specific part through
    :meth:`_extract_diffusion_metadata`; everything else (volume assembly,
    de-interleaving, slice-order correction, gradient override and scaling) is
    shared. A subclass that knows its slice order in advance sets the class
    attribute ``slice_order_is`` to True or False and the origin-based
    detection is skipped.

    Parameters
    ----------
    facade : DicomHeaderFacade
        Ordered slice headers and pixel data of one series.
    use_bmatrix_gradient_directions : bool, optional
        Derive gradient directions from the b-matrix instead of the reported
        gradient orientation.
    use_identity_measurement_frame : bool, optional
        Rotate gradients by the inverse measurement frame and write an identity frame.
    small_gradient_threshold : float, optional
        Non-zero gradient magnitudes below this value are rejected. Default 0.2.
    gradient_vector_file : str, optional
        File whose directions replace the ones extracted from the headers.
    """
    slice_order_is = None

    def __init__(self, facade, use_bmatrix_gradient_directions: bool = False,
                 use_identity_measurement_frame: bool = False,
                 small_gradient_threshold: float = DEFAULT_SMALL_GRADIENT_THRESHOLD,
                 gradient_vector_file: str = None):
        self.facade = facade
        self.use_bmatrix_gradient_directions = use_bmatrix_gradient_directions
        self.use_identity_measurement_frame = use_identity_measurement_frame
        self.small_gradient_threshold = small_gradient_threshold
        self.gradient_vector_file = gradient_vector_file

        self.measurement_frame = np.eye(3)
        self.volume = None
        self._loaded_direction = None
        self.multi_slice_volume = False
        self.is_interleaved = False
        self.slices_per_volume = 0
        self.num_volumes = 0
        self.bvalues = np.zeros(0, dtype=float)
        self.diffusion_vectors = np.zeros((0, 3), dtype=float)

    # --- Accessors ---
    @property
    def rows(self) -> int:
        return int(self.volume.shape[1])

    @property
    def cols(self) -> int:
        return int(self.volume.shape[0])

    @property
    def max_bvalue(self) -> float:
        return compute_max_bvalue(self.bvalues)

    @property
    def nrrd_space_directions(self) -> np.ndarray:
        """Columns are the physical step along each spatial axis (direction @ spacing)."""
        return self.volume.space_directions()

    def set_measurement_frame_identity(self) -> None:
        self.measurement_frame = np.eye(3)

    def get_bvalue_scaled_diffusion_vectors(self) -> np.ndarray:
        """Gradient table as written to disk: b-value scaled, then rotated if requested."""
        return compute_bvalue_scaled_gradients(
            self.diffusion_vectors,
            self.bvalues,
            measurement_frame=self.measurement_frame,
            use_identity_measurement_frame=self.use_identity_measurement_frame
        )

    def get_4d_volume(self):
        """See :func:`conversion.volume.reshape_to_4d`."""
        return reshape_to_4d(self.volume, self.num_volumes)

    # --- Pipeline ---
    def load_dicom_directory(self) -> None:
        """
        Assembles the 3D volume and brings its slices into volume-major order.

        Raises:
            VolumeReadError: If the slices cannot be read.
            DataIntegrityError: If the slices cannot be partitioned into volumes.
        """
        self.volume, self.multi_slice_volume = assemble_volume(self.facade)
        self._loaded_direction = self.volume.direction.copy()
        result = resolve_interleaving(self.volume, self.facade.slice_locations, self.multi_slice_volume)
        self.slices_per_volume = result.slices_per_volume
        self.num_volumes = result.num_volumes
        self.is_interleaved = result.is_interleaved

    @abc.abstractmethod
    def _extract_diffusion_metadata(self, require_directions: bool = True) -> tuple[np.ndarray, np.ndarray]:
        """
        Returns (bvalues, unit gradient directions), one entry per volume.

        With ``require_directions`` False the directions are about to be
        replaced, so a weighted volume without one gets the zero vector.
        """

    def extract_dwi_data(self) -> None:
        """
        Fills the b-value list and gradient table, then fixes the slice order.

        A gradient vector file, when set, is read first and replaces every
        direction found in the headers; only the b-values come from the slices.
        Calling this again recomputes everything from the loaded volume.

        Raises:
            DWIConversionError: If called before :meth:`load_dicom_directory`.
            DataIntegrityError: On malformed diffusion metadata or a bad override file.
        """
        if self.volume is None:
            raise DWIConversionError("load_dicom_directory() must be called before extract_dwi_data().")

        override_vectors = None
        if self.gradient_vector_file:
            override_vectors = self._read_override_vectors(self.gradient_vector_file)

        bvalues, vectors = self._extract_diffusion_metadata(require_directions=override_vectors is None)
        bvalues = np.asarray(bvalues, dtype=float)
        vectors = np.asarray(vectors, dtype=float).reshape(-1, 3)
        if len(bvalues) != self.num_volumes or vectors.shape[0] != self.num_volumes:
            raise DataIntegrityError(
                f"Extracted {len(bvalues)} b-values and {vectors.shape[0]} gradients "
                f"for {self.num_volumes} volumes."
            )
        self.bvalues = bvalues
        if override_vectors is not None:
            logger.info(f"Replacing gradient directions with the {len(override_vectors)} read "
                        f"from {self.gradient_vector_file}.")
            vectors = override_vectors
        self.diffusion_vectors = vectors

        self.validate_small_gradients()

        self.volume.direction = self._loaded_direction.copy()
        slice_order_is = type(self).slice_order_is
        if slice_order_is is None:
            slice_order_is = determine_slice_order_is(
                self.volume, self.facade.origins, self.is_interleaved, self.num_volumes
            )
        self.slice_order_is = slice_order_is
        set_directions_from_slice_order(self.volume, slice_order_is)

    def _read_override_vectors(self, gradient_vector_file: str) -> np.ndarray:
        vectors = read_gradient_override_file(gradient_vector_file, self.num_volumes)
        if vectors.shape[0] != self.num_volumes:
            raise DataIntegrityError(
                f"Gradient vector file {gradient_vector_file} holds {vectors.shape[0]} complete "
                f"gradients for {self.num_volumes} volumes."
            )
        return vectors

    def read_gradient_information_from_file(self, gradient_vector_file: str) -> None:
        """Replaces the gradient table; on any error the current table is left as is."""
        vectors = self._read_override_vectors(gradient_vector_file)
        logger.info(f"Replacing gradient directions with the {len(vectors)} read from {gradient_vector_file}.")
        self.diffusion_vectors = vectors

    def validate_small_gradients(self) -> None:
        norms = np.linalg.norm(self.diffusion_vectors, axis=1)
        for k, norm in enumerate(norms):
            if 0 < norm < self.small_gradient_threshold:
                logger.error(f"Gradient vector {k} magnitude {norm} is below the small gradient "
                             f"threshold {self.small_gradient_threshold}.")
                raise DataIntegrityError(
                    f"Gradient vector {k} has magnitude {norm}, which is greater than 0 but below "
                    f"--small_gradient_threshold {self.small_gradient_threshold}."
                )


class StandardDWIConverter(DWIConverter):
    """
    Reads diffusion metadata from the standard MR diffusion attributes.

    Uses DiffusionBValue (0018,9087) with DiffusionGradientOrientation
    (0018,9089), or the b-matrix (0018,9602-9607) when
    ``use_bmatrix_gradient_directions`` is set. Directions are already in the
    patient (LPS) frame, so the measurement frame stays identity.
    """
    def _volume_header(self, k: int):
        # First slice of volume k, in file order.
        index = k if self.is_interleaved else k * self.slices_per_volume
        return self.facade.headers[index]

    def _extract_diffusion_metadata(self, require_directions: bool = True) -> tuple[np.ndarray, np.ndarray]:
        bvalues = np.zeros(self.num_volumes, dtype=float)
        vectors = np.zeros((self.num_volumes, 3), dtype=float)

        for k in range(self.num_volumes):
            header = self._volume_header(k)
            b_value = header.b_value
            direction = None

            if self.use_bmatrix_gradient_directions:
                b_matrix = header.b_matrix
                if b_matrix is not None:
                    b_value, direction = bmatrix_to_gradient(b_matrix)
                else:
                    logger.warning(f"Volume {k}: no b-matrix found, using DiffusionGradientOrientation.")

            if direction is None:
                direction = header.gradient_orientation

            if b_value is None:
                logger.warning(f"Volume {k}: DiffusionBValue missing, assuming b=0.")
                b_value = 0.0

            if direction is None:
                if b_value > 0 and require_directions:
                    raise DataIntegrityError(f"Volume {k} has b-value {b_value} but no gradient direction.")
                direction = np.zeros(3)

            bvalues[k] = b_value
            vectors[k] = direction if b_value > 0 else np.zeros(3)
            logger.debug(f"Volume {k}: b={b_value}, gradient={vectors[k]}")

        return bvalues, vectors


def convert_dicom_to_dwi(input_dicom_dir: str = None, facade=None, converter_class=StandardDWIConverter,
                         **options) -> DWIConverter:
    """
    Runs the whole read side of the conversion.

    Args:
        input_dicom_dir (str, optional): Directory holding the DICOM series.
        facade (DicomHeaderFacade, optional): Pre-built facade; used instead of `input_dicom_dir`.
        converter_class (type, optional): Vendor converter to use. Defaults to StandardDWIConverter.
        **options: Keyword options forwarded to the converter.

    Returns:
        DWIConverter: Converter with volume, b-values and gradients ready for writing.
    """
    if facade is None:
        if input_dicom_dir is None:
            raise ValueError("Either input_dicom_dir or facade must be given.")
        facade = DicomHeaderFacade.from_directory(input_dicom_dir)

    converter = converter_class(facade, **options)
    converter.load_dicom_directory()
    converter.extract_dwi_data()
    logger.info(f"Converted {len(facade)} slices into {converter.num_volumes} volumes of "
                f"{converter.slices_per_volume} slices (max b-value {converter.max_bvalue}).")
    return converter
