import os
import logging
import numpy as np
import pydicom
from pydicom.errors import InvalidDicomError

from conversion.errors import VolumeReadError

# Configure logging for this module
logger = logging.getLogger(__name__)
if not logger.hasHandlers(): # Avoid adding multiple handlers if already configured
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

DEFAULT_IMAGE_ORIENTATION = [1.0, 0.0, 0.0, 0.0, 1.0, 0.0]

# (0018,9602) .. (0018,9607), upper triangle of the symmetric b-matrix
BMATRIX_KEYWORDS = (
    ('DiffusionBValueXX', 0, 0),
    ('DiffusionBValueXY', 0, 1),
    ('DiffusionBValueXZ', 0, 2),
    ('DiffusionBValueYY', 1, 1),
    ('DiffusionBValueYZ', 1, 2),
    ('DiffusionBValueZZ', 2, 2),
)


def read_dicom_series(dicom_dir: str) -> list[pydicom.FileDataset]:
    """
    Reads all DICOM files from a directory, sorts them, and returns a list of datasets.

    Args:
        dicom_dir (str): Path to the directory containing DICOM files.

    Returns:
        list[pydicom.FileDataset]: A sorted list of pydicom.FileDataset objects.
                                   Returns an empty list if directory is not found,
                                   contains no DICOM files, or an error occurs.
    """
    if not os.path.isdir(dicom_dir):
        logger.error(f"DICOM directory not found: {dicom_dir}")
        return []

    dicom_datasets: list[pydicom.FileDataset] = []
    filepaths: list[str] = []

    logger.info(f"Reading DICOM files from directory: {dicom_dir}")
    for root, _, files in os.walk(dicom_dir):
        for filename in sorted(files):
            filepath = os.path.join(root, filename)
            try:
                ds = pydicom.dcmread(filepath, force=True) # force=True to try reading non-conformant files

                # Structured reports and other non-image objects are not part of the series.
                if 'PixelData' not in ds:
                    logger.debug(f"Skipping non-image DICOM file (missing PixelData): {filepath}")
                    continue

                dicom_datasets.append(ds)
                filepaths.append(filepath)
            except InvalidDicomError:
                logger.debug(f"Skipping non-DICOM or invalid DICOM file: {filepath}")
            except Exception as e:
                logger.warning(f"Could not read or parse file {filepath} as DICOM: {e}")

    if not dicom_datasets:
        logger.warning(f"No valid DICOM files found in directory: {dicom_dir}")
        return []

    # Primary sort key: InstanceNumber (0020,0013)
    # Secondary sort key (fallback): AcquisitionNumber (0020,0012)
    # Tertiary sort key (fallback): file path
    has_instance_number = all(getattr(ds, 'InstanceNumber', None) is not None for ds in dicom_datasets)
    has_acq_number = all(getattr(ds, 'AcquisitionNumber', None) is not None for ds in dicom_datasets)

    indexed_datasets = list(zip(dicom_datasets, filepaths))
    if has_instance_number:
        logger.info("Sorting DICOM series by InstanceNumber.")
        indexed_datasets.sort(key=lambda item: (int(item[0].InstanceNumber), item[1]))
    elif has_acq_number:
        logger.warning("InstanceNumber missing or inconsistent across DICOM files. Attempting to sort by AcquisitionNumber.")
        indexed_datasets.sort(key=lambda item: (int(item[0].AcquisitionNumber), item[1]))
    else:
        logger.warning("InstanceNumber and AcquisitionNumber are missing or inconsistent. "
                       "Attempting to sort by filename. This might not be accurate for slice order.")
        indexed_datasets.sort(key=lambda item: item[1])

    dicom_datasets = [item[0] for item in indexed_datasets]
    logger.info(f"Successfully read and sorted {len(dicom_datasets)} DICOM datasets.")
    return dicom_datasets


def _first_item(container, sequence_keyword: str):
    """First item of a sequence attribute, or None if absent or empty."""
    if container is None:
        return None
    sequence = getattr(container, sequence_keyword, None)
    if not sequence:
        return None
    return sequence[0]


class DicomSliceHeader:
    """
    Per-slice view of the DICOM fields needed to rebuild a DWI volume.

    A header wraps either a single-frame dataset, or one frame of an enhanced
    multi-frame dataset (``frame_group`` from PerFrameFunctionalGroupsSequence
    and ``shared_group`` from SharedFunctionalGroupsSequence). Functional group
    values take precedence over top-level attributes.
    """
    def __init__(self, dataset, frame_group=None, shared_group=None):
        self.dataset = dataset
        self._frame_group = frame_group
        self._shared_group = shared_group

    def _group_item(self, sequence_keyword: str):
        for group in (self._frame_group, self._shared_group):
            item = _first_item(group, sequence_keyword)
            if item is not None:
                return item
        return None

    def _lookup(self, sequence_keyword: str, keyword: str):
        item = self._group_item(sequence_keyword)
        if item is not None and getattr(item, keyword, None) is not None:
            return getattr(item, keyword)
        return getattr(self.dataset, keyword, None)

    @property
    def rows(self) -> int:
        return int(self.dataset.Rows)

    @property
    def cols(self) -> int:
        return int(self.dataset.Columns)

    @property
    def _image_position(self):
        ipp = self._lookup('PlanePositionSequence', 'ImagePositionPatient')
        if ipp is None:
            raise VolumeReadError("Missing ImagePositionPatient (0020,0032); cannot place the slice.")
        return ipp

    @property
    def origin(self) -> np.ndarray:
        return np.array([float(v) for v in self._image_position], dtype=float)

    @property
    def slice_location(self) -> str:
        """ImagePositionPatient exactly as reported (DS strings joined by a backslash)."""
        return "\\".join(str(v) for v in self._image_position)

    @property
    def spacing(self) -> np.ndarray:
        pixel_spacing = self._lookup('PixelMeasuresSequence', 'PixelSpacing')
        if pixel_spacing is None:
            logger.warning("Missing PixelSpacing (0028,0030). Assuming 1.0mm in-plane spacing.")
            pixel_spacing = [1.0, 1.0]
        slice_spacing = self._lookup('PixelMeasuresSequence', 'SpacingBetweenSlices')
        if slice_spacing in (None, ''):
            slice_spacing = self._lookup('PixelMeasuresSequence', 'SliceThickness')
        if slice_spacing in (None, '') or float(slice_spacing) <= 0:
            slice_spacing = 1.0
        # PixelSpacing is [row spacing (y), column spacing (x)]
        return np.array([float(pixel_spacing[1]), float(pixel_spacing[0]), float(slice_spacing)], dtype=float)

    @property
    def direction_cosines(self) -> np.ndarray:
        iop = self._lookup('PlaneOrientationSequence', 'ImageOrientationPatient')
        if iop is None:
            logger.warning("Missing ImageOrientationPatient (0020,0037). Assuming axial orientation.")
            iop = DEFAULT_IMAGE_ORIENTATION
        return np.array([float(v) for v in iop], dtype=float)

    @property
    def _diffusion_item(self):
        return self._group_item('MRDiffusionSequence')

    @property
    def b_value(self) -> float | None:
        """DiffusionBValue (0018,9087), or None when not reported."""
        value = self._lookup('MRDiffusionSequence', 'DiffusionBValue')
        return None if value in (None, '') else float(value)

    @property
    def gradient_orientation(self) -> np.ndarray | None:
        """DiffusionGradientOrientation (0018,9089) in patient coordinates, or None."""
        direction_item = _first_item(self._diffusion_item, 'DiffusionGradientDirectionSequence')
        value = getattr(direction_item, 'DiffusionGradientOrientation', None) if direction_item is not None else None
        if value is None:
            value = getattr(self.dataset, 'DiffusionGradientOrientation', None)
        if value is None:
            return None
        vector = np.array([float(v) for v in value], dtype=float)
        if vector.shape != (3,):
            logger.warning(f"DiffusionGradientOrientation has unexpected shape {vector.shape}. Expected (3,).")
            return None
        return vector

    @property
    def b_matrix(self) -> np.ndarray | None:
        """Symmetric 3x3 b-matrix from (0018,9602)-(0018,9607), or None if incomplete."""
        source = _first_item(self._diffusion_item, 'DiffusionBMatrixSequence') or self.dataset
        B = np.zeros((3, 3), dtype=float)
        for keyword, i, j in BMATRIX_KEYWORDS:
            value = getattr(source, keyword, None)
            if value is None:
                return None
            B[i, j] = B[j, i] = float(value)
        return B


class DicomHeaderFacade:
    """
    Ordered per-slice headers and the decoded samples of one DWI series.

    Either several single-frame files (one slice each) or exactly one
    enhanced multi-frame file. In the multi-frame case each frame becomes one
    slice header.

    Parameters
    ----------
    datasets : list
        pydicom datasets in slice order.
    filenames : list[str], optional
        File names matching `datasets`. Defaults to each dataset's ``filename``.
    """
    def __init__(self, datasets, filenames=None):
        if not datasets:
            raise VolumeReadError("No DICOM datasets were provided.")
        self.datasets = list(datasets)
        if filenames is None:
            filenames = [str(getattr(ds, 'filename', '') or '') for ds in self.datasets]
        self.filenames = list(filenames)

        first = self.datasets[0]
        num_frames = int(getattr(first, 'NumberOfFrames', 1) or 1)
        self.is_multi_frame = len(self.datasets) == 1 and num_frames > 1
        self.headers = self._build_headers()

    def _build_headers(self) -> list[DicomSliceHeader]:
        if not self.is_multi_frame:
            return [DicomSliceHeader(ds) for ds in self.datasets]

        ds = self.datasets[0]
        num_frames = int(ds.NumberOfFrames)
        frames = getattr(ds, 'PerFrameFunctionalGroupsSequence', None) or []
        shared = _first_item(ds, 'SharedFunctionalGroupsSequence')
        if frames and len(frames) != num_frames:
            raise VolumeReadError(
                f"PerFrameFunctionalGroupsSequence has {len(frames)} items for {num_frames} frames."
            )
        if not frames:
            logger.warning("Multi-frame file without PerFrameFunctionalGroupsSequence; "
                           "all frames share the top-level geometry.")
            return [DicomSliceHeader(ds, shared_group=shared) for _ in range(num_frames)]
        return [DicomSliceHeader(ds, frame_group=frame, shared_group=shared) for frame in frames]

    @classmethod
    def from_datasets(cls, datasets, filenames=None):
        return cls(datasets, filenames)

    @classmethod
    def from_files(cls, filenames: list[str]):
        """Reads every file with pydicom; any failure is fatal."""
        datasets = []
        for filename in filenames:
            try:
                datasets.append(pydicom.dcmread(filename))
            except Exception as e:
                logger.error(f"Exception thrown while reading DICOM file {filename}: {e}")
                raise VolumeReadError(f"Failed to read DICOM file {filename}: {e}") from e
        return cls(datasets, filenames)

    @classmethod
    def from_directory(cls, dicom_dir: str):
        datasets = read_dicom_series(dicom_dir)
        if not datasets:
            raise VolumeReadError(f"Failed to read or sort DICOM series from {dicom_dir}.")
        return cls(datasets)

    def __len__(self) -> int:
        return len(self.headers)

    @property
    def slice_locations(self) -> list[str]:
        return [header.slice_location for header in self.headers]

    @property
    def origins(self) -> list[np.ndarray]:
        return [header.origin for header in self.headers]

    def read_voxels(self) -> np.ndarray:
        """
        Decodes all slices into one int16 array indexed ``[x, y, slice]``.

        Raises:
            VolumeReadError: On any decode failure or inconsistent slice size.
        """
        rows, cols = self.headers[0].rows, self.headers[0].cols
        try:
            if self.is_multi_frame:
                frames = np.asarray(self.datasets[0].pixel_array)
                if frames.shape != (len(self.headers), rows, cols):
                    raise VolumeReadError(
                        f"Multi-frame pixel data shape {frames.shape} does not match "
                        f"({len(self.headers)}, {rows}, {cols})."
                    )
                # (frame, row, col) -> (col, row, frame)
                return frames.transpose(2, 1, 0).astype(np.int16)

            voxels = np.zeros((cols, rows, len(self.datasets)), dtype=np.int16)
            for k, ds in enumerate(self.datasets):
                slice_data = np.asarray(ds.pixel_array)
                if slice_data.shape != (rows, cols):
                    raise VolumeReadError(
                        f"Slice {k} data shape {slice_data.shape} mismatch with expected ({rows},{cols})."
                    )
                voxels[:, :, k] = slice_data.T
            return voxels
        except VolumeReadError:
            raise
        except Exception as e:
            logger.error(f"Exception thrown while decoding DICOM pixel data: {e}")
            raise VolumeReadError(f"Failed to decode DICOM pixel data: {e}") from e
