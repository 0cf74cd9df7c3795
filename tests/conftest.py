import numpy as np
import pydicom
import pytest
from pydicom.dataset import Dataset, FileMetaDataset
from pydicom.sequence import Sequence


def _file_meta(instance_number):
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = '1.2.840.10008.5.1.4.1.1.4' # MR Image Storage
    file_meta.MediaStorageSOPInstanceUID = f"1.2.3.4.5.{instance_number}"
    file_meta.TransferSyntaxUID = pydicom.uid.ImplicitVRLittleEndian
    return file_meta


def _set_signed_pixels(ds, pixels):
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 1 # Signed
    ds.PixelData = np.asarray(pixels).astype('<i2').tobytes()


def make_slice_dataset(pixels, image_position, instance_number=1, filename=None,
                       pixel_spacing=(2.0, 1.5), slice_thickness=5.0,
                       image_orientation=(1, 0, 0, 0, 1, 0), b_value=None, gradient=None,
                       b_matrix=None):
    """Single-frame MR slice; `pixels` has shape (rows, cols)."""
    pixels = np.asarray(pixels)
    ds = Dataset()
    ds.file_meta = _file_meta(instance_number)
    ds.InstanceNumber = instance_number
    ds.Rows, ds.Columns = (int(v) for v in pixels.shape)
    ds.PixelSpacing = list(pixel_spacing)
    ds.SliceThickness = slice_thickness
    ds.ImageOrientationPatient = list(image_orientation)
    ds.ImagePositionPatient = list(image_position)
    if b_value is not None:
        ds.DiffusionBValue = float(b_value)
    if gradient is not None:
        ds.DiffusionGradientOrientation = [float(v) for v in gradient]
    if b_matrix is not None:
        B = np.asarray(b_matrix, dtype=float)
        ds.DiffusionBValueXX = float(B[0, 0])
        ds.DiffusionBValueXY = float(B[0, 1])
        ds.DiffusionBValueXZ = float(B[0, 2])
        ds.DiffusionBValueYY = float(B[1, 1])
        ds.DiffusionBValueYZ = float(B[1, 2])
        ds.DiffusionBValueZZ = float(B[2, 2])
    _set_signed_pixels(ds, pixels)
    ds.filename = filename or f"slice{instance_number:03d}.dcm"
    return ds


def make_multiframe_dataset(frames, positions, b_values, gradients,
                            pixel_spacing=(2.0, 1.5), slice_thickness=5.0,
                            image_orientation=(1, 0, 0, 0, 1, 0)):
    """Enhanced MR dataset; `frames` has shape (num_frames, rows, cols)."""
    frames = np.asarray(frames)
    ds = Dataset()
    ds.file_meta = _file_meta(1)
    ds.InstanceNumber = 1
    ds.NumberOfFrames = int(frames.shape[0])
    ds.Rows, ds.Columns = (int(v) for v in frames.shape[1:])

    shared = Dataset()
    orientation = Dataset()
    orientation.ImageOrientationPatient = list(image_orientation)
    measures = Dataset()
    measures.PixelSpacing = list(pixel_spacing)
    measures.SliceThickness = slice_thickness
    shared.PlaneOrientationSequence = Sequence([orientation])
    shared.PixelMeasuresSequence = Sequence([measures])
    ds.SharedFunctionalGroupsSequence = Sequence([shared])

    per_frame = []
    for position, b_value, gradient in zip(positions, b_values, gradients):
        frame = Dataset()
        plane = Dataset()
        plane.ImagePositionPatient = list(position)
        frame.PlanePositionSequence = Sequence([plane])
        diffusion = Dataset()
        diffusion.DiffusionBValue = float(b_value)
        direction = Dataset()
        direction.DiffusionGradientOrientation = [float(v) for v in gradient]
        diffusion.DiffusionGradientDirectionSequence = Sequence([direction])
        frame.MRDiffusionSequence = Sequence([diffusion])
        per_frame.append(frame)
    ds.PerFrameFunctionalGroupsSequence = Sequence(per_frame)

    _set_signed_pixels(ds, frames)
    ds.filename = "multiframe.dcm"
    return ds


def make_interleaved_series(num_locations=6, num_volumes=2, rows=4, cols=3,
                            b_values=(0, 1000), gradients=((0, 0, 0), (1, 0, 0)), slice_gap=5.0):
    """
    Slice-major single-frame series: file m * num_volumes + k holds location m of volume k.

    Every pixel of that file equals ``100 * k + m``.
    """
    datasets = []
    for m in range(num_locations):
        for k in range(num_volumes):
            index = m * num_volumes + k
            datasets.append(make_slice_dataset(
                np.full((rows, cols), 100 * k + m),
                image_position=[0.0, 0.0, m * slice_gap],
                instance_number=index + 1,
                b_value=b_values[k],
                gradient=gradients[k]
            ))
    return datasets


def make_volume_major_series(num_locations=3, num_volumes=2, rows=4, cols=3,
                             b_values=(0, 1000), gradients=((0, 0, 0), (0, 1, 0)), slice_gap=5.0):
    """Volume-major single-frame series: file k * num_locations + m, pixel value ``100 * k + m``."""
    datasets = []
    for k in range(num_volumes):
        for m in range(num_locations):
            index = k * num_locations + m
            datasets.append(make_slice_dataset(
                np.full((rows, cols), 100 * k + m),
                image_position=[0.0, 0.0, m * slice_gap],
                instance_number=index + 1,
                b_value=b_values[k],
                gradient=gradients[k]
            ))
    return datasets


@pytest.fixture
def slice_dataset_factory():
    return make_slice_dataset


@pytest.fixture
def multiframe_dataset_factory():
    return make_multiframe_dataset


@pytest.fixture
def interleaved_series():
    return make_interleaved_series()


@pytest.fixture
def volume_major_series():
    return make_volume_major_series()


@pytest.fixture
def interleaved_series_factory():
    return make_interleaved_series


@pytest.fixture
def volume_major_series_factory():
    return make_volume_major_series
