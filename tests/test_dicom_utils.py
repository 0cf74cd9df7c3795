import unittest
from unittest import mock
import os
import tempfile
import numpy as np
import pytest
from pydicom.errors import InvalidDicomError

from conftest import make_slice_dataset, make_multiframe_dataset
from conversion.errors import VolumeReadError
from data_io.dicom_utils import read_dicom_series, DicomSliceHeader, DicomHeaderFacade


class TestReadDicomSeries(unittest.TestCase):

    @mock.patch('data_io.dicom_utils.os.path.isdir', return_value=True)
    @mock.patch('data_io.dicom_utils.os.walk')
    @mock.patch('data_io.dicom_utils.pydicom.dcmread')
    def test_sorted_by_instance_number(self, mock_dcmread, mock_os_walk, _mock_isdir):
        mock_os_walk.return_value = [
            ('/fake/dicom_dir', [], ['a.dcm', 'b.dcm', 'notes.txt']),
        ]
        ds_a = make_slice_dataset(np.zeros((2, 2)), [0, 0, 5], instance_number=2, filename='a.dcm')
        ds_b = make_slice_dataset(np.zeros((2, 2)), [0, 0, 0], instance_number=1, filename='b.dcm')

        def dcmread_side_effect(filepath, force=False):
            if filepath.endswith('a.dcm'):
                return ds_a
            if filepath.endswith('b.dcm'):
                return ds_b
            raise InvalidDicomError("Not a DICOM")
        mock_dcmread.side_effect = dcmread_side_effect

        datasets = read_dicom_series('/fake/dicom_dir')
        self.assertEqual([ds.InstanceNumber for ds in datasets], [1, 2])

    @mock.patch('data_io.dicom_utils.os.path.isdir', return_value=True)
    @mock.patch('data_io.dicom_utils.os.walk')
    @mock.patch('data_io.dicom_utils.pydicom.dcmread')
    def test_falls_back_to_file_name_and_skips_non_images(self, mock_dcmread, mock_os_walk, _mock_isdir):
        mock_os_walk.return_value = [('/fake/dir', [], ['b.dcm', 'a.dcm', 'report.dcm'])]
        ds_b = make_slice_dataset(np.zeros((2, 2)), [0, 0, 0], filename='b.dcm')
        ds_a = make_slice_dataset(np.zeros((2, 2)), [0, 0, 5], filename='a.dcm')
        del ds_a.InstanceNumber
        del ds_b.InstanceNumber
        report = make_slice_dataset(np.zeros((2, 2)), [0, 0, 0], filename='report.dcm')
        del report.PixelData
        mapping = {'b.dcm': ds_b, 'a.dcm': ds_a, 'report.dcm': report}
        mock_dcmread.side_effect = lambda filepath, force=False: mapping[os.path.basename(filepath)]

        datasets = read_dicom_series('/fake/dir')
        self.assertEqual([ds.filename for ds in datasets], ['a.dcm', 'b.dcm'])

    def test_missing_directory(self):
        self.assertEqual(read_dicom_series('/non/existent/dir'), [])

    def test_empty_directory(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(read_dicom_series(tmpdir), [])


class TestDicomSliceHeader:

    def test_single_frame_fields(self):
        ds = make_slice_dataset(np.zeros((4, 3)), [-10.5, 20.0, 3.25], pixel_spacing=(2.0, 1.5),
                                slice_thickness=5.0, image_orientation=(1, 0, 0, 0, 0, -1),
                                b_value=1000, gradient=(0, 0.6, 0.8))
        header = DicomSliceHeader(ds)

        assert header.rows == 4
        assert header.cols == 3
        np.testing.assert_allclose(header.origin, [-10.5, 20.0, 3.25])
        # x spacing is the column spacing, PixelSpacing[1]
        np.testing.assert_allclose(header.spacing, [1.5, 2.0, 5.0])
        np.testing.assert_allclose(header.direction_cosines, [1, 0, 0, 0, 0, -1])
        assert header.slice_location == "\\".join(str(v) for v in ds.ImagePositionPatient)
        assert header.b_value == 1000.0
        np.testing.assert_allclose(header.gradient_orientation, [0, 0.6, 0.8])
        assert header.b_matrix is None

    def test_spacing_between_slices_wins(self):
        ds = make_slice_dataset(np.zeros((2, 2)), [0, 0, 0], slice_thickness=5.0)
        ds.SpacingBetweenSlices = 6.0
        np.testing.assert_allclose(DicomSliceHeader(ds).spacing, [1.5, 2.0, 6.0])

    def test_missing_optional_fields(self):
        ds = make_slice_dataset(np.zeros((2, 2)), [0, 0, 0])
        del ds.ImageOrientationPatient
        del ds.SliceThickness
        header = DicomSliceHeader(ds)
        np.testing.assert_allclose(header.direction_cosines, [1, 0, 0, 0, 1, 0])
        assert header.spacing[2] == 1.0
        assert header.b_value is None
        assert header.gradient_orientation is None

    def test_missing_position_is_a_read_error(self):
        ds = make_slice_dataset(np.zeros((2, 2)), [0, 0, 0])
        del ds.ImagePositionPatient
        with pytest.raises(VolumeReadError):
            DicomSliceHeader(ds).origin

    def test_b_matrix(self):
        B = np.array([[1000.0, 10.0, 0.0], [10.0, 20.0, 5.0], [0.0, 5.0, 30.0]])
        ds = make_slice_dataset(np.zeros((2, 2)), [0, 0, 0], b_matrix=B)
        np.testing.assert_allclose(DicomSliceHeader(ds).b_matrix, B)


class TestDicomHeaderFacade:

    def test_single_frame_voxels_are_indexed_x_y_slice(self):
        slices = [np.arange(12).reshape(4, 3) + 100 * k - 50 for k in range(3)]
        datasets = [make_slice_dataset(s, [0, 0, 5 * k], instance_number=k + 1) for k, s in enumerate(slices)]
        facade = DicomHeaderFacade.from_datasets(datasets)

        assert not facade.is_multi_frame
        assert len(facade) == 3
        assert facade.filenames == ['slice001.dcm', 'slice002.dcm', 'slice003.dcm']
        voxels = facade.read_voxels()
        assert voxels.dtype == np.int16
        assert voxels.shape == (3, 4, 3)
        for k, s in enumerate(slices):
            np.testing.assert_array_equal(voxels[:, :, k], s.T)
        # signed samples survive
        assert voxels.min() == -50

    def test_inconsistent_slice_size(self):
        datasets = [make_slice_dataset(np.zeros((4, 3)), [0, 0, 0], instance_number=1),
                    make_slice_dataset(np.zeros((3, 3)), [0, 0, 5], instance_number=2)]
        with pytest.raises(VolumeReadError):
            DicomHeaderFacade(datasets).read_voxels()

    def test_decode_failure_is_a_read_error(self):
        ds = make_slice_dataset(np.zeros((4, 3)), [0, 0, 0])
        ds.PixelData = b'\x00\x01' # truncated
        with pytest.raises(VolumeReadError):
            DicomHeaderFacade([ds]).read_voxels()

    def test_multi_frame(self):
        frames = np.stack([np.full((4, 3), f) for f in range(6)])
        positions = [[0, 0, 5 * (f % 3)] for f in range(6)]
        b_values = [0, 0, 0, 1000, 1000, 1000]
        gradients = [[0, 0, 0]] * 3 + [[0, 1, 0]] * 3
        facade = DicomHeaderFacade([make_multiframe_dataset(frames, positions, b_values, gradients)])

        assert facade.is_multi_frame
        assert len(facade.headers) == 6
        np.testing.assert_allclose(facade.headers[4].origin, [0, 0, 5])
        np.testing.assert_allclose(facade.headers[4].spacing, [1.5, 2.0, 5.0])
        np.testing.assert_allclose(facade.headers[4].direction_cosines, [1, 0, 0, 0, 1, 0])
        assert facade.headers[4].b_value == 1000.0
        np.testing.assert_allclose(facade.headers[4].gradient_orientation, [0, 1, 0])

        voxels = facade.read_voxels()
        assert voxels.shape == (3, 4, 6)
        for f in range(6):
            assert np.all(voxels[:, :, f] == f)

    def test_from_files_read_failure(self, tmp_path):
        bogus = tmp_path / "bogus.dcm"
        bogus.write_bytes(b"not a dicom file")
        with pytest.raises(VolumeReadError):
            DicomHeaderFacade.from_files([str(bogus)])

    def test_from_directory_without_dicoms(self, tmp_path):
        with pytest.raises(VolumeReadError):
            DicomHeaderFacade.from_directory(str(tmp_path))

    def test_no_datasets(self):
        with pytest.raises(VolumeReadError):
            DicomHeaderFacade([])
