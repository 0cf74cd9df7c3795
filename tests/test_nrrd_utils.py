import unittest
from unittest import mock
import os
import tempfile
import numpy as np
import nrrd

from conftest import make_interleaved_series
from conversion.converter import convert_dicom_to_dwi
from data_io.dicom_utils import DicomHeaderFacade
from data_io.nrrd_utils import (
    format_number, make_file_comment, raw_data_filename, build_dwi_nrrd_header,
    write_dwi_nrrd, read_dwi_nrrd, nrrd_header_geometry
)


def _converter(**options):
    return convert_dicom_to_dwi(facade=DicomHeaderFacade.from_datasets(make_interleaved_series()), **options)


class TestFormatting(unittest.TestCase):

    def test_format_number(self):
        self.assertEqual(format_number(1000), "1.0000000000000000e+03")
        self.assertEqual(format_number(-0.5), "-5.0000000000000000e-01")
        self.assertEqual(format_number(0), "0.0000000000000000e+00")
        self.assertEqual(format_number(1.5, precision=3), "1.50e+00")
        # 17 significant digits round-trip
        value = 0.1 + 0.2
        self.assertEqual(float(format_number(value)), value)

    def test_file_comment(self):
        comment = make_file_comment("0.1.0", small_gradient_threshold=0.2)
        lines = comment.splitlines()
        self.assertEqual(lines[:2], ["#", "#"])
        self.assertIn("# This file was created by dwiconvert version 0.1.0", lines)
        self.assertIn("# --small_gradient_threshold 0.2", lines)
        self.assertNotIn("# --use_identity_measurement_frame", lines)
        self.assertTrue(comment.endswith("\n"))

        comment = make_file_comment("0.1.0", True, True, 0.3)
        self.assertIn("# --use_identity_measurement_frame", comment.splitlines())
        self.assertIn("# --use_bmatrix_gradient_directions", comment.splitlines())

    def test_raw_data_filename(self):
        self.assertEqual(raw_data_filename("/out/dwi.nhdr"), "/out/dwi.raw")
        self.assertIsNone(raw_data_filename("/out/dwi.nrrd"))


class TestDwiNrrdHeader(unittest.TestCase):

    def test_field_order_single_file(self):
        header = build_dwi_nrrd_header(_converter(), "#\n")
        lines = header.split("\n")
        keys = [line.split(":")[0] for line in lines if line and not line.startswith("#")]
        self.assertEqual(lines[0], "NRRD0005")
        self.assertEqual(keys, [
            "NRRD0005", "type", "dimension", "space", "sizes", "thicknesses", "space directions",
            "centerings", "kinds", "endian", "encoding", "space units", "space origin",
            "measurement frame", "modality", "DWMRI_b-value", "DWMRI_gradient_0000", "DWMRI_gradient_0001"
        ])
        self.assertIn("sizes: 3 4 6 2", lines)
        self.assertIn("thicknesses:  NaN  NaN 5.0000000000000000e+00 NaN", lines)
        self.assertIn("DWMRI_b-value:=1.0000000000000000e+03", lines)
        self.assertIn("DWMRI_gradient_0001:=1.0000000000000000e+00   0.0000000000000000e+00   "
                      "0.0000000000000000e+00", lines)
        self.assertTrue(header.endswith("\n\n"))
        self.assertNotIn("content", keys)
        self.assertNotIn("data file", keys)

    def test_detached_fields(self):
        header = build_dwi_nrrd_header(_converter(), "", data_file="dwi.raw")
        lines = header.split("\n")
        self.assertEqual(lines[1], "content: exists(dwi.raw,0)")
        self.assertIn("data file: dwi.raw", lines)
        self.assertLess(lines.index("space units: \"mm\" \"mm\" \"mm\""), lines.index("data file: dwi.raw"))

    def test_identity_measurement_frame(self):
        converter = _converter(use_identity_measurement_frame=True)
        converter.measurement_frame = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)
        header = build_dwi_nrrd_header(converter)
        identity = " ".join("(" + ",".join(format_number(v) for v in row) + ")" for row in np.eye(3))
        self.assertIn(f"measurement frame: {identity}", header.split("\n"))
        # the gradient is rotated by the inverse frame
        gradient_line = [line for line in header.split("\n") if line.startswith("DWMRI_gradient_0001:=")][0]
        gradient = [float(v) for v in gradient_line.split(":=")[1].split()]
        np.testing.assert_allclose(gradient, [0, -1, 0], atol=1e-12)


class TestWriteDwiNrrd(unittest.TestCase):

    def test_single_file_round_trip(self):
        converter = _converter()
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "dwi.nrrd")
            self.assertTrue(write_dwi_nrrd(converter, filepath, make_file_comment("0.1.0")))

            data, header = nrrd.read(filepath)
            self.assertEqual(data.dtype, np.int16)
            self.assertEqual(data.shape, (3, 4, 6, 2))
            np.testing.assert_array_equal(data, converter.get_4d_volume()[0])
            self.assertEqual(header['modality'], 'DWMRI')
            np.testing.assert_allclose(header['space origin'], [0, 0, 0])
            np.testing.assert_allclose(header['space directions'][:3], np.diag([1.5, 2.0, 5.0]))

            data, bvals, bvecs, _ = read_dwi_nrrd(filepath)
            np.testing.assert_allclose(bvals, [0, 1000])
            np.testing.assert_allclose(bvecs, [[0, 0, 0], [1, 0, 0]])

    def test_detached_header_writes_raw_sibling(self):
        converter = _converter()
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "dwi.nhdr")
            self.assertTrue(write_dwi_nrrd(converter, filepath))

            raw_path = os.path.join(tmpdir, "dwi.raw")
            self.assertTrue(os.path.exists(raw_path))
            with open(raw_path, 'rb') as f:
                self.assertEqual(f.read(), converter.volume.data.astype('<i2').tobytes(order='F'))

            data, _ = nrrd.read(filepath)
            np.testing.assert_array_equal(data, converter.get_4d_volume()[0])

    def test_write_failure_returns_false(self):
        converter = _converter()
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "dwi.nrrd")
            with mock.patch('builtins.open', side_effect=OSError("disk full")):
                self.assertFalse(write_dwi_nrrd(converter, filepath))
            self.assertFalse(os.path.exists(filepath))

    def test_raw_write_failure_leaves_no_header(self):
        converter = _converter()
        real_open = open

        def failing_raw_open(path, *args, **kwargs):
            if str(path).endswith(".raw"):
                raise OSError("disk full")
            return real_open(path, *args, **kwargs)

        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "dwi.nhdr")
            with mock.patch('builtins.open', side_effect=failing_raw_open):
                self.assertFalse(write_dwi_nrrd(converter, filepath))
            self.assertFalse(os.path.exists(filepath))


class TestReadDwiNrrd(unittest.TestCase):

    def test_bvalues_from_gradient_norms(self):
        data = np.zeros((2, 2, 2, 3), dtype=np.int16)
        header = {
            'space': 'left-posterior-superior',
            'space directions': np.array([[2.0, 0, 0], [0, 2.0, 0], [0, 0, 3.0], [np.nan, np.nan, np.nan]]),
            'space origin': [1.0, 2.0, 3.0],
            'kinds': ['space', 'space', 'space', 'list'],
            'modality': 'DWMRI',
            'DWMRI_b-value': '1000',
            'DWMRI_gradient_0000': '0 0 0',
            'DWMRI_gradient_0001': '0 0.70710678118654757 0',
            'DWMRI_gradient_0002': '0 0 1',
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "dwi.nrrd")
            nrrd.write(filepath, data, header, custom_field_map={
                'modality': 'string', 'DWMRI_b-value': 'string', 'DWMRI_gradient_0000': 'string',
                'DWMRI_gradient_0001': 'string', 'DWMRI_gradient_0002': 'string'
            })
            read_data, bvals, bvecs, read_header = read_dwi_nrrd(filepath)

        self.assertEqual(read_data.shape, (2, 2, 2, 3))
        np.testing.assert_allclose(bvals, [0, 500, 1000])
        np.testing.assert_allclose(bvecs, [[0, 0, 0], [0, 1, 0], [0, 0, 1]])

        direction, spacing, origin = nrrd_header_geometry(read_header)
        np.testing.assert_allclose(direction, np.eye(3))
        np.testing.assert_allclose(spacing, [2.0, 2.0, 3.0])
        np.testing.assert_allclose(origin, [1.0, 2.0, 3.0])

    def test_not_dwi(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            filepath = os.path.join(tmpdir, "plain.nrrd")
            nrrd.write(filepath, np.zeros((2, 2, 2), dtype=np.int16))
            data, bvals, bvecs, _ = read_dwi_nrrd(filepath)
        self.assertIsNone(data)
        self.assertIsNone(bvals)

    def test_missing_file(self):
        self.assertEqual(read_dwi_nrrd("/non/existent.nrrd"), (None, None, None, {}))


if __name__ == '__main__':
    unittest.main()
