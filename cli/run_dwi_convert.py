import argparse
import logging
import sys
import os
import numpy as np

try:
    from conversion import __version__
    from conversion.converter import convert_dicom_to_dwi, DEFAULT_SMALL_GRADIENT_THRESHOLD
    from conversion.errors import DWIConversionError
    from data_io.gradients import create_gradient_table, scale_gradients_by_bvalue
    from data_io.nifti import write_fsl_file_set, write_fsl_formatted_file_set
    from data_io.nrrd_utils import make_file_comment, nrrd_header_geometry, read_dwi_nrrd, write_dwi_nrrd
    from cli.cli_utils import add_config_arg, add_verbosity_args, configure_logging, parse_args_with_config
except ImportError:
    # Fallback for direct script execution if the project root is not in PYTHONPATH
    current_dir = os.path.dirname(os.path.abspath(__file__))
    parent_dir = os.path.dirname(current_dir)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)
    from conversion import __version__
    from conversion.converter import convert_dicom_to_dwi, DEFAULT_SMALL_GRADIENT_THRESHOLD
    from conversion.errors import DWIConversionError
    from data_io.gradients import create_gradient_table, scale_gradients_by_bvalue
    from data_io.nifti import write_fsl_file_set, write_fsl_formatted_file_set
    from data_io.nrrd_utils import make_file_comment, nrrd_header_geometry, read_dwi_nrrd, write_dwi_nrrd
    from cli.cli_utils import add_config_arg, add_verbosity_args, configure_logging, parse_args_with_config

logger = logging.getLogger(__name__)

CONVERSION_MODES = ('DicomToNrrd', 'DicomToFSL', 'NrrdToFSL')


def _require(args, *names):
    missing = [f"--{name}" for name in names if not getattr(args, name, None)]
    if missing:
        raise ValueError(f"Conversion mode {args.conversion_mode} requires {', '.join(missing)}.")


def _converter_options(args) -> dict:
    return dict(
        use_bmatrix_gradient_directions=args.use_bmatrix_gradient_directions,
        use_identity_measurement_frame=args.use_identity_measurement_frame,
        small_gradient_threshold=args.small_gradient_threshold,
        gradient_vector_file=args.gradient_vector_file,
    )


def run_dicom_to_nrrd(args) -> int:
    _require(args, 'input_dicom_dir', 'output_volume')
    print(f"Converting DICOM series in {args.input_dicom_dir} to NRRD: {args.output_volume}")
    converter = convert_dicom_to_dwi(args.input_dicom_dir, **_converter_options(args))
    comment = make_file_comment(
        __version__,
        args.use_bmatrix_gradient_directions,
        args.use_identity_measurement_frame,
        args.small_gradient_threshold
    )
    if not write_dwi_nrrd(converter, args.output_volume, comment):
        print(f"Failed to write NRRD file: {args.output_volume}", file=sys.stderr)
        return 1
    print("DICOM to NRRD conversion successful.")
    return 0


def run_dicom_to_fsl(args) -> int:
    _require(args, 'input_dicom_dir', 'output_volume')
    print(f"Converting DICOM series in {args.input_dicom_dir} to FSL: {args.output_volume}")
    converter = convert_dicom_to_dwi(args.input_dicom_dir, **_converter_options(args))
    if not write_fsl_formatted_file_set(converter, args.output_volume, args.output_bval, args.output_bvec):
        print(f"Failed to write FSL file set for: {args.output_volume}", file=sys.stderr)
        return 1
    print("DICOM to FSL conversion successful.")
    return 0


def run_nrrd_to_fsl(args) -> int:
    _require(args, 'input_volume', 'output_volume')
    print(f"Converting NRRD file: {args.input_volume} to FSL: {args.output_volume}")
    data, bvals, bvecs, header = read_dwi_nrrd(args.input_volume)
    if data is None:
        print(f"Failed to read DWI data from NRRD file: {args.input_volume}", file=sys.stderr)
        return 1

    gtab = create_gradient_table(bvals, bvecs)
    direction, spacing, origin = nrrd_header_geometry(header)
    direction4 = np.eye(4)
    direction4[:3, :3] = direction
    spacing4 = np.append(spacing, 1.0)
    origin4 = np.append(origin, 0.0)
    scaled = scale_gradients_by_bvalue(gtab.bvecs, gtab.bvals, max_bvalue=float(header['DWMRI_b-value']))

    if not write_fsl_file_set(data, direction4, spacing4, origin4, gtab.bvals, scaled,
                              args.output_volume, args.output_bval, args.output_bvec):
        print(f"Failed to write FSL file set for: {args.output_volume}", file=sys.stderr)
        return 1
    print("NRRD to FSL conversion successful.")
    return 0


MODE_HANDLERS = {
    'DicomToNrrd': run_dicom_to_nrrd,
    'DicomToFSL': run_dicom_to_fsl,
    'NrrdToFSL': run_nrrd_to_fsl,
}


def setup_dwi_convert_parser(parser: argparse.ArgumentParser):
    parser.add_argument('--conversion_mode', choices=CONVERSION_MODES, default='DicomToNrrd',
                        help="Conversion to perform (default: DicomToNrrd).")
    parser.add_argument('--input_dicom_dir', help="Directory holding the DWI DICOM series.")
    parser.add_argument('--input_volume', help="Input DWI NRRD file (NrrdToFSL mode).")
    parser.add_argument('--output_volume',
                        help="Output file: .nrrd / .nhdr for DicomToNrrd, .nii / .nii.gz for FSL modes.")
    parser.add_argument('--output_bval', help="Output b-values file. Default: output volume name with .bval.")
    parser.add_argument('--output_bvec', help="Output b-vectors file. Default: output volume name with .bvec.")
    parser.add_argument('--gradient_vector_file',
                        help="Text file whose gradient directions replace the ones in the DICOM headers.")
    parser.add_argument('--use_identity_measurement_frame', action='store_true',
                        help="Rotate gradients by the inverse measurement frame and write an identity frame.")
    parser.add_argument('--use_bmatrix_gradient_directions', action='store_true',
                        help="Derive gradient directions from the DICOM b-matrix.")
    parser.add_argument('--small_gradient_threshold', type=float, default=DEFAULT_SMALL_GRADIENT_THRESHOLD,
                        help="Gradient magnitudes above 0 but below this value are an error (default: 0.2).")
    add_config_arg(parser)
    add_verbosity_args(parser)
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.set_defaults(func=lambda args: MODE_HANDLERS[args.conversion_mode](args))
    return parser


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog='dwiconvert',
        description="Convert diffusion-weighted DICOM series to NRRD or FSL (NIfTI + bval + bvec)."
    )
    setup_dwi_convert_parser(parser)

    try:
        args = parse_args_with_config(parser, argv)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error reading configuration: {e}", file=sys.stderr)
        return 1

    if args.conversion_mode not in MODE_HANDLERS:
        print(f"Unknown conversion mode: {args.conversion_mode}. Choose from {', '.join(CONVERSION_MODES)}.",
              file=sys.stderr)
        return 1

    configure_logging(args)

    try:
        return args.func(args)
    except (DWIConversionError, FileNotFoundError, ValueError) as e:
        print(f"Error during {args.conversion_mode} conversion: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
