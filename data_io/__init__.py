# __init__.py for dwiconvert.data_io

from .dicom_utils import (
    read_dicom_series,
    DicomSliceHeader,
    DicomHeaderFacade
)

from .gradients import (
    compute_max_bvalue,
    scale_gradients_by_bvalue,
    rotate_to_measurement_frame,
    compute_bvalue_scaled_gradients,
    read_gradient_override_file,
    bmatrix_to_gradient,
    create_gradient_table
)

from .nifti import (
    has_valid_nifti_extension,
    derive_fsl_filenames,
    load_fsl_bvecs,
    load_fsl_bvals,
    write_fsl_bvals,
    write_fsl_bvecs,
    write_nifti_4d,
    write_fsl_file_set,
    write_fsl_formatted_file_set
)

from .nrrd_utils import (
    format_number,
    make_file_comment,
    write_dwi_nrrd,
    read_dwi_nrrd
)

# Optionally, define __all__ to specify public API
__all__ = [
    'read_dicom_series',
    'DicomSliceHeader',
    'DicomHeaderFacade',
    'compute_max_bvalue',
    'scale_gradients_by_bvalue',
    'rotate_to_measurement_frame',
    'compute_bvalue_scaled_gradients',
    'read_gradient_override_file',
    'bmatrix_to_gradient',
    'create_gradient_table',
    'has_valid_nifti_extension',
    'derive_fsl_filenames',
    'load_fsl_bvecs',
    'load_fsl_bvals',
    'write_fsl_bvals',
    'write_fsl_bvecs',
    'write_nifti_4d',
    'write_fsl_file_set',
    'write_fsl_formatted_file_set',
    'format_number',
    'make_file_comment',
    'write_dwi_nrrd',
    'read_dwi_nrrd'
]
