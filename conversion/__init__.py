# __init__.py for dwiconvert.conversion
# converter.py depends on data_io, which in turn imports .errors; import it
# directly as `conversion.converter`.

__version__ = "0.1.0"

from .errors import (
    DWIConversionError,
    DataIntegrityError,
    VolumeReadError,
    OutputConfigurationError
)

from .volume import (
    DiffusionVolume,
    build_direction_matrix,
    assemble_volume,
    reshape_to_4d
)

from .interleave import (
    InterleaveResult,
    build_slice_location_map,
    is_slice_interleaved,
    deinterleave_volume,
    resolve_interleaving
)

from .slice_order import (
    determine_slice_order_is,
    set_directions_from_slice_order
)

__all__ = [
    'DWIConversionError',
    'DataIntegrityError',
    'VolumeReadError',
    'OutputConfigurationError',
    'DiffusionVolume',
    'build_direction_matrix',
    'assemble_volume',
    'reshape_to_4d',
    'InterleaveResult',
    'build_slice_location_map',
    'is_slice_interleaved',
    'deinterleave_volume',
    'resolve_interleaving',
    'determine_slice_order_is',
    'set_directions_from_slice_order'
]
