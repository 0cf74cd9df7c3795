class DWIConversionError(Exception):
    """Base class for all fatal errors raised while converting a DWI series."""


class DataIntegrityError(DWIConversionError, ValueError):
    """
    The input data is internally inconsistent.

    Raised for e.g. a slice count that is not evenly divisible by the number of
    distinct slice locations, or a gradient override file whose declared count
    does not match the number of reconstructed volumes.
    """


class VolumeReadError(DWIConversionError, IOError):
    """Reading or decoding the DICOM series failed; no partial volume is produced."""


class OutputConfigurationError(DWIConversionError, ValueError):
    """An output filename cannot be used or derived (e.g. not a NIfTI name)."""
