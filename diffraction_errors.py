"""
Exception hierarchy shared by the diffraction modules.

DiffractionError
 ├── PreconditionError       : an operation was called before its inputs exist
 ├── UnsupportedElementError : element outside the scattering-factor table
 └── UnsupportedMethodError  : R-factor method not valid in this context
"""


class DiffractionError(Exception):
    """Base class for all diffraction errors."""


class PreconditionError(DiffractionError, RuntimeError):
    """Structure, symmetry, matching or measured data missing."""


class UnsupportedElementError(DiffractionError, KeyError):
    """No scattering coefficients available for the requested element."""

    def __str__(self):
        return str(self.args[0]) if self.args else ''


class UnsupportedMethodError(DiffractionError, ValueError):
    """R-factor method cannot be used for the requested comparison."""
