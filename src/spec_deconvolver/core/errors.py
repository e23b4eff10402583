"""
Exception taxonomy for the deconvolution engine.

Every failure raised by the engine derives from `DeconvolutionError`, so a
batch caller can catch one type, record the kind and move on to the next
spectrum.
"""
from typing import Optional


class DeconvolutionError(Exception):
    """Base class for all engine failures."""
    kind = "deconvolution"

    def __init__(self, message: str, scan_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.scan_id = scan_id

    def __str__(self) -> str:
        if self.scan_id is not None:
            return f"[scan {self.scan_id}] {self.message}"
        return self.message


class ConfigurationError(DeconvolutionError, ValueError):
    """Invalid parameters or malformed input arrays. Never recovered."""
    kind = "configuration"


class EmptySearchSpaceError(DeconvolutionError):
    """No grid cell survives masking or thresholding."""
    kind = "empty_search_space"


class NumericInstabilityError(DeconvolutionError, ArithmeticError):
    """NaN or infinity appeared while iterating."""
    kind = "numeric_instability"

    def __init__(self, message: str, iteration: int, scan_id: Optional[str] = None):
        super().__init__(message, scan_id=scan_id)
        self.iteration = iteration
