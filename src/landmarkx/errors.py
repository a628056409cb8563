"""Exception types raised by LandmarkX."""

from __future__ import annotations


class LandmarkXError(Exception):
    """Base class for all LandmarkX errors."""


class ConfigurationError(LandmarkXError, ValueError):
    """A detection configuration field is missing, malformed, or out of range."""


class ModelLoadError(LandmarkXError):
    """The model artifact could not be downloaded or turned into a session."""


class InputShapeError(LandmarkXError, ValueError):
    """The image or tensor handed to the pipeline has an unexpected rank or shape."""


class DetectorError(LandmarkXError):
    """The detector produced outputs it could not interpret."""


class DisposedTensorError(LandmarkXError):
    """A tensor was used after its buffer had been released."""
