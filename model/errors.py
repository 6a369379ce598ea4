"""
Custom exception classes for the CNN visualizer core.

Every user-triggerable failure maps to one of these kinds so the UI can show
a distinguishable, human-readable message instead of a raw library error.
Each class carries a default message that can be overridden per raise site.
"""

from typing import Optional


class VisualizerError(Exception):
    """Base class for all errors raised by the training/explanation core."""

    default_message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message


class NotReadyError(VisualizerError):
    """A dataset or model required by the requested operation is missing."""

    default_message = "Load data first."


class ModelNotLoadedError(NotReadyError):
    """An operation needs an active model but none has been created or loaded."""

    default_message = "No model is loaded. Create, load or train a model first."


class BusyError(VisualizerError):
    """A conflicting operation is already running against the active model."""

    default_message = "Training in progress. Stop the current run first."


class ResourceUnavailableError(VisualizerError):
    """The model (or one of its tensors) was disposed while still in use."""

    default_message = "The model was released while it was still in use."


class NoConvolutionalLayerError(VisualizerError):
    """CAM was requested for a model with no convolutional layer."""

    default_message = "The model has no convolutional layer; no activation map is available."


class CorruptModelError(VisualizerError):
    """
    Architecture and weight files do not belong together, or one of them
    could not be parsed.

    Attributes:
        message (str): Explanation of the error
        model_path (Optional[str]): File that failed to load, if known
    """

    default_message = "The model files are corrupt or do not match each other."

    def __init__(self, message: Optional[str] = None, model_path: Optional[str] = None) -> None:
        super().__init__(message)
        self.model_path = model_path


class IOFailureError(VisualizerError):
    """Fetching a dataset or reading/writing a model file failed."""

    default_message = "Could not read or download the requested data."
