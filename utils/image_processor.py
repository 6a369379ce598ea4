import base64
import binascii
from io import BytesIO

import numpy as np
from PIL import Image, UnidentifiedImageError

from model import config
from model.errors import IOFailureError

TARGET_SIZE = (config.IMAGE_SIZE, config.IMAGE_SIZE)
TARGET_FLAT_DIM = config.IMAGE_FLAT_DIM  # 784


def process_image_from_base64(base64_string):
    """Decodes a base64 PNG string (e.g. a canvas export) and processes it for the CNN.

    Args:
        base64_string (str): Base64 encoded PNG string (can optionally start with 'data:image/png;base64,').

    Returns:
        np.ndarray: 28x28 float32 array with values in [0, 1].
    """
    if not isinstance(base64_string, str):
        raise IOFailureError("Invalid input type for base64 image data.")

    # Check for and remove optional header
    header = 'data:image/png;base64,'
    if base64_string.startswith(header):
        b64_data = base64_string[len(header):]
    else:
        b64_data = base64_string  # Assume raw base64 if header is missing

    try:
        image_data = base64.b64decode(b64_data, validate=True)
        img = Image.open(BytesIO(image_data))
    except (binascii.Error, UnidentifiedImageError) as e:
        raise IOFailureError(f"Could not decode base64 image data: {e}") from e
    return process_image_object(img)


def process_image_from_path(image_path):
    """Loads an image file from a path and processes it for the CNN.

    Returns:
        np.ndarray: 28x28 float32 array with values in [0, 1].
    """
    try:
        img = Image.open(image_path)
    except FileNotFoundError as e:
        raise IOFailureError(f"Image file not found at {image_path}") from e
    except (UnidentifiedImageError, OSError) as e:
        raise IOFailureError(f"Cannot read image file {image_path}: {e}") from e
    return process_image_object(img)


def process_image_object(img_obj):
    """Grayscale, downscale to 28x28 and normalize a PIL image (white strokes on black)."""
    img_processed = img_obj.convert('L').resize(TARGET_SIZE, Image.LANCZOS)
    return np.asarray(img_processed, dtype=np.float32) / 255.0


def prepare_sample(sample):
    """Turns one digit into a model input batch of shape [1, 28, 28, 1], float32.

    Accepts [28, 28], [28, 28, 1], [1, 28, 28, 1] or a flat 784-vector.
    """
    arr = np.asarray(sample, dtype=np.float32)
    if arr.size != TARGET_FLAT_DIM:
        raise ValueError(f"Expected a single {TARGET_SIZE[0]}x{TARGET_SIZE[1]} image ({TARGET_FLAT_DIM} values), "
                         f"got shape {arr.shape}.")
    return arr.reshape((1,) + config.IMAGE_SHAPE)
