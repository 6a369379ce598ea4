"""
Class activation maps (CAM) for the digit CNN.

This is an activation-based saliency map, not gradient-weighted Grad-CAM:
the importance of a spatial location is the rectified sum of the last
convolutional layer's activations over all filters at that location.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from PIL import Image

from model import config
from model.cnn_model import LayerKind, LayerSummary
from model.errors import NoConvolutionalLayerError
from utils.image_processor import prepare_sample


@dataclass(frozen=True)
class CAMResult:
    predicted_class: int
    heatmap: np.ndarray   # [H, W] float, normalized to [0, 1]
    upscaled: np.ndarray  # [28, 28] float, nearest-neighbour upscale of heatmap
    overlay: np.ndarray   # [28, 28, 3] uint8, hot colormap blended over the input

    def to_image(self, scale: int = 1) -> Image.Image:
        """The overlay as a Pillow RGB image, optionally enlarged without smoothing."""
        img = Image.fromarray(self.overlay, 'RGB')
        if scale > 1:
            img = img.resize((img.width * scale, img.height * scale), Image.NEAREST)
        return img


def find_last_conv_layer(summaries: Sequence[LayerSummary]) -> int:
    """Index of the highest-indexed convolutional layer."""
    for summary in reversed(summaries):
        if summary.kind is LayerKind.CONVOLUTION:
            return summary.index
    raise NoConvolutionalLayerError()


def activation_importance(activation: np.ndarray) -> np.ndarray:
    """ReLU of the per-location sum over filters: [H, W, F] -> [H, W]."""
    return np.maximum(0.0, np.asarray(activation, dtype=np.float64).sum(axis=-1))


def normalize_map(cam: np.ndarray) -> np.ndarray:
    """Min-max normalizes to [0, 1]. A flat map (max == min) becomes all zeros."""
    min_val = cam.min()
    value_range = cam.max() - min_val
    if value_range == 0:
        value_range = 1.0
    return (cam - min_val) / value_range


def upscale_nearest(cam: np.ndarray, size: int = config.IMAGE_SIZE) -> np.ndarray:
    """Nearest-neighbour upscale of an [H, W] map to [size, size]."""
    height, width = cam.shape
    scale_y = size / height
    scale_x = size / width
    rows = np.minimum(np.floor(np.arange(size) / scale_y).astype(int), height - 1)
    cols = np.minimum(np.floor(np.arange(size) / scale_x).astype(int), width - 1)
    return cam[np.ix_(rows, cols)]


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def hot_colormap(values: np.ndarray) -> np.ndarray:
    """
    Three-segment "hot" colormap: red ramps over [0, 1/3], green over [1/3, 2/3]
    and blue over [2/3, 1]. Returns uint8 RGB with a trailing channel axis.
    """
    values = np.asarray(values, dtype=np.float64)
    red = np.clip(values * 3, 0.0, 1.0)
    green = np.clip((values - 1 / 3) * 3, 0.0, 1.0)
    blue = np.clip((values - 2 / 3) * 3, 0.0, 1.0)
    rgb = np.stack([red, green, blue], axis=-1) * 255
    return np.clip(_round_half_up(rgb), 0, 255).astype(np.uint8)


def blend_overlay(image: np.ndarray, colored: np.ndarray, alpha: float = config.CAM_BLEND_ALPHA) -> np.ndarray:
    """Blends a colorized map over a grayscale image in [0, 1]: alpha * color + (1 - alpha) * gray."""
    gray = np.asarray(image, dtype=np.float64)[..., np.newaxis] * 255
    blended = gray * (1 - alpha) + colored.astype(np.float64) * alpha
    return np.clip(_round_half_up(blended), 0, 255).astype(np.uint8)


def compute_cam(model, sample: np.ndarray, predicted_class: int,
                alpha: float = config.CAM_BLEND_ALPHA) -> CAMResult:
    """
    Builds the CAM heatmap and overlay of one input sample.

    Args:
        model: A network exposing layer_kinds() and get_layer_output(index, batch).
        sample: The input digit, [28, 28], [28, 28, 1], [1, 28, 28, 1] or flat 784 values in [0, 1].
        predicted_class: The class the prediction chose; recorded in the result.
        alpha: Weight of the heatmap in the blend.

    Raises:
        NoConvolutionalLayerError: if the model has no Conv2D layer.
    """
    layer_index = find_last_conv_layer(model.layer_kinds())
    batch = prepare_sample(sample)

    activation = model.get_layer_output(layer_index, batch)[0]  # [H, W, F]
    heatmap = normalize_map(activation_importance(activation))
    del activation

    size = batch.shape[1]
    upscaled = upscale_nearest(heatmap, size)
    overlay = blend_overlay(batch[0, :, :, 0], hot_colormap(upscaled), alpha)
    return CAMResult(predicted_class=int(predicted_class), heatmap=heatmap, upscaled=upscaled, overlay=overlay)
