import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import tensorflow as tf
from tensorflow import keras
from tensorflow.keras import layers

from model import config
from model.errors import CorruptModelError, IOFailureError, ModelNotLoadedError, ResourceUnavailableError


class LayerKind(Enum):
    """The closed set of layer kinds the visualizer knows how to inspect."""
    CONVOLUTION = "Conv2D"
    POOLING = "MaxPooling2D"
    FLATTEN = "Flatten"
    DENSE = "Dense"
    DROPOUT = "Dropout"

    @classmethod
    def from_layer(cls, layer) -> "LayerKind":
        class_name = layer.__class__.__name__
        for kind in cls:
            if kind.value == class_name:
                return kind
        raise CorruptModelError(f"Unsupported layer type '{class_name}' in layer '{layer.name}'.")


# Keys of the layer config that are worth showing in a summary
_SUMMARY_CONFIG_KEYS = ("filters", "kernel_size", "activation", "units", "rate", "pool_size")


@dataclass
class LayerSummary:
    index: int
    name: str
    kind: LayerKind
    output_shape: Tuple[Optional[int], ...]
    param_count: int
    config: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        """One-line, human-readable description of the layer."""
        cfg = self.config
        if self.kind is LayerKind.CONVOLUTION:
            kh, kw = cfg.get("kernel_size", (0, 0))
            detail = f"{cfg.get('filters')} filters, {kh}x{kw} kernel, {cfg.get('activation')}"
        elif self.kind is LayerKind.POOLING:
            ph, pw = cfg.get("pool_size", (0, 0))
            detail = f"{ph}x{pw} max pool"
        elif self.kind is LayerKind.FLATTEN:
            detail = "flatten"
        elif self.kind is LayerKind.DENSE:
            detail = f"{cfg.get('units')} units, {cfg.get('activation')}"
        else:  # LayerKind.DROPOUT
            detail = f"rate {cfg.get('rate')}"
        return f"{self.index}: {self.name} ({self.kind.value}) {detail} -> {self.output_shape}, {self.param_count} params"


class CNNModel:
    """
    The small digit-classification CNN, wrapped around a tf.keras Sequential model.

    Exposes the operations the training controller and the explanation engine
    need: single-batch updates, evaluation, forward inference, per-layer
    activations, weight get/set and (de)serialization.
    """
    def __init__(self, keras_model: Optional[keras.Model] = None, input_shape=config.IMAGE_SHAPE,
                 num_classes: int = config.NUM_CLASSES, log_callback: Optional[Callable[[str], None]] = None):
        """
        Initializes the CNNModel.

        Args:
            keras_model (keras.Model, optional): An already built model to wrap (e.g. after loading).
                                                 If None, call build_model() before use.
            input_shape (tuple): Shape of one input image. Defaults to (28, 28, 1).
            num_classes (int): Number of output classes. Defaults to 10.
            log_callback (callable, optional): Receives log messages. Defaults to printing to stderr.
        """
        self.input_shape = tuple(input_shape)
        self.num_classes = num_classes
        self.model = keras_model
        self.log = log_callback if log_callback else lambda msg: print(msg, file=sys.stderr)
        self.learning_rate: Optional[float] = None
        self._compiled = False
        self._disposed = False
        self._intermediate_models: Dict[int, keras.Model] = {}

    @classmethod
    def create(cls, learning_rate: float = config.DEFAULT_LEARNING_RATE,
               log_callback: Optional[Callable[[str], None]] = None) -> "CNNModel":
        """Builds and compiles a fresh, untrained model."""
        cnn = cls(log_callback=log_callback)
        cnn.build_model()
        cnn.compile(learning_rate)
        return cnn

    def build_model(self):
        """Builds the Keras Sequential architecture: three conv blocks, then a small dense head."""
        self.log(f"Building CNN model for input shape {self.input_shape} and {self.num_classes} classes...")
        self.model = keras.Sequential([
            keras.Input(shape=self.input_shape, name="input_layer"),
            layers.Conv2D(8, kernel_size=3, padding="same", activation="relu", name="conv1"),
            layers.MaxPooling2D(pool_size=2, strides=2, name="pool1"),
            layers.Conv2D(16, kernel_size=3, padding="same", activation="relu", name="conv2"),
            layers.MaxPooling2D(pool_size=2, strides=2, name="pool2"),
            layers.Conv2D(32, kernel_size=3, padding="same", activation="relu", name="conv3"),
            layers.Flatten(name="flatten"),
            layers.Dense(64, activation="relu", name="dense1"),
            layers.Dropout(0.25, name="dropout"),
            layers.Dense(self.num_classes, activation="softmax", name="output"),
        ], name="mnist_cnn")
        self._compiled = False
        self._intermediate_models.clear()

    def compile(self, learning_rate: float = config.DEFAULT_LEARNING_RATE):
        """(Re)compiles with a fresh Adam optimizer. Optimizer state does not carry over."""
        model = self._require_model()
        model.compile(optimizer=keras.optimizers.Adam(learning_rate=learning_rate),
                      loss="categorical_crossentropy",
                      metrics=["accuracy"])
        self.learning_rate = learning_rate
        self._compiled = True

    # --- Lifecycle --- #

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self):
        """Releases the Keras model. Any later use raises ResourceUnavailableError."""
        if self._disposed:
            return
        self._disposed = True
        self._intermediate_models.clear()
        self.model = None

    def _require_model(self) -> keras.Model:
        if self._disposed:
            raise ResourceUnavailableError()
        if self.model is None:
            raise ModelNotLoadedError("Model architecture has not been built yet.")
        return self.model

    # --- Network Model contract --- #

    def forward(self, inputs: np.ndarray) -> np.ndarray:
        """Pure inference on a batch [N, 28, 28, 1]. Returns class probabilities [N, num_classes]."""
        model = self._require_model()
        outputs = model(np.asarray(inputs, dtype=np.float32), training=False)
        return np.asarray(outputs)

    def train_on_batch(self, inputs: np.ndarray, labels: np.ndarray) -> Tuple[float, float]:
        """One gradient-descent step. Returns (loss, accuracy) for this batch."""
        model = self._require_model()
        if not self._compiled:
            self.compile(self.learning_rate or config.DEFAULT_LEARNING_RATE)
        result = model.train_on_batch(inputs, labels)
        if isinstance(result, (list, tuple)):
            return float(result[0]), float(result[1]) if len(result) > 1 else 0.0
        return float(result), 0.0

    def evaluate(self, inputs: np.ndarray, labels: np.ndarray, batch_size: int = 256) -> Tuple[float, float]:
        """Loss and accuracy over the whole given set. Does not touch the weights."""
        model = self._require_model()
        if not self._compiled:
            self.compile(self.learning_rate or config.DEFAULT_LEARNING_RATE)
        results = model.evaluate(inputs, labels, batch_size=batch_size, verbose=0)
        return float(results[0]), float(results[1])

    def get_layer_output(self, layer_index: int, inputs: np.ndarray) -> np.ndarray:
        """Activation of one layer for the given batch, e.g. [N, H, W, F] for a conv layer."""
        model = self._require_model()
        if not 0 <= layer_index < len(model.layers):
            raise IndexError(f"Layer index {layer_index} out of range (model has {len(model.layers)} layers).")
        intermediate = self._intermediate_models.get(layer_index)
        if intermediate is None:
            intermediate = keras.Model(inputs=model.inputs, outputs=model.layers[layer_index].output)
            self._intermediate_models[layer_index] = intermediate
        outputs = intermediate(np.asarray(inputs, dtype=np.float32), training=False)
        return np.asarray(outputs)

    def get_weights(self) -> List[np.ndarray]:
        """Deep copies of every weight array, in layer order."""
        return [np.array(w, copy=True) for w in self._require_model().get_weights()]

    def set_weights(self, weights: Sequence[np.ndarray]):
        """Replaces all weights. Count and shapes must match the architecture exactly."""
        model = self._require_model()
        expected = [w.shape for w in model.get_weights()]
        if len(weights) != len(expected):
            raise CorruptModelError(f"Expected {len(expected)} weight arrays, got {len(weights)}.")
        for i, (weight, shape) in enumerate(zip(weights, expected)):
            if tuple(np.shape(weight)) != tuple(shape):
                raise CorruptModelError(f"Weight array {i} has shape {np.shape(weight)}, expected {tuple(shape)}.")
        model.set_weights([np.array(w, copy=True) for w in weights])

    def layer_kinds(self) -> List[LayerSummary]:
        """Ordered summary of every layer: name, kind, output shape, parameter count and config."""
        summaries = []
        for index, layer in enumerate(self._require_model().layers):
            layer_config = layer.get_config()
            summaries.append(LayerSummary(
                index=index,
                name=layer.name,
                kind=LayerKind.from_layer(layer),
                output_shape=tuple(None if d is None else int(d) for d in layer.output.shape),
                param_count=int(layer.count_params()),
                config={k: layer_config[k] for k in _SUMMARY_CONFIG_KEYS if k in layer_config},
            ))
        return summaries

    def trainable_params(self) -> int:
        return sum(summary.param_count for summary in self.layer_kinds())

    def filter_weights(self, layer_name: str) -> Optional[np.ndarray]:
        """Kernel [kh, kw, in_channels, out_channels] of a Conv2D layer, None for any other layer."""
        model = self._require_model()
        try:
            layer = model.get_layer(layer_name)
        except ValueError as e:
            self.log(f"Warning: Failed to get weights for layer {layer_name}: {e}")
            return None
        if LayerKind.from_layer(layer) is not LayerKind.CONVOLUTION:
            return None
        return np.array(layer.get_weights()[0], copy=True)

    # --- Serialization --- #

    def serialize(self) -> Tuple[str, List[np.ndarray]]:
        """Returns (architecture JSON, ordered weight arrays)."""
        model = self._require_model()
        return model.to_json(), self.get_weights()

    @classmethod
    def _from_architecture(cls, architecture_json: str,
                           log_callback: Optional[Callable[[str], None]] = None) -> "CNNModel":
        try:
            keras_model = keras.models.model_from_json(architecture_json)
        except Exception as e:
            # Keras raises a variety of types for malformed configs
            raise CorruptModelError(f"Could not parse model architecture: {e}") from e
        cnn = cls(keras_model=keras_model, input_shape=tuple(keras_model.inputs[0].shape[1:]),
                  num_classes=int(keras_model.outputs[0].shape[-1]), log_callback=log_callback)
        cnn.layer_kinds()  # rejects unsupported layer types
        return cnn

    @classmethod
    def deserialize(cls, architecture_json: str, weights: Sequence[np.ndarray],
                    log_callback: Optional[Callable[[str], None]] = None) -> "CNNModel":
        """Rebuilds a model from an architecture descriptor and its matching weights."""
        cnn = cls._from_architecture(architecture_json, log_callback=log_callback)
        cnn.set_weights(weights)
        return cnn

    def save(self, directory: str, name: str) -> Tuple[str, str]:
        """
        Writes '<name>.json' (architecture) and '<name>.weights.h5' (Keras weights) into directory.

        Returns:
            tuple: (architecture_path, weights_path)
        """
        model = self._require_model()
        architecture_path = os.path.join(directory, f"{name}.json")
        weights_path = os.path.join(directory, f"{name}.weights.h5")
        try:
            os.makedirs(directory, exist_ok=True)
            with open(architecture_path, "w", encoding="utf-8") as f:
                f.write(model.to_json())
            self.log(f"Saving CNN model weights to {weights_path}")
            model.save_weights(weights_path)
        except OSError as e:
            raise IOFailureError(f"Could not save model to {directory}: {e}") from e
        self.log(f"Saved model architecture to {architecture_path} and weights to {weights_path}")
        return architecture_path, weights_path

    @classmethod
    def load_from_files(cls, architecture_path: str, weight_paths: Sequence[str],
                        log_callback: Optional[Callable[[str], None]] = None) -> "CNNModel":
        """Loads a model saved by save(). Needs the architecture file and exactly one Keras weights file."""
        if not weight_paths:
            raise CorruptModelError("A weights file is required alongside the architecture file.",
                                    model_path=architecture_path)
        if len(weight_paths) > 1:
            raise CorruptModelError(f"Expected one weights file, got {len(weight_paths)}.",
                                    model_path=architecture_path)
        weights_path = weight_paths[0]
        try:
            with open(architecture_path, "r", encoding="utf-8") as f:
                architecture_json = f.read()
        except OSError as e:
            raise IOFailureError(f"Could not read architecture file {architecture_path}: {e}") from e
        if not os.path.exists(weights_path):
            raise IOFailureError(f"Weights file not found: {weights_path}")

        try:
            cnn = cls._from_architecture(architecture_json, log_callback=log_callback)
        except CorruptModelError as e:
            e.model_path = architecture_path
            raise

        try:
            cnn.log(f"Loading CNN model weights from {weights_path}")
            cnn.model.load_weights(weights_path)
        except (ValueError, KeyError, OSError) as e:
            # Keras reports a layer count or shape mismatch as ValueError
            raise CorruptModelError(f"Weights in {weights_path} do not match the architecture: {e}",
                                    model_path=architecture_path) from e
        cnn.log("CNN weights loaded successfully.")
        return cnn


def set_random_seed(seed: int):
    """Seeds numpy and TensorFlow so weight initialisation is repeatable."""
    np.random.seed(seed)
    tf.random.set_seed(seed)
