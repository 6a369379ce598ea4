import math
import os
import sys
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from typing import Callable, Optional, Tuple, Union

import numpy as np
import pandas as pd
import requests
from PIL import Image, UnidentifiedImageError

from model import config
from model.errors import IOFailureError

ProgressCallback = Optional[Callable[[float], None]]


class DataVariant(Enum):
    SAMPLE = "sample"
    FULL = "full"


@dataclass
class MNISTData:
    """Train/test split with images [N, 28, 28, 1] float32 in [0, 1] and one-hot float32 labels [N, 10]."""
    train_images: np.ndarray
    train_labels: np.ndarray
    test_images: np.ndarray
    test_labels: np.ndarray

    @property
    def num_train(self) -> int:
        return int(self.train_images.shape[0])

    @property
    def num_test(self) -> int:
        return int(self.test_images.shape[0])


# --- Batching helpers --- #

def one_hot(labels: np.ndarray, num_classes: int = config.NUM_CLASSES) -> np.ndarray:
    """One-hot encodes integer labels into a float32 array of shape (num_samples, num_classes)."""
    labels = np.asarray(labels, dtype=int).reshape(-1)
    if labels.size and (labels.min() < 0 or labels.max() >= num_classes):
        raise ValueError(f"Labels must be in [0, {num_classes - 1}], got range [{labels.min()}, {labels.max()}].")
    encoded = np.zeros((labels.size, num_classes), dtype=np.float32)
    encoded[np.arange(labels.size), labels] = 1.0
    return encoded


def num_batches(num_examples: int, batch_size: int) -> int:
    """Batches per epoch; the last one may be short."""
    return math.ceil(num_examples / batch_size)


def get_batch(images: np.ndarray, labels: np.ndarray, batch_size: int, batch_index: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Contiguous batch number batch_index. The start index wraps around the dataset
    and the end is clipped at the last example, so the final batch of an epoch may be shorter.
    """
    num_examples = images.shape[0]
    start_index = (batch_index * batch_size) % num_examples
    end_index = min(start_index + batch_size, num_examples)
    return images[start_index:end_index], labels[start_index:end_index]


# --- Helper Function for Shuffling, Splitting and Reshaping --- #

def _reshape_and_split_data(X_combined: np.ndarray, Y_labels: np.ndarray,
                            validation_split: Union[int, float],
                            seed: Optional[int] = None) -> MNISTData:
    """Shuffles, splits into train/test and reshapes flat pixel rows to (N, 28, 28, 1).

    Args:
        X_combined (np.ndarray): Pixel data, (num_samples, 784) or (num_samples, 28, 28[, 1]), values in [0, 1].
        Y_labels (np.ndarray): Integer labels (num_samples,).
        validation_split (Union[int, float]): Number or fraction of samples held out for testing.
        seed (Optional[int]): Seed for the shuffle.

    Returns:
        MNISTData: the split dataset.
    """
    num_samples = X_combined.shape[0]
    if num_samples < 2:
        raise IOFailureError(f"Need at least 2 samples to build a train/test split, got {num_samples}.")

    X_images = X_combined.reshape((num_samples,) + config.IMAGE_SHAPE).astype(np.float32)

    # --- Shuffle --- #
    rng = np.random.default_rng(seed)
    permutation = rng.permutation(num_samples)
    X_shuffled = X_images[permutation]
    Y_shuffled = np.asarray(Y_labels)[permutation]

    # --- Determine Split Index --- #
    if isinstance(validation_split, float) and 0 < validation_split < 1:
        split_idx = int(num_samples * (1.0 - validation_split))
    elif isinstance(validation_split, int) and 1 <= validation_split < num_samples:
        split_idx = num_samples - validation_split
    else:
        split_val = max(1, int(num_samples * 0.2))
        print(f"Warning: Invalid validation_split value ({validation_split}). Using fallback: {split_val} samples.", file=sys.stderr)
        split_idx = num_samples - split_val
    split_idx = min(max(split_idx, 1), num_samples - 1)

    return MNISTData(
        train_images=X_shuffled[:split_idx],
        train_labels=one_hot(Y_shuffled[:split_idx]),
        test_images=X_shuffled[split_idx:],
        test_labels=one_hot(Y_shuffled[split_idx:]),
    )


# --- Sample dataset --- #

def load_sample_csv(csv_path: str, validation_split: Union[int, float] = 0.2,
                    label_col: str = 'label', seed: Optional[int] = None) -> MNISTData:
    """Loads a pixel CSV (a label column plus 784 pixel columns, 0-255) and splits it.

    Rows with missing or non-numeric values are dropped with a warning.
    """
    try:
        df = pd.read_csv(csv_path)
    except FileNotFoundError as e:
        raise IOFailureError(f"Sample dataset file not found: {csv_path}") from e
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise IOFailureError(f"Could not read sample dataset {csv_path}: {e}") from e

    if label_col not in df.columns:
        raise IOFailureError(f"Sample dataset {csv_path} has no '{label_col}' column.")
    pixel_cols = [col for col in df.columns if col != label_col]
    if len(pixel_cols) != config.IMAGE_FLAT_DIM:
        raise IOFailureError(f"Sample dataset {csv_path} has {len(pixel_cols)} pixel columns, "
                             f"expected {config.IMAGE_FLAT_DIM}.")

    df = df.apply(pd.to_numeric, errors='coerce')
    initial_rows = len(df)
    df = df.dropna()
    dropped = initial_rows - len(df)
    if dropped:
        print(f"Warning: Dropped {dropped} rows with missing or non-numeric values from {csv_path}.", file=sys.stderr)

    labels = df[label_col].to_numpy().astype(int)
    if labels.size and (labels.min() < 0 or labels.max() >= config.NUM_CLASSES):
        raise IOFailureError(f"Sample dataset {csv_path} has labels in [{labels.min()}, {labels.max()}], "
                             f"expected digits 0-{config.NUM_CLASSES - 1}.")
    pixels = df[pixel_cols].to_numpy(dtype=np.float32) / 255.0
    return _reshape_and_split_data(pixels, labels, validation_split, seed=seed)


def write_sample_csv(data: MNISTData, csv_path: str):
    """Writes train and test images into one pixel CSV readable by load_sample_csv."""
    images = np.concatenate([data.train_images, data.test_images]).reshape(-1, config.IMAGE_FLAT_DIM)
    labels = np.concatenate([data.train_labels, data.test_labels]).argmax(axis=1)
    df = pd.DataFrame(np.round(images * 255).astype(np.uint8), columns=[f'p{i}' for i in range(config.IMAGE_FLAT_DIM)])
    df.insert(0, 'label', labels)
    try:
        os.makedirs(os.path.dirname(os.path.abspath(csv_path)), exist_ok=True)
        df.to_csv(csv_path, index=False)
    except OSError as e:
        raise IOFailureError(f"Could not write sample dataset {csv_path}: {e}") from e


def _draw_circle(image: np.ndarray, cx: int, cy: int, r: int):
    size = image.shape[0]
    for angle in np.arange(0, 2 * np.pi, 0.1):
        x = int(round(cx + np.cos(angle) * r))
        y = int(round(cy + np.sin(angle) * r))
        if 0 <= x < size and 0 <= y < size:
            image[y, x] = 1.0
            # Thicken horizontally
            if x > 0:
                image[y, x - 1] = max(image[y, x - 1], 0.5)
            if x < size - 1:
                image[y, x + 1] = max(image[y, x + 1], 0.5)


def _draw_line(image: np.ndarray, x1: int, y1: int, x2: int, y2: int):
    size = image.shape[0]
    steps = max(abs(x2 - x1), abs(y2 - y1))
    for i in range(steps + 1):
        t = 0.0 if steps == 0 else i / steps
        x = int(round(x1 + (x2 - x1) * t))
        y = int(round(y1 + (y2 - y1) * t))
        if 0 <= x < size and 0 <= y < size:
            image[y, x] = 1.0
            # Thicken vertically
            if y > 0:
                image[y - 1, x] = max(image[y - 1, x], 0.7)
            if y < size - 1:
                image[y + 1, x] = max(image[y + 1, x], 0.7)


_DIGIT_STROKES = {
    0: [('circle', 14, 14, 8)],
    1: [('line', 14, 4, 14, 24)],
    2: [('line', 6, 8, 22, 8), ('line', 22, 8, 6, 20), ('line', 6, 20, 22, 20)],
    3: [('line', 6, 6, 20, 6), ('line', 6, 14, 20, 14), ('line', 6, 22, 20, 22), ('line', 20, 6, 20, 22)],
    4: [('line', 6, 6, 6, 14), ('line', 6, 14, 20, 14), ('line', 20, 6, 20, 22)],
    5: [('line', 22, 6, 6, 6), ('line', 6, 6, 6, 14), ('line', 6, 14, 20, 14), ('line', 20, 14, 20, 22), ('line', 20, 22, 6, 22)],
    6: [('circle', 14, 16, 6), ('line', 8, 6, 8, 16)],
    7: [('line', 6, 6, 22, 6), ('line', 22, 6, 14, 22)],
    8: [('circle', 14, 10, 5), ('circle', 14, 18, 5)],
    9: [('circle', 14, 10, 6), ('line', 20, 10, 20, 22)],
}


def generate_digit_pattern(digit: int, rng: np.random.Generator) -> np.ndarray:
    """A 28x28 stroke drawing of digit with sparse additive noise."""
    image = np.zeros((config.IMAGE_SIZE, config.IMAGE_SIZE), dtype=np.float32)
    for stroke in _DIGIT_STROKES[digit]:
        if stroke[0] == 'circle':
            _draw_circle(image, *stroke[1:])
        else:
            _draw_line(image, *stroke[1:])
    noise_mask = rng.random(image.shape) < 0.02
    image[noise_mask] = np.minimum(1.0, image[noise_mask] + rng.random(int(noise_mask.sum())) * 0.3)
    return image


def generate_sample_mnist(num_train: int = config.SAMPLE_NUM_TRAIN, num_test: int = config.SAMPLE_NUM_TEST,
                          seed: Optional[int] = None) -> MNISTData:
    """Synthetic digit-like dataset used when no sample file is bundled. Labels cycle 0..9."""
    rng = np.random.default_rng(seed)

    def build(count: int) -> Tuple[np.ndarray, np.ndarray]:
        labels = np.arange(count) % config.NUM_CLASSES
        images = np.stack([generate_digit_pattern(int(d), rng) for d in labels]) if count else \
            np.empty((0, config.IMAGE_SIZE, config.IMAGE_SIZE), dtype=np.float32)
        return images[..., np.newaxis], one_hot(labels)

    train_images, train_labels = build(num_train)
    test_images, test_labels = build(num_test)
    return MNISTData(train_images, train_labels, test_images, test_labels)


def load_sample_mnist(csv_path: Optional[str] = None, on_progress: ProgressCallback = None,
                      seed: Optional[int] = None) -> MNISTData:
    """Loads the small bundled sample.

    Reads csv_path (or the default sample CSV when it exists); falls back to the
    synthetic generator when no path is given and nothing is bundled.
    """
    path = csv_path or config.SAMPLE_CSV_PATH
    if os.path.exists(path):
        data = load_sample_csv(path, seed=seed)
    elif csv_path is not None:
        raise IOFailureError(f"Sample dataset file not found: {csv_path}")
    else:
        print(f"Sample dataset {path} not found. Generating synthetic digit patterns.", file=sys.stderr)
        data = generate_sample_mnist(seed=seed)
    if on_progress:
        on_progress(1.0)
    return data


# --- Full dataset --- #

def _fetch_bytes(url: str, cache_dir: Optional[str] = None) -> bytes:
    """Downloads url (streamed), reusing a cached copy in cache_dir when present."""
    cache_path = os.path.join(cache_dir, os.path.basename(url)) if cache_dir else None
    if cache_path and os.path.exists(cache_path):
        with open(cache_path, 'rb') as f:
            return f.read()

    print(f"Downloading {os.path.basename(url)}...", file=sys.stderr)
    try:
        response = requests.get(url, stream=True, timeout=config.DOWNLOAD_TIMEOUT)
        response.raise_for_status()
        content = b''.join(response.iter_content(chunk_size=8192))
    except requests.RequestException as e:
        raise IOFailureError(f"Failed to download {url}: {e}") from e

    if cache_path:
        try:
            os.makedirs(cache_dir, exist_ok=True)
            with open(cache_path, 'wb') as f:
                f.write(content)
        except OSError as e:
            print(f"Warning: Could not cache {url} to {cache_path}: {e}", file=sys.stderr)
    return content


def _decode_sprite(sprite_bytes: bytes, num_images: int, on_progress: ProgressCallback = None) -> np.ndarray:
    """Decodes the image sprite (one 784-pixel image per row) into (num_images, 784) floats in [0, 1]."""
    try:
        sprite = Image.open(BytesIO(sprite_bytes)).convert('RGB')
    except (UnidentifiedImageError, OSError) as e:
        raise IOFailureError(f"Could not decode MNIST image sprite: {e}") from e

    width, height = sprite.size
    if width != config.IMAGE_FLAT_DIM or height < num_images:
        raise IOFailureError(f"Unexpected sprite size {width}x{height}, expected {config.IMAGE_FLAT_DIM}x{num_images}.")

    images = np.empty((num_images, config.IMAGE_FLAT_DIM), dtype=np.float32)
    chunk_size = config.SPRITE_CHUNK_SIZE
    num_chunks = math.ceil(num_images / chunk_size)
    for i in range(num_chunks):
        top = i * chunk_size
        bottom = min(top + chunk_size, num_images)
        chunk = np.asarray(sprite.crop((0, top, width, bottom)))
        # Red channel only; the sprite is grayscale
        images[top:bottom] = chunk[:, :, 0] / 255.0
        if on_progress:
            on_progress((i + 1) / num_chunks * 0.5)
    return images


def load_full_mnist(on_progress: ProgressCallback = None, cache_dir: Optional[str] = None) -> MNISTData:
    """Downloads the 65k-image MNIST sprite and one-hot label file and splits it 55k/10k."""
    sprite_bytes = _fetch_bytes(config.MNIST_IMAGES_SPRITE_URL, cache_dir)
    label_bytes = _fetch_bytes(config.MNIST_LABELS_URL, cache_dir)

    images = _decode_sprite(sprite_bytes, config.NUM_DATASET_ELEMENTS, on_progress)

    # Labels are stored one-hot, one byte per class
    labels = np.frombuffer(label_bytes, dtype=np.uint8)
    expected = config.NUM_DATASET_ELEMENTS * config.NUM_CLASSES
    if labels.size < expected:
        raise IOFailureError(f"Label file has {labels.size} bytes, expected {expected}.")
    labels = labels[:expected].reshape(config.NUM_DATASET_ELEMENTS, config.NUM_CLASSES).astype(np.float32)
    if on_progress:
        on_progress(0.75)

    n_train = config.NUM_TRAIN_ELEMENTS
    data = MNISTData(
        train_images=images[:n_train].reshape((-1,) + config.IMAGE_SHAPE),
        train_labels=labels[:n_train],
        test_images=images[n_train:].reshape((-1,) + config.IMAGE_SHAPE),
        test_labels=labels[n_train:],
    )
    if on_progress:
        on_progress(1.0)
    return data


def load_dataset(variant: Union[DataVariant, str] = DataVariant.SAMPLE, on_progress: ProgressCallback = None,
                 **kwargs) -> MNISTData:
    """Loads one of the two dataset variants. Both return the same MNISTData contract."""
    variant = DataVariant(variant)
    if variant is DataVariant.FULL:
        return load_full_mnist(on_progress=on_progress, **kwargs)
    return load_sample_mnist(on_progress=on_progress, **kwargs)
