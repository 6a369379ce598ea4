import os

# --- Input / output shape --- #
IMAGE_SIZE = 28
IMAGE_SHAPE = (IMAGE_SIZE, IMAGE_SIZE, 1)
IMAGE_FLAT_DIM = IMAGE_SIZE * IMAGE_SIZE  # 784
NUM_CLASSES = 10

# --- Training defaults (as shown in the training panel) --- #
DEFAULT_EPOCHS = 5
DEFAULT_BATCH_SIZE = 32
DEFAULT_LEARNING_RATE = 0.001

# Seconds between pause-flag polls while a run is paused
PAUSE_POLL_INTERVAL = 0.1
# Give the host a chance to run every N batches
YIELD_EVERY_N_BATCHES = 10

# --- Explanation --- #
CAM_BLEND_ALPHA = 0.6

# --- Data sources --- #
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.path.join(PROJECT_ROOT, "data")
SAMPLE_CSV_PATH = os.path.join(DATA_DIR, "sample_mnist.csv")
PRETRAINED_MODEL_DIR = os.path.join(PROJECT_ROOT, "pretrained-model")
PRETRAINED_MODEL_NAME = "model"

SAMPLE_NUM_TRAIN = 500
SAMPLE_NUM_TEST = 125

MNIST_IMAGES_SPRITE_URL = "https://storage.googleapis.com/learnjs-data/model-builder/mnist_images.png"
MNIST_LABELS_URL = "https://storage.googleapis.com/learnjs-data/model-builder/mnist_labels_uint8"
NUM_DATASET_ELEMENTS = 65000
NUM_TRAIN_ELEMENTS = 55000
NUM_TEST_ELEMENTS = NUM_DATASET_ELEMENTS - NUM_TRAIN_ELEMENTS
SPRITE_CHUNK_SIZE = 5000
DOWNLOAD_TIMEOUT = 30
