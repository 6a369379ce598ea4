# tests/test_datasets.py

import unittest
import numpy as np
import pandas as pd
import sys
import os
import shutil # For cleanup
from io import BytesIO
from unittest import mock
from PIL import Image # Requires Pillow
import requests

# Adjust path to import from the project root
# This assumes the tests are run from the project root directory
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import mnist_datasets
from mnist_datasets import DataVariant, MNISTData
from model import config
from model.errors import IOFailureError

# Define the directory where test data files will be stored
TEST_DATA_DIR = os.path.join(os.path.dirname(__file__), 'data')


class TestBatchingHelpers(unittest.TestCase):

    def test_one_hot(self):
        encoded = mnist_datasets.one_hot(np.array([0, 3, 9]))
        self.assertEqual(encoded.shape, (3, 10))
        self.assertEqual(encoded.dtype, np.float32)
        np.testing.assert_array_equal(encoded.argmax(axis=1), [0, 3, 9])
        np.testing.assert_array_equal(encoded.sum(axis=1), [1, 1, 1])

    def test_one_hot_rejects_out_of_range(self):
        with self.assertRaises(ValueError):
            mnist_datasets.one_hot(np.array([10]))

    def test_num_batches(self):
        self.assertEqual(mnist_datasets.num_batches(500, 32), 16)
        self.assertEqual(mnist_datasets.num_batches(64, 32), 2)
        self.assertEqual(mnist_datasets.num_batches(1, 32), 1)

    def test_last_batch_is_short(self):
        images = np.arange(500)
        labels = np.arange(500)
        x, y = mnist_datasets.get_batch(images, labels, 32, 15)
        self.assertEqual(len(x), 20, "Last batch of 500 examples with size 32 should hold 20")
        self.assertEqual(x[0], 480)
        np.testing.assert_array_equal(x, y)

    def test_batch_start_wraps_around(self):
        images = np.arange(10)
        batches = [mnist_datasets.get_batch(images, images, 4, i)[0] for i in range(4)]
        np.testing.assert_array_equal(batches[0], [0, 1, 2, 3])
        np.testing.assert_array_equal(batches[1], [4, 5, 6, 7])
        np.testing.assert_array_equal(batches[2], [8, 9])
        np.testing.assert_array_equal(batches[3], [2, 3, 4, 5])


class TestSyntheticSample(unittest.TestCase):

    def test_default_sizes(self):
        data = mnist_datasets.generate_sample_mnist(seed=0)
        self.assertEqual(data.num_train, 500)
        self.assertEqual(data.num_test, 125)
        self.assertEqual(data.train_images.shape, (500, 28, 28, 1))
        self.assertEqual(data.test_labels.shape, (125, 10))

    def test_values_and_labels(self):
        data = mnist_datasets.generate_sample_mnist(num_train=20, num_test=10, seed=1)
        self.assertEqual(data.train_images.dtype, np.float32)
        self.assertGreaterEqual(data.train_images.min(), 0.0)
        self.assertLessEqual(data.train_images.max(), 1.0)
        np.testing.assert_array_equal(data.train_labels.argmax(axis=1), np.arange(20) % 10)
        # Every digit pattern has some ink
        self.assertTrue(np.all(data.train_images.reshape(20, -1).max(axis=1) == 1.0))

    def test_seed_is_deterministic(self):
        a = mnist_datasets.generate_sample_mnist(num_train=10, num_test=5, seed=7)
        b = mnist_datasets.generate_sample_mnist(num_train=10, num_test=5, seed=7)
        np.testing.assert_array_equal(a.train_images, b.train_images)

    def test_load_sample_falls_back_to_synthetic(self):
        progress = []
        with mock.patch.object(config, 'SAMPLE_CSV_PATH', os.path.join(TEST_DATA_DIR, 'missing.csv')):
            data = mnist_datasets.load_dataset('sample', on_progress=progress.append, seed=0)
        self.assertEqual((data.num_train, data.num_test), (500, 125))
        self.assertEqual(progress[-1], 1.0)

    def test_load_sample_with_missing_explicit_path(self):
        with self.assertRaises(IOFailureError):
            mnist_datasets.load_sample_mnist(csv_path=os.path.join(TEST_DATA_DIR, 'no_such_file.csv'))


class TestSampleCSV(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        """Set up test data files before running tests."""
        os.makedirs(TEST_DATA_DIR, exist_ok=True)
        print(f"Ensured test data directory exists: {TEST_DATA_DIR}")

        pixel_cols = [f'p{j}' for j in range(784)]
        rng = np.random.default_rng(0)
        pixel_data = {
            'label': list(range(10)),
            **{col: rng.integers(0, 256, 10) for col in pixel_cols} # Random pixel data
        }

        # --- Create sample_pixels_valid.csv (only good rows) --- #
        cls.pixel_valid_csv_path = os.path.join(TEST_DATA_DIR, 'sample_pixels_valid.csv')
        pd.DataFrame(pixel_data).to_csv(cls.pixel_valid_csv_path, index=False)

        # --- Create sample_pixels.csv with bad rows --- #
        cls.pixel_csv_path = os.path.join(TEST_DATA_DIR, 'sample_pixels.csv')
        df_pixels = pd.DataFrame(pixel_data)
        df_pixels.loc[10] = [0] + [100] * 783 + ['not_a_number'] # Non-numeric
        df_pixels.loc[11] = [1] + [np.nan] * 784 # NaN
        df_pixels.to_csv(cls.pixel_csv_path, index=False)
        print(f"Created CSV: {cls.pixel_csv_path}")

        # --- Create a CSV without a label column --- #
        cls.no_label_csv_path = os.path.join(TEST_DATA_DIR, 'sample_no_label.csv')
        pd.DataFrame({col: [0, 0] for col in pixel_cols + ['extra']}).to_csv(cls.no_label_csv_path, index=False)

        # --- Create a CSV with a label outside 0-9 --- #
        cls.bad_label_csv_path = os.path.join(TEST_DATA_DIR, 'sample_bad_label.csv')
        df_bad_label = pd.DataFrame(pixel_data)
        df_bad_label.loc[0, 'label'] = 12
        df_bad_label.to_csv(cls.bad_label_csv_path, index=False)

        # --- Create a file that is not valid UTF-8 --- #
        cls.binary_csv_path = os.path.join(TEST_DATA_DIR, 'sample_binary.csv')
        with open(cls.binary_csv_path, 'wb') as f:
            f.write(b'label,p0\n\xff\xfe\x80,\x81\n')

        cls.created_files = [cls.pixel_valid_csv_path, cls.pixel_csv_path, cls.no_label_csv_path,
                             cls.bad_label_csv_path, cls.binary_csv_path]

    @classmethod
    def tearDownClass(cls):
        """Clean up test data files after running tests."""
        print(f"Cleaning up test data in: {TEST_DATA_DIR}")
        for f_path in getattr(cls, 'created_files', []):
            if os.path.exists(f_path):
                os.remove(f_path)
        if os.path.exists(TEST_DATA_DIR) and not os.listdir(TEST_DATA_DIR):
            shutil.rmtree(TEST_DATA_DIR)

    def test_load_csv_valid(self):
        data = mnist_datasets.load_sample_csv(self.pixel_valid_csv_path, validation_split=2, seed=0)
        self.assertEqual(data.num_train, 8, "Train count mismatch")
        self.assertEqual(data.num_test, 2, "Test count mismatch")
        self.assertEqual(data.train_images.shape[1:], (28, 28, 1))
        self.assertLessEqual(data.train_images.max(), 1.0, "Pixels should be scaled to [0, 1]")
        all_labels = np.concatenate([data.train_labels, data.test_labels]).argmax(axis=1)
        self.assertEqual(sorted(all_labels), list(range(10)))

    def test_load_csv_drops_bad_rows(self):
        data = mnist_datasets.load_sample_csv(self.pixel_csv_path, seed=0)
        self.assertEqual(data.num_train + data.num_test, 10, "Non-numeric and NaN rows should be dropped")

    def test_load_csv_missing_label_column(self):
        with self.assertRaises(IOFailureError):
            mnist_datasets.load_sample_csv(self.no_label_csv_path)

    def test_load_csv_label_out_of_range(self):
        with self.assertRaises(IOFailureError) as ctx:
            mnist_datasets.load_dataset('sample', csv_path=self.bad_label_csv_path)
        self.assertIn("labels", ctx.exception.message)

    def test_load_csv_not_utf8(self):
        with self.assertRaises(IOFailureError):
            mnist_datasets.load_dataset('sample', csv_path=self.binary_csv_path)

    def test_load_csv_file_errors(self):
        """Test load_sample_csv with file-related errors."""
        with self.assertRaises(IOFailureError):
            mnist_datasets.load_sample_csv(os.path.join(TEST_DATA_DIR, 'no_such_file.csv'))

        # Empty file
        empty_path = os.path.join(TEST_DATA_DIR, 'empty.csv')
        with open(empty_path, 'w') as f:
            f.write("")
        try:
            with self.assertRaises(IOFailureError):
                mnist_datasets.load_sample_csv(empty_path)
        finally:
            os.remove(empty_path)

        # Malformed CSV (ParserError)
        malformed_path = os.path.join(TEST_DATA_DIR, 'malformed.csv')
        with open(malformed_path, 'w') as f:
            f.write("col1,col2\n1,2,3\n4,5") # Extra comma in data row
        try:
            with self.assertRaises(IOFailureError):
                mnist_datasets.load_sample_csv(malformed_path)
        finally:
            os.remove(malformed_path)

    def test_write_then_load(self):
        data = mnist_datasets.generate_sample_mnist(num_train=8, num_test=2, seed=3)
        out_path = os.path.join(TEST_DATA_DIR, 'written.csv')
        try:
            mnist_datasets.write_sample_csv(data, out_path)
            loaded = mnist_datasets.load_sample_csv(out_path, validation_split=2)
        finally:
            if os.path.exists(out_path):
                os.remove(out_path)
        self.assertEqual(loaded.num_train + loaded.num_test, 10)
        self.assertEqual(sorted(loaded.train_labels.sum(axis=0) + loaded.test_labels.sum(axis=0)), [1.0] * 10)


def _fake_response(content):
    response = mock.MagicMock()
    response.iter_content.side_effect = lambda chunk_size=8192: iter([content[:100], content[100:]])
    return response


class TestFullMNIST(unittest.TestCase):
    NUM_IMAGES = 20

    def setUp(self):
        # Row i of the sprite holds image i, every pixel set to i * 10
        rows = (np.arange(self.NUM_IMAGES, dtype=np.uint8) * 10)[:, np.newaxis].repeat(784, axis=1)
        sprite = Image.fromarray(np.stack([rows] * 3, axis=-1), 'RGB')
        buffered = BytesIO()
        sprite.save(buffered, format='PNG')
        self.sprite_bytes = buffered.getvalue()
        self.label_bytes = mnist_datasets.one_hot(np.arange(self.NUM_IMAGES) % 10).astype(np.uint8).tobytes()

        patches = [
            mock.patch.object(config, 'NUM_DATASET_ELEMENTS', self.NUM_IMAGES),
            mock.patch.object(config, 'NUM_TRAIN_ELEMENTS', 15),
            mock.patch.object(config, 'SPRITE_CHUNK_SIZE', 8),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def _fake_get(self, url, **kwargs):
        if url == config.MNIST_IMAGES_SPRITE_URL:
            return _fake_response(self.sprite_bytes)
        return _fake_response(self.label_bytes)

    def test_load_full_splits_and_reports_progress(self):
        progress = []
        with mock.patch('mnist_datasets.requests.get', side_effect=self._fake_get) as fake_get:
            data = mnist_datasets.load_dataset(DataVariant.FULL, on_progress=progress.append)

        self.assertEqual(fake_get.call_count, 2)
        self.assertIsInstance(data, MNISTData)
        self.assertEqual(data.train_images.shape, (15, 28, 28, 1))
        self.assertEqual(data.test_images.shape, (5, 28, 28, 1))
        self.assertAlmostEqual(float(data.train_images[3].max()), 30 / 255.0, places=6)
        np.testing.assert_array_equal(data.test_labels.argmax(axis=1), np.arange(15, 20) % 10)

        self.assertEqual(progress, sorted(progress), "Progress should never go backwards")
        self.assertAlmostEqual(progress[2], 0.5)
        self.assertEqual(progress[-2:], [0.75, 1.0])

    def test_network_failure_is_io_failure(self):
        with mock.patch('mnist_datasets.requests.get', side_effect=requests.ConnectionError("offline")):
            with self.assertRaises(IOFailureError):
                mnist_datasets.load_full_mnist()

    def test_http_error_is_io_failure(self):
        response = _fake_response(b'')
        response.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
        with mock.patch('mnist_datasets.requests.get', return_value=response):
            with self.assertRaises(IOFailureError):
                mnist_datasets.load_full_mnist()

    def test_truncated_labels_are_rejected(self):
        self.label_bytes = self.label_bytes[:50]
        with mock.patch('mnist_datasets.requests.get', side_effect=self._fake_get):
            with self.assertRaises(IOFailureError):
                mnist_datasets.load_full_mnist()

    def test_cache_dir_skips_second_download(self):
        cache_dir = os.path.join(TEST_DATA_DIR, 'cache')
        try:
            with mock.patch('mnist_datasets.requests.get', side_effect=self._fake_get) as fake_get:
                mnist_datasets.load_full_mnist(cache_dir=cache_dir)
                mnist_datasets.load_full_mnist(cache_dir=cache_dir)
            self.assertEqual(fake_get.call_count, 2, "Second load should be served from the cache")
        finally:
            shutil.rmtree(cache_dir, ignore_errors=True)
            if os.path.exists(TEST_DATA_DIR) and not os.listdir(TEST_DATA_DIR):
                shutil.rmtree(TEST_DATA_DIR)


if __name__ == '__main__':
    unittest.main()
