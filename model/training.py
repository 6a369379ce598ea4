import os
import sys
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

import mnist_datasets
from mnist_datasets import DataVariant, MNISTData, get_batch, num_batches
from model import config
from model.cam import CAMResult, compute_cam
from model.cnn_model import CNNModel, LayerKind, LayerSummary
from model.errors import BusyError, ModelNotLoadedError, NotReadyError, VisualizerError
from utils.image_processor import prepare_sample


class RunStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"


_ACTIVE_STATUSES = (RunStatus.RUNNING, RunStatus.PAUSED, RunStatus.STOPPING)


@dataclass
class TrainingProgress:
    """Latest per-batch progress. epoch and batch are 1-based."""
    epoch: int = 0
    batch: int = 0
    total_batches: int = 0
    loss: float = 0.0
    accuracy: float = 0.0


@dataclass(frozen=True)
class EpochMetrics:
    epoch: int
    train_loss: float
    train_accuracy: float
    val_loss: float
    val_accuracy: float


class MetricsHistory:
    """Append-only per-epoch metrics, in epoch order."""

    def __init__(self, records: Optional[Sequence[EpochMetrics]] = None):
        self._records: List[EpochMetrics] = list(records or [])

    def append(self, record: EpochMetrics):
        self._records.append(record)

    def copy(self) -> "MetricsHistory":
        return MetricsHistory(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[EpochMetrics]:
        return iter(self._records)

    def __getitem__(self, index: int) -> EpochMetrics:
        return self._records[index]

    # Column views, as the training charts consume them
    @property
    def loss(self) -> List[float]:
        return [r.train_loss for r in self._records]

    @property
    def accuracy(self) -> List[float]:
        return [r.train_accuracy for r in self._records]

    @property
    def val_loss(self) -> List[float]:
        return [r.val_loss for r in self._records]

    @property
    def val_accuracy(self) -> List[float]:
        return [r.val_accuracy for r in self._records]

    def to_dataframe(self) -> pd.DataFrame:
        columns = ["epoch", "train_loss", "train_accuracy", "val_loss", "val_accuracy"]
        return pd.DataFrame([asdict(r) for r in self._records], columns=columns)


@dataclass
class SavedSnapshot:
    """Deep copy of a model's weights that outlives the model it was taken from."""
    weights: List[np.ndarray]
    name: str
    trained_epochs: int = 0
    last_val_accuracy: Optional[float] = None


@dataclass
class LayerOutput:
    index: int
    name: str
    kind: LayerKind
    activation: np.ndarray

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.activation.shape)


@dataclass
class Prediction:
    probabilities: np.ndarray
    predicted_class: int
    confidence: float
    explanation: Optional[CAMResult] = None


class RunHandle:
    """
    Shared state of one training run. The loop and the controlling thread talk
    only through this object: status, the stop request and the pause flag.
    """

    def __init__(self, epochs: int, batch_size: int, learning_rate: float):
        self.requested_epochs = epochs
        self.batch_size = batch_size
        self.learning_rate = learning_rate
        self.current_epoch = 0
        self.current_batch = 0
        self.total_batches_this_epoch = 0
        self.completed_epochs = 0
        self._lock = threading.Lock()
        self._status = RunStatus.IDLE
        self._stop_requested = False
        self._paused = False

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._status

    def set_status(self, status: RunStatus):
        with self._lock:
            self._status = status

    @property
    def is_active(self) -> bool:
        return self.status in _ACTIVE_STATUSES

    @property
    def stop_requested(self) -> bool:
        with self._lock:
            return self._stop_requested

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def request_stop(self) -> bool:
        """Asks the loop to exit at its next check point. Clears any pause."""
        with self._lock:
            if self._status not in _ACTIVE_STATUSES:
                return False
            self._stop_requested = True
            self._paused = False
            self._status = RunStatus.STOPPING
            return True

    def toggle_pause(self) -> Optional[bool]:
        """Flips RUNNING <-> PAUSED. Returns the new pause flag, or None if the run is in neither state."""
        with self._lock:
            if self._status is RunStatus.RUNNING:
                self._paused = True
                self._status = RunStatus.PAUSED
            elif self._status is RunStatus.PAUSED:
                self._paused = False
                self._status = RunStatus.RUNNING
            else:
                return None
            return self._paused

    def resume(self) -> bool:
        """Clears a pause. Returns True if the run was paused."""
        with self._lock:
            if self._status is not RunStatus.PAUSED:
                return False
            self._paused = False
            self._status = RunStatus.RUNNING
            return True

    def checkpoint(self, poll_interval: float = config.PAUSE_POLL_INTERVAL) -> bool:
        """Blocks while paused. Returns False once a stop has been requested."""
        while self.paused and not self.stop_requested:
            time.sleep(poll_interval)
        return not self.stop_requested


ProgressCallback = Optional[Callable[[TrainingProgress], None]]
EpochCallback = Optional[Callable[[EpochMetrics, MetricsHistory], None]]


class TrainingController:
    """
    Owns the active model, the loaded dataset and the training run state.

    Exactly one model is active at a time. Every model operation (one training
    batch, one evaluation, one inference or explanation) runs under a single
    lock, so predictions never interleave with an in-flight gradient update.
    """

    def __init__(self, log_callback: Optional[Callable[[str], None]] = None,
                 model_factory: Optional[Callable[..., CNNModel]] = None,
                 data_loader: Optional[Callable[..., MNISTData]] = None,
                 pause_poll_interval: float = config.PAUSE_POLL_INTERVAL):
        self.log = log_callback if log_callback else lambda msg: print(msg, file=sys.stderr)
        self._model_factory = model_factory or CNNModel.create
        self._data_loader = data_loader or mnist_datasets.load_dataset
        self.pause_poll_interval = pause_poll_interval

        self._state_lock = threading.Lock()  # guards run creation and model swaps
        self._model_lock = threading.RLock()  # serialises all model operations
        self._model: Optional[CNNModel] = None
        self._data: Optional[MNISTData] = None
        self._run: Optional[RunHandle] = None
        self._is_loading_data = False

        self.data_variant: Optional[DataVariant] = None
        self.data_load_progress = 0.0
        self.history = MetricsHistory()
        self.progress = TrainingProgress()
        self.model_source: Optional[str] = None
        self.model_name: Optional[str] = None
        self.trained_epochs = 0
        self.last_val_accuracy: Optional[float] = None
        self.saved_snapshot: Optional[SavedSnapshot] = None

    # --- State --- #

    @property
    def model(self) -> Optional[CNNModel]:
        return self._model

    @property
    def data(self) -> Optional[MNISTData]:
        return self._data

    @property
    def data_loaded(self) -> bool:
        return self._data is not None

    @property
    def run(self) -> Optional[RunHandle]:
        return self._run

    @property
    def status(self) -> RunStatus:
        return self._run.status if self._run else RunStatus.IDLE

    @property
    def is_training(self) -> bool:
        return self._run is not None and self._run.is_active

    @property
    def is_paused(self) -> bool:
        return self._run is not None and self._run.paused

    def train_disabled_reason(self) -> Optional[str]:
        """Why "start training" cannot run right now, or None if it can."""
        if self.is_training:
            return "Training in progress"
        if self._is_loading_data:
            return "Loading data..."
        if not self.data_loaded:
            return "Load data first"
        return None

    def load_data_disabled_reason(self, variant=DataVariant.SAMPLE) -> Optional[str]:
        if self.is_training:
            return "Training in progress"
        if self._is_loading_data:
            return "Loading data..."
        if self.data_loaded and self.data_variant is DataVariant(variant):
            return "Data already loaded"
        return None

    def _ensure_idle(self):
        if self.is_training:
            raise BusyError()

    def _require_model(self) -> CNNModel:
        if self._model is None:
            raise ModelNotLoadedError()
        return self._model

    # --- Model slot --- #

    def _replace_model(self, new_model: CNNModel, source: str, name: Optional[str]):
        """Swaps the active model and disposes the previous one. Rejected while a run is active."""
        with self._state_lock:
            self._ensure_idle()
            with self._model_lock:
                old_model = self._model
                self._model = new_model
                if old_model is not None and old_model is not new_model:
                    old_model.dispose()
            self.history = MetricsHistory()
            self.progress = TrainingProgress()
            self.model_source = source
            self.model_name = name
            self.trained_epochs = 0
            self.last_val_accuracy = None
        self.log(f"Active model replaced (source: {source}).")

    def init_model(self, learning_rate: float = config.DEFAULT_LEARNING_RATE) -> CNNModel:
        """Creates a fresh, untrained model and makes it active."""
        self._ensure_idle()
        new_model = self._model_factory(learning_rate=learning_rate, log_callback=self.log)
        self._replace_model(new_model, "new", None)
        return new_model

    def load_model(self, architecture_path: str, weight_paths: Sequence[str]) -> CNNModel:
        """Loads a saved architecture + weights pair. On failure the current model stays active."""
        self._ensure_idle()
        new_model = CNNModel.load_from_files(architecture_path, weight_paths, log_callback=self.log)
        name = os.path.basename(architecture_path)
        if name.endswith(".json"):
            name = name[:-len(".json")]
        self._replace_model(new_model, "loaded", name)
        return new_model

    def load_pretrained(self, directory: Optional[str] = None) -> CNNModel:
        directory = directory or config.PRETRAINED_MODEL_DIR
        self._ensure_idle()
        name = config.PRETRAINED_MODEL_NAME
        new_model = CNNModel.load_from_files(os.path.join(directory, f"{name}.json"),
                                             [os.path.join(directory, f"{name}.weights.h5")],
                                             log_callback=self.log)
        self._replace_model(new_model, "pretrained", "Pre-trained MNIST CNN")
        return new_model

    def save_model(self, name: str = "mnist-cnn", directory: str = ".") -> Tuple[str, str]:
        """Exports the active model as '<name>.json' + '<name>.weights.h5'."""
        model = self._require_model()
        with self._model_lock:
            return model.save(directory, name)

    def save_snapshot(self) -> SavedSnapshot:
        """Keeps an in-memory copy of the current weights. Overwrites any earlier snapshot."""
        model = self._require_model()
        with self._model_lock:
            weights = [np.array(w, copy=True) for w in model.get_weights()]
        self.saved_snapshot = SavedSnapshot(weights=weights,
                                            name=self.model_name or "user-trained",
                                            trained_epochs=self.trained_epochs,
                                            last_val_accuracy=self.last_val_accuracy)
        self.log(f"Saved snapshot of {len(weights)} weight arrays.")
        return self.saved_snapshot

    def restore_snapshot(self) -> CNNModel:
        """Builds a fresh model carrying the snapshot's weights and makes it active."""
        snapshot = self.saved_snapshot
        if snapshot is None:
            raise NotReadyError("No saved model to restore. Save a trained model first.")
        self._ensure_idle()
        new_model = self._model_factory(learning_rate=config.DEFAULT_LEARNING_RATE, log_callback=self.log)
        new_model.set_weights([np.array(w, copy=True) for w in snapshot.weights])
        self._replace_model(new_model, "snapshot", snapshot.name)
        self.trained_epochs = snapshot.trained_epochs
        self.last_val_accuracy = snapshot.last_val_accuracy
        return new_model

    # --- Data --- #

    def load_data(self, variant=DataVariant.SAMPLE, on_progress: Optional[Callable[[float], None]] = None,
                  **loader_kwargs) -> MNISTData:
        """Loads a dataset variant. On failure the previously loaded dataset is kept.

        Raises:
            BusyError: if a run is active or another load is still in flight.
        """
        variant = DataVariant(variant)
        with self._state_lock:
            self._ensure_idle()
            if self._is_loading_data:
                raise BusyError("Data is already loading.")
            self._is_loading_data = True
            self.data_load_progress = 0.0

        def report(fraction: float):
            self.data_load_progress = fraction
            if on_progress:
                on_progress(fraction)

        try:
            data = self._data_loader(variant, on_progress=report, **loader_kwargs)
            with self._state_lock:
                self._ensure_idle()
                self._data = data
                self.data_variant = variant
        except VisualizerError as e:
            self.log(f"Failed to load {variant.value} data: {e.message}")
            raise
        finally:
            self._is_loading_data = False
        report(1.0)
        self.log(f"Loaded {variant.value} data: {data.num_train} train / {data.num_test} test examples.")
        return data

    # --- Training --- #

    def start(self, epochs: int = config.DEFAULT_EPOCHS, batch_size: int = config.DEFAULT_BATCH_SIZE,
              learning_rate: float = config.DEFAULT_LEARNING_RATE, model_override: Optional[CNNModel] = None,
              progress_callback: ProgressCallback = None, epoch_callback: EpochCallback = None) -> MetricsHistory:
        """
        Runs the epoch/batch training loop on the calling thread.

        pause(), resume() and stop() may be called from any other thread while it runs.

        Args:
            epochs (int): Number of epochs requested for this run.
            batch_size (int): Examples per gradient update; the last batch of an epoch may be shorter.
            learning_rate (float): Adam learning rate. The optimizer is recompiled at the start of every run.
            model_override (CNNModel, optional): Model to make active before training.
            progress_callback (callable, optional): Called with a TrainingProgress after every batch.
            epoch_callback (callable, optional): Called with (EpochMetrics, MetricsHistory) after every completed epoch.

        Returns:
            MetricsHistory: the active model's history, including this run's epochs.

        Raises:
            NotReadyError: if no dataset has been loaded.
            BusyError: if another run is active or a dataset is still loading.
        """
        if epochs <= 0 or batch_size <= 0 or learning_rate <= 0:
            raise ValueError("epochs, batch_size and learning_rate must all be positive.")
        if self._is_loading_data:
            raise BusyError("Data is still loading.")
        data = self._data
        if data is None:
            raise NotReadyError("Load data first.")
        if data.num_train == 0 or data.num_test == 0:
            raise NotReadyError("The loaded dataset has no training or validation examples.")

        if model_override is not None and model_override is not self._model:
            self._replace_model(model_override, "new", None)
        elif self._model is None:
            self.init_model(learning_rate)

        with self._state_lock:
            self._ensure_idle()
            if self._is_loading_data:
                raise BusyError("Data is still loading.")
            run = RunHandle(epochs, batch_size, learning_rate)
            run.set_status(RunStatus.RUNNING)
            self._run = run
        model = self._model

        self.log(f"Starting training for {epochs} epochs with batch size {batch_size} and LR {learning_rate}...")
        try:
            with self._model_lock:
                model.compile(learning_rate)
            self._train_epochs(run, model, data, progress_callback, epoch_callback)
            if not run.stop_requested:
                run.set_status(RunStatus.COMPLETED)
                self.log("Training completed successfully.")
            else:
                self.log(f"Training stopped early by request after {run.completed_epochs} epochs.")
        except Exception as e:
            message = e.message if isinstance(e, VisualizerError) else str(e)
            self.log(f"Training aborted: {message}")
            raise
        finally:
            self.trained_epochs += run.completed_epochs
            run.set_status(RunStatus.IDLE)
        return self.history.copy()

    def _train_epochs(self, run: RunHandle, model: CNNModel, data: MNISTData,
                      progress_callback: ProgressCallback, epoch_callback: EpochCallback):
        total_batches = num_batches(data.num_train, run.batch_size)
        first_epoch_number = self.trained_epochs

        for epoch in range(run.requested_epochs):
            if not run.checkpoint(self.pause_poll_interval):
                break
            run.current_epoch = epoch + 1
            run.current_batch = 0
            run.total_batches_this_epoch = total_batches
            self.log(f"Epoch {epoch + 1}/{run.requested_epochs} starting...")

            epoch_loss = 0.0
            epoch_acc = 0.0
            batch_count = 0
            for batch in range(total_batches):
                if not run.checkpoint(self.pause_poll_interval):
                    break
                images, labels = get_batch(data.train_images, data.train_labels, run.batch_size, batch)
                with self._model_lock:
                    batch_loss, batch_acc = model.train_on_batch(images, labels)
                del images, labels

                epoch_loss += batch_loss
                epoch_acc += batch_acc
                batch_count += 1
                run.current_batch = batch + 1

                self.progress = TrainingProgress(epoch=epoch + 1, batch=batch + 1, total_batches=total_batches,
                                                 loss=batch_loss, accuracy=batch_acc)
                if progress_callback:
                    progress_callback(self.progress)
                if (batch + 1) % config.YIELD_EVERY_N_BATCHES == 0:
                    time.sleep(0)

            if run.stop_requested:
                break

            with self._model_lock:
                val_loss, val_acc = model.evaluate(data.test_images, data.test_labels)

            # Unweighted mean over batches, even though the last batch may be short
            record = EpochMetrics(epoch=first_epoch_number + epoch + 1,
                                  train_loss=epoch_loss / batch_count,
                                  train_accuracy=epoch_acc / batch_count,
                                  val_loss=val_loss,
                                  val_accuracy=val_acc)
            self.history.append(record)
            self.last_val_accuracy = val_acc
            run.completed_epochs += 1
            self.log(f"Epoch {epoch + 1}/{run.requested_epochs} finished. Loss: {record.train_loss:.4f}, "
                     f"Acc: {record.train_accuracy:.4f}, Val Loss: {val_loss:.4f}, Val Acc: {val_acc:.4f}")
            if epoch_callback:
                epoch_callback(record, self.history.copy())
            time.sleep(0)

    def pause(self) -> bool:
        """Toggles pause. The in-flight batch always finishes. Returns the new pause state."""
        run = self._run
        if run is None:
            return False
        paused = run.toggle_pause()
        if paused is None:
            # Stopping or already finished
            return False
        self.log("Training paused." if paused else "Training resumed.")
        return paused

    def resume(self):
        run = self._run
        if run is not None and run.resume():
            self.log("Training resumed.")

    def stop(self):
        """Requests the run to stop at its next check point. A no-op when nothing is running."""
        run = self._run
        if run is not None and run.request_stop():
            self.log("Stop request received.")

    # --- Inference --- #

    def predict(self, sample) -> np.ndarray:
        """Class probabilities for one digit image."""
        model = self._require_model()
        batch = prepare_sample(sample)
        with self._model_lock:
            probabilities = model.forward(batch)
        return np.asarray(probabilities)[0]

    def explain(self, sample, predicted_class: Optional[int] = None) -> Optional[CAMResult]:
        """CAM for one digit. Returns None (with a warning) when no explanation can be produced."""
        model = self._require_model()
        try:
            with self._model_lock:
                if predicted_class is None:
                    predicted_class = int(np.argmax(model.forward(prepare_sample(sample))[0]))
                return compute_cam(model, sample, predicted_class)
        except VisualizerError as e:
            self.log(f"Warning: Explanation unavailable: {e.message}")
        except (ValueError, IndexError) as e:
            self.log(f"Warning: Failed to compute CAM: {e}")
        return None

    def classify(self, sample, explain: bool = True) -> Prediction:
        """Prediction plus, optionally, its CAM explanation."""
        probabilities = self.predict(sample)
        predicted_class = int(np.argmax(probabilities))
        prediction = Prediction(probabilities=probabilities,
                                predicted_class=predicted_class,
                                confidence=float(probabilities[predicted_class]))
        if explain:
            prediction.explanation = self.explain(sample, predicted_class)
        return prediction

    # --- Introspection --- #

    def model_summary(self) -> List[LayerSummary]:
        if self._model is None:
            return []
        with self._model_lock:
            return self._model.layer_kinds()

    def layer_outputs(self, sample) -> Dict[str, LayerOutput]:
        """Activations of every conv, pooling, flatten and dense layer for one digit."""
        model = self._require_model()
        batch = prepare_sample(sample)
        outputs = {}
        with self._model_lock:
            for summary in model.layer_kinds():
                if summary.kind is LayerKind.DROPOUT:
                    continue
                outputs[summary.name] = LayerOutput(index=summary.index, name=summary.name, kind=summary.kind,
                                                    activation=model.get_layer_output(summary.index, batch))
        return outputs

    def filter_weights(self, layer_name: str) -> Optional[np.ndarray]:
        model = self._require_model()
        with self._model_lock:
            return model.filter_weights(layer_name)
