# ui/training_worker.py

from typing import Any, Dict

from PyQt5.QtCore import QObject, QThread, pyqtSignal

from model import config
from model.errors import VisualizerError
from model.training import EpochMetrics, MetricsHistory, TrainingController, TrainingProgress


# Worker class for running the training loop in a separate thread
class TrainingWorker(QObject):
    # Signals to communicate with the main thread
    # batch_progress: TrainingProgress after every batch
    batch_progress = pyqtSignal(object)
    # epoch_finished: (EpochMetrics, MetricsHistory) after every completed epoch
    epoch_finished = pyqtSignal(object, object)
    # finished: MetricsHistory, or None if the run failed
    finished = pyqtSignal(object)
    # log_message: string message
    log_message = pyqtSignal(str)
    error = pyqtSignal(str)  # Separate signal for errors

    def __init__(self, controller: TrainingController, training_params: Dict[str, Any]):
        super().__init__()
        self.controller = controller
        self.params = training_params
        # Extract key parameters for easier access
        self.epochs = self.params.get('epochs', config.DEFAULT_EPOCHS)
        self.batch_size = self.params.get('batch_size', config.DEFAULT_BATCH_SIZE)
        self.learning_rate = self.params.get('learning_rate', config.DEFAULT_LEARNING_RATE)
        self.model_override = self.params.get('model')
        self._previous_log = controller.log

    def stop(self):
        """Signals the controller to stop training gracefully."""
        self.log_message.emit("Stop request received by worker.")
        self.controller.stop()

    def toggle_pause(self) -> bool:
        return self.controller.pause()

    def _on_batch_end(self, progress: TrainingProgress):
        self.batch_progress.emit(progress)

    def _on_epoch_end(self, record: EpochMetrics, history: MetricsHistory):
        self.epoch_finished.emit(record, history)

    def _forward_log(self, msg: str):
        self._previous_log(msg)
        self.log_message.emit(msg)

    def run(self):
        """Runs the training loop and reports through signals."""
        self.log_message.emit(f"Training worker started: epochs={self.epochs}, "
                              f"batch_size={self.batch_size}, learning_rate={self.learning_rate}")
        # Controller logs reach the UI through log_message while this run lasts
        self._previous_log = self.controller.log
        self.controller.log = self._forward_log
        history = None
        try:
            history = self.controller.start(epochs=self.epochs,
                                            batch_size=self.batch_size,
                                            learning_rate=self.learning_rate,
                                            model_override=self.model_override,
                                            progress_callback=self._on_batch_end,
                                            epoch_callback=self._on_epoch_end)
        except VisualizerError as e:
            self.error.emit(e.message)
        except Exception as e:
            error_msg = f"Error during training: {e}"
            self.log_message.emit(error_msg)
            self.error.emit(error_msg)
        finally:
            self.controller.log = self._previous_log
            self.log_message.emit("Training worker run method finished.")
            self.finished.emit(history)


def start_training_thread(worker: TrainingWorker) -> QThread:
    """Moves worker onto a new QThread, wires its lifetime to the thread and starts it."""
    thread = QThread()
    worker.moveToThread(thread)
    thread.started.connect(worker.run)
    # Worker finished -> thread quits -> both cleaned up
    worker.finished.connect(thread.quit)
    thread.finished.connect(worker.deleteLater)
    thread.finished.connect(thread.deleteLater)
    thread.start()
    return thread
