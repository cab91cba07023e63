import logging
import os
import tempfile
import threading

HEALTH_DIR = 'healthz'


class HealthFile:
    """Liveness marker: a temp file under ./healthz that exists while the scaler is active."""

    def __init__(self, directory=HEALTH_DIR):
        self._directory = directory
        self._path = None
        self._lock = threading.Lock()

    @property
    def path(self):
        return self._path

    def update(self, is_running: bool):
        with self._lock:
            if is_running:
                self._create()
            else:
                self._remove()

    def _create(self):
        if self._path is not None:
            return
        try:
            os.makedirs(self._directory, exist_ok=True)
            fd, self._path = tempfile.mkstemp(prefix='healthy', dir=self._directory)
            os.close(fd)
            logging.info(f"Health check file created at: {os.path.normpath(self._path)}")
        except OSError as e:
            logging.error(f"Health check file creation failed: {e}")

    def _remove(self):
        if self._path is None:
            return
        try:
            os.remove(self._path)
            logging.info("Health check file deleted")
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.error(f"Health check file deletion failed: {e}")
        self._path = None
