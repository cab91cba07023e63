import threading
from datetime import datetime


class ServiceScalingState:
    """
    Scaling state of one scaled service, kept for the lifetime of the process.

    Owned by that service's scaling task. The task may run on a different thread from one
    cycle to the next, so every read and write goes through the lock.

    last_confirmed_replica_count is needed because the running count reported for the
    service takes a while to converge after a desired count update. A new scaling
    operation may only proceed once the two match again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last_scale_out_time = 0
        self._last_scale_in_time = 0
        self._last_confirmed_replica_count = 0
        self._confirmed_initialized = False

    @property
    def last_scale_out_time(self) -> int:
        with self._lock:
            return self._last_scale_out_time

    @property
    def last_scale_in_time(self) -> int:
        with self._lock:
            return self._last_scale_in_time

    @property
    def last_confirmed_replica_count(self) -> int:
        with self._lock:
            return self._last_confirmed_replica_count

    @property
    def confirmed_initialized(self) -> bool:
        with self._lock:
            return self._confirmed_initialized

    def initialize_confirmed(self, running_replicas: int) -> bool:
        """
        Set the confirmed replica count on the first cycle only.

        Returns:
            bool: True if the state was initialized by this call
        """
        with self._lock:
            if self._confirmed_initialized:
                return False
            self._last_confirmed_replica_count = running_replicas
            self._confirmed_initialized = True
            return True

    def record_scale_out(self, replica_count: int, timestamp_ms: int):
        with self._lock:
            self._last_confirmed_replica_count = replica_count
            self._last_scale_out_time = timestamp_ms

    def record_scale_in(self, replica_count: int, timestamp_ms: int):
        with self._lock:
            self._last_confirmed_replica_count = replica_count
            self._last_scale_in_time = timestamp_ms

    def __repr__(self):
        with self._lock:
            return (f"ServiceScalingState(last_scale_out={_readable(self._last_scale_out_time)}, "
                    f"last_scale_in={_readable(self._last_scale_in_time)}, "
                    f"last_confirmed_replica_count={self._last_confirmed_replica_count}, "
                    f"confirmed_initialized={self._confirmed_initialized})")


def _readable(timestamp_ms):
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime('%Y-%m-%d %H:%M:%S')
