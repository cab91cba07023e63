import logging
import threading
from typing import Dict, List, NamedTuple, Optional, Tuple

# Metric names as reported in logs
METRIC_MSG_COUNT = 'messageCount'
METRIC_AVG_RX_RATE = 'messageReceiveRate'
METRIC_SPOOL_USAGE = 'messageSpoolUsage'

# Observations are always retained for at least this long
MIN_RETENTION_MS = 120 * 1000

# Newest observation is used when a stabilization window is empty, if it is younger than this
NEWEST_OBSERVATION_MAX_AGE_MS = 5 * 60 * 1000


class MetricSnapshot(NamedTuple):
    """Queue metrics captured at one instant. Values are None when the broker did not report them."""
    message_count: Optional[int]
    message_receive_rate: Optional[int]
    message_spool_usage: Optional[int]


class DirectionObservations(NamedTuple):
    """Metric maxima used to compute the replica target of one scaling direction."""
    max_message_count: Optional[int]
    max_message_rate: Optional[int]
    found_in_window: bool
    computable: bool


class WindowedObservations(NamedTuple):
    scale_out: DirectionObservations
    scale_in: DirectionObservations
    newest_snapshot_age_ms: Optional[int]

    @property
    def computable(self):
        return self.scale_out.computable or self.scale_in.computable


def retention_window_ms(scale_out_window_s: int, scale_in_window_s: int) -> int:
    """Twice the larger stabilization window, and never less than MIN_RETENTION_MS."""
    return max(max(scale_out_window_s, scale_in_window_s) * 2 * 1000, MIN_RETENTION_MS)


class MetricObservationStore:
    """
    Time keyed store of recent metric snapshots for one scaled service.

    Written by the queue monitor task, read by the scaling task and purged by the purge
    task, all from different threads. A snapshot is inserted whole under the lock, so a
    reader never sees a partially written entry.
    """

    def __init__(self, retention_ms: int = MIN_RETENTION_MS):
        self._retention_ms = retention_ms
        self._observations: Dict[int, MetricSnapshot] = {}
        self._lock = threading.Lock()

    @property
    def retention_ms(self):
        return self._retention_ms

    def put(self, timestamp_ms: int, snapshot: MetricSnapshot):
        with self._lock:
            self._observations[timestamp_ms] = snapshot

    def purge(self, now_ms: int) -> int:
        """
        Remove observations older than the retention window.

        Returns:
            int: Number of observations removed
        """
        with self._lock:
            expired = [ts for ts in self._observations if ts + self._retention_ms < now_ms]
            for ts in expired:
                del self._observations[ts]
        return len(expired)

    def items(self) -> List[Tuple[int, MetricSnapshot]]:
        """Copy of the stored (timestamp, snapshot) pairs, in no particular order."""
        with self._lock:
            return list(self._observations.items())

    def __len__(self):
        with self._lock:
            return len(self._observations)


class _WindowMaxima:
    def __init__(self):
        self.message_count = None
        self.message_rate = None
        self.found = False

    def add(self, snapshot):
        self.message_count = _max_or_none(self.message_count, snapshot.message_count)
        self.message_rate = _max_or_none(self.message_rate, snapshot.message_receive_rate)
        self.found = True


def _max_or_none(current, value):
    if value is None:
        return current
    if current is None:
        return value
    return max(current, value)


def reduce_observations(
        evaluation_time_ms,
        observations,
        scale_out_horizon_ms,
        scale_in_horizon_ms
):
    """
    Reduce stored observations to the per-direction maxima within the stabilization windows.

    Only observations strictly newer than a direction's horizon count toward its maxima.
    When a direction has nothing in its window (e.g. a stabilization window of 0, or a
    polling interval longer than the window), the newest observation is used instead,
    provided it is younger than NEWEST_OBSERVATION_MAX_AGE_MS. Otherwise the direction is
    marked as not computable.

    Args:
        evaluation_time_ms: Evaluation instant, epoch milliseconds
        observations: Iterable of (timestamp_ms, MetricSnapshot) pairs
        scale_out_horizon_ms: Oldest instant considered for scale-out
        scale_in_horizon_ms: Oldest instant considered for scale-in

    Returns:
        WindowedObservations
    """
    scale_out = _WindowMaxima()
    scale_in = _WindowMaxima()
    newest_time = None
    newest_snapshot = None

    for timestamp, snapshot in observations:
        if newest_time is None or timestamp > newest_time:
            newest_time = timestamp
            newest_snapshot = snapshot
        if timestamp > scale_out_horizon_ms:
            scale_out.add(snapshot)
        if timestamp > scale_in_horizon_ms:
            scale_in.add(snapshot)

    newest_is_fresh = (newest_time is not None and
                       newest_time > evaluation_time_ms - NEWEST_OBSERVATION_MAX_AGE_MS)

    return WindowedObservations(
        scale_out=_direction_observations(scale_out, newest_snapshot, newest_is_fresh),
        scale_in=_direction_observations(scale_in, newest_snapshot, newest_is_fresh),
        newest_snapshot_age_ms=None if newest_time is None else evaluation_time_ms - newest_time
    )


def _direction_observations(maxima, newest_snapshot, newest_is_fresh):
    if maxima.found:
        return DirectionObservations(maxima.message_count, maxima.message_rate, True, True)
    if newest_is_fresh:
        return DirectionObservations(newest_snapshot.message_count, newest_snapshot.message_receive_rate,
                                     False, True)
    return DirectionObservations(None, None, False, False)


def log_snapshot(designation, snapshot):
    logging.info(f"Service={designation} -- Stored Metrics: "
                 f"{METRIC_MSG_COUNT}: {snapshot.message_count}, "
                 f"{METRIC_AVG_RX_RATE}: {snapshot.message_receive_rate}, "
                 f"{METRIC_SPOOL_USAGE}: {snapshot.message_spool_usage}")
