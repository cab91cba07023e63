import logging
import threading
from typing import NamedTuple, Optional

import requests

from solace_scaler.config import SempConfig
from solace_scaler.exceptions import QueueMonitorError
from solace_scaler.observations import MetricSnapshot
from solace_scaler.queue_metrics import semp

MAX_FAILED_REQUESTS_IN_A_ROW = 5


class BrokerEndpointSet(NamedTuple):
    """Active and optional standby SEMP endpoints of the monitored message VPN."""
    active: SempConfig
    standby: Optional[SempConfig]
    consecutive_failure_count: int = 0


class SolaceQueueMonitor:
    """
    Monitors one Solace queue via SEMPv2, following a DR failover of the message VPN.

    Each cycle the active endpoint's message VPN state is checked first. If it is not up,
    the standby endpoint is checked, and if the standby is up the two swap roles so the
    next cycle starts from the healthy endpoint. Queue metrics are always read from the
    active endpoint.
    """

    def __init__(self, active: SempConfig, standby: Optional[SempConfig], msg_vpn_name: str, queue_name: str,
                 http_session=None):
        self._endpoints = BrokerEndpointSet(active=active, standby=standby)
        self._msg_vpn_name = msg_vpn_name
        self._queue_name = queue_name
        self._http_session = http_session or requests.Session()
        self._lock = threading.Lock()

    @property
    def queue_name(self):
        return self._queue_name

    @property
    def msg_vpn_name(self):
        return self._msg_vpn_name

    @property
    def endpoints(self) -> BrokerEndpointSet:
        with self._lock:
            return self._endpoints

    def update_active_endpoint(self) -> bool:
        """
        Resolve which endpoint is active for this cycle.

        Returns:
            bool: True if the active endpoint (possibly after a swap) reports the VPN up,
            False if neither endpoint is up
        """
        with self._lock:
            return self._update_active_endpoint()

    def _update_active_endpoint(self):
        endpoints = self._endpoints
        if semp.is_vpn_up(self._http_session, endpoints.active, self._msg_vpn_name):
            return True

        logging.info(f"SempUrl={endpoints.active.broker_semp_url} -- Message VPN {self._msg_vpn_name} "
                     f"is not up on the active SEMP config. Trying Standby")
        if endpoints.standby is not None and semp.is_vpn_up(self._http_session, endpoints.standby,
                                                           self._msg_vpn_name):
            self._endpoints = endpoints._replace(active=endpoints.standby, standby=endpoints.active)
            logging.warning(f"MessageVPN={self._msg_vpn_name} -- Failed over to SempUrl="
                            f"{endpoints.standby.broker_semp_url}; previous active "
                            f"{endpoints.active.broker_semp_url} is now standby")
            return True

        logging.error(f"MessageVPN={self._msg_vpn_name} -- Neither Message VPN is currently up. "
                      f"Skipping retrieval of Queue Metrics")
        return False

    def get_queue_snapshot(self) -> Optional[MetricSnapshot]:
        """
        Fetch queue metrics from the active endpoint.

        A cycle in which neither endpoint reports the message VPN up counts as a failed
        fetch; the endpoint roles are left as they were.

        Returns:
            MetricSnapshot, or None when no metrics could be obtained this cycle

        Raises:
            QueueMonitorError: If fetching failed more than MAX_FAILED_REQUESTS_IN_A_ROW
            times in a row
        """
        with self._lock:
            if not self._update_active_endpoint():
                self._record_failure("no Message VPN is up")
                return None

            snapshot = semp.get_queue_metrics(self._http_session, self._endpoints.active, self._msg_vpn_name,
                                              self._queue_name)
            if snapshot is not None:
                self._endpoints = self._endpoints._replace(consecutive_failure_count=0)
                return snapshot

            self._record_failure(f"SempUrl={self._endpoints.active.broker_semp_url} did not return statistics")
            return None

    def _record_failure(self, reason):
        failures = self._endpoints.consecutive_failure_count + 1
        self._endpoints = self._endpoints._replace(consecutive_failure_count=failures)
        logging.warning(f"Queue={self._queue_name} -- Failed to fetch queue statistics: {reason} "
                        f"({failures} in a row)")
        if failures > MAX_FAILED_REQUESTS_IN_A_ROW:
            raise QueueMonitorError(
                f"Failed to fetch statistics for queue {self._queue_name} from the active broker for "
                f"{failures} separate intervals. Please confirm Broker SEMP configuration.")

    def close(self):
        self._http_session.close()
