import os
import sys
import signal
import logging
import argparse
import threading
from typing import List, Optional

import yaml

from solace_scaler.aws.wrapper import AWSWrapper
from solace_scaler.aws.ecs import CloudWatchTaskCountSource, EcsServiceMutator, EcsTaskCountSource
from solace_scaler.common.health import HealthFile
from solace_scaler.common.logger import setup_logging, service_designation
from solace_scaler.common.tasks import CancellationToken, PeriodicTask
from solace_scaler.config import TASK_COUNT_SOURCE_CLOUDWATCH, ScalerConfig, load_config
from solace_scaler.exceptions import ConfigValidationError, ScalingOperationError
from solace_scaler.observations import MetricObservationStore, log_snapshot, retention_window_ms
from solace_scaler.queue_metrics.monitor import SolaceQueueMonitor
from solace_scaler.scaler import EcsServiceScaler, now_millis
from solace_scaler.state.scaling_state import ServiceScalingState

DEFAULT_CONFIG_FILE = 'scaler-config.yaml'

# Task timing, in seconds
INIT_POLLING_DELAY_SEMP = 5
INIT_POLLING_DELAY_PURGE = 10
POLLING_INTERVAL_PURGE = 120
SCALING_OPERATION_INTERVAL = 10
SHUTDOWN_GRACE_PERIOD = 5


def initialization_delay(polling_interval: int) -> int:
    """Scaling waits until the first SEMP polls have had time to produce metrics."""
    return INIT_POLLING_DELAY_SEMP + 5 + max(polling_interval, 60)


class ManagedService:
    """
    Everything the scaler keeps for one ECS service bound to one Solace queue.

    The observation store is shared by the service's ingest, purge and scaling tasks;
    the scaling state is only touched by its scaling task.
    """

    def __init__(self, service_config, broker_config, mutator, task_count_source, http_session=None):
        behavior = service_config.scaler_behavior_config
        self.service_config = service_config
        self.designation = service_designation(service_config)
        self.store = MetricObservationStore(retention_window_ms(
            behavior.scale_out_config.stabilization_window,
            behavior.scale_in_config.stabilization_window
        ))
        self.state = ServiceScalingState()
        self.monitor = SolaceQueueMonitor(
            broker_config.active_semp_config,
            broker_config.standby_semp_config,
            broker_config.msg_vpn_name,
            service_config.queue_name,
            http_session=http_session
        )
        self.scaler = EcsServiceScaler(service_config, self.store, self.state, mutator)
        self._task_count_source = task_count_source

    def ingest_metrics(self):
        """Fetch one snapshot from the broker and store it. QueueMonitorError propagates."""
        snapshot = self.monitor.get_queue_snapshot()
        if snapshot is None:
            return
        self.store.put(now_millis(), snapshot)
        log_snapshot(self.designation, snapshot)

    def purge_metrics(self, now_ms=None):
        removed = self.store.purge(now_millis() if now_ms is None else now_ms)
        logging.debug(f"Service={self.designation} -- Purged {removed} metric entries older than "
                      f"{self.store.retention_ms // 1000} seconds")
        return removed

    def run_scaling_cycle(self):
        """
        Read the current task counts and run one scaling operation.

        A failed ECS update is logged and retried on the next cycle; it does not stop the
        service's scaling task or affect other services.
        """
        config = self.service_config
        desired, running = self._task_count_source.get_task_counts(config.ecs_cluster, config.ecs_service)
        try:
            return self.scaler.scaling_operation(desired, running)
        except ScalingOperationError as e:
            logging.error(f"Service={self.designation} -- Scaling operation not committed, "
                          f"will retry next cycle: {e}")
            return None


class ScalerApp:
    """Wires the managed services to their scheduled tasks and runs them until shutdown."""

    def __init__(self, config: ScalerConfig, aws_wrapper=None, services: Optional[List[ManagedService]] = None):
        self._config = config
        if services is None:
            aws_wrapper = aws_wrapper or AWSWrapper(sso_profile_name=config.sso_profile, region_name=config.region)
            mutator = EcsServiceMutator(aws_wrapper)
            if config.task_count_source == TASK_COUNT_SOURCE_CLOUDWATCH:
                task_count_source = CloudWatchTaskCountSource(aws_wrapper)
            else:
                task_count_source = EcsTaskCountSource(aws_wrapper)
            services = [ManagedService(service_config, config.broker_config, mutator, task_count_source)
                        for service_config in config.ecs_service_configs]
        self.services = services
        self.token = CancellationToken()
        self.health = HealthFile()
        self._tasks: List[PeriodicTask] = []
        self._service_tokens = {}
        self._lock = threading.Lock()

    @property
    def tasks(self):
        return list(self._tasks)

    def start(self):
        broker_config = self._config.broker_config
        scaling_delay = initialization_delay(broker_config.polling_interval)
        logging.info(f"Metrics are initializing, scaling operations start in {scaling_delay} seconds")

        for service in self.services:
            service_token = self.token.child()
            self._service_tokens[service.designation] = service_token
            self._tasks.append(PeriodicTask(
                name=f"ingest-{service.designation}",
                action=service.ingest_metrics,
                interval=broker_config.polling_interval,
                token=service_token,
                initial_delay=INIT_POLLING_DELAY_SEMP,
                on_failure=lambda exc, s=service: self._on_service_failure(s, exc)
            ))
            self._tasks.append(PeriodicTask(
                name=f"scale-{service.designation}",
                action=service.run_scaling_cycle,
                interval=SCALING_OPERATION_INTERVAL,
                token=service_token,
                initial_delay=scaling_delay,
                on_failure=lambda exc, s=service: self._on_service_failure(s, exc)
            ))
            logging.info(f"Configured Scaler for Service={service.designation} -- "
                         f"on Solace Queue: {service.service_config.queue_name}")

        self._tasks.append(PeriodicTask(
            name='purge-metrics',
            action=self.purge_metrics,
            interval=POLLING_INTERVAL_PURGE,
            token=self.token,
            initial_delay=INIT_POLLING_DELAY_PURGE
        ))
        self._tasks.append(PeriodicTask(
            name='health',
            action=lambda: self.health.update(True),
            interval=SCALING_OPERATION_INTERVAL,
            token=self.token,
            initial_delay=scaling_delay
        ))

        for task in self._tasks:
            task.start()

    def purge_metrics(self):
        for service in self.services:
            if self.token.cancelled:
                return
            service.purge_metrics()

    def _on_service_failure(self, service, exc):
        """A failed ingest or scaling task stops every task of that service."""
        logging.error(f"Service={service.designation} -- Task failed, monitoring and scaling for this service "
                      f"are stopped: {exc}")
        with self._lock:
            self._service_tokens[service.designation].cancel()
            if all(token.cancelled for token in self._service_tokens.values()):
                logging.error("Every scaled service has failed -- Shutting down")
                self.token.cancel()

    def request_shutdown(self, signum=None, frame=None):
        if signum is not None:
            logging.info("*** Shutdown Signal Detected -- Shutting Down Scaler ***")
        self.token.cancel()

    def stop(self):
        self.token.cancel()
        for task in self._tasks:
            task.join(SHUTDOWN_GRACE_PERIOD)
            if task.is_alive():
                logging.warning(f"Task {task.name} did not stop within {SHUTDOWN_GRACE_PERIOD} seconds")
        self.health.update(False)
        for service in self.services:
            service.monitor.close()
        logging.info("Scaler stopped")

    def run(self):
        signal.signal(signal.SIGTERM, self.request_shutdown)
        signal.signal(signal.SIGINT, self.request_shutdown)
        self.start()
        while not self.token.wait(SCALING_OPERATION_INTERVAL):
            pass
        self.stop()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Scale ECS services based on Solace queue metrics")
    parser.add_argument('--config-file', default=os.environ.get('SCALER_CONFIG_FILE', DEFAULT_CONFIG_FILE),
                        help="Path to the scaler YAML configuration file")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    setup_logging()
    args = parse_args(argv)

    try:
        config = load_config(args.config_file)
    except (OSError, yaml.YAMLError, ConfigValidationError):
        logging.error(f"Could not parse scaler config at: {args.config_file} -- Exiting")
        return 1

    broker_config = config.broker_config
    logging.info(f"Starting Solace/ECS Scaler -- Monitoring Solace Messaging Service at URL: "
                 f"{broker_config.active_semp_config.broker_semp_url} / MsgVpn: {broker_config.msg_vpn_name}")

    ScalerApp(config).run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
