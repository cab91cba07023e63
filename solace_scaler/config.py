import os
import logging
from typing import Dict, Any, List, Optional, NamedTuple

import yaml

from solace_scaler.exceptions import ConfigValidationError

MAX_SCALED_SERVICES = 100

TASK_COUNT_SOURCE_ECS = 'ecs'
TASK_COUNT_SOURCE_CLOUDWATCH = 'cloudwatch'
TASK_COUNT_SOURCES = (TASK_COUNT_SOURCE_ECS, TASK_COUNT_SOURCE_CLOUDWATCH)


class SempConfig(NamedTuple):
    """SEMPv2 endpoint of one message VPN."""
    broker_semp_url: str
    username: Optional[str]
    password: Optional[str]


class BrokerConfig(NamedTuple):
    active_semp_config: SempConfig
    standby_semp_config: Optional[SempConfig]
    msg_vpn_name: str
    polling_interval: int


class ScalerOperation(NamedTuple):
    """Per-direction scaling behavior; all values in replicas or seconds."""
    max_scale_step: int = 0
    cooldown_period: int = 0
    stabilization_window: int = 0


class ScalerBehaviorConfig(NamedTuple):
    min_replica_count: int
    max_replica_count: int
    message_count_target: int
    message_receive_rate_target: int
    message_spool_usage_target: int
    scale_out_config: ScalerOperation
    scale_in_config: ScalerOperation


class EcsServiceConfig(NamedTuple):
    ecs_cluster: str
    ecs_service: str
    queue_name: str
    scaler_behavior_config: ScalerBehaviorConfig


class ScalerConfig(NamedTuple):
    """Validated configuration for the scaler process."""
    broker_config: BrokerConfig
    ecs_service_configs: List[EcsServiceConfig]

    # Where desired/running task counts are read from
    task_count_source: str

    # AWS configuration
    region: str
    sso_profile: Optional[str]


def load_config(config_file: str, environ: Optional[Dict[str, str]] = None) -> ScalerConfig:
    """
    Load and validate the scaler configuration file.

    AWS settings are taken from the environment (AWS_REGION, SSO_PROFILE), everything
    else from the YAML file.

    Args:
        config_file: Path to the YAML configuration file
        environ: Optional environment mapping (default: os.environ)

    Returns:
        ScalerConfig: Validated configuration

    Raises:
        OSError: If the file cannot be read
        yaml.YAMLError: If the file is not valid YAML
        ConfigValidationError: If the configuration is not valid
    """
    try:
        with open(config_file, 'r', encoding='utf-8') as fh:
            raw_config = yaml.safe_load(fh)
    except OSError as e:
        logging.error(f"There was an error reading the input file: {config_file}: {e}")
        raise
    except yaml.YAMLError as e:
        logging.error(f"Failed to parse the config file {config_file}: {e}")
        raise

    return validate_config(raw_config, environ)


def validate_config(raw_config: Any, environ: Optional[Dict[str, str]] = None) -> ScalerConfig:
    """
    Validate a parsed configuration document and build the immutable ScalerConfig.

    The input is never modified; defaults are filled into the returned value. Every
    problem found is logged before ConfigValidationError is raised.
    """
    environ = os.environ if environ is None else environ
    errors: List[str] = []

    if not isinstance(raw_config, dict):
        errors.append("Configuration must be a mapping with [brokerConfig] and [ecsServiceConfig] entries")
        _raise_errors(errors)

    broker_config = _build_broker_config(raw_config.get('brokerConfig'), errors)

    raw_services = raw_config.get('ecsServiceConfig') or []
    if not isinstance(raw_services, list) or not raw_services:
        errors.append("At least one [ecsServiceConfig] entry is required")
        raw_services = []
    elif len(raw_services) > MAX_SCALED_SERVICES:
        errors.append(f"Too many scaled apps in the configuration: {len(raw_services)}. "
                      f"Maximum number of scaled applications for the Scaler is {MAX_SCALED_SERVICES}.")

    service_configs = []
    for index, raw_service in enumerate(raw_services):
        service_config = _build_service_config(raw_service, index, errors)
        if service_config is not None:
            service_configs.append(service_config)

    # Competing scalers on the same queue or service must be rejected up front
    queue_names = [s.queue_name for s in service_configs]
    designations = [f"{s.ecs_cluster}/{s.ecs_service}" for s in service_configs]
    for queue_name in find_duplicates(queue_names):
        errors.append(f"Found duplicate queueName == [{queue_name}] in configuration")
    for designation in find_duplicates(designations):
        errors.append(f"Found duplicate Service Name == [{designation}] in configuration")

    task_count_source = str(raw_config.get('taskCountSource', TASK_COUNT_SOURCE_ECS)).lower()
    if task_count_source not in TASK_COUNT_SOURCES:
        errors.append(f"Unsupported taskCountSource: {task_count_source}. "
                      f"Supported sources: {', '.join(TASK_COUNT_SOURCES)}")

    if errors:
        _raise_errors(errors)

    return ScalerConfig(
        broker_config=broker_config,
        ecs_service_configs=service_configs,
        task_count_source=task_count_source,
        region=environ.get('AWS_REGION', 'us-east-1'),
        sso_profile=environ.get('SSO_PROFILE')
    )


def find_duplicates(values: List[str]) -> List[str]:
    """Return the values that appear more than once, in first-seen order."""
    seen = set()
    duplicates = []
    for value in values:
        if value in seen and value not in duplicates:
            duplicates.append(value)
        seen.add(value)
    return duplicates


def _raise_errors(errors):
    for error in errors:
        logging.error(error)
    logging.error(f"There were {len(errors)} validation errors detected in the configuration")
    raise ConfigValidationError(errors)


def _build_semp_config(raw, label, errors) -> Optional[SempConfig]:
    if not isinstance(raw, dict) or not raw.get('brokerSempUrl'):
        errors.append(f"{label}.brokerSempUrl is required")
        return None
    return SempConfig(
        broker_semp_url=str(raw['brokerSempUrl']).rstrip('/'),
        username=raw.get('username'),
        password=raw.get('password')
    )


def _build_broker_config(raw, errors) -> Optional[BrokerConfig]:
    if not isinstance(raw, dict):
        errors.append("[brokerConfig] entry is required")
        return None

    active = _build_semp_config(raw.get('activeMsgVpnSempConfig'), 'activeMsgVpnSempConfig', errors)
    standby = None
    if raw.get('standbyMsgVpnSempConfig') is not None:
        standby = _build_semp_config(raw['standbyMsgVpnSempConfig'], 'standbyMsgVpnSempConfig', errors)

    msg_vpn_name = raw.get('msgVpnName')
    if not msg_vpn_name:
        errors.append("msgVpnName is required")

    polling_interval = _get_int(raw, 'pollingInterval', None, 'brokerConfig', errors)
    if polling_interval is None:
        errors.append("brokerConfig pollingInterval is required")
    elif polling_interval < 1:
        errors.append("brokerConfig pollingInterval must be > 0")

    return BrokerConfig(
        active_semp_config=active,
        standby_semp_config=standby,
        msg_vpn_name=msg_vpn_name,
        polling_interval=polling_interval
    )


def _build_scaler_operation(raw, label, errors) -> ScalerOperation:
    if raw is None:
        return ScalerOperation()
    if not isinstance(raw, dict):
        errors.append(f"{label} must be a mapping")
        return ScalerOperation()

    operation = ScalerOperation(
        max_scale_step=_get_int(raw, 'maxScaleStep', 0, label, errors),
        cooldown_period=_get_int(raw, 'cooldownPeriod', 0, label, errors),
        stabilization_window=_get_int(raw, 'stabilizationWindow', 0, label, errors)
    )
    if any(value is None or value < 0 for value in operation):
        errors.append(f"{label}: cooldownPeriod, maxScaleStep, stabilizationWindow values must be >= 0")
    return operation


def _build_service_config(raw, index, errors) -> Optional[EcsServiceConfig]:
    if not isinstance(raw, dict):
        errors.append(f"ecsServiceConfig[{index}] must be a mapping")
        return None

    missing = [key for key in ('ecsCluster', 'ecsService', 'queueName', 'scalerBehaviorConfig') if not raw.get(key)]
    if missing:
        errors.append(f"ecsServiceConfig[{index}] is missing required values: {', '.join(missing)}")
        return None

    service = f"{raw['ecsCluster']}/{raw['ecsService']}"
    raw_behavior = raw['scalerBehaviorConfig']
    if not isinstance(raw_behavior, dict):
        errors.append(f"service={service} scalerBehaviorConfig must be a mapping")
        return None

    label = f"service={service}"
    min_replicas = _get_int(raw_behavior, 'minReplicaCount', None, label, errors)
    max_replicas = _get_int(raw_behavior, 'maxReplicaCount', None, label, errors)
    if min_replicas is None or max_replicas is None:
        errors.append(f"{label} minReplicaCount and maxReplicaCount are required")
    else:
        if min_replicas < 1:
            errors.append(f"{label} minReplicaCount must be > 0")
        if max_replicas <= min_replicas:
            errors.append(f"{label} maxReplicaCount must be > minReplicaCount")

    count_target = _get_int(raw_behavior, 'messageCountTarget', 0, label, errors)
    rate_target = _get_int(raw_behavior, 'messageReceiveRateTarget', 0, label, errors)
    spool_target = _get_int(raw_behavior, 'messageSpoolUsageTarget', 0, label, errors)
    targets = [count_target, rate_target, spool_target]
    if any(target is not None and target < 0 for target in targets):
        errors.append(f"{label} Metric values must be >= 0")
    if not count_target and not rate_target:
        errors.append(f"{label} At least one metric value must be > 0 for each service")

    behavior = ScalerBehaviorConfig(
        min_replica_count=min_replicas,
        max_replica_count=max_replicas,
        message_count_target=count_target,
        message_receive_rate_target=rate_target,
        message_spool_usage_target=spool_target,
        scale_out_config=_build_scaler_operation(raw_behavior.get('scaleOutConfig'), f"{label} ScaleOut Config",
                                                 errors),
        scale_in_config=_build_scaler_operation(raw_behavior.get('scaleInConfig'), f"{label} ScaleIn Config",
                                                errors)
    )

    return EcsServiceConfig(
        ecs_cluster=str(raw['ecsCluster']),
        ecs_service=str(raw['ecsService']),
        queue_name=str(raw['queueName']),
        scaler_behavior_config=behavior
    )


def _get_int(raw, key, default, label, errors):
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        errors.append(f"{label} {key} must be an integer, got: {value}")
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        errors.append(f"{label} {key} must be an integer, got: {value}")
        return None
