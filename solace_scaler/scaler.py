import logging
import math
import time
from typing import NamedTuple, Optional

from botocore.exceptions import BotoCoreError, ClientError

from solace_scaler.aws.ecs import is_success_status
from solace_scaler.common.logger import service_designation
from solace_scaler.exceptions import ScalingOperationError
from solace_scaler.observations import reduce_observations

SCALE_OUT = 'out'
SCALE_IN = 'in'

# Scale-in targets are computed against 90% of the metric target to moderate scale-in
SCALE_OUT_ADJUSTMENT_FACTOR = 1.0
SCALE_IN_ADJUSTMENT_FACTOR = 0.9

# Reasons a cycle is blocked before any target is computed
BLOCKED_UNKNOWN = 'blocked_unknown'
BLOCKED_NOT_STEADY = 'blocked_not_steady'
BLOCKED_IN_FLIGHT = 'blocked_in_flight'

# Other cycle outcomes
NO_OBSERVATIONS = 'no_observations'
NO_OP = 'no_op'
COOLDOWN = 'cooldown'
SCALED = 'scaled'


class ReplicaTargets(NamedTuple):
    scale_out_target: Optional[int]
    scale_in_target: Optional[int]


class ScalingDecision(NamedTuple):
    """At most one direction per cycle; direction is None for a no-op."""
    direction: Optional[str] = None
    replica_target: Optional[int] = None
    cooldown_blocked: bool = False


class CycleResult(NamedTuple):
    status: str
    decision: ScalingDecision = ScalingDecision()


def now_millis() -> int:
    return int(time.time() * 1000)


def compute_desired_replicas(target, observation, boundary, step, scale_out, current_desired):
    """
    Compute the desired replica count for one metric.

    Args:
        target: Metric value one replica is expected to handle
        observation: Observed metric value, reduced to a scalar
        boundary: Max replicas for scale-out, min replicas for scale-in
        step: Max replica adjustment permitted, 0 or None for no limit
        scale_out: True for a scale-out computation, False for scale-in
        current_desired: Current desired replica count, needed to apply the step

    Returns:
        int: Desired replica count, or None when it cannot be computed
    """
    if (target is None or target < 1 or
            observation is None or observation < 0 or
            current_desired is None or current_desired < 0 or
            boundary is None or boundary < 0):
        return None
    if step is None or step < 0:
        step = 0

    adjustment_factor = SCALE_OUT_ADJUSTMENT_FACTOR if scale_out else SCALE_IN_ADJUSTMENT_FACTOR
    new_desired = math.ceil(observation / (target * adjustment_factor))

    if scale_out:
        if step > 0:
            new_desired = min(new_desired, current_desired + step)
        new_desired = min(new_desired, boundary)
    else:
        if step > 0:
            new_desired = max(new_desired, current_desired - step)
        new_desired = max(new_desired, boundary)

    return new_desired


def get_replica_targets(current_desired, observations, behavior) -> ReplicaTargets:
    """
    Compute scale-out and scale-in targets from the windowed observations.

    Each direction takes the largest target computed across the tracked metrics, so the
    metric asking for the most replicas wins. A direction with no computable metric, or
    whose observations are not computable, has no target.
    """
    scale_out_targets = []
    scale_in_targets = []

    if observations.scale_out.computable:
        scale_out_targets = [
            compute_desired_replicas(behavior.message_count_target, observations.scale_out.max_message_count,
                                     behavior.max_replica_count, behavior.scale_out_config.max_scale_step,
                                     True, current_desired),
            compute_desired_replicas(behavior.message_receive_rate_target, observations.scale_out.max_message_rate,
                                     behavior.max_replica_count, behavior.scale_out_config.max_scale_step,
                                     True, current_desired)
        ]
    if observations.scale_in.computable:
        scale_in_targets = [
            compute_desired_replicas(behavior.message_count_target, observations.scale_in.max_message_count,
                                     behavior.min_replica_count, behavior.scale_in_config.max_scale_step,
                                     False, current_desired),
            compute_desired_replicas(behavior.message_receive_rate_target, observations.scale_in.max_message_rate,
                                     behavior.min_replica_count, behavior.scale_in_config.max_scale_step,
                                     False, current_desired)
        ]

    return ReplicaTargets(
        scale_out_target=max((t for t in scale_out_targets if t is not None), default=None),
        scale_in_target=max((t for t in scale_in_targets if t is not None), default=None)
    )


def check_preconditions(current_desired, current_running, state) -> Optional[str]:
    """
    Check whether a scaling operation is possible for the current service state.

    Both counts must be known, the service must be at rest (desired == running), and the
    last confirmed replica count must have converged with the running count.

    Returns:
        str: Reason the cycle is blocked, or None if scaling may proceed
    """
    if current_desired is None or current_running is None:
        return BLOCKED_UNKNOWN
    if current_desired != current_running:
        return BLOCKED_NOT_STEADY
    # TODO: Add a timeout for the in-flight guard; a service that never reconverges blocks scaling forever
    if state.confirmed_initialized and state.last_confirmed_replica_count != current_running:
        return BLOCKED_IN_FLIGHT
    return None


def clamp_scale_in_target(scale_in_target, scale_out_target):
    """Raise the scale-in target to the scale-out target when it undershoots it."""
    if scale_out_target is not None and scale_in_target is not None and scale_in_target < scale_out_target:
        return scale_out_target
    return scale_in_target


def get_replica_target(
        scale_in_target,
        scale_out_target,
        current_desired,
        evaluation_time_ms,
        last_scale_out_time_ms,
        last_scale_in_time_ms,
        scale_out_cooldown,
        scale_in_cooldown
) -> ScalingDecision:
    """
    Decide on a scaling action from the computed targets.

    Scale-out wins over scale-in. The scale-in target is never allowed below the scale-out
    target; this can happen when the scale-in stabilization window is shorter than the
    scale-out one. A candidate action inside its cooldown period becomes a no-op.

    Args:
        scale_in_target: Computed scale-in target or None
        scale_out_target: Computed scale-out target or None
        current_desired: Current desired replica count
        evaluation_time_ms: Evaluation instant, epoch milliseconds
        last_scale_out_time_ms: Last confirmed scale-out, epoch milliseconds
        last_scale_in_time_ms: Last confirmed scale-in, epoch milliseconds
        scale_out_cooldown: Scale-out cooldown in seconds
        scale_in_cooldown: Scale-in cooldown in seconds

    Returns:
        ScalingDecision
    """
    scale_in_target = clamp_scale_in_target(scale_in_target, scale_out_target)

    if scale_out_target is not None and scale_out_target > current_desired:
        if evaluation_time_ms - last_scale_out_time_ms >= scale_out_cooldown * 1000:
            return ScalingDecision(SCALE_OUT, scale_out_target)
        return ScalingDecision(cooldown_blocked=True)

    if scale_in_target is not None and scale_in_target < current_desired:
        if evaluation_time_ms - last_scale_in_time_ms >= scale_in_cooldown * 1000:
            return ScalingDecision(SCALE_IN, scale_in_target)
        return ScalingDecision(cooldown_blocked=True)

    return ScalingDecision()


class EcsServiceScaler:
    """
    Scaling decisions and operations for one ECS service.

    Reads the service's observation store, keeps its scaling state, and applies decisions
    through the ECS mutator. Only the service's own scaling task calls scaling_operation.
    """

    def __init__(self, service_config, store, state, mutator):
        self._service_config = service_config
        self._store = store
        self._state = state
        self._mutator = mutator
        self._designation = service_designation(service_config)

    @property
    def service_config(self):
        return self._service_config

    @property
    def state(self):
        return self._state

    def scaling_operation(self, current_desired, current_running, now_ms=None) -> CycleResult:
        """
        Run one scaling cycle.

        Args:
            current_desired: Desired task count reported for the service, or None
            current_running: Running task count reported for the service, or None
            now_ms: Evaluation instant, epoch milliseconds (default: now)

        Returns:
            CycleResult describing the outcome

        Raises:
            ScalingOperationError: If ECS did not accept the new desired count. Nothing is
            committed to the scaling state in that case.
        """
        blocked = check_preconditions(current_desired, current_running, self._state)
        if blocked is not None:
            self._log_blocked(blocked, current_desired, current_running)
            return CycleResult(blocked)

        if self._state.initialize_confirmed(current_running):
            logging.info(f"Service={self._designation} -- Initialized lastScaledReplicaCount={current_running}")

        evaluation_time = now_millis() if now_ms is None else now_ms
        behavior = self._service_config.scaler_behavior_config

        observations = reduce_observations(
            evaluation_time,
            self._store.items(),
            evaluation_time - behavior.scale_out_config.stabilization_window * 1000,
            evaluation_time - behavior.scale_in_config.stabilization_window * 1000
        )
        if not observations.computable:
            logging.warning(f"Service={self._designation} -- No recent metrics to use for scaling computations, "
                            f"skipping this cycle")
            return CycleResult(NO_OBSERVATIONS)

        targets = get_replica_targets(current_desired, observations, behavior)
        logging.debug(f"Service={self._designation} -- Observations: {observations}, targets: {targets}")

        decision = get_replica_target(
            targets.scale_in_target,
            targets.scale_out_target,
            current_desired,
            evaluation_time,
            self._state.last_scale_out_time,
            self._state.last_scale_in_time,
            behavior.scale_out_config.cooldown_period,
            behavior.scale_in_config.cooldown_period
        )

        if decision.cooldown_blocked:
            logging.info(f"Service={self._designation} -- Service Scaling in Cooldown; scaling from "
                         f"{current_desired} blocked (targets: out={targets.scale_out_target}, "
                         f"in={targets.scale_in_target})")
            return CycleResult(COOLDOWN, decision)
        if decision.direction is None:
            logging.info(f"Service={self._designation} -- Scaler computes Steady State - "
                         f"currentReplicas={current_desired}")
            return CycleResult(NO_OP, decision)

        self._scale_ecs_service(decision, current_desired, evaluation_time)
        return CycleResult(SCALED, decision)

    def _scale_ecs_service(self, decision, current_desired, evaluation_time):
        config = self._service_config
        logging.info(f"Service={self._designation} -- Preparing to scale {decision.direction} from "
                     f"{current_desired} to {decision.replica_target} instances")

        try:
            status_code = self._mutator.set_desired_count(config.ecs_cluster, config.ecs_service,
                                                          decision.replica_target)
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Service={self._designation} -- Exception attempting to update from {current_desired} "
                          f"to {decision.replica_target} instances: {e}", exc_info=True)
            raise ScalingOperationError(
                f"Failed to update service {self._designation} to {decision.replica_target} instances") from e

        if not is_success_status(status_code):
            logging.error(f"Service={self._designation} -- Scaling Operation FAILED to update ECS Service to "
                          f"{decision.replica_target} instances; HTTP Status Code={status_code}")
            raise ScalingOperationError(
                f"ECS returned HTTP {status_code} updating service {self._designation} "
                f"to {decision.replica_target} instances")

        if decision.direction == SCALE_OUT:
            self._state.record_scale_out(decision.replica_target, evaluation_time)
        else:
            self._state.record_scale_in(decision.replica_target, evaluation_time)

        logging.info(f"Service={self._designation} -- Successfully scaled to {decision.replica_target} instances")

    def _log_blocked(self, reason, current_desired, current_running):
        if reason == BLOCKED_UNKNOWN:
            logging.warning(f"Service={self._designation} -- Current replica values not known - "
                            f"currentDesiredReplicas={current_desired} currentRunningReplicas={current_running}; "
                            f"Both must be known to proceed with scaling")
        elif reason == BLOCKED_NOT_STEADY:
            logging.info(f"Service={self._designation} -- Scaled Service not in steady state - "
                         f"currentDesiredReplicas={current_desired} currentRunningReplicas={current_running}; "
                         f"Values must be equal to proceed with scaling")
        else:
            logging.info(f"Service={self._designation} -- Scaling Operation in Progress - Waiting for "
                         f"lastScaledReplicaCount={self._state.last_confirmed_replica_count} == "
                         f"currentRunningReplicas={current_running}")
