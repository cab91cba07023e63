import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

CW_ECS_NAMESPACE = 'ECS/ContainerInsights'
CW_DIM_CLUSTER_NAME = 'ClusterName'
CW_DIM_SERVICE_NAME = 'ServiceName'
CW_METRIC_DESIRED_TASK_COUNT = 'DesiredTaskCount'
CW_METRIC_RUNNING_TASK_COUNT = 'RunningTaskCount'
CW_METRIC_STAT = 'Maximum'
CW_METRIC_RESOLUTION_PERIOD = 60

# Query range and freshness boundary for Container Insights datapoints, in minutes
CW_QUERY_RANGE_MINUTES = 8
CW_DATAPOINT_MAX_AGE_MINUTES = 3


def is_success_status(status_code: Optional[int]) -> bool:
    """An ECS API call succeeded when its HTTP status is within [200, 204]."""
    return status_code is not None and 200 <= status_code <= 204


class EcsServiceMutator:
    """Updates the desired task count of an ECS service."""

    def __init__(self, aws_wrapper):
        self._aws_wrapper = aws_wrapper

    def set_desired_count(self, cluster: str, service_name: str, desired_count: int) -> int:
        """
        Update the ECS service with a new desired count.

        Args:
            cluster: ECS cluster name
            service_name: ECS service name
            desired_count: New desired task count

        Returns:
            int: HTTP status code of the update_service response

        Raises:
            ClientError, BotoCoreError: If the request could not be completed
        """
        ecs_client = self._aws_wrapper.create_aws_client('ecs')
        logging.debug(f"Update request: cluster={cluster}, service={service_name}, desiredCount={desired_count}")

        response = ecs_client.update_service(
            cluster=cluster,
            service=service_name,
            desiredCount=desired_count
        )
        return response.get('ResponseMetadata', {}).get('HTTPStatusCode')


class EcsTaskCountSource:
    """Reads desired and running task counts with ecs:DescribeServices."""

    def __init__(self, aws_wrapper):
        self._aws_wrapper = aws_wrapper

    def get_task_counts(self, cluster: str, service_name: str) -> Tuple[Optional[int], Optional[int]]:
        """
        Returns:
            tuple: (desired, running); a value is None when it is not known
        """
        try:
            ecs_client = self._aws_wrapper.create_aws_client('ecs')
            response = ecs_client.describe_services(cluster=cluster, services=[service_name])
        except (ClientError, BotoCoreError) as e:
            logging.warning(f"Service={cluster}/{service_name} -- Error describing ECS service: {e}")
            return None, None

        if not response.get('services'):
            logging.warning(f"Service={cluster}/{service_name} -- Service not found in cluster")
            return None, None

        service = response['services'][0]
        desired = service.get('desiredCount')
        running = service.get('runningCount')
        logging.debug(f"Service={cluster}/{service_name} -- ECS state - desired: {desired}, running: {running}")
        return desired, running


class CloudWatchTaskCountSource:
    """
    Reads desired and running task counts from ECS Container Insights in CloudWatch.

    Container Insights must be enabled on the cluster. A service scaled to zero reports no
    datapoints, which is indistinguishable from a missing service; both yield None.
    """

    def __init__(self, aws_wrapper, clock=None):
        self._aws_wrapper = aws_wrapper
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get_task_counts(self, cluster: str, service_name: str) -> Tuple[Optional[int], Optional[int]]:
        designation = f"{cluster}/{service_name}"

        # One minute resolution; end time is the start of the next minute
        end_time = self._clock().replace(second=0, microsecond=0) + timedelta(minutes=1)
        start_time = end_time - timedelta(minutes=CW_QUERY_RANGE_MINUTES)
        boundary = end_time - timedelta(minutes=CW_DATAPOINT_MAX_AGE_MINUTES)

        try:
            cw_client = self._aws_wrapper.create_aws_client('cloudwatch')
            response = cw_client.get_metric_data(
                StartTime=start_time,
                EndTime=end_time,
                ScanBy='TimestampDescending',
                MetricDataQueries=[
                    self._metric_data_query(CW_METRIC_DESIRED_TASK_COUNT, cluster, service_name),
                    self._metric_data_query(CW_METRIC_RUNNING_TASK_COUNT, cluster, service_name)
                ]
            )
        except (ClientError, BotoCoreError) as e:
            logging.error(f"Service={designation} -- Could not retrieve ECS metrics from CloudWatch: {e}")
            return None, None

        results = response.get('MetricDataResults') or []
        if not results:
            logging.warning(f"Service={designation} -- Call to AWS CloudWatch for ECS did not return metric data; "
                            f"scaling will be prevented until a successful call for the task counts is made")
            return None, None

        desired = running = None
        for result in results:
            timestamps = result.get('Timestamps') or []
            values = result.get('Values') or []
            if not timestamps or not values or timestamps[0] < boundary:
                continue
            if result.get('Id') == CW_METRIC_DESIRED_TASK_COUNT.lower():
                desired = int(round(values[0]))
            elif result.get('Id') == CW_METRIC_RUNNING_TASK_COUNT.lower():
                running = int(round(values[0]))

        if desired is None or running is None:
            logging.warning(f"Service={designation} -- Retrieved desiredTaskCount={desired}; "
                            f"runningTaskCount={running} from ECS CloudWatch -- One or both values is None; "
                            f"Scaling operations will be prevented")
        else:
            logging.info(f"Service={designation} -- Retrieved desiredTaskCount={desired}; "
                         f"runningTaskCount={running} from ECS CloudWatch")
        return desired, running

    @staticmethod
    def _metric_data_query(metric_name, cluster, service_name):
        return {
            'Id': metric_name.lower(),
            'MetricStat': {
                'Metric': {
                    'Namespace': CW_ECS_NAMESPACE,
                    'MetricName': metric_name,
                    'Dimensions': [
                        {'Name': CW_DIM_CLUSTER_NAME, 'Value': cluster},
                        {'Name': CW_DIM_SERVICE_NAME, 'Value': service_name}
                    ]
                },
                'Period': CW_METRIC_RESOLUTION_PERIOD,
                'Stat': CW_METRIC_STAT,
                'Unit': 'Count'
            },
            'Label': f"{metric_name}_Label",
            'ReturnData': True
        }
