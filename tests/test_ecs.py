import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from botocore.exceptions import ClientError, EndpointConnectionError

from solace_scaler.aws.ecs import (
    CloudWatchTaskCountSource,
    EcsServiceMutator,
    EcsTaskCountSource,
    is_success_status,
)
from solace_scaler.aws.wrapper import AWSWrapper

NOW = datetime(2024, 5, 1, 12, 30, 20, tzinfo=timezone.utc)


def make_wrapper(client):
    aws_wrapper = mock.MagicMock()
    aws_wrapper.create_aws_client.return_value = client
    return aws_wrapper


class TestEcsServiceMutator(unittest.TestCase):

    def test_set_desired_count(self):
        ecs_client = mock.MagicMock()
        ecs_client.update_service.return_value = {'ResponseMetadata': {'HTTPStatusCode': 200}}
        aws_wrapper = make_wrapper(ecs_client)

        status = EcsServiceMutator(aws_wrapper).set_desired_count('cluster', 'service', 7)

        self.assertEqual(status, 200)
        aws_wrapper.create_aws_client.assert_called_with('ecs')
        ecs_client.update_service.assert_called_once_with(cluster='cluster', service='service', desiredCount=7)

    def test_client_error_propagates(self):
        ecs_client = mock.MagicMock()
        ecs_client.update_service.side_effect = ClientError(
            {'Error': {'Code': 'ServiceNotFoundException', 'Message': 'Service not found'}}, 'UpdateService')

        with self.assertRaises(ClientError):
            EcsServiceMutator(make_wrapper(ecs_client)).set_desired_count('cluster', 'service', 7)

    def test_success_status_range(self):
        self.assertTrue(is_success_status(200))
        self.assertTrue(is_success_status(204))
        self.assertFalse(is_success_status(205))
        self.assertFalse(is_success_status(199))
        self.assertFalse(is_success_status(None))


class TestEcsTaskCountSource(unittest.TestCase):

    def test_task_counts(self):
        ecs_client = mock.MagicMock()
        ecs_client.describe_services.return_value = {
            'services': [{'serviceName': 'service', 'desiredCount': 4, 'runningCount': 3}]
        }

        counts = EcsTaskCountSource(make_wrapper(ecs_client)).get_task_counts('cluster', 'service')

        self.assertEqual(counts, (4, 3))
        ecs_client.describe_services.assert_called_once_with(cluster='cluster', services=['service'])

    def test_missing_service(self):
        ecs_client = mock.MagicMock()
        ecs_client.describe_services.return_value = {'services': [], 'failures': [{'reason': 'MISSING'}]}

        self.assertEqual(EcsTaskCountSource(make_wrapper(ecs_client)).get_task_counts('cluster', 'service'),
                         (None, None))

    def test_errors_give_unknown_counts(self):
        ecs_client = mock.MagicMock()
        ecs_client.describe_services.side_effect = EndpointConnectionError(endpoint_url='https://ecs')

        self.assertEqual(EcsTaskCountSource(make_wrapper(ecs_client)).get_task_counts('cluster', 'service'),
                         (None, None))


class TestCloudWatchTaskCountSource(unittest.TestCase):

    def setUp(self):
        self.cw_client = mock.MagicMock()
        self.source = CloudWatchTaskCountSource(make_wrapper(self.cw_client), clock=lambda: NOW)

    def metric_result(self, metric_id, minutes_ago, value):
        end_time = datetime(2024, 5, 1, 12, 31, tzinfo=timezone.utc)
        return {'Id': metric_id, 'Timestamps': [end_time - timedelta(minutes=minutes_ago)], 'Values': [value]}

    def test_query_window(self):
        self.cw_client.get_metric_data.return_value = {'MetricDataResults': []}

        self.source.get_task_counts('cluster', 'service')

        _, kwargs = self.cw_client.get_metric_data.call_args
        self.assertEqual(kwargs['EndTime'], datetime(2024, 5, 1, 12, 31, tzinfo=timezone.utc))
        self.assertEqual(kwargs['StartTime'], datetime(2024, 5, 1, 12, 23, tzinfo=timezone.utc))
        ids = [query['Id'] for query in kwargs['MetricDataQueries']]
        self.assertEqual(ids, ['desiredtaskcount', 'runningtaskcount'])
        dimensions = kwargs['MetricDataQueries'][0]['MetricStat']['Metric']['Dimensions']
        self.assertEqual(dimensions, [{'Name': 'ClusterName', 'Value': 'cluster'},
                                      {'Name': 'ServiceName', 'Value': 'service'}])

    def test_fresh_datapoints(self):
        self.cw_client.get_metric_data.return_value = {'MetricDataResults': [
            self.metric_result('desiredtaskcount', 1, 5.0),
            self.metric_result('runningtaskcount', 2, 4.0)
        ]}

        self.assertEqual(self.source.get_task_counts('cluster', 'service'), (5, 4))

    def test_stale_datapoints_are_ignored(self):
        self.cw_client.get_metric_data.return_value = {'MetricDataResults': [
            self.metric_result('desiredtaskcount', 1, 5.0),
            self.metric_result('runningtaskcount', 4, 4.0)
        ]}

        self.assertEqual(self.source.get_task_counts('cluster', 'service'), (5, None))

    def test_client_error(self):
        self.cw_client.get_metric_data.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'GetMetricData')

        self.assertEqual(self.source.get_task_counts('cluster', 'service'), (None, None))


class TestAWSWrapper(unittest.TestCase):

    @mock.patch('solace_scaler.aws.wrapper.boto3.session.Session')
    def test_clients_are_reused(self, mock_session):
        aws_wrapper = AWSWrapper(region_name='eu-west-1')

        first = aws_wrapper.create_aws_client('ecs')
        second = aws_wrapper.create_aws_client('ecs')

        self.assertIs(first, second)
        mock_session.assert_called_once_with(region_name='eu-west-1')
        mock_session.return_value.client.assert_called_once()

    @mock.patch('solace_scaler.aws.wrapper.boto3.session.Session')
    def test_concurrent_client_creation(self, mock_session):
        def slow_client(**kwargs):
            time.sleep(0.05)
            return mock.MagicMock()

        mock_session.return_value.client.side_effect = slow_client
        aws_wrapper = AWSWrapper(region_name='eu-west-1')
        barrier = threading.Barrier(8)
        clients = []

        def create():
            barrier.wait()
            clients.append(aws_wrapper.create_aws_client('ecs'))

        threads = [threading.Thread(target=create) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        self.assertEqual(len(clients), 8)
        self.assertTrue(all(client is clients[0] for client in clients))
        mock_session.return_value.client.assert_called_once()

    @mock.patch('solace_scaler.aws.wrapper.boto3.session.Session')
    def test_sso_profile(self, mock_session):
        AWSWrapper(sso_profile_name='dev', region_name='eu-west-1')

        mock_session.assert_called_once_with(profile_name='dev', region_name='eu-west-1')


if __name__ == '__main__':
    unittest.main()
