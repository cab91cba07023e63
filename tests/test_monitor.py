import unittest
from unittest import mock

import requests

from solace_scaler.config import SempConfig
from solace_scaler.exceptions import QueueMonitorError
from solace_scaler.observations import MetricSnapshot
from solace_scaler.queue_metrics import semp
from solace_scaler.queue_metrics.monitor import MAX_FAILED_REQUESTS_IN_A_ROW, SolaceQueueMonitor

PRIMARY = SempConfig('https://primary:943', 'user', 'pass')
BACKUP = SempConfig('https://backup:943', 'user', 'pass')
VPN = 'orders'
QUEUE = 'q/orders'

QUEUE_RESPONSE = {
    'collections': {'msgs': {'count': 500}},
    'data': {
        'averageRxMsgRate': 25,
        'averageTxMsgRate': 20,
        'msgSpoolUsage': 1024,
        'msgVpnName': VPN,
        'queueName': QUEUE
    },
    'meta': {'responseCode': 200}
}


def make_response(status_code=200, body=None):
    response = mock.MagicMock()
    response.status_code = status_code
    response.reason = 'OK' if status_code == 200 else 'Error'
    response.json.return_value = body
    return response


def vpn_state(state):
    return make_response(200, {'data': {'state': state}})


class FakeSempSession:
    """requests.Session stand-in answering by URL."""

    def __init__(self, responses):
        self.responses = responses
        self.urls = []
        self.close = mock.MagicMock()

    def get(self, url, **kwargs):
        self.urls.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response


def state_url(semp_config):
    return semp.format_vpn_state_url(semp_config.broker_semp_url, VPN)


def queue_url(semp_config):
    return semp.format_queue_monitor_url(semp_config.broker_semp_url, VPN, QUEUE)


class TestSemp(unittest.TestCase):
    """Tests for the SEMPv2 client functions."""

    def test_urls_are_quoted(self):
        self.assertEqual(
            semp.format_queue_monitor_url('https://primary:943', 'my vpn', 'q/orders'),
            'https://primary:943/SEMP/v2/monitor/msgVpns/my%20vpn/queues/q%2Forders'
            '?select=msgs.count,msgVpnName,queueName,msgSpoolUsage,averageRxMsgRate,averageTxMsgRate')
        self.assertEqual(semp.format_vpn_state_url('https://primary:943', VPN),
                         'https://primary:943/SEMP/v2/monitor/msgVpns/orders?select=state')

    def test_queue_metrics_from_response(self):
        self.assertEqual(semp.queue_metrics_from_response(QUEUE_RESPONSE), MetricSnapshot(500, 25, 1024))

    def test_missing_metric_values(self):
        self.assertEqual(semp.queue_metrics_from_response({'data': {'averageRxMsgRate': 3}}),
                         MetricSnapshot(None, 3, None))

    def test_basic_auth_and_timeout(self):
        session = mock.MagicMock()
        session.get.return_value = make_response(200, QUEUE_RESPONSE)

        semp.get_queue_metrics(session, PRIMARY, VPN, QUEUE)

        _, kwargs = session.get.call_args
        self.assertEqual(kwargs['auth'].username, 'user')
        self.assertEqual(kwargs['auth'].password, 'pass')
        self.assertEqual(kwargs['timeout'], (semp.CONNECT_TIMEOUT, semp.READ_TIMEOUT))

    def test_no_auth_without_credentials(self):
        session = mock.MagicMock()
        session.get.return_value = make_response(200, QUEUE_RESPONSE)

        semp.get_queue_metrics(session, SempConfig('https://primary:943', None, None), VPN, QUEUE)

        self.assertIsNone(session.get.call_args[1]['auth'])

    def test_error_status_returns_none(self):
        session = mock.MagicMock()
        session.get.return_value = make_response(401)

        self.assertIsNone(semp.get_queue_metrics(session, PRIMARY, VPN, QUEUE))

    def test_transport_error_returns_none(self):
        session = mock.MagicMock()
        session.get.side_effect = requests.ConnectionError('connection refused')

        self.assertIsNone(semp.get_queue_metrics(session, PRIMARY, VPN, QUEUE))
        self.assertFalse(semp.is_vpn_up(session, PRIMARY, VPN))

    def test_unparseable_body_returns_none(self):
        session = mock.MagicMock()
        response = make_response(200)
        response.json.side_effect = ValueError('not json')
        session.get.return_value = response

        self.assertIsNone(semp.get_vpn_state(session, PRIMARY, VPN))

    def test_vpn_state(self):
        session = mock.MagicMock()
        session.get.return_value = vpn_state('down')

        self.assertEqual(semp.get_vpn_state(session, PRIMARY, VPN), 'down')
        self.assertFalse(semp.is_vpn_up(session, PRIMARY, VPN))


class TestSolaceQueueMonitor(unittest.TestCase):
    """Tests for failover and failure counting in the queue monitor."""

    def make_monitor(self, responses, standby=BACKUP):
        session = FakeSempSession(responses)
        return SolaceQueueMonitor(PRIMARY, standby, VPN, QUEUE, http_session=session), session

    def test_active_up(self):
        monitor, session = self.make_monitor({
            state_url(PRIMARY): vpn_state('up'),
            queue_url(PRIMARY): make_response(200, QUEUE_RESPONSE)
        })

        self.assertEqual(monitor.get_queue_snapshot(), MetricSnapshot(500, 25, 1024))
        self.assertEqual(monitor.endpoints.active, PRIMARY)
        self.assertEqual(session.urls, [state_url(PRIMARY), queue_url(PRIMARY)])

    def test_failover_to_standby(self):
        monitor, session = self.make_monitor({
            state_url(PRIMARY): vpn_state('down'),
            state_url(BACKUP): vpn_state('up'),
            queue_url(BACKUP): make_response(200, QUEUE_RESPONSE)
        })

        snapshot = monitor.get_queue_snapshot()

        self.assertEqual(snapshot, MetricSnapshot(500, 25, 1024))
        self.assertEqual(monitor.endpoints.active, BACKUP)
        self.assertEqual(monitor.endpoints.standby, PRIMARY)
        self.assertNotIn(queue_url(PRIMARY), session.urls)

    def test_swapped_roles_persist(self):
        monitor, session = self.make_monitor({
            state_url(PRIMARY): vpn_state('down'),
            state_url(BACKUP): vpn_state('up'),
            queue_url(BACKUP): make_response(200, QUEUE_RESPONSE)
        })
        monitor.get_queue_snapshot()
        session.urls.clear()

        monitor.get_queue_snapshot()

        self.assertEqual(session.urls, [state_url(BACKUP), queue_url(BACKUP)])

    def test_neither_vpn_up_counts_as_failure(self):
        monitor, session = self.make_monitor({
            state_url(PRIMARY): vpn_state('down'),
            state_url(BACKUP): requests.ConnectionError('unreachable')
        })

        self.assertIsNone(monitor.get_queue_snapshot())
        self.assertEqual(monitor.endpoints.active, PRIMARY)
        self.assertEqual(monitor.endpoints.standby, BACKUP)
        self.assertEqual(monitor.endpoints.consecutive_failure_count, 1)
        self.assertFalse(any('/queues/' in url for url in session.urls))

    def test_unreachable_broker_raises_after_too_many_cycles(self):
        monitor, _ = self.make_monitor({
            state_url(PRIMARY): requests.ConnectionError('unreachable'),
            state_url(BACKUP): requests.ConnectionError('unreachable')
        })

        for _ in range(MAX_FAILED_REQUESTS_IN_A_ROW):
            self.assertIsNone(monitor.get_queue_snapshot())
        self.assertEqual(monitor.endpoints.consecutive_failure_count, MAX_FAILED_REQUESTS_IN_A_ROW)

        with self.assertRaises(QueueMonitorError):
            monitor.get_queue_snapshot()

    def test_active_down_without_standby(self):
        monitor, _ = self.make_monitor({state_url(PRIMARY): vpn_state('down')}, standby=None)

        self.assertFalse(monitor.update_active_endpoint())
        self.assertIsNone(monitor.get_queue_snapshot())
        self.assertEqual(monitor.endpoints.consecutive_failure_count, 1)

    def test_recovered_vpn_resets_failure_count(self):
        responses = {
            state_url(PRIMARY): vpn_state('down'),
            state_url(BACKUP): vpn_state('down')
        }
        monitor, _ = self.make_monitor(responses)
        for _ in range(MAX_FAILED_REQUESTS_IN_A_ROW):
            monitor.get_queue_snapshot()

        responses[state_url(PRIMARY)] = vpn_state('up')
        responses[queue_url(PRIMARY)] = make_response(200, QUEUE_RESPONSE)

        self.assertEqual(monitor.get_queue_snapshot(), MetricSnapshot(500, 25, 1024))
        self.assertEqual(monitor.endpoints.consecutive_failure_count, 0)

    def test_raises_after_too_many_failures(self):
        monitor, _ = self.make_monitor({
            state_url(PRIMARY): vpn_state('up'),
            queue_url(PRIMARY): make_response(500)
        })

        for _ in range(MAX_FAILED_REQUESTS_IN_A_ROW):
            self.assertIsNone(monitor.get_queue_snapshot())

        with self.assertRaises(QueueMonitorError):
            monitor.get_queue_snapshot()

    def test_success_resets_failure_count(self):
        responses = {
            state_url(PRIMARY): vpn_state('up'),
            queue_url(PRIMARY): make_response(500)
        }
        monitor, _ = self.make_monitor(responses)
        for _ in range(MAX_FAILED_REQUESTS_IN_A_ROW):
            monitor.get_queue_snapshot()

        responses[queue_url(PRIMARY)] = make_response(200, QUEUE_RESPONSE)
        monitor.get_queue_snapshot()
        self.assertEqual(monitor.endpoints.consecutive_failure_count, 0)

        responses[queue_url(PRIMARY)] = make_response(500)
        self.assertIsNone(monitor.get_queue_snapshot())
        self.assertEqual(monitor.endpoints.consecutive_failure_count, 1)

    def test_close_closes_session(self):
        monitor, session = self.make_monitor({})
        monitor.close()
        session.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
