import logging
from typing import Optional
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth

from solace_scaler.observations import MetricSnapshot

SEMP_QUEUE_SELECT = 'msgs.count,msgVpnName,queueName,msgSpoolUsage,averageRxMsgRate,averageTxMsgRate'
SEMP_QUEUE_URL_FORMAT = '{url}/SEMP/v2/monitor/msgVpns/{vpn}/queues/{queue}?select=' + SEMP_QUEUE_SELECT
SEMP_VPN_STATE_URL_FORMAT = '{url}/SEMP/v2/monitor/msgVpns/{vpn}?select=state'
SEMP_VPN_STATE_UP = 'up'

# SEMP calls share the polling interval with every other scaled service
CONNECT_TIMEOUT = 2.5
READ_TIMEOUT = 10


def format_queue_monitor_url(broker_semp_url: str, msg_vpn_name: str, queue_name: str) -> str:
    return SEMP_QUEUE_URL_FORMAT.format(url=broker_semp_url, vpn=quote(msg_vpn_name, safe=''),
                                        queue=quote(queue_name, safe=''))


def format_vpn_state_url(broker_semp_url: str, msg_vpn_name: str) -> str:
    return SEMP_VPN_STATE_URL_FORMAT.format(url=broker_semp_url, vpn=quote(msg_vpn_name, safe=''))


def get_semp_response(http_session, url, semp_config, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT)) -> Optional[dict]:
    """
    Execute a SEMPv2 GET request with basic authentication.

    Args:
        http_session: requests.Session used for the call
        url: Fully formatted SEMP URL
        semp_config: SempConfig holding the credentials
        timeout: (connect, read) timeout in seconds

    Returns:
        dict: Parsed JSON body, or None when the call failed or returned a status outside [200, 204]
    """
    auth = None
    if semp_config.username is not None and semp_config.password is not None:
        auth = HTTPBasicAuth(semp_config.username, semp_config.password)

    try:
        response = http_session.get(url, auth=auth, timeout=timeout,
                                    headers={'Content-Type': 'application/json'})
    except requests.RequestException as e:
        logging.error(f"SempUrl={semp_config.broker_semp_url} -- Call to SEMP failed: {e}")
        return None

    if response.status_code < 200 or response.status_code > 204:
        logging.error(f"SempUrl={semp_config.broker_semp_url} -- Call to SEMP responseCode = {response.status_code}")
        logging.error(f"SempUrl={semp_config.broker_semp_url} -- SEMP Response Message: {response.reason}")
        return None

    try:
        return response.json()
    except ValueError as e:
        logging.error(f"SempUrl={semp_config.broker_semp_url} -- Could not parse SEMP response: {e}")
        return None


def get_vpn_state(http_session, semp_config, msg_vpn_name) -> Optional[str]:
    """Return the state of the message VPN ('up', 'down', ...) or None if it could not be read."""
    body = get_semp_response(http_session, format_vpn_state_url(semp_config.broker_semp_url, msg_vpn_name),
                             semp_config)
    if body is None:
        return None
    return (body.get('data') or {}).get('state')


def is_vpn_up(http_session, semp_config, msg_vpn_name) -> bool:
    return get_vpn_state(http_session, semp_config, msg_vpn_name) == SEMP_VPN_STATE_UP


def get_queue_metrics(http_session, semp_config, msg_vpn_name, queue_name) -> Optional[MetricSnapshot]:
    """
    Get the current metrics for a Solace queue from the SEMPv2 monitor API.

    Returns:
        MetricSnapshot: Queue metrics, or None if the call failed. Individual values are
        None when missing from the response.
    """
    body = get_semp_response(http_session,
                             format_queue_monitor_url(semp_config.broker_semp_url, msg_vpn_name, queue_name),
                             semp_config)
    if body is None:
        return None
    return queue_metrics_from_response(body)


def queue_metrics_from_response(body: dict) -> MetricSnapshot:
    data = body.get('data') or {}
    msgs = (body.get('collections') or {}).get('msgs') or {}
    return MetricSnapshot(
        message_count=_as_int(msgs.get('count')),
        message_receive_rate=_as_int(data.get('averageRxMsgRate')),
        message_spool_usage=_as_int(data.get('msgSpoolUsage'))
    )


def _as_int(value):
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
