import os
import re
import json
import time
import logging

# Standard LogRecord attributes, everything else on a record came in through `extra`
_RECORD_ATTRIBUTES = {
    'args', 'asctime', 'created', 'exc_info', 'exc_text', 'filename',
    'funcName', 'id', 'levelname', 'levelno', 'lineno', 'module',
    'msecs', 'message', 'msg', 'name', 'pathname', 'process',
    'processName', 'relativeCreated', 'stack_info', 'thread', 'threadName',
    'taskName'
}

_DESIGNATION_PATTERN = re.compile(r'^Service=(\S+) -- ')


def setup_logging(level=None):
    """
    Set up logging for the scaler process.

    Plain text logs by default; JSON logs when running inside AWS (ECS tasks and Lambda
    set AWS_EXECUTION_ENV) so that CloudWatch Logs Insights can query the fields.

    Args:
        level: Optional log level override (default: uses LOG_LEVEL env var or INFO)
    """
    if level is None:
        level = os.environ.get('LOG_LEVEL', 'INFO').upper()

    numeric_level = getattr(logging, level, logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s [%(levelname)s] %(threadName)s %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if os.environ.get('AWS_EXECUTION_ENV') is not None:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers:
            handler.setFormatter(JsonFormatter())

    # Silence noisy loggers
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    logging.debug("Logging initialized")


def service_designation(service_config):
    """Return the `cluster/service` designation used to tag log entries for a scaled service."""
    return f"{service_config.ecs_cluster}/{service_config.ecs_service}"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per log line, for CloudWatch Logs Insights.

    Timestamps are UTC. A leading `Service=<cluster>/<service> -- ` designation is lifted
    into its own "service" field so entries can be filtered per scaled service; values
    passed through `extra` are nested under "context".
    """

    converter = time.gmtime

    def format(self, record):
        message = record.getMessage()
        entry = {
            'ts': f"{self.formatTime(record, '%Y-%m-%dT%H:%M:%S')}.{int(record.msecs):03d}Z",
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'source': f"{record.module}:{record.lineno}",
        }

        match = _DESIGNATION_PATTERN.match(message)
        if match:
            entry['service'] = match.group(1)
            message = message[match.end():]
        entry['msg'] = message

        context = {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRIBUTES}
        if context:
            entry['context'] = context
        if record.exc_info:
            entry['exc'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)
