import json
import logging

from .models import ConversionLog

logger = logging.getLogger(__name__)


def record(type_: str, name: str, details) -> ConversionLog:
    """
    Write an operator log entry and mirror it to the application log.

    Entries are a side channel for operators: the engine never reads them back.
    """
    other = json.dumps(details, default=str)
    entry = ConversionLog.objects.create(type=type_, name=name, other=other)
    if type_ == ConversionLog.Type.ERROR:
        logger.error("conversion_log name=%s other=%s", name, other)
    else:
        logger.info("conversion_log name=%s other=%s", name, other)
    return entry


def info(name: str, details) -> ConversionLog:
    return record(ConversionLog.Type.INFO, name, details)


def error(name: str, details) -> ConversionLog:
    return record(ConversionLog.Type.ERROR, name, details)
