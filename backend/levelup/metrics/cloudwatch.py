"""CloudWatch custom metrics for marketplace business events.

Fire-and-forget: failures are logged as warnings via structlog and never
reach the caller. boto3 is synchronous, so put_metric_data runs on a small
thread pool instead of the event loop.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import structlog

from levelup.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put_business_event(event_name: str, dimensions: dict[str, str], value: float) -> None:
    """Synchronous put_metric_data for business events. Runs in thread pool."""
    metric_dimensions = [{"Name": "Event", "Value": event_name}]
    metric_dimensions.extend({"Name": k, "Value": v} for k, v in dimensions.items() if v)
    try:
        _get_client().put_metric_data(
            Namespace=get_settings().metrics_namespace,
            MetricData=[{
                "MetricName": "EventCount",
                "Dimensions": metric_dimensions,
                "Value": value,
                "Unit": "Count",
                "Timestamp": datetime.now(timezone.utc),
            }],
        )
    except Exception as e:
        logger.warning("business_event_emit_failed", error=str(e), event=event_name)


async def emit_business_event(event_name: str, value: float = 1.0, **dimensions: str) -> None:
    """Emit a business event metric. Non-blocking, fire-and-forget.

    Example: ``await emit_business_event("purchase_completed", license="Exclusive")``
    """
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_business_event, event_name, dimensions, value)
