# handler.py
"""
Reserved Instance utilization / coverage -> CloudWatch custom metric – Lambda

- Event: {"namespace": "...", "metric_name": "...",
          "region"?, "service"?, "linked_account"?, "granularity"?, "metric_type"?}
- metric_type: "utilization" (default) | "coverage"
- Window: trailing 7 days ending today (UTC), dates as YYYY-MM-DD
- Reads the percentage of the LAST time bucket returned by Cost Explorer
- Publishes exactly one datapoint (or none when Cost Explorer has no buckets)
- Cost Explorer is always called in us-east-1; CloudWatch follows the Lambda's region

IAM needed: ce:GetReservationUtilization, ce:GetReservationCoverage, cloudwatch:PutMetricData
"""

import logging
import math
import os
import re
import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

# =========================
# ====== CONFIG (edit) =====
# =========================

# Cost Explorer is only served from https://ce.us-east-1.amazonaws.com/
COST_EXPLORER_REGION = os.environ.get("COST_EXPLORER_REGION", "us-east-1")

# None -> boto3 resolves AWS_REGION of the execution environment
CLOUDWATCH_REGION: Optional[str] = os.environ.get("CLOUDWATCH_REGION") or None

LOOKBACK_DAYS = 7
DATE_FORMAT = "%Y-%m-%d"

# Cost Explorer percentages are plain decimal strings, e.g. "42.5"
PERCENTAGE_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")

METRIC_UTILIZATION = "utilization"
METRIC_COVERAGE = "coverage"
DEFAULT_METRIC_TYPE = METRIC_UTILIZATION

# (event field, Cost Explorer dimension key, CloudWatch dimension name), in this order
IDENTITY_FIELDS: List[Tuple[str, str, str]] = [
    ("region", "REGION", "Region"),
    ("service", "SERVICE", "Service"),
    ("linked_account", "LINKED_ACCOUNT", "LinkedAccount"),
]

# ============== LOGGING ==============
# request/response trace is emitted at INFO; LOG_LEVEL=WARNING silences it
logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO"))

def log(msg: Any) -> None:
    logger.info("%s", msg)

# =========================
# ====== ERRORS ===========
# =========================

class ReservationMetricError(Exception):
    """Base class for every failure that aborts an invocation."""

class InvalidEventError(ReservationMetricError):
    pass

class UnsupportedMetricTypeError(ReservationMetricError):
    def __init__(self, metric_type: str):
        super().__init__(f"Unsupported Cost Explorer metrics type: {metric_type}")
        self.metric_type = metric_type

class UpstreamQueryError(ReservationMetricError):
    pass

class MalformedResponseError(ReservationMetricError):
    def __init__(self, path: str, reason: str):
        super().__init__(f"Malformed Cost Explorer response at {path}: {reason}")
        self.path = path
        self.reason = reason

class PublishError(ReservationMetricError):
    pass

# =========================
# ====== IMPLEMENTATION ===
# =========================

@dataclass(frozen=True)
class Event:
    namespace: str
    metric_name: str
    region: Optional[str] = None
    service: Optional[str] = None
    linked_account: Optional[str] = None
    granularity: Optional[str] = None
    metric_type: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> "Event":
        if not isinstance(payload, dict):
            raise InvalidEventError(f"Event must be a JSON object, got {type(payload).__name__}")
        for key in ("namespace", "metric_name"):
            if not payload.get(key):
                raise InvalidEventError(f"Event is missing required field '{key}'")
        # ce_metric_type is the historical key name
        metric_type = payload.get("metric_type")
        if metric_type is None:
            metric_type = payload.get("ce_metric_type")
        return cls(
            namespace=payload["namespace"],
            metric_name=payload["metric_name"],
            region=payload.get("region"),
            service=payload.get("service"),
            linked_account=payload.get("linked_account"),
            granularity=payload.get("granularity"),
            metric_type=metric_type,
        )

    def identity(self) -> List[Tuple[str, str, str]]:
        """(ce_key, cw_name, value) for every populated identity field, in declared order."""
        out = []
        for attr, ce_key, cw_name in IDENTITY_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                out.append((ce_key, cw_name, value))
        return out

@dataclass
class FetchResult:
    metric_type: str
    percentage: Optional[float]

def today_utc() -> dt.date:
    return dt.datetime.now(dt.timezone.utc).date()

def time_window(today: Optional[dt.date] = None) -> Dict[str, str]:
    end = today or today_utc()
    start = end - dt.timedelta(days=LOOKBACK_DAYS)
    return {"Start": start.strftime(DATE_FORMAT), "End": end.strftime(DATE_FORMAT)}

def get_clients():
    """Fresh clients per invocation: (ce pinned to us-east-1, cloudwatch in the default region)."""
    ce = boto3.client("ce", region_name=COST_EXPLORER_REGION)
    cw = boto3.client("cloudwatch", region_name=CLOUDWATCH_REGION)
    return ce, cw

# -------------- Filter builder ----------------

def build_filter(event: Event) -> Dict[str, List[dict]]:
    clauses = [{"Dimensions": {"Key": ce_key, "Values": [value]}}
               for ce_key, _, value in event.identity()]
    return {"And": clauses}

def _filter_param(expression: Dict[str, List[dict]]) -> Optional[dict]:
    # And needs two or more operands on the wire; both rewrites below match the same set
    clauses = expression["And"]
    if not clauses: return None
    if len(clauses) == 1: return clauses[0]
    return expression

def build_query(event: Event, expression: Dict[str, List[dict]],
                today: Optional[dt.date] = None) -> Dict[str, Any]:
    args: Dict[str, Any] = {"TimePeriod": time_window(today)}
    flt = _filter_param(expression)
    if flt is not None: args["Filter"] = flt
    if event.granularity: args["Granularity"] = event.granularity
    return args

# -------------- Metric fetcher ----------------

# metric_type -> (client method, bucket list key, path to the percentage inside a bucket)
QUERIES: Dict[str, Tuple[str, str, List[str]]] = {
    METRIC_UTILIZATION: ("get_reservation_utilization", "UtilizationsByTime",
                         ["Total", "UtilizationPercentage"]),
    METRIC_COVERAGE: ("get_reservation_coverage", "CoveragesByTime",
                      ["Total", "CoverageHours", "CoverageHoursPercentage"]),
}

def resolve_metric_type(event: Event) -> str:
    metric_type = event.metric_type if event.metric_type is not None else DEFAULT_METRIC_TYPE
    if metric_type not in QUERIES:
        raise UnsupportedMetricTypeError(metric_type)
    return metric_type

def query_buckets(ce, method: str, buckets_key: str, args: Dict[str, Any]) -> List[dict]:
    """Calls the Cost Explorer method, following NextPageToken; returns the last non-empty page."""
    last_page: List[dict] = []
    next_token = None
    while True:
        call_args = dict(args)
        if next_token: call_args["NextPageToken"] = next_token
        log("Make a request for Cost Explorer")
        log(call_args)
        try:
            resp = getattr(ce, method)(**call_args)
        except (ClientError, BotoCoreError) as e:
            raise UpstreamQueryError(f"Cost Explorer {method} failed: {e}") from e
        log(resp)
        page = resp.get(buckets_key) or []
        if not isinstance(page, list):
            raise MalformedResponseError(buckets_key, f"expected a list, got {type(page).__name__}")
        if page: last_page = page
        next_token = resp.get("NextPageToken")
        if not next_token: break
    return last_page

def extract_percentage(bucket: Any, buckets_key: str, path: List[str]) -> float:
    node = bucket
    where = f"{buckets_key}[-1]"
    for key in path:
        if not isinstance(node, dict):
            raise MalformedResponseError(where, f"expected an object, got {type(node).__name__}")
        where = f"{where}.{key}"
        if node.get(key) is None:
            raise MalformedResponseError(where, "field is missing")
        node = node[key]
    if not isinstance(node, str) or not PERCENTAGE_RE.match(node.strip()):
        raise MalformedResponseError(where, f"not a decimal string: {node!r}")
    value = float(node)
    if not math.isfinite(value):
        raise MalformedResponseError(where, f"not a finite number: {node!r}")
    return value

def fetch_percentage(event: Event, ce, today: Optional[dt.date] = None) -> FetchResult:
    metric_type = resolve_metric_type(event)
    method, buckets_key, path = QUERIES[metric_type]
    args = build_query(event, build_filter(event), today)
    buckets = query_buckets(ce, method, buckets_key, args)
    if not buckets:
        return FetchResult(metric_type, None)
    return FetchResult(metric_type, extract_percentage(buckets[-1], buckets_key, path))

# -------------- Metric publisher ----------------

def build_dimensions(event: Event) -> List[Dict[str, str]]:
    return [{"Name": cw_name, "Value": value} for _, cw_name, value in event.identity()]

def put_metric_data(cw, percentage: float, event: Event) -> dict:
    request = {
        "Namespace": event.namespace,
        "MetricData": [{
            "MetricName": event.metric_name,
            "Value": percentage,
            "Dimensions": build_dimensions(event),
        }],
    }
    log("Make a request for CloudWatch Metrics")
    log(request)
    try:
        resp = cw.put_metric_data(**request)
    except (ClientError, BotoCoreError) as e:
        raise PublishError(f"CloudWatch put_metric_data failed: {e}") from e
    log(resp)
    return resp

# -------------- Lambda entry ----------------

def lambda_handler(event, context):
    try:
        ev = Event.from_dict(event)
        # fail on a bad metric_type before any client exists
        resolve_metric_type(ev)
        ce, cw = get_clients()
        result = fetch_percentage(ev, ce, today_utc())
        if result.percentage is None:
            logger.info("There are no metrics (%s)", result.metric_type)
            return None
        put_metric_data(cw, result.percentage, ev)
        return None
    except Exception as e:
        logger.error("[lambda_handler] %s: %s", type(e).__name__, e)
        raise
