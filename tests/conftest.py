import datetime as dt
from unittest.mock import MagicMock

import pytest

import handler


@pytest.fixture
def ce_client():
    """Cost Explorer client stand-in; responses set per test."""
    client = MagicMock()
    client.get_reservation_utilization = MagicMock(return_value={"UtilizationsByTime": []})
    client.get_reservation_coverage = MagicMock(return_value={"CoveragesByTime": []})
    return client


@pytest.fixture
def cw_client():
    client = MagicMock()
    client.put_metric_data = MagicMock(return_value={"ResponseMetadata": {"HTTPStatusCode": 200}})
    return client


@pytest.fixture
def clients(monkeypatch, ce_client, cw_client):
    monkeypatch.setattr(handler, "get_clients", lambda: (ce_client, cw_client))
    monkeypatch.setattr(handler, "today_utc", lambda: dt.date(2024, 3, 15))
    return ce_client, cw_client


def client_error(operation):
    return handler.ClientError(
        {"Error": {"Code": "AccessDeniedException", "Message": "not authorized"}},
        operation,
    )


def utilization_response(*percentages, token=None):
    resp = {"UtilizationsByTime": [
        {"TimePeriod": {"Start": "2024-03-08", "End": "2024-03-15"},
         "Total": {"UtilizationPercentage": p}}
        for p in percentages
    ]}
    if token:
        resp["NextPageToken"] = token
    return resp


def coverage_response(*percentages):
    return {"CoveragesByTime": [
        {"TimePeriod": {"Start": "2024-03-08", "End": "2024-03-15"},
         "Total": {"CoverageHours": {"CoverageHoursPercentage": p}}}
        for p in percentages
    ]}
