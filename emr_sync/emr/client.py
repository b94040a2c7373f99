from __future__ import annotations

import logging
from datetime import date

import requests

from emr_sync.config import settings

logger = logging.getLogger(__name__)


class EmrFetchError(Exception):
    """The EMR source could not return a bundle list."""


class HttpEmrClient:
    """
    Client for the hospital's EMR data-warehouse API.

    ``GET {base_url}/admissions?startDate=YYYY-MM-DD&endDate=YYYY-MM-DD`` returns
    a JSON list of per-admission bundles (or ``{"items": [...]}``).
    No retries here: the batch driver owns retry policy.
    """

    def __init__(self, base_url: str, timeout: float | None = None, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.EMR_REQUEST_TIMEOUT_SECS
        self.session = session or requests.Session()

    def fetch(self, start_date: date, end_date: date) -> list[dict]:
        url = f"{self.base_url}/admissions"
        params = {"startDate": start_date.isoformat(), "endDate": end_date.isoformat()}
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as exc:
            raise EmrFetchError(f"EMR request failed: {exc}") from exc
        except ValueError as exc:
            raise EmrFetchError(f"EMR returned invalid JSON: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("items")
        if not isinstance(payload, list):
            raise EmrFetchError("EMR response is not a list of admission bundles")

        logger.info("Fetched %d admission bundles for %s..%s", len(payload), start_date, end_date)
        return payload


def build_emr_client():
    """HTTP client when EMR_BASE_URL is configured, otherwise the mock source."""
    if settings.EMR_BASE_URL:
        return HttpEmrClient(settings.EMR_BASE_URL)

    from emr_sync.emr.mock import MockEmrClient

    logger.warning("EMR_BASE_URL not set – using the mock EMR source")
    return MockEmrClient()
