"""
Input validation for the sync engine.

- JSON-schema checks for bundles coming from the EMR (collects every error)
- Policy checks for the manual date range and the batch configuration;
  these run before the import lock is ever touched
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any

import jsonschema

from emr_sync.schemas.emr import EMR_BUNDLE_SCHEMA, ISO_DATE
from emr_sync.sync.types import DateRange, InvalidInputError

MAX_DATE_RANGE_DAYS = 7
DAYS_BACK_RANGE = (1, MAX_DATE_RANGE_DAYS)
MAX_RETRIES_RANGE = (0, 10)

_bundle_validator = jsonschema.Draft7Validator(EMR_BUNDLE_SCHEMA)


def validate_bundle(bundle: Any) -> list[str]:
    """Errors for one EMR bundle, each prefixed with the offending JSON path."""
    errors = []
    for error in _bundle_validator.iter_errors(bundle):
        path = "/".join(str(part) for part in error.absolute_path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors


def _parse_iso_date(value: Any, field: str) -> date:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not re.fullmatch(ISO_DATE, value, re.ASCII):
        raise InvalidInputError({field: "Dates must use the YYYY-MM-DD format"})
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidInputError({field: "Dates must use the YYYY-MM-DD format"})


def validate_date_range(start_date: Any, end_date: Any) -> DateRange:
    """
    Manual import window: ``end >= start`` and ``end - start < 7 days``.

    Raises InvalidInputError with a field -> message mapping.
    """
    if not start_date:
        raise InvalidInputError({"startDate": "Start date is required"})
    if not end_date:
        raise InvalidInputError({"endDate": "End date is required"})

    start = _parse_iso_date(start_date, "startDate")
    end = _parse_iso_date(end_date, "endDate")

    if end < start:
        raise InvalidInputError({"endDate": "End date must be on or after the start date"})
    if (end - start).days >= MAX_DATE_RANGE_DAYS:
        raise InvalidInputError(
            {"endDate": f"The range may span at most {MAX_DATE_RANGE_DAYS} days"}
        )
    return DateRange(start, end)


def _bounded_int(value: Any, field: str, bounds: tuple[int, int]) -> int:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError({field: "Must be an integer"})
    if not low <= value <= high:
        raise InvalidInputError({field: f"Must be between {low} and {high}"})
    return value


def validate_batch_config(days_back: Any, max_retries: Any) -> tuple[int, int]:
    """Batch settings: ``days_back`` in [1, 7], ``max_retries`` in [0, 10]."""
    return (
        _bounded_int(days_back, "daysBack", DAYS_BACK_RANGE),
        _bounded_int(max_retries, "maxRetries", MAX_RETRIES_RANGE),
    )
