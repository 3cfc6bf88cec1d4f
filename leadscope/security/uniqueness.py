"""Organisation-wide duplicate detection for lead contact fields.

The check is deliberately not branch scoped. Candidates come from a coarse
containment query on the serialized payload; each candidate's decoded payload
is then compared exactly. Undecodable payloads are skipped. A store-level
unique index remains the authoritative guard against concurrent creates.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from leadscope.core.config import get_settings
from leadscope.metrics import observe_duplicate_rejection
from leadscope.security.errors import DuplicateLeadError, ValidationError


logger = logging.getLogger("leadscope.security.uniqueness")


@dataclass(frozen=True, slots=True)
class PayloadCandidate:
    id: str
    payload: str | Mapping[str, Any] | None
    branch_id: str | None = None


class CandidateSource(Protocol):
    def find_payload_candidates(self, field: str, value: str) -> Iterable[PayloadCandidate]:
        ...


def decode_payload(raw: str | Mapping[str, Any] | None) -> dict[str, Any] | None:
    if isinstance(raw, Mapping):
        return dict(raw)
    if not isinstance(raw, str):
        return None
    try:
        decoded = json.loads(raw)
    except ValueError:
        return None
    return decoded if isinstance(decoded, dict) else None


class UniquenessChecker:
    def __init__(self, source: CandidateSource, fields: Sequence[str] | None = None) -> None:
        self._source = source
        self._fields = tuple(fields) if fields is not None else tuple(get_settings().unique_lead_fields)

    @property
    def fields(self) -> tuple[str, ...]:
        return self._fields

    def check_unique(self, field: str, value: str, exclude_id: str | None = None) -> None:
        if field not in self._fields:
            raise ValidationError(f"Field '{field}' is not checked for uniqueness")
        if not value:
            return

        for candidate in self._source.find_payload_candidates(field, value):
            if exclude_id is not None and candidate.id == exclude_id:
                continue
            payload = decode_payload(candidate.payload)
            if payload is None:
                logger.warning("lead.payload_undecodable", extra={"lead_id": candidate.id, "field": field})
                continue
            if payload.get(field) == value:
                observe_duplicate_rejection(field)
                raise DuplicateLeadError(field, candidate.id, candidate.branch_id)

    def validate_payload(self, payload: Mapping[str, Any], exclude_id: str | None = None) -> None:
        """Check every configured field present in ``payload``, in configured order."""

        for field in self._fields:
            value = payload.get(field)
            if isinstance(value, str) and value:
                self.check_unique(field, value, exclude_id=exclude_id)
