"""
Conditional GET support.

Validators are derived from the cache key only, so the 304 path and the 200
path always advertise the same ETag/Last-Modified for the same state.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from .keys import CacheKey


class Freshness(Enum):
    """Outcome of evaluating request validators."""
    FRESH = "fresh"                # render and send 200
    NOT_MODIFIED = "not_modified"  # send 304 without a body


@dataclass(frozen=True)
class ConditionalValidators:
    strong_token: Optional[str] = None
    weak_timestamp: Optional[datetime] = None

    @property
    def etag(self) -> Optional[str]:
        if self.strong_token is None:
            return None
        return f'"{self.strong_token}"'


@dataclass(frozen=True)
class RequestValidators:
    """Validators supplied by the client."""

    if_none_match: Tuple[str, ...] = ()
    if_modified_since: Optional[datetime] = None

    @property
    def is_conditional(self) -> bool:
        return bool(self.if_none_match) or self.if_modified_since is not None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "RequestValidators":
        lowered = {str(name).lower(): value for name, value in headers.items()}
        return cls(
            if_none_match=parse_entity_tags(lowered.get("if-none-match")),
            if_modified_since=parse_http_date(lowered.get("if-modified-since")),
        )


@dataclass(frozen=True)
class CachePolicy:
    """Cache-Control policy attached to conditional responses."""

    public: bool = False
    max_age: int = 0
    must_revalidate: bool = True

    def header_value(self) -> str:
        parts = ["public" if self.public else "private", f"max-age={max(0, int(self.max_age))}"]
        if self.must_revalidate:
            parts.append("must-revalidate")
        return ", ".join(parts)


@dataclass(frozen=True)
class ConditionalResult:
    freshness: Freshness
    validators: ConditionalValidators
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def not_modified(self) -> bool:
        return self.freshness is Freshness.NOT_MODIFIED

    @property
    def status_code(self) -> int:
        return 304 if self.not_modified else 200


class ConditionalResponseEvaluator:
    """Computes validators and decides between 200 and 304."""

    def __init__(self, default_policy: Optional[CachePolicy] = None, metrics=None):
        self.default_policy = default_policy or CachePolicy()
        self.metrics = metrics

    def validators_for(self, key: CacheKey) -> ConditionalValidators:
        token = hashlib.md5(str(key).encode("utf-8")).hexdigest()
        modified = key.last_modified()
        if modified is not None:
            modified = modified.replace(microsecond=0)
        return ConditionalValidators(strong_token=token, weak_timestamp=modified)

    def evaluate(self, validators: ConditionalValidators, request: RequestValidators) -> Freshness:
        """
        Every validator dimension the request and the server both carry must
        match, and at least one dimension must have been compared.
        """
        checked = False

        if request.if_none_match and validators.strong_token is not None:
            checked = True
            if not self._etag_matches(validators.strong_token, request.if_none_match):
                return Freshness.FRESH

        if request.if_modified_since is not None and validators.weak_timestamp is not None:
            checked = True
            if validators.weak_timestamp > _as_utc(request.if_modified_since):
                return Freshness.FRESH

        return Freshness.NOT_MODIFIED if checked else Freshness.FRESH

    def response_headers(
        self,
        validators: ConditionalValidators,
        policy: Optional[CachePolicy] = None,
    ) -> Dict[str, str]:
        headers = {"Cache-Control": (policy or self.default_policy).header_value()}
        if validators.etag is not None:
            headers["ETag"] = validators.etag
        if validators.weak_timestamp is not None:
            headers["Last-Modified"] = format_http_date(validators.weak_timestamp)
        return headers

    def conditional(
        self,
        validators: ConditionalValidators,
        request: RequestValidators,
        policy: Optional[CachePolicy] = None,
    ) -> ConditionalResult:
        freshness = self.evaluate(validators, request)
        if self.metrics:
            self.metrics.increment_counter("conditional_responses_total", result=freshness.value)
        return ConditionalResult(
            freshness=freshness,
            validators=validators,
            headers=self.response_headers(validators, policy),
        )

    @staticmethod
    def _etag_matches(token: str, candidates: Tuple[str, ...]) -> bool:
        if "*" in candidates:
            return True
        return token in candidates


def parse_entity_tags(value: Optional[str]) -> Tuple[str, ...]:
    """Split an If-None-Match header into bare opaque tags (W/ prefixes dropped)."""
    if not value:
        return ()
    tags = []
    for part in value.split(","):
        tag = part.strip()
        if not tag:
            continue
        if tag == "*":
            tags.append("*")
            continue
        if tag[:2] in ("W/", "w/"):
            tag = tag[2:]
        tags.append(tag.strip().strip('"'))
    return tuple(tags)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    return _as_utc(parsed)


def format_http_date(value: datetime) -> str:
    return format_datetime(_as_utc(value), usegmt=True)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
