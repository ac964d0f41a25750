import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence, Tuple, Union
from urllib.parse import quote

import httpx

from postpilot.clock import utcnow
from postpilot.services.linkedin_api import (
    error_message,
    http_client,
    is_revoked,
    log_request_id,
    parse_json_safely,
    restli_headers,
)

logger = logging.getLogger(__name__)

SOCIAL_ACTIONS_URL = "https://api.linkedin.com/v2/socialActions"
RATE_LIMIT_BACKOFF = timedelta(hours=1)
FORBIDDEN_BACKOFF = timedelta(hours=6)

Number = Union[int, float]

# socialActions payloads vary by API version; first non-null path wins
FIELD_PATHS: Dict[str, Sequence[Tuple[str, ...]]] = {
    "likes": (("likesSummary", "totalCount"), ("likesSummary", "count"), ("likes",)),
    "comments": (
        ("commentsSummary", "totalCount"),
        ("commentsSummary", "count"),
        ("commentsSummary", "aggregatedTotalComments"),
        ("comments",),
    ),
    "shares": (
        ("shareSummary", "shareCount"),
        ("shareSummary", "totalCount"),
        ("sharesSummary", "totalCount"),
        ("shares",),
    ),
    "impressions": (("impressionCount",), ("impressions",)),
    "clicks": (("clickCount",), ("clicks",)),
}


@dataclass
class PostAnalytics:
    impressions: Optional[Number] = None
    clicks: Optional[Number] = None
    likes: Optional[Number] = None
    comments: Optional[Number] = None
    shares: Optional[Number] = None
    engagement: Optional[Number] = None
    engagement_rate: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AnalyticsResult:
    analytics: Optional[PostAnalytics] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    revoked: bool = False
    backoff_until: Optional[datetime] = None
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.analytics is not None


def normalize_post_urn(post_id: str) -> str:
    if not post_id or post_id.startswith("urn:"):
        return post_id
    return f"urn:li:share:{post_id}"


def to_number(value: Any) -> Optional[Number]:
    """Finite number from an int/float/numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _lookup(data: Dict[str, Any], path: Tuple[str, ...]) -> Any:
    node: Any = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def extract_metric(data: Any, name: str) -> Optional[Number]:
    if not isinstance(data, dict):
        return None
    for path in FIELD_PATHS[name]:
        value = _lookup(data, path)
        if value is not None:
            return to_number(value)
    return None


def compute_analytics(data: Any) -> PostAnalytics:
    metrics = {name: extract_metric(data, name) for name in FIELD_PATHS}
    counted = [metrics[k] for k in ("likes", "comments", "shares", "clicks") if metrics[k] is not None]
    engagement = sum(counted) if counted else None
    impressions = metrics["impressions"]
    engagement_rate = None
    if engagement is not None and impressions is not None and impressions > 0:
        engagement_rate = round(engagement / impressions, 4)
    return PostAnalytics(engagement=engagement, engagement_rate=engagement_rate, **metrics)


def fetch_post_analytics(
    access_token: str,
    post_urn: str,
    client: Optional[httpx.Client] = None,
    now: Optional[datetime] = None,
) -> AnalyticsResult:
    url = f"{SOCIAL_ACTIONS_URL}/{quote(post_urn, safe='')}"
    with http_client(client) as c:
        resp = c.get(url, headers=restli_headers(access_token))
    data = parse_json_safely(resp)

    if not resp.is_success:
        log_request_id(resp)
        now = now or utcnow()
        revoked = is_revoked(data)
        backoff_until = None
        error_code = "revoked" if revoked else "provider_error"
        if resp.status_code == 429:
            backoff_until = now + RATE_LIMIT_BACKOFF
            error_code = "rate_limited"
        elif resp.status_code == 403:
            backoff_until = now + FORBIDDEN_BACKOFF
            error_code = "revoked" if revoked else "forbidden"
        logger.warning("LinkedIn analytics for %s failed: status=%s revoked=%s", post_urn, resp.status_code, revoked)
        return AnalyticsResult(
            error=error_message(data, resp, "Failed to fetch LinkedIn analytics"),
            error_code=error_code,
            revoked=revoked,
            backoff_until=backoff_until,
            status=resp.status_code,
        )

    return AnalyticsResult(analytics=compute_analytics(data), status=resp.status_code)
