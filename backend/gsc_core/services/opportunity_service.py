"""
Opportunity Service — classify, score and trend-tag Search Analytics keywords.

Two snapshots of (query, page) rows are compared: the long window decides
the categories and the score, the short window decides the trend.
"""

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, field, asdict
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from gsc_core.config import get_settings
from gsc_core.database import async_session
from gsc_core.services.provider_client import SearchConsoleClient
from gsc_core.services.provider_models import AnalyticsRow
from gsc_core.services.token_service import CredentialVault, get_credential_vault, load_site
from gsc_core.utils import normalize_url, utc_today

logger = logging.getLogger(__name__)

CATEGORY_QUICK_WIN = "quick_win"
CATEGORY_LOW_CTR = "low_ctr"
CATEGORY_NO_CLICKS = "no_clicks"

TREND_NEW = "new"
TREND_IMPROVING = "improving"
TREND_DECLINING = "declining"
TREND_STABLE = "stable"

QUICK_WIN_MIN_POSITION = 4
QUICK_WIN_MAX_POSITION = 20
QUICK_WIN_MIN_IMPRESSIONS = 50
LOW_CTR_MAX_POSITION = 10

# Search Analytics lags behind by roughly three days
DATA_LAG_DAYS = 3
SHORT_WINDOW_DAYS = 7
DATE_RANGES = {
    "last_7_days": 7,
    "last_28_days": 28,
    "last_90_days": 90,
}
DEFAULT_DATE_RANGE = "last_28_days"

# Average organic CTR by rank, positions 1-10
EXPECTED_CTR = (0.28, 0.15, 0.11, 0.08, 0.07, 0.05, 0.04, 0.035, 0.03, 0.025)

# Impressions at which the volume term saturates
IMPRESSIONS_SATURATION = 10_000
SCORE_WEIGHTS = {"impressions": 0.5, "position": 0.3, "ctr_gap": 0.2}


@dataclass
class KeywordRow:
    query: str
    page: str
    clicks: int = 0
    impressions: int = 0
    ctr: float = 0.0
    position: float = 0.0

    @property
    def key(self) -> tuple[str, str]:
        return self.query.strip().lower(), normalize_url(self.page)

    @classmethod
    def from_analytics(cls, row: AnalyticsRow) -> Optional["KeywordRow"]:
        if len(row.keys) < 2:
            return None
        return cls(
            query=row.keys[0],
            page=row.keys[1],
            clicks=int(row.clicks),
            impressions=int(row.impressions),
            ctr=row.ctr,
            position=row.position,
        )


@dataclass
class Opportunity:
    query: str
    page: str
    clicks: int
    impressions: int
    ctr: float
    position: float
    category: str
    score: float
    score_label: str
    trend: str
    trend_delta: Optional[float] = None
    recommendations: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ── Classification ────────────────────────────────────────────────────

def expected_ctr_for(position: float) -> float:
    """
    Reference CTR for a rank. Linear between whole ranks, 1/position decay
    past rank 10, never increasing.
    """
    if position <= 1:
        return EXPECTED_CTR[0]
    if position >= len(EXPECTED_CTR):
        return EXPECTED_CTR[-1] * len(EXPECTED_CTR) / position
    lower = int(math.floor(position))
    frac = position - lower
    a = EXPECTED_CTR[lower - 1]
    b = EXPECTED_CTR[lower]
    return a + (b - a) * frac


def classify(row: KeywordRow) -> list[str]:
    categories = []
    if (
        QUICK_WIN_MIN_POSITION <= row.position <= QUICK_WIN_MAX_POSITION
        and row.impressions >= QUICK_WIN_MIN_IMPRESSIONS
    ):
        categories.append(CATEGORY_QUICK_WIN)
    if row.position <= LOW_CTR_MAX_POSITION and row.ctr < expected_ctr_for(row.position):
        categories.append(CATEGORY_LOW_CTR)
    if row.impressions > 0 and row.clicks == 0:
        categories.append(CATEGORY_NO_CLICKS)
    return categories


# ── Scoring ───────────────────────────────────────────────────────────

def compute_score(impressions: float, position: float, ctr: float) -> float:
    """
    0-100. Each term is monotone: volume grows with impressions, the rank
    and CTR-gap terms shrink as position grows.
    """
    volume = min(1.0, math.log1p(max(impressions, 0)) / math.log1p(IMPRESSIONS_SATURATION))
    rank = 1.0 / max(position, 1.0)
    gap = max(0.0, expected_ctr_for(position) - ctr) / EXPECTED_CTR[0]
    raw = (
        SCORE_WEIGHTS["impressions"] * volume
        + SCORE_WEIGHTS["position"] * rank
        + SCORE_WEIGHTS["ctr_gap"] * gap
    )
    return round(100 * raw, 1)


def score_label(score: float) -> str:
    if score >= 70:
        return "high"
    if score >= 40:
        return "medium"
    return "low"


# ── Trend ─────────────────────────────────────────────────────────────

def detect_trend(
    long_row: KeywordRow,
    short_index: dict[tuple[str, str], KeywordRow],
    min_delta: Optional[float] = None,
) -> tuple[str, Optional[float]]:
    """
    ``short_index`` must be built from every short-window row, not just the
    ones that made it into a category.
    """
    if min_delta is None:
        min_delta = get_settings().trend_min_delta
    short_row = short_index.get(long_row.key)
    if short_row is None:
        return TREND_NEW, None
    # Negative delta: the recent position number is lower, i.e. better
    delta = short_row.position - long_row.position
    rounded = round(delta, 1)
    if delta <= -min_delta:
        return TREND_IMPROVING, rounded
    if delta >= min_delta:
        return TREND_DECLINING, rounded
    return TREND_STABLE, rounded


# ── Recommendations ───────────────────────────────────────────────────

def generate_recommendations(row: KeywordRow) -> list[dict]:
    recs = []
    if 8 <= row.position <= 12:
        recs.append({
            "type": "title",
            "priority": "high",
            "text": f'Work "{row.query}" into the page title to reach the top 5.',
        })
        recs.append({
            "type": "heading",
            "priority": "high",
            "text": f'Add an H2 or H3 containing "{row.query}" to strengthen relevance.',
        })
    elif row.position > 12:
        recs.append({
            "type": "content",
            "priority": "high",
            "text": f'Write or expand a section dedicated to "{row.query}" (300+ words) on this page.',
        })
        recs.append({
            "type": "internal_link",
            "priority": "medium",
            "text": f'Add 2-3 internal links to this page with "{row.query}" as anchor text.',
        })

    if row.ctr < 0.02 and row.impressions > 50:
        recs.append({
            "type": "meta",
            "priority": "high",
            "text": f"Very low CTR ({row.ctr * 100:.1f}%). Rewrite the meta description to earn the click.",
        })
    elif row.ctr < 0.05:
        recs.append({
            "type": "meta",
            "priority": "medium",
            "text": f"Below-average CTR ({row.ctr * 100:.1f}%). Add a call to action to the meta description.",
        })

    if row.impressions > 500 and row.clicks < 10:
        recs.append({
            "type": "title",
            "priority": "high",
            "text": f"{row.impressions} impressions but few clicks. Try a different angle in the title.",
        })

    if not recs:
        recs.append({
            "type": "content",
            "priority": "medium",
            "text": f'Tune the page content to better target "{row.query}".',
        })
    return recs


# ── Pipeline ──────────────────────────────────────────────────────────

def score_opportunities(
    long_rows: list[KeywordRow],
    short_rows: list[KeywordRow],
    min_delta: Optional[float] = None,
    max_per_category: int = 50,
) -> dict[str, list[Opportunity]]:
    """Categorize the long window, trend against the raw short window."""
    short_index = {row.key: row for row in short_rows}
    buckets: dict[str, list[Opportunity]] = {
        CATEGORY_QUICK_WIN: [],
        CATEGORY_LOW_CTR: [],
        CATEGORY_NO_CLICKS: [],
    }
    for row in long_rows:
        categories = classify(row)
        if not categories:
            continue
        score = compute_score(row.impressions, row.position, row.ctr)
        trend, trend_delta = detect_trend(row, short_index, min_delta)
        recommendations = generate_recommendations(row)
        for category in categories:
            buckets[category].append(Opportunity(
                query=row.query,
                page=row.page,
                clicks=row.clicks,
                impressions=row.impressions,
                ctr=row.ctr,
                position=row.position,
                category=category,
                score=score,
                score_label=score_label(score),
                trend=trend,
                trend_delta=trend_delta,
                recommendations=recommendations,
            ))

    for category, items in buckets.items():
        items.sort(key=lambda o: (-o.score, -o.impressions, o.query))
        buckets[category] = items[:max_per_category]
    return buckets


def date_range_bounds(date_range: str, today: Optional[date] = None) -> tuple[date, date]:
    if date_range not in DATE_RANGES:
        raise ValueError(f"Unsupported date range: {date_range}")
    end = (today or utc_today()) - timedelta(days=DATA_LAG_DAYS)
    return end - timedelta(days=DATE_RANGES[date_range]), end


class OpportunityScorer:
    def __init__(
        self,
        vault: Optional[CredentialVault] = None,
        client: Optional[SearchConsoleClient] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self._session_factory = session_factory or async_session
        self.vault = vault or get_credential_vault()
        self.client = client or SearchConsoleClient()

    async def _fetch(self, access_token: str, site_url: str, start: date, end: date) -> list[KeywordRow]:
        rows = await self.client.search_analytics(access_token, site_url, start, end, dimensions=["query", "page"])
        return [r for r in (KeywordRow.from_analytics(row) for row in rows) if r is not None]

    async def fetch_and_score(
        self,
        site_id: uuid.UUID,
        date_range: str = DEFAULT_DATE_RANGE,
        *,
        tenant_id: Optional[uuid.UUID] = None,
        today: Optional[date] = None,
    ) -> dict[str, list[Opportunity]]:
        """
        Fetch the requested window and the trailing 7 days in parallel. A
        provider failure on either fetch fails the whole call.
        """
        long_start, end = date_range_bounds(date_range, today)
        short_start = end - timedelta(days=SHORT_WINDOW_DAYS)

        async with self._session_factory() as db:
            site = await load_site(db, site_id, tenant_id)
        access_token = await self.vault.get_valid_access_token(site.tenant_id)
        long_rows, short_rows = await asyncio.gather(
            self._fetch(access_token, site.site_url, long_start, end),
            self._fetch(access_token, site.site_url, short_start, end),
        )
        buckets = score_opportunities(long_rows, short_rows)
        logger.info(
            f"Scored opportunities for {site.site_url} ({date_range}): "
            + ", ".join(f"{k}={len(v)}" for k, v in buckets.items())
        )
        return buckets
