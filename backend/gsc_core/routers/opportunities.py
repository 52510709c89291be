"""
Opportunities Router — categorized keyword opportunities for a site.
"""

import uuid
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from gsc_core.auth import require_tenant
from gsc_core.services.opportunity_service import (
    CATEGORY_LOW_CTR,
    CATEGORY_NO_CLICKS,
    CATEGORY_QUICK_WIN,
    DEFAULT_DATE_RANGE,
    OpportunityScorer,
)

router = APIRouter()


def get_scorer() -> OpportunityScorer:
    return OpportunityScorer()


class OpportunitiesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    site_id: uuid.UUID = Field(alias="siteId")
    date_range: Literal["last_7_days", "last_28_days", "last_90_days"] = Field(
        default=DEFAULT_DATE_RANGE, alias="dateRange"
    )


@router.post("")
async def get_opportunities(
    payload: OpportunitiesRequest,
    tenant_id: uuid.UUID = Depends(require_tenant),
    scorer: OpportunityScorer = Depends(get_scorer),
):
    buckets = await scorer.fetch_and_score(payload.site_id, payload.date_range, tenant_id=tenant_id)
    return {
        "date_range": payload.date_range,
        "quick_wins": [o.to_dict() for o in buckets[CATEGORY_QUICK_WIN]],
        "low_ctr": [o.to_dict() for o in buckets[CATEGORY_LOW_CTR]],
        "no_clicks": [o.to_dict() for o in buckets[CATEGORY_NO_CLICKS]],
    }
