from fastapi import APIRouter, Depends

from eventlens.api.deps import get_services, require_api_key
from eventlens.core.container import Services
from eventlens.schemas.analytics import CohortQuery, CohortResult, FunnelQuery, FunnelResult

router = APIRouter(prefix="/api/analytics", tags=["analytics"], dependencies=[Depends(require_api_key)])


@router.post("/funnel", response_model=FunnelResult, response_model_exclude_none=True)
def analyze_funnel(query: FunnelQuery, services: Services = Depends(get_services)):
    """
    Ordered conversion funnel.

    - **steps**: At least two `{eventName, filters}` steps
    - **startDate** / **endDate**: Analysis window
    - **groupBy**: Optional property of the first step's event to break results down by
    """
    return services.funnels.analyze(query)


@router.post("/cohort", response_model=CohortResult)
def analyze_cohort(query: CohortQuery, services: Services = Depends(get_services)):
    """
    Retention by cohort.

    - **cohortEvent**: Event whose first occurrence defines the cohort
    - **returnEvent**: Event counted as a return
    - **granularity**: day, week (default) or month
    - **periods**: Number of periods to report (1-52, default 12)
    """
    return services.cohorts.analyze(query)
