"""Role-scoped dashboard counters and the family activity overview."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import models, services
from ..auth import get_current_user, require_creator
from ..database import get_session

router = APIRouter(prefix="/api", tags=["dashboard"])


@router.get("/dashboard/stats")
def dashboard_stats(user: models.User = Depends(get_current_user), session: Session = Depends(get_session)):
    return services.DashboardService(session).stats(user)


@router.get("/family/dashboard")
def family_dashboard(user: models.User = Depends(require_creator), session: Session = Depends(get_session)):
    return services.DashboardService(session).family(user)
