"""Dashboard endpoints."""

from fastapi import APIRouter

from ...dashboard import DashboardAggregator
from ...policies import authorize, can_view_librarian_dashboard, can_view_member_dashboard
from ..dependencies import AppClock, CurrentActor, Database

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/librarian")
def librarian_dashboard(actor: CurrentActor, db: Database, clock: AppClock):
    authorize(can_view_librarian_dashboard(actor))
    with db.session_scope() as session:
        dashboard = DashboardAggregator(session, clock).librarian()
    return {"dashboard": dashboard}


@router.get("/member")
def member_dashboard(actor: CurrentActor, db: Database, clock: AppClock):
    authorize(can_view_member_dashboard(actor))
    with db.session_scope() as session:
        dashboard = DashboardAggregator(session, clock).member(actor.id)
    return {"dashboard": dashboard}
