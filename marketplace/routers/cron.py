from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketplace.db import get_db
from marketplace.routers.deps import get_gateway
from marketplace.services.billing import BillingGateway
from marketplace.services.sweeper import JOBS

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get("/jobs")
def list_jobs():
    return {"success": True, "jobs": [job.to_dict() for job in JOBS.values()]}


@router.post("/expire-transactions")
def run_expire(db: Session = Depends(get_db), gateway: BillingGateway = Depends(get_gateway)):
    result = JOBS["expire-transactions"].run(db, gateway=gateway)
    return {"success": True, "result": result}
