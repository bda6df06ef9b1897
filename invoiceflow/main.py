from fastapi import FastAPI, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import text
from sqlalchemy.orm import Session
from typing import List, Optional
import hmac
import logging

from invoiceflow.db import Base, engine, get_db
from invoiceflow import crud
from invoiceflow.config import settings
from invoiceflow.edit_policy import apply_invoice_update
from invoiceflow.email_gateway import EmailGateway, build_gateway
from invoiceflow.errors import InvoiceFlowError
from invoiceflow.followups import regenerate_all_followups
from invoiceflow.models import Account, InvoiceStatus, utcnow
from invoiceflow import schedules
from invoiceflow.schemas import (
    InvoiceCreate, InvoiceDetailOut, InvoiceOut, InvoiceUpdate, ScheduleCreate, ScheduleOut,
    ScheduleUpdate, SweepResponse, TemplateCreate, TemplateOut,
)
from invoiceflow.sweep import run_followups

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="InvoiceFlow Reminders")

bearer = HTTPBearer(auto_error=False)

# Startup self-checks and schema creation
@app.on_event("startup")
async def startup_checks():
    """Perform startup validation and logging."""
    logger.info("=" * 60)
    logger.info("InvoiceFlow - Startup Checks")
    logger.info("=" * 60)

    # Log database configuration
    db_dialect = engine.dialect.name
    logger.info(f"Database dialect: {db_dialect}")
    logger.info(f"Database URL: {settings.database_url.split('@')[-1] if '@' in settings.database_url else settings.database_url}")

    # Log reminder delivery configuration
    logger.info(f"Email provider: {settings.email_provider}")
    logger.info(f"  - Max follow-ups per invoice per day: {settings.max_followups_per_day_per_invoice}")
    logger.info(f"  - Sweep batch limit: {settings.followup_batch_limit}")
    if not settings.cron_secret:
        logger.warning("  - CRON_SECRET is not set: the cron endpoint rejects every call")

    # Create schema (fast operation)
    try:
        logger.info("Creating database schema...")
        Base.metadata.create_all(bind=engine)
        logger.info("  - Schema creation: SUCCESS")
    except Exception as e:
        logger.error(f"  - Schema creation failed: {e}")
        # Don't block startup - health check will catch this

    logger.info("=" * 60)
    logger.info("Startup checks complete. Application ready.")
    logger.info("=" * 60)

# Create tables on module load (fallback if startup event doesn't fire)
try:
    Base.metadata.create_all(bind=engine)
except Exception as e:
    logger.warning(f"Schema creation on module load failed (may be expected): {e}")


@app.exception_handler(InvoiceFlowError)
async def invoiceflow_error_handler(request: Request, exc: InvoiceFlowError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> Account:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Unauthorized")
    account = crud.get_account_by_token(db, credentials.credentials)
    if account is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return account

def get_email_gateway() -> EmailGateway:
    return build_gateway(settings)

def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    expected = f"Bearer {settings.cron_secret}"
    if not settings.cron_secret or not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning(f"[CRON] Unauthorized request at {utcnow().isoformat()}")
        raise HTTPException(status_code=401, detail="Unauthorized")


# Health check endpoint (required for cloud platforms)
@app.get("/health")
async def health_check():
    """
    Health check endpoint for cloud platform monitoring.
    This endpoint must respond quickly to prevent deployment timeouts.
    """
    try:
        # Quick database connectivity check
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database connection failed: {e}")
        db_status = "disconnected"

    return {
        "status": "healthy",
        "service": "invoiceflow",
        "database": db_status,
        "email_provider": settings.email_provider
    }


# ---- Templates ----
@app.get("/api/templates", response_model=List[TemplateOut])
def list_templates(account: Account = Depends(get_current_account), db: Session = Depends(get_db)):
    return crud.list_templates(db, account.id)

@app.post("/api/templates", response_model=TemplateOut, status_code=201)
def create_template(payload: TemplateCreate, account: Account = Depends(get_current_account),
                    db: Session = Depends(get_db)):
    return crud.create_template(db, account.id, payload)


# ---- Schedules ----
@app.get("/api/schedules", response_model=List[ScheduleOut])
def list_schedules(account: Account = Depends(get_current_account), db: Session = Depends(get_db)):
    return schedules.list_schedules(db, account.id)

@app.post("/api/schedules", response_model=ScheduleOut, status_code=201)
def create_schedule(payload: ScheduleCreate, account: Account = Depends(get_current_account),
                    db: Session = Depends(get_db)):
    schedule = schedules.create_schedule(db, account.id, payload)
    db.commit()
    return schedules.get_schedule(db, account.id, schedule.id)

@app.get("/api/schedules/{schedule_id}", response_model=ScheduleOut)
def get_schedule(schedule_id: str, account: Account = Depends(get_current_account),
                 db: Session = Depends(get_db)):
    return schedules.get_schedule(db, account.id, schedule_id)

@app.patch("/api/schedules/{schedule_id}", response_model=ScheduleOut)
def update_schedule(schedule_id: str, payload: ScheduleUpdate,
                    account: Account = Depends(get_current_account), db: Session = Depends(get_db)):
    needs_regeneration = schedules.update_schedule(db, account.id, schedule_id, payload)
    if needs_regeneration:
        count = regenerate_all_followups(db, account.id, schedule_id)
        logger.info(f"Schedule {schedule_id} changed; regenerated follow-ups for {count} invoice(s)")
    db.commit()
    return schedules.get_schedule(db, account.id, schedule_id)

@app.delete("/api/schedules/{schedule_id}")
def delete_schedule(schedule_id: str, account: Account = Depends(get_current_account),
                    db: Session = Depends(get_db)):
    schedules.delete_schedule(db, account.id, schedule_id)
    db.commit()
    return {"success": True, "id": schedule_id}


# ---- Invoices ----
@app.get("/api/invoices", response_model=List[InvoiceOut])
def list_invoices(status: Optional[InvoiceStatus] = None, account: Account = Depends(get_current_account),
                  db: Session = Depends(get_db)):
    return crud.list_invoices(db, account.id, status)

@app.post("/api/invoices", response_model=InvoiceDetailOut, status_code=201)
def create_invoice(payload: InvoiceCreate, account: Account = Depends(get_current_account),
                   db: Session = Depends(get_db)):
    inv = crud.create_invoice(db, account.id, payload)
    return crud.invoice_detail(crud.get_invoice(db, account.id, inv.id))

@app.get("/api/invoices/{invoice_id}", response_model=InvoiceDetailOut)
def get_invoice(invoice_id: str, account: Account = Depends(get_current_account),
                db: Session = Depends(get_db)):
    return crud.invoice_detail(crud.get_invoice(db, account.id, invoice_id))

@app.patch("/api/invoices/{invoice_id}", response_model=InvoiceDetailOut)
def update_invoice(invoice_id: str, payload: InvoiceUpdate, account: Account = Depends(get_current_account),
                   db: Session = Depends(get_db)):
    apply_invoice_update(db, account.id, invoice_id, payload)
    return crud.invoice_detail(crud.get_invoice(db, account.id, invoice_id))

@app.delete("/api/invoices/{invoice_id}")
def delete_invoice(invoice_id: str, account: Account = Depends(get_current_account),
                   db: Session = Depends(get_db)):
    crud.delete_invoice(db, account.id, invoice_id)
    return {"success": True, "id": invoice_id}


# ---- Reminder delivery trigger ----
@app.post("/api/cron/run-followups", response_model=SweepResponse,
          dependencies=[Depends(require_cron_secret)])
def run_followups_cron(db: Session = Depends(get_db), gateway: EmailGateway = Depends(get_email_gateway)):
    started = utcnow()
    logger.info(f"[CRON] Started at {started.isoformat()}")

    results = run_followups(db, gateway, now=started)

    finished = utcnow()
    duration_ms = int((finished - started).total_seconds() * 1000)
    logger.info(f"[CRON] Finished at {finished.isoformat()} ({duration_ms}ms)")
    return SweepResponse(success=True, timestamp=finished, duration_ms=duration_ms, results=results)
