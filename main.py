import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from auto_scheduler import AutoSchedulerRunner
from clock import Clock
from csrf import generate_csrf_token, validate_csrf_token
from database import SessionLocal
from notifications import NotificationSystem, notification_message
from rollover import RolloverResult
from scheduler import SchedulerManager
from schemas import ExpenseInstanceOut, RecurringTemplateIn, RecurringTemplateOut
from services import (
    ExpenseInstanceService,
    RecurringTemplateService,
    get_current_user_id,
)
from stores import StoreUnavailable

logger = logging.getLogger(__name__)

app = FastAPI(title="Expense Auto-Scheduler")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
async def startup_event():
    await scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def get_runner() -> AutoSchedulerRunner:
    return scheduler_manager.runner_for(get_current_user_id())


def get_notifications() -> NotificationSystem:
    return scheduler_manager.notifications


def get_clock() -> Clock:
    return scheduler_manager.clock


def require_csrf(x_csrf_token: Optional[str] = Header(default=None)) -> None:
    if not validate_csrf_token(x_csrf_token or "", get_current_user_id()):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


def rollover_payload(result: RolloverResult) -> dict[str, object]:
    payload: dict[str, object] = asdict(result)
    payload["lagging_months"] = list(result.lagging_months)
    if result.is_new_month:
        payload["reset_token"] = generate_csrf_token(
            get_current_user_id(), purpose="reset"
        )
    return payload


@app.get("/api/csrf")
def csrf_token():
    return {"csrf_token": generate_csrf_token(get_current_user_id())}


@app.get("/api/scheduler/status")
async def scheduler_status(runner: AutoSchedulerRunner = Depends(get_runner)):
    try:
        result = await runner.run()
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return rollover_payload(result)


@app.post("/api/scheduler/reset")
async def trigger_reset(
    x_csrf_token: Optional[str] = Header(default=None),
    runner: AutoSchedulerRunner = Depends(get_runner),
):
    if not validate_csrf_token(
        x_csrf_token or "", get_current_user_id(), purpose="reset"
    ):
        raise HTTPException(status_code=400, detail="Invalid reset confirmation")
    try:
        updated = await runner.trigger_reset()
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"updated": updated}


@app.get("/api/templates")
def list_templates(db: Session = Depends(get_db)):
    templates = RecurringTemplateService(db).list()
    return [RecurringTemplateOut.model_validate(t) for t in templates]


@app.get("/api/templates/statistics")
def template_statistics(db: Session = Depends(get_db)):
    return RecurringTemplateService(db).get_statistics()


@app.post("/api/templates", status_code=201, dependencies=[Depends(require_csrf)])
def create_template(
    data: RecurringTemplateIn,
    db: Session = Depends(get_db),
    runner: AutoSchedulerRunner = Depends(get_runner),
):
    template = RecurringTemplateService(db).create(data)
    runner.invalidate()
    return RecurringTemplateOut.model_validate(template)


@app.post("/api/templates/{template_id}", dependencies=[Depends(require_csrf)])
def update_template(
    template_id: int,
    data: RecurringTemplateIn,
    db: Session = Depends(get_db),
    runner: AutoSchedulerRunner = Depends(get_runner),
):
    try:
        template = RecurringTemplateService(db).update(template_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    runner.invalidate()
    return RecurringTemplateOut.model_validate(template)


@app.post("/api/templates/{template_id}/toggle", dependencies=[Depends(require_csrf)])
def toggle_template(
    template_id: int,
    active: bool = Body(..., embed=True),
    db: Session = Depends(get_db),
    runner: AutoSchedulerRunner = Depends(get_runner),
):
    try:
        RecurringTemplateService(db).toggle_active(template_id, active)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    runner.invalidate()
    return {"id": template_id, "active": active}


@app.post("/api/templates/{template_id}/delete", dependencies=[Depends(require_csrf)])
def delete_template(
    template_id: int,
    db: Session = Depends(get_db),
    runner: AutoSchedulerRunner = Depends(get_runner),
):
    try:
        counts = RecurringTemplateService(db).delete(template_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    runner.invalidate()
    logger.info(
        f"template_deleted: id={template_id} "
        f"removed_pending={counts['removed_pending']} kept_paid={counts['kept_paid']}"
    )
    return {"id": template_id, **counts}


@app.get("/api/instances")
def list_instances(
    month: Optional[str] = None,
    db: Session = Depends(get_db),
    runner: AutoSchedulerRunner = Depends(get_runner),
):
    year_month = month or runner.current_year_month()
    try:
        instances = ExpenseInstanceService(db).list_for_month(year_month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [ExpenseInstanceOut.model_validate(i) for i in instances]


@app.get("/api/instances/months")
def available_months(db: Session = Depends(get_db)):
    return {"months": ExpenseInstanceService(db).available_months()}


@app.post("/api/instances/{instance_id}/pay", dependencies=[Depends(require_csrf)])
def pay_instance(
    instance_id: int,
    db: Session = Depends(get_db),
    runner: AutoSchedulerRunner = Depends(get_runner),
    clock: Clock = Depends(get_clock),
):
    try:
        instance = ExpenseInstanceService(db, clock=clock).mark_paid(instance_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    runner.invalidate()
    return ExpenseInstanceOut.model_validate(instance)


def notifications_payload(
    notifications: NotificationSystem, pending: list[ExpenseInstanceOut]
) -> dict[str, object]:
    stats = notifications.stats(pending)
    return {
        "state": notifications.state.value,
        "initialized": notifications.notifications_initialized,
        "failure_reason": notifications.failure_reason,
        "stats": asdict(stats),
        "message": notification_message(stats),
        "scheduled": notifications.scheduled_ids,
    }


@app.get("/api/notifications")
async def notifications_status(
    runner: AutoSchedulerRunner = Depends(get_runner),
    notifications: NotificationSystem = Depends(get_notifications),
):
    try:
        pending = await runner.instances.list_pending()
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return notifications_payload(notifications, pending)


@app.post("/api/notifications/initialize", dependencies=[Depends(require_csrf)])
async def initialize_notifications(
    notifications: NotificationSystem = Depends(get_notifications),
):
    await notifications.initialize()
    return {
        "state": notifications.state.value,
        "failure_reason": notifications.failure_reason,
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
