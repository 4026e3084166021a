from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from sqlalchemy.orm import Session

from database import get_db
from errors import NotFoundError
from executor import ScheduledReportExecutor
from models import ReportType, ScheduleStatus
from periods import DateRange
from recurrence import local_today
from reports import ReportService, generate_report
from scheduler import SchedulerManager
from schemas import (
    AttributionIn,
    AttributionOut,
    CapacityCheckIn,
    ExecutionOut,
    IncomeEventIn,
    IncomeEventOut,
    MarkPaidIn,
    MarkReceivedIn,
    PaymentIn,
    PaymentOut,
    ReportParameters,
    ScheduledReportIn,
    ScheduledReportOut,
    ScheduledReportUpdate,
    SplitPaymentIn,
)
from services import (
    AttributionService,
    BudgetService,
    IncomeService,
    PaymentService,
    ScheduledReportService,
)

app = FastAPI(title="Family Finance")

scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: ValueError) -> HTTPException:
    status_code = 404 if isinstance(exc, NotFoundError) else 400
    return HTTPException(status_code=status_code, detail=str(exc))


def report_range(params: ReportParameters, today: Optional[date] = None) -> DateRange:
    today = today or local_today()
    start = params.from_date or today.replace(day=1)
    end = params.to_date or today
    if start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    return DateRange(start, end)


@app.get("/api/families/{family_id}/reports/{report_type}")
def api_report(
    family_id: int,
    report_type: ReportType,
    params: ReportParameters = Depends(),
    db: Session = Depends(get_db),
):
    date_range = report_range(params)
    try:
        result = generate_report(
            ReportService(db, family_id), report_type, date_range, params
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return result.model_dump(mode="json")


@app.get("/api/families/{family_id}/scheduled-reports")
def api_scheduled_reports(
    family_id: int,
    status: Optional[ScheduleStatus] = None,
    report_type: Optional[ReportType] = None,
    db: Session = Depends(get_db),
):
    reports = ScheduledReportService(db, family_id).list(status, report_type)
    return [ScheduledReportOut.model_validate(r).model_dump(mode="json") for r in reports]


@app.post("/api/families/{family_id}/scheduled-reports", status_code=201)
def api_create_scheduled_report(
    family_id: int, data: ScheduledReportIn, db: Session = Depends(get_db)
):
    try:
        report = ScheduledReportService(db, family_id).create(data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ScheduledReportOut.model_validate(report).model_dump(mode="json")


@app.get("/api/families/{family_id}/scheduled-reports/{report_id}")
def api_scheduled_report(family_id: int, report_id: int, db: Session = Depends(get_db)):
    service = ScheduledReportService(db, family_id)
    try:
        report = service.get(report_id)
        last_error = service.last_error(report_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    payload = ScheduledReportOut.model_validate(report).model_dump(mode="json")
    payload["last_error"] = last_error
    return payload


@app.patch("/api/families/{family_id}/scheduled-reports/{report_id}")
def api_update_scheduled_report(
    family_id: int,
    report_id: int,
    data: ScheduledReportUpdate,
    db: Session = Depends(get_db),
):
    try:
        report = ScheduledReportService(db, family_id).update(report_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ScheduledReportOut.model_validate(report).model_dump(mode="json")


@app.delete("/api/families/{family_id}/scheduled-reports/{report_id}")
def api_delete_scheduled_report(
    family_id: int, report_id: int, db: Session = Depends(get_db)
):
    try:
        ScheduledReportService(db, family_id).delete(report_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/families/{family_id}/scheduled-reports/{report_id}/pause")
def api_pause_scheduled_report(
    family_id: int, report_id: int, db: Session = Depends(get_db)
):
    try:
        report = ScheduledReportService(db, family_id).pause(report_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ScheduledReportOut.model_validate(report).model_dump(mode="json")


@app.post("/api/families/{family_id}/scheduled-reports/{report_id}/resume")
def api_resume_scheduled_report(
    family_id: int, report_id: int, db: Session = Depends(get_db)
):
    try:
        report = ScheduledReportService(db, family_id).resume(report_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return ScheduledReportOut.model_validate(report).model_dump(mode="json")


@app.post("/api/families/{family_id}/scheduled-reports/{report_id}/run")
def api_run_scheduled_report(
    family_id: int, report_id: int, db: Session = Depends(get_db)
):
    try:
        execution = ScheduledReportService(db, family_id).run_now(
            report_id, ScheduledReportExecutor(db)
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    if execution is None:
        raise HTTPException(status_code=409, detail="Report is paused or already running")
    return ExecutionOut.model_validate(execution).model_dump(mode="json")


@app.get("/api/families/{family_id}/scheduled-reports/{report_id}/executions")
def api_scheduled_report_history(
    family_id: int, report_id: int, limit: int = 50, db: Session = Depends(get_db)
):
    limit = min(max(limit, 1), 200)
    try:
        executions = ScheduledReportService(db, family_id).history(report_id, limit)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [ExecutionOut.model_validate(e).model_dump(mode="json") for e in executions]


@app.post("/api/families/{family_id}/income-events", status_code=201)
def api_create_income(family_id: int, data: IncomeEventIn, db: Session = Depends(get_db)):
    event = IncomeService(db, family_id).create(data)
    return IncomeEventOut.model_validate(event).model_dump(mode="json")


@app.post("/api/families/{family_id}/income-events/{income_event_id}/mark-received")
def api_mark_received(
    family_id: int,
    income_event_id: int,
    data: MarkReceivedIn,
    db: Session = Depends(get_db),
):
    try:
        event = IncomeService(db, family_id).mark_received(income_event_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return IncomeEventOut.model_validate(event).model_dump(mode="json")


@app.post("/api/families/{family_id}/income-events/{income_event_id}/budget-allocation")
def api_generate_budget_allocation(
    family_id: int, income_event_id: int, db: Session = Depends(get_db)
):
    try:
        rows = BudgetService(db, family_id).generate_allocation(income_event_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [
        {
            "budget_category_id": row.budget_category_id,
            "amount": str(row.amount),
            "percentage": str(row.percentage),
        }
        for row in rows
    ]


@app.post("/api/families/{family_id}/payments", status_code=201)
def api_create_payment(family_id: int, data: PaymentIn, db: Session = Depends(get_db)):
    payment = PaymentService(db, family_id).create(data)
    return PaymentOut.model_validate(payment).model_dump(mode="json")


@app.post("/api/families/{family_id}/payments/{payment_id}/mark-paid")
def api_mark_paid(
    family_id: int, payment_id: int, data: MarkPaidIn, db: Session = Depends(get_db)
):
    try:
        payment = PaymentService(db, family_id).mark_paid(payment_id, data)
    except ValueError as exc:
        raise http_error(exc) from exc
    return PaymentOut.model_validate(payment).model_dump(mode="json")


@app.get("/api/families/{family_id}/payments/{payment_id}/attributions")
def api_payment_attributions(
    family_id: int, payment_id: int, db: Session = Depends(get_db)
):
    try:
        summary = AttributionService(db, family_id).payment_summary(payment_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return summary


@app.get("/api/families/{family_id}/payments/{payment_id}/attribution-suggestions")
def api_suggest_attributions(
    family_id: int, payment_id: int, limit: int = 10, db: Session = Depends(get_db)
):
    try:
        return AttributionService(db, family_id).suggest_attributions(
            payment_id, limit=limit
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/families/{family_id}/payments/{payment_id}/attributions/validate")
def api_validate_attributions(
    family_id: int,
    payment_id: int,
    data: CapacityCheckIn,
    db: Session = Depends(get_db),
):
    proposed = [(a.income_event_id, a.amount) for a in data.attributions]
    try:
        return AttributionService(db, family_id).validate_capacity(payment_id, proposed)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/families/{family_id}/payments/{payment_id}/split")
def api_split_payment(
    family_id: int,
    payment_id: int,
    data: SplitPaymentIn,
    db: Session = Depends(get_db),
):
    try:
        created = AttributionService(db, family_id).split_payment(
            payment_id, data.income_event_ids, data.weights
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return [AttributionOut.model_validate(a).model_dump(mode="json") for a in created]


@app.post("/api/families/{family_id}/attributions", status_code=201)
def api_create_attribution(
    family_id: int, data: AttributionIn, db: Session = Depends(get_db)
):
    try:
        attribution = AttributionService(db, family_id).attribute(
            data.payment_id, data.income_event_id, data.amount, data.attribution_type
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return AttributionOut.model_validate(attribution).model_dump(mode="json")


@app.post("/api/families/{family_id}/attributions/auto")
def api_auto_attribute(
    family_id: int, window_days: int = 7, db: Session = Depends(get_db)
):
    created = AttributionService(db, family_id).auto_attribute(window_days=window_days)
    return [AttributionOut.model_validate(a).model_dump(mode="json") for a in created]


@app.delete("/api/families/{family_id}/attributions/{attribution_id}")
def api_delete_attribution(
    family_id: int, attribution_id: int, db: Session = Depends(get_db)
):
    try:
        AttributionService(db, family_id).delete_attribution(attribution_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)
