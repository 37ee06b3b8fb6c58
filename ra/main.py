# ra/main.py
from typing import List, Optional
from fastapi import FastAPI, HTTPException, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
import logging

from ra import config, database, events, schemas
from ra.ca_gateway import AMQPCAGateway, CAGateway, build_ssl_options
from ra.deadline import Deadline
from ra.engine import EnrollmentService
from ra.errors import RAError
from ra.repository import EnrollmentRepository

# logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("ra-service")

app = FastAPI(title="Registration Authority")

_ca_gateway: Optional[CAGateway] = None


def build_ca_gateway() -> CAGateway:
    gateway = AMQPCAGateway(config.RABBITMQ_URL, queue=config.CA_RPC_QUEUE, timeout=config.CA_TIMEOUT_SECONDS)
    ssl_options = build_ssl_options(gateway.params.host, config.CA_TLS_CA_CERT, config.CA_TLS_CERT, config.CA_TLS_KEY)
    if ssl_options is not None:
        gateway.params.ssl_options = ssl_options
    return gateway


def make_service(db: Session, ca: Optional[CAGateway] = None) -> EnrollmentService:
    return EnrollmentService(
        EnrollmentRepository(db, page_size=config.LIST_PAGE_SIZE),
        ca if ca is not None else _ca_gateway,
        validity_days=config.CERT_VALIDITY_DAYS,
        ca_timeout=config.CA_TIMEOUT_SECONDS,
        max_attempts=config.ISSUANCE_MAX_ATTEMPTS,
    )


@app.on_event("startup")
def startup():
    global _ca_gateway
    logger.info("Initializing DB and CA gateway...")
    database.init_db(config.DATABASE_URL)
    _ca_gateway = build_ca_gateway()
    if config.START_ISSUANCE_WORKER:
        events.start_consumer(config.RABBITMQ_URL, make_service, config.ISSUANCE_SWEEP_INTERVAL,
                              config.ISSUANCE_SWEEP_BATCH)
    logger.info("Startup complete.")


@app.on_event("shutdown")
def shutdown():
    events.stop_consumer()


@app.exception_handler(RAError)
def ra_error_handler(request: Request, exc: RAError):
    if exc.client_error:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    else:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_ca_gateway() -> Optional[CAGateway]:
    return _ca_gateway


def get_service(db: Session = Depends(get_db), ca: Optional[CAGateway] = Depends(get_ca_gateway)) -> EnrollmentService:
    return make_service(db, ca)


def request_deadline() -> Deadline:
    return Deadline(timeout=config.REQUEST_TIMEOUT_SECONDS)


def _publish(background_tasks: BackgroundTasks, etype: str, enrollment):
    if config.PUBLISH_EVENTS:
        routing_key, event = events.enrollment_event(etype, enrollment)
        background_tasks.add_task(events.publish_enrollment_event, config.RABBITMQ_URL, routing_key, event)


# health endpoints
@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "healthy"}


@app.get("/ready")
def ready():
    return {"status": "ready"}


# Create enrollment -> pending
@app.post("/api/v1/enrollments", response_model=schemas.EnrollmentOut, status_code=201)
def create_enrollment(enrollment_in: schemas.EnrollmentCreate, background_tasks: BackgroundTasks,
                      service: EnrollmentService = Depends(get_service), deadline: Deadline = Depends(request_deadline)):
    enrollment = service.create_enrollment(
        enrollment_in.common_name, enrollment_in.organization, enrollment_in.email, enrollment_in.csr,
        deadline=deadline,
    )
    _publish(background_tasks, "EnrollmentCreated", enrollment)
    return schemas.EnrollmentOut.model_validate(enrollment)


@app.get("/api/v1/enrollments", response_model=List[schemas.EnrollmentOut])
def list_enrollments(status: Optional[str] = Query(None), service: EnrollmentService = Depends(get_service)):
    return [schemas.EnrollmentOut.model_validate(e) for e in service.list_enrollments(status)]


@app.get("/api/v1/enrollments/{enrollment_id}", response_model=schemas.EnrollmentOut)
def get_enrollment(enrollment_id: str, service: EnrollmentService = Depends(get_service)):
    return schemas.EnrollmentOut.model_validate(service.get_enrollment(enrollment_id))


@app.post("/api/v1/enrollments/{enrollment_id}/approve", response_model=schemas.EnrollmentOut)
def approve_enrollment(enrollment_id: str, body: schemas.ApproveRequest, background_tasks: BackgroundTasks,
                       service: EnrollmentService = Depends(get_service), deadline: Deadline = Depends(request_deadline)):
    enrollment = service.approve_enrollment(enrollment_id, body.approved_by, deadline=deadline)
    _publish(background_tasks, "EnrollmentApproved", enrollment)
    return schemas.EnrollmentOut.model_validate(enrollment)


@app.post("/api/v1/enrollments/{enrollment_id}/reject", response_model=schemas.EnrollmentOut)
def reject_enrollment(enrollment_id: str, body: schemas.RejectRequest, background_tasks: BackgroundTasks,
                      service: EnrollmentService = Depends(get_service), deadline: Deadline = Depends(request_deadline)):
    enrollment = service.reject_enrollment(enrollment_id, body.rejected_by, body.reason, deadline=deadline)
    _publish(background_tasks, "EnrollmentRejected", enrollment)
    return schemas.EnrollmentOut.model_validate(enrollment)


# Manual issuance trigger; the worker calls the same engine operation
@app.post("/api/v1/enrollments/{enrollment_id}/issue", response_model=schemas.EnrollmentOut)
def issue_enrollment(enrollment_id: str, background_tasks: BackgroundTasks, force: bool = Query(False),
                     service: EnrollmentService = Depends(get_service), deadline: Deadline = Depends(request_deadline)):
    enrollment = service.request_issuance(enrollment_id, force=force, deadline=deadline)
    _publish(background_tasks, "EnrollmentIssued", enrollment)
    return schemas.EnrollmentOut.model_validate(enrollment)


@app.get("/api/v1/enrollments/{enrollment_id}/certificate", response_model=schemas.CertificateOut)
def get_certificate(enrollment_id: str, service: EnrollmentService = Depends(get_service),
                    deadline: Deadline = Depends(request_deadline)):
    pem = service.fetch_certificate(enrollment_id, deadline=deadline)
    enrollment = service.get_enrollment(enrollment_id)
    return schemas.CertificateOut(enrollment_id=enrollment.id, serial=enrollment.certificate_serial, certificate_pem=pem)


@app.post("/api/v1/enrollments/{enrollment_id}/revoke", response_model=schemas.EnrollmentOut)
def revoke_certificate(enrollment_id: str, body: schemas.RevokeRequest,
                       service: EnrollmentService = Depends(get_service), deadline: Deadline = Depends(request_deadline)):
    enrollment = service.revoke_certificate(enrollment_id, body.revoked_by, body.reason, deadline=deadline)
    logger.info("Revoked certificate of enrollment id=%s", enrollment_id)
    return schemas.EnrollmentOut.model_validate(enrollment)


def run():
    import uvicorn

    uvicorn.run("ra.main:app", host=config.HOST, port=config.PORT)
