"""
NHS GP Booking Service - FastAPI Application Entry Point

This module serves as the main entry point for the booking API. It sets up
the FastAPI application with CORS, rate limiting, per-request trace
identifiers, and the availability, booking and cancellation endpoints.
"""

import logging
import secrets
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from .audit import audit_logger_instance
from .services.assertion import AssertionGenerator
from .services.availability import AvailabilityService
from .services.booking import BookingRequest, BookingService
from .services.errors import BookingServiceError
from .services.gp_connect import GPConnectClient
from .services.nhs_number import mask_nhs_number
from .services.notifications import NotificationDispatcher
from .services.practice_directory import PracticeDirectory
from .services.storage import (
    InMemoryBookingStore,
    RedisBookingStore,
    RedisPracticeStore,
)
from .settings import get_settings

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

settings = get_settings()

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)

# Initialize HTTP Basic authentication for maintenance endpoints
security = HTTPBasic()

# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Search and book GP appointments over NHS GP Connect",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add rate limiting middleware
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID"],
)

# Persistent stores: Redis when configured, in-memory otherwise
practice_store = (
    RedisPracticeStore(settings.redis_url) if settings.redis_configured else None
)
booking_store = (
    RedisBookingStore(settings.redis_url)
    if settings.redis_configured
    else InMemoryBookingStore()
)

# Initialize booking services
practice_directory = PracticeDirectory(settings, practice_store)
assertion_generator = AssertionGenerator(settings)
gp_connect_client = GPConnectClient(settings)
notification_dispatcher = NotificationDispatcher()

availability_service = AvailabilityService(
    settings, practice_directory, assertion_generator, gp_connect_client
)
booking_service = BookingService(
    settings,
    practice_directory,
    assertion_generator,
    gp_connect_client,
    booking_store,
    notification_dispatcher,
    failure_policy=settings.booking_failure_policy(),
)


def get_trace_id(request: Request) -> str:
    """Trace identifier assigned to the current request."""
    trace_id = getattr(request.state, "trace_id", None)
    if not trace_id:
        trace_id = str(uuid.uuid4())
        request.state.trace_id = trace_id
    return trace_id


def get_client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


HTTP_ERROR_CATEGORIES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    503: "service_unavailable",
}


def error_response(
    request: Request,
    status_code: int,
    category: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Uniform error body; every failure carries the request's trace id."""
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "error": category,
            "message": message,
            "trace_id": get_trace_id(request),
        },
        headers=headers,
    )


@app.middleware("http")
async def assign_trace_id(request: Request, call_next):
    """Give every request a trace id and echo it back in X-Trace-ID."""
    trace_id = get_trace_id(request)
    logger.info(f"API Request | trace_id={trace_id} {request.method} {request.url.path}")
    try:
        response = await call_next(request)
    except Exception:
        logger.exception(f"Unhandled error | trace_id={trace_id}")
        response = error_response(
            request, 500, "internal_error", "An unexpected error occurred"
        )
    response.headers["X-Trace-ID"] = trace_id
    return response


@app.exception_handler(BookingServiceError)
async def booking_error_handler(request: Request, exc: BookingServiceError):
    """Render service errors with the request's trace id."""
    return error_response(request, exc.http_status, exc.category, str(exc))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(
        f"Rate limit exceeded | trace_id={get_trace_id(request)} "
        f"path={request.url.path} limit={exc.detail}"
    )
    return error_response(
        request, 429, "rate_limited", f"Rate limit exceeded: {exc.detail}"
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(
        request,
        exc.status_code,
        HTTP_ERROR_CATEGORIES.get(exc.status_code, "http_error"),
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Reject malformed requests with 400; submitted values are never echoed."""
    trace_id = get_trace_id(request)
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", [])[1:])
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    message = "; ".join(problems) or "Invalid request"

    audit_logger_instance.log_access(
        action="request_rejected",
        resource_type=request.url.path,
        trace_id=trace_id,
        outcome="failure",
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        error_message=message,
    )

    return error_response(request, 400, "validation_error", message)


def verify_admin_credentials(credentials: HTTPBasicCredentials = Depends(security)):
    """Verify maintenance endpoint credentials."""
    expected_password = settings.admin_password.get_secret_value()
    if not settings.admin_username or not expected_password:
        raise HTTPException(status_code=503, detail="Maintenance endpoints disabled")

    correct_username = secrets.compare_digest(
        credentials.username, settings.admin_username
    )
    correct_password = secrets.compare_digest(credentials.password, expected_password)
    if not (correct_username and correct_password):
        audit_logger_instance.log_event(
            event_type="AUTHENTICATION",
            action="Failed admin authentication",
            user_id=credentials.username,
            result="FAILURE",
        )
        raise HTTPException(
            status_code=401,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.on_event("startup")
async def startup_event():
    """Application startup tasks."""
    global booking_store, practice_store

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    settings.ensure_production_ready()
    for warning in settings.validate_for_startup():
        logger.warning(warning)

    # Test Redis connection, fallback to in-memory if needed
    if settings.redis_configured:
        redis_healthy = await booking_store.health_check()
        if not redis_healthy:
            logger.warning("Redis not available, using in-memory booking storage")
            booking_store = InMemoryBookingStore()
            booking_service.store = booking_store
            practice_store = None
            practice_directory.store = None

    audit_logger_instance.log_system_event(
        "SERVICE_STARTED",
        additional_data={
            "environment": settings.environment,
            "demo_mode": settings.use_mock_availability,
        },
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks."""
    await booking_store.disconnect()
    if practice_store is not None:
        await practice_store.disconnect()


# Pydantic models for API requests/responses
class PractitionerResponse(BaseModel):
    reference: str
    display: str


class SlotResponse(BaseModel):
    """Free slot as returned to the booking wizard."""

    id: str
    start: str
    end: str
    status: str
    practitioner: PractitionerResponse


class AvailabilityResponse(BaseModel):
    """Availability search response model."""

    status: str
    slots: List[SlotResponse]
    total: int
    search_criteria: Dict[str, Any]
    trace_id: str


class NotificationOutcomeResponse(BaseModel):
    channel: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class BookingResponse(BaseModel):
    """Booking confirmation response model."""

    status: str
    booking_id: str
    appointment: Dict[str, Any]
    notifications: List[NotificationOutcomeResponse]
    simulated: bool = False
    trace_id: str


class CancellationRequest(BaseModel):
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)
    cancelled_by: Optional[str] = None


class CancellationResponse(BaseModel):
    status: str
    booking_id: str
    message: str
    trace_id: str


class ReconciliationResponse(BaseModel):
    status: str
    orphaned: List[str]
    total: int


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring application status."""
    return {"status": "healthy", "service": settings.app_name, "version": APP_VERSION}


@app.get("/health/detailed")
async def detailed_health_check():
    """Report mode, storage connectivity and the practice directory size."""
    services: Dict[str, Any] = {"api": "running"}

    if settings.use_mock_availability:
        services["mode"] = "demo"

    if isinstance(booking_store, InMemoryBookingStore):
        services["booking_storage"] = "in-memory"
    else:
        healthy = await booking_store.health_check()
        services["booking_storage"] = "connected" if healthy else "unavailable"

    try:
        practices = await practice_directory.list_practices()
        services["gp_practices"] = f"{len(practices)} practices available"
    except BookingServiceError:
        services["gp_practices"] = "unavailable"

    return {
        "status": "healthy",
        "version": APP_VERSION,
        "environment": settings.environment,
        "services": services,
        "policies": {
            "availability_failure": settings.availability_failure_policy.value,
            "booking_failure": booking_service.failure_policy.value,
            "practice_lookup_fallback": settings.practice_lookup_fallback,
        },
    }


@app.get("/api/appointments/availability", response_model=AvailabilityResponse)
@limiter.limit(settings.rate_limit)
async def search_availability(
    request: Request,
    practice_ods_code: str = Query(..., min_length=3, max_length=10),
    from_date: date = Query(...),
    to_date: date = Query(...),
    duration: int = Query(15, ge=10, le=60),
):
    """
    Search a GP practice for free appointment slots.

    In demo mode, or when the practice cannot be reached, mock slots are
    returned.
    """
    trace_id = get_trace_id(request)
    search_criteria = {
        "practice_ods_code": practice_ods_code,
        "from_date": from_date.isoformat(),
        "to_date": to_date.isoformat(),
        "duration": duration,
    }

    try:
        slots = await availability_service.search_slots(
            practice_ods_code,
            from_date.isoformat(),
            to_date.isoformat(),
            duration,
            trace_id=trace_id,
        )
    except BookingServiceError as e:
        logger.error(f"Availability search failed | trace_id={trace_id} error={e}")
        audit_logger_instance.log_access(
            action="search",
            resource_type="appointment_slots",
            trace_id=trace_id,
            outcome="failure",
            practice_ods_code=practice_ods_code,
            client_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            error_message=e.category,
        )
        raise

    audit_logger_instance.log_access(
        action="search",
        resource_type="appointment_slots",
        trace_id=trace_id,
        practice_ods_code=practice_ods_code,
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    return AvailabilityResponse(
        status="success",
        slots=[SlotResponse(**slot.to_dict()) for slot in slots],
        total=len(slots),
        search_criteria=search_criteria,
        trace_id=trace_id,
    )


@app.post(
    "/api/appointments/book", response_model=BookingResponse, status_code=201
)
@limiter.limit(settings.rate_limit)
async def book_appointment(request: Request, booking_request: BookingRequest):
    """
    Book a GP appointment at the patient's practice over GP Connect.

    The practice is notified through its configured channels once the
    booking is accepted.
    """
    trace_id = get_trace_id(request)

    try:
        result = await booking_service.book_appointment(
            booking_request, trace_id=trace_id
        )
    except BookingServiceError as e:
        logger.error(
            f"Appointment booking failed | trace_id={trace_id} "
            f"patient={mask_nhs_number(booking_request.patient_nhs_number)} error={e}"
        )
        audit_logger_instance.log_access(
            action="book",
            resource_type="appointment",
            trace_id=trace_id,
            outcome="failure",
            user_id=booking_request.booked_by,
            patient_nhs_number=booking_request.patient_nhs_number,
            practice_ods_code=booking_request.practice_ods_code,
            client_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            error_message=e.category,
        )
        raise

    audit_logger_instance.log_access(
        action="book",
        resource_type="appointment",
        trace_id=trace_id,
        user_id=booking_request.booked_by,
        patient_nhs_number=booking_request.patient_nhs_number,
        practice_ods_code=booking_request.practice_ods_code,
        resource_id=result.booking_id,
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    return BookingResponse(status="success", **result.to_dict())


@app.delete("/api/appointments/{booking_id}", response_model=CancellationResponse)
@limiter.limit(settings.rate_limit)
async def cancel_appointment(
    request: Request,
    booking_id: str,
    cancellation: Optional[CancellationRequest] = None,
):
    """
    Cancel a booking in the local record.

    The practice's own system is not updated.
    """
    trace_id = get_trace_id(request)
    cancellation = cancellation or CancellationRequest()
    cancelled_by = cancellation.cancelled_by or "anonymous"

    try:
        await booking_service.cancel_booking(
            booking_id,
            reason=cancellation.cancellation_reason,
            cancelled_by=cancelled_by,
            trace_id=trace_id,
        )
    except BookingServiceError as e:
        audit_logger_instance.log_access(
            action="cancel",
            resource_type="appointment",
            trace_id=trace_id,
            outcome="failure",
            user_id=cancelled_by,
            resource_id=booking_id,
            client_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            error_message=e.category,
        )
        raise

    audit_logger_instance.log_access(
        action="cancel",
        resource_type="appointment",
        trace_id=trace_id,
        user_id=cancelled_by,
        resource_id=booking_id,
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    return CancellationResponse(
        status="success",
        booking_id=booking_id,
        message="Appointment cancelled successfully",
        trace_id=trace_id,
    )


@app.post("/api/admin/reconcile", response_model=ReconciliationResponse)
@limiter.limit("5/minute")
async def reconcile_pending_bookings(
    request: Request, username: str = Depends(verify_admin_credentials)
):
    """Mark bookings stuck in pending as orphaned for manual follow-up."""
    orphaned = await booking_service.reconcile_pending_bookings()

    audit_logger_instance.log_event(
        event_type="MAINTENANCE",
        action="Pending booking reconciliation",
        user_id=username,
        trace_id=get_trace_id(request),
        additional_data={"orphaned_count": len(orphaned)},
    )

    return ReconciliationResponse(
        status="success", orphaned=orphaned, total=len(orphaned)
    )


if __name__ == "__main__":
    # Development server entry point
    uvicorn.run(
        "gp_booking.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        reload_dirs=["gp_booking"],
    )
