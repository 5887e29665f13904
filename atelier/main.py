import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from atelier.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Atelier")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOW_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

from atelier.endpoints.auth.self_attendance import router as self_attendance_router
app.include_router(self_attendance_router)

from atelier.endpoints.api.v1.calendar import router as calendar_router
app.include_router(calendar_router)

from atelier.endpoints.api.v1.slot_reservation import router as slot_reservation_router
app.include_router(slot_reservation_router)

from atelier.endpoints.api.v1.schedule_management import router as schedule_management_router
app.include_router(schedule_management_router)

from atelier.endpoints.api.v1.enrollment_management import router as enrollment_management_router
app.include_router(enrollment_management_router)

from atelier.endpoints.api.v1.reschedule_management import router as reschedule_management_router
app.include_router(reschedule_management_router)

from atelier.endpoints.api.v1.adhoc_sessions import router as adhoc_sessions_router
app.include_router(adhoc_sessions_router)

from atelier.endpoints.api.v1.attendance_management import router as attendance_router
app.include_router(attendance_router)

from atelier.endpoints.api.v1.class_management import router as class_management_router
app.include_router(class_management_router)
