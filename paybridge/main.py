from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from paybridge.core.config import settings
from paybridge.core.logging import configure_logging
from paybridge.routers import payments
from paybridge.services.event_broadcaster import EventBroadcaster
from paybridge.services.token_cache import InMemoryTokenCache

OPENAPI_TAGS = [
    {
        "name": "Payments",
        "description": "Initiate M-Pesa and Paystack payments, receive webhooks, poll status.",
    },
]

configure_logging()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Invoice payment reconciliation API. Charges invoices through M-Pesa "
        "STK push or Paystack checkout and reconciles processor outcomes."
    ),
    openapi_tags=OPENAPI_TAGS,
)

# Process-wide state shared by every request. A real-time transport (a websocket
# gateway, a message bus bridge) receives payment events by calling
# app.state.broadcaster.subscribe(listener) at startup.
app.state.token_cache = InMemoryTokenCache(ttl_seconds=settings.mpesa_token_reuse_seconds)
app.state.broadcaster = EventBroadcaster()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payments.router, prefix="/v1/payments", tags=["Payments"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "domain": settings.APP_DOMAIN,
        "status": "running",
    }
