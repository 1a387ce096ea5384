"""
Email Auto-Responder FastAPI application

Runs the inbox watcher for the lifetime of the app and exposes:
- GET /health
- GET /api/email/check-now
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse

# Load environment variables from .env file
load_dotenv()

from app.config import Settings, get_settings
from app.exceptions import ConfigurationError, MailboxNotConnectedError
from app.imap_client import create_imap_client
from app.inbox_watcher import InboxWatcher
from app.lifecycle import LifecycleController
from app.models import CheckNowResponse, ConnectionState, HealthResponse
from app.reply_generator import ReplyGenerator
from app.smtp_client import create_mail_transport

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances
controller: Optional[LifecycleController] = None


def build_controller(settings: Settings) -> LifecycleController:
    """Wire the watcher and its collaborators from settings"""
    watcher = InboxWatcher(
        mailbox_factory=lambda: create_imap_client(settings),
        reply_generator=ReplyGenerator(
            api_key=settings.anthropic_api_key,
            model=settings.completion_model
        ),
        mail_transport=create_mail_transport(settings),
        allowed_sender=settings.allowed_sender,
        case_sensitive=settings.allowed_sender_case_sensitive,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        dedupe_window=settings.dedupe_window
    )
    return LifecycleController(watcher, check_interval=settings.check_interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    global controller

    # Startup
    logger.info("Starting Email Auto-Responder...")

    try:
        settings.validate_required()
    except ConfigurationError as e:
        logger.error(str(e))
        raise

    logger.info(f"Email user: {settings.email_user}")
    logger.info(f"Replying to: {settings.allowed_sender}")

    controller = build_controller(settings)
    await controller.initialize()

    yield

    # Shutdown
    logger.info("Shutting down gracefully...")
    if controller:
        await controller.shutdown()
    logger.info("Service shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Email Auto-Responder",
    description="Answers mail from one sender with Claude-generated replies",
    version="1.0.0",
    lifespan=lifespan
)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    state = controller.watcher.state if controller else ConnectionState.DISCONNECTED
    return HealthResponse(status="healthy", connection_state=state)


@app.get("/api/email/check-now", response_model=CheckNowResponse)
async def check_now():
    """Manually trigger a scan for unseen emails"""
    try:
        if controller is None:
            raise MailboxNotConnectedError("Auto-responder is not initialized")
        await controller.check_now()
    except Exception as e:
        logger.error(f"Manual email check failed: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to trigger email check"}
        )

    return CheckNowResponse(message="Email check triggered successfully")


def run() -> None:
    """Console entry point"""
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
