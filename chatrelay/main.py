import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Annotated, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse

from chatrelay.blobs import BlobStore
from chatrelay.bridge import EventBridge
from chatrelay.classifier import Blob, DEFAULT_CONTENT_TYPES, EventClassifier
from chatrelay.config import Settings, load_settings
from chatrelay.consumer import QueueConsumer
from chatrelay.envelope import EnvelopeKind
from chatrelay.events import MediaKind, MessagingClient
from chatrelay.exceptions import ConfigurationError, StoreError
from chatrelay.forwarder import Forwarder
from chatrelay.logging_utils import RequestLoggingMiddleware, log_send_data, setup_logging
from chatrelay.metrics import get_metrics, get_metrics_content_type
from chatrelay.producer import QueueProducer
from chatrelay.schemas import (
    ChatResponse,
    ChatsListResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from chatrelay.sender import send_message
from chatrelay.sqs_queue import SQSQueue
from chatrelay.storage import ChatStore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS_DETAIL = "Recipient and message are required"


# =============================================================================
# Wiring
# =============================================================================

@dataclass
class Relay:
    """Every component of one running relay, built from one Settings."""
    settings: Settings
    client: MessagingClient
    store: ChatStore
    producer: QueueProducer
    forwarder: Forwarder
    consumer: QueueConsumer
    bridge: EventBridge
    subscribed: bool = field(default=False, init=False)

    def start(self, start_consumer: bool = True) -> None:
        """Apply the schema, subscribe the bridge to client events and start the consumer."""
        self.store.init_db()
        if not self.subscribed:
            self.client.add_event_handler(self.bridge.handle_event)
            self.subscribed = True
        if start_consumer:
            self.consumer.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if timeout is None:
            timeout = self.settings.POLL_WAIT_SECONDS + self.settings.POST_TIMEOUT_SECONDS \
                + self.settings.FETCH_TIMEOUT_SECONDS
        self.consumer.stop(timeout)
        self.forwarder.close()
        self.store.close()


def build_relay(
    settings: Settings,
    client: MessagingClient,
    sqs_client=None,
    s3_client=None,
    http_client: Optional[httpx.Client] = None,
    queue: Optional[SQSQueue] = None,
) -> Relay:
    """
    Construct the store, queue, producer, forwarder, consumer and bridge.

    Raises:
        ConfigurationError: if no queue is configured or the forwarder
            credentials are missing.
        QueueError: if a queue name cannot be resolved.
    """
    if queue is None:
        if settings.AWS_SQS_QUEUE_URL:
            queue = SQSQueue(settings.AWS_SQS_QUEUE_URL, client=sqs_client, region_name=settings.AWS_REGION)
        elif settings.AWS_SQS_QUEUE_NAME:
            queue = SQSQueue.from_name(settings.AWS_SQS_QUEUE_NAME, client=sqs_client,
                                       region_name=settings.AWS_REGION)
        else:
            raise ConfigurationError("AWS_SQS_QUEUE_URL or AWS_SQS_QUEUE_NAME must be set")

    dead_letter_queue = None
    if settings.AWS_SQS_DEAD_LETTER_QUEUE_NAME:
        dead_letter_queue = SQSQueue.from_name(
            settings.AWS_SQS_DEAD_LETTER_QUEUE_NAME, client=queue.client, region_name=settings.AWS_REGION
        )

    blob_store = None
    if settings.AWS_S3_BUCKET_NAME:
        blob_store = BlobStore(settings.AWS_S3_BUCKET_NAME, settings.AWS_REGION, client=s3_client)
    else:
        logger.warning("AWS_S3_BUCKET_NAME not set, media messages will not be relayed")

    store = ChatStore(settings.DATABASE_URL)
    forwarder = Forwarder.from_settings(settings, http_client=http_client)
    producer = QueueProducer(queue, blob_store)
    consumer = QueueConsumer.from_settings(settings, queue, forwarder, dead_letter_queue)
    classifier = EventClassifier(client, admin_phone=settings.ADMIN_PHONE, relay_history=settings.RELAY_HISTORY)
    bridge = EventBridge(client, store, classifier, producer)

    return Relay(
        settings=settings,
        client=client,
        store=store,
        producer=producer,
        forwarder=forwarder,
        consumer=consumer,
        bridge=bridge,
    )


def get_relay(request: Request) -> Relay:
    return request.app.state.relay


# =============================================================================
# Application
# =============================================================================

def create_app(relay: Relay, start_consumer: bool = True) -> FastAPI:
    """
    Build the command surface for a relay.

    The lifespan initializes the database, starts the consumer thread and
    joins it again on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        relay.start(start_consumer=start_consumer)
        yield
        # Blocks until the consumer thread has joined
        await asyncio.to_thread(relay.stop)

    app = FastAPI(
        title="Chat Relay",
        description="Relays chat events to the audit logging backend and keeps local history",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.relay = relay
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error(f"Local history unavailable: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Local history unavailable"},
        )

    app.include_router(_health_routes())
    app.include_router(_send_routes())
    app.include_router(_history_routes())
    return app


# =============================================================================
# Health Check Routes
# =============================================================================

def _health_routes():
    router = APIRouter()

    @router.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @router.get("/health/ready", response_model=HealthResponse)
    def health_ready(response: Response, relay: Relay = Depends(get_relay)) -> HealthResponse:
        """
        Readiness probe - returns 200 only if:
        1. DB is reachable and schema is applied
        2. The messaging client is connected

        Otherwise returns 503 (Service Unavailable).
        """
        if not relay.store.check_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied"
            )

        if not relay.client.is_connected():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Not connected to WhatsApp")

        return HealthResponse(status="ready")

    @router.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )

    return router


# =============================================================================
# Send Routes
# =============================================================================

def _send_and_relay(
    request: Request,
    relay: Relay,
    kind: EnvelopeKind,
    recipient: str,
    message: str,
    data: Optional[bytes] = None,
    filename: str = "",
    mimetype: str = "",
) -> JSONResponse:
    if not recipient or not message:
        log_send_data(request, recipient=recipient, kind=kind.value, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=REQUIRED_FIELDS_DETAIL)

    media_kind = None if kind == EnvelopeKind.TEXT else MediaKind(kind.value)
    result = send_message(
        relay.client,
        recipient,
        message,
        media_kind=media_kind,
        data=data,
        filename=filename,
        mimetype=mimetype,
    )
    logger.info(f"Message sent: success={result.success}, detail={result.message}")

    queued = False
    message_logged = ""
    if result.success:
        blob = None
        if media_kind is not None:
            content_type = mimetype or DEFAULT_CONTENT_TYPES[media_kind]
            blob = Blob(filename=filename or f"{kind.value}_{result.message_id}", data=data or b"",
                        content_type=content_type)
        queued = relay.bridge.relay_outbound(
            result, kind, recipient, message, blob=blob, admin_phone=relay.settings.ADMIN_PHONE
        )
        message_logged = "Message queued for logging" if queued else "Failed to queue message for logging"

    log_send_data(
        request,
        recipient=recipient,
        kind=kind.value,
        result="sent" if result.success else "send_failed",
        queued=queued,
    )
    body = SendMessageResponse(success=result.success, message=result.message, message_logged=message_logged)
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.success else status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body.model_dump(),
    )


def _read_upload(request: Request, file: Optional[UploadFile], kind: EnvelopeKind):
    if file is None:
        log_send_data(request, kind=kind.value, result="validation_error")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Error retrieving file")
    return file.file.read(), file.filename or "", file.content_type or ""


def _send_routes():
    router = APIRouter(prefix="/api")
    error_responses = {
        400: {"model": ErrorResponse, "description": "Recipient or message missing"},
        500: {"model": SendMessageResponse, "description": "Send failed"},
    }

    @router.post("/send", response_model=SendMessageResponse, responses=error_responses)
    def send_text(
        request: Request,
        payload: SendMessageRequest,
        relay: Relay = Depends(get_relay),
    ) -> JSONResponse:
        """
        Send a text message and queue it for the logging backend.

        Body:
            - recipient: phone number or JID
            - message: text to send
        """
        logger.info("Received request to send message")
        return _send_and_relay(request, relay, EnvelopeKind.TEXT, payload.recipient, payload.message)

    @router.post("/send-image", response_model=SendMessageResponse, responses=error_responses)
    def send_image(
        request: Request,
        file: Annotated[Optional[UploadFile], File()] = None,
        recipient: Annotated[str, Form()] = "",
        message: Annotated[str, Form()] = "",
        relay: Relay = Depends(get_relay),
    ) -> JSONResponse:
        """Send an image with a caption; the image is relayed through the object store."""
        logger.info("Received request to send image message")
        data, filename, mimetype = _read_upload(request, file, EnvelopeKind.IMAGE)
        return _send_and_relay(request, relay, EnvelopeKind.IMAGE, recipient, message,
                               data=data, filename=filename, mimetype=mimetype)

    @router.post("/send-document", response_model=SendMessageResponse, responses=error_responses)
    def send_document(
        request: Request,
        file: Annotated[Optional[UploadFile], File()] = None,
        recipient: Annotated[str, Form()] = "",
        message: Annotated[str, Form()] = "",
        relay: Relay = Depends(get_relay),
    ) -> JSONResponse:
        """Send a document with a caption; the document is relayed through the object store."""
        logger.info("Received request to send document message")
        data, filename, mimetype = _read_upload(request, file, EnvelopeKind.DOCUMENT)
        return _send_and_relay(request, relay, EnvelopeKind.DOCUMENT, recipient, message,
                               data=data, filename=filename, mimetype=mimetype)

    return router


# =============================================================================
# History Routes
# =============================================================================

def _history_routes():
    router = APIRouter(prefix="/api")

    @router.get("/chats", response_model=ChatsListResponse)
    def list_chats(relay: Relay = Depends(get_relay)) -> ChatsListResponse:
        """All known chats, most recently active first."""
        chats = relay.store.get_chats()
        data = [ChatResponse.model_validate(chat) for chat in chats]
        logger.info(f"GET /api/chats: returned {len(data)} chats")
        return ChatsListResponse(data=data, total=len(data))

    @router.get("/chats/{chat_jid}/messages", response_model=MessagesListResponse)
    def list_messages(
        chat_jid: str,
        limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of messages to return")] = 50,
        relay: Relay = Depends(get_relay),
    ) -> MessagesListResponse:
        """Stored messages of one chat, newest first."""
        messages = relay.store.get_messages(chat_jid, limit)
        data = [MessageResponse.model_validate(msg) for msg in messages]
        logger.info(f"GET /api/chats/{chat_jid}/messages: returned {len(data)} messages (limit={limit})")
        return MessagesListResponse(data=data, chat_jid=chat_jid, limit=limit)

    return router


# =============================================================================
# Entry point
# =============================================================================

def serve(client: MessagingClient, settings: Optional[Settings] = None) -> None:
    """
    Run the relay and its command surface until the server is stopped.

    The caller owns the messaging client and its connection. On startup the
    relay registers its bridge through ``client.add_event_handler``, so every
    event the client delivers is stored and queued. Settings are loaded here when
    not given, so a missing credential stops startup before the consumer
    loop begins.
    """
    import uvicorn

    settings = settings or load_settings()
    setup_logging(settings.LOG_LEVEL)
    relay = build_relay(settings, client)
    app = create_app(relay)
    logger.info(f"Starting REST API server on {settings.API_HOST}:{settings.API_PORT}")
    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT, log_config=None)
