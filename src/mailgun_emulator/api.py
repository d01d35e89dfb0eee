# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory exposing the Mailgun-compatible HTTP API.

This module maps Mailgun ``/v3`` routes onto :class:`MailApiCore`:

- Sending regular and MIME messages
- Retrieving and listing stored messages and downloading their attachments
- Simulated sending-queue status and envelope deletion
- SMTP relay status and connection test
- Health check and Prometheus metrics exposure

Every ``/v3`` route and ``/metrics`` require HTTP Basic authentication with
the configured username (``api`` by default) and password (the API key).
``/health`` is open.

Example:
    Creating and running the API application::

        from mailgun_emulator.core import MailApiCore
        from mailgun_emulator.api import create_app

        core = MailApiCore(settings)
        app = create_app(core, username="api", password="key-secret")

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=8080)
"""

import logging
import secrets
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config_loader import LimitsConfig
from .core import AttachmentNotFoundError, MailApiCore, MessageNotFoundError, MessageValidationError
from .models import UploadedFile
from .storage import StorageError

logger = logging.getLogger(__name__)

basic_scheme = HTTPBasic(auto_error=False)

# Form parts allowed on top of one per recipient (from, subject, h:, v:, o:...).
FORM_FIELD_HEADROOM = 1000


def form_limits(limits: LimitsConfig) -> Tuple[int, int]:
    """Multipart limits ``(max_files, max_fields)`` for the configured limits.

    A request holding ``max_recipients`` separate ``to`` parts must reach the
    validator instead of being cut off by the form parser.
    """
    max_fields = limits.max_recipients + FORM_FIELD_HEADROOM
    return max_fields, max_fields


def get_service(request: Request) -> MailApiCore:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(500, "Service not initialized")
    return service


async def require_basic_auth(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(basic_scheme),
) -> None:
    """Check HTTP Basic credentials against the configured pair.

    When no password has been configured through :func:`create_app` the
    dependency is bypassed. Comparisons are constant-time.
    """
    expected: Optional[Tuple[str, str]] = getattr(request.app.state, "credentials", None)
    if expected is None:
        return
    username, password = expected
    if credentials is not None:
        user_ok = secrets.compare_digest(credentials.username.encode(), username.encode())
        password_ok = secrets.compare_digest(credentials.password.encode(), password.encode())
        if user_ok and password_ok:
            return
    raise HTTPException(
        status.HTTP_401_UNAUTHORIZED,
        "Unauthorized",
        headers={"WWW-Authenticate": 'Basic realm="MG API"'},
    )


auth_dependency = Depends(require_basic_auth)


class QueuedResponse(BaseModel):
    """Answer to a send request; SMTP fields appear only when relaying is on."""
    id: str
    message: str
    smtp_status: Optional[str] = None
    smtp_total_recipients: Optional[int] = None
    smtp_successful_sends: Optional[int] = None
    smtp_failed_sends: Optional[int] = None
    smtp_errors: Optional[List[str]] = None


class MessageListResponse(BaseModel):
    items: List[Dict[str, Any]]


class QueueState(BaseModel):
    is_disabled: bool
    disabled: Optional[Dict[str, Any]] = None


class QueueStatusResponse(BaseModel):
    regular: QueueState
    scheduled: QueueState


class SimpleMessageResponse(BaseModel):
    message: str


class SmtpStatusResponse(BaseModel):
    smtp_enabled: bool
    smtp_configured: bool
    smtp_host: Optional[str] = None
    smtp_port: Optional[int] = None
    smtp_encryption: Optional[str] = None
    smtp_username: Optional[str] = None


async def read_form(request: Request) -> Tuple[Dict[str, Any], List[Tuple[str, UploadedFile]]]:
    """Split a form body into a field bag and a list of named uploads.

    Repeated keys (``to=a&to=b``) become lists; single keys stay strings.
    """
    max_files, max_fields = getattr(request.app.state, "form_limits", (1000, 1000))
    form = await request.form(max_files=max_files, max_fields=max_fields)
    collected: Dict[str, List[str]] = {}
    uploads: List[Tuple[str, UploadedFile]] = []
    for key, value in form.multi_items():
        if isinstance(value, StarletteUploadFile):
            content = await value.read()
            uploads.append(
                (
                    key,
                    UploadedFile(
                        filename=value.filename or "",
                        content_type=value.content_type or "application/octet-stream",
                        content=content,
                    ),
                )
            )
        else:
            collected.setdefault(key, []).append(value)
    fields: Dict[str, Any] = {key: values[0] if len(values) == 1 else values for key, values in collected.items()}
    return fields, uploads


def create_app(
    svc: MailApiCore,
    username: str = "api",
    password: Optional[str] = None,
    lifespan: Optional[Callable[[FastAPI], AsyncContextManager]] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`mailgun_emulator.core.MailApiCore` that
        implements the behaviour of each route.
    username, password:
        HTTP Basic credentials required on every ``/v3`` route. When
        ``password`` is None authentication is disabled.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Mailgun Emulator", lifespan=lifespan)
    api.state.service = svc
    api.state.credentials = (username, password) if password is not None else None
    api.state.form_limits = form_limits(svc.settings.limits)

    router = APIRouter(prefix="/v3", dependencies=[auth_dependency])

    @api.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log parameter errors and answer in the Mailgun error shape."""
        logger.info(f"Invalid parameters on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request parameters", "detail": jsonable_encoder(exc.errors())},
        )

    @api.exception_handler(MessageValidationError)
    async def message_validation_handler(request: Request, exc: MessageValidationError):
        return JSONResponse(status_code=400, content={"message": exc.reason})

    @api.exception_handler(MessageNotFoundError)
    async def not_found_handler(request: Request, exc: MessageNotFoundError):
        return JSONResponse(status_code=404, content={"message": "Message not found"})

    @api.exception_handler(AttachmentNotFoundError)
    async def attachment_not_found_handler(request: Request, exc: AttachmentNotFoundError):
        return JSONResponse(status_code=404, content={"message": "Attachment not found"})

    @api.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"message": "Internal server error"})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(service: MailApiCore = Depends(get_service)):
        """Expose Prometheus metrics collected by the emulator."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # Routes under /v3/domains/{domain} are declared before the
    # /v3/{domain} ones so the literal "domains" segment wins.
    @router.get("/domains/{domain}/smtp", response_model=SmtpStatusResponse)
    async def smtp_status(domain: str, service: MailApiCore = Depends(get_service)):
        """Report whether the SMTP relay is enabled and configured."""
        return SmtpStatusResponse.model_validate(service.smtp_status())

    @router.get("/domains/{domain}/smtp/test")
    async def smtp_test(domain: str, service: MailApiCore = Depends(get_service)):
        """Open and close a connection to the configured SMTP relay."""
        ok, payload = await service.test_smtp_connection()
        if not payload.get("smtp_enabled"):
            status_code = 400
        else:
            status_code = 200 if ok else 500
        return JSONResponse(status_code=status_code, content=payload)

    @router.get("/domains/{domain}/messages", response_model=MessageListResponse)
    async def list_domain_messages(
        domain: str,
        limit: int = Query(100, ge=1, le=1000),
        skip: int = Query(0, ge=0),
        service: MailApiCore = Depends(get_service),
    ):
        return MessageListResponse.model_validate(await service.list_messages(domain, limit=limit, offset=skip))

    @router.get("/domains/{domain}/messages/{storage_key}")
    async def retrieve_domain_message(domain: str, storage_key: str, service: MailApiCore = Depends(get_service)):
        return await service.retrieve_message(domain, storage_key)

    @router.get("/domains/{domain}/attachments/{attachment_id}")
    async def download_attachment(domain: str, attachment_id: str, service: MailApiCore = Depends(get_service)):
        """Return the bytes of a stored attachment."""
        attachment = await service.get_attachment(attachment_id)
        return Response(content=attachment["content"], media_type=attachment["mime_type"])

    @router.get("/domains/{domain}/sending_queues", response_model=QueueStatusResponse)
    async def domain_sending_queues(domain: str, service: MailApiCore = Depends(get_service)):
        return QueueStatusResponse.model_validate(service.queue_status(domain))

    @router.delete("/domains/{domain}/envelopes", response_model=SimpleMessageResponse)
    async def delete_domain_envelopes(domain: str, service: MailApiCore = Depends(get_service)):
        return SimpleMessageResponse.model_validate(service.delete_envelopes(domain))

    @router.post("/{domain}/messages", response_model=QueuedResponse, response_model_exclude_none=True)
    async def send_message(domain: str, request: Request, service: MailApiCore = Depends(get_service)):
        """Accept a message built from form fields (``from``, ``to``, ``subject``, ``text``...)."""
        fields, uploads = await read_form(request)
        attachments = [upload for key, upload in uploads if key.startswith("attachment")]
        result = await service.send_message(domain, fields, attachments)
        return QueuedResponse.model_validate(result)

    @router.post("/{domain}/messages.mime", response_model=QueuedResponse, response_model_exclude_none=True)
    async def send_mime_message(domain: str, request: Request, service: MailApiCore = Depends(get_service)):
        """Accept a pre-built MIME message uploaded under ``message``."""
        fields, uploads = await read_form(request)
        mime_file = next((upload for key, upload in uploads if key == "message"), None)
        result = await service.send_mime_message(domain, fields, mime_file)
        return QueuedResponse.model_validate(result)

    @router.get("/{domain}/messages", response_model=MessageListResponse)
    async def list_messages(
        domain: str,
        limit: int = Query(100, ge=1, le=1000),
        skip: int = Query(0, ge=0),
        service: MailApiCore = Depends(get_service),
    ):
        """List stored messages of ``domain`` in storage order."""
        return MessageListResponse.model_validate(await service.list_messages(domain, limit=limit, offset=skip))

    @router.get("/{domain}/messages/{storage_key}")
    async def retrieve_message(domain: str, storage_key: str, service: MailApiCore = Depends(get_service)):
        """Return a stored message with Mailgun field names."""
        return await service.retrieve_message(domain, storage_key)

    @router.get("/{domain}/sending_queues", response_model=QueueStatusResponse)
    async def sending_queues(domain: str, service: MailApiCore = Depends(get_service)):
        return QueueStatusResponse.model_validate(service.queue_status(domain))

    @router.delete("/{domain}/envelopes", response_model=SimpleMessageResponse)
    async def delete_envelopes(domain: str, service: MailApiCore = Depends(get_service)):
        """Acknowledge deletion of scheduled messages (nothing is ever scheduled)."""
        return SimpleMessageResponse.model_validate(service.delete_envelopes(domain))

    api.include_router(router)
    return api
