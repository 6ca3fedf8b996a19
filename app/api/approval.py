"""
Approval API endpoints: reviewer decisions, previews and the Telegram webhook.
"""
import base64
import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, status, Depends, Header, Response

from app.core.config import Settings, get_settings
from app.core.dependencies import (
    get_approval_channel,
    get_approval_store,
    get_notification_service,
    get_orchestrator,
)
from app.core.exceptions import OrchestrationError, orchestration_http_exception
from app.models.approval import ApprovalState, DecisionType, InboundDecision
from app.schemas.approval import (
    ApprovalQueueItem,
    ApprovalResponse,
    CancelRequest,
    DecisionRequest,
    ErrorResponse,
    PendingApprovalsResponse,
    TelegramWebhookResponse,
)
from app.services.approval_channel import TelegramApprovalChannel, parse_update, update_chat_id
from app.services.approval_store import ApprovalStore
from app.services.notification_service import NotificationService
from app.services.orchestrator import WorkflowOrchestrator
import structlog

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["approval"])


def _internal_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "Internal server error", "error_code": "INTERNAL_ERROR"},
    )


@router.get(
    "/approvals/pending",
    response_model=PendingApprovalsResponse,
    responses={
        200: {"description": "Pending approvals retrieved successfully"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
    summary="Get pending approval requests",
)
async def get_pending_approvals(
    store: ApprovalStore = Depends(get_approval_store),
) -> PendingApprovalsResponse:
    """
    Get all letters waiting for a reviewer decision, oldest first.
    """
    try:
        records = await store.list_active(ApprovalState.PENDING_APPROVAL)
    except Exception as e:
        logger.error("Error retrieving pending approvals", error=str(e))
        raise _internal_error()

    items = [ApprovalQueueItem.from_record(record) for record in records]
    logger.info("Pending approvals retrieved", total_count=len(items))
    return PendingApprovalsResponse(pending_approvals=items, total_count=len(items))


@router.get(
    "/approvals/{approval_id}",
    response_model=ApprovalResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Approval not found"},
    },
    summary="Get approval record",
)
async def get_approval(
    approval_id: str,
    store: ApprovalStore = Depends(get_approval_store),
) -> ApprovalResponse:
    try:
        record = await store.get(approval_id)
    except OrchestrationError as e:
        raise orchestration_http_exception(e)
    return ApprovalResponse.from_record(record)


@router.post(
    "/approvals/{approval_id}/decision",
    response_model=ApprovalResponse,
    responses={
        200: {"description": "Decision applied"},
        404: {"model": ErrorResponse, "description": "Approval not found"},
        409: {"model": ErrorResponse, "description": "Approval not awaiting a decision or revision cap reached"},
        502: {"model": ErrorResponse, "description": "Delivery failed"},
        503: {"model": ErrorResponse, "description": "External service unavailable"},
    },
    summary="Approve, reject or request revision of a letter",
)
async def submit_decision(
    approval_id: str,
    request: DecisionRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> ApprovalResponse:
    """
    Apply a reviewer decision.

    Approval continues with mail delivery before responding. Revision
    regenerates the letter and sends it for approval again.
    """
    if request.decision == DecisionType.REVISE and not (request.feedback or "").strip():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error": "feedback is required for revise decisions",
                "error_code": "MISSING_FEEDBACK",
            },
        )

    decision = InboundDecision(
        approval_id=approval_id,
        decision=request.decision,
        feedback=request.feedback,
        decided_by=request.decided_by,
    )

    try:
        record = await orchestrator.handle_decision(decision)
    except OrchestrationError as e:
        logger.warning(
            "Decision could not be applied",
            approval_id=approval_id,
            decision=request.decision.value,
            error_code=e.error_code,
            error=str(e),
        )
        raise orchestration_http_exception(e)
    except Exception as e:
        logger.error("Unexpected error applying decision", approval_id=approval_id, error=str(e))
        raise _internal_error()

    logger.info(
        "Decision applied",
        approval_id=approval_id,
        decision=request.decision.value,
        decided_by=request.decided_by,
        state=record.state.value,
    )
    return ApprovalResponse.from_record(record)


@router.get(
    "/approvals/{approval_id}/pdf",
    responses={
        200: {"content": {"application/pdf": {}}, "description": "Letter preview"},
        404: {"model": ErrorResponse, "description": "Approval or preview not found"},
    },
    summary="Download the letter preview PDF",
)
async def download_pdf(
    approval_id: str,
    store: ApprovalStore = Depends(get_approval_store),
) -> Response:
    try:
        record = await store.get(approval_id)
    except OrchestrationError as e:
        raise orchestration_http_exception(e)

    if not record.pdf_base64:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "No preview stored for this approval", "error_code": "PDF_NOT_FOUND"},
        )

    return Response(
        content=base64.b64decode(record.pdf_base64),
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="letter_{approval_id}.pdf"'},
    )


@router.post(
    "/approvals/{approval_id}/regenerate-pdf",
    response_model=ApprovalResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Approval not found"},
        409: {"model": ErrorResponse, "description": "Approval not pending"},
    },
    summary="Re-render the letter preview",
)
async def regenerate_pdf(
    approval_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> ApprovalResponse:
    try:
        record = await orchestrator.regenerate_pdf(approval_id)
    except OrchestrationError as e:
        raise orchestration_http_exception(e)
    return ApprovalResponse.from_record(record)


@router.post(
    "/approvals/{approval_id}/cancel",
    response_model=ApprovalResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Approval not found"},
        409: {"model": ErrorResponse, "description": "Approval cannot be cancelled"},
    },
    summary="Cancel an approval",
)
async def cancel_approval(
    approval_id: str,
    request: CancelRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> ApprovalResponse:
    try:
        record = await orchestrator.cancel(approval_id, request.reason, request.cancelled_by)
    except OrchestrationError as e:
        raise orchestration_http_exception(e)
    return ApprovalResponse.from_record(record)


@router.post(
    "/telegram/webhook",
    response_model=TelegramWebhookResponse,
    responses={
        403: {"model": ErrorResponse, "description": "Invalid webhook secret"},
    },
    summary="Telegram Bot API webhook",
)
async def telegram_webhook(
    update: Dict[str, Any],
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
    notifier: NotificationService = Depends(get_notification_service),
    channel: TelegramApprovalChannel = Depends(get_approval_channel),
) -> TelegramWebhookResponse:
    """
    Receive reviewer button presses and ``/revise`` replies.

    Answers 200 for every update carrying the configured secret, so Telegram
    does not redeliver it; failures are reported in the body and through the
    notification channel. Updates from other chats are ignored.
    """
    if settings.telegram_webhook_secret and not hmac.compare_digest(
        (x_telegram_bot_api_secret_token or "").encode(),
        settings.telegram_webhook_secret.encode(),
    ):
        logger.warning("Webhook call with invalid secret token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Invalid webhook secret", "error_code": "INVALID_WEBHOOK_SECRET"},
        )

    chat_id = update_chat_id(update)
    if not settings.telegram_chat_id or chat_id != str(settings.telegram_chat_id):
        logger.warning("Webhook update from outside the review chat ignored", chat_id=chat_id)
        return TelegramWebhookResponse(handled=False)

    decision = parse_update(update)
    if decision is None:
        return TelegramWebhookResponse(handled=False)

    callback = update.get("callback_query") or {}
    if callback.get("id"):
        try:
            await channel.answer_callback(callback["id"], "Entscheidung erhalten")
        except OrchestrationError as e:
            logger.warning("Callback answer failed", error=str(e))

    if decision.decision == DecisionType.REVISE and not decision.feedback:
        await notifier.send_feedback_prompt(decision.approval_id)
        return TelegramWebhookResponse(
            handled=True,
            approval_id=decision.approval_id,
            decision=decision.decision,
            message="Feedback requested",
        )

    try:
        record = await orchestrator.handle_decision(decision)
    except OrchestrationError as e:
        logger.warning(
            "Webhook decision could not be applied",
            approval_id=decision.approval_id,
            error_code=e.error_code,
            error=str(e),
        )
        return TelegramWebhookResponse(
            ok=False,
            handled=True,
            approval_id=decision.approval_id,
            decision=decision.decision,
            message=f"{e.error_code}: {e}",
        )

    return TelegramWebhookResponse(
        handled=True,
        approval_id=record.approval_id,
        decision=decision.decision,
        message=record.state.value,
    )
