"""
Workflow orchestrator.

Drives one CRM task through the letter pipeline:

    0. mark the task in progress
    1-2. resolve task -> contact, require a profile identifier
    3. profile and dossiers
    4. resolve (and optionally patch) the postal address
    5. draft the letter and persist the approval record
    6. render the preview and dispatch it for approval, then return

Decisions arrive later through ``handle_decision``. Approval continues with
delivery (step 7), revision re-enters steps 5-6, rejection ends the record.
All record changes go through ``ApprovalStore.transition``.
"""
import base64
from typing import Any, Dict, List, Optional, Set

import structlog

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    ApprovalNotFoundError,
    ConflictError,
    IrrecoverableDeliveryError,
    OrchestrationError,
    ValidationError,
)
from app.core.logging import correlation_context, log_business_event, performance_timing
from app.models.approval import (
    ApprovalRecord,
    ApprovalState,
    DecisionType,
    InboundDecision,
)
from app.models.workflow import (
    ContactRecord,
    DossierBundle,
    PostalAddress,
    ProfileRecord,
    TaskReference,
)
from app.services.approval_store import ApprovalStore
from app.services.interfaces import (
    ApprovalChannel,
    DocumentRenderer,
    DossierGenerator,
    LetterGenerator,
    MailCarrier,
    ProfileStore,
    TaskSource,
)
from app.services.notification_service import NotificationService
from app.services.state_machine import (
    ApprovalDispatched,
    ApproveDecision,
    DeliveryStarted,
    DeliverySucceeded,
    LetterRegenerated,
    PreviewRendered,
    RejectDecision,
    RevisionRequested,
    StepFailed,
    WorkflowCompleted,
)

logger = structlog.get_logger(__name__)

REJECTED_DESCRIPTION = "Brief abgelehnt"


def _as_orchestration_error(error: Exception, step: str) -> OrchestrationError:
    """Classify an unexpected exception so it can be recorded on the record."""
    if isinstance(error, OrchestrationError):
        if error.step is None:
            error.step = step
        return error
    return OrchestrationError(f"Unexpected error: {error}", step=step, error_type=type(error).__name__)


class WorkflowOrchestrator:
    """Sequences the pipeline steps and the approval decision handling."""

    def __init__(
        self,
        store: ApprovalStore,
        crm: TaskSource,
        profiles: ProfileStore,
        dossiers: DossierGenerator,
        letters: LetterGenerator,
        renderer: DocumentRenderer,
        carrier: MailCarrier,
        channel: ApprovalChannel,
        notifier: Optional[NotificationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.crm = crm
        self.profiles = profiles
        self.dossiers = dossiers
        self.letters = letters
        self.renderer = renderer
        self.carrier = carrier
        self.channel = channel
        self.notifier = notifier or NotificationService(channel=channel)
        self.settings = settings or get_settings()

        # Approval ids with a carrier submission running in this process
        self._delivering: Set[str] = set()

    # Steps 0-6

    async def process_task(self, task: TaskReference) -> ApprovalRecord:
        """
        Run steps 0-6 for a task and suspend at the approval point.

        Args:
            task: Task selected by intake

        Returns:
            The approval record in ``pending_approval``

        Raises:
            OrchestrationError: Any step failed; the failure has already been
                recorded, reported and written back to the CRM
        """
        with correlation_context(task_id=task.task_id):
            logger.info("Processing task", subject=task.subject, contact_id=task.contact_id)
            self.notifier.progress("task_started", "Task picked up", task_id=task.task_id)

            await self._mark_in_progress(task)

            step = "contact"
            try:
                contact = await self._resolve_contact(task)

                step = "dossier"
                profile, dossier = await self._gather_context(contact)

                step = "address"
                address = await self._resolve_address(contact, dossier)

                step = "letter"
                with performance_timing("generate_letter", task_id=task.task_id):
                    letter = await self.letters.generate_letter(contact, dossier, address, task, profile)

                record = ApprovalRecord.create(
                    task=task,
                    contact=contact,
                    letter=letter,
                    mailing_address=address,
                    dossier=dossier,
                )
                record = await self.store.create(record)
            except ConflictError as e:
                logger.warning("Task already has an approval in flight", error=str(e))
                raise
            except Exception as e:
                error = _as_orchestration_error(e, step)
                await self._fail_before_record(task, error)
                raise error

            self.notifier.progress(
                "approval_created",
                "Letter drafted",
                task_id=task.task_id,
                approval_id=record.approval_id,
            )
            return await self._dispatch_for_approval(record)

    async def _mark_in_progress(self, task: TaskReference) -> None:
        try:
            await self.crm.update_task_status(
                task.task_id,
                self.settings.crm_status_in_progress,
                "Brief wird erstellt",
            )
        except OrchestrationError as e:
            logger.warning("Could not mark task in progress", error=str(e))

    async def _resolve_contact(self, task: TaskReference) -> ContactRecord:
        if not task.contact_id:
            raise ValidationError("Task has no associated contact", field="contact_id", step="contact")

        contact = await self.crm.get_contact(task.contact_id)
        if not contact.profile_id:
            raise ValidationError(
                "Contact has no profile identifier",
                field="profile_id",
                step="contact",
                contact_id=contact.contact_id,
            )
        return contact

    async def _gather_context(self, contact: ContactRecord):
        """Step 3: profile row and dossiers."""
        with performance_timing("load_profile", profile_id=contact.profile_id):
            profile: Optional[ProfileRecord] = await self.profiles.get_profile(contact.profile_id)
        if profile is None:
            logger.warning("Profile not found in profile store", profile_id=contact.profile_id)

        company_name = contact.company_name or (profile.company_name if profile else None)
        profile_url = (profile.profile_url if profile else None) or contact.profile_url

        with performance_timing("generate_dossiers", profile_id=contact.profile_id):
            dossier = await self.dossiers.generate_dossiers(contact.profile_id, company_name, profile_url)
        return profile, dossier

    async def _resolve_address(
        self, contact: ContactRecord, dossier: DossierBundle
    ) -> Optional[PostalAddress]:
        """Step 4: contact address, else the address extracted from the dossier."""
        if contact.mailing_address is not None:
            return contact.mailing_address
        if dossier.mailing_address is None:
            logger.warning("No postal address available", contact_id=contact.contact_id)
            return None

        try:
            await self.crm.update_contact_address(contact.contact_id, dossier.mailing_address)
            logger.info("Contact address patched from dossier", contact_id=contact.contact_id)
        except OrchestrationError as e:
            logger.warning("Contact address patch failed", contact_id=contact.contact_id, error=str(e))
        return dossier.mailing_address

    async def _dispatch_for_approval(self, record: ApprovalRecord) -> ApprovalRecord:
        """Step 6: render the preview and send it to the approval channel."""
        with correlation_context(approval_id=record.approval_id):
            try:
                with performance_timing("render_preview", iteration=record.iteration):
                    pdf = await self.renderer.render(record.current_letter, record.mailing_address)
                record = await self.store.transition(
                    record.approval_id,
                    PreviewRendered(pdf_base64=base64.b64encode(pdf).decode("ascii")),
                )
                message_id = await self.channel.send_approval_request(record, pdf)
            except Exception as e:
                error = _as_orchestration_error(e, "approval_dispatch")
                await self._fail(record, error)
                raise error

            try:
                record = await self.store.transition(record.approval_id, ApprovalDispatched(message_id=message_id))
            except ConflictError as e:
                # A decision already arrived for the message just sent
                logger.info("Dispatch not recorded, approval already decided", error=str(e))
                return await self.store.get(record.approval_id)

            self.notifier.progress(
                "awaiting_approval",
                "Letter sent for approval",
                task_id=record.task_id,
                approval_id=record.approval_id,
                iteration=record.iteration,
            )
            return record

    # Decisions

    async def handle_decision(self, decision: InboundDecision) -> ApprovalRecord:
        """
        Apply a reviewer decision to its approval record.

        Raises:
            ApprovalNotFoundError: Unknown approval id
            ConflictError: The record is not awaiting a decision
            PolicyError: Revision cap reached or feedback missing
            OrchestrationError: The follow-up step failed
        """
        with correlation_context(approval_id=decision.approval_id):
            logger.info("Decision received", decision=decision.decision.value, decided_by=decision.decided_by)

            if decision.decision == DecisionType.APPROVE:
                record = await self.store.transition(
                    decision.approval_id, ApproveDecision(decided_by=decision.decided_by)
                )
                self.notifier.progress(
                    "approval_approved",
                    "Letter approved",
                    task_id=record.task_id,
                    approval_id=record.approval_id,
                )
                return await self.deliver(record.approval_id)

            if decision.decision == DecisionType.REJECT:
                record = await self.store.transition(
                    decision.approval_id,
                    RejectDecision(decided_by=decision.decided_by, reason=decision.feedback),
                )
                await self._set_task_status(
                    record.task_id, self.settings.crm_status_error, REJECTED_DESCRIPTION
                )
                await self.notifier.send_rejection_notification(record)
                return record

            record = await self.store.transition(
                decision.approval_id,
                RevisionRequested(feedback=decision.feedback or "", source=decision.decided_by),
            )
            self.notifier.progress(
                "revision_requested",
                record.latest_feedback() or "",
                task_id=record.task_id,
                approval_id=record.approval_id,
                iteration=record.iteration,
            )
            return await self._regenerate(record)

    async def _regenerate(self, record: ApprovalRecord) -> ApprovalRecord:
        """Revision loop: draft a new letter from the latest feedback and re-dispatch."""
        with correlation_context(approval_id=record.approval_id):
            try:
                with performance_timing("revise_letter", iteration=record.iteration):
                    letter = await self.letters.revise_letter(record, record.latest_feedback() or "")
                record = await self.store.transition(record.approval_id, LetterRegenerated(letter=letter))
            except Exception as e:
                error = _as_orchestration_error(e, "revision")
                await self._fail(record, error)
                raise error

            log_business_event(
                "letter_revised",
                approval_id=record.approval_id,
                task_id=record.task_id,
                iteration=record.iteration,
            )
            return await self._dispatch_for_approval(record)

    # Step 7

    async def deliver(self, approval_id: str) -> ApprovalRecord:
        """
        Submit an approved letter to the mail carrier and close the task.

        The carrier is called at most once per record. A record that shows a
        started delivery without a carrier reference is failed, not resent. A
        record that already has a carrier reference only finishes the CRM
        update and archive.

        Raises:
            ConflictError: The record is not approved or a delivery is already running
            IrrecoverableDeliveryError: Submission failed or its outcome is unknown
        """
        if approval_id in self._delivering:
            raise ConflictError("Delivery already in progress", approval_id=approval_id)

        self._delivering.add(approval_id)
        try:
            with correlation_context(approval_id=approval_id):
                return await self._deliver(approval_id)
        finally:
            self._delivering.discard(approval_id)

    async def _deliver(self, approval_id: str) -> ApprovalRecord:
        record = await self.store.get(approval_id)
        if not record.awaiting_delivery:
            raise ConflictError(
                f"Approval in state '{record.state.value}' cannot be delivered",
                approval_id=approval_id,
                state=record.state.value,
            )

        if record.tracking_id:
            logger.info("Resuming completion of delivered letter", tracking_id=record.tracking_id)
            return await self._complete(record)

        if record.delivery_started_at is not None:
            error = IrrecoverableDeliveryError(
                "Delivery was started but no carrier reference was recorded",
                step="delivery",
                delivery_started_at=record.delivery_started_at.isoformat(),
            )
            await self._fail(record, error)
            raise error

        address = record.mailing_address
        try:
            if address is None or not address.is_complete():
                raise IrrecoverableDeliveryError("Recipient address is incomplete", step="delivery")
            with performance_timing("render_final"):
                pdf = await self.renderer.render(record.current_letter, address)
        except Exception as e:
            error = _as_orchestration_error(e, "delivery")
            await self._fail(record, error)
            raise error

        record = await self.store.transition(approval_id, DeliveryStarted())
        try:
            with performance_timing("submit_letter"):
                receipt = await self.carrier.submit_letter(pdf, address)
        except Exception as e:
            if isinstance(e, IrrecoverableDeliveryError):
                error = e
            else:
                error = IrrecoverableDeliveryError(f"Mail carrier submission failed: {e}", step="delivery")
            await self._fail(record, error)
            raise error

        record = await self.store.transition(approval_id, DeliverySucceeded(tracking_id=receipt.tracking_id))
        log_business_event(
            "letter_submitted",
            approval_id=approval_id,
            task_id=record.task_id,
            tracking_id=receipt.tracking_id,
        )
        return await self._complete(record, pdf)

    async def _complete(self, record: ApprovalRecord, pdf: Optional[bytes] = None) -> ApprovalRecord:
        """CRM write-back, attachments and archive for a submitted letter."""
        description = f"Brief erfolgreich versendet. Tracking: {record.tracking_id}"
        try:
            await self.crm.update_task_status(record.task_id, self.settings.crm_status_completed, description)
        except OrchestrationError as e:
            # Letter is already in the mail; keep the record approved for resume
            logger.error("CRM completion update failed", tracking_id=record.tracking_id, error=str(e))
            await self.notifier.send_error_notification(
                record.task_id, e, approval_id=record.approval_id, step="crm_update"
            )
            raise

        if pdf is None and record.pdf_base64:
            pdf = base64.b64decode(record.pdf_base64)
        if pdf is not None:
            await self._attach_document(record, pdf)
        await self._create_follow_up(record)

        record = await self.store.transition(record.approval_id, WorkflowCompleted())
        await self.notifier.send_delivery_notification(record)
        return record

    async def _attach_document(self, record: ApprovalRecord, pdf: bytes) -> None:
        try:
            await self.crm.attach_document(record.task_id, f"Brief_{record.approval_id}.pdf", pdf)
        except OrchestrationError as e:
            logger.warning("PDF attachment failed", error=str(e))

    async def _create_follow_up(self, record: ApprovalRecord) -> None:
        if not self.settings.follow_up_task_enabled:
            return
        try:
            await self.crm.create_follow_up_task(
                record.task,
                self.settings.follow_up_subject,
                self.settings.follow_up_days,
            )
        except OrchestrationError as e:
            logger.warning("Follow-up task creation failed", error=str(e))

    # Operator actions

    async def cancel(
        self, approval_id: str, reason: Optional[str] = None, cancelled_by: str = "operator"
    ) -> ApprovalRecord:
        """
        Cancel a non-terminal approval.

        A pending record is rejected. An approved record whose delivery has
        not started is failed.

        Raises:
            ConflictError: The record is terminal, revising, or already being delivered
        """
        with correlation_context(approval_id=approval_id):
            record = await self.store.get(approval_id)
            reason = reason or "Cancelled by operator"

            if record.state == ApprovalState.PENDING_APPROVAL:
                record = await self.store.transition(
                    approval_id, RejectDecision(decided_by=cancelled_by, reason=reason)
                )
                await self._set_task_status(
                    record.task_id, self.settings.crm_status_error, REJECTED_DESCRIPTION
                )
            elif (
                record.awaiting_delivery
                and record.delivery_started_at is None
                and approval_id not in self._delivering
            ):
                record = await self.store.transition(
                    approval_id,
                    StepFailed(
                        error={
                            "error_code": "CANCELLED",
                            "message": reason,
                            "step": "cancel",
                            "cancelled_by": cancelled_by,
                        }
                    ),
                )
                await self._set_task_status(
                    record.task_id, self.settings.crm_status_error, f"Workflow failed: {reason}"
                )
            else:
                raise ConflictError(
                    f"Approval in state '{record.state.value}' cannot be cancelled",
                    approval_id=approval_id,
                    state=record.state.value,
                )

            log_business_event(
                "approval_cancelled",
                approval_id=approval_id,
                task_id=record.task_id,
                cancelled_by=cancelled_by,
                state=record.state.value,
            )
            self.notifier.progress(
                "approval_cancelled", reason, task_id=record.task_id, approval_id=approval_id
            )
            return record

    async def regenerate_pdf(self, approval_id: str) -> ApprovalRecord:
        """Re-render the preview of a pending record. The record state is unchanged."""
        record = await self.store.get(approval_id)
        if record.state != ApprovalState.PENDING_APPROVAL:
            raise ConflictError(
                f"Preview can only be regenerated while pending, not '{record.state.value}'",
                approval_id=approval_id,
                state=record.state.value,
            )

        pdf = await self.renderer.render(record.current_letter, record.mailing_address)
        record = await self.store.transition(
            approval_id, PreviewRendered(pdf_base64=base64.b64encode(pdf).decode("ascii"))
        )
        logger.info("Preview regenerated", approval_id=approval_id, size=len(pdf))
        return record

    async def resume_pending(self) -> Dict[str, List[str]]:
        """
        Resume records interrupted by a restart.

        Pending records whose letter never reached the approval channel are
        dispatched again. Approved records continue with delivery under the
        at-most-once rules. Records left in ``needs_improvement`` regenerate
        from their feedback.

        Returns:
            Approval ids grouped by outcome
        """
        summary: Dict[str, List[str]] = {"dispatched": [], "delivered": [], "revised": [], "failed": []}

        for record in await self.store.list_active(ApprovalState.PENDING_APPROVAL):
            if record.dispatched_at is not None:
                continue
            try:
                await self._dispatch_for_approval(record)
                summary["dispatched"].append(record.approval_id)
            except OrchestrationError as e:
                logger.error("Resumed dispatch failed", approval_id=record.approval_id, error=str(e))
                summary["failed"].append(record.approval_id)

        for record in await self.store.list_active(ApprovalState.APPROVED):
            try:
                await self.deliver(record.approval_id)
                summary["delivered"].append(record.approval_id)
            except OrchestrationError as e:
                logger.error("Resumed delivery failed", approval_id=record.approval_id, error=str(e))
                summary["failed"].append(record.approval_id)

        for record in await self.store.list_active(ApprovalState.NEEDS_IMPROVEMENT):
            try:
                await self._regenerate(record)
                summary["revised"].append(record.approval_id)
            except OrchestrationError as e:
                logger.error("Resumed revision failed", approval_id=record.approval_id, error=str(e))
                summary["failed"].append(record.approval_id)

        logger.info(
            "Pending approvals resumed",
            dispatched=len(summary["dispatched"]),
            delivered=len(summary["delivered"]),
            revised=len(summary["revised"]),
            failed=len(summary["failed"]),
        )
        return summary

    # Failure handling

    async def _fail(self, record: ApprovalRecord, error: OrchestrationError) -> ApprovalRecord:
        """Record a failure on the approval, write the CRM error marker and notify."""
        logger.error(
            "Workflow step failed",
            approval_id=record.approval_id,
            step=error.step,
            error_code=error.error_code,
            error=error.message,
        )
        failed = record
        try:
            failed = await self.store.transition(record.approval_id, StepFailed(error=error.to_dict()))
        except (ConflictError, ApprovalNotFoundError) as e:
            logger.error("Failure could not be recorded", approval_id=record.approval_id, error=str(e))

        await self._set_task_status(
            record.task_id, self.settings.crm_status_error, f"Workflow failed: {error.message}"
        )
        await self.notifier.send_error_notification(
            record.task_id, error, approval_id=record.approval_id, step=error.step
        )
        return failed

    async def _fail_before_record(self, task: TaskReference, error: OrchestrationError) -> None:
        """
        Report a failure that happened before an approval record existed.

        Retryable failures put the task back to the intake status so the next
        cycle picks it up again. Anything else gets the error marker.
        """
        logger.error(
            "Task failed before approval",
            step=error.step,
            error_code=error.error_code,
            error=error.message,
        )
        if error.retryable:
            await self._set_task_status(
                task.task_id, self.settings.task_status_filter, f"Retry pending: {error.message}"
            )
        else:
            await self._set_task_status(
                task.task_id, self.settings.crm_status_error, f"Workflow failed: {error.message}"
            )
        await self.notifier.send_error_notification(task.task_id, error, step=error.step)

    async def _set_task_status(self, task_id: str, status: str, description: str) -> bool:
        """Best-effort CRM status write-back."""
        try:
            await self.crm.update_task_status(task_id, status, description)
            return True
        except OrchestrationError as e:
            logger.warning("CRM status update failed", task_id=task_id, status=status, error=str(e))
            return False

    def get_status(self) -> Dict[str, Any]:
        return {
            "deliveries_in_progress": len(self._delivering),
            "max_revision_iterations": self.settings.max_revision_iterations,
        }
