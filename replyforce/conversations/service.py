"""Worker-side ingestion: dedup, state resolution, pipeline run, persistence, fan-out."""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from ..agents.crm import build_crm_payload
from ..agents.orchestrator import PipelineOrchestrator, build_fallback_output
from ..agents.schemas import ConversationTurn, PipelineInput, PipelineOutput, TurnRole
from ..channels import get_adapter
from ..config import PipelineSettings
from .models import ConversationStatus, JobProgress, NormalizedMessage, TokenBudget
from .repository import (
    BrandConfigurationProvider,
    ConversationRepository,
    StaticBrandConfigurationProvider,
)
from .schemas import (
    DeliveryRequest,
    InboundMessageJob,
    IngestionResult,
    IngestionStatus,
    RealtimeEvent,
)

if TYPE_CHECKING:
    from ..queues import QueueBackends

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200
REALTIME_PREVIEW_LENGTH = 100


class IngestionCoordinator:
    """Run one inbound platform message through the decision pipeline.

    The coordinator owns the at-least-once discipline around the orchestrator:
    a dedup key is claimed before any state is touched and released again if
    a later step fails, and recorded job progress lets the redelivered job
    pick up where it stopped. Updates for one contact are serialized with a
    per-contact lock that is dropped once no task holds it.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        orchestrator: PipelineOrchestrator,
        backends: QueueBackends,
        *,
        settings: PipelineSettings | None = None,
        brand_provider: BrandConfigurationProvider | None = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._backends = backends
        self._settings = settings or PipelineSettings()
        self._brands = brand_provider or StaticBrandConfigurationProvider()
        self._contact_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def backends(self) -> QueueBackends:
        return self._backends

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Intake

    async def enqueue_inbound(self, messages: Iterable[NormalizedMessage]) -> list[str]:
        """Queue normalized messages; returns the job ids that were newly queued."""

        queued: list[str] = []
        for message in messages:
            job = InboundMessageJob.from_message(message)
            if await self._backends.inbound.enqueue(job):
                logger.info("Enqueued message %s from %s", message.platform_message_id, message.channel.value)
                queued.append(job.job_id)
            else:
                logger.warning("Job %s already queued", job.job_id)
        return queued

    async def enqueue_webhook_event(self, channel: str, payload: Mapping[str, Any]) -> list[str]:
        adapter = get_adapter(channel)
        return await self.enqueue_inbound(adapter.parse_incoming(payload))

    # ------------------------------------------------------------------
    # Processing

    async def process_inbound(
        self, job: InboundMessageJob, budget: TokenBudget | None = None
    ) -> IngestionResult:
        """Run one queued job through the pipeline and its follow-up work.

        Every completed step is recorded as :class:`JobProgress`. When a step
        fails the dedup claim is released and the error propagates; the
        redelivered job resumes after the last recorded step, so the inbound
        message is stored once, the lead is blended once and the reply is
        queued once.
        """

        started = time.perf_counter()
        dedup_key = job.dedup_key
        if not await self._backends.dedup.claim(dedup_key, self._settings.dedup_ttl_seconds):
            logger.warning("Duplicate inbound event: %s", dedup_key)
            return IngestionResult(status=IngestionStatus.DUPLICATE, job_id=job.job_id, budget=budget)

        try:
            return await self._process_claimed(job, budget, started)
        except BaseException:
            await self._backends.dedup.release(dedup_key)
            raise

    def _contact_lock(self, key: str) -> asyncio.Lock:
        lock = self._contact_locks.get(key)
        if lock is None:
            lock = self._contact_locks[key] = asyncio.Lock()
        return lock

    def _advance(self, progress: JobProgress, stage: str) -> None:
        progress.stages.add(stage)
        self._repository.save_job_progress(progress)

    async def _process_claimed(
        self, job: InboundMessageJob, budget: TokenBudget | None, started: float
    ) -> IngestionResult:
        repo = self._repository
        account = repo.find_channel_account(job.channel, job.recipient_id)
        if account is None:
            logger.warning(
                "No channel account for %s page %s; dropping %s",
                job.channel.value,
                job.recipient_id,
                job.job_id,
            )
            return IngestionResult(status=IngestionStatus.IGNORED, job_id=job.job_id, budget=budget)

        contact = repo.get_or_create_contact(
            account.tenant_id, job.channel, job.sender_id, job.sender_name
        )
        progress = repo.get_job_progress(job.dedup_key) or JobProgress(key=job.dedup_key)
        if progress.stages:
            logger.info("Resuming job %s after: %s", job.job_id, ", ".join(sorted(progress.stages)))

        async with self._contact_lock(f"{account.tenant_id}:{contact.id}"):
            if not progress.done("stored"):
                conversation = repo.get_or_create_open_conversation(
                    account.tenant_id, contact.id, account.id
                )
                turns = repo.recent_turns(conversation.id, self._settings.history_limit)
                prior = repo.latest_lead(account.tenant_id, contact.id)
                stored = repo.add_message(
                    conversation.id,
                    TurnRole.CONTACT,
                    job.text,
                    platform_message_id=job.platform_message_id,
                    content_type=job.content_type,
                    media_url=job.media_url,
                )
                progress.message_id = stored.id
                progress.conversation_id = conversation.id
                progress.data = PipelineInput(
                    message_id=stored.id,
                    tenant_id=account.tenant_id,
                    conversation_id=conversation.id,
                    channel=job.channel,
                    text=job.text,
                    content_type=job.content_type,
                    media_url=job.media_url,
                    sender_id=job.sender_id,
                    sender_name=contact.name or job.sender_name,
                    history=tuple(
                        ConversationTurn(role=turn.role, content=turn.content, timestamp=turn.created_at)
                        for turn in turns
                    ),
                    brand_voice=self._brands.brand_voice(account.tenant_id, account.company_name),
                    prior_lead=prior.snapshot() if prior else None,
                )
                self._advance(progress, "stored")
            data = progress.data

            if not progress.done("analyzed"):
                budget = budget or repo.get_token_budget(account.tenant_id)
                progress.output = await self._run_pipeline(data, budget, started)
                self._advance(progress, "analyzed")
            output = progress.output

            if not progress.done("persisted"):
                repo.annotate_message(progress.message_id, output.analysis(), output.reply.confidence)
                lead = repo.upsert_lead(account.tenant_id, contact.id, output.lead_score)
                status = (
                    ConversationStatus.NEEDS_HUMAN
                    if output.reply.requires_human
                    else ConversationStatus.OPEN
                )
                repo.touch_conversation(
                    progress.conversation_id,
                    lead_id=lead.id,
                    last_message_at=job.sent_at,
                    preview=job.text[:PREVIEW_LENGTH],
                    status=status,
                )
                self._advance(progress, "persisted")

        conversation_id = progress.conversation_id
        auto_replied = (
            account.auto_reply_enabled
            and bool(output.reply.text)
            and not output.reply.requires_human
            and output.guardrail_input.passed
        )
        if auto_replied:
            if not progress.done("delivered"):
                adapter = get_adapter(job.channel)
                await self._backends.delivery.enqueue(
                    DeliveryRequest(
                        channel=job.channel,
                        recipient_id=job.sender_id,
                        text=output.reply.text,
                        page_id=account.page_id,
                        tenant_id=account.tenant_id,
                        conversation_id=conversation_id,
                        payload=adapter.build_outgoing_payload(job.sender_id, output.reply.text),
                    )
                )
                self._advance(progress, "delivered")
            if not progress.done("reply_recorded"):
                repo.add_message(conversation_id, TurnRole.AUTOMATED_REPLY, output.reply.text)
                repo.increment_message_count(conversation_id)
                self._advance(progress, "reply_recorded")

        conversation = repo.get_conversation(conversation_id)
        if not progress.done("crm"):
            await self._backends.crm.submit(
                build_crm_payload(data, output, message_count=conversation.message_count)
            )
            self._advance(progress, "crm")
        if not progress.done("realtime"):
            await self._backends.realtime.publish(
                RealtimeEvent(
                    tenant_id=account.tenant_id,
                    conversation_id=conversation_id,
                    message_id=progress.message_id,
                    contact_name=contact.name,
                    preview=job.text[:REALTIME_PREVIEW_LENGTH],
                    channel=job.channel,
                    lead_tag=output.lead_score.tag,
                    auto_replied=auto_replied,
                )
            )
            self._advance(progress, "realtime")
        if output.tokens_used and not progress.done("tokens"):
            budget = repo.increment_token_usage(account.tenant_id, output.tokens_used)
            self._advance(progress, "tokens")
        repo.clear_job_progress(progress.key)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "Processed message %s: lead=%s(%s) reply=%s in %sms",
            job.platform_message_id,
            output.lead_score.tag.value,
            output.lead_score.score,
            "human" if output.reply.requires_human else "auto",
            elapsed_ms,
        )
        return IngestionResult(
            status=IngestionStatus.PROCESSED,
            job_id=job.job_id,
            message_id=progress.message_id,
            conversation_id=conversation_id,
            output=output,
            auto_replied=auto_replied,
            budget=budget or repo.get_token_budget(account.tenant_id),
        )

    async def _run_pipeline(
        self, data: PipelineInput, budget: TokenBudget, started: float
    ) -> PipelineOutput:
        orchestrator = self._orchestrator
        if budget.templates_only:
            logger.warning("Token budget exhausted for tenant %s; templates only", data.tenant_id)
            orchestrator = orchestrator.templates_only()
        try:
            return await orchestrator.process(data)
        except Exception:
            logger.exception("Pipeline failed for message %s; using fallback output", data.message_id)
            return build_fallback_output(round((time.perf_counter() - started) * 1000, 2))
