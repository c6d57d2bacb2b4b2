"""
FastAPI Application — REST API + carrier webhooks.

Provides:
- Call ingestion (single and bulk upload) and call queries
- Evaluation results, transcripts, audio and exports
- Operator tools: retry, cancel, delete, cache, rate limits, performance
- Knowledge base CRUD for the jobs-to-be-done metric
- Conversation runs against live agents
- Telephony webhooks for voice instructions, status and recordings
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from api.bootstrap import Services, build_services
from channels.telephony.factory import TelephonyFactory
from config.settings import get_settings
from database.store_base import NotFoundError
from evaluation.exports import ExportFormat, export_bulk, export_call
from evaluation.rate_limit import RateLimitExceeded
from models.schemas import (
    CallMetadata, CallStatus, ExpectedJob, RunConfig, WebhookEvent, WebhookSubscription,
)
from storage.content_store import mime_type_for
from voice.providers import AllProvidersFailed, ProviderError, TelephonyProvider

logger = structlog.get_logger()

CUSTOMER_HEADER = "X-Customer-Id"
DEFAULT_CUSTOMER = "default-customer"


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class BulkStatusRequest(BaseModel):
    call_ids: list[str]


class BulkExportRequest(BaseModel):
    call_ids: list[str] = []
    format: ExportFormat = ExportFormat.JSON


class MetadataUpdateRequest(BaseModel):
    call_date: Optional[datetime] = None
    customer_phone_number: Optional[str] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    campaign_id: Optional[str] = None
    region: Optional[str] = None
    custom_fields: Optional[dict[str, Any]] = None


class WebhookRequest(BaseModel):
    url: str
    secret: str = ""
    events: list[WebhookEvent] = [WebhookEvent.CALL_COMPLETED, WebhookEvent.CALL_FAILED]


class KnowledgeBaseRequest(BaseModel):
    agent_id: str
    expected_jobs: list[ExpectedJob] = []
    language: str = "ar"
    notes: str = ""


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def services(request: Request) -> Services:
    return request.app.state.services


def customer_id(request: Request) -> str:
    return request.headers.get(CUSTOMER_HEADER) or DEFAULT_CUSTOMER


def rate_limited(endpoint: str):
    """Dependency: consume one request from the caller's window for this endpoint class."""
    async def _check(request: Request, response: Response) -> None:
        key = request.headers.get(CUSTOMER_HEADER) or (
            request.client.host if request.client else "anonymous"
        )
        decision = services(request).rate_limiter.check_and_consume(key, endpoint)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        response.headers.update(decision.headers())
    return Depends(_check)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Invalid date: {value}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_custom_fields(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise ValueError("Invalid input: customFields must be a JSON object")
    if not isinstance(value, dict):
        raise ValueError("Invalid input: customFields must be a JSON object")
    return value


def _xml(content: str) -> Response:
    return Response(content=content, media_type="application/xml")


def _download(data: bytes, filename: str, media_type: str) -> Response:
    return Response(content=data, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{filename}"'})


async def _webhook_payload(request: Request) -> dict[str, Any]:
    """Carriers post form-encoded bodies; accept JSON too."""
    if request.headers.get("content-type", "").startswith("application/json"):
        return await request.json()
    return dict(await request.form())


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(container: Optional[Services] = None) -> FastAPI:
    """Build the API around a Services container (built from settings when omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(get_settings())
        await app.state.services.start()
        logger.info("voiceqa_started", app=app.state.services.settings.app_name)
        yield
        await app.state.services.close()
        logger.info("voiceqa_stopped")

    app = FastAPI(
        title="VoiceQA API",
        description="Voice agent call evaluation and live conversation testing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RateLimitExceeded)
    async def too_many(request: Request, exc: RateLimitExceeded):
        return JSONResponse(status_code=429, headers=exc.decision.headers(), content={
            "detail": "Too many requests", "retryAfter": exc.decision.retry_after,
        })

    @app.exception_handler(AllProvidersFailed)
    @app.exception_handler(ProviderError)
    async def bad_gateway(request: Request, exc: Exception):
        classified = services(request).classifier.classify(exc)
        logger.error("provider_request_failed", path=request.url.path, kind=classified.kind.value,
                     error=classified.technical_message)
        return JSONResponse(status_code=502, content={
            "detail": classified.user_message, "type": classified.kind.value,
        })


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        svc = services(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "providers": svc.registry.list_providers(),
            "activeCalls": svc.monitor.active_calls,
        }

    # ══════════════════════════════════════════════════════════
    #  CALL INGESTION
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/calls/upload", status_code=201, dependencies=[rate_limited("upload")])
    async def upload_call(
        request: Request,
        file: UploadFile = File(...),
        callDate: str = Form(""),
        customerPhoneNumber: str = Form(""),
        agentId: str = Form(""),
        agentName: str = Form(""),
        campaignId: str = Form(""),
        region: str = Form(""),
        customFields: str = Form(""),
    ):
        metadata = CallMetadata(
            call_date=_parse_date(callDate),
            customer_phone_number=customerPhoneNumber,
            agent_id=agentId,
            agent_name=agentName,
            campaign_id=campaignId,
            region=region,
            custom_fields=_parse_custom_fields(customFields),
        )
        data = await file.read()
        return await services(request).calls.upload(
            data, file.filename or "", customer_id(request), metadata,
        )

    @app.post("/v1/calls/bulk-upload", status_code=201, dependencies=[rate_limited("bulk-upload")])
    async def bulk_upload_calls(
        request: Request,
        files: list[UploadFile] = File(...),
        agentId: str = Form(""),
        agentName: str = Form(""),
        campaignId: str = Form(""),
        region: str = Form(""),
    ):
        metadata = CallMetadata(agent_id=agentId, agent_name=agentName,
                                campaign_id=campaignId, region=region)
        payload = [(f.filename or "", await f.read()) for f in files]
        return await services(request).calls.bulk_upload(payload, customer_id(request), metadata)

    # ══════════════════════════════════════════════════════════
    #  CALL QUERIES
    # ══════════════════════════════════════════════════════════

    @app.get("/v1/calls", dependencies=[rate_limited("api")])
    async def list_calls(
        request: Request,
        agentId: str = "",
        status: Optional[CallStatus] = None,
        dateFrom: str = "",
        dateTo: str = "",
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
    ):
        result = await services(request).calls.list(
            customer_id(request), agentId, status,
            _parse_date(dateFrom), _parse_date(dateTo), page, limit,
        )
        result["calls"] = [c.model_dump(mode="json", exclude={"transcripts"}) for c in result["calls"]]
        return result

    @app.post("/v1/calls/bulk-status", dependencies=[rate_limited("api")])
    async def bulk_status(request: Request, req: BulkStatusRequest):
        return {"calls": await services(request).calls.bulk_status(req.call_ids)}

    @app.get("/v1/calls/analytics", dependencies=[rate_limited("api")])
    async def call_analytics(request: Request, dateFrom: str = "", dateTo: str = ""):
        return await services(request).calls.analytics(
            customer_id(request), _parse_date(dateFrom), _parse_date(dateTo),
        )

    @app.post("/v1/calls/export-bulk", dependencies=[rate_limited("api")])
    async def export_calls(request: Request, req: BulkExportRequest):
        calls = services(request).calls
        if req.call_ids:
            records = [await calls.get(cid, customer_id(request)) for cid in req.call_ids]
        else:
            records = (await calls.list(customer_id(request), limit=100))["calls"]
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return _download(export_bulk(records, req.format),
                         f"calls-export-{stamp}.{req.format.extension}", req.format.media_type)

    @app.get("/v1/calls/{call_id}", dependencies=[rate_limited("api")])
    async def get_call(request: Request, call_id: str):
        record = await services(request).calls.get(call_id, customer_id(request))
        return record.model_dump(mode="json")

    @app.get("/v1/calls/{call_id}/evaluation", dependencies=[rate_limited("api")])
    async def get_evaluation(request: Request, call_id: str):
        record = await services(request).calls.get(call_id, customer_id(request))
        if record.evaluation is None:
            raise HTTPException(404, f"Evaluation for call {call_id} is not available "
                                     f"(status: {record.status.value})")
        return {"callId": call_id, "status": record.status.value, **record.evaluation.to_dict()}

    @app.get("/v1/calls/{call_id}/transcript", dependencies=[rate_limited("api")])
    async def get_transcript(request: Request, call_id: str):
        record = await services(request).calls.get(call_id, customer_id(request))
        return {
            "callId": call_id,
            "language": record.language,
            "transcripts": [t.model_dump(mode="json") for t in record.transcripts],
        }

    @app.get("/v1/calls/{call_id}/audio", dependencies=[rate_limited("api")])
    async def get_call_audio(request: Request, call_id: str):
        data, file_name = await services(request).calls.get_audio(call_id, customer_id(request))
        return Response(content=data, media_type=mime_type_for(file_name))

    @app.get("/v1/calls/{call_id}/export", dependencies=[rate_limited("api")])
    async def export_single_call(request: Request, call_id: str,
                                 format: ExportFormat = ExportFormat.JSON):
        record = await services(request).calls.get(call_id, customer_id(request))
        return _download(export_call(record, format),
                         f"call-{call_id}.{format.extension}", format.media_type)

    # ══════════════════════════════════════════════════════════
    #  CALL OPERATIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/calls/{call_id}/retry", dependencies=[rate_limited("api")])
    async def retry_call(request: Request, call_id: str):
        svc = services(request)
        await svc.calls.get(call_id, customer_id(request))
        record = await svc.processor.retry(call_id)
        return {"callId": call_id, "status": record.status.value, "retryCount": record.retry_count}

    @app.post("/v1/calls/{call_id}/cancel", dependencies=[rate_limited("api")])
    async def cancel_call(request: Request, call_id: str):
        svc = services(request)
        await svc.calls.get(call_id, customer_id(request))
        record = await svc.processor.cancel(call_id)
        return {"callId": call_id, "status": record.status.value, "error": record.error}

    @app.delete("/v1/calls/{call_id}", dependencies=[rate_limited("api")])
    async def delete_call(request: Request, call_id: str, permanent: bool = False):
        await services(request).calls.delete(call_id, permanent)
        return {"callId": call_id, "deleted": True, "permanent": permanent}

    @app.patch("/v1/calls/{call_id}/metadata", dependencies=[rate_limited("api")])
    async def update_call_metadata(request: Request, call_id: str, req: MetadataUpdateRequest):
        record = await services(request).calls.update_metadata(call_id, req.model_dump(exclude_none=True))
        return {"callId": call_id, "metadata": record.metadata.model_dump(mode="json")}

    # ══════════════════════════════════════════════════════════
    #  WEBHOOK SUBSCRIPTIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/webhooks", status_code=201)
    async def add_webhook(request: Request, req: WebhookRequest):
        sub = WebhookSubscription(customer_id=customer_id(request), url=req.url,
                                  secret=req.secret, events=req.events)
        services(request).webhooks.add_subscription(sub)
        return {"customerId": sub.customer_id, "url": sub.url,
                "events": [e.value for e in sub.events], "signed": bool(sub.secret)}

    @app.delete("/v1/webhooks")
    async def remove_webhook(request: Request, url: str):
        if not services(request).webhooks.remove_subscription(customer_id(request), url):
            raise NotFoundError(f"Webhook {url} not found")
        return {"removed": True}

    # ══════════════════════════════════════════════════════════
    #  OPERATOR TOOLS
    # ══════════════════════════════════════════════════════════

    @app.get("/v1/performance/calls/{call_id}")
    async def call_performance(request: Request, call_id: str):
        metrics = services(request).monitor.get_metrics(call_id)
        if metrics is None:
            raise NotFoundError(f"No performance metrics for call {call_id}")
        return metrics

    @app.get("/v1/performance/aggregate")
    async def aggregate_performance(request: Request, customerId: str = "",
                                    dateFrom: str = "", dateTo: str = ""):
        return services(request).monitor.aggregate(customerId, _parse_date(dateFrom), _parse_date(dateTo))

    @app.delete("/v1/performance")
    async def clear_performance(request: Request, callId: str = ""):
        services(request).monitor.clear(callId)
        return {"cleared": callId or "all"}

    @app.get("/v1/cache/stats")
    async def cache_stats(request: Request):
        return services(request).cache.stats()

    @app.delete("/v1/cache")
    async def clear_cache(request: Request, pattern: str = ""):
        cache = services(request).cache
        removed = cache.clear_pattern(pattern) if pattern else cache.clear_all()
        return {"removed": removed, "pattern": pattern or "*"}

    @app.get("/v1/rate-limit/status")
    async def rate_limit_status(request: Request, key: str = "", endpoint: str = "api"):
        return services(request).rate_limiter.status(key or customer_id(request), endpoint)

    @app.get("/v1/rate-limit/stats")
    async def rate_limit_stats(request: Request):
        return services(request).rate_limiter.stats()

    @app.delete("/v1/rate-limit")
    async def rate_limit_reset(request: Request, key: str = "", endpoint: str = ""):
        removed = services(request).rate_limiter.reset(key or customer_id(request), endpoint)
        return {"reset": removed}

    # ══════════════════════════════════════════════════════════
    #  KNOWLEDGE BASE
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/knowledge-base", status_code=201)
    async def save_knowledge_base(request: Request, req: KnowledgeBaseRequest):
        entry = await services(request).knowledge.create_or_update(
            req.agent_id, customer_id(request), req.expected_jobs, req.language, req.notes,
        )
        return entry.model_dump(mode="json")

    @app.get("/v1/knowledge-base")
    async def list_knowledge_bases(request: Request):
        entries = await services(request).knowledge.find_by_customer(customer_id(request))
        return [e.model_dump(mode="json") for e in entries]

    @app.get("/v1/knowledge-base/{agent_id}")
    async def get_knowledge_base(request: Request, agent_id: str):
        entry = await services(request).knowledge.find_by_agent(agent_id)
        if entry is None:
            raise NotFoundError(f"Knowledge base for agent {agent_id} not found")
        return entry.model_dump(mode="json")

    @app.delete("/v1/knowledge-base/{agent_id}")
    async def delete_knowledge_base(request: Request, agent_id: str):
        await services(request).knowledge.delete(agent_id)
        return {"agentId": agent_id, "deleted": True}

    @app.post("/v1/knowledge-base/{agent_id}/jobs", status_code=201)
    async def add_knowledge_base_job(request: Request, agent_id: str, job: ExpectedJob):
        entry = await services(request).knowledge.add_job(agent_id, job)
        return entry.model_dump(mode="json")

    @app.delete("/v1/knowledge-base/{agent_id}/jobs/{job_id}")
    async def remove_knowledge_base_job(request: Request, agent_id: str, job_id: str):
        entry = await services(request).knowledge.remove_job(agent_id, job_id)
        return entry.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  CONVERSATION RUNS
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/test-runs", status_code=201, dependencies=[rate_limited("api")])
    async def create_test_run(request: Request, config: RunConfig):
        run = await services(request).runner.create(config, customer_id(request))
        return run.model_dump(mode="json")

    @app.get("/v1/test-runs", dependencies=[rate_limited("api")])
    async def list_test_runs(request: Request, dateFrom: str = "", dateTo: str = ""):
        runs = await services(request).runner.list(_parse_date(dateFrom), _parse_date(dateTo))
        return [r.model_dump(mode="json") for r in runs]

    @app.get("/v1/test-runs/analytics", dependencies=[rate_limited("api")])
    async def test_run_analytics(request: Request, dateFrom: str = "", dateTo: str = ""):
        return await services(request).runner.analytics(_parse_date(dateFrom), _parse_date(dateTo))

    @app.get("/v1/test-runs/audio/{filename}")
    async def test_run_audio(request: Request, filename: str):
        data = services(request).runner.get_audio(filename)
        return Response(content=data, media_type="audio/mpeg")

    @app.get("/v1/test-runs/{run_id}", dependencies=[rate_limited("api")])
    async def get_test_run(request: Request, run_id: str):
        run = await services(request).runner.get(run_id)
        return run.model_dump(mode="json")

    @app.post("/v1/test-runs/{run_id}/cancel", dependencies=[rate_limited("api")])
    async def cancel_test_run(request: Request, run_id: str):
        run = await services(request).runner.cancel(run_id)
        return {"id": run_id, "status": run.status.value, "error": run.error}

    # ══════════════════════════════════════════════════════════
    #  TELEPHONY WEBHOOKS
    # ══════════════════════════════════════════════════════════

    def _telephony(request: Request):
        return services(request).runner.telephony()

    @app.post("/v1/telephony/webhook/voice")
    async def telephony_voice_webhook(request: Request, testRunId: str = ""):
        """Call instructions for the current utterance, or an empty answer."""
        xml = await services(request).runner.voice_instructions(testRunId)
        return _xml(xml)

    @app.post("/v1/telephony/webhook/status")
    async def telephony_status_webhook(request: Request, testRunId: str = ""):
        payload = await _webhook_payload(request)
        parsed = _telephony(request).parse_webhook(payload)
        logger.info("telephony_call_status", test_run_id=testRunId,
                    call_sid=parsed["call_sid"], status=parsed["call_status"])
        return {"status": "ok"}

    @app.post("/v1/telephony/webhook/recording")
    async def telephony_recording_webhook(request: Request):
        payload = await _webhook_payload(request)
        provider = TelephonyFactory.detect_provider_from_webhook(payload)
        client = _telephony(request)
        if provider is not None and provider != TelephonyProvider(client.name):
            logger.warning("telephony_provider_mismatch", expected=client.name, got=provider.value)
        parsed = client.parse_webhook(payload)

        if not parsed["recording_url"] or not parsed["call_sid"]:
            logger.warning("recording_webhook_incomplete", keys=sorted(payload))
            return {"status": "ignored", "reason": "missing RecordingUrl or CallSid"}
        if parsed["recording_status"] and parsed["recording_status"] != "completed":
            return {"status": "ignored", "reason": f"recording {parsed['recording_status']}"}

        runner = services(request).runner
        await runner.process_agent_recording(parsed["call_sid"], parsed["recording_url"])

        if not parsed["recording_status"]:
            # the <Record> action leg: tell the carrier to come back for the next utterance
            run = await services(request).store.find_run_by_call_sid(parsed["call_sid"])
            if run is not None:
                return _xml(client.call_instructions(action_url=runner.voice_webhook_url(run.id)))
        return {"status": "processed"}

    @app.get("/v1/telephony/calls/{call_sid}")
    async def telephony_call_details(request: Request, call_sid: str):
        return await _telephony(request).get_call_details(call_sid)

    @app.get("/v1/telephony/calls/{call_sid}/recordings")
    async def telephony_call_recordings(request: Request, call_sid: str):
        return await _telephony(request).get_recordings(call_sid)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
