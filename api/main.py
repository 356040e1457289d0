"""
FastAPI Application — HTTP trigger surface for the ticket pipeline.

Provides:
- Processor trigger (one dispatch cycle per call; a scheduler supplies cadence)
  and a cache connectivity check
- Ticket submission, lookup, close and re-notify
- Technician views of open tickets: overall, per priority, dashboard
- A submitter's own open tickets
- Admin endpoints for the retention sweep and the cache failover state
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.logging_setup import configure_logging
from config.settings import get_settings
from core.bootstrap import Pipeline, build_pipeline
from core.errors import TransientIOError
from database.store_failover import FailoverTicketStore
from models.schemas import Ticket, TicketPriority

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class TicketCreateRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    user_email: str = ""
    priority: str = "low"
    image_urls: list[str] = []


class CloseTicketRequest(BaseModel):
    actor: str = Field(min_length=1)


class SweepRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=0)


def _ticket_dict(ticket: Ticket) -> dict[str, Any]:
    return ticket.model_dump(mode="json")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    if pipeline is None:
        settings = get_settings()
        configure_logging(debug=settings.debug, json_logs=settings.json_logs)
        pipeline = build_pipeline(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await pipeline.start()
        logger.info("ticket_api_started", app_name=pipeline.settings.app_name)
        yield
        await pipeline.shutdown()
        logger.info("ticket_api_stopped")

    app = FastAPI(
        title="Ticket Pipeline API",
        description="Priority-cascade support ticket processing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TransientIOError)
    async def transient_error_handler(request: Request, exc: TransientIOError):
        logger.error("request_backend_unavailable", path=request.url.path,
                     backend=exc.backend, operation=exc.operation, error=str(exc))
        return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("request_failed", path=request.url.path,
                     error=str(exc), error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})

    service = pipeline.service

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        store = pipeline.store
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "queue_backend": pipeline.settings.queue.backend,
            "cache_backend": store.name,
            "cache_state": store.state.value if isinstance(store, FailoverTicketStore) else "healthy",
            "ack_mode": pipeline.dispatcher.ack_mode.value,
            "tracked_acks": len(pipeline.consumer.tracker),
        }

    # ══════════════════════════════════════════════════════════
    #  PROCESSOR
    # ══════════════════════════════════════════════════════════

    @app.post("/api/processor/process-tickets")
    async def process_tickets():
        result = await pipeline.dispatcher.run_cycle()
        return {"success": True, **result.to_dict()}

    @app.get("/api/processor/manual-trigger")
    async def manual_trigger():
        result = await pipeline.dispatcher.run_cycle()
        return {"success": True, "trigger": "manual", **result.to_dict()}

    @app.get("/api/processor/cache-test")
    async def cache_test():
        report = await service.check_cache()
        return {"success": True, **report}

    # ══════════════════════════════════════════════════════════
    #  TICKETS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/tickets", status_code=201)
    async def submit_ticket(req: TicketCreateRequest):
        try:
            priority = TicketPriority.parse(req.priority)
        except ValueError as e:
            raise HTTPException(400, str(e))
        ticket = Ticket(
            title=req.title,
            description=req.description,
            user_email=req.user_email,
            priority=priority,
            image_urls=req.image_urls,
        )
        message_id = await service.submit_ticket(ticket)
        return {"success": True, "ticket_id": ticket.id, "message_id": message_id,
                "priority": priority.value}

    @app.get("/api/tickets/{ticket_id}")
    async def get_ticket(ticket_id: str):
        ticket = await service.get_ticket(ticket_id)
        if ticket is None:
            raise HTTPException(404, "Ticket not found")
        return _ticket_dict(ticket)

    @app.post("/api/tickets/{ticket_id}/close")
    async def close_ticket(ticket_id: str, req: CloseTicketRequest):
        result = await service.close_ticket(ticket_id, req.actor)
        if not result.found:
            raise HTTPException(404, "Ticket not found")
        return {"success": True, **result.to_dict()}

    @app.post("/api/tickets/{ticket_id}/notify")
    async def notify_ticket(ticket_id: str):
        result = await service.notify_ticket(ticket_id)
        if result is None:
            raise HTTPException(404, "Ticket not found")
        return result.to_dict()

    # ══════════════════════════════════════════════════════════
    #  TECHNICIANS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/technicians/tickets")
    async def open_tickets():
        tickets = await service.list_open()
        return {"count": len(tickets), "tickets": [_ticket_dict(t) for t in tickets]}

    @app.get("/api/technicians/tickets/priority/{priority}")
    async def tickets_by_priority(priority: str):
        try:
            tickets = await service.list_by_priority(priority)
        except ValueError as e:
            raise HTTPException(400, str(e))
        return {
            "priority": priority.lower(),
            "count": len(tickets),
            "tickets": [_ticket_dict(t) for t in tickets],
        }

    @app.get("/api/technicians/dashboard")
    async def technician_dashboard():
        board = await service.dashboard()
        return {
            "success": True,
            "ticket_counts": board["ticket_counts"],
            "recent_tickets": [_ticket_dict(t) for t in board["recent_tickets"]],
        }

    # ══════════════════════════════════════════════════════════
    #  USERS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/users/{user_email}/tickets")
    async def user_tickets(user_email: str):
        tickets = await service.list_for_user(user_email)
        return {
            "success": True,
            "user_email": user_email,
            "count": len(tickets),
            "tickets": [_ticket_dict(t) for t in tickets],
        }

    # ══════════════════════════════════════════════════════════
    #  ADMIN
    # ══════════════════════════════════════════════════════════

    @app.post("/api/admin/sweep")
    async def sweep(req: Optional[SweepRequest] = None):
        retention = req.retention_days if req else None
        result = await service.sweep_and_archive(retention)
        return {"success": True, **result.to_dict()}

    @app.get("/api/admin/cache")
    async def cache_stats():
        return await pipeline.store.stats()

    @app.post("/api/admin/cache/reset")
    async def cache_reset():
        store = pipeline.store
        if not isinstance(store, FailoverTicketStore):
            return {"success": False, "error": f"{store.name} store has no failover state"}
        previous = await store.reset()
        return {"success": True, "previous": previous.value, "state": store.state.value}

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
