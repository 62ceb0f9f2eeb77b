"""Auto-Patch HTTP API: GitHub webhook ingestion, sync trigger, dashboards.

The webhook endpoint authenticates and parses push events, then hands them
to the sync orchestrator as a background task so GitHub gets its 200
immediately. Everything else is a thin read/trigger surface over the
commit ledger and the orchestrator.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from .config import get_config
from .webhook import (
    DELIVERY_HEADER,
    EVENT_HEADER,
    SIGNATURE_HEADER,
    PushEvent,
    verify_signature,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# =============================================================================
# Pydantic request models
# =============================================================================


class SyncRequest(BaseModel):
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)


# =============================================================================
# Background work
# =============================================================================


async def run_push_batch(event: PushEvent) -> None:
    """Run a push batch outside the request; failures are logged only."""
    from .sync import get_sync_orchestrator

    try:
        result = await get_sync_orchestrator().handle_push(event)
    except Exception:
        logger.exception("Error handling push event for %s", event.full_name)
        return
    if result is not None:
        logger.info("Push event processed for %s", event.full_name)


# =============================================================================
# Application factory
# =============================================================================


def create_app() -> FastAPI:
    """Create the Auto-Patch HTTP API application."""

    app = FastAPI(
        title="Auto-Patch API",
        description="Commit security analysis and automated remediation",
        version=VERSION,
    )

    # --------------------------------------------------------------------- #
    # WEBHOOK
    # --------------------------------------------------------------------- #

    @app.post("/webhook/github", response_class=PlainTextResponse)
    async def github_webhook(request: Request, background_tasks: BackgroundTasks) -> str:
        """Receive a GitHub webhook delivery."""
        secret = get_config().github.webhook_secret
        if not secret:
            logger.error("GITHUB_WEBHOOK_SECRET is not set")
            raise HTTPException(status_code=500, detail="Server misconfiguration")

        body = await request.body()
        delivery = request.headers.get(DELIVERY_HEADER)
        if not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
            logger.warning("Invalid GitHub webhook signature, delivery: %s", delivery)
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("Failed to parse webhook JSON: %s", exc)
            raise HTTPException(status_code=400, detail="Invalid JSON") from exc

        if request.headers.get(EVENT_HEADER) == "push":
            try:
                event = PushEvent.from_payload(payload)
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.warning("Unusable push payload, delivery %s: %s", delivery, exc)
            else:
                background_tasks.add_task(run_push_batch, event)

        return "OK"

    # --------------------------------------------------------------------- #
    # ANALYSES
    # --------------------------------------------------------------------- #

    @app.get("/api/analyses")
    async def list_analyses() -> list[dict[str, Any]]:
        """All analyses, newest first, with their issues."""
        from .ledger import get_commit_ledger

        try:
            analyses = await get_commit_ledger().list_all()
        except Exception as exc:
            logger.exception("Failed to fetch analyses")
            raise HTTPException(status_code=500, detail="Failed to fetch analyses") from exc
        return [analysis.to_dict() for analysis in analyses]

    # --------------------------------------------------------------------- #
    # SYNC
    # --------------------------------------------------------------------- #

    @app.post("/api/sync")
    async def sync_repository(request: SyncRequest) -> dict[str, Any]:
        """Analyze the repository's recent commits that are not yet in the ledger."""
        from .sync import PipelineBusyError, get_sync_orchestrator

        try:
            result = await get_sync_orchestrator().sync_repository(request.owner, request.repo)
        except PipelineBusyError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail="Failed to sync commits") from exc

        return {
            "success": True,
            "message": f"Sync completed for {result.repository}",
            **result.to_dict(),
        }

    # --------------------------------------------------------------------- #
    # REPORTS
    # --------------------------------------------------------------------- #

    @app.get("/api/user-report")
    async def user_report(username: str = Query(..., min_length=1)) -> dict[str, Any]:
        """Security report for one commit author."""
        from .analysis import get_analysis_adapter
        from .ledger import get_commit_ledger
        from .reports import build_author_report

        try:
            report = await build_author_report(
                username, get_commit_ledger(), get_analysis_adapter()
            )
        except Exception as exc:
            logger.exception("Error generating report for %s", username)
            raise HTTPException(
                status_code=500, detail="Failed to generate user report"
            ) from exc
        return {"success": True, "data": report}

    # --------------------------------------------------------------------- #
    # HEALTH
    # --------------------------------------------------------------------- #

    @app.get("/health")
    async def health() -> dict[str, Any]:
        from .sync import get_sync_orchestrator

        return {
            "status": "ok",
            "syncing": get_sync_orchestrator().lock.held,
            "version": VERSION,
        }

    return app


# =============================================================================
# MAIN
# =============================================================================


def main() -> None:
    """Entry point for the HTTP API server.

    Always a single process: the sync lock lives in this process's memory.
    """
    import uvicorn

    config = get_config()
    logging.basicConfig(
        level=config.api.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = config.api.host
    port = config.api.port

    # Allow CLI overrides
    for arg in sys.argv[1:]:
        if arg.startswith("--host="):
            host = arg.split("=", 1)[1]
        elif arg.startswith("--port="):
            port = int(arg.split("=", 1)[1])

    uvicorn.run(
        "autopatch.api:create_app",
        factory=True,
        host=host,
        port=port,
        access_log=config.api.access_log,
    )


if __name__ == "__main__":
    main()
