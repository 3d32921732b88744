import logging
import re
import secrets
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Response

from errors import EventRejected, StorageFailure
from models import UUID_PATTERN, DigestIn, MarkSentIn, PlaceIn, ProcessEventsIn
from service_events import EventService
from settings import LOG_FORMAT, Settings, settings

logger = logging.getLogger(__name__)


def bearer_auth(cfg: Settings):
    """Dependency comparing `Authorization: Bearer <token>` to the configured secret."""

    def check(authorization: Optional[str] = Header(None)) -> None:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing bearer token")
        token = authorization[len("Bearer "):]
        if not cfg.event_api_token or not secrets.compare_digest(token, cfg.event_api_token):
            raise HTTPException(status_code=401, detail="Invalid bearer token")

    return check


def build_app(cfg: Settings, svc: Optional[EventService] = None) -> FastAPI:
    """Create the API. Pass `svc` to swap in a service backed by fakes in tests."""

    svc = svc or EventService.from_settings(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Runs under the server only, so importing this module leaves logging alone.
        logging.basicConfig(level=cfg.log_level.upper(), format=LOG_FORMAT)
        yield

    app = FastAPI(title="Event Digest Backend", lifespan=lifespan)
    api = APIRouter(dependencies=[Depends(bearer_auth(cfg))])

    @app.get("/healthz")
    def healthz():
        try:
            svc.health_check()
            return {"ok": True}
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"DB health check failed: {e}")

    # --- events ---

    @api.post("/events")
    def ingest(body: Any = Body(None)):
        try:
            result = svc.ingest_event(body)
        except EventRejected as e:
            raise HTTPException(
                status_code=400,
                detail={"message": e.label, "issues": [v.to_dict() for v in e.violations]},
            )
        except StorageFailure as e:
            logger.error("Event insert failed: %s", e)
            raise HTTPException(status_code=500, detail=f"Insert failed: {e}")
        return {"ok": True, "event_id": result.event_id, "duplicate": result.duplicate}

    @api.get("/events")
    def list_events(
        unprocessed_only: bool = False,
        type: Optional[str] = Query(None, min_length=1),
        limit: int = Query(cfg.default_list_limit, ge=1, le=cfg.max_list_limit),
    ):
        try:
            events = svc.list_events(unprocessed_only=unprocessed_only, type=type, limit=limit)
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Event query failed: {e}")
        return {"count": len(events), "events": [e.model_dump(mode="json") for e in events]}

    @api.post("/events/process")
    def process_events(body: ProcessEventsIn):
        try:
            count, at = svc.mark_processed(body.event_ids)
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Mark processed failed: {e}")
        return {"ok": True, "processed_count": count, "processed_at": at.isoformat()}

    # --- digests ---

    @api.post("/digests")
    def create_digest(body: DigestIn):
        try:
            created = svc.create_digest(body)
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Digest insert failed: {e}")
        return {"ok": True, "digest_id": body.digest_id, "duplicate": not created}

    @api.get("/digests")
    def list_digests(
        unsent_only: bool = False,
        limit: int = Query(cfg.default_list_limit, ge=1, le=cfg.max_list_limit),
    ):
        try:
            digests = svc.list_digests(unsent_only=unsent_only, limit=limit)
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Digest query failed: {e}")
        return {"count": len(digests), "digests": [d.model_dump(mode="json") for d in digests]}

    @api.post("/digests/{digest_id}/sent")
    def mark_digest_sent(digest_id: str, body: Optional[MarkSentIn] = None):
        if not re.fullmatch(UUID_PATTERN, digest_id):
            raise HTTPException(status_code=400, detail="Invalid digest id")
        try:
            updated = svc.mark_digest_sent(digest_id, body.sent_at if body else None)
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Mark sent failed: {e}")
        if updated is None:
            raise HTTPException(status_code=404, detail="Digest not found")
        return {"ok": True, "digest_id": updated.digest_id, "sent_at": updated.sent_at.isoformat()}

    # --- places ---

    @api.get("/places")
    def list_places():
        try:
            places = svc.list_places()
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Place query failed: {e}")
        return {"count": len(places), "places": [p.model_dump(mode="json") for p in places]}

    @api.post("/places", status_code=201)
    def upsert_place(body: PlaceIn, response: Response):
        try:
            updated = svc.upsert_place(body)
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Place upsert failed: {e}")
        if updated:
            response.status_code = 200
        return {"ok": True, "place_id": body.place_id, "updated": updated}

    @api.delete("/places/{place_id}")
    def delete_place(place_id: str):
        try:
            deleted = svc.delete_place(place_id)
        except StorageFailure as e:
            raise HTTPException(status_code=500, detail=f"Place delete failed: {e}")
        if not deleted:
            raise HTTPException(status_code=404, detail="Place not found")
        return {"ok": True, "place_id": place_id}

    app.include_router(api)
    return app


# Instantiate against the process-wide settings here so `uvicorn main:app`
# works; tests call `build_app()` with their own settings and service.
app = build_app(settings)
