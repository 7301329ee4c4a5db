"""Operations endpoints: health probes, Prometheus metrics, manual reaper trigger."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tandem.domain.conversations.reaper import run_reaper
from tandem.infra.auth import require_metrics_access, require_ops_access
from tandem.obs import health

router = APIRouter(tags=["ops"])


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return await health.liveness()


@router.get("/health/ready")
async def health_ready() -> Response:
	status_code, payload = await health.readiness()
	return JSONResponse(content=payload, status_code=status_code)


@router.get("/health/startup")
async def health_startup() -> Response:
	status_code, payload = await health.startup()
	return JSONResponse(content=payload, status_code=status_code)


@router.get("/metrics", dependencies=[Depends(require_metrics_access)])
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post("/ops/reaper/run", dependencies=[Depends(require_ops_access)])
async def trigger_reaper() -> dict:
	"""Run one sweep now; the scheduled job keeps its own cadence."""
	summary = await run_reaper()
	if summary is None:
		raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail="reaper_failed")
	return {"status": "ok", **summary}
