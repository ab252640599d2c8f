import hmac

from fastapi import APIRouter, HTTPException, Request, Response

from evrental.infra.metrics import Metrics

router = APIRouter()


def _authorized(request: Request, token: str | None) -> bool:
    if not token:
        return True
    supplied = request.headers.get("Authorization") or ""
    return hmac.compare_digest(supplied, f"Bearer {token}")


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request) -> Response:
    registry: Metrics | None = getattr(request.app.state, "metrics", None)
    if registry is None or not registry.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")

    app_settings = getattr(request.app.state, "app_settings", None)
    if not _authorized(request, getattr(app_settings, "metrics_token", None)):
        raise HTTPException(status_code=401, detail="Unauthorized")

    body, content_type = registry.render()
    return Response(content=body, media_type=content_type)
