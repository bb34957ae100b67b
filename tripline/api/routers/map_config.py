"""Map client configuration (public token + style)."""

from fastapi import APIRouter, Request

from tripline.api.routers._deps import Envelope, ok

router = APIRouter(tags=["config"])


@router.get("/config", response_model=Envelope)
async def map_config(request: Request) -> Envelope:
    config = request.app.state.settings
    return ok(request, {"mapboxToken": config.mapbox_token, "mapStyle": config.map_style})
