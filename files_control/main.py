from fastapi import Depends, FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from files_control.api.deps import get_current_user
from files_control.api.files import router as files_router
from files_control.api.public import router as public_router
from files_control.api.users import router as users_router
from files_control.config import settings
from files_control.errors import register_error_handlers
from files_control.logging import configure_logging
from files_control.observability import ObservabilityMiddleware
from files_control.services.urls import normalize_path_prefix

app = FastAPI(title="files_control API")
configure_logging()
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)

_prefix = normalize_path_prefix(settings.path_prefix)

app.include_router(public_router, prefix=_prefix)
app.include_router(
    files_router, prefix=_prefix, dependencies=[Depends(get_current_user)]
)
app.include_router(users_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
