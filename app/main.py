from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from app.config import settings
from app.db import SessionLocal
from app.logging_config import configure_logging
from app.routers import catalog, dashboard, purchasing
from app.services.order_editor_service import EditorRegistry

configure_logging(level=settings.log_level)

app = FastAPI(title='Training Procurement')

app.state.session_factory = SessionLocal
app.state.editors = EditorRegistry()

app.include_router(catalog.router)
app.include_router(purchasing.router)
app.include_router(dashboard.router)


@app.on_event('shutdown')
def close_open_editors() -> None:
    app.state.editors.close_all(drain_timeout=settings.finalize_timeout_seconds)


@app.get('/')
def root():
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
