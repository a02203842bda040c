"""HTTPS endpoint answering validating AdmissionReview requests."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Body, FastAPI

from .admission import AdmissionValidator
from .config import WebhookSettings

_LOG = logging.getLogger(__name__)

VALIDATE_PATH = "/validate"


def create_webhook_app(admission: AdmissionValidator) -> FastAPI:
    app = FastAPI(title="OpenObserve operator admission webhook", docs_url=None, redoc_url=None)

    # Plain def: validation reads the store synchronously, so FastAPI runs it in its threadpool.
    @app.post(VALIDATE_PATH)
    def validate(review: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        return admission.review(review)

    @app.get("/healthz")
    def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    return app


class WebhookServer:
    """Runs the admission app under uvicorn on a background thread."""

    def __init__(self, admission: AdmissionValidator, settings: WebhookSettings) -> None:
        self.settings = settings
        config = uvicorn.Config(
            create_webhook_app(admission),
            host=settings.host,
            port=settings.port,
            ssl_certfile=settings.cert_file,
            ssl_keyfile=settings.key_file,
            log_config=None,
        )
        self._server = uvicorn.Server(config)
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._server.run, name="admission-webhook", daemon=True)
        self._thread.start()
        _LOG.info("Admission webhook listening on https://%s:%d%s", self.settings.host, self.settings.port, VALIDATE_PATH)

    def stop(self, timeout: float = 10.0) -> None:
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
