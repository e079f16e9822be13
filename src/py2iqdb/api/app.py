"""
HTTP gateway exposing IQDB similarity search.

``POST /iqdb`` accepts a multipart form with either a ``file`` upload or a
``url`` field, forwards the image bytes to the daemon and answers with the
matches rendered as XML. Every failure is reported as a 500 with the error
text as a plain-text body.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import requests
from fastapi import FastAPI, File, Form, UploadFile
from fastapi.responses import PlainTextResponse, Response

from py2iqdb.core.errors import IqdbError, ValidationError
from py2iqdb.models.config import GatewayConfig
from py2iqdb.services.query_service import IqdbQueryService
from py2iqdb.utils.xml_renderer import render_matches

logger = logging.getLogger(__name__)

XML_CONTENT_TYPE = "application/xml; charset=utf-8"
_CHUNK_SIZE = 64 * 1024


def fetch_image(url: str, max_bytes: int, timeout: float) -> bytes:
    """
    Download an image for a URL query.

    Raises:
        ValidationError: If the body exceeds max_bytes
        requests.RequestException: On any transport or HTTP status failure
    """
    with requests.get(url, timeout=timeout, stream=True) as response:
        response.raise_for_status()
        data = bytearray()
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            data.extend(chunk)
            if len(data) > max_bytes:
                raise ValidationError(f"image at {url} exceeds {max_bytes} bytes", field_name="url")
    return bytes(data)


def _read_upload(upload: UploadFile, max_bytes: int) -> bytes:
    data = upload.file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ValidationError(f"upload exceeds {max_bytes} bytes", field_name="file")
    return data


def _error(message: str) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=500)


def create_app(config: Optional[GatewayConfig] = None,
               service: Optional[IqdbQueryService] = None) -> FastAPI:
    """Create the gateway app around a query service built from config."""
    config = (config or GatewayConfig.from_env()).validated()
    service = service or IqdbQueryService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        service.close()

    app = FastAPI(title="py2iqdb gateway", version="1.0.0", lifespan=lifespan)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/iqdb")
    def iqdb_search(
        file: Optional[List[UploadFile]] = File(None),
        url: Optional[List[str]] = Form(None),
    ):
        """Run a similarity query for one uploaded or linked image."""
        try:
            if file is not None and len(file) == 1:
                data = _read_upload(file[0], config.max_upload_bytes)
            elif url is not None and len(url) == 1:
                logger.info(f"Fetching query image from {url[0]}")
                data = fetch_image(url[0], config.max_upload_bytes, config.url_fetch_timeout)
            else:
                logger.warning("Request carried neither a single file nor a single url")
                return _error("expected exactly one 'file' upload or one 'url' field")

            results = service.query_data(data)

        except IqdbError as e:
            logger.error(e.format_log_message())
            return _error(str(e))
        except requests.RequestException as e:
            logger.error(f"Fetching query image failed: {e}")
            return _error(str(e))

        body = render_matches(results, config.service_name, config.match_threshold)
        return Response(content=body, media_type=XML_CONTENT_TYPE)

    return app
