"""HTTP backend: drives the pipelines against a running server."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import requests

from .models import AnalyzeRoundRequest, ChapterRoundRequest, DataMovementRow, RoundReply, StreamEvent
from .tools.sse import SSEDecoder, iter_events

logger = logging.getLogger(__name__)

CHAPTER_ENDPOINTS = {
    1: "/api/requirement-spec/enhance",
    2: "/api/requirement-spec/template2/enhance",
}


class RemoteBackend:
    """``AnalysisBackend`` and ``ChapterBackend`` over the server's JSON/SSE API."""

    def __init__(self, base_url: str, *, session: requests.Session | None = None, timeout: int = 300) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.decoder: SSEDecoder | None = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def continue_analyze(self, request: AnalyzeRoundRequest) -> RoundReply:
        resp = self.session.post(
            self._url("/api/continue-analyze"),
            json=request.model_dump(by_alias=True),
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return RoundReply.model_validate(resp.json())

    def parse_table(self, markdown: str) -> list[DataMovementRow]:
        resp = self.session.post(self._url("/api/parse-table"), json={"markdown": markdown}, timeout=self.timeout)
        if resp.status_code == 400:
            logger.info("Server found no table: %s", resp.json().get("error", ""))
            return []
        resp.raise_for_status()
        return [DataMovementRow.model_validate(row) for row in resp.json().get("tableData", [])]

    def stream_chapter_round(self, template_id: int, request: ChapterRoundRequest) -> Iterator[StreamEvent]:
        path = CHAPTER_ENDPOINTS.get(template_id)
        if path is None:
            raise ValueError(f"Unknown template id: {template_id}")
        resp = self.session.post(
            self._url(path),
            json=request.model_dump(by_alias=True),
            stream=True,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        self.decoder = SSEDecoder()
        try:
            yield from iter_events(resp.iter_content(chunk_size=None), self.decoder)
        finally:
            resp.close()
            diag = self.decoder.diagnostics
            if diag.malformed or diag.unknown_shape:
                logger.warning(
                    "Round %d stream: %d malformed and %d unrecognised frames dropped",
                    request.round, diag.malformed, diag.unknown_shape,
                )
