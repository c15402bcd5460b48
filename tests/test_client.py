"""Tests for client.py — RemoteBackend against a fake requests session."""

from __future__ import annotations

import pytest
import requests

from cosmic_spec_generator.client import RemoteBackend
from cosmic_spec_generator.models import (
    AnalyzeRoundRequest,
    ChapterRoundRequest,
    ContentEvent,
    DoneEvent,
    PhaseEvent,
)
from cosmic_spec_generator.tools.sse import consume_stream


class FakeResponse:
    def __init__(self, status: int = 200, payload=None, chunks=None) -> None:
        self.status_code = status
        self._payload = payload
        self._chunks = chunks or []
        self.closed = False

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=None):
        yield from self._chunks

    def close(self):
        self.closed = True


class FakeSession:
    def __init__(self, response: FakeResponse) -> None:
        self.response = response
        self.posts: list[tuple[str, dict]] = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self.response


class TestRemoteAnalysis:
    def test_continue_analyze(self):
        session = FakeSession(FakeResponse(payload={
            "success": True, "reply": "[ALL_DONE]", "round": 3, "isDone": True,
            "completedFunctions": 7, "targetFunctions": 30,
        }))
        backend = RemoteBackend("http://localhost:3001/", session=session)
        reply = backend.continue_analyze(AnalyzeRoundRequest(document_content="订单系统", round=3))
        assert reply.is_done
        assert reply.completed_functions == 7
        url, kwargs = session.posts[0]
        assert url == "http://localhost:3001/api/continue-analyze"
        assert kwargs["json"]["documentContent"] == "订单系统"
        assert kwargs["json"]["targetFunctions"] == 30

    def test_continue_analyze_http_error(self):
        backend = RemoteBackend("http://localhost:3001", session=FakeSession(FakeResponse(status=500, payload={})))
        with pytest.raises(requests.HTTPError):
            backend.continue_analyze(AnalyzeRoundRequest(document_content="x"))

    def test_parse_table(self):
        payload = {"success": True, "tableData": [{"functionalProcess": "查询订单", "dataMovementType": "E"}]}
        backend = RemoteBackend("http://localhost:3001", session=FakeSession(FakeResponse(payload=payload)))
        rows = backend.parse_table("|...|")
        assert rows[0].functional_process == "查询订单"

    def test_parse_table_without_rows(self):
        response = FakeResponse(status=400, payload={"error": "未找到有效的Markdown表格"})
        backend = RemoteBackend("http://localhost:3001", session=FakeSession(response))
        assert backend.parse_table("没有表格") == []


class TestRemoteChapters:
    def test_stream_round(self):
        chunks = [
            'data: {"phase": "generating_chapter", "round": 1}\n\n'.encode("utf-8"),
            'data: {"content": "第1章'.encode("utf-8"),
            ' 概述"}\n\ndata: {broken}\n\ndata: [DONE]\n\n'.encode("utf-8"),
        ]
        response = FakeResponse(chunks=chunks)
        session = FakeSession(response)
        backend = RemoteBackend("http://localhost:3001", session=session)
        events = list(backend.stream_chapter_round(2, ChapterRoundRequest(document_content="x", round=1)))
        assert isinstance(events[0], PhaseEvent)
        assert events[1] == ContentEvent(content="第1章 概述")
        assert isinstance(events[-1], DoneEvent)
        assert response.closed
        assert backend.decoder.diagnostics.malformed == 1
        url, kwargs = session.posts[0]
        assert url.endswith("/api/requirement-spec/template2/enhance")
        assert kwargs["stream"] is True

    def test_stream_feeds_consume_stream(self):
        chunks = [b'data: {"content": "ab"}\n\n', b'data: {"content": "cd"}\n\n', b"data: [DONE]\n\n"]
        backend = RemoteBackend("http://localhost:3001", session=FakeSession(FakeResponse(chunks=chunks)))
        text = consume_stream(backend.stream_chapter_round(1, ChapterRoundRequest(document_content="x")))
        assert text == "abcd"

    def test_unknown_template(self):
        backend = RemoteBackend("http://localhost:3001", session=FakeSession(FakeResponse()))
        with pytest.raises(ValueError):
            list(backend.stream_chapter_round(5, ChapterRoundRequest(document_content="x")))
