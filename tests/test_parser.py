"""Tests for the SSE and newline-delimited JSON stream parsers."""

import logging

from chatstream.llm.parser import iter_ndjson, iter_sse_events, openai_chunks, vertex_chunks


async def lines_of(*lines):
    for line in lines:
        yield line


async def collect(chunks):
    return [chunk async for chunk in chunks]


class TestSSE:
    async def test_hello_world_with_usage(self):
        lines = lines_of(
            'data: {"choices":[{"delta":{"content":"Hello"}}]}',
            'data: {"choices":[{"delta":{"content":" world"}}]}',
            'data: {"choices":[{"delta":{"content":"!"}}],"usage":{"totalTokens":10}}',
            "data: [DONE]",
        )
        chunks = await collect(openai_chunks(iter_sse_events(lines, "test")))

        assert "".join(c.content for c in chunks) == "Hello world!"
        assert chunks[-1].is_complete
        assert chunks[-1].usage.total_tokens == 10
        assert sum(c.is_complete for c in chunks) == 1

    async def test_done_stops_the_stream(self):
        lines = lines_of(
            'data: {"choices":[{"delta":{"content":"a"}}]}',
            "data: [DONE]",
            'data: {"choices":[{"delta":{"content":"never"}}]}',
        )
        events = [e async for e in iter_sse_events(lines, "test")]
        assert len(events) == 1

    async def test_ignores_non_data_lines(self):
        lines = lines_of(": keep-alive", "", "event: ping", 'data: {"x": 1}', "id: 7")
        events = [e async for e in iter_sse_events(lines, "test")]
        assert events == [{"x": 1}]

    async def test_malformed_chunk_is_skipped_and_logged(self, caplog):
        lines = lines_of(
            'data: {"choices":[{"delta":{"content":"ok"}}]}',
            "data: {not json",
            "data: [1, 2]",
            'data: {"choices":[{"delta":{"content":"!"}}]}',
            "data: [DONE]",
        )
        with caplog.at_level(logging.WARNING):
            chunks = await collect(openai_chunks(iter_sse_events(lines, "test")))

        assert "".join(c.content for c in chunks) == "ok!"
        assert "Skipping" in caplog.text

    async def test_wrongly_shaped_delta_is_skipped(self, caplog):
        lines = lines_of(
            'data: {"choices":[{"delta":{"content":"Hello"}}]}',
            'data: {"choices":[{"delta":"oops"}]}',
            'data: {"choices":[{"delta":{"content":42}}]}',
            'data: {"choices":"nope"}',
            'data: {"choices":[{"delta":{"content":" world"}}]}',
            "data: [DONE]",
        )
        with caplog.at_level(logging.WARNING):
            chunks = await collect(openai_chunks(iter_sse_events(lines, "test")))

        assert "".join(c.content for c in chunks) == "Hello world"
        assert chunks[-1].is_complete
        assert "Skipping" in caplog.text

    async def test_invalid_usage_is_skipped(self):
        lines = lines_of(
            'data: {"choices":[{"delta":{"content":"Hi"}}],"usage":{"totalTokens":"many"}}',
            'data: {"choices":[],"usage":"none"}',
            'data: {"choices":[],"usage":{"totalTokens":4}}',
        )
        chunks = await collect(openai_chunks(iter_sse_events(lines, "test")))

        assert "".join(c.content for c in chunks) == "Hi"
        assert chunks[-1].usage.total_tokens == 4

    async def test_snake_case_usage(self):
        lines = lines_of(
            'data: {"choices":[],"usage":{"prompt_tokens":3,"completion_tokens":4,"total_tokens":7}}'
        )
        chunks = await collect(openai_chunks(iter_sse_events(lines, "test")))
        assert chunks[-1].usage.prompt_tokens == 3
        assert chunks[-1].usage.total_tokens == 7

    async def test_empty_stream_still_completes(self):
        chunks = await collect(openai_chunks(iter_sse_events(lines_of(), "test")))
        assert len(chunks) == 1
        assert chunks[0].is_complete
        assert chunks[0].usage is None


class TestNDJSON:
    async def test_vertex_chunks(self):
        lines = lines_of(
            '{"candidates":[{"content":{"parts":[{"text":"Hel"}]}}]}',
            "",
            '{"candidates":[{"content":{"parts":[{"text":"lo"}]}}],'
            '"usageMetadata":{"promptTokenCount":2,"candidatesTokenCount":3,"totalTokenCount":5}}',
        )
        chunks = await collect(vertex_chunks(iter_ndjson(lines, "google")))

        assert [c.content for c in chunks] == ["Hel", "lo", ""]
        assert chunks[-1].is_complete
        assert chunks[-1].usage.total_tokens == 5

    async def test_malformed_line_is_skipped(self):
        lines = lines_of('{"a": 1}', "{oops", '{"b": 2}')
        events = [e async for e in iter_ndjson(lines, "google")]
        assert events == [{"a": 1}, {"b": 2}]

    async def test_vertex_wrong_shapes_are_skipped(self):
        lines = lines_of(
            '{"candidates":[{"content":{"parts":[{"text":"Hel"}]}}]}',
            '{"candidates":[{"content":{"parts":["raw", {"text": 7}]}}]}',
            '{"candidates":[{"content":"flat"}]}',
            '{"candidates":[{"content":{"parts":[{"text":"lo"}]}}],'
            '"usageMetadata":{"totalTokenCount":"lots"}}',
            '{"usageMetadata":{"promptTokenCount":2,"candidatesTokenCount":3,"totalTokenCount":5}}',
        )
        chunks = await collect(vertex_chunks(iter_ndjson(lines, "google")))

        assert "".join(c.content for c in chunks) == "Hello"
        assert chunks[-1].usage.total_tokens == 5
