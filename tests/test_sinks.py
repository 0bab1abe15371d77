"""Sink implementations."""

import json

import httpx
import pytest

from telerelay.core.config import HttpSinkConfig, JsonLinesSinkConfig, LogSinkConfig
from telerelay.core.sinks import HttpSink, JsonLinesSink, LogSink, build_sinks, safe_path_component
from telerelay.protocol.message_types import BatchMessage, Sample


def mixed_batch():
    return BatchMessage(sequence=4, samples=[
        Sample(source_name="cpu", timestamp=1.5, value={"percent": 12.5}),
        Sample(source_name="memory", timestamp=2.5, value=1024),
        Sample(source_name="cpu", timestamp=3.5, value={"percent": 14.0}),
    ])


async def test_jsonl_sink_writes_one_file_per_agent_and_source(tmp_path):
    sink = JsonLinesSink(tmp_path)
    await sink.send("web-01", mixed_batch())
    await sink.send("web-01", BatchMessage(sequence=5, samples=[Sample(source_name="cpu", timestamp=4.5, value=None)]))

    cpu_lines = (tmp_path / "web-01" / "cpu.jsonl").read_text().splitlines()
    memory_lines = (tmp_path / "web-01" / "memory.jsonl").read_text().splitlines()

    assert [json.loads(line)["timestamp"] for line in cpu_lines] == [1.5, 3.5, 4.5]
    assert json.loads(cpu_lines[0]) == {
        "agent": "web-01", "sequence": 4, "source": "cpu", "timestamp": 1.5, "value": {"percent": 12.5},
    }
    assert json.loads(memory_lines[0])["value"] == 1024


async def test_jsonl_sink_sanitizes_path_components(tmp_path):
    sink = JsonLinesSink(tmp_path)
    await sink.send("../evil", BatchMessage(sequence=1, samples=[Sample(source_name="a/b", timestamp=1.0, value=1)]))
    assert (tmp_path / "_evil" / "a_b.jsonl").exists()


def test_safe_path_component():
    assert safe_path_component("web-01.example") == "web-01.example"
    assert safe_path_component("..") == "_"
    assert safe_path_component("a b/c") == "a_b_c"


async def test_log_sink_accepts_batches():
    await LogSink().send("web-01", mixed_batch())


async def test_http_sink_posts_batch():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sink = HttpSink("http://collector.local/ingest", client=client)
    await sink.send("web-01", mixed_batch())
    await sink.close()

    assert requests[0]["agent"] == "web-01"
    assert requests[0]["sequence"] == 4
    assert [s["source_name"] for s in requests[0]["samples"]] == ["cpu", "memory", "cpu"]


async def test_http_sink_raises_on_error_status():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    sink = HttpSink("http://collector.local/ingest", client=client)
    with pytest.raises(httpx.HTTPStatusError):
        await sink.send("web-01", mixed_batch())
    await sink.close()


async def test_build_sinks_from_config(tmp_path):
    sinks = build_sinks([
        LogSinkConfig(),
        JsonLinesSinkConfig(path=tmp_path),
        HttpSinkConfig(url="http://collector.local/ingest", timeout_ms=1500),
    ])
    assert [sink.name for sink in sinks] == ["log", "jsonl", "http"]
    assert sinks[1].path == tmp_path
    for sink in sinks:
        await sink.close()
