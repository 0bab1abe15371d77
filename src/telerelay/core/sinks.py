"""
Ingestion Sinks

Downstream consumers of ingested batches. A sink raises on failure; the
ingestion pipeline owns retries.
"""
import json
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import aiofiles
import httpx
import structlog

from .. import __version__
from ..protocol.message_types import BatchMessage, Sample
from .config import HttpSinkConfig, JsonLinesSinkConfig, LogSinkConfig, SinkConfig

logger = structlog.get_logger()

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_path_component(name: str) -> str:
    """Make an agent identity or source name usable as a file name"""
    cleaned = _UNSAFE_PATH_CHARS.sub("_", name).strip(".")
    return cleaned or "_"


class Sink(ABC):
    """Downstream consumer of ingested samples"""

    name = "sink"

    @abstractmethod
    async def send(self, identity: str, batch: BatchMessage) -> None:
        """Forward one batch; raise on failure"""

    async def close(self) -> None:
        """Release resources held by the sink"""


class LogSink(Sink):
    """Logs a summary of every batch"""

    name = "log"

    async def send(self, identity: str, batch: BatchMessage) -> None:
        sources = sorted({sample.source_name for sample in batch.samples})
        logger.info("Batch ingested",
                    agent_id=identity,
                    sequence=batch.sequence,
                    samples=len(batch.samples),
                    sources=sources)


class JsonLinesSink(Sink):
    """
    Appends samples as JSON lines to <path>/<agent>/<source>.jsonl

    One file per agent and source keeps each file in production order.
    """

    name = "jsonl"

    def __init__(self, path: Path):
        self.path = Path(path)

    def file_for(self, identity: str, source_name: str) -> Path:
        return self.path / safe_path_component(identity) / f"{safe_path_component(source_name)}.jsonl"

    async def send(self, identity: str, batch: BatchMessage) -> None:
        by_source: Dict[str, List[Sample]] = defaultdict(list)
        for sample in batch.samples:
            by_source[sample.source_name].append(sample)

        for source_name, samples in by_source.items():
            file_path = self.file_for(identity, source_name)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            lines = "".join(
                json.dumps({
                    "agent": identity,
                    "sequence": batch.sequence,
                    "source": sample.source_name,
                    "timestamp": sample.timestamp,
                    "value": sample.value,
                }) + "\n"
                for sample in samples
            )
            async with aiofiles.open(file_path, "a", encoding="utf-8") as f:
                await f.write(lines)


class HttpSink(Sink):
    """POSTs every batch as JSON to a webhook URL"""

    name = "http"

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": f"telerelay-server/{__version__}"},
        )

    async def send(self, identity: str, batch: BatchMessage) -> None:
        payload = {
            "agent": identity,
            "sequence": batch.sequence,
            "samples": [sample.model_dump() for sample in batch.samples],
        }
        response = await self.client.post(self.url, json=payload)
        response.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()


def build_sink(config: SinkConfig) -> Sink:
    if isinstance(config, LogSinkConfig):
        return LogSink()
    if isinstance(config, JsonLinesSinkConfig):
        return JsonLinesSink(config.path)
    if isinstance(config, HttpSinkConfig):
        return HttpSink(config.url, timeout=config.timeout)
    raise TypeError(f"Unsupported sink config: {type(config).__name__}")


def build_sinks(configs: Sequence[SinkConfig]) -> List[Sink]:
    """Instantiate the configured sinks in order"""
    return [build_sink(config) for config in configs]
