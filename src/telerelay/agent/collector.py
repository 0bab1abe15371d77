"""System collectors for telerelay Agent."""

import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

import psutil

from ..exceptions import CollectError, ConfigError
from ..protocol.message_types import Sample
from .config import CollectorSpec


# Virtual filesystems not worth reporting
SKIPPED_FSTYPES = ("tmpfs", "devtmpfs", "sysfs", "proc", "squashfs", "overlay")


class CollectionTask(ABC):
    """
    Something that can produce one Sample on demand.

    Subclasses implement read(); collect() stamps the value and turns
    psutil/OS failures into CollectError.
    """

    default_name = "collector"

    def __init__(self, name: Optional[str] = None):
        self.name = name or self.default_name

    @abstractmethod
    def read(self) -> Any:
        """Return the current measurement value."""

    def collect(self) -> Sample:
        try:
            value = self.read()
        except CollectError:
            raise
        except (psutil.Error, OSError) as e:
            raise CollectError(f"{self.name} collection failed: {e}", source_name=self.name) from e
        return Sample(source_name=self.name, timestamp=time.time(), value=value)


class CpuCollector(CollectionTask):
    """CPU utilisation since the previous call."""

    default_name = "cpu"

    def __init__(self, name: Optional[str] = None, per_cpu: bool = False):
        super().__init__(name)
        self.per_cpu = per_cpu
        # First call primes psutil's internal counters
        psutil.cpu_percent(interval=None)

    def read(self) -> Dict[str, Any]:
        value: Dict[str, Any] = {
            "percent": psutil.cpu_percent(interval=None),
            "count": psutil.cpu_count(logical=True),
        }
        if self.per_cpu:
            value["per_cpu"] = psutil.cpu_percent(interval=None, percpu=True)
        return value


class MemoryCollector(CollectionTask):
    """Virtual memory usage."""

    default_name = "memory"

    def read(self) -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        return {
            "total": memory.total,
            "used": memory.used,
            "available": memory.available,
            "percent": memory.percent,
        }


class DiskCollector(CollectionTask):
    """Disk usage for configured paths, or every real mount point."""

    default_name = "disk"

    def __init__(self, name: Optional[str] = None, paths: Optional[List[str]] = None):
        super().__init__(name)
        self.paths = list(paths) if paths else None

    def _mount_points(self) -> List[str]:
        if self.paths:
            return self.paths
        mounts = ["/"]
        for partition in psutil.disk_partitions():
            if partition.mountpoint == "/" or partition.fstype in SKIPPED_FSTYPES:
                continue
            mounts.append(partition.mountpoint)
        return mounts

    def read(self) -> Dict[str, Any]:
        usage_by_path = {}
        for path in self._mount_points():
            try:
                usage = psutil.disk_usage(path)
            except OSError:  # PermissionError is subclass of OSError
                # Configured paths must be readable; discovered ones may not be
                if self.paths:
                    raise
                continue
            usage_by_path[path] = {
                "total": usage.total,
                "used": usage.used,
                "free": usage.free,
                "percent": usage.percent,
            }
        return usage_by_path


class NetworkCollector(CollectionTask):
    """Cumulative network I/O counters."""

    default_name = "network"

    def read(self) -> Dict[str, int]:
        counters = psutil.net_io_counters()
        if counters is None:
            raise CollectError("No network interfaces found", source_name=self.name)
        return {
            "bytes_sent": counters.bytes_sent,
            "bytes_recv": counters.bytes_recv,
            "packets_sent": counters.packets_sent,
            "packets_recv": counters.packets_recv,
            "errin": counters.errin,
            "errout": counters.errout,
        }


class LoadCollector(CollectionTask):
    """1/5/15 minute load averages (Unix only)."""

    default_name = "load"

    def read(self) -> List[float]:
        if not hasattr(os, "getloadavg"):
            raise CollectError("Load average not available on this platform", source_name=self.name)
        return list(os.getloadavg())


class UptimeCollector(CollectionTask):
    """Seconds since boot."""

    default_name = "uptime"

    def read(self) -> int:
        return int(time.time() - psutil.boot_time())


class ProcessCollector(CollectionTask):
    """Number of running processes."""

    default_name = "processes"

    def read(self) -> int:
        return len(psutil.pids())


COLLECTORS: Dict[str, Type[CollectionTask]] = {
    "cpu": CpuCollector,
    "memory": MemoryCollector,
    "disk": DiskCollector,
    "network": NetworkCollector,
    "load": LoadCollector,
    "uptime": UptimeCollector,
    "processes": ProcessCollector,
}


def build_collector(spec: CollectorSpec) -> CollectionTask:
    """
    Instantiate the collector named by a config entry.

    Raises:
        ConfigError: Unknown collector name or invalid options
    """
    collector_cls = COLLECTORS.get(spec.name)
    if collector_cls is None:
        known = ", ".join(sorted(COLLECTORS))
        raise ConfigError(f"Unknown collector '{spec.name}' (available: {known})")
    try:
        return collector_cls(name=spec.name, **spec.options)
    except TypeError as e:
        raise ConfigError(f"Invalid options for collector '{spec.name}': {e}")
