"""Host capability scanning and resource monitoring."""

import platform
from dataclasses import dataclass
from typing import Optional

import psutil

from autofill_engine.config import settings
from autofill_engine.core.models import SystemCapabilitySpec
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 2
MAX_CONCURRENCY_CAP = 30

# psutil.Error (AccessDenied, NoSuchProcess) does not derive from OSError
INTROSPECTION_ERRORS = (OSError, RuntimeError, AttributeError, psutil.Error)


def optimal_concurrency(
    cores: int,
    available_mb: float,
    cpu_factor: float = 1.5,
    instance_memory_mb: float = 300,
    cap: int = 16,
) -> int:
    """
    Recommended number of simultaneous browser instances.

    Non-decreasing in both ``cores`` and ``available_mb`` and clamped to
    ``[1, cap]``.
    """
    by_cpu = cores * cpu_factor
    by_memory = available_mb / instance_memory_mb
    return max(1, min(int(min(by_cpu, by_memory)), cap))


def aggressive_concurrency(cores: int, available_mb: float) -> int:
    """Upper concurrency for hosts that can tolerate contention."""
    return max(1, min(int(min(cores * 2.5, available_mb / 250)), MAX_CONCURRENCY_CAP))


class CapabilityScanner:
    """Inspects host CPU and memory to derive a concurrency default."""

    def __init__(
        self,
        cpu_factor: Optional[float] = None,
        instance_memory_mb: Optional[int] = None,
        concurrency_cap: Optional[int] = None,
    ):
        self.cpu_factor = cpu_factor or settings.scanner_cpu_factor
        self.instance_memory_mb = instance_memory_mb or settings.scanner_instance_memory_mb
        self.concurrency_cap = concurrency_cap or settings.scanner_concurrency_cap
        self.logger = logger.bind(component="capability_scanner")

    def scan(self) -> SystemCapabilitySpec:
        """
        Scan the host.

        Never raises: when introspection fails a conservative result with
        ``degraded=True`` is returned.

        Returns:
            SystemCapabilitySpec describing the host
        """
        try:
            threads = psutil.cpu_count(logical=True) or 1
            cores = psutil.cpu_count(logical=False) or threads
            memory = psutil.virtual_memory()
            total_mb = int(memory.total / (1024 * 1024))
            available_mb = int(memory.available / (1024 * 1024))
        except INTROSPECTION_ERRORS as e:
            self.logger.warning("Host introspection failed, using defaults", error=str(e))
            return self.default_spec()

        optimal = optimal_concurrency(
            cores,
            available_mb,
            cpu_factor=self.cpu_factor,
            instance_memory_mb=self.instance_memory_mb,
            cap=self.concurrency_cap,
        )
        capabilities = SystemCapabilitySpec(
            cpu_cores=cores,
            cpu_threads=threads,
            memory_total_mb=total_mb,
            memory_available_mb=available_mb,
            optimal_concurrency=optimal,
            max_concurrency=max(optimal, aggressive_concurrency(cores, available_mb)),
            operating_system=platform.system(),
        )

        self.logger.info(
            "System capability scan complete",
            cpu_cores=cores,
            cpu_threads=threads,
            memory_available_mb=available_mb,
            optimal_concurrency=capabilities.optimal_concurrency,
            max_concurrency=capabilities.max_concurrency,
        )
        return capabilities

    def default_spec(self) -> SystemCapabilitySpec:
        return SystemCapabilitySpec(
            cpu_cores=1,
            cpu_threads=1,
            optimal_concurrency=DEFAULT_CONCURRENCY,
            max_concurrency=DEFAULT_CONCURRENCY,
            operating_system=platform.system(),
            degraded=True,
        )


@dataclass
class ResourceSample:
    """CPU and memory utilisation at one instant."""
    cpu_percent: float
    memory_percent: float


class ResourceMonitor:
    """Samples host load and recommends a lowered concurrency limit under pressure."""

    def __init__(
        self,
        max_cpu_percent: Optional[float] = None,
        max_memory_percent: Optional[float] = None,
    ):
        self.max_cpu_percent = max_cpu_percent or settings.monitor_max_cpu_percent
        self.max_memory_percent = max_memory_percent or settings.monitor_max_memory_percent
        self.logger = logger.bind(component="resource_monitor")

    def sample(self) -> Optional[ResourceSample]:
        try:
            return ResourceSample(
                cpu_percent=psutil.cpu_percent(interval=None),
                memory_percent=psutil.virtual_memory().percent,
            )
        except INTROSPECTION_ERRORS as e:
            self.logger.warning("Resource sampling failed", error=str(e))
            return None

    def recommended_limit(self, configured: int) -> int:
        """Halve ``configured`` (never below 1) when a threshold is exceeded."""
        sample = self.sample()
        if sample is None:
            return configured

        if sample.cpu_percent > self.max_cpu_percent or sample.memory_percent > self.max_memory_percent:
            limit = max(1, configured // 2)
            if limit < configured:
                self.logger.info(
                    "Lowering concurrency under resource pressure",
                    cpu_percent=sample.cpu_percent,
                    memory_percent=sample.memory_percent,
                    configured=configured,
                    limit=limit,
                )
            return limit
        return configured


def scan() -> SystemCapabilitySpec:
    """Scan the host with default tuning."""
    return CapabilityScanner().scan()
