"""Analysis engine — one full run over a resource set, plus last-request-wins scheduling."""

from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

from azureguard.core.index import ResourceIndex
from azureguard.core.model import (
    AdapterStats,
    AnalysisResult,
    Posture,
    Resource,
    TrafficFlow,
)
from azureguard.core.posture import PostureScorer
from azureguard.core.rules import RuleSetCompiler
from azureguard.core.summary import aggregate
from azureguard.core.topology import build_topology
from azureguard.core.traffic import TrafficSimulator, flow_sort_key
from azureguard.logger import logger
from azureguard.policy.config import AzureGuardConfig
from azureguard.policy.defaults import DEFAULT_NSG_RULES


class AnalysisCancelled(Exception):
    """Raised when a run is abandoned because a newer request superseded it."""


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AnalysisCancelled("analysis superseded by a newer request")


def default_workers() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


def _guarded(token: CancelToken, fn: Callable[..., Any], *args: Any) -> Any:
    token.raise_if_cancelled()
    return fn(*args)


def run_analysis(
    resources: Iterable[Resource],
    config: AzureGuardConfig | None = None,
    max_workers: int | None = None,
    token: CancelToken | None = None,
    stats: AdapterStats | None = None,
) -> AnalysisResult:
    """Build every derived structure from *resources* and return the result.

    Per-edge simulation and per-resource scoring fan out on a thread pool
    over read-only shared structures. Output order never depends on
    completion order.
    """
    config = config or AzureGuardConfig()
    token = token or CancelToken()
    workers = max_workers or config.max_workers or default_workers()

    index = ResourceIndex.build(resources)
    compiler = RuleSetCompiler(index, default_rules=DEFAULT_NSG_RULES)
    topology = build_topology(index)
    rule_chains = compiler.compile_all()
    firewalls = compiler.compile_firewalls()
    policies = compiler.compile_policies()
    token.raise_if_cancelled()

    simulator = TrafficSimulator(index, topology, compiler)
    scorer = PostureScorer(
        index,
        topology=topology,
        compiler=compiler,
        rules=config.active_rules(),
        severity_weights=config.severity_weights,
        required_tags=config.required_tags,
    )
    edges = simulator.candidate_edges()

    flows: list[TrafficFlow] = []
    postures: dict[str, Posture] = {}
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="azureguard") as executor:
        edge_futures = {
            executor.submit(_guarded, token, simulator.simulate_edge, src, dst): (src, dst)
            for src, dst in edges
        }
        posture_futures = {
            executor.submit(_guarded, token, scorer.score, resource): resource.key
            for resource in index
        }
        for future in as_completed([*edge_futures, *posture_futures]):
            if token.cancelled:
                for pending in (*edge_futures, *posture_futures):
                    pending.cancel()
                raise AnalysisCancelled("analysis superseded by a newer request")
            if future in edge_futures:
                flows.extend(future.result())
            else:
                postures[posture_futures[future]] = future.result()

    flows.extend(simulator.edge_flows())
    flows.extend(simulator.pattern_flows(edges))
    flows.sort(key=flow_sort_key)
    postures = dict(sorted(postures.items()))
    token.raise_if_cancelled()

    logger.info(
        "Analyzed %d resource(s): %d flow(s), %d finding(s)",
        len(index),
        len(flows),
        sum(len(p.findings) for p in postures.values()),
    )

    return AnalysisResult(
        topology=topology,
        rule_chains=rule_chains,
        firewalls=firewalls,
        firewall_policies=policies,
        flows=flows,
        postures=postures,
        summary=aggregate(postures),
        stats=stats or AdapterStats(total=len(index), supported=len(index), skipped=0),
    )


class AnalysisScheduler:
    """Runs analyses one at a time; a new request cancels the one in flight.

    ``delay`` debounces bursts of requests (for example repeated saves):
    a run waits that long before starting and is dropped if superseded.
    """

    def __init__(
        self,
        config: AzureGuardConfig | None = None,
        max_workers: int | None = None,
        delay: float = 0.0,
    ) -> None:
        self._config = config or AzureGuardConfig()
        self._max_workers = max_workers
        self._delay = delay
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="azureguard-sched")
        self._lock = threading.Lock()
        self._generation = 0
        self._token: CancelToken | None = None

    @property
    def generation(self) -> int:
        return self._generation

    def submit(
        self, resources: Iterable[Resource], stats: AdapterStats | None = None
    ) -> Future[AnalysisResult]:
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            token = CancelToken()
            self._token = token
            self._generation += 1
            generation = self._generation
        return self._executor.submit(self._run, list(resources), stats, token, generation)

    def _run(
        self,
        resources: list[Resource],
        stats: AdapterStats | None,
        token: CancelToken,
        generation: int,
    ) -> AnalysisResult:
        if self._delay and token.wait(self._delay):
            logger.debug("Run %d superseded during debounce", generation)
            raise AnalysisCancelled("analysis superseded by a newer request")
        result = run_analysis(resources, self._config, self._max_workers, token, stats)
        with self._lock:
            if generation != self._generation:
                raise AnalysisCancelled("analysis superseded by a newer request")
        return result

    def shutdown(self, cancel_pending: bool = False) -> None:
        if cancel_pending:
            with self._lock:
                if self._token is not None:
                    self._token.cancel()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> AnalysisScheduler:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
