"""Trust & threshold engine.

``TrustEngine.decide`` renders a fail-closed Allow/Deny decision for one exact
artifact digest: blind-trust exemptions first, then cached verdicts, then one
concurrent query per rebuilder that is not cache-satisfied.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Iterable, Protocol, Sequence

from ..errors import ConfigError
from ..rebuilder.client import RebuilderClient
from ..rebuilder.types import RebuilderClientConfig
from ..types import (
    AggregateDecision,
    ArtifactDigest,
    BlindTrustEntry,
    Decision,
    DecisionReason,
    PackageIdentity,
    RebuilderConfig,
    ThresholdPolicy,
    Verdict,
    VerdictRecord,
)
from ..verdicts.cache import NullVerdictCache, VerdictCache, open_cache
from .policy import DEFAULT_STRATEGY, AggregationStrategy, Outcome, get_strategy, tally

if TYPE_CHECKING:
    from ..config import TrustConfig

logger = logging.getLogger(__name__)


class QueryClient(Protocol):
    def query(
        self,
        rebuilder: RebuilderConfig,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> VerdictRecord: ...


class TrustEngine:
    def __init__(
        self,
        rebuilders: Sequence[RebuilderConfig],
        threshold: ThresholdPolicy,
        *,
        blind_trust: Sequence[BlindTrustEntry] = (),
        client: QueryClient | None = None,
        cache: VerdictCache | None = None,
        strategy: AggregationStrategy | str = DEFAULT_STRATEGY,
        early_exit: bool = True,
        query_timeout: float = 10.0,
        query_deadline: float | None = None,
        cache_ttl: float = 3600.0,
        cache_inconclusive: bool = False,
    ) -> None:
        self.rebuilders = tuple(rebuilders)
        self.threshold = threshold
        self.blind_trust = tuple(blind_trust)
        self._by_id = _index_rebuilders(self.rebuilders)
        _check_threshold(self.rebuilders, threshold)
        self.client: QueryClient = client or RebuilderClient(RebuilderClientConfig(timeout_seconds=query_timeout))
        self.cache: VerdictCache = cache if cache is not None else NullVerdictCache()
        try:
            self.strategy = get_strategy(strategy) if isinstance(strategy, str) else strategy
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        self.early_exit = early_exit
        self.query_timeout = float(query_timeout)
        self.query_deadline = float(query_deadline) if query_deadline is not None else self.query_timeout * 4
        self.cache_ttl = float(cache_ttl)
        self.cache_inconclusive = cache_inconclusive

    @classmethod
    def from_config(
        cls,
        config: "TrustConfig",
        *,
        client: QueryClient | None = None,
        cache: VerdictCache | None = None,
    ) -> "TrustEngine":
        attempts = 1 + config.max_retries
        if client is None:
            client = RebuilderClient(
                RebuilderClientConfig(
                    timeout_seconds=config.query_timeout_seconds,
                    max_retries=config.max_retries,
                    backoff_seconds=config.backoff_seconds,
                )
            )
        return cls(
            config.rebuilders,
            config.threshold,
            blind_trust=config.blind_trust,
            client=client,
            cache=cache if cache is not None else open_cache(config),
            strategy=config.aggregation,
            early_exit=config.early_exit,
            query_timeout=config.query_timeout_seconds,
            # search plus one attestation download, each with its retry budget
            query_deadline=config.query_timeout_seconds * 2 * attempts + config.backoff_seconds * attempts,
            cache_ttl=config.cache_ttl_seconds,
            cache_inconclusive=config.cache_inconclusive,
        )

    def blind_trust_match(self, identity: PackageIdentity) -> BlindTrustEntry | None:
        for entry in self.blind_trust:
            if entry.matches(identity):
                return entry
        return None

    def decide(self, identity: PackageIdentity, digest: ArtifactDigest) -> AggregateDecision:
        exemption = self.blind_trust_match(identity)
        if exemption is not None:
            logger.info("package=%s allowed by blind-trust pattern %s", identity, exemption)
            return AggregateDecision(
                decision=Decision.ALLOW,
                reason=DecisionReason.BLIND_TRUST,
                identity=identity,
                digest=digest,
                threshold=self.threshold.minimum,
                blind_trust_pattern=str(exemption),
            )

        cached = {
            rebuilder_id: record
            for rebuilder_id, record in (self.cache.lookup(identity, digest) or {}).items()
            if rebuilder_id in self._by_id
        }
        pending = [rebuilder for rebuilder in self.rebuilders if rebuilder.id not in cached]
        logger.debug(
            "package=%s digest=%s cached=%s querying=%s",
            identity,
            digest,
            sorted(cached),
            [rebuilder.id for rebuilder in pending],
        )

        outcome: Outcome | None = None
        if self.early_exit:
            outcome = self.strategy.early(
                tally(cached.values(), self._by_id),
                self.threshold.minimum,
                _groups_of(pending),
            )

        live: list[VerdictRecord] = []
        if outcome is None and pending:
            live, outcome = self._collect(identity, digest, pending, list(cached.values()))
            self._remember(identity, digest, live)

        evidence = sorted([*cached.values(), *live], key=lambda record: record.rebuilder_id)
        counts = tally(evidence, self._by_id)
        if outcome is None:
            outcome = self.strategy.final(counts, self.threshold.minimum)

        decision = AggregateDecision(
            decision=outcome[0],
            reason=outcome[1],
            identity=identity,
            digest=digest,
            threshold=self.threshold.minimum,
            evidence=tuple(evidence),
            confirming_groups=counts.confirming_groups,
            mismatching_rebuilders=counts.mismatching_rebuilders,
        )
        if decision.reason is DecisionReason.EXPLICIT_MISMATCH:
            logger.error("%s", decision.describe())
        elif decision.allowed:
            logger.info("%s", decision.describe())
        else:
            logger.warning("%s", decision.describe())
        return decision

    def _collect(
        self,
        identity: PackageIdentity,
        digest: ArtifactDigest,
        pending: list[RebuilderConfig],
        known: list[VerdictRecord],
    ) -> tuple[list[VerdictRecord], Outcome | None]:
        cancel = threading.Event()
        executor = ThreadPoolExecutor(max_workers=len(pending), thread_name_prefix="rebuilder-query")
        futures: dict[Future[VerdictRecord], RebuilderConfig] = {
            executor.submit(
                self.client.query,
                rebuilder,
                identity,
                digest,
                timeout=self.query_timeout,
                cancel=cancel,
            ): rebuilder
            for rebuilder in pending
        }
        live: list[VerdictRecord] = []
        outcome: Outcome | None = None
        deadline = time.monotonic() + self.query_deadline
        outstanding = set(futures)
        try:
            while outstanding:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, outstanding = wait(outstanding, timeout=remaining, return_when=FIRST_COMPLETED)
                for future in done:
                    live.append(_result_of(future, futures[future]))
                if self.early_exit and outstanding:
                    outcome = self.strategy.early(
                        tally([*known, *live], self._by_id),
                        self.threshold.minimum,
                        _groups_of(futures[future] for future in outstanding),
                    )
                    if outcome is not None:
                        logger.debug(
                            "package=%s short-circuit %s, cancelling %s outstanding queries",
                            identity,
                            outcome[0].value,
                            len(outstanding),
                        )
                        return live, outcome
            for future in outstanding:
                rebuilder = futures[future]
                logger.warning("rebuilder=%s did not answer within %.1fs", rebuilder.id, self.query_deadline)
                live.append(
                    VerdictRecord(
                        rebuilder_id=rebuilder.id,
                        verdict=Verdict.UNKNOWN,
                        detail=f"no answer within {self.query_deadline:.1f}s",
                    )
                )
            return live, None
        finally:
            cancel.set()
            executor.shutdown(wait=False, cancel_futures=True)

    def _remember(self, identity: PackageIdentity, digest: ArtifactDigest, records: Iterable[VerdictRecord]) -> None:
        keep = [record for record in records if self.cache_inconclusive or record.verdict.conclusive]
        if not keep:
            return
        try:
            self.cache.store(identity, digest, keep, self.cache_ttl)
        except OSError as exc:
            logger.warning("package=%s could not store verdicts: %s", identity, exc)


def _result_of(future: Future[VerdictRecord], rebuilder: RebuilderConfig) -> VerdictRecord:
    try:
        return future.result()
    except Exception as exc:
        logger.warning("rebuilder=%s query crashed: %s", rebuilder.id, exc, exc_info=True)
        return VerdictRecord(rebuilder_id=rebuilder.id, verdict=Verdict.ERROR, detail=f"query crashed: {exc}")


def _groups_of(rebuilders: Iterable[RebuilderConfig]) -> frozenset[str]:
    found: set[str] = set()
    for rebuilder in rebuilders:
        found.update(rebuilder.groups)
    return frozenset(found)


def _index_rebuilders(rebuilders: Sequence[RebuilderConfig]) -> dict[str, RebuilderConfig]:
    index: dict[str, RebuilderConfig] = {}
    for rebuilder in rebuilders:
        if rebuilder.id in index:
            raise ConfigError(f"duplicate rebuilder id: {rebuilder.id!r}")
        index[rebuilder.id] = rebuilder
    return index


def _check_threshold(rebuilders: Sequence[RebuilderConfig], threshold: ThresholdPolicy) -> None:
    available = len(_groups_of(rebuilders))
    if threshold.minimum < 1:
        raise ConfigError("threshold must require at least one trust group")
    if threshold.minimum > available:
        raise ConfigError(
            f"threshold {threshold.minimum} can never be met with {available} distinct trust group(s)"
        )
