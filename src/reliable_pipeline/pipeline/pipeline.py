"""ProcessingPipeline — ordered, effectively-once consumption of a partitioned log."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..chunking.assembler import ChunkAssembler
from ..chunking.models import AssemblyStatus
from ..chunking.splitter import parse_fragment, strip_chunk_headers
from ..config import IdempotencyMode, PipelineConfig, ShutdownPolicy
from ..correlation import get_correlation_id, message_correlation
from ..dead_letter import DeadLetterRouter
from ..exceptions import (
    ConflictError,
    MalformedChunkingError,
    StoreUnavailableError,
    TerminalRoutingError,
    TransientError,
)
from ..instrumentation import (
    SWEEP_OPERATION,
    get_hook_registry,
    message_attributes,
    process_operation,
)
from ..models import (
    FailureReason,
    RetryState,
    SweepReport,
    derive_idempotency_key,
    utcnow,
)
from ..ports.background_worker import IBackgroundWorker
from ..ports.snapshot import PipelineSnapshot
from ..retry import BackoffPolicy, ErrorClass
from .context import ProcessingContext, _current_context
from .partition import Delivery, HaltedDeadLetter, PartitionState
from .sweeper import SweeperWorker

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable
    from datetime import datetime

    from ..instrumentation import HookRegistry
    from ..models import DeadLetterEnvelope, IdempotencyKey, Message
    from ..ports.handler import IMessageHandler
    from ..ports.idempotency import IIdempotencyStore
    from ..ports.snapshot import ISnapshotStore
    from ..ports.transport import ITransport

logger = logging.getLogger("reliable_pipeline.pipeline")


class Outcome(str, enum.Enum):
    """Result of one worker turn on a partition head."""

    COMMITTED = "committed"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"
    PARKED = "parked"
    RETRYING = "retrying"
    HALTED = "halted"


_TERMINAL = frozenset({Outcome.COMMITTED, Outcome.DUPLICATE, Outcome.DEAD_LETTERED})


@dataclass(frozen=True)
class _Step:
    outcome: Outcome
    delay: float = 0.0


@dataclass
class PipelineStats:
    """Counters since the pipeline was created."""

    processed: int = 0
    duplicates: int = 0
    retries: int = 0
    dead_lettered: int = 0
    parked: int = 0
    halted: int = 0


class ProcessingPipeline(IBackgroundWorker):
    """Consumes a transport with per-partition ordering and effectively-once effects.

    Each delivered message goes through::

        Received -> (Reassembling) -> Checking -> Processing
                 -> Committed | Retrying -> Processing | DeadLettered

    A fixed pool of ``worker_count`` tasks consumes a ready-queue of partition
    keys. A partition is in the queue at most once, so at most one of its
    messages is in flight and its messages are processed in sequence order.
    Retries are scheduled with ``loop.call_later``; the worker moves on to
    other partitions while the failed partition waits out its backoff.

    Positions are committed through a per-partition watermark: only the
    contiguous prefix of terminal deliveries is committed, so a parked
    fragment (waiting for its siblings) is never skipped.

    Usage::

        pipeline = ProcessingPipeline(
            KafkaTransport(...),
            FunctionHandler(apply_payment, is_retryable=is_gateway_timeout),
            RedisIdempotencyStore(redis),
            config=PipelineConfig(worker_count=16),
        )
        await pipeline.start()
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        transport: ITransport,
        handler: IMessageHandler,
        idempotency_store: IIdempotencyStore,
        *,
        config: PipelineConfig | None = None,
        backoff: BackoffPolicy | None = None,
        assembler: ChunkAssembler | None = None,
        dead_letter: DeadLetterRouter | None = None,
        business_key: Callable[[Message], str | None] | None = None,
        snapshot_store: ISnapshotStore | None = None,
        on_partition_halted: Callable[[str, str], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
        hooks: HookRegistry | None = None,
    ) -> None:
        """Wire the pipeline to its collaborators.

        Args:
            transport: Source of messages; also commits and republishes.
            handler: Business logic and its retry predicate.
            idempotency_store: Durable record of processed keys.
            config: Pipeline settings; defaults to ``PipelineConfig()``.
            backoff: Retry policy; built from *config* and the handler's
                ``is_retryable`` when omitted.
            assembler: Chunk assembler; built from *config* when omitted.
            dead_letter: Router; built on *transport* when omitted.
            business_key: Extracts the business idempotency key of a message.
                Defaults to the ``business_key_header`` header.
            snapshot_store: Required for ``ShutdownPolicy.PERSIST``.
            on_partition_halted: Called with ``(partition_key, reason)`` when
                a partition stops making progress.
            clock: Source of timestamps.
            hooks: Instrumentation registry; defaults to the context registry.
        """
        self._config = config or PipelineConfig()
        cfg = self._config
        if cfg.shutdown_policy is ShutdownPolicy.PERSIST and snapshot_store is None:
            raise ValueError("ShutdownPolicy.PERSIST requires a snapshot_store")
        self._transport = transport
        self._handler = handler
        self._store = idempotency_store
        self._backoff = backoff or BackoffPolicy.from_config(
            cfg, is_retryable=handler.is_retryable
        )
        self._assembler = assembler or ChunkAssembler(
            max_assembly_age=cfg.max_assembly_age, clock=clock
        )
        self._dead_letter = dead_letter or DeadLetterRouter(
            transport,
            destination=cfg.dead_letter_topic,
            publish_policy=BackoffPolicy(
                max_attempts=cfg.dead_letter_publish_attempts,
                base_delay=cfg.base_delay,
                max_delay=cfg.max_delay,
                jitter=cfg.jitter,
            ),
            clock=clock,
            hooks=hooks,
        )
        self._business_key = business_key
        self._snapshots = snapshot_store
        self._on_partition_halted = on_partition_halted
        self._clock = clock
        self._hooks = hooks
        self.stats = PipelineStats()

        self._partitions: dict[str, PartitionState] = {}
        self._held: dict[str, list[Delivery]] = {}
        self._retry_states: dict[str, RetryState] = {}
        self._ready: asyncio.Queue[str | None] = asyncio.Queue()
        self._changed = asyncio.Condition()
        self._outstanding = 0
        self._fetches = 0
        self._last_empty_fetch = 0
        self._warned_unmarked = False

        self._running = False
        self._stopping = False
        self._workers: list[asyncio.Task[None]] = []
        self._fetch_task: asyncio.Task[None] | None = None
        self._sweeper: SweeperWorker | None = None

    # ── Introspection ────────────────────────────────────────────────

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def assembler(self) -> ChunkAssembler:
        return self._assembler

    @property
    def outstanding(self) -> int:
        """Deliveries queued, in flight or waiting to be retried."""
        return self._outstanding

    @property
    def halted_partitions(self) -> dict[str, str]:
        """Partition key -> reason, for every partition that stopped progressing."""
        return {
            key: state.halt_reason
            for key, state in self._partitions.items()
            if state.halt_reason is not None
        }

    def retry_state(self, position: str) -> RetryState | None:
        """Retry bookkeeping of the delivery at ``topic:partition_key:sequence_token``."""
        return self._retry_states.get(position)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        cfg = self._config
        if cfg.shutdown_policy is ShutdownPolicy.PERSIST and self._snapshots:
            snapshot = await self._snapshots.load()
            if snapshot is not None:
                self._assembler.restore(snapshot.assemblies)
                self._retry_states.update(snapshot.retry_states)
                logger.info(
                    "Restored %d partial assemblies and %d retry states",
                    len(snapshot.assemblies),
                    len(snapshot.retry_states),
                )
        self._running = True
        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(), name=f"pipeline-worker-{i}")
            for i in range(cfg.worker_count)
        ]
        self._fetch_task = asyncio.create_task(self._fetch_loop(), name="pipeline-fetch")
        if cfg.sweep_interval is not None:
            self._sweeper = SweeperWorker(self.sweep, cfg.sweep_interval)
            await self._sweeper.start()
        logger.info("ProcessingPipeline started (workers=%d)", cfg.worker_count)

    async def stop(self, timeout: float | None = None) -> None:
        """Stop cooperatively.

        Fetching and retry re-submission stop immediately; attempts already
        in flight run to completion (or until *timeout*, after which the
        remaining workers are cancelled).
        """
        if not self._running:
            return
        self._stopping = True
        if self._sweeper is not None:
            await self._sweeper.stop()
            self._sweeper = None
        if self._fetch_task is not None:
            self._fetch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._fetch_task
            self._fetch_task = None
        for state in self._partitions.values():
            if state.retry_handle is not None:
                state.retry_handle.cancel()
                state.retry_handle = None
                state.scheduled = False
        for _ in self._workers:
            self._ready.put_nowait(None)
        if self._workers:
            _, still_running = await asyncio.wait(self._workers, timeout=timeout)
            for task in still_running:
                logger.warning("Cancelling %s after shutdown timeout", task.get_name())
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        self._workers = []

        if self._config.shutdown_policy is ShutdownPolicy.PERSIST and self._snapshots:
            snapshot = PipelineSnapshot(
                assemblies=self._assembler.snapshot(),
                retry_states=dict(self._retry_states),
            )
            await self._snapshots.save(snapshot)
            logger.info(
                "Persisted %d partial assemblies and %d retry states",
                len(snapshot.assemblies),
                len(snapshot.retry_states),
            )
        else:
            dropped = len(self._assembler)
            if dropped:
                logger.info("Dropped %d partial assemblies on shutdown", dropped)
        self._assembler.clear()

        # Uncommitted deliveries are redelivered by the transport after restart.
        self._partitions.clear()
        self._held.clear()
        self._retry_states.clear()
        self._ready = asyncio.Queue()
        self._outstanding = 0
        self._running = False
        await self._notify()
        logger.info("ProcessingPipeline stopped")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until everything fetched so far is terminal, parked or halted.

        Also waits for a fetch that started after this call to come back
        empty, so messages already sitting in the transport are included.

        Raises:
            asyncio.TimeoutError: *timeout* elapsed first.
        """
        marker = self._fetches

        def settled() -> bool:
            if not self._running:
                return True
            return self._last_empty_fetch > marker and not self._busy()

        async def wait() -> None:
            async with self._changed:
                await self._changed.wait_for(settled)

        await asyncio.wait_for(wait(), timeout)

    def submit(self, messages: Iterable[Message]) -> None:
        """Enqueue delivered messages in partition order."""
        for message in messages:
            state = self._partition(message.partition_key)
            delivery = Delivery.received(message)
            state.pending.append(delivery)
            state.uncommitted.append(delivery)
            self._outstanding += 1
            self._schedule(state)

    # ── Fetch loop ───────────────────────────────────────────────────

    async def _fetch_loop(self) -> None:
        cfg = self._config
        while not self._stopping:
            async with self._changed:
                await self._changed.wait_for(
                    lambda: self._outstanding < cfg.max_buffered or self._stopping
                )
            if self._stopping:
                return
            self._fetches += 1
            generation = self._fetches
            try:
                batch = await self._transport.fetch(cfg.max_records, cfg.fetch_timeout)
            except Exception:
                logger.exception("Fetch failed; retrying in %.1fs", cfg.fetch_timeout)
                await asyncio.sleep(cfg.fetch_timeout)
                continue
            if batch:
                logger.debug("Fetched %d messages", len(batch))
                self.submit(batch)
            else:
                self._last_empty_fetch = generation
                await self._notify()

    # ── Scheduling ───────────────────────────────────────────────────

    def _partition(self, key: str) -> PartitionState:
        state = self._partitions.get(key)
        if state is None:
            state = PartitionState(key)
            self._partitions[key] = state
        return state

    def _schedule(self, state: PartitionState) -> None:
        if state.scheduled or state.is_halted or not state.pending or self._stopping:
            return
        state.scheduled = True
        self._ready.put_nowait(state.key)

    def _resubmit(self, state: PartitionState) -> None:
        state.retry_handle = None
        if self._stopping or state.is_halted:
            state.scheduled = False
            return
        self._ready.put_nowait(state.key)

    def _busy(self) -> bool:
        return any(
            state.pending and not state.is_halted for state in self._partitions.values()
        )

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    async def _worker(self) -> None:
        while True:
            key = await self._ready.get()
            if key is None:
                return
            state = self._partitions.get(key)
            if state is None:
                continue
            if self._stopping or state.is_halted or not state.pending:
                state.scheduled = False
                continue
            step = await self._run_head(state)
            await self._after(state, step)

    async def _after(self, state: PartitionState, step: _Step) -> None:
        if step.outcome in _TERMINAL:
            delivery = state.pending.popleft()
            self._outstanding -= 1
            self._retry_states.pop(delivery.position, None)
            await self._release(delivery.sources)
        elif step.outcome is Outcome.PARKED:
            state.pending.popleft()
            self._outstanding -= 1
        elif step.outcome is Outcome.RETRYING and not self._stopping:
            loop = asyncio.get_running_loop()
            state.retry_handle = loop.call_later(step.delay, self._resubmit, state)
            return
        state.scheduled = False
        self._schedule(state)
        if state.is_idle:
            self._partitions.pop(state.key, None)
        await self._notify()

    # ── Commit watermark ─────────────────────────────────────────────

    async def _release(self, deliveries: list[Delivery]) -> None:
        keys: dict[str, None] = {}
        for delivery in deliveries:
            delivery.done = True
            keys[delivery.message.partition_key] = None
        for key in keys:
            state = self._partitions.get(key)
            if state is not None:
                await self._advance(state)

    async def _advance(self, state: PartitionState) -> None:
        async with state.commit_lock:
            last = state.take_committable()
            if last is None:
                return
            try:
                await self._transport.commit(last.message)
            except Exception:
                # Redelivery of the uncommitted range is absorbed by the store.
                logger.exception("Commit of %s failed", last.message.coordinates)
            else:
                logger.debug("Committed %s", last.message.coordinates)

    # ── One turn on a partition head ─────────────────────────────────

    async def _run_head(self, state: PartitionState) -> _Step:
        delivery = state.pending[0]
        try:
            if delivery.fragment:
                step = await self._reassemble(state, delivery)
                if step is not None:
                    return step
                delivery = state.pending[0]
            return await self._process(state, delivery)
        except Exception as e:
            logger.exception(
                "Unexpected error handling %s; halting partition",
                delivery.message.coordinates,
            )
            self._halt(state, f"{type(e).__name__}: {e}")
            return _Step(Outcome.HALTED)

    async def _reassemble(
        self, state: PartitionState, delivery: Delivery
    ) -> _Step | None:
        """Feed a fragment to the assembler.

        Returns None once the head has been replaced by the reconstructed
        message, which then continues to the idempotency check.
        """
        message = delivery.message
        try:
            fragment = parse_fragment(message)
        except MalformedChunkingError as e:
            return await self._dead_letter_head(
                state, [message], FailureReason.MALFORMED_CHUNKING, str(e), 0
            )

        result = await self._assembler.ingest(fragment)
        logical_id = result.logical_message_id
        if result.status is AssemblyStatus.INCOMPLETE:
            self._held.setdefault(logical_id, []).append(delivery)
            self.stats.parked += 1
            logger.debug(
                "Parked chunk %d of %s (%d/%d received)",
                fragment.chunk_index,
                logical_id,
                result.received,
                result.total,
            )
            return _Step(Outcome.PARKED)

        if result.status is AssemblyStatus.COMPLETE:
            held = self._held.pop(logical_id, [])
            reconstructed = message.model_copy(
                update={
                    "payload": result.payload,
                    "headers": strip_chunk_headers(message.headers),
                }
            )
            state.pending[0] = Delivery(reconstructed, sources=[*held, delivery])
            logger.debug(
                "Reassembled %s from %d chunks", logical_id, result.total
            )
            return None

        if logical_id in self._assembler:
            # The assembly survives; only this fragment is rejected.
            failed = [delivery]
        else:
            failed = [*self._held.pop(logical_id, []), delivery]
            state.pending[0] = Delivery(message, sources=failed)
        return await self._dead_letter_head(
            state,
            [d.message for d in failed],
            FailureReason.MALFORMED_CHUNKING,
            f"{logical_id}: {result.detail or result.status.value}",
            0,
        )

    async def _process(self, state: PartitionState, delivery: Delivery) -> _Step:
        message = delivery.message
        if delivery.key is None:
            delivery.key = derive_idempotency_key(
                message,
                self._business_key,
                header=self._config.business_key_header,
            )
        key = delivery.key
        retry = self._retry_states.get(delivery.position)
        if retry is None:
            retry = RetryState(first_attempt_at=self._clock())
            self._retry_states[delivery.position] = retry

        if not delivery.effect_applied:
            try:
                duplicate = await self._call_store(self._store.has_processed(key))
            except StoreUnavailableError as e:
                return await self._on_failure(state, delivery, retry, e)
            if duplicate:
                self.stats.duplicates += 1
                logger.debug("Skipping duplicate %s (key=%s)", message.coordinates, key)
                return _Step(Outcome.DUPLICATE)

            context = ProcessingContext(
                message=message,
                idempotency_key=key,
                attempt=retry.attempt_count + 1,
                _store=self._store,
                _ttl=self._config.retention,
            )
            try:
                await self._invoke(message, context)
            except ConflictError:
                self.stats.duplicates += 1
                logger.info(
                    "Concurrent delivery of %s already processed (key=%s)",
                    message.coordinates,
                    key,
                )
                return _Step(Outcome.DUPLICATE)
            except Exception as e:  # noqa: BLE001
                return await self._on_failure(state, delivery, retry, e)
            if context.marked:
                return self._processed(message)
            delivery.effect_applied = True
            if self._config.idempotency_mode is IdempotencyMode.TRANSACTIONAL:
                self._warn_unmarked(key)

        try:
            await self._call_store(
                self._store.mark_processed(key, self._config.retention)
            )
        except ConflictError:
            logger.warning(
                "Key %s was marked by a concurrent delivery of %s",
                key,
                message.coordinates,
            )
            return _Step(Outcome.DUPLICATE)
        except StoreUnavailableError as e:
            # Only the mark is retried; the side effect is not re-applied.
            return await self._on_failure(state, delivery, retry, e)
        return self._processed(message)

    def _warn_unmarked(self, key: IdempotencyKey) -> None:
        """Warn on the first unmarked handler return; later ones log at debug."""
        level = logging.DEBUG if self._warned_unmarked else logging.WARNING
        self._warned_unmarked = True
        logger.log(
            level,
            "Handler returned without marking %s; marking outside its transaction",
            key,
        )

    def _processed(self, message: Message) -> _Step:
        self.stats.processed += 1
        logger.debug("Processed %s", message.coordinates)
        return _Step(Outcome.COMMITTED)

    async def _invoke(self, message: Message, context: ProcessingContext) -> None:
        registry = self._hooks or get_hook_registry()
        token = _current_context.set(context)
        try:
            with message_correlation(message):
                await registry.execute_all(
                    process_operation(message.topic),
                    message_attributes(
                        message,
                        **{
                            "message.attempt": context.attempt,
                            "idempotency.key": context.idempotency_key.value,
                        },
                    ),
                    lambda: self._call_handler(message),
                )
        finally:
            _current_context.reset(token)

    async def _call_handler(self, message: Message) -> None:
        timeout: float | None = getattr(self._handler, "timeout", None)
        if timeout is None:
            await self._handler.process(message)
            return
        try:
            await asyncio.wait_for(self._handler.process(message), timeout)
        except asyncio.TimeoutError as e:
            raise TransientError(f"Handler timed out after {timeout}s") from e

    async def _call_store(self, operation: Awaitable[Any]) -> Any:
        timeout = self._config.store_timeout
        if timeout is None:
            return await operation
        try:
            return await asyncio.wait_for(operation, timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Idempotency store did not answer within {timeout}s"
            ) from e

    async def _on_failure(
        self,
        state: PartitionState,
        delivery: Delivery,
        retry: RetryState,
        error: Exception,
    ) -> _Step:
        message = delivery.message
        retry.record_failure(error, self._clock())
        error_class = self._backoff.classify(error)
        if error_class is ErrorClass.RETRYABLE and not self._backoff.exhausted(
            retry.attempt_count
        ):
            delay = self._backoff.next_delay(retry.attempt_count)
            self.stats.retries += 1
            logger.info(
                "Attempt %d of %s failed, retrying in %.2fs: %s",
                retry.attempt_count,
                message.coordinates,
                delay,
                retry.last_error,
            )
            return _Step(Outcome.RETRYING, float(delay))

        reason = _failure_reason(error, error_class)
        detail = retry.last_error or repr(error)
        if delivery.effect_applied:
            detail = f"side effect applied but not marked: {detail}"
        # A reassembled message goes out as the fragments it was built from.
        if len(delivery.sources) > 1:
            messages = [source.message for source in delivery.sources]
        else:
            messages = [message]
        return await self._dead_letter_head(
            state,
            messages,
            reason,
            detail,
            retry.attempt_count,
            first_failed_at=retry.first_attempt_at,
        )

    # ── Dead-lettering and halting ───────────────────────────────────

    async def _dead_letter_head(
        self,
        state: PartitionState,
        messages: list[Message],
        reason: FailureReason,
        detail: str,
        attempt_count: int,
        *,
        first_failed_at: datetime | None = None,
    ) -> _Step:
        head = state.pending[0]
        halted: list[HaltedDeadLetter] = []
        for message in messages:
            envelope = self._dead_letter.build_envelope(
                message, reason, detail, attempt_count, first_failed_at=first_failed_at
            )
            try:
                await self._dead_letter.publish(envelope)
            except TerminalRoutingError as e:
                halted.append(HaltedDeadLetter(envelope, head, str(e)))
            else:
                self.stats.dead_lettered += 1
        if halted:
            state.halted.extend(halted)
            self._halt(state, halted[0].error)
            return _Step(Outcome.HALTED)
        return _Step(Outcome.DEAD_LETTERED)

    def _halt(self, state: PartitionState, reason: str) -> None:
        if state.is_halted:
            return
        state.halt_reason = reason
        self.stats.halted += 1
        logger.error("Partition %s halted: %s", state.key, reason)
        if self._on_partition_halted is not None:
            try:
                self._on_partition_halted(state.key, reason)
            except Exception:
                logger.exception("on_partition_halted callback failed")

    async def resume_partition(self, partition_key: str) -> bool:
        """Retry the dead-letter publishes that halted *partition_key*.

        Returns True when the partition makes progress again. The message at
        the head (if it was not dead-lettered) is attempted again.
        """
        state = self._partitions.get(partition_key)
        if state is None or not state.is_halted:
            return False
        remaining: list[HaltedDeadLetter] = []
        for entry in state.halted:
            try:
                await self._dead_letter.publish(entry.envelope)
            except TerminalRoutingError as e:
                entry.error = str(e)
                remaining.append(entry)
            else:
                self.stats.dead_lettered += 1
        if remaining:
            state.halted = remaining
            state.halt_reason = remaining[0].error
            logger.error(
                "Partition %s still halted: %d dead letters pending",
                partition_key,
                len(remaining),
            )
            return False

        released = {id(entry.delivery): entry.delivery for entry in state.halted}
        state.halted = []
        state.halt_reason = None
        for delivery in released.values():
            if state.pending and state.pending[0] is delivery:
                state.pending.popleft()
                self._outstanding -= 1
                self._retry_states.pop(delivery.position, None)
            await self._release(delivery.sources)
        logger.info("Partition %s resumed", partition_key)
        self._schedule(state)
        await self._notify()
        return True

    # ── Expiration sweeps ────────────────────────────────────────────

    async def sweep(self) -> SweepReport:
        """Run one expiration cycle over the idempotency store and assemblies.

        Fragments of evicted assemblies are dead-lettered as
        ``MalformedChunking``; their positions are then committable.
        """
        registry = self._hooks or get_hook_registry()
        report: SweepReport = await registry.execute_all(
            SWEEP_OPERATION,
            {"correlation_id": get_correlation_id()},
            self._sweep,
        )
        return report

    async def _sweep(self) -> SweepReport:
        report = SweepReport()
        try:
            report.expired_records = await self._call_store(self._store.sweep_expired())
        except StoreUnavailableError as e:
            logger.warning("Idempotency sweep skipped: %s", e)

        # Claim every evicted id's parked fragments before the first await so
        # a fragment arriving mid-sweep starts a fresh assembly.
        claimed = [
            (evicted, self._held.pop(evicted.logical_message_id, []))
            for evicted in self._assembler.sweep_expired()
        ]
        for evicted, parked in claimed:
            report.evicted_assemblies.append(evicted.logical_message_id)
            detail = (
                f"{evicted.logical_message_id}: assembly evicted after "
                f"{evicted.age_seconds:.0f}s with {evicted.received}/"
                f"{evicted.total} chunks"
            )
            for delivery in parked:
                if await self._dead_letter_parked(delivery, detail):
                    report.dead_lettered += 1
        if report.dead_lettered:
            await self._notify()
        return report

    async def _dead_letter_parked(self, delivery: Delivery, detail: str) -> bool:
        envelope: DeadLetterEnvelope = self._dead_letter.build_envelope(
            delivery.message, FailureReason.MALFORMED_CHUNKING, detail, 0
        )
        try:
            await self._dead_letter.publish(envelope)
        except TerminalRoutingError as e:
            state = self._partition(delivery.message.partition_key)
            state.halted.append(HaltedDeadLetter(envelope, delivery, str(e)))
            self._halt(state, str(e))
            return False
        self.stats.dead_lettered += 1
        await self._release([delivery])
        return True


def _failure_reason(error: Exception, error_class: ErrorClass) -> FailureReason:
    if isinstance(error, MalformedChunkingError):
        return FailureReason.MALFORMED_CHUNKING
    if isinstance(error, StoreUnavailableError):
        return FailureReason.STORE_UNAVAILABLE
    if error_class is ErrorClass.NON_RETRYABLE:
        return FailureReason.VALIDATION_ERROR
    return FailureReason.TRANSIENT_ERROR
