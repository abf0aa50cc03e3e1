"""
Graph Executor - Runs a compiled workflow graph for one thread at a time.

The executor:
1. Loads the thread's latest checkpoint (or seeds a new thread from input)
2. Executes the current frontier; several nodes run concurrently when a
   dispatcher fanned out
3. Merges each node's partial update through the channel reducers in
   completion order and persists a checkpoint after every merge
4. Routes via RoutingDirective, unconditional edges or the node's router
5. Gates join nodes on their synchronizer
6. Stops at an interrupt, a terminal node, or when nothing is left to run

Node and router failures are captured into the errors channel so the thread stays
resumable. Engine failures (recursion limit, checkpoint store) propagate
and leave the last checkpoint untouched.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any

from proposal_engine.config import DEFAULT_RECURSION_LIMIT
from proposal_engine.errors import (
    NodeTimeoutError,
    RecursionLimitExceeded,
    RoutingError,
    ThreadNotFound,
    ValidationError,
)
from proposal_engine.graph.builder import CompiledGraph
from proposal_engine.graph.channels import apply_update, bump_versions, normalize_update
from proposal_engine.graph.node import END, NodeSpec, RoutingDirective
from proposal_engine.observability import set_trace_context
from proposal_engine.retry import RetryPolicy, with_retry
from proposal_engine.schemas.checkpoint import (
    ChannelWrite,
    Checkpoint,
    CheckpointMetadata,
    CheckpointSource,
)
from proposal_engine.schemas.state import ProcessingStatus, WorkflowState, utc_now
from proposal_engine.storage.checkpoint_store import CheckpointStore
from proposal_engine.utils.locks import ThreadLocks

logger = logging.getLogger(__name__)

# Pseudo-node names recorded in ChannelWrite.node
INPUT_NODE = "__input__"
ENGINE_NODE = "__engine__"


@dataclass
class NodeOutcome:
    """What one node invocation produced."""

    node_id: str
    update: dict[str, Any] = field(default_factory=dict)
    goto: list[str] | None = None
    error: str | None = None
    attempts: int = 1
    latency_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class _Cursor:
    """Execution position of a thread, mirrored into every checkpoint's metadata."""

    sequence: int = -1
    step: int = 0
    versions: dict[str, int] = field(default_factory=dict)
    barriers: dict[str, list[str]] = field(default_factory=dict)
    epoch: int = 0
    failed_nodes: list[str] = field(default_factory=list)
    resume_routes: list[str] = field(default_factory=list)

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "_Cursor":
        meta = checkpoint.metadata
        return cls(
            sequence=checkpoint.sequence,
            step=meta.step,
            versions=dict(checkpoint.channel_versions),
            barriers={join: list(arrived) for join, arrived in meta.barriers.items()},
            epoch=meta.epoch,
            failed_nodes=list(meta.failed_nodes),
            resume_routes=list(meta.resume_routes),
        )


class GraphExecutor:
    """
    Drives a thread through a compiled graph, checkpointing after every step.

    Example:
        store = await open_checkpoint_store(FileCheckpointBackend(path))
        executor = GraphExecutor(graph, store)

        state = await executor.run("user-1::rfp-42::proposal", input_override={...})
        if state.is_interrupted:
            ...  # hand over to the InterruptController
    """

    def __init__(
        self,
        graph: CompiledGraph,
        store: CheckpointStore,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
        retry_policy: RetryPolicy | None = None,
        node_timeout_seconds: float | None = None,
        sleep=asyncio.sleep,
    ):
        """
        Args:
            graph: Compiled graph to execute
            store: Checkpoint store shared by all threads
            recursion_limit: Maximum node executions per run
            retry_policy: Backoff for transient node failures
            node_timeout_seconds: Default per-node time budget (None = unbounded)
            sleep: Injected for tests
        """
        self.graph = graph
        self.store = store
        self.recursion_limit = recursion_limit
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=1.0)
        self.node_timeout_seconds = node_timeout_seconds
        self._sleep = sleep
        self._thread_locks = ThreadLocks()

    # === PUBLIC API ===

    async def run(
        self,
        thread_id: str,
        start_node: str | None = None,
        input_override: dict[str, Any] | None = None,
    ) -> WorkflowState:
        """
        Run a thread until it completes, interrupts, or runs out of work.

        Args:
            thread_id: Thread to run
            start_node: Run from this node instead of the checkpointed frontier
            input_override: Seed update for a thread with no checkpoints yet
                (ignored when the thread already exists)

        Returns:
            State after the last merged step

        Raises:
            ThreadNotFound: No checkpoint exists and no input was given
            RecursionLimitExceeded: More than recursion_limit node executions
            CheckpointStoreError: The store failed after retries
        """
        set_trace_context(thread_id=thread_id)
        async with self._thread_locks.hold(thread_id):
            return await self._run_locked(thread_id, start_node, input_override)

    async def update_state(
        self,
        thread_id: str,
        update: dict[str, Any],
        as_node: str,
        goto: str | list[str] | None = None,
        source: CheckpointSource = CheckpointSource.UPDATE,
    ) -> WorkflowState:
        """
        Apply an update outside a run, as if node as_node had written it.

        This is the only way to change a thread's state between runs; the
        update is merged through the reducers and checkpointed like any step.

        Args:
            thread_id: Thread to update
            update: Partial update keyed by channel name
            as_node: Name recorded as the writer
            goto: Node(s) to run next, added in front of the unfinished
                frontier; the interrupted node's own routing is dropped
            source: Checkpoint source to record

        Returns:
            The updated state

        Raises:
            ThreadNotFound: The thread has no checkpoints
            ValidationError: The update does not fit the state schema
        """
        async with self._thread_locks.hold(thread_id):
            latest = await self.store.get(thread_id)
            if latest is None:
                raise ThreadNotFound(thread_id)

            cursor = _Cursor.from_checkpoint(latest)
            writes: list[ChannelWrite] = []
            state, written = self._merge(latest.state(), as_node, update, writes, cursor)

            next_nodes = list(latest.metadata.next_nodes)
            pending = list(latest.metadata.pending_nodes)
            if goto is not None:
                targets = [goto] if isinstance(goto, str) else list(goto)
                for target in targets:
                    self._check_node(target)
                # Branches cancelled by an interrupt and joins waiting on them stay queued
                next_nodes = list(dict.fromkeys(targets + next_nodes))
                interrupted_at = latest.state().interrupt_status.interruption_point
                if interrupted_at is None:
                    cursor.resume_routes = []
                else:
                    cursor.resume_routes = [n for n in cursor.resume_routes if n != interrupted_at]

            await self._persist(
                thread_id, state, cursor, source, as_node, writes, next_nodes, pending,
                advance_step=False,
            )
            logger.info(
                f"✎ State of {thread_id} updated as {as_node} "
                f"({', '.join(sorted(written - {'last_updated_at'}))})"
            )
            return state

    async def get_state(self, thread_id: str) -> WorkflowState | None:
        latest = await self.store.get(thread_id)
        return latest.state() if latest else None

    async def get_checkpoint(self, thread_id: str) -> Checkpoint | None:
        return await self.store.get(thread_id)

    async def get_history(self, thread_id: str) -> list[Checkpoint]:
        """Every checkpoint of the thread, most recent first."""
        return await self.store.list(thread_id)

    # === RUN LOOP ===

    async def _run_locked(
        self,
        thread_id: str,
        start_node: str | None,
        input_override: dict[str, Any] | None,
    ) -> WorkflowState:
        latest = await self.store.get(thread_id)
        run_failed = False

        if latest is None:
            if input_override is None:
                raise ThreadNotFound(thread_id)
            entry = start_node or self.graph.entry_point
            self._check_node(entry)
            cursor = _Cursor()
            state = WorkflowState(active_thread_id=thread_id, status=ProcessingStatus.RUNNING)
            writes: list[ChannelWrite] = []
            state, _ = self._merge(state, INPUT_NODE, input_override, writes, cursor)
            await self._persist(
                thread_id, state, cursor, CheckpointSource.INPUT, INPUT_NODE, writes,
                [entry], [], advance_step=False,
            )
            logger.info(f"🚀 Started thread {thread_id} at {entry}")
            frontier: list[str] = [entry]
            pending: list[str] = []
        else:
            state = latest.state()
            if state.is_interrupted:
                logger.info(
                    f"⏸ Thread {thread_id} is waiting for feedback at "
                    f"{state.interrupt_status.interruption_point}"
                )
                return state
            if input_override:
                logger.warning(f"Thread {thread_id} already exists; ignoring input override")

            cursor = _Cursor.from_checkpoint(latest)
            if start_node:
                self._check_node(start_node)
                frontier, pending = [start_node], []
                cursor.resume_routes = []
            else:
                frontier = list(latest.metadata.next_nodes)
                pending = list(latest.metadata.pending_nodes)
                if cursor.resume_routes:
                    state, run_failed = await self._resolve_resume_routes(
                        thread_id, state, cursor, frontier, pending
                    )
            if not frontier:
                frontier, pending = pending, []
            if not frontier and not run_failed:
                logger.info(f"✓ Thread {thread_id} has nothing left to run")
                return state
            if frontier:
                logger.info(f"🔄 Resuming thread {thread_id} at {frontier}")

        executions = 0

        while frontier:
            runnable = self._runnable(frontier, cursor)
            if not runnable:
                frontier, pending = pending, []
                continue

            if executions + len(runnable) > self.recursion_limit:
                logger.error(
                    f"✗ Recursion limit {self.recursion_limit} reached on {thread_id} "
                    f"(next: {runnable})"
                )
                raise RecursionLimitExceeded(self.recursion_limit, thread_id)

            if len(runnable) > 1:
                logger.info(f"⑂ Fan-out: running {runnable} in parallel")

            snapshot = state
            in_flight = list(runnable)
            tasks = [asyncio.create_task(self._execute_node(n, snapshot)) for n in runnable]
            try:
                for next_done in asyncio.as_completed(tasks):
                    outcome = await next_done
                    in_flight.remove(outcome.node_id)
                    executions += 1
                    state, interrupted, failed = await self._commit(
                        thread_id, outcome, state, cursor, in_flight, pending
                    )
                    run_failed = run_failed or failed
                    if interrupted:
                        logger.info(
                            f"⏸ Interrupted at {outcome.node_id}; waiting for feedback"
                        )
                        return state
            finally:
                unfinished = [t for t in tasks if not t.done()]
                for task in unfinished:
                    task.cancel()
                if unfinished:
                    await asyncio.gather(*unfinished, return_exceptions=True)

            frontier, pending = pending, []

        if run_failed and state.status != ProcessingStatus.COMPLETE:
            writes = []
            state, _ = self._merge(
                state, ENGINE_NODE, {"status": ProcessingStatus.ERROR}, writes, cursor
            )
            await self._persist(
                thread_id, state, cursor, CheckpointSource.LOOP, ENGINE_NODE, writes, [], [],
                advance_step=False,
            )
            logger.warning(f"✗ Thread {thread_id} stopped after node failures")
        else:
            logger.info(f"✓ Run of {thread_id} finished ({executions} steps)")
        return state

    def _runnable(self, frontier: list[str], cursor: _Cursor) -> list[str]:
        """Frontier nodes that may run now; joins whose barrier is incomplete pass through."""
        runnable: list[str] = []
        for node_id in frontier:
            if node_id in runnable:
                continue
            sync = self.graph.synchronizer(node_id)
            if sync is not None and not sync.is_ready(cursor.barriers):
                logger.info(f"⑃ {node_id} waiting for {sync.missing(cursor.barriers)}")
                continue
            runnable.append(node_id)
        return runnable

    async def _resolve_resume_routes(
        self,
        thread_id: str,
        state: WorkflowState,
        cursor: _Cursor,
        frontier: list[str],
        pending: list[str],
    ) -> tuple[WorkflowState, bool]:
        """
        Route out of the nodes that interrupted, now that feedback has been applied.

        A router that raises is recorded as a failure of the node it routes for.

        Returns:
            (new state, failed)
        """
        completes = False
        failed = False
        writes: list[ChannelWrite] = []
        for node_id in cursor.resume_routes:
            try:
                targets = self.graph.static_successors(node_id, state)
            except Exception as e:
                outcome = NodeOutcome(node_id=node_id, error=f"{type(e).__name__}: {e}")
                spec = self.graph.node(node_id).spec
                state, _ = self._merge(
                    state, node_id, self._error_update(spec, outcome), writes, cursor
                )
                cursor.failed_nodes.append(node_id)
                failed = True
                logger.error(f"   ✗ Routing out of {node_id} failed: {outcome.error}")
                continue
            for target in targets:
                if target == END:
                    completes = True
                elif target not in pending:
                    pending.append(target)
            completes = completes or self.graph.is_terminal(node_id)
            logger.info(f"   → {node_id} routes to {pending or [END]}")
        cursor.resume_routes = []

        if completes and not failed:
            state, _ = self._merge(
                state, ENGINE_NODE, {"status": ProcessingStatus.COMPLETE}, writes, cursor
            )
        if writes:
            await self._persist(
                thread_id, state, cursor, CheckpointSource.LOOP, ENGINE_NODE, writes,
                frontier, pending, advance_step=False,
            )
        return state, failed

    async def _commit(
        self,
        thread_id: str,
        outcome: NodeOutcome,
        state: WorkflowState,
        cursor: _Cursor,
        in_flight: list[str],
        pending: list[str],
    ) -> tuple[WorkflowState, bool, bool]:
        """
        Merge one node's outcome, route, and checkpoint.

        Returns:
            (new state, interrupted, failed)
        """
        node_id = outcome.node_id
        spec = self.graph.node(node_id).spec
        writes: list[ChannelWrite] = []
        written: set[str] = set()
        source = CheckpointSource.LOOP

        if not outcome.failed:
            try:
                state, written = self._merge(state, node_id, outcome.update, writes, cursor)
            except ValidationError as e:
                outcome.error = f"{type(e).__name__}: {e}"

        if not outcome.failed and state.is_interrupted:
            # The node completed; only its routing waits for feedback
            for sync in self.graph.joins_fed_by(node_id):
                cursor.barriers = sync.record_arrival(cursor.barriers, node_id, written)
            cursor.resume_routes.append(node_id)
            await self._persist(
                thread_id, state, cursor, CheckpointSource.INTERRUPT, node_id, writes,
                in_flight, pending,
            )
            return state, True, False

        targets: list[str] = []
        if not outcome.failed:
            try:
                targets = self._successors(spec, state, outcome.goto)
            except Exception as e:
                outcome.error = f"{type(e).__name__}: {e}"

        if outcome.failed:
            state, _ = self._merge(state, node_id, self._error_update(spec, outcome), writes, cursor)
            cursor.failed_nodes.append(node_id)
            logger.error(f"   ✗ {node_id} failed after {outcome.attempts} attempt(s): {outcome.error}")
        else:
            logger.info(f"   ✓ {node_id} ({outcome.latency_ms}ms)")
            for sync in self.graph.joins_fed_by(node_id):
                cursor.barriers = sync.record_arrival(cursor.barriers, node_id, written)

        sync = self.graph.synchronizer(node_id)
        if sync is not None:
            cursor.barriers = sync.reset(cursor.barriers)
            cursor.epoch += 1

        if not outcome.failed and (END in targets or self.graph.is_terminal(node_id)):
            state, _ = self._merge(
                state, ENGINE_NODE, {"status": ProcessingStatus.COMPLETE}, writes, cursor
            )
            logger.info(f"✓ Reached end of workflow at {node_id}")

        for target in targets:
            if target != END and target not in pending:
                pending.append(target)
        if targets and not outcome.failed:
            logger.info(f"   → Next: {[t for t in targets if t != END] or [END]}")

        await self._persist(thread_id, state, cursor, source, node_id, writes, in_flight, pending)
        return state, False, outcome.failed

    def _successors(
        self, spec: NodeSpec, state: WorkflowState, goto: list[str] | None
    ) -> list[str]:
        if goto is None:
            return self.graph.static_successors(spec.id, state)

        allowed = set(spec.destinations) | {END}
        for target in goto:
            if target not in allowed:
                raise RoutingError(
                    f"Node '{spec.id}' directed to '{target}', which is not one of its "
                    f"declared destinations {sorted(spec.destinations)}"
                )
        return list(dict.fromkeys(goto))

    @staticmethod
    def _error_update(spec: NodeSpec, outcome: NodeOutcome) -> dict[str, Any]:
        update: dict[str, Any] = {"errors": [f"{spec.id}: {outcome.error}"]}
        if spec.status_channel:
            update[spec.status_channel] = ProcessingStatus.ERROR
        return update

    # === NODE EXECUTION ===

    def _policy_for(self, spec: NodeSpec) -> RetryPolicy:
        if spec.max_retries is None:
            return self.retry_policy
        return replace(self.retry_policy, max_attempts=spec.max_retries + 1)

    async def _execute_node(self, node_id: str, state: WorkflowState) -> NodeOutcome:
        """Invoke one node with retry and timeout. Never raises for node failures."""
        set_trace_context(node_id=node_id)
        node = self.graph.node(node_id)
        timeout = node.spec.timeout_seconds or self.node_timeout_seconds
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            if timeout is None:
                return await node.invoke(state)
            try:
                return await asyncio.wait_for(node.invoke(state), timeout)
            except TimeoutError as e:
                raise NodeTimeoutError(f"Node '{node_id}' exceeded {timeout}s") from e

        logger.info(f"▶ {node_id}")
        start = time.monotonic()
        try:
            result = await with_retry(
                attempt, self._policy_for(node.spec), description=f"node {node_id}",
                sleep=self._sleep,
            )
        except Exception as e:
            return NodeOutcome(
                node_id=node_id,
                error=f"{type(e).__name__}: {e}",
                attempts=attempts,
                latency_ms=int((time.monotonic() - start) * 1000),
            )
        latency_ms = int((time.monotonic() - start) * 1000)

        if isinstance(result, RoutingDirective):
            return NodeOutcome(
                node_id=node_id,
                update=dict(result.update),
                goto=result.targets(),
                attempts=attempts,
                latency_ms=latency_ms,
            )
        if result is None or isinstance(result, dict):
            return NodeOutcome(
                node_id=node_id, update=dict(result or {}), attempts=attempts,
                latency_ms=latency_ms,
            )
        return NodeOutcome(
            node_id=node_id,
            error=f"Node returned unsupported type {type(result).__name__}",
            attempts=attempts,
            latency_ms=latency_ms,
        )

    # === MERGE / PERSIST ===

    def _merge(
        self,
        state: WorkflowState,
        node_id: str,
        update: dict[str, Any],
        writes: list[ChannelWrite],
        cursor: _Cursor,
    ) -> tuple[WorkflowState, set[str]]:
        stamped = normalize_update({**update, "last_updated_at": utc_now()})
        new_state, written = apply_update(state, stamped)
        writes.append(ChannelWrite(node=node_id, update=stamped))
        cursor.versions = bump_versions(cursor.versions, written)
        return new_state, written

    async def _persist(
        self,
        thread_id: str,
        state: WorkflowState,
        cursor: _Cursor,
        source: CheckpointSource,
        node_id: str,
        writes: list[ChannelWrite],
        next_nodes: list[str],
        pending: list[str],
        advance_step: bool = True,
    ) -> Checkpoint:
        sequence = cursor.sequence + 1
        step = cursor.step + 1 if advance_step else cursor.step
        metadata = CheckpointMetadata(
            source=source,
            step=step,
            parent_sequence=cursor.sequence if cursor.sequence >= 0 else None,
            node=node_id,
            next_nodes=list(next_nodes),
            pending_nodes=list(pending),
            resume_routes=list(cursor.resume_routes),
            barriers={join: list(arrived) for join, arrived in cursor.barriers.items()},
            epoch=cursor.epoch,
            failed_nodes=list(cursor.failed_nodes),
        )
        checkpoint = Checkpoint.create(
            thread_id, sequence, state, metadata, channel_versions=cursor.versions, writes=writes
        )
        stored = await self.store.put(thread_id, checkpoint)
        cursor.sequence, cursor.step = sequence, step
        return stored

    def _check_node(self, node_id: str) -> None:
        if node_id not in self.graph.registry:
            raise RoutingError(f"Unknown node '{node_id}'")
