import asyncio
import contextlib
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from stakepop.chain import ChainClient
from stakepop.constants import (
    FINALITY_TIMEOUT,
    MAX_CONCURRENCY,
    REACHED,
    TERMINAL_STATES,
    Confirmation,
    TxState,
)
from stakepop.errors import ChainConnectionError, FinalityTimeout, SubmissionError

log = logging.getLogger("stakepop.tracking")

BuildFn = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class PendingTx:
    label: str
    account: str
    tx_hash: str | None = None
    state: TxState = TxState.CREATED
    block_hash: str | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    finalized_at: float | None = None

    @property
    def key(self) -> str:
        return f"{self.label}:{self.account}"

    def reached(self, until: Confirmation) -> bool:
        return self.state in REACHED[until]

    def raise_for_state(self, until: Confirmation, *, stage: str | None = None) -> None:
        if self.reached(until):
            return
        stage = stage or self.label
        if self.state is TxState.TIMED_OUT:
            raise FinalityTimeout(self.error or "timed out", stage=stage, account=self.account)
        raise SubmissionError(self.error or f"ended in {self.state}", stage=stage, account=self.account)

    def __str__(self):
        return f"{self.label} -- {self.account} -- {self.state}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "account": self.account,
            "tx_hash": self.tx_hash,
            "state": self.state.name,
            "block_hash": self.block_hash,
            "error": self.error,
        }


class Store(Protocol):
    async def upsert(self, p: PendingTx) -> None: ...
    async def mark(self, key: str, **fields) -> None: ...
    async def find_by_state(self, *states: TxState) -> list[PendingTx]: ...
    async def all(self) -> list[PendingTx]: ...


class InMemoryStore:
    def __init__(self) -> None:
        self._d: dict[str, PendingTx] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, p: PendingTx) -> None:
        async with self._lock:
            self._d[p.key] = p

    async def mark(self, key: str, **fields) -> None:
        async with self._lock:
            p = self._d.get(key)
            if not p:
                return
            for k, v in fields.items():
                setattr(p, k, v)
            if p.state in TERMINAL_STATES:
                p.finalized_at = p.finalized_at or time.time()

    async def find_by_state(self, *states: TxState) -> list[PendingTx]:
        async with self._lock:
            S = set(states)
            return [p for p in self._d.values() if p.state in S]

    async def all(self) -> list[PendingTx]:
        async with self._lock:
            return list(self._d.values())

    def snapshot_stats(self) -> dict[str, Any]:
        return {
            "total_tracked": len(self._d),
            "by_state": dict(Counter(p.state.name for p in self._d.values())),
            "by_label": dict(Counter(p.label for p in self._d.values())),
        }


class Submitter:
    """Submits signed extrinsics and waits until each one is terminal.

    Every wait is bounded by ``timeout``; a transaction that does not reach
    its confirmation level in time ends up TIMED_OUT.
    """

    def __init__(self, client: ChainClient, store: Store | None = None, *,
                 timeout: float = FINALITY_TIMEOUT, max_concurrency: int = MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.client = client
        self.store: Store = store or InMemoryStore()
        self.timeout = timeout
        # The timeout clock of a wait starts when it is allowed in flight
        limit = getattr(client, "max_in_flight", None)
        self.max_concurrency = min(max_concurrency, limit) if limit else max_concurrency

    async def track(self, label: str, account: str, extrinsic: Any,
                    until: Confirmation = Confirmation.FINALIZED) -> PendingTx:
        p = PendingTx(label=label, account=account)
        await self.store.upsert(p)
        try:
            async with asyncio.timeout(self.timeout):
                async with contextlib.aclosing(self.client.submit_and_watch(extrinsic, until=until)) as stream:
                    async for u in stream:
                        await self.store.mark(
                            p.key,
                            state=u.state,
                            tx_hash=u.tx_hash or p.tx_hash,
                            block_hash=u.block_hash or p.block_hash,
                            error=u.reason,
                        )
                        log.debug("%s %s", p, u.block_hash or "")
                        if p.reached(until) or p.state in TERMINAL_STATES:
                            break
        except TimeoutError:
            await self.store.mark(p.key, state=TxState.TIMED_OUT,
                                  error=f"not {until} within {self.timeout}s (last state {p.state})")
            log.warning("%s timed out tx=%s", p, p.tx_hash)
        except SubmissionError as e:
            await self.store.mark(p.key, state=TxState.FAILED, error=e.message)
        except ChainConnectionError as e:
            await self.store.mark(p.key, state=TxState.FAILED, error=e.message)
            raise e.attribute(label, account)

        if not p.reached(until) and p.state not in TERMINAL_STATES:
            await self.store.mark(p.key, state=TxState.FAILED, error=f"status stream ended in {p.state}")
        if p.state is TxState.FAILED:
            log.warning("%s failed: %s", p, p.error)
        return p

    async def _build_and_track(self, label: str, account: str, build: BuildFn,
                               until: Confirmation, sem: asyncio.Semaphore) -> PendingTx:
        async with sem:
            try:
                extrinsic = await build()
            except ChainConnectionError as e:
                raise e.attribute(label, account)
            except Exception as e:
                log.error(f"{label} build failed for {account}: {e}", exc_info=True)
                p = PendingTx(label=label, account=account, state=TxState.FAILED, error=f"build failed: {e}")
                await self.store.upsert(p)
                return p
            return await self.track(label, account, extrinsic, until)

    async def submit_all(self, label: str, jobs: Sequence[tuple[str, BuildFn]],
                         until: Confirmation = Confirmation.FINALIZED) -> list[PendingTx]:
        """Submit one transaction per (account, build) job and join on ALL outcomes.

        At most ``max_concurrency`` transactions are in flight at once. The
        returned list is in job order and every entry is terminal or has
        reached ``until``.
        """
        if not jobs:
            return []
        sem = asyncio.Semaphore(self.max_concurrency)
        log.info(f"{label}: {len(jobs)} txns (max {self.max_concurrency} in flight, until {until})")

        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [tg.create_task(self._build_and_track(label, a, b, until, sem), name=f"{label}-{a}")
                         for a, b in jobs]
        except ExceptionGroup as eg:
            for e in eg.exceptions[1:]:
                log.error(f"{label}: {e!r}")
            raise eg.exceptions[0] from eg

        results = [t.result() for t in tasks]
        counts = Counter(p.state.name for p in results)
        reached = sum(1 for p in results if p.reached(until))
        log.info(f"{label} complete: {reached}/{len(results)} {until}, {dict(counts)}")
        return results
