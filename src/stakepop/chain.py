# stakepop/chain.py
"""
Chain client boundary.

ChainClient is what the stages talk to; SubstrateChainClient implements it
on top of substrate-interface:
1. Composes and signs calls
2. Submits an extrinsic and streams its status (ready, inBlock, finalized...)
3. Drains storage maps page by page as raw (key, value) pairs
4. Reads constants and plain storage values

substrate-interface is synchronous and its websocket is not safe for
concurrent use, so every blocking call runs in a worker thread behind one
lock and status updates are handed back to the event loop through a queue.
One subscription holds the websocket at a time (max_in_flight = 1), and its
reads time out every poll interval so an abandoned or closed watch lets go.
"""
import asyncio
import contextlib
import json
import logging
import threading
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx
import xxhash
from substrateinterface import ExtrinsicReceipt, SubstrateInterface
from substrateinterface.exceptions import StorageFunctionNotFound, SubstrateRequestException
from websocket import WebSocketException, WebSocketTimeoutException

from stakepop.constants import (
    RPC_TIMEOUT,
    SS58_FORMAT,
    STORAGE_PAGE_SIZE,
    TERMINAL_STATES,
    WATCH_POLL_INTERVAL,
    Confirmation,
    TxState,
)
from stakepop.errors import ChainConnectionError, SubmissionError
from stakepop.models import Identity, TxUpdate

log = logging.getLogger("stakepop.chain")

# A dropped or broken connection surfaces as one of these
TRANSPORT_ERRORS = (WebSocketException, OSError)


class ChainClient(Protocol):
    # Submissions the client can watch at once, None when unbounded
    max_in_flight: int | None

    async def compose_call(self, module: str, function: str, params: dict[str, Any]) -> Any: ...
    async def sign(self, call: Any, identity: Identity) -> Any: ...
    def submit_and_watch(self, extrinsic: Any, until: Confirmation = Confirmation.FINALIZED) -> AsyncIterator[TxUpdate]: ...
    def storage_iterate(self, pallet: str, item: str) -> AsyncIterator[tuple[bytes, bytes | None]]: ...
    async def read_constant(self, pallet: str, name: str) -> Any: ...
    async def read_storage(self, pallet: str, item: str, params: list | None = None) -> Any: ...
    async def free_balance(self, address: str) -> int: ...
    async def close(self) -> None: ...


def twox128(data: bytes) -> bytes:
    return b"".join(xxhash.xxh64(data, seed=s).intdigest().to_bytes(8, "little") for s in (0, 1))


def storage_prefix(pallet: str, item: str) -> bytes:
    """Key prefix shared by every entry of a storage map."""
    return twox128(pallet.encode()) + twox128(item.encode())


def http_url(url: str) -> str:
    """Substrate nodes serve JSON-RPC over HTTP on the websocket port."""
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    return url


async def probe_endpoint(
    url: str,
    *,
    max_retries: int = 30,
    retry_delay: float = 2.0,
    timeout: float = RPC_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Probe the node's RPC endpoint with retries until it responds.

    Args:
        url: Node endpoint, ws(s):// or http(s)://
        max_retries: Maximum number of attempts
        retry_delay: Seconds to wait between attempts

    Returns:
        The ``system_health`` result.

    Raises:
        ChainConnectionError: If the node never answered.
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": "system_health", "params": []}
    target = http_url(url)
    last: Exception | None = None

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as http:
                r = await http.post(target, json=payload)
                r.raise_for_status()
                health = r.json().get("result") or {}
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries}): {health}")
                return health
        except (httpx.HTTPError, ValueError) as e:
            last = e
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)

    log.error(f"RPC failed after {max_retries} attempts")
    raise ChainConnectionError(f"no response from {target}: {last}", stage="connect")


def parse_status(result: Any) -> TxUpdate | None:
    """Map an ``author_extrinsicUpdate`` result to a TxUpdate, None if not interesting."""
    if isinstance(result, str):
        status = result.lower()
        if status in ("ready", "future"):
            return TxUpdate(TxState.SUBMITTED)
        if status in ("dropped", "invalid"):
            return TxUpdate(TxState.FAILED, reason=status)
        return None
    if isinstance(result, dict):
        status = {k.lower(): v for k, v in result.items()}
        if "finalized" in status:
            return TxUpdate(TxState.FINALIZED, block_hash=status["finalized"])
        if "inblock" in status:
            return TxUpdate(TxState.INCLUDED, block_hash=status["inblock"])
        if "broadcast" in status:
            return TxUpdate(TxState.SUBMITTED)
        for k in ("usurped", "finalitytimeout", "dropped", "invalid"):
            if k in status:
                return TxUpdate(TxState.FAILED, reason=k)
    return None


def _dispatch_error(error: Any) -> str:
    if isinstance(error, dict):
        return ".".join(str(error[k]) for k in ("type", "name") if error.get(k)) or str(error)
    return str(error)


class SubstrateChainClient:
    max_in_flight = 1

    def __init__(self, substrate: SubstrateInterface, *, page_size: int = STORAGE_PAGE_SIZE,
                 poll_interval: float = WATCH_POLL_INTERVAL):
        self.substrate = substrate
        self.page_size = page_size
        self.poll_interval = poll_interval
        self._io = threading.Lock()
        self._closed = threading.Event()

    @classmethod
    async def connect(cls, url: str, *, ss58_format: int = SS58_FORMAT, timeout: float = RPC_TIMEOUT,
                      page_size: int = STORAGE_PAGE_SIZE) -> "SubstrateChainClient":
        log.info("Connecting to %s", url)
        try:
            async with asyncio.timeout(timeout):
                substrate = await asyncio.to_thread(SubstrateInterface, url=url, ss58_format=ss58_format)
        except TimeoutError as e:
            raise ChainConnectionError(f"timed out connecting to {url} after {timeout}s", stage="connect") from e
        except Exception as e:
            raise ChainConnectionError(f"cannot connect to {url}: {e}", stage="connect") from e
        log.info("Connected to %s (%s %s)", url, substrate.chain, substrate.runtime_version)
        return cls(substrate, page_size=page_size)

    async def _call(self, fn, *args, **kwargs):
        def locked():
            with self._io:
                if self._closed.is_set():
                    raise ChainConnectionError("chain client is closed")
                try:
                    return fn(*args, **kwargs)
                except TRANSPORT_ERRORS as e:
                    raise ChainConnectionError(f"connection lost in {getattr(fn, '__name__', 'call')}: {e!r}") from e
        return await asyncio.to_thread(locked)

    def _send(self, ws, method: str, params: list) -> int:
        request_id = self.substrate.request_id
        self.substrate.request_id += 1
        ws.send(json.dumps({"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}))
        return request_id

    def _unwatch(self, ws, subscription: str) -> None:
        try:
            request_id = self._send(ws, "author_unwatchExtrinsic", [subscription])
            while json.loads(ws.recv()).get("id") != request_id:
                pass
        except TRANSPORT_ERRORS as e:
            log.debug("unwatch %s: %r", subscription, e)

    async def compose_call(self, module: str, function: str, params: dict[str, Any]) -> Any:
        return await self._call(self.substrate.compose_call, call_module=module, call_function=function, call_params=params)

    async def sign(self, call: Any, identity: Identity) -> Any:
        return await self._call(self.substrate.create_signed_extrinsic, call=call, keypair=identity.keypair)

    async def submit_and_watch(self, extrinsic: Any, until: Confirmation = Confirmation.FINALIZED) -> AsyncIterator[TxUpdate]:
        loop = asyncio.get_running_loop()
        updates: asyncio.Queue[TxUpdate] = asyncio.Queue()
        abandoned = threading.Event()
        tx_hash = "0x" + extrinsic.extrinsic_hash.hex()
        stop_on = TxState.INCLUDED if until is Confirmation.INCLUDED else TxState.FINALIZED

        def gone() -> bool:
            return abandoned.is_set() or self._closed.is_set()

        def watch() -> TxUpdate:
            with self._io:
                # A watch that timed out while queued is never submitted
                if gone():
                    return TxUpdate(TxState.FAILED, reason="abandoned before submission")
                ws = self.substrate.websocket
                if ws is None:
                    raise ChainConnectionError("status subscriptions need a ws:// or wss:// endpoint")

                subscription = None
                previous = ws.gettimeout()
                try:
                    ws.settimeout(self.poll_interval)
                    request_id = self._send(ws, "author_submitAndWatchExtrinsic", [str(extrinsic.data)])
                    while True:
                        try:
                            message = json.loads(ws.recv())
                        except WebSocketTimeoutException:
                            if gone():
                                return TxUpdate(TxState.FAILED, reason="abandoned")
                            continue

                        if message.get("id") == request_id:
                            if "error" in message:
                                raise SubstrateRequestException(message["error"])
                            subscription = message["result"]
                            continue
                        params = message.get("params") or {}
                        if subscription is None or params.get("subscription") != subscription:
                            continue

                        update = parse_status(params.get("result"))
                        if update is None:
                            continue
                        if not abandoned.is_set():
                            loop.call_soon_threadsafe(updates.put_nowait, update)
                        if update.state is stop_on or update.state in TERMINAL_STATES:
                            return update
                except TRANSPORT_ERRORS as e:
                    subscription = None
                    raise ChainConnectionError(f"connection lost watching {tx_hash}: {e!r}") from e
                finally:
                    if subscription is not None:
                        self._unwatch(ws, subscription)
                    with contextlib.suppress(*TRANSPORT_ERRORS):
                        ws.settimeout(previous)

        worker = asyncio.create_task(asyncio.to_thread(watch), name=f"watch-{tx_hash[:10]}")
        try:
            while True:
                getter = asyncio.create_task(updates.get())
                done, _ = await asyncio.wait({getter, worker}, return_when=asyncio.FIRST_COMPLETED)

                if getter not in done:
                    getter.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await getter
                    if not getter.cancelled():
                        updates.put_nowait(getter.result())
                    break

                update = getter.result()
                if update.state is stop_on or update.state in TERMINAL_STATES:
                    break  # the worker returns this same update once unsubscribed
                yield TxUpdate(update.state, tx_hash=tx_hash, block_hash=update.block_hash, reason=update.reason)

            try:
                final = await worker
            except SubstrateRequestException as e:
                raise SubmissionError(f"extrinsic {tx_hash} rejected: {e}") from e

            while not updates.empty():
                pending = updates.get_nowait()
                if pending.state is not stop_on and pending.state not in TERMINAL_STATES:
                    yield TxUpdate(pending.state, tx_hash=tx_hash, block_hash=pending.block_hash, reason=pending.reason)

            if final.state in TERMINAL_STATES - {TxState.FINALIZED}:
                yield TxUpdate(final.state, tx_hash=tx_hash, block_hash=final.block_hash, reason=final.reason)
                return

            receipt = ExtrinsicReceipt(substrate=self.substrate, extrinsic_hash=tx_hash, block_hash=final.block_hash)
            ok = await self._call(lambda: receipt.is_success)
            if ok:
                yield TxUpdate(final.state, tx_hash=tx_hash, block_hash=final.block_hash)
            else:
                reason = await self._call(lambda: receipt.error_message)
                yield TxUpdate(TxState.FAILED, tx_hash=tx_hash, block_hash=final.block_hash, reason=_dispatch_error(reason))
        finally:
            abandoned.set()

    async def storage_iterate(self, pallet: str, item: str) -> AsyncIterator[tuple[bytes, bytes | None]]:
        """Yield every raw (key, value) of a storage map, pinned to the finalized head."""
        prefix = "0x" + storage_prefix(pallet, item).hex()
        block_hash = await self._call(self.substrate.get_chain_finalised_head)
        start_key = None
        page = 0

        while True:
            resp = await self._call(
                self.substrate.rpc_request, "state_getKeysPaged", [prefix, self.page_size, start_key, block_hash]
            )
            keys = resp.get("result") or []
            page += 1
            log.debug("%s.%s page %s: %s keys", pallet, item, page, len(keys))
            if not keys:
                return

            resp = await self._call(self.substrate.rpc_request, "state_queryStorageAt", [keys, block_hash])
            changes: dict[str, str | None] = {}
            for change_set in resp.get("result") or []:
                changes.update({k: v for k, v in change_set["changes"]})

            for k in keys:
                v = changes.get(k)
                yield bytes.fromhex(k[2:]), (bytes.fromhex(v[2:]) if v else None)

            if len(keys) < self.page_size:
                return
            start_key = keys[-1]

    async def read_constant(self, pallet: str, name: str) -> Any:
        c = await self._call(self.substrate.get_constant, pallet, name)
        return None if c is None else c.value

    async def read_storage(self, pallet: str, item: str, params: list | None = None) -> Any:
        try:
            r = await self._call(self.substrate.query, pallet, item, params or [])
        except StorageFunctionNotFound:
            log.debug("%s.%s not present in runtime", pallet, item)
            return None
        return None if r is None else r.value

    async def free_balance(self, address: str) -> int:
        info = await self.read_storage("System", "Account", [address])
        return int(info["data"]["free"]) if info else 0

    async def close(self) -> None:
        # Not behind the lock: a watch still holding it lets go at its next poll
        self._closed.set()
        try:
            await asyncio.to_thread(self.substrate.close)
        except TRANSPORT_ERRORS as e:
            log.debug("close: %r", e)
