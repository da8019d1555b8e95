import asyncio
import itertools
import json
import queue
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Callable

import pytest
from substrateinterface.exceptions import StorageFunctionNotFound
from substrateinterface.utils.ss58 import ss58_decode
from websocket import WebSocketConnectionClosedException, WebSocketTimeoutException

from stakepop.accounts import AccountFactory
from stakepop.chain import storage_prefix
from stakepop.config import load_config
from stakepop.constants import Confirmation, TxState
from stakepop.models import TxUpdate

ED = 1_000_000_000


@dataclass
class MockCall:
    module: str
    function: str
    params: dict

    @property
    def name(self) -> str:
        return f"{self.module}.{self.function}"


@dataclass
class MockExtrinsic:
    signer: str
    call: MockCall
    tx_hash: str


@dataclass
class MockChain:
    """In-memory ledger implementing the ChainClient protocol.

    Every submission is finalized unless ``fail`` returns a reason for it,
    ``stall`` holds it forever, or the ledger rules reject it.
    """

    existential_deposit: int | None = ED
    validators: list[str] = field(default_factory=list)
    nominators: dict[str, list[str]] = field(default_factory=dict)
    constants: dict[tuple[str, str], Any] = field(default_factory=dict)
    storage: dict[tuple[str, str], Any] = field(default_factory=dict)
    fail: Callable[[MockExtrinsic], str | None] = lambda x: None
    stall: Callable[[MockExtrinsic], bool] = lambda x: False
    delay: Callable[[MockExtrinsic], float] = lambda x: 0.0
    # Drop these recipients from transfers to mimic a non-atomic batch
    drop_transfers: set[str] = field(default_factory=set)
    short_keys: bool = False
    max_in_flight: int | None = None

    def __post_init__(self):
        self.balances: dict[str, int] = defaultdict(int)
        self.bonded: dict[str, int] = {}
        self.submitted: list[MockExtrinsic] = []
        self.log: list[tuple[str, str, str]] = []  # (event, call name, signer)
        self.in_flight = 0
        self.peak_in_flight = 0
        self.closed = False
        self._ids = itertools.count(1)
        if self.existential_deposit is not None:
            self.constants.setdefault(("Balances", "ExistentialDeposit"), self.existential_deposit)

    # ---- ChainClient -------------------------------------------------------

    async def compose_call(self, module: str, function: str, params: dict) -> MockCall:
        return MockCall(module, function, params)

    async def sign(self, call: MockCall, identity) -> MockExtrinsic:
        return MockExtrinsic(signer=identity.address, call=call, tx_hash=f"0x{next(self._ids):064x}")

    async def submit_and_watch(self, extrinsic: MockExtrinsic, until: Confirmation = Confirmation.FINALIZED):
        self.submitted.append(extrinsic)
        self.log.append(("submit", extrinsic.call.name, extrinsic.signer))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            yield TxUpdate(TxState.SUBMITTED, tx_hash=extrinsic.tx_hash)
            await asyncio.sleep(self.delay(extrinsic))
            if self.stall(extrinsic):
                await asyncio.Event().wait()

            reason = self.fail(extrinsic) or self._apply(extrinsic)
            if reason:
                self.log.append(("failed", extrinsic.call.name, extrinsic.signer))
                yield TxUpdate(TxState.FAILED, tx_hash=extrinsic.tx_hash, reason=reason)
                return

            block = f"0xb{len(self.submitted):063x}"
            yield TxUpdate(TxState.INCLUDED, tx_hash=extrinsic.tx_hash, block_hash=block)
            await asyncio.sleep(0)
            self.log.append(("final", extrinsic.call.name, extrinsic.signer))
            yield TxUpdate(TxState.FINALIZED, tx_hash=extrinsic.tx_hash, block_hash=block)
        finally:
            self.in_flight -= 1

    async def storage_iterate(self, pallet: str, item: str):
        assert pallet == "Staking"
        addresses = self.validators if item == "Validators" else list(self.nominators)
        prefix = storage_prefix(pallet, item)
        for a in addresses:
            await asyncio.sleep(0)
            if self.short_keys:
                yield prefix[:16], b""
            else:
                yield prefix + bytes(8) + bytes.fromhex(ss58_decode(a)), b"\x00"

    async def read_constant(self, pallet: str, name: str):
        return self.constants.get((pallet, name))

    async def read_storage(self, pallet: str, item: str, params=None):
        return self.storage.get((pallet, item))

    async def free_balance(self, address: str) -> int:
        return self.balances[address]

    async def close(self) -> None:
        self.closed = True

    # ---- ledger rules ------------------------------------------------------

    def _transfer(self, params: dict) -> None:
        if params["dest"] not in self.drop_transfers:
            self.balances[params["dest"]] += params["value"]

    def _apply(self, x: MockExtrinsic) -> str | None:
        call, who = x.call, x.signer
        match call.name:
            case "Balances.transfer_allow_death":
                self._transfer(call.params)
            case "Utility.batch_all":
                for inner in call.params["calls"]:
                    assert inner.name == "Balances.transfer_allow_death"
                    self._transfer(inner.params)
            case "Staking.bond":
                if who in self.bonded:
                    return "Staking.AlreadyBonded"
                if self.balances[who] < call.params["value"]:
                    return "Balances.InsufficientBalance"
                self.bonded[who] = call.params["value"]
            case "Staking.validate":
                if who not in self.bonded:
                    return "Staking.NotController"
                self.validators.append(who)
            case "Staking.nominate":
                if who not in self.bonded:
                    return "Staking.NotController"
                targets = call.params["targets"]
                if not targets:
                    return "Staking.EmptyTargets"
                if any(t not in self.validators for t in targets):
                    return "Staking.BadTarget"
                self.nominators[who] = list(targets)
            case other:
                return f"unexpected call {other}"
        return None

    # ---- helpers -----------------------------------------------------------

    def calls(self, name: str) -> list[MockExtrinsic]:
        return [x for x in self.submitted if x.call.name == name]


def make_addresses(n: int, label: str) -> list[str]:
    factory = AccountFactory()
    return [factory.generate(f"{label}/{i}").address for i in range(n)]


@pytest.fixture
def chain():
    return MockChain()


@pytest.fixture
def cfg():
    return load_config(overrides={
        "chain": {"probe": False},
        "timeout": {"finality": 2.0},
        "staking": {"max_concurrency": 4},
    })


@pytest.fixture
def factory():
    return AccountFactory()


class FakeWebSocket:
    """Node end of one websocket, answering each submission with a status script.

    Status notifications arrive ``step`` seconds apart; a script without a
    terminal status stalls forever.
    """

    def __init__(self, statuses=(), *, step: float = 0.0, reject: bool = False, broken: bool = False):
        self.statuses = list(statuses)
        self.step = step
        self.reject = reject
        self.broken = broken
        self.inbox: queue.Queue = queue.Queue()
        self.timeout: float | None = None
        self.sent: list[dict] = []
        self.submitted_at: list[float] = []
        self.closed = False

    def gettimeout(self):
        return self.timeout

    def settimeout(self, timeout):
        self.timeout = timeout

    def send(self, raw: str) -> None:
        if self.closed or self.broken:
            raise WebSocketConnectionClosedException("socket is already closed.")
        msg = json.loads(raw)
        self.sent.append(msg)
        if msg["method"] == "author_unwatchExtrinsic":
            self.inbox.put({"jsonrpc": "2.0", "id": msg["id"], "result": True})
            return

        self.submitted_at.append(time.monotonic())
        if self.reject:
            self.inbox.put({"jsonrpc": "2.0", "id": msg["id"],
                            "error": {"code": 1010, "message": "Invalid Transaction"}})
            return
        sub = f"sub-{msg['id']}"
        self.inbox.put({"jsonrpc": "2.0", "id": msg["id"], "result": sub})
        for n, status in enumerate(self.statuses, 1):
            note = {"jsonrpc": "2.0", "method": "author_extrinsicUpdate",
                    "params": {"subscription": sub, "result": status}}
            if self.step:
                t = threading.Timer(self.step * n, self.inbox.put, [note])
                t.daemon = True
                t.start()
            else:
                self.inbox.put(note)

    def recv(self) -> str:
        try:
            msg = self.inbox.get(timeout=self.timeout)
        except queue.Empty:
            raise WebSocketTimeoutException("Connection timed out") from None
        if msg is None:
            raise WebSocketConnectionClosedException("Connection to remote host was lost.")
        return json.dumps(msg)

    def close(self) -> None:
        self.closed = True
        self.inbox.put(None)


class FakeSubstrate:
    """Just enough of SubstrateInterface for SubstrateChainClient."""

    def __init__(self, websocket: FakeWebSocket | None = None, storage=None, rpc_error: Exception | None = None):
        self.websocket = websocket or FakeWebSocket()
        self.request_id = 1
        self.storage = storage or {}
        self.rpc_error = rpc_error
        self.requests: list[str] = []
        self.closed = False

    def rpc_request(self, method, params, result_handler=None):
        self.requests.append(method)
        if self.rpc_error is not None:
            raise self.rpc_error
        match method:
            case "state_getKeysPaged":
                prefix, count, start, _ = params
                keys = sorted(k for k in self.storage if k.startswith(prefix) and (start is None or k > start))
                return {"result": keys[:count]}
            case "state_queryStorageAt":
                keys, block = params
                return {"result": [{"block": block, "changes": [[k, self.storage[k]] for k in keys]}]}
        raise AssertionError(method)

    def get_chain_finalised_head(self):
        if self.rpc_error is not None:
            raise self.rpc_error
        return "0xhead"

    def compose_call(self, call_module, call_function, call_params):
        return SimpleNamespace(module=call_module, function=call_function, params=call_params)

    def create_signed_extrinsic(self, call, keypair):
        return SimpleNamespace(call=call, keypair=keypair, extrinsic_hash=bytes.fromhex("ab" * 32), data="0x00")

    def get_constant(self, pallet, name):
        return SimpleNamespace(value=500) if (pallet, name) == ("Balances", "ExistentialDeposit") else None

    def query(self, pallet, item, params):
        if (pallet, item) == ("System", "Account"):
            return SimpleNamespace(value={"nonce": 0, "data": {"free": 1234}})
        raise StorageFunctionNotFound(f"{pallet}.{item}")

    def close(self):
        self.closed = True
        self.websocket.close()
