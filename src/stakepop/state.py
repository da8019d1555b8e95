"""Recover validator and nominator addresses from raw storage.

``Staking.Validators`` and ``Staking.Nominators`` are ``Twox64Concat``
maps keyed by AccountId32, so whatever the prefix and hasher lengths are,
the account id is the last 32 bytes of every key.
"""
import logging

from substrateinterface.utils.ss58 import ss58_encode

from stakepop.chain import ChainClient
from stakepop.constants import ADDRESS_LEN, SS58_FORMAT, Stage
from stakepop.errors import ChainConnectionError, SchemaDecodeError

log = logging.getLogger("stakepop.state")


def address_from_key(raw_key: bytes, ss58_format: int = SS58_FORMAT) -> str:
    if len(raw_key) < ADDRESS_LEN:
        raise SchemaDecodeError(
            f"storage key of {len(raw_key)} bytes is shorter than a {ADDRESS_LEN}-byte account id: 0x{raw_key.hex()}",
            stage=Stage.STATE,
        )
    return ss58_encode(raw_key[-ADDRESS_LEN:], ss58_format)


class ChainStateReader:
    def __init__(self, client: ChainClient, ss58_format: int = SS58_FORMAT):
        self.client = client
        self.ss58_format = ss58_format

    async def _drain(self, item: str) -> list[str]:
        # Single pass: the source can't be restarted, so collect everything now.
        try:
            addresses = [address_from_key(k, self.ss58_format) async for k, _ in self.client.storage_iterate("Staking", item)]
        except ChainConnectionError as e:
            raise e.attribute(Stage.STATE)
        log.debug("Staking.%s: %s entries", item, len(addresses))
        return addresses

    async def validators(self) -> list[str]:
        return await self._drain("Validators")

    async def nominators(self) -> list[str]:
        return await self._drain("Nominators")

    async def counts(self) -> tuple[int, int]:
        return len(await self.validators()), len(await self.nominators())
