"""Deterministic and random sr25519 identities.

Key derivation, version 1
-------------------------
The seed is encoded to bytes (int as decimal ASCII, str as UTF-8, bytes as
given) and hashed with BLAKE2b (32-byte digest, personalisation
``stakepop-kdf-v1``). The digest is the sr25519 mini-secret. Two distinct
seeds give the same secret with probability ~2^-256 per pair, so n accounts
collide with probability below n^2 / 2^257.
"""
import hashlib
import logging
import secrets

from substrateinterface import Keypair, KeypairType

from stakepop.constants import KDF_PERSON, SEED_WIDTH, SS58_FORMAT
from stakepop.errors import KeyDerivationError
from stakepop.models import Identity

log = logging.getLogger("stakepop.accounts")

Seed = int | str | bytes


def encode_seed(seed: Seed) -> bytes:
    if isinstance(seed, bool):
        raise TypeError("seed must be int, str or bytes, not bool")
    if isinstance(seed, int):
        return str(seed).encode("ascii")
    if isinstance(seed, str):
        return seed.encode("utf-8")
    if isinstance(seed, (bytes, bytearray)):
        return bytes(seed)
    raise TypeError(f"unsupported seed type: {type(seed).__name__}")


def derive_secret(seed: Seed) -> bytes:
    return hashlib.blake2b(encode_seed(seed), digest_size=SEED_WIDTH, person=KDF_PERSON).digest()


class AccountFactory:
    def __init__(self, ss58_format: int = SS58_FORMAT):
        self.ss58_format = ss58_format

    def _from_secret(self, secret: bytes, label: str | None) -> Identity:
        try:
            kp = Keypair.create_from_seed(secret, ss58_format=self.ss58_format, crypto_type=KeypairType.SR25519)
        except Exception as e:
            raise KeyDerivationError(f"cannot derive keypair: {e}", stage="accounts") from e
        return Identity(address=kp.ss58_address, keypair=kp, seed=label)

    def generate(self, seed: Seed) -> Identity:
        label = seed.hex() if isinstance(seed, (bytes, bytearray)) else str(seed)
        return self._from_secret(derive_secret(seed), label)

    def generate_random(self) -> Identity:
        return self.generate(secrets.token_bytes(SEED_WIDTH))

    def generate_many(self, n: int, namespace: str | None = None) -> list[Identity]:
        """Generate n identities from seeds ``{namespace}/{i}``.

        Without a namespace a random one is drawn, so two runs never reuse
        accounts. Passing the same namespace reproduces the same accounts.
        """
        if n < 0:
            raise ValueError("number of accounts can't be negative!")
        ns = namespace if namespace is not None else self.new_namespace()
        identities = [self.generate(f"{ns}/{i}") for i in range(n)]
        log.info(f"Generated {len(identities)} identities (namespace {ns})")
        return identities

    @staticmethod
    def new_namespace() -> str:
        return secrets.token_hex(8)

    def from_uri(self, uri: str) -> Identity:
        """Identity for a secret URI such as ``//Alice`` or a mnemonic."""
        try:
            kp = Keypair.create_from_uri(uri, ss58_format=self.ss58_format)
        except Exception as e:
            raise KeyDerivationError(f"cannot derive keypair from uri: {e}", stage="accounts") from e
        return Identity(address=kp.ss58_address, keypair=kp)
