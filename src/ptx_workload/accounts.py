"""Test account pool: deterministic credentials, keystore, provisioning."""

import hashlib
import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from xrpl import CryptoAlgorithm
from xrpl.core.addresscodec import encode_seed
from xrpl.wallet import Wallet

from ptx_workload import errors, snapshots
from ptx_workload.models import Account

log = logging.getLogger("ptx_workload.accounts")


def seed_from_passphrase(passphrase: str, algorithm: CryptoAlgorithm) -> str:
    """Same passphrase, same seed: entropy is the first 16 bytes of SHA-256(passphrase)."""
    entropy = hashlib.sha256(passphrase.encode("utf-8")).digest()[:16]
    return encode_seed(entropy, algorithm)


class Keystore(Protocol):
    def create(self, index: int, passphrase: str) -> str: ...
    def unlock(self, credential: str) -> Wallet: ...


class FileKeystore:
    """One JSON credential file per account, named by address."""

    def __init__(self, directory: str | Path, algorithm: CryptoAlgorithm | str = CryptoAlgorithm.SECP256K1):
        self.directory = Path(directory)
        self.algorithm = CryptoAlgorithm(algorithm)
        self._unlocked: dict[str, Wallet] = {}

    def _path(self, credential: str) -> Path:
        return self.directory / f"{credential}.json"

    def _write(self, wallet: Wallet, index: int, passphrase: str) -> str:
        record = {
            "address": wallet.address,
            "seed": wallet.seed,
            "algorithm": self.algorithm.value,
            "index": index,
            "passphrase": passphrase,
        }
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path(wallet.address).write_text(json.dumps(record), encoding="utf-8")
        except OSError as e:
            raise errors.KeystoreError(index, str(e)) from e
        self._unlocked[wallet.address] = wallet
        return wallet.address

    def create(self, index: int, passphrase: str) -> str:
        seed = seed_from_passphrase(passphrase, self.algorithm)
        wallet = Wallet.from_seed(seed, algorithm=self.algorithm)
        return self._write(wallet, index, passphrase)

    def unlock(self, credential: str) -> Wallet:
        if w := self._unlocked.get(credential):
            return w
        path = self._path(credential)
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
            wallet = Wallet.from_seed(record["seed"], algorithm=CryptoAlgorithm(record["algorithm"]))
        except (OSError, ValueError, KeyError) as e:
            raise errors.KeystoreError(None, f"cannot unlock {credential}: {e}") from e
        if wallet.address != credential:
            raise errors.KeystoreError(record.get("index"), f"credential file {path.name} holds {wallet.address}")
        self._unlocked[credential] = wallet
        return wallet


class AccountProvisioner:
    def __init__(self, keystore: Keystore, *, passphrase_prefix: str = "ptx-"):
        self.keystore = keystore
        self.passphrase_prefix = passphrase_prefix
        self.failures: list[errors.KeystoreError] = []

    @classmethod
    def from_config(cls, config: dict, keystore: Keystore | None = None) -> "AccountProvisioner":
        a = config["accounts"]
        keystore = keystore or FileKeystore(a["keystore_dir"], a["algorithm"])
        return cls(keystore, passphrase_prefix=a["passphrase_prefix"])

    def passphrase(self, index: int) -> str:
        return f"{self.passphrase_prefix}{index}"

    def provision(self, n: int, offset: int = 0) -> list[Account]:
        """Create accounts for indices [offset, offset + n).

        A keystore failure skips that index and is kept in `self.failures`;
        the returned list may therefore be shorter than `n`.
        """
        self.failures = []
        accounts: list[Account] = []
        for i in range(offset, offset + n):
            try:
                ref = self.keystore.create(i, self.passphrase(i))
            except errors.KeystoreError as e:
                log.warning("Provisioning account %s failed: %s", i, e)
                self.failures.append(e)
                continue
            accounts.append(Account(address=ref, balance=Decimal(0), credential=ref, index=i))

        if self.failures:
            log.warning("Provisioned %s/%s accounts (%s keystore failures)", len(accounts), n, len(self.failures))
        else:
            log.info("Provisioned %s accounts from index %s", len(accounts), offset)
        return accounts

    def persist(self, accounts: list[Account], sink: str | Path) -> Path:
        return snapshots.save_accounts(accounts, sink)

    def load(self, sink: str | Path) -> list[Account]:
        accounts = snapshots.load_accounts(sink)
        log.info("Loaded %s accounts from %s", len(accounts), sink)
        return accounts
