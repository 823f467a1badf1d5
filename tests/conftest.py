import pytest
from xrpl import CryptoAlgorithm
from xrpl.wallet import Wallet

from ptx_workload.accounts import AccountProvisioner, FileKeystore
from ptx_workload.config import load_config
from ptx_workload.scenarios import Harness, HarnessContext
from ptx_workload.sim_ledger import InMemoryLedger
from ptx_workload.txn_factory import TransactionFactory

SEED_DROPS = 10**12


@pytest.fixture()
def config(tmp_path, monkeypatch):
    monkeypatch.delenv("PTX_CONFIG", raising=False)
    return load_config(overrides={
        "accounts": {"keystore_dir": str(tmp_path / "keystore"), "algorithm": "ed25519", "count": 8},
        "snapshots": {"directory": str(tmp_path / "snapshots")},
        "dispatch": {"channels": 4},
        "generation": {"workers": 2, "queue_depth": 2},
        "confirmation": {"poll_interval": 0.01, "timeout": 2.0},
    })


@pytest.fixture()
def seed_wallet(config):
    f = config["funding_account"]
    return Wallet.from_seed(f["seed"], algorithm=CryptoAlgorithm(f["algorithm"]))


@pytest.fixture()
def ledger(seed_wallet):
    return InMemoryLedger({seed_wallet.address: SEED_DROPS})


@pytest.fixture()
def keystore(tmp_path):
    return FileKeystore(tmp_path / "keystore", CryptoAlgorithm.ED25519)


@pytest.fixture()
def factory(keystore):
    return TransactionFactory(keystore, fee=10)


@pytest.fixture()
def provisioner(keystore):
    return AccountProvisioner(keystore, passphrase_prefix="test-")


@pytest.fixture()
def accounts(provisioner):
    return provisioner.provision(8)


@pytest.fixture()
def harness(config, ledger, keystore):
    return Harness(HarnessContext.from_config(config, ledger=ledger, keystore=keystore))
