import hashlib
import logging
from decimal import Decimal, InvalidOperation

from xrpl.core.addresscodec.exceptions import XRPLAddressCodecException
from xrpl.core.binarycodec import decode, encode, encode_for_signing
from xrpl.core.binarycodec.exceptions import XRPLBinaryCodecException
from xrpl.core.keypairs import is_valid_message, sign
from xrpl.wallet import Wallet

from ptx_workload import errors
from ptx_workload.constants import DEFAULT_FEE_DROPS, MAX_PAYLOAD_BYTES, TXN_HASH_PREFIX, TxType
from ptx_workload.models import Account, SignedTransaction

log = logging.getLogger("ptx_workload.txn")

_CODEC_ERRORS = (XRPLBinaryCodecException, XRPLAddressCodecException, ValueError, TypeError, KeyError)


def _sha512half(b: bytes) -> bytes:
    return hashlib.sha512(b).digest()[:32]


def txid_from_blob(signed_blob_hex: str) -> str:
    return _sha512half(TXN_HASH_PREFIX + bytes.fromhex(signed_blob_hex)).hex().upper()


def to_drops(amount) -> str:
    try:
        d = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise errors.EncodingError(f"amount {amount!r} is not a number") from e
    if d < 0 or d != d.to_integral_value():
        raise errors.EncodingError(f"amount {amount!r} must be a non-negative whole number of drops")
    return str(int(d))


def signature_is_valid(tx_json: dict) -> bool:
    """Check TxnSignature against SigningPubKey over the signing serialization."""
    try:
        message = bytes.fromhex(encode_for_signing(tx_json))
        return is_valid_message(message, bytes.fromhex(tx_json["TxnSignature"]), tx_json["SigningPubKey"])
    except _CODEC_ERRORS:
        return False


def from_blob(blob: str) -> SignedTransaction:
    """Rebuild a SignedTransaction from its signed encoding."""
    try:
        tx = decode(blob)
    except _CODEC_ERRORS as e:
        raise errors.EncodingError(f"undecodable transaction blob: {e}") from e

    payload = None
    for m in tx.get("Memos", []):
        data = m.get("Memo", {}).get("MemoData")
        if data:
            payload = bytes.fromhex(data)
            break
    amount = tx.get("Amount")
    if isinstance(amount, dict):
        raise errors.EncodingError("issued-currency amounts are not supported")
    try:
        return SignedTransaction(
            tx_hash=txid_from_blob(blob),
            blob=blob.upper(),
            sender=tx["Account"],
            recipient=tx.get("Destination"),
            nonce=int(tx["Sequence"]),
            amount=Decimal(amount) if amount is not None else None,
            payload=payload,
            fee=int(tx["Fee"]),
            signature=tx["TxnSignature"],
            transaction_type=TxType(tx["TransactionType"]),
        )
    except (KeyError, ValueError) as e:
        raise errors.EncodingError(f"transaction blob is missing fields: {e}") from e


class TransactionFactory:
    """Builds and signs single transactions.

    A transfer is a Payment; a transaction with no recipient is encoded as an
    AccountSet that only carries its payload in a memo. The gas ceiling maps
    to the Fee field. Callers must keep the returned hash: signatures are not
    guaranteed to be reproducible for the same inputs.
    """

    def __init__(self, keystore=None, *, fee: int = DEFAULT_FEE_DROPS, max_payload_bytes: int = MAX_PAYLOAD_BYTES):
        self.keystore = keystore
        self.fee = fee
        self.max_payload_bytes = max_payload_bytes

    @classmethod
    def from_config(cls, config: dict, keystore=None) -> "TransactionFactory":
        t = config["transactions"]
        return cls(keystore, fee=int(t["fee"]), max_payload_bytes=int(t["max_payload_bytes"]))

    def wallet_for(self, account: Account) -> Wallet:
        if self.keystore is None:
            raise errors.EncodingError("no keystore configured to unlock account credentials")
        return self.keystore.unlock(account.credential)

    def build_for(self, account: Account, nonce: int, recipient: str | None = None, amount=None,
                  payload: bytes | None = None, gas: int | None = None) -> SignedTransaction:
        return self.build(self.wallet_for(account), nonce, recipient, amount, payload, gas)

    def build(self, wallet: Wallet, nonce: int, recipient: str | None = None, amount=None,
              payload: bytes | None = None, gas: int | None = None) -> SignedTransaction:
        if payload is not None and len(payload) > self.max_payload_bytes:
            raise errors.EncodingError(f"payload of {len(payload)} bytes exceeds limit of {self.max_payload_bytes}")
        if recipient is None and amount is not None:
            raise errors.EncodingError("an amount needs a recipient")
        if nonce < 0:
            raise errors.EncodingError(f"invalid nonce {nonce}")

        fee = self.fee if gas is None else gas
        txn_type = TxType.PAYMENT if recipient is not None else TxType.ACCOUNT_SET
        tx: dict = {
            "TransactionType": txn_type.value,
            "Account": wallet.address,
            "Sequence": nonce,
            "Fee": to_drops(fee),
            "SigningPubKey": wallet.public_key,
        }
        if recipient is not None:
            tx["Destination"] = recipient
            tx["Amount"] = to_drops(amount if amount is not None else 0)
        if payload:
            tx["Memos"] = [{"Memo": {"MemoData": payload.hex().upper()}}]

        try:
            signing_blob = encode_for_signing(tx)
            tx["TxnSignature"] = sign(bytes.fromhex(signing_blob), wallet.private_key)
            signed_blob_hex = encode(tx)
        except _CODEC_ERRORS as e:
            raise errors.EncodingError(f"cannot encode {txn_type} from {wallet.address}: {e}") from e

        st = SignedTransaction(
            tx_hash=txid_from_blob(signed_blob_hex),
            blob=signed_blob_hex,
            sender=wallet.address,
            recipient=recipient,
            nonce=nonce,
            amount=Decimal(tx["Amount"]) if "Amount" in tx else None,
            payload=payload or None,
            fee=int(tx["Fee"]),
            signature=tx["TxnSignature"],
            transaction_type=txn_type,
        )
        log.debug("Signed %s", st)
        return st
