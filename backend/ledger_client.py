"""
Narrow interface to the external ledger plus its Solana implementation.

Token names used by callers:
    "coin"                       the in-game payment SPL mint
    "fragment:<brand>:<slot>"    one SPL mint per brand and part slot

Collectibles live in the item registry program; ids are issued by the
registry account's ``next_item_id`` counter, never locally. The program only
accepts its current counter as the new id, so mints from this process are
serialized and retried with a fresh id when another writer moved the counter.

Every write submits exactly one transaction signed by the operator with a
freshly fetched blockhash and blocks until the signature is observed:
reached the configured commitment (``finalized`` by default) -> Receipt,
failed -> LedgerCallRejected, not observed within the window -> LedgerTimeout
(the transaction may still land).
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from solana.rpc.api import Client as SolanaClient
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from flow_errors import LedgerCallRejected, LedgerError, LedgerTimeout
from tx_builder import (
    build_burn_checked_ix,
    build_create_ata_ix,
    build_mint_item_ix,
    build_mint_to_checked_ix,
    build_transfer_checked_ix,
    build_transfer_item_ix,
    compile_message,
    decode_mint_item,
    derive_ata,
    instruction_to_dict,
    item_record_pda,
    parse_item_record_account,
    parse_registry_account,
    registry_pda,
    to_pubkey,
)

logger = logging.getLogger("garage")

COIN = "coin"
CONFIRMATION_LEVELS = ("processed", "confirmed", "finalized")


def fragment_token(brand: str, slot: int) -> str:
    return f"fragment:{brand}:{slot}"


def confirmation_rank(status) -> int:
    """Index of a TransactionConfirmationStatus in CONFIRMATION_LEVELS, -1 when absent."""
    for rank, name in enumerate(CONFIRMATION_LEVELS):
        if status == getattr(TransactionConfirmationStatus, name.capitalize()):
            return rank
    return -1


@dataclass(frozen=True)
class Receipt:
    signature: str
    slot: Optional[int] = None

    def as_dict(self) -> Dict:
        return {"signature": self.signature, "slot": self.slot}


class LedgerClient(ABC):
    """Ledger operations are not idempotent; callers must never fire one twice."""

    @property
    @abstractmethod
    def operator_address(self) -> str: ...

    @property
    @abstractmethod
    def treasury_address(self) -> str: ...

    @abstractmethod
    def mint_fungible(self, token: str, to: str, amount: int) -> Receipt: ...

    @abstractmethod
    def mint_collectible(self, to: str) -> Tuple[int, Receipt]: ...

    @abstractmethod
    def burn(self, owner: str, amounts: Dict[str, int]) -> Receipt: ...

    @abstractmethod
    def transfer_fungible(self, token: str, sender: str, recipient: str, amount: int) -> Receipt: ...

    @abstractmethod
    def transfer_collectible(self, sender: str, recipient: str, item_id: int) -> Receipt: ...

    @abstractmethod
    def balance_of(self, token: str, owner: str) -> int: ...

    @abstractmethod
    def owner_of(self, item_id: int) -> Optional[str]: ...

    @abstractmethod
    def allowance_of(self, token: str, owner: str, spender: str) -> int: ...

    @abstractmethod
    def is_collectible_approved(self, item_id: int, operator: str) -> bool: ...

    @abstractmethod
    def verify_transaction(self, signature: str, sender: str, recipient: str, token: str, amount: int) -> bool: ...

    @abstractmethod
    def signature_status(self, signature: str) -> Optional[bool]:
        """True once ok at the required commitment, False when failed, None when unknown or pending."""

    @abstractmethod
    def minted_item_id(self, signature: str) -> Optional[int]:
        """Item id issued by a landed collectible mint, None if the signature minted none."""


def load_operator_keypair(path: Optional[str]) -> Keypair:
    if not path:
        raise RuntimeError("OPERATOR_KEYPAIR_PATH not configured")
    if not os.path.exists(path):
        raise RuntimeError(f"Operator keypair file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Failed to read operator keypair: {exc}") from exc
    if isinstance(data, list):
        secret_bytes = bytes(data)
    elif isinstance(data, dict) and "secretKey" in data:
        secret_bytes = bytes(data["secretKey"])
    else:
        raise RuntimeError("Unsupported operator keypair format")
    try:
        return Keypair.from_bytes(secret_bytes)
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Failed to parse operator keypair: {exc}") from exc


class SolanaLedger(LedgerClient):
    def __init__(
        self,
        client: SolanaClient,
        operator: Keypair,
        coin_mint: Pubkey,
        coin_decimals: int,
        treasury: Pubkey,
        fragment_mints: Dict[str, Pubkey],
        registry_program: Pubkey,
        confirm_timeout_sec: float = 30,
        poll_interval_sec: float = 0.8,
        commitment: str = "finalized",
        mint_id_attempts: int = 3,
    ):
        if commitment not in CONFIRMATION_LEVELS:
            raise ValueError(f"commitment must be one of {CONFIRMATION_LEVELS}, got {commitment!r}")
        self.client = client
        self.operator = operator
        self.coin_mint = coin_mint
        self.coin_decimals = coin_decimals
        self.treasury = treasury
        self.fragment_mints = fragment_mints
        self.registry_program = registry_program
        self.confirm_timeout_sec = confirm_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.commitment = commitment
        self.required_rank = CONFIRMATION_LEVELS.index(commitment)
        self.mint_id_attempts = max(1, mint_id_attempts)
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "SolanaLedger":
        if not settings.coin_mint or not settings.item_registry_program_id:
            raise RuntimeError("COIN_MINT and ITEM_REGISTRY_PROGRAM_ID must be configured")
        operator = load_operator_keypair(settings.operator_keypair_path)
        if settings.operator_address and settings.operator_address != str(operator.pubkey()):
            raise RuntimeError("Operator keypair does not match OPERATOR_ADDRESS")
        fragment_mints: Dict[str, Pubkey] = {}
        for key, mint in settings.fragment_mint_map().items():
            brand, _, slot = key.partition(":")
            fragment_mints[fragment_token(brand, int(slot))] = to_pubkey(mint)
        treasury = to_pubkey(settings.treasury_wallet) if settings.treasury_wallet else operator.pubkey()
        return cls(
            client=SolanaClient(settings.rpc_url),
            operator=operator,
            coin_mint=to_pubkey(settings.coin_mint),
            coin_decimals=settings.coin_decimals,
            treasury=treasury,
            fragment_mints=fragment_mints,
            registry_program=to_pubkey(settings.item_registry_program_id),
            confirm_timeout_sec=settings.confirm_timeout_sec,
            poll_interval_sec=settings.confirm_poll_interval_sec,
            commitment=settings.confirm_commitment,
        )

    @property
    def operator_address(self) -> str:
        return str(self.operator.pubkey())

    @property
    def treasury_address(self) -> str:
        return str(self.treasury)

    # ---------------------------------------------------------------- helpers

    def _mint_for(self, token: str) -> Tuple[Pubkey, int]:
        if token == COIN:
            return self.coin_mint, self.coin_decimals
        mint = self.fragment_mints.get(token)
        if mint is None:
            raise LedgerCallRejected(f"No mint configured for token {token}")
        return mint, 0

    def _raw(self, amount: int, decimals: int) -> int:
        return int(amount) * (10 ** decimals)

    def _submit(self, ixs: List[Instruction], label: str) -> Receipt:
        operator_pub = self.operator.pubkey()
        # fresh blockhash per transaction; never reuse a stale slot
        try:
            blockhash = str(self.client.get_latest_blockhash().value.blockhash)
        except Exception as exc:  # noqa: BLE001
            raise LedgerCallRejected(f"{label}: failed to fetch blockhash: {exc}") from exc
        logger.debug("ledger_submit label=%s ixs=%s", label, [instruction_to_dict(ix) for ix in ixs])
        tx = VersionedTransaction(compile_message(operator_pub, ixs, blockhash), [self.operator])
        signature = str(tx.signatures[0])
        try:
            self.client.send_raw_transaction(bytes(tx), opts=TxOpts(skip_preflight=False))
        except RPCException as exc:
            # preflight simulation refused the transaction; nothing landed
            raise LedgerCallRejected(f"{label}: {exc}") from exc
        except Exception as exc:  # noqa: BLE001
            logger.warning("ledger_send_ambiguous label=%s sig=%s error=%s", label, signature, exc, exc_info=True)
            raise LedgerTimeout(f"{label}: send outcome unknown: {exc}", signature=signature) from exc
        slot = self._await_confirmation(signature, label)
        logger.info("ledger_confirmed label=%s sig=%s slot=%s", label, signature, slot)
        return Receipt(signature=signature, slot=slot)

    def _await_confirmation(self, signature: str, label: str) -> Optional[int]:
        sig_obj = Signature.from_string(signature)
        deadline = time.time() + self.confirm_timeout_sec
        while time.time() < deadline:
            try:
                resp = self.client.get_signature_statuses([sig_obj])
            except Exception as exc:  # noqa: BLE001
                logger.warning("ledger_status_poll_failed sig=%s error=%s", signature, exc)
                resp = None
            if resp is not None and resp.value and resp.value[0]:
                status = resp.value[0]
                if status.err is not None:
                    raise LedgerCallRejected(f"{label}: transaction {signature} failed: {status.err}")
                if confirmation_rank(status.confirmation_status) >= self.required_rank:
                    return status.slot
            time.sleep(self.poll_interval_sec)
        raise LedgerTimeout(
            f"{label}: transaction {signature} not {self.commitment} in {self.confirm_timeout_sec}s", signature=signature
        )

    def _next_item_id(self) -> int:
        try:
            resp = self.client.get_account_info(registry_pda(self.registry_program))
        except Exception as exc:  # noqa: BLE001
            raise LedgerCallRejected(f"Failed to read item registry: {exc}") from exc
        info = parse_registry_account(bytes(resp.value.data)) if resp.value and resp.value.data else None
        if not info:
            raise LedgerCallRejected("Item registry account not found")
        return info["next_item_id"]

    def _read_item_record(self, item_id: int) -> Optional[dict]:
        registry = registry_pda(self.registry_program)
        record = item_record_pda(self.registry_program, registry, item_id)
        resp = self.client.get_account_info(record)
        if not resp.value or not resp.value.data:
            return None
        return parse_item_record_account(bytes(resp.value.data))

    # ----------------------------------------------------------------- writes

    def mint_fungible(self, token: str, to: str, amount: int) -> Receipt:
        mint, decimals = self._mint_for(token)
        owner = to_pubkey(to)
        dest = derive_ata(owner, mint)
        ixs = [
            build_create_ata_ix(self.operator.pubkey(), owner, mint, dest),
            build_mint_to_checked_ix(mint, dest, self.operator.pubkey(), self._raw(amount, decimals), decimals),
        ]
        return self._submit(ixs, f"mint_fungible:{token}")

    def mint_collectible(self, to: str) -> Tuple[int, Receipt]:
        owner = to_pubkey(to)
        # read counter, submit and confirm as one unit per registry
        with self._registry_lock:
            attempt = 1
            while True:
                item_id = self._next_item_id()
                ix = build_mint_item_ix(self.registry_program, self.operator.pubkey(), owner, item_id)
                try:
                    receipt = self._submit([ix], "mint_collectible")
                except LedgerCallRejected:
                    # a rejected mint changed nothing, so a fresh id is safe to try
                    if attempt >= self.mint_id_attempts or self._next_item_id() == item_id:
                        raise
                    logger.warning("mint_collectible_id_moved item_id=%s attempt=%s", item_id, attempt)
                    attempt += 1
                    continue
                return item_id, receipt

    def burn(self, owner: str, amounts: Dict[str, int]) -> Receipt:
        owner_pub = to_pubkey(owner)
        ixs = []
        for token, amount in sorted(amounts.items()):
            mint, decimals = self._mint_for(token)
            ixs.append(
                build_burn_checked_ix(
                    derive_ata(owner_pub, mint), mint, self.operator.pubkey(), self._raw(amount, decimals), decimals
                )
            )
        return self._submit(ixs, "burn")

    def transfer_fungible(self, token: str, sender: str, recipient: str, amount: int) -> Receipt:
        mint, decimals = self._mint_for(token)
        sender_pub = to_pubkey(sender)
        recipient_pub = to_pubkey(recipient)
        dest = derive_ata(recipient_pub, mint)
        ixs = [
            build_create_ata_ix(self.operator.pubkey(), recipient_pub, mint, dest),
            build_transfer_checked_ix(
                derive_ata(sender_pub, mint), mint, dest, self.operator.pubkey(), self._raw(amount, decimals), decimals
            ),
        ]
        return self._submit(ixs, f"transfer_fungible:{token}")

    def transfer_collectible(self, sender: str, recipient: str, item_id: int) -> Receipt:
        ix = build_transfer_item_ix(
            self.registry_program, self.operator.pubkey(), to_pubkey(sender), to_pubkey(recipient), item_id
        )
        return self._submit([ix], "transfer_collectible")

    # ------------------------------------------------------------------ reads

    def balance_of(self, token: str, owner: str) -> int:
        mint, decimals = self._mint_for(token)
        ata = derive_ata(to_pubkey(owner), mint)
        try:
            resp = self.client.get_token_account_balance(ata)
        except RPCException:
            # no token account yet
            return 0
        return int(resp.value.amount) // (10 ** decimals)

    def owner_of(self, item_id: int) -> Optional[str]:
        info = self._read_item_record(item_id)
        return str(info["owner"]) if info else None

    def allowance_of(self, token: str, owner: str, spender: str) -> int:
        mint, decimals = self._mint_for(token)
        ata = derive_ata(to_pubkey(owner), mint)
        resp = self.client.get_account_info_json_parsed(ata)
        if not resp.value or not hasattr(resp.value.data, "parsed"):
            return 0
        info = resp.value.data.parsed.get("info", {})
        if info.get("delegate") != spender:
            return 0
        delegated = info.get("delegatedAmount") or {}
        return int(delegated.get("amount", 0)) // (10 ** decimals)

    def is_collectible_approved(self, item_id: int, operator: str) -> bool:
        info = self._read_item_record(item_id)
        return bool(info and info["approved"] is not None and str(info["approved"]) == operator)

    def verify_transaction(self, signature: str, sender: str, recipient: str, token: str, amount: int) -> bool:
        """True when the tx succeeded and moved exactly ``amount`` of ``token`` from sender to recipient."""
        mint, decimals = self._mint_for(token)
        expected = self._raw(amount, decimals)
        try:
            resp = self.client.get_transaction(
                Signature.from_string(signature), encoding="jsonParsed", max_supported_transaction_version=0
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("verify_transaction_fetch_failed sig=%s error=%s", signature, exc)
            return False
        if resp.value is None or resp.value.transaction.meta is None:
            return False
        meta = resp.value.transaction.meta
        if meta.err is not None:
            return False
        deltas: Dict[str, int] = {}
        mint_str = str(mint)
        for sign, balances in ((-1, meta.pre_token_balances or []), (1, meta.post_token_balances or [])):
            for bal in balances:
                if str(bal.mint) != mint_str or bal.owner is None:
                    continue
                owner = str(bal.owner)
                deltas[owner] = deltas.get(owner, 0) + sign * int(bal.ui_token_amount.amount)
        return deltas.get(sender, 0) == -expected and deltas.get(recipient, 0) == expected

    def signature_status(self, signature: str) -> Optional[bool]:
        resp = self.client.get_signature_statuses([Signature.from_string(signature)], search_transaction_history=True)
        if not resp.value or resp.value[0] is None:
            return None
        status = resp.value[0]
        if status.err is not None:
            return False
        return True if confirmation_rank(status.confirmation_status) >= self.required_rank else None

    def minted_item_id(self, signature: str) -> Optional[int]:
        try:
            resp = self.client.get_transaction(
                Signature.from_string(signature), encoding="base64", max_supported_transaction_version=0
            )
        except Exception as exc:  # noqa: BLE001
            raise LedgerError(f"Failed to fetch transaction {signature}: {exc}") from exc
        if resp.value is None:
            return None
        meta = resp.value.transaction.meta
        if meta is not None and meta.err is not None:
            return None
        tx = resp.value.transaction.transaction
        if not isinstance(tx, VersionedTransaction):
            return None
        keys = tx.message.account_keys
        for ix in tx.message.instructions:
            if keys[ix.program_id_index] != self.registry_program:
                continue
            decoded = decode_mint_item(bytes(ix.data))
            if decoded:
                return decoded["item_id"]
        return None
