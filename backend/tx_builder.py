import base64
import hashlib
from typing import Dict, List, Optional

from borsh_construct import CStruct, Option, U64, U8
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
# Standard SPL Associated Token Program ID (same across clusters)
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

REGISTRY_SEED = b"item_registry"
ITEM_RECORD_SEED = b"item"
ACCOUNT_DISCRIMINATOR_LEN = 8

# SPL token instruction tags
SPL_TRANSFER_CHECKED = 12
SPL_MINT_TO_CHECKED = 14
SPL_BURN_CHECKED = 15

MintItemLayout = CStruct("item_id" / U64, "owner" / U8[32])
TransferItemLayout = CStruct("item_id" / U64, "new_owner" / U8[32])
RegistryAccountLayout = CStruct("authority" / U8[32], "next_item_id" / U64)
ItemRecordLayout = CStruct(
    "item_id" / U64,
    "owner" / U8[32],
    "approved" / Option(U8[32]),
)


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


def to_pubkey(value: str) -> Pubkey:
    return Pubkey.from_string(value)


def registry_pda(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([REGISTRY_SEED], program_id)[0]


def item_record_pda(program_id: Pubkey, registry: Pubkey, item_id: int) -> Pubkey:
    return Pubkey.find_program_address(
        [ITEM_RECORD_SEED, bytes(registry), int(item_id).to_bytes(8, "little")], program_id
    )[0]


def derive_ata(owner: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


def encode_mint_item(item_id: int, owner: Pubkey) -> bytes:
    data = MintItemLayout.build({"item_id": item_id, "owner": list(bytes(owner))})
    return sighash("mint_item") + data


def decode_mint_item(data: bytes) -> Optional[dict]:
    """Inverse of encode_mint_item; None for any other instruction."""
    if len(data) < 8 + 8 + 32 or data[:8] != sighash("mint_item"):
        return None
    parsed = MintItemLayout.parse(data[8:])
    return {"item_id": int(parsed.item_id), "owner": Pubkey.from_bytes(bytes(parsed.owner))}


def encode_transfer_item(item_id: int, new_owner: Pubkey) -> bytes:
    data = TransferItemLayout.build({"item_id": item_id, "new_owner": list(bytes(new_owner))})
    return sighash("transfer_item") + data


def parse_registry_account(data: bytes) -> Optional[dict]:
    if len(data) < ACCOUNT_DISCRIMINATOR_LEN + 8 + 32:
        return None
    if data[:ACCOUNT_DISCRIMINATOR_LEN] != account_discriminator("ItemRegistry"):
        return None
    parsed = RegistryAccountLayout.parse(data[ACCOUNT_DISCRIMINATOR_LEN:])
    return {
        "authority": Pubkey.from_bytes(bytes(parsed.authority)),
        "next_item_id": int(parsed.next_item_id),
    }


def parse_item_record_account(data: bytes) -> Optional[dict]:
    if len(data) < ACCOUNT_DISCRIMINATOR_LEN + 8 + 32 + 1:
        return None
    if data[:ACCOUNT_DISCRIMINATOR_LEN] != account_discriminator("ItemRecord"):
        return None
    parsed = ItemRecordLayout.parse(data[ACCOUNT_DISCRIMINATOR_LEN:])
    approved = Pubkey.from_bytes(bytes(parsed.approved)) if parsed.approved is not None else None
    return {
        "item_id": int(parsed.item_id),
        "owner": Pubkey.from_bytes(bytes(parsed.owner)),
        "approved": approved,
    }


def build_mint_item_ix(program_id: Pubkey, authority: Pubkey, owner: Pubkey, item_id: int) -> Instruction:
    registry = registry_pda(program_id)
    record = item_record_pda(program_id, registry, item_id)
    accounts = [
        AccountMeta(pubkey=authority, is_signer=True, is_writable=True),
        AccountMeta(pubkey=registry, is_signer=False, is_writable=True),
        AccountMeta(pubkey=record, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=encode_mint_item(item_id, owner), accounts=accounts)


def build_transfer_item_ix(
    program_id: Pubkey, operator: Pubkey, current_owner: Pubkey, new_owner: Pubkey, item_id: int
) -> Instruction:
    # operator signs as the approved delegate of the item record
    registry = registry_pda(program_id)
    record = item_record_pda(program_id, registry, item_id)
    accounts = [
        AccountMeta(pubkey=operator, is_signer=True, is_writable=True),
        AccountMeta(pubkey=registry, is_signer=False, is_writable=False),
        AccountMeta(pubkey=record, is_signer=False, is_writable=True),
        AccountMeta(pubkey=current_owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=new_owner, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=encode_transfer_item(item_id, new_owner), accounts=accounts)


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, ata: Pubkey) -> Instruction:
    # CreateIdempotent (instruction 1) so a concurrent creation does not fail the tx
    metas = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, data=bytes([1]), accounts=metas)


def build_mint_to_checked_ix(mint: Pubkey, destination: Pubkey, authority: Pubkey, amount: int, decimals: int) -> Instruction:
    data = bytes([SPL_MINT_TO_CHECKED]) + int(amount).to_bytes(8, "little") + bytes([decimals])
    metas = [
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_transfer_checked_ix(
    source: Pubkey, mint: Pubkey, dest: Pubkey, authority: Pubkey, amount: int, decimals: int
) -> Instruction:
    # authority is the owner or the approved delegate of source
    data = bytes([SPL_TRANSFER_CHECKED]) + int(amount).to_bytes(8, "little") + bytes([decimals])
    metas = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_burn_checked_ix(account: Pubkey, mint: Pubkey, authority: Pubkey, amount: int, decimals: int) -> Instruction:
    data = bytes([SPL_BURN_CHECKED]) + int(amount).to_bytes(8, "little") + bytes([decimals])
    metas = [
        AccountMeta(pubkey=account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def instruction_to_dict(ix: Instruction) -> Dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(ix.data).decode(),
    }


def compile_message(payer: Pubkey, ixs: List[Instruction], blockhash: str) -> MessageV0:
    return MessageV0.try_compile(payer, ixs, [], Hash.from_string(blockhash))
