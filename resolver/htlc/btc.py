"""
Bitcoin HTLC scripts for the UTXO leg of a swap.

Creates P2SH HTLCs bound to one order:

    <order_hash> OP_DROP
    <claim_lock> OP_CHECKLOCKTIMEVERIFY OP_DROP
    OP_IF
        OP_SHA256 <hashlock> OP_EQUALVERIFY
        <claimer_pubkey> OP_CHECKSIG
    OP_ELSE
        <refund_lock> OP_CHECKLOCKTIMEVERIFY OP_DROP
        <refunder_pubkey> OP_CHECKSIG
    OP_ENDIF

To claim (with preimage):
    <signature> <preimage> OP_TRUE <redeem_script>

To refund (after refund_lock):
    <signature> OP_FALSE <redeem_script>

The relative variant swaps OP_CHECKLOCKTIMEVERIFY for OP_CHECKSEQUENCEVERIFY
with BIP68 time-based sequences (source leg funded by the maker).
"""

import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Tuple

import base58
from bitcoin import segwit_addr
from bitcoin.core import (
    Hash160, CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint, lx,
)
from bitcoin.core.script import (
    CScript, CScriptOp, CScriptInvalidError, SignatureHash, SIGHASH_ALL,
    SIGVERSION_WITNESS_V0,
    OP_0, OP_TRUE, OP_FALSE, OP_DROP, OP_DUP, OP_IF, OP_ELSE, OP_ENDIF,
    OP_SHA256, OP_EQUAL, OP_EQUALVERIFY, OP_CHECKSIG, OP_HASH160,
    OP_CHECKLOCKTIMEVERIFY, OP_CHECKSEQUENCEVERIFY,
)

from ..core import hex_to_bytes
from ..errors import (
    ValidationError, InvalidScriptParameters, AddressFormatError, InsufficientFunds, NoUTXOs,
)

log = logging.getLogger(__name__)


# nLockTime values below this are block heights, above are unix timestamps
LOCKTIME_THRESHOLD = 500_000_000
MAX_LOCKTIME = 0xffffffff

# BIP68
SEQUENCE_LOCKTIME_TYPE_FLAG = 1 << 22
SEQUENCE_LOCKTIME_GRANULARITY = 9          # 512-second units
SEQUENCE_LOCKTIME_MASK = 0x0000ffff
SEQUENCE_FINAL = 0xffffffff
SEQUENCE_LOCKTIME_ENABLED = 0xfffffffe     # final-minus-one, lets nLockTime apply

MAX_SCRIPT_ELEMENT_SIZE = 520


@dataclass(frozen=True)
class BTCNetwork:
    """Encoding parameters for one bitcoin network."""
    name: str
    bech32_hrp: str
    p2sh_prefix: int
    wif_prefix: int


NETWORKS: Dict[str, BTCNetwork] = {
    "mainnet": BTCNetwork("mainnet", "bc", 0x05, 0x80),
    "testnet": BTCNetwork("testnet", "tb", 0xc4, 0xef),
    "signet": BTCNetwork("signet", "tb", 0xc4, 0xef),
    "regtest": BTCNetwork("regtest", "bcrt", 0xc4, 0xef),
}


def get_network(network) -> BTCNetwork:
    if isinstance(network, BTCNetwork):
        return network
    try:
        return NETWORKS[network]
    except KeyError:
        raise AddressFormatError(f"Unknown bitcoin network: {network}", network=network)


# =============================================================================
# HTLC script
# =============================================================================

@dataclass(frozen=True)
class ClaimableScript:
    """Parameters recovered from (or used to build) an HTLC script."""
    order_hash: bytes
    hash_lock: bytes
    claim_lock: int         # nLockTime value, or BIP68 sequence when relative
    refund_lock: int
    claimer_pubkey: bytes
    refunder_pubkey: bytes
    relative: bool = False


def bip68_seconds(seconds: int) -> int:
    """
    Encode a relative time lock as a BIP68 sequence.

    Rounds up to the next 512-second unit so the lock never gets shorter.
    """
    if seconds <= 0:
        raise InvalidScriptParameters("relative lock must be positive", seconds=seconds)
    units = (seconds + (1 << SEQUENCE_LOCKTIME_GRANULARITY) - 1) >> SEQUENCE_LOCKTIME_GRANULARITY
    if units > SEQUENCE_LOCKTIME_MASK:
        raise InvalidScriptParameters("relative lock too long for BIP68", seconds=seconds)
    return SEQUENCE_LOCKTIME_TYPE_FLAG | units


def _check_pubkey(name: str, pubkey: bytes):
    if len(pubkey) != 33 or pubkey[0] not in (2, 3):
        raise InvalidScriptParameters(f"{name} must be a 33-byte compressed public key",
                                      field=name)


def _check_locktime(name: str, value: int):
    if not isinstance(value, int) or value <= 0 or value > MAX_LOCKTIME:
        raise InvalidScriptParameters(f"{name} must be a positive 32-bit lock time",
                                      field=name, value=value)


def build_claimable_script(order_hash, hash_lock, claim_lock_time: int,
                           refund_lock_time: int, claimer_pubkey,
                           refunder_pubkey, relative: bool = False) -> CScript:
    """
    Build the HTLC redeem script for one order.

    Args:
        order_hash: 32-byte order hash (hex or bytes), pushed and dropped
        hash_lock: SHA256 of the secret (hex or bytes)
        claim_lock_time: Earliest claim time (absolute, or seconds if relative)
        refund_lock_time: Earliest refund time, must exceed claim_lock_time
        claimer_pubkey: Compressed pubkey that claims with the secret
        refunder_pubkey: Compressed pubkey that refunds after refund_lock_time
        relative: Use CHECKSEQUENCEVERIFY with BIP68 seconds instead of CLTV

    Returns:
        Redeem script (byte-identical for identical arguments)

    Raises:
        InvalidScriptParameters
    """
    try:
        order_hash = hex_to_bytes(order_hash, 32, "order_hash")
        hash_lock = hex_to_bytes(hash_lock, 32, "hash_lock")
        claimer = hex_to_bytes(claimer_pubkey, name="claimer_pubkey")
        refunder = hex_to_bytes(refunder_pubkey, name="refunder_pubkey")
    except ValidationError as e:
        raise InvalidScriptParameters(str(e))

    _check_pubkey("claimer_pubkey", claimer)
    _check_pubkey("refunder_pubkey", refunder)
    if claimer == refunder:
        raise InvalidScriptParameters("claimer and refunder keys must differ")

    _check_locktime("claim_lock_time", claim_lock_time)
    _check_locktime("refund_lock_time", refund_lock_time)
    if refund_lock_time <= claim_lock_time:
        raise InvalidScriptParameters("refund lock time must exceed claim lock time",
                                      claim_lock_time=claim_lock_time,
                                      refund_lock_time=refund_lock_time)

    if relative:
        claim_lock, refund_lock = bip68_seconds(claim_lock_time), bip68_seconds(refund_lock_time)
        if refund_lock <= claim_lock:
            raise InvalidScriptParameters("lock times collapse to the same BIP68 unit",
                                          claim_lock_time=claim_lock_time,
                                          refund_lock_time=refund_lock_time)
        lock_op = OP_CHECKSEQUENCEVERIFY
    else:
        if (claim_lock_time < LOCKTIME_THRESHOLD) != (refund_lock_time < LOCKTIME_THRESHOLD):
            raise InvalidScriptParameters("lock times must both be heights or both timestamps")
        claim_lock, refund_lock = claim_lock_time, refund_lock_time
        lock_op = OP_CHECKLOCKTIMEVERIFY

    return CScript([
        order_hash, OP_DROP,
        claim_lock, lock_op, OP_DROP,
        OP_IF,
        OP_SHA256, hash_lock, OP_EQUALVERIFY,
        claimer, OP_CHECKSIG,
        OP_ELSE,
        refund_lock, lock_op, OP_DROP,
        refunder, OP_CHECKSIG,
        OP_ENDIF,
    ])


def _decode_num(item) -> int:
    if isinstance(item, CScriptOp) or not isinstance(item, (int, bytes)):
        raise InvalidScriptParameters("expected a number push in lock position")
    if isinstance(item, int):
        return item
    if not item:
        return 0
    value = int.from_bytes(item, "little")
    if item[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(item) - 1))))
    return value


def parse_claimable_script(script) -> ClaimableScript:
    """
    Recover the parameters of an HTLC script built by build_claimable_script.

    Raises:
        InvalidScriptParameters: script does not follow the template
    """
    try:
        items = list(CScript(hex_to_bytes(script, name="htlc_script")))
    except (CScriptInvalidError, ValidationError) as e:
        raise InvalidScriptParameters(f"Unparseable HTLC script: {e}")

    if len(items) != 18:
        raise InvalidScriptParameters(f"HTLC script has {len(items)} elements, expected 18")

    (order_hash, drop1, claim, lock_op, drop2, op_if, op_sha, hash_lock, eqv,
     claimer, chk1, op_else, refund, lock_op2, drop3, refunder, chk2, op_endif) = items

    expected_ops = [(drop1, OP_DROP), (drop2, OP_DROP), (op_if, OP_IF), (op_sha, OP_SHA256),
                    (eqv, OP_EQUALVERIFY), (chk1, OP_CHECKSIG), (op_else, OP_ELSE),
                    (drop3, OP_DROP), (chk2, OP_CHECKSIG), (op_endif, OP_ENDIF)]
    for got, want in expected_ops:
        if not isinstance(got, CScriptOp) or got != want:
            raise InvalidScriptParameters(f"HTLC script mismatch: expected {want}, got {got!r}")

    if lock_op not in (OP_CHECKLOCKTIMEVERIFY, OP_CHECKSEQUENCEVERIFY) or lock_op2 != lock_op:
        raise InvalidScriptParameters("HTLC script lock opcodes are inconsistent")

    for name, data in (("order_hash", order_hash), ("hash_lock", hash_lock),
                       ("claimer_pubkey", claimer), ("refunder_pubkey", refunder)):
        if not isinstance(data, bytes):
            raise InvalidScriptParameters(f"HTLC script {name} is not a data push")
    if len(hash_lock) != 32:
        raise InvalidScriptParameters("HTLC script hash lock must be 32 bytes")

    return ClaimableScript(
        order_hash=order_hash,
        hash_lock=hash_lock,
        claim_lock=_decode_num(claim),
        refund_lock=_decode_num(refund),
        claimer_pubkey=claimer,
        refunder_pubkey=refunder,
        relative=lock_op == OP_CHECKSEQUENCEVERIFY,
    )


def build_unlocking_script(signature: bytes, secret: Optional[bytes] = None,
                           claim: bool = True) -> CScript:
    """
    Build the input script selecting a branch of the HTLC.

    Args:
        signature: DER signature with sighash byte appended
        secret: 32-byte preimage (claim branch only)
        claim: True for the claim branch, False for refund
    """
    if claim:
        if secret is None or len(secret) != 32:
            raise InvalidScriptParameters("claim branch needs a 32-byte secret")
        return CScript([signature, secret, OP_TRUE])
    return CScript([signature, OP_FALSE])


def p2sh_script_pubkey(script) -> CScript:
    """OP_HASH160 <hash160(script)> OP_EQUAL"""
    script = CScript(hex_to_bytes(script, name="htlc_script"))
    if len(script) > MAX_SCRIPT_ELEMENT_SIZE:
        raise InvalidScriptParameters("redeem script exceeds 520 bytes")
    return CScript([OP_HASH160, Hash160(script), OP_EQUAL])


def p2sh_script_sig(unlocking: CScript, redeem_script) -> CScript:
    """Append the serialized redeem script push to an unlocking script."""
    redeem = hex_to_bytes(redeem_script, name="htlc_script")
    return CScript(bytes(unlocking) + bytes(CScript([redeem])))


def p2sh_address(script, network="regtest") -> str:
    net = get_network(network)
    script_hash = Hash160(hex_to_bytes(script, name="htlc_script"))
    return base58.b58encode_check(bytes([net.p2sh_prefix]) + script_hash).decode()


# =============================================================================
# P2WPKH / address conversion
# =============================================================================

def p2wpkh_script_pubkey(pubkey: bytes) -> CScript:
    return CScript([OP_0, Hash160(pubkey)])


def p2wpkh_address(pubkey: bytes, network="regtest") -> str:
    net = get_network(network)
    return segwit_addr.encode(net.bech32_hrp, 0, Hash160(pubkey))


def btc_address_to_evm(address: str, network="regtest") -> str:
    """
    Reinterpret a P2WPKH address as a 20-byte account-chain value.

    Only witness v0 with a 20-byte program is accepted.
    """
    net = get_network(network)
    witver, program = segwit_addr.decode(net.bech32_hrp, address)
    if witver is None:
        raise AddressFormatError(f"Not a {net.name} bech32 address: {address}", address=address)
    if witver != 0 or len(program) != 20:
        raise AddressFormatError("Only witness v0 addresses with 20-byte programs are supported",
                                 address=address, witness_version=witver,
                                 program_length=len(program))
    return "0x" + bytes(program).hex()


def evm_to_btc_address(value: str, network="regtest") -> str:
    """Inverse of btc_address_to_evm."""
    net = get_network(network)
    try:
        program = hex_to_bytes(value, 20, "address")
    except ValidationError as e:
        raise AddressFormatError(str(e))
    return segwit_addr.encode(net.bech32_hrp, 0, program)


def pubkey_to_evm(pubkey: bytes) -> str:
    """20-byte account-chain form of the P2WPKH address owned by pubkey."""
    return "0x" + Hash160(pubkey).hex()


# =============================================================================
# Transactions
# =============================================================================

@dataclass(frozen=True)
class UTXO:
    txid: str
    vout: int
    value: int


def build_funding_tx(utxos: List[UTXO], htlc_script, amount: int, fee: int,
                     change_script_pubkey: CScript, dust_limit: int = 546
                     ) -> Tuple[CMutableTransaction, List[UTXO]]:
    """
    Build an unsigned transaction paying amount to the HTLC's P2SH output.

    UTXOs are taken largest first until amount + fee is covered. Change at or
    below dust_limit is left to the fee.

    Returns:
        (transaction, spent UTXOs in input order)
    """
    if not utxos:
        raise NoUTXOs("No UTXOs available to fund HTLC")
    if amount <= 0:
        raise InvalidScriptParameters("funding amount must be positive", amount=amount)

    needed = amount + fee
    selected: List[UTXO] = []
    total = 0
    for utxo in sorted(utxos, key=lambda u: u.value, reverse=True):
        selected.append(utxo)
        total += utxo.value
        if total >= needed:
            break

    if total < needed:
        raise InsufficientFunds("Not enough funds to lock BTC and cover the fee",
                                available=total, required=needed)

    vin = [CMutableTxIn(COutPoint(lx(u.txid), u.vout)) for u in selected]
    vout = [CMutableTxOut(amount, p2sh_script_pubkey(htlc_script))]
    change = total - needed
    if change > dust_limit:
        vout.append(CMutableTxOut(change, change_script_pubkey))
    elif change:
        log.info(f"Dropping {change} sats change below dust limit into the fee")

    return CMutableTransaction(vin, vout, nVersion=2), selected


def p2wpkh_sighash(tx: CMutableTransaction, index: int, pubkey: bytes, value: int) -> bytes:
    """BIP143 digest for a P2WPKH input."""
    script_code = CScript([OP_DUP, OP_HASH160, Hash160(pubkey), OP_EQUALVERIFY, OP_CHECKSIG])
    return SignatureHash(script_code, tx, index, SIGHASH_ALL,
                         amount=value, sigversion=SIGVERSION_WITNESS_V0)


def build_htlc_spend_tx(funding_txid: str, vout: int, value: int, htlc_script,
                        destination: CScript, fee: int, claim: bool = True,
                        dust_limit: int = 546) -> CMutableTransaction:
    """
    Build an unsigned transaction spending an HTLC output.

    nLockTime / nSequence / nVersion are set so the branch's lock check passes.
    """
    params = parse_claimable_script(htlc_script)
    out_value = value - fee
    if out_value <= dust_limit:
        raise InsufficientFunds("HTLC value does not cover the redeem fee",
                                value=value, fee=fee)

    lock = params.claim_lock if claim else params.refund_lock
    if params.relative:
        txin = CMutableTxIn(COutPoint(lx(funding_txid), vout), nSequence=lock)
        lock_time = 0
    else:
        txin = CMutableTxIn(COutPoint(lx(funding_txid), vout), nSequence=SEQUENCE_LOCKTIME_ENABLED)
        lock_time = lock

    return CMutableTransaction([txin], [CMutableTxOut(out_value, destination)],
                               nLockTime=lock_time, nVersion=2)


def htlc_sighash(tx: CMutableTransaction, htlc_script, index: int = 0) -> bytes:
    """Legacy (P2SH) digest for spending the HTLC input."""
    script = CScript(hex_to_bytes(htlc_script, name="htlc_script"))
    return SignatureHash(script, tx, index, SIGHASH_ALL)
