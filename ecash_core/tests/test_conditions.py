"""
Tests for P2PK and HTLC spending conditions.

All locktime checks pass an explicit ``now`` so nothing depends on the
wall clock.
"""

import json

import pytest

from ..config import SIG_ALL
from ..conditions import (
    HTLCSecret,
    OpaqueSecret,
    P2PKSecret,
    Witness,
    parse_secret,
    parse_witness,
    sign_htlc_witness,
    sign_p2pk_witness,
    sign_sig_all,
    verify_spending_conditions,
    verify_transaction_conditions,
)
from ..crypto.secp import PrivateKey
from ..exceptions import InvalidInputError, WitnessInvalidError
from ..security import sha256
from ..types import BlindedMessage, Proof


KEYSET_ID = "009a1f293253e41e"
LOCKTIME = 1_700_000_000
PREIMAGE = "11" * 32


@pytest.fixture
def alice():
    return PrivateKey()


@pytest.fixture
def bob():
    return PrivateKey()


@pytest.fixture
def carol():
    return PrivateKey()


@pytest.fixture
def C():
    return PrivateKey().public_key.hex()


def make_proof(secret, C, amount=1):
    return Proof(amount=amount, id=KEYSET_ID, secret=secret.serialize(), C=C)


# ============================================================================
# PARSING
# ============================================================================


def test_plain_secret_is_opaque():
    assert parse_secret("a" * 64) == OpaqueSecret("a" * 64)


@pytest.mark.parametrize(
    "raw",
    ['["UNKNOWN", {"nonce": "00", "data": "x"}]', "[1, 2, 3]", '{"P2PK": 1}', "42"],
)
def test_unknown_json_is_opaque(raw):
    assert isinstance(parse_secret(raw), OpaqueSecret)


@pytest.mark.parametrize(
    "raw",
    [
        '["P2PK", "not an object"]',
        '["P2PK", {"data": "02"}]',
        '["HTLC", {"nonce": "00", "data": "aa", "tags": [["locktime", 5]]}]',
        '["HTLC", {"nonce": "00", "data": "aa", "tags": "sigflag"}]',
    ],
)
def test_malformed_condition_rejected(raw):
    with pytest.raises(InvalidInputError):
        parse_secret(raw)


def test_serialize_parse_roundtrip(alice, bob):
    secret = P2PKSecret.create(
        alice.public_key.hex(),
        pubkeys=[bob.public_key.hex()],
        n_sigs=2,
        locktime=LOCKTIME,
    )
    parsed = parse_secret(secret.serialize())
    assert parsed == secret
    assert parsed.n_sigs == 2
    assert parsed.locktime == LOCKTIME
    assert parsed.pubkeys == [alice.public_key.hex(), bob.public_key.hex()]


def test_tag_defaults(alice):
    secret = P2PKSecret(kind="P2PK", nonce="00", data=alice.public_key.hex())
    assert secret.n_sigs == 1
    assert secret.n_sigs_refund == 1
    assert secret.locktime is None
    assert secret.refund_pubkeys == []
    assert secret.sigflag == "SIG_INPUTS"


def test_bad_sigflag(alice):
    with pytest.raises(InvalidInputError):
        P2PKSecret.create(alice.public_key.hex(), sigflag="SIG_SOME")
    secret = P2PKSecret(
        kind="P2PK", nonce="00", data=alice.public_key.hex(), tags=(("sigflag", "X"),)
    )
    with pytest.raises(InvalidInputError):
        secret.sigflag


def test_nonce_is_random(alice):
    first = P2PKSecret.create(alice.public_key.hex())
    second = P2PKSecret.create(alice.public_key.hex())
    assert first.nonce != second.nonce
    assert first.same_condition(second)


def test_parse_witness():
    assert parse_witness(None) == Witness()
    witness = Witness(signatures=("ab",), preimage="cd")
    assert parse_witness(witness.serialize()) == witness


@pytest.mark.parametrize(
    "raw", ["not json", "[]", '{"signatures": "ab"}', '{"preimage": 5}']
)
def test_parse_witness_rejects(raw):
    with pytest.raises(WitnessInvalidError):
        parse_witness(raw)


# ============================================================================
# P2PK
# ============================================================================


def test_opaque_proof_needs_no_witness(C):
    proof = Proof(amount=1, id=KEYSET_ID, secret="plain", C=C)
    verify_spending_conditions(proof)


def test_p2pk_signed_by_owner(alice, C):
    proof = make_proof(P2PKSecret.create(alice.public_key.hex()), C)
    verify_spending_conditions(sign_p2pk_witness(proof, [alice]))


def test_p2pk_without_witness(alice, C):
    proof = make_proof(P2PKSecret.create(alice.public_key.hex()), C)
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(proof)


def test_p2pk_signed_by_stranger(alice, bob, C):
    proof = make_proof(P2PKSecret.create(alice.public_key.hex()), C)
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(sign_p2pk_witness(proof, [bob]))


def test_p2pk_signature_over_other_message(alice, C):
    first = make_proof(P2PKSecret.create(alice.public_key.hex()), C)
    second = make_proof(P2PKSecret.create(alice.public_key.hex()), C)
    stolen = second.with_witness(sign_p2pk_witness(first, [alice]).witness)
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(stolen)


def test_p2pk_multisig(alice, bob, carol, C):
    secret = P2PKSecret.create(
        alice.public_key.hex(),
        pubkeys=[bob.public_key.hex(), carol.public_key.hex()],
        n_sigs=2,
    )
    proof = make_proof(secret, C)

    verify_spending_conditions(sign_p2pk_witness(proof, [alice, carol]))
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(sign_p2pk_witness(proof, [bob]))


def test_p2pk_same_signer_twice_counts_once(alice, bob, C):
    secret = P2PKSecret.create(
        alice.public_key.hex(), pubkeys=[bob.public_key.hex()], n_sigs=2
    )
    proof = make_proof(secret, C)
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(sign_p2pk_witness(proof, [alice, alice]))


def test_p2pk_n_sigs_above_pubkeys(alice, C):
    proof = make_proof(P2PKSecret.create(alice.public_key.hex(), n_sigs=2), C)
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(sign_p2pk_witness(proof, [alice]))


def test_locktime_without_refund_keys(alice, C):
    proof = make_proof(P2PKSecret.create(alice.public_key.hex(), locktime=LOCKTIME), C)

    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(proof, now=LOCKTIME - 1)
    verify_spending_conditions(proof, now=LOCKTIME)


def test_refund_path(alice, bob, C):
    secret = P2PKSecret.create(
        alice.public_key.hex(), locktime=LOCKTIME, refund=[bob.public_key.hex()]
    )
    refund_signed = sign_p2pk_witness(make_proof(secret, C), [bob])

    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(refund_signed, now=LOCKTIME - 1)
    verify_spending_conditions(refund_signed, now=LOCKTIME + 1)


def test_primary_path_after_locktime(alice, bob, C):
    secret = P2PKSecret.create(
        alice.public_key.hex(), locktime=LOCKTIME, refund=[bob.public_key.hex()]
    )
    owner_signed = sign_p2pk_witness(make_proof(secret, C), [alice])
    verify_spending_conditions(owner_signed, now=LOCKTIME + 1)


def test_refund_quorum(alice, bob, carol, C):
    secret = P2PKSecret.create(
        alice.public_key.hex(),
        locktime=LOCKTIME,
        refund=[bob.public_key.hex(), carol.public_key.hex()],
        n_sigs_refund=2,
    )
    proof = make_proof(secret, C)

    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(sign_p2pk_witness(proof, [bob]), now=LOCKTIME)
    verify_spending_conditions(sign_p2pk_witness(proof, [bob, carol]), now=LOCKTIME)


def test_invalid_data_pubkey(C):
    secret = P2PKSecret.create("02" + "ff" * 32)
    with pytest.raises(InvalidInputError):
        verify_spending_conditions(make_proof(secret, C).with_witness('{"signatures": ["00"]}'))


# ============================================================================
# HTLC
# ============================================================================


@pytest.fixture
def hashlock():
    return sha256(bytes.fromhex(PREIMAGE)).hex()


def test_htlc_preimage(hashlock, C):
    proof = make_proof(HTLCSecret.create(hashlock), C)
    verify_spending_conditions(sign_htlc_witness(proof, PREIMAGE))


@pytest.mark.parametrize("preimage", ["22" * 32, "zz", None])
def test_htlc_wrong_preimage(hashlock, C, preimage):
    proof = make_proof(HTLCSecret.create(hashlock), C)
    witness = Witness(preimage=preimage).serialize()
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(proof.with_witness(witness))


def test_htlc_with_signer(hashlock, alice, bob, C):
    proof = make_proof(HTLCSecret.create(hashlock, pubkeys=[alice.public_key.hex()]), C)

    verify_spending_conditions(sign_htlc_witness(proof, PREIMAGE, [alice]))
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(sign_htlc_witness(proof, PREIMAGE))
    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(sign_htlc_witness(proof, PREIMAGE, [bob]))


def test_htlc_refund(hashlock, alice, C):
    secret = HTLCSecret.create(
        hashlock, locktime=LOCKTIME, refund=[alice.public_key.hex()]
    )
    refund_signed = sign_p2pk_witness(make_proof(secret, C), [alice])

    with pytest.raises(WitnessInvalidError):
        verify_spending_conditions(refund_signed, now=LOCKTIME - 10)
    verify_spending_conditions(refund_signed, now=LOCKTIME)


def test_htlc_bad_hashlock(C):
    proof = make_proof(HTLCSecret.create("abcd"), C)
    with pytest.raises(InvalidInputError):
        verify_spending_conditions(sign_htlc_witness(proof, PREIMAGE))


# ============================================================================
# TRANSACTIONS
# ============================================================================


@pytest.fixture
def outputs():
    return [
        BlindedMessage(amount=1, id=KEYSET_ID, B_=PrivateKey().public_key.hex()),
        BlindedMessage(amount=2, id=KEYSET_ID, B_=PrivateKey().public_key.hex()),
    ]


def test_sig_inputs_reports_failing_index(alice, C):
    good = sign_p2pk_witness(make_proof(P2PKSecret.create(alice.public_key.hex()), C), [alice])
    bad = make_proof(P2PKSecret.create(alice.public_key.hex()), C)

    with pytest.raises(WitnessInvalidError, match="input 1"):
        verify_transaction_conditions([good, bad])


def test_sig_all(alice, C, outputs):
    pubkey = alice.public_key.hex()
    proofs = [
        make_proof(P2PKSecret.create(pubkey, sigflag=SIG_ALL), C),
        make_proof(P2PKSecret.create(pubkey, sigflag=SIG_ALL), C, amount=2),
    ]
    signed = sign_sig_all(proofs, outputs, [alice])

    assert signed[1].witness is None
    verify_transaction_conditions(signed, outputs)


def test_sig_all_binds_outputs(alice, C, outputs):
    pubkey = alice.public_key.hex()
    proofs = [make_proof(P2PKSecret.create(pubkey, sigflag=SIG_ALL), C)]
    signed = sign_sig_all(proofs, outputs, [alice])

    with pytest.raises(WitnessInvalidError):
        verify_transaction_conditions(signed, outputs[:1])


def test_sig_all_binds_quote(alice, C, outputs):
    pubkey = alice.public_key.hex()
    proofs = [make_proof(P2PKSecret.create(pubkey, sigflag=SIG_ALL), C)]
    signed = sign_sig_all(proofs, outputs, [alice], quote_id="quote-1")

    verify_transaction_conditions(signed, outputs, quote_id="quote-1")
    with pytest.raises(WitnessInvalidError):
        verify_transaction_conditions(signed, outputs, quote_id="quote-2")


def test_sig_all_requires_same_condition(alice, bob, C, outputs):
    proofs = [
        make_proof(P2PKSecret.create(alice.public_key.hex(), sigflag=SIG_ALL), C),
        make_proof(P2PKSecret.create(bob.public_key.hex(), sigflag=SIG_ALL), C),
    ]
    signed = sign_sig_all(proofs, outputs, [alice, bob])

    with pytest.raises(WitnessInvalidError):
        verify_transaction_conditions(signed, outputs)


def test_sig_all_rejects_opaque_input(alice, C, outputs):
    locked = make_proof(P2PKSecret.create(alice.public_key.hex(), sigflag=SIG_ALL), C)
    plain = Proof(amount=1, id=KEYSET_ID, secret="plain", C=C)
    signed = sign_sig_all([locked, plain], outputs, [alice])

    with pytest.raises(WitnessInvalidError):
        verify_transaction_conditions(signed, outputs)


def test_witness_json_shape(alice, C):
    proof = sign_htlc_witness(
        make_proof(P2PKSecret.create(alice.public_key.hex()), C), PREIMAGE, [alice]
    )
    data = json.loads(proof.witness)
    assert data["preimage"] == PREIMAGE
    assert len(data["signatures"]) == 1
    assert len(bytes.fromhex(data["signatures"][0])) == 64
