"""Tests for cashuB token encoding."""

import base64

import cbor2
import pytest

from ..crypto.secp import PrivateKey
from ..exceptions import InvalidInputError
from ..tokens import TokenV4
from ..types import DLEQWallet, Proof


MINT_URL = "http://localhost:3338"
KEYSET_A = "00ad268c4d1f5826"
KEYSET_B = "009a1f293253e41e"


def _proof(amount, keyset_id, secret, witness=None, dleq=None):
    return Proof(
        amount=amount,
        id=keyset_id,
        secret=secret,
        C=PrivateKey().public_key.hex(),
        witness=witness,
        dleq=dleq,
    )


@pytest.fixture
def proofs():
    dleq = DLEQWallet(e="01" * 32, s="02" * 32, r="03" * 32)
    return [
        _proof(1, KEYSET_A, "secret-1", dleq=dleq),
        _proof(2, KEYSET_B, "secret-2", witness='{"signatures": []}'),
        _proof(4, KEYSET_A, "secret-3"),
    ]


def test_serialize_roundtrip(proofs):
    token = TokenV4(mint=MINT_URL, unit="sat", proofs=proofs, memo="thanks")
    encoded = token.serialize()

    assert encoded.startswith("cashuB")
    assert "=" not in encoded
    decoded = TokenV4.deserialize(encoded)
    assert decoded.mint == MINT_URL
    assert decoded.unit == "sat"
    assert decoded.memo == "thanks"
    assert decoded.amount == 7
    assert sorted(p.secret for p in decoded.proofs) == ["secret-1", "secret-2", "secret-3"]
    assert {p.secret: p for p in decoded.proofs} == {p.secret: p for p in proofs}


def test_proofs_grouped_by_keyset(proofs):
    token = TokenV4(mint=MINT_URL, unit="sat", proofs=proofs)
    data = token.to_cbor_dict()

    assert token.keysets == [KEYSET_A, KEYSET_B]
    assert [entry["i"] for entry in data["t"]] == [bytes.fromhex(KEYSET_A), bytes.fromhex(KEYSET_B)]
    assert [len(entry["p"]) for entry in data["t"]] == [2, 1]
    assert isinstance(data["t"][0]["p"][0]["c"], bytes)
    assert "d" not in data


def test_without_dleq(proofs):
    token = TokenV4(mint=MINT_URL, unit="sat", proofs=proofs)
    decoded = TokenV4.deserialize(token.serialize(include_dleq=False))
    assert all(p.dleq is None for p in decoded.proofs)


def test_padding_tolerated(proofs):
    token = TokenV4(mint=MINT_URL, unit="sat", proofs=proofs[:1])
    raw = base64.urlsafe_b64encode(cbor2.dumps(token.to_cbor_dict())).decode()
    assert TokenV4.deserialize("cashuB" + raw).amount == 1


def test_empty_token():
    with pytest.raises(InvalidInputError):
        TokenV4(mint=MINT_URL, unit="sat").serialize()


@pytest.mark.parametrize(
    "encoded",
    [
        "cashuA" + "e30",
        "cashuB",
        "cashuB!!!",
        "cashuB" + base64.urlsafe_b64encode(b"\xff\xff").decode(),
        "cashuB" + base64.urlsafe_b64encode(cbor2.dumps([1, 2])).decode(),
        "cashuB" + base64.urlsafe_b64encode(cbor2.dumps({"m": MINT_URL})).decode(),
        "cashuB" + base64.urlsafe_b64encode(
            cbor2.dumps({"m": MINT_URL, "u": "sat", "t": []})
        ).decode(),
        "cashuB" + base64.urlsafe_b64encode(
            cbor2.dumps({"m": MINT_URL, "u": "sat", "t": [{"i": "00ab", "p": []}]})
        ).decode(),
    ],
)
def test_malformed_tokens(encoded):
    with pytest.raises(InvalidInputError):
        TokenV4.deserialize(encoded)
