# tests/test_chain.py
import base64
import hashlib
import logging

import pytest

from proofledger.chain.memos import extract_memo, memo_hash_b64_to_hex
from proofledger.chain.resolver import (
    build_effect_bundles,
    build_payments,
    merge_manage_data_bundles,
    resolve_candidates,
)
from proofledger.core.types import LedgerPayment

CID_V0 = "QmY7Yh4UquoXHLPFo2XbhXkhBvFoPwmQUSa92pxnxjQuPU"
CID_V1 = "bafybeie5gq4jxvzmsym6hjlwxej4rwdoxt7wadqvmmwbqi7r27fclha2va"


def payment_op(tx_hash, created_at="2026-03-20T10:00:00Z", memo=None, memo_type="text", **attr):
    transaction = {"memo_type": memo_type, "fee_charged": "100", "source_account": "GCUSTODIAN", "signatures": ["s1"]}
    if memo is not None:
        transaction["memo_hash" if memo_type == "hash" else "memo"] = memo
    transaction.update(attr)
    return {
        "id": f"op-{tx_hash}",
        "type": "payment",
        "created_at": created_at,
        "transaction_hash": tx_hash,
        "source_account": "GCUSTODIAN",
        "from": "GCUSTODIAN",
        "to": "GSPV",
        "amount": "1.0000000",
        "asset_type": "native",
        "transaction_attr": transaction,
    }


def manage_data_op(tx_hash, name, value, **attr):
    return {
        "id": f"md-{tx_hash}-{name}",
        "type": "manage_data",
        "transaction_hash": tx_hash,
        "name": name,
        "value": value,
        "transaction_attr": attr,
    }


def hash_memo(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode()


def test_text_memo_cid_is_upgraded():
    payment = LedgerPayment(id="1", created_at="", transaction_hash="tx", memo=CID_V0, memo_type="text")
    extraction = extract_memo(payment)
    assert extraction.cid == CID_V1
    assert extraction.memo_hash_hex is None


def test_hash_memo_yields_hex_only():
    encoded = hash_memo(b"anything")
    payment = LedgerPayment(id="1", created_at="", transaction_hash="tx", memo=encoded, memo_type="hash")
    extraction = extract_memo(payment)
    assert extraction.cid is None
    assert extraction.memo_hash_hex == hashlib.sha256(b"anything").hexdigest()


@pytest.mark.parametrize("memo,memo_type", [
    ("not-a-cid", "text"),
    ("12345", "id"),
    (base64.b64encode(b"short").decode(), "hash"),
    (None, None),
])
def test_unrecognised_memo_yields_nothing(memo, memo_type):
    payment = LedgerPayment(id="1", created_at="", transaction_hash="tx", memo=memo, memo_type=memo_type)
    extraction = extract_memo(payment)
    assert extraction.cid is None
    assert extraction.memo_hash_hex is None


def test_memo_hash_requires_32_bytes():
    with pytest.raises(ValueError):
        memo_hash_b64_to_hex(base64.b64encode(b"x" * 31).decode())
    assert memo_hash_b64_to_hex(base64.b64encode(b"\xab" * 32).decode()) == "ab" * 32


def test_text_memo_candidate():
    candidates = resolve_candidates([payment_op("tx1", memo=CID_V0)])
    assert len(candidates) == 1
    assert candidates[0].metadata_cid == CID_V1
    assert candidates[0].payment.fee_charged == "100"
    assert candidates[0].payment.signatures == ["s1"]
    assert candidates[0].bundle is None


@pytest.mark.parametrize("order", [(0, 1), (1, 0)])
def test_dedup_keeps_latest(order):
    ops = [
        payment_op("tx-old", created_at="2026-03-01T00:00:00Z", memo=CID_V1),
        payment_op("tx-new", created_at="2026-03-08T00:00:00Z", memo=CID_V0),
    ]
    candidates = resolve_candidates([ops[i] for i in order])
    assert len(candidates) == 1
    assert candidates[0].payment.transaction_hash == "tx-new"


def test_hash_memo_with_manage_data_bundle(make_cid, b64json):
    cid = make_cid("attestation")
    ops = [
        payment_op("tx1", memo=hash_memo(cid.encode()), memo_type="hash"),
        manage_data_op("tx1", "vesto.attestation.cid", b64json({
            "metadataCid": cid,
            "attestation": {"signature": "ab" * 64, "publicKey": "GSIGNER", "nonce": "nonce-0001"},
        })),
    ]
    [candidate] = resolve_candidates(ops)
    assert candidate.metadata_cid == cid
    assert candidate.memo_hash_hex == hashlib.sha256(cid.encode()).hexdigest()
    assert candidate.bundle.manage_data_name == "vesto.attestation.cid"
    assert candidate.bundle.signature_string == "ab" * 64
    assert candidate.bundle.public_key == "GSIGNER"
    assert candidate.bundle.nonce == "nonce-0001"


def test_manage_data_bare_cid():
    value = base64.b64encode(CID_V0.encode()).decode()
    bundles = merge_manage_data_bundles([manage_data_op("tx1", "vesto.reserve.cid", value)], {})
    assert bundles["tx1"].metadata_cid == CID_V1


def test_manage_data_undecodable_value_is_flagged():
    bundles = merge_manage_data_bundles([manage_data_op("tx1", "vesto.attestation.cid", "QR==")], {})
    assert bundles["tx1"].metadata_error
    assert bundles["tx1"].metadata_cid is None


def test_effects_build_bundles(make_cid, b64json):
    cid = make_cid("from-effect")
    effects = [
        {"type": "data_created", "transaction_hash": "tx1", "value": b64json({"metadataCid": cid, "nonce": "first-nonce"})},
        {"type": "data_updated", "transaction_hash": "tx1", "value": b64json({"signedBy": "GSIGNER", "nonce": "second-nonce", "requestCid": "bafyreq"})},
        {"type": "data_removed", "transaction_hash": "tx1", "value": b64json({"nonce": "ignored!"})},
        {"type": "data_created", "transaction_hash": "tx2", "value": "%%%"},
    ]
    bundles = build_effect_bundles(effects)
    assert set(bundles) == {"tx1"}
    assert bundles["tx1"].metadata_cid == cid
    assert bundles["tx1"].public_key == "GSIGNER"
    assert bundles["tx1"].nonce == "second-nonce"
    assert bundles["tx1"].request_cid == "bafyreq"


def test_effect_value_must_be_canonical_base64(make_cid, b64json):
    cid = make_cid("effect")
    encoded = b64json({"metadataCid": cid})
    effects = [
        {"type": "data_created", "transaction_hash": "tx1", "value": encoded[:8] + "*" + encoded[8:]},
        {"type": "data_updated", "transaction_hash": "tx2", "value": encoded},
    ]
    assert set(build_effect_bundles(effects)) == {"tx2"}


def test_bundle_cid_used_when_memo_is_empty(make_cid, b64json):
    cid = make_cid("fallback")
    effects = [{"type": "data_created", "transaction_hash": "tx1", "value": b64json({"metadataCid": cid})}]
    [candidate] = resolve_candidates([payment_op("tx1", memo_type="none")], effects)
    assert candidate.metadata_cid == cid
    assert candidate.bundle.metadata_cid == cid


def test_malformed_cid_dropped_silently(b64json, caplog):
    ops = [
        payment_op("tx1", memo_type="none"),
        manage_data_op("tx1", "vesto.attestation.cid", b64json({"metadataCid": "definitely-not-a-cid"})),
        payment_op("tx2", memo=CID_V1),
    ]
    with caplog.at_level(logging.DEBUG, logger="proofledger.chain.resolver"):
        candidates = resolve_candidates(ops)
    assert [c.payment.transaction_hash for c in candidates] == ["tx2"]
    assert "dropped 1" in caplog.text


def test_memo_joined_across_operations_of_one_transaction():
    ops = [
        manage_data_op("tx1", "other", None, memo_type="text", memo=CID_V1, fee_charged="200"),
        {**payment_op("tx1"), "transaction_attr": {}},
    ]
    [payment] = build_payments(ops)
    assert payment.memo == CID_V1
    assert payment.memo_type == "text"
    assert payment.fee_charged == "200"


def test_no_operations_no_candidates():
    assert resolve_candidates([]) == []
    assert resolve_candidates(None) == []
    assert resolve_candidates([manage_data_op("tx1", "x", None)]) == []
