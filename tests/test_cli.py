# tests/test_cli.py
import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

from proofledger.chain.bridge import bridge_fetchers
from proofledger.cli import main as cli
from proofledger.cli.main import app
from proofledger.fetch.gateway import MetadataFetcher

runner = CliRunner()

CID_V0 = "QmY7Yh4UquoXHLPFo2XbhXkhBvFoPwmQUSa92pxnxjQuPU"
CID_V1 = "bafybeie5gq4jxvzmsym6hjlwxej4rwdoxt7wadqvmmwbqi7r27fclha2va"
SEED_HEX = "07" * 32
MESSAGE_ARGS = ["--week", "12", "--reserve", "1250.50", "--timestamp", "2026-03-20T10:00:00Z", "--nonce", "nonce-0001"]


def write_json(path: Path, data) -> Path:
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def holders_file(tmp_path: Path) -> Path:
    return write_json(tmp_path / "holders.json", [
        {"account": "GHOLDERA", "balance": "60"},
        {"account": "GHOLDERB", "balance": 40},
    ])


def test_missing_file():
    result = runner.invoke(app, ["resolve", "/nonexistent/ops.json"])
    assert result.exit_code == 1
    assert "File not found" in result.stdout


def test_unreadable_file(tmp_path: Path):
    path = tmp_path / "ops.json"
    path.write_text("{not json", encoding="utf-8")
    result = runner.invoke(app, ["distribute", str(path), "--income", "10"])
    assert result.exit_code == 1
    assert "Failed to read" in result.stdout


def test_distribute_json(holders_file: Path):
    result = runner.invoke(app, ["distribute", str(holders_file), "--income", "100", "--json"])
    assert result.exit_code == 0, result.stdout
    data = json.loads(result.stdout)
    assert data["asset"] == "XLM"
    assert data["totalPaid"] == "100"
    assert [p["amount"] for p in data["payouts"]] == ["60", "40"]


def test_distribute_shrinks_to_available(holders_file: Path):
    result = runner.invoke(app, [
        "distribute", str(holders_file), "--income", "100", "--available", "50", "--asset", "susd", "--json",
    ])
    assert result.exit_code == 0, result.stdout
    data = json.loads(result.stdout)
    assert data["asset"] == "SUSD"
    assert [p["amount"] for p in data["payouts"]] == ["30", "20"]


def test_distribute_table(holders_file: Path):
    result = runner.invoke(app, ["distribute", str(holders_file), "--income", "100"])
    assert result.exit_code == 0
    assert "GHOLDERA" in result.stdout
    assert "Total paid" in result.stdout


def test_distribute_rejects_zero_income(holders_file: Path):
    result = runner.invoke(app, ["distribute", str(holders_file), "--income", "0"])
    assert result.exit_code == 1
    assert "Distribution failed" in result.stdout


def test_distribute_rejects_bad_holder(tmp_path: Path):
    path = write_json(tmp_path / "holders.json", [{"account": "GHOLDERA"}])
    result = runner.invoke(app, ["distribute", str(path), "--income", "100"])
    assert result.exit_code == 1
    assert "Invalid holder record" in result.stdout


def test_memo_hash():
    result = runner.invoke(app, ["memo-hash", CID_V0])
    assert result.exit_code == 0
    assert CID_V1 in result.stdout
    assert hashlib.sha256(CID_V0.encode()).hexdigest() in result.stdout


def test_memo_hash_check():
    expected = hashlib.sha256(CID_V1.encode()).hexdigest()
    ok = runner.invoke(app, ["memo-hash", CID_V1, "--check", "0x" + expected])
    assert ok.exit_code == 0
    assert "Verified" in ok.stdout

    bad = runner.invoke(app, ["memo-hash", CID_V1, "--check", "00" * 32])
    assert bad.exit_code == 1
    assert "memo-hash-mismatch" in bad.stdout


def test_memo_hash_rejects_non_cid():
    result = runner.invoke(app, ["memo-hash", "hello"])
    assert result.exit_code == 1


def test_sign_then_verify():
    signed = runner.invoke(app, ["sign", *MESSAGE_ARGS, "--secret", SEED_HEX])
    assert signed.exit_code == 0, signed.stdout
    out = json.loads(signed.stdout)
    assert out["nonce"] == "nonce-0001"
    assert base64.b64decode(out["signatureBase64"]) == bytes.fromhex(out["signature"])

    verified = runner.invoke(app, [
        "verify-signature", "--public-key", out["publicKey"], "--signature", out["signature"], *MESSAGE_ARGS,
    ])
    assert verified.exit_code == 0, verified.stdout
    assert "Signature valid" in verified.stdout
    assert "canonical-bytes" in verified.stdout


def test_verify_rejects_other_message():
    out = json.loads(runner.invoke(app, ["sign", *MESSAGE_ARGS, "--secret", SEED_HEX]).stdout)
    tampered = [a if a != "1250.50" else "1250.51" for a in MESSAGE_ARGS]

    result = runner.invoke(app, [
        "verify-signature", "--public-key", out["publicKey"], "--signature", out["signatureBase64"], *tampered,
    ])
    assert result.exit_code == 1
    assert "Signature verification failed" in result.stdout


def test_sign_reads_secret_from_env():
    result = runner.invoke(app, ["sign", *MESSAGE_ARGS], env={"PROOFLEDGER_SIGNER_SECRET": SEED_HEX})
    assert result.exit_code == 0
    assert SEED_HEX not in result.stdout


def test_sign_without_secret(monkeypatch):
    monkeypatch.delenv("PROOFLEDGER_SIGNER_SECRET", raising=False)
    result = runner.invoke(app, ["sign", *MESSAGE_ARGS])
    assert result.exit_code == 1
    assert "No signing key" in result.stdout


def test_reserve_payload_with_anchor(make_cid):
    cid = make_cid("reserve")
    result = runner.invoke(app, [
        "reserve-payload", "--xlm", "1000", "--susd", "500.25", "--as-of", "2026-03-20T10:00:00Z", "--cid", cid,
    ])
    assert result.exit_code == 0, result.stdout
    first, *rest = result.stdout.splitlines()
    payload = json.loads(first)
    assert payload["schema"] == "vesto.reserve@1"
    assert payload["week"] == 12
    assert payload["reserveUSD"] == 1500.25
    assert hashlib.sha256(cid.encode()).hexdigest() in "\n".join(rest)


def test_resolve_json(tmp_path: Path, monkeypatch, gateway, make_cid, attestation_doc):
    cid = make_cid("week-12")
    gateway.add_json(cid, attestation_doc())
    monkeypatch.setattr(
        cli, "MetadataFetcher",
        lambda gateways: MetadataFetcher(gateways=gateways, client=gateway.client()),
    )
    ops = write_json(tmp_path / "ops.json", {"_embedded": {"records": [
        {
            "id": "op-1",
            "type": "payment",
            "created_at": "2026-03-20T10:00:00Z",
            "transaction_hash": "tx1",
            "transaction_attr": {"memo_type": "text", "memo": cid},
        },
        {
            "id": "op-2",
            "type": "manage_data",
            "transaction_hash": "tx1",
            "name": "vesto.attestation.cid",
            "value": base64.b64encode(cid.encode()).decode(),
        },
    ]}})

    result = runner.invoke(app, ["resolve", str(ops), "--gateway", "https://gw.test/ipfs", "--json"])
    assert result.exit_code == 0, result.stdout
    [att] = json.loads(result.stdout)
    assert att["status"] == "Verified"
    assert att["metadataCid"] == cid
    assert att["reserveUSD"] == "1250.50"


def test_resolve_empty(tmp_path: Path):
    ops = write_json(tmp_path / "ops.json", [])
    result = runner.invoke(app, ["resolve", str(ops)])
    assert result.exit_code == 0
    assert "No attestations found" in result.stdout


def income_payments(tmp_path: Path) -> Path:
    now = datetime.now(timezone.utc)
    recent = (now - timedelta(days=1)).isoformat()
    return write_json(tmp_path / "payments.json", {"_embedded": {"records": [
        {"type": "payment", "transaction_hash": "p1", "created_at": recent, "to": "GSPV", "amount": "60", "asset_type": "native"},
        {"type": "payment", "transaction_hash": "p2", "created_at": recent, "to": "GSPV", "amount": "40", "asset_type": "native"},
        {"type": "payment", "transaction_hash": "p3", "created_at": recent, "to": "GELSEWHERE", "amount": "900", "asset_type": "native"},
        {
            "type": "payment", "transaction_hash": "p4", "to": "GSPV", "amount": "500", "asset_type": "native",
            "created_at": (now - timedelta(days=20)).isoformat(),
        },
    ]}})


def test_distribute_income_from_payments(tmp_path: Path, holders_file: Path):
    payments = income_payments(tmp_path)
    result = runner.invoke(app, [
        "distribute", str(holders_file), "--income-from", str(payments), "--account", "GSPV", "--json",
    ])
    assert result.exit_code == 0, result.stdout
    data = json.loads(result.stdout)
    assert data["totalPaid"] == "100"

    monthly = runner.invoke(app, [
        "distribute", str(holders_file), "--income-from", str(payments), "--account", "GSPV", "--days", "30", "--json",
    ])
    assert json.loads(monthly.stdout)["totalPaid"] == "600"


def test_distribute_without_income_in_window(tmp_path: Path, holders_file: Path):
    payments = income_payments(tmp_path)
    result = runner.invoke(app, [
        "distribute", str(holders_file), "--income-from", str(payments), "--account", "GSPV", "--asset", "SUSD",
    ])
    assert result.exit_code == 1
    assert "No SUSD income" in result.stdout


def test_distribute_needs_one_income_source(tmp_path: Path, holders_file: Path, monkeypatch):
    monkeypatch.delenv("PROOFLEDGER_SPV_ACCOUNT", raising=False)
    neither = runner.invoke(app, ["distribute", str(holders_file)])
    assert neither.exit_code == 1
    assert "exactly one" in neither.stdout

    payments = income_payments(tmp_path)
    both = runner.invoke(app, ["distribute", str(holders_file), "--income", "10", "--income-from", str(payments)])
    assert both.exit_code == 1

    no_account = runner.invoke(app, ["distribute", str(holders_file), "--income-from", str(payments)])
    assert no_account.exit_code == 1
    assert "--account" in no_account.stdout


def test_distribute_shrinks_to_native_balance(tmp_path: Path, holders_file: Path):
    account = write_json(tmp_path / "account.json", {"balances": [
        {"asset_type": "credit_alphanum4", "asset_code": "SUSD", "balance": "999"},
        {"asset_type": "native", "balance": "51.0000200"},
    ]})
    result = runner.invoke(app, [
        "distribute", str(holders_file), "--income", "100", "--balances", str(account), "--base-fee", "100", "--json",
    ])
    assert result.exit_code == 0, result.stdout
    data = json.loads(result.stdout)
    assert data["totalPaid"] == "50"
    assert [p["amount"] for p in data["payouts"]] == ["30", "20"]


def test_distribute_with_empty_native_balance(tmp_path: Path, holders_file: Path):
    account = write_json(tmp_path / "account.json", {"balances": [{"asset_type": "native", "balance": "0.5"}]})
    result = runner.invoke(app, ["distribute", str(holders_file), "--income", "100", "--balances", str(account)])
    assert result.exit_code == 1
    assert "insufficient-funds" in result.stdout


def test_distribute_rejects_bad_balances(tmp_path: Path, holders_file: Path):
    account = write_json(tmp_path / "account.json", {"id": "GSPV"})
    result = runner.invoke(app, ["distribute", str(holders_file), "--income", "100", "--balances", str(account)])
    assert result.exit_code == 1
    assert "No account balances" in result.stdout


def test_bridge_json(tmp_path: Path, monkeypatch, gateway, make_cid):
    cid = make_cid("lock")
    gateway.add_json(cid, {
        "schema": "vesto.lock@1", "bridgeAccount": "GBRIDGE", "chain": "EVM", "asset": "XLM",
        "amount": "25", "recipient": "0xrecipient", "timestamp": "2026-03-20T10:00:00Z",
    })

    async def no_sleep(delay):
        return None

    monkeypatch.setattr(
        cli, "bridge_fetchers",
        lambda gateways: bridge_fetchers(gateways=gateways, client=gateway.client(), sleep=no_sleep),
    )
    ops = write_json(tmp_path / "ops.json", [
        {
            "type": "manage_data",
            "name": "vesto.bridge.lock.cid",
            "value": base64.b64encode(cid.encode()).decode(),
            "transaction_hash": "tx1",
            "created_at": "2026-03-20T10:00:00Z",
            "transaction_attr": {"memo_type": "hash", "memo_hash": base64.b64encode(hashlib.sha256(cid.encode()).digest()).decode()},
        },
        {"type": "payment", "transaction_hash": "tx1", "source_account": "GBRIDGE", "to": "GESCROW", "amount": "25", "asset_type": "native"},
    ])

    result = runner.invoke(app, ["bridge", str(ops), "--account", "GBRIDGE", "--gateway", "https://gw.test/ipfs", "--json"])
    assert result.exit_code == 0, result.stdout
    data = json.loads(result.stdout)
    [lock] = data["locks"]
    assert lock["status"] == "Verified"
    assert lock["recipient"] == "0xrecipient"
    assert data["stats"]["totalLockedXlm"] == "25.0000000"


def test_bridge_without_account(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("PROOFLEDGER_BRIDGE_ACCOUNT", raising=False)
    ops = write_json(tmp_path / "ops.json", [])
    result = runner.invoke(app, ["bridge", str(ops)])
    assert result.exit_code == 1
    assert "No bridge account" in result.stdout
