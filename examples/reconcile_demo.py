# examples/reconcile_demo.py
# Run with: poetry run python examples/reconcile_demo.py
#
# Offline walk-through: a custodian signs a weekly attestation, the document is
# served from an in-memory gateway, and the ledger records are reconciled.

import asyncio
import base64
import json
from decimal import Decimal

import httpx

from proofledger.chain.attestations import resolve_attestations
from proofledger.core.canon import serialize_attestation_message
from proofledger.core.cid import cid_sha256_hex
from proofledger.core.types import SpvHolder
from proofledger.crypto.keys import SignerKeyPair
from proofledger.fetch.gateway import MetadataFetcher
from proofledger.spv.distribute import calculate_distribution, format_payment_amount

GATEWAY = "https://demo.gateway/ipfs"
DOC_CID = "bafybeie5gq4jxvzmsym6hjlwxej4rwdoxt7wadqvmmwbqi7r27fclha2va"


def build_document(signer: SignerKeyPair) -> dict:
    nonce = "demo-nonce-0001"
    message = {"week": 12, "reserveAmount": "1250.50", "timestamp": "2026-03-20T10:00:00Z", "nonce": nonce}
    serialized = serialize_attestation_message(message)
    return {
        "week": 12,
        "reserveAmount": "1,250.50",
        "fileCid": DOC_CID,
        "issuer": "Demo Custodian",
        "timestamp": message["timestamp"],
        "attestation": {
            "signature": signer.sign(serialized.canonical_bytes).hex(),
            "publicKey": signer.address,
            "nonce": nonce,
        },
    }


def ledger_records(cid: str) -> list:
    return [
        {
            "id": "op-1",
            "type": "payment",
            "created_at": "2026-03-20T10:05:00Z",
            "transaction_hash": "demo-tx-1",
            "transaction_attr": {
                "memo_type": "hash",
                "memo_hash": base64.b64encode(bytes.fromhex(cid_sha256_hex(cid))).decode(),
                "fee_charged": "100",
                "signatures": ["sig"],
            },
        },
        {
            "id": "op-2",
            "type": "manage_data",
            "transaction_hash": "demo-tx-1",
            "name": "vesto.attestation.cid",
            "value": base64.b64encode(cid.encode()).decode(),
        },
    ]


async def main():
    signer = SignerKeyPair.generate()
    document = json.dumps(build_document(signer)).encode()

    def serve(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=document, headers={"content-type": "application/json"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(serve))
    fetcher = MetadataFetcher(gateways=[GATEWAY], client=client)
    attestations = await resolve_attestations(ledger_records(DOC_CID), fetcher=fetcher, strict=True)
    await client.aclose()

    for att in attestations:
        print(f"week {att.week}: {att.reserve_usd} USD -> {att.status.value} ({att.reason or 'ok'})")

    holders = [SpvHolder("GHOLDERA", Decimal(600)), SpvHolder("GHOLDERB", Decimal(400))]
    distribution = calculate_distribution(holders, "12.5")
    for payout in distribution.payouts:
        print(f"pay {format_payment_amount(payout.amount)} XLM to {payout.account}")


if __name__ == "__main__":
    asyncio.run(main())
