from __future__ import annotations

import requests


def get_order(
    ultra_url: str,
    input_mint: str,
    output_mint: str,
    amount: int,
    taker: str,
    timeout: float = 30.0,
) -> dict | None:
    """Request an executable order from Jupiter Ultra.

    Returns None when Jupiter has no route (no transaction in the response).
    """
    params = {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "amount": str(amount),
        "taker": taker,
    }
    r = requests.get(f"{ultra_url}/order", params=params, timeout=timeout)
    r.raise_for_status()
    data = r.json() or {}
    if not data.get("transaction") or not data.get("requestId"):
        return None
    return data


def execute_order(
    ultra_url: str, signed_transaction_b64: str, request_id: str, timeout: float = 60.0
) -> dict:
    payload = {
        "signedTransaction": signed_transaction_b64,
        "requestId": request_id,
    }
    r = requests.post(
        f"{ultra_url}/execute",
        json=payload,
        headers={"Content-Type": "application/json"},
        timeout=timeout,
    )
    r.raise_for_status()
    return r.json() or {}


def get_prices(price_url: str, mints: list[str], timeout: float = 10.0) -> dict[str, str]:
    """Fetch USD prices for mints. Missing mints are absent from the result."""
    r = requests.get(price_url, params={"ids": ",".join(mints)}, timeout=timeout)
    r.raise_for_status()
    data = (r.json() or {}).get("data") or {}
    out: dict[str, str] = {}
    for mint in mints:
        rec = data.get(mint) or {}
        if rec.get("price") is not None:
            out[mint] = str(rec["price"])
    return out
